"""
Build pipeline components from application configuration.

Every task and CLI command constructs its collaborators here, per invocation,
so rate limiters and clients are scoped to one unit of work and share state
only through the database.
"""

from __future__ import annotations

from datetime import timedelta
from typing import Iterable, Tuple

from flask import current_app

from flask_app.models.base import db
from flask_app.models.sync import SourceType
from flask_app.utils.sync import get_sync_adapters, sync_float, sync_int, sync_setting

from .adapters import AdapterConfigError, DiscoveryAdapter
from .adapters.airtable import AirtableClient
from .adapters.loops import LoopsClient
from .extraction import Extractor
from .extraction.cache import CachedExtractor
from .extraction.openai_client import DEFAULT_MODEL, OpenAIExtractor
from .pipeline.dispatch import DispatchWorker
from .pipeline.outbox import OutboxBuilder
from .pipeline.poller import AirtablePoller
from .pipeline.rate_limiter import DatabaseBucketStore, RateLimiter
from .pipeline.scheduler import SourceScheduler


def _app(app=None):
    return app or current_app


def build_rate_limiter(namespace: str, setting: str, default: float, app=None) -> RateLimiter:
    rate = sync_float(setting, default, _app(app))
    return RateLimiter(DatabaseBucketStore(db.engine), namespace=namespace, rate_per_second=rate)


def http_timeout(app=None) -> float:
    return sync_float("HTTP_TIMEOUT_SECONDS", 30.0, _app(app))


def build_airtable_client(app=None) -> AirtableClient:
    app = _app(app)
    token = app.config.get("AIRTABLE_PERSONAL_ACCESS_TOKEN")
    if not token:
        raise AdapterConfigError("AIRTABLE_PERSONAL_ACCESS_TOKEN is not configured.")
    return AirtableClient(
        token,
        timeout_s=http_timeout(app),
        rate_limiter=build_rate_limiter("airtable", "AIRTABLE_RATE_PER_SECOND", 2.0, app),
    )


def build_loops_client(app=None) -> LoopsClient:
    app = _app(app)
    api_key = app.config.get("LOOPS_API_KEY")
    if not api_key:
        raise AdapterConfigError("LOOPS_API_KEY is not configured.")
    return LoopsClient(
        api_key,
        timeout_s=http_timeout(app),
        rate_limiter=build_rate_limiter("loops", "LOOPS_RATE_PER_SECOND", 3.0, app),
    )


def build_extractor(app=None) -> Extractor | None:
    """Return the cached extraction collaborator, or ``None`` when no API key is set."""
    app = _app(app)
    api_key = app.config.get("OPENAI_API_KEY")
    if not api_key:
        return None
    inner = OpenAIExtractor(
        api_key,
        model=app.config.get("OPENAI_MODEL") or DEFAULT_MODEL,
        timeout_s=http_timeout(app),
        rate_limiter=build_rate_limiter("llm", "LLM_RATE_PER_SECOND", 3.0, app),
    )
    return CachedExtractor(inner, engine=db.engine)


def build_scheduler(app=None) -> SourceScheduler:
    return SourceScheduler(
        db.session,
        max_backoff_seconds=sync_int("FAILURE_MAX_BACKOFF_SECONDS", 1800, _app(app)),
    )


def build_poller(source_type: str, app=None) -> AirtablePoller:
    app = _app(app)
    if source_type != SourceType.AIRTABLE.value:
        raise AdapterConfigError(f"No poller registered for source type {source_type!r}.")
    return AirtablePoller(
        build_airtable_client(app),
        session=db.session,
        builder=OutboxBuilder(db.session, extractor=build_extractor(app)),
        safety_margin=timedelta(seconds=sync_int("POLL_SAFETY_MARGIN_SECONDS", 300, app)),
    )


def build_dispatch_worker(app=None) -> DispatchWorker:
    app = _app(app)
    return DispatchWorker(
        build_loops_client(app),
        session=db.session,
        default_list_id=app.config.get("LOOPS_DEFAULT_LIST_ID"),
        default_user_group=sync_setting("DEFAULT_USER_GROUP", "Hack Clubber", app),
        baseline_ttl_days=sync_int("DESTINATION_BASELINE_TTL_DAYS", 90, app),
        batch_size=sync_int("DISPATCH_BATCH_SIZE", 50, app),
    )


def discovery_adapters(app=None) -> Iterable[Tuple[str, DiscoveryAdapter]]:
    """Yield ``(source_type, adapter)`` for every configured adapter with credentials."""
    app = _app(app)
    adapters: list[Tuple[str, DiscoveryAdapter]] = []
    for name in get_sync_adapters(app):
        if name == SourceType.AIRTABLE.value:
            if not app.config.get("AIRTABLE_PERSONAL_ACCESS_TOKEN"):
                app.logger.warning(
                    "Skipping Airtable discovery: AIRTABLE_PERSONAL_ACCESS_TOKEN is not set.",
                    extra={"sync_adapter": name},
                )
                continue
            adapters.append((name, build_airtable_client(app)))
    return adapters


__all__ = [
    "build_airtable_client",
    "build_dispatch_worker",
    "build_extractor",
    "build_loops_client",
    "build_poller",
    "build_rate_limiter",
    "build_scheduler",
    "discovery_adapters",
    "http_timeout",
]
