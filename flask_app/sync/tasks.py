"""
Sync Celery tasks.

Each task builds its collaborators through ``flask_app.sync.factories`` so
credentials and rate limits always follow the current app configuration.
"""

from __future__ import annotations

import time
from datetime import datetime, timezone
from typing import Any

from celery import shared_task
from flask import current_app

from flask_app.models.base import db
from flask_app.utils.sync import sync_int

from . import factories
from .adapters import TRANSIENT_ERRORS
from .metrics import record_poll
from .pipeline.catalog import sync_mailing_lists_exclusively
from .pipeline.contacts import refresh_contact_from_destination
from .pipeline.locks import source_poll_lock_key, try_lock
from .pipeline.pruning import (
    prune_destination_baselines,
    prune_extraction_entries,
    prune_field_baselines,
    prune_outbox,
)
from .pipeline.reconciler import DiscoveryReconciler

MAX_RETRY_COUNTDOWN_SECONDS = 300


def retry_countdown(retries: int) -> int:
    return min(2**retries, MAX_RETRY_COUNTDOWN_SECONDS)


def _retry_transient(task, exc: Exception):
    current_app.logger.warning(
        "Transient sync failure in %s; retrying",
        task.name,
        extra={"sync_task": task.name, "sync_error_class": exc.__class__.__name__, "sync_retries": task.request.retries},
    )
    return task.retry(exc=exc, countdown=retry_countdown(task.request.retries))


def failure_details(exc: BaseException) -> dict[str, Any]:
    return {
        "message": str(exc),
        "class": exc.__class__.__name__,
        "at": datetime.now(timezone.utc).isoformat(),
    }


@shared_task(name="sync.healthcheck", bind=True)
def sync_healthcheck(self) -> dict[str, Any]:
    """Heartbeat task used by worker health checks."""
    return {
        "status": "ok",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "worker_hostname": self.request.hostname,
        "app_version": current_app.config.get("APP_VERSION"),
    }


@shared_task(name="sync.discovery.reconcile", bind=True, max_retries=None)
def reconcile_discovery(self) -> dict[str, Any]:
    adapters = list(factories.discovery_adapters())
    if not adapters:
        return {"status": "skipped", "reason": "no_configured_adapters", "sources": []}
    try:
        summaries = DiscoveryReconciler(db.session).reconcile_all(adapters)
    except TRANSIENT_ERRORS as exc:
        raise _retry_transient(self, exc)
    return {"status": "ok", "sources": [summary.as_dict() for summary in summaries]}


@shared_task(name="sync.sources.enqueue_due", bind=True)
def enqueue_due_sources(self) -> dict[str, Any]:
    scheduler = factories.build_scheduler()
    summary = scheduler.enqueue_due(
        lambda sync_source_id: poll_source.delay(sync_source_id),
        batch_size=sync_int("ENQUEUE_BATCH_SIZE", 200),
    )
    return {"batches": summary.batches, "reserved": summary.reserved, "sync_source_ids": summary.reserved_ids}


@shared_task(name="sync.sources.poll", bind=True, max_retries=None)
def poll_source(self, sync_source_id: int) -> dict[str, Any]:
    """Poll one source under its per-source lock and record the outcome on its row."""
    with try_lock(source_poll_lock_key(sync_source_id)) as acquired:
        if not acquired:
            current_app.logger.info(
                "Sync source %s is already being polled; skipping",
                sync_source_id,
                extra={"sync_source_id": sync_source_id},
            )
            record_poll("unknown", "skipped")
            return {"status": "skipped_locked", "sync_source_id": sync_source_id}

        scheduler = factories.build_scheduler()
        source = scheduler.mark_attempt(sync_source_id)
        if source.is_deleted:
            record_poll(source.source, "skipped")
            return {"status": "skipped_deleted", "sync_source_id": sync_source_id}

        source_type = source.source
        started = time.monotonic()
        try:
            poller = factories.build_poller(source_type)
            summary = poller.poll(source)
        except Exception as exc:
            db.session.rollback()
            scheduler.mark_failure(sync_source_id, failure_details(exc))
            record_poll(source_type, "failure", time.monotonic() - started)
            current_app.logger.error(
                "Poll failed for sync source %s",
                sync_source_id,
                exc_info=True,
                extra={"sync_source_id": sync_source_id, "sync_error_class": exc.__class__.__name__},
            )
            if isinstance(exc, TRANSIENT_ERRORS):
                raise _retry_transient(self, exc)
            raise

        scheduler.mark_success(sync_source_id)
        record_poll(source_type, "success", time.monotonic() - started)
        return {"status": "ok", **summary.as_dict()}


@shared_task(name="sync.outbox.dispatch", bind=True, max_retries=None)
def dispatch_outbox(self) -> dict[str, Any]:
    worker = factories.build_dispatch_worker()
    try:
        summary = worker.run()
    except TRANSIENT_ERRORS as exc:
        raise _retry_transient(self, exc)
    return summary.as_dict()


@shared_task(name="sync.contacts.refresh", bind=True, max_retries=None)
def refresh_contact_task(self, email: str) -> dict[str, Any]:
    """Reseed one contact's baselines and subscriptions from the destination."""
    try:
        summary = refresh_contact_from_destination(
            factories.build_loops_client(),
            email,
            session=db.session,
            expires_in_days=sync_int("DESTINATION_BASELINE_TTL_DAYS", 90),
        )
    except TRANSIENT_ERRORS as exc:
        raise _retry_transient(self, exc)
    return summary.as_dict()


@shared_task(name="sync.lists.sync_catalog", bind=True, max_retries=None)
def sync_list_catalog(self) -> dict[str, Any]:
    try:
        summary = sync_mailing_lists_exclusively(factories.build_loops_client(), session=db.session)
    except TRANSIENT_ERRORS as exc:
        raise _retry_transient(self, exc)
    if summary is None:
        return {"status": "skipped_locked"}
    return {"status": "ok", "created": summary.created, "updated": summary.updated, "deleted": summary.deleted}


@shared_task(name="sync.prune.field_baselines")
def prune_field_baselines_task(days: int | None = None) -> dict[str, int]:
    days = days or sync_int("PRUNE_FIELD_BASELINES_DAYS", 30)
    return {"deleted": prune_field_baselines(days, session=db.session), "days": days}


@shared_task(name="sync.prune.destination_baselines")
def prune_destination_baselines_task(days: int | None = None) -> dict[str, int]:
    days = days or sync_int("PRUNE_DESTINATION_BASELINES_DAYS", 90)
    return {"deleted": prune_destination_baselines(days, session=db.session), "days": days}


@shared_task(name="sync.prune.outbox")
def prune_outbox_task(days: int | None = None) -> dict[str, int]:
    days = days or sync_int("PRUNE_OUTBOX_DAYS", 30)
    return {"deleted": prune_outbox(days, session=db.session), "days": days}


@shared_task(name="sync.prune.extraction_cache")
def prune_extraction_cache_task(days: int | None = None) -> dict[str, int]:
    days = days or sync_int("PRUNE_EXTRACTION_CACHE_DAYS", 90)
    return {"deleted": prune_extraction_entries(days, session=db.session), "days": days}
