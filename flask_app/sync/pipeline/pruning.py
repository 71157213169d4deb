"""Retention pruning for baselines, terminal envelopes and the extraction cache."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

from sqlalchemy import delete
from sqlalchemy.orm import Session

from flask_app.models.base import db
from flask_app.models.sync import DestinationFieldBaseline, EnvelopeStatus, OutboxEnvelope

from ..extraction.cache import prune_extraction_cache
from .change_detector import ChangeDetector

logger = logging.getLogger(__name__)

DEFAULT_FIELD_BASELINE_DAYS = 30
DEFAULT_DESTINATION_BASELINE_DAYS = 90
DEFAULT_OUTBOX_DAYS = 30
DEFAULT_EXTRACTION_CACHE_DAYS = 90


def _now(now: datetime | None) -> datetime:
    return now or datetime.now(timezone.utc)


def prune_field_baselines(
    days: int = DEFAULT_FIELD_BASELINE_DAYS,
    *,
    session: Session | None = None,
    now: datetime | None = None,
) -> int:
    moment = _now(now)
    detector = ChangeDetector(session, clock=lambda: moment)
    return detector.prune_stale(timedelta(days=days))


def prune_destination_baselines(
    days: int = DEFAULT_DESTINATION_BASELINE_DAYS,
    *,
    session: Session | None = None,
    now: datetime | None = None,
) -> int:
    """Delete destination baselines that expired more than ``days`` ago."""
    session = session or db.session
    cutoff = _now(now) - timedelta(days=days)
    result = session.execute(
        delete(DestinationFieldBaseline)
        .where(DestinationFieldBaseline.expires_at < cutoff)
        .execution_options(synchronize_session=False)
    )
    session.commit()
    deleted = int(result.rowcount or 0)
    logger.info("Pruned %s destination field baseline(s)", deleted, extra={"sync_pruned": deleted})
    return deleted


def prune_outbox(
    days: int = DEFAULT_OUTBOX_DAYS,
    *,
    session: Session | None = None,
    now: datetime | None = None,
) -> int:
    """Delete envelopes in a terminal state created more than ``days`` ago."""
    session = session or db.session
    cutoff = _now(now) - timedelta(days=days)
    result = session.execute(
        delete(OutboxEnvelope)
        .where(
            OutboxEnvelope.status.in_(EnvelopeStatus.terminal()),
            OutboxEnvelope.created_at < cutoff,
        )
        .execution_options(synchronize_session=False)
    )
    session.commit()
    deleted = int(result.rowcount or 0)
    logger.info("Pruned %s outbox envelope(s)", deleted, extra={"sync_pruned": deleted})
    return deleted


def prune_extraction_entries(
    days: int = DEFAULT_EXTRACTION_CACHE_DAYS,
    *,
    session: Session | None = None,
    now: datetime | None = None,
) -> int:
    return prune_extraction_cache(timedelta(days=days), session=session, now=now)


__all__ = [
    "DEFAULT_DESTINATION_BASELINE_DAYS",
    "DEFAULT_EXTRACTION_CACHE_DAYS",
    "DEFAULT_FIELD_BASELINE_DAYS",
    "DEFAULT_OUTBOX_DAYS",
    "prune_destination_baselines",
    "prune_extraction_entries",
    "prune_field_baselines",
    "prune_outbox",
]
