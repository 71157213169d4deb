"""
Poll scheduling over the ``sync_sources`` registry.

Claims use ``SELECT ... FOR UPDATE SKIP LOCKED`` so concurrent enqueuers never
reserve the same row, and each claimed row's ``next_poll_at`` is pushed forward
before the claim transaction commits.
"""

from __future__ import annotations

import logging
import random
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Iterator, Mapping, Sequence

from sqlalchemy.orm import Session

from flask_app.models.base import db
from flask_app.models.sync import DeletedReason, SyncSource
from flask_app.models.sync.sources import DEFAULT_MAX_BACKOFF_SECONDS

logger = logging.getLogger(__name__)

DEFAULT_ENQUEUE_BATCH_SIZE = 200


class SourceNotFoundError(LookupError):
    """Raised when a sync source id does not resolve to a row."""


@dataclass
class EnqueueSummary:
    batches: int = 0
    reserved_ids: list[int] = field(default_factory=list)

    @property
    def reserved(self) -> int:
        return len(self.reserved_ids)


class SourceScheduler:
    """Reserve due sources and record poll outcomes."""

    def __init__(
        self,
        session: Session | None = None,
        *,
        clock: Callable[[], datetime] | None = None,
        rand: Callable[[], float] = random.random,
        max_backoff_seconds: int = DEFAULT_MAX_BACKOFF_SECONDS,
    ):
        self.session = session or db.session
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.rand = rand
        self.max_backoff_seconds = max_backoff_seconds

    @contextmanager
    def _transaction(self) -> Iterator[None]:
        try:
            yield
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise

    def claim_due_sources(
        self,
        limit: int = DEFAULT_ENQUEUE_BATCH_SIZE,
        *,
        due_before: datetime | None = None,
    ) -> list[SyncSource]:
        """Atomically reserve up to ``limit`` active sources whose poll is due."""
        now = self.clock()
        due_before = due_before or now
        with self._transaction():
            stmt = (
                SyncSource.active_only()
                .where(SyncSource.next_poll_at <= due_before)
                .order_by(SyncSource.next_poll_at, SyncSource.id)
                .limit(limit)
                .with_for_update(skip_locked=True)
            )
            sources = list(self.session.scalars(stmt))
            for source in sources:
                source.reserve_from(now, self.rand)
        return sources

    def enqueue_due(
        self,
        dispatch: Callable[[int], Any],
        *,
        batch_size: int = DEFAULT_ENQUEUE_BATCH_SIZE,
    ) -> EnqueueSummary:
        """Claim due sources in batches and hand each id to ``dispatch`` until none remain."""
        summary = EnqueueSummary()
        due_before = self.clock()
        while True:
            claimed = self.claim_due_sources(batch_size, due_before=due_before)
            if not claimed:
                break
            summary.batches += 1
            for source in claimed:
                dispatch(source.id)
                summary.reserved_ids.append(source.id)
            if len(claimed) < batch_size:
                break
        if summary.reserved:
            logger.info(
                "Enqueued %s due sync source poll(s)",
                summary.reserved,
                extra={"sync_enqueued": summary.reserved, "sync_enqueue_batches": summary.batches},
            )
        return summary

    def get(self, sync_source_id: int) -> SyncSource:
        source = self.session.get(SyncSource, sync_source_id)
        if source is None:
            raise SourceNotFoundError(f"Sync source {sync_source_id} not found.")
        return source

    def mark_attempt(self, sync_source_id: int) -> SyncSource:
        with self._transaction():
            source = self.get(sync_source_id)
            source.mark_attempt(now=self.clock())
        return source

    def mark_success(self, sync_source_id: int) -> SyncSource:
        with self._transaction():
            source = self.get(sync_source_id)
            source.mark_success(now=self.clock())
        return source

    def mark_failure(self, sync_source_id: int, error: Mapping[str, Any]) -> SyncSource:
        with self._transaction():
            source = self.get(sync_source_id)
            source.mark_failure(error, now=self.clock(), max_backoff_seconds=self.max_backoff_seconds)
        return source

    def retire(self, sync_source_id: int, reason: DeletedReason) -> SyncSource:
        with self._transaction():
            source = self.get(sync_source_id)
            source.soft_delete(reason, now=self.clock())
        return source

    def restore(self, sync_source_id: int) -> SyncSource:
        """Reactivate a retired source, refusing when another active row claims its id."""
        with self._transaction():
            source = self.get(sync_source_id)
            conflict = self.session.scalar(
                SyncSource.active_only().where(
                    SyncSource.source == source.source,
                    SyncSource.source_id == source.source_id,
                    SyncSource.id != source.id,
                )
            )
            if conflict is not None:
                raise ValueError(
                    f"Cannot restore sync source {source.id}: active source {conflict.id} already tracks "
                    f"{source.source}:{source.source_id}."
                )
            source.restore()
            source.next_poll_at = self.clock()
        return source

    def request_full_resync(self, sync_source_id: int) -> SyncSource:
        """Clear the cursor and field fingerprints so the next poll re-reads every row."""
        with self._transaction():
            source = self.get(sync_source_id)
            metadata = dict(source.metadata_json or {})
            metadata.pop("field_fingerprints", None)
            source.metadata_json = metadata
            source.cursor = None
            source.next_poll_at = self.clock()
        logger.info("Full resync requested", extra={"sync_source_id": sync_source_id})
        return source

    def resolve(self, identifier: str, *, source: str | None = None) -> SyncSource:
        """Find a source by numeric id or by external source id (active rows preferred)."""
        if identifier.isdigit():
            found = self.session.get(SyncSource, int(identifier))
            if found is not None:
                return found
        stmt = SyncSource.include_deleted().where(SyncSource.source_id == identifier)
        if source:
            stmt = stmt.where(SyncSource.source == source)
        candidates: Sequence[SyncSource] = self.session.scalars(
            stmt.order_by(SyncSource.deleted_at.is_not(None), SyncSource.id.desc())
        ).all()
        if not candidates:
            raise SourceNotFoundError(f"Sync source {identifier!r} not found.")
        return candidates[0]


__all__ = ["DEFAULT_ENQUEUE_BATCH_SIZE", "EnqueueSummary", "SourceNotFoundError", "SourceScheduler"]
