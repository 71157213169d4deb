"""
Align the ``sync_sources`` registry with what each source system exposes.

One pass per adapter loads every local row for that source once, decides
create/update/revive/retire in memory and writes the result in a single
transaction, so the number of round-trips does not grow with row count.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Iterable, Sequence, Tuple

from sqlalchemy import insert
from sqlalchemy.orm import Session

from flask_app.models.base import db
from flask_app.models.sync import DeletedReason, SyncSource
from flask_app.models.sync.sources import DEFAULT_POLL_INTERVAL_SECONDS, DEFAULT_POLL_JITTER

from ..adapters import DiscoveryAdapter
from ..metrics import record_reconcile_changes
from .ignore_matcher import IgnoreMatcher

logger = logging.getLogger(__name__)


@dataclass
class ReconcileSummary:
    source: str
    seen: int = 0
    created: int = 0
    updated: int = 0
    revived: int = 0
    retired_missing: int = 0
    retired_ignored: int = 0
    skipped_ignored: int = 0
    created_ids: list[str] = field(default_factory=list)

    def as_dict(self) -> dict[str, object]:
        return {
            "source": self.source,
            "seen": self.seen,
            "created": self.created,
            "updated": self.updated,
            "revived": self.revived,
            "retired_missing": self.retired_missing,
            "retired_ignored": self.retired_ignored,
            "skipped_ignored": self.skipped_ignored,
        }


class DiscoveryReconciler:
    """Reconcile discovered source ids against local rows."""

    def __init__(
        self,
        session: Session | None = None,
        *,
        clock: Callable[[], datetime] | None = None,
        matcher_factory: Callable[[str], IgnoreMatcher] | None = None,
    ):
        self.session = session or db.session
        self.clock = clock or (lambda: datetime.now(timezone.utc))
        self.matcher_factory = matcher_factory or (
            lambda source: IgnoreMatcher.for_source(source, session=self.session)
        )

    def reconcile_all(self, adapters: Iterable[Tuple[str, DiscoveryAdapter]]) -> list[ReconcileSummary]:
        return [self.reconcile(source, adapter) for source, adapter in adapters]

    def reconcile(self, source: str, adapter: DiscoveryAdapter) -> ReconcileSummary:
        remote = adapter.list_ids_with_names()
        try:
            summary = self._apply(source, remote)
            self.session.commit()
        except Exception:
            self.session.rollback()
            raise
        record_reconcile_changes(
            source,
            created=summary.created,
            updated=summary.updated,
            revived=summary.revived,
            retired_missing=summary.retired_missing,
            retired_ignored=summary.retired_ignored,
        )
        logger.info(
            "Reconciled %s source ids for %s",
            summary.seen,
            source,
            extra={f"sync_reconcile_{key}": value for key, value in summary.as_dict().items()},
        )
        return summary

    def _apply(self, source: str, remote: Sequence[dict[str, str]]) -> ReconcileSummary:
        now = self.clock()
        summary = ReconcileSummary(source=source)
        matcher = self.matcher_factory(source)

        rows = self.session.scalars(SyncSource.include_deleted().where(SyncSource.source == source)).all()
        active: dict[str, SyncSource] = {}
        deleted: dict[str, SyncSource] = {}
        for row in rows:
            if row.deleted_at is None:
                active[row.source_id] = row
            else:
                # Keep the most recent retirement when an id was retired more than once.
                current = deleted.get(row.source_id)
                if current is None or row.id > current.id:
                    deleted[row.source_id] = row

        remote_ids: set[str] = set()
        to_create: list[dict[str, object]] = []
        for item in remote:
            source_id = str(item.get("id") or "").strip()
            if not source_id or source_id in remote_ids:
                continue
            remote_ids.add(source_id)
            name = item.get("name") or None
            summary.seen += 1

            if matcher.match(source_id):
                summary.skipped_ignored += 1
                existing = active.get(source_id)
                if existing is not None:
                    existing.soft_delete(DeletedReason.IGNORED_PATTERN, now=now)
                    summary.retired_ignored += 1
                continue

            existing = active.get(source_id)
            if existing is not None:
                if self._touch(existing, name, now):
                    summary.updated += 1
                continue

            retired = deleted.get(source_id)
            if retired is not None:
                retired.restore()
                retired.seen_count = (retired.seen_count or 0) + 1
                retired.last_seen_at = now
                retired.next_poll_at = now
                if retired.first_seen_at is None:
                    retired.first_seen_at = now
                if name and name != retired.display_name:
                    retired.display_name = name
                    retired.display_name_updated_at = now
                active[source_id] = retired
                summary.revived += 1
                continue

            to_create.append(
                {
                    "source": source,
                    "source_id": source_id,
                    "display_name": name,
                    "display_name_updated_at": now if name else None,
                    "poll_interval_seconds": DEFAULT_POLL_INTERVAL_SECONDS,
                    "poll_jitter": DEFAULT_POLL_JITTER,
                    "next_poll_at": now,
                    "consecutive_failures": 0,
                    "error_details": {},
                    "metadata_json": {},
                    "first_seen_at": now,
                    "last_seen_at": now,
                    "seen_count": 1,
                    "created_at": now,
                    "updated_at": now,
                }
            )
            summary.created_ids.append(source_id)

        for source_id, row in active.items():
            if source_id in remote_ids or row.deleted_at is not None:
                continue
            if row.deleted_reason is not None:
                continue
            row.soft_delete(DeletedReason.DISAPPEARED, now=now)
            summary.retired_missing += 1

        # Retired rows that are still missing get a reason; explicit reasons are kept.
        for row in rows:
            if row.deleted_at is None or row.source_id in remote_ids or row.deleted_reason is not None:
                continue
            row.deleted_reason = DeletedReason.DISAPPEARED

        # Flush retirements first so the partial unique index sees them before inserts.
        self.session.flush()
        if to_create:
            self.session.execute(insert(SyncSource), to_create)
            summary.created = len(to_create)
        return summary

    @staticmethod
    def _touch(row: SyncSource, name: str | None, now: datetime) -> bool:
        changed = False
        if name and name != row.display_name:
            row.display_name = name
            row.display_name_updated_at = now
            changed = True
        if row.first_seen_at is None:
            row.first_seen_at = now
            changed = True
        row.last_seen_at = now
        row.seen_count = (row.seen_count or 0) + 1
        return changed


__all__ = ["DiscoveryReconciler", "ReconcileSummary"]
