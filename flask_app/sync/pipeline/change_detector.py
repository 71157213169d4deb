"""
Field-level change detection against ``field_value_baselines``.

Values are normalized (single-element arrays unwrapped, strings stripped) and
canonicalized before comparison so representationally-equal values never count
as a change.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from flask_app.models.base import db
from flask_app.models.sync import FieldValueBaseline
from flask_app.utils.normalizers import canonicalize, normalize_source_value, values_equal

logger = logging.getLogger(__name__)

DEFAULT_STALE_AFTER_DAYS = 30


@dataclass(frozen=True)
class ChangeResult:
    changed: bool
    first_time: bool
    former_value: Any
    baseline: FieldValueBaseline | None

    @property
    def should_forward(self) -> bool:
        """First observations are forwarded so full resyncs back-fill the destination."""
        return self.changed or self.first_time


class ChangeDetector:
    """Compare observed source values to their persisted baselines."""

    def __init__(self, session: Session | None = None, *, clock: Callable[[], datetime] | None = None):
        self.session = session or db.session
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    def _find(self, sync_source_id: int, row_id: str, field_id: str) -> FieldValueBaseline | None:
        return self.session.scalar(
            select(FieldValueBaseline).where(
                FieldValueBaseline.sync_source_id == sync_source_id,
                FieldValueBaseline.row_id == row_id,
                FieldValueBaseline.field_id == field_id,
            )
        )

    def preview(self, sync_source_id: int, row_id: str, field_id: str, current_value: Any) -> ChangeResult:
        """Report what ``detect_change`` would return without writing anything."""
        value = canonicalize(normalize_source_value(current_value))
        with self.session.no_autoflush:
            baseline = self._find(sync_source_id, row_id, field_id)
        if baseline is None:
            return ChangeResult(changed=False, first_time=True, former_value=None, baseline=None)
        former = baseline.last_known_value
        return ChangeResult(
            changed=not values_equal(former, value),
            first_time=False,
            former_value=former,
            baseline=baseline,
        )

    def detect_change(self, sync_source_id: int, row_id: str, field_id: str, current_value: Any) -> ChangeResult:
        """
        Record an observation and report whether the value changed.

        The first observation of a key creates its baseline and reports
        ``first_time=True, changed=False``. Later observations always bump
        ``last_checked_at``/``checked_count``; only a canonical difference
        replaces the stored value and bumps ``value_last_updated_at``.
        Changes are flushed, not committed.
        """
        now = self.clock()
        value = canonicalize(normalize_source_value(current_value))
        baseline = self._find(sync_source_id, row_id, field_id)

        if baseline is None:
            baseline = FieldValueBaseline(
                sync_source_id=sync_source_id,
                row_id=row_id,
                field_id=field_id,
                last_known_value=value,
                first_seen_at=now,
                last_checked_at=now,
                value_last_updated_at=now,
                checked_count=1,
            )
            try:
                with self.session.begin_nested():
                    self.session.add(baseline)
            except IntegrityError:
                # A concurrent poll inserted the same key; compare against its row instead.
                baseline = self._find(sync_source_id, row_id, field_id)
                if baseline is None:
                    raise
            else:
                return ChangeResult(changed=False, first_time=True, former_value=None, baseline=baseline)

        former = baseline.last_known_value
        changed = not values_equal(former, value)
        baseline.last_checked_at = now
        baseline.checked_count = (baseline.checked_count or 0) + 1
        if changed:
            baseline.last_known_value = value
            baseline.value_last_updated_at = now
        self.session.flush()
        return ChangeResult(changed=changed, first_time=False, former_value=former, baseline=baseline)

    def prune_stale(self, older_than: timedelta = timedelta(days=DEFAULT_STALE_AFTER_DAYS)) -> int:
        """Delete baselines not checked since ``now - older_than``; return the count."""
        cutoff = self.clock() - older_than
        result = self.session.execute(
            delete(FieldValueBaseline)
            .where(FieldValueBaseline.last_checked_at < cutoff)
            .execution_options(synchronize_session=False)
        )
        self.session.commit()
        deleted = int(result.rowcount or 0)
        logger.info(
            "Pruned %s stale field value baseline(s)",
            deleted,
            extra={"sync_pruned": deleted, "sync_prune_cutoff": cutoff.isoformat()},
        )
        return deleted


__all__ = ["ChangeDetector", "ChangeResult", "DEFAULT_STALE_AFTER_DAYS"]
