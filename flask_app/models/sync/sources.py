"""
Tracked source registry models.

A ``SyncSource`` row represents one external record source (an Airtable base)
that the poll scheduler visits. Rows are soft-deleted only, and every query
helper states whether it wants active, deleted, or all rows.
"""

from __future__ import annotations

import enum
import random
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Mapping

from sqlalchemy import CheckConstraint, Enum, Index, Select, UniqueConstraint, select, text
from sqlalchemy.orm import Mapped, mapped_column

from ..base import BaseModel, as_utc, db, utcnow

MIN_POLL_INTERVAL_SECONDS = 1
MAX_POLL_INTERVAL_SECONDS = 86_400
DEFAULT_POLL_INTERVAL_SECONDS = 30
DEFAULT_POLL_JITTER = 0.10
DEFAULT_MAX_BACKOFF_SECONDS = 30 * 60
MAX_BACKOFF_EXPONENT = 10


class SourceType(str, enum.Enum):
    """Supported source systems."""

    AIRTABLE = "airtable"


class DeletedReason(str, enum.Enum):
    """Why a tracked source was retired."""

    DISAPPEARED = "disappeared"
    MANUAL = "manual"
    IGNORED_PATTERN = "ignored_pattern"


@dataclass(frozen=True)
class Active:
    """Lifecycle state of a source currently being polled."""

    @property
    def is_deleted(self) -> bool:
        return False


@dataclass(frozen=True)
class Deleted:
    """Lifecycle state of a retired source."""

    reason: DeletedReason | None
    at: datetime

    @property
    def is_deleted(self) -> bool:
        return True


Lifecycle = Active | Deleted


class SyncSource(BaseModel):
    """A tracked external record source and its poll schedule."""

    __tablename__ = "sync_sources"

    id: Mapped[int] = mapped_column(primary_key=True)
    source: Mapped[str] = mapped_column(db.String(32), nullable=False)
    source_id: Mapped[str] = mapped_column(db.String(255), nullable=False)
    cursor: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    poll_interval_seconds: Mapped[int] = mapped_column(
        db.Integer, nullable=False, default=DEFAULT_POLL_INTERVAL_SECONDS
    )
    poll_jitter: Mapped[float] = mapped_column(db.Float, nullable=False, default=DEFAULT_POLL_JITTER)
    next_poll_at: Mapped[datetime] = mapped_column(
        db.DateTime(timezone=True), nullable=False, default=utcnow, index=True
    )
    last_poll_attempted_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True))
    last_successful_poll_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True))
    consecutive_failures: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    error_details: Mapped[dict] = mapped_column(db.JSON, nullable=False, default=dict)
    metadata_json: Mapped[dict] = mapped_column(
        "metadata",
        db.JSON,
        nullable=False,
        default=dict,
        comment="Free-form source metadata, including per-table field fingerprints.",
    )
    display_name: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    display_name_updated_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True))
    deleted_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True), index=True)
    deleted_reason: Mapped[DeletedReason | None] = mapped_column(
        Enum(DeletedReason, name="sync_source_deleted_reason_enum"),
        nullable=True,
    )
    first_seen_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True))
    last_seen_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True))
    seen_count: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)

    __table_args__ = (
        Index(
            "uq_sync_sources_active_source_id",
            "source",
            "source_id",
            unique=True,
            postgresql_where=text("deleted_at IS NULL"),
            sqlite_where=text("deleted_at IS NULL"),
        ),
        Index("ix_sync_sources_source_source_id", "source", "source_id"),
        CheckConstraint("poll_interval_seconds > 0", name="ck_sync_sources_interval_positive"),
        CheckConstraint("consecutive_failures >= 0", name="ck_sync_sources_failures_non_negative"),
    )

    def __repr__(self) -> str:
        return f"<SyncSource {self.source}:{self.source_id} id={self.id}>"

    # Query scopes -------------------------------------------------------

    @classmethod
    def active_only(cls) -> Select:
        return select(cls).where(cls.deleted_at.is_(None))

    @classmethod
    def deleted_only(cls) -> Select:
        return select(cls).where(cls.deleted_at.is_not(None))

    @classmethod
    def include_deleted(cls) -> Select:
        return select(cls)

    # Lifecycle ----------------------------------------------------------

    @property
    def lifecycle(self) -> Lifecycle:
        if self.deleted_at is None:
            return Active()
        return Deleted(reason=self.deleted_reason, at=as_utc(self.deleted_at))

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    def soft_delete(self, reason: DeletedReason, *, now: datetime | None = None) -> None:
        self.deleted_at = now or utcnow()
        self.deleted_reason = reason

    def restore(self) -> None:
        self.deleted_at = None
        self.deleted_reason = None

    # Scheduling ---------------------------------------------------------

    def next_interval_with_jitter(self, rand: Callable[[], float] = random.random) -> int:
        """Return the poll interval in seconds with symmetric jitter applied."""
        base = int(self.poll_interval_seconds or DEFAULT_POLL_INTERVAL_SECONDS)
        jitter = min(max(float(self.poll_jitter or 0.0), 0.0), 1.0)
        interval = int(base * (1 + (rand() * 2 - 1) * jitter))
        return min(max(interval, MIN_POLL_INTERVAL_SECONDS), MAX_POLL_INTERVAL_SECONDS)

    def reserve_from(self, now: datetime, rand: Callable[[], float] = random.random) -> None:
        self.next_poll_at = now + timedelta(seconds=self.next_interval_with_jitter(rand))

    def mark_attempt(self, *, now: datetime | None = None) -> None:
        self.last_poll_attempted_at = now or utcnow()

    def mark_success(self, *, now: datetime | None = None) -> None:
        self.last_successful_poll_at = now or utcnow()
        self.consecutive_failures = 0
        self.error_details = {}

    def mark_failure(
        self,
        error: Mapping[str, Any],
        *,
        now: datetime | None = None,
        max_backoff_seconds: int = DEFAULT_MAX_BACKOFF_SECONDS,
    ) -> None:
        """Record a failed poll and push ``next_poll_at`` out with exponential back-off."""
        now = now or utcnow()
        failures = (self.consecutive_failures or 0) + 1
        penalty = max(2 ** min(failures, MAX_BACKOFF_EXPONENT), 1)
        delay = min(int(self.poll_interval_seconds or DEFAULT_POLL_INTERVAL_SECONDS) * penalty, max_backoff_seconds)

        self.consecutive_failures = failures
        self.error_details = {**(self.error_details or {}), **dict(error)}
        base = max(as_utc(self.next_poll_at) or now, now)
        self.next_poll_at = base + timedelta(seconds=delay)

    # Presentation -------------------------------------------------------

    @property
    def humanized_name(self) -> str:
        if self.display_name:
            return self.display_name
        metadata = self.metadata_json or {}
        for key in ("display_name", "name", "base_name"):
            value = metadata.get(key)
            if value:
                return str(value)
        return self.source_id


class SyncSourceIgnore(BaseModel):
    """
    A pattern excluding source identifiers from tracking.

    ``source_id`` always holds a regular expression; exact ids are stored as
    ``^id$``.
    """

    __tablename__ = "sync_source_ignores"

    MAX_PATTERN_LENGTH = 200

    id: Mapped[int] = mapped_column(primary_key=True)
    source: Mapped[str] = mapped_column(db.String(32), nullable=False, index=True)
    source_id: Mapped[str] = mapped_column(db.String(MAX_PATTERN_LENGTH), nullable=False)
    reason: Mapped[str | None] = mapped_column(db.Text, nullable=True)

    __table_args__ = (UniqueConstraint("source", "source_id", name="uq_sync_source_ignores_source_pattern"),)

    def __repr__(self) -> str:
        return f"<SyncSourceIgnore {self.source}:{self.source_id}>"
