"""
Baseline tables used for change detection (source side) and redundant-send
suppression (destination side).
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import ForeignKey, Index, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from ..base import BaseModel, as_utc, db, utcnow

DEFAULT_DESTINATION_TTL_DAYS = 90


class FieldValueBaseline(BaseModel):
    """Last-known value of one source field on one source row."""

    __tablename__ = "field_value_baselines"

    id: Mapped[int] = mapped_column(primary_key=True)
    sync_source_id: Mapped[int] = mapped_column(
        ForeignKey("sync_sources.id", ondelete="CASCADE"),
        nullable=False,
    )
    row_id: Mapped[str] = mapped_column(db.String(255), nullable=False)
    field_id: Mapped[str] = mapped_column(db.String(512), nullable=False)
    last_known_value: Mapped[Any | None] = mapped_column(db.JSON, nullable=True)
    first_seen_at: Mapped[datetime] = mapped_column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    last_checked_at: Mapped[datetime] = mapped_column(
        db.DateTime(timezone=True), nullable=False, default=utcnow, index=True
    )
    value_last_updated_at: Mapped[datetime] = mapped_column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    checked_count: Mapped[int] = mapped_column(db.Integer, nullable=False, default=1)

    sync_source = relationship("SyncSource")

    __table_args__ = (
        UniqueConstraint(
            "sync_source_id",
            "row_id",
            "field_id",
            name="uq_field_value_baselines_source_row_field",
        ),
        Index("ix_field_value_baselines_source_row", "sync_source_id", "row_id"),
    )

    def __repr__(self) -> str:
        return f"<FieldValueBaseline source={self.sync_source_id} row={self.row_id} field={self.field_id}>"


class DestinationFieldBaseline(BaseModel):
    """Value last confirmed as sent to the destination for one contact field."""

    __tablename__ = "destination_field_baselines"

    id: Mapped[int] = mapped_column(primary_key=True)
    email_normalized: Mapped[str] = mapped_column(db.String(320), nullable=False, index=True)
    field_name: Mapped[str] = mapped_column(db.String(255), nullable=False)
    last_sent_value: Mapped[Any | None] = mapped_column(db.JSON, nullable=True)
    last_sent_at: Mapped[datetime] = mapped_column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    expires_at: Mapped[datetime] = mapped_column(db.DateTime(timezone=True), nullable=False, index=True)

    __table_args__ = (
        UniqueConstraint("email_normalized", "field_name", name="uq_destination_field_baselines_email_field"),
    )

    def __repr__(self) -> str:
        return f"<DestinationFieldBaseline {self.email_normalized}:{self.field_name}>"

    def is_expired(self, now: datetime | None = None) -> bool:
        now = now or utcnow()
        return as_utc(self.expires_at) <= now

    def update_sent_value(
        self,
        value: Any,
        *,
        now: datetime | None = None,
        expires_in_days: int = DEFAULT_DESTINATION_TTL_DAYS,
    ) -> None:
        now = now or utcnow()
        self.last_sent_value = value
        self.last_sent_at = now
        self.expires_at = now + timedelta(days=expires_in_days)
