"""Durable outbox of destination-bound envelopes."""

from __future__ import annotations

import enum
from datetime import datetime
from typing import Any

from sqlalchemy import Enum, ForeignKey, Index
from sqlalchemy.orm import Mapped, mapped_column, relationship

from ..base import BaseModel, db, utcnow


class EnvelopeStatus(str, enum.Enum):
    """Envelope states; everything except QUEUED is terminal."""

    QUEUED = "queued"
    SENT = "sent"
    PARTIALLY_SENT = "partially_sent"
    IGNORED_NOOP = "ignored_noop"
    FAILED = "failed"

    @classmethod
    def terminal(cls) -> tuple["EnvelopeStatus", ...]:
        return (cls.SENT, cls.PARTIALLY_SENT, cls.IGNORED_NOOP, cls.FAILED)


class OutboxEnvelope(BaseModel):
    """
    One batch of field updates for a single destination contact.

    ``payload`` maps destination field names to
    ``{"value": ..., "strategy": "upsert"|"override", "modified_at": iso8601}``.
    """

    __tablename__ = "outbox_envelopes"

    id: Mapped[int] = mapped_column(primary_key=True)
    email_normalized: Mapped[str] = mapped_column(db.String(320), nullable=False, index=True)
    payload: Mapped[dict] = mapped_column(db.JSON, nullable=False, default=dict)
    status: Mapped[EnvelopeStatus] = mapped_column(
        Enum(EnvelopeStatus, name="outbox_envelope_status_enum"),
        nullable=False,
        default=EnvelopeStatus.QUEUED,
    )
    provenance: Mapped[dict] = mapped_column(db.JSON, nullable=False, default=dict)
    error: Mapped[dict | None] = mapped_column(db.JSON, nullable=True)
    sync_source_id: Mapped[int | None] = mapped_column(
        ForeignKey("sync_sources.id", ondelete="SET NULL"),
        nullable=True,
    )
    processed_at: Mapped[datetime | None] = mapped_column(db.DateTime(timezone=True), nullable=True)

    sync_source = relationship("SyncSource")

    __table_args__ = (
        Index("ix_outbox_envelopes_status_created", "status", "created_at"),
        Index("ix_outbox_envelopes_email_status", "email_normalized", "status"),
    )

    def __repr__(self) -> str:
        return f"<OutboxEnvelope id={self.id} email={self.email_normalized} status={self.status.value}>"

    def mark(self, status: EnvelopeStatus, *, error: dict[str, Any] | None = None, now: datetime | None = None) -> None:
        self.status = status
        if error is not None:
            self.error = error
        self.processed_at = now or utcnow()
