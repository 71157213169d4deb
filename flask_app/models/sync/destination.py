"""Destination-side records: mailing list catalog, subscriptions and the audit trail."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import ForeignKey, Index, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from ..base import BaseModel, db, utcnow


class MailingList(BaseModel):
    """Local copy of a destination mailing list."""

    __tablename__ = "mailing_lists"

    id: Mapped[int] = mapped_column(primary_key=True)
    list_id: Mapped[str] = mapped_column(db.String(255), nullable=False, unique=True)
    name: Mapped[str] = mapped_column(db.String(255), nullable=False, default="")
    description: Mapped[str | None] = mapped_column(db.Text, nullable=True)
    is_public: Mapped[bool] = mapped_column(db.Boolean, nullable=False, default=False)
    synced_at: Mapped[datetime] = mapped_column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    def __repr__(self) -> str:
        return f"<MailingList {self.list_id} {self.name!r}>"


class ListSubscription(BaseModel):
    """Append-only record that a contact was subscribed to a list."""

    __tablename__ = "list_subscriptions"

    id: Mapped[int] = mapped_column(primary_key=True)
    email_normalized: Mapped[str] = mapped_column(db.String(320), nullable=False, index=True)
    list_id: Mapped[str] = mapped_column(db.String(255), nullable=False)
    subscribed_at: Mapped[datetime] = mapped_column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (UniqueConstraint("email_normalized", "list_id", name="uq_list_subscriptions_email_list"),)

    def __repr__(self) -> str:
        return f"<ListSubscription {self.email_normalized} -> {self.list_id}>"


class ContactChangeAudit(BaseModel):
    """Append-only audit entry for one destination field transition."""

    __tablename__ = "contact_change_audits"

    id: Mapped[int] = mapped_column(primary_key=True)
    occurred_at: Mapped[datetime] = mapped_column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    email_normalized: Mapped[str] = mapped_column(db.String(320), nullable=False)
    field_name: Mapped[str] = mapped_column(db.String(255), nullable=False)
    former_value: Mapped[Any | None] = mapped_column(db.JSON, nullable=True)
    new_value: Mapped[Any | None] = mapped_column(db.JSON, nullable=True)
    former_source_value: Mapped[Any | None] = mapped_column(db.JSON, nullable=True)
    new_source_value: Mapped[Any | None] = mapped_column(db.JSON, nullable=True)
    strategy: Mapped[str] = mapped_column(db.String(32), nullable=False)
    sync_source_id: Mapped[int | None] = mapped_column(
        ForeignKey("sync_sources.id", ondelete="SET NULL"),
        nullable=True,
    )
    sync_source_table_id: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    sync_source_record_id: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    sync_source_field_id: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    provenance: Mapped[dict] = mapped_column(db.JSON, nullable=False, default=dict)
    request_id: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    is_self_service: Mapped[bool] = mapped_column(db.Boolean, nullable=False, default=False)

    __table_args__ = (
        Index("ix_contact_change_audits_email_occurred", "email_normalized", "occurred_at"),
        Index("ix_contact_change_audits_field", "field_name"),
    )

    def __repr__(self) -> str:
        return f"<ContactChangeAudit {self.email_normalized}.{self.field_name} at {self.occurred_at}>"
