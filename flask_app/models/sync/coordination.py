"""Cross-process coordination state: rate-limit buckets and lock rows."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy.orm import Mapped, mapped_column

from ..base import db, utcnow


class RateLimitBucket(db.Model):
    """Token bucket state shared by every worker process."""

    __tablename__ = "rate_limit_buckets"

    key: Mapped[str] = mapped_column(db.String(255), primary_key=True)
    tokens: Mapped[float] = mapped_column(db.Float, nullable=False)
    capacity: Mapped[float] = mapped_column(db.Float, nullable=False)
    refill_per_second: Mapped[float] = mapped_column(db.Float, nullable=False)
    updated_at: Mapped[float] = mapped_column(
        db.Float,
        nullable=False,
        comment="Monotonic-free wall clock seconds of the last refill.",
    )

    def __repr__(self) -> str:
        return f"<RateLimitBucket {self.key} tokens={self.tokens:.2f}>"


class SyncLock(db.Model):
    """
    Row-based try-lock used on databases without advisory locks.

    Presence of a row means the key is held.
    """

    __tablename__ = "sync_locks"

    key: Mapped[int] = mapped_column(db.BigInteger, primary_key=True, autoincrement=False)
    holder: Mapped[str | None] = mapped_column(db.String(255), nullable=True)
    acquired_at: Mapped[datetime] = mapped_column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    def __repr__(self) -> str:
        return f"<SyncLock {self.key} holder={self.holder}>"
