"""Cache of structured-extraction responses keyed by content hash."""

from __future__ import annotations

import json
from datetime import datetime

from sqlalchemy.orm import Mapped, mapped_column

from ..base import BaseModel, db, utcnow


class ExtractionCacheEntry(BaseModel):
    __tablename__ = "extraction_cache_entries"

    id: Mapped[int] = mapped_column(primary_key=True)
    prompt_hash: Mapped[str] = mapped_column(db.String(64), nullable=False, unique=True)
    request_json: Mapped[dict] = mapped_column(db.JSON, nullable=False, default=dict)
    response_json: Mapped[dict] = mapped_column(db.JSON, nullable=False, default=dict)
    bytes_size: Mapped[int] = mapped_column(db.Integer, nullable=False, default=0)
    last_used_at: Mapped[datetime] = mapped_column(
        db.DateTime(timezone=True), nullable=False, default=utcnow, index=True
    )

    def __repr__(self) -> str:
        return f"<ExtractionCacheEntry {self.prompt_hash[:12]}>"

    def touch(self, now: datetime | None = None) -> None:
        self.last_used_at = now or utcnow()

    def compute_size(self) -> int:
        self.bytes_size = len(json.dumps(self.request_json or {})) + len(json.dumps(self.response_json or {}))
        return self.bytes_size
