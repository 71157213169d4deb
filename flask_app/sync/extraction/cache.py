"""
Content-addressed cache in front of an extractor.

The key is the SHA-256 of the rendered prompt, the JSON schema and the
temperature, so editing a prompt or schema invalidates old entries. Cache
reads and writes run in their own short transactions on the engine, leaving
the caller's session untouched.
"""

from __future__ import annotations

import hashlib
import json
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Mapping

from sqlalchemy import delete, insert, select, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from flask_app.models.base import db
from flask_app.models.sync import ExtractionCacheEntry

from . import Extractor

logger = logging.getLogger(__name__)

DEFAULT_IDLE_DAYS = 90


def cache_key(prompt: str, schema: Mapping[str, Any], temperature: float = 0) -> str:
    material = prompt + json.dumps(schema, sort_keys=True) + str(temperature)
    return hashlib.sha256(material.encode("utf-8")).hexdigest()


class CachedExtractor:
    def __init__(
        self,
        inner: Extractor,
        *,
        engine: Engine | None = None,
        temperature: float = 0,
        clock: Callable[[], datetime] | None = None,
    ):
        self.inner = inner
        self._engine = engine
        self.temperature = temperature
        self.clock = clock or (lambda: datetime.now(timezone.utc))

    @property
    def engine(self) -> Engine:
        return self._engine or db.engine

    def extract_structured(self, prompt: str, schema: Mapping[str, Any]) -> dict[str, Any]:
        table = ExtractionCacheEntry.__table__
        key = cache_key(prompt, schema, self.temperature)
        now = self.clock()
        with self.engine.begin() as connection:
            row = connection.execute(
                select(table.c.id, table.c.response_json).where(table.c.prompt_hash == key)
            ).first()
            if row is not None:
                connection.execute(update(table).where(table.c.id == row.id).values(last_used_at=now))
        if row is not None:
            logger.debug("Extraction cache hit", extra={"sync_llm_cache": "hit"})
            return dict((row.response_json or {}).get("parsed") or {})

        parsed = self.inner.extract_structured(prompt, schema)
        entry = ExtractionCacheEntry(
            request_json={"prompt": prompt, "schema": dict(schema), "temperature": self.temperature},
            response_json={"parsed": parsed},
        )
        try:
            with self.engine.begin() as connection:
                connection.execute(
                    insert(table).values(
                        prompt_hash=key,
                        request_json=entry.request_json,
                        response_json=entry.response_json,
                        bytes_size=entry.compute_size(),
                        last_used_at=now,
                        created_at=now,
                        updated_at=now,
                    )
                )
        except IntegrityError:
            logger.debug("Extraction cache entry already stored by another worker", extra={"sync_llm_cache": "race"})
        return parsed


def prune_extraction_cache(
    older_than: timedelta = timedelta(days=DEFAULT_IDLE_DAYS),
    *,
    session: Session | None = None,
    now: datetime | None = None,
) -> int:
    session = session or db.session
    cutoff = (now or datetime.now(timezone.utc)) - older_than
    result = session.execute(
        delete(ExtractionCacheEntry)
        .where(ExtractionCacheEntry.last_used_at < cutoff)
        .execution_options(synchronize_session=False)
    )
    session.commit()
    deleted = int(result.rowcount or 0)
    logger.info("Pruned %s extraction cache entr(ies)", deleted, extra={"sync_pruned": deleted})
    return deleted


__all__ = ["CachedExtractor", "DEFAULT_IDLE_DAYS", "cache_key", "prune_extraction_cache"]
