"""
Non-blocking mutual exclusion shared by every worker process.

PostgreSQL uses session-level advisory locks held on a dedicated connection.
Other databases (SQLite in development and tests) fall back to inserting a row
into ``sync_locks`` whose primary key is the lock key; a duplicate key means
the lock is held elsewhere. Row locks older than ``stale_after`` are treated as
abandoned by a crashed worker and may be taken over.
"""

from __future__ import annotations

import hashlib
import logging
import os
import socket
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from typing import Iterator

from sqlalchemy import delete, insert, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from flask_app.models.base import db
from flask_app.models.sync import SyncLock

logger = logging.getLogger(__name__)

IDENTITY_LOCK_NAMESPACE = 0x504C4600
SOURCE_POLL_LOCK_NAMESPACE = 0x53535057
LIST_CATALOG_LOCK_KEY = (0x4C495354 << 32) | 1
DEFAULT_STALE_AFTER = timedelta(minutes=15)


def identity_lock_key(email_normalized: str) -> int:
    """Derive a signed 64-bit lock key from a normalized destination identity."""
    digest = hashlib.sha256(email_normalized.encode("utf-8")).hexdigest()
    return (IDENTITY_LOCK_NAMESPACE << 32) | (int(digest[:16], 16) & 0xFFFFFFFF)


def source_poll_lock_key(sync_source_id: int) -> int:
    return (SOURCE_POLL_LOCK_NAMESPACE << 32) | (int(sync_source_id) & 0xFFFFFFFF)


def _holder_name() -> str:
    return f"{socket.gethostname()}:{os.getpid()}"


def _is_postgres(engine: Engine) -> bool:
    return engine.dialect.name == "postgresql"


@contextmanager
def _advisory_lock(engine: Engine, key: int) -> Iterator[bool]:
    with engine.connect() as connection:
        acquired = bool(connection.execute(text("SELECT pg_try_advisory_lock(:key)"), {"key": key}).scalar())
        try:
            yield acquired
        finally:
            if acquired:
                connection.execute(text("SELECT pg_advisory_unlock(:key)"), {"key": key})
                connection.commit()


def _insert_lock_row(engine: Engine, key: int, holder: str) -> bool:
    try:
        with engine.begin() as connection:
            connection.execute(
                insert(SyncLock.__table__).values(key=key, holder=holder, acquired_at=datetime.now(timezone.utc))
            )
        return True
    except IntegrityError:
        return False


def _take_over_stale_row(engine: Engine, key: int, stale_after: timedelta) -> bool:
    cutoff = datetime.now(timezone.utc) - stale_after
    with engine.begin() as connection:
        result = connection.execute(
            delete(SyncLock.__table__).where(
                SyncLock.__table__.c.key == key,
                SyncLock.__table__.c.acquired_at < cutoff,
            )
        )
    return bool(result.rowcount)


@contextmanager
def _row_lock(engine: Engine, key: int, stale_after: timedelta) -> Iterator[bool]:
    holder = _holder_name()
    acquired = _insert_lock_row(engine, key, holder)
    if not acquired and _take_over_stale_row(engine, key, stale_after):
        logger.warning("Took over stale sync lock", extra={"sync_lock_key": key, "sync_lock_holder": holder})
        acquired = _insert_lock_row(engine, key, holder)
    try:
        yield acquired
    finally:
        if acquired:
            with engine.begin() as connection:
                connection.execute(delete(SyncLock.__table__).where(SyncLock.__table__.c.key == key))


@contextmanager
def try_lock(
    key: int,
    *,
    engine: Engine | None = None,
    stale_after: timedelta = DEFAULT_STALE_AFTER,
) -> Iterator[bool]:
    """
    Attempt to take ``key`` without blocking.

    Yields ``True`` when the lock is held for the duration of the ``with`` block
    and ``False`` when another worker holds it. The lock is always released on
    exit, including when the block raises.
    """
    engine = engine or db.engine
    if _is_postgres(engine):
        with _advisory_lock(engine, key) as acquired:
            yield acquired
    else:
        with _row_lock(engine, key, stale_after) as acquired:
            yield acquired


__all__ = [
    "DEFAULT_STALE_AFTER",
    "IDENTITY_LOCK_NAMESPACE",
    "LIST_CATALOG_LOCK_KEY",
    "SOURCE_POLL_LOCK_NAMESPACE",
    "identity_lock_key",
    "source_poll_lock_key",
    "try_lock",
]
