"""
Token-bucket admission control shared across worker processes.

Bucket state lives in the ``rate_limit_buckets`` table and is updated inside a
short transaction that locks the bucket row (``SELECT ... FOR UPDATE`` on
PostgreSQL), so every process draws from the same budget. Callers sleep
outside the transaction until a token is available.
"""

from __future__ import annotations

import logging
import time
from typing import Callable

from sqlalchemy import insert, select, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError

from flask_app.models.sync import RateLimitBucket

from ..metrics import record_rate_limit_wait

logger = logging.getLogger(__name__)


class DatabaseBucketStore:
    """Persist token buckets in the relational store."""

    def __init__(self, engine: Engine):
        self.engine = engine
        self._table = RateLimitBucket.__table__

    def take(self, key: str, *, capacity: float, refill_per_second: float, now: float) -> float:
        """
        Try to remove one token from ``key``.

        Returns 0 when a token was taken, otherwise the number of seconds until
        one will be available.
        """
        table = self._table
        for _ in range(2):
            with self.engine.begin() as connection:
                row = (
                    connection.execute(select(table).where(table.c.key == key).with_for_update())
                    .mappings()
                    .first()
                )
                if row is not None:
                    elapsed = max(0.0, now - float(row["updated_at"]))
                    tokens = min(capacity, float(row["tokens"]) + elapsed * refill_per_second)
                    wait = 0.0
                    if tokens >= 1.0:
                        tokens -= 1.0
                    else:
                        wait = (1.0 - tokens) / refill_per_second
                    connection.execute(
                        update(table)
                        .where(table.c.key == key)
                        .values(
                            tokens=tokens,
                            capacity=capacity,
                            refill_per_second=refill_per_second,
                            updated_at=now,
                        )
                    )
                    return wait
            try:
                with self.engine.begin() as connection:
                    connection.execute(
                        insert(table).values(
                            key=key,
                            tokens=capacity - 1.0,
                            capacity=capacity,
                            refill_per_second=refill_per_second,
                            updated_at=now,
                        )
                    )
                return 0.0
            except IntegrityError:
                # Another worker created the bucket first; read it on the next pass.
                continue
        return 1.0 / refill_per_second


class RateLimiter:
    """
    Keyed token bucket limiter.

    ``rate_per_second`` tokens refill each second up to ``capacity`` (defaults to
    the rate, allowing a one-second burst). ``acquire`` blocks by sleeping until a
    token is granted.
    """

    def __init__(
        self,
        store: DatabaseBucketStore,
        *,
        namespace: str,
        rate_per_second: float,
        capacity: float | None = None,
        sleep_fn: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.time,
    ):
        if rate_per_second <= 0:
            raise ValueError("rate_per_second must be positive")
        self.store = store
        self.namespace = namespace
        self.rate_per_second = float(rate_per_second)
        self.capacity = float(capacity if capacity is not None else max(rate_per_second, 1.0))
        self.sleep_fn = sleep_fn
        self.clock = clock

    def key_for(self, resource: str) -> str:
        return f"rate:{self.namespace}:{resource}"

    def acquire(self, resource: str = "global") -> float:
        """Block until a token for ``resource`` is available; return seconds waited."""
        key = self.key_for(resource)
        waited = 0.0
        while True:
            wait = self.store.take(
                key,
                capacity=self.capacity,
                refill_per_second=self.rate_per_second,
                now=self.clock(),
            )
            if wait <= 0:
                if waited:
                    record_rate_limit_wait(self.namespace, waited)
                    logger.debug(
                        "Rate limiter admitted request after waiting",
                        extra={"sync_rate_key": key, "sync_rate_waited_seconds": round(waited, 3)},
                    )
                return waited
            self.sleep_fn(wait)
            waited += wait


__all__ = ["DatabaseBucketStore", "RateLimiter"]
