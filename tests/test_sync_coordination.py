from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import func, insert, select

from flask_app.models import RateLimitBucket, SyncLock, db
from flask_app.sync.pipeline.locks import identity_lock_key, source_poll_lock_key, try_lock
from flask_app.sync.pipeline.rate_limiter import DatabaseBucketStore, RateLimiter


def _lock_rows():
    return db.session.scalar(select(func.count()).select_from(SyncLock))


def test_lock_keys_are_stable_and_namespaced():
    assert identity_lock_key("jane@hackclub.com") == identity_lock_key("jane@hackclub.com")
    assert identity_lock_key("jane@hackclub.com") != identity_lock_key("joe@hackclub.com")
    assert source_poll_lock_key(7) != identity_lock_key("7")
    assert identity_lock_key("a@b.com") < 2**63


def test_try_lock_is_exclusive_and_released(app):
    key = identity_lock_key("jane@hackclub.com")

    with try_lock(key) as first:
        assert first is True
        with try_lock(key) as second:
            assert second is False
        assert _lock_rows() == 1

    assert _lock_rows() == 0
    with try_lock(key) as again:
        assert again is True


def test_try_lock_releases_when_block_raises(app):
    key = source_poll_lock_key(1)

    with pytest.raises(RuntimeError):
        with try_lock(key) as acquired:
            assert acquired
            raise RuntimeError("boom")

    assert _lock_rows() == 0


def test_stale_lock_rows_are_taken_over(app):
    key = source_poll_lock_key(2)
    with db.engine.begin() as connection:
        connection.execute(
            insert(SyncLock.__table__).values(
                key=key,
                holder="crashed:1",
                acquired_at=datetime.now(timezone.utc) - timedelta(hours=1),
            )
        )

    with try_lock(key, stale_after=timedelta(minutes=15)) as acquired:
        assert acquired is True

    with db.engine.begin() as connection:
        connection.execute(
            insert(SyncLock.__table__).values(key=key, holder="alive:1", acquired_at=datetime.now(timezone.utc))
        )
    with try_lock(key, stale_after=timedelta(minutes=15)) as acquired:
        assert acquired is False


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now
        self.sleeps = []

    def __call__(self):
        return self.now

    def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds


def test_rate_limiter_allows_burst_then_waits(app):
    clock = FakeClock()
    limiter = RateLimiter(
        DatabaseBucketStore(db.engine),
        namespace="loops",
        rate_per_second=2,
        sleep_fn=clock.sleep,
        clock=clock,
    )

    assert limiter.acquire() == 0.0
    assert limiter.acquire() == 0.0
    waited = limiter.acquire()

    assert waited == pytest.approx(0.5)
    assert clock.sleeps == [pytest.approx(0.5)]
    bucket = db.session.get(RateLimitBucket, "rate:loops:global")
    assert bucket.capacity == 2.0


def test_rate_limiter_buckets_are_keyed_per_resource(app):
    clock = FakeClock()
    limiter = RateLimiter(
        DatabaseBucketStore(db.engine),
        namespace="airtable",
        rate_per_second=1,
        sleep_fn=clock.sleep,
        clock=clock,
    )

    assert limiter.acquire("appA") == 0.0
    assert limiter.acquire("appB") == 0.0
    assert clock.sleeps == []

    keys = db.session.scalars(select(RateLimitBucket.key).order_by(RateLimitBucket.key)).all()
    assert keys == ["rate:airtable:appA", "rate:airtable:appB"]


def test_rate_limiter_shares_budget_between_instances(app):
    clock = FakeClock()
    store = DatabaseBucketStore(db.engine)
    first = RateLimiter(store, namespace="llm", rate_per_second=1, sleep_fn=clock.sleep, clock=clock)
    second = RateLimiter(
        DatabaseBucketStore(db.engine), namespace="llm", rate_per_second=1, sleep_fn=clock.sleep, clock=clock
    )

    first.acquire()
    assert second.acquire() == pytest.approx(1.0)


def test_rate_limiter_rejects_non_positive_rate(app):
    with pytest.raises(ValueError):
        RateLimiter(DatabaseBucketStore(db.engine), namespace="x", rate_per_second=0)
