from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from flask_app.models import DeletedReason, SyncSource, db
from flask_app.models.base import as_utc
from flask_app.sync.pipeline.scheduler import SourceNotFoundError, SourceScheduler

NOW = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def _scheduler(rand=lambda: 0.5, **kwargs):
    return SourceScheduler(db.session, clock=lambda: NOW, rand=rand, **kwargs)


def test_interval_jitter_is_symmetric_and_clamped():
    source = SyncSource(source="airtable", source_id="app1", poll_interval_seconds=100, poll_jitter=0.1)

    assert source.next_interval_with_jitter(lambda: 0.0) == 90
    assert source.next_interval_with_jitter(lambda: 0.5) == 100
    assert source.next_interval_with_jitter(lambda: 1.0) == 110

    tiny = SyncSource(source="airtable", source_id="app2", poll_interval_seconds=1, poll_jitter=1.0)
    assert tiny.next_interval_with_jitter(lambda: 0.0) == 1


def test_enqueue_due_reserves_only_due_active_sources(app, make_source):
    due = make_source("appDue", next_poll_at=NOW - timedelta(minutes=1))
    make_source("appLater", next_poll_at=NOW + timedelta(minutes=5))
    retired = make_source("appRetired", next_poll_at=NOW - timedelta(minutes=1))
    retired.soft_delete(DeletedReason.MANUAL)
    db.session.commit()

    dispatched = []
    summary = _scheduler().enqueue_due(dispatched.append)

    assert dispatched == [due.id]
    assert summary.reserved == 1
    assert summary.batches == 1
    db.session.expire_all()
    reserved = db.session.get(SyncSource, due.id)
    assert as_utc(reserved.next_poll_at) == NOW + timedelta(seconds=30)


def test_enqueue_due_walks_multiple_batches(app, make_source):
    ids = [make_source(f"app{index}", next_poll_at=NOW - timedelta(seconds=index + 1)).id for index in range(5)]

    dispatched = []
    summary = _scheduler().enqueue_due(dispatched.append, batch_size=2)

    assert sorted(dispatched) == sorted(ids)
    assert summary.batches == 3
    # Reserved rows are no longer due, so a second pass finds nothing.
    assert _scheduler().enqueue_due(dispatched.append).reserved == 0


def test_mark_failure_backs_off_exponentially_and_caps(app, make_source):
    source = make_source("appFail", next_poll_at=NOW, poll_interval_seconds=30)
    scheduler = _scheduler(max_backoff_seconds=600)

    scheduler.mark_failure(source.id, {"message": "boom"})
    first = db.session.get(SyncSource, source.id)
    assert first.consecutive_failures == 1
    assert as_utc(first.next_poll_at) == NOW + timedelta(seconds=60)
    assert first.error_details["message"] == "boom"

    for _ in range(5):
        scheduler.mark_failure(source.id, {"message": "again"})
    capped = db.session.get(SyncSource, source.id)
    assert capped.consecutive_failures == 6
    assert as_utc(capped.next_poll_at) == NOW + timedelta(seconds=60 + 120 + 240 + 480 + 600 + 600)

    scheduler.mark_success(source.id)
    healed = db.session.get(SyncSource, source.id)
    assert healed.consecutive_failures == 0
    assert healed.error_details == {}
    assert as_utc(healed.last_successful_poll_at) == NOW


def test_request_full_resync_clears_cursor_and_fingerprints(app, make_source):
    source = make_source(
        "appResync",
        cursor="2024-04-01T00:00:00Z",
        metadata_json={"field_fingerprints": {"tbl": [["fld", "singleLineText"]]}, "name": "Base"},
        next_poll_at=NOW + timedelta(hours=1),
    )

    _scheduler().request_full_resync(source.id)

    db.session.expire_all()
    row = db.session.get(SyncSource, source.id)
    assert row.cursor is None
    assert row.metadata_json == {"name": "Base"}
    assert as_utc(row.next_poll_at) == NOW


def test_resolve_by_id_or_external_id_prefers_active(app, make_source):
    old = make_source("appShared")
    old.soft_delete(DeletedReason.DISAPPEARED)
    db.session.commit()
    current = make_source("appShared")
    scheduler = _scheduler()

    assert scheduler.resolve(str(old.id)).id == old.id
    assert scheduler.resolve("appShared").id == current.id
    assert scheduler.resolve("appShared", source="airtable").id == current.id
    with pytest.raises(SourceNotFoundError):
        scheduler.resolve("appMissing")


def test_restore_refuses_when_another_row_is_active(app, make_source):
    old = make_source("appTwin")
    old.soft_delete(DeletedReason.MANUAL)
    db.session.commit()
    make_source("appTwin")

    with pytest.raises(ValueError):
        _scheduler().restore(old.id)

    db.session.expire_all()
    assert db.session.get(SyncSource, old.id).is_deleted


def test_retire_then_restore_round_trip(app, make_source):
    source = make_source("appCycle")
    scheduler = _scheduler()

    scheduler.retire(source.id, DeletedReason.MANUAL)
    assert db.session.get(SyncSource, source.id).lifecycle.reason is DeletedReason.MANUAL

    scheduler.restore(source.id)
    restored = db.session.get(SyncSource, source.id)
    assert restored.deleted_at is None
    assert restored.deleted_reason is None
    assert as_utc(restored.next_poll_at) == NOW
