from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select

from flask_app.models import (
    DeletedReason,
    EnvelopeStatus,
    ListSubscription,
    MailingList,
    OutboxEnvelope,
    SyncSource,
    db,
)
from flask_app.sync import factories
from flask_app.sync.pipeline.locks import source_poll_lock_key, try_lock
from flask_app.sync.pipeline.outbox import OutboxBuilder
from flask_app.sync.pipeline.poller import AirtablePoller
from flask_app.sync.tasks import (
    dispatch_outbox,
    enqueue_due_sources,
    failure_details,
    poll_source,
    prune_outbox_task,
    reconcile_discovery,
    refresh_contact_task,
    retry_countdown,
    sync_list_catalog,
)


@pytest.fixture
def use_airtable(monkeypatch, airtable_client):
    """Route every poller the tasks build through the in-memory Airtable."""

    def build_poller(source_type, app=None):
        return AirtablePoller(airtable_client, session=db.session, builder=OutboxBuilder(db.session))

    monkeypatch.setattr(factories, "build_poller", build_poller)
    return airtable_client


@pytest.fixture
def use_loops(monkeypatch, loops_client):
    monkeypatch.setattr(factories, "build_loops_client", lambda app=None: loops_client)
    return loops_client


def _seed_table(airtable_client, base_id="appBase1", email="jane@hackclub.com"):
    airtable_client.add_table(
        base_id,
        "tbl1",
        [("fldEmail", "Email", "email"), ("fldFirst", "Loops - firstName", "singleLineText")],
    )
    airtable_client.set_records(base_id, "tbl1", [("rec1", {"Email": email, "Loops - firstName": "Jane"})])


def test_retry_countdown_is_capped():
    assert [retry_countdown(n) for n in (0, 1, 4)] == [1, 2, 16]
    assert retry_countdown(20) == 300


def test_failure_details_shape():
    details = failure_details(ValueError("boom"))
    assert details["message"] == "boom"
    assert details["class"] == "ValueError"
    assert "at" in details


def test_poll_source_records_success(app, make_source, use_airtable):
    source = make_source()
    _seed_table(use_airtable)

    result = poll_source.delay(source.id).get()

    assert result["status"] == "ok"
    assert result["envelopes"] == 1
    db.session.expire_all()
    stored = db.session.get(SyncSource, source.id)
    assert stored.consecutive_failures == 0
    assert stored.last_successful_poll_at is not None
    assert stored.last_poll_attempted_at is not None
    assert stored.cursor is not None


def test_poll_source_skips_when_locked(app, make_source, use_airtable):
    source = make_source()

    with try_lock(source_poll_lock_key(source.id)) as acquired:
        assert acquired
        result = poll_source.delay(source.id).get()

    assert result == {"status": "skipped_locked", "sync_source_id": source.id}
    assert use_airtable.formulas == []


def test_poll_source_skips_retired_sources(app, make_source, use_airtable):
    source = make_source(deleted_at=datetime.now(timezone.utc), deleted_reason=DeletedReason.MANUAL)

    result = poll_source.delay(source.id).get()

    assert result["status"] == "skipped_deleted"


def test_poll_failure_backs_off_and_propagates(app, make_source, monkeypatch):
    source = make_source()

    def broken_poller(source_type, app=None):
        raise ValueError("schema unavailable")

    monkeypatch.setattr(factories, "build_poller", broken_poller)

    with pytest.raises(ValueError):
        poll_source.delay(source.id).get()

    db.session.expire_all()
    stored = db.session.get(SyncSource, source.id)
    assert stored.consecutive_failures == 1
    assert stored.error_details["class"] == "ValueError"
    assert stored.error_details["message"] == "schema unavailable"


def test_enqueue_due_polls_each_due_source(app, make_source, use_airtable):
    due = make_source("appDue")
    make_source("appLater", next_poll_at=datetime.now(timezone.utc) + timedelta(hours=1))
    _seed_table(use_airtable, base_id="appDue")

    result = enqueue_due_sources.delay().get()

    assert result["reserved"] == 1
    assert result["sync_source_ids"] == [due.id]
    assert db.session.scalar(select(OutboxEnvelope.email_normalized)) == "jane@hackclub.com"


def test_dispatch_task_delivers_queued_envelopes(app, make_source, use_airtable, use_loops):
    source = make_source()
    _seed_table(use_airtable)
    poll_source.delay(source.id).get()

    result = dispatch_outbox.delay().get()

    assert result["identities"] == 1
    assert result["statuses"] == {"sent": 1}
    assert use_loops.update_calls[0][1]["firstName"] == "Jane"


def test_reconcile_task_uses_configured_adapters(app, make_source, monkeypatch, airtable_client):
    make_source("appGone")
    airtable_client.bases = [{"id": "appNew", "name": "New Base"}]
    monkeypatch.setattr(factories, "discovery_adapters", lambda app=None: [("airtable", airtable_client)])

    result = reconcile_discovery.delay().get()

    (summary,) = result["sources"]
    assert summary["created"] == 1
    assert summary["retired_missing"] == 1


def test_reconcile_task_without_adapters(app, monkeypatch):
    monkeypatch.setattr(factories, "discovery_adapters", lambda app=None: [])

    assert reconcile_discovery.delay().get()["status"] == "skipped"


def test_list_catalog_task(app, use_loops):
    use_loops.lists = [{"id": "listA", "name": "A"}]

    result = sync_list_catalog.delay().get()

    assert result == {"status": "ok", "created": 1, "updated": 0, "deleted": 0}
    assert db.session.scalar(select(MailingList.list_id)) == "listA"


def test_refresh_contact_task_reseeds_subscriptions(app, use_loops):
    use_loops.contacts["jane@hackclub.com"] = {"email": "jane@hackclub.com", "mailingLists": {"listA": True}}

    result = refresh_contact_task.delay("Jane@HackClub.com").get()

    assert result == {"email": "jane@hackclub.com", "found": True, "fields": 0, "subscriptions": 1}
    assert db.session.scalar(select(ListSubscription.list_id)) == "listA"


def test_prune_outbox_task_removes_old_terminal_envelopes(app):
    old = datetime.now(timezone.utc) - timedelta(days=45)
    db.session.add_all(
        [
            OutboxEnvelope(email_normalized="a@b.com", payload={}, status=EnvelopeStatus.SENT, created_at=old),
            OutboxEnvelope(email_normalized="a@b.com", payload={}, status=EnvelopeStatus.QUEUED, created_at=old),
            OutboxEnvelope(email_normalized="a@b.com", payload={}, status=EnvelopeStatus.FAILED),
        ]
    )
    db.session.commit()

    result = prune_outbox_task.delay(days=30).get()

    assert result == {"deleted": 1, "days": 30}
    remaining = sorted(status.value for status in db.session.scalars(select(OutboxEnvelope.status)))
    assert remaining == ["failed", "queued"]
