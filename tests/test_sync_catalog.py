from __future__ import annotations

from sqlalchemy import select

from flask_app.models import ListSubscription, MailingList, db
from flask_app.sync.pipeline.catalog import catalog_is_empty, sync_mailing_lists, sync_mailing_lists_exclusively
from flask_app.sync.pipeline.locks import LIST_CATALOG_LOCK_KEY, try_lock


def test_sync_upserts_and_removes_lists(app, loops_client):
    db.session.add_all(
        [
            MailingList(list_id="listOld", name="Old"),
            MailingList(list_id="listKeep", name="Keep (stale name)"),
        ]
    )
    db.session.add(ListSubscription(email_normalized="a@b.com", list_id="listOld"))
    db.session.commit()
    loops_client.lists = [
        {"id": "listKeep", "name": "Keep", "description": "Weekly", "isPublic": True},
        {"id": "listNew", "name": "New"},
        {"name": "no id"},
    ]

    summary = sync_mailing_lists(loops_client, session=db.session)

    assert (summary.created, summary.updated, summary.deleted) == (1, 1, 1)
    rows = {row.list_id: row for row in db.session.scalars(select(MailingList))}
    assert set(rows) == {"listKeep", "listNew"}
    assert rows["listKeep"].name == "Keep"
    assert rows["listKeep"].is_public is True
    assert rows["listNew"].description is None
    # Subscription history is kept even when the list disappears.
    assert db.session.scalar(select(ListSubscription.list_id)) == "listOld"


def test_catalog_is_empty(app):
    assert catalog_is_empty(db.session)
    db.session.add(MailingList(list_id="listA", name="A"))
    db.session.commit()
    assert not catalog_is_empty(db.session)


def test_exclusive_sync_skips_while_locked(app, loops_client):
    loops_client.lists = [{"id": "listA", "name": "A"}]

    with try_lock(LIST_CATALOG_LOCK_KEY) as acquired:
        assert acquired
        assert sync_mailing_lists_exclusively(loops_client, session=db.session) is None
    assert loops_client.list_calls == 0

    summary = sync_mailing_lists_exclusively(loops_client, session=db.session)
    assert summary.created == 1
