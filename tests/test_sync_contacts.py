from __future__ import annotations

from datetime import datetime, timezone

import pytest
from sqlalchemy import func, select

from flask_app.models import DestinationFieldBaseline, ListSubscription, db
from flask_app.sync.pipeline.contacts import (
    contact_list_ids,
    refresh_contact_from_destination,
    seed_list_subscriptions,
)

EMAIL = "jane@hackclub.com"
NOW = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


def _clock():
    return NOW


def _baselines():
    return {
        row.field_name: row.last_sent_value
        for row in db.session.scalars(
            select(DestinationFieldBaseline).where(DestinationFieldBaseline.email_normalized == EMAIL)
        )
    }


def _subscribed_lists():
    return sorted(db.session.scalars(select(ListSubscription.list_id).where(ListSubscription.email_normalized == EMAIL)))


@pytest.mark.parametrize(
    "contact, expected",
    [
        ({"mailingLists": {"listA": True, "listB": False}}, ["listA"]),
        ({"listMemberships": ["listA", "listC"]}, ["listA", "listC"]),
        ({"mailingLists": {"listA": True}, "listMemberships": ["listA", "listB"]}, ["listA", "listB"]),
        ({"mailingLists": None}, []),
        ({}, []),
    ],
)
def test_contact_list_ids(contact, expected):
    assert contact_list_ids(contact) == expected


def test_refresh_seeds_fields_and_subscriptions(loops_client):
    loops_client.contacts[EMAIL] = {
        "id": "contact-1",
        "email": EMAIL,
        "firstName": "Jane",
        "city": None,
        "mailingLists": {"listA": True},
    }

    summary = refresh_contact_from_destination(loops_client, "  Jane@HackClub.com ", clock=_clock)

    assert summary.as_dict() == {"email": EMAIL, "found": True, "fields": 1, "subscriptions": 1}
    assert loops_client.find_calls == [EMAIL]
    assert _baselines() == {"firstName": "Jane"}
    assert _subscribed_lists() == ["listA"]


def test_refresh_twice_updates_baselines_without_duplicate_subscriptions(loops_client):
    loops_client.contacts[EMAIL] = {"email": EMAIL, "firstName": "Jane", "listMemberships": ["listA"]}
    refresh_contact_from_destination(loops_client, EMAIL, clock=_clock)
    loops_client.contacts[EMAIL]["firstName"] = "Janet"

    summary = refresh_contact_from_destination(loops_client, EMAIL, clock=_clock)

    assert summary.subscriptions == 0
    assert _baselines() == {"firstName": "Janet"}
    assert db.session.scalar(select(func.count()).select_from(DestinationFieldBaseline)) == 1
    assert _subscribed_lists() == ["listA"]


def test_seed_list_subscriptions_skips_existing_rows():
    db.session.add(ListSubscription(email_normalized=EMAIL, list_id="listA", subscribed_at=NOW))
    db.session.commit()

    created = seed_list_subscriptions(db.session, EMAIL, {"mailingLists": ["listA", "listB"]}, now=NOW)
    db.session.commit()

    assert created == 1
    assert _subscribed_lists() == ["listA", "listB"]


def test_refresh_missing_contact_writes_nothing(loops_client):
    summary = refresh_contact_from_destination(loops_client, EMAIL, clock=_clock)

    assert summary.as_dict() == {"email": EMAIL, "found": False, "fields": 0, "subscriptions": 0}
    assert _baselines() == {}
    assert _subscribed_lists() == []


def test_refresh_rejects_blank_email(loops_client):
    with pytest.raises(ValueError):
        refresh_contact_from_destination(loops_client, "   ", clock=_clock)
    assert loops_client.find_calls == []
