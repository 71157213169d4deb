"""
Seed local destination state from a contact as the destination reports it.

Used when dispatch meets a contact it has no baselines for, and by the
refresh operation that re-reads a contact on demand.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Mapping

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from flask_app.models.base import db
from flask_app.models.sync import DestinationFieldBaseline, ListSubscription
from flask_app.models.sync.baselines import DEFAULT_DESTINATION_TTL_DAYS
from flask_app.utils.normalizers import canonicalize, normalize_email

from ..adapters import DestinationAdapter
from ..adapters.loops.client import SYSTEM_FIELDS

logger = logging.getLogger(__name__)

LIST_MEMBERSHIP_KEYS = ("mailingLists", "listMemberships")


@dataclass
class RefreshSummary:
    email_normalized: str
    found: bool
    fields: int = 0
    subscriptions: int = 0

    def as_dict(self) -> dict[str, Any]:
        return {
            "email": self.email_normalized,
            "found": self.found,
            "fields": self.fields,
            "subscriptions": self.subscriptions,
        }


def contact_list_ids(contact: Mapping[str, Any]) -> list[str]:
    """List ids the contact is subscribed to; ``{listId: true}`` maps and plain lists are accepted."""
    ids: list[str] = []
    for key in LIST_MEMBERSHIP_KEYS:
        memberships = contact.get(key)
        if isinstance(memberships, Mapping):
            candidates = [list_id for list_id, subscribed in memberships.items() if subscribed]
        elif isinstance(memberships, (list, tuple)):
            candidates = [item for item in memberships if item]
        else:
            continue
        for list_id in candidates:
            if str(list_id) not in ids:
                ids.append(str(list_id))
    return ids


def seed_field_baselines(
    session: Session,
    email_normalized: str,
    contact: Mapping[str, Any],
    *,
    now: datetime,
    expires_in_days: int = DEFAULT_DESTINATION_TTL_DAYS,
) -> int:
    """Create or refresh a baseline for every non-system, non-null contact field."""
    existing = {
        row.field_name: row
        for row in session.scalars(
            select(DestinationFieldBaseline).where(DestinationFieldBaseline.email_normalized == email_normalized)
        )
    }
    seeded = 0
    for name, value in contact.items():
        if name in SYSTEM_FIELDS or value is None:
            continue
        baseline = existing.get(name)
        if baseline is None:
            baseline = DestinationFieldBaseline(email_normalized=email_normalized, field_name=name)
            session.add(baseline)
        baseline.update_sent_value(canonicalize(value), now=now, expires_in_days=expires_in_days)
        seeded += 1
    return seeded


def seed_list_subscriptions(
    session: Session,
    email_normalized: str,
    contact: Mapping[str, Any],
    *,
    now: datetime,
) -> int:
    """Record subscriptions the destination already has; returns how many were new."""
    created = 0
    for list_id in contact_list_ids(contact):
        try:
            with session.begin_nested():
                session.add(ListSubscription(email_normalized=email_normalized, list_id=list_id, subscribed_at=now))
        except IntegrityError:
            continue
        created += 1
    return created


def refresh_contact_from_destination(
    client: DestinationAdapter,
    email: str,
    *,
    session: Session | None = None,
    clock: Callable[[], datetime] | None = None,
    expires_in_days: int = DEFAULT_DESTINATION_TTL_DAYS,
) -> RefreshSummary:
    """Re-read one contact and reseed its field baselines and list subscriptions."""
    session = session or db.session
    email_normalized = normalize_email(email)
    if email_normalized is None:
        raise ValueError(f"Invalid email: {email!r}")

    contact = client.find_contact(email_normalized)
    if contact is None:
        logger.warning("Contact not found at destination", extra={"sync_email": email_normalized})
        return RefreshSummary(email_normalized=email_normalized, found=False)

    now = (clock or (lambda: datetime.now(timezone.utc)))()
    try:
        summary = RefreshSummary(
            email_normalized=email_normalized,
            found=True,
            fields=seed_field_baselines(session, email_normalized, contact, now=now, expires_in_days=expires_in_days),
            subscriptions=seed_list_subscriptions(session, email_normalized, contact, now=now),
        )
        session.commit()
    except Exception:
        session.rollback()
        raise
    logger.info(
        "Refreshed contact from destination",
        extra={"sync_email": email_normalized, "sync_fields": summary.fields, "sync_subscriptions": summary.subscriptions},
    )
    return summary


__all__ = [
    "RefreshSummary",
    "contact_list_ids",
    "refresh_contact_from_destination",
    "seed_field_baselines",
    "seed_list_subscriptions",
]
