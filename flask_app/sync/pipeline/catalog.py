"""Local mirror of the destination's mailing-list catalog."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable

from sqlalchemy import delete, func, select
from sqlalchemy.orm import Session

from flask_app.models.base import db
from flask_app.models.sync import MailingList

from ..adapters import DestinationAdapter
from .locks import LIST_CATALOG_LOCK_KEY, try_lock

logger = logging.getLogger(__name__)


@dataclass
class CatalogSyncSummary:
    created: int = 0
    updated: int = 0
    deleted: int = 0

    @property
    def total(self) -> int:
        return self.created + self.updated


def catalog_is_empty(session: Session | None = None) -> bool:
    session = session or db.session
    return not session.scalar(select(func.count()).select_from(MailingList))


def sync_mailing_lists(
    client: DestinationAdapter,
    *,
    session: Session | None = None,
    clock: Callable[[], datetime] | None = None,
) -> CatalogSyncSummary:
    """
    Upsert every list the destination returns and delete catalog rows it no
    longer returns. Subscriptions and audits keep their history.
    """
    session = session or db.session
    now = (clock or (lambda: datetime.now(timezone.utc)))()
    remote = client.list_mailing_lists()
    summary = CatalogSyncSummary()

    existing = {row.list_id: row for row in session.scalars(select(MailingList))}
    returned: set[str] = set()
    try:
        for item in remote:
            list_id = str(item.get("id") or "").strip()
            if not list_id:
                continue
            returned.add(list_id)
            row = existing.get(list_id)
            if row is None:
                row = MailingList(list_id=list_id)
                session.add(row)
                summary.created += 1
            else:
                summary.updated += 1
            row.name = str(item.get("name") or "")
            row.description = item.get("description")
            row.is_public = bool(item.get("isPublic"))
            row.synced_at = now

        stale = [list_id for list_id in existing if list_id not in returned]
        if stale:
            session.execute(
                delete(MailingList)
                .where(MailingList.list_id.in_(stale))
                .execution_options(synchronize_session=False)
            )
            summary.deleted = len(stale)
        session.commit()
    except Exception:
        session.rollback()
        raise

    logger.info(
        "Synced %s mailing list(s)",
        summary.total,
        extra={
            "sync_lists_created": summary.created,
            "sync_lists_updated": summary.updated,
            "sync_lists_deleted": summary.deleted,
        },
    )
    return summary


def sync_mailing_lists_exclusively(
    client: DestinationAdapter,
    *,
    session: Session | None = None,
    clock: Callable[[], datetime] | None = None,
) -> CatalogSyncSummary | None:
    """Run ``sync_mailing_lists`` under the catalog lock; ``None`` when another worker holds it."""
    with try_lock(LIST_CATALOG_LOCK_KEY) as acquired:
        if not acquired:
            logger.debug("Mailing list catalog sync already running elsewhere")
            return None
        return sync_mailing_lists(client, session=session, clock=clock)


__all__ = [
    "CatalogSyncSummary",
    "catalog_is_empty",
    "sync_mailing_lists",
    "sync_mailing_lists_exclusively",
]
