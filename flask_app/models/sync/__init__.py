"""
Sync engine models.
"""

from .baselines import DestinationFieldBaseline, FieldValueBaseline
from .coordination import RateLimitBucket, SyncLock
from .destination import ContactChangeAudit, ListSubscription, MailingList
from .extraction import ExtractionCacheEntry
from .outbox import EnvelopeStatus, OutboxEnvelope
from .sources import (
    Active,
    Deleted,
    DeletedReason,
    Lifecycle,
    SourceType,
    SyncSource,
    SyncSourceIgnore,
)

__all__ = [
    "Active",
    "ContactChangeAudit",
    "Deleted",
    "DeletedReason",
    "DestinationFieldBaseline",
    "EnvelopeStatus",
    "ExtractionCacheEntry",
    "FieldValueBaseline",
    "Lifecycle",
    "ListSubscription",
    "MailingList",
    "OutboxEnvelope",
    "RateLimitBucket",
    "SourceType",
    "SyncLock",
    "SyncSource",
    "SyncSourceIgnore",
]
