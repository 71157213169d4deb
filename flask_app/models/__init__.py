# flask_app/models/__init__.py
"""
Database models package
"""

from .base import BaseModel, db
from .sync import (
    Active,
    ContactChangeAudit,
    Deleted,
    DeletedReason,
    DestinationFieldBaseline,
    EnvelopeStatus,
    ExtractionCacheEntry,
    FieldValueBaseline,
    Lifecycle,
    ListSubscription,
    MailingList,
    OutboxEnvelope,
    RateLimitBucket,
    SourceType,
    SyncLock,
    SyncSource,
    SyncSourceIgnore,
)

__all__ = [
    "db",
    "BaseModel",
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
