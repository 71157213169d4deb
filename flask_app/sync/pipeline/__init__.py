"""Sync pipeline stages: discovery, polling, outbox and dispatch."""

from __future__ import annotations

from flask_app.utils.normalizers import canonical_json, canonicalize, normalize_email, normalize_source_value, values_equal

from .catalog import CatalogSyncSummary, catalog_is_empty, sync_mailing_lists, sync_mailing_lists_exclusively
from .change_detector import ChangeDetector, ChangeResult
from .contacts import RefreshSummary, refresh_contact_from_destination
from .dispatch import DispatchSummary, DispatchWorker, IdentityResult, apply_strategies, merge_envelopes
from .ignore_matcher import IgnoreMatcher, IgnorePatternError, add_ignore, remove_ignore, validate_pattern
from .locks import LIST_CATALOG_LOCK_KEY, identity_lock_key, source_poll_lock_key, try_lock
from .outbox import OutboxBuilder, destination_mapping, parse_list_ids
from .poller import AirtablePoller, PollSummary, build_filter_formula
from .rate_limiter import DatabaseBucketStore, RateLimiter
from .reconciler import DiscoveryReconciler, ReconcileSummary
from .scheduler import EnqueueSummary, SourceNotFoundError, SourceScheduler

__all__ = [
    "AirtablePoller",
    "CatalogSyncSummary",
    "ChangeDetector",
    "ChangeResult",
    "DatabaseBucketStore",
    "DiscoveryReconciler",
    "DispatchSummary",
    "DispatchWorker",
    "EnqueueSummary",
    "IdentityResult",
    "IgnoreMatcher",
    "IgnorePatternError",
    "LIST_CATALOG_LOCK_KEY",
    "OutboxBuilder",
    "PollSummary",
    "RateLimiter",
    "ReconcileSummary",
    "RefreshSummary",
    "SourceNotFoundError",
    "SourceScheduler",
    "add_ignore",
    "apply_strategies",
    "build_filter_formula",
    "canonical_json",
    "canonicalize",
    "catalog_is_empty",
    "destination_mapping",
    "identity_lock_key",
    "merge_envelopes",
    "normalize_email",
    "normalize_source_value",
    "parse_list_ids",
    "refresh_contact_from_destination",
    "remove_ignore",
    "source_poll_lock_key",
    "sync_mailing_lists",
    "sync_mailing_lists_exclusively",
    "try_lock",
    "validate_pattern",
    "values_equal",
]
