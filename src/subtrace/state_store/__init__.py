"""
Detection Store (SQLite-based).

Persistent repository for:
- Detections and their review state
- Subscriptions created on import
- Per-service price history
- Scan runs, notifications and cached Oracle answers

Enforces uniqueness on (user, source, source_ref) and at most one pending
detection per service.
"""

from ..errors import PersistenceFailure
from .sqlite_store import (
    DetectionStore,
    UpsertOutcome,
    detection_from_row,
    merge_into_pending,
    subscription_from_row,
)

__all__ = [
    "DetectionStore",
    "PersistenceFailure",
    "UpsertOutcome",
    "detection_from_row",
    "merge_into_pending",
    "subscription_from_row",
]
