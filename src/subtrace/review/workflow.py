"""
Decision engine and review workflow.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Optional

from ..confidence import REVIEW_FLOOR, is_auto_import_eligible
from ..errors import ImportConflict, PersistenceFailure
from ..schemas.detection import Detection, DetectionStatus, Subscription
from ..state_store import DetectionStore, UpsertOutcome

if TYPE_CHECKING:
    from ..services.notifications import Notifier

logger = logging.getLogger(__name__)


class DecisionOutcome(str, Enum):
    """What the engine did with one detection."""

    AUTO_IMPORTED = "auto_imported"
    PENDING_CREATED = "pending_created"
    PENDING_UPDATED = "pending_updated"
    PENDING_UNCHANGED = "pending_unchanged"
    EXISTING = "existing"  # Active subscription already tracks this service
    DUPLICATE = "duplicate"  # source_ref already reviewed
    IGNORED = "ignored"  # Below the review floor

    @property
    def is_pending(self) -> bool:
        return self in (
            DecisionOutcome.PENDING_CREATED,
            DecisionOutcome.PENDING_UPDATED,
            DecisionOutcome.PENDING_UNCHANGED,
        )


_PENDING_OUTCOMES = {
    UpsertOutcome.CREATED: DecisionOutcome.PENDING_CREATED,
    UpsertOutcome.UPDATED: DecisionOutcome.PENDING_UPDATED,
    UpsertOutcome.UNCHANGED: DecisionOutcome.PENDING_UNCHANGED,
    UpsertOutcome.DUPLICATE: DecisionOutcome.DUPLICATE,
}


@dataclass
class DecisionResult:
    """Decision for one detection."""

    outcome: DecisionOutcome
    detection: Detection  # Stored version when persisted, else the input
    subscription: Optional[Subscription] = None
    reason: str = ""


class DecisionEngine:
    """
    Decides the fate of each deduplicated detection.

    Rules (first match wins):
    0. confidence < 50 -> IGNORED, nothing persisted
    1. active subscription with the same service -> EXISTING
    2. source_ref already terminal -> DUPLICATE
    3. confirmed and confidence >= 85 -> AUTO_IMPORTED
       (falls back to pending if the import transaction fails)
    4. otherwise -> pending (created, updated or unchanged)
    """

    def __init__(self, store: DetectionStore, notifier: Optional[Notifier] = None):
        """Initialize with detection store and optional notification outbox."""
        self.store = store
        self.notifier = notifier

    def decide(self, user_id: str, detection: Detection) -> DecisionResult:
        """Apply the rules to one detection and persist the result."""
        name = detection.normalized_service_name

        if detection.confidence < REVIEW_FLOOR:
            logger.debug("Ignoring %s: confidence %d", name, detection.confidence)
            return DecisionResult(
                DecisionOutcome.IGNORED, detection, reason=f"confidence {detection.confidence}"
            )

        existing = self.store.get_active_subscription(user_id, name)
        if existing is not None:
            logger.debug("%s already tracked as subscription %s", name, existing.id)
            return DecisionResult(
                DecisionOutcome.EXISTING,
                detection,
                subscription=existing,
                reason="active subscription exists",
            )

        if is_auto_import_eligible(detection):
            try:
                stored, subscription = self.store.auto_import(user_id, detection)
            except ImportConflict as e:
                return DecisionResult(
                    DecisionOutcome.DUPLICATE, detection, reason=f"already {e.status}"
                )
            except PersistenceFailure as e:
                logger.error("Auto-import of %s failed, keeping it pending: %s", name, e)
            else:
                if self.notifier is not None:
                    self.notifier.notify_auto_import(user_id, stored, subscription)
                return DecisionResult(
                    DecisionOutcome.AUTO_IMPORTED,
                    stored,
                    subscription=subscription,
                    reason="confirmed with high confidence",
                )

        upsert, stored = self.store.upsert_pending(user_id, detection)
        outcome = _PENDING_OUTCOMES[upsert]
        if outcome == DecisionOutcome.DUPLICATE:
            return DecisionResult(outcome, stored, reason=f"already {stored.status.value}")
        return DecisionResult(outcome, stored, reason="needs review")

    def pending_reviews(self, user_id: str) -> list[Detection]:
        """Detections waiting for a user decision."""
        return self.store.list_detections(user_id, status=DetectionStatus.PENDING)

    def import_detection(self, user_id: str, detection_id: str) -> Subscription:
        """
        Import a pending detection as a real subscription.

        Raises:
            DetectionNotFound: Unknown detection id
            ImportConflict: Detection was already imported or rejected
        """
        return self.store.import_detection(user_id, detection_id)

    def reject_detection(self, user_id: str, detection_id: str) -> Detection:
        """
        Dismiss a pending detection.

        Raises:
            DetectionNotFound: Unknown detection id
            ImportConflict: Detection was already imported or rejected
        """
        return self.store.reject_detection(user_id, detection_id)
