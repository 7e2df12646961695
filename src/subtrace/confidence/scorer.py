"""
Confidence bands for detections.
"""

from enum import Enum

from ..schemas.detection import BillingCycle, Detection

# Fixed business rules, not tunable per deployment
AUTO_IMPORT_THRESHOLD = 85  # At or above (and confirmed): auto-import
REVIEW_FLOOR = 50  # Below this: dropped without a reviewable item


class ConfidenceBand(str, Enum):
    """Coarse band a confidence value falls into."""

    AUTO = "AUTO"  # Eligible for auto-import if the evidence confirms it
    REVIEW = "REVIEW"  # Surfaced for manual review
    IGNORE = "IGNORE"  # Too weak to bother the user


def classify_confidence(confidence: int) -> ConfidenceBand:
    """
    Map a confidence percentage to its band.

    Rules:
    - AUTO: confidence >= 85
    - REVIEW: confidence >= 50
    - IGNORE: otherwise
    """
    if confidence >= AUTO_IMPORT_THRESHOLD:
        return ConfidenceBand.AUTO
    if confidence >= REVIEW_FLOOR:
        return ConfidenceBand.REVIEW
    return ConfidenceBand.IGNORE


def is_auto_import_eligible(detection: Detection) -> bool:
    """Confirmed evidence and a confidence in the AUTO band."""
    return (
        detection.confirms_subscription
        and classify_confidence(detection.confidence) == ConfidenceBand.AUTO
    )


def detection_issues(detection: Detection) -> list[str]:
    """
    List problems a reviewer should look at before importing.

    Used to annotate pending detections; does not change the decision.
    """
    issues = []

    if detection.amount is None:
        issues.append("Amount is missing")
    elif detection.amount == 0:
        issues.append("Amount is zero")

    if detection.billing_cycle == BillingCycle.UNKNOWN:
        issues.append("Billing cycle could not be determined")

    if not detection.normalized_service_name:
        issues.append("Service name is missing")

    if detection.evidence_count < 2 and not detection.confirms_subscription:
        issues.append("Single unconfirmed occurrence")

    return issues
