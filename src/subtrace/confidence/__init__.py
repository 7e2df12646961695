"""
Confidence module.

Maps detection confidence onto auto-import / review / ignore bands.
"""

from .scorer import (
    AUTO_IMPORT_THRESHOLD,
    REVIEW_FLOOR,
    ConfidenceBand,
    classify_confidence,
    detection_issues,
    is_auto_import_eligible,
)

__all__ = [
    "AUTO_IMPORT_THRESHOLD",
    "REVIEW_FLOOR",
    "ConfidenceBand",
    "classify_confidence",
    "detection_issues",
    "is_auto_import_eligible",
]
