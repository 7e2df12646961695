"""
SSOT (Single Source of Truth) schemas for the pipeline.

These canonical schemas are the ONLY models used across all modules.
No duplicated "near-same" models allowed.
"""

from .dedupe import (
    BANK_REF_PREFIX,
    HASH_PREFIX_LENGTH,
    bank_source_ref,
    compute_transaction_id,
    email_source_ref,
    is_bank_source_ref,
)
from .detection import (
    CONFIDENCE_MAX,
    CONFIDENCE_MIN,
    BillingCycle,
    Category,
    Detection,
    DetectionSource,
    DetectionStatus,
    EmailType,
    PriceChange,
    PriceHistoryEntry,
    PriceTrend,
    RawCandidate,
    Subscription,
    SubscriptionOrigin,
    clamp_confidence,
    utcnow,
)

__all__ = [
    # Source refs
    "BANK_REF_PREFIX",
    "HASH_PREFIX_LENGTH",
    "bank_source_ref",
    "compute_transaction_id",
    "email_source_ref",
    "is_bank_source_ref",
    # Detection
    "CONFIDENCE_MAX",
    "CONFIDENCE_MIN",
    "BillingCycle",
    "Category",
    "Detection",
    "DetectionSource",
    "DetectionStatus",
    "EmailType",
    "PriceChange",
    "PriceHistoryEntry",
    "PriceTrend",
    "RawCandidate",
    "Subscription",
    "SubscriptionOrigin",
    "clamp_confidence",
    "utcnow",
]
