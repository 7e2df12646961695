"""
Source-specific candidate extractors.

Strategies:
1. Recurrence detection over bank transactions
2. Oracle-backed extraction over emails
"""

from .base import CancellationToken, RateLimiter
from .email import EmailCandidateExtractor, ExtractionBatch, candidate_from_result
from .recurrence import (
    AMOUNT_TOLERANCE,
    CYCLE_BUCKETS,
    RecurrenceDetector,
    RecurringPattern,
    classify_cycle,
    normalize_merchant,
    score_pattern,
)

__all__ = [
    "AMOUNT_TOLERANCE",
    "CYCLE_BUCKETS",
    "CancellationToken",
    "EmailCandidateExtractor",
    "ExtractionBatch",
    "RateLimiter",
    "RecurrenceDetector",
    "RecurringPattern",
    "candidate_from_result",
    "classify_cycle",
    "normalize_merchant",
    "score_pattern",
]
