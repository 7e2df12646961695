"""Candidate normalization and the service alias table."""

from .normalizer import (
    AliasEntry,
    AliasTable,
    CandidateNormalizer,
    detect_currency,
    normalize_service_name,
    parse_amount,
)

__all__ = [
    "AliasEntry",
    "AliasTable",
    "CandidateNormalizer",
    "detect_currency",
    "normalize_service_name",
    "parse_amount",
]
