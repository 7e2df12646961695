"""Intra-batch deduplication of detections."""

from subtrace.matching.deduplicator import DedupResult, Deduplicator

__all__ = ["DedupResult", "Deduplicator"]
