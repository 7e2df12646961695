"""Intra-batch deduplication of normalized detections.

One ingestion run may see the same service several times: multiple receipts
for the same plan, or an email and a bank pattern for the same charge. The
deduplicator keeps one representative per normalized service name.

Cross-batch duplicates and already-subscribed services are the decision
engine's concern, since they require persisted state.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from subtrace.schemas.detection import Detection

logger = logging.getLogger(__name__)


def _rank(detection: Detection) -> tuple:
    # Highest confidence first, populated amount before empty on ties
    return (
        -detection.confidence,
        detection.amount is None,
        detection.normalized_service_name,
        detection.source.value,
        detection.source_ref,
    )


@dataclass
class DedupResult:
    """Representatives plus which source refs were folded into each."""

    detections: list[Detection] = field(default_factory=list)
    merged_refs: dict[str, list[str]] = field(default_factory=dict)
    dropped: int = 0

    @property
    def merged_count(self) -> int:
        return sum(len(refs) for refs in self.merged_refs.values())


class Deduplicator:
    """Keep one Detection per normalized service name.

    Rules:
    - The highest-confidence candidate is the representative
    - A lower-ranked duplicate may only fill an empty amount (currency travels with it)
    - Evidence counts of merged duplicates are summed
    - Candidates without a service name are dropped

    Inputs are never mutated. dedup(dedup(x)) == dedup(x).
    """

    def deduplicate(self, detections: list[Detection]) -> DedupResult:
        result = DedupResult()
        kept: dict[str, Detection] = {}

        for detection in sorted(detections, key=_rank):
            key = detection.normalized_service_name
            if not key:
                result.dropped += 1
                logger.debug("Dropping detection %s without service name", detection.source_ref)
                continue

            representative = kept.get(key)
            if representative is None:
                kept[key] = detection.copy()
                continue

            if representative.amount is None and detection.amount is not None:
                representative.amount = detection.amount
                representative.currency = detection.currency
                logger.debug(
                    "Filled amount for %s from %s", key, detection.source_ref
                )

            representative.evidence_count += detection.evidence_count
            for ref in detection.evidence_refs:
                if ref not in representative.evidence_refs:
                    representative.evidence_refs.append(ref)
            for ref in [(detection.source, detection.source_ref), *detection.merged_refs]:
                if ref not in representative.merged_refs:
                    representative.merged_refs.append(ref)
            result.merged_refs.setdefault(key, []).append(detection.source_ref)

        # Re-rank after enrichment so a second pass sees the same order
        result.detections = sorted(kept.values(), key=_rank)
        if result.merged_refs or result.dropped:
            logger.info(
                "Dedup: %d in, %d unique, %d merged, %d dropped",
                len(detections),
                len(result.detections),
                result.merged_count,
                result.dropped,
            )
        return result

    def __call__(self, detections: list[Detection]) -> list[Detection]:
        return self.deduplicate(detections).detections
