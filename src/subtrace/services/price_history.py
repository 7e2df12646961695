"""Price history tracking.

Keeps an append-only ledger of observed prices per (user, service) and
derives PriceChange events when a new observation differs from the latest
comparable one.
"""

from __future__ import annotations

import logging
from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING

from ..schemas.detection import (
    BillingCycle,
    Detection,
    PriceChange,
    PriceHistoryEntry,
    PriceTrend,
    utcnow,
)

if TYPE_CHECKING:
    from ..state_store import DetectionStore

logger = logging.getLogger(__name__)

PERCENT_QUANTUM = Decimal("0.01")


def cycles_compatible(a: BillingCycle, b: BillingCycle) -> bool:
    """Prices are comparable across equal cycles, or when either is unknown."""
    return a == b or BillingCycle.UNKNOWN in (a, b)


def _comparable(latest: PriceHistoryEntry, entry: PriceHistoryEntry) -> bool:
    return latest.currency == entry.currency and cycles_compatible(
        latest.billing_cycle, entry.billing_cycle
    )


def _should_append(latest: PriceHistoryEntry | None, entry: PriceHistoryEntry) -> bool:
    """A point is recorded unless it repeats the latest comparable price."""
    if latest is None:
        return True
    return not (_comparable(latest, entry) and latest.amount == entry.amount)


def compute_price_change(
    service_name: str,
    old: Decimal,
    new: Decimal,
    currency: str,
    detected_at: datetime | None = None,
) -> PriceChange:
    """Build a PriceChange; the percentage is relative to the old price."""
    delta = new - old
    percentage = None
    if old != 0:
        percentage = (delta / old * 100).quantize(PERCENT_QUANTUM)
    return PriceChange(
        service_name=service_name,
        old_price=old,
        new_price=new,
        currency=currency,
        change_amount=delta,
        change_percentage=percentage,
        trend=PriceTrend.INCREASE if delta > 0 else PriceTrend.DECREASE,
        detected_at=detected_at or utcnow(),
    )


class PriceHistoryTracker:
    """Compares detections against the price ledger."""

    def __init__(self, store: DetectionStore) -> None:
        self.store = store

    def track(
        self, user_id: str, detection: Detection, observed_at: datetime | None = None
    ) -> PriceChange | None:
        """
        Record the detection's price and report a change if there is one.

        1. No amount -> nothing recorded.
        2. No history -> first point appended, no event.
        3. Different currency or incompatible cycle -> new baseline, no event.
        4. Same amount -> nothing recorded.
        5. Different amount -> point appended, PriceChange returned.

        observed_at is clamped so the ledger never goes back in time.
        """
        if detection.amount is None:
            return None

        service = detection.normalized_service_name
        entry = PriceHistoryEntry(
            service_name=service,
            amount=detection.amount,
            currency=detection.currency,
            billing_cycle=detection.billing_cycle,
            observed_at=observed_at or utcnow(),
        )

        latest, appended = self.store.record_price(
            user_id, entry, _should_append, detection.source_ref
        )
        if appended is None:
            return None

        if latest is None:
            logger.debug("First price point for %s: %s", service, appended.amount)
            return None

        if not _comparable(latest, appended):
            logger.info(
                "New price baseline for %s (%s %s -> %s %s)",
                service,
                latest.currency,
                latest.billing_cycle.value,
                appended.currency,
                appended.billing_cycle.value,
            )
            return None

        change = compute_price_change(service, latest.amount, appended.amount, appended.currency)
        logger.info(
            "Price %s for %s: %s -> %s %s",
            change.trend.value,
            service,
            change.old_price,
            change.new_price,
            change.currency,
        )
        return change
