"""Notification outbox.

Writes user-facing events to the store's notifications table. Delivery
(email, push, in-app) reads the outbox and is not part of this package.
"""

from __future__ import annotations

import logging
import sqlite3
from decimal import Decimal
from typing import TYPE_CHECKING, Any

from ..schemas.detection import Detection, PriceChange, PriceTrend, Subscription

if TYPE_CHECKING:
    from ..state_store import DetectionStore

logger = logging.getLogger(__name__)

KIND_AUTO_IMPORT = "auto_import"
KIND_PRICE_CHANGE = "price_change"
KIND_SCAN_COMPLETED = "scan_completed"


def _money(amount: Decimal | None, currency: str) -> str:
    if amount is None:
        return "N/A"
    return f"{currency} {amount:.2f}"


def _plural(count: int, word: str) -> str:
    return f"{count} {word}{'' if count == 1 else 's'}"


class Notifier:
    """Records notifications for a user.

    A failed write is logged and skipped: the event it describes has
    already been committed and must not be undone by the outbox.
    """

    def __init__(self, store: DetectionStore) -> None:
        self.store = store

    def _add(
        self, user_id: str, kind: str, title: str, message: str, payload: dict[str, Any]
    ) -> int | None:
        try:
            return self.store.add_notification(user_id, kind, title, message, payload)
        except sqlite3.Error as e:
            logger.warning("Could not record %s notification for %s: %s", kind, user_id, e)
            return None

    def notify_auto_import(
        self, user_id: str, detection: Detection, subscription: Subscription
    ) -> int | None:
        name = subscription.name
        return self._add(
            user_id,
            KIND_AUTO_IMPORT,
            title=f"Auto-imported: {name}",
            message=(
                f"{name} was automatically added to your subscriptions "
                f"({_money(subscription.amount, subscription.currency)})"
            ),
            payload={
                "service": detection.normalized_service_name,
                "detection_id": detection.id,
                "subscription_id": subscription.id,
                "amount": str(subscription.amount) if subscription.amount is not None else None,
                "currency": subscription.currency,
                "confidence": detection.confidence,
            },
        )

    def notify_price_change(self, user_id: str, change: PriceChange) -> int | None:
        direction = "increased" if change.trend == PriceTrend.INCREASE else "decreased"
        return self._add(
            user_id,
            KIND_PRICE_CHANGE,
            title=f"Price {direction}: {change.service_name}",
            message=(
                f"{change.service_name} price {direction} from "
                f"{_money(change.old_price, change.currency)} to "
                f"{_money(change.new_price, change.currency)}"
            ),
            payload=change.to_dict(),
        )

    def notify_scan_completed(
        self, user_id: str, kind: str, found: int, auto_imported: int, pending_review: int
    ) -> int | None:
        message = f"Scan complete! {_plural(found, 'subscription')} detected"
        if auto_imported:
            message += f", {auto_imported} auto-imported"
        if pending_review:
            message += f", {pending_review} waiting for review"
        return self._add(
            user_id,
            KIND_SCAN_COMPLETED,
            title="Bank Scan Completed" if kind == "bank" else "Email Scan Completed",
            message=message,
            payload={
                "kind": kind,
                "found": found,
                "auto_imported": auto_imported,
                "pending_review": pending_review,
            },
        )
