"""
Tests for price history tracking.
"""

import threading
import time
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import patch

from fixtures import USER, make_detection
from subtrace.schemas.detection import BillingCycle, PriceTrend
from subtrace.services import PriceHistoryTracker, compute_price_change
from subtrace.services.price_history import cycles_compatible
from subtrace.state_store import DetectionStore

T0 = datetime(2024, 1, 1, tzinfo=timezone.utc)


def spotify(amount, **kwargs):
    kwargs.setdefault("source_ref", f"msg-spotify-{amount}")
    return make_detection("spotify", amount=amount, **kwargs)


class TestComputePriceChange:
    def test_increase(self):
        change = compute_price_change("spotify", Decimal("119"), Decimal("129"), "INR")

        assert change.trend == PriceTrend.INCREASE
        assert change.change_amount == Decimal("10")
        assert change.change_percentage == Decimal("8.40")

    def test_decrease(self):
        change = compute_price_change("netflix", Decimal("649"), Decimal("499"), "INR")

        assert change.trend == PriceTrend.DECREASE
        assert change.change_amount == Decimal("-150")
        assert change.change_percentage == Decimal("-23.11")

    def test_zero_old_price(self):
        change = compute_price_change("trial", Decimal("0"), Decimal("99"), "INR")

        assert change.trend == PriceTrend.INCREASE
        assert change.change_percentage is None
        assert change.to_dict()["change_percentage"] is None

    def test_to_dict(self):
        change = compute_price_change("spotify", Decimal("119"), Decimal("129"), "INR")
        assert change.to_dict() == {
            "service": "spotify",
            "old": "119",
            "new": "129",
            "currency": "INR",
            "change_amount": "10",
            "change_percentage": "8.40",
            "trend": "increase",
        }


class TestCyclesCompatible:
    def test_equal(self):
        assert cycles_compatible(BillingCycle.MONTHLY, BillingCycle.MONTHLY)

    def test_unknown_matches_anything(self):
        assert cycles_compatible(BillingCycle.UNKNOWN, BillingCycle.YEARLY)
        assert cycles_compatible(BillingCycle.MONTHLY, BillingCycle.UNKNOWN)

    def test_different(self):
        assert not cycles_compatible(BillingCycle.MONTHLY, BillingCycle.YEARLY)


class TestPriceHistoryTracker:
    def test_first_observation_records_baseline(self, store):
        tracker = PriceHistoryTracker(store)

        assert tracker.track(USER, spotify("119"), observed_at=T0) is None

        history = store.get_price_history(USER, "spotify")
        assert [e.amount for e in history] == [Decimal("119")]

    def test_increase_detected(self, store):
        tracker = PriceHistoryTracker(store)
        tracker.track(USER, spotify("119"), observed_at=T0)

        change = tracker.track(USER, spotify("129"), observed_at=T0 + timedelta(days=30))

        assert change.service_name == "spotify"
        assert change.old_price == Decimal("119")
        assert change.new_price == Decimal("129")
        assert change.change_percentage == Decimal("8.40")
        assert len(store.get_price_history(USER, "spotify")) == 2

    def test_same_amount_adds_nothing(self, store):
        tracker = PriceHistoryTracker(store)
        tracker.track(USER, spotify("119"), observed_at=T0)

        assert tracker.track(USER, spotify("119"), observed_at=T0 + timedelta(days=30)) is None
        assert len(store.get_price_history(USER, "spotify")) == 1

    def test_missing_amount_ignored(self, store):
        assert PriceHistoryTracker(store).track(USER, spotify(None)) is None
        assert store.get_price_history(USER) == []

    def test_currency_change_is_new_baseline(self, store):
        tracker = PriceHistoryTracker(store)
        tracker.track(USER, spotify("119"), observed_at=T0)

        change = tracker.track(
            USER, spotify("9.99", currency="USD"), observed_at=T0 + timedelta(days=30)
        )

        assert change is None
        assert store.get_latest_price(USER, "spotify").currency == "USD"

        # Next comparison is against the new baseline
        change = tracker.track(
            USER, spotify("10.99", currency="USD"), observed_at=T0 + timedelta(days=60)
        )
        assert change.old_price == Decimal("9.99")

    def test_cycle_change_is_new_baseline(self, store):
        tracker = PriceHistoryTracker(store)
        tracker.track(USER, spotify("119"), observed_at=T0)

        change = tracker.track(
            USER,
            spotify("1189", billing_cycle=BillingCycle.YEARLY),
            observed_at=T0 + timedelta(days=30),
        )

        assert change is None
        assert len(store.get_price_history(USER, "spotify")) == 2

    def test_observed_at_never_goes_backwards(self, store):
        tracker = PriceHistoryTracker(store)
        tracker.track(USER, spotify("119"), observed_at=T0)

        tracker.track(USER, spotify("129"), observed_at=T0 - timedelta(days=10))

        latest = store.get_latest_price(USER, "spotify")
        assert latest.amount == Decimal("129")
        assert latest.observed_at == T0

    def test_services_tracked_separately(self, store):
        tracker = PriceHistoryTracker(store)
        tracker.track(USER, spotify("119"), observed_at=T0)

        assert tracker.track(USER, make_detection("netflix", amount="649"), observed_at=T0) is None
        assert len(store.get_price_history(USER)) == 2

    def test_concurrent_scans_record_one_point(self, store, temp_db):
        netflix = make_detection("netflix", amount="649")
        other_scan = PriceHistoryTracker(DetectionStore(temp_db))
        other_result = {}
        other = threading.Thread(
            target=lambda: other_result.setdefault("change", other_scan.track(USER, netflix))
        )
        record_price = store.record_price

        def record_while_other_scan_runs(user_id, entry, should_append, source_ref=None):
            def decide(latest, candidate):
                # The other scan reaches the ledger while this one holds it
                other.start()
                time.sleep(0.2)
                return should_append(latest, candidate)

            return record_price(user_id, entry, decide, source_ref)

        with patch.object(store, "record_price", side_effect=record_while_other_scan_runs):
            PriceHistoryTracker(store).track(USER, netflix)
        other.join(timeout=10)

        assert [e.amount for e in store.get_price_history(USER, "netflix")] == [Decimal("649")]
        assert other_result["change"] is None
