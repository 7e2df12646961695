"""
Tests for the email candidate extractor and shared extraction primitives.
"""

import threading
import time
from datetime import date

import pytest

from fixtures import ScriptedOracle, make_email, subscription_answer
from subtrace.extractors import (
    CancellationToken,
    EmailCandidateExtractor,
    RateLimiter,
    candidate_from_result,
)
from subtrace.oracle import OracleResult
from subtrace.schemas.detection import BillingCycle, DetectionSource, EmailType


class FakeClock:
    def __init__(self):
        self.now = 100.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class TestRateLimiter:
    def test_first_call_immediate(self):
        clock = FakeClock()
        limiter = RateLimiter(0.5, clock=clock, sleep=clock.sleep)
        assert limiter.wait() is True
        assert clock.sleeps == []

    def test_interval_enforced(self):
        clock = FakeClock()
        limiter = RateLimiter(0.5, clock=clock, sleep=clock.sleep)
        limiter.wait()
        clock.now += 0.2
        limiter.wait()
        assert clock.sleeps == [pytest.approx(0.3)]

    def test_no_sleep_after_interval_elapsed(self):
        clock = FakeClock()
        limiter = RateLimiter(0.5, clock=clock, sleep=clock.sleep)
        limiter.wait()
        clock.now += 1.0
        limiter.wait()
        assert clock.sleeps == []

    def test_negative_interval_rejected(self):
        with pytest.raises(ValueError):
            RateLimiter(-1)

    def test_cancelled_token_stops_wait(self):
        token = CancellationToken()
        token.cancel()
        assert RateLimiter(0).wait(token) is False

    def test_interval_counted_from_mark(self):
        clock = FakeClock()
        limiter = RateLimiter(0.5, clock=clock, sleep=clock.sleep)
        limiter.wait()
        clock.now += 2.0
        limiter.mark()
        limiter.wait()
        assert clock.sleeps == [pytest.approx(0.5)]


class TestCandidateFromResult:
    def test_not_subscription(self):
        assert candidate_from_result(make_email("m1"), OracleResult.not_subscription()) is None

    def test_subscription_without_name_dropped(self):
        result = OracleResult(is_subscription=True, confidence=80)
        assert candidate_from_result(make_email("m1"), result) is None

    def test_fields_mapped(self):
        candidate = candidate_from_result(make_email("m1"), subscription_answer("Netflix"))

        assert candidate.source == DetectionSource.EMAIL
        assert candidate.source_ref == "m1"
        assert candidate.raw_service_name == "Netflix"
        assert candidate.amount == 649
        assert candidate.billing_cycle == BillingCycle.MONTHLY
        assert candidate.email_type == EmailType.CONFIRMED_SUBSCRIPTION
        assert candidate.is_confirmation_email is True
        assert candidate.last_seen == date(2024, 3, 1)

    def test_missing_cycle_defaults_monthly_for_confirmed(self):
        answer = subscription_answer("Netflix", billing_cycle=None)
        candidate = candidate_from_result(make_email("m1"), answer)
        assert candidate.billing_cycle == BillingCycle.MONTHLY

    def test_missing_cycle_unknown_otherwise(self):
        answer = subscription_answer("Netflix", billing_cycle=None, email_type="other")
        candidate = candidate_from_result(make_email("m1"), answer)
        assert candidate.billing_cycle == BillingCycle.UNKNOWN

    def test_missing_amount_stays_missing(self):
        answer = subscription_answer("Netflix", amount=None)
        assert candidate_from_result(make_email("m1"), answer).amount is None

    def test_confidence_clamped(self):
        answer = subscription_answer("Netflix", confidence=140)
        assert candidate_from_result(make_email("m1"), answer).confidence == 100


class TestEmailCandidateExtractor:
    def test_counts(self, no_wait_limiter):
        oracle = ScriptedOracle(
            {"m1": subscription_answer("Netflix"), "m3": subscription_answer("Spotify", 119)},
            failures={"m2"},
        )
        emails = [make_email(f"m{i}") for i in range(1, 5)]

        batch = EmailCandidateExtractor(oracle, rate_limiter=no_wait_limiter).extract(emails)

        assert batch.scanned == 4
        assert batch.failed == 1
        assert batch.usable == 2
        assert [c.raw_service_name for c in batch.candidates] == ["Netflix", "Spotify"]
        assert batch.cancelled is False

    def test_not_subscription_only_scanned(self, no_wait_limiter):
        oracle = ScriptedOracle({})
        batch = EmailCandidateExtractor(oracle, rate_limiter=no_wait_limiter).extract(
            [make_email("m1")]
        )
        assert batch.scanned == 1
        assert batch.usable == 0
        assert batch.failed == 0

    def test_unexpected_error_counted(self, no_wait_limiter):
        class BrokenOracle:
            def extract(self, email):
                raise RuntimeError("boom")

        batch = EmailCandidateExtractor(BrokenOracle(), rate_limiter=no_wait_limiter).extract(
            [make_email("m1"), make_email("m2")]
        )
        assert batch.failed == 2
        assert batch.scanned == 2

    def test_cancelled_before_start(self, no_wait_limiter):
        oracle = ScriptedOracle({"m1": subscription_answer("Netflix")})
        token = CancellationToken()
        token.cancel()

        batch = EmailCandidateExtractor(oracle, rate_limiter=no_wait_limiter).extract(
            [make_email("m1")], cancel_token=token
        )

        assert batch.cancelled is True
        assert batch.scanned == 0
        assert oracle.calls == []

    def test_cancel_mid_batch_keeps_earlier_candidates(self, no_wait_limiter):
        token = CancellationToken()

        class CancellingOracle(ScriptedOracle):
            def extract(self, email):
                result = super().extract(email)
                token.cancel()
                return result

        oracle = CancellingOracle({"m1": subscription_answer("Netflix")})
        batch = EmailCandidateExtractor(oracle, rate_limiter=no_wait_limiter).extract(
            [make_email("m1"), make_email("m2")], cancel_token=token
        )

        assert batch.cancelled is True
        assert batch.usable == 1
        assert oracle.calls == ["m1"]

    def test_stalled_call_times_out(self, no_wait_limiter):
        class SlowOracle:
            def extract(self, email):
                time.sleep(0.5)
                return subscription_answer("Netflix")

        extractor = EmailCandidateExtractor(
            SlowOracle(), rate_limiter=no_wait_limiter, call_timeout=0.05
        )
        batch = extractor.extract([make_email("m1")])

        assert batch.failed == 1
        assert batch.usable == 0

    def test_delay_between_slow_calls(self):
        clock = FakeClock()

        class SlowOracle(ScriptedOracle):
            def extract(self, email):
                clock.now += 2.0
                return super().extract(email)

        limiter = RateLimiter(0.5, clock=clock, sleep=clock.sleep)
        extractor = EmailCandidateExtractor(SlowOracle({}), rate_limiter=limiter)

        batch = extractor.extract([make_email(f"m{i}") for i in range(3)])

        assert batch.scanned == 3
        assert clock.sleeps == [pytest.approx(0.5), pytest.approx(0.5)]

    def test_delay_applies_after_failed_call(self):
        clock = FakeClock()

        class FailingOracle(ScriptedOracle):
            def extract(self, email):
                clock.now += 2.0
                return super().extract(email)

        limiter = RateLimiter(0.5, clock=clock, sleep=clock.sleep)
        extractor = EmailCandidateExtractor(
            FailingOracle({}, failures={"m0"}), rate_limiter=limiter
        )

        batch = extractor.extract([make_email("m0"), make_email("m1")])

        assert batch.failed == 1
        assert clock.sleeps == [pytest.approx(0.5)]

    def test_worker_thread_reused(self, no_wait_limiter):
        threads = []

        class RecordingOracle(ScriptedOracle):
            def extract(self, email):
                threads.append(threading.get_ident())
                return super().extract(email)

        extractor = EmailCandidateExtractor(RecordingOracle({}), rate_limiter=no_wait_limiter)
        extractor.extract([make_email(f"m{i}") for i in range(3)])
        extractor.close()

        assert len(threads) == 3
        assert len(set(threads)) == 1

    def test_fresh_worker_after_stall(self, no_wait_limiter):
        threads = {}

        class StallOnceOracle:
            def extract(self, email):
                threads[email.id] = threading.get_ident()
                if email.id == "m1":
                    time.sleep(0.5)
                return subscription_answer("Netflix")

        extractor = EmailCandidateExtractor(
            StallOnceOracle(), rate_limiter=no_wait_limiter, call_timeout=0.05
        )
        batch = extractor.extract([make_email("m1"), make_email("m2")])
        extractor.close()

        assert batch.failed == 1
        assert batch.usable == 1
        assert threads["m1"] != threads["m2"]
