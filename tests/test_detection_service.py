"""
End-to-end tests for the detection pipeline.

Sources and the Oracle are in-memory fakes; everything else (normalizer,
deduplicator, price tracker, decision engine, store) is real.
"""

from datetime import date, datetime, timedelta, timezone

import pytest

from fixtures import (
    USER,
    InMemoryEmailSource,
    InMemoryTransactionSource,
    ScriptedOracle,
    make_candidate,
    make_email,
    make_transactions,
    monthly_dates,
    subscription_answer,
)
from subtrace.config import Config
from subtrace.extractors import CancellationToken
from subtrace.review import DecisionOutcome
from subtrace.schemas.detection import DetectionSource, DetectionStatus, PriceTrend
from subtrace.services import DetectionService
from subtrace.services.notifications import (
    KIND_AUTO_IMPORT,
    KIND_PRICE_CHANGE,
    KIND_SCAN_COMPLETED,
)
from subtrace.sources import SourceUnavailable


@pytest.fixture
def mailbox():
    return [make_email(f"m{i}") for i in range(1, 5)]


@pytest.fixture
def oracle():
    return ScriptedOracle(
        {
            "m1": subscription_answer("Netflix", 649, confidence=90),
            "m2": subscription_answer("Spotify", 119, confidence=70, email_type="other"),
        },
        failures={"m3"},
    )


def kinds(store):
    return [n["kind"] for n in store.list_notifications(USER)]


class TestScanEmails:
    def test_counts_and_decisions(self, make_service, store, oracle, mailbox):
        summary = make_service(oracle).scan_emails(USER, InMemoryEmailSource(mailbox))

        assert summary.scanned == 4
        assert summary.usable == 2
        assert summary.failed == 1
        assert summary.found == 2
        assert summary.unique == 2
        assert summary.auto_imported == 1
        assert summary.pending_review == 1
        assert store.get_active_subscription(USER, "netflix") is not None
        pending = store.list_detections(USER, DetectionStatus.PENDING)
        assert [d.normalized_service_name for d in pending] == ["spotify"]

    def test_run_recorded_and_notified(self, make_service, store, oracle, mailbox):
        summary = make_service(oracle).scan_emails(USER, InMemoryEmailSource(mailbox))

        runs = store.get_scan_runs(USER)
        assert runs[0]["id"] == summary.run_id
        assert runs[0]["kind"] == "email"
        assert runs[0]["auto_imported"] == 1
        assert runs[0]["error"] is None

        assert kinds(store) == [KIND_AUTO_IMPORT, KIND_SCAN_COMPLETED]
        completed = store.list_notifications(USER)[-1]
        assert completed["title"] == "Email Scan Completed"
        assert completed["message"] == (
            "Scan complete! 2 subscriptions detected, 1 auto-imported, 1 waiting for review"
        )

    def test_rescan_is_idempotent(self, make_service, store, oracle, mailbox):
        service = make_service(oracle)
        service.scan_emails(USER, InMemoryEmailSource(mailbox))

        again = service.scan_emails(USER, InMemoryEmailSource(mailbox))

        assert again.auto_imported == 0
        assert again.existing == 1
        assert [d.outcome for d in again.decisions if d.outcome.is_pending] == [
            DecisionOutcome.PENDING_UNCHANGED
        ]
        assert store.count_detections(USER) == 2
        assert len(store.list_subscriptions(USER)) == 1

    def test_same_service_twice_in_batch(self, make_service, store):
        oracle = ScriptedOracle(
            {
                "a": subscription_answer("Netflix", 649, confidence=70, email_type="other"),
                "b": subscription_answer("NETFLIX.COM", 649, confidence=75, email_type="other"),
            }
        )
        summary = make_service(oracle).scan_emails(
            USER, InMemoryEmailSource([make_email("a"), make_email("b")])
        )

        assert summary.found == 2
        assert summary.unique == 1
        detection = store.list_detections(USER)[0]
        assert detection.source_ref == "b"
        assert store.get_detection_by_ref(USER, DetectionSource.EMAIL, "a").id == detection.id

    def test_source_unavailable(self, make_service, store, oracle, mailbox):
        with pytest.raises(SourceUnavailable):
            make_service(oracle).scan_emails(USER, InMemoryEmailSource(mailbox, unavailable=True))

        assert oracle.calls == []
        runs = store.get_scan_runs(USER)
        assert runs[0]["error"] == "email unavailable: token expired"
        assert kinds(store) == []

    def test_requires_oracle(self, make_service, mailbox):
        with pytest.raises(RuntimeError):
            make_service().scan_emails(USER, InMemoryEmailSource(mailbox))


class TestDeepScan:
    @pytest.fixture
    def deep_oracle(self):
        services = ["Netflix", "Spotify", "Notion", "Dropbox", "Zee5"]
        return ScriptedOracle(
            {
                f"d{i}": subscription_answer(name, 199, confidence=70, email_type="other")
                for i, name in enumerate(services)
            }
        )

    @pytest.fixture
    def deep_mailbox(self):
        return [make_email(f"d{i}") for i in range(5)]

    def test_chunks_and_progress(self, make_service, store, deep_oracle, deep_mailbox):
        progress = []

        summary = make_service(deep_oracle, chunk_size=2).deep_scan_emails(
            USER, InMemoryEmailSource(deep_mailbox), progress_callback=progress.append
        )

        assert [(p.phase, p.current, p.total) for p in progress] == [
            ("fetching", 5, None),
            ("analyzing", 2, 5),
            ("analyzing", 4, 5),
            ("analyzing", 5, 5),
        ]
        assert summary.scanned == 5
        assert summary.pending_review == 5
        assert summary.report.unique_services == 5
        assert summary.report.total_found == 5
        assert store.get_scan_runs(USER)[0]["kind"] == "deep_email"

    def test_cancel_keeps_committed_chunks(self, make_service, store, deep_oracle, deep_mailbox):
        token = CancellationToken()

        def on_progress(progress):
            if progress.phase == "analyzing":
                token.cancel()

        summary = make_service(deep_oracle, chunk_size=2).deep_scan_emails(
            USER,
            InMemoryEmailSource(deep_mailbox),
            progress_callback=on_progress,
            cancel_token=token,
        )

        assert summary.cancelled is True
        assert summary.scanned == 2
        assert store.count_detections(USER) == 2
        assert deep_oracle.calls == ["d0", "d1"]
        assert store.get_scan_runs(USER)[0]["cancelled"] == 1

    def test_newest_first_mailbox_records_prices_in_order(self, make_service, store):
        oracle = ScriptedOracle(
            {
                "new": subscription_answer("Spotify", 129, confidence=70, email_type="other"),
                "old": subscription_answer("Spotify", 119, confidence=70, email_type="other"),
            }
        )
        mailbox = [
            make_email("new", sent=datetime(2024, 3, 5, tzinfo=timezone.utc)),
            make_email("old", sent=datetime(2024, 1, 5, tzinfo=timezone.utc)),
        ]

        summary = make_service(oracle, chunk_size=1).deep_scan_emails(
            USER, InMemoryEmailSource(mailbox)
        )

        assert oracle.calls == ["old", "new"]
        assert [(c.old_price, c.new_price) for c in summary.price_changes] == [(119, 129)]
        assert summary.price_changes[0].trend == PriceTrend.INCREASE
        assert store.get_latest_price(USER, "spotify").amount == 129
        (pending,) = store.list_detections(USER, DetectionStatus.PENDING)
        assert pending.amount == 129

    def test_undated_emails_analyzed_last(self, make_service, deep_oracle):
        undated = make_email("d0")
        undated.date = None
        mailbox = [undated, make_email("d1", sent=datetime(2023, 6, 1, tzinfo=timezone.utc))]

        make_service(deep_oracle).deep_scan_emails(USER, InMemoryEmailSource(mailbox))

        assert deep_oracle.calls == ["d1", "d0"]

    def test_summary_to_dict_includes_report(self, make_service, deep_oracle, deep_mailbox):
        summary = make_service(deep_oracle).deep_scan_emails(
            USER, InMemoryEmailSource(deep_mailbox)
        )

        data = summary.to_dict()

        assert data["kind"] == "deep_email"
        assert data["unique_count"] == 5
        assert data["report"]["summary"]["unique_services"] == 5


class TestScanTransactions:
    WINDOW = {"start_date": date(2024, 1, 1), "end_date": date(2024, 3, 31)}

    def test_netflix_pattern_goes_pending(self, make_service, store, netflix_transactions):
        source = InMemoryTransactionSource(netflix_transactions)

        summary = make_service().scan_transactions(USER, source, "acc-1", **self.WINDOW)

        assert summary.scanned == 3
        assert summary.usable == 1
        assert summary.pending_review == 1
        detection = store.list_detections(USER)[0]
        assert detection.source == DetectionSource.BANK
        assert detection.normalized_service_name == "netflix"
        assert detection.confidence == 81
        assert detection.evidence_count == 3
        assert store.get_scan_runs(USER)[0]["kind"] == "bank"
        assert store.list_notifications(USER)[-1]["title"] == "Bank Scan Completed"

    def test_rescan_same_window(self, make_service, store, netflix_transactions):
        service = make_service()
        source = InMemoryTransactionSource(netflix_transactions)
        service.scan_transactions(USER, source, "acc-1", **self.WINDOW)

        again = service.scan_transactions(USER, source, "acc-1", **self.WINDOW)

        assert again.decisions[0].outcome == DecisionOutcome.PENDING_UNCHANGED
        assert store.count_detections(USER) == 1

    def test_regular_pattern_auto_imported(self, make_service, store):
        txs = make_transactions("POS SPOTIFY 4411", "119", monthly_dates(date(2024, 1, 1), 4))

        summary = make_service().scan_transactions(
            USER,
            InMemoryTransactionSource(txs),
            "acc-1",
            start_date=date(2024, 1, 1),
            end_date=date(2024, 6, 1),
        )

        assert summary.auto_imported == 1
        assert store.get_active_subscription(USER, "spotify") is not None

    def test_default_window(self, make_service):
        source = InMemoryTransactionSource([])

        make_service().scan_transactions(USER, source, "acc-1")

        account, start, end = source.requests[0]
        assert account == "acc-1"
        assert end == date.today()
        assert start == date.today() - timedelta(days=90)

    def test_source_unavailable(self, make_service, store):
        source = InMemoryTransactionSource([], unavailable=True)

        with pytest.raises(SourceUnavailable):
            make_service().scan_transactions(USER, source, "acc-1")

        assert store.get_scan_runs(USER)[0]["error"] == "bank unavailable: consent revoked"


class TestProcessCandidates:
    def test_price_change_notified(self, make_service, store):
        service = make_service()
        service.process_candidates(USER, [make_candidate("Spotify", 119, source_ref="s1")])

        summary = service.process_candidates(
            USER, [make_candidate("Spotify", 129, source_ref="s2")]
        )

        assert len(summary.price_changes) == 1
        assert str(summary.price_changes[0].change_percentage) == "8.40"
        assert KIND_PRICE_CHANGE in kinds(store)

    def test_below_floor_not_persisted(self, make_service, store):
        summary = make_service().process_candidates(USER, [make_candidate(confidence=30)])

        assert summary.ignored == 1
        assert store.count_detections(USER) == 0


def test_from_config(store):
    config = Config()
    config.scan.deep_scan_chunk_size = 7

    service = DetectionService.from_config(config, store, ScriptedOracle({}))

    assert service.extractor is not None
    assert service.config.deep_scan_chunk_size == 7
    assert service.normalizer.home_currency == "INR"
    assert DetectionService.from_config(config, store).extractor is None
