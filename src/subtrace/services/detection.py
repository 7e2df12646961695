"""Subscription detection pipeline.

Wires the stages for one account:

    source -> extractor -> normalizer -> deduplicator
           -> price history -> decision engine -> store -> notifications

Every collaborator is injected so each stage can be tested in isolation.
Runs are safe to repeat over overlapping windows: ingestion is keyed by
source_ref, so an email or transaction set already seen never produces a
second detection.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any, Optional

from ..config import Config, ScanConfig
from ..extractors import CancellationToken, EmailCandidateExtractor, RateLimiter, RecurrenceDetector
from ..matching import Deduplicator
from ..normalization import AliasTable, CandidateNormalizer
from ..review import DecisionEngine, DecisionOutcome, DecisionResult
from ..schemas.detection import Detection, PriceChange, RawCandidate, utcnow
from ..sources.base import (
    EmailMessage,
    EmailSource,
    ProgressCallback,
    ScanProgress,
    SourceError,
    TransactionSource,
)
from .insights import InsightsBuilder, InsightsReport
from .notifications import Notifier
from .price_history import PriceHistoryTracker

if TYPE_CHECKING:
    from ..oracle.base import ExtractionOracle
    from ..state_store import DetectionStore

logger = logging.getLogger(__name__)

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


def _oldest_first(emails: list[EmailMessage]) -> list[EmailMessage]:
    """Sort by send date ascending; undated emails go last."""
    return sorted(emails, key=lambda e: (e.date is None, e.date or _EPOCH))


KIND_EMAIL = "email"
KIND_DEEP_EMAIL = "deep_email"
KIND_BANK = "bank"


@dataclass
class ScanSummary:
    """Counts and events of one scan run."""

    kind: str
    scanned: int = 0
    usable: int = 0
    failed: int = 0
    found: int = 0
    unique: int = 0
    auto_imported: int = 0
    pending_review: int = 0
    existing: int = 0
    duplicates: int = 0
    ignored: int = 0
    cancelled: bool = False
    price_changes: list[PriceChange] = field(default_factory=list)
    decisions: list[DecisionResult] = field(default_factory=list)
    report: Optional[InsightsReport] = None
    run_id: Optional[int] = None

    def record(self, decision: DecisionResult) -> None:
        """Count one decision."""
        self.decisions.append(decision)
        outcome = decision.outcome
        if outcome == DecisionOutcome.AUTO_IMPORTED:
            self.auto_imported += 1
        elif outcome.is_pending:
            self.pending_review += 1
        elif outcome == DecisionOutcome.EXISTING:
            self.existing += 1
        elif outcome == DecisionOutcome.DUPLICATE:
            self.duplicates += 1
        else:
            self.ignored += 1

    def absorb(self, other: ScanSummary) -> None:
        """Add the counts of a partial run (one deep-scan chunk)."""
        for name in (
            "scanned",
            "usable",
            "failed",
            "found",
            "unique",
            "auto_imported",
            "pending_review",
            "existing",
            "duplicates",
            "ignored",
        ):
            setattr(self, name, getattr(self, name) + getattr(other, name))
        self.cancelled = self.cancelled or other.cancelled
        self.price_changes.extend(other.price_changes)
        self.decisions.extend(other.decisions)

    def counts(self) -> dict[str, int]:
        """Counts in scan-run column names."""
        return {
            "scanned": self.scanned,
            "usable": self.usable,
            "failed": self.failed,
            "found": self.found,
            "unique_count": self.unique,
            "auto_imported": self.auto_imported,
            "pending_review": self.pending_review,
            "existing": self.existing,
            "duplicates": self.duplicates,
            "ignored": self.ignored,
            "price_changes": len(self.price_changes),
        }

    def to_dict(self) -> dict[str, Any]:
        """Convert to JSON-serializable dictionary."""
        result: dict[str, Any] = {"kind": self.kind, **self.counts()}
        result["cancelled"] = self.cancelled
        result["price_change_events"] = [c.to_dict() for c in self.price_changes]
        result["run_id"] = self.run_id
        if self.report is not None:
            result["report"] = self.report.to_dict()
        return result


class DetectionService:
    """Runs detection scans for one user at a time.

    Usage:
        service = DetectionService.from_config(config, store, oracle)
        summary = service.scan_emails(user_id, email_source)
    """

    def __init__(
        self,
        store: DetectionStore,
        normalizer: CandidateNormalizer,
        deduplicator: Deduplicator,
        tracker: PriceHistoryTracker,
        decision_engine: DecisionEngine,
        extractor: Optional[EmailCandidateExtractor] = None,
        detector: Optional[RecurrenceDetector] = None,
        notifier: Optional[Notifier] = None,
        insights: Optional[InsightsBuilder] = None,
        config: Optional[ScanConfig] = None,
    ) -> None:
        """Initialize the pipeline.

        Args:
            store: Detection store (scan-run audit trail)
            normalizer: Candidate normalizer
            deduplicator: Intra-batch deduplicator
            tracker: Price history tracker
            decision_engine: Decision engine
            extractor: Email candidate extractor (required for email scans)
            detector: Recurrence detector for bank scans
            notifier: Notification outbox
            insights: Deep-scan report builder
            config: Scan windows and chunking
        """
        self.store = store
        self.normalizer = normalizer
        self.deduplicator = deduplicator
        self.tracker = tracker
        self.decision_engine = decision_engine
        self.extractor = extractor
        self.detector = detector or RecurrenceDetector()
        self.notifier = notifier
        self.insights = insights or InsightsBuilder()
        self.config = config or ScanConfig()

    @classmethod
    def from_config(
        cls,
        config: Config,
        store: DetectionStore,
        oracle: Optional[ExtractionOracle] = None,
    ) -> DetectionService:
        """Build the default pipeline from configuration."""
        notifier = Notifier(store)
        extractor = None
        if oracle is not None:
            extractor = EmailCandidateExtractor(
                oracle,
                rate_limiter=RateLimiter(config.oracle.rate_limit_seconds),
                call_timeout=config.oracle.call_timeout_seconds,
            )
        return cls(
            store=store,
            normalizer=CandidateNormalizer(
                AliasTable.load(config.detection.alias_table_path),
                home_currency=config.detection.home_currency,
            ),
            deduplicator=Deduplicator(),
            tracker=PriceHistoryTracker(store),
            decision_engine=DecisionEngine(store, notifier),
            extractor=extractor,
            notifier=notifier,
            insights=InsightsBuilder(config.report, config.detection.home_currency),
            config=config.scan,
        )

    # === Shared tail ===

    def _process(
        self, user_id: str, kind: str, candidates: list[RawCandidate]
    ) -> tuple[ScanSummary, list[Detection]]:
        summary = ScanSummary(kind=kind)
        detections = self.normalizer.normalize_all(candidates)
        summary.found = len(detections)

        unique = self.deduplicator.deduplicate(detections).detections
        summary.unique = len(unique)

        for detection in unique:
            change = self.tracker.track(user_id, detection)
            if change is not None:
                summary.price_changes.append(change)
                if self.notifier is not None:
                    self.notifier.notify_price_change(user_id, change)
            summary.record(self.decision_engine.decide(user_id, detection))

        return summary, detections

    def process_candidates(
        self, user_id: str, candidates: list[RawCandidate], kind: str = "manual"
    ) -> ScanSummary:
        """Normalize, deduplicate, price-track and decide a list of candidates."""
        summary, _ = self._process(user_id, kind, candidates)
        summary.usable = len(candidates)
        return summary

    def _require_extractor(self) -> EmailCandidateExtractor:
        if self.extractor is None:
            raise RuntimeError("Email scans need an extraction oracle; none is configured")
        return self.extractor

    def _finish(
        self, user_id: str, summary: ScanSummary, started_at: datetime, error: str | None = None
    ) -> ScanSummary:
        summary.run_id = self.store.record_scan_run(
            user_id,
            summary.kind,
            started_at,
            summary.counts(),
            cancelled=summary.cancelled,
            error=error,
        )
        if error is None and self.notifier is not None:
            self.notifier.notify_scan_completed(
                user_id,
                summary.kind,
                found=summary.unique,
                auto_imported=summary.auto_imported,
                pending_review=summary.pending_review,
            )
        logger.info(
            "%s scan for %s: scanned %d, usable %d, failed %d, unique %d, "
            "auto-imported %d, pending %d, existing %d, duplicates %d, ignored %d%s",
            summary.kind,
            user_id,
            summary.scanned,
            summary.usable,
            summary.failed,
            summary.unique,
            summary.auto_imported,
            summary.pending_review,
            summary.existing,
            summary.duplicates,
            summary.ignored,
            " (cancelled)" if summary.cancelled else "",
        )
        return summary

    def _fetch(self, user_id: str, kind: str, started_at: datetime, fetch):
        """Run a source call; a source failure is audited and re-raised."""
        try:
            return fetch()
        except SourceError as e:
            logger.error("%s scan for %s aborted: %s", kind, user_id, e)
            self._finish(user_id, ScanSummary(kind=kind), started_at, error=str(e))
            raise

    # === Scans ===

    def scan_emails(
        self,
        user_id: str,
        source: EmailSource,
        max_results: Optional[int] = None,
        days_back: Optional[int] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> ScanSummary:
        """
        Scan recent emails.

        Raises:
            SourceUnavailable: Mailbox auth failed; nothing was processed
        """
        extractor = self._require_extractor()
        started_at = utcnow()
        emails: list[EmailMessage] = self._fetch(
            user_id,
            KIND_EMAIL,
            started_at,
            lambda: source.scan(
                max_results or self.config.max_emails,
                days_back or self.config.email_days_back,
            ),
        )

        batch = extractor.extract(emails, cancel_token)
        summary, _ = self._process(user_id, KIND_EMAIL, batch.candidates)
        summary.scanned = batch.scanned
        summary.usable = batch.usable
        summary.failed = batch.failed
        summary.cancelled = batch.cancelled
        return self._finish(user_id, summary, started_at)

    def deep_scan_emails(
        self,
        user_id: str,
        source: EmailSource,
        days_back: Optional[int] = None,
        progress_callback: Optional[ProgressCallback] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> ScanSummary:
        """
        Exhaustive email sweep with an insights report.

        Emails are processed in chunks; each chunk is written before the next
        one starts, so a cancelled scan keeps the work already done.

        Raises:
            SourceUnavailable: Mailbox auth failed; nothing was processed
        """
        extractor = self._require_extractor()
        started_at = utcnow()
        emails: list[EmailMessage] = self._fetch(
            user_id,
            KIND_DEEP_EMAIL,
            started_at,
            lambda: source.deep_scan(days_back or self.config.email_days_back, progress_callback),
        )
        # Prices are recorded in scan order, so older mail must be seen first
        emails = _oldest_first(emails)

        summary = ScanSummary(kind=KIND_DEEP_EMAIL)
        all_detections: list[Detection] = []
        chunk_size = self.config.deep_scan_chunk_size
        total = len(emails)

        for offset in range(0, total, chunk_size):
            if cancel_token is not None and cancel_token.is_cancelled:
                summary.cancelled = True
                break

            batch = extractor.extract(emails[offset : offset + chunk_size], cancel_token)
            chunk, detections = self._process(user_id, KIND_DEEP_EMAIL, batch.candidates)
            chunk.scanned = batch.scanned
            chunk.usable = batch.usable
            chunk.failed = batch.failed
            chunk.cancelled = batch.cancelled
            summary.absorb(chunk)
            all_detections.extend(detections)

            if progress_callback is not None:
                progress_callback(ScanProgress("analyzing", min(offset + chunk_size, total), total))
            if batch.cancelled:
                break

        summary.report = self.insights.build(all_detections, summary.price_changes)
        return self._finish(user_id, summary, started_at)

    def scan_transactions(
        self,
        user_id: str,
        source: TransactionSource,
        account_id: str,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
    ) -> ScanSummary:
        """
        Detect recurring charges in an account's transaction history.

        Raises:
            SourceUnavailable: Bank auth failed; nothing was processed
        """
        end = end_date or date.today()
        start = start_date or end - timedelta(days=self.config.bank_days_back)
        started_at = utcnow()

        transactions = self._fetch(
            user_id,
            KIND_BANK,
            started_at,
            lambda: source.transactions(account_id, start, end),
        )

        candidates = self.detector.candidates(transactions)
        summary, _ = self._process(user_id, KIND_BANK, candidates)
        summary.scanned = len(transactions)
        summary.usable = len(candidates)
        return self._finish(user_id, summary, started_at)
