"""
Email candidate extractor.

Thin adapter over the Extraction Oracle: one throttled call per email, the
answer mapped onto a RawCandidate. No inference of its own: a missing amount
stays missing, and a missing cycle becomes monthly only when the Oracle
classified the email as a confirmed subscription.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass, field
from datetime import date
from typing import Optional

from ..oracle.base import ExtractionFailure, ExtractionOracle, OracleResult
from ..schemas.dedupe import email_source_ref
from ..schemas.detection import (
    BillingCycle,
    DetectionSource,
    EmailType,
    RawCandidate,
    clamp_confidence,
)
from ..sources.base import EmailMessage
from .base import CancellationToken, RateLimiter

logger = logging.getLogger(__name__)

DEFAULT_CALL_TIMEOUT = 90.0


@dataclass
class ExtractionBatch:
    """Outcome of extracting one list of emails."""

    candidates: list[RawCandidate] = field(default_factory=list)
    scanned: int = 0
    failed: int = 0
    cancelled: bool = False

    @property
    def usable(self) -> int:
        return len(self.candidates)


def _parse_date(value: Optional[str]) -> Optional[date]:
    if not value:
        return None
    try:
        return date.fromisoformat(value[:10])
    except ValueError:
        return None


def candidate_from_result(email: EmailMessage, result: OracleResult) -> Optional[RawCandidate]:
    """Map an Oracle answer to a candidate; None for non-subscriptions."""
    if not result.is_subscription or not result.service_name:
        return None

    email_type = EmailType.parse(result.email_type) if result.email_type else None
    cycle = BillingCycle.parse(result.billing_cycle)
    if cycle is None:
        cycle = (
            BillingCycle.MONTHLY
            if email_type == EmailType.CONFIRMED_SUBSCRIPTION
            else BillingCycle.UNKNOWN
        )

    return RawCandidate(
        source=DetectionSource.EMAIL,
        source_ref=email_source_ref(email.id),
        raw_service_name=result.service_name,
        amount=result.amount,
        currency=result.currency,
        billing_cycle=cycle,
        category_hint=result.category,
        confidence=clamp_confidence(result.confidence),
        evidence_refs=[email.id],
        is_confirmation_email=result.is_confirmation_email,
        email_type=email_type,
        last_seen=email.date.date() if email.date else None,
        next_billing_date=_parse_date(result.next_billing_date),
        description=result.description or email.subject or None,
    )


class EmailCandidateExtractor:
    """Run the Oracle over emails, one call at a time."""

    def __init__(
        self,
        oracle: ExtractionOracle,
        rate_limiter: Optional[RateLimiter] = None,
        call_timeout: float = DEFAULT_CALL_TIMEOUT,
    ) -> None:
        """
        Args:
            oracle: Extraction Oracle
            rate_limiter: Throttle between calls (default 0.5 s)
            call_timeout: Seconds before a stalled call fails that email
        """
        self.oracle = oracle
        self.rate_limiter = rate_limiter or RateLimiter()
        self.call_timeout = call_timeout
        self._executor: Optional[ThreadPoolExecutor] = None

    def _call_with_timeout(self, email: EmailMessage) -> OracleResult:
        if self._executor is None:
            self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="oracle-call")
        future = self._executor.submit(self.oracle.extract, email)
        try:
            return future.result(timeout=self.call_timeout)
        except FutureTimeout as e:
            future.cancel()
            # The stalled call keeps its thread; later emails get a fresh worker
            self._executor.shutdown(wait=False)
            self._executor = None
            raise ExtractionFailure(email.id, f"no answer within {self.call_timeout:g}s") from e

    def close(self) -> None:
        """Release the worker thread."""
        if self._executor is not None:
            self._executor.shutdown(wait=False)
            self._executor = None

    def extract(
        self,
        emails: list[EmailMessage],
        cancel_token: Optional[CancellationToken] = None,
    ) -> ExtractionBatch:
        """Extract candidates from emails.

        Per-email failures are logged and counted; the batch continues.
        """
        batch = ExtractionBatch()

        for email in emails:
            if cancel_token is not None and cancel_token.is_cancelled:
                batch.cancelled = True
                break
            if not self.rate_limiter.wait(cancel_token):
                batch.cancelled = True
                break

            batch.scanned += 1
            try:
                result = self._call_with_timeout(email)
            except ExtractionFailure as e:
                batch.failed += 1
                logger.warning("Skipping email %s: %s", email.id, e.reason)
                continue
            except Exception as e:
                batch.failed += 1
                logger.exception("Unexpected oracle error for email %s: %s", email.id, e)
                continue
            finally:
                self.rate_limiter.mark()

            candidate = candidate_from_result(email, result)
            if candidate is None:
                logger.debug("Email %s is not a subscription", email.id)
                continue
            batch.candidates.append(candidate)

        logger.info(
            "Email extraction: scanned %d, usable %d, failed %d%s",
            batch.scanned,
            batch.usable,
            batch.failed,
            " (cancelled)" if batch.cancelled else "",
        )
        return batch
