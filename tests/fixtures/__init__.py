"""
Test doubles and builders for the detection pipeline.

This module provides:
- Builders for emails, bank transactions, candidates and detections
- In-memory Email / Transaction sources
- A scripted Extraction Oracle
"""

from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from typing import Optional

from subtrace.oracle import ExtractionFailure, OracleResult
from subtrace.schemas.detection import (
    BillingCycle,
    Category,
    Detection,
    DetectionSource,
    EmailType,
    RawCandidate,
)
from subtrace.sources import BankTransaction, EmailMessage, ScanProgress, SourceUnavailable

USER = "user-1"


def make_email(
    message_id: str,
    subject: str = "Your receipt",
    body: str = "",
    sent: Optional[datetime] = None,
) -> EmailMessage:
    return EmailMessage(
        id=message_id,
        subject=subject,
        sender="billing@example.com",
        date=sent or datetime(2024, 3, 1, 9, 30, tzinfo=timezone.utc),
        body=body or f"Body of {message_id}",
    )


def make_transactions(
    merchant: str,
    amount: str,
    dates: list[date],
    account_id: str = "acc-1",
    prefix: Optional[str] = None,
) -> list[BankTransaction]:
    prefix = prefix or merchant.lower().replace(" ", "-")
    return [
        BankTransaction(
            merchant=merchant,
            amount=Decimal(amount),
            date=d,
            id=f"{prefix}-{d.isoformat()}",
            account_id=account_id,
        )
        for d in dates
    ]


def monthly_dates(start: date, count: int, step: int = 30) -> list[date]:
    return [start + timedelta(days=step * i) for i in range(count)]


def make_detection(
    name: str = "netflix",
    amount: Optional[str] = "649",
    confidence: int = 70,
    source: DetectionSource = DetectionSource.EMAIL,
    source_ref: Optional[str] = None,
    email_type: Optional[EmailType] = None,
    is_confirmation_email: bool = False,
    billing_cycle: BillingCycle = BillingCycle.MONTHLY,
    category: Category = Category.STREAMING,
    currency: str = "INR",
    evidence_count: int = 1,
    last_seen: Optional[date] = None,
) -> Detection:
    return Detection(
        source=source,
        source_ref=source_ref or f"msg-{name}-{confidence}",
        raw_service_name=name.title(),
        normalized_service_name=name,
        amount=Decimal(amount) if amount is not None else None,
        currency=currency,
        billing_cycle=billing_cycle,
        category=category,
        confidence=confidence,
        evidence_count=evidence_count,
        evidence_refs=[source_ref or f"msg-{name}-{confidence}"],
        is_confirmation_email=is_confirmation_email,
        email_type=email_type,
        last_seen=last_seen,
    )


def make_candidate(
    name: str = "Netflix",
    amount=649,
    confidence: int = 70,
    source_ref: str = "msg-1",
    email_type: Optional[EmailType] = None,
    currency: Optional[str] = "INR",
    category_hint: Optional[str] = None,
) -> RawCandidate:
    return RawCandidate(
        source=DetectionSource.EMAIL,
        source_ref=source_ref,
        raw_service_name=name,
        amount=amount,
        currency=currency,
        billing_cycle=BillingCycle.MONTHLY,
        category_hint=category_hint,
        confidence=confidence,
        evidence_refs=[source_ref],
        email_type=email_type,
        is_confirmation_email=email_type == EmailType.CONFIRMED_SUBSCRIPTION,
    )


def subscription_answer(
    service: str,
    amount=649,
    confidence: int = 90,
    email_type: str = "confirmed_subscription",
    billing_cycle: Optional[str] = "monthly",
    currency: Optional[str] = "INR",
) -> OracleResult:
    return OracleResult(
        is_subscription=True,
        is_confirmation_email=email_type == "confirmed_subscription",
        email_type=email_type,
        service_name=service,
        amount=amount,
        currency=currency,
        billing_cycle=billing_cycle,
        confidence=confidence,
    )


class ScriptedOracle:
    """Answers by message id; raises ExtractionFailure for ids in `failures`."""

    def __init__(self, answers: dict[str, OracleResult], failures: Optional[set[str]] = None):
        self.answers = answers
        self.failures = failures or set()
        self.calls: list[str] = []

    def extract(self, email: EmailMessage) -> OracleResult:
        self.calls.append(email.id)
        if email.id in self.failures:
            raise ExtractionFailure(email.id, "scripted failure")
        return self.answers.get(email.id, OracleResult.not_subscription())


class InMemoryEmailSource:
    def __init__(self, emails: list[EmailMessage], unavailable: bool = False):
        self.emails = emails
        self.unavailable = unavailable

    def scan(self, max_results: int, days_back: int) -> list[EmailMessage]:
        if self.unavailable:
            raise SourceUnavailable("email", "token expired")
        return self.emails[:max_results]

    def deep_scan(self, days_back: int, progress_callback=None) -> list[EmailMessage]:
        if self.unavailable:
            raise SourceUnavailable("email", "token expired")
        if progress_callback:
            progress_callback(ScanProgress("fetching", len(self.emails)))
        return list(self.emails)


class InMemoryTransactionSource:
    def __init__(self, transactions: list[BankTransaction], unavailable: bool = False):
        self.transactions_list = transactions
        self.unavailable = unavailable
        self.requests: list[tuple[str, date, date]] = []

    def transactions(self, account_id: str, start_date: date, end_date: date):
        self.requests.append((account_id, start_date, end_date))
        if self.unavailable:
            raise SourceUnavailable("bank", "consent revoked")
        return [
            t
            for t in self.transactions_list
            if t.account_id == account_id and start_date <= t.date <= end_date
        ]
