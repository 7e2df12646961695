"""
Transaction recurrence detector.

Finds repeated charges in bank history:
1. Normalize merchant strings (drop rail prefixes, reference numbers, URL noise)
2. Group by merchant, then by amount within a fixed tolerance
3. Classify the day gaps between consecutive charges into a billing cycle
4. Score each group and emit one RecurringPattern per group

Single charges carry no signal and never produce a pattern.
"""

import calendar
import logging
import re
from collections import Counter, defaultdict
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import date, timedelta
from decimal import Decimal
from typing import Optional

from ..schemas.dedupe import bank_source_ref
from ..schemas.detection import BillingCycle, DetectionSource, RawCandidate
from ..sources.base import BankTransaction

logger = logging.getLogger(__name__)

# Charges within this many currency units are the same price
AMOUNT_TOLERANCE = Decimal("0.01")

# Inclusive day ranges between consecutive charges
CYCLE_BUCKETS: list[tuple[BillingCycle, int, int]] = [
    (BillingCycle.DAILY, 1, 1),
    (BillingCycle.WEEKLY, 6, 8),
    (BillingCycle.MONTHLY, 27, 32),
    (BillingCycle.QUARTERLY, 87, 94),
    (BillingCycle.YEARLY, 358, 372),
]

MIN_OCCURRENCES = 2

# Confidence model
KNOWN_CYCLE_BASE = 60
PER_EXTRA_OCCURRENCE = 8
MAX_EXTRA_OCCURRENCES = 3
REGULARITY_WEIGHT = 16
UNKNOWN_CYCLE_CAP = 45

_NOISE_TOKENS = frozenset(
    {
        "pos",
        "ach",
        "upi",
        "nach",
        "ecs",
        "si",
        "debit",
        "autopay",
        "payment",
        "purchase",
        "recurring",
        "txn",
        "inc",
        "ltd",
        "llc",
        "pvt",
    }
)
_SEPARATORS = re.compile(r"[*/_|,:;#()\[\]\-]+")
_URL_PREFIX = re.compile(r"^www\.")
_URL_SUFFIX = re.compile(r"\.(com|in|net|co)$")


def normalize_merchant(raw: str) -> str:
    """Reduce a bank merchant string to a stable grouping key.

    "POS NETFLIX.COM 8473*" and "Netflix.com" both become "netflix".
    """
    folded = " ".join((raw or "").casefold().split())
    text = _SEPARATORS.sub(" ", folded)

    tokens = []
    for token in text.split():
        token = _URL_PREFIX.sub("", token)
        token = _URL_SUFFIX.sub("", token)
        token = token.strip(".'")
        if not token or token in _NOISE_TOKENS:
            continue
        if any(ch.isdigit() for ch in token):
            continue
        tokens.append(token)

    return " ".join(tokens) or folded


def classify_cycle(deltas: list[int]) -> tuple[BillingCycle, Optional[tuple[int, int]]]:
    """Map day gaps to a cycle; all gaps must share one bucket.

    Returns:
        (cycle, bucket bounds) or (UNKNOWN, None)
    """
    if not deltas:
        return BillingCycle.UNKNOWN, None
    for cycle, low, high in CYCLE_BUCKETS:
        if all(low <= d <= high for d in deltas):
            return cycle, (low, high)
    return BillingCycle.UNKNOWN, None


def score_pattern(
    count: int, deltas: list[int], cycle: BillingCycle, bounds: Optional[tuple[int, int]]
) -> int:
    """Confidence for a charge group.

    Known cycle: 60 base, +8 per occurrence beyond two (max three), +16 scaled
    by regularity. Unknown cycle stays at or below 45.
    """
    if cycle == BillingCycle.UNKNOWN or bounds is None:
        return min(UNKNOWN_CYCLE_CAP, 15 + 5 * count)

    low, high = bounds
    width = high - low
    spread = max(deltas) - min(deltas)
    regularity = 1.0 if width == 0 else max(0.0, 1.0 - spread / width)

    extra = min(count - MIN_OCCURRENCES, MAX_EXTRA_OCCURRENCES)
    score = KNOWN_CYCLE_BASE + PER_EXTRA_OCCURRENCE * extra + REGULARITY_WEIGHT * regularity
    return min(100, int(round(score)))


def _add_months(start: date, months: int) -> date:
    month_index = start.month - 1 + months
    year = start.year + month_index // 12
    month = month_index % 12 + 1
    day = min(start.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def next_billing_date(last: date, cycle: BillingCycle) -> Optional[date]:
    """Expected next charge: last charge plus one cycle."""
    if cycle == BillingCycle.DAILY:
        return last + timedelta(days=1)
    if cycle == BillingCycle.WEEKLY:
        return last + timedelta(days=7)
    if cycle == BillingCycle.MONTHLY:
        return _add_months(last, 1)
    if cycle == BillingCycle.QUARTERLY:
        return _add_months(last, 3)
    if cycle == BillingCycle.YEARLY:
        return _add_months(last, 12)
    return None


@dataclass
class RecurringPattern:
    """One merchant/amount group with its inferred cadence."""

    merchant: str  # normalized merchant
    amount: Decimal
    currency: Optional[str]
    billing_cycle: BillingCycle
    confidence: int
    evidence_count: int
    first_date: date
    last_date: date
    transaction_ids: list[str] = field(default_factory=list)
    deltas: list[int] = field(default_factory=list)
    raw_merchants: list[str] = field(default_factory=list)

    @property
    def next_billing_date(self) -> Optional[date]:
        return next_billing_date(self.last_date, self.billing_cycle)

    def to_candidate(self) -> RawCandidate:
        """Convert to the source-agnostic candidate shape."""
        return RawCandidate(
            source=DetectionSource.BANK,
            source_ref=bank_source_ref(self.transaction_ids),
            raw_service_name=self.merchant,
            amount=self.amount,
            currency=self.currency,
            billing_cycle=self.billing_cycle,
            confidence=self.confidence,
            evidence_count=self.evidence_count,
            evidence_refs=sorted(self.transaction_ids),
            last_seen=self.last_date,
            next_billing_date=self.next_billing_date,
            description=(
                f"{self.evidence_count} charges of {self.amount} "
                f"between {self.first_date.isoformat()} and {self.last_date.isoformat()}"
            ),
        )


class RecurrenceDetector:
    """Detect recurring charges in a transaction history."""

    def __init__(self, amount_tolerance: Decimal = AMOUNT_TOLERANCE) -> None:
        self.amount_tolerance = amount_tolerance

    def _split_by_amount(
        self, transactions: list[BankTransaction]
    ) -> list[list[BankTransaction]]:
        """Cluster by absolute amount; members stay within tolerance of the cluster's first amount."""
        ordered = sorted(transactions, key=lambda t: (abs(t.amount), t.date))
        clusters: list[list[BankTransaction]] = []
        anchor: Optional[Decimal] = None
        for tx in ordered:
            amount = abs(tx.amount)
            if anchor is None or amount - anchor > self.amount_tolerance:
                clusters.append([])
                anchor = amount
            clusters[-1].append(tx)
        return clusters

    def _build_pattern(self, merchant: str, group: list[BankTransaction]) -> RecurringPattern:
        group = sorted(group, key=lambda t: (t.date, t.transaction_id))
        dates = [t.date for t in group]
        deltas = [(b - a).days for a, b in zip(dates, dates[1:])]
        cycle, bounds = classify_cycle(deltas)
        confidence = score_pattern(len(group), deltas, cycle, bounds)

        latest = group[-1]
        currencies = Counter(t.currency for t in group if t.currency)
        currency = currencies.most_common(1)[0][0] if currencies else None

        return RecurringPattern(
            merchant=merchant,
            amount=abs(latest.amount),
            currency=currency,
            billing_cycle=cycle,
            confidence=confidence,
            evidence_count=len(group),
            first_date=dates[0],
            last_date=dates[-1],
            transaction_ids=[t.transaction_id for t in group],
            deltas=deltas,
            raw_merchants=sorted({t.merchant for t in group}),
        )

    def detect(self, transactions: Iterable[BankTransaction]) -> list[RecurringPattern]:
        """Find recurring charge groups.

        Returns:
            Patterns sorted by confidence (highest first)
        """
        by_merchant: dict[str, list[BankTransaction]] = defaultdict(list)
        total = 0
        for tx in transactions:
            total += 1
            key = normalize_merchant(tx.merchant)
            if key:
                by_merchant[key].append(tx)

        patterns: list[RecurringPattern] = []
        for merchant, txs in by_merchant.items():
            for group in self._split_by_amount(txs):
                if len(group) < MIN_OCCURRENCES:
                    continue
                patterns.append(self._build_pattern(merchant, group))

        patterns.sort(key=lambda p: (-p.confidence, p.merchant, p.amount))
        logger.info(
            "Recurrence detection: %d transactions, %d merchants, %d patterns",
            total,
            len(by_merchant),
            len(patterns),
        )
        return patterns

    def candidates(self, transactions: Iterable[BankTransaction]) -> list[RawCandidate]:
        """Detect and convert to raw candidates."""
        return [p.to_candidate() for p in self.detect(transactions)]
