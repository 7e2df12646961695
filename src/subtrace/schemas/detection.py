"""
Canonical detection objects (SSOT).

Every stage of the pipeline speaks these types:
- RawCandidate: what a source-specific extractor produces
- Detection: the normalized, scored candidate subscription
- PriceHistoryEntry / PriceChange: price ledger and derived events
- Subscription: the real record created on import
"""

from dataclasses import dataclass, field, replace
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Optional

CONFIDENCE_MIN = 0
CONFIDENCE_MAX = 100


class DetectionSource(str, Enum):
    """Evidence stream a detection came from."""

    EMAIL = "email"
    BANK = "bank"


class BillingCycle(str, Enum):
    """Billing cadence of a subscription."""

    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    YEARLY = "yearly"
    ONE_TIME = "one-time"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, value: Any) -> Optional["BillingCycle"]:
        """Parse a loose cycle label ("Monthly", "annual", "one_time")."""
        if value is None:
            return None
        if isinstance(value, BillingCycle):
            return value
        text = str(value).strip().lower().replace("_", "-")
        if not text:
            return None
        aliases = {
            "annual": cls.YEARLY,
            "annually": cls.YEARLY,
            "year": cls.YEARLY,
            "month": cls.MONTHLY,
            "week": cls.WEEKLY,
            "day": cls.DAILY,
            "onetime": cls.ONE_TIME,
            "once": cls.ONE_TIME,
        }
        if text in aliases:
            return aliases[text]
        try:
            return cls(text)
        except ValueError:
            return None


class Category(str, Enum):
    """Subscription category (closed set)."""

    STREAMING = "Streaming"
    MUSIC = "Music"
    PRODUCTIVITY = "Productivity"
    CLOUD_STORAGE = "Cloud Storage"
    GAMING = "Gaming"
    NEWS_MEDIA = "News & Media"
    FITNESS = "Fitness"
    SOFTWARE = "Software"
    INVESTMENT = "Investment"
    RENTALS = "Rentals"
    FOOD_DINING = "Food & Dining"
    OTHER = "Other"

    @classmethod
    def parse(cls, value: Any) -> Optional["Category"]:
        """Case-insensitive lookup by display value; None if not a known category."""
        if value is None:
            return None
        if isinstance(value, Category):
            return value
        wanted = str(value).strip().lower()
        for member in cls:
            if member.value.lower() == wanted:
                return member
        return None


class EmailType(str, Enum):
    """Oracle classification of an email."""

    CONFIRMED_SUBSCRIPTION = "confirmed_subscription"
    ONE_TIME_PAYMENT = "one_time_payment"
    FAILED_PAYMENT = "failed_payment"
    OTHER = "other"

    @classmethod
    def parse(cls, value: Any) -> "EmailType":
        """Parse an Oracle label, defaulting to OTHER."""
        if isinstance(value, EmailType):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return cls.OTHER


class DetectionStatus(str, Enum):
    """
    Lifecycle state of a detection.

    PENDING: waiting for manual review
    IMPORTED: user imported it (terminal)
    REJECTED: user dismissed it (terminal)
    AUTO_IMPORTED: imported by the decision engine (terminal)
    """

    PENDING = "pending"
    IMPORTED = "imported"
    REJECTED = "rejected"
    AUTO_IMPORTED = "auto_imported"

    @property
    def is_terminal(self) -> bool:
        return self is not DetectionStatus.PENDING


class PriceTrend(str, Enum):
    """Direction of a price change."""

    INCREASE = "increase"
    DECREASE = "decrease"


class SubscriptionOrigin(str, Enum):
    """How a subscription record came to exist."""

    MANUAL = "manual"
    DETECTION = "detection"
    AUTO_IMPORT = "auto-import"


def clamp_confidence(value: Any) -> int:
    """Coerce a confidence value into the closed range [0, 100]."""
    try:
        number = float(value)
    except (TypeError, ValueError):
        return CONFIDENCE_MIN
    if number != number:  # NaN
        return CONFIDENCE_MIN
    return int(round(min(CONFIDENCE_MAX, max(CONFIDENCE_MIN, number))))


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


@dataclass
class RawCandidate:
    """
    Source-agnostic candidate, before normalization.

    Produced by the recurrence detector (bank) and the email adapter.
    Values are as the source reported them: amount may be text, currency may
    be missing, category is only a hint.
    """

    source: DetectionSource
    source_ref: str
    raw_service_name: str
    amount: Any = None
    currency: Optional[str] = None
    billing_cycle: BillingCycle = BillingCycle.UNKNOWN
    category_hint: Optional[str] = None
    confidence: int = 0
    evidence_count: int = 1
    evidence_refs: list[str] = field(default_factory=list)
    is_confirmation_email: bool = False
    email_type: Optional[EmailType] = None
    last_seen: Optional[date] = None
    next_billing_date: Optional[date] = None
    description: Optional[str] = None


@dataclass
class Detection:
    """
    CANONICAL candidate subscription (SSOT).

    Confidence is an integer percentage and is clamped to [0, 100] on
    construction, so no stage can produce an out-of-range value.
    """

    source: DetectionSource
    source_ref: str
    raw_service_name: str
    normalized_service_name: str
    amount: Optional[Decimal]
    currency: str
    billing_cycle: BillingCycle
    category: Category
    confidence: int
    status: DetectionStatus = DetectionStatus.PENDING
    detected_at: datetime = field(default_factory=utcnow)
    evidence_count: int = 1
    evidence_refs: list[str] = field(default_factory=list)
    # (source, source_ref) of same-batch duplicates folded into this one
    merged_refs: list[tuple[DetectionSource, str]] = field(default_factory=list)
    is_confirmation_email: bool = False
    email_type: Optional[EmailType] = None
    last_seen: Optional[date] = None
    next_billing_date: Optional[date] = None
    description: Optional[str] = None
    id: Optional[str] = None
    subscription_id: Optional[str] = None
    reviewed_at: Optional[datetime] = None

    def __post_init__(self) -> None:
        self.confidence = clamp_confidence(self.confidence)
        if self.evidence_count < 1:
            self.evidence_count = 1

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def confirms_subscription(self) -> bool:
        """
        Whether the evidence itself confirms a recurring subscription.

        Email: the Oracle flagged a confirmation email or a confirmed
        subscription type. Bank: at least two charges on a known cycle.
        """
        if self.source == DetectionSource.EMAIL:
            return (
                self.is_confirmation_email
                or self.email_type == EmailType.CONFIRMED_SUBSCRIPTION
            )
        return self.evidence_count >= 2 and self.billing_cycle != BillingCycle.UNKNOWN

    def copy(self, **changes: Any) -> "Detection":
        """Return a copy with the given fields replaced."""
        changes.setdefault("evidence_refs", list(self.evidence_refs))
        changes.setdefault("merged_refs", list(self.merged_refs))
        return replace(self, **changes)

    def to_dict(self) -> dict:
        """Convert to JSON-serializable dictionary."""
        return {
            "id": self.id,
            "source": self.source.value,
            "source_ref": self.source_ref,
            "raw_service_name": self.raw_service_name,
            "normalized_service_name": self.normalized_service_name,
            "amount": str(self.amount) if self.amount is not None else None,
            "currency": self.currency,
            "billing_cycle": self.billing_cycle.value,
            "category": self.category.value,
            "confidence": self.confidence,
            "status": self.status.value,
            "detected_at": self.detected_at.isoformat(),
            "evidence_count": self.evidence_count,
            "evidence_refs": list(self.evidence_refs),
            "is_confirmation_email": self.is_confirmation_email,
            "email_type": self.email_type.value if self.email_type else None,
            "last_seen": self.last_seen.isoformat() if self.last_seen else None,
            "next_billing_date": (
                self.next_billing_date.isoformat() if self.next_billing_date else None
            ),
            "description": self.description,
            "subscription_id": self.subscription_id,
            "reviewed_at": self.reviewed_at.isoformat() if self.reviewed_at else None,
        }


@dataclass
class PriceHistoryEntry:
    """One observed price point for a service. Append-only."""

    service_name: str
    amount: Decimal
    currency: str
    billing_cycle: BillingCycle
    observed_at: datetime


@dataclass
class PriceChange:
    """
    Derived price-change event.

    change_percentage is computed against the old price and is None when the
    old price was zero.
    """

    service_name: str
    old_price: Decimal
    new_price: Decimal
    currency: str
    change_amount: Decimal
    change_percentage: Optional[Decimal]
    trend: PriceTrend
    detected_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict:
        return {
            "service": self.service_name,
            "old": str(self.old_price),
            "new": str(self.new_price),
            "currency": self.currency,
            "change_amount": str(self.change_amount),
            "change_percentage": (
                str(self.change_percentage) if self.change_percentage is not None else None
            ),
            "trend": self.trend.value,
        }


@dataclass
class Subscription:
    """A real (active) subscription record."""

    id: str
    user_id: str
    name: str
    normalized_name: str
    amount: Optional[Decimal]
    currency: str
    billing_cycle: BillingCycle
    category: Category
    origin: SubscriptionOrigin
    created_at: datetime
    status: str = "active"
    next_billing_date: Optional[date] = None
    description: Optional[str] = None
    detection_id: Optional[str] = None
