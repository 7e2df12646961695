"""
Extraction Oracle interface and result type.

The Oracle turns one email into structured subscription fields. Its
natural-language reasoning is out of scope here; the engine trusts the
structure it returns and validates the values downstream.
"""

from dataclasses import dataclass, field
from typing import Any, Optional, Protocol

from ..sources.base import EmailMessage


class OracleError(Exception):
    """Base exception for extraction oracle errors."""

    pass


class ExtractionFailure(OracleError):
    """Oracle error or malformed response for one email.

    The email is skipped; the batch continues.
    """

    def __init__(self, message_id: str, reason: str):
        self.message_id = message_id
        self.reason = reason
        super().__init__(f"Extraction failed for {message_id}: {reason}")


def _as_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() in ("true", "yes", "1")
    return bool(value)


def _as_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    if not text or text.lower() in ("null", "none", "n/a", "unknown"):
        return None
    return text


@dataclass
class OracleResult:
    """Structured answer for one email.

    amount is passed through as the Oracle produced it (number or text);
    the normalizer decides whether it is usable.
    """

    is_subscription: bool
    is_confirmation_email: bool = False
    email_type: Optional[str] = None
    service_name: Optional[str] = None
    amount: Any = None
    currency: Optional[str] = None
    billing_cycle: Optional[str] = None
    next_billing_date: Optional[str] = None  # YYYY-MM-DD
    category: Optional[str] = None
    confidence: Any = 0
    description: Optional[str] = None
    found_keywords: list[str] = field(default_factory=list)
    model: Optional[str] = None
    from_cache: bool = False

    @classmethod
    def not_subscription(cls) -> "OracleResult":
        """The explicit "not a subscription" answer."""
        return cls(is_subscription=False)

    @classmethod
    def from_dict(cls, data: dict) -> "OracleResult":
        """Build from the Oracle's JSON object (camelCase keys).

        Raises:
            ValueError: If data is not a JSON object
        """
        if not isinstance(data, dict):
            raise ValueError(f"expected JSON object, got {type(data).__name__}")

        keywords = data.get("foundKeywords") or []
        if not isinstance(keywords, list):
            keywords = [str(keywords)]

        return cls(
            is_subscription=_as_bool(data.get("isSubscription", False)),
            is_confirmation_email=_as_bool(data.get("isConfirmationEmail", False)),
            email_type=_as_text(data.get("emailType")),
            service_name=_as_text(data.get("serviceName")),
            amount=data.get("amount"),
            currency=_as_text(data.get("currency")),
            billing_cycle=_as_text(data.get("billingCycle")),
            next_billing_date=_as_text(data.get("nextBillingDate")),
            category=_as_text(data.get("category")),
            confidence=data.get("confidence", 0),
            description=_as_text(data.get("description")),
            found_keywords=[str(k) for k in keywords],
        )

    def to_dict(self) -> dict:
        """Convert to the Oracle's JSON shape (used for caching)."""
        return {
            "isSubscription": self.is_subscription,
            "isConfirmationEmail": self.is_confirmation_email,
            "emailType": self.email_type,
            "serviceName": self.service_name,
            "amount": self.amount,
            "currency": self.currency,
            "billingCycle": self.billing_cycle,
            "nextBillingDate": self.next_billing_date,
            "category": self.category,
            "confidence": self.confidence,
            "description": self.description,
            "foundKeywords": list(self.found_keywords),
        }


class ExtractionOracle(Protocol):
    """Structured extraction service for emails."""

    def extract(self, email: EmailMessage) -> OracleResult:
        """Extract subscription fields.

        Raises:
            ExtractionFailure: On Oracle error or malformed response
        """
        ...
