"""
Evidence source interfaces and common types.

Sources are external collaborators: a mailbox provider and a bank transaction
feed. The engine only depends on the Protocols below; the HTTP adapters in
subtrace.sources.client are one possible implementation.
"""

from collections.abc import Callable
from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Optional, Protocol

from ..schemas.dedupe import compute_transaction_id


class SourceError(Exception):
    """Base exception for evidence source errors."""

    pass


class SourceUnavailable(SourceError):
    """Source refused access (expired or missing authorization).

    Aborts the run for that account before any detection work begins.
    """

    def __init__(self, source: str, reason: str):
        self.source = source
        self.reason = reason
        super().__init__(f"{source} unavailable: {reason}")


@dataclass
class EmailMessage:
    """One email as returned by an Email Source."""

    id: str
    subject: str
    sender: str
    date: Optional[datetime]
    body: str

    @classmethod
    def from_dict(cls, data: dict) -> "EmailMessage":
        """Create from a provider JSON object ({id, subject, from, date, body})."""
        raw_date = data.get("date")
        parsed: Optional[datetime] = None
        if isinstance(raw_date, datetime):
            parsed = raw_date
        elif raw_date:
            try:
                parsed = datetime.fromisoformat(str(raw_date).replace("Z", "+00:00"))
            except ValueError:
                parsed = None
        if parsed is not None and parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return cls(
            id=str(data["id"]),
            subject=data.get("subject") or "",
            sender=data.get("from") or data.get("sender") or "",
            date=parsed,
            body=data.get("body") or data.get("snippet") or "",
        )


@dataclass
class BankTransaction:
    """One debit from a Transaction Source."""

    merchant: str
    amount: Decimal
    date: date
    id: Optional[str] = None
    currency: Optional[str] = None
    account_id: Optional[str] = None

    @property
    def transaction_id(self) -> str:
        """Provider id, or a deterministic id when the feed carries none."""
        if self.id:
            return self.id
        return compute_transaction_id(
            self.merchant, self.amount, self.date.isoformat(), self.account_id
        )

    @classmethod
    def from_dict(cls, data: dict, account_id: Optional[str] = None) -> "BankTransaction":
        """Create from a provider JSON object ({id?, merchant, amount, date, currency?}).

        Raises:
            ValueError: If amount or date cannot be parsed
        """
        try:
            amount = Decimal(str(data["amount"]))
        except (InvalidOperation, KeyError) as e:
            raise ValueError(f"Invalid transaction amount: {data.get('amount')!r}") from e
        raw_date = data.get("date")
        if isinstance(raw_date, date):
            tx_date = raw_date
        else:
            tx_date = date.fromisoformat(str(raw_date)[:10])
        return cls(
            merchant=data.get("merchant") or data.get("description") or "",
            amount=amount,
            date=tx_date,
            id=str(data["id"]) if data.get("id") is not None else None,
            currency=data.get("currency"),
            account_id=account_id,
        )


@dataclass
class ScanProgress:
    """Incremental progress report of a deep scan."""

    phase: str
    current: int
    total: Optional[int] = None

    def to_dict(self) -> dict[str, Any]:
        return {"phase": self.phase, "current": self.current, "total": self.total}


ProgressCallback = Callable[[ScanProgress], None]


class EmailSource(Protocol):
    """Mailbox provider."""

    def scan(self, max_results: int, days_back: int) -> list[EmailMessage]:
        """Return recent emails that may carry billing evidence."""
        ...

    def deep_scan(
        self, days_back: int, progress_callback: Optional[ProgressCallback] = None
    ) -> list[EmailMessage]:
        """Exhaustive sweep over the window, reporting progress per page."""
        ...


class TransactionSource(Protocol):
    """Bank transaction feed."""

    def transactions(
        self, account_id: str, start_date: date, end_date: date
    ) -> list[BankTransaction]:
        """Return debits for the account in [start_date, end_date]."""
        ...
