"""
Source reference keys (CRITICAL).

This module defines THE deterministic source_ref functions.
The detection store enforces uniqueness on (user, source, source_ref), so
re-ingesting the same evidence never creates a second detection.

Source Ref Formats:
1. Email: {message_id}
   - Taken verbatim from the mailbox provider

2. Bank: bank:{hash}
   - hash = SHA256(sorted transaction ids joined by "|")[:16]
   - The same set of transactions always yields the same ref,
     regardless of the order the feed returned them in

The source_ref must be:
- Stable: Same evidence always produces the same ref
- Order-independent: Transaction order does not matter
- Collision-resistant: Different evidence sets produce different refs
"""

import hashlib
from collections.abc import Iterable
from decimal import Decimal

# ============================================================================
# SSOT Constants for Source Ref Generation
# ============================================================================

BANK_REF_PREFIX = "bank:"

# Length of the hash prefix to use
HASH_PREFIX_LENGTH = 16


def _normalize_string(value: str | None) -> str:
    """Normalize a string for hashing (lowercase, strip whitespace)."""
    if not value:
        return ""
    return value.strip().lower()


def compute_transaction_id(
    merchant: str,
    amount: Decimal | str | float,
    date: str,
    account_id: str | None = None,
) -> str:
    """
    Compute a deterministic id for a bank transaction that arrived without one.

    Hash components (in order): account, merchant, amount (2 decimals), date.

    Returns:
        HASH_PREFIX_LENGTH lowercase hex characters
    """
    if isinstance(amount, float):
        amount = Decimal(str(amount))
    normalized_amount = f"{Decimal(amount):.2f}"
    canonical = "|".join(
        [
            _normalize_string(account_id),
            _normalize_string(merchant),
            normalized_amount,
            date.strip() if date else "",
        ]
    )
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()[:HASH_PREFIX_LENGTH]


def bank_source_ref(transaction_ids: Iterable[str]) -> str:
    """
    Generate the source_ref for a bank-derived detection.

    Args:
        transaction_ids: Ids of every transaction that formed the pattern

    Returns:
        "bank:" followed by a 16-character hash

    Raises:
        ValueError: If no transaction ids are given
    """
    ids = sorted({str(tx_id).strip() for tx_id in transaction_ids if str(tx_id).strip()})
    if not ids:
        raise ValueError("bank_source_ref requires at least one transaction id")

    digest = hashlib.sha256("|".join(ids).encode("utf-8")).hexdigest()
    return f"{BANK_REF_PREFIX}{digest[:HASH_PREFIX_LENGTH]}"


def email_source_ref(message_id: str) -> str:
    """
    Generate the source_ref for an email-derived detection.

    Raises:
        ValueError: If the message id is empty
    """
    if not message_id or not str(message_id).strip():
        raise ValueError("email_source_ref requires a message id")
    return str(message_id).strip()


def is_bank_source_ref(source_ref: str | None) -> bool:
    """Check whether a source_ref was generated for bank evidence."""
    return bool(source_ref) and source_ref.startswith(BANK_REF_PREFIX)
