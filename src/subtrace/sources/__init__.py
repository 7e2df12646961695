"""
Evidence sources.

Provides:
- EmailSource / TransactionSource interfaces
- HTTP adapters with retry/backoff for JSON REST providers
- SourceUnavailable for expired or missing authorization
"""

from .base import (
    BankTransaction,
    EmailMessage,
    EmailSource,
    ProgressCallback,
    ScanProgress,
    SourceError,
    SourceUnavailable,
    TransactionSource,
)
from .client import HttpEmailSource, HttpTransactionSource, SourceAPIError

__all__ = [
    "BankTransaction",
    "EmailMessage",
    "EmailSource",
    "HttpEmailSource",
    "HttpTransactionSource",
    "ProgressCallback",
    "ScanProgress",
    "SourceAPIError",
    "SourceError",
    "SourceUnavailable",
    "TransactionSource",
]
