"""Services for subtrace."""

from .batch import AccountJob, AccountResult, run_account_scans
from .detection import DetectionService, ScanSummary
from .insights import InsightsBuilder, InsightsReport
from .notifications import Notifier
from .price_history import PriceHistoryTracker, compute_price_change

__all__ = [
    "AccountJob",
    "AccountResult",
    "DetectionService",
    "InsightsBuilder",
    "InsightsReport",
    "Notifier",
    "PriceHistoryTracker",
    "ScanSummary",
    "compute_price_change",
    "run_account_scans",
]
