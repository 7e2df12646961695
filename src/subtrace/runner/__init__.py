"""
CLI runner module.

Provides commands:
- init-config: Write a default configuration
- scan-emails / deep-scan: Detect subscriptions from emails
- scan-bank: Detect recurring charges in bank transactions
- list / import / reject: Review detections
- price-history / status: Inspect the store
"""

from .main import create_cli, main

__all__ = [
    "create_cli",
    "main",
]
