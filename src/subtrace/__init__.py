"""
Email + bank evidence → Subscription candidates → Review → Import

A deterministic, testable engine that turns scanned emails and bank
transaction history into one deduplicated set of subscription candidates,
with confidence scoring, price tracking, and an auto-import/review workflow.
"""

__version__ = "0.1.0"
