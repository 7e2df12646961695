"""Extraction Oracle: structured subscription fields from emails."""

from .base import ExtractionFailure, ExtractionOracle, OracleError, OracleResult
from .prompts import PROMPT_VERSION, SubscriptionPrompt
from .service import OllamaExtractionOracle

__all__ = [
    "PROMPT_VERSION",
    "ExtractionFailure",
    "ExtractionOracle",
    "OllamaExtractionOracle",
    "OracleError",
    "OracleResult",
    "SubscriptionPrompt",
]
