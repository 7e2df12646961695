"""
Review module.

Provides:
- Decision engine (auto-import / pending / ignore)
- User import and reject transitions
"""

from ..errors import DetectionNotFound, ImportConflict, ReviewError
from .workflow import DecisionEngine, DecisionOutcome, DecisionResult

__all__ = [
    "DecisionEngine",
    "DecisionOutcome",
    "DecisionResult",
    "DetectionNotFound",
    "ImportConflict",
    "ReviewError",
]
