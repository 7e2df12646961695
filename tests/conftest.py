"""Test fixtures and utilities."""

from datetime import date
from pathlib import Path

import pytest

from fixtures import make_transactions
from subtrace.config import ScanConfig
from subtrace.extractors import EmailCandidateExtractor, RateLimiter
from subtrace.matching import Deduplicator
from subtrace.normalization import AliasTable, CandidateNormalizer
from subtrace.review import DecisionEngine
from subtrace.services import (
    DetectionService,
    InsightsBuilder,
    Notifier,
    PriceHistoryTracker,
)
from subtrace.state_store import DetectionStore


@pytest.fixture
def temp_db(tmp_path) -> Path:
    """Temporary database path for testing."""
    return tmp_path / "test_state.db"


@pytest.fixture
def store(temp_db) -> DetectionStore:
    """Fresh detection store."""
    return DetectionStore(temp_db)


@pytest.fixture(scope="session")
def alias_table() -> AliasTable:
    """Packaged alias table."""
    return AliasTable.load()


@pytest.fixture
def normalizer(alias_table) -> CandidateNormalizer:
    return CandidateNormalizer(alias_table, home_currency="INR")


@pytest.fixture
def notifier(store) -> Notifier:
    return Notifier(store)


@pytest.fixture
def engine(store, notifier) -> DecisionEngine:
    return DecisionEngine(store, notifier)


@pytest.fixture
def no_wait_limiter() -> RateLimiter:
    """Rate limiter with a zero interval so tests do not sleep."""
    return RateLimiter(min_interval=0)


@pytest.fixture
def make_service(store, normalizer, engine, notifier, no_wait_limiter):
    """Build a DetectionService around an oracle, wired to the test store."""

    def _make(oracle=None, chunk_size: int = 25) -> DetectionService:
        extractor = None
        if oracle is not None:
            extractor = EmailCandidateExtractor(oracle, rate_limiter=no_wait_limiter)
        return DetectionService(
            store=store,
            normalizer=normalizer,
            deduplicator=Deduplicator(),
            tracker=PriceHistoryTracker(store),
            decision_engine=engine,
            extractor=extractor,
            notifier=notifier,
            insights=InsightsBuilder(home_currency="INR"),
            config=ScanConfig(deep_scan_chunk_size=chunk_size),
        )

    return _make


@pytest.fixture
def netflix_transactions():
    """Three Netflix charges about a month apart."""
    return make_transactions(
        "Netflix", "649", [date(2024, 1, 5), date(2024, 2, 5), date(2024, 3, 6)]
    )
