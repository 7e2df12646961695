"""
SQLite-based detection store.

Tables:
- detections: candidate subscriptions and their review state
- detection_refs: every (source, source_ref) ever ingested, mapped to its detection
- subscriptions: real subscription records (manual or imported)
- price_history: append-only price points per service

Migrations add scan_runs, notifications and oracle_cache.

Check-then-insert writes run under BEGIN IMMEDIATE so concurrent account
workers cannot both create a pending detection for the same service.
"""

import dataclasses
import json
import logging
import sqlite3
import uuid
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from enum import Enum
from pathlib import Path
from typing import Any, Optional

from ..errors import DetectionNotFound, ImportConflict, PersistenceFailure
from ..schemas.detection import (
    BillingCycle,
    Category,
    Detection,
    DetectionSource,
    DetectionStatus,
    EmailType,
    PriceHistoryEntry,
    Subscription,
    SubscriptionOrigin,
    utcnow,
)

logger = logging.getLogger(__name__)

ACTIVE = "active"


class UpsertOutcome(str, Enum):
    """Result of ingesting a pending detection."""

    CREATED = "created"
    UPDATED = "updated"
    UNCHANGED = "unchanged"
    DUPLICATE = "duplicate"  # source_ref already terminal


def _iso(value: Optional[datetime | date]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _parse_datetime(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _parse_date(value: Optional[str]) -> Optional[date]:
    return date.fromisoformat(value) if value else None


def _decimal(value: Optional[str]) -> Optional[Decimal]:
    return Decimal(value) if value is not None else None


def detection_from_row(row: sqlite3.Row) -> Detection:
    """Create a Detection from a detections row."""
    return Detection(
        id=row["id"],
        source=DetectionSource(row["source"]),
        source_ref=row["source_ref"],
        raw_service_name=row["raw_service_name"],
        normalized_service_name=row["normalized_service_name"],
        amount=_decimal(row["amount"]),
        currency=row["currency"],
        billing_cycle=BillingCycle(row["billing_cycle"]),
        category=Category(row["category"]),
        confidence=row["confidence"],
        status=DetectionStatus(row["status"]),
        detected_at=_parse_datetime(row["detected_at"]),
        evidence_count=row["evidence_count"],
        evidence_refs=json.loads(row["evidence_refs"]) if row["evidence_refs"] else [],
        is_confirmation_email=bool(row["is_confirmation_email"]),
        email_type=EmailType(row["email_type"]) if row["email_type"] else None,
        last_seen=_parse_date(row["last_seen"]),
        next_billing_date=_parse_date(row["next_billing_date"]),
        description=row["description"],
        subscription_id=row["subscription_id"],
        reviewed_at=_parse_datetime(row["reviewed_at"]),
    )


def subscription_from_row(row: sqlite3.Row) -> Subscription:
    """Create a Subscription from a subscriptions row."""
    return Subscription(
        id=row["id"],
        user_id=row["user_id"],
        name=row["name"],
        normalized_name=row["normalized_name"],
        amount=_decimal(row["amount"]),
        currency=row["currency"],
        billing_cycle=BillingCycle(row["billing_cycle"]),
        category=Category(row["category"]),
        origin=SubscriptionOrigin(row["origin"]),
        created_at=_parse_datetime(row["created_at"]),
        status=row["status"],
        next_billing_date=_parse_date(row["next_billing_date"]),
        description=row["description"],
        detection_id=row["detection_id"],
    )


def merge_into_pending(existing: Detection, incoming: Detection) -> Detection:
    """Refresh a stored pending detection with newer evidence.

    A candidate at least as confident as the stored one replaces its
    descriptive fields; a weaker one may only fill gaps. Evidence accumulates.
    """
    merged = existing.copy()
    if incoming.confidence >= existing.confidence:
        merged.raw_service_name = incoming.raw_service_name
        merged.category = incoming.category
        merged.confidence = incoming.confidence
        merged.is_confirmation_email = incoming.is_confirmation_email
        merged.email_type = incoming.email_type
        if incoming.billing_cycle != BillingCycle.UNKNOWN:
            merged.billing_cycle = incoming.billing_cycle
        if incoming.amount is not None:
            merged.amount = incoming.amount
            merged.currency = incoming.currency
        if incoming.description:
            merged.description = incoming.description
        if incoming.next_billing_date is not None:
            merged.next_billing_date = incoming.next_billing_date
    else:
        if merged.amount is None and incoming.amount is not None:
            merged.amount = incoming.amount
            merged.currency = incoming.currency
        if merged.billing_cycle == BillingCycle.UNKNOWN:
            merged.billing_cycle = incoming.billing_cycle
        if merged.next_billing_date is None:
            merged.next_billing_date = incoming.next_billing_date

    if incoming.last_seen and (merged.last_seen is None or incoming.last_seen > merged.last_seen):
        merged.last_seen = incoming.last_seen

    for ref in incoming.evidence_refs:
        if ref not in merged.evidence_refs:
            merged.evidence_refs.append(ref)
    merged.evidence_count = max(
        existing.evidence_count, incoming.evidence_count, len(merged.evidence_refs)
    )
    return merged


_COMPARED_FIELDS = (
    "raw_service_name",
    "amount",
    "currency",
    "billing_cycle",
    "category",
    "confidence",
    "evidence_count",
    "evidence_refs",
    "is_confirmation_email",
    "email_type",
    "last_seen",
    "next_billing_date",
    "description",
)


def _changed(before: Detection, after: Detection) -> bool:
    return any(getattr(before, f) != getattr(after, f) for f in _COMPARED_FIELDS)


class DetectionStore:
    """
    SQLite-based repository for detections, subscriptions and price history.

    Opens one connection per operation. Safe for concurrent writers across
    threads and processes sharing the database file.
    """

    SCHEMA_VERSION = 1
    BUSY_TIMEOUT_SECONDS = 30.0

    def __init__(self, db_path: Path | str, run_migrations: bool = True):
        """
        Initialize detection store.

        Args:
            db_path: Path to SQLite database file
            run_migrations: Whether to run pending migrations (default True)
        """
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_db()
        if run_migrations:
            self._run_migrations()

    def _get_connection(self) -> sqlite3.Connection:
        """Get a database connection with row factory."""
        conn = sqlite3.connect(str(self.db_path), timeout=self.BUSY_TIMEOUT_SECONDS)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        """Context manager for database transactions."""
        conn = self._get_connection()
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    @contextmanager
    def _immediate_transaction(self) -> Iterator[sqlite3.Connection]:
        """Write transaction holding the database write lock from the first statement.

        Raises:
            PersistenceFailure: If SQLite reports an error; nothing is committed
        """
        conn = self._get_connection()
        conn.isolation_level = None
        try:
            conn.execute("BEGIN IMMEDIATE")
            yield conn
            conn.execute("COMMIT")
        except sqlite3.Error as e:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise PersistenceFailure(str(e)) from e
        except Exception:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise
        finally:
            conn.close()

    def _init_db(self) -> None:
        """Initialize database schema."""
        with self._transaction() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS schema_version (
                    version INTEGER PRIMARY KEY
                )
            """
            )

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS subscriptions (
                    id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    name TEXT NOT NULL,
                    normalized_name TEXT NOT NULL,
                    amount TEXT,
                    currency TEXT NOT NULL,
                    billing_cycle TEXT NOT NULL,
                    category TEXT NOT NULL,
                    status TEXT NOT NULL DEFAULT 'active',
                    origin TEXT NOT NULL,
                    next_billing_date TEXT,
                    description TEXT,
                    detection_id TEXT,
                    created_at TEXT NOT NULL
                )
            """
            )

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS detections (
                    id TEXT PRIMARY KEY,
                    user_id TEXT NOT NULL,
                    source TEXT NOT NULL,
                    source_ref TEXT NOT NULL,
                    raw_service_name TEXT NOT NULL,
                    normalized_service_name TEXT NOT NULL,
                    amount TEXT,
                    currency TEXT NOT NULL,
                    billing_cycle TEXT NOT NULL,
                    category TEXT NOT NULL,
                    confidence INTEGER NOT NULL CHECK (confidence BETWEEN 0 AND 100),
                    status TEXT NOT NULL,
                    detected_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    evidence_count INTEGER NOT NULL DEFAULT 1,
                    evidence_refs TEXT,  -- JSON array
                    is_confirmation_email INTEGER NOT NULL DEFAULT 0,
                    email_type TEXT,
                    last_seen TEXT,
                    next_billing_date TEXT,
                    description TEXT,
                    subscription_id TEXT,
                    reviewed_at TEXT,
                    UNIQUE (user_id, source, source_ref),
                    FOREIGN KEY (subscription_id) REFERENCES subscriptions(id)
                )
            """
            )

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS detection_refs (
                    user_id TEXT NOT NULL,
                    source TEXT NOT NULL,
                    source_ref TEXT NOT NULL,
                    detection_id TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    PRIMARY KEY (user_id, source, source_ref),
                    FOREIGN KEY (detection_id) REFERENCES detections(id)
                )
            """
            )

            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS price_history (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id TEXT NOT NULL,
                    service_name TEXT NOT NULL,
                    amount TEXT NOT NULL,
                    currency TEXT NOT NULL,
                    billing_cycle TEXT NOT NULL,
                    observed_at TEXT NOT NULL,
                    source_ref TEXT
                )
            """
            )

            # At most one pending detection per service per user
            conn.execute(
                """
                CREATE UNIQUE INDEX IF NOT EXISTS idx_detections_one_pending
                ON detections(user_id, normalized_service_name)
                WHERE status = 'pending'
            """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_detections_status ON detections(user_id, status)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_subscriptions_name "
                "ON subscriptions(user_id, normalized_name, status)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_price_history_service "
                "ON price_history(user_id, service_name, id)"
            )

            conn.execute(
                "INSERT OR REPLACE INTO schema_version (version) VALUES (?)", (self.SCHEMA_VERSION,)
            )

    def _run_migrations(self) -> None:
        """Run pending database migrations."""
        from .migrations import MigrationRunner

        conn = self._get_connection()
        try:
            runner = MigrationRunner(conn)
            runner.run_pending()
        finally:
            conn.close()

    # === Row helpers (called inside an open transaction) ===

    def _insert_detection(self, conn: sqlite3.Connection, user_id: str, d: Detection) -> None:
        now = utcnow().isoformat()
        conn.execute(
            """
            INSERT INTO detections (
                id, user_id, source, source_ref, raw_service_name, normalized_service_name,
                amount, currency, billing_cycle, category, confidence, status,
                detected_at, updated_at, evidence_count, evidence_refs,
                is_confirmation_email, email_type, last_seen, next_billing_date,
                description, subscription_id, reviewed_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
            (
                d.id,
                user_id,
                d.source.value,
                d.source_ref,
                d.raw_service_name,
                d.normalized_service_name,
                str(d.amount) if d.amount is not None else None,
                d.currency,
                d.billing_cycle.value,
                d.category.value,
                d.confidence,
                d.status.value,
                d.detected_at.isoformat(),
                now,
                d.evidence_count,
                json.dumps(d.evidence_refs),
                int(d.is_confirmation_email),
                d.email_type.value if d.email_type else None,
                _iso(d.last_seen),
                _iso(d.next_billing_date),
                d.description,
                d.subscription_id,
                _iso(d.reviewed_at),
            ),
        )

    def _update_detection(self, conn: sqlite3.Connection, d: Detection) -> None:
        conn.execute(
            """
            UPDATE detections SET
                raw_service_name = ?, amount = ?, currency = ?, billing_cycle = ?,
                category = ?, confidence = ?, status = ?, updated_at = ?,
                evidence_count = ?, evidence_refs = ?, is_confirmation_email = ?,
                email_type = ?, last_seen = ?, next_billing_date = ?, description = ?,
                subscription_id = ?, reviewed_at = ?
            WHERE id = ?
        """,
            (
                d.raw_service_name,
                str(d.amount) if d.amount is not None else None,
                d.currency,
                d.billing_cycle.value,
                d.category.value,
                d.confidence,
                d.status.value,
                utcnow().isoformat(),
                d.evidence_count,
                json.dumps(d.evidence_refs),
                int(d.is_confirmation_email),
                d.email_type.value if d.email_type else None,
                _iso(d.last_seen),
                _iso(d.next_billing_date),
                d.description,
                d.subscription_id,
                _iso(d.reviewed_at),
                d.id,
            ),
        )

    def _record_refs(
        self, conn: sqlite3.Connection, user_id: str, detection_id: str, d: Detection
    ) -> None:
        now = utcnow().isoformat()
        for source, source_ref in [(d.source, d.source_ref), *d.merged_refs]:
            conn.execute(
                """
                INSERT OR IGNORE INTO detection_refs
                (user_id, source, source_ref, detection_id, created_at)
                VALUES (?, ?, ?, ?, ?)
            """,
                (user_id, source.value, source_ref, detection_id, now),
            )

    def _find_by_ref(
        self, conn: sqlite3.Connection, user_id: str, source: DetectionSource, source_ref: str
    ) -> Optional[Detection]:
        row = conn.execute(
            """
            SELECT d.* FROM detection_refs r
            JOIN detections d ON d.id = r.detection_id
            WHERE r.user_id = ? AND r.source = ? AND r.source_ref = ?
        """,
            (user_id, source.value, source_ref),
        ).fetchone()
        return detection_from_row(row) if row else None

    def _find_pending_by_name(
        self, conn: sqlite3.Connection, user_id: str, normalized_name: str
    ) -> Optional[Detection]:
        row = conn.execute(
            """
            SELECT * FROM detections
            WHERE user_id = ? AND normalized_service_name = ? AND status = ?
        """,
            (user_id, normalized_name, DetectionStatus.PENDING.value),
        ).fetchone()
        return detection_from_row(row) if row else None

    def _insert_subscription(self, conn: sqlite3.Connection, sub: Subscription) -> None:
        conn.execute(
            """
            INSERT INTO subscriptions (
                id, user_id, name, normalized_name, amount, currency, billing_cycle,
                category, status, origin, next_billing_date, description, detection_id,
                created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
            (
                sub.id,
                sub.user_id,
                sub.name,
                sub.normalized_name,
                str(sub.amount) if sub.amount is not None else None,
                sub.currency,
                sub.billing_cycle.value,
                sub.category.value,
                sub.status,
                sub.origin.value,
                _iso(sub.next_billing_date),
                sub.description,
                sub.detection_id,
                sub.created_at.isoformat(),
            ),
        )

    @staticmethod
    def _subscription_for(
        user_id: str, d: Detection, origin: SubscriptionOrigin, now: datetime
    ) -> Subscription:
        return Subscription(
            id=uuid.uuid4().hex,
            user_id=user_id,
            name=d.raw_service_name or d.normalized_service_name,
            normalized_name=d.normalized_service_name,
            amount=d.amount,
            currency=d.currency,
            billing_cycle=d.billing_cycle,
            category=d.category,
            origin=origin,
            created_at=now,
            next_billing_date=d.next_billing_date,
            description=d.description,
            detection_id=d.id,
        )

    # === Detection methods ===

    def upsert_pending(
        self, user_id: str, detection: Detection
    ) -> tuple[UpsertOutcome, Detection]:
        """
        Ingest a detection as pending, idempotently.

        1. Its source_ref was seen before:
           terminal detection -> DUPLICATE (no-op); pending -> refreshed
        2. A pending detection for the same service exists -> refreshed
        3. Otherwise -> inserted

        Returns:
            (outcome, stored detection)
        """
        with self._immediate_transaction() as conn:
            existing = self._find_by_ref(conn, user_id, detection.source, detection.source_ref)
            if existing is not None and existing.is_terminal:
                return UpsertOutcome.DUPLICATE, existing

            if existing is None:
                existing = self._find_pending_by_name(
                    conn, user_id, detection.normalized_service_name
                )

            if existing is not None:
                merged = merge_into_pending(existing, detection)
                self._record_refs(conn, user_id, existing.id, detection)
                if not _changed(existing, merged):
                    return UpsertOutcome.UNCHANGED, existing
                self._update_detection(conn, merged)
                return UpsertOutcome.UPDATED, merged

            stored = detection.copy(
                id=uuid.uuid4().hex, status=DetectionStatus.PENDING, merged_refs=[]
            )
            self._insert_detection(conn, user_id, stored)
            self._record_refs(conn, user_id, stored.id, detection)
            return UpsertOutcome.CREATED, stored

    def auto_import(self, user_id: str, detection: Detection) -> tuple[Detection, Subscription]:
        """
        Create a Subscription and a terminal auto-imported Detection atomically.

        A pending detection for the same source_ref or service is promoted
        instead of duplicated.

        Raises:
            ImportConflict: If the source_ref already belongs to a terminal detection
            PersistenceFailure: If the write fails; nothing is committed
        """
        now = utcnow()
        with self._immediate_transaction() as conn:
            existing = self._find_by_ref(conn, user_id, detection.source, detection.source_ref)
            if existing is not None and existing.is_terminal:
                raise ImportConflict(existing.id, existing.status.value)
            if existing is None:
                existing = self._find_pending_by_name(
                    conn, user_id, detection.normalized_service_name
                )

            if existing is not None:
                stored = merge_into_pending(existing, detection)
            else:
                stored = detection.copy(id=uuid.uuid4().hex, merged_refs=[])

            subscription = self._subscription_for(
                user_id, stored, SubscriptionOrigin.AUTO_IMPORT, now
            )
            self._insert_subscription(conn, subscription)

            stored.status = DetectionStatus.AUTO_IMPORTED
            stored.subscription_id = subscription.id
            stored.reviewed_at = now
            if existing is not None:
                self._update_detection(conn, stored)
            else:
                self._insert_detection(conn, user_id, stored)
            self._record_refs(conn, user_id, stored.id, detection)

        logger.info("Auto-imported %s as subscription %s", stored.normalized_service_name, subscription.id)
        return stored, subscription

    def import_detection(self, user_id: str, detection_id: str) -> Subscription:
        """
        Import a pending detection as a real Subscription.

        Raises:
            DetectionNotFound: Unknown id for this user
            ImportConflict: Detection is already terminal
        """
        now = utcnow()
        with self._immediate_transaction() as conn:
            row = conn.execute(
                "SELECT * FROM detections WHERE id = ? AND user_id = ?",
                (detection_id, user_id),
            ).fetchone()
            if row is None:
                raise DetectionNotFound(detection_id)
            detection = detection_from_row(row)
            if detection.is_terminal:
                raise ImportConflict(detection_id, detection.status.value)

            subscription = self._subscription_for(
                user_id, detection, SubscriptionOrigin.DETECTION, now
            )
            self._insert_subscription(conn, subscription)

            detection.status = DetectionStatus.IMPORTED
            detection.subscription_id = subscription.id
            detection.reviewed_at = now
            self._update_detection(conn, detection)

        logger.info("Imported detection %s as subscription %s", detection_id, subscription.id)
        return subscription

    def reject_detection(self, user_id: str, detection_id: str) -> Detection:
        """
        Reject a pending detection.

        Raises:
            DetectionNotFound: Unknown id for this user
            ImportConflict: Detection is already terminal
        """
        with self._immediate_transaction() as conn:
            row = conn.execute(
                "SELECT * FROM detections WHERE id = ? AND user_id = ?",
                (detection_id, user_id),
            ).fetchone()
            if row is None:
                raise DetectionNotFound(detection_id)
            detection = detection_from_row(row)
            if detection.is_terminal:
                raise ImportConflict(detection_id, detection.status.value)

            detection.status = DetectionStatus.REJECTED
            detection.reviewed_at = utcnow()
            self._update_detection(conn, detection)

        logger.info("Rejected detection %s", detection_id)
        return detection

    def get_detection(self, user_id: str, detection_id: str) -> Detection | None:
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT * FROM detections WHERE id = ? AND user_id = ?",
                (detection_id, user_id),
            ).fetchone()
            return detection_from_row(row) if row else None

    def get_detection_by_ref(
        self, user_id: str, source: DetectionSource, source_ref: str
    ) -> Detection | None:
        """Detection that ingested this source_ref, if any."""
        with self._transaction() as conn:
            return self._find_by_ref(conn, user_id, source, source_ref)

    def list_detections(
        self,
        user_id: str,
        status: DetectionStatus | None = None,
        source: DetectionSource | None = None,
    ) -> list[Detection]:
        """Detections for a user, newest first, optionally filtered."""
        query = "SELECT * FROM detections WHERE user_id = ?"
        params: list[Any] = [user_id]
        if status is not None:
            query += " AND status = ?"
            params.append(status.value)
        if source is not None:
            query += " AND source = ?"
            params.append(source.value)
        query += " ORDER BY detected_at DESC, confidence DESC"

        with self._transaction() as conn:
            return [detection_from_row(row) for row in conn.execute(query, params).fetchall()]

    def count_detections(self, user_id: str, source_ref: str | None = None) -> int:
        with self._transaction() as conn:
            if source_ref is None:
                row = conn.execute(
                    "SELECT COUNT(*) AS count FROM detections WHERE user_id = ?", (user_id,)
                ).fetchone()
            else:
                row = conn.execute(
                    "SELECT COUNT(*) AS count FROM detections WHERE user_id = ? AND source_ref = ?",
                    (user_id, source_ref),
                ).fetchone()
            return row["count"]

    # === Subscription methods ===

    def add_subscription(
        self,
        user_id: str,
        name: str,
        normalized_name: str,
        amount: Decimal | None,
        currency: str,
        billing_cycle: BillingCycle = BillingCycle.MONTHLY,
        category: Category = Category.OTHER,
        origin: SubscriptionOrigin = SubscriptionOrigin.MANUAL,
        next_billing_date: date | None = None,
        description: str | None = None,
    ) -> Subscription:
        """Register an existing or manually entered subscription."""
        subscription = Subscription(
            id=uuid.uuid4().hex,
            user_id=user_id,
            name=name,
            normalized_name=normalized_name,
            amount=amount,
            currency=currency,
            billing_cycle=billing_cycle,
            category=category,
            origin=origin,
            created_at=utcnow(),
            next_billing_date=next_billing_date,
            description=description,
        )
        with self._immediate_transaction() as conn:
            self._insert_subscription(conn, subscription)
        return subscription

    def get_active_subscription(self, user_id: str, normalized_name: str) -> Subscription | None:
        with self._transaction() as conn:
            row = conn.execute(
                """
                SELECT * FROM subscriptions
                WHERE user_id = ? AND normalized_name = ? AND status = ?
                ORDER BY created_at LIMIT 1
            """,
                (user_id, normalized_name, ACTIVE),
            ).fetchone()
            return subscription_from_row(row) if row else None

    def list_subscriptions(self, user_id: str, status: str | None = ACTIVE) -> list[Subscription]:
        query = "SELECT * FROM subscriptions WHERE user_id = ?"
        params: list[Any] = [user_id]
        if status is not None:
            query += " AND status = ?"
            params.append(status)
        query += " ORDER BY name"
        with self._transaction() as conn:
            return [subscription_from_row(row) for row in conn.execute(query, params).fetchall()]

    # === Price history methods ===

    def _latest_price(
        self, conn: sqlite3.Connection, user_id: str, service_name: str
    ) -> PriceHistoryEntry | None:
        row = conn.execute(
            """
            SELECT * FROM price_history
            WHERE user_id = ? AND service_name = ?
            ORDER BY observed_at DESC, id DESC LIMIT 1
        """,
            (user_id, service_name),
        ).fetchone()
        return self._price_from_row(row) if row else None

    @staticmethod
    def _insert_price(
        conn: sqlite3.Connection, user_id: str, entry: PriceHistoryEntry, source_ref: str | None
    ) -> None:
        conn.execute(
            """
            INSERT INTO price_history
            (user_id, service_name, amount, currency, billing_cycle, observed_at, source_ref)
            VALUES (?, ?, ?, ?, ?, ?, ?)
        """,
            (
                user_id,
                entry.service_name,
                str(entry.amount),
                entry.currency,
                entry.billing_cycle.value,
                entry.observed_at.isoformat(),
                source_ref,
            ),
        )

    def get_latest_price(self, user_id: str, service_name: str) -> PriceHistoryEntry | None:
        """Most recent price point for a service."""
        with self._transaction() as conn:
            return self._latest_price(conn, user_id, service_name)

    def append_price(
        self, user_id: str, entry: PriceHistoryEntry, source_ref: str | None = None
    ) -> None:
        """Append a price point. History rows are never updated or deleted."""
        with self._immediate_transaction() as conn:
            self._insert_price(conn, user_id, entry, source_ref)

    def record_price(
        self,
        user_id: str,
        entry: PriceHistoryEntry,
        should_append: Callable[[PriceHistoryEntry | None, PriceHistoryEntry], bool],
        source_ref: str | None = None,
    ) -> tuple[PriceHistoryEntry | None, PriceHistoryEntry | None]:
        """
        Compare against the latest point and append, under one write lock.

        entry.observed_at is clamped so the ledger never goes back in time.
        Concurrent scans for the same user serialize here, so each sees the
        other's point.

        Returns:
            (previous latest point, appended entry or None)
        """
        with self._immediate_transaction() as conn:
            latest = self._latest_price(conn, user_id, entry.service_name)
            if latest is not None and entry.observed_at < latest.observed_at:
                entry = dataclasses.replace(entry, observed_at=latest.observed_at)
            if not should_append(latest, entry):
                return latest, None
            self._insert_price(conn, user_id, entry, source_ref)
            return latest, entry

    def get_price_history(
        self, user_id: str, service_name: str | None = None
    ) -> list[PriceHistoryEntry]:
        """Price points in insertion order."""
        query = "SELECT * FROM price_history WHERE user_id = ?"
        params: list[Any] = [user_id]
        if service_name is not None:
            query += " AND service_name = ?"
            params.append(service_name)
        query += " ORDER BY service_name, id"
        with self._transaction() as conn:
            return [self._price_from_row(row) for row in conn.execute(query, params).fetchall()]

    @staticmethod
    def _price_from_row(row: sqlite3.Row) -> PriceHistoryEntry:
        return PriceHistoryEntry(
            service_name=row["service_name"],
            amount=Decimal(row["amount"]),
            currency=row["currency"],
            billing_cycle=BillingCycle(row["billing_cycle"]),
            observed_at=_parse_datetime(row["observed_at"]),
        )

    # === Scan run methods ===

    def record_scan_run(
        self,
        user_id: str,
        kind: str,
        started_at: datetime,
        counts: dict[str, int],
        cancelled: bool = False,
        error: str | None = None,
    ) -> int:
        """Record a scan in the audit trail. Returns the run id."""
        columns = (
            "scanned",
            "usable",
            "failed",
            "found",
            "unique_count",
            "auto_imported",
            "pending_review",
            "existing",
            "duplicates",
            "ignored",
            "price_changes",
        )
        with self._transaction() as conn:
            cursor = conn.execute(
                f"""
                INSERT INTO scan_runs
                (user_id, kind, started_at, finished_at, {", ".join(columns)}, cancelled, error)
                VALUES (?, ?, ?, ?, {", ".join("?" for _ in columns)}, ?, ?)
            """,
                (
                    user_id,
                    kind,
                    started_at.isoformat(),
                    utcnow().isoformat(),
                    *[int(counts.get(c, 0)) for c in columns],
                    int(cancelled),
                    error,
                ),
            )
            return cursor.lastrowid

    def get_scan_runs(self, user_id: str, limit: int = 20) -> list[dict[str, Any]]:
        with self._transaction() as conn:
            rows = conn.execute(
                "SELECT * FROM scan_runs WHERE user_id = ? ORDER BY id DESC LIMIT ?",
                (user_id, limit),
            ).fetchall()
            return [dict(row) for row in rows]

    # === Notification methods ===

    def add_notification(
        self,
        user_id: str,
        kind: str,
        title: str,
        message: str,
        payload: dict[str, Any] | None = None,
    ) -> int:
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                INSERT INTO notifications (user_id, kind, title, message, payload_json, created_at)
                VALUES (?, ?, ?, ?, ?, ?)
            """,
                (
                    user_id,
                    kind,
                    title,
                    message,
                    json.dumps(payload) if payload is not None else None,
                    utcnow().isoformat(),
                ),
            )
            return cursor.lastrowid

    def list_notifications(self, user_id: str, unread_only: bool = False) -> list[dict[str, Any]]:
        query = "SELECT * FROM notifications WHERE user_id = ?"
        if unread_only:
            query += " AND read_at IS NULL"
        query += " ORDER BY id"
        with self._transaction() as conn:
            results = []
            for row in conn.execute(query, (user_id,)).fetchall():
                item = dict(row)
                item["payload"] = json.loads(item.pop("payload_json") or "null")
                results.append(item)
            return results

    def mark_notifications_read(self, user_id: str) -> int:
        with self._transaction() as conn:
            cursor = conn.execute(
                "UPDATE notifications SET read_at = ? WHERE user_id = ? AND read_at IS NULL",
                (utcnow().isoformat(), user_id),
            )
            return cursor.rowcount

    # === Oracle cache methods ===

    def get_oracle_cache(self, cache_key: str) -> dict[str, Any] | None:
        """Get an unexpired cached Oracle response by key."""
        with self._transaction() as conn:
            now = utcnow().isoformat()
            row = conn.execute(
                "SELECT * FROM oracle_cache WHERE cache_key = ? AND expires_at > ?",
                (cache_key, now),
            ).fetchone()
            if row:
                conn.execute(
                    "UPDATE oracle_cache SET hit_count = hit_count + 1 WHERE cache_key = ?",
                    (cache_key,),
                )
                return dict(row)
            return None

    def set_oracle_cache(
        self, cache_key: str, model: str, response_json: str, ttl_days: int = 30
    ) -> None:
        now = utcnow()
        expires = now + timedelta(days=ttl_days)
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO oracle_cache (cache_key, model, response_json, created_at, expires_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(cache_key) DO UPDATE SET
                    model = excluded.model,
                    response_json = excluded.response_json,
                    created_at = excluded.created_at,
                    expires_at = excluded.expires_at,
                    hit_count = 1
            """,
                (cache_key, model, response_json, now.isoformat(), expires.isoformat()),
            )

    def clear_expired_oracle_cache(self) -> int:
        """Clear expired cache entries. Returns count of deleted rows."""
        with self._transaction() as conn:
            cursor = conn.execute(
                "DELETE FROM oracle_cache WHERE expires_at < ?", (utcnow().isoformat(),)
            )
            return cursor.rowcount

    # === Statistics ===

    def get_stats(self, user_id: str) -> dict[str, Any]:
        """Detection and subscription counts for a user."""
        with self._transaction() as conn:
            by_status = {
                row["status"]: row["count"]
                for row in conn.execute(
                    "SELECT status, COUNT(*) AS count FROM detections "
                    "WHERE user_id = ? GROUP BY status",
                    (user_id,),
                ).fetchall()
            }
            subs = conn.execute(
                "SELECT COUNT(*) AS count FROM subscriptions WHERE user_id = ? AND status = ?",
                (user_id, ACTIVE),
            ).fetchone()
            prices = conn.execute(
                "SELECT COUNT(*) AS count FROM price_history WHERE user_id = ?", (user_id,)
            ).fetchone()
            unread = conn.execute(
                "SELECT COUNT(*) AS count FROM notifications WHERE user_id = ? AND read_at IS NULL",
                (user_id,),
            ).fetchone()

        return {
            "detections_total": sum(by_status.values()),
            "pending": by_status.get(DetectionStatus.PENDING.value, 0),
            "imported": by_status.get(DetectionStatus.IMPORTED.value, 0),
            "auto_imported": by_status.get(DetectionStatus.AUTO_IMPORTED.value, 0),
            "rejected": by_status.get(DetectionStatus.REJECTED.value, 0),
            "active_subscriptions": subs["count"],
            "price_points": prices["count"],
            "unread_notifications": unread["count"],
        }
