"""
Migration 001: Add scan_runs table.

Audit trail of every scan: what was scanned and what the decisions were.
"""

import sqlite3

VERSION = 1
NAME = "scan_runs"


def upgrade(conn: sqlite3.Connection) -> None:
    """Create scan_runs table."""
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS scan_runs (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id TEXT NOT NULL,
            kind TEXT NOT NULL,  -- email, deep_email, bank
            started_at TEXT NOT NULL,
            finished_at TEXT NOT NULL,
            scanned INTEGER NOT NULL DEFAULT 0,
            usable INTEGER NOT NULL DEFAULT 0,
            failed INTEGER NOT NULL DEFAULT 0,
            found INTEGER NOT NULL DEFAULT 0,
            unique_count INTEGER NOT NULL DEFAULT 0,
            auto_imported INTEGER NOT NULL DEFAULT 0,
            pending_review INTEGER NOT NULL DEFAULT 0,
            existing INTEGER NOT NULL DEFAULT 0,
            duplicates INTEGER NOT NULL DEFAULT 0,
            ignored INTEGER NOT NULL DEFAULT 0,
            price_changes INTEGER NOT NULL DEFAULT 0,
            cancelled INTEGER NOT NULL DEFAULT 0,
            error TEXT
        )
    """
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_scan_runs_user ON scan_runs(user_id, started_at)"
    )


def downgrade(conn: sqlite3.Connection) -> None:
    """Remove scan_runs table."""
    conn.execute("DROP TABLE IF EXISTS scan_runs")
