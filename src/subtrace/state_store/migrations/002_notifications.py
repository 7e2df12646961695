"""
Migration 002: Add notifications table.

Outbox of user-facing events (auto-imports, price changes, completed scans).
Delivery is somebody else's job; rows are marked read when shown.
"""

import sqlite3

VERSION = 2
NAME = "notifications"


def upgrade(conn: sqlite3.Connection) -> None:
    """Create notifications table."""
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS notifications (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id TEXT NOT NULL,
            kind TEXT NOT NULL,
            title TEXT NOT NULL,
            message TEXT NOT NULL,
            payload_json TEXT,
            created_at TEXT NOT NULL,
            read_at TEXT
        )
    """
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_notifications_user ON notifications(user_id, read_at)"
    )


def downgrade(conn: sqlite3.Connection) -> None:
    """Remove notifications table."""
    conn.execute("DROP TABLE IF EXISTS notifications")
