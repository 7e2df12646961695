"""
Migration 003: Add oracle_cache table.

Caches Extraction Oracle responses so rescans over overlapping windows do
not pay for the same email twice. Keyed by a hash of message id, model and
prompt version.
"""

import sqlite3

VERSION = 3
NAME = "oracle_cache"


def upgrade(conn: sqlite3.Connection) -> None:
    """Create oracle_cache table."""
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS oracle_cache (
            cache_key TEXT PRIMARY KEY,
            model TEXT NOT NULL,
            response_json TEXT NOT NULL,
            created_at TEXT NOT NULL,
            expires_at TEXT NOT NULL,
            hit_count INTEGER DEFAULT 1
        )
    """
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_oracle_cache_expires ON oracle_cache(expires_at)"
    )


def downgrade(conn: sqlite3.Connection) -> None:
    """Remove oracle_cache table."""
    conn.execute("DROP TABLE IF EXISTS oracle_cache")
