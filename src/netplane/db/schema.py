"""SQLite schema definitions for netplane.

Two tables: the monotonic event log used for WebSocket replay, and a
key/value settings table backing the SQLite config store.
"""

from __future__ import annotations

_TABLE_NAMES: list[str] = [
    "events",
    "settings",
]


def get_all_table_names() -> list[str]:
    """Return the list of all table names managed by this schema."""
    return list(_TABLE_NAMES)


async def create_all_tables(db) -> None:
    """Apply the schema to the database. Safe to run on every start."""
    await db.executescript(SCHEMA_SQL)
    await db.commit()


SCHEMA_SQL = """
-- Monotonic event log (WebSocket replay + audit trail)
CREATE TABLE IF NOT EXISTS events (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    event_type TEXT NOT NULL,
    payload TEXT NOT NULL,
    source_id TEXT,
    created_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now'))
);
CREATE INDEX IF NOT EXISTS idx_events_type ON events(event_type);
CREATE INDEX IF NOT EXISTS idx_events_created ON events(created_at);

-- Config store key/value pairs (profiles, active profile id)
CREATE TABLE IF NOT EXISTS settings (
    key TEXT PRIMARY KEY,
    value BLOB NOT NULL,
    updated_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now'))
);
"""
