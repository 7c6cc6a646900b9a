"""SQLite-backed history of control-plane events.

Rows are keyed by an AUTOINCREMENT ``seq`` so numbering never goes
backwards, even after old rows are pruned. WebSocket clients reconnect
with the last ``seq`` they saw and are caught up from here.
"""

from __future__ import annotations

import json
from typing import Any, Iterable

import aiosqlite

_COLUMNS = "seq, event_type, payload, source_id, created_at"


def _row_to_event(row: aiosqlite.Row | tuple) -> dict[str, Any]:
    seq, event_type, payload, source_id, created_at = row
    return {
        "seq": seq,
        "event_type": event_type,
        "payload": json.loads(payload),
        "source_id": source_id,
        "created_at": created_at,
    }


class EventLog:
    """Append-only event table with optional retention.

    Parameters
    ----------
    db:
        Open connection with the schema applied.
    max_events:
        Keep at most this many of the newest rows. ``None`` keeps everything.
    """

    def __init__(self, db: aiosqlite.Connection, max_events: int | None = None) -> None:
        self._db = db
        self._max_events = max_events

    async def append(
        self,
        event_type: str,
        payload: dict[str, Any],
        source_id: str | None = None,
    ) -> int:
        # Payloads may hold datetimes and enums; str() is enough for the log.
        cursor = await self._db.execute(
            "INSERT INTO events (event_type, payload, source_id) VALUES (?, ?, ?)",
            (event_type, json.dumps(payload, default=str), source_id),
        )
        seq = cursor.lastrowid
        if seq is None:
            raise aiosqlite.DatabaseError("event insert returned no row id")
        if self._max_events is not None and seq > self._max_events:
            await self._db.execute(
                "DELETE FROM events WHERE seq <= ?", (seq - self._max_events,)
            )
        await self._db.commit()
        return seq

    async def replay(
        self,
        since_seq: int,
        event_types: Iterable[str] | None = None,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        """Events newer than *since_seq*, oldest first.

        *event_types* narrows the result to those types; *limit* caps the
        number of rows returned.
        """
        query = f"SELECT {_COLUMNS} FROM events WHERE seq > ?"
        params: list[Any] = [since_seq]
        if event_types is not None:
            types = list(event_types)
            if not types:
                return []
            query += f" AND event_type IN ({', '.join('?' for _ in types)})"
            params.extend(types)
        query += " ORDER BY seq ASC"
        if limit is not None:
            query += " LIMIT ?"
            params.append(limit)
        cursor = await self._db.execute(query, params)
        return [_row_to_event(row) for row in await cursor.fetchall()]

    async def get_latest_seq(self) -> int:
        """Highest sequence number ever written, 0 for an empty log."""
        cursor = await self._db.execute("SELECT COALESCE(MAX(seq), 0) FROM events")
        row = await cursor.fetchone()
        return int(row[0]) if row else 0

    async def count(self) -> int:
        cursor = await self._db.execute("SELECT COUNT(*) FROM events")
        row = await cursor.fetchone()
        return int(row[0]) if row else 0
