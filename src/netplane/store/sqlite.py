"""Config store backed by the ``settings`` table in SQLite."""

from __future__ import annotations

import aiosqlite

from netplane.store.base import ConfigStore


class SqliteConfigStore(ConfigStore):
    """Persistent key/value store.

    Parameters
    ----------
    db:
        An open ``aiosqlite.Connection`` with the schema already applied.
    """

    def __init__(self, db: aiosqlite.Connection) -> None:
        self._db = db

    async def load(self, key: str) -> bytes | None:
        cursor = await self._db.execute(
            "SELECT value FROM settings WHERE key = ?", (key,)
        )
        row = await cursor.fetchone()
        if row is None:
            return None
        value = row[0]
        return value.encode() if isinstance(value, str) else bytes(value)

    async def save(self, key: str, value: bytes) -> None:
        await self._db.execute(
            """INSERT INTO settings (key, value, updated_at)
               VALUES (?, ?, strftime('%Y-%m-%dT%H:%M:%fZ', 'now'))
               ON CONFLICT(key) DO UPDATE SET
                   value = excluded.value,
                   updated_at = excluded.updated_at""",
            (key, value),
        )
        await self._db.commit()

    async def delete(self, key: str) -> None:
        await self._db.execute("DELETE FROM settings WHERE key = ?", (key,))
        await self._db.commit()
