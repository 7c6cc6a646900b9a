"""In-memory config store."""

from __future__ import annotations

from netplane.store.base import ConfigStore


class MemoryConfigStore(ConfigStore):
    """Dictionary-backed store; contents are lost on exit."""

    def __init__(self) -> None:
        self._data: dict[str, bytes] = {}

    async def load(self, key: str) -> bytes | None:
        return self._data.get(key)

    async def save(self, key: str, value: bytes) -> None:
        self._data[key] = bytes(value)

    async def delete(self, key: str) -> None:
        self._data.pop(key, None)
