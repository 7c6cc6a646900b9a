"""Abstract interface for the config store."""

from __future__ import annotations

from abc import ABC, abstractmethod


class ConfigStore(ABC):
    """Byte-oriented key/value persistence for profiles and settings.

    Consumers hold ``ConfigStore | None``; ``None`` means no persistence
    and everything stays in memory.
    """

    @abstractmethod
    async def load(self, key: str) -> bytes | None:
        """Return the stored value, or None if the key has never been saved."""

    @abstractmethod
    async def save(self, key: str, value: bytes) -> None:
        """Store or replace the value for *key*."""

    @abstractmethod
    async def delete(self, key: str) -> None:
        """Delete a key. Does not raise if the key does not exist."""
