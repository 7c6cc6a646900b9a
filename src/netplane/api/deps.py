"""FastAPI dependency injection providers."""
from __future__ import annotations

from netplane.config import Settings
from netplane.connections.controller import ConnectionController
from netplane.events.bus import EventBus
from netplane.recovery.engine import RecoveryEngine


async def get_controller() -> ConnectionController:
    """Return the ConnectionController.

    In production, wired by the daemon entry point. In tests, overridden.
    """
    raise NotImplementedError("Must be overridden via app.state or dependency_overrides")


async def get_recovery() -> RecoveryEngine:
    """Return the RecoveryEngine. Overridden in production and tests."""
    raise NotImplementedError("Must be overridden via app.state or dependency_overrides")


async def get_event_bus() -> EventBus:
    """Return the EventBus instance. Overridden in production and tests."""
    raise NotImplementedError("Must be overridden via app.state or dependency_overrides")


async def get_settings() -> Settings:
    """Return the loaded Settings. Overridden in production and tests."""
    raise NotImplementedError("Must be overridden via app.state or dependency_overrides")
