"""Network backend abstraction.

The backend performs the actual link-layer work: enumerating devices and
saved connections, activating and tearing down connections, and reporting
device/connection/availability events. The ConnectionController is the
only consumer; it registers itself as the backend's listener.

Optional capabilities (abort, delete, reconfigure, device reset, restart) raise
``NotImplementedError`` when a backend does not provide them.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Protocol

from netplane.connections.models import (
    ActiveHandle,
    ConnectionKind,
    ConnectionRecord,
    ConnectionState,
    Credentials,
    Device,
    DeviceEventReason,
)

logger = logging.getLogger(__name__)


class BackendListener(Protocol):
    """Receiver of backend events."""

    async def on_availability_changed(self, available: bool) -> None: ...

    async def on_connection_state_changed(
        self, record_id: str, state: ConnectionState, reason: str | None = None
    ) -> None: ...

    async def on_device_state_changed(
        self, device: Device, reason: DeviceEventReason = DeviceEventReason.NONE
    ) -> None: ...

    async def on_connection_added(self, record: ConnectionRecord) -> None: ...

    async def on_connection_removed(self, record_id: str) -> None: ...


class NetworkBackend(ABC):
    """Abstract interface for the link-layer network manager."""

    supports_abort: bool = False

    def __init__(self) -> None:
        self._listener: BackendListener | None = None

    def set_listener(self, listener: BackendListener | None) -> None:
        self._listener = listener

    @property
    @abstractmethod
    def available(self) -> bool:
        """Whether the backend service is currently reachable."""

    async def start(self) -> None:
        """Begin delivering events. Default: nothing to start."""

    async def stop(self) -> None:
        """Stop delivering events. Default: nothing to stop."""

    @abstractmethod
    async def activate(
        self,
        record: ConnectionRecord,
        device: Device | None,
        credentials: Credentials | None = None,
    ) -> ActiveHandle:
        """Bring *record* up on *device*. Raises BackendError on failure."""

    @abstractmethod
    async def deactivate(self, handle: ActiveHandle) -> None:
        """Tear down an active connection. Raises BackendError on failure."""

    @abstractmethod
    async def list_devices(self) -> list[Device]:
        """Enumerate network devices."""

    @abstractmethod
    async def list_connections_by_kind(self, kind: ConnectionKind) -> list[ConnectionRecord]:
        """Enumerate known endpoints of one kind (saved profiles, scan results)."""

    async def abort(self, record: ConnectionRecord) -> None:
        """Abort an in-flight activation of *record*."""
        raise NotImplementedError

    async def delete_connection(self, record: ConnectionRecord) -> None:
        """Delete the saved connection behind *record* so discovery stops reporting it."""
        raise NotImplementedError

    async def update_connection(
        self, record: ConnectionRecord, settings: dict
    ) -> None:
        """Apply new settings to a saved connection."""
        raise NotImplementedError

    async def reset_device(self, device: Device) -> bool:
        """Reset a device (e.g. power-cycle a WiFi adapter)."""
        raise NotImplementedError

    async def restart(self) -> bool:
        """Restart the backend service."""
        raise NotImplementedError

    # -- event helpers for subclasses ------------------------------------

    async def _emit_availability(self, available: bool) -> None:
        if self._listener is not None:
            await self._listener.on_availability_changed(available)

    async def _emit_connection_state(
        self, record_id: str, state: ConnectionState, reason: str | None = None
    ) -> None:
        if self._listener is not None:
            await self._listener.on_connection_state_changed(record_id, state, reason)

    async def _emit_device_state(
        self, device: Device, reason: DeviceEventReason = DeviceEventReason.NONE
    ) -> None:
        if self._listener is not None:
            await self._listener.on_device_state_changed(device, reason)

    async def _emit_connection_added(self, record: ConnectionRecord) -> None:
        if self._listener is not None:
            await self._listener.on_connection_added(record)

    async def _emit_connection_removed(self, record_id: str) -> None:
        if self._listener is not None:
            await self._listener.on_connection_removed(record_id)
