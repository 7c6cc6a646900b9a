"""Scriptable in-memory backend.

Holds devices and endpoints in dictionaries and lets the caller inject
failures, hold activations in flight, and fire device or availability
events. Used by ``--backend memory`` and throughout the test suite.
"""

from __future__ import annotations

import asyncio
import logging
from itertools import count

from netplane.backend.base import NetworkBackend
from netplane.connections.models import (
    ActiveHandle,
    ConnectionKind,
    ConnectionRecord,
    ConnectionState,
    Credentials,
    Device,
    DeviceEventReason,
    DeviceState,
)
from netplane.exceptions import BackendError

logger = logging.getLogger(__name__)


class InMemoryBackend(NetworkBackend):
    """Network backend that never touches the host.

    Parameters
    ----------
    devices:
        Initial devices.
    records:
        Initial endpoints returned by discovery.
    supports_abort:
        Whether in-flight activations can be aborted.
    restart_succeeds:
        Whether ``restart()`` brings an unavailable backend back.
    """

    def __init__(
        self,
        devices: list[Device] | None = None,
        records: list[ConnectionRecord] | None = None,
        supports_abort: bool = False,
        restart_succeeds: bool = False,
    ) -> None:
        super().__init__()
        self.supports_abort = supports_abort
        self._restart_succeeds = restart_succeeds
        self._available = True
        self._devices: dict[str, Device] = {d.name: d for d in devices or []}
        self._records: dict[str, ConnectionRecord] = {r.id: r for r in records or []}
        self._failures: dict[tuple[str, str], list[str]] = {}
        self._holds: dict[str, asyncio.Event] = {}
        self._aborted: set[str] = set()
        self._handles = count(1)

        self.activations: list[str] = []
        self.deactivations: list[str] = []
        self.aborts: list[str] = []
        self.deletions: list[str] = []
        self.updates: list[tuple[str, dict]] = []
        self.resets: list[str] = []
        self.restarts = 0

    @property
    def available(self) -> bool:
        return self._available

    # -- NetworkBackend ---------------------------------------------------

    async def activate(
        self,
        record: ConnectionRecord,
        device: Device | None,
        credentials: Credentials | None = None,
    ) -> ActiveHandle:
        self.activations.append(record.id)
        hold = self._holds.get(record.id)
        if hold is not None:
            await hold.wait()
        if record.id in self._aborted:
            self._aborted.discard(record.id)
            raise BackendError(f"Activation of {record.name} aborted")
        if not self._available:
            raise BackendError("Network backend unavailable")
        self._raise_scripted_failure("activate", record.id)

        if device is not None:
            device.state = DeviceState.CONNECTED
        return ActiveHandle(
            record_id=record.id,
            backend_ref=f"active-{next(self._handles)}",
            device=device.name if device else None,
        )

    async def deactivate(self, handle: ActiveHandle) -> None:
        self.deactivations.append(handle.record_id)
        if not self._available:
            raise BackendError("Network backend unavailable")
        self._raise_scripted_failure("deactivate", handle.record_id)
        if handle.device and handle.device in self._devices:
            self._devices[handle.device].state = DeviceState.DISCONNECTED

    async def list_devices(self) -> list[Device]:
        return list(self._devices.values())

    async def list_connections_by_kind(self, kind: ConnectionKind) -> list[ConnectionRecord]:
        return [r.snapshot() for r in self._records.values() if r.kind is kind]

    async def abort(self, record: ConnectionRecord) -> None:
        if not self.supports_abort:
            raise NotImplementedError
        self.aborts.append(record.id)
        self._aborted.add(record.id)
        self.release(record.id)

    async def delete_connection(self, record: ConnectionRecord) -> None:
        self._raise_scripted_failure("delete", record.id)
        self.deletions.append(record.id)
        self._records.pop(record.id, None)

    async def update_connection(self, record: ConnectionRecord, settings: dict) -> None:
        self._raise_scripted_failure("update", record.id)
        self.updates.append((record.id, dict(settings)))
        if record.id in self._records:
            self._records[record.id].config.update(settings)

    async def reset_device(self, device: Device) -> bool:
        self.resets.append(device.name)
        return True

    async def restart(self) -> bool:
        self.restarts += 1
        if not self._restart_succeeds:
            return False
        if not self._available:
            await self.set_available(True)
        return True

    # -- scripting helpers ------------------------------------------------

    def fail_next(self, record_id: str, message: str, operation: str = "activate") -> None:
        """Make the next *operation* on *record_id* raise BackendError(message)."""
        self._failures.setdefault((operation, record_id), []).append(message)

    def hold(self, record_id: str) -> None:
        """Keep activations of *record_id* in flight until ``release()``."""
        self._holds[record_id] = asyncio.Event()

    def release(self, record_id: str) -> None:
        event = self._holds.pop(record_id, None)
        if event is not None:
            event.set()

    async def set_available(self, available: bool) -> None:
        self._available = available
        await self._emit_availability(available)

    async def unplug(self, device_name: str) -> None:
        """Simulate cable loss on an ethernet device."""
        device = self._devices[device_name]
        device.carrier = False
        device.state = DeviceState.UNAVAILABLE
        await self._emit_device_state(device, DeviceEventReason.CARRIER_LOST)

    async def fault(self, device_name: str) -> None:
        """Simulate a hardware fault on a device."""
        device = self._devices[device_name]
        device.state = DeviceState.UNAVAILABLE
        await self._emit_device_state(device, DeviceEventReason.HARDWARE_FAULT)

    async def report_state(
        self, record_id: str, state: ConnectionState, reason: str | None = None
    ) -> None:
        await self._emit_connection_state(record_id, state, reason)

    async def add_record(self, record: ConnectionRecord) -> None:
        self._records[record.id] = record
        await self._emit_connection_added(record.snapshot())

    async def remove_record(self, record_id: str) -> None:
        self._records.pop(record_id, None)
        await self._emit_connection_removed(record_id)

    def _raise_scripted_failure(self, operation: str, record_id: str) -> None:
        queue = self._failures.get((operation, record_id))
        if queue:
            message = queue.pop(0)
            logger.debug("Scripted %s failure for %s: %s", operation, record_id, message)
            raise BackendError(message)
