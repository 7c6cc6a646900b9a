"""Kind-specific adapters between the controller and the backend.

Each adapter picks the device a connection should use and performs the
pre-flight checks for its kind before delegating to the backend. Failures
are raised as BackendError with a message the error classifier understands.
"""

from __future__ import annotations

from netplane.backend.base import NetworkBackend
from netplane.connections.models import (
    ActiveHandle,
    ConnectionKind,
    ConnectionRecord,
    Credentials,
    Device,
    DeviceState,
)
from netplane.exceptions import BackendError

_UNUSABLE_DEVICE_STATES = frozenset({DeviceState.UNAVAILABLE, DeviceState.UNMANAGED})

_PSK_SECURITY = frozenset({"wep", "wpa-psk", "wpa2-psk", "wpa3-sae"})


class ConnectionAdapter:
    """Default adapter: device of the same kind, no extra checks."""

    kind: ConnectionKind = ConnectionKind.WIFI
    device_kind: ConnectionKind | None = ConnectionKind.WIFI

    def __init__(self, backend: NetworkBackend) -> None:
        self._backend = backend

    @property
    def supports_abort(self) -> bool:
        return self._backend.supports_abort

    async def connect(
        self, record: ConnectionRecord, credentials: Credentials | None = None
    ) -> ActiveHandle:
        device = await self._select_device(record) if self.device_kind else None
        self._preflight(record, device, credentials)
        return await self._backend.activate(record, device, credentials)

    async def disconnect(self, record: ConnectionRecord) -> None:
        handle = record.active_handle or ActiveHandle(
            record_id=record.id, backend_ref=record.id, device=record.device
        )
        await self._backend.deactivate(handle)

    async def abort(self, record: ConnectionRecord) -> None:
        await self._backend.abort(record)

    async def reconfigure(self, record: ConnectionRecord, settings: dict) -> None:
        try:
            await self._backend.update_connection(record, settings)
        except NotImplementedError:
            raise BackendError(
                f"Reconfiguring {self.kind.value} connections is not supported by the backend"
            ) from None

    def _preflight(
        self,
        record: ConnectionRecord,
        device: Device | None,
        credentials: Credentials | None,
    ) -> None:
        """Raise BackendError if the connection cannot be attempted."""

    async def _select_device(self, record: ConnectionRecord) -> Device:
        devices = [
            d for d in await self._backend.list_devices()
            if d.kind is self.device_kind and d.state not in _UNUSABLE_DEVICE_STATES
        ]
        if not devices:
            raise BackendError(f"No {self.device_kind.value} device available")
        for device in devices:
            if device.name == record.device:
                return device
        return devices[0]


class WifiAdapter(ConnectionAdapter):
    kind = ConnectionKind.WIFI
    device_kind = ConnectionKind.WIFI

    def _preflight(self, record, device, credentials) -> None:
        security = str(record.config.get("security", "")).lower()
        has_password = credentials is not None and bool(credentials.password)
        if security in _PSK_SECURITY and not record.config.get("saved") and not has_password:
            raise BackendError(
                f"Authentication required: no password for {record.name}"
            )


class EthernetAdapter(ConnectionAdapter):
    kind = ConnectionKind.ETHERNET
    device_kind = ConnectionKind.ETHERNET

    def _preflight(self, record, device, credentials) -> None:
        if device is not None and device.carrier is False:
            raise BackendError(
                f"Ethernet link unavailable: no cable connected to {device.name}"
            )


class VpnAdapter(ConnectionAdapter):
    kind = ConnectionKind.VPN
    device_kind = None


class MobileAdapter(ConnectionAdapter):
    kind = ConnectionKind.MOBILE
    device_kind = ConnectionKind.MOBILE


class HotspotAdapter(ConnectionAdapter):
    kind = ConnectionKind.HOTSPOT
    device_kind = ConnectionKind.WIFI

    def _preflight(self, record, device, credentials) -> None:
        if device is not None and device.state is DeviceState.CONNECTED:
            raise BackendError(
                f"WiFi device {device.name} is busy; disconnect it before sharing"
            )


_ADAPTER_CLASSES: tuple[type[ConnectionAdapter], ...] = (
    WifiAdapter,
    EthernetAdapter,
    VpnAdapter,
    MobileAdapter,
    HotspotAdapter,
)


def build_adapters(backend: NetworkBackend) -> dict[ConnectionKind, ConnectionAdapter]:
    """Return one adapter per connection kind, all sharing *backend*."""
    return {cls.kind: cls(backend) for cls in _ADAPTER_CLASSES}
