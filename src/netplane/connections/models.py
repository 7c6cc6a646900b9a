"""Connection records, operations and devices.

These are plain dataclasses owned by the ConnectionController. Callers only
ever see snapshots; every state change goes through the controller.
"""

from __future__ import annotations

import asyncio
import dataclasses
import enum
import ipaddress
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Literal
from uuid import uuid4

from pydantic import BaseModel, ValidationError

from netplane.authorization import PolkitAction
from netplane.exceptions import InvalidConfiguration


class ConnectionKind(str, enum.Enum):
    WIFI = "wifi"
    ETHERNET = "ethernet"
    VPN = "vpn"
    MOBILE = "mobile"
    HOTSPOT = "hotspot"


class ConnectionState(str, enum.Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTING = "disconnecting"
    FAILED = "failed"


# Transitions a caller request may drive. Backend events are authoritative
# and bypass this table.
CALLER_TRANSITIONS: dict[ConnectionState, frozenset[ConnectionState]] = {
    ConnectionState.DISCONNECTED: frozenset({ConnectionState.CONNECTING}),
    ConnectionState.CONNECTING: frozenset(
        {ConnectionState.CONNECTED, ConnectionState.FAILED}
    ),
    ConnectionState.CONNECTED: frozenset({ConnectionState.DISCONNECTING}),
    ConnectionState.DISCONNECTING: frozenset(
        {ConnectionState.DISCONNECTED, ConnectionState.FAILED}
    ),
    ConnectionState.FAILED: frozenset({ConnectionState.CONNECTING}),
}


class SecurityLevel(str, enum.Enum):
    SECURE = "secure"
    WARNING = "warning"
    INSECURE = "insecure"
    UNKNOWN = "unknown"


class OperationKind(str, enum.Enum):
    CONNECT = "connect"
    DISCONNECT = "disconnect"
    RECONFIGURE = "reconfigure"


class DeviceState(str, enum.Enum):
    UNAVAILABLE = "unavailable"
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    UNMANAGED = "unmanaged"


class DeviceEventReason(str, enum.Enum):
    NONE = "none"
    CARRIER_LOST = "carrier-lost"
    HARDWARE_FAULT = "hardware-fault"
    REMOVED = "removed"


_ENTERPRISE_SECURITY = frozenset(
    {"wpa-eap", "wpa2-enterprise", "wpa3-enterprise", "802.1x"}
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Credentials:
    username: str | None = None
    password: str | None = field(default=None, repr=False)


@dataclass(frozen=True)
class ActiveHandle:
    """Backend reference to an activated connection, used to deactivate it."""

    record_id: str
    backend_ref: str
    device: str | None = None


@dataclass
class Device:
    name: str
    kind: ConnectionKind
    state: DeviceState = DeviceState.DISCONNECTED
    hw_address: str | None = None
    carrier: bool | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "kind": self.kind.value,
            "state": self.state.value,
            "hw_address": self.hw_address,
            "carrier": self.carrier,
        }


@dataclass
class ConnectionRecord:
    """One connectable network endpoint.

    ``config`` is the kind-specific payload (SSID and security for WiFi,
    APN and roaming for mobile, IPv4 settings for ethernet, ...). The
    controller treats it as opaque apart from deriving the authorization
    action it requires.
    """

    id: str
    name: str
    kind: ConnectionKind
    state: ConnectionState = ConnectionState.DISCONNECTED
    last_connected: datetime | None = None
    security: SecurityLevel = SecurityLevel.UNKNOWN
    config: dict[str, Any] = field(default_factory=dict)
    device: str | None = None
    active_handle: ActiveHandle | None = field(default=None, repr=False)

    @property
    def authorization_action(self) -> str | None:
        """Privileged action id required before activating this record."""
        if self.kind is ConnectionKind.WIFI:
            if str(self.config.get("security", "")).lower() in _ENTERPRISE_SECURITY:
                return PolkitAction.SETTINGS_MODIFY_SYSTEM
        elif self.kind is ConnectionKind.MOBILE:
            if self.config.get("roaming"):
                return PolkitAction.NETWORK_CONTROL
        elif self.kind is ConnectionKind.HOTSPOT:
            if self.config.get("password"):
                return PolkitAction.WIFI_SHARE_PROTECTED
            return PolkitAction.WIFI_SHARE_OPEN
        return None

    def snapshot(self) -> ConnectionRecord:
        return dataclasses.replace(self, config=dict(self.config))

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "kind": self.kind.value,
            "state": self.state.value,
            "last_connected": (
                self.last_connected.isoformat() if self.last_connected else None
            ),
            "security": self.security.value,
            "config": {k: v for k, v in self.config.items() if k != "password"},
            "device": self.device,
        }


@dataclass
class Operation:
    """A tracked in-flight connect/disconnect/reconfigure request.

    The controller hands the live object back as the operation handle;
    ``wait()`` resolves with the outcome once the operation finishes.
    """

    record_id: str
    kind: OperationKind
    id: str = field(default_factory=lambda: f"op_{uuid4().hex[:12]}")
    progress: float = 0.0
    status: str = ""
    cancellable: bool = True
    started_at: datetime = field(default_factory=_utcnow)
    finished: bool = False
    success: bool | None = None
    error: str | None = None
    error_category: str | None = None
    _done: asyncio.Future | None = field(default=None, repr=False, compare=False)

    def __post_init__(self) -> None:
        if self._done is None:
            self._done = asyncio.get_running_loop().create_future()

    def advance(self, progress: float, status: str) -> None:
        """Move progress forward; progress never decreases."""
        self.progress = max(self.progress, min(max(progress, 0.0), 1.0))
        self.status = status

    def finish(
        self,
        success: bool,
        status: str,
        error: str | None = None,
        error_category: str | None = None,
    ) -> None:
        if self.finished:
            return
        self.finished = True
        self.success = success
        self.status = status
        self.error = error
        self.error_category = error_category
        if success:
            self.progress = 1.0
        assert self._done is not None
        if not self._done.done():
            self._done.set_result(success)

    async def wait(self) -> bool:
        """Wait for the operation to finish and return whether it succeeded."""
        assert self._done is not None
        return await asyncio.shield(self._done)

    def snapshot(self) -> Operation:
        return dataclasses.replace(self)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "record_id": self.record_id,
            "kind": self.kind.value,
            "progress": self.progress,
            "status": self.status,
            "cancellable": self.cancellable,
            "started_at": self.started_at.isoformat(),
            "finished": self.finished,
            "success": self.success,
            "error": self.error,
            "error_category": self.error_category,
        }


# ---------------------------------------------------------------------------
# Reconfiguration validation
# ---------------------------------------------------------------------------

class IPv4Settings(BaseModel):
    """Static or automatic IPv4 configuration for a wired link."""

    method: Literal["auto", "manual"] = "auto"
    address: str | None = None
    prefix: int | None = None
    gateway: str | None = None
    dns: list[str] = []

    def problems(self) -> list[str]:
        problems: list[str] = []
        for server in self.dns:
            if not _is_ipv4(server):
                problems.append(f"Invalid DNS server: {server}")
        if self.method == "auto":
            return problems

        address_ok = bool(self.address) and _is_ipv4(self.address)
        prefix_ok = self.prefix is not None and 1 <= self.prefix <= 32
        gateway_ok = bool(self.gateway) and _is_ipv4(self.gateway)
        if not address_ok:
            problems.append(f"Invalid IP address: {self.address}")
        if not prefix_ok:
            problems.append(f"Invalid prefix length: {self.prefix}")
        if not gateway_ok:
            problems.append(f"Invalid gateway: {self.gateway}")
        if address_ok and prefix_ok and gateway_ok:
            network = ipaddress.IPv4Network(f"{self.address}/{self.prefix}", strict=False)
            if ipaddress.IPv4Address(self.gateway) not in network:
                problems.append(
                    f"Gateway {self.gateway} is outside {network.with_prefixlen}"
                )
        return problems


def _is_ipv4(value: str) -> bool:
    try:
        ipaddress.IPv4Address(value)
    except ValueError:
        return False
    return True


def validate_reconfiguration(kind: ConnectionKind, settings: dict[str, Any]) -> dict[str, Any]:
    """Validate a reconfiguration request and return the normalized settings.

    Raises InvalidConfiguration listing every problem found.
    """
    if kind is ConnectionKind.ETHERNET:
        try:
            ipv4 = IPv4Settings.model_validate(settings)
        except ValidationError as exc:
            raise InvalidConfiguration(
                [f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in exc.errors()]
            ) from exc
        problems = ipv4.problems()
        if problems:
            raise InvalidConfiguration(problems)
        return ipv4.model_dump()

    problems: list[str] = []
    if kind in (ConnectionKind.WIFI, ConnectionKind.HOTSPOT):
        password = settings.get("password")
        if password is not None and not 8 <= len(str(password)) <= 63:
            problems.append("Password must be 8 to 63 characters")
        if kind is ConnectionKind.HOTSPOT and "ssid" in settings:
            if not str(settings["ssid"]).strip():
                problems.append("SSID must not be empty")
    if problems:
        raise InvalidConfiguration(problems)
    return dict(settings)
