"""NetworkManager backend driven through the ``nmcli`` command line.

All commands use asyncio.create_subprocess_exec (not shell) with terse
output (``-t``), so fields are colon-separated with ``\\:`` escapes.
Events come from a long-running ``nmcli monitor`` process.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone

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
    SecurityLevel,
)
from netplane.exceptions import BackendError

logger = logging.getLogger(__name__)

_CONNECTION_TYPES: dict[str, ConnectionKind] = {
    "802-11-wireless": ConnectionKind.WIFI,
    "802-3-ethernet": ConnectionKind.ETHERNET,
    "vpn": ConnectionKind.VPN,
    "wireguard": ConnectionKind.VPN,
    "gsm": ConnectionKind.MOBILE,
    "cdma": ConnectionKind.MOBILE,
}

_DEVICE_TYPES: dict[str, ConnectionKind] = {
    "wifi": ConnectionKind.WIFI,
    "ethernet": ConnectionKind.ETHERNET,
    "gsm": ConnectionKind.MOBILE,
    "cdma": ConnectionKind.MOBILE,
}

_DEVICE_STATES: dict[str, DeviceState] = {
    "connected": DeviceState.CONNECTED,
    "connecting": DeviceState.CONNECTING,
    "disconnected": DeviceState.DISCONNECTED,
    "unavailable": DeviceState.UNAVAILABLE,
    "unmanaged": DeviceState.UNMANAGED,
}

# NetworkManager names shared-mode WiFi connections "Hotspot" by default
_HOTSPOT_PREFIX = "Hotspot"


def split_terse(line: str) -> list[str]:
    """Split one line of ``nmcli -t`` output into unescaped fields."""
    fields: list[str] = []
    current: list[str] = []
    escaped = False
    for char in line:
        if escaped:
            current.append(char)
            escaped = False
        elif char == "\\":
            escaped = True
        elif char == ":":
            fields.append("".join(current))
            current = []
        else:
            current.append(char)
    fields.append("".join(current))
    return fields


def _wifi_security(flags: str) -> tuple[SecurityLevel, str]:
    upper = flags.upper()
    if not upper or upper == "--":
        return SecurityLevel.INSECURE, "none"
    if "802.1X" in upper:
        return SecurityLevel.SECURE, "wpa-eap"
    if "WPA3" in upper:
        return SecurityLevel.SECURE, "wpa3-sae"
    if "WPA" in upper:
        return SecurityLevel.SECURE, "wpa2-psk"
    if "WEP" in upper:
        return SecurityLevel.WARNING, "wep"
    return SecurityLevel.UNKNOWN, flags.lower()


class NmcliBackend(NetworkBackend):
    """Backend for hosts running NetworkManager.

    Parameters
    ----------
    nmcli_path:
        Path to the ``nmcli`` executable.
    timeout:
        Seconds to wait for any single command, including activations.
    """

    def __init__(self, nmcli_path: str = "nmcli", timeout: float = 30.0) -> None:
        super().__init__()
        self._nmcli = nmcli_path
        self._timeout = timeout
        self._available = False
        self._device_kinds: dict[str, ConnectionKind] = {}
        self._monitor_proc: asyncio.subprocess.Process | None = None
        self._monitor_task: asyncio.Task | None = None

    @property
    def available(self) -> bool:
        return self._available

    async def start(self) -> None:
        try:
            output = await self._run("-t", "-f", "RUNNING", "general")
            self._available = output.strip() == "running"
        except BackendError:
            self._available = False
        if self._available:
            await self.list_devices()
        self._monitor_task = asyncio.create_task(self._monitor())
        logger.info("nmcli backend started (available=%s)", self._available)

    async def stop(self) -> None:
        if self._monitor_proc is not None and self._monitor_proc.returncode is None:
            self._monitor_proc.kill()
        if self._monitor_task is not None:
            self._monitor_task.cancel()
            try:
                await self._monitor_task
            except asyncio.CancelledError:
                pass
            self._monitor_task = None
        if self._monitor_proc is not None:
            await self._monitor_proc.wait()
            self._monitor_proc = None
        logger.info("nmcli backend stopped")

    # -- commands ---------------------------------------------------------

    async def _run(self, *args: str) -> str:
        try:
            proc = await asyncio.create_subprocess_exec(
                self._nmcli, *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError:
            raise BackendError(
                f"Network backend unavailable: {self._nmcli} not found"
            ) from None
        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=self._timeout)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            raise BackendError(f"nmcli {args[-1]} timed out") from None
        if proc.returncode != 0:
            message = stderr.decode().strip() or f"nmcli exited with {proc.returncode}"
            raise BackendError(message.removeprefix("Error: "))
        return stdout.decode()

    async def list_devices(self) -> list[Device]:
        output = await self._run("-t", "-f", "DEVICE,TYPE,STATE", "device", "status")
        devices: list[Device] = []
        for line in output.splitlines():
            fields = split_terse(line)
            if len(fields) < 3:
                continue
            name, dev_type, state = fields[0], fields[1], fields[2]
            kind = _DEVICE_TYPES.get(dev_type)
            if kind is None:
                continue
            self._device_kinds[name] = kind
            dev_state = _DEVICE_STATES.get(state.split(" ", 1)[0], DeviceState.DISCONNECTED)
            carrier = None
            if kind is ConnectionKind.ETHERNET:
                carrier = dev_state is not DeviceState.UNAVAILABLE
            devices.append(Device(name=name, kind=kind, state=dev_state, carrier=carrier))
        return devices

    async def list_connections_by_kind(self, kind: ConnectionKind) -> list[ConnectionRecord]:
        output = await self._run(
            "-t", "-f", "UUID,NAME,TYPE,TIMESTAMP,DEVICE", "connection", "show"
        )
        records: list[ConnectionRecord] = []
        saved_names: set[str] = set()
        for line in output.splitlines():
            fields = split_terse(line)
            if len(fields) < 5:
                continue
            uuid, name, conn_type, timestamp, device = fields[:5]
            record_kind = _CONNECTION_TYPES.get(conn_type)
            if record_kind is ConnectionKind.WIFI and name.startswith(_HOTSPOT_PREFIX):
                record_kind = ConnectionKind.HOTSPOT
            if record_kind is ConnectionKind.WIFI:
                saved_names.add(name)
            if record_kind is not kind:
                continue
            last = int(timestamp) if timestamp.isdigit() else 0
            active = bool(device) and device != "--"
            records.append(
                ConnectionRecord(
                    id=uuid,
                    name=name,
                    kind=record_kind,
                    state=ConnectionState.CONNECTED if active else ConnectionState.DISCONNECTED,
                    last_connected=(
                        datetime.fromtimestamp(last, tz=timezone.utc) if last else None
                    ),
                    config={"saved": True, "type": conn_type},
                    device=device if active else None,
                )
            )

        if kind is ConnectionKind.WIFI:
            records.extend(await self._scan_results(saved_names))
        return records

    async def _scan_results(self, saved_names: set[str]) -> list[ConnectionRecord]:
        try:
            output = await self._run(
                "-t", "-f", "SSID,SECURITY,SIGNAL", "device", "wifi", "list", "--rescan", "no"
            )
        except BackendError as exc:
            logger.debug("WiFi scan list unavailable: %s", exc)
            return []
        seen: set[str] = set()
        results: list[ConnectionRecord] = []
        for line in output.splitlines():
            fields = split_terse(line)
            if len(fields) < 3:
                continue
            ssid, flags, signal = fields[0], fields[1], fields[2]
            if not ssid or ssid in saved_names or ssid in seen:
                continue
            seen.add(ssid)
            level, security = _wifi_security(flags)
            results.append(
                ConnectionRecord(
                    id=f"wifi:{ssid}",
                    name=ssid,
                    kind=ConnectionKind.WIFI,
                    security=level,
                    config={
                        "ssid": ssid,
                        "security": security,
                        "signal": int(signal) if signal.isdigit() else None,
                        "saved": False,
                    },
                )
            )
        return results

    async def activate(
        self,
        record: ConnectionRecord,
        device: Device | None,
        credentials: Credentials | None = None,
    ) -> ActiveHandle:
        wait = str(int(self._timeout))
        password = credentials.password if credentials is not None else None
        ssid = str(record.config.get("ssid", record.name))
        if record.kind is ConnectionKind.HOTSPOT and not record.config.get("saved"):
            # Named with the hotspot prefix so discovery reports it as a hotspot
            con_name = f"{_HOTSPOT_PREFIX}-{ssid}"
            args = ["--wait", wait, "device", "wifi", "hotspot", "con-name", con_name,
                    "ssid", ssid]
            password = password or record.config.get("password")
            if password:
                args += ["password", str(password)]
            ref = f"id:{con_name}"
        elif record.config.get("saved", True) and not record.id.startswith("wifi:"):
            args = ["--wait", wait, "connection", "up", "uuid", record.id]
            ref = f"uuid:{record.id}"
        else:
            args = ["--wait", wait, "device", "wifi", "connect", ssid]
            if password:
                args += ["password", password]
            if record.config.get("hidden"):
                args += ["hidden", "yes"]
            ref = f"id:{ssid}"
        if device is not None:
            args += ["ifname", device.name]
        await self._run(*args)
        return ActiveHandle(
            record_id=record.id,
            backend_ref=ref,
            device=device.name if device else None,
        )

    async def delete_connection(self, record: ConnectionRecord) -> None:
        await self._run("connection", "delete", "uuid", record.id)

    async def deactivate(self, handle: ActiveHandle) -> None:
        selector, _, ref = handle.backend_ref.partition(":")
        if not ref:
            selector, ref = "uuid", handle.record_id
        await self._run("connection", "down", selector, ref)

    async def update_connection(self, record: ConnectionRecord, settings: dict) -> None:
        if record.kind is not ConnectionKind.ETHERNET:
            raise NotImplementedError
        if settings.get("method") == "manual":
            values = [
                "ipv4.method", "manual",
                "ipv4.addresses", f"{settings['address']}/{settings['prefix']}",
                "ipv4.gateway", settings["gateway"],
            ]
        else:
            values = ["ipv4.method", "auto", "ipv4.addresses", "", "ipv4.gateway", ""]
        values += ["ipv4.dns", ",".join(settings.get("dns", []))]
        await self._run("connection", "modify", "uuid", record.id, *values)

    async def reset_device(self, device: Device) -> bool:
        try:
            await self._run("device", "disconnect", device.name)
            await self._run("device", "connect", device.name)
        except BackendError as exc:
            logger.warning("Reset of %s failed: %s", device.name, exc)
            return False
        return True

    # -- events -----------------------------------------------------------

    async def _monitor(self) -> None:
        try:
            self._monitor_proc = await asyncio.create_subprocess_exec(
                self._nmcli, "monitor",
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.DEVNULL,
            )
        except FileNotFoundError:
            logger.warning("Cannot monitor NetworkManager: %s not found", self._nmcli)
            return

        assert self._monitor_proc.stdout is not None
        async for raw in self._monitor_proc.stdout:
            line = raw.decode(errors="replace").strip()
            try:
                await self._handle_monitor_line(line)
            except Exception:
                logger.exception("Error handling monitor line %r", line)

    async def _handle_monitor_line(self, line: str) -> None:
        if line == "NetworkManager is stopped":
            if self._available:
                self._available = False
                await self._emit_availability(False)
            return
        if line == "NetworkManager is running":
            if not self._available:
                self._available = True
                await self.list_devices()
                await self._emit_availability(True)
            return

        name, sep, event = line.partition(": ")
        if not sep or name not in self._device_kinds:
            return
        kind = self._device_kinds[name]
        if event == "device removed":
            self._device_kinds.pop(name, None)
            await self._emit_device_state(
                Device(name=name, kind=kind, state=DeviceState.UNAVAILABLE),
                DeviceEventReason.REMOVED,
            )
            return

        state = _DEVICE_STATES.get(event.split(" ", 1)[0])
        if state is None:
            return
        reason = DeviceEventReason.NONE
        carrier = None
        if kind is ConnectionKind.ETHERNET:
            carrier = state is not DeviceState.UNAVAILABLE
            if state is DeviceState.UNAVAILABLE:
                reason = DeviceEventReason.CARRIER_LOST
        await self._emit_device_state(
            Device(name=name, kind=kind, state=state, carrier=carrier), reason
        )
