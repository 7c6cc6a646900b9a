"""Connection controller: the single entry point for connection lifecycle.

The controller owns the registry of connection records and the set of
in-flight operations. Caller requests (connect, disconnect, reconfigure,
cancel) and backend events (availability, device and connection state,
discovery) both mutate that state behind one asyncio lock, so a record is
never half-updated by interleaving coroutines.

Operations run as background tasks. ``connect()`` and friends validate
synchronously, register the operation and return it immediately; the
outcome is published on the event bus and can be awaited with
``Operation.wait()``. At most one operation targets a record at a time.

Cancellation is logical: the operation is marked failed at once and stops
reporting progress. Backends that support abort are asked to stop the
in-flight activation; otherwise the call is left to finish and its result
is discarded.

Failures are handed to the recovery engine, which may call back into the
controller through the same public methods any caller uses.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Coroutine
from uuid import uuid4

from netplane.authorization import AuthorizationResult, AuthorizationService
from netplane.backend.adapters import ConnectionAdapter, build_adapters
from netplane.backend.base import NetworkBackend
from netplane.connections.models import (
    CALLER_TRANSITIONS,
    ConnectionKind,
    ConnectionRecord,
    ConnectionState,
    Credentials,
    Device,
    DeviceEventReason,
    DeviceState,
    Operation,
    OperationKind,
    SecurityLevel,
    validate_reconfiguration,
)
from netplane.events.bus import EventBus
from netplane.events.types import EventType
from netplane.exceptions import (
    AlreadyInProgress,
    BackendError,
    BackendUnavailable,
    ConnectionNotFound,
    InvalidConfiguration,
    PermissionDenied,
)
from netplane.profiles.evaluator import ProfileSwitchEvaluator
from netplane.profiles.models import Profile
from netplane.profiles.store import ProfileStore
from netplane.recovery.classifier import classify_system_error
from netplane.recovery.engine import RecoveryEngine
from netplane.recovery.types import ErrorCategory, Severity

logger = logging.getLogger(__name__)

BACKEND_UNAVAILABLE = "Network backend unavailable"
CANCELLED = "cancelled by caller"

_DEVICE_DOWN_STATES = frozenset({DeviceState.UNAVAILABLE, DeviceState.DISCONNECTED})
# Records a device event can take down: any device loss ends a connected
# record, only a hardware fault or cable loss also aborts one still connecting.
_DEVICE_WATCHED = frozenset({ConnectionState.CONNECTED})
_HARDWARE_WATCHED = frozenset({ConnectionState.CONNECTED, ConnectionState.CONNECTING})


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ConnectionController:
    """Orchestrates connections, recovery and profiles.

    Parameters
    ----------
    backend:
        The network backend. The controller registers itself as its
        listener on ``start()``.
    event_bus:
        Bus on which all state changes and operation progress are published.
    recovery:
        Engine that classifies and remediates failures.
    profiles:
        The profile store.
    evaluator:
        Owner of the active profile.
    authorizer:
        Gate for records that need elevated privilege, or ``None`` to
        allow everything.
    adapters:
        Per-kind adapters; built from *backend* when omitted.
    """

    def __init__(
        self,
        backend: NetworkBackend,
        event_bus: EventBus,
        recovery: RecoveryEngine,
        profiles: ProfileStore,
        evaluator: ProfileSwitchEvaluator,
        authorizer: AuthorizationService | None = None,
        adapters: dict[ConnectionKind, ConnectionAdapter] | None = None,
    ) -> None:
        self._backend = backend
        self._event_bus = event_bus
        self._recovery = recovery
        self.profiles = profiles
        self.evaluator = evaluator
        self._authorizer = authorizer
        self._adapters = adapters or build_adapters(backend)

        self._records: dict[str, ConnectionRecord] = {}
        self._user_added: set[str] = set()
        self._forgotten: set[str] = set()
        self._operations: dict[str, Operation] = {}
        self._busy: dict[str, str] = {}
        self._lock = asyncio.Lock()
        self._available = backend.available
        self._outage_error_id: str | None = None
        self._tasks: set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        self._backend.set_listener(self)
        await self._backend.start()
        self._available = self._backend.available
        if self._available:
            await self.refresh()
        else:
            logger.warning("Network backend unavailable at startup")
        logger.info(
            "Connection controller started (%d connections)", len(self._records)
        )

    async def stop(self) -> None:
        self._backend.set_listener(None)
        await self._backend.stop()
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("Connection controller stopped")

    @property
    def available(self) -> bool:
        return self._available

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return task

    def _task_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Background task failed", exc_info=task.exception())

    # ------------------------------------------------------------------
    # Queries (snapshots)
    # ------------------------------------------------------------------

    def list_available(self, kind: ConnectionKind | None = None) -> list[ConnectionRecord]:
        """Snapshot of known endpoints across all kinds. Never triggers a scan."""
        records = [
            r.snapshot() for r in self._records.values()
            if kind is None or r.kind is kind
        ]
        return sorted(records, key=lambda r: (r.kind.value, r.name.lower()))

    def get_connection(self, record_id: str) -> ConnectionRecord:
        return self._get(record_id).snapshot()

    def get_active_operations(self) -> list[Operation]:
        return [op.snapshot() for op in self._operations.values()]

    def get_operation(self, operation_id: str) -> Operation | None:
        return self._operations.get(operation_id)

    async def list_devices(self) -> list[Device]:
        if not self._available:
            raise BackendUnavailable()
        return await self._backend.list_devices()

    def _get(self, record_id: str) -> ConnectionRecord:
        record = self._records.get(record_id)
        if record is None:
            raise ConnectionNotFound(record_id)
        return record

    def _check_idle(self, record: ConnectionRecord) -> None:
        op_id = self._busy.get(record.id)
        if op_id is not None:
            raise AlreadyInProgress(record.id, op_id)

    def _check_available(self) -> None:
        if not self._available:
            raise BackendUnavailable()

    # ------------------------------------------------------------------
    # Lifecycle operations
    # ------------------------------------------------------------------

    async def connect(
        self,
        record_id: str,
        credentials: Credentials | None = None,
        *,
        report_errors: bool = True,
    ) -> Operation:
        """Start connecting *record_id* and return the operation handle.

        Raises BackendUnavailable, ConnectionNotFound, AlreadyInProgress or
        PermissionDenied without changing any state. With
        ``report_errors=False`` a failure is not passed to the recovery
        engine.
        """
        async with self._lock:
            self._check_available()
            record = self._get(record_id)
            self._check_idle(record)
            action = record.authorization_action

        if action is not None:
            await self._authorize(action)

        async with self._lock:
            self._check_available()
            record = self._get(record_id)
            self._check_idle(record)
            if record.state is ConnectionState.CONNECTED:
                op = Operation(record_id=record.id, kind=OperationKind.CONNECT)
                op.finish(True, f"Already connected to {record.name}")
                return op
            if record.state not in (ConnectionState.DISCONNECTED, ConnectionState.FAILED):
                raise AlreadyInProgress(record.id, "backend")

            op = Operation(record_id=record.id, kind=OperationKind.CONNECT)
            await self._register(op, f"Connecting to {record.name}")
            await self._transition(record, ConnectionState.CONNECTING, "connect requested")

        self._spawn(self._run_connect(op, record, credentials, report_errors))
        return op

    async def _run_connect(
        self,
        op: Operation,
        record: ConnectionRecord,
        credentials: Credentials | None,
        report_errors: bool,
    ) -> None:
        adapter = self._adapters[record.kind]
        async with self._lock:
            await self._progress(op, 0.3, "Authenticating...")

        try:
            handle = await adapter.connect(record, credentials)
        except Exception as exc:
            message = self._failure_message(exc, op)
            async with self._lock:
                if op.finished:
                    logger.debug("Discarding failure of finished %s: %s", op.id, message)
                    return
                await self._complete(op, False, "Connection failed", error=message)
                await self._transition(record, ConnectionState.FAILED, message)
            if report_errors:
                await self._recovery.handle_connection_error(message, record.id, record.kind)
            return

        async with self._lock:
            if op.finished:
                logger.info("Discarding late result of %s (%s)", op.id, op.status)
                return
            record.active_handle = handle
            record.device = handle.device or record.device
            record.last_connected = _utcnow()
            await self._transition(record, ConnectionState.CONNECTED, "activated")
            await self._complete(op, True, f"Connected to {record.name}")

    async def disconnect(self, record_id: str) -> Operation:
        """Start disconnecting *record_id*.

        Succeeds immediately if the record is not connected.
        """
        async with self._lock:
            record = self._get(record_id)
            self._check_idle(record)
            if record.state in (ConnectionState.DISCONNECTED, ConnectionState.FAILED):
                op = Operation(record_id=record.id, kind=OperationKind.DISCONNECT)
                op.finish(True, f"{record.name} is not connected")
                return op
            self._check_available()
            if record.state is not ConnectionState.CONNECTED:
                raise AlreadyInProgress(record.id, "backend")

            op = Operation(record_id=record.id, kind=OperationKind.DISCONNECT, cancellable=False)
            await self._register(op, f"Disconnecting from {record.name}")
            await self._transition(record, ConnectionState.DISCONNECTING, "disconnect requested")

        self._spawn(self._run_disconnect(op, record))
        return op

    async def _run_disconnect(self, op: Operation, record: ConnectionRecord) -> None:
        adapter = self._adapters[record.kind]
        async with self._lock:
            await self._progress(op, 0.5, "Disconnecting...")
        try:
            await adapter.disconnect(record)
        except Exception as exc:
            message = self._failure_message(exc, op)
            async with self._lock:
                if op.finished:
                    return
                await self._complete(op, False, "Disconnect failed", error=message)
                await self._transition(record, ConnectionState.FAILED, message)
            await self._recovery.handle_connection_error(message, record.id, record.kind)
            return

        async with self._lock:
            if op.finished:
                return
            record.active_handle = None
            await self._transition(record, ConnectionState.DISCONNECTED, "deactivated")
            await self._complete(op, True, f"Disconnected from {record.name}")

    async def reconfigure(self, record_id: str, settings: dict[str, Any]) -> Operation:
        """Validate and apply new settings to a connection.

        Raises InvalidConfiguration synchronously for bad settings.
        """
        async with self._lock:
            record = self._get(record_id)
            normalized = validate_reconfiguration(record.kind, settings)
            self._check_idle(record)
            self._check_available()
            op = Operation(
                record_id=record.id, kind=OperationKind.RECONFIGURE, cancellable=False
            )
            await self._register(op, f"Updating {record.name}")

        self._spawn(self._run_reconfigure(op, record, normalized))
        return op

    async def _run_reconfigure(
        self, op: Operation, record: ConnectionRecord, settings: dict[str, Any]
    ) -> None:
        adapter = self._adapters[record.kind]
        try:
            await adapter.reconfigure(record, settings)
        except Exception as exc:
            message = self._failure_message(exc, op)
            async with self._lock:
                if op.finished:
                    return
                await self._complete(op, False, "Reconfiguration failed", error=message)
            await self._recovery.handle_configuration_error(
                message, record.id, details=str(settings)
            )
            return

        async with self._lock:
            if op.finished:
                return
            record.config.update(settings)
            await self._complete(op, True, f"Updated {record.name}")

    async def cancel_operation(self, operation_id: str) -> bool:
        """Cancel an in-flight operation. Returns False if it cannot be cancelled."""
        async with self._lock:
            op = self._operations.get(operation_id)
            if op is None or not op.cancellable or op.finished:
                return False
            record = self._records.get(op.record_id)
            await self._complete(op, False, "Cancelled", error=CANCELLED)
            if record is not None and record.state is ConnectionState.CONNECTING:
                await self._transition(record, ConnectionState.FAILED, CANCELLED)

        if record is not None:
            adapter = self._adapters[record.kind]
            if adapter.supports_abort:
                self._spawn(self._abort(adapter, record))
        logger.info("Cancelled %s", operation_id)
        return True

    async def _abort(self, adapter: ConnectionAdapter, record: ConnectionRecord) -> None:
        try:
            await adapter.abort(record)
        except (BackendError, NotImplementedError) as exc:
            logger.warning("Abort of %s failed: %s", record.id, exc)

    @staticmethod
    def _failure_message(exc: Exception, op: Operation) -> str:
        if isinstance(exc, BackendError):
            return str(exc) or "Backend error"
        logger.exception("Unexpected error in %s", op.id)
        return f"Unexpected error: {exc}"

    # ------------------------------------------------------------------
    # Registry management
    # ------------------------------------------------------------------

    async def add_connection(
        self,
        kind: ConnectionKind,
        name: str,
        config: dict[str, Any] | None = None,
        security: SecurityLevel = SecurityLevel.UNKNOWN,
        record_id: str | None = None,
    ) -> ConnectionRecord:
        """Register an endpoint the backend has not reported (e.g. a hidden network)."""
        record = ConnectionRecord(
            id=record_id or f"{kind.value}:{uuid4().hex[:12]}",
            name=name,
            kind=kind,
            security=security,
            config=dict(config or {}),
        )
        async with self._lock:
            if record.id in self._records:
                raise InvalidConfiguration([f"Connection {record.id} already exists"])
            self._records[record.id] = record
            self._user_added.add(record.id)
            await self._event_bus.publish(
                EventType.CONNECTION_ADDED, record.to_dict(), source_id=record.id
            )
        logger.info("Added %s connection %s (%s)", kind.value, name, record.id)
        return record.snapshot()

    async def forget_connection(self, record_id: str) -> None:
        """Remove a record, deactivating it first if it is connected.

        Saved connections are deleted from the backend so the next
        discovery does not bring them back. Scan results and records added
        through ``add_connection`` only leave the registry.
        """
        async with self._lock:
            record = self._get(record_id)
            self._check_idle(record)
            connected = record.state is ConnectionState.CONNECTED
            saved = record_id not in self._user_added and record.config.get("saved", True)
            target = record.snapshot()

        if connected and self._available:
            try:
                await self._adapters[record.kind].disconnect(record)
            except BackendError as exc:
                logger.warning("Could not deactivate %s before forgetting: %s", record_id, exc)

        if saved:
            try:
                await self._backend.delete_connection(target)
            except NotImplementedError:
                logger.info("Backend cannot delete %s; hiding it from discovery", record_id)
                self._forgotten.add(record_id)

        async with self._lock:
            await self._remove(record_id)

    async def refresh(self) -> int:
        """Re-enumerate endpoints of every kind. Returns the registry size."""
        discovered: dict[str, ConnectionRecord] = {}
        complete = True
        for kind in ConnectionKind:
            try:
                for record in await self._backend.list_connections_by_kind(kind):
                    if record.id not in self._forgotten:
                        discovered[record.id] = record
            except BackendError as exc:
                complete = False
                logger.warning("Discovery of %s connections failed: %s", kind.value, exc)

        async with self._lock:
            for record in discovered.values():
                await self._merge(record)
            if complete:
                for record_id in list(self._records):
                    record = self._records[record_id]
                    if (
                        record_id not in discovered
                        and record_id not in self._user_added
                        and record_id not in self._busy
                        and record.state is not ConnectionState.CONNECTED
                    ):
                        await self._remove(record_id)
            return len(self._records)

    async def _merge(self, incoming: ConnectionRecord) -> None:
        existing = self._records.get(incoming.id)
        if existing is None:
            self._records[incoming.id] = incoming
            await self._event_bus.publish(
                EventType.CONNECTION_ADDED, incoming.to_dict(), source_id=incoming.id
            )
            return
        existing.name = incoming.name
        existing.security = incoming.security
        existing.config.update(incoming.config)
        if incoming.last_connected and (
            existing.last_connected is None or incoming.last_connected > existing.last_connected
        ):
            existing.last_connected = incoming.last_connected
        if incoming.id not in self._busy and incoming.state is not existing.state:
            if incoming.state is ConnectionState.CONNECTED:
                existing.device = incoming.device
            await self._transition(existing, incoming.state, "discovered", force=True)

    async def _remove(self, record_id: str) -> None:
        record = self._records.pop(record_id, None)
        if record is None:
            return
        self._user_added.discard(record_id)
        op_id = self._busy.get(record_id)
        if op_id is not None:
            await self._complete(
                self._operations[op_id], False, "Connection removed", error="Connection removed"
            )
        await self._event_bus.publish(
            EventType.CONNECTION_REMOVED, record.to_dict(), source_id=record_id
        )
        logger.info("Removed connection %s (%s)", record.name, record_id)

    # ------------------------------------------------------------------
    # Backend listener
    # ------------------------------------------------------------------

    async def on_availability_changed(self, available: bool) -> None:
        if available:
            await self._on_backend_up()
        else:
            await self._on_backend_down()

    async def _on_backend_down(self) -> None:
        async with self._lock:
            if not self._available:
                return
            self._available = False
            for op in list(self._operations.values()):
                await self._complete(
                    op, False, "Failed", error=BACKEND_UNAVAILABLE,
                    error_category=ErrorCategory.SYSTEM.value,
                )
            for record in self._records.values():
                record.active_handle = None
                if record.state is not ConnectionState.DISCONNECTED:
                    await self._transition(
                        record, ConnectionState.DISCONNECTED, "backend unavailable", force=True
                    )
            await self._event_bus.publish(
                EventType.BACKEND_AVAILABILITY_CHANGED, {"available": False}
            )
        logger.warning("Network backend became unavailable")

        error = classify_system_error(
            BACKEND_UNAVAILABLE, severity=Severity.CRITICAL, surface_immediately=True
        )
        self._outage_error_id = error.id
        self._spawn(self._recovery.handle(error))

    async def _on_backend_up(self) -> None:
        async with self._lock:
            if self._available:
                return
            self._available = True
            await self._event_bus.publish(
                EventType.BACKEND_AVAILABILITY_CHANGED, {"available": True}
            )
        logger.info("Network backend available again")
        if self._outage_error_id is not None:
            await self._recovery.resolve(self._outage_error_id)
            self._outage_error_id = None
        await self.refresh()

    async def on_connection_state_changed(
        self, record_id: str, state: ConnectionState, reason: str | None = None
    ) -> None:
        async with self._lock:
            record = self._records.get(record_id)
            if record is None:
                return
            if record_id in self._busy:
                logger.debug(
                    "Ignoring backend state %s for %s while an operation is in flight",
                    state.value, record_id,
                )
                return
            previous = record.state
            if state is ConnectionState.CONNECTED and previous is not state:
                record.last_connected = _utcnow()
            if state in (ConnectionState.DISCONNECTED, ConnectionState.FAILED):
                record.active_handle = None
            await self._transition(record, state, reason or "backend", force=True)

        if state is ConnectionState.FAILED and previous is not state and reason:
            self._spawn(
                self._recovery.handle_connection_error(reason, record.id, record.kind)
            )

    async def on_device_state_changed(
        self, device: Device, reason: DeviceEventReason = DeviceEventReason.NONE
    ) -> None:
        await self._event_bus.publish(
            EventType.DEVICE_STATE_CHANGED,
            {**device.to_dict(), "reason": reason.value},
            source_id=device.name,
        )
        hardware = reason in (DeviceEventReason.CARRIER_LOST, DeviceEventReason.HARDWARE_FAULT)
        new_state = (
            ConnectionState.FAILED
            if reason is DeviceEventReason.HARDWARE_FAULT
            else ConnectionState.DISCONNECTED
        )
        affected: list[ConnectionRecord] = []

        async with self._lock:
            if not hardware and device.state not in _DEVICE_DOWN_STATES:
                return
            watched = _HARDWARE_WATCHED if hardware else _DEVICE_WATCHED
            for record in self._records.values():
                if record.state not in watched or not self._on_device(record, device):
                    continue
                op_id = self._busy.get(record.id)
                if op_id is not None:
                    await self._complete(
                        self._operations[op_id], False, "Failed",
                        error=f"Device {device.name} went away",
                        error_category=(
                            ErrorCategory.HARDWARE.value if hardware else None
                        ),
                    )
                record.active_handle = None
                await self._transition(record, new_state, f"device {reason.value}", force=True)
                affected.append(record)

        if reason is DeviceEventReason.HARDWARE_FAULT or (
            reason is DeviceEventReason.CARRIER_LOST and affected
        ):
            message = (
                f"Ethernet cable disconnected from {device.name}"
                if reason is DeviceEventReason.CARRIER_LOST
                else f"Hardware fault on {device.name}"
            )
            self._spawn(
                self._recovery.handle_hardware_error(
                    device.kind, message, affected[0].id if affected else None, device.name
                )
            )

    def _on_device(self, record: ConnectionRecord, device: Device) -> bool:
        if record.device is not None:
            return record.device == device.name
        # Still connecting: the adapter has not reported its device yet
        adapter = self._adapters.get(record.kind)
        return (
            record.state is ConnectionState.CONNECTING
            and adapter is not None
            and adapter.device_kind is device.kind
        )

    async def on_connection_added(self, record: ConnectionRecord) -> None:
        async with self._lock:
            self._forgotten.discard(record.id)
            await self._merge(record)

    async def on_connection_removed(self, record_id: str) -> None:
        async with self._lock:
            await self._remove(record_id)

    # ------------------------------------------------------------------
    # Recovery-facing operations
    # ------------------------------------------------------------------

    async def retry_connection(self, record_id: str) -> bool:
        """Connect again and wait for the outcome, without re-reporting errors."""
        op = await self.connect(record_id, report_errors=False)
        return await op.wait()

    async def reset_devices(self, kind: ConnectionKind) -> bool:
        """Reset every usable device of *kind*. False if none could be reset."""
        devices = [d for d in await self.list_devices() if d.kind is kind]
        if not devices:
            return False
        try:
            results = [await self._backend.reset_device(d) for d in devices]
        except NotImplementedError:
            return False
        return all(results)

    async def restart_backend(self) -> bool:
        try:
            return await self._backend.restart()
        except NotImplementedError:
            return False

    def clear_caches(self) -> None:
        clear = getattr(self._authorizer, "clear_cache", None)
        if clear is not None:
            clear()

    # ------------------------------------------------------------------
    # Profiles
    # ------------------------------------------------------------------

    def list_profiles(self) -> list[Profile]:
        return self.profiles.list_profiles()

    def get_profile(self, profile_id: str) -> Profile:
        return self.profiles.get(profile_id)

    async def create_profile(self, name: str, **fields: Any) -> Profile:
        return await self.profiles.create(name, **fields)

    async def update_profile(self, profile_id: str, changes: dict[str, Any]) -> Profile:
        self.profiles.validate_update(profile_id, changes)
        profile = self.profiles.get(profile_id)
        if profile.is_active and changes.get("enabled") is False:
            await self.evaluator.deactivate_profile()
        return await self.profiles.update(profile_id, changes)

    async def delete_profile(self, profile_id: str) -> Profile:
        profile = self.profiles.get(profile_id)
        if profile.is_active:
            await self.evaluator.deactivate_profile()
        return await self.profiles.delete(profile_id)

    async def duplicate_profile(self, profile_id: str) -> Profile:
        return await self.profiles.duplicate(profile_id)

    async def activate_profile(self, profile_id: str) -> Profile:
        return await self.evaluator.activate_profile(profile_id)

    async def deactivate_profile(self) -> Profile | None:
        return await self.evaluator.deactivate_profile()

    # ------------------------------------------------------------------
    # Internals (call with the lock held)
    # ------------------------------------------------------------------

    async def _authorize(self, action_id: str) -> None:
        if self._authorizer is None:
            return
        result = await self._authorizer.check_authorization(action_id, allow_interactive=True)
        if result is AuthorizationResult.AUTHORIZED:
            return
        if result is AuthorizationResult.UNHANDLED:
            self._spawn(
                self._recovery.handle_permission_error(
                    f"No authorization agent could decide {action_id}", action_id
                )
            )
        raise PermissionDenied(action_id, result.value)

    async def _register(self, op: Operation, status: str) -> None:
        self._operations[op.id] = op
        self._busy[op.record_id] = op.id
        op.advance(0.1, status)
        await self._event_bus.publish(
            EventType.OPERATION_STARTED, op.to_dict(), source_id=op.record_id
        )

    async def _progress(self, op: Operation, fraction: float, status: str) -> None:
        if op.finished:
            return
        op.advance(fraction, status)
        await self._event_bus.publish(
            EventType.OPERATION_PROGRESS, op.to_dict(), source_id=op.record_id
        )

    async def _complete(
        self,
        op: Operation,
        success: bool,
        status: str,
        error: str | None = None,
        error_category: str | None = None,
    ) -> None:
        op.finish(success, status, error=error, error_category=error_category)
        self._operations.pop(op.id, None)
        if self._busy.get(op.record_id) == op.id:
            del self._busy[op.record_id]
        if success:
            logger.info("%s %s succeeded: %s", op.kind.value, op.record_id, status)
        else:
            logger.info("%s %s failed: %s", op.kind.value, op.record_id, error or status)
        await self._event_bus.publish(
            EventType.OPERATION_COMPLETED, op.to_dict(), source_id=op.record_id
        )

    async def _transition(
        self,
        record: ConnectionRecord,
        new_state: ConnectionState,
        reason: str,
        force: bool = False,
    ) -> None:
        old_state = record.state
        if old_state is new_state:
            return
        if not force and new_state not in CALLER_TRANSITIONS[old_state]:
            raise ValueError(
                f"Illegal transition {old_state.value} -> {new_state.value} for {record.id}"
            )
        record.state = new_state
        logger.debug(
            "%s %s: %s -> %s (%s)",
            record.kind.value, record.id, old_state.value, new_state.value, reason,
        )
        await self._event_bus.publish(
            EventType.CONNECTION_STATE_CHANGED,
            {
                "record_id": record.id,
                "name": record.name,
                "kind": record.kind.value,
                "old_state": old_state.value,
                "new_state": new_state.value,
                "reason": reason,
            },
            source_id=record.id,
        )
