"""Integration tests for the ConnectionController against the in-memory backend."""

import asyncio
from unittest.mock import AsyncMock

import pytest

from netplane.authorization import PolkitAction, StaticAuthorizationService
from netplane.connections.models import (
    ConnectionKind,
    ConnectionRecord,
    ConnectionState,
    Credentials,
    OperationKind,
)
from netplane.events.types import EventType
from netplane.exceptions import (
    AlreadyInProgress,
    BackendError,
    BackendUnavailable,
    ConnectionNotFound,
    DuplicateProfileName,
    InvalidConfiguration,
    PermissionDenied,
)
from netplane.profiles.store import ACTIVE_PROFILE_KEY
from netplane.recovery.types import ErrorCategory, RecoveryAction, Severity


def _of(events, event_type):
    return [e for e in events if e["event_type"] == event_type]


def _state_changes(events, record_id):
    return [
        e["payload"]["new_state"]
        for e in _of(events, EventType.CONNECTION_STATE_CHANGED)
        if e["payload"]["record_id"] == record_id
    ]


class TestConnect:
    @pytest.mark.asyncio
    async def test_connect_reaches_connected(self, plane) -> None:
        op = await plane.controller.connect("wifi:Home")
        assert op.kind is OperationKind.CONNECT
        assert await op.wait() is True

        record = plane.controller.get_connection("wifi:Home")
        assert record.state is ConnectionState.CONNECTED
        assert record.device == "wlan0"
        assert record.last_connected is not None

    @pytest.mark.asyncio
    async def test_connect_publishes_state_and_progress(self, plane, recording) -> None:
        op = await plane.controller.connect("wifi:Home")
        await op.wait()
        await asyncio.sleep(0.05)

        assert _state_changes(recording, "wifi:Home") == ["connecting", "connected"]
        progress = [
            e["payload"]["progress"]
            for e in recording
            if e["event_type"].startswith("operation.") and e["payload"]["id"] == op.id
        ]
        assert progress == sorted(progress)
        assert progress[-1] == 1.0
        completed = _of(recording, EventType.OPERATION_COMPLETED)
        assert completed[-1]["payload"]["success"] is True

    @pytest.mark.asyncio
    async def test_connect_unknown_record(self, plane) -> None:
        with pytest.raises(ConnectionNotFound):
            await plane.controller.connect("wifi:Nowhere")

    @pytest.mark.asyncio
    async def test_second_request_while_in_flight_is_rejected(self, plane, backend) -> None:
        backend.hold("wifi:Home")
        op = await plane.controller.connect("wifi:Home")

        with pytest.raises(AlreadyInProgress) as exc_info:
            await plane.controller.connect("wifi:Home")
        assert exc_info.value.operation_id == op.id
        with pytest.raises(AlreadyInProgress):
            await plane.controller.disconnect("wifi:Home")

        backend.release("wifi:Home")
        assert await op.wait() is True
        assert backend.activations == ["wifi:Home"]

    @pytest.mark.asyncio
    async def test_connect_when_already_connected_succeeds_immediately(self, plane, backend) -> None:
        await (await plane.controller.connect("wifi:Home")).wait()
        op = await plane.controller.connect("wifi:Home")
        assert op.finished and op.success
        assert backend.activations == ["wifi:Home"]

    @pytest.mark.asyncio
    async def test_connect_with_backend_unavailable(self, plane, backend) -> None:
        await backend.set_available(False)
        with pytest.raises(BackendUnavailable):
            await plane.controller.connect("wifi:Home")

    @pytest.mark.asyncio
    async def test_password_credentials_reach_psk_network(self, plane, backend) -> None:
        await plane.controller.add_connection(
            ConnectionKind.WIFI,
            "Neighbour",
            config={"ssid": "Neighbour", "security": "wpa2-psk"},
            record_id="wifi:Neighbour",
        )
        op = await plane.controller.connect(
            "wifi:Neighbour", Credentials(password="correct horse")
        )
        assert await op.wait() is True


class TestDisconnect:
    @pytest.mark.asyncio
    async def test_disconnect_connected_record(self, plane, backend) -> None:
        await (await plane.controller.connect("wifi:Home")).wait()
        op = await plane.controller.disconnect("wifi:Home")
        assert op.cancellable is False
        assert await op.wait() is True
        assert plane.controller.get_connection("wifi:Home").state is ConnectionState.DISCONNECTED
        assert backend.deactivations == ["wifi:Home"]

    @pytest.mark.asyncio
    async def test_disconnect_idle_record_is_noop(self, plane, backend) -> None:
        op = await plane.controller.disconnect("wifi:Home")
        assert op.finished and op.success
        assert backend.deactivations == []


class TestCancel:
    @pytest.mark.asyncio
    async def test_cancel_marks_operation_failed_and_discards_late_result(
        self, plane, backend
    ) -> None:
        backend.hold("wifi:Home")
        op = await plane.controller.connect("wifi:Home")

        assert await plane.controller.cancel_operation(op.id) is True
        assert await op.wait() is False
        assert op.error == "cancelled by caller"
        assert plane.controller.get_connection("wifi:Home").state is ConnectionState.FAILED

        backend.release("wifi:Home")
        await asyncio.sleep(0.05)
        assert plane.controller.get_connection("wifi:Home").state is ConnectionState.FAILED
        assert plane.controller.get_active_operations() == []

    @pytest.mark.asyncio
    async def test_cancel_twice_returns_false(self, plane, backend) -> None:
        backend.hold("wifi:Home")
        op = await plane.controller.connect("wifi:Home")
        assert await plane.controller.cancel_operation(op.id) is True
        assert await plane.controller.cancel_operation(op.id) is False
        backend.release("wifi:Home")

    @pytest.mark.asyncio
    async def test_cancel_unknown_operation(self, plane) -> None:
        assert await plane.controller.cancel_operation("op_missing") is False

    @pytest.mark.asyncio
    async def test_cancel_aborts_when_backend_supports_it(
        self, make_plane, make_backend
    ) -> None:
        backend = make_backend(supports_abort=True)
        plane = await make_plane(backend, auto_recovery=False)
        backend.hold("wifi:Home")
        op = await plane.controller.connect("wifi:Home")
        await asyncio.sleep(0.01)

        assert await plane.controller.cancel_operation(op.id) is True
        await asyncio.sleep(0.05)
        assert backend.aborts == ["wifi:Home"]
        assert plane.controller.get_connection("wifi:Home").state is ConnectionState.FAILED


class TestReconfigure:
    @pytest.mark.asyncio
    async def test_invalid_settings_rejected_synchronously(self, plane, backend) -> None:
        with pytest.raises(InvalidConfiguration) as exc_info:
            await plane.controller.reconfigure(
                "eth:Wired",
                {"method": "manual", "address": "192.168.1.10", "prefix": 24,
                 "gateway": "10.0.0.1"},
            )
        assert any("outside" in p for p in exc_info.value.problems)
        assert plane.controller.get_active_operations() == []
        assert backend.updates == []

    @pytest.mark.asyncio
    async def test_valid_settings_applied(self, plane, backend) -> None:
        op = await plane.controller.reconfigure(
            "eth:Wired",
            {"method": "manual", "address": "192.168.1.10", "prefix": 24,
             "gateway": "192.168.1.1", "dns": ["1.1.1.1"]},
        )
        assert await op.wait() is True
        assert backend.updates[0][0] == "eth:Wired"
        record = plane.controller.get_connection("eth:Wired")
        assert record.config["method"] == "manual"
        assert record.config["gateway"] == "192.168.1.1"

    @pytest.mark.asyncio
    async def test_backend_rejection_is_a_configuration_error(self, plane, backend) -> None:
        backend.fail_next("eth:Wired", "Invalid gateway for this link", operation="update")
        op = await plane.controller.reconfigure("eth:Wired", {"method": "auto"})
        assert await op.wait() is False
        await asyncio.sleep(0.05)
        error = plane.recovery.get_error_history()[-1]
        assert error.category is ErrorCategory.CONFIGURATION
        assert error.connection_id == "eth:Wired"


class TestAuthorization:
    @pytest.mark.asyncio
    async def test_denied_enterprise_wifi_raises_without_state_change(
        self, make_plane, backend
    ) -> None:
        authz = StaticAuthorizationService(denied={PolkitAction.SETTINGS_MODIFY_SYSTEM})
        plane = await make_plane(backend, auto_recovery=False, authz=authz)

        with pytest.raises(PermissionDenied):
            await plane.controller.connect("wifi:Corp")
        assert plane.controller.get_connection("wifi:Corp").state is ConnectionState.DISCONNECTED
        assert authz.checks == [PolkitAction.SETTINGS_MODIFY_SYSTEM]
        assert backend.activations == []

    @pytest.mark.asyncio
    async def test_hotspot_with_password_checks_protected_sharing(
        self, plane, authorizer
    ) -> None:
        op = await plane.controller.connect("hotspot:Share")
        assert await op.wait() is True
        assert authorizer.checks == [PolkitAction.WIFI_SHARE_PROTECTED]

    @pytest.mark.asyncio
    async def test_plain_wifi_needs_no_authorization(self, plane, authorizer) -> None:
        await (await plane.controller.connect("wifi:Home")).wait()
        assert authorizer.checks == []


class TestBackendAvailability:
    @pytest.mark.asyncio
    async def test_loss_fails_every_in_flight_operation(self, plane, backend, recording) -> None:
        backend.hold("wifi:Home")
        backend.hold("eth:Wired")
        op1 = await plane.controller.connect("wifi:Home")
        op2 = await plane.controller.connect("eth:Wired")

        await backend.set_available(False)

        for op in (op1, op2):
            assert await op.wait() is False
            assert op.error == "Network backend unavailable"
            assert op.error_category == "system"
        assert all(
            r.state is ConnectionState.DISCONNECTED
            for r in plane.controller.list_available()
        )
        assert plane.controller.available is False

        backend.release("wifi:Home")
        backend.release("eth:Wired")
        await asyncio.sleep(0.05)

        errors = plane.recovery.get_active_errors()
        assert len(errors) == 1
        assert errors[0].category is ErrorCategory.SYSTEM
        assert errors[0].severity is Severity.CRITICAL
        assert errors[0].user_notified is True
        assert len(_of(recording, EventType.USER_INTERVENTION_REQUIRED)) == 1
        availability = _of(recording, EventType.BACKEND_AVAILABILITY_CHANGED)
        assert availability[-1]["payload"] == {"available": False}

    @pytest.mark.asyncio
    async def test_return_resolves_outage_error(self, plane, backend) -> None:
        await backend.set_available(False)
        await asyncio.sleep(0.05)
        assert len(plane.recovery.get_active_errors()) == 1

        await backend.set_available(True)
        await asyncio.sleep(0.05)
        assert plane.controller.available is True
        assert plane.recovery.get_active_errors() == []

    @pytest.mark.asyncio
    async def test_restart_backend_recovers_availability(
        self, make_plane, make_backend
    ) -> None:
        backend = make_backend(restart_succeeds=True)
        plane = await make_plane(backend)

        await backend.set_available(False)
        await asyncio.sleep(0.1)

        assert backend.restarts == 1
        assert plane.controller.available is True
        error = plane.recovery.get_error_history()[0]
        assert error.recovery_action is RecoveryAction.RESTART_BACKEND
        assert error.resolved is True


class TestFailureRecovery:
    @pytest.mark.asyncio
    async def test_timeout_is_retried_and_resolved(self, make_plane, backend) -> None:
        plane = await make_plane(backend)
        backend.fail_next("wifi:Home", "Connection activation timed out")

        op = await plane.controller.connect("wifi:Home")
        assert await op.wait() is False
        await asyncio.sleep(0.1)

        error = plane.recovery.get_error_history()[0]
        assert error.category is ErrorCategory.CONNECTION
        assert error.recovery_action is RecoveryAction.RETRY_CONNECTION
        assert error.resolved is True
        assert error.retry_count == 1
        assert backend.activations == ["wifi:Home", "wifi:Home"]
        assert plane.controller.get_connection("wifi:Home").state is ConnectionState.CONNECTED

    @pytest.mark.asyncio
    async def test_retry_bound_and_single_intervention(self, make_plane, backend) -> None:
        plane = await make_plane(backend)
        events = []

        async def _record(event):
            events.append(event)

        plane.event_bus.subscribe(["*"], _record)
        for _ in range(6):
            backend.fail_next("wifi:Home", "Connection activation timed out")

        op = await plane.controller.connect("wifi:Home")
        await op.wait()
        await asyncio.sleep(0.2)

        error = plane.recovery.get_error_history()[0]
        assert error.retry_count == 3
        assert error.resolved is False
        assert error.user_notified is True
        assert len(backend.activations) == 4
        interventions = _of(events, EventType.USER_INTERVENTION_REQUIRED)
        assert [e["payload"]["id"] for e in interventions] == [error.id]
        assert plane.controller.get_connection("wifi:Home").state is ConnectionState.FAILED

    @pytest.mark.asyncio
    async def test_missing_password_prompts_without_retry(self, make_plane, backend) -> None:
        plane = await make_plane(backend)
        await plane.controller.add_connection(
            ConnectionKind.WIFI,
            "Neighbour",
            config={"ssid": "Neighbour", "security": "wpa2-psk"},
            record_id="wifi:Neighbour",
        )
        op = await plane.controller.connect("wifi:Neighbour")
        assert await op.wait() is False
        await asyncio.sleep(0.1)

        error = plane.recovery.get_error_history()[0]
        assert error.recovery_action is RecoveryAction.PROMPT_USER
        assert error.retry_count == 1
        assert error.user_notified is True
        assert backend.activations == []

    @pytest.mark.asyncio
    async def test_cable_loss_falls_back_to_preferred_wifi(self, make_plane, backend) -> None:
        plane = await make_plane(backend)
        profile = await plane.controller.create_profile(
            "Office", preferred_wifi_networks=["Home"]
        )
        await plane.controller.activate_profile(profile.id)
        await (await plane.controller.connect("eth:Wired")).wait()

        await backend.unplug("eth0")
        await asyncio.sleep(0.1)

        error = plane.recovery.get_error_history()[0]
        assert error.category is ErrorCategory.HARDWARE
        assert error.recovery_action is RecoveryAction.FALLBACK_CONNECTION
        assert error.connection_id == "eth:Wired"
        assert error.resolved is True
        assert plane.controller.get_connection("eth:Wired").state is ConnectionState.DISCONNECTED
        assert plane.controller.get_connection("wifi:Home").state is ConnectionState.CONNECTED

    @pytest.mark.asyncio
    async def test_hardware_fault_while_connecting(self, plane, backend) -> None:
        backend.hold("wifi:Home")
        op = await plane.controller.connect("wifi:Home")

        await backend.fault("wlan0")
        assert await op.wait() is False
        assert op.error_category == "hardware"
        assert plane.controller.get_connection("wifi:Home").state is ConnectionState.FAILED

        backend.release("wifi:Home")
        await asyncio.sleep(0.05)
        error = plane.recovery.get_error_history()[0]
        assert error.category is ErrorCategory.HARDWARE
        assert error.recovery_action is RecoveryAction.RESET_DEVICE
        assert error.connection_id == "wifi:Home"


class TestBackendEvents:
    @pytest.mark.asyncio
    async def test_backend_reported_failure_is_classified(self, plane, backend) -> None:
        await backend.report_state("wifi:Home", ConnectionState.CONNECTED)
        assert plane.controller.get_connection("wifi:Home").state is ConnectionState.CONNECTED

        await backend.report_state(
            "wifi:Home", ConnectionState.FAILED, "Secrets were required, but not provided (password)"
        )
        await asyncio.sleep(0.05)
        error = plane.recovery.get_error_history()[0]
        assert error.connection_id == "wifi:Home"
        assert error.recovery_action is RecoveryAction.PROMPT_USER

    @pytest.mark.asyncio
    async def test_backend_state_ignored_while_operation_in_flight(self, plane, backend) -> None:
        backend.hold("wifi:Home")
        op = await plane.controller.connect("wifi:Home")
        await backend.report_state("wifi:Home", ConnectionState.DISCONNECTED)
        assert plane.controller.get_connection("wifi:Home").state is ConnectionState.CONNECTING
        backend.release("wifi:Home")
        assert await op.wait() is True

    @pytest.mark.asyncio
    async def test_discovered_and_removed_records(self, plane, backend) -> None:
        await backend.add_record(
            ConnectionRecord(id="wifi:Library", name="Library", kind=ConnectionKind.WIFI)
        )
        names = [r.name for r in plane.controller.list_available(ConnectionKind.WIFI)]
        assert "Library" in names

        await backend.remove_record("wifi:Library")
        with pytest.raises(ConnectionNotFound):
            plane.controller.get_connection("wifi:Library")


class TestRegistry:
    @pytest.mark.asyncio
    async def test_list_available_is_sorted_snapshot(self, plane) -> None:
        records = plane.controller.list_available()
        assert [(r.kind.value, r.name) for r in records] == sorted(
            (r.kind.value, r.name) for r in records
        )
        records[0].name = "mutated"
        assert plane.controller.list_available()[0].name != "mutated"

    @pytest.mark.asyncio
    async def test_add_and_forget(self, plane) -> None:
        record = await plane.controller.add_connection(
            ConnectionKind.VPN, "Lab", record_id="vpn:Lab"
        )
        assert record.state is ConnectionState.DISCONNECTED
        with pytest.raises(InvalidConfiguration):
            await plane.controller.add_connection(ConnectionKind.VPN, "Lab", record_id="vpn:Lab")

        await plane.controller.forget_connection("vpn:Lab")
        with pytest.raises(ConnectionNotFound):
            plane.controller.get_connection("vpn:Lab")

    @pytest.mark.asyncio
    async def test_forgotten_saved_record_stays_gone_after_refresh(self, plane, backend) -> None:
        await plane.controller.forget_connection("vpn:Office")
        assert backend.deletions == ["vpn:Office"]

        await plane.controller.refresh()
        with pytest.raises(ConnectionNotFound):
            plane.controller.get_connection("vpn:Office")

    @pytest.mark.asyncio
    async def test_forget_user_added_record_skips_backend(self, plane, backend) -> None:
        await plane.controller.add_connection(ConnectionKind.VPN, "Lab", record_id="vpn:Lab")
        await plane.controller.forget_connection("vpn:Lab")
        assert backend.deletions == []

    @pytest.mark.asyncio
    async def test_failed_backend_delete_keeps_record(self, plane, backend) -> None:
        backend.fail_next("vpn:Office", "Connection deletion failed", operation="delete")
        with pytest.raises(BackendError):
            await plane.controller.forget_connection("vpn:Office")
        assert plane.controller.get_connection("vpn:Office").name == "Office"

    @pytest.mark.asyncio
    async def test_forget_without_backend_delete_hides_record(self, plane, backend) -> None:
        backend.delete_connection = AsyncMock(side_effect=NotImplementedError)
        await plane.controller.forget_connection("vpn:Office")
        await plane.controller.refresh()
        with pytest.raises(ConnectionNotFound):
            plane.controller.get_connection("vpn:Office")

    @pytest.mark.asyncio
    async def test_user_added_records_survive_refresh(self, plane) -> None:
        await plane.controller.add_connection(ConnectionKind.VPN, "Lab", record_id="vpn:Lab")
        await plane.controller.refresh()
        assert plane.controller.get_connection("vpn:Lab").name == "Lab"


class TestProfileUpdates:
    @pytest.mark.asyncio
    async def test_rejected_update_keeps_active_profile(self, plane, recording) -> None:
        work = await plane.controller.create_profile("Work")
        await plane.controller.create_profile("Home")
        await plane.controller.activate_profile(work.id)

        with pytest.raises(DuplicateProfileName):
            await plane.controller.update_profile(work.id, {"enabled": False, "name": "Home"})
        with pytest.raises(InvalidConfiguration):
            await plane.controller.update_profile(work.id, {"enabled": False, "colour": "red"})

        await asyncio.sleep(0.05)
        assert plane.evaluator.active_profile is not None
        assert plane.evaluator.active_profile.id == work.id
        assert plane.controller.get_profile(work.id).enabled is True
        assert _of(recording, EventType.PROFILE_DEACTIVATED) == []
        assert await plane.config_store.load(ACTIVE_PROFILE_KEY) == work.id.encode()

    @pytest.mark.asyncio
    async def test_disabling_active_profile_deactivates_it(self, plane) -> None:
        work = await plane.controller.create_profile("Work")
        await plane.controller.activate_profile(work.id)
        updated = await plane.controller.update_profile(work.id, {"enabled": False})
        assert updated.enabled is False
        assert updated.is_active is False
        assert plane.evaluator.active_profile is None
