"""Unit tests for failure classification."""

import pytest

from netplane.connections.models import ConnectionKind
from netplane.recovery.classifier import (
    classify_connection_error,
    classify_hardware_error,
    classify_system_error,
    configuration_error,
    permission_error,
)
from netplane.recovery.types import ErrorCategory, RecoveryAction, Severity


class TestConnectionErrors:
    @pytest.mark.parametrize(
        "message, category, severity, action",
        [
            ("Connection activation TIMED OUT", ErrorCategory.CONNECTION, Severity.MEDIUM,
             RecoveryAction.RETRY_CONNECTION),
            ("Timeout waiting for DHCP", ErrorCategory.CONNECTION, Severity.MEDIUM,
             RecoveryAction.RETRY_CONNECTION),
            ("Secrets were required: wrong password", ErrorCategory.CONNECTION,
             Severity.MEDIUM, RecoveryAction.PROMPT_USER),
            ("802.1X authentication failed", ErrorCategory.CONNECTION, Severity.MEDIUM,
             RecoveryAction.PROMPT_USER),
            ("Not authorized to control networking", ErrorCategory.PERMISSION,
             Severity.MEDIUM, RecoveryAction.PROMPT_USER),
            ("Access point not found", ErrorCategory.SYSTEM, Severity.HIGH,
             RecoveryAction.FALLBACK_CONNECTION),
            ("Device wlan0 unavailable", ErrorCategory.SYSTEM, Severity.HIGH,
             RecoveryAction.FALLBACK_CONNECTION),
            ("Something odd happened", ErrorCategory.CONNECTION, Severity.MEDIUM,
             RecoveryAction.RETRY_CONNECTION),
        ],
    )
    def test_rules(self, message, category, severity, action) -> None:
        error = classify_connection_error(message, "wifi:Home", ConnectionKind.WIFI)
        assert error.category is category
        assert error.severity is severity
        assert error.recovery_action is action
        assert error.message == message
        assert error.connection_id == "wifi:Home"

    def test_first_matching_rule_wins(self) -> None:
        # Matches both the timeout and the password rule
        error = classify_connection_error("password prompt timed out")
        assert error.recovery_action is RecoveryAction.RETRY_CONNECTION


class TestHardwareErrors:
    def test_ethernet_falls_back(self) -> None:
        error = classify_hardware_error(ConnectionKind.ETHERNET, "carrier lost", "eth:Wired", "eth0")
        assert error.category is ErrorCategory.HARDWARE
        assert error.severity is Severity.HIGH
        assert error.recovery_action is RecoveryAction.FALLBACK_CONNECTION
        assert error.details == "device=eth0"

    def test_wifi_resets_device(self) -> None:
        error = classify_hardware_error(ConnectionKind.WIFI, "radio fault")
        assert error.recovery_action is RecoveryAction.RESET_DEVICE
        assert error.details is None

    def test_other_kinds_prompt_user(self) -> None:
        error = classify_hardware_error(ConnectionKind.MOBILE, "modem gone")
        assert error.recovery_action is RecoveryAction.PROMPT_USER


class TestSystemErrors:
    @pytest.mark.parametrize(
        "message, action",
        [
            ("NetworkManager is not running", RecoveryAction.RESTART_BACKEND),
            ("D-Bus service vanished", RecoveryAction.RESTART_BACKEND),
            ("Hardware switch toggled", RecoveryAction.RESET_DEVICE),
            ("DNS cache corrupted", RecoveryAction.CLEAR_CACHE),
            ("Disk full", RecoveryAction.PROMPT_USER),
        ],
    )
    def test_action_from_message(self, message, action) -> None:
        error = classify_system_error(message)
        assert error.category is ErrorCategory.SYSTEM
        assert error.recovery_action is action

    def test_severity_and_surface_flag(self) -> None:
        error = classify_system_error(
            "Network backend unavailable", severity=Severity.CRITICAL, surface_immediately=True
        )
        assert error.severity is Severity.CRITICAL
        assert error.surface_immediately is True


class TestOtherErrors:
    def test_configuration_error(self) -> None:
        error = configuration_error("bad gateway", "eth:Wired", details="gateway=1.2.3.4")
        assert error.category is ErrorCategory.CONFIGURATION
        assert error.recovery_action is RecoveryAction.PROMPT_USER
        assert error.details == "gateway=1.2.3.4"

    def test_permission_error(self) -> None:
        error = permission_error("no agent", "org.freedesktop.NetworkManager.network-control")
        assert error.category is ErrorCategory.PERMISSION
        assert error.details == "action=org.freedesktop.NetworkManager.network-control"
