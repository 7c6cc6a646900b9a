"""Map raw failures to classified NetworkErrors.

Connection failures are classified by case-insensitive substring match
against the backend message; the first matching rule wins. Hardware
events skip message matching and map by connection kind.
"""

from __future__ import annotations

from netplane.connections.models import ConnectionKind
from netplane.recovery.types import ErrorCategory, NetworkError, RecoveryAction, Severity

# (keywords, category, severity, action), checked in order
_CONNECTION_RULES: list[tuple[tuple[str, ...], ErrorCategory, Severity, RecoveryAction]] = [
    (("timeout", "timed out"),
     ErrorCategory.CONNECTION, Severity.MEDIUM, RecoveryAction.RETRY_CONNECTION),
    (("authentication", "password"),
     ErrorCategory.CONNECTION, Severity.MEDIUM, RecoveryAction.PROMPT_USER),
    (("permission", "not authorized"),
     ErrorCategory.PERMISSION, Severity.MEDIUM, RecoveryAction.PROMPT_USER),
    (("not found", "unavailable"),
     ErrorCategory.SYSTEM, Severity.HIGH, RecoveryAction.FALLBACK_CONNECTION),
]

_HARDWARE_ACTIONS: dict[ConnectionKind, RecoveryAction] = {
    ConnectionKind.ETHERNET: RecoveryAction.FALLBACK_CONNECTION,
    ConnectionKind.WIFI: RecoveryAction.RESET_DEVICE,
}

_SYSTEM_RULES: list[tuple[tuple[str, ...], RecoveryAction]] = [
    (("backend", "networkmanager", "service"), RecoveryAction.RESTART_BACKEND),
    (("device", "hardware"), RecoveryAction.RESET_DEVICE),
    (("cache",), RecoveryAction.CLEAR_CACHE),
]


def classify_connection_error(
    message: str,
    connection_id: str | None = None,
    connection_kind: ConnectionKind | None = None,
) -> NetworkError:
    """Classify a failed connection attempt by its message."""
    lowered = message.lower()
    category, severity, action = (
        ErrorCategory.CONNECTION, Severity.MEDIUM, RecoveryAction.RETRY_CONNECTION,
    )
    for keywords, rule_category, rule_severity, rule_action in _CONNECTION_RULES:
        if any(keyword in lowered for keyword in keywords):
            category, severity, action = rule_category, rule_severity, rule_action
            break
    return NetworkError(
        category=category,
        severity=severity,
        message=message,
        recovery_action=action,
        connection_id=connection_id,
        connection_kind=connection_kind,
    )


def classify_hardware_error(
    connection_kind: ConnectionKind,
    message: str,
    connection_id: str | None = None,
    device: str | None = None,
) -> NetworkError:
    """Classify a device-level fault. The message is informational only."""
    return NetworkError(
        category=ErrorCategory.HARDWARE,
        severity=Severity.HIGH,
        message=message,
        recovery_action=_HARDWARE_ACTIONS.get(connection_kind, RecoveryAction.PROMPT_USER),
        connection_id=connection_id,
        connection_kind=connection_kind,
        details=f"device={device}" if device else None,
    )


def classify_system_error(
    message: str,
    severity: Severity = Severity.HIGH,
    surface_immediately: bool = False,
) -> NetworkError:
    """Classify a system-level failure, deriving the action from the message."""
    lowered = message.lower()
    action = RecoveryAction.PROMPT_USER
    for keywords, rule_action in _SYSTEM_RULES:
        if any(keyword in lowered for keyword in keywords):
            action = rule_action
            break
    return NetworkError(
        category=ErrorCategory.SYSTEM,
        severity=severity,
        message=message,
        recovery_action=action,
        surface_immediately=surface_immediately,
    )


def configuration_error(
    message: str,
    connection_id: str | None = None,
    details: str | None = None,
) -> NetworkError:
    return NetworkError(
        category=ErrorCategory.CONFIGURATION,
        severity=Severity.MEDIUM,
        message=message,
        recovery_action=RecoveryAction.PROMPT_USER,
        connection_id=connection_id,
        details=details,
    )


def permission_error(message: str, action_id: str | None = None) -> NetworkError:
    return NetworkError(
        category=ErrorCategory.PERMISSION,
        severity=Severity.MEDIUM,
        message=message,
        recovery_action=RecoveryAction.PROMPT_USER,
        details=f"action={action_id}" if action_id else None,
    )
