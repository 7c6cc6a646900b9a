"""Error taxonomy for the recovery engine.

Each classified failure carries a category, a severity and the recovery
action assigned to it. Severity supports ordering so that notification
and logging thresholds can compare against MEDIUM.
"""

from __future__ import annotations

import enum
import functools
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from netplane.connections.models import ConnectionKind


class ErrorCategory(str, enum.Enum):
    CONNECTION = "connection"
    CONFIGURATION = "configuration"
    SYSTEM = "system"
    USER_INPUT = "user-input"
    PERMISSION = "permission"
    HARDWARE = "hardware"
    PROTOCOL = "protocol"


@functools.total_ordering
class Severity(enum.Enum):
    """Error severity levels with ordering support.

    CRITICAL > HIGH > MEDIUM > LOW.
    """

    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @property
    def _rank(self) -> int:
        return _SEVERITY_RANK[self]

    @property
    def log_level(self) -> int:
        return _SEVERITY_LOG_LEVEL[self]

    def __lt__(self, other: object) -> bool:
        if not isinstance(other, Severity):
            return NotImplemented
        return self._rank < other._rank

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Severity):
            return NotImplemented
        return self._rank == other._rank

    def __hash__(self) -> int:
        return hash(self.value)


_SEVERITY_RANK: dict[Severity, int] = {
    Severity.LOW: 0,
    Severity.MEDIUM: 1,
    Severity.HIGH: 2,
    Severity.CRITICAL: 3,
}

_SEVERITY_LOG_LEVEL: dict[Severity, int] = {
    Severity.LOW: logging.DEBUG,
    Severity.MEDIUM: logging.INFO,
    Severity.HIGH: logging.WARNING,
    Severity.CRITICAL: logging.ERROR,
}


class RecoveryAction(str, enum.Enum):
    RETRY_CONNECTION = "retry-connection"
    FALLBACK_CONNECTION = "fallback-connection"
    RESET_DEVICE = "reset-device"
    RESTART_BACKEND = "restart-backend"
    CLEAR_CACHE = "clear-cache"
    PROMPT_USER = "prompt-user"
    DISABLE_FEATURE = "disable-feature"
    NONE = "none"


_CATEGORY_MESSAGES: dict[ErrorCategory, str] = {
    ErrorCategory.CONNECTION: "Connection failed. Please check your network settings.",
    ErrorCategory.CONFIGURATION: "Configuration error. Please review your settings.",
    ErrorCategory.SYSTEM: "System error. The network service may be unavailable.",
    ErrorCategory.USER_INPUT: "Invalid input. Please check your entries.",
    ErrorCategory.PERMISSION: "Permission denied. Administrator access may be required.",
    ErrorCategory.HARDWARE: "Hardware error. Please check your network devices.",
    ErrorCategory.PROTOCOL: "Protocol error. The remote end rejected the connection.",
}

_HARDWARE_MESSAGES: dict[ConnectionKind, str] = {
    ConnectionKind.ETHERNET: "Ethernet cable disconnected or hardware failure.",
    ConnectionKind.WIFI: "WiFi adapter problem. Try turning WiFi off and on.",
    ConnectionKind.MOBILE: "Mobile modem problem. Check the modem and SIM card.",
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class NetworkError:
    """A classified failure and its recovery bookkeeping."""

    category: ErrorCategory
    severity: Severity
    message: str
    recovery_action: RecoveryAction = RecoveryAction.NONE
    connection_id: str | None = None
    connection_kind: ConnectionKind | None = None
    details: str | None = None
    id: str = ""
    timestamp: datetime = field(default_factory=_utcnow)
    retry_count: int = 0
    recovery_attempted: bool = False
    resolved: bool = False
    user_notified: bool = False
    surface_immediately: bool = False

    def __post_init__(self) -> None:
        if not self.id:
            self.id = f"err_{self.category.value}_{uuid4().hex[:12]}"

    @property
    def user_message(self) -> str:
        if self.category is ErrorCategory.HARDWARE and self.connection_kind in _HARDWARE_MESSAGES:
            return _HARDWARE_MESSAGES[self.connection_kind]
        return _CATEGORY_MESSAGES[self.category]

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "category": self.category.value,
            "severity": self.severity.value,
            "message": self.message,
            "user_message": self.user_message,
            "recovery_action": self.recovery_action.value,
            "connection_id": self.connection_id,
            "connection_kind": self.connection_kind.value if self.connection_kind else None,
            "details": self.details,
            "timestamp": self.timestamp.isoformat(),
            "retry_count": self.retry_count,
            "recovery_attempted": self.recovery_attempted,
            "resolved": self.resolved,
            "user_notified": self.user_notified,
        }


@dataclass(frozen=True)
class RecoveryResult:
    success: bool
    action: RecoveryAction
    message: str = ""
