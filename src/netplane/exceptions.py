"""Exception hierarchy for synchronous rejections.

Asynchronous outcomes are reported through operation handles and the event
bus; only the checks a caller can act on immediately raise.
"""

from __future__ import annotations


class NetplaneError(Exception):
    """Base class for all netplane errors."""


class ConnectionNotFound(NetplaneError):
    def __init__(self, record_id: str) -> None:
        super().__init__(f"Unknown connection: {record_id}")
        self.record_id = record_id


class OperationNotFound(NetplaneError):
    def __init__(self, operation_id: str) -> None:
        super().__init__(f"Unknown operation: {operation_id}")
        self.operation_id = operation_id


class AlreadyInProgress(NetplaneError):
    def __init__(self, record_id: str, operation_id: str) -> None:
        super().__init__(
            f"Connection {record_id} is busy with operation {operation_id}"
        )
        self.record_id = record_id
        self.operation_id = operation_id


class PermissionDenied(NetplaneError):
    def __init__(self, action_id: str, result: str) -> None:
        super().__init__(f"Not authorized for {action_id} ({result})")
        self.action_id = action_id
        self.result = result


class BackendUnavailable(NetplaneError):
    def __init__(self, message: str = "Network backend unavailable") -> None:
        super().__init__(message)


class BackendError(NetplaneError):
    """Raised by backends and adapters; the message is what gets classified."""


class InvalidConfiguration(NetplaneError):
    def __init__(self, problems: list[str]) -> None:
        super().__init__("; ".join(problems) or "Invalid configuration")
        self.problems = problems


class ProfileNotFound(NetplaneError):
    def __init__(self, profile_id: str) -> None:
        super().__init__(f"Unknown profile: {profile_id}")
        self.profile_id = profile_id


class ProfileDisabled(NetplaneError):
    def __init__(self, profile_id: str) -> None:
        super().__init__(f"Profile {profile_id} is disabled")
        self.profile_id = profile_id


class ProfileInvalid(NetplaneError):
    def __init__(self, profile_id: str, problems: list[str]) -> None:
        super().__init__(f"Profile {profile_id} is invalid: {'; '.join(problems)}")
        self.profile_id = profile_id
        self.problems = problems


class DuplicateProfileName(NetplaneError):
    def __init__(self, name: str) -> None:
        super().__init__(f"A profile named {name!r} already exists")
        self.name = name


class ProfileApplyError(NetplaneError):
    """Applying a profile's settings to the system failed."""


class ConfigError(NetplaneError):
    """Settings could not be loaded or failed validation at startup."""
