"""Event type constants for the netplane event bus.

These constants define the canonical event type strings used throughout
the system. Components publish events using these types, and subscribers
filter on them.
"""

from __future__ import annotations


class EventType:
    """Namespace for event type string constants."""

    # Connection registry events
    CONNECTION_ADDED = "connection.added"
    CONNECTION_REMOVED = "connection.removed"
    CONNECTION_STATE_CHANGED = "connection.state_changed"
    DEVICE_STATE_CHANGED = "device.state_changed"

    # Operation events
    OPERATION_STARTED = "operation.started"
    OPERATION_PROGRESS = "operation.progress"
    OPERATION_COMPLETED = "operation.completed"

    # Error and recovery events
    ERROR_RAISED = "error.raised"
    ERROR_RESOLVED = "error.resolved"
    RECOVERY_ATTEMPTED = "error.recovery_attempted"
    RECOVERY_COMPLETED = "error.recovery_completed"
    USER_INTERVENTION_REQUIRED = "error.intervention_required"

    # Profile events
    PROFILE_CREATED = "profile.created"
    PROFILE_UPDATED = "profile.updated"
    PROFILE_DELETED = "profile.deleted"
    PROFILE_SWITCHED = "profile.switched"
    PROFILE_DEACTIVATED = "profile.deactivated"

    # Backend events
    BACKEND_AVAILABILITY_CHANGED = "backend.availability_changed"
