"""Recovery actions that act through the connection controller.

These handlers only use the controller's public operations, the same ones
any API caller has; connections they start are not fed back into the
error pipeline.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from functools import partial
from typing import TYPE_CHECKING

from netplane.connections.models import ConnectionKind, ConnectionRecord, ConnectionState
from netplane.exceptions import NetplaneError
from netplane.recovery.types import ErrorCategory, NetworkError, RecoveryAction, RecoveryResult

if TYPE_CHECKING:
    from netplane.connections.controller import ConnectionController
    from netplane.recovery.engine import RecoveryEngine

logger = logging.getLogger(__name__)

# Kinds that can stand in for a lost primary link
_FALLBACK_KINDS = (ConnectionKind.ETHERNET, ConnectionKind.WIFI, ConnectionKind.MOBILE)
_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


def install_controller_actions(engine: RecoveryEngine, controller: ConnectionController) -> None:
    """Register the connection-level recovery handlers on *engine*."""
    engine.register_handler(RecoveryAction.RETRY_CONNECTION, partial(retry_connection, controller))
    engine.register_handler(RecoveryAction.FALLBACK_CONNECTION, partial(fallback_connection, controller))
    engine.register_handler(RecoveryAction.RESET_DEVICE, partial(reset_device, controller))
    engine.register_handler(RecoveryAction.RESTART_BACKEND, partial(restart_backend, controller))
    engine.add_cache_hook(controller.clear_caches)


async def retry_connection(controller: ConnectionController, error: NetworkError) -> RecoveryResult:
    action = RecoveryAction.RETRY_CONNECTION
    if error.connection_id is None:
        return RecoveryResult(False, action, "No connection to retry")
    try:
        ok = await controller.retry_connection(error.connection_id)
    except NetplaneError as exc:
        return RecoveryResult(False, action, str(exc))
    return RecoveryResult(ok, action, "Reconnected" if ok else "Reconnect failed")


def fallback_candidates(
    controller: ConnectionController, error: NetworkError
) -> list[ConnectionRecord]:
    """Disconnected endpoints to try instead of the failed one, best first."""
    profile = controller.evaluator.active_profile
    preferred = set(profile.preferred_wifi_networks) if profile else set()
    skip_kind = error.connection_kind if error.category is ErrorCategory.HARDWARE else None

    candidates = [
        r for r in controller.list_available()
        if r.kind in _FALLBACK_KINDS
        and r.kind is not skip_kind
        and r.id != error.connection_id
        and r.state in (ConnectionState.DISCONNECTED, ConnectionState.FAILED)
    ]
    if profile is not None and not profile.allow_mobile_data:
        candidates = [r for r in candidates if r.kind is not ConnectionKind.MOBILE]

    def rank(record: ConnectionRecord) -> tuple:
        is_preferred = record.kind is ConnectionKind.WIFI and record.name in preferred
        ethernet_first = bool(profile and profile.prefer_ethernet) and record.kind is ConnectionKind.ETHERNET
        return (not is_preferred, not ethernet_first, -(record.last_connected or _EPOCH).timestamp())

    return sorted(candidates, key=rank)


async def fallback_connection(controller: ConnectionController, error: NetworkError) -> RecoveryResult:
    action = RecoveryAction.FALLBACK_CONNECTION
    for candidate in fallback_candidates(controller, error):
        try:
            ok = await controller.retry_connection(candidate.id)
        except NetplaneError as exc:
            logger.debug("Fallback to %s rejected: %s", candidate.id, exc)
            continue
        if ok:
            return RecoveryResult(True, action, f"Switched to {candidate.name}")
        logger.info("Fallback to %s failed", candidate.name)
    return RecoveryResult(False, action, "No fallback connection available")


async def reset_device(controller: ConnectionController, error: NetworkError) -> RecoveryResult:
    action = RecoveryAction.RESET_DEVICE
    if error.connection_kind is None:
        return RecoveryResult(False, action, "Unknown device kind")
    try:
        ok = await controller.reset_devices(error.connection_kind)
    except NetplaneError as exc:
        return RecoveryResult(False, action, str(exc))
    return RecoveryResult(ok, action, "Device reset" if ok else "Device reset failed")


async def restart_backend(controller: ConnectionController, error: NetworkError) -> RecoveryResult:
    ok = await controller.restart_backend()
    return RecoveryResult(
        ok, RecoveryAction.RESTART_BACKEND,
        "Backend restarted" if ok else "Backend restart failed",
    )
