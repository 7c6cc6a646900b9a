"""Recovery engine: record classified errors and drive bounded remediation.

Every classified error lands in a bounded history and in the active set.
If automatic recovery is on, the assigned action's handler runs once
immediately; failed attempts are retried on a timer until the retry bound
is reached. Errors that cannot be fixed automatically raise a single
intervention event per error. A periodic sweep drops active errors the
user has already been told about once they are old enough.

Action handlers for connection-level remediation are registered by the
service wiring (see ``netplane.recovery.actions``); the engine only knows
the built-in local actions.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections import Counter, deque
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable

from netplane.connections.models import ConnectionKind
from netplane.events.bus import EventBus
from netplane.events.types import EventType
from netplane.recovery.classifier import (
    classify_connection_error,
    classify_hardware_error,
    classify_system_error,
    configuration_error,
    permission_error,
)
from netplane.recovery.types import (
    NetworkError,
    RecoveryAction,
    RecoveryResult,
    Severity,
)

logger = logging.getLogger(__name__)

ActionHandler = Callable[[NetworkError], Awaitable[RecoveryResult]]
CacheHook = Callable[[], Any]


class RecoveryEngine:
    """Error classifier front-end and recovery scheduler.

    Parameters
    ----------
    event_bus:
        Bus on which error and recovery events are published.
    auto_recovery:
        Run recovery actions automatically. When off, errors are recorded
        and medium-or-above ones are surfaced straight away.
    max_retries:
        Upper bound on recovery attempts per error.
    retry_delay:
        Seconds before the first scheduled retry.
    retry_backoff:
        Multiplier applied to the delay for each later retry.
    history_capacity:
        Number of errors kept in history; oldest are evicted first.
    sweep_interval:
        Seconds between sweeps of the active set.
    stale_after:
        Age in seconds after which a user-notified active error is evicted.
    """

    def __init__(
        self,
        event_bus: EventBus,
        auto_recovery: bool = True,
        max_retries: int = 3,
        retry_delay: float = 2.0,
        retry_backoff: float = 1.0,
        history_capacity: int = 100,
        sweep_interval: float = 300.0,
        stale_after: float = 1800.0,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._event_bus = event_bus
        self._auto_recovery = auto_recovery
        self._max_retries = max_retries
        self._retry_delay = retry_delay
        self._retry_backoff = retry_backoff
        self._sweep_interval = sweep_interval
        self._stale_after = timedelta(seconds=stale_after)
        self._clock = clock or (lambda: datetime.now(timezone.utc))

        self._history: deque[NetworkError] = deque(maxlen=history_capacity)
        self._active: dict[str, NetworkError] = {}
        self._retry_tasks: dict[str, asyncio.Task] = {}
        self._cache_hooks: list[CacheHook] = []
        self._handlers: dict[RecoveryAction, ActionHandler] = {
            RecoveryAction.CLEAR_CACHE: self._clear_cache,
            RecoveryAction.DISABLE_FEATURE: self._disable_feature,
            RecoveryAction.PROMPT_USER: self._prompt_user,
        }

        self._task: asyncio.Task[None] | None = None
        self._shutdown = asyncio.Event()

    @property
    def max_retries(self) -> int:
        return self._max_retries

    def register_handler(self, action: RecoveryAction, handler: ActionHandler) -> None:
        """Install the handler that performs *action*."""
        self._handlers[action] = handler

    def add_cache_hook(self, hook: CacheHook) -> None:
        """Register a callable run by the clear-cache action."""
        self._cache_hooks.append(hook)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Start the periodic sweep."""
        self._shutdown.clear()
        self._task = asyncio.create_task(self._sweep_loop())
        logger.info("Recovery engine started (sweep every %.0fs)", self._sweep_interval)

    async def stop(self) -> None:
        """Stop the sweep and cancel pending retries."""
        self._shutdown.set()
        if self._task is not None:
            try:
                await asyncio.wait_for(self._task, timeout=10)
            except (asyncio.TimeoutError, asyncio.CancelledError):
                pass
            self._task = None
        for task in list(self._retry_tasks.values()):
            task.cancel()
        self._retry_tasks.clear()
        logger.info("Recovery engine stopped")

    async def _sweep_loop(self) -> None:
        while not self._shutdown.is_set():
            try:
                await asyncio.wait_for(self._shutdown.wait(), timeout=self._sweep_interval)
                return
            except asyncio.TimeoutError:
                pass
            try:
                await self.sweep()
            except Exception:
                logger.exception("Error sweep failed")

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def handle_connection_error(
        self,
        message: str,
        connection_id: str | None = None,
        connection_kind: ConnectionKind | None = None,
    ) -> NetworkError:
        return await self.handle(
            classify_connection_error(message, connection_id, connection_kind)
        )

    async def handle_hardware_error(
        self,
        connection_kind: ConnectionKind,
        message: str,
        connection_id: str | None = None,
        device: str | None = None,
    ) -> NetworkError:
        return await self.handle(
            classify_hardware_error(connection_kind, message, connection_id, device)
        )

    async def handle_system_error(
        self,
        message: str,
        severity: Severity = Severity.HIGH,
        surface_immediately: bool = False,
    ) -> NetworkError:
        return await self.handle(
            classify_system_error(message, severity, surface_immediately)
        )

    async def handle_configuration_error(
        self,
        message: str,
        connection_id: str | None = None,
        details: str | None = None,
    ) -> NetworkError:
        return await self.handle(configuration_error(message, connection_id, details))

    async def handle_permission_error(
        self, message: str, action_id: str | None = None
    ) -> NetworkError:
        return await self.handle(permission_error(message, action_id))

    async def handle(self, error: NetworkError) -> NetworkError:
        """Record *error*, publish it, and start recovery. Returns the error."""
        self._history.append(error)
        self._active[error.id] = error
        logger.log(
            error.severity.log_level,
            "Network error %s [%s/%s]: %s (action=%s)",
            error.id, error.category.value, error.severity.value,
            error.message, error.recovery_action.value,
        )
        await self._event_bus.publish(
            EventType.ERROR_RAISED, error.to_dict(), source_id=error.connection_id
        )

        if error.surface_immediately:
            await self._notify(error)

        if not self._auto_recovery or error.recovery_action is RecoveryAction.NONE:
            if error.severity >= Severity.MEDIUM:
                await self._notify(error)
            return error

        result = await self.attempt_recovery(error)
        if not result.success:
            await self._after_failed_attempt(error)
        return error

    # ------------------------------------------------------------------
    # Recovery
    # ------------------------------------------------------------------

    async def attempt_recovery(self, error: NetworkError) -> RecoveryResult:
        """Run the error's recovery action once, counting the attempt."""
        action = error.recovery_action
        if error.resolved:
            return RecoveryResult(True, action, "Already resolved")
        if error.retry_count >= self._max_retries:
            return RecoveryResult(False, action, "Retry limit reached")

        error.recovery_attempted = True
        error.retry_count += 1
        await self._event_bus.publish(
            EventType.RECOVERY_ATTEMPTED,
            {"error_id": error.id, "action": action.value, "attempt": error.retry_count},
            source_id=error.connection_id,
        )

        handler = self._handlers.get(action)
        if handler is None:
            result = RecoveryResult(False, action, f"No handler for {action.value}")
        else:
            try:
                result = await handler(error)
            except Exception as exc:
                logger.warning(
                    "Recovery action %s for %s raised: %s", action.value, error.id, exc
                )
                result = RecoveryResult(False, action, str(exc))

        logger.info(
            "Recovery %s for %s (attempt %d/%d): %s",
            "succeeded" if result.success else "failed",
            error.id, error.retry_count, self._max_retries, result.message,
        )
        await self._event_bus.publish(
            EventType.RECOVERY_COMPLETED,
            {
                "error_id": error.id,
                "action": action.value,
                "attempt": error.retry_count,
                "success": result.success,
                "message": result.message,
            },
            source_id=error.connection_id,
        )
        if result.success:
            await self.resolve(error.id)
        return result

    async def _after_failed_attempt(self, error: NetworkError) -> None:
        if error.recovery_action is RecoveryAction.PROMPT_USER:
            return
        if error.retry_count < self._max_retries:
            self._schedule_retry(error)
        elif error.severity >= Severity.MEDIUM:
            await self._notify(error)

    def _schedule_retry(self, error: NetworkError) -> None:
        delay = self._retry_delay * (self._retry_backoff ** (error.retry_count - 1))
        self._retry_tasks[error.id] = asyncio.create_task(self._retry_later(error, delay))
        logger.debug("Retry %d for %s scheduled in %.1fs", error.retry_count + 1, error.id, delay)

    async def _retry_later(self, error: NetworkError, delay: float) -> None:
        await asyncio.sleep(delay)
        if error.resolved or error.id not in self._active:
            return
        try:
            result = await self.attempt_recovery(error)
            if not result.success:
                await self._after_failed_attempt(error)
        except Exception:
            logger.exception("Scheduled retry for %s failed", error.id)
        finally:
            if self._retry_tasks.get(error.id) is asyncio.current_task():
                del self._retry_tasks[error.id]

    async def resolve(self, error_id: str) -> bool:
        """Mark an active error resolved. Returns False if it is not active."""
        error = self._active.pop(error_id, None)
        if error is None:
            return False
        error.resolved = True
        self._cancel_retry(error_id)
        logger.info("Network error %s resolved", error_id)
        await self._event_bus.publish(
            EventType.ERROR_RESOLVED, error.to_dict(), source_id=error.connection_id
        )
        return True

    def _cancel_retry(self, error_id: str) -> None:
        task = self._retry_tasks.pop(error_id, None)
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    async def _notify(self, error: NetworkError) -> None:
        """Raise the intervention event, at most once per error."""
        if error.user_notified:
            return
        error.user_notified = True
        logger.warning("User intervention required for %s: %s", error.id, error.user_message)
        await self._event_bus.publish(
            EventType.USER_INTERVENTION_REQUIRED,
            error.to_dict(),
            source_id=error.connection_id,
        )

    # -- built-in actions -------------------------------------------------

    async def _clear_cache(self, error: NetworkError) -> RecoveryResult:
        for hook in self._cache_hooks:
            try:
                outcome = hook()
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception:
                logger.exception("Cache hook failed")
        return RecoveryResult(True, RecoveryAction.CLEAR_CACHE, "Caches cleared")

    async def _disable_feature(self, error: NetworkError) -> RecoveryResult:
        return RecoveryResult(True, RecoveryAction.DISABLE_FEATURE, "Feature disabled")

    async def _prompt_user(self, error: NetworkError) -> RecoveryResult:
        await self._notify(error)
        return RecoveryResult(False, RecoveryAction.PROMPT_USER, "User action required")

    # ------------------------------------------------------------------
    # Queries and housekeeping
    # ------------------------------------------------------------------

    def get_active_errors(self) -> list[NetworkError]:
        return list(self._active.values())

    def get_active_error(self, error_id: str) -> NetworkError | None:
        return self._active.get(error_id)

    def get_error_history(self) -> list[NetworkError]:
        return list(self._history)

    def clear_history(self) -> None:
        self._history.clear()

    async def sweep(self) -> int:
        """Evict notified active errors older than the staleness window."""
        cutoff = self._clock() - self._stale_after
        stale = [
            e for e in self._active.values()
            if e.user_notified and e.timestamp < cutoff
        ]
        for error in stale:
            del self._active[error.id]
            self._cancel_retry(error.id)
        if stale:
            logger.info("Evicted %d stale errors", len(stale))
        return len(stale)

    def statistics(self) -> dict[str, Any]:
        history = list(self._history)
        return {
            "total": len(history),
            "active": len(self._active),
            "resolved": sum(1 for e in history if e.resolved),
            "by_category": dict(Counter(e.category.value for e in history)),
            "by_severity": dict(Counter(e.severity.value for e in history)),
        }
