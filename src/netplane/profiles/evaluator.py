"""Profile switch evaluator.

Owns which profile is active. Activation conditions are evaluated on a
fixed cadence and whenever the network state changes; the best matching
profile only replaces the active one when its priority is strictly higher,
so equal-priority profiles never flip back and forth.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable

from netplane.events.bus import EventBus
from netplane.events.types import EventType
from netplane.exceptions import ProfileApplyError, ProfileDisabled, ProfileInvalid
from netplane.profiles.applier import LoggingProfileApplier
from netplane.profiles.models import Profile, ProfileApplier
from netplane.profiles.store import ProfileStore

logger = logging.getLogger(__name__)

REASON_AUTOMATIC = "automatic condition match"
REASON_MANUAL = "manual activation"


def _local_now() -> datetime:
    return datetime.now().astimezone()


@dataclass(frozen=True)
class ProfileSwitchEvent:
    previous_profile_id: str | None
    previous_profile_name: str | None
    new_profile_id: str
    new_profile_name: str
    reason: str
    timestamp: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "previous_profile_id": self.previous_profile_id,
            "previous_profile_name": self.previous_profile_name,
            "new_profile_id": self.new_profile_id,
            "new_profile_name": self.new_profile_name,
            "reason": self.reason,
            "timestamp": self.timestamp.isoformat(),
        }


class ProfileSwitchEvaluator:
    """Decides and performs profile switches.

    Parameters
    ----------
    store:
        The profile set.
    event_bus:
        Bus for switch events; also the source of network-state triggers.
    applier:
        Applies profile settings to the host. Defaults to logging only.
    check_interval:
        Seconds between automatic evaluations.
    auto_switch:
        Whether the periodic evaluation runs at all.
    history_capacity:
        Number of switch events kept.
    clock:
        Returns the current local time; used for time-based conditions.
    """

    def __init__(
        self,
        store: ProfileStore,
        event_bus: EventBus,
        applier: ProfileApplier | None = None,
        check_interval: float = 30.0,
        auto_switch: bool = True,
        history_capacity: int = 100,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._store = store
        self._event_bus = event_bus
        self._applier = applier or LoggingProfileApplier()
        self._check_interval = check_interval
        self._auto_switch = auto_switch
        self._clock = clock or _local_now
        self._history: deque[ProfileSwitchEvent] = deque(maxlen=history_capacity)
        self._active_id: str | None = None
        self._lock = asyncio.Lock()

        self._task: asyncio.Task[None] | None = None
        self._shutdown = asyncio.Event()
        self._trigger = asyncio.Event()
        self._subscription = None

    @property
    def active_profile(self) -> Profile | None:
        return self._store.find(self._active_id)

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Restore the persisted active profile and start evaluating."""
        await self.restore_active()
        if not self._auto_switch:
            logger.info("Automatic profile switching disabled")
            return
        self._shutdown.clear()
        self._subscription = self._event_bus.subscribe(
            [EventType.CONNECTION_STATE_CHANGED, EventType.BACKEND_AVAILABILITY_CHANGED],
            self._on_network_state_changed,
        )
        self._task = asyncio.create_task(self._run_loop())
        logger.info("Profile evaluator started (interval=%.0fs)", self._check_interval)

    async def stop(self) -> None:
        self._shutdown.set()
        if self._subscription is not None:
            self._event_bus.unsubscribe(self._subscription)
            self._subscription = None
        if self._task is not None:
            try:
                await asyncio.wait_for(self._task, timeout=10)
            except (asyncio.TimeoutError, asyncio.CancelledError):
                pass
            self._task = None
        logger.info("Profile evaluator stopped")

    async def restore_active(self) -> Profile | None:
        """Re-activate the persisted active profile if it is still usable."""
        profile_id = await self._store.load_active_id()
        profile = self._store.find(profile_id)
        if profile is None:
            return None
        if not profile.enabled or not profile.is_valid():
            logger.info("Not restoring profile %s: disabled or invalid", profile.name)
            await self._store.save_active_id(None)
            return None
        try:
            await profile.apply(self._applier)
        except Exception:
            logger.exception("Failed to re-apply profile %s", profile.name)
            return None
        profile.is_active = True
        self._active_id = profile.id
        logger.info("Restored active profile %s", profile.name)
        return profile

    async def _on_network_state_changed(self, event: dict) -> None:
        self._trigger.set()

    async def _run_loop(self) -> None:
        while not self._shutdown.is_set():
            try:
                await self.check_automatic_switching()
            except Exception:
                logger.exception("Profile evaluation failed")

            waiters = [
                asyncio.create_task(self._shutdown.wait()),
                asyncio.create_task(self._trigger.wait()),
            ]
            _, pending = await asyncio.wait(
                waiters,
                timeout=self._check_interval,
                return_when=asyncio.FIRST_COMPLETED,
            )
            for task in pending:
                task.cancel()
            self._trigger.clear()

    # ------------------------------------------------------------------
    # Switching
    # ------------------------------------------------------------------

    async def activate_profile(self, profile_id: str) -> Profile:
        """Manually activate a profile.

        Raises ProfileNotFound, ProfileDisabled or ProfileInvalid without
        touching the current active profile, or ProfileApplyError if the
        settings could not be applied.
        """
        async with self._lock:
            profile = self._store.get(profile_id)
            if not profile.enabled:
                raise ProfileDisabled(profile_id)
            problems = profile.validation_problems()
            if problems:
                raise ProfileInvalid(profile_id, problems)
            if profile.id == self._active_id:
                return profile
            await self._switch_to(profile, REASON_MANUAL)
            return profile

    async def deactivate_profile(self) -> Profile | None:
        """Clear the active profile. Returns the profile that was active."""
        async with self._lock:
            profile = self.active_profile
            if profile is None:
                return None
            profile.is_active = False
            self._active_id = None
            await self._store.save_active_id(None)
            await self._event_bus.publish(
                EventType.PROFILE_DEACTIVATED,
                {"profile_id": profile.id, "name": profile.name},
                source_id=profile.id,
            )
            logger.info("Deactivated profile %s", profile.name)
            return profile

    async def check_automatic_switching(self) -> ProfileSwitchEvent | None:
        """Switch to the best matching profile if it beats the active one."""
        async with self._lock:
            now = self._clock()
            candidates = [
                p for p in self._store.list_profiles()
                if p.enabled and p.is_valid() and p.activation.matches(now)
            ]
            if not candidates:
                return None
            best = candidates[0]
            active = self.active_profile
            if active is not None and best.priority <= active.priority:
                return None
            try:
                return await self._switch_to(best, REASON_AUTOMATIC)
            except ProfileApplyError as exc:
                logger.warning("Automatic switch to %s failed: %s", best.name, exc)
                return None

    async def _switch_to(self, profile: Profile, reason: str) -> ProfileSwitchEvent:
        previous = self.active_profile
        if previous is not None:
            previous.is_active = False
        try:
            await profile.apply(self._applier)
        except Exception as exc:
            if previous is not None:
                previous.is_active = True
            raise ProfileApplyError(f"Failed to apply profile {profile.name}: {exc}") from exc

        profile.is_active = True
        profile.last_activated = datetime.now(timezone.utc)
        self._active_id = profile.id
        await self._store.save_active_id(profile.id)
        await self._store.save()

        event = ProfileSwitchEvent(
            previous_profile_id=previous.id if previous else None,
            previous_profile_name=previous.name if previous else None,
            new_profile_id=profile.id,
            new_profile_name=profile.name,
            reason=reason,
            timestamp=datetime.now(timezone.utc),
        )
        self._history.append(event)
        logger.info(
            "Switched profile %s -> %s (%s)",
            previous.name if previous else "none", profile.name, reason,
        )
        await self._event_bus.publish(
            EventType.PROFILE_SWITCHED, event.to_dict(), source_id=profile.id
        )
        return event

    def get_switch_history(self) -> list[ProfileSwitchEvent]:
        return list(self._history)

    def clear_switch_history(self) -> None:
        self._history.clear()
