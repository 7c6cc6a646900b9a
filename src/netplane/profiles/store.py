"""Profile storage: CRUD, duplication, import/export and persistence.

Profiles live in memory and are written through to the config store (when
one is configured) as a JSON list under the ``profiles`` key. The id of
the active profile is stored separately under ``profiles.active``; the
active flag itself is only ever changed by the switch evaluator.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from pydantic import TypeAdapter, ValidationError

from netplane.events.bus import EventBus
from netplane.events.types import EventType
from netplane.exceptions import DuplicateProfileName, InvalidConfiguration, ProfileNotFound
from netplane.profiles.models import Profile
from netplane.store.base import ConfigStore

logger = logging.getLogger(__name__)

PROFILES_KEY = "profiles"
ACTIVE_PROFILE_KEY = "profiles.active"

# Owned by the store or the evaluator, never by callers
_PROTECTED_FIELDS = frozenset(
    {"id", "is_active", "created_at", "modified_at", "last_activated"}
)

_PROFILE_LIST = TypeAdapter(list[Profile])


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _problems(exc: ValidationError) -> list[str]:
    return [
        f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in exc.errors()
    ]


class ProfileStore:
    """Holds the profile set.

    Parameters
    ----------
    config_store:
        Persistence backend, or ``None`` to keep profiles in memory only.
    event_bus:
        Bus for profile created/updated/deleted events, or ``None``.
    """

    def __init__(
        self,
        config_store: ConfigStore | None = None,
        event_bus: EventBus | None = None,
    ) -> None:
        self._config_store = config_store
        self._event_bus = event_bus
        self._profiles: dict[str, Profile] = {}

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    async def load(self) -> int:
        """Load profiles from the config store. Returns the number loaded.

        Missing or unreadable data leaves the store empty.
        """
        if self._config_store is None:
            return 0
        raw = await self._config_store.load(PROFILES_KEY)
        if raw is None:
            return 0
        try:
            profiles = _PROFILE_LIST.validate_json(raw)
        except ValidationError as exc:
            logger.warning("Ignoring unreadable stored profiles: %s", exc)
            return 0

        self._profiles.clear()
        for profile in profiles:
            if self.get_by_name(profile.name) is not None:
                logger.warning("Skipping stored profile with duplicate name %r", profile.name)
                continue
            profile.is_active = False
            self._profiles[profile.id] = profile
        logger.info("Loaded %d profiles", len(self._profiles))
        return len(self._profiles)

    async def save(self) -> None:
        if self._config_store is None:
            return
        data = json.dumps(
            [p.model_dump(mode="json") for p in self._profiles.values()]
        ).encode()
        await self._config_store.save(PROFILES_KEY, data)

    async def load_active_id(self) -> str | None:
        if self._config_store is None:
            return None
        raw = await self._config_store.load(ACTIVE_PROFILE_KEY)
        return raw.decode() if raw else None

    async def save_active_id(self, profile_id: str | None) -> None:
        if self._config_store is None:
            return
        if profile_id is None:
            await self._config_store.delete(ACTIVE_PROFILE_KEY)
        else:
            await self._config_store.save(ACTIVE_PROFILE_KEY, profile_id.encode())

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def list_profiles(self) -> list[Profile]:
        """All profiles, highest priority first, then by name."""
        return sorted(self._profiles.values(), key=lambda p: (-p.priority, p.name))

    def find(self, profile_id: str | None) -> Profile | None:
        if profile_id is None:
            return None
        return self._profiles.get(profile_id)

    def get(self, profile_id: str) -> Profile:
        profile = self._profiles.get(profile_id)
        if profile is None:
            raise ProfileNotFound(profile_id)
        return profile

    def get_by_name(self, name: str) -> Profile | None:
        for profile in self._profiles.values():
            if profile.name == name:
                return profile
        return None

    def unique_name(self, base: str) -> str:
        if self.get_by_name(base) is None:
            return base
        n = 2
        while self.get_by_name(f"{base} {n}") is not None:
            n += 1
        return f"{base} {n}"

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    async def create(self, name: str, **fields: Any) -> Profile:
        """Create a profile. Raises DuplicateProfileName or InvalidConfiguration."""
        protected = _PROTECTED_FIELDS & fields.keys()
        if protected:
            raise InvalidConfiguration([f"Field {f} cannot be set" for f in sorted(protected)])
        if self.get_by_name(name) is not None:
            raise DuplicateProfileName(name)
        try:
            profile = Profile(name=name, **fields)
        except ValidationError as exc:
            raise InvalidConfiguration(_problems(exc)) from exc
        await self._add(profile, EventType.PROFILE_CREATED)
        return profile

    def validate_update(self, profile_id: str, changes: dict[str, Any]) -> Profile:
        """Check *changes* without applying them; returns the would-be profile.

        Raises ProfileNotFound, DuplicateProfileName or InvalidConfiguration.
        """
        profile = self.get(profile_id)
        protected = _PROTECTED_FIELDS & changes.keys()
        if protected:
            raise InvalidConfiguration([f"Field {f} cannot be changed" for f in sorted(protected)])
        unknown = changes.keys() - Profile.model_fields.keys()
        if unknown:
            raise InvalidConfiguration([f"Unknown field {f}" for f in sorted(unknown)])
        new_name = changes.get("name")
        if new_name is not None and new_name != profile.name:
            if self.get_by_name(new_name) is not None:
                raise DuplicateProfileName(new_name)
        try:
            return Profile.model_validate({**profile.model_dump(), **changes})
        except ValidationError as exc:
            raise InvalidConfiguration(_problems(exc)) from exc

    async def update(self, profile_id: str, changes: dict[str, Any]) -> Profile:
        """Apply *changes* to a profile in place and bump its modified time."""
        candidate = self.validate_update(profile_id, changes)
        profile = self.get(profile_id)
        for field_name in changes:
            setattr(profile, field_name, getattr(candidate, field_name))
        profile.modified_at = _utcnow()

        await self.save()
        await self._publish(EventType.PROFILE_UPDATED, profile)
        return profile

    async def delete(self, profile_id: str) -> Profile:
        """Remove a profile. Callers deactivate it first if it is active."""
        profile = self._profiles.pop(profile_id, None)
        if profile is None:
            raise ProfileNotFound(profile_id)
        await self.save()
        await self._publish(EventType.PROFILE_DELETED, profile)
        logger.info("Deleted profile %s (%s)", profile.name, profile.id)
        return profile

    async def duplicate(self, profile_id: str) -> Profile:
        """Copy a profile under a fresh id and a unique "(Copy)" name."""
        original = self.get(profile_id)
        base = f"{original.name} (Copy)"
        name = base
        n = 2
        while self.get_by_name(name) is not None:
            name = f"{original.name} (Copy {n})"
            n += 1
        now = _utcnow()
        copy = original.model_copy(
            deep=True,
            update={
                "id": uuid4().hex,
                "name": name,
                "is_active": False,
                "created_at": now,
                "modified_at": now,
                "last_activated": None,
            },
        )
        await self._add(copy, EventType.PROFILE_CREATED)
        return copy

    def export_profile(self, profile_id: str) -> str:
        """Serialize a profile to JSON, without its runtime state."""
        return self.get(profile_id).model_dump_json(
            indent=2, exclude={"is_active", "last_activated"}
        )

    async def import_profile(self, data: str | bytes) -> Profile:
        """Create a profile from exported JSON under a fresh id and unique name."""
        try:
            imported = Profile.model_validate_json(data)
        except ValidationError as exc:
            raise InvalidConfiguration(_problems(exc)) from exc
        now = _utcnow()
        profile = imported.model_copy(
            update={
                "id": uuid4().hex,
                "name": self.unique_name(imported.name),
                "is_active": False,
                "created_at": now,
                "modified_at": now,
                "last_activated": None,
            },
        )
        await self._add(profile, EventType.PROFILE_CREATED)
        return profile

    async def _add(self, profile: Profile, event_type: str) -> None:
        self._profiles[profile.id] = profile
        await self.save()
        await self._publish(event_type, profile)
        logger.info("Added profile %s (%s)", profile.name, profile.id)

    async def _publish(self, event_type: str, profile: Profile) -> None:
        if self._event_bus is None:
            return
        await self._event_bus.publish(
            event_type,
            {"profile_id": profile.id, "name": profile.name, "priority": profile.priority},
            source_id=profile.id,
        )
