"""Integration tests for the profile store and the switch evaluator."""

from __future__ import annotations

import asyncio
import json
from datetime import datetime

import pytest

from netplane.events.bus import EventBus
from netplane.events.types import EventType
from netplane.exceptions import (
    DuplicateProfileName,
    InvalidConfiguration,
    ProfileApplyError,
    ProfileDisabled,
    ProfileInvalid,
    ProfileNotFound,
)
from netplane.profiles.applier import LoggingProfileApplier
from netplane.profiles.evaluator import REASON_AUTOMATIC, REASON_MANUAL, ProfileSwitchEvaluator
from netplane.profiles.store import ACTIVE_PROFILE_KEY, ProfileStore
from netplane.store.memory import MemoryConfigStore
from netplane.store.sqlite import SqliteConfigStore

# A Tuesday
TUESDAY_10AM = datetime(2026, 3, 3, 10, 0)
TUESDAY_11PM = datetime(2026, 3, 3, 23, 0)

WORK_HOURS = {"condition_type": "time-based", "time_start": "09:00", "time_end": "17:00"}
NIGHT = {"condition_type": "time-based", "time_start": "22:00", "time_end": "06:00"}


class Clock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


class FailingApplier(LoggingProfileApplier):
    async def apply_dns(self, dns) -> None:
        raise OSError("resolv.conf is read-only")


@pytest.fixture
def bus() -> EventBus:
    return EventBus()


@pytest.fixture
def config_store() -> MemoryConfigStore:
    return MemoryConfigStore()


@pytest.fixture
def store(config_store, bus) -> ProfileStore:
    return ProfileStore(config_store, bus)


@pytest.fixture
def clock() -> Clock:
    return Clock(TUESDAY_10AM)


@pytest.fixture
def applier() -> LoggingProfileApplier:
    return LoggingProfileApplier()


@pytest.fixture
def evaluator(store, bus, applier, clock) -> ProfileSwitchEvaluator:
    return ProfileSwitchEvaluator(store, bus, applier=applier, auto_switch=False, clock=clock)


# ---------------------------------------------------------------------------
# ProfileStore
# ---------------------------------------------------------------------------

class TestProfileStore:
    @pytest.mark.asyncio
    async def test_create_and_get(self, store: ProfileStore) -> None:
        profile = await store.create("Office", priority=10, dns={"custom_dns": True, "servers": ["10.0.0.53"]})
        assert store.get(profile.id) is profile
        assert store.get_by_name("Office") is profile
        assert profile.dns.servers == ["10.0.0.53"]
        assert profile.is_active is False

    @pytest.mark.asyncio
    async def test_duplicate_name_rejected(self, store: ProfileStore) -> None:
        await store.create("Office")
        with pytest.raises(DuplicateProfileName):
            await store.create("Office")

    @pytest.mark.asyncio
    async def test_protected_and_invalid_fields_rejected(self, store: ProfileStore) -> None:
        with pytest.raises(InvalidConfiguration):
            await store.create("Office", is_active=True)
        with pytest.raises(InvalidConfiguration):
            await store.create("Office", activation={"time_start": "25:00"})
        assert store.list_profiles() == []

    @pytest.mark.asyncio
    async def test_list_orders_by_priority_then_name(self, store: ProfileStore) -> None:
        await store.create("b-normal")
        await store.create("a-normal")
        await store.create("high", priority=10)
        assert [p.name for p in store.list_profiles()] == ["high", "a-normal", "b-normal"]

    @pytest.mark.asyncio
    async def test_update_bumps_modified_time(self, store: ProfileStore) -> None:
        profile = await store.create("Office")
        before = profile.modified_at
        updated = await store.update(profile.id, {"description": "HQ", "priority": 10})
        assert updated.description == "HQ"
        assert updated.priority == 10
        assert updated.modified_at >= before

    @pytest.mark.asyncio
    async def test_update_rejects_unknown_protected_and_duplicate(self, store: ProfileStore) -> None:
        await store.create("Home")
        profile = await store.create("Office")
        with pytest.raises(InvalidConfiguration):
            await store.update(profile.id, {"colour": "blue"})
        with pytest.raises(InvalidConfiguration):
            await store.update(profile.id, {"id": "other"})
        with pytest.raises(DuplicateProfileName):
            await store.update(profile.id, {"name": "Home"})
        assert profile.name == "Office"

    @pytest.mark.asyncio
    async def test_delete_unknown_raises(self, store: ProfileStore) -> None:
        with pytest.raises(ProfileNotFound):
            await store.delete("missing")

    @pytest.mark.asyncio
    async def test_duplicate_names_copies(self, store: ProfileStore) -> None:
        original = await store.create("Office", priority=10)
        first = await store.duplicate(original.id)
        second = await store.duplicate(original.id)
        assert first.name == "Office (Copy)"
        assert second.name == "Office (Copy 2)"
        assert first.id != original.id
        assert first.priority == 10

    @pytest.mark.asyncio
    async def test_export_import_roundtrip_gets_fresh_identity(self, store: ProfileStore) -> None:
        original = await store.create("Office", proxy={
            "enabled": True, "http_host": "proxy.corp", "http_port": 3128,
        })
        exported = store.export_profile(original.id)
        assert "is_active" not in json.loads(exported)

        imported = await store.import_profile(exported)
        assert imported.id != original.id
        assert imported.name == "Office 2"
        assert imported.proxy.http_host == "proxy.corp"

    @pytest.mark.asyncio
    async def test_import_rejects_garbage(self, store: ProfileStore) -> None:
        with pytest.raises(InvalidConfiguration):
            await store.import_profile(b"{not json")

    @pytest.mark.asyncio
    async def test_mutations_publish_events(self, store: ProfileStore, bus: EventBus) -> None:
        seen: list[str] = []

        async def record(event: dict) -> None:
            seen.append(event["event_type"])

        bus.subscribe(["*"], record)
        profile = await store.create("Office")
        await store.update(profile.id, {"priority": 10})
        await store.delete(profile.id)
        await asyncio.sleep(0.05)
        assert seen == [
            EventType.PROFILE_CREATED,
            EventType.PROFILE_UPDATED,
            EventType.PROFILE_DELETED,
        ]


class TestProfilePersistence:
    @pytest.mark.asyncio
    async def test_profiles_survive_reload(self, config_store, bus) -> None:
        store = ProfileStore(config_store, bus)
        profile = await store.create("Office", priority=10)

        reloaded = ProfileStore(config_store, bus)
        assert await reloaded.load() == 1
        assert reloaded.get(profile.id).priority == 10

    @pytest.mark.asyncio
    async def test_unreadable_data_is_ignored(self, config_store, bus) -> None:
        await config_store.save("profiles", b"garbage")
        store = ProfileStore(config_store, bus)
        assert await store.load() == 0

    @pytest.mark.asyncio
    async def test_sqlite_store_persists_profiles_and_active_id(self, db, bus) -> None:
        sqlite_store = SqliteConfigStore(db)
        store = ProfileStore(sqlite_store, bus)
        profile = await store.create("Office")
        await store.save_active_id(profile.id)

        reloaded = ProfileStore(sqlite_store, bus)
        await reloaded.load()
        assert reloaded.get(profile.id).name == "Office"
        assert await reloaded.load_active_id() == profile.id

        await reloaded.save_active_id(None)
        assert await sqlite_store.load(ACTIVE_PROFILE_KEY) is None

    @pytest.mark.asyncio
    async def test_store_without_persistence(self, bus) -> None:
        store = ProfileStore(None, bus)
        await store.create("Office")
        assert await store.load() == 0
        assert await store.load_active_id() is None


# ---------------------------------------------------------------------------
# ProfileSwitchEvaluator
# ---------------------------------------------------------------------------

class TestManualActivation:
    @pytest.mark.asyncio
    async def test_activate_applies_and_records_switch(self, store, evaluator, applier) -> None:
        profile = await store.create("Office", dns={"custom_dns": True, "servers": ["10.0.0.53"]})
        await evaluator.activate_profile(profile.id)

        assert evaluator.active_profile is profile
        assert profile.is_active is True
        assert profile.last_activated is not None
        assert applier.dns is profile.dns
        assert await store.load_active_id() == profile.id
        history = evaluator.get_switch_history()
        assert len(history) == 1
        assert history[0].reason == REASON_MANUAL
        assert history[0].previous_profile_id is None

    @pytest.mark.asyncio
    async def test_exactly_one_active_profile(self, store, evaluator) -> None:
        first = await store.create("Home")
        second = await store.create("Office")
        await evaluator.activate_profile(first.id)
        await evaluator.activate_profile(second.id)

        assert [p.name for p in store.list_profiles() if p.is_active] == ["Office"]
        assert evaluator.get_switch_history()[-1].previous_profile_name == "Home"

    @pytest.mark.asyncio
    async def test_disabled_or_invalid_profile_leaves_state_untouched(self, store, evaluator) -> None:
        current = await store.create("Home")
        disabled = await store.create("Off", enabled=False)
        invalid = await store.create("Broken", dns={"custom_dns": True, "servers": []})
        await evaluator.activate_profile(current.id)

        with pytest.raises(ProfileDisabled):
            await evaluator.activate_profile(disabled.id)
        with pytest.raises(ProfileInvalid) as exc_info:
            await evaluator.activate_profile(invalid.id)

        assert exc_info.value.problems == ["Custom DNS enabled without servers"]
        assert evaluator.active_profile is current
        assert len(evaluator.get_switch_history()) == 1

    @pytest.mark.asyncio
    async def test_apply_failure_keeps_previous_profile(self, store, bus, clock) -> None:
        evaluator = ProfileSwitchEvaluator(
            store, bus, applier=FailingApplier(), auto_switch=False, clock=clock
        )
        current = await store.create("Home")
        target = await store.create("Office", dns={"custom_dns": True, "servers": ["10.0.0.53"]})
        await evaluator.activate_profile(current.id)

        with pytest.raises(ProfileApplyError):
            await evaluator.activate_profile(target.id)

        assert evaluator.active_profile is current
        assert current.is_active is True
        assert target.is_active is False

    @pytest.mark.asyncio
    async def test_deactivate(self, store, evaluator, bus) -> None:
        seen: list[dict] = []

        async def record(event: dict) -> None:
            seen.append(event)

        bus.subscribe([EventType.PROFILE_DEACTIVATED], record)
        profile = await store.create("Office")
        await evaluator.activate_profile(profile.id)

        assert await evaluator.deactivate_profile() is profile
        assert await evaluator.deactivate_profile() is None
        await asyncio.sleep(0.05)
        assert evaluator.active_profile is None
        assert profile.is_active is False
        assert await store.load_active_id() is None
        assert len(seen) == 1

    @pytest.mark.asyncio
    async def test_clear_switch_history(self, store, evaluator) -> None:
        profile = await store.create("Office")
        await evaluator.activate_profile(profile.id)
        evaluator.clear_switch_history()
        assert evaluator.get_switch_history() == []


class TestAutomaticSwitching:
    @pytest.mark.asyncio
    async def test_switches_to_matching_profile(self, store, evaluator) -> None:
        work = await store.create("Work", activation=WORK_HOURS)
        event = await evaluator.check_automatic_switching()
        assert event is not None
        assert event.new_profile_id == work.id
        assert event.reason == REASON_AUTOMATIC

    @pytest.mark.asyncio
    async def test_manual_profiles_never_match(self, store, evaluator) -> None:
        await store.create("Manual", priority=15)
        assert await evaluator.check_automatic_switching() is None

    @pytest.mark.asyncio
    async def test_strictly_higher_priority_required(self, store, evaluator) -> None:
        await store.create("Work", activation=WORK_HOURS)
        await store.create("Always", activation={**WORK_HOURS, "time_start": "00:00", "time_end": "23:59"})
        await evaluator.check_automatic_switching()
        first = evaluator.active_profile

        # Equal priority never displaces the active profile
        assert await evaluator.check_automatic_switching() is None
        assert evaluator.active_profile is first

        urgent = await store.create("Urgent", priority=15, activation=WORK_HOURS)
        event = await evaluator.check_automatic_switching()
        assert event is not None
        assert evaluator.active_profile is urgent

    @pytest.mark.asyncio
    async def test_equal_priority_tie_breaks_by_name(self, store, evaluator) -> None:
        await store.create("Zeta", activation=WORK_HOURS)
        alpha = await store.create("Alpha", activation=WORK_HOURS)
        await evaluator.check_automatic_switching()
        assert evaluator.active_profile is alpha

    @pytest.mark.asyncio
    async def test_window_wrapping_midnight(self, store, evaluator, clock) -> None:
        night = await store.create("Night", activation=NIGHT)
        assert await evaluator.check_automatic_switching() is None
        clock.now = TUESDAY_11PM
        await evaluator.check_automatic_switching()
        assert evaluator.active_profile is night

    @pytest.mark.asyncio
    async def test_disabled_and_invalid_profiles_skipped(self, store, evaluator) -> None:
        await store.create("Off", priority=15, enabled=False, activation=WORK_HOURS)
        await store.create(
            "Broken", priority=15, activation=WORK_HOURS,
            proxy={"enabled": True},
        )
        fallback = await store.create("Work", activation=WORK_HOURS)
        await evaluator.check_automatic_switching()
        assert evaluator.active_profile is fallback

    @pytest.mark.asyncio
    async def test_apply_failure_is_not_raised(self, store, bus, clock) -> None:
        evaluator = ProfileSwitchEvaluator(
            store, bus, applier=FailingApplier(), auto_switch=False, clock=clock
        )
        await store.create(
            "Work", activation=WORK_HOURS, dns={"custom_dns": True, "servers": ["10.0.0.53"]}
        )
        assert await evaluator.check_automatic_switching() is None
        assert evaluator.active_profile is None

    @pytest.mark.asyncio
    async def test_periodic_loop_switches(self, store, bus, clock) -> None:
        work = await store.create("Work", activation=WORK_HOURS)
        evaluator = ProfileSwitchEvaluator(
            store, bus, auto_switch=True, check_interval=3600, clock=clock
        )
        await evaluator.start()
        try:
            await asyncio.sleep(0.05)
            assert evaluator.is_running
            assert evaluator.active_profile is work
        finally:
            await evaluator.stop()
        assert not evaluator.is_running


class TestRestoreActive:
    @pytest.mark.asyncio
    async def test_restores_persisted_profile(self, config_store, bus, clock) -> None:
        store = ProfileStore(config_store, bus)
        profile = await store.create("Office")
        await store.save_active_id(profile.id)

        reloaded = ProfileStore(config_store, bus)
        await reloaded.load()
        evaluator = ProfileSwitchEvaluator(reloaded, bus, auto_switch=False, clock=clock)
        restored = await evaluator.restore_active()

        assert restored is not None
        assert restored.id == profile.id
        assert restored.is_active is True

    @pytest.mark.asyncio
    async def test_disabled_profile_is_not_restored(self, config_store, bus, clock) -> None:
        store = ProfileStore(config_store, bus)
        profile = await store.create("Office", enabled=False)
        await store.save_active_id(profile.id)

        evaluator = ProfileSwitchEvaluator(store, bus, auto_switch=False, clock=clock)
        assert await evaluator.restore_active() is None
        assert await store.load_active_id() is None
