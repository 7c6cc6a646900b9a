"""Construction and lifecycle of the whole control plane.

Every component is built once here and handed to its consumers; nothing
is a module-level singleton.
"""

from __future__ import annotations

import logging
import pathlib
from dataclasses import dataclass

import aiosqlite

from netplane.authorization import (
    AuthorizationService,
    CachingAuthorizationService,
    PkcheckAuthorizationService,
    StaticAuthorizationService,
)
from netplane.backend.base import NetworkBackend
from netplane.backend.memory import InMemoryBackend
from netplane.backend.nmcli import NmcliBackend
from netplane.config import Settings
from netplane.connections.controller import ConnectionController
from netplane.db.schema import create_all_tables
from netplane.events.bus import EventBus
from netplane.events.log import EventLog
from netplane.profiles.evaluator import ProfileSwitchEvaluator
from netplane.profiles.models import ProfileApplier
from netplane.profiles.store import ProfileStore
from netplane.recovery.actions import install_controller_actions
from netplane.recovery.engine import RecoveryEngine
from netplane.store.base import ConfigStore
from netplane.store.sqlite import SqliteConfigStore

logger = logging.getLogger(__name__)


@dataclass
class ControlPlane:
    settings: Settings
    event_bus: EventBus
    backend: NetworkBackend
    recovery: RecoveryEngine
    profiles: ProfileStore
    evaluator: ProfileSwitchEvaluator
    controller: ConnectionController
    config_store: ConfigStore | None = None
    db: aiosqlite.Connection | None = None

    async def start(self) -> None:
        await self.profiles.load()
        await self.recovery.start()
        await self.controller.start()
        await self.evaluator.start()
        logger.info("Control plane started")

    async def stop(self) -> None:
        await self.evaluator.stop()
        await self.controller.stop()
        await self.recovery.stop()
        await self.event_bus.drain()
        if self.db is not None:
            await self.db.close()
        logger.info("Control plane stopped")


def create_backend(settings: Settings) -> NetworkBackend:
    if settings.backend.type == "memory":
        return InMemoryBackend()
    return NmcliBackend(
        nmcli_path=settings.backend.nmcli_path,
        timeout=settings.backend.command_timeout_seconds,
    )


def create_authorizer(settings: Settings) -> AuthorizationService:
    mode = settings.authorization.mode
    if mode == "static-allow":
        inner: AuthorizationService = StaticAuthorizationService(allow_all=True)
    elif mode == "static-deny":
        inner = StaticAuthorizationService(allow_all=False)
    else:
        inner = PkcheckAuthorizationService(settings.authorization.pkcheck_path)
    return CachingAuthorizationService(inner, ttl=settings.authorization.cache_ttl_seconds)


async def open_database(settings: Settings) -> aiosqlite.Connection | None:
    """Open the SQLite database, or return None if storage is off or unusable."""
    if not settings.store.enabled:
        return None
    try:
        pathlib.Path(settings.store.path).parent.mkdir(parents=True, exist_ok=True)
        db = await aiosqlite.connect(settings.store.path)
        await create_all_tables(db)
    except (OSError, aiosqlite.Error) as exc:
        logger.warning(
            "Config store unavailable at %s (%s); using in-memory state",
            settings.store.path, exc,
        )
        return None
    return db


def build_control_plane(
    settings: Settings,
    backend: NetworkBackend,
    config_store: ConfigStore | None = None,
    event_log: EventLog | None = None,
    authorizer: AuthorizationService | None = None,
    applier: ProfileApplier | None = None,
    db: aiosqlite.Connection | None = None,
) -> ControlPlane:
    """Wire every component together. Nothing is started."""
    event_bus = EventBus(event_log)
    rc = settings.recovery
    recovery = RecoveryEngine(
        event_bus,
        auto_recovery=rc.auto_recovery,
        max_retries=rc.max_retries,
        retry_delay=rc.retry_delay_seconds,
        retry_backoff=rc.retry_backoff,
        history_capacity=rc.history_capacity,
        sweep_interval=rc.sweep_interval_seconds,
        stale_after=rc.stale_after_seconds,
    )
    profiles = ProfileStore(config_store, event_bus)
    evaluator = ProfileSwitchEvaluator(
        profiles,
        event_bus,
        applier=applier,
        check_interval=settings.profiles.check_interval_seconds,
        auto_switch=settings.profiles.auto_switch,
        history_capacity=settings.profiles.history_capacity,
    )
    controller = ConnectionController(
        backend, event_bus, recovery, profiles, evaluator, authorizer=authorizer
    )
    install_controller_actions(recovery, controller)
    return ControlPlane(
        settings=settings,
        event_bus=event_bus,
        backend=backend,
        recovery=recovery,
        profiles=profiles,
        evaluator=evaluator,
        controller=controller,
        config_store=config_store,
        db=db,
    )


async def create_control_plane(settings: Settings) -> ControlPlane:
    """Build the production control plane described by *settings*."""
    db = await open_database(settings)
    config_store = SqliteConfigStore(db) if db is not None else None
    event_log = EventLog(db, max_events=settings.store.max_events) if db is not None else None
    return build_control_plane(
        settings,
        create_backend(settings),
        config_store=config_store,
        event_log=event_log,
        authorizer=create_authorizer(settings),
        db=db,
    )
