# tests/integration/conftest.py
import aiosqlite
import pytest
import pytest_asyncio

from netplane.authorization import StaticAuthorizationService
from netplane.backend.memory import InMemoryBackend
from netplane.config import ProfilesConfig, RecoveryConfig, Settings
from netplane.connections.models import (
    ConnectionKind,
    ConnectionRecord,
    Device,
    DeviceState,
    SecurityLevel,
)
from netplane.db.schema import create_all_tables
from netplane.events.bus import EventBus
from netplane.events.log import EventLog
from netplane.store.memory import MemoryConfigStore
from netplane.service import build_control_plane


@pytest_asyncio.fixture
async def db():
    """Create an in-memory SQLite database with full schema."""
    conn = await aiosqlite.connect(":memory:")
    await create_all_tables(conn)
    yield conn
    await conn.close()


@pytest.fixture
def event_bus(db):
    """Create a real EventBus backed by the test database."""
    return EventBus(EventLog(db))


def make_devices() -> list[Device]:
    return [
        Device(name="wlan0", kind=ConnectionKind.WIFI, state=DeviceState.DISCONNECTED),
        Device(
            name="eth0", kind=ConnectionKind.ETHERNET,
            state=DeviceState.DISCONNECTED, carrier=True,
        ),
        Device(name="wwan0", kind=ConnectionKind.MOBILE, state=DeviceState.DISCONNECTED),
    ]


def make_records() -> list[ConnectionRecord]:
    return [
        ConnectionRecord(
            id="wifi:Home", name="Home", kind=ConnectionKind.WIFI,
            security=SecurityLevel.SECURE,
            config={"ssid": "Home", "security": "wpa2-psk", "saved": True},
        ),
        ConnectionRecord(
            id="wifi:Cafe", name="Cafe", kind=ConnectionKind.WIFI,
            security=SecurityLevel.INSECURE,
            config={"ssid": "Cafe", "security": "none"},
        ),
        ConnectionRecord(
            id="wifi:Corp", name="Corp", kind=ConnectionKind.WIFI,
            security=SecurityLevel.SECURE,
            config={"ssid": "Corp", "security": "wpa2-enterprise", "saved": True},
        ),
        ConnectionRecord(id="eth:Wired", name="Wired", kind=ConnectionKind.ETHERNET),
        ConnectionRecord(id="vpn:Office", name="Office", kind=ConnectionKind.VPN),
        ConnectionRecord(
            id="mobile:Carrier", name="Carrier", kind=ConnectionKind.MOBILE,
            config={"apn": "internet"},
        ),
        ConnectionRecord(
            id="hotspot:Share", name="Share", kind=ConnectionKind.HOTSPOT,
            config={"ssid": "Share", "password": "sharepass1"},
        ),
    ]


@pytest.fixture
def make_backend():
    """Factory for scriptable backends with the standard devices and records."""

    def _make(**kwargs):
        return InMemoryBackend(devices=make_devices(), records=make_records(), **kwargs)

    return _make


@pytest.fixture
def backend(make_backend):
    """A scriptable backend with one device per kind and a record per kind."""
    return make_backend()


@pytest.fixture
def authorizer():
    return StaticAuthorizationService(allow_all=True)


@pytest_asyncio.fixture
async def make_plane(authorizer):
    """Factory that builds and starts a control plane; all are stopped at teardown."""
    started = []

    async def _make(
        backend,
        *,
        auto_recovery=True,
        max_retries=3,
        auto_switch=False,
        config_store=None,
        event_log=None,
        applier=None,
        authz=None,
    ):
        settings = Settings(
            recovery=RecoveryConfig(
                auto_recovery=auto_recovery,
                max_retries=max_retries,
                retry_delay_seconds=0.0,
            ),
            profiles=ProfilesConfig(auto_switch=auto_switch, check_interval_seconds=3600),
        )
        plane = build_control_plane(
            settings,
            backend,
            config_store=config_store if config_store is not None else MemoryConfigStore(),
            event_log=event_log,
            authorizer=authz or authorizer,
            applier=applier,
        )
        await plane.start()
        started.append(plane)
        return plane

    yield _make

    for plane in reversed(started):
        await plane.stop()


@pytest_asyncio.fixture
async def plane(make_plane, backend):
    """A started control plane with automatic recovery switched off."""
    return await make_plane(backend, auto_recovery=False)


@pytest_asyncio.fixture
async def recording(plane):
    """Collect every event published on the plane's bus."""
    events = []

    async def _record(event):
        events.append(event)

    sub = plane.event_bus.subscribe(["*"], _record)
    yield events
    plane.event_bus.unsubscribe(sub)
