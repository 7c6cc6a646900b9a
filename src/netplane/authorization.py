"""Authorization service abstraction.

Gates operations that need elevated privilege (enterprise WiFi, mobile
roaming, connection sharing). The production implementation asks polkit
through ``pkcheck``; results are cached for a bounded TTL so repeated
connects do not re-prompt.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import os
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass

logger = logging.getLogger(__name__)


class PolkitAction:
    """Namespace for the polkit action ids the controller checks."""

    NETWORK_CONTROL = "org.freedesktop.NetworkManager.network-control"
    SETTINGS_MODIFY_SYSTEM = "org.freedesktop.NetworkManager.settings.modify.system"
    WIFI_SHARE_PROTECTED = "org.freedesktop.NetworkManager.wifi.share.protected"
    WIFI_SHARE_OPEN = "org.freedesktop.NetworkManager.wifi.share.open"


class AuthorizationResult(str, enum.Enum):
    AUTHORIZED = "authorized"
    CHALLENGE = "challenge"
    DENIED = "denied"
    UNHANDLED = "unhandled"


class AuthorizationService(ABC):
    """Abstract authorization check."""

    @abstractmethod
    async def check_authorization(
        self, action_id: str, allow_interactive: bool = True
    ) -> AuthorizationResult:
        """Return whether the calling user may perform *action_id*."""


class StaticAuthorizationService(AuthorizationService):
    """Answers from a fixed policy. Used for development and tests.

    Parameters
    ----------
    allow_all:
        Authorize every action not listed in *denied*.
    granted:
        Actions authorized when *allow_all* is false.
    denied:
        Actions always denied.
    """

    def __init__(
        self,
        allow_all: bool = True,
        granted: set[str] | None = None,
        denied: set[str] | None = None,
    ) -> None:
        self._allow_all = allow_all
        self._granted = set(granted or ())
        self._denied = set(denied or ())
        self.checks: list[str] = []

    async def check_authorization(
        self, action_id: str, allow_interactive: bool = True
    ) -> AuthorizationResult:
        self.checks.append(action_id)
        if action_id in self._denied:
            return AuthorizationResult.DENIED
        if self._allow_all or action_id in self._granted:
            return AuthorizationResult.AUTHORIZED
        return AuthorizationResult.DENIED


# pkcheck(1) exit statuses
_PKCHECK_RESULTS: dict[int, AuthorizationResult] = {
    0: AuthorizationResult.AUTHORIZED,
    1: AuthorizationResult.DENIED,
    2: AuthorizationResult.CHALLENGE,
    3: AuthorizationResult.DENIED,
}


class PkcheckAuthorizationService(AuthorizationService):
    """Checks polkit authorization for this process via ``pkcheck``.

    Uses asyncio.create_subprocess_exec (not shell); the action id is
    passed as a single argv element.
    """

    def __init__(self, pkcheck_path: str = "pkcheck", timeout: float = 120.0) -> None:
        self._pkcheck = pkcheck_path
        self._timeout = timeout

    async def check_authorization(
        self, action_id: str, allow_interactive: bool = True
    ) -> AuthorizationResult:
        args = [self._pkcheck, "--action-id", action_id, "--process", str(os.getpid())]
        if allow_interactive:
            args.append("--allow-user-interaction")
        try:
            proc = await asyncio.create_subprocess_exec(
                *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
            _, stderr = await asyncio.wait_for(proc.communicate(), timeout=self._timeout)
        except FileNotFoundError:
            logger.warning("pkcheck not found at %s", self._pkcheck)
            return AuthorizationResult.UNHANDLED
        except asyncio.TimeoutError:
            logger.warning("pkcheck timed out for %s", action_id)
            proc.kill()
            await proc.wait()
            return AuthorizationResult.UNHANDLED

        result = _PKCHECK_RESULTS.get(proc.returncode, AuthorizationResult.UNHANDLED)
        if result is not AuthorizationResult.AUTHORIZED:
            logger.info(
                "Authorization for %s: %s (%s)",
                action_id, result.value, stderr.decode().strip(),
            )
        return result


@dataclass
class _CacheEntry:
    result: AuthorizationResult
    expires_at: float


class CachingAuthorizationService(AuthorizationService):
    """Wraps another service and caches definitive answers for *ttl* seconds.

    Only AUTHORIZED and DENIED are cached; a challenge or an unhandled
    check is asked again next time.
    """

    def __init__(
        self,
        inner: AuthorizationService,
        ttl: float = 300.0,
        clock=time.monotonic,
    ) -> None:
        self._inner = inner
        self._ttl = ttl
        self._clock = clock
        self._cache: dict[str, _CacheEntry] = {}

    async def check_authorization(
        self, action_id: str, allow_interactive: bool = True
    ) -> AuthorizationResult:
        now = self._clock()
        entry = self._cache.get(action_id)
        if entry is not None and entry.expires_at > now:
            return entry.result

        result = await self._inner.check_authorization(action_id, allow_interactive)
        if result in (AuthorizationResult.AUTHORIZED, AuthorizationResult.DENIED):
            self._cache[action_id] = _CacheEntry(result, self._clock() + self._ttl)
        else:
            self._cache.pop(action_id, None)
        return result

    def clear_cache(self) -> None:
        self._cache.clear()

    def purge_expired(self) -> int:
        now = self._clock()
        expired = [k for k, v in self._cache.items() if v.expires_at <= now]
        for key in expired:
            del self._cache[key]
        return len(expired)
