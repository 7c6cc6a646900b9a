"""Network profile models.

A profile bundles proxy, DNS and enterprise-auth settings with endpoint
preferences, an activation condition and a priority. Sub-configs report
their own problems so invalid profiles can be rejected before activation.
"""

from __future__ import annotations

import enum
import ipaddress
import re
from datetime import datetime, time, timezone
from typing import Protocol
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator


class ProfilePriority(enum.IntEnum):
    LOW = 1
    NORMAL = 5
    HIGH = 10
    CRITICAL = 15


class ConditionType(str, enum.Enum):
    MANUAL = "manual"
    TIME_BASED = "time-based"
    LOCATION_BASED = "location-based"
    NETWORK_BASED = "network-based"
    POWER_BASED = "power-based"


_EAP_METHODS = frozenset({"peap", "ttls", "tls", "pwd", "leap", "fast"})
_TIME_RE = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ProxyConfig(BaseModel):
    enabled: bool = False
    http_host: str = ""
    http_port: int = 0
    https_host: str = ""
    https_port: int = 0
    ftp_host: str = ""
    ftp_port: int = 0
    socks_host: str = ""
    socks_port: int = 0
    ignore_hosts: list[str] = Field(
        default_factory=lambda: ["localhost", "127.0.0.0/8", "::1"]
    )
    use_authentication: bool = False
    username: str = ""
    password: str = Field(default="", repr=False)

    def problems(self) -> list[str]:
        if not self.enabled:
            return []
        problems: list[str] = []
        endpoints = [
            ("http", self.http_host, self.http_port),
            ("https", self.https_host, self.https_port),
            ("ftp", self.ftp_host, self.ftp_port),
            ("socks", self.socks_host, self.socks_port),
        ]
        configured = [(scheme, host, port) for scheme, host, port in endpoints if host]
        if not configured:
            problems.append("Proxy enabled without any proxy host")
        for scheme, host, port in configured:
            if not 1 <= port <= 65535:
                problems.append(f"Invalid {scheme} proxy port: {port}")
        if self.use_authentication and not self.username:
            problems.append("Proxy authentication requires a username")
        return problems


class DNSConfig(BaseModel):
    custom_dns: bool = False
    servers: list[str] = Field(default_factory=list)
    search_domains: list[str] = Field(default_factory=list)
    dns_over_https: bool = False
    doh_url: str = ""

    def problems(self) -> list[str]:
        problems: list[str] = []
        if self.custom_dns:
            if not self.servers:
                problems.append("Custom DNS enabled without servers")
            for server in self.servers:
                try:
                    ipaddress.ip_address(server)
                except ValueError:
                    problems.append(f"Invalid DNS server: {server}")
        if self.dns_over_https and not self.doh_url.startswith("https://"):
            problems.append("DNS-over-HTTPS requires an https:// URL")
        return problems


class EnterpriseAuthConfig(BaseModel):
    enabled: bool = False
    eap_method: str = "peap"
    identity: str = ""
    anonymous_identity: str = ""
    ca_certificate: str = ""
    client_certificate: str = ""
    private_key: str = Field(default="", repr=False)
    phase2_auth: str = "mschapv2"

    def problems(self) -> list[str]:
        if not self.enabled:
            return []
        problems: list[str] = []
        if self.eap_method not in _EAP_METHODS:
            problems.append(f"Unsupported EAP method: {self.eap_method}")
        if not self.identity:
            problems.append("Enterprise authentication requires an identity")
        if self.eap_method == "tls" and not (self.client_certificate and self.private_key):
            problems.append("EAP-TLS requires a client certificate and private key")
        return problems


class ActivationCondition(BaseModel):
    condition_type: ConditionType = ConditionType.MANUAL
    ssid_list: list[str] = Field(default_factory=list)
    time_start: str | None = None
    time_end: str | None = None
    weekdays_only: bool = False
    location_name: str | None = None
    on_battery: bool = False
    on_ac_power: bool = False

    @field_validator("time_start", "time_end")
    @classmethod
    def _check_time(cls, value: str | None) -> str | None:
        if value is not None and not _TIME_RE.match(value):
            raise ValueError("time must be HH:MM (24-hour)")
        return value

    def problems(self) -> list[str]:
        if self.condition_type is ConditionType.TIME_BASED:
            if self.time_start is None or self.time_end is None:
                return ["Time-based activation requires a start and end time"]
        return []

    def matches(self, now: datetime) -> bool:
        """Whether the condition holds at local time *now*."""
        if self.condition_type is ConditionType.MANUAL:
            return False
        if self.condition_type is ConditionType.TIME_BASED:
            return self._matches_time(now)
        # Location, network and power conditions are not supported yet.
        return False

    def _matches_time(self, now: datetime) -> bool:
        if self.time_start is None or self.time_end is None:
            return False
        if self.weekdays_only and now.weekday() >= 5:
            return False
        start = time.fromisoformat(self.time_start)
        end = time.fromisoformat(self.time_end)
        current = now.time().replace(second=0, microsecond=0)
        if start <= end:
            return start <= current <= end
        # Window wraps past midnight, e.g. 22:00-06:00
        return current >= start or current <= end


class ProfileApplier(Protocol):
    """Pushes a profile's settings onto the system."""

    async def apply_proxy(self, proxy: ProxyConfig) -> None: ...

    async def apply_dns(self, dns: DNSConfig) -> None: ...

    async def apply_enterprise_auth(self, auth: EnterpriseAuthConfig) -> None: ...


class Profile(BaseModel):
    """A named network configuration bundle."""

    model_config = ConfigDict(validate_assignment=True)

    id: str = Field(default_factory=lambda: uuid4().hex)
    name: str = Field(min_length=1)
    description: str = ""
    priority: int = int(ProfilePriority.NORMAL)
    enabled: bool = True
    is_active: bool = False
    created_at: datetime = Field(default_factory=_utcnow)
    modified_at: datetime = Field(default_factory=_utcnow)
    last_activated: datetime | None = None

    proxy: ProxyConfig = Field(default_factory=ProxyConfig)
    dns: DNSConfig = Field(default_factory=DNSConfig)
    enterprise_auth: EnterpriseAuthConfig = Field(default_factory=EnterpriseAuthConfig)
    activation: ActivationCondition = Field(default_factory=ActivationCondition)

    preferred_wifi_networks: list[str] = Field(default_factory=list)
    preferred_vpn_profiles: list[str] = Field(default_factory=list)
    prefer_ethernet: bool = True
    allow_mobile_data: bool = True
    allow_hotspot: bool = False

    def validation_problems(self) -> list[str]:
        problems: list[str] = []
        if not self.name.strip():
            problems.append("Profile name must not be blank")
        problems.extend(self.proxy.problems())
        problems.extend(self.dns.problems())
        problems.extend(self.enterprise_auth.problems())
        problems.extend(self.activation.problems())
        return problems

    def is_valid(self) -> bool:
        return not self.validation_problems()

    async def apply(self, applier: ProfileApplier) -> None:
        """Apply each enabled sub-config through *applier*."""
        if self.proxy.enabled:
            await applier.apply_proxy(self.proxy)
        if self.dns.custom_dns or self.dns.dns_over_https:
            await applier.apply_dns(self.dns)
        if self.enterprise_auth.enabled:
            await applier.apply_enterprise_auth(self.enterprise_auth)
