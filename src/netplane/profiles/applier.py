"""Profile appliers.

An applier pushes a profile's proxy, DNS and enterprise-auth settings onto
the host. ``LoggingProfileApplier`` only records what would be applied and
is the default when no system integration is configured.
"""

from __future__ import annotations

import logging

from netplane.profiles.models import DNSConfig, EnterpriseAuthConfig, ProxyConfig

logger = logging.getLogger(__name__)


class LoggingProfileApplier:
    """Logs each sub-config and keeps the last applied values."""

    def __init__(self) -> None:
        self.proxy: ProxyConfig | None = None
        self.dns: DNSConfig | None = None
        self.enterprise_auth: EnterpriseAuthConfig | None = None

    async def apply_proxy(self, proxy: ProxyConfig) -> None:
        self.proxy = proxy
        logger.info(
            "Applying proxy settings (http=%s:%d, https=%s:%d, socks=%s:%d)",
            proxy.http_host or "-", proxy.http_port,
            proxy.https_host or "-", proxy.https_port,
            proxy.socks_host or "-", proxy.socks_port,
        )

    async def apply_dns(self, dns: DNSConfig) -> None:
        self.dns = dns
        logger.info(
            "Applying DNS settings (servers=%s, search=%s, doh=%s)",
            ",".join(dns.servers) or "-",
            ",".join(dns.search_domains) or "-",
            dns.doh_url if dns.dns_over_https else "off",
        )

    async def apply_enterprise_auth(self, auth: EnterpriseAuthConfig) -> None:
        self.enterprise_auth = auth
        logger.info(
            "Applying enterprise authentication (method=%s, identity=%s)",
            auth.eap_method, auth.identity,
        )
