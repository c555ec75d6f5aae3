"""DNS-01 propagation checks.

Queries the *authoritative* nameservers of the zone containing a
challenge record, so that a record is only reported as present once
the servers the authority will consult actually serve it.  Falls back to
the configured (or system) resolvers when the NS lookup yields nothing.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

import dns.asyncresolver
import dns.exception
import dns.resolver

if TYPE_CHECKING:
    from acmerecon.config.settings import DnsSettings

log = logging.getLogger(__name__)


class DnsPropagationChecker:
    """Look up TXT values for a challenge record via dnspython.

    Parameters
    ----------
    settings:
        The ``dns`` configuration section.

    """

    def __init__(self, settings: DnsSettings) -> None:
        self._settings = settings

    def _base_resolver(self) -> dns.asyncresolver.Resolver:
        resolver = dns.asyncresolver.Resolver()
        if self._settings.resolvers:
            resolver.nameservers = list(self._settings.resolvers)
        resolver.lifetime = self._settings.query_timeout_seconds
        return resolver

    async def _authoritative_resolver(
        self,
        record_name: str,
    ) -> dns.asyncresolver.Resolver | None:
        """Build a resolver pointed at the zone's authoritative servers."""
        base = self._base_resolver()
        try:
            zone = await dns.asyncresolver.zone_for_name(record_name, resolver=base)
            ns_answer = await base.resolve(zone, "NS")
        except dns.exception.DNSException as exc:
            log.warning(
                "Authoritative NS lookup failed for %s: %s -- falling back to standard resolution",
                record_name,
                exc,
            )
            return None

        ns_ips: list[str] = []
        for rdata in ns_answer:
            ns_name = rdata.target.to_text()
            for rdtype in ("A", "AAAA"):
                try:
                    answer = await base.resolve(ns_name, rdtype)
                except dns.exception.DNSException:
                    continue
                ns_ips.extend(a.address for a in answer)

        if not ns_ips:
            log.warning(
                "Authoritative NS lookup for %s yielded no IPs -- falling back to standard resolution",
                record_name,
            )
            return None

        resolver = dns.asyncresolver.Resolver(configure=False)
        resolver.nameservers = ns_ips
        resolver.lifetime = self._settings.query_timeout_seconds
        log.debug("Using authoritative NS for %s: %s", record_name, ns_ips)
        return resolver

    async def txt_values(self, record_name: str) -> set[str]:
        """Return the TXT values currently served for *record_name*.

        Missing names and empty answers are reported as an empty set;
        other DNS failures are logged and also treated as "not yet".
        """
        resolver = None
        if self._settings.require_authoritative:
            resolver = await self._authoritative_resolver(record_name)
        if resolver is None:
            resolver = self._base_resolver()

        try:
            answer = await resolver.resolve(record_name, "TXT")
        except (dns.resolver.NXDOMAIN, dns.resolver.NoAnswer):
            return set()
        except dns.exception.DNSException as exc:
            log.debug("TXT lookup for %s failed: %s", record_name, exc)
            return set()

        # TXT rdata has .strings -- a tuple of bytes segments that
        # must be concatenated before comparison.
        return {b"".join(rdata.strings).decode("ascii", errors="replace") for rdata in answer}
