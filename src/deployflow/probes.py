"""Readiness probes run from the deploying host.

A private endpoint is only usable once its private DNS record is visible
to clients: the service FQDN must resolve to a private address rather
than the public one. Resolution is eventually consistent, so probes
report "not yet" instead of failing and the ConvergencePoller retries.

Resolution slower than SLOW_RESOLUTION_MS is logged as a warning; it
usually means the query is leaving the private network.
"""

from __future__ import annotations

import ipaddress
import logging
import socket
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import Any

logger = logging.getLogger(__name__)

SLOW_RESOLUTION_MS = 100.0

Resolver = Callable[..., list[tuple[Any, ...]]]


@dataclass(frozen=True)
class DnsProbeResult:
    """Outcome of a single name resolution."""

    name: str
    addresses: tuple[str, ...]
    duration_ms: float

    @property
    def resolved(self) -> bool:
        return bool(self.addresses)

    @property
    def private(self) -> bool:
        """True if every resolved address is private."""
        return self.resolved and all(
            ipaddress.ip_address(address).is_private for address in self.addresses
        )

    @property
    def slow(self) -> bool:
        return self.duration_ms > SLOW_RESOLUTION_MS

    def within(self, prefixes: Sequence[str]) -> bool:
        """True if every resolved address is inside one of the CIDR prefixes."""
        networks = [ipaddress.ip_network(prefix, strict=False) for prefix in prefixes]
        return self.resolved and all(
            any(ipaddress.ip_address(address) in network for network in networks)
            for address in self.addresses
        )


def resolve(
    name: str,
    *,
    resolver: Resolver = socket.getaddrinfo,
    clock: Callable[[], float] = time.perf_counter,
) -> DnsProbeResult:
    """Resolve a name to its addresses, timing the lookup.

    A name that does not resolve yields a result with no addresses.
    """
    start = clock()
    try:
        infos = resolver(name, None, proto=socket.IPPROTO_TCP)
    except socket.gaierror as e:
        logger.debug("Name did not resolve", extra={"dns_name": name, "error": str(e)})
        infos = []
    duration_ms = (clock() - start) * 1000

    # Preserve resolver order, drop duplicates
    addresses = tuple(dict.fromkeys(str(info[4][0]) for info in infos))
    return DnsProbeResult(name=name, addresses=addresses, duration_ms=duration_ms)


def probe_private_dns(
    name: str,
    *,
    expected_prefixes: Sequence[str] = (),
    resolver: Resolver = socket.getaddrinfo,
    clock: Callable[[], float] = time.perf_counter,
) -> bool:
    """Check that a name resolves to a private address.

    Args:
        name: Fully qualified name, e.g. "kv-prod.vault.azure.net".
        expected_prefixes: Optional CIDR prefixes the address must fall in
            (e.g. the endpoint subnet). Any private address is accepted when
            empty.
        resolver: getaddrinfo-compatible resolver.
        clock: Timer used to measure resolution latency.

    Returns:
        True once the private record is visible.
    """
    result = resolve(name, resolver=resolver, clock=clock)

    if result.slow:
        logger.warning(
            "Slow DNS resolution",
            extra={
                "dns_name": name,
                "duration_ms": round(result.duration_ms, 1),
                "threshold_ms": SLOW_RESOLUTION_MS,
            },
        )

    if not result.resolved:
        return False

    ok = result.within(expected_prefixes) if expected_prefixes else result.private
    if not ok:
        logger.info(
            "Name resolves outside the private network",
            extra={"dns_name": name, "addresses": list(result.addresses)},
        )
    return ok
