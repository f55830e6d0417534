# originscore/scanner/guard.py
"""
SSRF protection for every outbound probe.

OriginGuard answers one question: may the engine open a connection to this
URL right now? A URL is allowed only when

    1. it parses and its scheme is exactly https,
    2. it names a host (and carries no userinfo),
    3. a literal IP host is outside every blocked range, and
    4. a name host resolves, and EVERY A/AAAA answer is outside every
       blocked range. One public answer never excuses a private one.

Decisions are never cached. DNS answers can change between validation and
connection, so probes call resolve_public() again immediately before they
open a socket and connect to the address it returned.
"""

from __future__ import annotations

import ipaddress
import logging
import socket
from dataclasses import dataclass, field
from typing import Callable, List, Optional
from urllib.parse import urlsplit

from originscore.scanner.errors import OriginDenied, ProbeNetworkError

logger = logging.getLogger(__name__)
security_logger = logging.getLogger("originscore.security")

Resolver = Callable[[str], List[str]]


# ═══════════════════════════════════════════════════════════════
# Private/Reserved IP Blocklist
# ═══════════════════════════════════════════════════════════════

BLOCKED_NETWORKS = [
    ipaddress.ip_network("0.0.0.0/8"),          # "This" network
    ipaddress.ip_network("10.0.0.0/8"),         # Private (RFC 1918)
    ipaddress.ip_network("100.64.0.0/10"),      # Carrier-grade NAT
    ipaddress.ip_network("127.0.0.0/8"),        # Loopback
    ipaddress.ip_network("169.254.0.0/16"),     # Link-local / cloud metadata
    ipaddress.ip_network("172.16.0.0/12"),      # Private (RFC 1918)
    ipaddress.ip_network("192.0.0.0/24"),       # IETF protocol assignments
    ipaddress.ip_network("192.0.2.0/24"),       # TEST-NET-1
    ipaddress.ip_network("192.168.0.0/16"),     # Private (RFC 1918)
    ipaddress.ip_network("198.18.0.0/15"),      # Benchmarking
    ipaddress.ip_network("198.51.100.0/24"),    # TEST-NET-2
    ipaddress.ip_network("203.0.113.0/24"),     # TEST-NET-3
    ipaddress.ip_network("224.0.0.0/4"),        # Multicast
    ipaddress.ip_network("240.0.0.0/4"),        # Reserved
    ipaddress.ip_network("255.255.255.255/32"), # Broadcast
    # IPv6
    ipaddress.ip_network("::/128"),             # Unspecified
    ipaddress.ip_network("::1/128"),            # Loopback
    ipaddress.ip_network("100::/64"),           # Discard-only
    ipaddress.ip_network("2001:db8::/32"),      # Documentation
    ipaddress.ip_network("fc00::/7"),           # Unique local (RFC 4193)
    ipaddress.ip_network("fe80::/10"),          # Link-local
    ipaddress.ip_network("ff00::/8"),           # Multicast
]

# Cloud instance metadata endpoints. Most already sit inside a blocked
# range; listed separately so denials name them explicitly.
METADATA_ADDRESSES = {
    ipaddress.ip_address("169.254.169.254"),    # AWS / GCP / Azure / OpenStack
    ipaddress.ip_address("169.254.170.2"),      # AWS ECS task metadata
    ipaddress.ip_address("fd00:ec2::254"),      # AWS IMDS over IPv6
    ipaddress.ip_address("100.100.100.200"),    # Alibaba Cloud
    ipaddress.ip_address("192.0.0.192"),        # Oracle Cloud
}

NAT64_PREFIX = ipaddress.ip_network("64:ff9b::/96")


@dataclass(frozen=True)
class GuardDecision:
    """
    Result of OriginGuard.validate().

    policy_violation distinguishes "this target is forbidden" from "this
    target could not be resolved right now".
    """
    allowed: bool
    reason: Optional[str] = None
    addresses: List[str] = field(default_factory=list)
    policy_violation: bool = False


def system_resolver(host: str) -> List[str]:
    """Resolve host to all of its A/AAAA addresses, in resolver order."""
    results = socket.getaddrinfo(host, 443, socket.AF_UNSPEC, socket.SOCK_STREAM)
    addresses: List[str] = []
    for *_rest, sockaddr in results:
        ip = sockaddr[0]
        if ip not in addresses:
            addresses.append(ip)
    return addresses


def _embedded_ipv4(addr: ipaddress.IPv6Address) -> Optional[ipaddress.IPv4Address]:
    """IPv4 address tunnelled inside an IPv6 one (mapped, 6to4, NAT64)."""
    if addr.ipv4_mapped is not None:
        return addr.ipv4_mapped
    if addr.sixtofour is not None:
        return addr.sixtofour
    if addr in NAT64_PREFIX:
        return ipaddress.IPv4Address(int(addr) & 0xFFFFFFFF)
    return None


def blocked_reason(ip_str: str) -> Optional[str]:
    """
    Return why an IP address may not be contacted, or None if it is public.
    Unparseable input is treated as blocked.
    """
    try:
        addr = ipaddress.ip_address(ip_str.split("%", 1)[0])
    except ValueError:
        return f"{ip_str!r} is not a valid IP address"

    if isinstance(addr, ipaddress.IPv6Address):
        embedded = _embedded_ipv4(addr)
        if embedded is not None:
            inner = blocked_reason(str(embedded))
            if inner:
                return f"{ip_str} embeds {inner}"

    if addr in METADATA_ADDRESSES:
        return f"{ip_str} is a cloud metadata address"

    for network in BLOCKED_NETWORKS:
        if addr in network:
            return f"{ip_str} is in blocked range {network}"

    if (
        addr.is_private
        or addr.is_loopback
        or addr.is_link_local
        or addr.is_multicast
        or addr.is_reserved
        or addr.is_unspecified
    ):
        return f"{ip_str} is not a public address"

    return None


def _is_ip_literal(host: str) -> bool:
    try:
        ipaddress.ip_address(host.split("%", 1)[0])
        return True
    except ValueError:
        return False


class OriginGuard:
    """
    Validates probe targets. Stateless apart from the injected resolver, so a
    single instance is safely shared by concurrent scans.
    """

    def __init__(self, resolver: Optional[Resolver] = None):
        self._resolver = resolver or system_resolver

    def validate(self, url: str) -> GuardDecision:
        """Pure decision form of ensure_allowed(). Never raises."""
        try:
            addresses = self.ensure_allowed(url)
        except OriginDenied as e:
            return GuardDecision(allowed=False, reason=e.reason, policy_violation=True)
        except ProbeNetworkError as e:
            return GuardDecision(allowed=False, reason=str(e))
        return GuardDecision(allowed=True, addresses=addresses)

    def ensure_allowed(self, url: str) -> List[str]:
        """
        Check a URL and return the approved addresses of its host.

        Raises OriginDenied on a policy violation and ProbeNetworkError when
        the host cannot be resolved.
        """
        try:
            parts = urlsplit((url or "").strip())
            port = parts.port
        except ValueError as e:
            raise self._deny(url, f"malformed URL: {e}")

        if parts.scheme != "https":
            raise self._deny(url, f"scheme must be https (got {parts.scheme or 'none'!r})")
        if "@" in parts.netloc:
            raise self._deny(url, "credentials in URL are not allowed")

        host = (parts.hostname or "").strip().rstrip(".")
        if not host:
            raise self._deny(url, "URL has no host")
        if port == 0:
            raise self._deny(url, "port 0 is not allowed")

        return self.resolve_public(host)

    def resolve_public(self, host: str) -> List[str]:
        """
        Resolve host and return its addresses if every one of them is public.
        Call this immediately before connecting; do not reuse older answers.
        """
        host = (host or "").strip().lower().rstrip(".")
        if host.startswith("[") and host.endswith("]"):
            host = host[1:-1]
        if not host:
            raise self._deny(host, "empty host")

        if _is_ip_literal(host):
            reason = blocked_reason(host)
            if reason:
                raise self._deny(host, reason)
            return [host]

        try:
            addresses = self._resolver(host)
        except (OSError, UnicodeError) as e:
            raise ProbeNetworkError(f"could not resolve {host}: {e}") from e

        if not addresses:
            raise ProbeNetworkError(f"{host} has no A/AAAA records")

        for ip in addresses:
            reason = blocked_reason(ip)
            if reason:
                raise self._deny(host, f"{host} resolves to a forbidden address ({reason})")

        return list(addresses)

    @staticmethod
    def _deny(target: str, reason: str) -> OriginDenied:
        security_logger.warning(f"SSRF blocked: {target} ({reason})")
        return OriginDenied(reason)
