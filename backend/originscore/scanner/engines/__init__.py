# originscore/scanner/engines/__init__.py
"""
Probes.
Each probe collects raw facts from one protocol and hands them to its
analyzer. Probes do NOT retry, sleep or rate limit; the runner does.
"""
from __future__ import annotations

from typing import TYPE_CHECKING, Dict, List, Type

from originscore.scanner.base import BaseProbe
from originscore.scanner.engines.ssl_engine import TransportProbe
from originscore.scanner.engines.http_engine import HeaderProbe
from originscore.scanner.engines.dns_engine import AuthProbe

if TYPE_CHECKING:
    from originscore.config import Settings

# Registry of all available probes, keyed by module name.
ALL_PROBES: Dict[str, Type[BaseProbe]] = {
    "transport": TransportProbe,
    "headers": HeaderProbe,
    "auth": AuthProbe,
}


def build_probes(settings: "Settings") -> List[BaseProbe]:
    """Instantiate every probe with its configured timeout, limit and weight."""
    return [
        TransportProbe(
            timeout=settings.timeouts["transport"],
            rate_limit_per_minute=settings.rate_limits["transport"],
            weight=settings.weights["transport"],
            probe_legacy_protocols=settings.probe_legacy_tls,
        ),
        HeaderProbe(
            timeout=settings.timeouts["headers"],
            rate_limit_per_minute=settings.rate_limits["headers"],
            weight=settings.weights["headers"],
            user_agent=settings.user_agent,
        ),
        AuthProbe(
            timeout=settings.timeouts["auth"],
            rate_limit_per_minute=settings.rate_limits["auth"],
            weight=settings.weights["auth"],
            nameservers=settings.dns_nameservers,
        ),
    ]


__all__ = ["TransportProbe", "HeaderProbe", "AuthProbe", "ALL_PROBES", "build_probes"]
