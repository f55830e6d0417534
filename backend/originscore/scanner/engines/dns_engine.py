# originscore/scanner/engines/dns_engine.py
"""
DNS collection for the auth probe.

Queries the records that decide how well a domain authenticates itself,
through a dnspython resolver pointed at public validating nameservers.

What this engine collects:
    - A / AAAA records of the origin host
    - MX and apex TXT (SPF) of the mail domain
    - DKIM key for the configured selector, then the common fallbacks
    - _dmarc TXT (falling back to the organizational domain)
    - CAA, climbing toward the registrable domain (RFC 8659)
    - DNSSEC: DNSKEY presence and the resolver's AD flag

NXDOMAIN and NoAnswer mean "absent". Timeouts and NoNameservers propagate
so the runner can retry them.

Output data structure (observation):
    {
        "host": "www.example.com",
        "domain": "example.com",
        "addresses": {"A": ["93.184.216.34"], "AAAA": []},
        "email": {
            "mx": ["mail.example.com"],
            "txt": ["v=spf1 include:_spf.google.com -all"],
            "dkim": {"selector": "google", "record": "v=DKIM1; k=rsa; p=MIIB..."},
            "dkim_selectors_checked": ["google"],
            "dmarc": ["v=DMARC1; p=reject; rua=mailto:d@example.com"],
            "dmarc_domain": "_dmarc.example.com"
        },
        "caa": {"domain": "example.com", "records": ["0 issue \"letsencrypt.org\""]},
        "dnssec": {"domain": "example.com", "dnskey": true, "validated": true}
    }

"email" is None when the origin's email mode is "none".
"""

from __future__ import annotations

import ipaddress
import logging
from typing import Any, Callable, Dict, List, Optional, Tuple

import dns.flags
import dns.resolver

from originscore.config import DEFAULT_NAMESERVERS, DEFAULT_RATE_LIMITS, DEFAULT_TIMEOUTS, DEFAULT_WEIGHTS
from originscore.scanner.analyzers.dns_analyzer import analyze_auth
from originscore.scanner.base import BaseProbe, ModuleName, ProbeContext

logger = logging.getLogger(__name__)

RESOLVER_TIMEOUT = 5

# Common DKIM selectors, tried after the configured one
DKIM_FALLBACK_SELECTORS = [
    "default", "google", "selector1", "selector2",   # Google / Microsoft
    "k1", "k2",                                       # Mailchimp
    "s1", "s2",                                       # Generic
    "dkim", "mail",                                   # Common
    "mandrill", "amazonses",                          # ESPs
]


def make_resolver(nameservers: Optional[List[str]] = None) -> dns.resolver.Resolver:
    """Resolver that asks for DNSSEC data (DO bit) so answers carry the AD flag."""
    r = dns.resolver.Resolver(configure=False)
    r.nameservers = list(nameservers or DEFAULT_NAMESERVERS)
    r.timeout = RESOLVER_TIMEOUT
    r.use_edns(0, dns.flags.DO, 1232)
    return r


def mail_domain(host: str) -> str:
    host = host.lower().rstrip(".")
    return host[4:] if host.startswith("www.") and host.count(".") >= 2 else host


def parent_chain(name: str) -> List[str]:
    """name and its parents, stopping at the last two labels."""
    labels = name.lower().rstrip(".").split(".")
    if len(labels) <= 2:
        return [".".join(labels)]
    return [".".join(labels[i:]) for i in range(len(labels) - 1)]


def _txt(rdata) -> str:
    return b"".join(rdata.strings).decode("utf-8", errors="replace")


class AuthProbe(BaseProbe):
    """
    Scores DNS hygiene and, when the domain sends mail, SPF/DKIM/DMARC.

    Args:
        nameservers:       Resolvers to query (default Google + Cloudflare).
        resolver_factory:  Builds the dnspython resolver (injectable for tests).
    """

    default_timeout = DEFAULT_TIMEOUTS["auth"]
    default_rate_limit = DEFAULT_RATE_LIMITS["auth"]
    default_weight = DEFAULT_WEIGHTS["auth"]

    def __init__(
        self,
        timeout: Optional[float] = None,
        rate_limit_per_minute: Optional[int] = None,
        weight: Optional[float] = None,
        nameservers: Optional[List[str]] = None,
        resolver_factory: Optional[Callable[[], Any]] = None,
    ):
        super().__init__(timeout, rate_limit_per_minute, weight)
        self.nameservers = list(nameservers or DEFAULT_NAMESERVERS)
        self._resolver_factory = resolver_factory or (lambda: make_resolver(self.nameservers))

    @property
    def name(self) -> ModuleName:
        return ModuleName.AUTH

    def collect(self, url: str, ctx: ProbeContext) -> Dict[str, Any]:
        resolver = self._resolver_factory()
        host = ctx.host.lower().rstrip(".")

        if self._is_ip(host):
            # Nothing to look up for a literal address
            return {
                "host": host,
                "domain": host,
                "addresses": {"A": [host]} if ":" not in host else {"AAAA": [host]},
                "email": None,
                "caa": {"domain": None, "records": []},
                "dnssec": {"domain": None, "dnskey": False, "validated": False},
            }

        domain = mail_domain(host)
        observation: Dict[str, Any] = {
            "host": host,
            "domain": domain,
            "addresses": {
                "A": [r.address for r in self._query(resolver, host, "A", ctx)[0]],
                "AAAA": [r.address for r in self._query(resolver, host, "AAAA", ctx)[0]],
            },
            "email": None,
        }

        if ctx.config.email_expected:
            observation["email"] = self._collect_email(resolver, domain, ctx)
        else:
            logger.debug(f"Email checks skipped for {domain} (email_mode=none)")

        observation["caa"] = self._collect_caa(resolver, host, ctx)
        observation["dnssec"] = self._collect_dnssec(resolver, host, ctx)
        return observation

    def analyze(self, observation: Dict[str, Any], ctx: ProbeContext) -> Tuple[int, Dict[str, Any]]:
        return analyze_auth(observation, ctx.config.email_expected)

    # -------------------------------------------------------------------
    # Collectors
    # -------------------------------------------------------------------

    def _collect_email(self, resolver, domain: str, ctx: ProbeContext) -> Dict[str, Any]:
        mx_answer, _ = self._query(resolver, domain, "MX", ctx)
        mx = sorted(
            (r.preference, str(r.exchange).rstrip(".")) for r in mx_answer
        )
        txt = [_txt(r) for r in self._query(resolver, domain, "TXT", ctx)[0]]

        selectors: List[str] = []
        if ctx.config.dkim_selector:
            selectors.append(ctx.config.dkim_selector)
        selectors.extend(s for s in DKIM_FALLBACK_SELECTORS if s not in selectors)

        dkim = None
        checked: List[str] = []
        for selector in selectors:
            checked.append(selector)
            records = [_txt(r) for r in self._query(resolver, f"{selector}._domainkey.{domain}", "TXT", ctx)[0]]
            match = next((r for r in records if "v=dkim1" in r.lower() or "p=" in r), None)
            if match is not None:
                dkim = {"selector": selector, "record": match}
                break

        dmarc_domain = f"_dmarc.{domain}"
        dmarc = [_txt(r) for r in self._query(resolver, dmarc_domain, "TXT", ctx)[0]]
        organizational = parent_chain(domain)[-1]
        if not any(r.lower().startswith("v=dmarc1") for r in dmarc) and organizational != domain:
            dmarc_domain = f"_dmarc.{organizational}"
            dmarc = [_txt(r) for r in self._query(resolver, dmarc_domain, "TXT", ctx)[0]]

        return {
            "mx": [exchange for _, exchange in mx],
            "txt": txt,
            "dkim": dkim,
            "dkim_selectors_checked": checked,
            "dmarc": dmarc,
            "dmarc_domain": dmarc_domain,
        }

    def _collect_caa(self, resolver, host: str, ctx: ProbeContext) -> Dict[str, Any]:
        for name in parent_chain(host):
            records, _ = self._query(resolver, name, "CAA", ctx)
            if records:
                return {"domain": name, "records": [r.to_text() for r in records]}
        return {"domain": None, "records": []}

    def _collect_dnssec(self, resolver, host: str, ctx: ProbeContext) -> Dict[str, Any]:
        for name in parent_chain(host):
            records, authenticated = self._query(resolver, name, "DNSKEY", ctx)
            if records:
                return {"domain": name, "dnskey": True, "validated": authenticated}
        return {"domain": None, "dnskey": False, "validated": False}

    # -------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------

    @staticmethod
    def _query(resolver, name: str, rdtype: str, ctx: ProbeContext) -> Tuple[List[Any], bool]:
        """
        Returns (rdata list, authenticated). Missing names and empty answers
        are an empty list; every other resolver error propagates.
        """
        try:
            answer = resolver.resolve(name, rdtype, lifetime=ctx.io_timeout())
        except (dns.resolver.NXDOMAIN, dns.resolver.NoAnswer):
            return [], False
        response = getattr(answer, "response", None)
        authenticated = bool(response is not None and response.flags & dns.flags.AD)
        return list(answer), authenticated

    @staticmethod
    def _is_ip(host: str) -> bool:
        try:
            ipaddress.ip_address(host)
            return True
        except ValueError:
            return False
