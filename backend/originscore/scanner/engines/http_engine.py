# originscore/scanner/engines/http_engine.py
"""
HTTP header collection for the header probe.

Makes one GET with certificate verification on and follows redirects by
hand so every hop is checked before it is requested:

    - the hop must stay on https
    - the hop's host must pass the origin guard
    - at most max_redirects hops are followed

Whatever stops the walk is recorded in redirect_stop; the headers of the
last response received are what gets scored. The body is never read.

Output data structure (observation):
    {
        "url": "https://example.com",
        "final_url": "https://www.example.com/",
        "status_code": 200,
        "headers": {"strict-transport-security": "max-age=63072000", ...},
        "set_cookies": ["sid=abc; Secure; HttpOnly"],
        "redirects": [{"from": "...", "to": "...", "status": 301}],
        "redirect_stop": null | "insecure" | "blocked" | "limit",
        "redirect_stop_url": null
    }
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Dict, List, Optional, Tuple
from urllib.parse import urljoin, urlsplit

import requests

from originscore.config import DEFAULT_RATE_LIMITS, DEFAULT_TIMEOUTS, DEFAULT_USER_AGENT, DEFAULT_WEIGHTS
from originscore.scanner.analyzers.header_analyzer import analyze_headers
from originscore.scanner.base import BaseProbe, ModuleName, ProbeContext
from originscore.scanner.errors import OriginDenied, ProbeError

logger = logging.getLogger(__name__)

DEFAULT_MAX_REDIRECTS = 3


def _set_cookie_values(response: requests.Response) -> List[str]:
    """Every Set-Cookie header, unjoined where the transport allows it."""
    raw_headers = getattr(response.raw, "headers", None)
    getlist = getattr(raw_headers, "getlist", None)
    if getlist is not None:
        values = getlist("Set-Cookie")
        if values:
            return list(values)
    value = response.headers.get("Set-Cookie")
    return [value] if value else []


class HeaderProbe(BaseProbe):
    """
    Scores the security headers an origin returns.

    Args:
        user_agent:       Sent on every request.
        max_redirects:    Hops followed before the walk stops.
        session_factory:  Builds the requests.Session (injectable for tests).
    """

    default_timeout = DEFAULT_TIMEOUTS["headers"]
    default_rate_limit = DEFAULT_RATE_LIMITS["headers"]
    default_weight = DEFAULT_WEIGHTS["headers"]

    def __init__(
        self,
        timeout: Optional[float] = None,
        rate_limit_per_minute: Optional[int] = None,
        weight: Optional[float] = None,
        user_agent: str = DEFAULT_USER_AGENT,
        max_redirects: int = DEFAULT_MAX_REDIRECTS,
        session_factory: Callable[[], requests.Session] = requests.Session,
    ):
        super().__init__(timeout, rate_limit_per_minute, weight)
        self.user_agent = user_agent
        self.max_redirects = max_redirects
        self._session_factory = session_factory

    @property
    def name(self) -> ModuleName:
        return ModuleName.HEADERS

    def collect(self, url: str, ctx: ProbeContext) -> Dict[str, Any]:
        redirects: List[Dict[str, Any]] = []
        stop: Optional[str] = None
        stop_url: Optional[str] = None
        current = url

        with self._session_factory() as session:
            session.headers.update({
                "User-Agent": self.user_agent,
                "Accept": "text/html,application/xhtml+xml,*/*",
            })

            ctx.guard.ensure_allowed(current)
            status, headers, cookies, location = self._fetch(session, current, ctx)

            while location is not None:
                next_url = urljoin(current, location)

                if len(redirects) >= self.max_redirects:
                    stop, stop_url = "limit", next_url
                    break
                if urlsplit(next_url).scheme != "https":
                    stop, stop_url = "insecure", next_url
                    break
                try:
                    ctx.guard.ensure_allowed(next_url)
                except OriginDenied:
                    stop, stop_url = "blocked", next_url
                    break

                redirects.append({"from": current, "to": next_url, "status": status})
                logger.debug(f"Following redirect {status} {current} -> {next_url}")
                current = next_url
                status, headers, cookies, location = self._fetch(session, current, ctx)

        return {
            "url": url,
            "final_url": current,
            "status_code": status,
            "headers": headers,
            "set_cookies": cookies,
            "redirects": redirects,
            "redirect_stop": stop,
            "redirect_stop_url": stop_url,
        }

    def analyze(self, observation: Dict[str, Any], ctx: ProbeContext) -> Tuple[int, Dict[str, Any]]:
        return analyze_headers(observation)

    def _fetch(
        self,
        session: requests.Session,
        url: str,
        ctx: ProbeContext,
    ) -> Tuple[int, Dict[str, str], List[str], Optional[str]]:
        """GET one URL without following redirects. Returns (status, headers, cookies, location)."""
        try:
            response = session.get(
                url,
                timeout=ctx.io_timeout(),
                allow_redirects=False,
                stream=True,
                verify=True,
            )
        except requests.exceptions.SSLError as e:
            # Certificate problems are scored by the transport probe
            raise ProbeError(f"TLS verification failed for {url}: {e}") from e

        try:
            headers = {k.lower(): v for k, v in response.headers.items()}
            cookies = _set_cookie_values(response)
            location = response.headers.get("Location") if response.is_redirect else None
            return response.status_code, headers, cookies, location
        finally:
            response.close()
