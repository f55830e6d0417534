# originscore/scanner/analyzers/header_analyzer.py
"""
HTTP security header scoring.

Additive from 0, capped at 100:

    Strict-Transport-Security   up to 35
        -15 max-age=0 or unparseable, else -10 max-age under 180 days
        -5  no includeSubDomains
        -5  no preload
    Content-Security-Policy     up to 35
        -5 per unsafe source kind ('unsafe-inline', 'unsafe-eval', *, data:),
        at most -15
    X-Content-Type-Options      10 (nosniff)
    X-Frame-Options             10 (DENY or SAMEORIGIN)
    Referrer-Policy             10 (no-referrer, same-origin, strict-origin,
                                    strict-origin-when-cross-origin)
    Permissions-Policy          +2
    X-XSS-Protection            +1 when "0" or "1; mode=block"
    Server version disclosure   -2

X-Powered-By, cookie flags and the redirect chain are reported without
moving the score.
"""

from __future__ import annotations

import logging
import re
from typing import Any, Dict, List, Optional, Tuple

from originscore.scanner.base import Findings, clamp_score

logger = logging.getLogger(__name__)

HSTS_POINTS = 35
CSP_POINTS = 35
NOSNIFF_POINTS = 10
XFO_POINTS = 10
REFERRER_POINTS = 10
PERMISSIONS_BONUS = 2
XSS_PROTECTION_BONUS = 1
SERVER_VERSION_PENALTY = 2

HSTS_MIN_MAX_AGE = 180 * 86400
CSP_UNSAFE_PENALTY = 5
CSP_UNSAFE_CAP = 15

REFERRER_POLICIES = {
    "no-referrer",
    "no-referrer-when-downgrade",
    "origin",
    "origin-when-cross-origin",
    "same-origin",
    "strict-origin",
    "strict-origin-when-cross-origin",
    "unsafe-url",
}
SECURE_REFERRER_POLICIES = {
    "no-referrer",
    "same-origin",
    "strict-origin",
    "strict-origin-when-cross-origin",
}

SERVER_VERSION_RE = re.compile(r"\d+(?:\.\d+)+|/\s*v?\d")


# -------------------------------------------------------------------
# Header parsers
# -------------------------------------------------------------------

def parse_hsts(value: str) -> Dict[str, Any]:
    """
    Split an HSTS value into its directives.
    max_age is None when the directive is missing or not an integer.
    """
    max_age: Optional[int] = None
    include_subdomains = False
    preload = False

    for directive in value.split(";"):
        directive = directive.strip()
        if not directive:
            continue
        key, _, raw = directive.partition("=")
        key = key.strip().lower()
        if key == "max-age":
            raw = raw.strip().strip('"')
            max_age = int(raw) if raw.isdigit() else None
        elif key == "includesubdomains":
            include_subdomains = True
        elif key == "preload":
            preload = True

    return {"max_age": max_age, "include_subdomains": include_subdomains, "preload": preload}


def csp_unsafe_sources(value: str) -> List[str]:
    """Distinct unsafe source kinds present anywhere in the policy."""
    found: List[str] = []
    for directive in value.split(";"):
        for token in directive.split()[1:]:
            token = token.lower()
            if token in ("'unsafe-inline'", "'unsafe-eval'") and token not in found:
                found.append(token)
            elif token == "*" and "*" not in found:
                found.append("*")
            elif token == "data:" and "data:" not in found:
                found.append("data:")
    return found


def effective_referrer_policy(value: str) -> Optional[str]:
    """Browsers apply the last policy token they recognize."""
    effective = None
    for token in value.split(","):
        token = token.strip().lower()
        if token in REFERRER_POLICIES:
            effective = token
    return effective


def xss_protection_ok(value: str) -> bool:
    normalized = re.sub(r"\s+", "", value.lower())
    return normalized in ("0", "1;mode=block")


def analyze_cookie(raw: str) -> Dict[str, Any]:
    parts = [p.strip() for p in raw.split(";")]
    name = parts[0].split("=", 1)[0].strip() if parts else ""
    attributes = {p.split("=", 1)[0].strip().lower() for p in parts[1:] if p}
    return {
        "name": name,
        "secure": "secure" in attributes,
        "httponly": "httponly" in attributes,
        "samesite": "samesite" in attributes,
    }


# -------------------------------------------------------------------
# Scoring
# -------------------------------------------------------------------

def analyze_headers(observation: Dict[str, Any]) -> Tuple[int, Dict[str, Any]]:
    """Score the headers of the final response. Returns (score, details)."""
    headers: Dict[str, str] = {k.lower(): v for k, v in (observation.get("headers") or {}).items()}
    findings = Findings()
    breakdown: Dict[str, int] = {}

    # --- HSTS ---
    hsts_value = headers.get("strict-transport-security")
    hsts = None
    if hsts_value:
        hsts = parse_hsts(hsts_value)
        points = HSTS_POINTS
        max_age = hsts["max_age"]
        if max_age is None or max_age == 0:
            points -= 15
            findings.issue(
                "high",
                "HSTS max-age is 0 or invalid",
                "Set Strict-Transport-Security max-age to at least 31536000 (1 year).",
            )
        elif max_age < HSTS_MIN_MAX_AGE:
            points -= 10
            findings.issue(
                "medium",
                f"HSTS max-age is short ({max_age // 86400} days)",
                "Set Strict-Transport-Security max-age to at least 31536000 (1 year).",
            )
        if not hsts["include_subdomains"]:
            points -= 5
            findings.issue("low", "HSTS does not cover subdomains", "Add includeSubDomains to the HSTS header.")
        if not hsts["preload"]:
            points -= 5
            findings.issue("low", "HSTS preload not requested", "Add preload to the HSTS header and submit the domain to the preload list.")
        if points == HSTS_POINTS:
            findings.strength("HSTS fully configured")
        breakdown["hsts"] = max(0, points)
    else:
        findings.issue(
            "high",
            "Missing HSTS header",
            "Add: Strict-Transport-Security: max-age=31536000; includeSubDomains; preload",
        )
        breakdown["hsts"] = 0

    # --- CSP ---
    csp_value = headers.get("content-security-policy")
    unsafe: List[str] = []
    if csp_value:
        unsafe = csp_unsafe_sources(csp_value)
        penalty = min(CSP_UNSAFE_CAP, CSP_UNSAFE_PENALTY * len(unsafe))
        if unsafe:
            findings.issue(
                "medium",
                f"CSP allows unsafe sources: {', '.join(unsafe)}",
                "Remove 'unsafe-inline', 'unsafe-eval', wildcard and data: sources from the CSP.",
            )
        else:
            findings.strength("Content-Security-Policy set without unsafe sources")
        breakdown["csp"] = CSP_POINTS - penalty
    else:
        findings.issue(
            "medium",
            "Missing Content-Security-Policy header",
            "Add a Content-Security-Policy header that restricts script-src, style-src, and default-src.",
        )
        breakdown["csp"] = 0

    # --- X-Content-Type-Options ---
    if (headers.get("x-content-type-options") or "").strip().lower() == "nosniff":
        breakdown["x_content_type_options"] = NOSNIFF_POINTS
        findings.strength("X-Content-Type-Options: nosniff")
    else:
        breakdown["x_content_type_options"] = 0
        findings.issue("medium", "Missing X-Content-Type-Options header", "Add: X-Content-Type-Options: nosniff")

    # --- X-Frame-Options ---
    xfo = (headers.get("x-frame-options") or "").strip().upper()
    if xfo in ("DENY", "SAMEORIGIN"):
        breakdown["x_frame_options"] = XFO_POINTS
        findings.strength(f"X-Frame-Options: {xfo}")
    else:
        breakdown["x_frame_options"] = 0
        title = f"Unusual X-Frame-Options value: {xfo}" if xfo else "Missing X-Frame-Options header"
        findings.issue("medium", title, "Add: X-Frame-Options: DENY or X-Frame-Options: SAMEORIGIN")

    # --- Referrer-Policy ---
    referrer_value = headers.get("referrer-policy")
    referrer = effective_referrer_policy(referrer_value) if referrer_value else None
    if referrer in SECURE_REFERRER_POLICIES:
        breakdown["referrer_policy"] = REFERRER_POINTS
        findings.strength(f"Referrer-Policy: {referrer}")
    else:
        breakdown["referrer_policy"] = 0
        title = f"Weak Referrer-Policy: {referrer}" if referrer else "Missing Referrer-Policy header"
        findings.issue("low", title, "Add: Referrer-Policy: strict-origin-when-cross-origin")

    # --- Bonuses and penalties ---
    if headers.get("permissions-policy"):
        breakdown["permissions_policy"] = PERMISSIONS_BONUS
        findings.strength("Permissions-Policy set")
    else:
        breakdown["permissions_policy"] = 0
        findings.issue("info", "Missing Permissions-Policy header", "Add: Permissions-Policy: camera=(), microphone=(), geolocation=()")

    xss = headers.get("x-xss-protection")
    breakdown["x_xss_protection"] = XSS_PROTECTION_BONUS if xss is not None and xss_protection_ok(xss) else 0

    server = headers.get("server") or ""
    if server and SERVER_VERSION_RE.search(server):
        breakdown["server_disclosure"] = -SERVER_VERSION_PENALTY
        findings.issue("low", f"Server version disclosed: {server}", "Remove version information from the Server header.")
    else:
        breakdown["server_disclosure"] = 0

    # --- Advisory only ---
    powered_by = headers.get("x-powered-by")
    if powered_by:
        findings.issue("low", f"Technology disclosed: X-Powered-By: {powered_by}", "Remove the X-Powered-By header.")

    cookies = [analyze_cookie(c) for c in observation.get("set_cookies") or []]
    for cookie in cookies:
        name = cookie["name"] or "(unnamed)"
        if not cookie["secure"]:
            findings.issue("medium", f"Cookie '{name}' missing Secure flag", "Set the Secure flag on every cookie.")
        if not cookie["httponly"]:
            findings.issue("low", f"Cookie '{name}' missing HttpOnly flag", "Set HttpOnly on cookies that scripts do not need.")
        if not cookie["samesite"]:
            findings.issue("low", f"Cookie '{name}' missing SameSite attribute", "Set SameSite=Lax or Strict on cookies.")

    redirects = observation.get("redirects") or []
    stop = observation.get("redirect_stop")
    if stop == "insecure":
        findings.issue(
            "high",
            "Redirect chain leaves HTTPS",
            "Make every redirect target an https:// URL.",
        )
    elif stop == "limit":
        findings.issue("medium", f"More than {len(redirects)} redirects", "Shorten the redirect chain.")
    elif stop == "blocked":
        findings.issue("high", "Redirect points to a forbidden address", "Redirect only to public https origins.")

    score = clamp_score(sum(breakdown.values()))

    details: Dict[str, Any] = {
        "url": observation.get("url"),
        "final_url": observation.get("final_url"),
        "status_code": observation.get("status_code"),
        "redirects": redirects,
        "headers": {
            "strict-transport-security": hsts_value,
            "content-security-policy": csp_value,
            "x-content-type-options": headers.get("x-content-type-options"),
            "x-frame-options": headers.get("x-frame-options"),
            "referrer-policy": referrer_value,
            "permissions-policy": headers.get("permissions-policy"),
            "x-xss-protection": xss,
            "server": headers.get("server"),
            "x-powered-by": powered_by,
        },
        "hsts": hsts,
        "csp_unsafe_sources": unsafe,
        "referrer_policy": referrer,
        "cookies": cookies,
        "score_breakdown": breakdown,
    }
    details.update(findings.as_dict())
    return score, details
