# originscore/scanner/analyzers/ssl_analyzer.py
"""
Transport (TLS / certificate) scoring.

Reads the observation produced by the SSL engine and applies ordered
deductions to a starting score of 100:

    CRITICAL:
        - Certificate expired                      → score 0, nothing else applies
    HIGH:
        - Protocol TLS 1.1 or older                → -25
        - Hostname mismatch (CN and SANs)          → -20
        - Weak cipher (RC4/3DES/DES/NULL/EXPORT)   → -20
        - Certificate expires within 7 days        → -15
        - RSA key under 2048 bits                  → -15
        - SHA-1 signature in the chain             → -15
    MEDIUM:
        - Certificate expires within 30 days       → -10
        - No forward secrecy (no DHE/ECDHE)        → -10
        - Chain out of order                       → -10
    BONUS:
        - TLS 1.3 negotiated                       → +5, capped at 100 as it is applied
                                                     (after the protocol check)

Trust-store failures (self-signed, unknown issuer) and legacy protocol
support are reported as issues but do not move the score.
"""

from __future__ import annotations

import logging
import re
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from originscore.scanner.base import Findings, clamp_score, now_utc

logger = logging.getLogger(__name__)

LEGACY_PROTOCOLS = {"SSLv2", "SSLv3", "TLSv1", "TLSv1.0", "TLSv1.1"}

# Cipher name tokens considered weak (OpenSSL and IANA spellings)
WEAK_CIPHER_TOKENS = {
    "RC4", "RC2", "DES", "3DES", "CBC3", "NULL", "EXP", "EXPORT",
    "EXPORT40", "EXPORT56", "ANON", "ADH", "AECDH", "MD5",
}

FORWARD_SECRET_TOKENS = {"ECDHE", "DHE", "EDH"}

DEDUCTIONS = {
    "expiry_7_days": 15,
    "expiry_30_days": 10,
    "hostname_mismatch": 20,
    "legacy_protocol": 25,
    "weak_cipher": 20,
    "no_forward_secrecy": 10,
    "weak_rsa_key": 15,
    "chain_order": 10,
    "sha1_signature": 15,
}
TLS13_BONUS = 5
MIN_RSA_BITS = 2048


def _cipher_tokens(name: str) -> List[str]:
    return [t for t in re.split(r"[-_]", (name or "").upper()) if t]


def is_weak_cipher(name: str) -> bool:
    tokens = set(_cipher_tokens(name))
    return bool(tokens & WEAK_CIPHER_TOKENS)


def has_forward_secrecy(name: str, protocol: Optional[str]) -> bool:
    # Every TLS 1.3 suite uses an ephemeral key exchange
    if protocol == "TLSv1.3":
        return True
    return bool(set(_cipher_tokens(name)) & FORWARD_SECRET_TOKENS)


def hostname_matches(hostname: str, cn: str, sans: List[str]) -> bool:
    """
    Check hostname against the certificate CN and every SAN entry.
    Wildcards match exactly one leftmost label: *.example.com matches
    a.example.com but neither example.com nor a.b.example.com.
    """
    hostname = (hostname or "").lower().strip().rstrip(".")
    all_names = [(cn or "").lower()] + [(s or "").lower() for s in sans]

    for name in all_names:
        name = name.strip().rstrip(".")
        if not name:
            continue
        if name == hostname:
            return True
        if name.startswith("*."):
            wildcard_base = name[2:]
            if hostname.endswith("." + wildcard_base):
                prefix = hostname[: -(len(wildcard_base) + 1)]
                if prefix and "." not in prefix:
                    return True
    return False


def chain_is_ordered(chain: List[Dict[str, Any]]) -> bool:
    """Issuer of cert[i] must be the subject of cert[i+1]."""
    for current, parent in zip(chain, chain[1:]):
        if current.get("issuer") != parent.get("subject"):
            return False
    return True


def _parse_iso(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        dt = datetime.fromisoformat(value)
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def analyze_transport(
    observation: Dict[str, Any],
    hostname: str,
    now: Optional[datetime] = None,
) -> Tuple[int, Dict[str, Any]]:
    """Score a TLS observation. Returns (score, details)."""
    now = now or now_utc()
    findings = Findings()
    deductions: List[Dict[str, Any]] = []

    chain: List[Dict[str, Any]] = observation.get("chain") or []
    leaf: Dict[str, Any] = chain[0] if chain else {}
    protocol: Optional[str] = observation.get("protocol")
    cipher: Dict[str, Any] = observation.get("cipher") or {}
    cipher_name = cipher.get("name") or ""

    not_after = _parse_iso(leaf.get("not_after"))
    not_before = _parse_iso(leaf.get("not_before"))
    days_left = (not_after - now).days if not_after else None
    name_match = hostname_matches(hostname, leaf.get("subject_cn", ""), leaf.get("sans", []) + leaf.get("san_ips", []))
    forward_secrecy = has_forward_secrecy(cipher_name, protocol)

    details: Dict[str, Any] = {
        "host": hostname,
        "address": observation.get("address"),
        "protocol": protocol,
        "cipher": cipher,
        "forward_secrecy": forward_secrecy,
        "certificate": leaf,
        "chain": chain,
        "days_until_expiry": days_left,
        "hostname_match": name_match,
        "trust": observation.get("trust"),
    }
    if "protocols" in observation:
        details["protocols"] = observation["protocols"]

    def deduct(check: str, severity: str, title: str, recommendation: str):
        nonlocal score
        points = DEDUCTIONS[check]
        score -= points
        deductions.append({"check": check, "points": -points})
        findings.issue(severity, title, recommendation)

    # --- Expiry: terminal ---
    if not_after and now > not_after:
        findings.issue(
            "critical",
            f"Certificate expired on {not_after.date().isoformat()}",
            "Renew the certificate immediately and automate renewal (e.g. ACME).",
        )
        deductions.append({"check": "expired", "points": -100})
        details.update(findings.as_dict())
        details["deductions"] = deductions
        details["score_breakdown"] = {"start": 100, "final": 0}
        return 0, details

    score = 100

    if days_left is not None and days_left <= 7:
        deduct(
            "expiry_7_days", "high",
            f"Certificate expires in {days_left} day(s)",
            "Renew the certificate now; it expires within a week.",
        )
    elif days_left is not None and days_left <= 30:
        deduct(
            "expiry_30_days", "medium",
            f"Certificate expires in {days_left} days",
            "Schedule certificate renewal before it expires.",
        )
    elif days_left is not None:
        findings.strength(f"Certificate valid for another {days_left} days")

    if not_before and now < not_before:
        findings.issue("medium", "Certificate is not yet valid")

    # --- Hostname ---
    if not name_match:
        deduct(
            "hostname_mismatch", "high",
            f"Certificate does not cover {hostname}",
            f"Issue a certificate whose SAN list includes {hostname}.",
        )
    else:
        findings.strength(f"Certificate matches {hostname}")

    # --- Protocol ---
    if protocol in LEGACY_PROTOCOLS:
        deduct(
            "legacy_protocol", "high",
            f"Deprecated protocol negotiated ({protocol})",
            "Disable TLS 1.0/1.1 and serve TLS 1.2 or newer.",
        )
    elif protocol == "TLSv1.3":
        findings.strength("TLS 1.3 negotiated")
        bonus = min(100, score + TLS13_BONUS) - score
        score += bonus
        deductions.append({"check": "tls13_bonus", "points": bonus})
    elif protocol:
        findings.strength(f"{protocol} negotiated")

    # --- Cipher ---
    if cipher_name and is_weak_cipher(cipher_name):
        deduct(
            "weak_cipher", "high",
            f"Weak cipher suite negotiated ({cipher_name})",
            "Remove RC4, 3DES, DES, NULL and export suites from the server configuration.",
        )
    elif cipher_name:
        findings.strength(f"Strong cipher suite ({cipher_name})")

    if cipher_name and not forward_secrecy:
        deduct(
            "no_forward_secrecy", "medium",
            "Key exchange does not provide forward secrecy",
            "Prefer ECDHE (or DHE) key exchange suites.",
        )
    elif cipher_name:
        findings.strength("Forward secrecy enabled")

    # --- Key ---
    key_type = leaf.get("key_type")
    key_size = leaf.get("key_size")
    if key_type == "RSA" and key_size and key_size < MIN_RSA_BITS:
        deduct(
            "weak_rsa_key", "high",
            f"RSA key is only {key_size} bits",
            "Reissue the certificate with an RSA key of at least 2048 bits, or use ECDSA.",
        )

    # --- Chain ---
    if len(chain) > 1 and not chain_is_ordered(chain):
        deduct(
            "chain_order", "medium",
            "Certificate chain is served out of order",
            "Serve the leaf first, followed by each issuer in order.",
        )

    sha1_present = any(
        (c.get("signature_hash") or "").lower() == "sha1"
        for i, c in enumerate(chain)
        if i == 0 or not c.get("is_self_signed")
    )
    if sha1_present:
        deduct(
            "sha1_signature", "high",
            "Certificate chain uses a SHA-1 signature",
            "Reissue certificates signed with SHA-256 or stronger.",
        )

    # --- Advisory: trust and legacy protocol support ---
    trust = observation.get("trust") or {}
    if trust and trust.get("verified") is False:
        reason = trust.get("reason") or "unknown reason"
        findings.issue(
            "high",
            f"Certificate is not trusted by public CAs ({reason})",
            "Use a certificate issued by a publicly trusted CA and serve the full chain.",
        )
    elif trust.get("verified"):
        findings.strength("Certificate chain validates against public CAs")

    supported = observation.get("protocols") or {}
    legacy_supported = [p for p in ("TLSv1.0", "TLSv1.1") if supported.get(p)]
    if legacy_supported:
        findings.issue(
            "medium",
            f"Server still accepts {', '.join(legacy_supported)}",
            "Disable TLS 1.0/1.1 and serve TLS 1.2 or newer.",
        )

    final = clamp_score(score)
    details.update(findings.as_dict())
    details["deductions"] = deductions
    details["score_breakdown"] = {"start": 100, "final": final}
    return final, details
