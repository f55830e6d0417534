# originscore/scanner/analyzers/dns_analyzer.py
"""
DNS and email authentication scoring.

Points earned against points available:

    A / AAAA present                 10
    Email block (email_mode=expected only, capped at 30)
        MX present                    5
        SPF                           8   (-3 for +all, -1 for ?all)
        DKIM key found                7   (-2 for an RSA key under 1024 bits)
        DMARC                        10   (-5 for p=none or unknown, -2 for quarantine)
                                          (+1 with rua/ruf reporting)
    CAA present                       5
    DNSSEC validated                 10   extra credit, never counted as available

    score = round(100 * earned / available), capped at 100

With email_mode=none the email block is skipped entirely: nothing is
queried, nothing is charged and its 30 points leave the denominator.
"""

from __future__ import annotations

import base64
import binascii
import logging
import re
from typing import Any, Dict, List, Optional, Tuple

from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.hazmat.primitives.serialization import load_der_public_key

from originscore.scanner.base import Findings, clamp_score

logger = logging.getLogger(__name__)

ADDRESS_POINTS = 10
EMAIL_POINTS = 30
MX_POINTS = 5
SPF_POINTS = 8
DKIM_POINTS = 7
DMARC_POINTS = 10
DMARC_REPORTING_BONUS = 1
CAA_POINTS = 5
DNSSEC_POINTS = 10

MIN_DKIM_RSA_BITS = 1024
SPF_LOOKUP_LIMIT = 10


# ───────────────────────────────────────────────────────────────
# Record parsers
# ───────────────────────────────────────────────────────────────

def parse_spf(record: str) -> Dict[str, Any]:
    """Mechanisms, the 'all' qualifier and the DNS lookup count of one SPF record."""
    mechanisms = []
    lookup_count = 0
    all_qualifier = None

    for part in record.split()[1:]:  # skip v=spf1
        qualifier = "+"
        mechanism = part
        if part[0] in "+-~?":
            qualifier = part[0]
            mechanism = part[1:]

        if mechanism.lower() == "all":
            all_qualifier = qualifier
            mechanisms.append({"mechanism": "all", "qualifier": qualifier})
            continue

        mechanisms.append({"mechanism": mechanism, "qualifier": qualifier})

        mech_type = mechanism.split(":")[0].split("/")[0].split("=")[0].lower()
        if mech_type in ("include", "a", "mx", "ptr", "exists", "redirect"):
            lookup_count += 1

    return {
        "record": record,
        "mechanisms": mechanisms,
        "all_qualifier": all_qualifier,
        "lookup_count": lookup_count,
    }


def parse_tags(record: str) -> Dict[str, str]:
    """k=v; pairs as used by DKIM and DMARC records."""
    tags = {}
    for part in record.split(";"):
        part = part.strip()
        if "=" in part:
            key, val = part.split("=", 1)
            tags[key.strip().lower()] = val.strip()
    return tags


def dkim_key_bits(public_key_b64: str) -> Optional[int]:
    """RSA modulus size of a DKIM p= value, or None if it is not a parseable RSA key."""
    cleaned = re.sub(r"\s+", "", public_key_b64)
    try:
        key = load_der_public_key(base64.b64decode(cleaned))
    except (ValueError, binascii.Error, UnsupportedAlgorithm):
        return None
    if isinstance(key, rsa.RSAPublicKey):
        return key.key_size
    return None


def parse_dkim(record: str) -> Dict[str, Any]:
    tags = parse_tags(record)
    key = tags.get("p", "")
    key_type = tags.get("k", "rsa").lower()
    return {
        "record": record,
        "key_type": key_type,
        "revoked": not key.strip(),
        "testing": "y" in [f.strip() for f in tags.get("t", "").split(":")],
        "key_bits": dkim_key_bits(key) if key and key_type == "rsa" else None,
    }


def parse_dmarc(record: str) -> Dict[str, Any]:
    tags = parse_tags(record)
    percentage = 100
    if "pct" in tags:
        try:
            percentage = int(tags["pct"])
        except ValueError:
            pass
    return {
        "record": record,
        "policy": (tags.get("p") or "").lower() or None,
        "subdomain_policy": tags.get("sp"),
        "percentage": percentage,
        "reporting_uris": [u.strip() for u in tags["rua"].split(",")] if tags.get("rua") else [],
        "forensic_uris": [u.strip() for u in tags["ruf"].split(",")] if tags.get("ruf") else [],
    }


# ───────────────────────────────────────────────────────────────
# Email block
# ───────────────────────────────────────────────────────────────

def _score_email(email: Dict[str, Any], domain: str, findings: Findings) -> Tuple[int, Dict[str, Any]]:
    points = 0
    summary: Dict[str, Any] = {"status": "checked"}

    # --- MX ---
    mx = email.get("mx") or []
    summary["mx"] = mx
    if mx:
        points += MX_POINTS
        findings.strength(f"MX records published ({len(mx)})")
    else:
        findings.issue("medium", "No MX records", f"Publish MX records for {domain} if it receives mail.")

    # --- SPF ---
    spf_records = [r for r in email.get("txt") or [] if r.lower().startswith("v=spf1")]
    spf = parse_spf(spf_records[0]) if spf_records else None
    summary["spf"] = spf
    if spf:
        spf_points = SPF_POINTS
        qualifier = spf["all_qualifier"]
        if qualifier == "+":
            spf_points -= 3
            findings.issue(
                "critical",
                "SPF uses +all (pass all)",
                "Change '+all' to '-all' (hard fail) or '~all' (soft fail).",
            )
        elif qualifier == "?":
            spf_points -= 1
            findings.issue(
                "high",
                "SPF uses ?all (neutral)",
                "Change '?all' to '-all' (hard fail) or '~all' (soft fail).",
            )
        elif qualifier == "-":
            findings.strength("SPF enforces -all (hard fail)")
        points += spf_points

        if len(spf_records) > 1:
            findings.issue(
                "high",
                f"Multiple SPF records ({len(spf_records)})",
                "Merge all SPF records into a single TXT record.",
            )
        if spf["lookup_count"] > SPF_LOOKUP_LIMIT:
            findings.issue(
                "high",
                f"Too many SPF DNS lookups ({spf['lookup_count']})",
                "Flatten includes or use ip4/ip6 mechanisms to reduce lookups.",
            )
    else:
        findings.issue(
            "high",
            "No SPF record found",
            "Add a TXT record starting with 'v=spf1' to define authorized mail senders.",
        )

    # --- DKIM ---
    dkim_raw = email.get("dkim")
    dkim = parse_dkim(dkim_raw["record"]) if dkim_raw else None
    if dkim:
        dkim["selector"] = dkim_raw["selector"]
    summary["dkim"] = dkim
    summary["dkim_selectors_checked"] = email.get("dkim_selectors_checked", [])
    if dkim and not dkim["revoked"]:
        dkim_points = DKIM_POINTS
        if dkim["key_bits"] is not None and dkim["key_bits"] < MIN_DKIM_RSA_BITS:
            dkim_points -= 2
            findings.issue(
                "medium",
                f"DKIM key is only {dkim['key_bits']} bits",
                "Rotate to a DKIM key of at least 2048 bits.",
            )
        else:
            findings.strength(f"DKIM key published (selector '{dkim['selector']}')")
        if dkim["testing"]:
            findings.issue("low", "DKIM testing mode enabled (t=y)", "Remove t=y once DKIM signing is verified.")
        points += dkim_points
    elif dkim:
        findings.issue(
            "medium",
            f"DKIM selector '{dkim['selector']}' is revoked (empty key)",
            "Publish the active DKIM key for your signing selector.",
        )
    else:
        findings.issue(
            "medium",
            "No DKIM key found",
            "Configure DKIM signing with your email provider and publish the public key.",
        )

    # --- DMARC ---
    dmarc_records = [r for r in email.get("dmarc") or [] if r.lower().startswith("v=dmarc1")]
    dmarc = parse_dmarc(dmarc_records[0]) if dmarc_records else None
    if dmarc:
        dmarc["domain"] = email.get("dmarc_domain")
    summary["dmarc"] = dmarc
    if dmarc:
        dmarc_points = DMARC_POINTS
        policy = dmarc["policy"]
        if policy == "reject":
            findings.strength("DMARC policy is reject")
        elif policy == "quarantine":
            dmarc_points -= 2
            findings.issue("low", "DMARC policy is quarantine", "Once confident, upgrade to 'p=reject'.")
        elif policy == "none":
            dmarc_points -= 5
            findings.issue(
                "medium",
                "DMARC policy is none (monitor only)",
                "Move to 'p=quarantine' or 'p=reject' once you've reviewed reports.",
            )
        else:
            dmarc_points -= 5
            findings.issue("high", f"Unknown DMARC policy: {policy!r}", "Use 'none', 'quarantine', or 'reject'.")

        if dmarc["reporting_uris"] or dmarc["forensic_uris"]:
            dmarc_points += DMARC_REPORTING_BONUS
            findings.strength("DMARC reporting configured")
        if dmarc["percentage"] < 100:
            findings.issue(
                "medium",
                f"DMARC applies to {dmarc['percentage']}% of mail",
                "Increase to pct=100 once you're satisfied with the policy.",
            )
        if len(dmarc_records) > 1:
            findings.issue("high", "Multiple DMARC records", "Remove duplicate DMARC records.")
        points += dmarc_points
    else:
        findings.issue(
            "high",
            "No DMARC record found",
            f"Add a TXT record at _dmarc.{domain} starting with 'v=DMARC1'.",
        )

    summary["points"] = min(EMAIL_POINTS, points)
    return summary["points"], summary


# ───────────────────────────────────────────────────────────────
# Module score
# ───────────────────────────────────────────────────────────────

def analyze_auth(observation: Dict[str, Any], email_expected: bool) -> Tuple[int, Dict[str, Any]]:
    """Score a DNS observation. Returns (score, details)."""
    findings = Findings()
    domain = observation.get("domain") or observation.get("host") or ""
    earned = 0
    available = ADDRESS_POINTS + CAA_POINTS
    breakdown: Dict[str, int] = {}

    # --- Addresses ---
    addresses = observation.get("addresses") or {}
    if addresses.get("A") or addresses.get("AAAA"):
        earned += ADDRESS_POINTS
        breakdown["addresses"] = ADDRESS_POINTS
    else:
        breakdown["addresses"] = 0
        findings.issue("high", "Host has no A or AAAA records")

    # --- Email ---
    email_observed = observation.get("email")
    if email_expected and email_observed is not None:
        available += EMAIL_POINTS
        email_points, email = _score_email(email_observed, domain, findings)
        earned += email_points
        breakdown["email"] = email_points
    else:
        email = {"status": "skipped"}

    # --- CAA ---
    caa = observation.get("caa") or {}
    if caa.get("records"):
        earned += CAA_POINTS
        breakdown["caa"] = CAA_POINTS
        findings.strength(f"CAA records restrict certificate issuance ({caa.get('domain')})")
    else:
        breakdown["caa"] = 0
        findings.issue(
            "low",
            "No CAA records",
            "Publish CAA records naming the certificate authorities allowed to issue for this domain.",
        )

    # --- DNSSEC (extra credit) ---
    dnssec = observation.get("dnssec") or {}
    if dnssec.get("validated"):
        earned += DNSSEC_POINTS
        breakdown["dnssec"] = DNSSEC_POINTS
        findings.strength("DNSSEC validated")
    else:
        breakdown["dnssec"] = 0
        title = "DNSSEC keys published but answers not validated" if dnssec.get("dnskey") else "DNSSEC not enabled"
        findings.issue("info", title, "Enable DNSSEC signing at your DNS provider and publish the DS record.")

    score = min(100, clamp_score(100 * earned / available)) if available else 0

    details: Dict[str, Any] = {
        "host": observation.get("host"),
        "domain": domain,
        "addresses": addresses,
        "email": email,
        "caa": caa,
        "dnssec": dnssec,
        "points": {"earned": earned, "available": available},
        "score_breakdown": breakdown,
    }
    details.update(findings.as_dict())
    return score, details
