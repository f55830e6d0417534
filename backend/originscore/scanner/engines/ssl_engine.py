# originscore/scanner/engines/ssl_engine.py
"""
TLS data collection for the transport probe.

Uses Python's built-in ssl and socket modules for the handshake and the
cryptography library to parse every certificate the server presents.

What this engine collects:
    - Negotiated protocol version and cipher suite
    - The full peer chain (leaf first), parsed into plain dicts
    - Whether the chain validates against the system trust store (advisory)
    - Which TLS versions the server accepts (optional, advisory)

What this engine does NOT do:
    - Score anything (that's ssl_analyzer's job)

Output data structure (observation):
    {
        "host": "example.com",
        "address": "93.184.216.34",
        "port": 443,
        "protocol": "TLSv1.3",
        "cipher": {"name": "TLS_AES_256_GCM_SHA384", "protocol": "TLSv1.3", "bits": 256},
        "chain": [
            {
                "subject": "CN=example.com",
                "subject_cn": "example.com",
                "issuer": "CN=R3,O=Let's Encrypt,C=US",
                "issuer_cn": "R3",
                "sans": ["example.com", "www.example.com"],
                "san_ips": [],
                "serial_number": "03AB...",
                "not_before": "2025-01-01T00:00:00+00:00",
                "not_after": "2025-04-01T00:00:00+00:00",
                "signature_algorithm": "sha256WithRSAEncryption",
                "signature_hash": "sha256",
                "key_type": "RSA",
                "key_size": 2048,
                "fingerprint_sha256": "AB:CD:...",
                "is_self_signed": false
            }
        ],
        "trust": {"verified": true, "reason": null},
        "protocols": {"TLSv1.0": false, "TLSv1.1": false, "TLSv1.2": true, "TLSv1.3": true}
    }
"""

from __future__ import annotations

import logging
import socket
import ssl
from dataclasses import dataclass, field
from datetime import timezone
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import urlsplit

from cryptography import x509
from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import dsa, ec, ed448, ed25519, rsa

from originscore.config import DEFAULT_RATE_LIMITS, DEFAULT_TIMEOUTS, DEFAULT_WEIGHTS
from originscore.scanner.analyzers.ssl_analyzer import analyze_transport
from originscore.scanner.base import BaseProbe, ModuleName, ProbeContext
from originscore.scanner.errors import ProbeError

logger = logging.getLogger(__name__)

DEFAULT_PORT = 443

# TLS versions to probe when legacy probing is enabled (oldest first)
TLS_VERSIONS = {
    "TLSv1.0": getattr(ssl.TLSVersion, "TLSv1", None),
    "TLSv1.1": getattr(ssl.TLSVersion, "TLSv1_1", None),
    "TLSv1.2": getattr(ssl.TLSVersion, "TLSv1_2", None),
    "TLSv1.3": getattr(ssl.TLSVersion, "TLSv1_3", None),
}


@dataclass
class Handshake:
    """Raw output of one permissive TLS handshake."""
    protocol: Optional[str]
    cipher: Optional[Tuple[str, str, int]]
    chain_der: List[bytes] = field(default_factory=list)


# -------------------------------------------------------------------
# Certificate parsing
# -------------------------------------------------------------------

def _first_attr(name: x509.Name, oid) -> str:
    attrs = name.get_attributes_for_oid(oid)
    return str(attrs[0].value) if attrs else ""


def _key_info(cert: x509.Certificate) -> Tuple[Optional[str], Optional[int]]:
    try:
        key = cert.public_key()
    except (ValueError, UnsupportedAlgorithm):
        return None, None
    if isinstance(key, rsa.RSAPublicKey):
        return "RSA", key.key_size
    if isinstance(key, ec.EllipticCurvePublicKey):
        return "EC", key.key_size
    if isinstance(key, dsa.DSAPublicKey):
        return "DSA", key.key_size
    if isinstance(key, ed25519.Ed25519PublicKey):
        return "Ed25519", 256
    if isinstance(key, ed448.Ed448PublicKey):
        return "Ed448", 456
    return type(key).__name__, None


def _validity(cert: x509.Certificate):
    if hasattr(cert, "not_valid_before_utc"):
        return cert.not_valid_before_utc, cert.not_valid_after_utc
    return (
        cert.not_valid_before.replace(tzinfo=timezone.utc),
        cert.not_valid_after.replace(tzinfo=timezone.utc),
    )


def parse_certificate(der: bytes) -> Dict[str, Any]:
    """Parse one DER certificate into the dict shape the analyzer reads."""
    cert = x509.load_der_x509_certificate(der)

    sans: List[str] = []
    san_ips: List[str] = []
    try:
        san_ext = cert.extensions.get_extension_for_class(x509.SubjectAlternativeName)
        sans = san_ext.value.get_values_for_type(x509.DNSName)
        san_ips = [str(ip) for ip in san_ext.value.get_values_for_type(x509.IPAddress)]
    except x509.ExtensionNotFound:
        pass

    not_before, not_after = _validity(cert)

    fingerprint = cert.fingerprint(hashes.SHA256()).hex()
    fingerprint_formatted = ":".join(fingerprint[i:i + 2].upper() for i in range(0, len(fingerprint), 2))

    try:
        hash_algorithm = cert.signature_hash_algorithm
        signature_hash = hash_algorithm.name if hash_algorithm else None
    except UnsupportedAlgorithm:
        signature_hash = None

    key_type, key_size = _key_info(cert)

    return {
        "subject": cert.subject.rfc4514_string(),
        "subject_cn": _first_attr(cert.subject, x509.oid.NameOID.COMMON_NAME),
        "issuer": cert.issuer.rfc4514_string(),
        "issuer_cn": _first_attr(cert.issuer, x509.oid.NameOID.COMMON_NAME),
        "sans": sans,
        "san_ips": san_ips,
        "serial_number": format(cert.serial_number, "X"),
        "not_before": not_before.isoformat(),
        "not_after": not_after.isoformat(),
        "signature_algorithm": getattr(cert.signature_algorithm_oid, "_name", None),
        "signature_hash": signature_hash,
        "key_type": key_type,
        "key_size": key_size,
        "fingerprint_sha256": fingerprint_formatted,
        "is_self_signed": cert.issuer == cert.subject,
    }


def peer_chain_der(ssock: ssl.SSLSocket) -> List[bytes]:
    """
    The chain exactly as the server sent it, leaf first. Falls back to the
    leaf alone on interpreters that do not expose the unverified chain.
    """
    getter = getattr(ssock, "get_unverified_chain", None)
    if getter is not None:
        chain = getter()
        if chain:
            return [bytes(c) for c in chain]

    sslobj = getattr(ssock, "_sslobj", None)
    getter = getattr(sslobj, "get_unverified_chain", None)
    if getter is not None:
        chain = getter()
        if chain:
            return [ssl.PEM_cert_to_DER_cert(c.public_bytes()) for c in chain]

    leaf = ssock.getpeercert(binary_form=True)
    return [leaf] if leaf else []


# -------------------------------------------------------------------
# Contexts
# -------------------------------------------------------------------

def permissive_context() -> ssl.SSLContext:
    """
    Context that completes a handshake with whatever the server offers.
    We want to see the cert and protocol even if they are bad; the
    analyzer decides severity.
    """
    context = ssl.create_default_context()
    context.check_hostname = False
    context.verify_mode = ssl.CERT_NONE
    try:
        context.minimum_version = ssl.TLSVersion.TLSv1
    except (ValueError, ssl.SSLError):
        pass
    try:
        context.set_ciphers("ALL:@SECLEVEL=0")
    except ssl.SSLError:
        pass
    return context


def verifying_context() -> ssl.SSLContext:
    context = ssl.create_default_context()
    # Hostname coverage is scored separately
    context.check_hostname = False
    return context


class TransportProbe(BaseProbe):
    """
    Scores the TLS configuration and certificate of an origin.

    Every connection goes through ctx.guard.resolve_public() first and is
    opened to the address it approved, with the original hostname as SNI.
    """

    default_timeout = DEFAULT_TIMEOUTS["transport"]
    default_rate_limit = DEFAULT_RATE_LIMITS["transport"]
    default_weight = DEFAULT_WEIGHTS["transport"]

    def __init__(
        self,
        timeout: Optional[float] = None,
        rate_limit_per_minute: Optional[int] = None,
        weight: Optional[float] = None,
        probe_legacy_protocols: bool = False,
    ):
        super().__init__(timeout, rate_limit_per_minute, weight)
        self.probe_legacy_protocols = probe_legacy_protocols

    @property
    def name(self) -> ModuleName:
        return ModuleName.TRANSPORT

    def collect(self, url: str, ctx: ProbeContext) -> Dict[str, Any]:
        parts = urlsplit(url)
        hostname = (parts.hostname or ctx.host).lower()
        port = parts.port or DEFAULT_PORT

        address = self._approved_address(hostname, ctx)
        handshake = self._handshake(address, port, hostname, ctx)

        if not handshake.chain_der:
            raise ProbeError(f"{hostname} presented no certificate")

        chain = []
        for der in handshake.chain_der:
            try:
                chain.append(parse_certificate(der))
            except ValueError as e:
                logger.debug(f"Skipping unparseable certificate from {hostname}: {e}")
        if not chain:
            raise ProbeError(f"could not parse the certificate presented by {hostname}")

        cipher = None
        if handshake.cipher:
            name, protocol, bits = handshake.cipher
            cipher = {"name": name, "protocol": protocol, "bits": bits}

        observation: Dict[str, Any] = {
            "host": hostname,
            "address": address,
            "port": port,
            "protocol": handshake.protocol,
            "cipher": cipher,
            "chain": chain,
            "trust": self._check_trust(hostname, port, ctx),
        }

        if self.probe_legacy_protocols:
            observation["protocols"] = self._probe_protocols(hostname, port, ctx)

        return observation

    def analyze(self, observation: Dict[str, Any], ctx: ProbeContext) -> Tuple[int, Dict[str, Any]]:
        return analyze_transport(observation, observation.get("host") or ctx.host)

    # -------------------------------------------------------------------
    # Network
    # -------------------------------------------------------------------

    @staticmethod
    def _approved_address(hostname: str, ctx: ProbeContext) -> str:
        """Fresh guard check; the returned address is the one we connect to."""
        return ctx.guard.resolve_public(hostname)[0]

    def _handshake(self, address: str, port: int, hostname: str, ctx: ProbeContext) -> Handshake:
        context = permissive_context()
        with socket.create_connection((address, port), timeout=ctx.io_timeout()) as sock:
            with context.wrap_socket(sock, server_hostname=hostname) as ssock:
                return Handshake(
                    protocol=ssock.version(),
                    cipher=ssock.cipher(),
                    chain_der=peer_chain_der(ssock),
                )

    def _check_trust(self, hostname: str, port: int, ctx: ProbeContext) -> Dict[str, Any]:
        """Second handshake with verification on. Advisory only."""
        try:
            address = self._approved_address(hostname, ctx)
            with socket.create_connection((address, port), timeout=ctx.io_timeout()) as sock:
                with verifying_context().wrap_socket(sock, server_hostname=hostname):
                    return {"verified": True, "reason": None}
        except ssl.SSLCertVerificationError as e:
            return {"verified": False, "reason": e.verify_message or str(e)}
        except ssl.SSLError as e:
            return {"verified": False, "reason": e.reason or str(e)}
        except (OSError, ProbeError) as e:
            logger.debug(f"Trust check for {hostname} did not complete: {e}")
            return {"verified": None, "reason": "trust check could not complete"}

    def _probe_protocols(self, hostname: str, port: int, ctx: ProbeContext) -> Dict[str, bool]:
        """Try each TLS version on its own."""
        results: Dict[str, bool] = {}
        for version_name, version_const in TLS_VERSIONS.items():
            if version_const is None or ctx.remaining() <= 0:
                results[version_name] = False
                continue
            results[version_name] = self._test_protocol_version(hostname, port, version_const, ctx)
        return results

    def _test_protocol_version(self, hostname: str, port: int, version, ctx: ProbeContext) -> bool:
        try:
            context = permissive_context()
            context.minimum_version = version
            context.maximum_version = version
            address = self._approved_address(hostname, ctx)
            with socket.create_connection((address, port), timeout=ctx.io_timeout()) as sock:
                with context.wrap_socket(sock, server_hostname=hostname):
                    return True
        except (ssl.SSLError, OSError, ValueError, ProbeError):
            return False
