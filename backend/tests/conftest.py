"""
Shared pytest fixtures for backend tests.

Provides a guard with a fake resolver, an in-memory rate limiter, probe
contexts and generated X.509 certificates. Nothing here touches the network.
"""
import sys
import time
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID

# Add backend directory to path for imports
backend_dir = Path(__file__).parent.parent
sys.path.insert(0, str(backend_dir))

from originscore.config import Settings
from originscore.scanner.base import ProbeContext, ScanConfig
from originscore.scanner.guard import OriginGuard
from originscore.scanner.rate_limit import MemoryCounterStore, RateLimiter
from tests.unit.scanning_fakes import FakeAddressResolver

PUBLIC_IP = "93.184.216.34"


@pytest.fixture
def address_resolver():
    """Resolver where example.com and www.example.com are public."""
    return FakeAddressResolver({
        "example.com": [PUBLIC_IP],
        "www.example.com": [PUBLIC_IP],
        "cdn.example.net": ["151.101.1.69", "2a04:4e42::69"],
        "internal.example.com": ["10.0.0.5"],
        "mixed.example.com": [PUBLIC_IP, "127.0.0.1"],
        "metadata.example.com": ["169.254.169.254"],
    })


@pytest.fixture
def guard(address_resolver):
    """OriginGuard backed by the fake resolver."""
    return OriginGuard(resolver=address_resolver)


@pytest.fixture
def limiter():
    """Rate limiter with in-process counters."""
    return RateLimiter(MemoryCounterStore())


@pytest.fixture
def settings():
    """Default settings with retries that never sleep long."""
    return Settings(retry_base_delay=0.0)


@pytest.fixture
def make_ctx(guard):
    """Factory for ProbeContext objects with a generous deadline."""
    def _make(host="example.com", config=None, timeout=10.0):
        return ProbeContext(
            host=host,
            config=config or ScanConfig(),
            guard=guard,
            deadline=time.monotonic() + timeout,
        )
    return _make


@pytest.fixture(scope="session")
def rsa_key():
    """One 2048-bit key for the whole session; generation is slow."""
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture(scope="session")
def make_cert(rsa_key):
    """
    Factory for DER certificates.

    Signed by issuer_key under issuer_name when given, otherwise self-signed.
    """
    def _make(
        common_name="example.com",
        sans=("example.com",),
        days_valid=90,
        not_before=None,
        key=None,
        issuer_name=None,
        issuer_key=None,
        hash_algorithm=None,
    ):
        key = key or rsa_key
        subject = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])
        issuer = issuer_name or subject
        now = datetime.now(timezone.utc)
        start = not_before or now - timedelta(days=1)

        builder = (
            x509.CertificateBuilder()
            .subject_name(subject)
            .issuer_name(issuer)
            .public_key(key.public_key())
            .serial_number(x509.random_serial_number())
            .not_valid_before(start)
            .not_valid_after(start + timedelta(days=days_valid))
        )
        if sans:
            builder = builder.add_extension(
                x509.SubjectAlternativeName([x509.DNSName(s) for s in sans]),
                critical=False,
            )
        cert = builder.sign(issuer_key or key, hash_algorithm or hashes.SHA256())
        return cert.public_bytes(serialization.Encoding.DER)

    return _make
