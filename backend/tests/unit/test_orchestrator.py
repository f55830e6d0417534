"""Tests for ScanCoordinator end-to-end scans with canned network observations."""

import socket
from datetime import timedelta

import pytest

from originscore.scanner.base import ModuleName, ModuleStatus, ScanConfig, now_utc
from originscore.scanner.engines import ALL_PROBES, AuthProbe, HeaderProbe, TransportProbe, build_probes
from originscore.scanner.orchestrator import ScanCoordinator
from originscore.scanner.runner import ProbeRunner
from tests.unit.scanning_fakes import StubProbe

ORIGIN = "https://example.com"


def certificate(days_left):
    now = now_utc()
    return {
        "subject": "CN=example.com",
        "subject_cn": "example.com",
        "issuer": "CN=R3",
        "sans": ["example.com"],
        "san_ips": [],
        "not_before": (now - timedelta(days=30)).isoformat(),
        "not_after": (now + timedelta(days=days_left)).isoformat(),
        "signature_hash": "sha256",
        "key_type": "RSA",
        "key_size": 2048,
        "is_self_signed": False,
    }


HARDENED_TLS = {
    "host": "example.com",
    "address": "93.184.216.34",
    "protocol": "TLSv1.3",
    "cipher": {"name": "TLS_AES_256_GCM_SHA384", "protocol": "TLSv1.3", "bits": 256},
    "chain": [certificate(days_left=60)],
    "trust": {"verified": True, "reason": None},
}

EXPIRED_TLS = dict(HARDENED_TLS, chain=[certificate(days_left=-3)])

HARDENED_HEADERS = {
    "url": ORIGIN,
    "final_url": ORIGIN,
    "status_code": 200,
    "headers": {
        "strict-transport-security": "max-age=63072000; includeSubDomains; preload",
        "content-security-policy": "default-src 'self'",
        "x-content-type-options": "nosniff",
        "x-frame-options": "DENY",
        "referrer-policy": "no-referrer",
        "permissions-policy": "geolocation=()",
    },
    "set_cookies": [],
    "redirects": [],
    "redirect_stop": None,
}

BARE_HEADERS = dict(HARDENED_HEADERS, headers={})

HARDENED_DNS = {
    "host": "example.com",
    "domain": "example.com",
    "addresses": {"A": ["93.184.216.34"], "AAAA": []},
    "email": {
        "mx": ["mail.example.com"],
        "txt": ["v=spf1 include:_spf.example.com -all"],
        "dkim": {"selector": "default", "record": "v=DKIM1; k=rsa; p=MIIBIjANBg"},
        "dkim_selectors_checked": ["default"],
        "dmarc": ["v=DMARC1; p=reject"],
        "dmarc_domain": "_dmarc.example.com",
    },
    "caa": {"domain": None, "records": []},
    "dnssec": {"domain": None, "dnskey": False, "validated": False},
}

BARE_DNS = dict(
    HARDENED_DNS,
    email={"mx": [], "txt": [], "dkim": None, "dkim_selectors_checked": ["default"], "dmarc": [],
           "dmarc_domain": "_dmarc.example.com"},
)


def canned(probe_class, observation):
    """Probe of probe_class whose collect() returns a fixed observation."""
    class Canned(probe_class):
        def collect(self, url, ctx):
            return observation
    return Canned()


class TimingOutHeaderProbe(HeaderProbe):
    def __init__(self):
        super().__init__()
        self.calls = 0

    def collect(self, url, ctx):
        self.calls += 1
        raise socket.timeout("timed out")


@pytest.fixture
def coordinator_for(settings, limiter, guard):
    """Builds a coordinator around the given probes with backoff disabled."""
    def _make(probes):
        runner = ProbeRunner(limiter=limiter, guard=guard, retry_attempts=settings.retry_attempts,
                             base_delay=0, sleep=lambda s: None)
        return ScanCoordinator(settings=settings, limiter=limiter, guard=guard, probes=probes, runner=runner)
    return _make


class TestScenarios:
    """Whole-scan scenarios through the real analyzers."""

    def test_hardened_origin(self, coordinator_for):
        """A well-configured origin gets A+."""
        coordinator = coordinator_for([
            canned(TransportProbe, HARDENED_TLS),
            canned(HeaderProbe, HARDENED_HEADERS),
            canned(AuthProbe, HARDENED_DNS),
        ])
        summary = coordinator.run(ORIGIN, {"email_mode": "expected"})

        assert summary.modules["transport"].score == 100
        assert summary.modules["headers"].score == 100
        assert summary.modules["auth"].score == 89
        assert summary.total_score == 97
        assert summary.grade == "A+"
        assert summary.weights_used == pytest.approx({"transport": 0.4, "headers": 0.3, "auth": 0.3})
        assert summary.started_at <= summary.finished_at

    def test_neglected_origin(self, coordinator_for):
        """Expired certificate, no headers and no mail auth grade F."""
        coordinator = coordinator_for([
            canned(TransportProbe, EXPIRED_TLS),
            canned(HeaderProbe, BARE_HEADERS),
            canned(AuthProbe, BARE_DNS),
        ])
        summary = coordinator.run(ORIGIN)

        assert summary.modules["transport"].score == 0
        assert summary.modules["transport"].status is ModuleStatus.FAIL
        assert summary.modules["headers"].score == 0
        # Auth is earned over available: 10 address points of 45 gives 22,
        # not the raw 10 points. The total still lands at F.
        assert summary.modules["auth"].score == 22
        assert summary.total_score == 7
        assert summary.grade == "F"

    def test_header_probe_timeout(self, coordinator_for):
        """A timed-out module is reported and the others are reweighted."""
        headers = TimingOutHeaderProbe()
        coordinator = coordinator_for([
            canned(TransportProbe, HARDENED_TLS),
            headers,
            canned(AuthProbe, HARDENED_DNS),
        ])
        summary = coordinator.run(ORIGIN)

        assert headers.calls == 3
        assert summary.modules["headers"].status is ModuleStatus.TIMEOUT
        assert summary.modules["headers"].retry_count == 2
        assert set(summary.weights_used) == {"transport", "auth"}
        assert summary.weights_used["transport"] == pytest.approx(0.4 / 0.7)
        assert summary.total_score == round(100 * 0.4 / 0.7 + 89 * 0.3 / 0.7)

    def test_email_mode_none_changes_auth(self, coordinator_for):
        """Skipping email removes the mail block from the auth score."""
        coordinator = coordinator_for([canned(AuthProbe, dict(HARDENED_DNS, email=None))])
        summary = coordinator.run(ORIGIN, ScanConfig(email_mode="none"))

        assert summary.modules["auth"].details["email"] == {"status": "skipped"}
        assert summary.modules["auth"].score == 67


class TestScanCoordinator:
    """Tests for ScanCoordinator plumbing."""

    def test_every_probe_failing(self, coordinator_for):
        """No scored module yields no total and no grade."""
        coordinator = coordinator_for([
            StubProbe(ModuleName.TRANSPORT, outcomes=[ConnectionRefusedError()]),
            StubProbe(ModuleName.HEADERS, outcomes=[ConnectionRefusedError()]),
        ])
        summary = coordinator.run(ORIGIN)

        assert summary.total_score is None
        assert summary.grade is None
        assert {r.status for r in summary.modules.values()} == {ModuleStatus.ERROR}

    def test_one_crash_does_not_cancel_siblings(self, coordinator_for):
        """A probe bug only affects its own module."""
        coordinator = coordinator_for([
            StubProbe(ModuleName.TRANSPORT, outcomes=[RuntimeError("bug")]),
            StubProbe(ModuleName.AUTH, outcomes=[70]),
        ])
        summary = coordinator.run(ORIGIN)

        assert summary.modules["transport"].status is ModuleStatus.ERROR
        assert summary.modules["auth"].score == 70
        assert summary.total_score == 70

    def test_invalid_config_raises(self, coordinator_for):
        """An unknown email mode is rejected before any probe runs."""
        probe = StubProbe()
        with pytest.raises(ValueError):
            coordinator_for([probe]).run(ORIGIN, {"email_mode": "sometimes"})
        assert probe.calls == 0

    def test_no_probes(self, coordinator_for):
        """A coordinator without probes returns an empty, unscored summary."""
        summary = coordinator_for([]).run(ORIGIN)
        assert summary.modules == {}
        assert summary.total_score is None

    def test_build_probes_uses_settings(self, settings):
        """Probes pick up their configured timeouts, limits and weights."""
        settings.timeouts["headers"] = 4.0
        settings.rate_limits["auth"] = 99
        settings.probe_legacy_tls = True
        probes = {p.name.value: p for p in build_probes(settings)}

        assert set(probes) == set(ALL_PROBES)
        assert probes["headers"].timeout == 4.0
        assert probes["auth"].rate_limit_per_minute == 99
        assert probes["transport"].probe_legacy_protocols is True
        assert probes["transport"].weight == 0.4
