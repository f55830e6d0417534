"""Tests for ProbeRunner retries, deadlines and failure shaping."""

import socket
import threading
from unittest.mock import Mock

import pytest
import requests

from originscore.scanner.base import ModuleName, ModuleStatus, ScanConfig
from originscore.scanner.errors import OriginDenied, ProbeError, ProbeNetworkError
from originscore.scanner.rate_limit import MemoryCounterStore, RateLimiter
from originscore.scanner.runner import FailureKind, ProbeRunner, classify_exception
from tests.unit.scanning_fakes import StubProbe

URL = "https://example.com"


@pytest.fixture
def sleeps():
    """Records backoff delays instead of sleeping."""
    return []


@pytest.fixture
def runner(limiter, guard, sleeps):
    """Runner with three attempts, a 1s base delay and no real sleeping."""
    return ProbeRunner(limiter=limiter, guard=guard, retry_attempts=3, base_delay=1.0, sleep=sleeps.append)


class TestClassifyException:
    """Tests for classify_exception()."""

    @pytest.mark.parametrize("exc, kind", [
        (OriginDenied("private"), FailureKind.DENIED),
        (socket.timeout("timed out"), FailureKind.TIMEOUT),
        (requests.ConnectTimeout("slow"), FailureKind.TIMEOUT),
        (requests.ConnectionError("refused"), FailureKind.NETWORK),
        (ConnectionRefusedError(), FailureKind.NETWORK),
        (ProbeNetworkError("no route"), FailureKind.NETWORK),
        (ProbeError("bad cert"), FailureKind.FATAL),
        (KeyError("bug"), FailureKind.UNEXPECTED),
    ])
    def test_mapping(self, exc, kind):
        """Each exception family maps to one failure kind."""
        assert classify_exception(exc) is kind


class TestProbeRunner:
    """Tests for ProbeRunner.run()."""

    def test_success_on_first_attempt(self, runner, sleeps):
        """A successful probe yields a scored result with no retries."""
        probe = StubProbe(outcomes=[92])
        result = runner.run(probe, URL, ScanConfig())

        assert result.score == 92
        assert result.status is ModuleStatus.OK
        assert result.retry_count == 0
        assert result.execution_time >= 0
        assert sleeps == []

    @pytest.mark.parametrize("score, status", [
        (80, ModuleStatus.OK),
        (79, ModuleStatus.WARN),
        (60, ModuleStatus.WARN),
        (59, ModuleStatus.FAIL),
        (0, ModuleStatus.FAIL),
    ])
    def test_status_thresholds(self, runner, score, status):
        """Status follows the score thresholds."""
        assert runner.run(StubProbe(outcomes=[score]), URL, ScanConfig()).status is status

    def test_network_error_then_success(self, runner, sleeps):
        """A transient failure is retried after a backoff."""
        probe = StubProbe(outcomes=[ProbeNetworkError("reset"), 75])
        result = runner.run(probe, URL, ScanConfig())

        assert result.score == 75
        assert result.retry_count == 1
        assert probe.calls == 2
        assert sleeps == [1.0]

    def test_timeouts_exhaust_attempts(self, runner, sleeps):
        """Timeouts on every attempt end in status timeout after all attempts."""
        probe = StubProbe(outcomes=[socket.timeout("timed out")])
        result = runner.run(probe, URL, ScanConfig())

        assert result.status is ModuleStatus.TIMEOUT
        assert result.score == 0
        assert probe.calls == 3
        assert result.retry_count == 2
        assert sleeps == [1.0, 2.0]
        assert result.details["failure"] == "timeout"

    def test_network_errors_exhaust_attempts(self, runner):
        """Persistent network failure ends in status error."""
        probe = StubProbe(outcomes=[ProbeNetworkError("refused")])
        result = runner.run(probe, URL, ScanConfig())

        assert result.status is ModuleStatus.ERROR
        assert probe.calls == 3
        assert "refused" in result.details["error"]
        assert result.details["recommendations"]

    def test_denial_is_not_retried(self, runner, sleeps):
        """A guard denial stops immediately."""
        probe = StubProbe(outcomes=[OriginDenied("10.0.0.1 is in blocked range 10.0.0.0/8")])
        result = runner.run(probe, URL, ScanConfig())

        assert result.status is ModuleStatus.ERROR
        assert probe.calls == 1
        assert result.retry_count == 0
        assert sleeps == []
        assert result.details["failure"] == "denied"

    def test_fatal_error_is_not_retried(self, runner):
        """A deliberate ProbeError is terminal."""
        probe = StubProbe(outcomes=[ProbeError("TLS verification failed")])
        result = runner.run(probe, URL, ScanConfig())

        assert result.status is ModuleStatus.ERROR
        assert probe.calls == 1

    def test_unexpected_exception_is_contained(self, runner):
        """A bug in a probe becomes an error result, never an exception."""
        probe = StubProbe(outcomes=[ZeroDivisionError("oops")])
        result = runner.run(probe, URL, ScanConfig())

        assert result.status is ModuleStatus.ERROR
        assert result.details["failure"] == "unexpected"
        assert probe.calls == 1

    def test_rate_limited_probe_is_never_called(self, guard):
        """A denied rate-limit slot short-circuits the probe."""
        limiter = Mock(spec=RateLimiter)
        limiter.try_acquire.return_value = None
        runner = ProbeRunner(limiter=limiter, guard=guard, sleep=lambda s: None)
        probe = StubProbe(outcomes=[100], rate_limit_per_minute=5)

        result = runner.run(probe, URL, ScanConfig())

        assert result.status is ModuleStatus.RATE_LIMITED
        assert result.score == 0
        assert probe.calls == 0
        limiter.try_acquire.assert_called_once_with("transport", "example.com", 5)

    def test_rate_limit_applies_across_runs(self, guard):
        """The per-host budget is shared by consecutive scans."""
        limiter = RateLimiter(MemoryCounterStore(), clock=lambda: 0.0)
        runner = ProbeRunner(limiter=limiter, guard=guard, sleep=lambda s: None)
        probe = StubProbe(outcomes=[90], rate_limit_per_minute=2)
        statuses = [runner.run(probe, URL, ScanConfig()).status for _ in range(3)]
        assert statuses == [ModuleStatus.OK, ModuleStatus.OK, ModuleStatus.RATE_LIMITED]
        assert probe.calls == 2

    def test_retries_share_one_slot(self, guard):
        """Retries inside one invocation do not draw down the host budget."""
        limiter = RateLimiter(MemoryCounterStore(), clock=lambda: 0.0)
        runner = ProbeRunner(limiter=limiter, guard=guard, retry_attempts=3, sleep=lambda s: None)
        probe = StubProbe(outcomes=[socket.timeout("timed out")], rate_limit_per_minute=2)

        first = runner.run(probe, URL, ScanConfig())
        second = runner.run(probe, URL, ScanConfig())
        assert (first.status, second.status) == (ModuleStatus.TIMEOUT, ModuleStatus.TIMEOUT)
        assert second.retry_count == 2
        assert probe.calls == 6

        third = runner.run(probe, URL, ScanConfig())
        assert third.status is ModuleStatus.RATE_LIMITED
        assert third.retry_count == 0
        assert probe.calls == 6

    def test_denial_gives_its_slot_back(self, guard):
        """A guard denial does not count against the host budget."""
        limiter = RateLimiter(MemoryCounterStore(), clock=lambda: 0.0)
        runner = ProbeRunner(limiter=limiter, guard=guard, sleep=lambda s: None)
        probe = StubProbe(outcomes=[OriginDenied("blocked"), 90], rate_limit_per_minute=1)

        assert runner.run(probe, URL, ScanConfig()).details["failure"] == "denied"
        assert runner.run(probe, URL, ScanConfig()).score == 90

    def test_socket_timeout_is_not_a_deadline_overrun(self, runner):
        """A timeout raised by the probe keeps its own message."""
        probe = StubProbe(outcomes=[socket.timeout("read timed out")])
        result = runner.run(probe, URL, ScanConfig())

        assert result.status is ModuleStatus.TIMEOUT
        assert "read timed out" in result.details["error"]
        assert "deadline" not in result.details["error"]

    def test_limiter_outage_is_contained(self, guard):
        """A broken counter store yields an error result."""
        limiter = Mock(spec=RateLimiter)
        limiter.try_acquire.side_effect = ConnectionError("redis down")
        runner = ProbeRunner(limiter=limiter, guard=guard, sleep=lambda s: None)

        result = runner.run(StubProbe(), URL, ScanConfig())
        assert result.status is ModuleStatus.ERROR

    def test_hard_deadline(self, limiter, guard):
        """A probe that hangs past its timeout is abandoned."""
        release = threading.Event()

        class HangingProbe(StubProbe):
            def collect(self, url, ctx):
                self.calls += 1
                release.wait(5)
                return {"score": 100}

        probe = HangingProbe(module=ModuleName.HEADERS, timeout=0.05)
        runner = ProbeRunner(limiter=limiter, guard=guard, retry_attempts=2, base_delay=0, sleep=lambda s: None)
        try:
            result = runner.run(probe, URL, ScanConfig())
        finally:
            release.set()

        assert result.status is ModuleStatus.TIMEOUT
        assert result.retry_count == 1
        assert "deadline" in result.details["error"]

    def test_context_carries_host_and_config(self, runner):
        """Probes receive the lowercased host, the scan config and the guard."""
        probe = StubProbe()
        config = ScanConfig(email_mode="none")
        runner.run(probe, "https://EXAMPLE.com/path", config)

        ctx = probe.contexts[0]
        assert ctx.host == "example.com"
        assert ctx.config is config
        assert ctx.guard is runner.guard
        assert ctx.attempt == 1

    def test_retry_attempts_must_be_positive(self, limiter, guard):
        """Zero attempts is a configuration error."""
        with pytest.raises(ValueError):
            ProbeRunner(limiter=limiter, guard=guard, retry_attempts=0)
