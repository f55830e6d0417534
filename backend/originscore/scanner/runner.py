# originscore/scanner/runner.py
"""
ProbeRunner: the retry/backoff/deadline wrapper shared by every probe.

State machine per invocation:

    pending → attempt(n) → success
                         → retryable failure → backoff → attempt(n+1)
                         → terminal failure

Each attempt's outcome is reduced to a tagged Attempt before anything is
decided, so classification happens in exactly one place:

    FailureKind.DENIED      SSRF policy violation    → error, no retry
    FailureKind.TIMEOUT     deadline exceeded        → retry, then timeout
    FailureKind.NETWORK     connection / resolution  → retry, then error
    FailureKind.FATAL       probe gave up on purpose → error, no retry
    FailureKind.UNEXPECTED  bug or unknown exception → error, no retry
    rate limiter denial                              → rate_limited, probe never called

The runner stamps execution_time and retry_count on every result and never
raises. Errors are contained to the module that produced them.
"""

from __future__ import annotations

import logging
import socket
import ssl
import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Callable, Dict, Optional
from urllib.parse import urlsplit

import dns.exception
import dns.resolver
import requests

from originscore.config import DEFAULT_BASE_DELAY, DEFAULT_RETRY_ATTEMPTS
from originscore.scanner.base import (
    BaseProbe,
    ModuleResult,
    ModuleStatus,
    ProbeContext,
    ProbeReport,
    ScanConfig,
    clamp_score,
    status_for_score,
)
from originscore.scanner.errors import OriginDenied, ProbeError, ProbeNetworkError, ProbeTimeout
from originscore.scanner.guard import OriginGuard
from originscore.scanner.rate_limit import RateLimiter

logger = logging.getLogger(__name__)

TIMEOUT_ERRORS = (
    ProbeTimeout,
    FutureTimeout,
    socket.timeout,
    TimeoutError,
    requests.Timeout,
    dns.exception.Timeout,
)

NETWORK_ERRORS = (
    ProbeNetworkError,
    requests.RequestException,
    dns.resolver.NoNameservers,
    dns.exception.DNSException,
    ssl.SSLError,
    OSError,
)


class FailureKind(str, Enum):
    NONE = "none"
    DENIED = "denied"
    TIMEOUT = "timeout"
    NETWORK = "network"
    FATAL = "fatal"
    UNEXPECTED = "unexpected"


RETRYABLE = frozenset({FailureKind.TIMEOUT, FailureKind.NETWORK})


@dataclass
class Attempt:
    """Tagged outcome of one probe attempt."""
    number: int
    kind: FailureKind
    report: Optional[ProbeReport] = None
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.kind is FailureKind.NONE


def classify_exception(exc: BaseException) -> FailureKind:
    """Map an exception raised by probe code to a FailureKind."""
    if isinstance(exc, OriginDenied):
        return FailureKind.DENIED
    # Timeouts first: requests.ConnectTimeout is also a ConnectionError
    if isinstance(exc, TIMEOUT_ERRORS):
        return FailureKind.TIMEOUT
    if isinstance(exc, NETWORK_ERRORS):
        return FailureKind.NETWORK
    if isinstance(exc, ProbeError):
        return FailureKind.FATAL
    return FailureKind.UNEXPECTED


# User-facing wording per terminal outcome. Raw exception text stays in
# details["error"] and the logs.
_FAILURE_TITLES = {
    FailureKind.DENIED: "Origin was blocked by the network safety policy",
    FailureKind.TIMEOUT: "Check did not complete in time",
    FailureKind.NETWORK: "Could not connect to the origin",
    FailureKind.FATAL: "Check could not be completed",
    FailureKind.UNEXPECTED: "Check failed due to an internal error",
}


class ProbeRunner:
    """
    Runs one probe against one origin with guard, limiter, retries and a
    hard per-attempt deadline.

    Args:
        limiter:         Shared RateLimiter.
        guard:           OriginGuard handed to probes for pre-connect checks.
        retry_attempts:  Maximum attempts per invocation (default 3).
        base_delay:      Backoff before attempt n+1 is base_delay * n seconds.
        sleep:           Injectable for tests.
    """

    def __init__(
        self,
        limiter: RateLimiter,
        guard: OriginGuard,
        retry_attempts: int = DEFAULT_RETRY_ATTEMPTS,
        base_delay: float = DEFAULT_BASE_DELAY,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if retry_attempts < 1:
            raise ValueError("retry_attempts must be at least 1")
        self.limiter = limiter
        self.guard = guard
        self.retry_attempts = retry_attempts
        self.base_delay = base_delay
        self._sleep = sleep

    def run(self, probe: BaseProbe, url: str, config: ScanConfig) -> ModuleResult:
        start = time.monotonic()
        try:
            result = self._run(probe, url, config, start)
        except Exception as e:
            # Limiter store outage or a bug in the runner itself
            logger.exception(f"Probe '{probe.name.value}' crashed outside an attempt for {url}")
            result = self._failure(probe, FailureKind.UNEXPECTED, f"{type(e).__name__}: {e}")

        return replace(result, execution_time=round(time.monotonic() - start, 3))

    def _run(self, probe: BaseProbe, url: str, config: ScanConfig, start: float) -> ModuleResult:
        name = probe.name.value
        host = (urlsplit(url).hostname or "").lower()
        last: Optional[Attempt] = None

        # One slot per invocation; retries below reuse it
        reservation = self.limiter.try_acquire(name, host, probe.rate_limit_per_minute)
        if not reservation:
            return self._failure(
                probe,
                None,
                f"rate limit of {probe.rate_limit_per_minute}/min reached for {host}",
                status=ModuleStatus.RATE_LIMITED,
            )

        for number in range(1, self.retry_attempts + 1):
            if number > 1:
                delay = self.base_delay * (number - 1)
                logger.debug(f"Probe '{name}' backing off {delay:.1f}s before attempt {number}")
                self._sleep(delay)

            last = self._attempt(probe, url, config, host, number)

            if last.succeeded:
                report = last.report
                score = clamp_score(report.score)
                logger.info(
                    f"Probe '{name}' scored {score} for {host} "
                    f"(attempt {number}, {time.monotonic() - start:.2f}s)"
                )
                result = ModuleResult(
                    module=probe.name,
                    score=score,
                    status=status_for_score(score),
                    details=report.details,
                )
                return self._with_retries(result, number - 1)

            if last.kind is FailureKind.DENIED:
                # Nothing reached the target; give the slot back
                self.limiter.release(reservation)

            if last.kind in RETRYABLE and number < self.retry_attempts:
                logger.warning(
                    f"Probe '{name}' attempt {number}/{self.retry_attempts} "
                    f"failed for {host}: {last.kind.value} ({last.error})"
                )
                continue

            break

        result = self._failure(probe, last.kind, last.error)
        return self._with_retries(result, last.number - 1)

    def _attempt(
        self,
        probe: BaseProbe,
        url: str,
        config: ScanConfig,
        host: str,
        number: int,
    ) -> Attempt:
        """Run probe.execute() in a worker thread under a hard deadline."""
        ctx = ProbeContext(
            host=host,
            config=config,
            guard=self.guard,
            deadline=time.monotonic() + probe.timeout,
            attempt=number,
        )
        logger.debug(f"Probe '{probe.name.value}' attempt {number} for {host}")

        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"probe-{probe.name.value}")
        try:
            future = executor.submit(probe.execute, url, ctx)
            try:
                report = future.result(timeout=probe.timeout)
            except FutureTimeout:
                # The worker's own timeouts surface as exceptions from a done future
                if not future.done():
                    return Attempt(
                        number=number,
                        kind=FailureKind.TIMEOUT,
                        error=f"exceeded {probe.timeout:.0f}s deadline",
                    )
                raise
        except Exception as e:
            kind = classify_exception(e)
            if kind is FailureKind.UNEXPECTED:
                logger.error(
                    f"Probe '{probe.name.value}' raised unexpectedly for {host}",
                    exc_info=e,
                )
            return Attempt(number=number, kind=kind, error=f"{type(e).__name__}: {e}")
        finally:
            # Do not wait for a hung worker; its own I/O timeouts end it
            executor.shutdown(wait=False, cancel_futures=True)

        return Attempt(number=number, kind=FailureKind.NONE, report=report)

    @staticmethod
    def _with_retries(result: ModuleResult, retry_count: int) -> ModuleResult:
        return replace(result, retry_count=max(0, retry_count))

    @staticmethod
    def _failure(
        probe: BaseProbe,
        kind: Optional[FailureKind],
        error: Optional[str],
        status: Optional[ModuleStatus] = None,
    ) -> ModuleResult:
        if status is None:
            status = ModuleStatus.TIMEOUT if kind is FailureKind.TIMEOUT else ModuleStatus.ERROR

        if status is ModuleStatus.RATE_LIMITED:
            title = "Check skipped: too many recent requests to this host"
            recommendation = "Try the scan again in a minute."
        else:
            title = _FAILURE_TITLES.get(kind, _FAILURE_TITLES[FailureKind.UNEXPECTED])
            recommendation = None
            if kind is FailureKind.DENIED:
                recommendation = "Make sure the origin resolves only to public IP addresses and uses https."
            elif kind in RETRYABLE:
                recommendation = "Confirm the origin is reachable from the public internet and try again."

        details: Dict[str, Any] = {
            "error": error,
            "failure": kind.value if kind else status.value,
            "issues": [{"severity": "info", "title": title}],
            "strengths": [],
            "recommendations": [recommendation] if recommendation else [],
        }
        return ModuleResult(module=probe.name, score=0, status=status, details=details)
