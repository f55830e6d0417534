# originscore/scanner/orchestrator.py
"""
Scan coordinator: the single entry point external callers use.

Flow:
    1. Build a ScanConfig from the caller's per-origin configuration
    2. Run every probe concurrently, each wrapped by the ProbeRunner
    3. Join all of them (siblings are never cancelled)
    4. Aggregate into a ScanSummary

The only state shared between concurrent scans is the RateLimiter. No lock
is held for the duration of a scan.
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Any, Dict, List, Mapping, Optional, Union

from originscore.config import Settings, load_settings
from originscore.scanner.base import (
    BaseProbe,
    ModuleResult,
    ModuleStatus,
    ScanConfig,
    ScanSummary,
    now_utc,
)
from originscore.scanner.engines import build_probes
from originscore.scanner.guard import OriginGuard
from originscore.scanner.rate_limit import RateLimiter, build_counter_store
from originscore.scanner.runner import ProbeRunner
from originscore.utils.scoring import combine

logger = logging.getLogger(__name__)

ConfigInput = Union[ScanConfig, Mapping[str, Any], None]


class ScanCoordinator:
    """
    Runs all probes against one origin and aggregates the results.

    Args:
        settings:  Engine settings (weights, retries, timeouts).
        limiter:   Shared RateLimiter. Built from settings.redis_url if omitted.
        guard:     OriginGuard. Default uses the system resolver.
        probes:    Probe instances. Built from settings if omitted.
        runner:    ProbeRunner. Built from the other arguments if omitted.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        limiter: Optional[RateLimiter] = None,
        guard: Optional[OriginGuard] = None,
        probes: Optional[List[BaseProbe]] = None,
        runner: Optional[ProbeRunner] = None,
    ):
        self.settings = settings or load_settings()
        self.limiter = limiter or RateLimiter(build_counter_store(self.settings.redis_url))
        self.guard = guard or OriginGuard()
        self.probes = probes if probes is not None else build_probes(self.settings)
        self.runner = runner or ProbeRunner(
            limiter=self.limiter,
            guard=self.guard,
            retry_attempts=self.settings.retry_attempts,
            base_delay=self.settings.retry_base_delay,
        )

    def run(self, origin_url: str, config: ConfigInput = None) -> ScanSummary:
        """
        Scan one origin. Raises ValueError only for an invalid config; every
        probe failure is contained in its own ModuleResult.
        """
        scan_config = config if isinstance(config, ScanConfig) else ScanConfig.from_dict(config)

        started_at = now_utc()
        start = time.monotonic()
        logger.info(f"Scan started for {origin_url} (email_mode={scan_config.email_mode})")

        results = self._run_probes(origin_url, scan_config)

        summary = combine(
            results,
            base_weights=self.settings.weights,
            origin=origin_url,
            started_at=started_at,
            finished_at=now_utc(),
        )

        statuses = ", ".join(f"{name}={r.status.value}" for name, r in summary.modules.items())
        logger.info(
            f"Scan finished for {origin_url}: score={summary.total_score} grade={summary.grade} "
            f"({statuses}) in {time.monotonic() - start:.2f}s"
        )
        return summary

    def _run_probes(self, origin_url: str, config: ScanConfig) -> List[ModuleResult]:
        if not self.probes:
            return []

        results: List[ModuleResult] = []
        with ThreadPoolExecutor(
            max_workers=len(self.probes),
            thread_name_prefix="scan",
        ) as executor:
            future_to_probe = {
                executor.submit(self.runner.run, probe, origin_url, config): probe
                for probe in self.probes
            }

            for future in as_completed(future_to_probe):
                probe = future_to_probe[future]
                try:
                    results.append(future.result())
                except Exception as e:
                    # The runner never raises; this is a bug, not a probe failure
                    logger.exception(f"Runner crashed for probe '{probe.name.value}' on {origin_url}")
                    results.append(self._crashed(probe, e))

        return results

    @staticmethod
    def _crashed(probe: BaseProbe, error: Exception) -> ModuleResult:
        details: Dict[str, Any] = {
            "error": f"{type(error).__name__}: {error}",
            "failure": "unexpected",
            "issues": [{"severity": "info", "title": "Check failed due to an internal error"}],
            "strengths": [],
            "recommendations": [],
        }
        return ModuleResult(module=probe.name, score=0, status=ModuleStatus.ERROR, details=details)


# ---------------------------------------------------------------------------
# Module-level entry point
# ---------------------------------------------------------------------------

_default_coordinator: Optional[ScanCoordinator] = None
_default_lock = threading.Lock()


def get_coordinator() -> ScanCoordinator:
    """Process-wide coordinator built from the environment on first use."""
    global _default_coordinator
    with _default_lock:
        if _default_coordinator is None:
            _default_coordinator = ScanCoordinator()
        return _default_coordinator


def run_scan(origin_url: str, config: ConfigInput = None) -> ScanSummary:
    """Scan one origin with the process-wide coordinator."""
    return get_coordinator().run(origin_url, config)
