# originscore/scanner/base.py
"""
Base classes and data structures for the origin scoring engine.

Architecture:
    ScanCoordinator → ProbeRunner → BaseProbe → ModuleResult → ScanSummary

BaseProbe:    Supplies protocol logic only. collect() gathers raw facts from
              the network, analyze() turns them into a score and a details
              dict. Probes NEVER retry, sleep, time themselves or consult
              the rate limiter.

ProbeRunner:  Wraps every probe with guard checks, rate limiting, retries,
              deadlines and uniform result shaping (see runner.py).

ModuleResult and ScanSummary are the only shapes that leave the engine.
The persistence layer stores them as opaque JSON via to_dict().
"""

from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Tuple

if TYPE_CHECKING:
    from originscore.scanner.guard import OriginGuard

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def now_utc() -> datetime:
    """Timezone-aware UTC timestamp."""
    return datetime.now(timezone.utc)


def clamp_score(value: float) -> int:
    """Round half-up and clamp to the 0-100 score range."""
    return max(0, min(100, int(value + 0.5) if value >= 0 else 0))


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class ModuleName(str, Enum):
    TRANSPORT = "transport"
    HEADERS = "headers"
    AUTH = "auth"


class ModuleStatus(str, Enum):
    OK = "ok"
    WARN = "warn"
    FAIL = "fail"
    ERROR = "error"
    TIMEOUT = "timeout"
    RATE_LIMITED = "rate_limited"


# Statuses that carry a real score and take part in aggregation
SCORED_STATUSES = frozenset({ModuleStatus.OK, ModuleStatus.WARN, ModuleStatus.FAIL})

STATUS_OK_THRESHOLD = 80
STATUS_WARN_THRESHOLD = 60


def status_for_score(score: int) -> ModuleStatus:
    if score >= STATUS_OK_THRESHOLD:
        return ModuleStatus.OK
    if score >= STATUS_WARN_THRESHOLD:
        return ModuleStatus.WARN
    return ModuleStatus.FAIL


EMAIL_MODES = ("expected", "none")


# ---------------------------------------------------------------------------
# Data structures
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ScanConfig:
    """
    Per-origin configuration supplied by the domain-management collaborator.

    Fields:
        email_mode:     "expected" if the origin's domain sends mail and should
                        be judged on SPF/DKIM/DMARC, "none" to skip those checks.
        dkim_selector:  Selector tried first when looking for a DKIM key.
    """
    email_mode: str = "expected"
    dkim_selector: Optional[str] = None

    def __post_init__(self):
        if self.email_mode not in EMAIL_MODES:
            raise ValueError(
                f"email_mode must be one of {', '.join(EMAIL_MODES)} (got {self.email_mode!r})"
            )

    @property
    def email_expected(self) -> bool:
        return self.email_mode == "expected"

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "ScanConfig":
        data = data or {}
        email_mode = str(data.get("email_mode") or "expected").strip().lower()
        selector = str(data.get("dkim_selector") or "").strip() or None
        return cls(email_mode=email_mode, dkim_selector=selector)


@dataclass(frozen=True)
class ModuleResult:
    """
    Output of one probe for one origin. Immutable once created.

    Fields:
        module:          Which probe produced it.
        score:           0-100. Always 0 for error/timeout/rate_limited.
        status:          ok/warn/fail derived from score, or one of the
                         terminal statuses when no trustworthy score exists.
        details:         Findings bag: issues, strengths, recommendations and
                         raw protocol facts. Not interpreted by the aggregator.
        execution_time:  Wall-clock seconds, stamped by the runner.
        retry_count:     Attempts beyond the first, stamped by the runner.
    """
    module: ModuleName
    score: int
    status: ModuleStatus
    details: Dict[str, Any] = field(default_factory=dict)
    execution_time: float = 0.0
    retry_count: int = 0

    @property
    def is_scored(self) -> bool:
        return self.status in SCORED_STATUSES

    def to_dict(self) -> Dict[str, Any]:
        return {
            "module": self.module.value,
            "score": self.score,
            "status": self.status.value,
            "details": self.details,
            "execution_time": self.execution_time,
            "retry_count": self.retry_count,
        }


@dataclass(frozen=True)
class ScanSummary:
    """
    Output of one full scan.

    total_score and grade are None when no module produced a score. Callers
    must treat that as a failed scan, never as grade F.
    """
    origin: str
    total_score: Optional[int]
    grade: Optional[str]
    weights_used: Dict[str, float] = field(default_factory=dict)
    modules: Dict[str, ModuleResult] = field(default_factory=dict)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    @property
    def succeeded(self) -> bool:
        return self.total_score is not None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "origin": self.origin,
            "total_score": self.total_score,
            "grade": self.grade,
            "weights_used": self.weights_used,
            "modules": {name: r.to_dict() for name, r in self.modules.items()},
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }


@dataclass
class ProbeReport:
    """What a probe hands back to the runner on success."""
    score: int
    details: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ProbeContext:
    """
    Per-attempt context passed to BaseProbe.execute().

    deadline is a time.monotonic() value. Probes pass remaining() to every
    socket/HTTP/DNS call so in-flight I/O ends by its own timeout.
    """
    host: str
    config: ScanConfig
    guard: "OriginGuard"
    deadline: float
    attempt: int = 1

    def remaining(self) -> float:
        return max(0.0, self.deadline - time.monotonic())

    def io_timeout(self, ceiling: Optional[float] = None) -> float:
        """Timeout for the next I/O call, never below a small floor."""
        remaining = self.remaining()
        if ceiling is not None:
            remaining = min(remaining, ceiling)
        return max(remaining, 0.1)


class Findings:
    """
    Collects the human-readable part of a probe's details.

    Issues are dicts (severity + title) so the product can sort and badge
    them; strengths and recommendations are plain strings.
    """

    def __init__(self):
        self.issues: List[Dict[str, str]] = []
        self.strengths: List[str] = []
        self.recommendations: List[str] = []

    def issue(self, severity: str, title: str, recommendation: Optional[str] = None):
        self.issues.append({"severity": severity, "title": title})
        if recommendation and recommendation not in self.recommendations:
            self.recommendations.append(recommendation)

    def strength(self, text: str):
        self.strengths.append(text)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "issues": list(self.issues),
            "strengths": list(self.strengths),
            "recommendations": list(self.recommendations),
        }


# ---------------------------------------------------------------------------
# Abstract probe
# ---------------------------------------------------------------------------

class BaseProbe(ABC):
    """
    Abstract base for the three concrete probes.

    To create a probe:
        1. Subclass BaseProbe
        2. Set the `name` property
        3. Implement collect(url, ctx) -> observation dict (network I/O)
        4. Implement analyze(observation, ctx) -> (score, details)

    The runner reads timeout / rate_limit_per_minute / weight; the probe
    itself never enforces them.
    """

    default_timeout: float = 15.0
    default_rate_limit: int = 10
    default_weight: float = 0.0

    def __init__(
        self,
        timeout: Optional[float] = None,
        rate_limit_per_minute: Optional[int] = None,
        weight: Optional[float] = None,
    ):
        self.timeout = float(timeout if timeout is not None else self.default_timeout)
        self.rate_limit_per_minute = int(
            rate_limit_per_minute if rate_limit_per_minute is not None else self.default_rate_limit
        )
        self.weight = float(weight if weight is not None else self.default_weight)

    @property
    @abstractmethod
    def name(self) -> ModuleName:
        """Module this probe scores."""
        ...

    def execute(self, url: str, ctx: ProbeContext) -> ProbeReport:
        observation = self.collect(url, ctx)
        score, details = self.analyze(observation, ctx)
        return ProbeReport(score=clamp_score(score), details=details)

    @abstractmethod
    def collect(self, url: str, ctx: ProbeContext) -> Dict[str, Any]:
        """Perform the network I/O and return raw facts."""
        ...

    @abstractmethod
    def analyze(self, observation: Dict[str, Any], ctx: ProbeContext) -> Tuple[int, Dict[str, Any]]:
        """Turn raw facts into (score, details). Must not touch the network."""
        ...

    def __repr__(self) -> str:
        return f"<{type(self).__name__} timeout={self.timeout} limit={self.rate_limit_per_minute}/min>"
