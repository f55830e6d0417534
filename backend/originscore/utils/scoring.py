# File: originscore/utils/scoring.py
# =============================================================================
# Score Aggregator
# =============================================================================
# Single source of truth for turning per-module results into one origin score.
# Used by: scanner/orchestrator, the scan API and the CLI.
#
# Only modules with a real score (ok / warn / fail) take part. Weights of the
# modules that did take part are renormalized to sum to 1.0, so a scan where
# one probe timed out is still comparable with a full one.
#
# Grades:
#   A+ >= 95   A >= 90   B+ >= 85   B >= 80   C >= 70   D >= 60   F below
#
# No scored module means no score at all (None), never grade F.
# =============================================================================

from __future__ import annotations

import logging
from datetime import datetime
from typing import Dict, Iterable, Mapping, Optional

from originscore.config import DEFAULT_WEIGHTS, validate_weights
from originscore.scanner.base import ModuleResult, ScanSummary, clamp_score

logger = logging.getLogger(__name__)

GRADE_THRESHOLDS = [
    (95, "A+"),
    (90, "A"),
    (85, "B+"),
    (80, "B"),
    (70, "C"),
    (60, "D"),
]


def grade_for(score: Optional[int]) -> Optional[str]:
    """Letter grade for a 0-100 score. None stays None."""
    if score is None:
        return None
    for threshold, grade in GRADE_THRESHOLDS:
        if score >= threshold:
            return grade
    return "F"


def normalize_weights(base_weights: Mapping[str, float], present: Iterable[str]) -> Dict[str, float]:
    """
    Redistribute base weights over the modules that are present.

    Returns {} when none of the present modules carries any weight.
    """
    present = [m for m in present if m in base_weights]
    total = sum(base_weights[m] for m in present)
    if total <= 0:
        return {}
    return {m: base_weights[m] / total for m in present}


def combine(
    results: Iterable[ModuleResult],
    base_weights: Optional[Mapping[str, float]] = None,
    origin: str = "",
    started_at: Optional[datetime] = None,
    finished_at: Optional[datetime] = None,
) -> ScanSummary:
    """
    Aggregate module results into a ScanSummary.

    Every result appears in summary.modules; only scored ones influence
    total_score and weights_used.
    """
    weights = validate_weights(base_weights if base_weights is not None else DEFAULT_WEIGHTS)

    modules: Dict[str, ModuleResult] = {}
    for result in results:
        modules[result.module.value] = result

    scored = [name for name, r in modules.items() if r.is_scored]
    weights_used = normalize_weights(weights, scored)

    if not weights_used:
        logger.info(f"No module produced a score for {origin or 'origin'}")
        return ScanSummary(
            origin=origin,
            total_score=None,
            grade=None,
            weights_used={},
            modules=modules,
            started_at=started_at,
            finished_at=finished_at,
        )

    total = clamp_score(sum(w * modules[name].score for name, w in weights_used.items()))

    return ScanSummary(
        origin=origin,
        total_score=total,
        grade=grade_for(total),
        weights_used=weights_used,
        modules=modules,
        started_at=started_at,
        finished_at=finished_at,
    )
