"""Krippendorff's alpha at the interval level.

Coders are judges, units are rubric criteria. Missing scores are allowed:
a criterion only contributes when at least two judges scored it.
"""

from __future__ import annotations

from collections.abc import Sequence

from lessonrefine.schemas.judge import Criterion, JudgeVerdict


def _pair_sum(values: Sequence[float]) -> float:
    """Sum of squared differences over ordered pairs i != j."""
    m = len(values)
    total = sum(values)
    squares = sum(v * v for v in values)
    return 2.0 * (m * squares - total * total)


def interval_alpha(units: Sequence[Sequence[float]]) -> float:
    """Alpha for a list of units, each the values the coders assigned.

    Returns 1.0 when there is no pairable data or no expected
    disagreement. The result is clamped to [-1, 1].
    """
    pairable = [list(u) for u in units if len(u) >= 2]
    n = sum(len(u) for u in pairable)
    if n < 2:
        return 1.0

    observed = sum(_pair_sum(u) / (len(u) - 1) for u in pairable) / n
    pooled = [v for u in pairable for v in u]
    expected = _pair_sum(pooled) / (n * (n - 1))
    if expected <= 0.0:
        return 1.0

    alpha = 1.0 - observed / expected
    return max(-1.0, min(1.0, alpha))


def verdict_agreement(verdicts: Sequence[JudgeVerdict]) -> float:
    """Inter-judge agreement over the judges x criteria score matrix."""
    if len(verdicts) < 2:
        return 1.0
    units = [
        [v.criteria_scores[c] for v in verdicts if c in v.criteria_scores]
        for c in Criterion
    ]
    return interval_alpha(units)
