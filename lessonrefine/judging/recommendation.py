"""Score-to-recommendation mapping shared by judges and the cascade."""

from __future__ import annotations

from collections.abc import Sequence

from lessonrefine.schemas.judge import (
    CRITERION_WEIGHTS,
    Confidence,
    Criterion,
    Recommendation,
    Severity,
)

ACCEPT_SCORE = 0.90
MINOR_REVISION_SCORE = 0.75
REFINEMENT_SCORE = 0.60
MAX_MINOR_REVISION_ISSUES = 3


def determine_recommendation(
    score: float,
    confidence: Confidence,
    severities: Sequence[Severity] = (),
) -> Recommendation:
    """Recommend an action from a score, a confidence and the issue severities."""
    if confidence is Confidence.LOW:
        return Recommendation.ESCALATE_TO_HUMAN
    if score >= ACCEPT_SCORE:
        return Recommendation.ACCEPT
    if score >= MINOR_REVISION_SCORE:
        if Severity.CRITICAL not in severities and len(severities) <= MAX_MINOR_REVISION_ISSUES:
            return Recommendation.ACCEPT_WITH_MINOR_REVISION
        return Recommendation.ITERATIVE_REFINEMENT
    if score >= REFINEMENT_SCORE:
        return Recommendation.ITERATIVE_REFINEMENT
    return Recommendation.REGENERATE


def weighted_overall(scores: dict[Criterion, float]) -> float:
    """Rubric-weighted overall score over the criteria present in ``scores``."""
    total = sum(CRITERION_WEIGHTS[c] for c in scores)
    if not total:
        return 0.0
    return sum(CRITERION_WEIGHTS[c] * s for c, s in scores.items()) / total
