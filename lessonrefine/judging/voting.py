"""Weighted-quorum vote aggregation for multi-judge (CLEV) consensus.

The aggregator is generic over the number of judges: it takes a list of
(score, weight) pairs, never a fixed two-or-three judge layout. Judge
weights derive from calibration accuracy via a logistic curve.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Sequence

from pydantic import BaseModel, Field

from lessonrefine.judging.recommendation import determine_recommendation
from lessonrefine.schemas.judge import (
    Confidence,
    ConsensusMethod,
    ConsensusResult,
    Criterion,
    JudgeVerdict,
    Recommendation,
)

logger = logging.getLogger(__name__)


class VoteTally(BaseModel):
    """Recommendation vote counts."""

    counts: dict[str, int] = Field(default_factory=dict)
    winner: str | None = None
    is_tie: bool = False
    tied_options: list[str] = Field(default_factory=list)


def accuracy_weight(historical_accuracy: float) -> float:
    """Vote weight of a judge: 1 / (1 + exp(-historical_accuracy))."""
    return 1.0 / (1.0 + math.exp(-historical_accuracy))


def weighted_quorum(pairs: Sequence[tuple[float, float]]) -> float:
    """Weighted mean of (score, weight) pairs.

    Raises:
        ValueError: If there are no pairs or the weights sum to zero.
    """
    total_weight = sum(w for _, w in pairs)
    if not pairs or total_weight <= 0:
        raise ValueError("weighted_quorum needs at least one positively weighted score")
    return sum(s * w for s, w in pairs) / total_weight


def tally_votes(votes: dict[str, str]) -> VoteTally:
    """Count votes and identify winner or tie.

    Args:
        votes: Mapping of voter key -> voted-for option.
    """
    counts: dict[str, int] = {}
    for voted_for in votes.values():
        counts[voted_for] = counts.get(voted_for, 0) + 1

    if not counts:
        return VoteTally(counts={}, winner=None, is_tie=True, tied_options=[])

    max_count = max(counts.values())
    leaders = [k for k, c in counts.items() if c == max_count]
    if len(leaders) == 1:
        return VoteTally(counts=counts, winner=leaders[0])
    return VoteTally(counts=counts, is_tie=True, tied_options=sorted(leaders))


def disagreement(
    first: JudgeVerdict, second: JudgeVerdict, max_delta: float
) -> tuple[bool, float]:
    """Whether two verdicts disagree enough to need a tiebreaker.

    Disagreement is a score spread above ``max_delta`` or one verdict
    accepting while the other rejects.

    Returns:
        (needs_tiebreaker, absolute score delta)
    """
    delta = abs(first.overall_score - second.overall_score)
    opposite = (
        (first.recommendation.is_accept and second.recommendation.is_reject)
        or (first.recommendation.is_reject and second.recommendation.is_accept)
    )
    return delta > max_delta or opposite, delta


def aggregate_criteria(
    verdicts: Sequence[JudgeVerdict], weights: dict[str, float]
) -> dict[Criterion, float]:
    """Weighted mean per criterion over the verdicts that scored it."""
    result: dict[Criterion, float] = {}
    for criterion in Criterion:
        pairs = [
            (v.criteria_scores[criterion], weights[v.model_id])
            for v in verdicts
            if criterion in v.criteria_scores
        ]
        if pairs:
            result[criterion] = weighted_quorum(pairs)
    return result


def build_consensus_result(
    verdicts: Sequence[JudgeVerdict],
    *,
    tiebreaker_used: bool,
    score_delta: float = 0.0,
) -> ConsensusResult:
    """Aggregate verdicts into a ConsensusResult.

    The score is the accuracy-weighted mean. The recommendation is the
    plurality vote; a tied vote falls back to the recommendation implied
    by the aggregated score.
    """
    weights = {v.model_id: accuracy_weight(v.historical_accuracy) for v in verdicts}
    score = weighted_quorum([(v.overall_score, weights[v.model_id]) for v in verdicts])
    tally = tally_votes({v.model_id: v.recommendation.value for v in verdicts})

    if tally.winner is not None:
        recommendation = Recommendation(tally.winner)
    else:
        severities = [i.severity for v in verdicts for i in v.issues]
        recommendation = determine_recommendation(score, Confidence.MEDIUM, severities)

    if tiebreaker_used:
        method = ConsensusMethod.TIE_BREAKER
    elif len(tally.counts) == 1:
        method = ConsensusMethod.UNANIMOUS
    else:
        method = ConsensusMethod.MAJORITY

    rationale = (
        f"{method.value}: {recommendation.value} at {score:.3f} from "
        f"{len(verdicts)} judge(s), votes {tally.counts}"
    )
    logger.info("Consensus %s", rationale)
    return ConsensusResult(
        method=method,
        verdicts=list(verdicts),
        weights=weights,
        aggregated_score=score,
        recommendation=recommendation,
        tiebreaker_used=tiebreaker_used,
        score_delta=score_delta,
        rationale=rationale,
    )
