"""Cascade evaluation: heuristics, single judge and CLEV voting."""

from lessonrefine.judging.cascade import CascadeController
from lessonrefine.judging.recommendation import determine_recommendation
from lessonrefine.judging.voting import (
    accuracy_weight,
    build_consensus_result,
    tally_votes,
    weighted_quorum,
)

__all__ = [
    "CascadeController",
    "accuracy_weight",
    "build_consensus_result",
    "determine_recommendation",
    "tally_votes",
    "weighted_quorum",
]
