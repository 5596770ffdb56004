"""Deterministic lesson checks used by the cascade and the verifier."""

from lessonrefine.heuristics.filter import HeuristicFilter
from lessonrefine.heuristics.readability import (
    count_syllables,
    count_words,
    flesch_kincaid_grade,
)

__all__ = [
    "HeuristicFilter",
    "count_syllables",
    "count_words",
    "flesch_kincaid_grade",
]
