"""Arbiter: agreement-gated, conflict-resolved refinement planning."""

from lessonrefine.arbiter.arbiter import Arbiter, structural_score_of, task_id_for
from lessonrefine.arbiter.conflicts import Direction, direction_of, resolve_section
from lessonrefine.arbiter.krippendorff import interval_alpha, verdict_agreement

__all__ = [
    "Arbiter",
    "Direction",
    "direction_of",
    "interval_alpha",
    "resolve_section",
    "structural_score_of",
    "task_id_for",
    "verdict_agreement",
]
