"""Refinement loop: iteration state, termination control and the session driver."""

from lessonrefine.loop.state import IterationState, RevertPoint
from lessonrefine.loop.best_effort import build_best_effort, quality_status, select_best
from lessonrefine.loop.controller import Decision, IterationController
from lessonrefine.loop.session import RefinementSession

__all__ = [
    "Decision",
    "IterationController",
    "IterationState",
    "RefinementSession",
    "RevertPoint",
    "build_best_effort",
    "quality_status",
    "select_best",
]
