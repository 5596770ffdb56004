"""Iteration controller: the termination state machine.

RUNNING is the only non-terminal status. At every iteration boundary the
conditions are evaluated in a fixed order: accept threshold, good-enough
threshold, hard limits, convergence. The first one that holds decides the
terminal status; otherwise the loop continues. A lesson that clears a
threshold on the evaluation that also exhausts a limit is still accepted.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from lessonrefine.loop.state import IterationState
from lessonrefine.schemas.pipeline import OperationMode, RefinementConfig
from lessonrefine.schemas.session import RefinementStatus, StopReason

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Decision:
    status: RefinementStatus
    reason: StopReason


class IterationController:
    """Decides, per iteration boundary, whether and how the session ends."""

    def __init__(self, config: RefinementConfig) -> None:
        self._mode = config.mode
        self._thresholds = config.thresholds
        self._convergence = config.convergence_threshold

    @property
    def mode(self) -> OperationMode:
        return self._mode

    def decide(
        self,
        state: IterationState,
        score: float,
        has_critical: bool,
        now: float | None = None,
    ) -> Decision | None:
        """Terminal decision for the evaluated ``score``, or None to keep going."""
        if score >= self._thresholds.accept:
            return Decision(RefinementStatus.ACCEPTED, StopReason.ACCEPT_THRESHOLD)
        if score >= self._thresholds.good_enough and not has_critical:
            if self._mode is OperationMode.SEMI_AUTO:
                return Decision(RefinementStatus.ACCEPTED, StopReason.GOOD_ENOUGH)
            return Decision(RefinementStatus.ACCEPTED_WITH_WARNING, StopReason.GOOD_ENOUGH)
        limit = state.hard_limit(now)
        if limit is not None:
            return self.stop(limit)
        if self.converged(state.score_history):
            return self.stop(StopReason.CONVERGED)
        return None

    def converged(self, history: list[float]) -> bool:
        """Improvement between the last two evaluations fell below the threshold."""
        if len(history) < 2:
            return False
        return history[-1] - history[-2] < self._convergence

    def stop(self, reason: StopReason) -> Decision:
        """Mode-specific termination: semi-auto escalates, full-auto falls back."""
        if self._mode is OperationMode.SEMI_AUTO:
            status = RefinementStatus.ESCALATED
        else:
            status = RefinementStatus.BEST_EFFORT
        logger.info("Stopping refinement (%s): %s", reason, status)
        return Decision(status, reason)
