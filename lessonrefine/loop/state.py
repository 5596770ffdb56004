"""Session-wide iteration state, threaded explicitly through every call."""

from __future__ import annotations

import time
from dataclasses import dataclass, field

from lessonrefine.errors import BudgetExceededError
from lessonrefine.schemas.judge import TargetedIssue
from lessonrefine.schemas.pipeline import OperationMode, SessionLimits
from lessonrefine.schemas.session import (
    IterationSnapshot,
    RefinementStatus,
    RegressionRecord,
    StopReason,
)


@dataclass
class RevertPoint:
    """Pre-patch text of a section changed during the current iteration."""

    section_id: str
    text: str
    task_id: str
    issue: TargetedIssue


@dataclass
class IterationState:
    """Progress of one refinement session.

    Owned by the session for its whole lifetime. ``locked_sections`` only
    ever grows and ``iteration`` only ever increases.
    """

    limits: SessionLimits
    mode: OperationMode
    iteration: int = 0
    status: RefinementStatus = RefinementStatus.RUNNING
    score_history: list[float] = field(default_factory=list)
    snapshots: list[IterationSnapshot] = field(default_factory=list)
    locked_sections: set[str] = field(default_factory=set)
    section_edit_count: dict[str, int] = field(default_factory=dict)
    tokens_used: int = 0
    started_at: float = field(default_factory=time.monotonic)
    regressions: list[RegressionRecord] = field(default_factory=list)
    requeued: list[TargetedIssue] = field(default_factory=list)
    revert_points: dict[str, RevertPoint] = field(default_factory=dict)
    budget_warned: bool = False

    def elapsed(self, now: float | None = None) -> float:
        return (time.monotonic() if now is None else now) - self.started_at

    def record_edit(self, section_id: str, lock_after: int) -> bool:
        """Count a dispatched edit. True when it newly locks the section."""
        count = self.section_edit_count.get(section_id, 0) + 1
        self.section_edit_count[section_id] = count
        if count >= lock_after and section_id not in self.locked_sections:
            self.locked_sections.add(section_id)
            return True
        return False

    def add_tokens(self, tokens: int, warning_ratio: float) -> bool:
        """Add spent tokens. True the first time use crosses the warning ratio."""
        self.tokens_used += tokens
        if not self.budget_warned and self.tokens_used >= self.limits.token_budget * warning_ratio:
            self.budget_warned = True
            return True
        return False

    def exhausted(self, now: float | None = None) -> StopReason | None:
        """Token or wall-clock budget that is used up, if any."""
        if self.tokens_used >= self.limits.token_budget:
            return StopReason.TOKEN_BUDGET
        if self.elapsed(now) >= self.limits.timeout_seconds:
            return StopReason.TIMEOUT
        return None

    def check_budget(self, now: float | None = None) -> None:
        """Stop further dispatch once a budget is used up.

        Raises:
            BudgetExceededError: If the token or time budget is used up.
        """
        reason = self.exhausted(now)
        if reason is StopReason.TOKEN_BUDGET:
            raise BudgetExceededError("token", self.tokens_used, self.limits.token_budget)
        if reason is StopReason.TIMEOUT:
            raise BudgetExceededError("time", self.elapsed(now), self.limits.timeout_seconds)

    def hard_limit(self, now: float | None = None) -> StopReason | None:
        if self.iteration >= self.limits.max_iterations:
            return StopReason.MAX_ITERATIONS
        return self.exhausted(now)

    @property
    def best_score(self) -> float:
        return max(self.score_history, default=0.0)
