"""Session records: iteration snapshots, best-effort selection and the outcome."""

from __future__ import annotations

from enum import StrEnum

from pydantic import BaseModel, Field

from lessonrefine.schemas.content import LessonDocument
from lessonrefine.schemas.judge import Criterion, TargetedIssue


class RefinementStatus(StrEnum):
    """Iteration controller states. Everything except RUNNING is terminal."""

    RUNNING = "RUNNING"
    ACCEPTED = "ACCEPTED"
    ACCEPTED_WITH_WARNING = "ACCEPTED_WITH_WARNING"
    ESCALATED = "ESCALATED"
    BEST_EFFORT = "BEST_EFFORT"

    @property
    def is_terminal(self) -> bool:
        return self is not RefinementStatus.RUNNING


class StopReason(StrEnum):
    """Why the controller left RUNNING."""

    ACCEPT_THRESHOLD = "accept_threshold"
    GOOD_ENOUGH = "good_enough"
    MAX_ITERATIONS = "max_iterations"
    TOKEN_BUDGET = "token_budget"
    TIMEOUT = "timeout"
    CONVERGED = "converged"
    NO_ACTIONABLE_TASKS = "no_actionable_tasks"
    FULL_REGENERATE = "full_regenerate"


class QualityStatus(StrEnum):
    """Quality band of a best-effort result."""

    GOOD = "good"
    ACCEPTABLE = "acceptable"
    BELOW_STANDARD = "below_standard"


class IterationSnapshot(BaseModel):
    """Evaluated content at one iteration boundary."""

    iteration: int = Field(ge=1)
    score: float = Field(ge=0.0, le=1.0)
    content: LessonDocument
    unresolved_issues: list[TargetedIssue] = Field(default_factory=list)
    tokens_used: int = Field(default=0, ge=0, description="Session tokens at this boundary")


class RegressionRecord(BaseModel):
    """A quality lock trip that caused a revert."""

    iteration: int
    section_id: str
    criterion: Criterion
    locked_score: float
    observed_score: float
    task_id: str = ""


class BestEffortResult(BaseModel):
    """Highest-scoring snapshot chosen when no threshold was met."""

    selected_iteration: int
    score: float
    quality_status: QualityStatus
    content: LessonDocument
    unresolved_issues: list[TargetedIssue] = Field(default_factory=list)
    improvement_hints: list[str] = Field(default_factory=list)


class RefinementOutcome(BaseModel):
    """What a refinement session returns to its caller."""

    status: RefinementStatus
    final_score: float = Field(ge=0.0, le=1.0)
    iterations_used: int = Field(ge=0)
    tokens_used: int = Field(ge=0)
    unresolved_issues: list[TargetedIssue] = Field(default_factory=list)
    content: LessonDocument
    human_review: bool = Field(default=False, description="Set when the session escalated")
    stop_reason: StopReason
    best_effort: BestEffortResult | None = None
    regressions: list[RegressionRecord] = Field(default_factory=list)
    locked_sections: list[str] = Field(default_factory=list)
    full_regeneration_required: bool = False
    score_history: list[float] = Field(default_factory=list)
