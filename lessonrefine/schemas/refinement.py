"""Refinement plan schemas produced by the Arbiter and consumed by execution."""

from __future__ import annotations

from enum import StrEnum

from pydantic import BaseModel, Field, field_validator

from lessonrefine.schemas.judge import (
    ContextAnchors,
    Criterion,
    FixAction,
    Severity,
    TargetedIssue,
)


class TaskStatus(StrEnum):
    """Lifecycle of a single section task."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


class PlanStatus(StrEnum):
    """Lifecycle of a refinement plan."""

    PENDING = "PENDING"
    EXECUTING = "EXECUTING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class AgreementTier(StrEnum):
    """Issue filtering tier derived from Krippendorff's alpha."""

    HIGH = "high"          # keep every issue
    MODERATE = "moderate"  # keep issues raised by >= 2 judges
    LOW = "low"            # keep critical issues only


class SectionRefinementTask(BaseModel):
    """Planned repair of one section."""

    task_id: str = Field(description="Deterministic task identifier")
    section_id: str
    section_index: int = Field(ge=0, description="Position of the section in the document")
    action: FixAction
    synthesized_instructions: str = Field(description="Single merged instruction for the fixer")
    priority: Severity = Field(description="Most severe source issue")
    source_issues: list[TargetedIssue] = Field(min_length=1)
    context_anchors: ContextAnchors = Field(default_factory=ContextAnchors)
    status: TaskStatus = TaskStatus.PENDING

    @property
    def primary_issue(self) -> TargetedIssue:
        """Highest-priority source issue (issues are kept sorted)."""
        return self.source_issues[0]


class ConflictResolution(BaseModel):
    """Record of two contradictory instructions reconciled in one section."""

    section_id: str
    kept_criterion: Criterion
    demoted_criterion: Criterion
    constraint: str = Field(description="Constraint appended in place of the demoted fix")


class RefinementPlan(BaseModel):
    """Full repair plan for one iteration."""

    tasks: list[SectionRefinementTask] = Field(default_factory=list)
    execution_batches: list[list[str]] = Field(
        default_factory=list, description="Task ids per batch, in execution order"
    )
    agreement_score: float = Field(ge=-1.0, le=1.0)
    agreement_tier: AgreementTier = AgreementTier.HIGH
    status: PlanStatus = PlanStatus.PENDING
    full_regenerate: bool = Field(
        default=False, description="True when the router escalated the whole lesson"
    )
    full_regenerate_reason: str = ""
    coherence_checks: list[str] = Field(
        default_factory=list,
        description="Neighbour section ids to re-check after a regeneration",
    )
    conflict_resolutions: list[ConflictResolution] = Field(default_factory=list)
    surfaced_issues: list[TargetedIssue] = Field(
        default_factory=list, description="Issues shown to humans but not auto-applied"
    )
    skipped_locked: list[str] = Field(
        default_factory=list, description="Sections with issues that are locked"
    )
    estimated_tokens: int = Field(default=0, ge=0)

    def task(self, task_id: str) -> SectionRefinementTask:
        for t in self.tasks:
            if t.task_id == task_id:
                return t
        raise KeyError(task_id)

    @property
    def is_actionable(self) -> bool:
        return bool(self.tasks) and not self.full_regenerate


# ── Capability payloads ─────────────────────────────────────────


class ContextWindow(BaseModel):
    """What a fixer sees besides the target section: neighbouring excerpts only."""

    section_id: str
    section_title: str = ""
    section_text: str = Field(description="Current body of the target section")
    prev_excerpt: str = Field(default="", description="Tail of the preceding section")
    next_excerpt: str = Field(default="", description="Head of the following section")


class SectionSpec(BaseModel):
    """Input for regenerating a section from scratch."""

    section_id: str
    title: str = ""
    lesson_title: str = ""
    objectives: list[str] = Field(default_factory=list)
    audience: str = ""
    language: str = "en"
    instructions: str = Field(description="Synthesized instructions for the new text")


class GeneratedText(BaseModel):
    """Text returned by a patcher or regenerator."""

    text: str
    tokens_used: int = Field(default=0, ge=0)


class FixVerification(BaseModel):
    """Delta-judge answer to 'was this issue addressed?'."""

    addressed: bool
    rationale: str = Field(default="", description="One-line justification")
    criteria_scores: dict[Criterion, float] = Field(
        default_factory=dict, description="Optional post-fix section scores"
    )
    tokens_used: int = Field(default=0, ge=0)

    @field_validator("criteria_scores")
    @classmethod
    def _scores_in_range(cls, v: dict[Criterion, float]) -> dict[Criterion, float]:
        for criterion, score in v.items():
            if not 0.0 <= score <= 1.0:
                raise ValueError(f"Score for {criterion} out of range: {score}")
        return v


class QualityLock(BaseModel):
    """Regression guard for one (section, criterion) pair."""

    section_id: str
    criterion: Criterion
    locked_score: float = Field(ge=0.0, le=1.0)
    tolerance: float = Field(default=0.05, ge=0.0)
    locked_at_iteration: int = Field(default=0, ge=0)

    @property
    def floor(self) -> float:
        return self.locked_score - self.tolerance

    def is_violated_by(self, score: float) -> bool:
        return score < self.floor


class TaskOutcome(BaseModel):
    """Result of executing one task."""

    task_id: str
    section_id: str
    action: FixAction
    status: TaskStatus
    reason: str = ""
    tokens_used: int = Field(default=0, ge=0)
    verification_rationale: str = ""
