"""Evaluation schemas: rubric, heuristic results, judge verdicts, cascade results.

Judge responses are untrusted JSON. They are validated into these records at
the provider boundary and rejected (MalformedResponseError) when they do not
fit, rather than being passed through loosely typed.
"""

from __future__ import annotations

from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field, field_validator

from lessonrefine.schemas.content import DOCUMENT_SCOPE


class Criterion(StrEnum):
    """Rubric criteria every judge scores."""

    LEARNING_OBJECTIVE_ALIGNMENT = "learning_objective_alignment"
    PEDAGOGICAL_STRUCTURE = "pedagogical_structure"
    FACTUAL_ACCURACY = "factual_accuracy"
    CLARITY_READABILITY = "clarity_readability"
    ENGAGEMENT_EXAMPLES = "engagement_examples"
    COMPLETENESS = "completeness"

    @property
    def label(self) -> str:
        """Human wording, e.g. ``clarity readability``."""
        return self.value.replace("_", " ")


# Rubric weights for the overall score
CRITERION_WEIGHTS: dict[Criterion, float] = {
    Criterion.LEARNING_OBJECTIVE_ALIGNMENT: 0.25,
    Criterion.PEDAGOGICAL_STRUCTURE: 0.20,
    Criterion.FACTUAL_ACCURACY: 0.15,
    Criterion.CLARITY_READABILITY: 0.15,
    Criterion.ENGAGEMENT_EXAMPLES: 0.15,
    Criterion.COMPLETENESS: 0.10,
}

# Conflict resolution order, highest priority first
CRITERION_PRIORITY: tuple[Criterion, ...] = (
    Criterion.FACTUAL_ACCURACY,
    Criterion.LEARNING_OBJECTIVE_ALIGNMENT,
    Criterion.PEDAGOGICAL_STRUCTURE,
    Criterion.CLARITY_READABILITY,
    Criterion.ENGAGEMENT_EXAMPLES,
    Criterion.COMPLETENESS,
)


class Severity(StrEnum):
    """How badly an issue hurts the lesson."""

    CRITICAL = "critical"
    MAJOR = "major"
    MINOR = "minor"

    @property
    def rank(self) -> int:
        """Sort key, 0 for the most severe."""
        return _SEVERITY_RANK[self]


_SEVERITY_RANK = {Severity.CRITICAL: 0, Severity.MAJOR: 1, Severity.MINOR: 2}


class FailureCategory(StrEnum):
    """Whether an issue is about form or about substance.

    Kept separate from Severity: a critical diagram syntax error and a
    critical factual error are equally severe but are repaired differently.
    """

    CONTENT = "content"
    STRUCTURAL = "structural"


class Confidence(StrEnum):
    """Judge self-reported confidence."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class Recommendation(StrEnum):
    """What a judge (or the cascade) recommends doing with the lesson."""

    ACCEPT = "ACCEPT"
    ACCEPT_WITH_MINOR_REVISION = "ACCEPT_WITH_MINOR_REVISION"
    ITERATIVE_REFINEMENT = "ITERATIVE_REFINEMENT"
    REGENERATE = "REGENERATE"
    ESCALATE_TO_HUMAN = "ESCALATE_TO_HUMAN"

    @property
    def is_accept(self) -> bool:
        return self in (Recommendation.ACCEPT, Recommendation.ACCEPT_WITH_MINOR_REVISION)

    @property
    def is_reject(self) -> bool:
        return self is Recommendation.REGENERATE


class CascadeStage(StrEnum):
    """Cascade stages in escalation order."""

    HEURISTIC = "heuristic"
    SINGLE_JUDGE = "single_judge"
    CLEV_VOTING = "clev_voting"


class ConsensusMethod(StrEnum):
    """How the multi-judge vote was decided."""

    UNANIMOUS = "unanimous"
    MAJORITY = "majority"
    TIE_BREAKER = "tie_breaker"


class FixAction(StrEnum):
    """Repair action chosen by the router. Closed set, matched exhaustively."""

    SURGICAL_EDIT = "SURGICAL_EDIT"
    REGENERATE_SECTION = "REGENERATE_SECTION"
    FULL_REGENERATE = "FULL_REGENERATE"


# ── Heuristics ──────────────────────────────────────────────────


class HeuristicFailure(BaseModel):
    """One failed deterministic check."""

    check: str = Field(description="Name of the check, e.g. 'word_count'")
    severity: Severity = Field(description="Severity of the failure")
    category: FailureCategory = Field(
        default=FailureCategory.CONTENT, description="Structural or content failure"
    )
    criterion: Criterion = Field(
        default=Criterion.COMPLETENESS, description="Rubric criterion the failure maps to"
    )
    section_id: str = Field(
        default=DOCUMENT_SCOPE, description="Affected section, or 'document'"
    )
    expected: str = Field(default="", description="Expected value or range")
    actual: str = Field(default="", description="Observed value")
    message: str = Field(description="Actionable description of the failure")


class HeuristicResult(BaseModel):
    """Outcome of the free deterministic pre-filter."""

    passed: bool = Field(description="True when no critical or major check failed")
    score: float = Field(ge=0.0, le=1.0, description="Weighted check score")
    structural_score: float = Field(
        default=1.0, ge=0.0, le=1.0, description="Score of the structural checks only"
    )
    metrics: dict[str, Any] = Field(default_factory=dict, description="Raw measurements")
    failures: list[HeuristicFailure] = Field(default_factory=list)

    @property
    def failure_reasons(self) -> list[str]:
        return [f.message for f in self.failures]

    @property
    def hard_failures(self) -> list[HeuristicFailure]:
        return [f for f in self.failures if f.severity is not Severity.MINOR]


# ── Judges ──────────────────────────────────────────────────────


class ContextAnchors(BaseModel):
    """Text at the edges of the neighbouring sections, for seamless edits."""

    prev_section_end: str = Field(default="", description="Tail of the preceding section")
    next_section_start: str = Field(default="", description="Head of the following section")


class JudgeIssue(BaseModel):
    """An issue exactly as a judge reported it."""

    criterion: Criterion
    severity: Severity
    category: FailureCategory = FailureCategory.CONTENT
    section_id: str = Field(default="", description="Section id if the judge named one")
    location: str = Field(default="", description="Free-text location hint")
    description: str = Field(description="What is wrong")
    suggested_fix: str = Field(default="", description="How to fix it")
    quoted_text: str = Field(default="", description="Offending excerpt")


class TargetedIssue(BaseModel):
    """A located, actionable issue attributed to one section."""

    criterion: Criterion
    severity: Severity
    category: FailureCategory = FailureCategory.CONTENT
    section_id: str = Field(description="Section id, or 'document' when not localisable")
    description: str
    fix_instructions: str = Field(default="", description="Concrete instruction for the fixer")
    fix_action: FixAction | None = Field(default=None, description="Set by the router")
    context_anchors: ContextAnchors = Field(default_factory=ContextAnchors)
    source: str = Field(description="Model id of the judge, or 'heuristic'")
    quoted_text: str = Field(default="")

    @property
    def is_document_scope(self) -> bool:
        return self.section_id == DOCUMENT_SCOPE

    @property
    def instruction(self) -> str:
        return self.fix_instructions or self.description


class JudgeVerdict(BaseModel):
    """One judge's scoring of a lesson."""

    model_id: str = Field(description="Registry key or model id of the judge")
    overall_score: float = Field(ge=0.0, le=1.0)
    criteria_scores: dict[Criterion, float] = Field(default_factory=dict)
    confidence: Confidence = Confidence.MEDIUM
    issues: list[JudgeIssue] = Field(default_factory=list)
    recommendation: Recommendation
    strengths: list[str] = Field(default_factory=list)
    tokens_used: int = Field(default=0, ge=0)
    historical_accuracy: float = Field(
        default=0.0, description="Judge accuracy from past calibration runs"
    )

    @field_validator("criteria_scores")
    @classmethod
    def _scores_in_range(cls, v: dict[Criterion, float]) -> dict[Criterion, float]:
        for criterion, score in v.items():
            if not 0.0 <= score <= 1.0:
                raise ValueError(f"Score for {criterion} out of range: {score}")
        return v


class ConsensusResult(BaseModel):
    """Outcome of multi-judge voting."""

    method: ConsensusMethod
    verdicts: list[JudgeVerdict] = Field(default_factory=list)
    weights: dict[str, float] = Field(default_factory=dict, description="model_id -> weight")
    aggregated_score: float = Field(ge=0.0, le=1.0)
    recommendation: Recommendation
    tiebreaker_used: bool = False
    score_delta: float = Field(default=0.0, description="Score spread of the first two judges")
    rationale: str = ""


class CascadeResult(BaseModel):
    """Outcome of one evaluation pass through the cascade."""

    stage: CascadeStage
    stage_reason: str = ""
    heuristic: HeuristicResult
    single_verdict: JudgeVerdict | None = None
    consensus: ConsensusResult | None = None
    final_score: float = Field(ge=0.0, le=1.0)
    final_recommendation: Recommendation
    confidence: Confidence = Confidence.MEDIUM
    criteria_scores: dict[Criterion, float] = Field(default_factory=dict)
    issues: list[TargetedIssue] = Field(default_factory=list)
    tokens_used: int = Field(default=0, ge=0)
    cost_savings_ratio: float = Field(ge=0.0, le=1.0)

    @property
    def verdicts(self) -> list[JudgeVerdict]:
        """Every verdict that contributed to the final result."""
        if self.consensus is not None and self.consensus.verdicts:
            return list(self.consensus.verdicts)
        if self.single_verdict is not None:
            return [self.single_verdict]
        return []

    @property
    def has_critical_issue(self) -> bool:
        return any(i.severity is Severity.CRITICAL for i in self.issues)
