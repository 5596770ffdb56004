"""Lesson refinement schema definitions.

All Pydantic v2 models used by the cascade, the Arbiter, execution and the
iteration controller.
"""

from lessonrefine.schemas.content import (
    DOCUMENT_SCOPE,
    ContentSpec,
    LessonDocument,
    LessonSection,
)
from lessonrefine.schemas.judge import (
    CRITERION_PRIORITY,
    CRITERION_WEIGHTS,
    CascadeResult,
    CascadeStage,
    Confidence,
    ConsensusMethod,
    ConsensusResult,
    ContextAnchors,
    Criterion,
    FailureCategory,
    FixAction,
    HeuristicFailure,
    HeuristicResult,
    JudgeIssue,
    JudgeVerdict,
    Recommendation,
    Severity,
    TargetedIssue,
)
from lessonrefine.schemas.pipeline import (
    CascadeConfig,
    ExecutionConfig,
    HeuristicConfig,
    ModelConfig,
    ModeThresholds,
    OperationMode,
    RefinementConfig,
    SessionLimits,
)
from lessonrefine.schemas.refinement import (
    AgreementTier,
    ConflictResolution,
    ContextWindow,
    FixVerification,
    GeneratedText,
    PlanStatus,
    QualityLock,
    RefinementPlan,
    SectionRefinementTask,
    SectionSpec,
    TaskOutcome,
    TaskStatus,
)
from lessonrefine.schemas.session import (
    BestEffortResult,
    IterationSnapshot,
    QualityStatus,
    RefinementOutcome,
    RefinementStatus,
    RegressionRecord,
    StopReason,
)

__all__ = [
    "AgreementTier",
    "BestEffortResult",
    "CRITERION_PRIORITY",
    "CRITERION_WEIGHTS",
    "CascadeConfig",
    "CascadeResult",
    "CascadeStage",
    "Confidence",
    "ConflictResolution",
    "ConsensusMethod",
    "ConsensusResult",
    "ContentSpec",
    "ContextAnchors",
    "ContextWindow",
    "Criterion",
    "DOCUMENT_SCOPE",
    "ExecutionConfig",
    "FailureCategory",
    "FixAction",
    "FixVerification",
    "GeneratedText",
    "HeuristicConfig",
    "HeuristicFailure",
    "HeuristicResult",
    "IterationSnapshot",
    "JudgeIssue",
    "JudgeVerdict",
    "LessonDocument",
    "LessonSection",
    "ModeThresholds",
    "ModelConfig",
    "OperationMode",
    "PlanStatus",
    "QualityLock",
    "QualityStatus",
    "Recommendation",
    "RefinementConfig",
    "RefinementOutcome",
    "RefinementPlan",
    "RefinementStatus",
    "RegressionRecord",
    "SectionRefinementTask",
    "SectionSpec",
    "SessionLimits",
    "Severity",
    "StopReason",
    "TargetedIssue",
    "TaskOutcome",
    "TaskStatus",
]
