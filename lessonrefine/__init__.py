"""lessonrefine: cascade quality evaluation and targeted refinement of lessons."""

__version__ = "0.1.0"

from .loop.session import RefinementSession
from .schemas import (
    ContentSpec,
    LessonDocument,
    LessonSection,
    OperationMode,
    RefinementConfig,
    RefinementOutcome,
    RefinementStatus,
)

__all__ = [
    "ContentSpec",
    "LessonDocument",
    "LessonSection",
    "OperationMode",
    "RefinementConfig",
    "RefinementOutcome",
    "RefinementSession",
    "RefinementStatus",
]
