"""Exception hierarchy for the refinement engine.

Every failure mode except JudgeUnavailableError has a defined fallback
(retry, revert, degrade or graceful termination) and is handled inside the
engine. JudgeUnavailableError is the only session-fatal error.
"""

from __future__ import annotations


class LessonRefineError(Exception):
    """Base exception for all application-specific errors."""


class TransportError(LessonRefineError):
    """Network failure or timeout on a model call.

    ``retryable`` is False for failures another attempt cannot fix, such as
    rejected credentials.
    """

    def __init__(self, message: str, *, retryable: bool = True) -> None:
        super().__init__(message)
        self.retryable = retryable


class MalformedResponseError(LessonRefineError):
    """A model response did not match the expected schema."""


class QuorumLossError(LessonRefineError):
    """Fewer judges than the quorum answered during voting."""

    def __init__(self, responded: int, required: int) -> None:
        super().__init__(f"Only {responded} of {required} required judges responded")
        self.responded = responded
        self.required = required


class RegressionDetectedError(LessonRefineError):
    """A quality lock tripped: a locked criterion dropped below its floor."""

    def __init__(
        self,
        section_id: str,
        criterion: str,
        locked_score: float,
        observed_score: float,
    ) -> None:
        super().__init__(
            f"Regression in section {section_id!r} on {criterion}: "
            f"{observed_score:.3f} < locked {locked_score:.3f}"
        )
        self.section_id = section_id
        self.criterion = criterion
        self.locked_score = locked_score
        self.observed_score = observed_score


class BudgetExceededError(LessonRefineError):
    """Token or wall-clock budget reached. A normal termination trigger."""

    def __init__(self, limit: str, used: float, budget: float) -> None:
        super().__init__(f"{limit} budget exhausted ({used:g} of {budget:g})")
        self.limit = limit
        self.used = used
        self.budget = budget


class JudgeUnavailableError(LessonRefineError):
    """No judge responded at all during a cascade stage."""
