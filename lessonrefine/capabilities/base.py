"""Capability interfaces consumed from the generation-model collaborator.

The refinement core depends only on these four contracts, never on a
specific vendor. LLM-backed implementations live in ``capabilities.llm``;
tests substitute scripted fakes.

Implementations make a single attempt per call. Retries, timeouts and
fallbacks are applied by the caller.
"""

from __future__ import annotations

from abc import ABC, abstractmethod

from lessonrefine.schemas.content import ContentSpec, LessonDocument
from lessonrefine.schemas.judge import JudgeVerdict, TargetedIssue
from lessonrefine.schemas.refinement import (
    ContextWindow,
    FixVerification,
    GeneratedText,
    SectionRefinementTask,
    SectionSpec,
)


class Judge(ABC):
    """Scores a whole lesson against the rubric."""

    @property
    @abstractmethod
    def model_id(self) -> str:
        """Identifier reported in verdicts and logs."""

    @property
    def historical_accuracy(self) -> float:
        """Calibration accuracy; feeds the vote weight."""
        return 0.0

    @abstractmethod
    async def evaluate(self, document: LessonDocument, spec: ContentSpec) -> JudgeVerdict:
        """Return a validated verdict for ``document``.

        Raises:
            TransportError: On network failure or timeout.
            MalformedResponseError: If the response fails validation.
        """


class Patcher(ABC):
    """Applies a surgical fix to one section."""

    @abstractmethod
    async def apply_fix(
        self, task: SectionRefinementTask, context: ContextWindow
    ) -> GeneratedText:
        """Return the patched body of ``task.section_id``."""


class SectionRegenerator(ABC):
    """Rewrites one section from its specification."""

    @abstractmethod
    async def regenerate_section(
        self, spec: SectionSpec, context: ContextWindow
    ) -> GeneratedText:
        """Return a freshly written body for ``spec.section_id``."""


class FixVerifier(ABC):
    """Cheap delta judge: was an issue addressed by an edit?"""

    @abstractmethod
    async def verify_fix(
        self, issue: TargetedIssue, before: str, after: str
    ) -> FixVerification:
        """Return whether ``after`` addresses ``issue`` relative to ``before``."""
