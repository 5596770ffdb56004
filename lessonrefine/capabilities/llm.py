"""LLM-backed capability implementations.

Each class renders a Markdown prompt, makes one provider call and validates
the response into the engine's record types. Responses that do not validate
raise MalformedResponseError; nothing loosely typed crosses this boundary.
"""

from __future__ import annotations

import logging
import re
from typing import Any

from pydantic import ValidationError

from lessonrefine.capabilities.base import FixVerifier, Judge, Patcher, SectionRegenerator
from lessonrefine.errors import MalformedResponseError
from lessonrefine.judging.recommendation import determine_recommendation, weighted_overall
from lessonrefine.prompts import render_prompt
from lessonrefine.providers.base import ModelProvider
from lessonrefine.providers.litellm_provider import extract_json
from lessonrefine.schemas.content import ContentSpec, LessonDocument
from lessonrefine.schemas.judge import (
    CRITERION_WEIGHTS,
    Confidence,
    Criterion,
    JudgeIssue,
    JudgeVerdict,
    Recommendation,
    TargetedIssue,
)
from lessonrefine.schemas.refinement import (
    ContextWindow,
    FixVerification,
    GeneratedText,
    SectionRefinementTask,
    SectionSpec,
)

logger = logging.getLogger(__name__)

_CAMEL_RE = re.compile(r"(?<!^)(?=[A-Z])")
_FENCE_WRAP_RE = re.compile(r"^```(?:markdown|md)?\s*\n(.*)\n```\s*$", re.DOTALL)

_JUDGE_SYSTEM = "You are a rigorous, fair grader of educational content. Reply in JSON."
_WRITER_SYSTEM = "You are an expert educational content writer."
_VERIFIER_SYSTEM = "You verify edits to educational content. Reply in JSON."


def _snake(key: str) -> str:
    return _CAMEL_RE.sub("_", key).lower()


def _normalize_keys(data: Any) -> Any:
    """Convert camelCase keys to snake_case, recursively."""
    if isinstance(data, dict):
        return {_snake(k): _normalize_keys(v) for k, v in data.items()}
    if isinstance(data, list):
        return [_normalize_keys(v) for v in data]
    return data


def _parse_criteria(raw: Any) -> dict[Criterion, float]:
    if not isinstance(raw, dict):
        return {}
    scores: dict[Criterion, float] = {}
    for key, value in raw.items():
        try:
            criterion = Criterion(_snake(key))
        except ValueError:
            logger.debug("Ignoring unknown criterion %r", key)
            continue
        if isinstance(value, dict):
            value = value.get("score")
        scores[criterion] = float(value)
    return scores


def parse_verdict(
    content: str,
    *,
    model_id: str,
    tokens_used: int = 0,
    historical_accuracy: float = 0.0,
) -> JudgeVerdict:
    """Validate a judge response into a JudgeVerdict.

    Missing overall scores are derived from the rubric weights, and a
    missing recommendation from the score, confidence and issues.

    Raises:
        MalformedResponseError: If the response cannot be validated.
    """
    data = _normalize_keys(extract_json(content))
    try:
        criteria = _parse_criteria(data.get("criteria_scores"))
        issues = [
            JudgeIssue.model_validate({
                **i,
                "criterion": _snake(str(i.get("criterion", ""))),
                "severity": str(i.get("severity", "")).lower(),
                "category": str(i.get("category") or "content").lower(),
            })
            for i in data.get("issues") or []
        ]
        overall = data.get("overall_score")
        if overall is None:
            if not criteria:
                raise MalformedResponseError(f"{model_id}: no overall or criterion scores")
            overall = weighted_overall(criteria)
        confidence = Confidence(str(data.get("confidence", "medium")).lower())
        overall = float(overall)
        raw_rec = data.get("recommendation")
        if raw_rec:
            recommendation = Recommendation(str(raw_rec).upper())
        else:
            recommendation = determine_recommendation(
                overall, confidence, [i.severity for i in issues]
            )
        return JudgeVerdict(
            model_id=model_id,
            overall_score=overall,
            criteria_scores=criteria,
            confidence=confidence,
            issues=issues,
            recommendation=recommendation,
            strengths=[str(s) for s in data.get("strengths") or []],
            tokens_used=tokens_used,
            historical_accuracy=historical_accuracy,
        )
    except (ValidationError, ValueError, TypeError, AttributeError) as e:
        raise MalformedResponseError(f"{model_id}: invalid verdict: {e}") from e


def _unwrap_text(content: str) -> str:
    """Strip a Markdown fence wrapped around a whole generated section."""
    text = content.strip()
    match = _FENCE_WRAP_RE.match(text)
    return match.group(1).strip() if match else text


class LLMJudge(Judge):
    """Rubric judge backed by a ModelProvider."""

    def __init__(self, provider: ModelProvider, *, key: str = "", timeout: float = 30.0) -> None:
        self._provider = provider
        self._key = key or provider.model_id
        self._timeout = timeout

    @property
    def model_id(self) -> str:
        return self._key

    @property
    def historical_accuracy(self) -> float:
        return self._provider.historical_accuracy

    async def evaluate(self, document: LessonDocument, spec: ContentSpec) -> JudgeVerdict:
        prompt = render_prompt(
            "judge",
            title=spec.title,
            audience=spec.audience,
            language=spec.language,
            objectives=spec.objectives,
            criteria=[(c.value, w) for c, w in CRITERION_WEIGHTS.items()],
            sections=document.sections,
            lesson=document.to_markdown(),
        )
        completion = await self._provider.complete(
            [{"role": "user", "content": prompt}],
            _JUDGE_SYSTEM,
            json_mode=True,
            timeout=self._timeout,
        )
        return parse_verdict(
            completion.content,
            model_id=self._key,
            tokens_used=completion.total_tokens,
            historical_accuracy=self.historical_accuracy,
        )


class LLMPatcher(Patcher):
    """Surgical section editor backed by a ModelProvider."""

    def __init__(self, provider: ModelProvider, *, timeout: float = 60.0) -> None:
        self._provider = provider
        self._timeout = timeout

    async def apply_fix(
        self, task: SectionRefinementTask, context: ContextWindow
    ) -> GeneratedText:
        prompt = render_prompt(
            "patch",
            section_id=context.section_id,
            section_title=context.section_title,
            section_text=context.section_text,
            instructions=task.synthesized_instructions,
            prev_excerpt=context.prev_excerpt,
            next_excerpt=context.next_excerpt,
        )
        completion = await self._provider.complete(
            [{"role": "user", "content": prompt}], _WRITER_SYSTEM, timeout=self._timeout
        )
        text = _unwrap_text(completion.content)
        if not text:
            raise MalformedResponseError(f"Empty patch for section {task.section_id}")
        return GeneratedText(text=text, tokens_used=completion.total_tokens)


class LLMSectionRegenerator(SectionRegenerator):
    """Section writer backed by a ModelProvider."""

    def __init__(self, provider: ModelProvider, *, timeout: float = 90.0) -> None:
        self._provider = provider
        self._timeout = timeout

    async def regenerate_section(
        self, spec: SectionSpec, context: ContextWindow
    ) -> GeneratedText:
        prompt = render_prompt(
            "regenerate",
            lesson_title=spec.lesson_title,
            audience=spec.audience,
            language=spec.language,
            objectives=spec.objectives,
            section_id=spec.section_id,
            title=spec.title,
            section_text=context.section_text,
            instructions=spec.instructions,
            prev_excerpt=context.prev_excerpt,
            next_excerpt=context.next_excerpt,
        )
        completion = await self._provider.complete(
            [{"role": "user", "content": prompt}], _WRITER_SYSTEM, timeout=self._timeout
        )
        text = _unwrap_text(completion.content)
        if not text:
            raise MalformedResponseError(f"Empty regeneration for section {spec.section_id}")
        return GeneratedText(text=text, tokens_used=completion.total_tokens)


class LLMFixVerifier(FixVerifier):
    """Delta judge backed by a ModelProvider."""

    def __init__(self, provider: ModelProvider, *, timeout: float = 30.0) -> None:
        self._provider = provider
        self._timeout = timeout

    async def verify_fix(
        self, issue: TargetedIssue, before: str, after: str
    ) -> FixVerification:
        prompt = render_prompt(
            "verify_fix",
            criterion=issue.criterion.value,
            severity=issue.severity.value,
            description=issue.description,
            fix_instructions=issue.fix_instructions,
            before=before,
            after=after,
            criteria=[c.value for c in Criterion],
        )
        completion = await self._provider.complete(
            [{"role": "user", "content": prompt}],
            _VERIFIER_SYSTEM,
            json_mode=True,
            timeout=self._timeout,
        )
        data = _normalize_keys(extract_json(completion.content))
        addressed = data.get("addressed")
        if not isinstance(addressed, bool):
            raise MalformedResponseError("Fix verification lacks a boolean 'addressed'")
        try:
            scores = _parse_criteria(data.get("criteria_scores"))
            return FixVerification(
                addressed=addressed,
                rationale=str(data.get("rationale", ""))[:300],
                criteria_scores=scores,
                tokens_used=completion.total_tokens,
            )
        except (ValidationError, ValueError, TypeError) as e:
            raise MalformedResponseError(f"Invalid fix verification: {e}") from e
