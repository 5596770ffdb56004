"""Cascade Controller: heuristics, then one judge, then multi-judge voting.

Produces one CascadeResult per evaluation pass as cheaply as possible. The
free heuristic filter always runs first; a hard failure stops the pass
before any model is called. A single judge answers next and the pass stops
there when it is confident and clearly above the accept or below the
reject threshold. Otherwise the voting judges run concurrently, with a
tiebreaker invoked only when the first two disagree.

Judges that fail after their retries are dropped from the vote. When fewer
than the quorum respond, the result degrades to the single-judge verdict
with confidence forced to low. Only a stage in which no judge responded at
all is fatal.
"""

from __future__ import annotations

import asyncio
import logging

from lessonrefine.capabilities.base import Judge
from lessonrefine.errors import (
    JudgeUnavailableError,
    MalformedResponseError,
    QuorumLossError,
    TransportError,
)
from lessonrefine.heuristics.filter import HeuristicFilter
from lessonrefine.judging.voting import aggregate_criteria, build_consensus_result, disagreement
from lessonrefine.providers.retry import call_with_retry
from lessonrefine.schemas.content import DOCUMENT_SCOPE, ContentSpec, LessonDocument
from lessonrefine.schemas.judge import (
    CascadeResult,
    CascadeStage,
    Confidence,
    ConsensusMethod,
    ContextAnchors,
    HeuristicResult,
    JudgeIssue,
    JudgeVerdict,
    Recommendation,
    TargetedIssue,
)
from lessonrefine.schemas.pipeline import CascadeConfig, ExecutionConfig

logger = logging.getLogger(__name__)

HEURISTIC_SAVINGS = 1.0
SINGLE_JUDGE_SAVINGS = 0.67
VOTING_SAVINGS = 0.0

_ANCHOR_CHARS = 200


class CascadeController:
    """Runs the three evaluation stages in escalation order."""

    def __init__(
        self,
        heuristic_filter: HeuristicFilter,
        *,
        single_judge: Judge | None = None,
        voting_judges: list[Judge] | None = None,
        tiebreaker: Judge | None = None,
        config: CascadeConfig | None = None,
        retry: ExecutionConfig | None = None,
    ) -> None:
        self._filter = heuristic_filter
        self._single = single_judge
        self._voters = list(voting_judges or [])
        self._tiebreaker = tiebreaker
        self._config = config or CascadeConfig()
        self._retry = retry or ExecutionConfig()

        ids = [j.model_id for j in self._voters]
        if len(set(ids)) != len(ids):
            raise ValueError(f"Voting judges must be distinct: {ids}")
        if self._single is None and not self._voters:
            raise ValueError("CascadeController needs a single judge or voting judges")

    async def evaluate(self, document: LessonDocument, spec: ContentSpec) -> CascadeResult:
        """Evaluate ``document`` and return the cheapest sufficient result.

        Raises:
            JudgeUnavailableError: If no judge responded in any judge stage.
        """
        heuristic = self._filter.check(document, spec)
        heuristic_issues = issues_from_heuristics(heuristic, document)
        if not heuristic.passed:
            reasons = "; ".join(f.message for f in heuristic.hard_failures)
            logger.info("Cascade stopped at heuristic stage: %s", reasons)
            return CascadeResult(
                stage=CascadeStage.HEURISTIC,
                stage_reason=f"Heuristic hard failure: {reasons}",
                heuristic=heuristic,
                final_score=0.0,
                final_recommendation=Recommendation.REGENERATE,
                confidence=Confidence.HIGH,
                issues=heuristic_issues,
                cost_savings_ratio=HEURISTIC_SAVINGS,
            )

        single: JudgeVerdict | None = None
        if self._single is not None:
            single = await self._call_judge(self._single, document, spec)
            if single is not None and self._is_decisive(single):
                logger.info(
                    "Cascade stopped at single judge: %.3f (%s, %s)",
                    single.overall_score, single.confidence, single.recommendation,
                )
                return self._single_result(
                    heuristic, heuristic_issues, single, document,
                    "Single judge confident and decisive",
                )

        if not self._voters:
            if single is None:
                raise JudgeUnavailableError("The single judge did not respond")
            return self._single_result(
                heuristic, heuristic_issues, single, document, "No voting judges configured"
            )

        return await self._vote(document, spec, heuristic, heuristic_issues, single)

    # ── Stages ────────────────────────────────────────────────────

    def _is_decisive(self, verdict: JudgeVerdict) -> bool:
        if verdict.confidence is not Confidence.HIGH:
            return False
        return (
            verdict.overall_score >= self._config.accept_threshold
            or verdict.overall_score < self._config.reject_threshold
        )

    def _single_result(
        self,
        heuristic: HeuristicResult,
        heuristic_issues: list[TargetedIssue],
        single: JudgeVerdict,
        document: LessonDocument,
        reason: str,
    ) -> CascadeResult:
        return CascadeResult(
            stage=CascadeStage.SINGLE_JUDGE,
            stage_reason=reason,
            heuristic=heuristic,
            single_verdict=single,
            final_score=single.overall_score,
            final_recommendation=single.recommendation,
            confidence=single.confidence,
            criteria_scores=dict(single.criteria_scores),
            issues=heuristic_issues + issues_from_verdicts([single], document),
            tokens_used=single.tokens_used,
            cost_savings_ratio=SINGLE_JUDGE_SAVINGS,
        )

    async def _vote(
        self,
        document: LessonDocument,
        spec: ContentSpec,
        heuristic: HeuristicResult,
        heuristic_issues: list[TargetedIssue],
        single: JudgeVerdict | None,
    ) -> CascadeResult:
        results = await asyncio.gather(
            *(self._call_judge(j, document, spec) for j in self._voters)
        )
        responded = [v for v in results if v is not None]
        spent = sum(v.tokens_used for v in responded) + (single.tokens_used if single else 0)

        if len(responded) < self._config.min_quorum:
            loss = QuorumLossError(len(responded), self._config.min_quorum)
            logger.warning("Quorum lost, degrading to single-judge result: %s", loss)
            return self._degraded(
                heuristic, heuristic_issues, single, responded, document, str(loss)
            )

        tiebreaker_used = False
        needs_tiebreak, delta = disagreement(
            responded[0], responded[1], self._config.disagreement_delta
        ) if len(responded) >= 2 else (False, 0.0)
        if needs_tiebreak and self._tiebreaker is not None:
            logger.info("Judges disagree (delta %.3f), invoking tiebreaker", delta)
            extra = await self._call_judge(self._tiebreaker, document, spec)
            if extra is not None:
                responded.append(extra)
                spent += extra.tokens_used
                tiebreaker_used = True

        consensus = build_consensus_result(
            responded, tiebreaker_used=tiebreaker_used, score_delta=delta
        )
        all_high = all(v.confidence is Confidence.HIGH for v in responded)
        if consensus.method is ConsensusMethod.UNANIMOUS and all_high:
            confidence = Confidence.HIGH
        else:
            confidence = Confidence.MEDIUM

        return CascadeResult(
            stage=CascadeStage.CLEV_VOTING,
            stage_reason=consensus.rationale,
            heuristic=heuristic,
            single_verdict=single,
            consensus=consensus,
            final_score=consensus.aggregated_score,
            final_recommendation=consensus.recommendation,
            confidence=confidence,
            criteria_scores=aggregate_criteria(responded, consensus.weights),
            issues=heuristic_issues + issues_from_verdicts(responded, document),
            tokens_used=spent,
            cost_savings_ratio=VOTING_SAVINGS,
        )

    def _degraded(
        self,
        heuristic: HeuristicResult,
        heuristic_issues: list[TargetedIssue],
        single: JudgeVerdict | None,
        responded: list[JudgeVerdict],
        document: LessonDocument,
        reason: str,
    ) -> CascadeResult:
        base = single or (responded[0] if responded else None)
        if base is None:
            raise JudgeUnavailableError(f"No judge responded during evaluation ({reason})")

        used = {id(base)}
        spent = base.tokens_used + sum(v.tokens_used for v in responded if id(v) not in used)
        return CascadeResult(
            stage=CascadeStage.CLEV_VOTING,
            stage_reason=f"Degraded to single-judge result: {reason}",
            heuristic=heuristic,
            single_verdict=base,
            final_score=base.overall_score,
            final_recommendation=base.recommendation,
            confidence=Confidence.LOW,
            criteria_scores=dict(base.criteria_scores),
            issues=heuristic_issues + issues_from_verdicts([base], document),
            tokens_used=spent,
            cost_savings_ratio=VOTING_SAVINGS,
        )

    async def _call_judge(
        self, judge: Judge, document: LessonDocument, spec: ContentSpec
    ) -> JudgeVerdict | None:
        """Call one judge with retries; None when it has to be dropped."""
        try:
            verdict = await call_with_retry(
                lambda: judge.evaluate(document, spec),
                label=judge.model_id,
                timeout=self._config.judge_timeout,
                max_retries=self._retry.max_retries,
                base_backoff=self._retry.base_backoff,
            )
        except (TransportError, MalformedResponseError) as e:
            logger.warning("Judge %s dropped from the vote: %s", judge.model_id, e)
            return None
        return verdict.model_copy(update={
            "model_id": judge.model_id,
            "historical_accuracy": judge.historical_accuracy,
        })


# ── Issue location ──────────────────────────────────────────────


def context_anchors(document: LessonDocument, section_id: str) -> ContextAnchors:
    """Edges of the sections around ``section_id``."""
    if section_id == DOCUMENT_SCOPE:
        return ContextAnchors()
    prev, nxt = document.neighbors(section_id)
    return ContextAnchors(
        prev_section_end=prev.body[-_ANCHOR_CHARS:] if prev else "",
        next_section_start=nxt.body[:_ANCHOR_CHARS] if nxt else "",
    )


def locate_section(issue: JudgeIssue, document: LessonDocument) -> str:
    """Resolve a judge issue to a section id, or 'document' when ambiguous."""
    ids = document.section_ids
    if issue.section_id in ids:
        return issue.section_id

    hint = f"{issue.section_id} {issue.location}".lower().strip()
    if hint:
        for section in document.sections:
            if section.id.lower() in hint or (
                section.title and section.title.lower() in hint
            ):
                return section.id
    if issue.quoted_text.strip():
        quote = issue.quoted_text.strip()
        owners = [s.id for s in document.sections if quote in s.body]
        if len(owners) == 1:
            return owners[0]
    return DOCUMENT_SCOPE


def issues_from_verdicts(
    verdicts: list[JudgeVerdict], document: LessonDocument
) -> list[TargetedIssue]:
    located: list[TargetedIssue] = []
    for verdict in verdicts:
        for issue in verdict.issues:
            section_id = locate_section(issue, document)
            located.append(TargetedIssue(
                criterion=issue.criterion,
                severity=issue.severity,
                category=issue.category,
                section_id=section_id,
                description=issue.description,
                fix_instructions=issue.suggested_fix,
                context_anchors=context_anchors(document, section_id),
                source=verdict.model_id,
                quoted_text=issue.quoted_text,
            ))
    return located


def issues_from_heuristics(
    heuristic: HeuristicResult, document: LessonDocument
) -> list[TargetedIssue]:
    ids = set(document.section_ids)
    issues: list[TargetedIssue] = []
    for failure in heuristic.failures:
        section_id = failure.section_id if failure.section_id in ids else DOCUMENT_SCOPE
        issues.append(TargetedIssue(
            criterion=failure.criterion,
            severity=failure.severity,
            category=failure.category,
            section_id=section_id,
            description=failure.message,
            fix_instructions=failure.message,
            context_anchors=context_anchors(document, section_id),
            source="heuristic",
        ))
    return issues
