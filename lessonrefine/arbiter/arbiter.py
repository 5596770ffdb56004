"""Arbiter: consolidates verdicts into a conflict-resolved refinement plan.

Pure planning. The Arbiter never touches lesson content; it measures how
much the judges agree, filters issues by that agreement, resolves
contradictory fixes per section, asks the router for a repair action and
the batcher for an execution order.
"""

from __future__ import annotations

import hashlib
import logging
from collections.abc import Iterable

from lessonrefine.arbiter.conflicts import SectionInstructions, resolve_section
from lessonrefine.arbiter.krippendorff import verdict_agreement
from lessonrefine.routing.batcher import ExecutionBatcher
from lessonrefine.routing.router import FixRouter
from lessonrefine.schemas.content import LessonDocument
from lessonrefine.schemas.judge import (
    CascadeResult,
    CascadeStage,
    Criterion,
    FixAction,
    Severity,
    TargetedIssue,
)
from lessonrefine.schemas.refinement import (
    AgreementTier,
    PlanStatus,
    RefinementPlan,
    SectionRefinementTask,
)

logger = logging.getLogger(__name__)

HEURISTIC_SOURCE = "heuristic"

# Planning estimates per task
SURGICAL_TOKENS = 750
REGENERATE_TOKENS = 1600
VERIFY_TOKENS = 200


def task_id_for(section_id: str, instructions: str) -> str:
    digest = hashlib.sha256(f"{section_id}\n{instructions}".encode()).hexdigest()
    return f"task-{digest[:12]}"


def structural_score_of(cascade: CascadeResult) -> float:
    """Aggregate structural score the router gates full regeneration on."""
    if cascade.stage is CascadeStage.HEURISTIC:
        return cascade.heuristic.structural_score
    return cascade.criteria_scores.get(
        Criterion.PEDAGOGICAL_STRUCTURE, cascade.heuristic.structural_score
    )


class Arbiter:
    """Turns one CascadeResult into a RefinementPlan."""

    def __init__(
        self,
        router: FixRouter | None = None,
        batcher: ExecutionBatcher | None = None,
        *,
        alpha_high: float = 0.80,
        alpha_moderate: float = 0.67,
    ) -> None:
        self._router = router or FixRouter()
        self._batcher = batcher or ExecutionBatcher()
        self._alpha_high = alpha_high
        self._alpha_moderate = alpha_moderate

    def tier_for(self, alpha: float) -> AgreementTier:
        if alpha >= self._alpha_high:
            return AgreementTier.HIGH
        if alpha >= self._alpha_moderate:
            return AgreementTier.MODERATE
        return AgreementTier.LOW

    def consolidate(
        self,
        cascade: CascadeResult,
        document: LessonDocument,
        *,
        locked_sections: Iterable[str] = (),
        requeued: Iterable[TargetedIssue] = (),
    ) -> RefinementPlan:
        """Build the plan for one iteration.

        Args:
            cascade: Evaluation of the current content.
            document: The content the plan applies to.
            locked_sections: Sections excluded from all routing.
            requeued: Issues carried over from reverted patches; they skip
                agreement filtering like heuristic findings.
        """
        alpha = verdict_agreement(cascade.verdicts)
        tier = self.tier_for(alpha)
        kept, surfaced = self.filter_issues(list(cascade.issues), tier)
        kept.extend(i for i in requeued if i not in kept)

        structural = structural_score_of(cascade)
        decision = self._router.route(kept, document, structural, locked_sections)
        if decision.full_regenerate:
            return RefinementPlan(
                agreement_score=alpha,
                agreement_tier=tier,
                full_regenerate=True,
                full_regenerate_reason=decision.reason,
                surfaced_issues=surfaced,
            )

        surfaced.extend(i for i in kept if i.is_document_scope)
        by_section: dict[str, list[TargetedIssue]] = {}
        for issue in kept:
            if issue.section_id in decision.actions:
                by_section.setdefault(issue.section_id, []).append(issue)

        tasks: list[SectionRefinementTask] = []
        resolutions = []
        for section_id in document.section_ids:
            if section_id not in by_section:
                continue
            resolved = resolve_section(section_id, by_section[section_id])
            resolutions.extend(resolved.resolutions)
            tasks.append(self._task(resolved, document, decision.actions[section_id]))

        plan = RefinementPlan(
            tasks=tasks,
            execution_batches=self._batcher.build(tasks),
            agreement_score=alpha,
            agreement_tier=tier,
            status=PlanStatus.PENDING,
            coherence_checks=decision.coherence_checks,
            conflict_resolutions=resolutions,
            surfaced_issues=surfaced,
            skipped_locked=decision.skipped_locked,
            estimated_tokens=sum(_estimate(t.action) for t in tasks),
        )
        logger.info(
            "Arbiter plan: %d task(s) in %d batch(es), alpha %.3f (%s), %d surfaced",
            len(plan.tasks), len(plan.execution_batches), alpha, tier, len(surfaced),
        )
        return plan

    def filter_issues(
        self, issues: list[TargetedIssue], tier: AgreementTier
    ) -> tuple[list[TargetedIssue], list[TargetedIssue]]:
        """Split issues into (kept, surfaced) for an agreement tier.

        Issues are clustered by (section, criterion). Heuristic findings are
        deterministic and always kept.
        """
        clusters: dict[tuple[str, Criterion], list[TargetedIssue]] = {}
        for issue in issues:
            clusters.setdefault((issue.section_id, issue.criterion), []).append(issue)

        kept: list[TargetedIssue] = []
        surfaced: list[TargetedIssue] = []
        for members in clusters.values():
            raters = {i.source for i in members if i.source != HEURISTIC_SOURCE}
            for issue in members:
                if issue.source == HEURISTIC_SOURCE or tier is AgreementTier.HIGH:
                    keep = True
                elif tier is AgreementTier.MODERATE:
                    keep = len(raters) >= 2
                else:
                    keep = issue.severity is Severity.CRITICAL
                (kept if keep else surfaced).append(issue)
        return kept, surfaced

    def _task(
        self,
        resolved: SectionInstructions,
        document: LessonDocument,
        action: FixAction,
    ) -> SectionRefinementTask:
        instructions = resolved.render()
        sources = [
            i.model_copy(update={"fix_action": self._router.classify(i)})
            for i in resolved.issues
        ]
        priority = min((i.severity for i in resolved.active), key=lambda s: s.rank)
        return SectionRefinementTask(
            task_id=task_id_for(resolved.section_id, instructions),
            section_id=resolved.section_id,
            section_index=document.index_of(resolved.section_id),
            action=action,
            synthesized_instructions=instructions,
            priority=priority,
            source_issues=sources,
            context_anchors=sources[0].context_anchors,
        )


def _estimate(action: FixAction) -> int:
    if action is FixAction.REGENERATE_SECTION:
        return REGENERATE_TOKENS + VERIFY_TOKENS
    return SURGICAL_TOKENS + VERIFY_TOKENS
