"""Refinement session: evaluate, plan, execute, repeat until terminal.

Each pass evaluates the working content through the cascade, holds the
result against the quality locks (reverting sections that regressed),
snapshots it, and asks the iteration controller whether to stop. When the
loop continues, the Arbiter plans the next repairs and the executor applies
them. All session state lives in one IterationState created per run.
"""

from __future__ import annotations

import logging

from lessonrefine.arbiter.arbiter import Arbiter
from lessonrefine.capabilities.base import FixVerifier, Judge, Patcher, SectionRegenerator
from lessonrefine.capabilities.llm import (
    LLMFixVerifier,
    LLMJudge,
    LLMPatcher,
    LLMSectionRegenerator,
)
from lessonrefine.events import RefinementEventEmitter, RefinementEventType
from lessonrefine.execution.executor import TaskExecutor
from lessonrefine.heuristics.filter import HeuristicFilter
from lessonrefine.judging.cascade import CascadeController
from lessonrefine.loop.best_effort import build_best_effort
from lessonrefine.loop.controller import Decision, IterationController
from lessonrefine.loop.state import IterationState
from lessonrefine.providers.registry import build_provider
from lessonrefine.routing.batcher import ExecutionBatcher
from lessonrefine.routing.router import FixRouter
from lessonrefine.schemas.content import ContentSpec, LessonDocument
from lessonrefine.schemas.judge import CascadeResult, CascadeStage, Criterion
from lessonrefine.schemas.pipeline import ModelConfig, RefinementConfig
from lessonrefine.schemas.session import (
    IterationSnapshot,
    RefinementOutcome,
    RefinementStatus,
    RegressionRecord,
    StopReason,
)
from lessonrefine.verify.quality_lock import QualityLockRegistry, section_criterion_scores
from lessonrefine.verify.verifier import Verifier

logger = logging.getLogger(__name__)

_BUDGET_REASONS = {"token": StopReason.TOKEN_BUDGET, "time": StopReason.TIMEOUT}


class RefinementSession:
    """Drives one lesson from its first evaluation to a terminal status."""

    def __init__(
        self,
        config: RefinementConfig,
        *,
        patcher: Patcher,
        regenerator: SectionRegenerator,
        fix_verifier: FixVerifier,
        single_judge: Judge | None = None,
        voting_judges: list[Judge] | None = None,
        tiebreaker: Judge | None = None,
        events: RefinementEventEmitter | None = None,
    ) -> None:
        self._config = config
        self._patcher = patcher
        self._regenerator = regenerator
        self._fix_verifier = fix_verifier
        self._events = events or RefinementEventEmitter()
        self._filter = HeuristicFilter(config.heuristics)
        self._cascade = CascadeController(
            self._filter,
            single_judge=single_judge,
            voting_judges=voting_judges,
            tiebreaker=tiebreaker,
            config=config.cascade,
            retry=config.execution,
        )
        self._arbiter = Arbiter(
            FixRouter(config.structural_floor, config.critical_section_ratio),
            ExecutionBatcher(),
            alpha_high=config.alpha_high,
            alpha_moderate=config.alpha_moderate,
        )
        self._controller = IterationController(config)
        self.locks = QualityLockRegistry(config.regression_tolerance, config.lock_passing_threshold)

    @classmethod
    def from_registry(
        cls,
        config: RefinementConfig,
        registry: dict[str, ModelConfig],
        *,
        events: RefinementEventEmitter | None = None,
    ) -> RefinementSession:
        """Build a session whose capabilities are LiteLLM-backed registry models.

        Raises:
            KeyError: If a configured model key is not in the registry.
        """
        cascade = config.cascade
        timeout = cascade.judge_timeout

        def judge(key: str) -> LLMJudge:
            return LLMJudge(build_provider(registry, key), key=key, timeout=timeout)

        generator = build_provider(registry, cascade.generator)
        call_timeout = config.execution.call_timeout
        return cls(
            config,
            patcher=LLMPatcher(generator, timeout=call_timeout),
            regenerator=LLMSectionRegenerator(generator, timeout=call_timeout),
            fix_verifier=LLMFixVerifier(
                build_provider(registry, cascade.delta_judge), timeout=timeout
            ),
            single_judge=judge(cascade.single_judge) if cascade.single_judge else None,
            voting_judges=[judge(k) for k in cascade.voting_judges],
            tiebreaker=judge(cascade.tiebreaker) if cascade.tiebreaker else None,
            events=events,
        )

    @property
    def events(self) -> RefinementEventEmitter:
        return self._events

    async def run(self, document: LessonDocument, spec: ContentSpec) -> RefinementOutcome:
        """Refine ``document`` until a terminal status is reached.

        Raises:
            JudgeUnavailableError: If a cascade judge stage got no response at all.
        """
        config = self._config
        self.locks = QualityLockRegistry(config.regression_tolerance, config.lock_passing_threshold)
        verifier = Verifier(
            self._filter,
            self._fix_verifier,
            self.locks,
            retry=config.execution,
            language=spec.language,
            verify_timeout=config.cascade.judge_timeout,
        )
        executor = TaskExecutor(
            self._patcher,
            self._regenerator,
            verifier,
            self.locks,
            events=self._events,
            config=config.execution,
            lock_after_edits=config.section_lock_after_edits,
            budget_warning_ratio=config.budget_warning_ratio,
        )
        state = IterationState(limits=config.limits, mode=config.mode)
        working = document

        self._events.emit(
            RefinementEventType.REFINEMENT_START,
            mode=config.mode.value,
            sections=len(document.sections),
            max_iterations=config.limits.max_iterations,
            token_budget=config.limits.token_budget,
        )
        logger.info(
            "Refinement started: %d sections, mode %s", len(document.sections), config.mode
        )

        while True:
            state.iteration += 1
            cascade = await self._cascade.evaluate(working, spec)
            self._add_tokens(state, cascade.tokens_used)

            evaluated = working
            working = self._enforce_locks(state, cascade, working)

            previous = state.score_history[-1] if state.score_history else None
            state.score_history.append(cascade.final_score)
            state.snapshots.append(IterationSnapshot(
                iteration=state.iteration,
                score=cascade.final_score,
                content=evaluated,
                unresolved_issues=list(cascade.issues),
                tokens_used=state.tokens_used,
            ))
            self._events.emit(
                RefinementEventType.ITERATION_COMPLETE,
                iteration=state.iteration,
                score_delta=None if previous is None else cascade.final_score - previous,
                score=cascade.final_score,
                stage=cascade.stage.value,
                issues=len(cascade.issues),
            )

            decision = self._controller.decide(
                state, cascade.final_score, cascade.has_critical_issue
            )
            if decision is not None:
                return await self._finish(state, decision, working, cascade)

            plan = self._arbiter.consolidate(
                cascade,
                working,
                locked_sections=state.locked_sections,
                requeued=state.requeued,
            )
            state.requeued = []
            self._events.emit(
                RefinementEventType.ARBITER_COMPLETE,
                iteration=state.iteration,
                tasks=len(plan.tasks),
                batches=len(plan.execution_batches),
                agreement=plan.agreement_score,
                tier=plan.agreement_tier.value,
                skipped_locked=list(plan.skipped_locked),
            )

            regenerate_reason = plan.full_regenerate_reason if plan.full_regenerate else None
            if cascade.stage is CascadeStage.HEURISTIC and not plan.tasks:
                regenerate_reason = regenerate_reason or cascade.stage_reason
            if regenerate_reason is not None:
                logger.warning("Full regeneration required: %s", regenerate_reason)
                return await self._finish(
                    state,
                    self._controller.stop(StopReason.FULL_REGENERATE),
                    working,
                    cascade,
                    full_regeneration_required=True,
                )
            if not plan.is_actionable:
                logger.info("No actionable tasks at iteration %d", state.iteration)
                return await self._finish(
                    state, self._controller.stop(StopReason.NO_ACTIONABLE_TASKS), working, cascade
                )

            section_scores = {
                sid: section_criterion_scores(cascade.criteria_scores, cascade.issues, sid)
                for sid in working.section_ids
            }
            planned = working
            report = await executor.execute(
                plan, working, state, spec, section_scores=section_scores
            )
            working = report.document
            state.regressions.extend(report.regressions)
            state.requeued.extend(report.requeued)

            if report.budget_stop is not None:
                reason = _BUDGET_REASONS.get(report.budget_stop.limit, StopReason.TOKEN_BUDGET)
                return await self._finish(
                    state, self._controller.stop(reason), planned, cascade
                )

    # ── Iteration boundary ────────────────────────────────────────

    def _enforce_locks(
        self, state: IterationState, cascade: CascadeResult, working: LessonDocument
    ) -> LessonDocument:
        """Revert sections whose locked criteria regressed in this evaluation."""
        if not cascade.criteria_scores:
            return working
        for section_id in working.section_ids:
            scores = section_criterion_scores(cascade.criteria_scores, cascade.issues, section_id)
            found = self.locks.violations(section_id, scores)
            if not found:
                continue
            point = state.revert_points.pop(section_id, None)
            for error in found:
                state.regressions.append(RegressionRecord(
                    iteration=state.iteration,
                    section_id=section_id,
                    criterion=Criterion(error.criterion),
                    locked_score=error.locked_score,
                    observed_score=error.observed_score,
                    task_id=point.task_id if point else "",
                ))
                self._events.emit(
                    RefinementEventType.REGRESSION_DETECTED,
                    iteration=state.iteration,
                    section_id=section_id,
                    score_delta=error.observed_score - error.locked_score,
                    criterion=error.criterion,
                )
            if point is not None:
                logger.warning("Reverting %s: %s", section_id, found[0])
                working = working.with_section_body(section_id, point.text)
                state.requeued.append(point.issue)
        return working

    def _add_tokens(self, state: IterationState, tokens: int) -> None:
        if state.add_tokens(tokens, self._config.budget_warning_ratio):
            self._events.emit(
                RefinementEventType.BUDGET_WARNING,
                iteration=state.iteration,
                tokens_used=state.tokens_used,
                token_budget=state.limits.token_budget,
            )

    async def _finish(
        self,
        state: IterationState,
        decision: Decision,
        working: LessonDocument,
        cascade: CascadeResult,
        *,
        full_regeneration_required: bool = False,
    ) -> RefinementOutcome:
        state.status = decision.status
        iteration = state.iteration

        if decision.reason in (StopReason.CONVERGED, StopReason.NO_ACTIONABLE_TASKS):
            self._events.emit(
                RefinementEventType.CONVERGENCE_DETECTED,
                iteration=iteration,
                reason=decision.reason.value,
                score_history=list(state.score_history),
            )

        best_effort = None
        content = working
        final_score = cascade.final_score
        unresolved = list(cascade.issues)
        if decision.status is RefinementStatus.BEST_EFFORT:
            best_effort = build_best_effort(state.snapshots)
            content = best_effort.content
            final_score = best_effort.score
            unresolved = list(best_effort.unresolved_issues)
            self._events.emit(
                RefinementEventType.BEST_EFFORT_SELECTED,
                iteration=iteration,
                selected_iteration=best_effort.selected_iteration,
                score=best_effort.score,
                quality_status=best_effort.quality_status.value,
            )

        human_review = decision.status is RefinementStatus.ESCALATED
        if human_review:
            self._events.emit(
                RefinementEventType.ESCALATION_TRIGGERED,
                iteration=iteration,
                reason=decision.reason.value,
                score=final_score,
            )

        outcome = RefinementOutcome(
            status=decision.status,
            final_score=final_score,
            iterations_used=iteration,
            tokens_used=state.tokens_used,
            unresolved_issues=unresolved,
            content=content,
            human_review=human_review,
            stop_reason=decision.reason,
            best_effort=best_effort,
            regressions=list(state.regressions),
            locked_sections=sorted(state.locked_sections),
            full_regeneration_required=full_regeneration_required,
            score_history=list(state.score_history),
        )
        self._events.emit(
            RefinementEventType.REFINEMENT_COMPLETE,
            iteration=iteration,
            status=decision.status.value,
            final_score=final_score,
            stop_reason=decision.reason.value,
            tokens_used=state.tokens_used,
        )
        logger.info(
            "Refinement complete: %s (%s) at %.3f after %d iteration(s)",
            decision.status, decision.reason, final_score, iteration,
        )
        await self._events.drain()
        return outcome
