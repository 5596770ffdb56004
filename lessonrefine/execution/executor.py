"""Batch execution of a refinement plan.

Batches run strictly one after another; tasks inside a batch run
concurrently, bounded by a semaphore. Budgets are checked before each
batch is dispatched: in-flight calls finish, but no new batch starts once
a budget is spent.

A task's candidate text replaces the section only after it passes
verification. Every failure path (transport, malformed output, rejected
verification, tripped lock, broken transition) leaves the section at its
pre-task text and marks the task FAILED.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field

from lessonrefine.capabilities.base import Patcher, SectionRegenerator
from lessonrefine.errors import (
    BudgetExceededError,
    MalformedResponseError,
    RegressionDetectedError,
    TransportError,
)
from lessonrefine.events import RefinementEventEmitter, RefinementEventType
from lessonrefine.loop.state import IterationState, RevertPoint
from lessonrefine.providers.retry import call_with_retry
from lessonrefine.schemas.content import ContentSpec, LessonDocument
from lessonrefine.schemas.judge import Criterion, FixAction, HeuristicFailure, TargetedIssue
from lessonrefine.schemas.pipeline import ExecutionConfig
from lessonrefine.schemas.refinement import (
    ContextWindow,
    GeneratedText,
    PlanStatus,
    RefinementPlan,
    SectionRefinementTask,
    SectionSpec,
    TaskOutcome,
    TaskStatus,
)
from lessonrefine.schemas.session import RegressionRecord
from lessonrefine.verify.quality_lock import QualityLockRegistry
from lessonrefine.verify.verifier import Verifier

logger = logging.getLogger(__name__)


@dataclass
class ExecutionReport:
    """What one plan execution did to the document."""

    document: LessonDocument
    outcomes: list[TaskOutcome] = field(default_factory=list)
    tokens_used: int = 0
    budget_stop: BudgetExceededError | None = None
    regressions: list[RegressionRecord] = field(default_factory=list)
    requeued: list[TargetedIssue] = field(default_factory=list)

    @property
    def applied(self) -> list[str]:
        return [o.section_id for o in self.outcomes if o.status is TaskStatus.COMPLETED]

    @property
    def failed(self) -> list[TaskOutcome]:
        return [o for o in self.outcomes if o.status is TaskStatus.FAILED]


@dataclass
class _TaskResult:
    outcome: TaskOutcome
    before: str
    text: str | None = None
    scores: dict[Criterion, float] = field(default_factory=dict)
    regression: RegressionDetectedError | None = None


class TaskExecutor:
    """Runs the batches of a RefinementPlan against a document."""

    def __init__(
        self,
        patcher: Patcher,
        regenerator: SectionRegenerator,
        verifier: Verifier,
        locks: QualityLockRegistry,
        *,
        events: RefinementEventEmitter | None = None,
        config: ExecutionConfig | None = None,
        lock_after_edits: int = 2,
        budget_warning_ratio: float = 0.9,
    ) -> None:
        self._patcher = patcher
        self._regenerator = regenerator
        self._verifier = verifier
        self._locks = locks
        self._events = events or RefinementEventEmitter()
        self._config = config or ExecutionConfig()
        self._lock_after = lock_after_edits
        self._warning_ratio = budget_warning_ratio

    async def execute(
        self,
        plan: RefinementPlan,
        document: LessonDocument,
        state: IterationState,
        spec: ContentSpec,
        *,
        section_scores: dict[str, dict[Criterion, float]] | None = None,
    ) -> ExecutionReport:
        """Execute ``plan`` and return the patched document.

        Args:
            section_scores: Pre-patch criterion scores per section, locked
                for every section patched successfully.
        """
        section_scores = section_scores or {}
        report = ExecutionReport(document=document)
        state.revert_points = {}
        plan.status = PlanStatus.EXECUTING
        semaphore = asyncio.Semaphore(self._config.max_concurrent)

        async def _run(task: SectionRefinementTask, current: LessonDocument) -> _TaskResult:
            async with semaphore:
                return await self._run_task(task, current, state, spec)

        for index, task_ids in enumerate(plan.execution_batches, start=1):
            try:
                state.check_budget()
            except BudgetExceededError as e:
                logger.info("Stopping before batch %d: %s", index, e)
                report.budget_stop = e
                self._skip_remaining(plan, report, str(e))
                break

            batch = [plan.task(tid) for tid in task_ids]
            self._emit(
                RefinementEventType.BATCH_STARTED, state,
                batch=index, task_ids=list(task_ids),
            )
            for task in batch:
                if state.record_edit(task.section_id, self._lock_after):
                    logger.info(
                        "Section %s locked after %d edits", task.section_id, self._lock_after
                    )
                    self._emit(
                        RefinementEventType.SECTION_LOCKED, state, section_id=task.section_id
                    )

            current = report.document
            results = await asyncio.gather(*(_run(t, current) for t in batch))

            for task, result in zip(batch, results):
                self._record_tokens(report, state, result.outcome.tokens_used)
                if result.text is not None:
                    scores = result.scores or section_scores.get(task.section_id, {})
                    self._apply(plan, report, state, task, result, result.text, scores)
                elif result.regression is not None:
                    self._record_regression(report, state, task, result.regression)
                task.status = result.outcome.status
                report.outcomes.append(result.outcome)

            self._emit(
                RefinementEventType.BATCH_COMPLETE, state,
                batch=index,
                completed=sum(1 for t in batch if t.status is TaskStatus.COMPLETED),
                failed=sum(1 for t in batch if t.status is TaskStatus.FAILED),
            )

        plan.status = PlanStatus.COMPLETED
        logger.info(
            "Executed plan: %d applied, %d failed, %d tokens",
            len(report.applied), len(report.failed), report.tokens_used,
        )
        return report

    def context_window(self, document: LessonDocument, section_id: str) -> ContextWindow:
        """Target section plus excerpts of its immediate neighbours only."""
        chars = self._config.context_chars
        section = document.get(section_id)
        prev, nxt = document.neighbors(section_id)
        return ContextWindow(
            section_id=section_id,
            section_title=section.title,
            section_text=section.body,
            prev_excerpt=prev.body[-chars:] if prev else "",
            next_excerpt=nxt.body[:chars] if nxt else "",
        )

    # ── Single task ───────────────────────────────────────────────

    async def _run_task(
        self,
        task: SectionRefinementTask,
        document: LessonDocument,
        state: IterationState,
        spec: ContentSpec,
    ) -> _TaskResult:
        task.status = TaskStatus.RUNNING
        self._emit(
            RefinementEventType.TASK_STARTED, state,
            section_id=task.section_id, task_id=task.task_id, action=task.action.value,
        )
        context = self.context_window(document, task.section_id)
        before = context.section_text

        try:
            generated = await call_with_retry(
                lambda: self._generate(task, context, spec),
                label=f"{task.action.value.lower()}:{task.section_id}",
                timeout=self._config.call_timeout,
                max_retries=self._config.max_retries,
                base_backoff=self._config.base_backoff,
            )
        except (TransportError, MalformedResponseError) as e:
            logger.warning("Task %s on %s failed: %s", task.task_id, task.section_id, e)
            return _TaskResult(
                outcome=self._outcome(task, TaskStatus.FAILED, str(e)), before=before
            )

        tokens = generated.tokens_used
        try:
            check = await self._verifier.verify(task, before, generated.text)
        except (TransportError, MalformedResponseError) as e:
            logger.warning("Verification of %s failed: %s", task.section_id, e)
            return _TaskResult(
                outcome=self._outcome(task, TaskStatus.FAILED, f"verification failed: {e}", tokens),
                before=before,
            )

        tokens += check.tokens_used
        self._emit(
            RefinementEventType.VERIFICATION_RESULT, state,
            section_id=task.section_id,
            task_id=task.task_id,
            passed=check.passed,
            tier=check.tier,
            reason=check.reason,
        )
        rationale = check.verification.rationale if check.verification else ""
        if not check.passed:
            return _TaskResult(
                outcome=self._outcome(task, TaskStatus.FAILED, check.reason, tokens, rationale),
                before=before,
                regression=check.regression,
            )
        return _TaskResult(
            outcome=self._outcome(task, TaskStatus.COMPLETED, "", tokens, rationale),
            before=before,
            text=generated.text,
            scores=dict(check.verification.criteria_scores) if check.verification else {},
        )

    async def _generate(
        self, task: SectionRefinementTask, context: ContextWindow, spec: ContentSpec
    ) -> GeneratedText:
        if task.action is FixAction.SURGICAL_EDIT:
            return await self._patcher.apply_fix(task, context)
        if task.action is FixAction.REGENERATE_SECTION:
            return await self._regenerator.regenerate_section(
                SectionSpec(
                    section_id=task.section_id,
                    title=context.section_title,
                    lesson_title=spec.title,
                    objectives=spec.objectives,
                    audience=spec.audience,
                    language=spec.language,
                    instructions=task.synthesized_instructions,
                ),
                context,
            )
        raise ValueError(f"{task.action} is not a section-level action")

    @staticmethod
    def _outcome(
        task: SectionRefinementTask,
        status: TaskStatus,
        reason: str,
        tokens: int = 0,
        rationale: str = "",
    ) -> TaskOutcome:
        return TaskOutcome(
            task_id=task.task_id,
            section_id=task.section_id,
            action=task.action,
            status=status,
            reason=reason,
            tokens_used=tokens,
            verification_rationale=rationale,
        )

    # ── Bookkeeping ───────────────────────────────────────────────

    def _apply(
        self,
        plan: RefinementPlan,
        report: ExecutionReport,
        state: IterationState,
        task: SectionRefinementTask,
        result: _TaskResult,
        text: str,
        scores: dict[Criterion, float],
    ) -> None:
        if task.action is FixAction.REGENERATE_SECTION:
            broken = self._transition_failures(plan, report.document, task.section_id, text)
            if broken:
                reason = "; ".join(f.message for f in broken)
                logger.warning("Reverting regeneration of %s: %s", task.section_id, reason)
                result.outcome = result.outcome.model_copy(
                    update={"status": TaskStatus.FAILED, "reason": reason}
                )
                return

        state.revert_points.setdefault(task.section_id, RevertPoint(
            section_id=task.section_id,
            text=result.before,
            task_id=task.task_id,
            issue=task.primary_issue,
        ))
        report.document = report.document.with_section_body(task.section_id, text)
        self._locks.lock(task.section_id, scores, state.iteration)
        self._emit(
            RefinementEventType.PATCH_APPLIED, state,
            section_id=task.section_id, task_id=task.task_id, action=task.action.value,
        )

    def _transition_failures(
        self, plan: RefinementPlan, document: LessonDocument, section_id: str, text: str
    ) -> list[HeuristicFailure]:
        failures: list[HeuristicFailure] = []
        for neighbor in document.neighbors(section_id):
            if neighbor is None or neighbor.id not in plan.coherence_checks:
                continue
            failures.extend(
                self._verifier.transition_failures(section_id, text, neighbor.id, neighbor.body)
            )
        return failures

    def _record_regression(
        self,
        report: ExecutionReport,
        state: IterationState,
        task: SectionRefinementTask,
        error: RegressionDetectedError,
    ) -> None:
        record = RegressionRecord(
            iteration=state.iteration,
            section_id=error.section_id,
            criterion=Criterion(error.criterion),
            locked_score=error.locked_score,
            observed_score=error.observed_score,
            task_id=task.task_id,
        )
        report.regressions.append(record)
        report.requeued.append(task.primary_issue)
        self._emit(
            RefinementEventType.REGRESSION_DETECTED, state,
            section_id=error.section_id,
            score_delta=error.observed_score - error.locked_score,
            criterion=error.criterion,
        )

    def _record_tokens(self, report: ExecutionReport, state: IterationState, tokens: int) -> None:
        report.tokens_used += tokens
        if state.add_tokens(tokens, self._warning_ratio):
            self._emit(
                RefinementEventType.BUDGET_WARNING, state,
                tokens_used=state.tokens_used, token_budget=state.limits.token_budget,
            )

    def _skip_remaining(self, plan: RefinementPlan, report: ExecutionReport, reason: str) -> None:
        for task in plan.tasks:
            if task.status is TaskStatus.PENDING:
                task.status = TaskStatus.SKIPPED
                report.outcomes.append(self._outcome(task, TaskStatus.SKIPPED, reason))

    def _emit(self, event_type: RefinementEventType, state: IterationState, **data) -> None:
        self._events.emit(event_type, iteration=state.iteration, **data)
