"""Tests for lessonrefine.arbiter — agreement, filtering, conflicts and plans."""

from __future__ import annotations

import re

import pytest

from lessonrefine.arbiter import (
    Arbiter,
    Direction,
    direction_of,
    interval_alpha,
    resolve_section,
    structural_score_of,
    task_id_for,
    verdict_agreement,
)
from lessonrefine.schemas.content import DOCUMENT_SCOPE, LessonDocument, LessonSection
from lessonrefine.schemas.judge import (
    CascadeResult,
    CascadeStage,
    ConsensusMethod,
    ConsensusResult,
    Criterion,
    FixAction,
    HeuristicResult,
    JudgeVerdict,
    Recommendation,
    Severity,
    TargetedIssue,
)
from lessonrefine.schemas.refinement import AgreementTier, PlanStatus


# ── Factories ──────────────────────────────────────────────────────


def _make_issue(
    section_id: str = "body",
    criterion: Criterion = Criterion.CLARITY_READABILITY,
    severity: Severity = Severity.MAJOR,
    source: str = "judge-a",
    fix: str = "",
) -> TargetedIssue:
    return TargetedIssue(
        criterion=criterion,
        severity=severity,
        section_id=section_id,
        description=f"{criterion.label} issue from {source}",
        fix_instructions=fix,
        source=source,
    )


def _make_verdict(model_id: str, scores: dict[Criterion, float]) -> JudgeVerdict:
    return JudgeVerdict(
        model_id=model_id,
        overall_score=0.7,
        criteria_scores=scores,
        recommendation=Recommendation.ITERATIVE_REFINEMENT,
    )


def _make_cascade(
    issues: list[TargetedIssue],
    verdicts: list[JudgeVerdict] | None = None,
    *,
    stage: CascadeStage = CascadeStage.CLEV_VOTING,
    structural: float = 1.0,
    criteria: dict[Criterion, float] | None = None,
) -> CascadeResult:
    verdicts = verdicts or [_make_verdict("judge-a", {Criterion.COMPLETENESS: 0.7})]
    consensus = None
    if len(verdicts) > 1:
        consensus = ConsensusResult(
            method=ConsensusMethod.MAJORITY,
            verdicts=verdicts,
            aggregated_score=0.7,
            recommendation=Recommendation.ITERATIVE_REFINEMENT,
        )
    return CascadeResult(
        stage=stage,
        heuristic=HeuristicResult(passed=True, score=0.9, structural_score=structural),
        single_verdict=verdicts[0] if consensus is None else None,
        consensus=consensus,
        final_score=0.7,
        final_recommendation=Recommendation.ITERATIVE_REFINEMENT,
        criteria_scores=criteria or {},
        issues=issues,
        cost_savings_ratio=0.0,
    )


def _make_document() -> LessonDocument:
    return LessonDocument(sections=[
        LessonSection(id="intro", title="Intro", body="Plants need light."),
        LessonSection(id="body", title="Light Reactions", body="Chlorophyll absorbs light."),
        LessonSection(id="practice", title="Practice", body="Exercise: name the pigment."),
        LessonSection(id="outro", title="Summary", body="Light becomes sugar."),
    ])


def _disagreeing_verdicts() -> list[JudgeVerdict]:
    return [
        _make_verdict("judge-a", {Criterion.COMPLETENESS: 0.9, Criterion.CLARITY_READABILITY: 0.1}),
        _make_verdict("judge-b", {Criterion.COMPLETENESS: 0.1, Criterion.CLARITY_READABILITY: 0.9}),
    ]


# ── Krippendorff's alpha ──────────────────────────────────────────


class TestIntervalAlpha:
    def test_perfect_agreement(self):
        assert interval_alpha([[0.8, 0.8], [0.6, 0.6], [0.9, 0.9]]) == 1.0

    def test_no_variance(self):
        assert interval_alpha([[0.7, 0.7], [0.7, 0.7]]) == 1.0

    def test_unpairable_units(self):
        assert interval_alpha([[0.7], [0.2]]) == 1.0
        assert interval_alpha([]) == 1.0

    def test_systematic_disagreement(self):
        assert interval_alpha([[0.9, 0.1], [0.1, 0.9]]) == pytest.approx(-0.5)

    def test_partial_agreement(self):
        alpha = interval_alpha([[0.9, 0.8], [0.2, 0.3], [0.6, 0.6]])
        assert 0.8 < alpha < 1.0

    def test_range(self):
        for units in ([[0.0, 1.0], [1.0, 0.0]], [[0.5, 0.6, 0.1], [0.9, 0.2]]):
            assert -1.0 <= interval_alpha(units) <= 1.0

    def test_single_verdict(self):
        assert verdict_agreement([_make_verdict("a", {Criterion.COMPLETENESS: 0.2})]) == 1.0

    def test_verdict_matrix(self):
        assert verdict_agreement(_disagreeing_verdicts()) == pytest.approx(-0.5)


# ── Conflict resolution ───────────────────────────────────────────


class TestDirection:
    def test_expand(self):
        assert direction_of("Add a worked example about leaves") is Direction.EXPAND

    def test_reduce(self):
        assert direction_of("Simplify the second paragraph") is Direction.REDUCE

    def test_neutral(self):
        assert direction_of("Fix the typo in the heading") is Direction.NEUTRAL

    def test_first_cue_wins(self):
        assert direction_of("Remove jargon and add a diagram") is Direction.REDUCE


class TestResolveSection:
    def test_clarity_beats_completeness(self):
        issues = [
            _make_issue(
                criterion=Criterion.COMPLETENESS, fix="Add more detail on the Calvin cycle."
            ),
            _make_issue(criterion=Criterion.CLARITY_READABILITY, fix="Simplify the explanation."),
        ]
        resolved = resolve_section("body", issues)

        assert [i.criterion for i in resolved.active] == [Criterion.CLARITY_READABILITY]
        assert [i.criterion for i in resolved.demoted] == [Criterion.COMPLETENESS]
        assert resolved.constraints == ["Do not reduce completeness."]
        assert resolved.render() == (
            "1. [clarity readability] Simplify the explanation.\n"
            "\n"
            "Constraints:\n"
            "- Do not reduce completeness."
        )

    def test_accuracy_beats_clarity(self):
        issues = [
            _make_issue(criterion=Criterion.CLARITY_READABILITY, fix="Shorten this paragraph."),
            _make_issue(
                criterion=Criterion.FACTUAL_ACCURACY, fix="Add the missing dark reactions."
            ),
        ]
        resolved = resolve_section("body", issues)

        assert resolved.constraints == ["Do not degrade clarity readability."]
        assert resolved.resolutions[0].kept_criterion is Criterion.FACTUAL_ACCURACY
        assert resolved.resolutions[0].demoted_criterion is Criterion.CLARITY_READABILITY

    def test_same_direction_no_conflict(self):
        issues = [
            _make_issue(criterion=Criterion.COMPLETENESS, fix="Add a summary table."),
            _make_issue(
                criterion=Criterion.ENGAGEMENT_EXAMPLES, fix="Include a real-world example."
            ),
        ]
        resolved = resolve_section("body", issues)

        assert len(resolved.active) == 2
        assert resolved.constraints == []
        assert "Constraints" not in resolved.render()

    def test_neutral_fixes_stay_active(self):
        issues = [
            _make_issue(criterion=Criterion.FACTUAL_ACCURACY, fix="Correct the wavelength."),
            _make_issue(criterion=Criterion.CLARITY_READABILITY, fix="Simplify the wording."),
        ]
        resolved = resolve_section("body", issues)
        assert resolved.demoted == []

    def test_duplicate_instructions_rendered_once(self):
        issues = [
            _make_issue(source="judge-a", fix="Define chlorophyll."),
            _make_issue(source="judge-b", fix="Define chlorophyll."),
        ]
        assert resolve_section("body", issues).render() == (
            "1. [clarity readability] Define chlorophyll."
        )

    def test_severity_orders_instructions(self):
        issues = [
            _make_issue(
                criterion=Criterion.COMPLETENESS, severity=Severity.MINOR, fix="Mention C4 plants."
            ),
            _make_issue(
                criterion=Criterion.COMPLETENESS, severity=Severity.CRITICAL, fix="Define ATP."
            ),
        ]
        assert resolve_section("body", issues).render().startswith("1. [completeness] Define ATP.")


# ── Issue filtering ───────────────────────────────────────────────


class TestFilterIssues:
    def _issues(self) -> list[TargetedIssue]:
        return [
            _make_issue("body", Criterion.CLARITY_READABILITY, source="judge-a"),
            _make_issue("body", Criterion.CLARITY_READABILITY, source="judge-b"),
            _make_issue("body", Criterion.COMPLETENESS, source="judge-a"),
            _make_issue("intro", Criterion.FACTUAL_ACCURACY, Severity.CRITICAL, source="judge-b"),
            _make_issue("outro", Criterion.COMPLETENESS, Severity.MINOR, source="heuristic"),
        ]

    def test_high_keeps_everything(self):
        kept, surfaced = Arbiter().filter_issues(self._issues(), AgreementTier.HIGH)
        assert len(kept) == 5
        assert surfaced == []

    def test_moderate_needs_two_judges(self):
        kept, surfaced = Arbiter().filter_issues(self._issues(), AgreementTier.MODERATE)
        assert {(i.section_id, i.criterion) for i in kept} == {
            ("body", Criterion.CLARITY_READABILITY),
            ("outro", Criterion.COMPLETENESS),
        }
        assert len(surfaced) == 2

    def test_low_keeps_critical_and_heuristic(self):
        kept, surfaced = Arbiter().filter_issues(self._issues(), AgreementTier.LOW)
        assert {i.source for i in kept} == {"judge-b", "heuristic"}
        assert all(i.severity is Severity.CRITICAL or i.source == "heuristic" for i in kept)
        assert len(surfaced) == 3

    def test_same_judge_twice_is_one_rater(self):
        issues = [
            _make_issue("body", source="judge-a", fix="One"),
            _make_issue("body", source="judge-a", fix="Two"),
        ]
        kept, _ = Arbiter().filter_issues(issues, AgreementTier.MODERATE)
        assert kept == []


class TestTiers:
    @pytest.mark.parametrize(("alpha", "tier"), [
        (0.95, AgreementTier.HIGH),
        (0.80, AgreementTier.HIGH),
        (0.79, AgreementTier.MODERATE),
        (0.67, AgreementTier.MODERATE),
        (0.66, AgreementTier.LOW),
        (-0.4, AgreementTier.LOW),
    ])
    def test_tier_boundaries(self, alpha, tier):
        assert Arbiter().tier_for(alpha) is tier


# ── Consolidation ─────────────────────────────────────────────────


class TestConsolidate:
    def test_conflicting_section_plan(self):
        cascade = _make_cascade([
            _make_issue(criterion=Criterion.COMPLETENESS, fix="Add detail on the Calvin cycle."),
            _make_issue(
                criterion=Criterion.CLARITY_READABILITY, source="judge-b", fix="Simplify it."
            ),
        ])
        plan = Arbiter().consolidate(cascade, _make_document())

        assert len(plan.tasks) == 1
        task = plan.tasks[0]
        assert task.section_id == "body"
        assert task.section_index == 1
        assert "do not reduce completeness" in task.synthesized_instructions.lower()
        assert "Simplify it." in task.synthesized_instructions
        assert "Calvin" not in task.synthesized_instructions
        assert task.primary_issue.criterion is Criterion.CLARITY_READABILITY
        assert len(plan.conflict_resolutions) == 1
        assert plan.status is PlanStatus.PENDING

    def test_every_task_has_sources_with_actions(self):
        cascade = _make_cascade([
            _make_issue("intro", Criterion.ENGAGEMENT_EXAMPLES),
            _make_issue("outro", Criterion.FACTUAL_ACCURACY, Severity.CRITICAL),
        ])
        plan = Arbiter().consolidate(cascade, _make_document())

        assert [t.section_id for t in plan.tasks] == ["intro", "outro"]
        for task in plan.tasks:
            assert task.source_issues
            assert all(i.fix_action is not None for i in task.source_issues)
        assert plan.task(plan.tasks[1].task_id).action is FixAction.REGENERATE_SECTION
        assert plan.coherence_checks == ["practice"]

    def test_batches_cover_every_task_once(self):
        cascade = _make_cascade([
            _make_issue("intro"),
            _make_issue("body"),
            _make_issue("practice"),
            _make_issue("outro", Criterion.COMPLETENESS, Severity.CRITICAL),
        ])
        plan = Arbiter().consolidate(cascade, _make_document())

        flat = [tid for batch in plan.execution_batches for tid in batch]
        assert sorted(flat) == sorted(t.task_id for t in plan.tasks)
        assert plan.execution_batches[-1] == [plan.tasks[-1].task_id]

    def test_deterministic(self):
        issues = [
            _make_issue("intro", Criterion.COMPLETENESS, fix="Add a hook."),
            _make_issue("intro", Criterion.CLARITY_READABILITY, source="judge-b", fix="Trim it."),
            _make_issue("outro"),
        ]
        first = Arbiter().consolidate(_make_cascade(issues), _make_document())
        second = Arbiter().consolidate(_make_cascade(list(reversed(issues))), _make_document())

        assert [t.task_id for t in first.tasks] == [t.task_id for t in second.tasks]
        assert first.execution_batches == second.execution_batches

    def test_task_id_format(self):
        task_id = task_id_for("body", "1. [completeness] Add detail")
        assert re.fullmatch(r"task-[0-9a-f]{12}", task_id)
        assert task_id != task_id_for("intro", "1. [completeness] Add detail")

    def test_low_agreement_surfaces_minor_issues(self):
        cascade = _make_cascade(
            [
                _make_issue("intro", source="judge-a"),
                _make_issue("outro", Criterion.FACTUAL_ACCURACY, Severity.CRITICAL),
            ],
            verdicts=_disagreeing_verdicts(),
        )
        plan = Arbiter().consolidate(cascade, _make_document())

        assert plan.agreement_tier is AgreementTier.LOW
        assert plan.agreement_score == pytest.approx(-0.5)
        assert [t.section_id for t in plan.tasks] == ["outro"]
        assert [i.section_id for i in plan.surfaced_issues] == ["intro"]

    def test_requeued_issue_bypasses_filter(self):
        requeued = _make_issue("practice", Criterion.ENGAGEMENT_EXAMPLES, Severity.MINOR)
        cascade = _make_cascade([], verdicts=_disagreeing_verdicts())
        plan = Arbiter().consolidate(cascade, _make_document(), requeued=[requeued])

        assert [t.section_id for t in plan.tasks] == ["practice"]

    def test_document_scope_surfaced_not_tasked(self):
        cascade = _make_cascade([
            _make_issue(DOCUMENT_SCOPE, Criterion.PEDAGOGICAL_STRUCTURE, Severity.MAJOR),
            _make_issue("body"),
        ])
        plan = Arbiter().consolidate(cascade, _make_document())

        assert [t.section_id for t in plan.tasks] == ["body"]
        assert [i.section_id for i in plan.surfaced_issues] == [DOCUMENT_SCOPE]

    def test_locked_section_skipped(self):
        cascade = _make_cascade([_make_issue("body"), _make_issue("outro")])
        plan = Arbiter().consolidate(cascade, _make_document(), locked_sections={"body"})

        assert [t.section_id for t in plan.tasks] == ["outro"]
        assert plan.skipped_locked == ["body"]

    def test_full_regenerate_plan(self):
        cascade = _make_cascade([_make_issue("body")], structural=0.4)
        plan = Arbiter().consolidate(cascade, _make_document())

        assert plan.full_regenerate
        assert plan.full_regenerate_reason == "structural score 0.40 below 0.60"
        assert plan.tasks == []
        assert not plan.is_actionable

    def test_estimated_tokens(self):
        cascade = _make_cascade([
            _make_issue("intro"),
            _make_issue("outro", Criterion.FACTUAL_ACCURACY, Severity.MAJOR),
        ])
        plan = Arbiter().consolidate(cascade, _make_document())
        assert plan.estimated_tokens == (750 + 200) + (1600 + 200)

    def test_empty_cascade_is_not_actionable(self):
        plan = Arbiter().consolidate(_make_cascade([]), _make_document())
        assert plan.tasks == []
        assert not plan.is_actionable


class TestStructuralScore:
    def test_heuristic_stage_uses_heuristic_score(self):
        cascade = _make_cascade(
            [], stage=CascadeStage.HEURISTIC, structural=0.4,
            criteria={Criterion.PEDAGOGICAL_STRUCTURE: 0.9},
        )
        assert structural_score_of(cascade) == 0.4

    def test_judge_stage_prefers_structure_criterion(self):
        cascade = _make_cascade([], criteria={Criterion.PEDAGOGICAL_STRUCTURE: 0.55})
        assert structural_score_of(cascade) == 0.55

    def test_judge_stage_falls_back(self):
        assert structural_score_of(_make_cascade([], structural=0.8)) == 0.8
