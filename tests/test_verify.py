"""Tests for lessonrefine.verify — quality locks and two-tier patch verification."""

from __future__ import annotations

import pytest

from lessonrefine.capabilities.base import FixVerifier
from lessonrefine.errors import MalformedResponseError, RegressionDetectedError, TransportError
from lessonrefine.heuristics.filter import HeuristicFilter
from lessonrefine.schemas.judge import (
    Criterion,
    FixAction,
    Severity,
    TargetedIssue,
)
from lessonrefine.schemas.pipeline import ExecutionConfig
from lessonrefine.schemas.refinement import FixVerification, QualityLock, SectionRefinementTask
from lessonrefine.verify import QualityLockRegistry, Verifier, section_criterion_scores

_BEFORE = (
    "Chlorophyll absorbs red and blue light in the thylakoid membranes "
    "of the chloroplast and reflects green light back to our eyes."
)
_AFTER = (
    "Chlorophyll, the green pigment, absorbs red and blue light inside the "
    "thylakoid membranes of the chloroplast and reflects green light."
)


# ── Fakes ──────────────────────────────────────────────────────────


class _FakeFixVerifier(FixVerifier):
    """Returns scripted answers; exceptions in the script are raised."""

    def __init__(self, *script) -> None:
        self._script = list(script)
        self.calls = 0

    async def verify_fix(self, issue, before, after):
        self.calls += 1
        item = self._script.pop(0) if len(self._script) > 1 else self._script[0]
        if isinstance(item, Exception):
            raise item
        return item


# ── Factories ──────────────────────────────────────────────────────


def _make_issue(section_id: str = "body", **overrides) -> TargetedIssue:
    defaults = {
        "criterion": Criterion.CLARITY_READABILITY,
        "severity": Severity.MAJOR,
        "section_id": section_id,
        "description": "Pigment is never named",
        "source": "judge-a",
    }
    defaults.update(overrides)
    return TargetedIssue(**defaults)


def _make_task(section_id: str = "body") -> SectionRefinementTask:
    return SectionRefinementTask(
        task_id="task-1",
        section_id=section_id,
        section_index=1,
        action=FixAction.SURGICAL_EDIT,
        synthesized_instructions="1. [clarity readability] Name the pigment.",
        priority=Severity.MAJOR,
        source_issues=[_make_issue(section_id)],
    )


def _make_verifier(fake: FixVerifier, locks: QualityLockRegistry | None = None) -> Verifier:
    return Verifier(
        HeuristicFilter(),
        fake,
        QualityLockRegistry() if locks is None else locks,
        retry=ExecutionConfig(max_retries=2, base_backoff=0.0),
        verify_timeout=5.0,
    )


# ── Section scores ─────────────────────────────────────────────────


class TestSectionCriterionScores:
    def test_penalties_per_located_issue(self):
        scores = section_criterion_scores(
            {Criterion.CLARITY_READABILITY: 0.8, Criterion.COMPLETENESS: 0.9},
            [
                _make_issue("body", criterion=Criterion.CLARITY_READABILITY),
                _make_issue("body", criterion=Criterion.COMPLETENESS, severity=Severity.CRITICAL),
                _make_issue(
                    "intro", criterion=Criterion.CLARITY_READABILITY, severity=Severity.MINOR
                ),
            ],
            "body",
        )
        assert scores[Criterion.CLARITY_READABILITY] == pytest.approx(0.65)
        assert scores[Criterion.COMPLETENESS] == pytest.approx(0.6)

    def test_unscored_criteria_ignored(self):
        scores = section_criterion_scores(
            {Criterion.COMPLETENESS: 0.9},
            [_make_issue("body", criterion=Criterion.FACTUAL_ACCURACY)],
            "body",
        )
        assert scores == {Criterion.COMPLETENESS: 0.9}

    def test_clamped_at_zero(self):
        scores = section_criterion_scores(
            {Criterion.COMPLETENESS: 0.1},
            [_make_issue("body", criterion=Criterion.COMPLETENESS, severity=Severity.CRITICAL)],
            "body",
        )
        assert scores[Criterion.COMPLETENESS] == 0.0


# ── Quality locks ──────────────────────────────────────────────────


class TestQualityLockRegistry:
    def test_only_passing_criteria_locked(self):
        locks = QualityLockRegistry(passing_threshold=0.75)
        created = locks.lock(
            "body", {Criterion.CLARITY_READABILITY: 0.8, Criterion.COMPLETENESS: 0.6}, 1
        )
        assert [lock.criterion for lock in created] == [Criterion.CLARITY_READABILITY]
        assert len(locks) == 1
        assert locks.get("body", Criterion.COMPLETENESS) is None

    def test_locked_score_only_rises(self):
        locks = QualityLockRegistry()
        locks.lock("body", {Criterion.CLARITY_READABILITY: 0.85}, 1)

        assert locks.lock("body", {Criterion.CLARITY_READABILITY: 0.80}, 2) == []
        assert locks.get("body", Criterion.CLARITY_READABILITY).locked_score == 0.85

        raised = locks.lock("body", {Criterion.CLARITY_READABILITY: 0.92}, 3)
        assert raised[0].locked_score == 0.92
        assert raised[0].locked_at_iteration == 3
        assert len(locks) == 1

    def test_locks_are_per_section(self):
        locks = QualityLockRegistry()
        locks.lock("intro", {Criterion.COMPLETENESS: 0.9}, 1)
        locks.lock("body", {Criterion.COMPLETENESS: 0.8, Criterion.FACTUAL_ACCURACY: 0.95}, 1)

        assert len(locks.locks_for("body")) == 2
        assert len(locks.locks_for("intro")) == 1
        assert locks.locks_for("outro") == []

    def test_within_tolerance_is_not_a_regression(self):
        locks = QualityLockRegistry(tolerance=0.05)
        locks.lock("body", {Criterion.CLARITY_READABILITY: 0.90}, 1)
        assert locks.violations("body", {Criterion.CLARITY_READABILITY: 0.86}) == []

    def test_violation_below_floor(self):
        locks = QualityLockRegistry(tolerance=0.05)
        locks.lock("body", {Criterion.CLARITY_READABILITY: 0.90}, 1)

        found = locks.violations("body", {Criterion.CLARITY_READABILITY: 0.80})
        assert len(found) == 1
        assert found[0].section_id == "body"
        assert found[0].criterion == "clarity_readability"
        assert found[0].observed_score == 0.80

    def test_worst_drop_first(self):
        locks = QualityLockRegistry()
        locks.lock("body", {Criterion.CLARITY_READABILITY: 0.9, Criterion.COMPLETENESS: 0.9}, 1)
        found = locks.violations(
            "body", {Criterion.CLARITY_READABILITY: 0.8, Criterion.COMPLETENESS: 0.5}
        )
        assert [e.criterion for e in found] == ["completeness", "clarity_readability"]

    def test_missing_score_is_not_a_regression(self):
        locks = QualityLockRegistry()
        locks.lock("body", {Criterion.CLARITY_READABILITY: 0.9}, 1)
        assert locks.violations("body", {Criterion.COMPLETENESS: 0.1}) == []

    def test_enforce_raises(self):
        locks = QualityLockRegistry()
        locks.lock("body", {Criterion.FACTUAL_ACCURACY: 0.95}, 1)

        locks.enforce("body", {Criterion.FACTUAL_ACCURACY: 0.93})
        with pytest.raises(RegressionDetectedError, match="factual_accuracy"):
            locks.enforce("body", {Criterion.FACTUAL_ACCURACY: 0.70})

    def test_lock_floor(self):
        lock = QualityLock(
            section_id="body",
            criterion=Criterion.COMPLETENESS,
            locked_score=0.9,
            tolerance=0.05,
        )
        assert lock.floor == pytest.approx(0.85)
        assert lock.is_violated_by(0.84)
        assert not lock.is_violated_by(0.86)


# ── Verifier ───────────────────────────────────────────────────────


class TestVerifier:
    async def test_passes_both_tiers(self):
        fake = _FakeFixVerifier(
            FixVerification(addressed=True, rationale="Pigment named", tokens_used=40)
        )
        report = await _make_verifier(fake).verify(_make_task(), _BEFORE, _AFTER)

        assert report.passed
        assert report.tier == "tier2"
        assert report.reason == "Pigment named"
        assert report.tokens_used == 40

    async def test_tier1_rejects_without_model_call(self):
        fake = _FakeFixVerifier(FixVerification(addressed=True))
        broken = _AFTER + "\n\n```python\nprint('light')"
        report = await _make_verifier(fake).verify(_make_task(), _BEFORE, broken)

        assert not report.passed
        assert report.tier == "tier1"
        assert [f.check for f in report.failures] == ["code_fences"]
        assert report.tokens_used == 0
        assert fake.calls == 0

    async def test_tier1_rejects_truncation(self):
        fake = _FakeFixVerifier(FixVerification(addressed=True))
        report = await _make_verifier(fake).verify(_make_task(), _BEFORE, "Chlorophyll.")

        assert report.tier == "tier1"
        assert report.failures[0].check == "length_change"

    async def test_preexisting_problem_not_blamed_on_patch(self):
        fake = _FakeFixVerifier(FixVerification(addressed=True))
        before = _BEFORE + "\n\n```python\nprint('light')"
        after = _AFTER + "\n\n```python\nprint('light')"
        report = await _make_verifier(fake).verify(_make_task(), before, after)
        assert report.passed

    async def test_tier2_not_addressed(self):
        fake = _FakeFixVerifier(FixVerification(addressed=False, rationale="Still unnamed"))
        report = await _make_verifier(fake).verify(_make_task(), _BEFORE, _AFTER)

        assert not report.passed
        assert report.tier == "tier2"
        assert report.reason == "Still unnamed"

    async def test_quality_lock_trips_in_loop(self):
        locks = QualityLockRegistry(tolerance=0.05)
        locks.lock("body", {Criterion.FACTUAL_ACCURACY: 0.9}, 1)
        fake = _FakeFixVerifier(FixVerification(
            addressed=True, criteria_scores={Criterion.FACTUAL_ACCURACY: 0.7}
        ))
        report = await _make_verifier(fake, locks).verify(_make_task(), _BEFORE, _AFTER)

        assert not report.passed
        assert report.tier == "quality_lock"
        assert report.regression.criterion == "factual_accuracy"

    async def test_scores_above_lock_pass(self):
        locks = QualityLockRegistry()
        locks.lock("body", {Criterion.FACTUAL_ACCURACY: 0.9}, 1)
        fake = _FakeFixVerifier(FixVerification(
            addressed=True, criteria_scores={Criterion.FACTUAL_ACCURACY: 0.92}
        ))
        report = await _make_verifier(fake, locks).verify(_make_task(), _BEFORE, _AFTER)
        assert report.passed

    async def test_malformed_answer_retried(self):
        fake = _FakeFixVerifier(
            MalformedResponseError("no addressed field"),
            FixVerification(addressed=True),
        )
        report = await _make_verifier(fake).verify(_make_task(), _BEFORE, _AFTER)

        assert report.passed
        assert fake.calls == 2

    async def test_non_retryable_error_propagates(self):
        fake = _FakeFixVerifier(TransportError("invalid api key", retryable=False))
        with pytest.raises(TransportError):
            await _make_verifier(fake).verify(_make_task(), _BEFORE, _AFTER)
        assert fake.calls == 1

    async def test_persistent_failure_exhausts_retries(self):
        fake = _FakeFixVerifier(TransportError("connection reset"))
        with pytest.raises(TransportError):
            await _make_verifier(fake).verify(_make_task(), _BEFORE, _AFTER)
        assert fake.calls == 3
