"""Tests for lessonrefine.judging.voting and recommendation mapping."""

import math

import pytest

from lessonrefine.judging.recommendation import determine_recommendation, weighted_overall
from lessonrefine.judging.voting import (
    accuracy_weight,
    aggregate_criteria,
    build_consensus_result,
    disagreement,
    tally_votes,
    weighted_quorum,
)
from lessonrefine.schemas.judge import (
    Confidence,
    ConsensusMethod,
    Criterion,
    JudgeIssue,
    JudgeVerdict,
    Recommendation,
    Severity,
)


def _make_verdict(
    model_id: str,
    score: float,
    recommendation: Recommendation = Recommendation.ITERATIVE_REFINEMENT,
    **overrides,
) -> JudgeVerdict:
    defaults = {
        "model_id": model_id,
        "overall_score": score,
        "recommendation": recommendation,
    }
    defaults.update(overrides)
    return JudgeVerdict(**defaults)


class TestAccuracyWeight:
    def test_zero_accuracy_is_half(self):
        assert accuracy_weight(0.0) == 0.5

    def test_logistic_curve(self):
        assert accuracy_weight(0.86) == pytest.approx(1 / (1 + math.exp(-0.86)))

    def test_monotonic(self):
        assert accuracy_weight(0.86) > accuracy_weight(0.74) > accuracy_weight(-1.0)


class TestWeightedQuorum:
    def test_equal_weights_is_mean(self):
        assert weighted_quorum([(0.6, 1.0), (0.8, 1.0)]) == pytest.approx(0.7)

    def test_any_number_of_judges(self):
        pairs = [(0.5, 1.0), (0.7, 1.0), (0.9, 2.0), (0.3, 0.0)]
        assert weighted_quorum(pairs) == pytest.approx((0.5 + 0.7 + 1.8) / 4.0)

    def test_empty_rejected(self):
        with pytest.raises(ValueError):
            weighted_quorum([])

    def test_zero_weights_rejected(self):
        with pytest.raises(ValueError):
            weighted_quorum([(0.5, 0.0)])


class TestTallyVotes:
    def test_clear_winner(self):
        tally = tally_votes({"a": "ACCEPT", "b": "ACCEPT", "c": "REGENERATE"})
        assert tally.winner == "ACCEPT"
        assert not tally.is_tie

    def test_tie(self):
        tally = tally_votes({"a": "ACCEPT", "b": "REGENERATE"})
        assert tally.is_tie
        assert tally.tied_options == ["ACCEPT", "REGENERATE"]

    def test_empty(self):
        tally = tally_votes({})
        assert tally.winner is None
        assert tally.is_tie


class TestDisagreement:
    def test_large_delta(self):
        needs, delta = disagreement(
            _make_verdict("a", 0.60), _make_verdict("b", 0.85), 0.15
        )
        assert needs
        assert delta == pytest.approx(0.25)

    def test_small_delta_same_direction(self):
        needs, _ = disagreement(_make_verdict("a", 0.70), _make_verdict("b", 0.78), 0.15)
        assert not needs

    def test_opposite_recommendations(self):
        needs, delta = disagreement(
            _make_verdict("a", 0.66, Recommendation.ACCEPT_WITH_MINOR_REVISION),
            _make_verdict("b", 0.62, Recommendation.REGENERATE),
            0.15,
        )
        assert needs
        assert delta < 0.15

    def test_delta_at_threshold_is_not_disagreement(self):
        needs, _ = disagreement(_make_verdict("a", 0.50), _make_verdict("b", 0.75), 0.25)
        assert not needs


class TestBuildConsensusResult:
    def test_unanimous(self):
        result = build_consensus_result(
            [_make_verdict("a", 0.8), _make_verdict("b", 0.7)], tiebreaker_used=False
        )
        assert result.method is ConsensusMethod.UNANIMOUS
        assert result.recommendation is Recommendation.ITERATIVE_REFINEMENT
        assert result.aggregated_score == pytest.approx(0.75)

    def test_majority(self):
        result = build_consensus_result(
            [
                _make_verdict("a", 0.8, Recommendation.ACCEPT),
                _make_verdict("b", 0.8, Recommendation.ACCEPT),
                _make_verdict("c", 0.5, Recommendation.REGENERATE),
            ],
            tiebreaker_used=False,
        )
        assert result.method is ConsensusMethod.MAJORITY
        assert result.recommendation is Recommendation.ACCEPT

    def test_tiebreaker_method(self):
        result = build_consensus_result(
            [
                _make_verdict("a", 0.6, Recommendation.REGENERATE),
                _make_verdict("b", 0.85, Recommendation.ACCEPT),
                _make_verdict("c", 0.8, Recommendation.ACCEPT),
            ],
            tiebreaker_used=True,
            score_delta=0.25,
        )
        assert result.method is ConsensusMethod.TIE_BREAKER
        assert result.tiebreaker_used
        assert result.score_delta == 0.25
        assert result.recommendation is Recommendation.ACCEPT

    def test_tied_vote_falls_back_to_score(self):
        result = build_consensus_result(
            [
                _make_verdict("a", 1.0, Recommendation.ACCEPT),
                _make_verdict("b", 0.5, Recommendation.REGENERATE),
            ],
            tiebreaker_used=False,
        )
        # mean 0.75 with no issues
        assert result.recommendation is Recommendation.ACCEPT_WITH_MINOR_REVISION

    def test_weights_recorded_per_judge(self):
        result = build_consensus_result(
            [
                _make_verdict("a", 0.9, historical_accuracy=2.0),
                _make_verdict("b", 0.5, historical_accuracy=0.0),
            ],
            tiebreaker_used=False,
        )
        assert result.weights["b"] == 0.5
        assert result.aggregated_score > 0.7


class TestAggregateCriteria:
    def test_only_scored_criteria(self):
        verdicts = [
            _make_verdict("a", 0.8, criteria_scores={Criterion.COMPLETENESS: 0.6}),
            _make_verdict("b", 0.8, criteria_scores={
                Criterion.COMPLETENESS: 0.8,
                Criterion.FACTUAL_ACCURACY: 0.9,
            }),
        ]
        scores = aggregate_criteria(verdicts, {"a": 1.0, "b": 1.0})
        assert scores[Criterion.COMPLETENESS] == pytest.approx(0.7)
        assert scores[Criterion.FACTUAL_ACCURACY] == pytest.approx(0.9)
        assert Criterion.CLARITY_READABILITY not in scores


class TestDetermineRecommendation:
    def test_low_confidence_escalates(self):
        assert determine_recommendation(0.95, Confidence.LOW) is Recommendation.ESCALATE_TO_HUMAN

    def test_accept(self):
        assert determine_recommendation(0.91, Confidence.HIGH) is Recommendation.ACCEPT

    def test_minor_revision(self):
        rec = determine_recommendation(0.80, Confidence.MEDIUM, [Severity.MINOR])
        assert rec is Recommendation.ACCEPT_WITH_MINOR_REVISION

    def test_critical_blocks_minor_revision(self):
        rec = determine_recommendation(0.80, Confidence.MEDIUM, [Severity.CRITICAL])
        assert rec is Recommendation.ITERATIVE_REFINEMENT

    def test_regenerate(self):
        assert determine_recommendation(0.40, Confidence.HIGH) is Recommendation.REGENERATE

    def test_weighted_overall(self):
        scores = {Criterion.LEARNING_OBJECTIVE_ALIGNMENT: 1.0, Criterion.COMPLETENESS: 0.0}
        assert weighted_overall(scores) == pytest.approx(0.25 / 0.35)

    def test_weighted_overall_empty(self):
        assert weighted_overall({}) == 0.0

    def test_issue_severity_is_not_a_category(self):
        issue = JudgeIssue(
            criterion=Criterion.PEDAGOGICAL_STRUCTURE,
            severity=Severity.CRITICAL,
            description="Mermaid diagram does not render",
            category="structural",
        )
        assert issue.severity is Severity.CRITICAL
        assert issue.category.value == "structural"
