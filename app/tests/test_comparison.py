"""
Unit tests for the comparison engine (services/comparison.py).

Tests cover:
- Per-turn drift detection and severity classification
- Verdict rules (average similarity and critical alerts)
- Length mismatches between baseline and current transcripts
- Latency / cost deltas and their warning alerts
- Replay failure outcomes
"""

import pytest

from schemas.golden_test import GoldenTestThresholds, RunMetrics
from services.comparison import ComparisonEngine, replay_failure_outcome
from services.similarity import SimilarityScorer


@pytest.fixture
def engine():
    return ComparisonEngine()


@pytest.fixture
def thresholds():
    return GoldenTestThresholds()


class TestCompareTurns:

    def test_identical_transcripts_pass(self, engine, thresholds):
        turns = ["Hello, how can I help?", "The refund was approved."]

        outcome = engine.compare(turns, list(turns), thresholds)

        assert outcome.passed is True
        assert outcome.semantic_similarity == 1.0
        assert outcome.alerts == []
        assert [d.is_drifted for d in outcome.drift_details] == [False, False]

    def test_identity_holds_at_strictest_threshold(self, engine):
        strict = GoldenTestThresholds(min_semantic_similarity=1.0)

        outcome = engine.compare(["a b c"], ["a b c"], strict)

        assert outcome.passed is True

    def test_small_rewording_is_critical_drift(self, engine, thresholds):
        # {hello, world} / {hello, there, world}
        outcome = engine.compare(["Hello world"], ["Hello there world"], thresholds)

        assert outcome.passed is False
        assert outcome.semantic_similarity == 0.6667
        [alert] = outcome.alerts
        assert alert.type == "drift"
        assert alert.severity == "critical"
        assert alert.message == "Turn 1: Response drifted from baseline (67% similarity)"
        assert alert.details.turn_number == 1

    def test_dropped_turn_content_fails(self, engine, thresholds):
        outcome = engine.compare(["The refund was approved."], [""], thresholds)

        assert outcome.passed is False
        assert outcome.semantic_similarity == 0.0
        assert outcome.alerts[0].severity == "critical"

    def test_missing_trailing_turn_is_flagged(self, engine, thresholds):
        baseline = ["Hello there", "How can I help", "Goodbye now"]
        current = ["Hello there", "How can I help"]

        outcome = engine.compare(baseline, current, thresholds)

        assert outcome.passed is False
        assert len(outcome.drift_details) == 3
        assert outcome.drift_details[2].current == ""
        assert outcome.drift_details[2].is_drifted is True
        [alert] = outcome.alerts
        assert alert.details.turn_number == 3
        assert alert.message.startswith("Turn 3:")
        assert outcome.semantic_similarity == 0.6667

    def test_extra_current_turn_is_flagged(self, engine, thresholds):
        outcome = engine.compare(["Hi"], ["Hi", "Anything else?"], thresholds)

        assert outcome.passed is False
        assert outcome.drift_details[1].baseline == ""
        assert outcome.alerts[0].details.turn_number == 2

    def test_turns_empty_on_both_sides_are_skipped(self, engine, thresholds):
        outcome = engine.compare(["a b", "", "c"], ["a b", "", "c"], thresholds)

        assert [d.turn_number for d in outcome.drift_details] == [1, 3]
        assert outcome.passed is True

    def test_no_turns_passes(self, engine, thresholds):
        outcome = engine.compare([], [], thresholds)

        assert outcome.passed is True
        assert outcome.semantic_similarity == 1.0
        assert outcome.drift_details == []

    def test_moderate_drift_is_warning(self, engine, thresholds):
        # 9 shared words out of 11
        baseline = "a b c d e f g h i j"
        current = "a b c d e f g h i k"

        outcome = engine.compare(["same words here", baseline], ["same words here", current], thresholds)

        [alert] = outcome.alerts
        assert alert.severity == "warning"
        assert alert.message == "Turn 2: Response drifted from baseline (82% similarity)"
        # Average (1.0 + 0.818) / 2 clears 0.90 and nothing is critical
        assert outcome.semantic_similarity == 0.9091
        assert outcome.passed is True

    def test_warning_drift_fails_when_average_is_low(self, engine, thresholds):
        outcome = engine.compare(["a b c d e f g h i j"], ["a b c d e f g h i k"], thresholds)

        assert outcome.alerts[0].severity == "warning"
        assert outcome.passed is False

    def test_critical_turn_fails_even_when_average_clears_threshold(self, engine):
        lenient = GoldenTestThresholds(min_semantic_similarity=0.65)
        baseline = ["one", "two", "three", "a b c"]
        current = ["one", "two", "three", "a b c d e"]

        outcome = engine.compare(baseline, current, lenient)

        # (1 + 1 + 1 + 0.6) / 4
        assert outcome.semantic_similarity == 0.9
        assert [(a.severity, a.details.turn_number) for a in outcome.alerts] == [("critical", 4)]
        assert outcome.passed is False

    def test_percentages_round_half_up(self, engine, thresholds):
        # 5 shared words out of 8: exactly 62.5%
        outcome = engine.compare(["a b c d e f"], ["a b c d e g h"], thresholds)

        assert outcome.alerts[0].message.endswith("(63% similarity)")

    def test_comparison_is_deterministic(self, engine, thresholds):
        baseline = ["Your order shipped", "Anything else?"]
        current = ["Your order has shipped today", "Is there anything else?"]

        first = engine.compare(baseline, current, thresholds)
        second = engine.compare(baseline, current, thresholds)

        assert first.model_dump() == second.model_dump()

    def test_custom_scorer(self, thresholds):
        class ConstantScorer(SimilarityScorer):
            def similarity(self, baseline, current):
                return 0.95

        outcome = ComparisonEngine(scorer=ConstantScorer()).compare(["x"], ["y"], thresholds)

        assert outcome.passed is True
        assert outcome.semantic_similarity == 0.95


class TestCompareMetrics:

    def test_latency_increase_beyond_threshold_alerts(self, engine, thresholds):
        latency_change, cost_change, alerts = engine.compare_metrics(
            RunMetrics(latency_ms=1000, token_count=100),
            RunMetrics(latency_ms=1300, token_count=110),
            thresholds,
        )

        assert latency_change == pytest.approx(0.3)
        assert cost_change == pytest.approx(0.1)
        [alert] = alerts
        assert alert.type == "latency_increase"
        assert alert.severity == "warning"
        assert alert.message == "Latency increased by 30%"

    def test_token_increase_beyond_threshold_alerts(self, engine, thresholds):
        _, cost_change, alerts = engine.compare_metrics(
            RunMetrics(token_count=100),
            RunMetrics(token_count=120),
            thresholds,
        )

        assert cost_change == pytest.approx(0.2)
        [alert] = alerts
        assert alert.type == "cost_increase"
        assert alert.message == "Token usage increased by 20%"
        assert alert.details.baseline == 100
        assert alert.details.current == 120

    def test_decreases_do_not_alert(self, engine, thresholds):
        latency_change, _, alerts = engine.compare_metrics(
            RunMetrics(latency_ms=1000),
            RunMetrics(latency_ms=800),
            thresholds,
        )

        assert latency_change == pytest.approx(-0.2)
        assert alerts == []

    @pytest.mark.parametrize("baseline, current", [
        (None, RunMetrics(latency_ms=1000)),
        (RunMetrics(latency_ms=1000), None),
        (RunMetrics(latency_ms=0), RunMetrics(latency_ms=500)),
        (RunMetrics(), RunMetrics()),
    ])
    def test_missing_metrics_yield_zero_change(self, engine, thresholds, baseline, current):
        latency_change, cost_change, alerts = engine.compare_metrics(baseline, current, thresholds)

        assert (latency_change, cost_change, alerts) == (0.0, 0.0, [])


class TestEvaluate:

    def test_metric_alerts_do_not_change_verdict(self, engine, thresholds):
        turns = ["The refund was approved."]

        outcome = engine.evaluate(
            turns, list(turns), thresholds,
            RunMetrics(latency_ms=1000, token_count=100),
            RunMetrics(latency_ms=2000, token_count=300),
        )

        assert outcome.passed is True
        assert outcome.latency_change == 1.0
        assert outcome.cost_change == 2.0
        assert [a.type for a in outcome.alerts] == ["latency_increase", "cost_increase"]

    def test_drift_alerts_come_first(self, engine, thresholds):
        outcome = engine.evaluate(
            ["Hello world"], ["Hello there world"], thresholds,
            RunMetrics(latency_ms=100), RunMetrics(latency_ms=200),
        )

        assert [a.type for a in outcome.alerts] == ["drift", "latency_increase"]

    def test_changes_are_rounded(self, engine, thresholds):
        outcome = engine.evaluate(
            ["x"], ["x"], thresholds,
            RunMetrics(latency_ms=3), RunMetrics(latency_ms=4),
        )

        assert outcome.latency_change == 0.3333


def test_replay_failure_outcome():
    outcome = replay_failure_outcome("timed out after 120s")

    assert outcome.passed is False
    assert outcome.semantic_similarity == 0.0
    assert outcome.drift_details == []
    [alert] = outcome.alerts
    assert alert.type == "regression"
    assert alert.severity == "critical"
    assert alert.details.reason == "timed out after 120s"
    assert "timed out after 120s" in alert.message
