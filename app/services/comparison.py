import math
from typing import Optional, Sequence

from schemas.golden_test import (
    ComparisonOutcome,
    CostIncreaseAlert,
    DriftAlert,
    DriftAlertDetails,
    DriftDetail,
    GoldenTestThresholds,
    LatencyIncreaseAlert,
    MetricChangeDetails,
    RegressionAlert,
    RegressionDetails,
    RunMetrics,
)
from services.similarity import JaccardSimilarityScorer, SimilarityScorer

CRITICAL_SIMILARITY = 0.70
SIMILARITY_PRECISION = 4


def _percent(value: float) -> int:
    """Whole percentage, rounding halves up."""
    return math.floor(value * 100 + 0.5)


def _relative_change(baseline: Optional[float], current: Optional[float]) -> Optional[float]:
    if baseline is None or current is None or baseline <= 0:
        return None
    return (current - baseline) / baseline


class ComparisonEngine:
    """
    Scores a fresh transcript against a frozen baseline.

    Turns are compared positionally; a turn missing on either side is
    compared as the empty string, so a dropped turn shows up as maximal
    drift on that position. Comparison is pure and never raises on
    length mismatches.
    """

    def __init__(self, scorer: Optional[SimilarityScorer] = None):
        self.scorer = scorer or JaccardSimilarityScorer()

    def compare(
        self,
        baseline_turns: Sequence[str],
        current_turns: Sequence[str],
        thresholds: GoldenTestThresholds,
    ) -> ComparisonOutcome:
        drift_details: list[DriftDetail] = []
        alerts: list = []
        similarities: list[float] = []

        max_turns = max(len(baseline_turns), len(current_turns))

        for i in range(max_turns):
            baseline = baseline_turns[i] if i < len(baseline_turns) else ""
            current = current_turns[i] if i < len(current_turns) else ""
            baseline = baseline or ""
            current = current or ""

            if not baseline and not current:
                continue

            turn_number = i + 1
            similarity = self.scorer.similarity(baseline, current)
            is_drifted = similarity < thresholds.min_semantic_similarity

            drift_details.append(DriftDetail(
                turn_number=turn_number,
                baseline=baseline,
                current=current,
                similarity=similarity,
                is_drifted=is_drifted,
            ))

            if is_drifted:
                severity = "critical" if similarity < CRITICAL_SIMILARITY else "warning"
                alerts.append(DriftAlert(
                    severity=severity,
                    message=(
                        f"Turn {turn_number}: Response drifted from baseline "
                        f"({_percent(similarity)}% similarity)"
                    ),
                    details=DriftAlertDetails(turn_number=turn_number, similarity=similarity),
                ))

            similarities.append(similarity)

        # No compared turns is no evidence of divergence
        average = sum(similarities) / len(similarities) if similarities else 1.0
        has_critical = any(a.severity == "critical" for a in alerts)

        return ComparisonOutcome(
            passed=average >= thresholds.min_semantic_similarity and not has_critical,
            semantic_similarity=round(average, SIMILARITY_PRECISION),
            drift_details=drift_details,
            alerts=alerts,
        )

    def compare_metrics(
        self,
        baseline_metrics: Optional[RunMetrics],
        current_metrics: Optional[RunMetrics],
        thresholds: GoldenTestThresholds,
    ) -> tuple[float, float, list]:
        """
        Relative latency and cost (token count) change against the baseline.

        Returns (latency_change, cost_change, alerts). A change is 0.0 when
        either side lacks the metric. Increases beyond the thresholds yield
        warning alerts only.
        """
        baseline_metrics = baseline_metrics or RunMetrics()
        current_metrics = current_metrics or RunMetrics()
        alerts: list = []

        latency_change = _relative_change(baseline_metrics.latency_ms, current_metrics.latency_ms)
        if latency_change is not None and latency_change > thresholds.max_latency_increase:
            alerts.append(LatencyIncreaseAlert(
                message=f"Latency increased by {_percent(latency_change)}%",
                details=MetricChangeDetails(
                    baseline=baseline_metrics.latency_ms,
                    current=current_metrics.latency_ms,
                    change=latency_change,
                ),
            ))

        cost_change = _relative_change(baseline_metrics.token_count, current_metrics.token_count)
        if cost_change is not None and cost_change > thresholds.max_cost_increase:
            alerts.append(CostIncreaseAlert(
                message=f"Token usage increased by {_percent(cost_change)}%",
                details=MetricChangeDetails(
                    baseline=baseline_metrics.token_count,
                    current=current_metrics.token_count,
                    change=cost_change,
                ),
            ))

        return latency_change or 0.0, cost_change or 0.0, alerts

    def evaluate(
        self,
        baseline_turns: Sequence[str],
        current_turns: Sequence[str],
        thresholds: GoldenTestThresholds,
        baseline_metrics: Optional[RunMetrics] = None,
        current_metrics: Optional[RunMetrics] = None,
    ) -> ComparisonOutcome:
        """Turn comparison plus metric deltas. Metric alerts never change the verdict."""
        outcome = self.compare(baseline_turns, current_turns, thresholds)
        latency_change, cost_change, metric_alerts = self.compare_metrics(
            baseline_metrics, current_metrics, thresholds
        )
        return outcome.model_copy(update={
            "latency_change": round(latency_change, SIMILARITY_PRECISION),
            "cost_change": round(cost_change, SIMILARITY_PRECISION),
            "alerts": [*outcome.alerts, *metric_alerts],
        })


def replay_failure_outcome(reason: str) -> ComparisonOutcome:
    """Failed verdict for a run whose replay produced no transcript."""
    return ComparisonOutcome(
        passed=False,
        semantic_similarity=0.0,
        alerts=[
            RegressionAlert(
                message=f"Replay failed: {reason}",
                details=RegressionDetails(reason=reason),
            )
        ],
    )
