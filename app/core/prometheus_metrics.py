from typing import Optional
from prometheus_client import Counter, Histogram, Info, generate_latest
from prometheus_client.core import CollectorRegistry
import logging

logger = logging.getLogger(__name__)

# Prometheus Registry
REGISTRY = CollectorRegistry()

# Service Metrics
method_calls_total = Counter(
    'driftwatch_method_calls_total',
    'Total service method calls',
    ['status', 'service', 'method'],
    registry=REGISTRY
)

method_duration_seconds = Histogram(
    'driftwatch_method_duration_seconds',
    'Service method duration in seconds',
    ['service', 'method'],
    buckets=[0.01, 0.05, 0.1, 0.5, 1.0, 5.0, 30.0, 120.0],
    registry=REGISTRY
)

system_info = Info(
    'driftwatch_info',
    'System information',
    registry=REGISTRY
)

# Drift Metrics
golden_test_runs_total = Counter(
    'driftwatch_golden_test_runs_total',
    'Recorded golden test runs by outcome',
    ['outcome'],  # passed | failed | replay_failed
    registry=REGISTRY
)

golden_test_similarity = Histogram(
    'driftwatch_golden_test_similarity',
    'Aggregate semantic similarity of recorded runs',
    buckets=[0.1, 0.3, 0.5, 0.7, 0.8, 0.9, 0.95, 1.0],
    registry=REGISTRY
)

golden_test_alerts_total = Counter(
    'driftwatch_golden_test_alerts_total',
    'Alerts emitted by golden test runs',
    ['type', 'severity'],
    registry=REGISTRY
)

scheduler_sweep_duration_seconds = Histogram(
    'driftwatch_scheduler_sweep_duration_seconds',
    'Duration of one scheduler sweep over due golden tests',
    buckets=[1.0, 10.0, 60.0, 300.0, 900.0],
    registry=REGISTRY
)


class PrometheusMetricsCollector:
    """Records engine metrics into the process-wide Prometheus registry"""

    def __init__(self):
        system_info.info({
            'version': '0.1.0',
            'service': 'driftwatch'
        })

    def record_method_execution(
        self,
        service_name: str,
        method_name: str,
        duration_seconds: float,
        success: bool,
    ):
        status = 'success' if success else 'error'
        method_calls_total.labels(
            status=status,
            service=service_name,
            method=method_name
        ).inc()
        method_duration_seconds.labels(
            service=service_name,
            method=method_name
        ).observe(duration_seconds)

    def record_golden_test_run(
        self,
        passed: bool,
        semantic_similarity: float,
        alerts: list,
        replay_failed: Optional[bool] = False
    ):
        """Record the outcome of one persisted golden test run"""
        if replay_failed:
            outcome = 'replay_failed'
        else:
            outcome = 'passed' if passed else 'failed'
            golden_test_similarity.observe(semantic_similarity)

        golden_test_runs_total.labels(outcome=outcome).inc()

        for alert in alerts:
            golden_test_alerts_total.labels(
                type=alert.type,
                severity=alert.severity
            ).inc()

    def record_sweep(self, duration_seconds: float):
        scheduler_sweep_duration_seconds.observe(duration_seconds)

    def get_prometheus_metrics(self) -> bytes:
        """Get Prometheus metrics in text format"""
        return generate_latest(REGISTRY)

# Global instance
prometheus_collector = PrometheusMetricsCollector()
