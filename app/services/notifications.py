import logging
from abc import ABC, abstractmethod

from models.golden_test import GoldenTest, GoldenTestRun
from schemas.golden_test import alert_list_adapter

logger = logging.getLogger(__name__)


class AlertSink(ABC):
    """
    Receives the alerts of every recorded run.

    Delivery policy (email, Slack, paging) belongs to the subscriber; the
    engine only hands over the golden test and the persisted run.
    """

    @abstractmethod
    async def publish(self, golden_test: GoldenTest, run: GoldenTestRun) -> None:
        ...


class LoggingAlertSink(AlertSink):
    """Writes one structured log record per alert."""

    async def publish(self, golden_test: GoldenTest, run: GoldenTestRun) -> None:
        for alert in alert_list_adapter.validate_python(run.alerts):
            level = logging.ERROR if alert.severity == "critical" else logging.WARNING
            logger.log(
                level,
                f"Golden test '{golden_test.name}': {alert.message}",
                extra={
                    'golden_test_id': golden_test.id,
                    'golden_test_run_id': run.id,
                    'agent_id': golden_test.agent_id,
                    'user_id': golden_test.user_id,
                    'alert_type': alert.type,
                    'severity': alert.severity,
                },
            )
