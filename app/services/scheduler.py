import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from core.environment import (
    get_max_concurrent_runs,
    get_poll_interval_seconds,
    get_replay_timeout_seconds,
    get_run_hour,
    is_scheduler_enabled,
)
from core.prometheus_metrics import prometheus_collector
from services.comparison import ComparisonEngine
from services.exceptions import GoldenTestNotFoundError, PersistenceFailure
from services.golden_test_service import GoldenTestService, RunLockRegistry
from services.notifications import AlertSink
from services.platform_client import PlatformClient

logger = logging.getLogger(__name__)


@dataclass
class SchedulerConfig:
    """Configuration for the golden test scheduler"""
    poll_interval_seconds: float = 300.0
    max_concurrent_runs: int = 4
    replay_timeout_seconds: float = 120.0
    run_hour: int = 3
    enabled: bool = True

    @classmethod
    def from_env(cls) -> "SchedulerConfig":
        return cls(
            poll_interval_seconds=get_poll_interval_seconds(),
            max_concurrent_runs=get_max_concurrent_runs(),
            replay_timeout_seconds=get_replay_timeout_seconds(),
            run_hour=get_run_hour(),
            enabled=is_scheduler_enabled(),
        )


@dataclass
class SweepReport:
    """Outcome of one pass over the due golden tests"""
    sweep_id: str
    due: int = 0
    passed: int = 0
    failed: int = 0
    errors: list[str] = field(default_factory=list)


class GoldenTestScheduler:
    """
    Poll-and-dispatch loop for due golden tests.

    Every `poll_interval_seconds` it loads the due tests (earliest first) and
    evaluates them concurrently, at most `max_concurrent_runs` at a time.
    Each evaluation runs in its own database session. A storage failure for
    one test is logged and does not stop the rest of the sweep.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        platform_client: PlatformClient,
        alert_sink: Optional[AlertSink] = None,
        config: Optional[SchedulerConfig] = None,
        comparison_engine: Optional[ComparisonEngine] = None,
        locks: Optional[RunLockRegistry] = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.session_factory = session_factory
        self.platform_client = platform_client
        self.alert_sink = alert_sink
        self.config = config or SchedulerConfig.from_env()
        self.comparison_engine = comparison_engine or ComparisonEngine()
        self.locks = locks or RunLockRegistry()
        self.clock = clock

        self._semaphore = asyncio.Semaphore(self.config.max_concurrent_runs)
        self._stop_event = asyncio.Event()
        self._task: Optional[asyncio.Task] = None

    def _service(self, db: AsyncSession) -> GoldenTestService:
        return GoldenTestService(
            db,
            platform_client=self.platform_client,
            alert_sink=self.alert_sink,
            comparison_engine=self.comparison_engine,
            locks=self.locks,
            clock=self.clock,
            run_hour=self.config.run_hour,
            replay_timeout=self.config.replay_timeout_seconds,
        )

    async def run_sweep(self) -> SweepReport:
        """Evaluates every golden test that is due right now."""
        report = SweepReport(sweep_id=str(uuid.uuid4()))
        start_time = time.perf_counter()

        async with self.session_factory() as db:
            due = await self._service(db).find_due_golden_tests()
            due_ids = [golden_test.id for golden_test in due]

        report.due = len(due_ids)
        logger.info(
            f"Scheduler sweep found {report.due} due golden test(s)",
            extra={'correlation_id': report.sweep_id}
        )

        results = await asyncio.gather(
            *(self._evaluate_one(golden_test_id, report) for golden_test_id in due_ids),
            return_exceptions=True,
        )

        for golden_test_id, result in zip(due_ids, results):
            if isinstance(result, BaseException):
                logger.error(
                    f"Unexpected error evaluating golden test: {result!r}",
                    extra={'golden_test_id': golden_test_id, 'correlation_id': report.sweep_id}
                )
                report.errors.append(golden_test_id)

        duration = time.perf_counter() - start_time
        prometheus_collector.record_sweep(duration)
        logger.info(
            "Scheduler sweep finished",
            extra={
                'correlation_id': report.sweep_id,
                'due': report.due,
                'passed': report.passed,
                'failed': report.failed,
                'errors': len(report.errors),
                'duration_ms': round(duration * 1000, 2),
            }
        )
        return report

    async def _evaluate_one(self, golden_test_id: str, report: SweepReport) -> None:
        async with self._semaphore:
            try:
                async with self.session_factory() as db:
                    run = await self._service(db).evaluate(
                        golden_test_id, correlation_id=report.sweep_id
                    )
            except GoldenTestNotFoundError:
                # Deleted between the due query and its evaluation
                logger.info(
                    "Due golden test disappeared before evaluation",
                    extra={'golden_test_id': golden_test_id, 'correlation_id': report.sweep_id}
                )
                return
            except PersistenceFailure as e:
                logger.error(
                    f"Storage failure evaluating golden test: {e}",
                    extra={'golden_test_id': golden_test_id, 'correlation_id': report.sweep_id}
                )
                report.errors.append(golden_test_id)
                return

        if run.passed:
            report.passed += 1
        else:
            report.failed += 1

    async def run_forever(self) -> None:
        logger.info(
            "Golden test scheduler started",
            extra={'poll_interval_seconds': self.config.poll_interval_seconds}
        )
        while not self._stop_event.is_set():
            try:
                await self.run_sweep()
            except PersistenceFailure as e:
                logger.error(f"Scheduler sweep aborted, could not load due golden tests: {e}")

            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.config.poll_interval_seconds)
            except asyncio.TimeoutError:
                pass
        logger.info("Golden test scheduler stopped")

    def start(self) -> None:
        if self._task is not None and not self._task.done():
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self.run_forever(), name="golden-test-scheduler")

    async def stop(self) -> None:
        self._stop_event.set()
        if self._task is not None:
            await self._task
            self._task = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()
