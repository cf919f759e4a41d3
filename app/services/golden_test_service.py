import asyncio
import logging
import weakref
from collections.abc import Mapping
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Callable, Optional, Sequence, TypeVar, Union

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.ext.asyncio import AsyncSession

# Models
from models.golden_test import GoldenTest, GoldenTestRun

# Schemas
from schemas.golden_test import (
    BaselineUpdate,
    ComparisonOutcome,
    GoldenTestCreate,
    GoldenTestSummary,
    GoldenTestThresholds,
    GoldenTestUpdate,
    RunMetrics,
    ThresholdsPatch,
    alert_list_adapter,
)

# Engine
from core.environment import get_replay_timeout_seconds, get_run_hour
from core.metrics import track_performance
from core.prometheus_metrics import prometheus_collector
from services.comparison import ComparisonEngine, replay_failure_outcome
from services.golden_test_store import GoldenTestStore
from services.notifications import AlertSink, LoggingAlertSink
from services.platform_client import PlatformClient
from services.scheduling import calculate_next_run

# Exceptions
from services.exceptions import (
    ConcurrentRunError,
    GoldenTestNotFoundError,
    ReplayFailure,
    ValidationError,
)

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)

MAX_RECORD_ATTEMPTS = 3
RECENT_FAILED_RUNS = 5
ALERTS_PER_RUN = 2
MAX_RECENT_ALERTS = 5
MAX_HISTORY_LIMIT = 200


class RunLockRegistry:
    """
    One asyncio.Lock per golden test id.

    Locks are held weakly: an entry disappears once nobody holds or waits
    on it. Share a single registry between every service instance that can
    touch the same golden tests.
    """

    def __init__(self):
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    def lock_for(self, golden_test_id: str) -> asyncio.Lock:
        lock = self._locks.get(golden_test_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[golden_test_id] = lock
        return lock

    @asynccontextmanager
    async def hold(self, golden_test_id: str):
        lock = self.lock_for(golden_test_id)
        async with lock:
            yield


def _validated(model_cls: type[M], data: Union[M, Mapping]) -> M:
    if isinstance(data, model_cls):
        return data
    try:
        return model_cls.model_validate(data)
    except PydanticValidationError as e:
        raise ValidationError(str(e)) from e


class GoldenTestService:
    """
    Coordinates golden tests: creation, replay, comparison, run recording
    and schedule/status advancement.

    State machine:
    - active <-> failed is driven by the verdict of the latest run
    - paused is only entered and left through update_golden_test; a run
      recorded against a paused test leaves it paused

    A service instance wraps one AsyncSession and must not be shared between
    concurrently running tasks. Per-test serialization comes from the shared
    RunLockRegistry plus the store's version-conditional update.
    """

    def __init__(
        self,
        db: AsyncSession,
        platform_client: Optional[PlatformClient] = None,
        alert_sink: Optional[AlertSink] = None,
        comparison_engine: Optional[ComparisonEngine] = None,
        locks: Optional[RunLockRegistry] = None,
        clock: Callable[[], datetime] = datetime.now,
        run_hour: Optional[int] = None,
        replay_timeout: Optional[float] = None,
    ):
        self.db = db
        self.store = GoldenTestStore(db)
        self.platform_client = platform_client
        self.alert_sink = alert_sink or LoggingAlertSink()
        self.engine = comparison_engine or ComparisonEngine()
        self.locks = locks or RunLockRegistry()
        self.clock = clock
        self.run_hour = get_run_hour() if run_hour is None else run_hour
        self.replay_timeout = get_replay_timeout_seconds() if replay_timeout is None else replay_timeout

    # Creation and lookup

    @track_performance(service_name="GoldenTestService")
    async def create_golden_test(
        self,
        user_id: str,
        data: Union[GoldenTestCreate, Mapping],
    ) -> GoldenTest:
        """
        Freezes a baseline transcript as a new active golden test.

        Thresholds are merged over the defaults. The name falls back to the
        test case name from the platform; with neither available the golden
        test is rejected.

        Raises:
            ValidationError: missing owner, name or baseline turns, or bad thresholds
        """
        data = _validated(GoldenTestCreate, data)
        if not user_id:
            raise ValidationError("user_id is required")

        thresholds = (data.thresholds or ThresholdsPatch()).apply_to(GoldenTestThresholds())

        name = (data.name or "").strip()
        if not name and self.platform_client is not None:
            name = (await self.platform_client.get_test_case_name(data.test_case_id) or "").strip()
        if not name:
            raise ValidationError(
                f"A name is required: test case {data.test_case_id} has no name to default to"
            )

        now = self.clock()
        golden_test = GoldenTest(
            test_case_id=data.test_case_id,
            agent_id=data.agent_id,
            user_id=user_id,
            name=name,
            baseline_result_id=data.baseline_result_id,
            baseline_responses=list(data.baseline_responses),
            baseline_metrics=(data.baseline_metrics or RunMetrics()).model_dump(),
            baseline_captured_at=now,
            thresholds=thresholds.model_dump(),
            schedule_frequency=data.schedule_frequency,
            last_run_at=None,
            next_scheduled_run=calculate_next_run(data.schedule_frequency, now, self.run_hour),
            status="active",
            version=1,
            created_at=now,
            updated_at=now,
        )
        golden_test = await self.store.add(golden_test)

        logger.info(
            f"Golden test created: {golden_test.name}",
            extra={
                'golden_test_id': golden_test.id,
                'agent_id': golden_test.agent_id,
                'next_scheduled_run': golden_test.next_scheduled_run.isoformat(),
            }
        )
        return golden_test

    async def get_golden_test(self, golden_test_id: str) -> GoldenTest:
        golden_test = await self.store.get(golden_test_id, refresh=True)
        if golden_test is None:
            raise GoldenTestNotFoundError(f"Golden test {golden_test_id} not found")
        return golden_test

    async def list_by_agent(self, agent_id: str) -> Sequence[GoldenTest]:
        return await self.store.list_by_agent(agent_id)

    async def list_by_user(self, user_id: str) -> Sequence[GoldenTest]:
        return await self.store.list_by_user(user_id)

    async def find_due_golden_tests(self) -> Sequence[GoldenTest]:
        """Active golden tests due now, earliest first."""
        return await self.store.list_due(self.clock())

    async def get_history(self, golden_test_id: str, limit: int = 20) -> Sequence[GoldenTestRun]:
        if not 1 <= limit <= MAX_HISTORY_LIMIT:
            raise ValidationError(f"limit must be between 1 and {MAX_HISTORY_LIMIT}")
        await self.get_golden_test(golden_test_id)
        return await self.store.history(golden_test_id, limit)

    # User-driven changes

    async def _save_with_retry(
        self,
        golden_test_id: str,
        apply: Callable[[GoldenTest, datetime], None],
    ) -> GoldenTest:
        """Applies `apply` to a fresh read and saves it, re-reading on a version conflict."""
        for attempt in range(1, MAX_RECORD_ATTEMPTS + 1):
            golden_test = await self.get_golden_test(golden_test_id)
            now = self.clock()
            apply(golden_test, now)
            golden_test.updated_at = now
            try:
                return await self.store.save(golden_test)
            except ConcurrentRunError:
                if attempt == MAX_RECORD_ATTEMPTS:
                    raise
                logger.warning(
                    f"Golden test changed while saving, retrying ({attempt}/{MAX_RECORD_ATTEMPTS})",
                    extra={'golden_test_id': golden_test_id}
                )

    async def update_golden_test(
        self,
        golden_test_id: str,
        updates: Union[GoldenTestUpdate, Mapping],
    ) -> GoldenTest:
        """
        Applies name, threshold, frequency and status changes.

        A new frequency reschedules from now. Setting `status` is the only
        way into or out of `paused`.
        """
        updates = _validated(GoldenTestUpdate, updates)

        name = None
        if updates.name is not None:
            name = updates.name.strip()
            if not name:
                raise ValidationError("name must not be blank")

        def apply(golden_test: GoldenTest, now: datetime) -> None:
            if name is not None:
                golden_test.name = name

            if updates.thresholds is not None:
                current = GoldenTestThresholds.model_validate(golden_test.thresholds)
                golden_test.thresholds = updates.thresholds.apply_to(current).model_dump()

            if updates.schedule_frequency is not None:
                golden_test.schedule_frequency = updates.schedule_frequency
                golden_test.next_scheduled_run = calculate_next_run(
                    updates.schedule_frequency, now, self.run_hour
                )

            if updates.status is not None and updates.status != golden_test.status:
                logger.info(
                    f"Golden test status changed by user: {golden_test.status} -> {updates.status}",
                    extra={'golden_test_id': golden_test_id}
                )
                golden_test.status = updates.status

        async with self.locks.hold(golden_test_id):
            return await self._save_with_retry(golden_test_id, apply)

    async def update_baseline(
        self,
        golden_test_id: str,
        new_result_id: str,
        new_responses: list[str],
        new_metrics: Optional[RunMetrics] = None,
    ) -> GoldenTest:
        """
        Replaces the frozen baseline. Schedule and status are left alone:
        re-baselining acknowledges earlier drift as intended.
        """
        update = _validated(BaselineUpdate, {
            "new_result_id": new_result_id,
            "new_responses": new_responses,
            "new_metrics": new_metrics,
        })

        def apply(golden_test: GoldenTest, now: datetime) -> None:
            golden_test.baseline_result_id = update.new_result_id
            golden_test.baseline_responses = list(update.new_responses)
            golden_test.baseline_metrics = (update.new_metrics or RunMetrics()).model_dump()
            golden_test.baseline_captured_at = now

        async with self.locks.hold(golden_test_id):
            golden_test = await self._save_with_retry(golden_test_id, apply)

        logger.info("Golden test baseline replaced", extra={'golden_test_id': golden_test_id})
        return golden_test

    async def delete_golden_test(self, golden_test_id: str) -> None:
        async with self.locks.hold(golden_test_id):
            deleted = await self.store.delete(golden_test_id)
        if not deleted:
            raise GoldenTestNotFoundError(f"Golden test {golden_test_id} not found")

    # Runs

    @track_performance(service_name="GoldenTestService")
    async def record_run(
        self,
        golden_test_id: str,
        current_result_id: Optional[str],
        outcome: ComparisonOutcome,
    ) -> GoldenTestRun:
        """
        Persists a comparison outcome and advances the golden test.

        The run insert, `last_run_at`, `next_scheduled_run` and `status` are
        written in one transaction.
        """
        async with self.locks.hold(golden_test_id):
            return await self._record_run(golden_test_id, current_result_id, outcome)

    async def _record_run(
        self,
        golden_test_id: str,
        current_result_id: Optional[str],
        outcome: ComparisonOutcome,
        replay_failed: bool = False,
    ) -> GoldenTestRun:
        for attempt in range(1, MAX_RECORD_ATTEMPTS + 1):
            golden_test = await self.get_golden_test(golden_test_id)
            now = self.clock()

            if golden_test.status == "paused":
                status = "paused"
            else:
                status = "active" if outcome.passed else "failed"

            run = GoldenTestRun(
                golden_test_id=golden_test_id,
                current_result_id=current_result_id,
                passed=outcome.passed,
                semantic_similarity=outcome.semantic_similarity,
                latency_change=outcome.latency_change,
                cost_change=outcome.cost_change,
                drift_details=[d.model_dump(mode="json") for d in outcome.drift_details],
                alerts=[a.model_dump(mode="json") for a in outcome.alerts],
                run_at=now,
            )

            try:
                await self.store.record_run(
                    run,
                    expected_version=golden_test.version,
                    last_run_at=now,
                    next_scheduled_run=calculate_next_run(golden_test.schedule_frequency, now, self.run_hour),
                    status=status,
                )
            except ConcurrentRunError:
                if attempt == MAX_RECORD_ATTEMPTS:
                    raise
                logger.warning(
                    f"Golden test changed while recording run, retrying ({attempt}/{MAX_RECORD_ATTEMPTS})",
                    extra={'golden_test_id': golden_test_id}
                )
                continue

            prometheus_collector.record_golden_test_run(
                passed=outcome.passed,
                semantic_similarity=outcome.semantic_similarity,
                alerts=outcome.alerts,
                replay_failed=replay_failed,
            )
            logger.info(
                "Golden test run recorded",
                extra={
                    'golden_test_id': golden_test_id,
                    'golden_test_run_id': run.id,
                    'passed': outcome.passed,
                    'semantic_similarity': outcome.semantic_similarity,
                    'alert_count': len(outcome.alerts),
                    'status': status,
                }
            )
            return run

    @track_performance(service_name="GoldenTestService")
    async def evaluate(self, golden_test_id: str, correlation_id: Optional[str] = None) -> GoldenTestRun:
        """
        Replays the scenario, compares it to the baseline and records the run.

        Replay errors of any kind, timeouts included, do not raise: they are
        recorded as a failed run with a critical `regression` alert and no
        current result.
        """
        if self.platform_client is None:
            raise ValidationError("No replay capability configured")

        log_extra = {'golden_test_id': golden_test_id, 'correlation_id': correlation_id}

        async with self.locks.hold(golden_test_id):
            golden_test = await self.get_golden_test(golden_test_id)
            logger.info(f"Replaying golden test {golden_test.name}", extra=log_extra)

            current_result_id = None
            replay_failed = False
            try:
                replay = await asyncio.wait_for(
                    self.platform_client.replay(golden_test.test_case_id, golden_test.agent_id),
                    timeout=self.replay_timeout,
                )
            except asyncio.TimeoutError:
                replay_failed = True
                outcome = replay_failure_outcome(f"timed out after {self.replay_timeout:g}s")
            except ReplayFailure as e:
                replay_failed = True
                outcome = replay_failure_outcome(str(e))
            except Exception as e:
                # Any other replay error is still a failed run, never a missing one
                replay_failed = True
                outcome = replay_failure_outcome(f"{e.__class__.__name__}: {e}")
            else:
                current_result_id = replay.result_id
                outcome = self.engine.evaluate(
                    golden_test.baseline_responses,
                    replay.responses,
                    GoldenTestThresholds.model_validate(golden_test.thresholds),
                    RunMetrics.model_validate(golden_test.baseline_metrics or {}),
                    replay.metrics,
                )

            if replay_failed:
                logger.warning(f"Replay failed: {outcome.alerts[0].message}", extra=log_extra)

            run = await self._record_run(golden_test_id, current_result_id, outcome, replay_failed=replay_failed)
            golden_test = await self.get_golden_test(golden_test_id)

        await self._publish(golden_test, run)
        return run

    @track_performance(service_name="GoldenTestService")
    async def run_now(
        self,
        golden_test_id: str,
        current_responses: list[str],
        current_metrics: Optional[RunMetrics] = None,
        current_result_id: Optional[str] = None,
    ) -> tuple[GoldenTestRun, ComparisonOutcome]:
        """Compares caller-supplied responses against the baseline and records the run."""
        async with self.locks.hold(golden_test_id):
            golden_test = await self.get_golden_test(golden_test_id)
            outcome = self.engine.evaluate(
                golden_test.baseline_responses,
                current_responses,
                GoldenTestThresholds.model_validate(golden_test.thresholds),
                RunMetrics.model_validate(golden_test.baseline_metrics or {}),
                current_metrics,
            )
            run = await self._record_run(golden_test_id, current_result_id, outcome)
            golden_test = await self.get_golden_test(golden_test_id)

        await self._publish(golden_test, run)
        return run, outcome

    async def _publish(self, golden_test: GoldenTest, run: GoldenTestRun) -> None:
        if not run.alerts:
            return
        try:
            await self.alert_sink.publish(golden_test, run)
        except Exception as e:
            # The run is already persisted; delivery problems are reported, not re-raised
            logger.error(
                f"Alert publication failed: {e}",
                extra={'golden_test_id': golden_test.id, 'golden_test_run_id': run.id}
            )

    # Reporting

    @track_performance(service_name="GoldenTestService")
    async def summarize(self, user_id: str) -> GoldenTestSummary:
        """Counts by status and a small sample of alerts from recent failed runs."""
        counts = await self.store.count_by_status(user_id)
        failed_runs = await self.store.recent_failed_runs(user_id, limit=RECENT_FAILED_RUNS)

        recent_alerts = []
        for run in failed_runs:
            recent_alerts.extend((run.alerts or [])[:ALERTS_PER_RUN])

        return GoldenTestSummary(
            total_golden_tests=sum(counts.values()),
            active_tests=counts.get("active", 0),
            paused_tests=counts.get("paused", 0),
            failing_tests=counts.get("failed", 0),
            recent_alerts=alert_list_adapter.validate_python(recent_alerts[:MAX_RECENT_ALERTS]),
        )
