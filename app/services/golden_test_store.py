from datetime import datetime
from typing import Optional, Sequence

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from models.golden_test import GoldenTest, GoldenTestRun
from services.exceptions import ConcurrentRunError, PersistenceFailure


class GoldenTestStore:
    """
    Durable record of golden tests and their run history.

    Every write commits its own transaction and rolls the session back on
    failure, so callers never observe half-applied changes. SQLAlchemy
    errors surface as PersistenceFailure.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def _rollback(self) -> None:
        try:
            await self.db.rollback()
        except SQLAlchemyError:
            pass

    async def add(self, golden_test: GoldenTest) -> GoldenTest:
        try:
            self.db.add(golden_test)
            await self.db.commit()
            return golden_test
        except SQLAlchemyError as e:
            await self._rollback()
            raise PersistenceFailure(str(e)) from e

    async def save(self, golden_test: GoldenTest) -> GoldenTest:
        """
        Commits pending attribute changes on a loaded golden test.

        The UPDATE only applies while the row still carries the version the
        object was loaded with (and bumps it); otherwise nothing is committed
        and ConcurrentRunError is raised.
        """
        golden_test_id = golden_test.id
        try:
            await self.db.commit()
            return golden_test
        except StaleDataError as e:
            await self._rollback()
            raise ConcurrentRunError(
                f"Golden test {golden_test_id} changed since it was loaded"
            ) from e
        except SQLAlchemyError as e:
            await self._rollback()
            raise PersistenceFailure(str(e)) from e

    async def get(self, golden_test_id: str, refresh: bool = False) -> Optional[GoldenTest]:
        """
        Loads a golden test by id.

        With refresh=True the row is re-read from the database even when the
        session already holds it, so concurrent commits become visible.
        """
        try:
            stmt = select(GoldenTest).where(GoldenTest.id == golden_test_id)
            if refresh:
                stmt = stmt.execution_options(populate_existing=True)
            result = await self.db.execute(stmt)
            return result.scalar_one_or_none()
        except SQLAlchemyError as e:
            raise PersistenceFailure(str(e)) from e

    async def list_by_agent(self, agent_id: str) -> Sequence[GoldenTest]:
        return await self._list(GoldenTest.agent_id == agent_id)

    async def list_by_user(self, user_id: str) -> Sequence[GoldenTest]:
        return await self._list(GoldenTest.user_id == user_id)

    async def _list(self, criterion) -> Sequence[GoldenTest]:
        try:
            stmt = (
                select(GoldenTest)
                .where(criterion)
                .order_by(GoldenTest.created_at.desc())
            )
            result = await self.db.execute(stmt)
            return result.scalars().all()
        except SQLAlchemyError as e:
            raise PersistenceFailure(str(e)) from e

    async def list_due(self, now: datetime) -> Sequence[GoldenTest]:
        """Active golden tests whose next run is at or before `now`, earliest first."""
        try:
            stmt = (
                select(GoldenTest)
                .where(
                    GoldenTest.status == "active",
                    GoldenTest.next_scheduled_run.is_not(None),
                    GoldenTest.next_scheduled_run <= now,
                )
                .order_by(GoldenTest.next_scheduled_run.asc())
            )
            result = await self.db.execute(stmt)
            return result.scalars().all()
        except SQLAlchemyError as e:
            raise PersistenceFailure(str(e)) from e

    async def delete(self, golden_test_id: str) -> bool:
        """Deletes a golden test together with its run history."""
        try:
            await self.db.execute(
                delete(GoldenTestRun).where(GoldenTestRun.golden_test_id == golden_test_id)
            )
            result = await self.db.execute(
                delete(GoldenTest).where(GoldenTest.id == golden_test_id)
            )
            await self.db.commit()
            return (result.rowcount or 0) > 0
        except SQLAlchemyError as e:
            await self._rollback()
            raise PersistenceFailure(str(e)) from e

    async def record_run(
        self,
        run: GoldenTestRun,
        expected_version: int,
        last_run_at: datetime,
        next_scheduled_run: datetime,
        status: str,
    ) -> GoldenTestRun:
        """
        Inserts a run and advances its golden test in one transaction.

        The golden test update only applies while the row still carries
        `expected_version`; otherwise nothing is committed and
        ConcurrentRunError is raised.
        """
        try:
            self.db.add(run)
            await self.db.flush()

            result = await self.db.execute(
                update(GoldenTest)
                .where(
                    GoldenTest.id == run.golden_test_id,
                    GoldenTest.version == expected_version,
                )
                .values(
                    last_run_at=last_run_at,
                    next_scheduled_run=next_scheduled_run,
                    status=status,
                    version=expected_version + 1,
                    updated_at=last_run_at,
                )
                .execution_options(synchronize_session=False)
            )

            if result.rowcount != 1:
                await self.db.rollback()
                raise ConcurrentRunError(
                    f"Golden test {run.golden_test_id} changed while recording a run "
                    f"(expected version {expected_version})"
                )

            await self.db.commit()
            return run
        except SQLAlchemyError as e:
            await self._rollback()
            raise PersistenceFailure(str(e)) from e

    async def history(self, golden_test_id: str, limit: int = 20) -> Sequence[GoldenTestRun]:
        try:
            stmt = (
                select(GoldenTestRun)
                .where(GoldenTestRun.golden_test_id == golden_test_id)
                .order_by(GoldenTestRun.run_at.desc())
                .limit(limit)
            )
            result = await self.db.execute(stmt)
            return result.scalars().all()
        except SQLAlchemyError as e:
            raise PersistenceFailure(str(e)) from e

    async def count_by_status(self, user_id: str) -> dict[str, int]:
        try:
            stmt = (
                select(GoldenTest.status, func.count(GoldenTest.id))
                .where(GoldenTest.user_id == user_id)
                .group_by(GoldenTest.status)
            )
            result = await self.db.execute(stmt)
            return {status: count for status, count in result.all()}
        except SQLAlchemyError as e:
            raise PersistenceFailure(str(e)) from e

    async def recent_failed_runs(self, user_id: str, limit: int = 5) -> Sequence[GoldenTestRun]:
        try:
            stmt = (
                select(GoldenTestRun)
                .join(GoldenTest, GoldenTest.id == GoldenTestRun.golden_test_id)
                .where(
                    GoldenTest.user_id == user_id,
                    GoldenTestRun.passed.is_(False),
                )
                .order_by(GoldenTestRun.run_at.desc())
                .limit(limit)
            )
            result = await self.db.execute(stmt)
            return result.scalars().all()
        except SQLAlchemyError as e:
            raise PersistenceFailure(str(e)) from e
