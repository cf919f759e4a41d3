import os
import sys
import asyncio
import logging

# Run as a script: make the app directory importable
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from core.db import AsyncSessionLocal, create_schema, engine
from core.logging import setup_logging
from services.notifications import LoggingAlertSink
from services.platform_client import HttpPlatformClient
from services.scheduler import GoldenTestScheduler, SchedulerConfig

logger = logging.getLogger("run_sweep")


async def sweep() -> int:
    """One scheduler sweep, for cron-driven deployments. Exit code 1 if any test errored."""
    setup_logging()
    await create_schema()

    platform_client = HttpPlatformClient()
    scheduler = GoldenTestScheduler(
        AsyncSessionLocal,
        platform_client=platform_client,
        alert_sink=LoggingAlertSink(),
        config=SchedulerConfig.from_env(),
    )
    try:
        report = await scheduler.run_sweep()
    finally:
        await platform_client.aclose()
        await engine.dispose()

    logger.info(
        f"Sweep {report.sweep_id}: {report.due} due, {report.passed} passed, "
        f"{report.failed} failed, {len(report.errors)} errors"
    )
    return 1 if report.errors else 0

if __name__ == "__main__":
    sys.exit(asyncio.run(sweep()))
