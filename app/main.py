from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from core.db import AsyncSessionLocal, create_schema
from core.logging import setup_logging
from exceptions import register_exception_handlers
from routers import golden_tests, health, metrics
from services.golden_test_service import RunLockRegistry
from services.notifications import LoggingAlertSink
from services.platform_client import HttpPlatformClient
from services.scheduler import GoldenTestScheduler, SchedulerConfig

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging()
    await create_schema()

    app.state.platform_client = HttpPlatformClient()
    app.state.alert_sink = LoggingAlertSink()
    # Shared between request handlers and the scheduler
    app.state.run_locks = RunLockRegistry()

    config = SchedulerConfig.from_env()
    app.state.scheduler = GoldenTestScheduler(
        AsyncSessionLocal,
        platform_client=app.state.platform_client,
        alert_sink=app.state.alert_sink,
        config=config,
        locks=app.state.run_locks,
    )
    if config.enabled:
        app.state.scheduler.start()
    else:
        logger.info("Golden test scheduler disabled by configuration")

    try:
        yield
    finally:
        # teardown on shutdown
        await app.state.scheduler.stop()
        await app.state.platform_client.aclose()


app = FastAPI(title="Golden Test Drift API", lifespan=lifespan)

register_exception_handlers(app)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],   # Allows POST, GET, PUT, DELETE, OPTIONS
    allow_headers=["*"],
)

app.include_router(health.router)
app.include_router(golden_tests.router)
app.include_router(metrics.router)
