"""arq worker running the retry-queue schedules.

Start with ``arq foamsync.worker.WorkerSettings``.
"""

from __future__ import annotations

import logging
from typing import Any

from arq.cron import cron

from foamsync.config import get_config
from foamsync.core.logging import configure_logging
from foamsync.core.queue import get_redis_settings
from foamsync.db.connection import close_db, get_session_factory
from foamsync.realtime.broker import get_broker
from foamsync.store.service import StoreService

logger = logging.getLogger(__name__)


async def startup(ctx: dict[str, Any]) -> None:
    """Initialize resources when worker starts."""
    configure_logging()
    config = get_config()
    ctx["broker"] = get_broker(config.realtime)
    ctx["store"] = StoreService(get_session_factory(), ctx["broker"], config.retry_queue)
    logger.info("Worker started. Database connection initialized.")


async def shutdown(ctx: dict[str, Any]) -> None:
    """Cleanup resources when worker stops."""
    await ctx["broker"].close()
    await close_db()
    logger.info("Worker stopped. Database connection closed.")


async def process_retry_queue(ctx: dict[str, Any], batch_size: int | None = None) -> dict[str, int]:
    """Claim and replay due retry-queue rows."""
    store: StoreService = ctx["store"]
    result = await store.process_retry_batch(batch_size=batch_size)
    return result.model_dump()


async def cleanup_retry_queue(ctx: dict[str, Any]) -> dict[str, int]:
    """Purge completed and failed rows past retention."""
    store: StoreService = ctx["store"]
    result = await store.cleanup_retry_queue()
    return result.model_dump()


class WorkerSettings:
    functions = [process_retry_queue, cleanup_retry_queue]
    on_startup = startup
    on_shutdown = shutdown
    redis_settings = get_redis_settings()
    cron_jobs = [
        # Every 30 seconds
        cron(process_retry_queue, second={0, 30}, run_at_startup=True, unique=True),
        # Daily at 03:00 UTC
        cron(cleanup_retry_queue, hour=3, minute=0, second=0, unique=True),
    ]
