"""arq connection helpers for handing work to the background worker."""

import os

from arq.connections import ArqRedis, RedisSettings, create_pool


def get_redis_settings() -> RedisSettings:
    """Get Redis settings from environment variables."""
    return RedisSettings.from_dsn(os.environ.get("REDIS_URL", "redis://redis:6379/0"))


async def get_queue() -> ArqRedis:
    """Create a connection pool to the Redis queue."""
    return await create_pool(get_redis_settings())


async def request_batch_run(batch_size: int | None = None) -> str | None:
    """Ask the worker for an immediate retry-queue batch instead of waiting for cron."""
    queue = await get_queue()
    try:
        job = await queue.enqueue_job("process_retry_queue", batch_size=batch_size)
    finally:
        await queue.aclose()
    return job.job_id if job else None
