"""Health check API routes.

Provides endpoints for monitoring database connectivity and the retry queue.
"""

from fastapi import APIRouter, Depends, status
from sqlalchemy import text

from foamsync.store.service import StoreService
from foamsync.web.dependencies import get_store

router = APIRouter(prefix="/health", tags=["Health"])


@router.get("", status_code=status.HTTP_200_OK)
async def health_check(store: StoreService = Depends(get_store)):
    """Check application health.

    Verifies database connectivity.
    """
    try:
        async with store.session_factory() as session:
            await session.execute(text("SELECT 1"))
        return {"status": "ok", "database": "connected"}
    except Exception as e:
        return {"status": "error", "database": "disconnected", "detail": str(e)}


@router.get("/queue")
async def queue_health(store: StoreService = Depends(get_store)):
    """Retry queue row counts per status."""
    return {"status": "ok", "queue": await store.queue_stats()}
