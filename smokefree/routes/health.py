import asyncio
import logging
from datetime import UTC, datetime

from fastapi import APIRouter

from smokefree.config.supabase_config import test_connection

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/health", tags=["health"])
async def health_check():
    """
    Simple health check endpoint

    Always returns HTTP 200 while the application is serving requests, even
    when the database is unreachable (degraded mode). Database connectivity is
    reported in the body.
    """
    try:
        await asyncio.to_thread(test_connection)
        database = "connected"
    except RuntimeError as e:
        logger.warning(f"Health check database probe failed: {e}")
        database = "unavailable"

    return {
        "status": "healthy",
        "database": database,
        "timestamp": datetime.now(UTC).isoformat(),
    }
