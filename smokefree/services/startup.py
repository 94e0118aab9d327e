"""
Application lifespan: environment validation, database warmup, background
sweep scheduling and clean shutdown.
"""

import asyncio
import logging
from contextlib import asynccontextmanager

from smokefree.config import Config
from smokefree.config.supabase_config import cleanup_supabase_client, get_supabase_client
from smokefree.services.entitlement_sweep import start_scheduler, stop_scheduler
from smokefree.utils.sentry_context import capture_error

logger = logging.getLogger(__name__)


async def _warm_up_database(max_retries: int = 2, retry_delay: float = 1.0) -> bool:
    """
    Initialize the Supabase client before accepting requests.

    The app still starts when the database is unreachable (degraded mode);
    database-dependent endpoints fail until it recovers.
    """
    last_error = None
    for attempt in range(1, max_retries + 1):
        try:
            logger.info(f"Initializing Supabase client (attempt {attempt}/{max_retries})...")
            await asyncio.to_thread(get_supabase_client)
            logger.info("Supabase client initialized")
            return True
        except Exception as e:
            last_error = e
            logger.warning(f"Supabase initialization attempt {attempt}/{max_retries} failed: {e}")
            if attempt < max_retries:
                await asyncio.sleep(retry_delay * (2 ** (attempt - 1)))

    logger.warning("Starting in DEGRADED MODE - database-dependent endpoints may fail")
    capture_error(
        last_error,
        context_type="startup",
        context_data={"phase": "supabase_initialization", "attempts": max_retries},
        tags={"component": "startup", "degraded_mode": "true"},
    )
    return False


@asynccontextmanager
async def lifespan(app):
    """
    Application lifespan manager for startup and shutdown events
    """
    is_valid, missing_vars = Config.validate_critical_env_vars()
    if not is_valid:
        logger.error(f"CRITICAL: Missing required environment variables: {missing_vars}")
        raise RuntimeError(f"Missing required environment variables: {missing_vars}")
    logger.info("All critical environment variables validated")

    await _warm_up_database()
    start_scheduler()

    yield

    logger.info("Shutting down entitlement service...")
    stop_scheduler()
    cleanup_supabase_client()
