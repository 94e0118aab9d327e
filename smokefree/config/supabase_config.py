import logging
import time

import httpx
from supabase import Client, create_client
from supabase.client import ClientOptions

from smokefree.config.config import Config

logger = logging.getLogger(__name__)

_supabase_client: Client | None = None
_last_error: Exception | None = None  # Track last initialization error
_last_error_time: float = 0  # Timestamp of last error
ERROR_CACHE_TTL = 60.0  # Retry after 60 seconds


def get_supabase_client() -> Client:
    """
    Return the process-wide Supabase client, creating it on first use.

    A failed initialization is cached for ERROR_CACHE_TTL seconds so that a
    misconfigured or unreachable database does not get hammered by every request.
    """
    global _supabase_client, _last_error, _last_error_time

    if _supabase_client is not None:
        return _supabase_client

    if _last_error is not None:
        time_since_error = time.time() - _last_error_time
        if time_since_error < ERROR_CACHE_TTL:
            retry_in = int(ERROR_CACHE_TTL - time_since_error)
            raise RuntimeError(
                f"Supabase unavailable (retry in {retry_in}s): {_last_error}"
            ) from _last_error
        logger.info("Error cache expired, retrying Supabase initialization...")
        _last_error = None
        _last_error_time = 0

    try:
        if not Config.SUPABASE_URL:
            raise RuntimeError(
                "SUPABASE_URL environment variable is not set. "
                "Please configure it with your Supabase project URL (e.g., https://xxxxx.supabase.co)"
            )
        if not Config.SUPABASE_URL.startswith(("http://", "https://")):
            raise RuntimeError(
                f"SUPABASE_URL must start with 'http://' or 'https://'. "
                f"Expected: 'https://{Config.SUPABASE_URL}'"
            )
        if not Config.SUPABASE_KEY:
            raise RuntimeError("SUPABASE_KEY environment variable is not set")

        postgrest_base_url = f"{Config.SUPABASE_URL}/rest/v1"

        # base_url and auth headers must be set so postgrest relative paths resolve
        httpx_client = httpx.Client(
            base_url=postgrest_base_url,
            headers={
                "apikey": Config.SUPABASE_KEY,
                "Authorization": f"Bearer {Config.SUPABASE_KEY}",
            },
            timeout=httpx.Timeout(20.0, connect=5.0),
            limits=httpx.Limits(
                max_connections=50,
                max_keepalive_connections=10,
                keepalive_expiry=60.0,
            ),
            http2=True,
        )

        _supabase_client = create_client(
            supabase_url=Config.SUPABASE_URL,
            supabase_key=Config.SUPABASE_KEY,
            options=ClientOptions(
                postgrest_client_timeout=20,
                schema="public",
                headers={"X-Client-Info": "smokefree-entitlements/1.0"},
            ),
        )

        if hasattr(_supabase_client, "postgrest") and hasattr(_supabase_client.postgrest, "session"):
            _supabase_client.postgrest.session = httpx_client
            logger.info(
                "Configured Supabase client with HTTP/2 connection pooling (base_url: %s)",
                postgrest_base_url,
            )

        return _supabase_client

    except Exception as e:
        _last_error = e
        _last_error_time = time.time()

        logger.error(
            f"Failed to initialize Supabase client: {type(e).__name__}: {e}",
            exc_info=True,
        )
        raise RuntimeError(f"Supabase client initialization failed: {e}") from e


def test_connection() -> bool:
    """
    Run a trivial query against the subscriptions table.

    Raises:
        RuntimeError: If the query fails
    """
    try:
        client = get_supabase_client()
        client.table("subscriptions").select("user_id").limit(1).execute()
        return True
    except Exception as e:
        logger.error(f"Database connection test failed: {e}")
        raise RuntimeError(f"Database connection failed: {e}") from e


def _close_session(client: Client) -> None:
    if hasattr(client, "postgrest") and hasattr(client.postgrest, "session"):
        session = client.postgrest.session
        if hasattr(session, "close"):
            session.close()


def cleanup_supabase_client():
    """
    Close the pooled httpx connections and drop the cached client.

    Called from the application lifespan on shutdown.
    """
    global _supabase_client

    try:
        if _supabase_client is not None:
            _close_session(_supabase_client)
            logger.info("Supabase client cleanup completed")
    except Exception as e:
        logger.warning(f"Error during Supabase client cleanup: {e}")
    finally:
        _supabase_client = None


def reset_supabase_client() -> bool:
    """
    Drop the cached client so the next call builds a fresh connection pool.

    Used after HTTP/2 protocol errors caused by server-side connection resets.

    Returns:
        bool: True if a cached client was discarded
    """
    global _supabase_client, _last_error, _last_error_time

    had_client = _supabase_client is not None
    if had_client:
        try:
            _close_session(_supabase_client)
        except Exception as close_error:
            logger.debug(f"Error closing httpx client during reset: {close_error}")
        logger.info("Supabase client reset - next request will create fresh connection")

    _supabase_client = None
    _last_error = None
    _last_error_time = 0
    return had_client


def is_http2_protocol_error(error: Exception) -> bool:
    """
    Check if an exception is an HTTP/2 protocol error that requires connection reset.

    Args:
        error: The exception to check

    Returns:
        bool: True if this is an HTTP/2 protocol error requiring reset
    """
    error_str = str(error).lower()

    if "protocolerror" in type(error).__name__.lower():
        return True

    http2_error_indicators = (
        "streaminputs.send_headers",
        "streaminputs.recv_data",
        "connectioninputs.recv_data",
        "connectionstate.closed",
        "stream closed",
        "connection reset by peer",
        "goaway",
        "h2_error",
    )
    if any(indicator in error_str for indicator in http2_error_indicators):
        return True

    if "invalid input" in error_str and ("state" in error_str or "inputs" in error_str):
        return True

    return "connection closed" in error_str and ("http2" in error_str or "h2" in error_str)


def execute_with_retry(
    operation,
    max_retries: int = 2,
    retry_delay: float = 0.1,
    operation_name: str = "database operation",
):
    """
    Execute a database operation with automatic retry on HTTP/2 protocol errors.

    Args:
        operation: A callable that receives the Supabase client and performs the query.
        max_retries: Maximum number of retry attempts (default: 2)
        retry_delay: Seconds to wait after resetting the client
        operation_name: Name of the operation for logging purposes

    Returns:
        The result of the operation

    Raises:
        Exception: The last error once retries are exhausted, or immediately
            for anything that is not an HTTP/2 protocol error.

    Example:
        def load_row(client):
            return client.table("subscriptions").select("*").eq("user_id", uid).execute()

        result = execute_with_retry(load_row, operation_name="load_subscription")
    """
    for attempt in range(max_retries + 1):
        try:
            client = get_supabase_client()
            return operation(client)
        except Exception as e:
            if not is_http2_protocol_error(e) or attempt >= max_retries:
                if is_http2_protocol_error(e):
                    logger.error(
                        f"HTTP/2 protocol error in {operation_name} after {max_retries + 1} attempts: {e}"
                    )
                raise
            logger.warning(
                f"HTTP/2 protocol error in {operation_name} "
                f"(attempt {attempt + 1}/{max_retries + 1}): {e}. Resetting client and retrying..."
            )
            reset_supabase_client()
            time.sleep(retry_delay)

    raise RuntimeError(f"{operation_name} failed with no error captured")
