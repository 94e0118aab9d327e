"""
FastAPI Security Dependencies
Resolve the caller from a Supabase access token.
"""

import asyncio
import logging
from typing import Any

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from smokefree.config.supabase_config import get_supabase_client
from smokefree.utils.exceptions import AuthenticationError
from smokefree.utils.security_validators import truncate_identifier

logger = logging.getLogger(__name__)

# HTTP Bearer security scheme with auto_error=False to allow custom error handling
security = HTTPBearer(auto_error=False)


def _lookup_user(token: str) -> dict[str, Any]:
    try:
        response = get_supabase_client().auth.get_user(token)
    except Exception as e:
        logger.warning(f"Supabase token verification failed: {type(e).__name__}")
        raise AuthenticationError("Invalid or expired session") from e

    user = getattr(response, "user", None)
    if user is None or not getattr(user, "id", None):
        raise AuthenticationError("Invalid or expired session")

    return {"id": str(user.id), "email": getattr(user, "email", None)}


async def get_current_user(
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
) -> dict[str, Any]:
    """
    Authenticated caller as `{"id", "email"}`.

    Raises:
        AuthenticationError: Missing bearer token or token rejected by Supabase
    """
    if credentials is None or not credentials.credentials:
        raise AuthenticationError("Authorization header required")

    user = await asyncio.to_thread(_lookup_user, credentials.credentials)
    logger.debug(f"Authenticated user {truncate_identifier(user['id'])}")
    return user
