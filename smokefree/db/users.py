"""
Lookups against Supabase Auth users.
"""

import logging

from smokefree.config.supabase_config import get_supabase_client
from smokefree.utils.security_validators import mask_email

logger = logging.getLogger(__name__)

USERS_PAGE_SIZE = 1000
MAX_USER_PAGES = 20


def get_user_email(user_id: str) -> str | None:
    try:
        response = get_supabase_client().auth.admin.get_user_by_id(user_id)
    except Exception as e:
        logger.warning(f"Could not load auth user: {e}")
        return None

    user = getattr(response, "user", None)
    return getattr(user, "email", None)


def find_user_id_by_email(email: str) -> str | None:
    """
    Scan Supabase Auth users for an email match (case-insensitive).

    Auth has no lookup-by-email endpoint, so this pages through list_users.
    Only used as a last resort when webhook payloads carry no user reference.
    """
    if not email:
        return None

    wanted = email.strip().lower()
    admin = get_supabase_client().auth.admin

    for page in range(1, MAX_USER_PAGES + 1):
        users = admin.list_users(page=page, per_page=USERS_PAGE_SIZE)
        for user in users:
            if (getattr(user, "email", None) or "").lower() == wanted:
                return str(user.id)
        if len(users) < USERS_PAGE_SIZE:
            break

    logger.info(f"No auth user found for {mask_email(email)}")
    return None
