import json
import logging
import os

from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()

logger = logging.getLogger(__name__)

_TRUTHY = {"1", "true", "yes", "on"}


def _get_env_var(name: str, default: str | None = None, *, strip: bool = True) -> str | None:
    """
    Fetch an environment variable with optional whitespace trimming.

    Args:
        name: Environment variable to look up.
        default: Value to return when the env var is unset or empty.
        strip: Whether to strip leading/trailing whitespace (default: True).

    Returns:
        The normalized string value or the provided default when empty.
    """
    value = os.environ.get(name)
    if value is None:
        return default

    if strip:
        value = value.strip()

    return value or default


def _get_env_flag(name: str, default: bool = False) -> bool:
    value = _get_env_var(name)
    if value is None:
        return default
    return value.lower() in _TRUTHY


def _get_env_int(name: str, default: int) -> int:
    value = _get_env_var(name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        logger.warning(f"Ignoring non-integer value for {name}; using default {default}")
        return default


def _load_product_plan_map(raw: str | None) -> dict[str, str]:
    """
    Parse STRIPE_PRODUCT_PLAN_MAP, a JSON object of Stripe product id -> plan id.

    Malformed values are logged and treated as an empty mapping so that every
    product falls back to the default premium plan.
    """
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("STRIPE_PRODUCT_PLAN_MAP is not valid JSON; ignoring it")
        return {}
    if not isinstance(parsed, dict):
        logger.warning("STRIPE_PRODUCT_PLAN_MAP must be a JSON object; ignoring it")
        return {}
    return {str(k): str(v) for k, v in parsed.items() if k and v}


class Config:
    """Configuration class for the application"""

    # Environment Detection
    APP_ENV = os.environ.get("APP_ENV", "development")  # development, staging, production
    IS_PRODUCTION = APP_ENV == "production"
    IS_STAGING = APP_ENV == "staging"
    IS_DEVELOPMENT = APP_ENV == "development"
    IS_TESTING = APP_ENV in {"testing", "test"} or _get_env_flag("TESTING")

    # Supabase Configuration (service role key, bypasses RLS)
    SUPABASE_URL = _get_env_var("SUPABASE_URL")
    SUPABASE_KEY = _get_env_var("SUPABASE_KEY") or _get_env_var("SUPABASE_SERVICE_ROLE_KEY")

    # Stripe Configuration
    STRIPE_SECRET_KEY = _get_env_var("STRIPE_SECRET_KEY")
    STRIPE_WEBHOOK_SECRET = _get_env_var("STRIPE_WEBHOOK_SECRET")
    STRIPE_TIMEOUT_SECONDS = _get_env_int("STRIPE_TIMEOUT_SECONDS", 10)
    STRIPE_MAX_NETWORK_RETRIES = _get_env_int("STRIPE_MAX_NETWORK_RETRIES", 1)
    STRIPE_PRODUCT_PLAN_MAP = _load_product_plan_map(_get_env_var("STRIPE_PRODUCT_PLAN_MAP"))

    # Email (Resend)
    RESEND_API_KEY = _get_env_var("RESEND_API_KEY")
    FROM_EMAIL = _get_env_var("FROM_EMAIL", "Premium <noreply@smokefree.app>")
    ADMIN_EMAIL = _get_env_var("ADMIN_EMAIL")

    # Frontend
    FRONTEND_URL = _get_env_var("FRONTEND_URL", "http://localhost:5173")
    # Origins allowed for CORS and as checkout/portal return targets
    ALLOWED_ORIGINS = [
        origin.strip().rstrip("/")
        for origin in [FRONTEND_URL, *(_get_env_var("CORS_ALLOWED_ORIGINS", "") or "").split(",")]
        if origin and origin.strip()
    ]

    # Entitlement policy
    REFUND_WINDOW_HOURS = _get_env_int("REFUND_WINDOW_HOURS", 72)
    CHECKOUT_DEDUPE_MINUTES = _get_env_int("CHECKOUT_DEDUPE_MINUTES", 10)
    DEFAULT_PERIOD_DAYS = _get_env_int("DEFAULT_PERIOD_DAYS", 30)
    DEFAULT_PREMIUM_PLAN_ID = _get_env_var(
        "DEFAULT_PREMIUM_PLAN_ID", "c27dbaea-7a36-4f09-bb9d-2563cdcfc079"
    )
    SUBSCRIPTION_POLL_INTERVAL_SECONDS = _get_env_int("SUBSCRIPTION_POLL_INTERVAL_SECONDS", 60)

    # Local override unlock code (disabled when unset)
    PREMIUM_UNLOCK_CODE = _get_env_var("PREMIUM_UNLOCK_CODE")

    # Background entitlement sweep
    ENTITLEMENT_SWEEP_ENABLED = _get_env_flag("ENTITLEMENT_SWEEP_ENABLED")
    ENTITLEMENT_SWEEP_INTERVAL_MINUTES = _get_env_int("ENTITLEMENT_SWEEP_INTERVAL_MINUTES", 60)

    # Sentry Configuration
    SENTRY_ENABLED = _get_env_flag("SENTRY_ENABLED")
    SENTRY_DSN = _get_env_var("SENTRY_DSN")
    SENTRY_ENVIRONMENT = _get_env_var("SENTRY_ENVIRONMENT", APP_ENV)
    SENTRY_RELEASE = _get_env_var("SENTRY_RELEASE", "smokefree-entitlements@1.0.0")
    SENTRY_TRACES_SAMPLE_RATE = float(_get_env_var("SENTRY_TRACES_SAMPLE_RATE", "0.1"))

    # Grafana Loki Configuration
    LOKI_ENABLED = _get_env_flag("LOKI_ENABLED")
    LOKI_PUSH_URL = _get_env_var("LOKI_PUSH_URL", "http://loki:3100/loki/api/v1/push")
    SERVICE_NAME = _get_env_var("SERVICE_NAME", "smokefree-entitlements")

    @classmethod
    def validate_critical_env_vars(cls) -> tuple[bool, list[str]]:
        """
        Validate that all critical environment variables are set.

        Returns:
            tuple: (is_valid, missing_vars)
        """
        missing = cls._missing_required()
        return len(missing) == 0, missing

    @classmethod
    def _missing_required(cls) -> list[str]:
        required = {
            "SUPABASE_URL": cls.SUPABASE_URL,
            "SUPABASE_KEY": cls.SUPABASE_KEY,
            "STRIPE_SECRET_KEY": cls.STRIPE_SECRET_KEY,
        }
        return [name for name, value in required.items() if not value]
