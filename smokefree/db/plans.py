import logging

from smokefree.config import Config
from smokefree.config.supabase_config import execute_with_retry

logger = logging.getLogger(__name__)


def plan_exists(plan_id: str) -> bool:
    def _check(client):
        return client.table("subscription_plans").select("id").eq("id", plan_id).limit(1).execute()

    result = execute_with_retry(_check, operation_name="plan_exists")
    return bool(result.data)


def resolve_plan_id(product_id: str | None) -> str:
    """
    Map a Stripe product to a local plan id.

    Unmapped products, and mapped plans missing from `subscription_plans`, fall
    back to the default premium plan. Lookup failures also fall back: a plan
    reference must never block entitlement.
    """
    default_plan = Config.DEFAULT_PREMIUM_PLAN_ID
    plan_id = Config.STRIPE_PRODUCT_PLAN_MAP.get(product_id or "", default_plan)

    if plan_id == default_plan:
        return default_plan

    try:
        if plan_exists(plan_id):
            return plan_id
        logger.warning(f"Mapped plan {plan_id} not found in subscription_plans, using default plan")
    except Exception as e:
        logger.warning(f"Plan lookup failed, using default plan: {e}")

    return default_plan
