"""
Scheduled Entitlement Sweep

Background job that re-reconciles Stripe-backed records whose billing period
has elapsed while they are still marked active, trialing or past due. It uses
the sweep trigger, which like a client poll only downgrades a record once
Stripe confirms it.

Also prunes the webhook event ledger once per run.
"""

import asyncio
import logging
from datetime import UTC, datetime
from typing import Any

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from smokefree.config import Config
from smokefree.db.entitlements import list_lapsed_entitlements
from smokefree.db.webhook_events import cleanup_old_events
from smokefree.schemas.subscriptions import ReconcileTrigger
from smokefree.services.reconciler import Reconciler
from smokefree.utils.exceptions import EntitlementError
from smokefree.utils.security_validators import truncate_identifier

logger = logging.getLogger(__name__)

WEBHOOK_LEDGER_RETENTION_DAYS = 90

# Global scheduler instance
_scheduler: AsyncIOScheduler | None = None

_last_sweep_status: dict[str, Any] = {
    "last_run_time": None,
    "last_error": None,
    "total_runs": 0,
    "last_checked": 0,
    "last_downgraded": 0,
    "last_failed": 0,
}


def sweep_lapsed_entitlements(reconciler: Reconciler, page_size: int = 200) -> dict[str, int]:
    """
    Reconcile every lapsed record once, a page at a time. Failures for one user
    are logged and counted; they never stop the sweep.
    """
    now = datetime.now(UTC)
    checked = downgraded = failed = 0
    after_user_id = None

    while True:
        records = list_lapsed_entitlements(now=now, limit=page_size, after_user_id=after_user_id)

        for record in records:
            checked += 1
            try:
                result = reconciler.reconcile(record.user_id, ReconcileTrigger.SWEEP)
            except EntitlementError as e:
                failed += 1
                logger.warning(
                    f"Sweep could not reconcile user {truncate_identifier(record.user_id)}: "
                    f"{type(e).__name__}"
                )
                continue
            if result.changed and not result.entitled:
                downgraded += 1

        if len(records) < page_size:
            break
        after_user_id = records[-1].user_id

    return {"checked": checked, "downgraded": downgraded, "failed": failed}


async def run_entitlement_sweep(reconciler: Reconciler | None = None) -> None:
    """Called by APScheduler at the configured interval."""
    if reconciler is None:
        from smokefree.services.provider_gateway import StripeGateway

        reconciler = Reconciler(StripeGateway())

    _last_sweep_status["last_run_time"] = datetime.now(UTC)
    _last_sweep_status["total_runs"] += 1

    try:
        stats = await asyncio.to_thread(sweep_lapsed_entitlements, reconciler)
    except EntitlementError as e:
        _last_sweep_status["last_error"] = e.message
        logger.error(f"Entitlement sweep could not list lapsed records: {e.message}")
        return

    _last_sweep_status.update(
        last_error=None,
        last_checked=stats["checked"],
        last_downgraded=stats["downgraded"],
        last_failed=stats["failed"],
    )
    logger.info(
        f"Entitlement sweep finished: {stats['checked']} checked, "
        f"{stats['downgraded']} downgraded, {stats['failed']} failed"
    )

    await asyncio.to_thread(cleanup_old_events, WEBHOOK_LEDGER_RETENTION_DAYS)


def start_scheduler():
    """
    Start the APScheduler for the entitlement sweep.

    Called during application startup (in app lifespan).
    Only starts if ENTITLEMENT_SWEEP_ENABLED is set.
    """
    global _scheduler

    if not Config.ENTITLEMENT_SWEEP_ENABLED:
        logger.info("Entitlement sweep DISABLED: ENTITLEMENT_SWEEP_ENABLED=false")
        return

    interval_minutes = Config.ENTITLEMENT_SWEEP_INTERVAL_MINUTES

    try:
        _scheduler = AsyncIOScheduler()
        _scheduler.add_job(
            run_entitlement_sweep,
            trigger=IntervalTrigger(minutes=interval_minutes),
            id="entitlement_sweep",
            name="Entitlement Sweep Job",
            replace_existing=True,
            max_instances=1,  # Prevent overlapping runs
            coalesce=True,  # Combine missed runs
        )
        _scheduler.start()
        logger.info(f"Entitlement sweep started (every {interval_minutes} minutes)")
    except Exception as e:
        logger.error(f"Failed to start entitlement sweep: {e}")
        logger.exception(e)


def stop_scheduler():
    """Stop the APScheduler gracefully. Called during application shutdown."""
    global _scheduler

    if _scheduler is None:
        return

    try:
        _scheduler.shutdown(wait=True)
        logger.info("Entitlement sweep stopped")
    except Exception as e:
        logger.error(f"Error stopping entitlement sweep: {e}")
    finally:
        _scheduler = None


def get_sweep_status() -> dict[str, Any]:
    last_run = _last_sweep_status["last_run_time"]
    return {
        "enabled": Config.ENTITLEMENT_SWEEP_ENABLED,
        "running": _scheduler is not None,
        "last_run_time": last_run.isoformat() if last_run else None,
        "last_error": _last_sweep_status["last_error"],
        "total_runs": _last_sweep_status["total_runs"],
        "last_checked": _last_sweep_status["last_checked"],
        "last_downgraded": _last_sweep_status["last_downgraded"],
        "last_failed": _last_sweep_status["last_failed"],
        "interval_minutes": Config.ENTITLEMENT_SWEEP_INTERVAL_MINUTES,
    }
