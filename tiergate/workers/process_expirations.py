"""Daily subscription maintenance: expiration sweep then snapshot reconciliation."""
import logging
from datetime import datetime
from typing import Optional

from tiergate.core.config import is_subscription_enabled, settings
from tiergate.core.dates import normalize_now
from tiergate.features.billing.reconcile_job import run_reconcile_job
from tiergate.features.lifecycle.service import LifecycleManager

logger = logging.getLogger("tiergate.workers.expirations")


def process_subscriptions(
    *,
    now: Optional[datetime] = None,
    enforcement_enabled: Optional[bool] = None,
) -> dict:
    enabled = enforcement_enabled if enforcement_enabled is not None else is_subscription_enabled(settings)
    now = normalize_now(now)
    if not enabled:
        logger.info("[cron] subscription system disabled, skipping")
        return {"skipped": True, "reason": "subscription system disabled", "timestamp": now.isoformat()}

    expirations = LifecycleManager(grace_period_days=settings.GRACE_PERIOD_DAYS).process_expirations(now=now)
    reconcile = run_reconcile_job(now=now)

    logger.info(
        "[cron] subscriptions processed",
        extra={
            "expired": expirations.expired,
            "reconciled": reconcile["reconciled"],
            "mismatches": len(reconcile["mismatches"]),
        },
    )
    return {
        "skipped": False,
        "expired": expirations.expired,
        "expired_user_ids": list(expirations.user_ids),
        "reconciled": reconcile["reconciled"],
        "mismatches": reconcile["mismatches"],
        "timestamp": now.isoformat(),
    }


if __name__ == "__main__":
    result = process_subscriptions()
    print(result)
