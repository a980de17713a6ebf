"""
Snapshot reconciliation job.

Safety net run by the daily cron after the expiration sweep. Checks last
month's usage snapshots for integrity problems (negative counters) and logs
tier drift against the live subscription. Reports only; never corrects.
"""
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import select

from tiergate.core.database import get_db_session, usage_monthly_snapshots, user_subscriptions
from tiergate.core.dates import month_start, normalize_now, subtract_months
from tiergate.features.subscriptions.mapping import SNAPSHOT_COLUMNS

logger = logging.getLogger(__name__)


def run_reconcile_job(now: Optional[datetime] = None) -> Dict[str, Any]:
    now = normalize_now(now)
    month = subtract_months(month_start(now), 1)
    mismatches: List[Dict[str, Any]] = []
    tier_changes = 0
    reconciled = 0

    with get_db_session() as session:
        snapshots = session.execute(
            select(usage_monthly_snapshots).where(usage_monthly_snapshots.c.month == month)
        ).all()
        current_tiers = dict(
            session.execute(select(user_subscriptions.c.user_id, user_subscriptions.c.tier)).all()
        )

    for snapshot in snapshots:
        data = snapshot._mapping
        user_id = data["user_id"]
        if user_id not in current_tiers:
            continue

        snapshot_tier = data["tier_at_snapshot"]
        if snapshot_tier is not None and snapshot_tier != current_tiers[user_id]:
            # Expected after an upgrade or downgrade; informational only
            tier_changes += 1
            logger.info(
                "[reconcile] tier changed since snapshot",
                extra={"user_id": user_id, "snapshot_tier": snapshot_tier, "current_tier": current_tiers[user_id]},
            )

        for resource, column in SNAPSHOT_COLUMNS.items():
            value = data[column]
            if value is not None and value < 0:
                mismatches.append(
                    {
                        "user_id": user_id,
                        "month": month.isoformat(),
                        "field": resource.value,
                        "snapshot_value": value,
                        "expected_minimum": 0,
                    }
                )
                logger.warning(
                    "[reconcile] negative snapshot counter",
                    extra={"user_id": user_id, "field": resource.value, "value": value},
                )

        reconciled += 1

    logger.info(
        "[reconcile] snapshots checked",
        extra={"month": month.isoformat(), "reconciled": reconciled, "mismatches": len(mismatches)},
    )
    return {
        "month": month.isoformat(),
        "reconciled": reconciled,
        "tier_changes": tier_changes,
        "mismatches": mismatches,
        "timestamp": now.isoformat(),
    }
