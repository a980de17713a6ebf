"""
tiergate/features/usage/service.py

Usage metering.

Handles:
- Forward-only counters on user_subscriptions (atomic, always on)
- Best-effort monthly snapshot upsert for history
- Usage history / trends queries over the snapshots

Counters are bumped regardless of the kill switch so history is complete the
day enforcement is switched on.
"""

from dataclasses import dataclass
from datetime import date
from typing import Any, Dict, List, Optional, Union
import logging

from sqlalchemy import insert, select, update
from sqlalchemy.exc import IntegrityError

from tiergate.core.database import (
    get_db_session,
    get_dialect_insert,
    usage_monthly_snapshots,
    user_subscriptions,
)
from tiergate.core.dates import month_start, normalize_now, subtract_months
from tiergate.features.subscriptions.mapping import (
    SNAPSHOT_COLUMNS,
    USAGE_COLUMNS,
    snapshot_from_row,
)
from tiergate.models.subscription import Resource, SubscriptionStatus
from tiergate.models.usage_snapshot import MonthlySnapshot


logger = logging.getLogger(__name__)

TRENDS_MONTHS = 6


@dataclass(frozen=True)
class IncrementResult:
    new_count: int
    snapshot_recorded: bool
    snapshot_error: Optional[str] = None


@dataclass(frozen=True)
class UsageTrends:
    trends: List[MonthlySnapshot]
    averages: Dict[Resource, float]
    months_tracked: int


class UsageRecorder:
    """Counts resource usage. Never consults entitlements."""

    def increment_usage(
        self,
        user_id: str,
        resource: Union[Resource, str],
        now: Optional[Any] = None,
    ) -> IncrementResult:
        """
        Bump the user's counter for `resource` by one.

        Step 1 is a single atomic UPDATE (or INSERT of a tracking-only row when
        the user has none) and is committed before step 2. Storage errors there
        propagate. Step 2 upserts this month's snapshot; its failure is logged
        and reported in the result but never undoes step 1.

        Returns:
            IncrementResult with the post-increment counter
        """
        resource = Resource(resource)
        now = normalize_now(now)

        new_count, tier, billing_period = self._increment_counter(user_id, resource, now)

        try:
            self._upsert_snapshot(user_id, resource, tier, billing_period, now)
        except Exception as exc:
            logger.error(
                "[usage] snapshot upsert failed",
                exc_info=True,
                extra={"user_id": user_id, "resource": resource.value, "new_count": new_count},
            )
            return IncrementResult(new_count=new_count, snapshot_recorded=False, snapshot_error=str(exc))

        return IncrementResult(new_count=new_count, snapshot_recorded=True)

    def _increment_counter(self, user_id: str, resource: Resource, now):
        column = USAGE_COLUMNS[resource]
        counter = user_subscriptions.c[column]
        bump = (
            update(user_subscriptions)
            .where(user_subscriptions.c.user_id == user_id)
            # updated_at untouched: the past_due sweep measures grace from it
            .values({column: counter + 1})
            .returning(counter, user_subscriptions.c.tier, user_subscriptions.c.billing_period)
        )

        with get_db_session() as session:
            row = session.execute(bump).first()
        if row is not None:
            return row[0], row[1], row[2]

        # First sighting of this user: create a tracking-only row
        try:
            with get_db_session() as session:
                session.execute(
                    insert(user_subscriptions).values(
                        {
                            "user_id": user_id,
                            "tier": None,
                            "billing_period": None,
                            "status": SubscriptionStatus.ACTIVE.value,
                            column: 1,
                            "last_reset_at": now,
                            "created_at": now,
                            "updated_at": now,
                        }
                    )
                )
            logger.info("[usage] tracking row created", extra={"user_id": user_id, "resource": resource.value})
            return 1, None, None
        except IntegrityError:
            # Lost the insert race; the row exists now
            with get_db_session() as session:
                row = session.execute(bump).first()
            return row[0], row[1], row[2]

    def _upsert_snapshot(
        self,
        user_id: str,
        resource: Resource,
        tier: Optional[str],
        billing_period: Optional[str],
        now,
    ) -> None:
        column = SNAPSHOT_COLUMNS[resource]
        dialect_insert = get_dialect_insert()
        stmt = dialect_insert(usage_monthly_snapshots).values(
            {
                "user_id": user_id,
                "month": month_start(now),
                column: 1,
                "tier_at_snapshot": tier,
                "billing_period_at_snapshot": billing_period,
                "created_at": now,
                "updated_at": now,
            }
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["user_id", "month"],
            set_={
                column: usage_monthly_snapshots.c[column] + 1,
                "tier_at_snapshot": stmt.excluded.tier_at_snapshot,
                "billing_period_at_snapshot": stmt.excluded.billing_period_at_snapshot,
                "updated_at": now,
            },
        )
        with get_db_session() as session:
            session.execute(stmt)

    def get_usage_history(
        self,
        user_id: str,
        months: int = TRENDS_MONTHS,
        now: Optional[Any] = None,
    ) -> List[MonthlySnapshot]:
        """Snapshots for the last `months` calendar months (current included), oldest first."""
        since: date = subtract_months(month_start(normalize_now(now)), months - 1)
        with get_db_session() as session:
            rows = session.execute(
                select(usage_monthly_snapshots)
                .where(usage_monthly_snapshots.c.user_id == user_id)
                .where(usage_monthly_snapshots.c.month >= since)
                .order_by(usage_monthly_snapshots.c.month)
                .limit(months)
            ).all()
        return [snapshot_from_row(row) for row in rows]

    def get_usage_trends(
        self,
        user_id: str,
        months: int = TRENDS_MONTHS,
        now: Optional[Any] = None,
    ) -> UsageTrends:
        trends = self.get_usage_history(user_id, months=months, now=now)
        months_tracked = len(trends)
        averages = {resource: 0.0 for resource in Resource}
        if months_tracked:
            for resource in Resource:
                total = sum(snapshot.usage.get(resource, 0) for snapshot in trends)
                averages[resource] = total / months_tracked
        return UsageTrends(trends=trends, averages=averages, months_tracked=months_tracked)
