"""
tiergate/features/lifecycle/service.py

Subscription lifecycle transitions.

Rules:
- Upgrades are immediate: tier changes, counters and period dates do not
- Downgrades and billing period changes are scheduled for the next renewal
- Counters reset on activation, and on renewal only when last_reset_at is
  before the new period start (webhook redelivery never double-resets)
- Cancellation keeps access until the period end; the sweep expires it

Every mutation is one conditional UPDATE (or upsert) plus exactly one
subscription_events row, in the same transaction.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, List, Optional, Union
import logging

from sqlalchemy import and_, case, select, update

from tiergate.core.database import get_db_session, get_dialect_insert, user_subscriptions
from tiergate.core.dates import calendar_days_between, ensure_utc, normalize_now
from tiergate.core.errors import (
    InvalidTransitionError,
    MissingPeriodError,
    SubscriptionNotFoundError,
)
from tiergate.features.catalog import service as catalog
from tiergate.features.lifecycle import audit
from tiergate.features.subscriptions.mapping import (
    USAGE_COLUMNS,
    record_from_row,
    usage_reset_values,
)
from tiergate.features.subscriptions.store import get_subscription_row
from tiergate.models.lifecycle_event import LifecycleEvent, LifecycleEventType
from tiergate.models.subscription import (
    BillingPeriod,
    PaymentReferences,
    SubscriptionRecord,
    SubscriptionStatus,
    SubscriptionTier,
)


logger = logging.getLogger(__name__)

CURRENCY = "USD"
CENTS = Decimal("0.01")


@dataclass(frozen=True)
class RenewResult:
    tier: SubscriptionTier
    billing_period: BillingPeriod
    current_period_start: Optional[datetime]
    current_period_end: Optional[datetime]
    counters_reset: bool
    already_applied: bool = False


@dataclass(frozen=True)
class UpgradeResult:
    previous_tier: SubscriptionTier
    new_tier: SubscriptionTier
    prorated_amount: Decimal
    remaining_days: int
    total_days: int


@dataclass(frozen=True)
class DowngradeResult:
    scheduled_tier: SubscriptionTier
    effective_date: datetime


@dataclass(frozen=True)
class PeriodChangeResult:
    scheduled_billing_period: BillingPeriod
    effective_date: datetime


@dataclass(frozen=True)
class CancelResult:
    cancellation_effective_at: datetime


@dataclass(frozen=True)
class ExpirationResult:
    expired: int
    user_ids: List[str] = field(default_factory=list)


def calculate_prorated_amount(
    old_price: Decimal,
    new_price: Decimal,
    total_days: int,
    remaining_days: int,
) -> Decimal:
    """(new - old) / total_days * remaining_days, rounded half-up to cents.

    Zero when the period is over or degenerate.
    """
    if total_days <= 0 or remaining_days <= 0:
        return Decimal("0.00")
    raw = (Decimal(new_price) - Decimal(old_price)) / Decimal(total_days) * Decimal(remaining_days)
    return raw.quantize(CENTS, rounding=ROUND_HALF_UP)


def _value(enum_member) -> Optional[str]:
    return enum_member.value if enum_member is not None else None


class LifecycleManager:
    """Applies lifecycle transitions. Driven by payment webhooks, the API and the sweep."""

    def __init__(self, grace_period_days: int):
        self.grace_period_days = grace_period_days

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_subscription(self, user_id: str) -> Optional[SubscriptionRecord]:
        with get_db_session() as session:
            row = get_subscription_row(session, user_id)
            return record_from_row(row) if row else None

    def list_events(self, user_id: str, limit: int = audit.DEFAULT_EVENT_LIMIT) -> List[LifecycleEvent]:
        return audit.list_events(user_id, limit=limit)

    def _require(self, session, user_id: str) -> SubscriptionRecord:
        row = get_subscription_row(session, user_id)
        if row is None:
            raise SubscriptionNotFoundError(f"No subscription found for user {user_id}")
        return record_from_row(row)

    def _apply(self, session, user_id: str, values: Dict[str, Any], *conditions) -> None:
        """Conditional UPDATE on one user's row; a miss means the row moved underneath us."""
        result = session.execute(
            update(user_subscriptions)
            .where(user_subscriptions.c.user_id == user_id, *conditions)
            .values(**values)
        )
        if result.rowcount != 1:
            raise InvalidTransitionError(f"Subscription for user {user_id} changed concurrently")

    @staticmethod
    def _already_applied(record: SubscriptionRecord) -> RenewResult:
        return RenewResult(
            tier=record.tier,
            billing_period=record.billing_period,
            current_period_start=record.current_period_start,
            current_period_end=record.current_period_end,
            counters_reset=False,
            already_applied=True,
        )

    @staticmethod
    def _next_period_anchor(record: SubscriptionRecord, now: datetime) -> Optional[datetime]:
        """Start of the period a renewal payment pays for, or None if it is already running.

        The new period starts where the current one ends, so every delivery of
        the same renewal lands on the same start. A period whose end date is
        still ahead (UTC calendar date) has already been renewed. A lapse of
        more than a whole period restarts the cycle at now.
        """
        period_end = record.current_period_end
        if period_end is None:
            return now
        if calendar_days_between(period_end, now) > 0:
            return None
        if catalog.period_end(period_end, record.billing_period) <= now:
            return now
        return period_end

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def activate_subscription(
        self,
        user_id: str,
        tier: Union[SubscriptionTier, str],
        billing_period: Union[BillingPeriod, str],
        payment: Optional[PaymentReferences] = None,
        now: Optional[Any] = None,
    ) -> SubscriptionRecord:
        """Start a paid subscription (first purchase, or re-purchase after expiry).

        Upserts on user_id so tracking-only users keep their row.
        """
        tier = SubscriptionTier(tier)
        billing_period = BillingPeriod(billing_period)
        now = normalize_now(now)
        period_end = catalog.period_end(now, billing_period)

        values: Dict[str, Any] = {
            "tier": tier.value,
            "billing_period": billing_period.value,
            "status": SubscriptionStatus.ACTIVE.value,
            "current_period_start": now,
            "current_period_end": period_end,
            "last_reset_at": now,
            "scheduled_tier_change": None,
            "scheduled_billing_period_change": None,
            "cancelled_at": None,
            "cancellation_effective_at": None,
            "updated_at": now,
            **usage_reset_values(),
        }
        # Only overwrite stored gateway references when new ones arrive
        if payment is not None:
            if payment.transaction_token:
                values["grow_transaction_token"] = payment.transaction_token
            if payment.recurring_id:
                values["grow_recurring_id"] = payment.recurring_id
            if payment.transaction_code:
                values["grow_last_transaction_code"] = payment.transaction_code

        with get_db_session() as session:
            previous = get_subscription_row(session, user_id)
            previous_record = record_from_row(previous) if previous else None

            dialect_insert = get_dialect_insert()
            stmt = dialect_insert(user_subscriptions).values(user_id=user_id, created_at=now, **values)
            stmt = stmt.on_conflict_do_update(index_elements=["user_id"], set_=values)
            session.execute(stmt)

            metadata: Dict[str, Any] = {"tier": tier.value, "billing_period": billing_period.value}
            if payment is not None:
                metadata.update(payment.model_dump(exclude_none=True))
            audit.append_event(
                session,
                LifecycleEvent(
                    user_id=user_id,
                    event_type=LifecycleEventType.ACTIVATED,
                    previous_tier=previous_record.tier if previous_record else None,
                    new_tier=tier,
                    previous_billing_period=previous_record.billing_period if previous_record else None,
                    new_billing_period=billing_period,
                    metadata=metadata,
                    created_at=now,
                ),
            )
            return record_from_row(get_subscription_row(session, user_id))

    def renew_subscription(
        self,
        user_id: str,
        transaction_code: Optional[str] = None,
        period_start: Optional[datetime] = None,
        now: Optional[Any] = None,
    ) -> RenewResult:
        """Roll the subscription into its next period, applying scheduled changes.

        The new period starts at period_start when given, otherwise where the
        current period ends. Counters reset only if last_reset_at is before the
        new period start, so a redelivered renewal for the same period leaves
        them alone. A renewal of a cancelled or past_due row makes it active
        again and clears the cancellation.

        Raises:
            SubscriptionNotFoundError: No row
            MissingPeriodError: Tracking-only row
            InvalidTransitionError: Expired row (re-purchase goes through activation)
        """
        now = normalize_now(now)

        with get_db_session() as session:
            record = self._require(session, user_id)
            if record.tier is None or record.billing_period is None:
                raise MissingPeriodError(f"Subscription for user {user_id} has no tier or billing period")
            if record.status == SubscriptionStatus.EXPIRED:
                raise InvalidTransitionError("Expired subscriptions are re-activated, not renewed")

            if transaction_code and transaction_code == record.grow_last_transaction_code:
                # Redelivered notification for a payment we already applied
                logger.info(
                    "[lifecycle] renewal already applied",
                    extra={"user_id": user_id, "transaction_code": transaction_code},
                )
                return self._already_applied(record)

            if period_start is not None:
                new_start = ensure_utc(period_start)
            else:
                new_start = self._next_period_anchor(record, now)
                if new_start is None:
                    logger.info(
                        "[lifecycle] renewal already applied, current period still running",
                        extra={"user_id": user_id, "current_period_end": record.current_period_end.isoformat()},
                    )
                    return self._already_applied(record)

            new_tier = record.scheduled_tier_change or record.tier
            new_period = record.scheduled_billing_period_change or record.billing_period
            new_end = catalog.period_end(new_start, new_period)
            counters_reset = record.last_reset_at < new_start

            needs_reset = user_subscriptions.c.last_reset_at < new_start
            values: Dict[str, Any] = {
                "tier": new_tier.value,
                "billing_period": new_period.value,
                "status": SubscriptionStatus.ACTIVE.value,
                "current_period_start": new_start,
                "current_period_end": new_end,
                "scheduled_tier_change": None,
                "scheduled_billing_period_change": None,
                "cancelled_at": None,
                "cancellation_effective_at": None,
                "last_reset_at": case((needs_reset, new_start), else_=user_subscriptions.c.last_reset_at),
                "updated_at": now,
            }
            for column in USAGE_COLUMNS.values():
                values[column] = case((needs_reset, 0), else_=user_subscriptions.c[column])
            if transaction_code:
                values["grow_last_transaction_code"] = transaction_code

            self._apply(session, user_id, values, user_subscriptions.c.status == record.status.value)
            audit.append_event(
                session,
                LifecycleEvent(
                    user_id=user_id,
                    event_type=LifecycleEventType.RENEWED,
                    previous_tier=record.tier,
                    new_tier=new_tier,
                    previous_billing_period=record.billing_period,
                    new_billing_period=new_period,
                    metadata={
                        "transaction_code": transaction_code,
                        "scheduled_tier_applied": _value(record.scheduled_tier_change),
                        "scheduled_period_applied": _value(record.scheduled_billing_period_change),
                        "counters_reset": counters_reset,
                        "previous_status": record.status.value,
                    },
                    created_at=now,
                ),
            )

        return RenewResult(
            tier=new_tier,
            billing_period=new_period,
            current_period_start=new_start,
            current_period_end=new_end,
            counters_reset=counters_reset,
        )

    def upgrade_subscription(
        self,
        user_id: str,
        new_tier: Union[SubscriptionTier, str],
        now: Optional[Any] = None,
    ) -> UpgradeResult:
        """Move to a higher tier immediately.

        Only tier changes (and any scheduled tier change is dropped). The
        prorated amount is returned for the caller to charge.
        """
        new_tier = SubscriptionTier(new_tier)
        now = normalize_now(now)

        with get_db_session() as session:
            record = self._require(session, user_id)
            if record.tier is None or record.billing_period is None:
                raise MissingPeriodError(f"Subscription for user {user_id} has no tier or billing period")
            if record.current_period_start is None or record.current_period_end is None:
                raise MissingPeriodError(f"Subscription for user {user_id} has no period dates")
            if not catalog.is_upgrade(record.tier, new_tier):
                raise InvalidTransitionError(f"{new_tier.value} is not an upgrade from {record.tier.value}")

            remaining_days = calendar_days_between(record.current_period_end, now)
            total_days = calendar_days_between(record.current_period_end, record.current_period_start)
            prorated = calculate_prorated_amount(
                catalog.price(record.tier, record.billing_period),
                catalog.price(new_tier, record.billing_period),
                total_days,
                remaining_days,
            )

            self._apply(
                session,
                user_id,
                {"tier": new_tier.value, "scheduled_tier_change": None, "updated_at": now},
                user_subscriptions.c.tier == record.tier.value,
            )
            audit.append_event(
                session,
                LifecycleEvent(
                    user_id=user_id,
                    event_type=LifecycleEventType.UPGRADED,
                    previous_tier=record.tier,
                    new_tier=new_tier,
                    amount=prorated,
                    currency=CURRENCY if prorated else None,
                    metadata={
                        "prorated_amount": str(prorated),
                        "remaining_days": remaining_days,
                        "total_days": total_days,
                    },
                    created_at=now,
                ),
            )

        return UpgradeResult(
            previous_tier=record.tier,
            new_tier=new_tier,
            prorated_amount=prorated,
            remaining_days=remaining_days,
            total_days=total_days,
        )

    def schedule_downgrade(
        self,
        user_id: str,
        target_tier: Union[SubscriptionTier, str],
        now: Optional[Any] = None,
    ) -> DowngradeResult:
        """Record a downgrade to apply at the next renewal. Current tier and limits stay."""
        target_tier = SubscriptionTier(target_tier)
        now = normalize_now(now)

        with get_db_session() as session:
            record = self._require(session, user_id)
            if record.tier is None:
                raise MissingPeriodError(f"Subscription for user {user_id} has no tier")
            if record.current_period_end is None:
                raise MissingPeriodError(f"Subscription for user {user_id} has no period end date")
            if not catalog.is_downgrade(record.tier, target_tier):
                raise InvalidTransitionError(f"{target_tier.value} is not a downgrade from {record.tier.value}")

            self._apply(
                session,
                user_id,
                {"scheduled_tier_change": target_tier.value, "updated_at": now},
                user_subscriptions.c.tier == record.tier.value,
            )
            audit.append_event(
                session,
                LifecycleEvent(
                    user_id=user_id,
                    event_type=LifecycleEventType.DOWNGRADE_SCHEDULED,
                    previous_tier=record.tier,
                    new_tier=target_tier,
                    metadata={"effective_date": record.current_period_end.isoformat()},
                    created_at=now,
                ),
            )

        return DowngradeResult(scheduled_tier=target_tier, effective_date=record.current_period_end)

    def schedule_billing_period_change(
        self,
        user_id: str,
        billing_period: Union[BillingPeriod, str],
        now: Optional[Any] = None,
    ) -> PeriodChangeResult:
        """Switch billing period at the next renewal."""
        billing_period = BillingPeriod(billing_period)
        now = normalize_now(now)

        with get_db_session() as session:
            record = self._require(session, user_id)
            if record.tier is None or record.billing_period is None:
                raise MissingPeriodError(f"Subscription for user {user_id} has no tier or billing period")
            if record.current_period_end is None:
                raise MissingPeriodError(f"Subscription for user {user_id} has no period end date")
            if billing_period == record.billing_period:
                raise InvalidTransitionError(f"Subscription is already billed {billing_period.value}")

            self._apply(
                session,
                user_id,
                {"scheduled_billing_period_change": billing_period.value, "updated_at": now},
            )
            audit.append_event(
                session,
                LifecycleEvent(
                    user_id=user_id,
                    event_type=LifecycleEventType.PERIOD_CHANGE_SCHEDULED,
                    previous_billing_period=record.billing_period,
                    new_billing_period=billing_period,
                    metadata={"effective_date": record.current_period_end.isoformat()},
                    created_at=now,
                ),
            )

        return PeriodChangeResult(scheduled_billing_period=billing_period, effective_date=record.current_period_end)

    def cancel_scheduled_change(self, user_id: str, now: Optional[Any] = None) -> None:
        now = normalize_now(now)
        with get_db_session() as session:
            record = self._require(session, user_id)
            self._apply(
                session,
                user_id,
                {"scheduled_tier_change": None, "scheduled_billing_period_change": None, "updated_at": now},
            )
            audit.append_event(
                session,
                LifecycleEvent(
                    user_id=user_id,
                    event_type=LifecycleEventType.SCHEDULED_CHANGE_CANCELLED,
                    previous_tier=record.tier,
                    new_tier=record.tier,
                    metadata={
                        "cancelled_tier_change": _value(record.scheduled_tier_change),
                        "cancelled_period_change": _value(record.scheduled_billing_period_change),
                    },
                    created_at=now,
                ),
            )

    def cancel_subscription(self, user_id: str, now: Optional[Any] = None) -> CancelResult:
        """Cancel at period end. No refunds; access continues until then."""
        now = normalize_now(now)

        with get_db_session() as session:
            record = self._require(session, user_id)
            if record.tier is None:
                raise InvalidTransitionError("No active subscription to cancel")
            if record.status == SubscriptionStatus.CANCELLED:
                raise InvalidTransitionError("Subscription is already cancelled")
            if record.status == SubscriptionStatus.EXPIRED:
                raise InvalidTransitionError("Subscription has already expired")
            if record.current_period_end is None:
                raise MissingPeriodError(f"Subscription for user {user_id} has no period end date")

            effective_at = record.current_period_end
            self._apply(
                session,
                user_id,
                {
                    "status": SubscriptionStatus.CANCELLED.value,
                    "cancelled_at": now,
                    "cancellation_effective_at": effective_at,
                    "updated_at": now,
                },
                user_subscriptions.c.status == record.status.value,
            )
            audit.append_event(
                session,
                LifecycleEvent(
                    user_id=user_id,
                    event_type=LifecycleEventType.CANCELLED,
                    previous_tier=record.tier,
                    metadata={"cancellation_effective_at": effective_at.isoformat()},
                    created_at=now,
                ),
            )

        return CancelResult(cancellation_effective_at=effective_at)

    def handle_payment_failure(self, user_id: str, now: Optional[Any] = None) -> None:
        """Active -> past_due. The grace window runs from this write (updated_at).

        Raises:
            SubscriptionNotFoundError: No row
            InvalidTransitionError: Row is tracking-only or not active
        """
        now = normalize_now(now)
        with get_db_session() as session:
            record = self._require(session, user_id)
            if record.tier is None:
                raise InvalidTransitionError("No paid subscription to mark past due")
            if record.status != SubscriptionStatus.ACTIVE:
                raise InvalidTransitionError(f"Cannot mark a {record.status.value} subscription past due")
            self._apply(
                session,
                user_id,
                {"status": SubscriptionStatus.PAST_DUE.value, "updated_at": now},
                user_subscriptions.c.status == SubscriptionStatus.ACTIVE.value,
            )
            audit.append_event(
                session,
                LifecycleEvent(
                    user_id=user_id,
                    event_type=LifecycleEventType.PAYMENT_FAILED,
                    previous_tier=record.tier,
                    new_tier=record.tier,
                    metadata={"previous_status": record.status.value},
                    created_at=now,
                ),
            )

    def process_expirations(self, now: Optional[Any] = None) -> ExpirationResult:
        """
        Expire cancelled subscriptions past their effective date, and past_due
        ones whose last write is older than the grace period.

        Each flip re-checks its condition in the UPDATE's WHERE clause, so a
        re-run (or a concurrent run) expires nothing twice.
        """
        now = normalize_now(now)
        grace_cutoff = now - timedelta(days=self.grace_period_days)

        sweeps = [
            (
                "cancellation_effective_date_passed",
                and_(
                    user_subscriptions.c.status == SubscriptionStatus.CANCELLED.value,
                    user_subscriptions.c.cancellation_effective_at.isnot(None),
                    user_subscriptions.c.cancellation_effective_at < now,
                ),
            ),
            (
                "grace_period_exceeded",
                and_(
                    user_subscriptions.c.status == SubscriptionStatus.PAST_DUE.value,
                    user_subscriptions.c.updated_at < grace_cutoff,
                ),
            ),
        ]

        expired_ids: List[str] = []
        for reason, condition in sweeps:
            with get_db_session() as session:
                candidates = session.execute(
                    select(user_subscriptions.c.user_id, user_subscriptions.c.tier).where(condition)
                ).all()

            for user_id, tier in candidates:
                with get_db_session() as session:
                    result = session.execute(
                        update(user_subscriptions)
                        .where(user_subscriptions.c.user_id == user_id, condition)
                        .values(status=SubscriptionStatus.EXPIRED.value, updated_at=now)
                    )
                    if result.rowcount != 1:
                        continue
                    audit.append_event(
                        session,
                        LifecycleEvent(
                            user_id=user_id,
                            event_type=LifecycleEventType.EXPIRED,
                            previous_tier=SubscriptionTier(tier) if tier else None,
                            metadata={"reason": reason},
                            created_at=now,
                        ),
                    )
                expired_ids.append(user_id)

        logger.info(
            "[lifecycle] expiration sweep complete",
            extra={"expired": len(expired_ids), "grace_period_days": self.grace_period_days},
        )
        return ExpirationResult(expired=len(expired_ids), user_ids=expired_ids)
