"""Row <-> domain mapping for the subscription tables.

The only place that knows the storage shape: six flat usage_* columns on
user_subscriptions, bare resource columns on usage_monthly_snapshots, and
string enum columns everywhere.
"""

from decimal import Decimal
from typing import Any, Dict, Mapping, Optional

from tiergate.core.dates import ensure_utc
from tiergate.models.lifecycle_event import LifecycleEvent, LifecycleEventType
from tiergate.models.subscription import (
    BillingPeriod,
    Resource,
    SubscriptionRecord,
    SubscriptionStatus,
    SubscriptionTier,
)
from tiergate.models.usage_snapshot import MonthlySnapshot


USAGE_COLUMNS: Dict[Resource, str] = {
    resource: f"usage_{resource.value}" for resource in Resource
}

SNAPSHOT_COLUMNS: Dict[Resource, str] = {
    resource: resource.value for resource in Resource
}


def _as_mapping(row: Any) -> Mapping[str, Any]:
    # SQLAlchemy Row exposes column access through _mapping; plain dicts pass through
    return getattr(row, "_mapping", row)


def _optional_enum(enum_cls, value: Optional[str]):
    return enum_cls(value) if value else None


def usage_from_row(row: Any, columns: Dict[Resource, str] = USAGE_COLUMNS) -> Dict[Resource, int]:
    data = _as_mapping(row)
    return {resource: int(data.get(column) or 0) for resource, column in columns.items()}


def usage_reset_values() -> Dict[str, int]:
    """Column values zeroing every usage counter."""
    return {column: 0 for column in USAGE_COLUMNS.values()}


def record_from_row(row: Any) -> SubscriptionRecord:
    """Map a user_subscriptions row to the domain record.

    Raises ValueError if a stored enum column holds an unknown value.
    """
    data = _as_mapping(row)
    return SubscriptionRecord(
        user_id=data["user_id"],
        tier=_optional_enum(SubscriptionTier, data.get("tier")),
        billing_period=_optional_enum(BillingPeriod, data.get("billing_period")),
        status=SubscriptionStatus(data.get("status") or SubscriptionStatus.ACTIVE.value),
        current_period_start=ensure_utc(data.get("current_period_start")),
        current_period_end=ensure_utc(data.get("current_period_end")),
        cancelled_at=ensure_utc(data.get("cancelled_at")),
        cancellation_effective_at=ensure_utc(data.get("cancellation_effective_at")),
        scheduled_tier_change=_optional_enum(SubscriptionTier, data.get("scheduled_tier_change")),
        scheduled_billing_period_change=_optional_enum(
            BillingPeriod, data.get("scheduled_billing_period_change")
        ),
        usage=usage_from_row(data),
        last_reset_at=ensure_utc(data["last_reset_at"]),
        grow_transaction_token=data.get("grow_transaction_token"),
        grow_recurring_id=data.get("grow_recurring_id"),
        grow_last_transaction_code=data.get("grow_last_transaction_code"),
        morning_customer_id=data.get("morning_customer_id"),
        created_at=ensure_utc(data["created_at"]),
        updated_at=ensure_utc(data["updated_at"]),
    )


def snapshot_from_row(row: Any) -> MonthlySnapshot:
    data = _as_mapping(row)
    return MonthlySnapshot(
        user_id=data["user_id"],
        month=data["month"],
        usage=usage_from_row(data, SNAPSHOT_COLUMNS),
        tier_at_snapshot=_optional_enum(SubscriptionTier, data.get("tier_at_snapshot")),
        billing_period_at_snapshot=_optional_enum(BillingPeriod, data.get("billing_period_at_snapshot")),
    )


def event_from_row(row: Any) -> LifecycleEvent:
    data = _as_mapping(row)
    amount = data.get("amount")
    return LifecycleEvent(
        id=data.get("id"),
        user_id=data["user_id"],
        event_type=LifecycleEventType(data["event_type"]),
        previous_tier=_optional_enum(SubscriptionTier, data.get("previous_tier")),
        new_tier=_optional_enum(SubscriptionTier, data.get("new_tier")),
        previous_billing_period=_optional_enum(BillingPeriod, data.get("previous_billing_period")),
        new_billing_period=_optional_enum(BillingPeriod, data.get("new_billing_period")),
        amount=Decimal(str(amount)) if amount is not None else None,
        currency=data.get("currency"),
        metadata=dict(data.get("metadata") or {}),
        created_at=ensure_utc(data.get("created_at")),
    )


def _enum_value(value) -> Optional[str]:
    if value is None:
        return None
    return getattr(value, "value", value)


def event_to_values(event: LifecycleEvent) -> Dict[str, Any]:
    """Column values for inserting a subscription_events row."""
    values = {
        "user_id": event.user_id,
        "event_type": event.event_type.value,
        "previous_tier": _enum_value(event.previous_tier),
        "new_tier": _enum_value(event.new_tier),
        "previous_billing_period": _enum_value(event.previous_billing_period),
        "new_billing_period": _enum_value(event.new_billing_period),
        "amount": event.amount,
        "currency": event.currency,
        "metadata": dict(event.metadata),
    }
    if event.created_at is not None:
        values["created_at"] = event.created_at
    return values
