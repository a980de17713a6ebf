"""
Tests for subscription lifecycle transitions and the expiration sweep.
"""
from datetime import timedelta
from decimal import Decimal
from uuid import uuid4

import pytest

from tiergate.core.errors import InvalidTransitionError, MissingPeriodError, SubscriptionNotFoundError
from tiergate.features.lifecycle.service import calculate_prorated_amount
from tiergate.features.usage.service import UsageRecorder
from tiergate.models.lifecycle_event import LifecycleEventType
from tiergate.models.subscription import (
    BillingPeriod,
    PaymentReferences,
    Resource,
    SubscriptionStatus,
    SubscriptionTier,
)
from tiergate.tests.mocks import NOW, force_columns


def _user():
    return f"user-{uuid4()}"


def _event_types(lifecycle, user_id):
    return [e.event_type for e in lifecycle.list_events(user_id)]


def test_activate_creates_subscription_and_event(lifecycle):
    user_id = _user()
    record = lifecycle.activate_subscription(
        user_id,
        "accelerate",
        "monthly",
        PaymentReferences(transaction_token="tok", recurring_id="rec", transaction_code="code-1"),
        now=NOW,
    )

    assert record.tier == SubscriptionTier.ACCELERATE
    assert record.status == SubscriptionStatus.ACTIVE
    assert record.current_period_start == NOW
    assert record.current_period_end == NOW.replace(month=4)
    assert record.grow_transaction_token == "tok"
    assert record.grow_last_transaction_code == "code-1"

    events = lifecycle.list_events(user_id)
    assert len(events) == 1
    assert events[0].event_type == LifecycleEventType.ACTIVATED
    assert events[0].new_tier == SubscriptionTier.ACCELERATE
    assert events[0].metadata["recurring_id"] == "rec"


def test_activate_converts_tracking_user_and_resets_counters(lifecycle):
    user_id = _user()
    for _ in range(3):
        UsageRecorder().increment_usage(user_id, Resource.APPLICATIONS, now=NOW - timedelta(days=1))

    record = lifecycle.activate_subscription(user_id, "momentum", "monthly", now=NOW)
    assert record.tier == SubscriptionTier.MOMENTUM
    assert record.used(Resource.APPLICATIONS) == 0
    assert record.last_reset_at == NOW


def test_reactivation_keeps_existing_payment_refs(lifecycle):
    user_id = _user()
    lifecycle.activate_subscription(user_id, "momentum", "monthly", PaymentReferences(transaction_token="tok"), now=NOW)
    record = lifecycle.activate_subscription(user_id, "elite", "yearly", now=NOW + timedelta(days=40))
    assert record.grow_transaction_token == "tok"
    assert record.tier == SubscriptionTier.ELITE


def test_renewal_resets_counters_once(lifecycle):
    user_id = _user()
    lifecycle.activate_subscription(user_id, "momentum", "monthly", now=NOW)
    force_columns(user_id, usage_cvs=6)
    renewal_start = NOW + timedelta(days=31)

    first = lifecycle.renew_subscription(user_id, period_start=renewal_start, now=renewal_start)
    assert first.counters_reset
    assert lifecycle.get_subscription(user_id).used(Resource.CVS) == 0

    # Usage during the new period, then a redelivery of the same renewal
    force_columns(user_id, usage_cvs=2)
    second = lifecycle.renew_subscription(user_id, period_start=renewal_start, now=renewal_start + timedelta(hours=2))
    assert not second.counters_reset
    assert lifecycle.get_subscription(user_id).used(Resource.CVS) == 2


def test_renewal_redelivery_with_same_transaction_code_is_noop(lifecycle):
    user_id = _user()
    lifecycle.activate_subscription(user_id, "momentum", "monthly", now=NOW)
    later = NOW + timedelta(days=31)

    lifecycle.renew_subscription(user_id, transaction_code="code-2", now=later)
    force_columns(user_id, usage_applications=4)
    again = lifecycle.renew_subscription(user_id, transaction_code="code-2", now=later + timedelta(minutes=5))

    assert again.already_applied
    assert not again.counters_reset
    assert lifecycle.get_subscription(user_id).used(Resource.APPLICATIONS) == 4
    assert _event_types(lifecycle, user_id).count(LifecycleEventType.RENEWED) == 1


def test_renewal_applies_scheduled_changes(lifecycle):
    user_id = _user()
    lifecycle.activate_subscription(user_id, "elite", "monthly", now=NOW)
    lifecycle.schedule_downgrade(user_id, "accelerate", now=NOW)
    lifecycle.schedule_billing_period_change(user_id, "yearly", now=NOW)

    result = lifecycle.renew_subscription(user_id, now=NOW + timedelta(days=31))
    record = lifecycle.get_subscription(user_id)

    assert result.tier == SubscriptionTier.ACCELERATE
    assert record.tier == SubscriptionTier.ACCELERATE
    assert record.billing_period == BillingPeriod.YEARLY
    assert record.scheduled_tier_change is None
    assert record.scheduled_billing_period_change is None
    assert record.current_period_end == (NOW + timedelta(days=31)).replace(year=2027)


def test_renew_tracking_only_user_fails(lifecycle):
    user_id = _user()
    UsageRecorder().increment_usage(user_id, Resource.CVS, now=NOW)
    with pytest.raises(MissingPeriodError):
        lifecycle.renew_subscription(user_id, now=NOW)


def test_renew_unknown_user_fails(lifecycle):
    with pytest.raises(SubscriptionNotFoundError):
        lifecycle.renew_subscription(_user(), now=NOW)


def test_renewal_starts_where_the_current_period_ends(lifecycle):
    user_id = _user()
    lifecycle.activate_subscription(user_id, "momentum", "monthly", now=NOW)
    force_columns(user_id, usage_cvs=6)
    period_end = NOW.replace(month=4)

    result = lifecycle.renew_subscription(user_id, now=period_end + timedelta(hours=3))

    assert result.counters_reset
    assert result.current_period_start == period_end
    assert result.current_period_end == NOW.replace(month=5)


def test_renewal_redelivery_without_transaction_code_is_noop(lifecycle):
    user_id = _user()
    lifecycle.activate_subscription(user_id, "momentum", "monthly", now=NOW)
    later = NOW + timedelta(days=31)

    lifecycle.renew_subscription(user_id, now=later)
    force_columns(user_id, usage_cvs=4)
    again = lifecycle.renew_subscription(user_id, now=later + timedelta(minutes=5))

    record = lifecycle.get_subscription(user_id)
    assert again.already_applied
    assert record.used(Resource.CVS) == 4
    assert record.current_period_end == NOW.replace(month=5)
    assert _event_types(lifecycle, user_id).count(LifecycleEventType.RENEWED) == 1


def test_renewal_before_period_end_date_is_already_applied(lifecycle):
    user_id = _user()
    lifecycle.activate_subscription(user_id, "momentum", "monthly", now=NOW)

    result = lifecycle.renew_subscription(user_id, now=NOW + timedelta(days=10))

    assert result.already_applied
    assert lifecycle.get_subscription(user_id).current_period_start == NOW


def test_renewal_on_period_end_date_before_its_time(lifecycle):
    user_id = _user()
    lifecycle.activate_subscription(user_id, "momentum", "monthly", now=NOW)
    period_end = NOW.replace(month=4)

    result = lifecycle.renew_subscription(user_id, now=period_end - timedelta(hours=4))

    assert not result.already_applied
    assert result.current_period_start == period_end


def test_renewal_after_long_lapse_restarts_at_now(lifecycle):
    user_id = _user()
    lifecycle.activate_subscription(user_id, "momentum", "monthly", now=NOW)
    force_columns(user_id, status=SubscriptionStatus.PAST_DUE.value)
    late = NOW + timedelta(days=70)

    result = lifecycle.renew_subscription(user_id, now=late)

    assert result.current_period_start == late
    assert lifecycle.get_subscription(user_id).status == SubscriptionStatus.ACTIVE


def test_renew_expired_rejected(lifecycle):
    user_id = _user()
    lifecycle.activate_subscription(user_id, "momentum", "monthly", now=NOW)
    force_columns(user_id, status=SubscriptionStatus.EXPIRED.value)

    with pytest.raises(InvalidTransitionError):
        lifecycle.renew_subscription(user_id, now=NOW + timedelta(days=31))
    assert lifecycle.get_subscription(user_id).status == SubscriptionStatus.EXPIRED


def test_renew_cancelled_reactivates_and_clears_cancellation(lifecycle):
    user_id = _user()
    lifecycle.activate_subscription(user_id, "momentum", "monthly", now=NOW)
    lifecycle.cancel_subscription(user_id, now=NOW + timedelta(days=5))

    lifecycle.renew_subscription(user_id, now=NOW + timedelta(days=31))

    record = lifecycle.get_subscription(user_id)
    assert record.status == SubscriptionStatus.ACTIVE
    assert record.cancelled_at is None
    assert record.cancellation_effective_at is None
    assert lifecycle.list_events(user_id)[0].metadata["previous_status"] == "cancelled"


def test_upgrade_changes_tier_only(lifecycle):
    user_id = _user()
    before = lifecycle.activate_subscription(user_id, "momentum", "monthly", now=NOW)
    force_columns(user_id, usage_applications=7, usage_cvs=3)

    result = lifecycle.upgrade_subscription(user_id, "accelerate", now=NOW + timedelta(days=10))
    after = lifecycle.get_subscription(user_id)

    assert result.previous_tier == SubscriptionTier.MOMENTUM
    assert after.tier == SubscriptionTier.ACCELERATE
    assert after.used(Resource.APPLICATIONS) == 7
    assert after.used(Resource.CVS) == 3
    assert after.current_period_start == before.current_period_start
    assert after.current_period_end == before.current_period_end
    assert after.last_reset_at == before.last_reset_at


def test_upgrade_proration_uses_calendar_days(lifecycle):
    user_id = _user()
    lifecycle.activate_subscription(user_id, "momentum", "monthly", now=NOW)
    # Period Mar 15 -> Apr 15 is 31 days; 21 remain on Mar 25
    result = lifecycle.upgrade_subscription(user_id, "elite", now=NOW + timedelta(days=10))

    assert result.total_days == 31
    assert result.remaining_days == 21
    assert result.prorated_amount == Decimal("11.52")

    event = lifecycle.list_events(user_id)[0]
    assert event.event_type == LifecycleEventType.UPGRADED
    assert event.amount == Decimal("11.52")
    assert event.currency == "USD"


def test_upgrade_drops_scheduled_downgrade(lifecycle):
    user_id = _user()
    lifecycle.activate_subscription(user_id, "accelerate", "monthly", now=NOW)
    lifecycle.schedule_downgrade(user_id, "momentum", now=NOW)
    lifecycle.upgrade_subscription(user_id, "elite", now=NOW)
    assert lifecycle.get_subscription(user_id).scheduled_tier_change is None


def test_upgrade_rejects_lateral_and_downward_moves(lifecycle):
    user_id = _user()
    lifecycle.activate_subscription(user_id, "accelerate", "monthly", now=NOW)
    with pytest.raises(InvalidTransitionError):
        lifecycle.upgrade_subscription(user_id, "accelerate", now=NOW)
    with pytest.raises(InvalidTransitionError):
        lifecycle.upgrade_subscription(user_id, "momentum", now=NOW)


@pytest.mark.parametrize(
    "old,new,total,remaining,expected",
    [
        (Decimal("18"), Decimal("30"), 30, 15, Decimal("6.00")),
        (Decimal("12"), Decimal("29"), 31, 31, Decimal("17.00")),
        (Decimal("12"), Decimal("18"), 30, 0, Decimal("0.00")),
        (Decimal("12"), Decimal("18"), 0, 5, Decimal("0.00")),
        (Decimal("12"), Decimal("18"), 30, -3, Decimal("0.00")),
        (Decimal("30"), Decimal("45"), 92, 1, Decimal("0.16")),
    ],
)
def test_calculate_prorated_amount(old, new, total, remaining, expected):
    assert calculate_prorated_amount(old, new, total, remaining) == expected


def test_proration_never_exceeds_full_difference():
    for remaining in range(0, 32):
        amount = calculate_prorated_amount(Decimal("12"), Decimal("29"), 31, remaining)
        assert Decimal("0") <= amount <= Decimal("17.00")


def test_schedule_downgrade_keeps_current_tier(lifecycle):
    user_id = _user()
    record = lifecycle.activate_subscription(user_id, "elite", "monthly", now=NOW)
    result = lifecycle.schedule_downgrade(user_id, SubscriptionTier.MOMENTUM, now=NOW)

    after = lifecycle.get_subscription(user_id)
    assert after.tier == SubscriptionTier.ELITE
    assert after.scheduled_tier_change == SubscriptionTier.MOMENTUM
    assert result.effective_date == record.current_period_end

    with pytest.raises(InvalidTransitionError):
        lifecycle.schedule_downgrade(user_id, "elite", now=NOW)


def test_schedule_same_period_rejected(lifecycle):
    user_id = _user()
    lifecycle.activate_subscription(user_id, "elite", "monthly", now=NOW)
    with pytest.raises(InvalidTransitionError):
        lifecycle.schedule_billing_period_change(user_id, "monthly", now=NOW)


def test_cancel_scheduled_change_clears_both(lifecycle):
    user_id = _user()
    lifecycle.activate_subscription(user_id, "elite", "monthly", now=NOW)
    lifecycle.schedule_downgrade(user_id, "accelerate", now=NOW)
    lifecycle.schedule_billing_period_change(user_id, "quarterly", now=NOW)

    lifecycle.cancel_scheduled_change(user_id, now=NOW)
    record = lifecycle.get_subscription(user_id)
    assert record.scheduled_tier_change is None
    assert record.scheduled_billing_period_change is None
    assert _event_types(lifecycle, user_id)[0] == LifecycleEventType.SCHEDULED_CHANGE_CANCELLED


def test_cancel_subscription(lifecycle):
    user_id = _user()
    record = lifecycle.activate_subscription(user_id, "accelerate", "monthly", now=NOW)
    result = lifecycle.cancel_subscription(user_id, now=NOW + timedelta(days=3))

    after = lifecycle.get_subscription(user_id)
    assert after.status == SubscriptionStatus.CANCELLED
    assert after.cancelled_at == NOW + timedelta(days=3)
    assert result.cancellation_effective_at == record.current_period_end

    with pytest.raises(InvalidTransitionError):
        lifecycle.cancel_subscription(user_id, now=NOW)


def test_cancel_tracking_only_rejected(lifecycle):
    user_id = _user()
    UsageRecorder().increment_usage(user_id, Resource.CVS, now=NOW)
    with pytest.raises(InvalidTransitionError):
        lifecycle.cancel_subscription(user_id, now=NOW)


def test_payment_failure_marks_past_due(lifecycle):
    user_id = _user()
    lifecycle.activate_subscription(user_id, "momentum", "monthly", now=NOW)
    lifecycle.handle_payment_failure(user_id, now=NOW + timedelta(days=31))

    record = lifecycle.get_subscription(user_id)
    assert record.status == SubscriptionStatus.PAST_DUE
    assert _event_types(lifecycle, user_id)[0] == LifecycleEventType.PAYMENT_FAILED


def test_payment_failure_requires_active_subscription(lifecycle):
    tracking = _user()
    UsageRecorder().increment_usage(tracking, Resource.CVS, now=NOW)
    with pytest.raises(InvalidTransitionError):
        lifecycle.handle_payment_failure(tracking, now=NOW)

    expired = _user()
    lifecycle.activate_subscription(expired, "momentum", "monthly", now=NOW)
    force_columns(expired, status=SubscriptionStatus.EXPIRED.value)
    with pytest.raises(InvalidTransitionError):
        lifecycle.handle_payment_failure(expired, now=NOW)
    assert lifecycle.get_subscription(expired).status == SubscriptionStatus.EXPIRED

    past_due = _user()
    lifecycle.activate_subscription(past_due, "momentum", "monthly", now=NOW)
    lifecycle.handle_payment_failure(past_due, now=NOW)
    with pytest.raises(InvalidTransitionError):
        lifecycle.handle_payment_failure(past_due, now=NOW + timedelta(days=1))
    assert _event_types(lifecycle, past_due).count(LifecycleEventType.PAYMENT_FAILED) == 1

    with pytest.raises(SubscriptionNotFoundError):
        lifecycle.handle_payment_failure(_user(), now=NOW)


def test_expiration_sweep_is_idempotent(lifecycle):
    cancelled_due = _user()
    lifecycle.activate_subscription(cancelled_due, "momentum", "monthly", now=NOW - timedelta(days=40))
    lifecycle.cancel_subscription(cancelled_due, now=NOW - timedelta(days=20))

    cancelled_later = _user()
    lifecycle.activate_subscription(cancelled_later, "momentum", "monthly", now=NOW - timedelta(days=5))
    lifecycle.cancel_subscription(cancelled_later, now=NOW)

    past_due_old = _user()
    lifecycle.activate_subscription(past_due_old, "elite", "monthly", now=NOW - timedelta(days=40))
    lifecycle.handle_payment_failure(past_due_old, now=NOW - timedelta(days=4))

    past_due_recent = _user()
    lifecycle.activate_subscription(past_due_recent, "elite", "monthly", now=NOW - timedelta(days=40))
    lifecycle.handle_payment_failure(past_due_recent, now=NOW - timedelta(days=1))

    first = lifecycle.process_expirations(now=NOW)
    assert first.expired == 2
    assert set(first.user_ids) == {cancelled_due, past_due_old}
    assert lifecycle.get_subscription(cancelled_due).status == SubscriptionStatus.EXPIRED
    assert lifecycle.get_subscription(cancelled_later).status == SubscriptionStatus.CANCELLED
    assert lifecycle.get_subscription(past_due_recent).status == SubscriptionStatus.PAST_DUE

    second = lifecycle.process_expirations(now=NOW)
    assert second.expired == 0
    assert _event_types(lifecycle, cancelled_due).count(LifecycleEventType.EXPIRED) == 1

    expired_event = lifecycle.list_events(past_due_old)[0]
    assert expired_event.metadata["reason"] == "grace_period_exceeded"


def test_events_newest_first_and_limited(lifecycle):
    user_id = _user()
    lifecycle.activate_subscription(user_id, "momentum", "monthly", now=NOW)
    lifecycle.upgrade_subscription(user_id, "accelerate", now=NOW + timedelta(days=1))
    lifecycle.schedule_downgrade(user_id, "momentum", now=NOW + timedelta(days=2))

    assert _event_types(lifecycle, user_id) == [
        LifecycleEventType.DOWNGRADE_SCHEDULED,
        LifecycleEventType.UPGRADED,
        LifecycleEventType.ACTIVATED,
    ]
    assert len(lifecycle.list_events(user_id, limit=1)) == 1
