"""
Tests for checkout, webhook processing and plan changes against fake providers.
"""
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from uuid import uuid4

import pytest

from tiergate.core.config import settings
from tiergate.core.errors import (
    InvoicingError,
    PaymentGatewayError,
    SubscriptionNotFoundError,
    ValidationError,
    WebhookVerificationError,
)
from tiergate.features.billing.service import (
    change_plan,
    initiate_checkout,
    invoice_description,
    process_grow_webhook,
)
from tiergate.features.catalog import service as catalog
from tiergate.features.entitlements.service import EntitlementChecker
from tiergate.features.usage.service import UsageRecorder
from tiergate.models.lifecycle_event import LifecycleEventType
from tiergate.models.subscription import (
    BillingPeriod,
    PaymentReferences,
    Resource,
    SubscriptionStatus,
    SubscriptionTier,
)
from tiergate.tests.mocks import NOW, FakeGateway, FakeInvoicer, force_columns, grow_body


def _user():
    return f"user-{uuid4()}"


def test_invoice_description(monkeypatch):
    monkeypatch.setattr(settings, "INVOICE_PRODUCT_NAME", "Signatura")
    assert invoice_description(SubscriptionTier.ELITE, BillingPeriod.YEARLY) == "Signatura Elite - Annual Subscription"
    assert invoice_description(SubscriptionTier.MOMENTUM, BillingPeriod.QUARTERLY) == (
        "Signatura Momentum - Quarterly Subscription"
    )


def test_initiate_checkout_builds_callback_urls():
    gateway = FakeGateway()
    url = initiate_checkout("u1", "elite", "monthly", email="a@b.test", base_url="https://app.test/", gateway=gateway)

    assert url == "https://pay.grow.test/page/abc"
    request = gateway.checkouts[0]
    assert request.tier == SubscriptionTier.ELITE
    assert request.notify_url == "https://app.test/api/webhooks/grow"
    assert request.success_url == "https://app.test/dashboard/subscription?success=true"
    assert request.cancel_url == "https://app.test/dashboard/subscription?cancelled=true"


def test_first_payment_activates_and_invoices(lifecycle):
    user_id = _user()
    gateway, invoicer = FakeGateway(), FakeInvoicer()

    outcome = process_grow_webhook(
        grow_body(user_id, "accelerate", "monthly"),
        gateway=gateway,
        invoicer=invoicer,
        lifecycle=lifecycle,
        now=NOW,
    )

    assert outcome.action == "activated"
    assert outcome.invoice_created
    assert gateway.approvals == [("tx-1", "tok-1")]
    record = lifecycle.get_subscription(user_id)
    assert record.tier == SubscriptionTier.ACCELERATE
    assert record.grow_transaction_token == "tok-1"
    assert record.morning_customer_id == "cust-1"
    assert invoicer.invoices[0][2] == Decimal("18")


def test_tracking_user_is_activated_not_renewed(lifecycle):
    user_id = _user()
    UsageRecorder().increment_usage(user_id, Resource.CVS, now=NOW - timedelta(days=1))

    outcome = process_grow_webhook(
        grow_body(user_id), gateway=FakeGateway(), invoicer=FakeInvoicer(), lifecycle=lifecycle, now=NOW
    )
    assert outcome.action == "activated"
    assert lifecycle.get_subscription(user_id).used(Resource.CVS) == 0


def test_recurring_payment_renews(lifecycle):
    user_id = _user()
    lifecycle.activate_subscription(user_id, "momentum", "monthly", PaymentReferences(transaction_code="code-0"), now=NOW)
    force_columns(user_id, usage_applications=5)
    later = NOW + timedelta(days=31)

    outcome = process_grow_webhook(
        grow_body(user_id, "momentum", "monthly", transactionCode="code-1"),
        gateway=FakeGateway(),
        invoicer=FakeInvoicer(),
        lifecycle=lifecycle,
        now=later,
    )
    assert outcome.action == "renewed"
    assert lifecycle.get_subscription(user_id).used(Resource.APPLICATIONS) == 0


def test_redelivered_renewal_does_not_reset_again(lifecycle):
    user_id = _user()
    lifecycle.activate_subscription(user_id, "momentum", "monthly", now=NOW)
    later = NOW + timedelta(days=31)
    body = grow_body(user_id, "momentum", "monthly", transactionCode="code-7")

    process_grow_webhook(body, gateway=FakeGateway(), invoicer=FakeInvoicer(), lifecycle=lifecycle, now=later)
    force_columns(user_id, usage_cvs=3)
    invoicer = FakeInvoicer()
    outcome = process_grow_webhook(
        body, gateway=FakeGateway(), invoicer=invoicer, lifecycle=lifecycle, now=later + timedelta(minutes=1)
    )

    assert outcome.action == "already_applied"
    assert invoicer.invoices == []
    assert lifecycle.get_subscription(user_id).used(Resource.CVS) == 3


def test_repurchase_after_expiry_activates_the_paid_plan(lifecycle):
    user_id = _user()
    lifecycle.activate_subscription(user_id, "momentum", "monthly", now=NOW - timedelta(days=40))
    lifecycle.cancel_subscription(user_id, now=NOW - timedelta(days=30))
    lifecycle.process_expirations(now=NOW)
    invoicer = FakeInvoicer()

    outcome = process_grow_webhook(
        grow_body(user_id, "elite", "monthly", transactionCode="c9"),
        gateway=FakeGateway(),
        invoicer=invoicer,
        lifecycle=lifecycle,
        now=NOW,
    )

    assert outcome.action == "activated"
    record = lifecycle.get_subscription(user_id)
    assert record.tier == SubscriptionTier.ELITE
    assert record.status == SubscriptionStatus.ACTIVE
    assert record.cancelled_at is None
    assert record.current_period_start == NOW
    assert invoicer.invoices[0][2] == catalog.price(SubscriptionTier.ELITE, BillingPeriod.MONTHLY)
    assert not EntitlementChecker(True, 3).get_subscription_status(user_id).is_cancelled


def test_cancelled_user_buying_another_plan_is_activated(lifecycle):
    user_id = _user()
    lifecycle.activate_subscription(user_id, "momentum", "monthly", now=NOW)
    lifecycle.cancel_subscription(user_id, now=NOW + timedelta(days=2))

    outcome = process_grow_webhook(
        grow_body(user_id, "accelerate", "yearly"),
        gateway=FakeGateway(),
        invoicer=FakeInvoicer(),
        lifecycle=lifecycle,
        now=NOW + timedelta(days=3),
    )

    record = lifecycle.get_subscription(user_id)
    assert outcome.action == "activated"
    assert record.tier == SubscriptionTier.ACCELERATE
    assert record.billing_period == BillingPeriod.YEARLY
    assert record.cancellation_effective_at is None


def test_cancelled_user_renewed_on_same_plan_is_no_longer_cancelled(lifecycle):
    user_id = _user()
    lifecycle.activate_subscription(user_id, "momentum", "monthly", now=NOW)
    lifecycle.cancel_subscription(user_id, now=NOW + timedelta(days=2))

    outcome = process_grow_webhook(
        grow_body(user_id, "momentum", "monthly", transactionCode="code-2"),
        gateway=FakeGateway(),
        invoicer=FakeInvoicer(),
        lifecycle=lifecycle,
        now=NOW + timedelta(days=31),
    )

    record = lifecycle.get_subscription(user_id)
    assert outcome.action == "renewed"
    assert record.status == SubscriptionStatus.ACTIVE
    assert record.cancelled_at is None


def test_renewal_for_a_different_plan_keeps_the_current_plan(lifecycle, caplog):
    user_id = _user()
    lifecycle.activate_subscription(user_id, "momentum", "monthly", now=NOW)

    with caplog.at_level("WARNING", logger="tiergate"):
        outcome = process_grow_webhook(
            grow_body(user_id, "elite", "monthly", transactionCode="code-2"),
            gateway=FakeGateway(),
            invoicer=FakeInvoicer(),
            lifecycle=lifecycle,
            now=NOW + timedelta(days=31),
        )

    assert outcome.action == "renewed"
    assert lifecycle.get_subscription(user_id).tier == SubscriptionTier.MOMENTUM
    assert any(r.getMessage() == "[billing] renewal payment for a different plan" for r in caplog.records)


def test_renewal_with_scheduled_downgrade_is_not_a_plan_mismatch(lifecycle, caplog):
    user_id = _user()
    lifecycle.activate_subscription(user_id, "elite", "monthly", now=NOW)
    lifecycle.schedule_downgrade(user_id, "momentum", now=NOW)

    with caplog.at_level("WARNING", logger="tiergate"):
        process_grow_webhook(
            grow_body(user_id, "momentum", "monthly", transactionCode="code-2"),
            gateway=FakeGateway(),
            invoicer=FakeInvoicer(),
            lifecycle=lifecycle,
            now=NOW + timedelta(days=31),
        )

    assert lifecycle.get_subscription(user_id).tier == SubscriptionTier.MOMENTUM
    assert not any("different plan" in r.getMessage() for r in caplog.records)


def test_redelivered_renewal_without_transaction_code(lifecycle):
    user_id = _user()
    lifecycle.activate_subscription(user_id, "momentum", "monthly", now=NOW)
    body = grow_body(user_id, "momentum", "monthly", transactionCode="")
    later = NOW + timedelta(days=31)

    first = process_grow_webhook(body, gateway=FakeGateway(), invoicer=FakeInvoicer(), lifecycle=lifecycle, now=later)
    period_end = lifecycle.get_subscription(user_id).current_period_end
    for _ in range(4):
        UsageRecorder().increment_usage(user_id, Resource.CVS, now=later + timedelta(minutes=1))
    invoicer = FakeInvoicer()
    second = process_grow_webhook(
        body, gateway=FakeGateway(), invoicer=invoicer, lifecycle=lifecycle, now=later + timedelta(minutes=5)
    )

    record = lifecycle.get_subscription(user_id)
    assert first.action == "renewed"
    assert second.action == "already_applied"
    assert record.used(Resource.CVS) == 4
    assert record.current_period_end == period_end
    assert invoicer.invoices == []


def test_failed_payment_marks_active_subscription_past_due(lifecycle):
    user_id = _user()
    lifecycle.activate_subscription(user_id, "momentum", "monthly", now=NOW)
    gateway, invoicer = FakeGateway(), FakeInvoicer()
    body = grow_body(user_id, "momentum", "monthly", status="0", transactionCode="code-2")
    later = NOW + timedelta(days=31)

    outcome = process_grow_webhook(body, gateway=gateway, invoicer=invoicer, lifecycle=lifecycle, now=later)

    assert outcome.action == "payment_failed"
    assert not outcome.invoice_created
    assert lifecycle.get_subscription(user_id).status == SubscriptionStatus.PAST_DUE
    assert lifecycle.list_events(user_id)[0].event_type == LifecycleEventType.PAYMENT_FAILED
    assert gateway.approvals == []
    assert invoicer.invoices == []

    again = process_grow_webhook(body, gateway=gateway, invoicer=invoicer, lifecycle=lifecycle, now=later)
    assert again.action == "already_applied"


def test_failed_first_payment_creates_nothing(lifecycle):
    user_id = _user()
    gateway = FakeGateway()

    outcome = process_grow_webhook(grow_body(user_id, status="0"), gateway=gateway, lifecycle=lifecycle, now=NOW)

    assert outcome.action == "ignored"
    assert gateway.approvals == []
    assert lifecycle.get_subscription(user_id) is None


def test_past_due_subscription_recovers_on_payment(lifecycle):
    user_id = _user()
    lifecycle.activate_subscription(user_id, "momentum", "monthly", now=NOW)
    lifecycle.handle_payment_failure(user_id, now=NOW + timedelta(days=31))

    outcome = process_grow_webhook(
        grow_body(user_id, "momentum", "monthly", transactionCode="code-3"),
        gateway=FakeGateway(),
        invoicer=FakeInvoicer(),
        lifecycle=lifecycle,
        now=NOW + timedelta(days=32),
    )

    assert outcome.action == "renewed"
    record = lifecycle.get_subscription(user_id)
    assert record.status == SubscriptionStatus.ACTIVE
    assert record.current_period_start == NOW.replace(month=4)


def test_bad_webhook_key_rejected(lifecycle):
    gateway = FakeGateway()
    with pytest.raises(WebhookVerificationError):
        process_grow_webhook(grow_body(_user(), webhookKey="nope"), gateway=gateway, lifecycle=lifecycle)
    assert gateway.approvals == []


def test_missing_fields_rejected(lifecycle):
    with pytest.raises(ValidationError, match="userId"):
        process_grow_webhook(grow_body(""), gateway=FakeGateway(), lifecycle=lifecycle)
    with pytest.raises(ValidationError, match="tier"):
        process_grow_webhook(grow_body(_user(), tier="platinum"), gateway=FakeGateway(), lifecycle=lifecycle)


def test_approval_failure_stops_processing(lifecycle):
    user_id = _user()
    gateway = FakeGateway(approve_error=PaymentGatewayError("declined"))
    with pytest.raises(PaymentGatewayError):
        process_grow_webhook(grow_body(user_id), gateway=gateway, invoicer=FakeInvoicer(), lifecycle=lifecycle, now=NOW)
    assert lifecycle.get_subscription(user_id) is None


def test_invoice_failure_does_not_fail_webhook(lifecycle):
    user_id = _user()
    outcome = process_grow_webhook(
        grow_body(user_id),
        gateway=FakeGateway(),
        invoicer=FakeInvoicer(error=InvoicingError("Morning down")),
        lifecycle=lifecycle,
        now=NOW,
    )
    assert outcome.action == "activated"
    assert not outcome.invoice_created
    assert outcome.invoice_error == "Morning down"
    assert lifecycle.get_subscription(user_id).tier == SubscriptionTier.ACCELERATE


def test_no_email_skips_invoice(lifecycle):
    invoicer = FakeInvoicer()
    outcome = process_grow_webhook(
        grow_body(_user(), email=""), gateway=FakeGateway(), invoicer=invoicer, lifecycle=lifecycle, now=NOW
    )
    assert not outcome.invoice_created
    assert outcome.invoice_error is None
    assert invoicer.invoices == []


def test_change_plan_requires_subscription(lifecycle):
    with pytest.raises(SubscriptionNotFoundError):
        change_plan(_user(), "elite", lifecycle=lifecycle, gateway=FakeGateway())


def test_change_plan_upgrade_charges_prorated_amount(lifecycle):
    user_id = _user()
    lifecycle.activate_subscription(user_id, "momentum", "monthly", PaymentReferences(transaction_token="tok-9"), now=NOW)
    gateway = FakeGateway()

    outcome = change_plan(user_id, "elite", lifecycle=lifecycle, gateway=gateway, now=NOW + timedelta(days=10))

    assert outcome.action == "upgraded"
    assert outcome.immediate
    assert outcome.prorated_amount == Decimal("11.52")
    assert outcome.charge_transaction_id == "charge-1"
    assert gateway.charges == [(Decimal("11.52"), "Upgrade to Elite", user_id, "tok-9")]


def test_change_plan_upgrade_survives_charge_failure(lifecycle):
    user_id = _user()
    lifecycle.activate_subscription(user_id, "momentum", "monthly", PaymentReferences(transaction_token="tok-9"), now=NOW)
    gateway = FakeGateway(charge_error=PaymentGatewayError("card declined"))

    outcome = change_plan(user_id, "accelerate", lifecycle=lifecycle, gateway=gateway, now=NOW)

    assert outcome.action == "upgraded"
    assert outcome.charge_error == "card declined"
    assert lifecycle.get_subscription(user_id).tier == SubscriptionTier.ACCELERATE


def test_change_plan_upgrade_without_token(lifecycle):
    user_id = _user()
    lifecycle.activate_subscription(user_id, "momentum", "monthly", now=NOW)
    gateway = FakeGateway()

    outcome = change_plan(user_id, "accelerate", lifecycle=lifecycle, gateway=gateway, now=NOW)
    assert outcome.charge_error == "No stored payment token"
    assert gateway.charges == []


def test_change_plan_downgrade_is_scheduled(lifecycle):
    user_id = _user()
    start = datetime(2026, 3, 1, 8, 0, tzinfo=timezone.utc)
    lifecycle.activate_subscription(user_id, "elite", "monthly", now=start)

    outcome = change_plan(user_id, "momentum", lifecycle=lifecycle, gateway=FakeGateway(), now=start)

    assert outcome.action == "downgrade_scheduled"
    assert not outcome.immediate
    assert outcome.message == "Your downgrade to Momentum will take effect on April 1, 2026."
    assert lifecycle.get_subscription(user_id).tier == SubscriptionTier.ELITE


def test_change_plan_same_tier_cancels_scheduled_change(lifecycle):
    user_id = _user()
    lifecycle.activate_subscription(user_id, "elite", "monthly", now=NOW)
    lifecycle.schedule_downgrade(user_id, "momentum", now=NOW)

    outcome = change_plan(user_id, "elite", lifecycle=lifecycle, gateway=FakeGateway(), now=NOW)
    assert outcome.action == "scheduled_change_cancelled"
    assert lifecycle.get_subscription(user_id).scheduled_tier_change is None


def test_change_plan_billing_period(lifecycle):
    user_id = _user()
    lifecycle.activate_subscription(user_id, "accelerate", "monthly", now=NOW)

    outcome = change_plan(user_id, "accelerate", "yearly", lifecycle=lifecycle, gateway=FakeGateway(), now=NOW)
    assert outcome.action == "period_change_scheduled"
    assert outcome.message == "Your billing period will change to yearly at your next renewal."
    assert lifecycle.get_subscription(user_id).scheduled_billing_period_change == BillingPeriod.YEARLY
    assert lifecycle.list_events(user_id)[0].event_type == LifecycleEventType.PERIOD_CHANGE_SCHEDULED


def test_change_plan_unchanged(lifecycle):
    user_id = _user()
    lifecycle.activate_subscription(user_id, "accelerate", "monthly", now=NOW)
    outcome = change_plan(user_id, "accelerate", "monthly", lifecycle=lifecycle, gateway=FakeGateway(), now=NOW)
    assert outcome.action == "unchanged"
