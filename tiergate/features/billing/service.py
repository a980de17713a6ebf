"""
Billing service orchestrator.

Coordinates the payment gateway, the invoicing service and the lifecycle
manager:
- Checkout initiation (hosted recurring payment page)
- Grow webhook processing (activate or renew, then invoice)
- Plan changes (immediate upgrade with prorated charge, scheduled downgrade,
  scheduled billing period change, cancelling a scheduled change)

All provider-specific code lives in grow_provider.py and morning_provider.py.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional, Union

from tiergate.core.config import settings
from tiergate.core.errors import (
    PaymentGatewayError,
    SubscriptionNotFoundError,
    ValidationError,
    WebhookVerificationError,
)
from tiergate.features.billing.grow_provider import GrowProvider
from tiergate.features.billing.morning_provider import MorningProvider
from tiergate.features.billing.provider import (
    GrowWebhookPayload,
    InvoicingProvider,
    PaymentGateway,
    RecurringPaymentRequest,
)
from tiergate.features.catalog import service as catalog
from tiergate.features.lifecycle.service import LifecycleManager
from tiergate.features.subscriptions.store import set_morning_customer_id
from tiergate.models.subscription import (
    BillingPeriod,
    PaymentReferences,
    SubscriptionRecord,
    SubscriptionStatus,
    SubscriptionTier,
)

logger = logging.getLogger(__name__)

PERIOD_LABELS = {
    BillingPeriod.MONTHLY: "Monthly",
    BillingPeriod.QUARTERLY: "Quarterly",
    BillingPeriod.YEARLY: "Annual",
}

WEBHOOK_PATH = "/api/webhooks/grow"
SUCCESS_PATH = "/dashboard/subscription?success=true"
CANCEL_PATH = "/dashboard/subscription?cancelled=true"


@dataclass(frozen=True)
class WebhookOutcome:
    user_id: str
    action: str  # activated | renewed | already_applied | payment_failed | ignored
    tier: SubscriptionTier
    billing_period: BillingPeriod
    invoice_created: bool
    invoice_error: Optional[str] = None


@dataclass(frozen=True)
class PlanChangeOutcome:
    action: str  # upgraded | downgrade_scheduled | period_change_scheduled | scheduled_change_cancelled | unchanged
    immediate: bool
    message: str
    new_tier: Optional[SubscriptionTier] = None
    prorated_amount: Optional[Decimal] = None
    charge_transaction_id: Optional[str] = None
    charge_error: Optional[str] = None
    effective_date: Optional[datetime] = None


def billing_enabled() -> bool:
    """Check if the payment gateway is configured."""
    return bool(settings.GROW_API_URL and settings.GROW_USER_ID)


def get_payment_gateway() -> PaymentGateway:
    return GrowProvider()


def get_invoicing_provider() -> InvoicingProvider:
    return MorningProvider()


def get_lifecycle_manager() -> LifecycleManager:
    return LifecycleManager(grace_period_days=settings.GRACE_PERIOD_DAYS)


def invoice_description(tier: SubscriptionTier, billing_period: BillingPeriod) -> str:
    tier_name = catalog.get_tier_config(tier).display_name
    return f"{settings.INVOICE_PRODUCT_NAME} {tier_name} - {PERIOD_LABELS[billing_period]} Subscription"


def initiate_checkout(
    user_id: str,
    tier: Union[SubscriptionTier, str],
    billing_period: Union[BillingPeriod, str],
    *,
    email: Optional[str] = None,
    name: Optional[str] = None,
    base_url: Optional[str] = None,
    gateway: Optional[PaymentGateway] = None,
) -> str:
    """
    Create a hosted recurring payment page for a new subscription.

    Returns:
        Payment page URL

    Raises:
        PaymentGatewayError: If the gateway rejects the request
    """
    gateway = gateway or get_payment_gateway()
    origin = (base_url or settings.APP_BASE_URL).rstrip("/")
    url = gateway.create_recurring_payment(
        RecurringPaymentRequest(
            tier=SubscriptionTier(tier),
            billing_period=BillingPeriod(billing_period),
            user_id=user_id,
            email=email,
            name=name,
            notify_url=f"{origin}{WEBHOOK_PATH}",
            success_url=f"{origin}{SUCCESS_PATH}",
            cancel_url=f"{origin}{CANCEL_PATH}",
        )
    )
    logger.info(
        "[billing] checkout initiated",
        extra={"user_id": user_id, "tier": SubscriptionTier(tier).value, "billing_period": BillingPeriod(billing_period).value},
    )
    return url


def _create_invoice(payload: GrowWebhookPayload, invoicer: InvoicingProvider) -> bool:
    """Invoice a confirmed payment. Returns False when skipped for lack of an email."""
    if not payload.email:
        logger.warning("[billing] no email in webhook payload, skipping invoice", extra={"user_id": payload.user_id})
        return False

    customer_id, _ = invoicer.create_or_find_customer(payload.name or "Customer", payload.email)
    set_morning_customer_id(payload.user_id, customer_id)
    document = invoicer.create_invoice(
        customer_id,
        invoice_description(payload.tier, payload.billing_period),
        catalog.price(payload.tier, payload.billing_period),
    )
    logger.info(
        "[billing] invoice created",
        extra={"user_id": payload.user_id, "document_id": document.document_id},
    )
    return True


def _is_new_purchase(record: Optional[SubscriptionRecord], payload: GrowWebhookPayload) -> bool:
    """
    Whether a successful payment starts a subscription rather than renewing one.

    No row, a tracking-only row and an expired row always activate. A
    cancelled row activates when the payment is for a different plan than it
    would renew into: the user bought a new plan instead of keeping the old one.
    """
    if record is None or record.tier is None or record.status == SubscriptionStatus.EXPIRED:
        return True
    if record.status == SubscriptionStatus.CANCELLED:
        return not _matches_renewal_plan(record, payload)
    return False


def _matches_renewal_plan(record: SubscriptionRecord, payload: GrowWebhookPayload) -> bool:
    return payload.tier in (record.tier, record.scheduled_tier_change) and payload.billing_period in (
        record.billing_period,
        record.scheduled_billing_period_change,
    )


def _handle_failed_payment(
    payload: GrowWebhookPayload,
    record: Optional[SubscriptionRecord],
    lifecycle: LifecycleManager,
    now: Optional[Any],
) -> str:
    """Active subscriptions go past_due; anything else has nothing to transition."""
    if record is None or record.tier is None:
        action = "ignored"
    elif record.status == SubscriptionStatus.PAST_DUE:
        action = "already_applied"
    elif record.status == SubscriptionStatus.ACTIVE:
        lifecycle.handle_payment_failure(payload.user_id, now=now)
        action = "payment_failed"
    else:
        action = "ignored"

    logger.warning(
        "[billing] payment failed",
        extra={
            "user_id": payload.user_id,
            "action": action,
            "status": payload.status,
            "transaction_id": payload.transaction_id,
        },
    )
    return action


def process_grow_webhook(
    body: Dict[str, Any],
    *,
    gateway: Optional[PaymentGateway] = None,
    invoicer: Optional[InvoicingProvider] = None,
    lifecycle: Optional[LifecycleManager] = None,
    now: Optional[Any] = None,
) -> WebhookOutcome:
    """
    Handle a Grow payment notification.

    verify -> parse -> validate, then by payment status:
    - failed: active subscription -> past_due; no approval, no invoice
    - settled: approve -> activate (first purchase, tracking-only, expired, or
      a cancelled user buying a different plan) or renew -> invoice

    Invoicing failures are logged and reported, never raised. Redelivered
    renewals are not invoiced again. Runs regardless of the kill switch.

    Raises:
        WebhookVerificationError: Bad or missing webhook key
        ValidationError: Missing user id, tier or billing period
        PaymentGatewayError: Transaction approval failed
    """
    gateway = gateway or get_payment_gateway()
    lifecycle = lifecycle or get_lifecycle_manager()

    if not gateway.verify_webhook(body):
        logger.error("[billing] invalid webhook key")
        raise WebhookVerificationError("Invalid webhook key")

    payload = gateway.parse_webhook_payload(body)
    if not payload.user_id:
        raise ValidationError("Missing userId")
    if payload.tier is None or payload.billing_period is None:
        raise ValidationError("Missing tier or billingPeriod")

    existing = lifecycle.get_subscription(payload.user_id)

    if not payload.succeeded:
        return WebhookOutcome(
            user_id=payload.user_id,
            action=_handle_failed_payment(payload, existing, lifecycle, now),
            tier=payload.tier,
            billing_period=payload.billing_period,
            invoice_created=False,
        )

    gateway.approve_transaction(payload.transaction_id, payload.transaction_token)

    if _is_new_purchase(existing, payload):
        lifecycle.activate_subscription(
            payload.user_id,
            payload.tier,
            payload.billing_period,
            PaymentReferences(
                transaction_token=payload.transaction_token or None,
                recurring_id=payload.recurring_id,
                transaction_code=payload.transaction_code or None,
            ),
            now=now,
        )
        action = "activated"
    else:
        if not _matches_renewal_plan(existing, payload):
            # The row's plan wins; the invoice still matches what Grow charged
            logger.warning(
                "[billing] renewal payment for a different plan",
                extra={
                    "user_id": payload.user_id,
                    "paid_tier": payload.tier.value,
                    "paid_billing_period": payload.billing_period.value,
                    "current_tier": existing.tier.value,
                    "current_billing_period": existing.billing_period.value,
                },
            )
        renewal = lifecycle.renew_subscription(payload.user_id, transaction_code=payload.transaction_code or None, now=now)
        action = "already_applied" if renewal.already_applied else "renewed"

    logger.info(
        "[billing] webhook processed",
        extra={
            "user_id": payload.user_id,
            "action": action,
            "tier": payload.tier.value,
            "billing_period": payload.billing_period.value,
        },
    )

    if action == "already_applied":
        # Redelivery: the first delivery already invoiced this payment
        return WebhookOutcome(
            user_id=payload.user_id,
            action=action,
            tier=payload.tier,
            billing_period=payload.billing_period,
            invoice_created=False,
        )

    invoice_created = False
    invoice_error = None
    try:
        invoice_created = _create_invoice(payload, invoicer or get_invoicing_provider())
    except Exception as exc:
        # The payment is already applied; invoicing can be retried out of band
        logger.error("[billing] invoice creation failed", exc_info=True, extra={"user_id": payload.user_id})
        invoice_error = str(exc)

    return WebhookOutcome(
        user_id=payload.user_id,
        action=action,
        tier=payload.tier,
        billing_period=payload.billing_period,
        invoice_created=invoice_created,
        invoice_error=invoice_error,
    )


def change_plan(
    user_id: str,
    target_tier: Union[SubscriptionTier, str],
    target_billing_period: Optional[Union[BillingPeriod, str]] = None,
    *,
    lifecycle: Optional[LifecycleManager] = None,
    gateway: Optional[PaymentGateway] = None,
    now: Optional[Any] = None,
) -> PlanChangeOutcome:
    """
    Apply a user's plan change request.

    - Same tier with a scheduled change pending: cancel the scheduled change
    - Higher tier: upgrade now, charge the prorated amount to the stored card
    - Lower tier: schedule the downgrade for the period end
    - Same tier, different billing period: schedule the period change

    A failed prorated charge does not undo the upgrade; it is logged and
    reported in the outcome.

    Raises:
        SubscriptionNotFoundError: No paid subscription
    """
    lifecycle = lifecycle or get_lifecycle_manager()
    target_tier = SubscriptionTier(target_tier)
    target_period = BillingPeriod(target_billing_period) if target_billing_period else None

    record = lifecycle.get_subscription(user_id)
    if record is None or record.tier is None:
        raise SubscriptionNotFoundError("No active subscription found")

    if target_tier == record.tier and (record.scheduled_tier_change or record.scheduled_billing_period_change):
        lifecycle.cancel_scheduled_change(user_id, now=now)
        return PlanChangeOutcome(
            action="scheduled_change_cancelled",
            immediate=True,
            message="Scheduled change cancelled.",
            new_tier=record.tier,
        )

    if catalog.is_upgrade(record.tier, target_tier):
        result = lifecycle.upgrade_subscription(user_id, target_tier, now=now)
        transaction_id = None
        charge_error = None
        if result.prorated_amount > 0 and record.grow_transaction_token:
            try:
                transaction_id = (gateway or get_payment_gateway()).charge_token(
                    result.prorated_amount,
                    f"Upgrade to {catalog.get_tier_config(target_tier).display_name}",
                    user_id,
                    record.grow_transaction_token,
                )
            except PaymentGatewayError as exc:
                logger.error(
                    "[billing] prorated charge failed",
                    extra={"user_id": user_id, "amount": str(result.prorated_amount), "error": exc.message},
                )
                charge_error = exc.message
        elif result.prorated_amount > 0:
            logger.warning(
                "[billing] prorated charge needed but no card token stored",
                extra={"user_id": user_id, "amount": str(result.prorated_amount)},
            )
            charge_error = "No stored payment token"

        return PlanChangeOutcome(
            action="upgraded",
            immediate=True,
            message=f"Upgraded to {catalog.get_tier_config(target_tier).display_name}.",
            new_tier=target_tier,
            prorated_amount=result.prorated_amount,
            charge_transaction_id=transaction_id,
            charge_error=charge_error,
        )

    if catalog.is_downgrade(record.tier, target_tier):
        result = lifecycle.schedule_downgrade(user_id, target_tier, now=now)
        effective = result.effective_date
        return PlanChangeOutcome(
            action="downgrade_scheduled",
            immediate=False,
            message=(
                f"Your downgrade to {catalog.get_tier_config(target_tier).display_name} will take effect on "
                f"{effective.strftime('%B')} {effective.day}, {effective.year}."
            ),
            new_tier=target_tier,
            effective_date=effective,
        )

    if target_period is not None and target_period != record.billing_period:
        result = lifecycle.schedule_billing_period_change(user_id, target_period, now=now)
        return PlanChangeOutcome(
            action="period_change_scheduled",
            immediate=False,
            message=f"Your billing period will change to {target_period.value} at your next renewal.",
            new_tier=record.tier,
            effective_date=result.effective_date,
        )

    return PlanChangeOutcome(
        action="unchanged",
        immediate=False,
        message="No changes needed. You are already on this plan.",
        new_tier=record.tier,
    )
