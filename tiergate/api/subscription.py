"""
Subscription API routes.

User-facing surface, identity from get_current_user_id:
- GET  /api/subscription/status
- POST /api/subscription/check-access
- POST /api/subscription/check-limit
- POST /api/subscription/increment-usage
- POST /api/subscription/initiate
- POST /api/subscription/change-plan
- POST /api/subscription/cancel
- POST /api/subscription/cancel-scheduled-change
- GET  /api/subscription/recommendation
- GET  /api/subscription/trends
- GET  /api/subscription/events
"""
from decimal import Decimal
from typing import Any, Optional

from fastapi import APIRouter, Depends, Query, Request
from fastapi.encoders import jsonable_encoder
from pydantic import BaseModel

from tiergate.core.auth import get_current_user_id
from tiergate.core.config import is_subscription_enabled, settings
from tiergate.core.errors import BillingDisabledError
from tiergate.features.billing import service as billing
from tiergate.features.catalog import service as catalog
from tiergate.features.entitlements.service import EntitlementChecker
from tiergate.features.lifecycle.audit import DEFAULT_EVENT_LIMIT
from tiergate.features.recommendations.service import get_recommendation, get_usage_averages
from tiergate.features.usage.service import TRENDS_MONTHS, UsageRecorder
from tiergate.models.subscription import BillingPeriod, FeatureKey, Resource, SubscriptionTier


router = APIRouter(prefix="/api/subscription", tags=["subscription"])


class CheckAccessRequest(BaseModel):
    feature: FeatureKey


class ResourceRequest(BaseModel):
    resource: Resource


class InitiateRequest(BaseModel):
    tier: SubscriptionTier
    billing_period: BillingPeriod
    email: Optional[str] = None
    name: Optional[str] = None


class ChangePlanRequest(BaseModel):
    target_tier: SubscriptionTier
    target_billing_period: Optional[BillingPeriod] = None


def _encode(value: Any) -> Any:
    # Money stays exact on the wire
    return jsonable_encoder(value, custom_encoder={Decimal: str})


def get_entitlement_checker() -> EntitlementChecker:
    """Kill switch is read per request so flipping it needs no restart."""
    return EntitlementChecker(
        enforcement_enabled=is_subscription_enabled(settings),
        grace_period_days=settings.GRACE_PERIOD_DAYS,
    )


@router.get("/status")
def get_status(
    user_id: str = Depends(get_current_user_id),
    checker: EntitlementChecker = Depends(get_entitlement_checker),
):
    return _encode(checker.get_subscription_status(user_id))


@router.post("/check-access")
def check_access(
    body: CheckAccessRequest,
    user_id: str = Depends(get_current_user_id),
    checker: EntitlementChecker = Depends(get_entitlement_checker),
):
    return _encode(checker.check_feature_access(user_id, body.feature))


@router.post("/check-limit")
def check_limit(
    body: ResourceRequest,
    user_id: str = Depends(get_current_user_id),
    checker: EntitlementChecker = Depends(get_entitlement_checker),
):
    return _encode(checker.check_usage_limit(user_id, body.resource))


@router.post("/increment-usage")
def increment_usage(body: ResourceRequest, user_id: str = Depends(get_current_user_id)):
    """Record one unit of usage. Callers are expected to have checked the limit first."""
    result = UsageRecorder().increment_usage(user_id, body.resource)
    return _encode({"success": True, "resource": body.resource, **result.__dict__})


@router.post("/initiate")
def initiate(body: InitiateRequest, request: Request, user_id: str = Depends(get_current_user_id)):
    """
    Start checkout on the hosted payment page.

    Errors:
        503: Payment gateway not configured
        502: Gateway rejected the request
    """
    if not billing.billing_enabled():
        raise BillingDisabledError("Payment gateway is not configured")

    url = billing.initiate_checkout(
        user_id,
        body.tier,
        body.billing_period,
        email=body.email,
        name=body.name,
        base_url=request.headers.get("origin"),
    )
    return {"success": True, "payment_url": url}


@router.post("/change-plan")
def change_plan(body: ChangePlanRequest, user_id: str = Depends(get_current_user_id)):
    outcome = billing.change_plan(user_id, body.target_tier, body.target_billing_period)
    return _encode({"success": True, **outcome.__dict__})


@router.post("/cancel")
def cancel(user_id: str = Depends(get_current_user_id)):
    result = billing.get_lifecycle_manager().cancel_subscription(user_id)
    effective = result.cancellation_effective_at
    return _encode(
        {
            "success": True,
            "cancellation_effective_at": effective,
            "message": (
                f"Your subscription has been cancelled. You will keep access until "
                f"{effective.strftime('%B')} {effective.day}, {effective.year}."
            ),
        }
    )


@router.post("/cancel-scheduled-change")
def cancel_scheduled_change(user_id: str = Depends(get_current_user_id)):
    billing.get_lifecycle_manager().cancel_scheduled_change(user_id)
    return {"success": True, "message": "Scheduled change cancelled."}


@router.get("/recommendation")
def recommendation(user_id: str = Depends(get_current_user_id)):
    result = get_recommendation(get_usage_averages(user_id))
    record = billing.get_lifecycle_manager().get_subscription(user_id)
    current_tier = record.tier if record else None
    return _encode(
        {
            "recommendation": result,
            "current_tier": current_tier,
            "is_current_plan": current_tier == result.recommended_tier,
            "is_upgrade": bool(current_tier) and catalog.is_upgrade(current_tier, result.recommended_tier),
            "is_downgrade": bool(current_tier) and catalog.is_downgrade(current_tier, result.recommended_tier),
        }
    )


@router.get("/trends")
def trends(
    months: int = Query(TRENDS_MONTHS, ge=1, le=24),
    user_id: str = Depends(get_current_user_id),
):
    return _encode(UsageRecorder().get_usage_trends(user_id, months=months))


@router.get("/events")
def events(
    limit: int = Query(DEFAULT_EVENT_LIMIT, ge=1, le=200),
    user_id: str = Depends(get_current_user_id),
):
    return _encode({"events": billing.get_lifecycle_manager().list_events(user_id, limit=limit)})
