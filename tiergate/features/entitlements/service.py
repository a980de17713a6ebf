"""
tiergate/features/entitlements/service.py

Feature access, usage limit checks and the subscription status projection.

Handles:
- Read-only checks behind the guard list (see guards.py)
- Kill switch injected at construction, never read from the environment here
- Denials returned as values with a reason, logged as structured warnings
"""

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, List, Optional, Union
import logging

from tiergate.core.dates import normalize_now
from tiergate.features.catalog import service as catalog
from tiergate.features.catalog.service import UNLIMITED
from tiergate.features.entitlements.guards import (
    AccessReason,
    GuardContext,
    run_guards,
)
from tiergate.features.subscriptions.store import get_subscription
from tiergate.models.subscription import (
    BillingPeriod,
    FeatureKey,
    Resource,
    SubscriptionRecord,
    SubscriptionStatus,
    SubscriptionTier,
)


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FeatureAccessCheck:
    allowed: bool
    enforced: bool
    reason: Optional[AccessReason] = None
    tier: Optional[SubscriptionTier] = None


@dataclass(frozen=True)
class UsageLimitCheck:
    allowed: bool
    enforced: bool
    unlimited: bool
    used: Optional[int] = None
    limit: Optional[int] = None
    remaining: Optional[int] = None
    reason: Optional[AccessReason] = None
    tier: Optional[SubscriptionTier] = None


@dataclass(frozen=True)
class UsageSummary:
    used: int
    limit: int
    remaining: int
    percent_used: int
    unlimited: bool


@dataclass(frozen=True)
class SubscriptionStatusView:
    subscription_enabled: bool
    has_subscription: bool
    tier: Optional[SubscriptionTier]
    billing_period: Optional[BillingPeriod]
    status: Optional[SubscriptionStatus]
    usage: Dict[Resource, UsageSummary]
    features: List[FeatureKey] = field(default_factory=list)
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    cancellation_effective_at: Optional[datetime] = None
    scheduled_tier_change: Optional[SubscriptionTier] = None
    scheduled_billing_period_change: Optional[BillingPeriod] = None
    is_cancelled: bool = False
    is_past_due: bool = False
    is_expired: bool = False
    can_upgrade: bool = False
    can_downgrade: bool = False


def percent_used(used: int, limit: int) -> int:
    if limit <= 0:
        return 0
    ratio = Decimal(used) * 100 / Decimal(limit)
    return int(ratio.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def summarize_usage(used: int, limit: int) -> UsageSummary:
    if limit == UNLIMITED:
        return UsageSummary(used=used, limit=limit, remaining=UNLIMITED, percent_used=0, unlimited=True)
    return UsageSummary(
        used=used,
        limit=limit,
        remaining=max(0, limit - used),
        percent_used=percent_used(used, limit),
        unlimited=False,
    )


class EntitlementChecker:
    """Answers 'may this user do X' for the API layer.

    Both checks are read-only; metering happens in UsageRecorder regardless
    of the outcome here.
    """

    def __init__(self, enforcement_enabled: bool, grace_period_days: int):
        self.enforcement_enabled = enforcement_enabled
        self.grace_period_days = grace_period_days

    def _context(self, now: Optional[Any]) -> GuardContext:
        return GuardContext(
            enforcement_enabled=self.enforcement_enabled,
            grace_period_days=self.grace_period_days,
            now=normalize_now(now),
        )

    def _load(self, user_id: str) -> Optional[SubscriptionRecord]:
        # Skip the read entirely when the kill switch is off
        if not self.enforcement_enabled:
            return None
        return get_subscription(user_id)

    def check_feature_access(
        self,
        user_id: str,
        feature: Union[FeatureKey, str],
        now: Optional[Any] = None,
    ) -> FeatureAccessCheck:
        feature = FeatureKey(feature)
        record = self._load(user_id)
        guard_name, outcome = run_guards(record, self._context(now))
        if outcome is not None:
            if not outcome.allowed:
                self._log_denied(user_id, outcome.reason, feature=feature.value, guard=guard_name)
            return FeatureAccessCheck(
                allowed=outcome.allowed,
                enforced=outcome.enforced,
                reason=outcome.reason,
                tier=record.tier if record else None,
            )

        if not catalog.has_feature(record.tier, feature):
            self._log_denied(user_id, AccessReason.FEATURE_NOT_INCLUDED, feature=feature.value, tier=record.tier.value)
            return FeatureAccessCheck(
                allowed=False,
                enforced=True,
                reason=AccessReason.FEATURE_NOT_INCLUDED,
                tier=record.tier,
            )

        return FeatureAccessCheck(allowed=True, enforced=True, tier=record.tier)

    def check_usage_limit(
        self,
        user_id: str,
        resource: Union[Resource, str],
        now: Optional[Any] = None,
    ) -> UsageLimitCheck:
        resource = Resource(resource)
        record = self._load(user_id)
        guard_name, outcome = run_guards(record, self._context(now))
        if outcome is not None:
            if outcome.allowed:
                # Kill switch off
                return UsageLimitCheck(allowed=True, enforced=False, unlimited=True)
            self._log_denied(user_id, outcome.reason, resource=resource.value, guard=guard_name)
            return UsageLimitCheck(
                allowed=False,
                enforced=True,
                unlimited=False,
                reason=outcome.reason,
                tier=record.tier if record else None,
            )

        used = record.used(resource)
        limit = catalog.limit_for(record.tier, resource)
        if limit == UNLIMITED:
            return UsageLimitCheck(
                allowed=True,
                enforced=True,
                unlimited=True,
                used=used,
                limit=UNLIMITED,
                remaining=UNLIMITED,
                tier=record.tier,
            )

        allowed = used < limit
        remaining = max(0, limit - used)
        if not allowed:
            self._log_denied(
                user_id,
                AccessReason.LIMIT_EXCEEDED,
                resource=resource.value,
                used=used,
                limit=limit,
                tier=record.tier.value,
            )
        return UsageLimitCheck(
            allowed=allowed,
            enforced=True,
            unlimited=False,
            used=used,
            limit=limit,
            remaining=remaining,
            reason=None if allowed else AccessReason.LIMIT_EXCEEDED,
            tier=record.tier,
        )

    def get_subscription_status(self, user_id: str) -> SubscriptionStatusView:
        """Projection of the user's subscription. Real data regardless of the kill switch."""
        record = get_subscription(user_id)
        if record is None:
            return SubscriptionStatusView(
                subscription_enabled=self.enforcement_enabled,
                has_subscription=False,
                tier=None,
                billing_period=None,
                status=None,
                usage={resource: summarize_usage(0, UNLIMITED) for resource in Resource},
                can_upgrade=True,
                can_downgrade=False,
            )

        tier = record.tier
        has_subscription = tier is not None
        tier_limits = catalog.limits(tier) if has_subscription else {}
        usage = {
            resource: summarize_usage(record.used(resource), tier_limits.get(resource, UNLIMITED))
            for resource in Resource
        }
        features = (
            [f for f in FeatureKey if catalog.has_feature(tier, f)] if has_subscription else []
        )
        is_active = record.status == SubscriptionStatus.ACTIVE

        return SubscriptionStatusView(
            subscription_enabled=self.enforcement_enabled,
            has_subscription=has_subscription,
            tier=tier,
            billing_period=record.billing_period,
            status=record.status,
            usage=usage,
            features=features,
            current_period_start=record.current_period_start,
            current_period_end=record.current_period_end,
            cancelled_at=record.cancelled_at,
            cancellation_effective_at=record.cancellation_effective_at,
            scheduled_tier_change=record.scheduled_tier_change,
            scheduled_billing_period_change=record.scheduled_billing_period_change,
            is_cancelled=record.status == SubscriptionStatus.CANCELLED or record.cancelled_at is not None,
            is_past_due=record.status == SubscriptionStatus.PAST_DUE,
            is_expired=record.status == SubscriptionStatus.EXPIRED,
            can_upgrade=has_subscription and tier != catalog.highest_tier() and is_active,
            can_downgrade=has_subscription and tier != catalog.lowest_tier() and is_active,
        )

    def _log_denied(self, user_id: str, reason: Optional[AccessReason], **fields) -> None:
        logger.warning(
            "[entitlement] DENIED",
            extra={"user_id": user_id, "reason": reason.value if reason else None, **fields},
        )
