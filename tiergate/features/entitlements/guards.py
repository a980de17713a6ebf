"""
tiergate/features/entitlements/guards.py

Ordered access guards shared by feature and usage checks.

Each guard looks at the subscription record and returns None to continue, or
a terminal GuardOutcome. The kill switch guard is a terminal allow; the rest
are terminal denials. Order matters and is fixed by GUARDS.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Callable, List, Optional, Tuple

from tiergate.core.dates import calendar_days_between
from tiergate.models.subscription import SubscriptionRecord, SubscriptionStatus


class AccessReason(str, Enum):
    NO_SUBSCRIPTION = "NO_SUBSCRIPTION"
    SUBSCRIPTION_EXPIRED = "SUBSCRIPTION_EXPIRED"
    PAST_DUE_GRACE_EXCEEDED = "PAST_DUE_GRACE_EXCEEDED"
    FEATURE_NOT_INCLUDED = "FEATURE_NOT_INCLUDED"
    LIMIT_EXCEEDED = "LIMIT_EXCEEDED"


@dataclass(frozen=True)
class GuardContext:
    enforcement_enabled: bool
    grace_period_days: int
    now: datetime


@dataclass(frozen=True)
class GuardOutcome:
    allowed: bool
    enforced: bool
    reason: Optional[AccessReason] = None


Guard = Callable[[Optional[SubscriptionRecord], GuardContext], Optional[GuardOutcome]]


def _deny(reason: AccessReason) -> GuardOutcome:
    return GuardOutcome(allowed=False, enforced=True, reason=reason)


def kill_switch_guard(record: Optional[SubscriptionRecord], ctx: GuardContext) -> Optional[GuardOutcome]:
    if not ctx.enforcement_enabled:
        return GuardOutcome(allowed=True, enforced=False)
    return None


def no_subscription_guard(record: Optional[SubscriptionRecord], ctx: GuardContext) -> Optional[GuardOutcome]:
    if record is None or record.tier is None:
        return _deny(AccessReason.NO_SUBSCRIPTION)
    return None


def expired_guard(record: Optional[SubscriptionRecord], ctx: GuardContext) -> Optional[GuardOutcome]:
    if record.status == SubscriptionStatus.EXPIRED:
        return _deny(AccessReason.SUBSCRIPTION_EXPIRED)
    return None


def grace_exceeded(record: SubscriptionRecord, grace_period_days: int, now: datetime) -> bool:
    """True once a past_due subscription is more than the grace window past its period end.

    Counted in calendar days, so the grace window always ends at a UTC day boundary.
    """
    if record.status != SubscriptionStatus.PAST_DUE or record.current_period_end is None:
        return False
    return calendar_days_between(now, record.current_period_end) > grace_period_days


def grace_exceeded_guard(record: Optional[SubscriptionRecord], ctx: GuardContext) -> Optional[GuardOutcome]:
    if grace_exceeded(record, ctx.grace_period_days, ctx.now):
        return _deny(AccessReason.PAST_DUE_GRACE_EXCEEDED)
    return None


# No guard for cancelled: access continues until the sweep expires it
GUARDS: List[Tuple[str, Guard]] = [
    ("kill_switch", kill_switch_guard),
    ("no_subscription", no_subscription_guard),
    ("expired", expired_guard),
    ("grace_exceeded", grace_exceeded_guard),
]


def run_guards(
    record: Optional[SubscriptionRecord],
    ctx: GuardContext,
    guards: Optional[List[Tuple[str, Guard]]] = None,
) -> Tuple[Optional[str], Optional[GuardOutcome]]:
    """Run guards in order; return (guard_name, outcome) of the first terminal one."""
    for name, guard in guards if guards is not None else GUARDS:
        outcome = guard(record, ctx)
        if outcome is not None:
            return name, outcome
    return None, None
