"""Row helpers for user_subscriptions shared by the services."""

from typing import Any, Optional

from sqlalchemy import select, update

from tiergate.core.database import get_db_session, user_subscriptions
from tiergate.features.subscriptions.mapping import record_from_row
from tiergate.models.subscription import SubscriptionRecord


def get_subscription_row(session, user_id: str) -> Optional[Any]:
    return session.execute(
        select(user_subscriptions).where(user_subscriptions.c.user_id == user_id)
    ).first()


def get_subscription(user_id: str) -> Optional[SubscriptionRecord]:
    """Domain record for a user, or None if they have never been seen."""
    with get_db_session() as session:
        row = get_subscription_row(session, user_id)
        return record_from_row(row) if row else None


def set_morning_customer_id(user_id: str, customer_id: str) -> None:
    """Remember the invoicing customer for a user. Not a lifecycle change, so no event."""
    with get_db_session() as session:
        session.execute(
            update(user_subscriptions)
            .where(user_subscriptions.c.user_id == user_id)
            .values(morning_customer_id=customer_id)
        )
