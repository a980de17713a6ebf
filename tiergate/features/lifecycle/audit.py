"""Append-only lifecycle audit trail (subscription_events)."""

import logging
from typing import List

from sqlalchemy import insert, select

from tiergate.core.database import get_db_session, subscription_events
from tiergate.features.subscriptions.mapping import event_from_row, event_to_values
from tiergate.models.lifecycle_event import LifecycleEvent

logger = logging.getLogger(__name__)

DEFAULT_EVENT_LIMIT = 50


def append_event(session, event: LifecycleEvent) -> None:
    """Insert one event inside the caller's transaction.

    Errors propagate so the state change they describe rolls back with them.
    """
    session.execute(insert(subscription_events).values(**event_to_values(event)))
    logger.info(
        "[lifecycle] %s",
        event.event_type.value,
        extra={
            "user_id": event.user_id,
            "event_type": event.event_type.value,
            "previous_tier": getattr(event.previous_tier, "value", None),
            "new_tier": getattr(event.new_tier, "value", None),
        },
    )


def list_events(user_id: str, limit: int = DEFAULT_EVENT_LIMIT) -> List[LifecycleEvent]:
    """Events for a user, newest first."""
    with get_db_session() as session:
        rows = session.execute(
            select(subscription_events)
            .where(subscription_events.c.user_id == user_id)
            .order_by(subscription_events.c.created_at.desc(), subscription_events.c.id.desc())
            .limit(limit)
        ).all()
    return [event_from_row(row) for row in rows]
