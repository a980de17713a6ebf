"""
Caller identity for the subscription API.

Authentication itself happens upstream. A gateway or auth middleware sets
request.state.user_id; tests and internal callers may send X-User-Id.
"""
import hmac
from typing import Optional

from fastapi import Header, Request

from tiergate.core.config import settings
from tiergate.core.errors import UnauthorizedError


async def get_current_user_id(
    request: Request,
    x_user_id: Optional[str] = Header(None, description="Caller user id"),
) -> str:
    """
    Resolve the calling user.

    Priority:
    1. request.state.user_id (set by upstream auth)
    2. X-User-Id header

    Raises:
        UnauthorizedError: No identity on the request
    """
    user_id = getattr(request.state, "user_id", None) or x_user_id
    if not user_id or not user_id.strip():
        raise UnauthorizedError("Missing user identity")
    return user_id.strip()


def require_cron_secret(authorization: Optional[str] = Header(None)) -> None:
    """Bearer check for scheduled jobs. An unset CRON_SECRET rejects everything."""
    expected = settings.CRON_SECRET
    if not expected or not authorization or not authorization.startswith("Bearer "):
        raise UnauthorizedError("Unauthorized")
    if not hmac.compare_digest(authorization[len("Bearer "):].encode(), expected.encode()):
        raise UnauthorizedError("Unauthorized")
