"""Scheduled job endpoints. Bearer CRON_SECRET required."""
from fastapi import APIRouter, Depends

from tiergate.core.auth import require_cron_secret
from tiergate.workers.process_expirations import process_subscriptions

router = APIRouter(prefix="/api/cron", tags=["cron"])


@router.post("/process-subscriptions", dependencies=[Depends(require_cron_secret)])
def process_subscriptions_job():
    """Daily: expire cancelled and past-grace subscriptions, then reconcile last month's snapshots."""
    return process_subscriptions()
