"""
Payment gateway webhooks.

POST /api/webhooks/grow is always active, kill switch or not: a confirmed
payment must never be dropped. No user auth; the webhook key is the check.
"""
import json
import logging
from typing import Any, Dict

from fastapi import APIRouter, Request

from tiergate.core.errors import ValidationError
from tiergate.features.billing.service import process_grow_webhook

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])


async def parse_request_body(request: Request) -> Dict[str, Any]:
    """Grow posts form-encoded by default; JSON is accepted too."""
    content_type = request.headers.get("content-type", "")
    if content_type.startswith("application/json"):
        try:
            body = await request.json()
        except json.JSONDecodeError:
            raise ValidationError("Malformed JSON body")
        if not isinstance(body, dict):
            raise ValidationError("Webhook body must be an object")
        return body

    form = await request.form()
    return {key: value for key, value in form.items() if isinstance(value, str)}


@router.post("/grow")
async def grow_webhook(request: Request):
    """
    Errors:
        401: Invalid webhook key
        400: Missing userId, tier or billingPeriod
        502: Transaction approval failed
    """
    body = await parse_request_body(request)
    outcome = process_grow_webhook(body)
    return {
        "success": True,
        "action": outcome.action,
        "invoice_created": outcome.invoice_created,
    }
