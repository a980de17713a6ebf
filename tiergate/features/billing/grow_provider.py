"""
Grow payment gateway client.

Grow takes form-encoded POSTs (not JSON) and answers with
{"status": 1, "data": {...}} on success or {"status": 0, "err": {...}}.
Our userId credential is added to every request.
"""
import hmac
import logging
import os
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional

import httpx

from tiergate.core.config import settings
from tiergate.core.errors import PaymentGatewayError
from tiergate.features.billing.provider import GrowWebhookPayload, RecurringPaymentRequest
from tiergate.features.catalog import service as catalog
from tiergate.models.subscription import BillingPeriod, SubscriptionTier

logger = logging.getLogger(__name__)

GROW_TIMEOUT_SECONDS = 15.0
# paymentNum=0 marks a recurring (unlimited installments) payment page
RECURRING_PAYMENT_NUM = "0"
DEFAULT_CURRENCY = "ILS"


def page_code_env_name(tier: SubscriptionTier, billing_period: BillingPeriod) -> str:
    return f"GROW_PAGE_CODE_{tier.value.upper()}_{billing_period.value.upper()}"


class GrowProvider:
    """Grow implementation of PaymentGateway."""

    def __init__(
        self,
        api_url: Optional[str] = None,
        user_id: Optional[str] = None,
        webhook_key: Optional[str] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        """
        Args:
            api_url: Grow API base URL (defaults to GROW_API_URL)
            user_id: Grow account userId (defaults to GROW_USER_ID)
            webhook_key: Shared webhook key (defaults to GROW_WEBHOOK_KEY)
            transport: Optional httpx transport (tests inject a MockTransport)
        """
        self.api_url = (api_url or settings.GROW_API_URL or "").rstrip("/")
        self.user_id = user_id or settings.GROW_USER_ID
        self.webhook_key = webhook_key if webhook_key is not None else settings.GROW_WEBHOOK_KEY
        self._transport = transport

    def _require_config(self) -> None:
        if not self.api_url:
            raise PaymentGatewayError("GROW_API_URL not configured")
        if not self.user_id:
            raise PaymentGatewayError("GROW_USER_ID not configured")

    def _page_code(self, tier: SubscriptionTier, billing_period: BillingPeriod) -> str:
        env_name = page_code_env_name(tier, billing_period)
        code = os.getenv(env_name)
        if not code:
            raise PaymentGatewayError(f"{env_name} not configured")
        return code

    def _post(self, endpoint: str, fields: Dict[str, str]) -> Dict[str, Any]:
        self._require_config()
        form = {**fields, "userId": self.user_id}
        try:
            with httpx.Client(timeout=GROW_TIMEOUT_SECONDS, transport=self._transport) as client:
                response = client.post(f"{self.api_url}{endpoint}", data=form)
        except httpx.HTTPError as e:
            raise PaymentGatewayError(f"Grow request to {endpoint} failed: {e}")

        if response.status_code >= 300:
            raise PaymentGatewayError(f"Grow API error: {response.status_code} {response.reason_phrase}")
        try:
            return response.json()
        except ValueError as e:
            raise PaymentGatewayError(f"Grow returned invalid JSON from {endpoint}: {e}")

    @staticmethod
    def _error_message(payload: Dict[str, Any], default: str) -> str:
        err = payload.get("err")
        if isinstance(err, dict) and err.get("message"):
            return str(err["message"])
        return default

    def create_recurring_payment(self, request: RecurringPaymentRequest) -> str:
        fields = {
            "pageCode": self._page_code(request.tier, request.billing_period),
            "sum": str(catalog.price(request.tier, request.billing_period)),
            "paymentNum": RECURRING_PAYMENT_NUM,
            "cField1": request.user_id,
            "cField2": request.tier.value,
            "cField3": request.billing_period.value,
            "notifyUrl": request.notify_url,
            "successUrl": request.success_url,
            "cancelUrl": request.cancel_url,
        }
        if request.email:
            fields["email"] = request.email
        if request.name:
            fields["fullName"] = request.name

        payload = self._post("/createPaymentProcess", fields)
        data = payload.get("data")
        if payload.get("status") == 1 and isinstance(data, dict) and data.get("url"):
            return data["url"]
        raise PaymentGatewayError(self._error_message(payload, "Unknown error creating payment"))

    def charge_token(self, amount: Decimal, description: str, user_id: str, transaction_token: str) -> Optional[str]:
        payload = self._post(
            "/chargeToken",
            {
                "transactionToken": transaction_token,
                "sum": str(amount),
                "description": description,
                "cField1": user_id,
            },
        )
        if payload.get("status") == 1:
            data = payload.get("data") or {}
            return data.get("transactionId") if isinstance(data, dict) else None
        raise PaymentGatewayError(self._error_message(payload, "Unknown error charging token"))

    def approve_transaction(self, transaction_id: str, transaction_token: str) -> None:
        payload = self._post(
            "/approveTransaction",
            {"transactionId": transaction_id, "transactionToken": transaction_token},
        )
        if payload.get("status") != 1:
            raise PaymentGatewayError(self._error_message(payload, "Unknown error approving transaction"))

    def verify_webhook(self, body: Dict[str, Any]) -> bool:
        """Constant-time check of the webhookKey field. No configured key rejects everything."""
        if not self.webhook_key:
            logger.warning("[billing] GROW_WEBHOOK_KEY not set, rejecting webhook")
            return False
        received = body.get("webhookKey")
        if not received or not isinstance(received, str):
            return False
        return hmac.compare_digest(received.encode("utf-8"), self.webhook_key.encode("utf-8"))

    def parse_webhook_payload(self, body: Dict[str, Any]) -> GrowWebhookPayload:
        tier_raw = body.get("cField2")
        period_raw = body.get("cField3")
        try:
            amount = Decimal(str(body.get("sum") or "0"))
        except InvalidOperation:
            amount = Decimal("0")

        return GrowWebhookPayload(
            transaction_id=str(body.get("transactionId") or ""),
            transaction_token=str(body.get("transactionToken") or ""),
            transaction_code=str(body.get("transactionCode") or ""),
            status=str(body.get("status") or ""),
            amount=amount,
            currency=str(body.get("currency") or DEFAULT_CURRENCY),
            user_id=str(body.get("cField1") or ""),
            tier=SubscriptionTier(tier_raw) if catalog.is_valid_tier(tier_raw) else None,
            billing_period=BillingPeriod(period_raw) if catalog.is_valid_billing_period(period_raw) else None,
            recurring_id=body.get("recurringId") or None,
            email=body.get("email") or None,
            name=body.get("fullName") or None,
            raw=dict(body),
        )
