from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import update

from tiergate.core.database import get_db_session, user_subscriptions
from tiergate.features.billing.provider import GrowWebhookPayload, InvoiceDocument, RecurringPaymentRequest
from tiergate.features.billing.grow_provider import GrowProvider

NOW = datetime(2026, 3, 15, 12, 0, tzinfo=timezone.utc)
WEBHOOK_KEY = "test-webhook-key"


def force_columns(user_id: str, **values) -> None:
    """Put a row into a state the public transitions can't reach directly."""
    with get_db_session() as session:
        session.execute(
            update(user_subscriptions).where(user_subscriptions.c.user_id == user_id).values(**values)
        )


def grow_body(user_id: str, tier: str = "accelerate", period: str = "monthly", **overrides) -> Dict[str, Any]:
    body = {
        "webhookKey": WEBHOOK_KEY,
        "transactionId": "tx-1",
        "transactionToken": "tok-1",
        "transactionCode": "code-1",
        "status": "1",
        "sum": "18",
        "cField1": user_id,
        "cField2": tier,
        "cField3": period,
        "email": "user@example.com",
        "fullName": "Test User",
    }
    body.update(overrides)
    return body


class FakeGateway:
    """PaymentGateway double. Real webhook parsing, recorded calls, no network."""

    def __init__(self, charge_error: Optional[Exception] = None, approve_error: Optional[Exception] = None):
        self._parser = GrowProvider(api_url="https://grow.test", user_id="grow-user", webhook_key=WEBHOOK_KEY)
        self.charge_error = charge_error
        self.approve_error = approve_error
        self.checkouts: List[RecurringPaymentRequest] = []
        self.charges: List[Tuple[Decimal, str, str, str]] = []
        self.approvals: List[Tuple[str, str]] = []

    def create_recurring_payment(self, request: RecurringPaymentRequest) -> str:
        self.checkouts.append(request)
        return "https://pay.grow.test/page/abc"

    def charge_token(self, amount: Decimal, description: str, user_id: str, transaction_token: str) -> Optional[str]:
        if self.charge_error:
            raise self.charge_error
        self.charges.append((amount, description, user_id, transaction_token))
        return "charge-1"

    def approve_transaction(self, transaction_id: str, transaction_token: str) -> None:
        if self.approve_error:
            raise self.approve_error
        self.approvals.append((transaction_id, transaction_token))

    def verify_webhook(self, body: Dict[str, Any]) -> bool:
        return self._parser.verify_webhook(body)

    def parse_webhook_payload(self, body: Dict[str, Any]) -> GrowWebhookPayload:
        return self._parser.parse_webhook_payload(body)


class FakeInvoicer:
    def __init__(self, error: Optional[Exception] = None):
        self.error = error
        self.customers: List[Tuple[str, str]] = []
        self.invoices: List[Tuple[str, str, Decimal]] = []

    def create_or_find_customer(self, name: str, email: str) -> Tuple[str, bool]:
        if self.error:
            raise self.error
        self.customers.append((name, email))
        return "cust-1", True

    def create_invoice(self, customer_id: str, description: str, amount: Decimal) -> InvoiceDocument:
        self.invoices.append((customer_id, description, amount))
        return InvoiceDocument(document_id="doc-1", document_url="https://morning.test/doc-1")
