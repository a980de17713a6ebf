"""
Billing provider contracts.

Defines the interfaces for the payment gateway and the invoicing service so
the webhook and plan-change flows can be exercised against fakes.
"""
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, Optional, Protocol, Tuple

from tiergate.models.subscription import BillingPeriod, SubscriptionTier

# Statuses that mean the payment settled: Grow's numeric "1" and its textual forms
PAYMENT_SUCCESS_STATUSES = frozenset({"1", "success", "approved"})


@dataclass(frozen=True)
class GrowWebhookPayload:
    """A payment notification from Grow, with our custom fields decoded.

    cField1..3 carry the user id, tier and billing period we set when the
    payment page was created. tier/billing_period are None when missing or
    not a known value; the caller decides how to reject that.
    """
    transaction_id: str
    transaction_token: str
    transaction_code: str
    status: str
    amount: Decimal
    currency: str
    user_id: str
    tier: Optional[SubscriptionTier]
    billing_period: Optional[BillingPeriod]
    recurring_id: Optional[str] = None
    email: Optional[str] = None
    name: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        return self.status.strip().lower() in PAYMENT_SUCCESS_STATUSES


@dataclass(frozen=True)
class RecurringPaymentRequest:
    tier: SubscriptionTier
    billing_period: BillingPeriod
    user_id: str
    notify_url: str
    success_url: str
    cancel_url: str
    email: Optional[str] = None
    name: Optional[str] = None


@dataclass(frozen=True)
class InvoiceDocument:
    document_id: str
    document_url: str


class PaymentGateway(Protocol):
    """
    Protocol for the payment gateway.

    Implementations must handle:
    - Hosted recurring payment page creation
    - One-time charges against a stored card token
    - Transaction approval after a webhook
    - Webhook verification and parsing
    """

    def create_recurring_payment(self, request: RecurringPaymentRequest) -> str:
        """
        Returns:
            Hosted payment page URL to redirect the user to

        Raises:
            PaymentGatewayError: If the gateway rejects the request
        """
        ...

    def charge_token(self, amount: Decimal, description: str, user_id: str, transaction_token: str) -> Optional[str]:
        """
        Returns:
            Gateway transaction id, if the gateway reports one

        Raises:
            PaymentGatewayError: If the charge fails
        """
        ...

    def approve_transaction(self, transaction_id: str, transaction_token: str) -> None:
        """
        Raises:
            PaymentGatewayError: If approval fails
        """
        ...

    def verify_webhook(self, body: Dict[str, Any]) -> bool:
        ...

    def parse_webhook_payload(self, body: Dict[str, Any]) -> GrowWebhookPayload:
        ...


class InvoicingProvider(Protocol):
    """Protocol for the invoicing service."""

    def create_or_find_customer(self, name: str, email: str) -> Tuple[str, bool]:
        """
        Returns:
            (customer_id, is_new)

        Raises:
            InvoicingError: If the service rejects the request
        """
        ...

    def create_invoice(self, customer_id: str, description: str, amount: Decimal) -> InvoiceDocument:
        """
        Raises:
            InvoicingError: If the invoice cannot be created
        """
        ...
