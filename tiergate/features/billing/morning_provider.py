"""
Morning invoicing client.

JSON API behind a bearer token from /account/token. Tokens live about an
hour; we cache them in-process for 50 minutes. All amounts are USD.
"""
import logging
import time
from datetime import date
from decimal import Decimal
from typing import Any, Dict, Optional, Tuple

import httpx

from tiergate.core.config import settings
from tiergate.core.errors import InvoicingError
from tiergate.features.billing.provider import InvoiceDocument

logger = logging.getLogger(__name__)

MORNING_TIMEOUT_SECONDS = 15.0
TOKEN_TTL_SECONDS = 50 * 60

# Document type
TAX_INVOICE_RECEIPT = 305

CATALOG_NUMBER = "SUB-001"
PAYMENT_TYPE_CREDIT_CARD = 3
VAT_EXEMPT = 0

_token_cache: Dict[str, Any] = {}


def clear_token_cache() -> None:
    _token_cache.clear()


class MorningProvider:
    """Morning implementation of InvoicingProvider."""

    def __init__(
        self,
        api_url: Optional[str] = None,
        api_key: Optional[str] = None,
        api_secret: Optional[str] = None,
        transport: Optional[httpx.BaseTransport] = None,
        clock=time.monotonic,
    ):
        self.api_url = (api_url or settings.MORNING_API_URL or "").rstrip("/")
        self.api_key = api_key or settings.MORNING_API_KEY
        self.api_secret = api_secret or settings.MORNING_API_SECRET
        self._transport = transport
        self._clock = clock

    def _require_config(self) -> None:
        for name, value in (
            ("MORNING_API_URL", self.api_url),
            ("MORNING_API_KEY", self.api_key),
            ("MORNING_API_SECRET", self.api_secret),
        ):
            if not value:
                raise InvoicingError(f"{name} not configured")

    def _client(self) -> httpx.Client:
        return httpx.Client(timeout=MORNING_TIMEOUT_SECONDS, transport=self._transport)

    def authenticate(self) -> str:
        """Return a bearer token, reusing the cached one while it is fresh."""
        cached = _token_cache.get("token")
        if cached and self._clock() < _token_cache.get("expires_at", 0):
            return cached

        self._require_config()
        try:
            with self._client() as client:
                response = client.post(
                    f"{self.api_url}/account/token",
                    json={"id": self.api_key, "secret": self.api_secret},
                )
        except httpx.HTTPError as e:
            raise InvoicingError(f"Morning auth request failed: {e}")

        if response.status_code >= 300:
            raise InvoicingError(f"Morning auth error: {response.status_code} {response.reason_phrase}")
        token = response.json().get("token")
        if not token:
            raise InvoicingError("Morning auth response missing token")

        _token_cache["token"] = token
        _token_cache["expires_at"] = self._clock() + TOKEN_TTL_SECONDS
        return token

    def _call(self, endpoint: str, body: Dict[str, Any]) -> Dict[str, Any]:
        token = self.authenticate()
        try:
            with self._client() as client:
                response = client.post(
                    f"{self.api_url}{endpoint}",
                    json=body,
                    headers={"Authorization": f"Bearer {token}"},
                )
        except httpx.HTTPError as e:
            raise InvoicingError(f"Morning request to {endpoint} failed: {e}")

        if response.status_code >= 300:
            raise InvoicingError(
                f"Morning API error: {response.status_code} {response.reason_phrase} - {response.text}"
            )
        return response.json()

    def create_or_find_customer(self, name: str, email: str) -> Tuple[str, bool]:
        """Find a client by email, creating one if none exists. Returns (customer_id, is_new)."""
        found = self._call("/clients/search", {"email": email})
        items = found.get("items") or []
        if items:
            return str(items[0]["id"]), False

        created = self._call("/clients", {"name": name, "emails": [email], "active": True})
        return str(created["id"]), True

    def _create_document(self, document_type: int, customer_id: str, description: str, amount: Decimal) -> InvoiceDocument:
        price = float(amount)
        result = self._call(
            "/documents",
            {
                "type": document_type,
                "client": {"id": customer_id},
                "currency": "USD",
                "lang": "en",
                "income": [
                    {
                        "catalogNum": CATALOG_NUMBER,
                        "description": description,
                        "quantity": 1,
                        "price": price,
                        "currency": "USD",
                        "vatType": VAT_EXEMPT,
                    }
                ],
                "payment": [
                    {
                        "type": PAYMENT_TYPE_CREDIT_CARD,
                        "date": date.today().isoformat(),
                        "price": price,
                        "currency": "USD",
                    }
                ],
            },
        )
        return InvoiceDocument(document_id=str(result["id"]), document_url=result.get("url", ""))

    def create_invoice(self, customer_id: str, description: str, amount: Decimal) -> InvoiceDocument:
        """Tax invoice receipt for a subscription payment."""
        return self._create_document(TAX_INVOICE_RECEIPT, customer_id, description, amount)
