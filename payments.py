"""Payment-order collaborator: asks the payment service for a checkout URL."""
import logging
from typing import Any, Dict, Optional

import httpx

from config import API_BASE, PAYMENT_CURRENCY, PAYMENT_ORDER_PATH
from errors import UpstreamFailure

logger = logging.getLogger(__name__)


def _checkout_url(body: Dict[str, Any]) -> Optional[str]:
    raw = body.get("raw") if isinstance(body.get("raw"), dict) else {}
    return body.get("checkoutUrl") or body.get("checkout_url") or raw.get("checkout_url")


class PaymentClient:
    """
    Thin wrapper over `POST {API_BASE}/payment/create-order`.

    Not retried: a failed order is reported to the caller as a 502 and the
    client decides whether to try again.
    """

    def __init__(self, http_client: httpx.AsyncClient, api_base: str = API_BASE, currency: str = PAYMENT_CURRENCY):
        self.http_client = http_client
        self.api_base = api_base.rstrip("/")
        self.currency = currency

    @property
    def order_url(self) -> str:
        return f"{self.api_base}{PAYMENT_ORDER_PATH}"

    async def create_order(
        self,
        amount: float,
        description: str,
        reference_id: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> str:
        """Create an order and return its checkout URL."""
        payload = {
            "amount": amount,
            "currency": self.currency,
            "description": description,
            "reference_id": reference_id,
            "metadata": metadata or {},
        }
        try:
            response = await self.http_client.post(self.order_url, json=payload)
        except httpx.HTTPError as e:
            logger.error(f"❌ Payment order request failed for '{reference_id}': {e}")
            raise UpstreamFailure() from e

        try:
            body = response.json()
        except ValueError:
            logger.error(f"❌ Payment service returned non-JSON ({response.status_code}) for '{reference_id}'.")
            raise UpstreamFailure(raw=response.text[:500])

        if response.is_error or not isinstance(body, dict) or body.get("success") is not True:
            logger.error(f"❌ Payment order rejected for '{reference_id}' ({response.status_code}): {body}")
            raise UpstreamFailure(raw=body)

        checkout_url = _checkout_url(body)
        if not checkout_url:
            logger.error(f"❌ Payment order for '{reference_id}' has no checkout URL: {body}")
            raise UpstreamFailure("Payment order did not return a checkout URL", raw=body)

        logger.info(f"✔️ Payment order created for '{reference_id}' ({amount} {self.currency}).")
        return checkout_url
