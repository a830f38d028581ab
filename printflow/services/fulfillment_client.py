# printflow/services/fulfillment_client.py
import hashlib
import hmac
import json
from dataclasses import dataclass
from typing import Any, Dict, List

from printflow.domain.errors import WebhookVerificationError
from printflow.utils.http import send
from printflow.utils.logging import get_logger
from printflow.utils.retry import http_retry
from printflow.utils.settings import (
    FULFILLMENT_API_KEY,
    FULFILLMENT_API_URL,
    FULFILLMENT_TIMEOUT_SECONDS,
    FULFILLMENT_WEBHOOK_SECRET,
)

logger = get_logger(__name__)


@dataclass
class FulfillmentReport:
    status: str
    tracking_code: str | None = None
    tracking_url: str | None = None


class FulfillmentClient:
    """
    Print fulfillment partner.

    ``submit_order`` is never retried here: a timeout is an ambiguous outcome
    and the reconciliation engine reads back by idempotency key before it
    submits again. Reads are safe to retry.
    """

    def __init__(
        self,
        base_url: str | None = None,
        api_key: str | None = None,
        timeout: float = FULFILLMENT_TIMEOUT_SECONDS,
        webhook_secret: str | None = None,
    ):
        self.base_url = (base_url or FULFILLMENT_API_URL).rstrip("/")
        self.api_key = api_key if api_key is not None else FULFILLMENT_API_KEY
        self.timeout = timeout
        self.webhook_secret = webhook_secret if webhook_secret is not None else FULFILLMENT_WEBHOOK_SECRET

    def _headers(self) -> dict:
        return {"Authorization": f"Bearer {self.api_key}"}

    def submit_order(
        self,
        idempotency_key: str,
        items: List[Dict[str, Any]],
        shipping_address: Dict[str, Any],
    ) -> str:
        url = f"{self.base_url}/orders"
        logger.info(f"FulfillmentClient POST {url} key={idempotency_key}")
        resp = send(
            "POST",
            url,
            timeout=self.timeout,
            headers={**self._headers(), "Idempotency-Key": idempotency_key},
            json={
                "external_id": idempotency_key,
                "items": items,
                "recipient": shipping_address,
            },
        )
        return str(resp.json()["id"])

    @http_retry()
    def find_order(self, idempotency_key: str) -> str | None:
        """Read-back: provider order created for our idempotency key, if any."""
        url = f"{self.base_url}/orders/external/{idempotency_key}"
        resp = send("GET", url, timeout=self.timeout, headers=self._headers(), allow_status=(404,))
        if resp.status_code == 404:
            return None
        return str(resp.json()["id"])

    @http_retry()
    def get_order_status(self, provider_order_ref: str) -> FulfillmentReport:
        url = f"{self.base_url}/orders/{provider_order_ref}"
        resp = send("GET", url, timeout=self.timeout, headers=self._headers())
        data = resp.json()
        return FulfillmentReport(
            status=data["status"],
            tracking_code=data.get("tracking_code"),
            tracking_url=data.get("tracking_url"),
        )

    def verify_webhook(self, payload: bytes, signature: str | None) -> Dict[str, Any]:
        """Checks the ``sha256=<hex>`` HMAC of the raw body and returns the parsed event."""
        if not self.webhook_secret:
            raise WebhookVerificationError("Fulfillment webhook secret is not configured")
        expected = hmac.new(self.webhook_secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()
        if not signature or not hmac.compare_digest(f"sha256={expected}", signature):
            raise WebhookVerificationError()
        try:
            return json.loads(payload)
        except ValueError:
            raise WebhookVerificationError("Invalid payload")
