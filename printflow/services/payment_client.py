# printflow/services/payment_client.py
import json
from dataclasses import dataclass
from typing import Any, Dict

import stripe

from printflow.domain.errors import (
    PermanentProviderError,
    TransientProviderError,
    WebhookVerificationError,
)
from printflow.utils.logging import get_logger
from printflow.utils.settings import (
    PAYMENT_TIMEOUT_SECONDS,
    STRIPE_SECRET_KEY,
    STRIPE_WEBHOOK_SECRET,
)

logger = get_logger(__name__)


@dataclass
class PaymentIntent:
    payment_ref: str
    client_secret: str


@dataclass
class PaymentEvent:
    """Verified payment callback reduced to what the pipeline needs."""

    type: str
    payment_ref: str | None
    failure_code: str | None = None
    amount_minor: int | None = None
    amount_refunded_minor: int | None = None


class PaymentClient:
    def __init__(
        self,
        api_key: str | None = None,
        webhook_secret: str | None = None,
        timeout: float = PAYMENT_TIMEOUT_SECONDS,
    ):
        self.api_key = api_key or STRIPE_SECRET_KEY
        self.webhook_secret = webhook_secret or STRIPE_WEBHOOK_SECRET
        stripe.max_network_retries = 2
        stripe.default_http_client = stripe.RequestsClient(timeout=timeout)

    def create_payment_intent(
        self,
        amount_minor: int,
        currency: str,
        idempotency_key: str,
        metadata: Dict[str, str],
    ) -> PaymentIntent:
        try:
            intent = stripe.PaymentIntent.create(
                api_key=self.api_key,
                amount=amount_minor,
                currency=currency,
                automatic_payment_methods={"enabled": True},
                metadata=metadata,
                idempotency_key=idempotency_key,
            )
        except (stripe.APIConnectionError, stripe.RateLimitError) as e:
            logger.warning(f"Stripe unavailable creating intent {idempotency_key}: {e}")
            raise TransientProviderError()
        except stripe.StripeError as e:
            logger.error(f"Stripe rejected intent {idempotency_key}: {e}")
            raise PermanentProviderError(getattr(e, "code", None) or "payment_rejected")

        logger.info(f"Created payment intent {intent.id} for checkout {idempotency_key}")
        return PaymentIntent(payment_ref=intent.id, client_secret=intent.client_secret)

    def verify_webhook(self, payload: bytes, signature: str | None) -> PaymentEvent:
        if not self.webhook_secret:
            raise WebhookVerificationError("Payment webhook secret is not configured")
        try:
            stripe.Webhook.construct_event(
                payload=payload, sig_header=signature, secret=self.webhook_secret
            )
        except ValueError:
            raise WebhookVerificationError("Invalid payload")
        except stripe.SignatureVerificationError:
            raise WebhookVerificationError()

        # signature is checked, work on the plain json body
        return self.to_payment_event(json.loads(payload))

    @staticmethod
    def to_payment_event(event: Dict[str, Any]) -> PaymentEvent:
        obj = event["data"]["object"]
        if event["type"].startswith("charge."):
            return PaymentEvent(
                type=event["type"],
                payment_ref=obj.get("payment_intent"),
                amount_minor=obj.get("amount"),
                amount_refunded_minor=obj.get("amount_refunded"),
            )

        failure = obj.get("last_payment_error") or {}
        return PaymentEvent(
            type=event["type"],
            payment_ref=obj.get("id"),
            failure_code=failure.get("code") or failure.get("decline_code"),
            amount_minor=obj.get("amount"),
        )
