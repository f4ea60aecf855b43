import logging
import os
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import stripe

from marketplace.services.errors import PaymentGatewayError, WebhookSignatureError

logger = logging.getLogger(__name__)


def _tolerance_from_env() -> int:
    raw = os.getenv("STRIPE_WEBHOOK_TOLERANCE", "300")
    try:
        value = int(raw)
    except ValueError:
        return 300
    return value if value > 0 else 300


@dataclass
class GatewayIntent:
    id: str
    status: str
    client_secret: str = ""
    amount: int = 0
    currency: str = ""
    metadata: Dict[str, str] = field(default_factory=dict)


@dataclass
class GatewayEvent:
    id: str
    type: str
    object_id: Optional[str] = None


def _field(obj: Any, key: str) -> Any:
    try:
        return obj[key]
    except (KeyError, TypeError):
        return None


class StripeGateway:
    """Thin wrapper over the Stripe PaymentIntent and webhook APIs.

    Every Stripe failure is logged here and surfaced as ``PaymentGatewayError``
    so callers never see library exceptions or raw gateway messages.
    """

    def __init__(
        self,
        secret_key: Optional[str] = None,
        webhook_secret: Optional[str] = None,
        tolerance: Optional[int] = None,
    ):
        self._secret_key = secret_key if secret_key is not None else os.getenv("STRIPE_SECRET_KEY", "").strip()
        self._webhook_secret = (
            webhook_secret if webhook_secret is not None else os.getenv("STRIPE_WEBHOOK_SECRET", "").strip()
        )
        self._tolerance = tolerance if tolerance is not None else _tolerance_from_env()

    def _require_key(self) -> str:
        if not self._secret_key:
            raise PaymentGatewayError("STRIPE_SECRET_KEY is not configured")
        return self._secret_key

    @staticmethod
    def _to_intent(intent: Any) -> GatewayIntent:
        return GatewayIntent(
            id=intent["id"],
            status=intent["status"],
            client_secret=intent.get("client_secret") or "",
            amount=int(intent.get("amount") or 0),
            currency=intent.get("currency") or "",
            metadata=dict(intent.get("metadata") or {}),
        )

    def create_intent(
        self,
        amount_minor_units: int,
        currency: str,
        metadata: Dict[str, str],
        description: Optional[str] = None,
    ) -> GatewayIntent:
        api_key = self._require_key()
        try:
            intent = stripe.PaymentIntent.create(
                api_key=api_key,
                amount=amount_minor_units,
                currency=currency,
                metadata=metadata,
                description=description,
                automatic_payment_methods={"enabled": True},
            )
        except stripe.StripeError as exc:
            logger.exception("Stripe PaymentIntent.create failed for job %s", metadata.get("job_id"))
            raise PaymentGatewayError("Payment intent creation failed") from exc
        return self._to_intent(intent)

    def retrieve_intent(self, intent_id: str) -> GatewayIntent:
        api_key = self._require_key()
        try:
            intent = stripe.PaymentIntent.retrieve(intent_id, api_key=api_key)
        except stripe.StripeError as exc:
            logger.exception("Stripe PaymentIntent.retrieve failed for %s", intent_id)
            raise PaymentGatewayError("Payment intent lookup failed") from exc
        return self._to_intent(intent)

    def cancel_intent(self, intent_id: str) -> GatewayIntent:
        api_key = self._require_key()
        try:
            intent = stripe.PaymentIntent.cancel(intent_id, api_key=api_key)
        except stripe.StripeError as exc:
            logger.exception("Stripe PaymentIntent.cancel failed for %s", intent_id)
            raise PaymentGatewayError("Payment intent cancellation failed") from exc
        return self._to_intent(intent)

    def verify_webhook(self, payload: bytes, signature: Optional[str]) -> GatewayEvent:
        """Check the ``Stripe-Signature`` header and return the event it signs."""
        if not self._webhook_secret:
            raise WebhookSignatureError("STRIPE_WEBHOOK_SECRET is not configured")
        if not signature:
            raise WebhookSignatureError("Missing Stripe-Signature header")
        try:
            event = stripe.Webhook.construct_event(payload, signature, self._webhook_secret, self._tolerance)
        except stripe.SignatureVerificationError as exc:
            logger.warning("Rejected webhook with invalid signature")
            raise WebhookSignatureError("Invalid webhook signature") from exc
        except ValueError as exc:
            raise WebhookSignatureError("Webhook payload is not valid JSON") from exc
        data = _field(event, "data")
        obj = _field(data, "object") if data is not None else None
        object_id = _field(obj, "id") if obj is not None else None
        return GatewayEvent(
            id=str(_field(event, "id") or ""),
            type=str(_field(event, "type") or ""),
            object_id=str(object_id) if object_id else None,
        )


stripe_gateway = StripeGateway()
