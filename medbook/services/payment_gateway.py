"""
Payment collaborator.

The booking core only needs hold/capture/cancel/refund and webhook parsing;
``StripePaymentGateway`` maps those onto manual-capture PaymentIntents.
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import stripe

logger = logging.getLogger(__name__)


class PaymentGatewayError(Exception):
    """Raised when the payment provider rejects or fails a request."""


@dataclass
class PaymentHold:
    reference_id: str
    client_secret: Optional[str] = None


@dataclass
class PaymentEvent:
    type: str
    reference_id: Optional[str]
    data: Dict[str, Any] = field(default_factory=dict)


class PaymentGateway:
    """Interface the booking core depends on."""

    def authorize_hold(self, amount: float, metadata: Dict[str, str]) -> PaymentHold:
        raise NotImplementedError

    def capture(self, reference_id: str) -> None:
        raise NotImplementedError

    def cancel_hold(self, reference_id: str) -> None:
        raise NotImplementedError

    def refund(self, reference_id: str, amount: Optional[float] = None) -> None:
        raise NotImplementedError

    def parse_webhook(self, payload: bytes, signature: Optional[str]) -> PaymentEvent:
        raise NotImplementedError


def to_cents(amount: float) -> int:
    return int(round(float(amount) * 100))


class StripePaymentGateway(PaymentGateway):
    def __init__(self, api_key: Optional[str], webhook_secret: Optional[str] = None, currency: str = "usd"):
        self.api_key = api_key
        self.webhook_secret = webhook_secret
        self.currency = currency

    def authorize_hold(self, amount: float, metadata: Dict[str, str]) -> PaymentHold:
        try:
            intent = stripe.PaymentIntent.create(
                amount=to_cents(amount),
                currency=self.currency,
                capture_method="manual",
                metadata=metadata,
                api_key=self.api_key,
            )
        except stripe.StripeError as e:
            logger.error(f"Stripe hold for {amount} {self.currency} failed: {e}")
            raise PaymentGatewayError(str(e)) from e

        logger.info(f"Stripe hold {intent.id} created for {amount} {self.currency}")
        return PaymentHold(reference_id=intent.id, client_secret=intent.client_secret)

    def capture(self, reference_id: str) -> None:
        self._call("capture", stripe.PaymentIntent.capture, reference_id)

    def cancel_hold(self, reference_id: str) -> None:
        self._call("cancel", stripe.PaymentIntent.cancel, reference_id)

    def refund(self, reference_id: str, amount: Optional[float] = None) -> None:
        params = {"payment_intent": reference_id, "api_key": self.api_key}
        if amount is not None:
            params["amount"] = to_cents(amount)
        try:
            stripe.Refund.create(**params)
        except stripe.StripeError as e:
            logger.error(f"Stripe refund for {reference_id} failed: {e}")
            raise PaymentGatewayError(str(e)) from e

    def parse_webhook(self, payload: bytes, signature: Optional[str]) -> PaymentEvent:
        try:
            event = stripe.Webhook.construct_event(payload, signature, self.webhook_secret)
        except (ValueError, stripe.SignatureVerificationError) as e:
            logger.warning(f"Webhook signature verification failed: {e}")
            raise PaymentGatewayError(str(e)) from e

        obj = event["data"]["object"]
        if event["type"] == "charge.refunded":
            reference_id = obj.get("payment_intent")
        else:
            reference_id = obj.get("id")
        return PaymentEvent(type=event["type"], reference_id=reference_id, data=dict(obj))

    def _call(self, action: str, method, reference_id: str) -> None:
        try:
            method(reference_id, api_key=self.api_key)
        except stripe.StripeError as e:
            logger.error(f"Stripe {action} for {reference_id} failed: {e}")
            raise PaymentGatewayError(str(e)) from e
        logger.info(f"Stripe {action} succeeded for {reference_id}")
