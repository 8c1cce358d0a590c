import json
import logging
from typing import Any, Dict, Optional

import stripe

from app.modules.payments.models import PaymentStatus, ProcessorType
from app.modules.payments.processors.base import (
    PaymentProcessor, PaymentIntentResult, CheckoutSessionResult, RefundResult,
    WebhookEvent, ProcessorError
)

logger = logging.getLogger(__name__)

STRIPE_STATUS_MAP = {
    "requires_payment_method": PaymentStatus.PENDING,
    "requires_confirmation": PaymentStatus.PENDING,
    "requires_action": PaymentStatus.PENDING,
    "processing": PaymentStatus.PROCESSING,
    "requires_capture": PaymentStatus.PROCESSING,
    "succeeded": PaymentStatus.SUCCEEDED,
    "canceled": PaymentStatus.CANCELED,
}


def map_stripe_status(status: Optional[str]) -> PaymentStatus:
    return STRIPE_STATUS_MAP.get(status or "", PaymentStatus.PENDING)


class StripeProcessor(PaymentProcessor):
    """
    Stripe vía SDK oficial. La llave secreta se pasa en cada llamada
    (api_key=...) para soportar credenciales por organización.
    """
    processor_type = ProcessorType.STRIPE.value

    def __init__(self, credentials: Dict[str, Any], is_test_mode: bool = True):
        super().__init__(credentials, is_test_mode)
        self.secret_key = credentials.get("secret_key")

    @property
    def api_key(self) -> str:
        if not self.secret_key:
            raise ProcessorError("Stripe secret key is not configured", processor=self.processor_type)
        return self.secret_key

    def create_payment_intent(self, amount: int, currency: str,
                              metadata: Optional[Dict[str, str]] = None) -> PaymentIntentResult:
        try:
            intent = stripe.PaymentIntent.create(
                amount=amount,
                currency=currency.lower(),
                metadata=metadata or {},
                automatic_payment_methods={"enabled": True},
                api_key=self.api_key
            )
        except stripe.StripeError as e:
            logger.error(f"Stripe payment intent creation failed: {e}")
            raise ProcessorError(f"Stripe error: {e.user_message or str(e)}", processor=self.processor_type)

        return PaymentIntentResult(
            id=intent["id"],
            status=map_stripe_status(intent["status"]),
            amount=intent["amount"],
            currency=intent["currency"],
            client_secret=intent.get("client_secret")
        )

    def create_checkout_session(self, amount: int, currency: str, description: str, success_url: str,
                                cancel_url: str, metadata: Optional[Dict[str, str]] = None) -> CheckoutSessionResult:
        try:
            session = stripe.checkout.Session.create(
                mode="payment",
                line_items=[{
                    "price_data": {
                        "currency": currency.lower(),
                        "unit_amount": amount,
                        "product_data": {"name": description},
                    },
                    "quantity": 1,
                }],
                success_url=success_url,
                cancel_url=cancel_url,
                metadata=metadata or {},
                payment_intent_data={"metadata": metadata or {}},
                api_key=self.api_key
            )
        except stripe.StripeError as e:
            logger.error(f"Stripe checkout session creation failed: {e}")
            raise ProcessorError(f"Stripe error: {e.user_message or str(e)}", processor=self.processor_type)

        return CheckoutSessionResult(
            id=session["id"],
            url=session["url"],
            payment_intent_id=session.get("payment_intent")
        )

    def refund(self, payment_id: str, amount: Optional[int] = None,
               reason: Optional[str] = None) -> RefundResult:
        params: Dict[str, Any] = {"payment_intent": payment_id}
        if amount is not None:
            params["amount"] = amount
        if reason:
            params["metadata"] = {"reason": reason}
        try:
            refund = stripe.Refund.create(api_key=self.api_key, **params)
        except stripe.StripeError as e:
            logger.error(f"Stripe refund failed for {payment_id}: {e}")
            raise ProcessorError(f"Stripe error: {e.user_message or str(e)}", processor=self.processor_type)

        return RefundResult(id=refund["id"], status=refund["status"], amount=refund["amount"])

    def construct_webhook_event(self, payload: bytes, signature: str, secret: str) -> WebhookEvent:
        try:
            stripe.Webhook.construct_event(payload, signature, secret)
        except (ValueError, stripe.SignatureVerificationError) as e:
            raise ProcessorError(f"Invalid webhook signature: {e}", processor=self.processor_type)

        event = json.loads(payload)
        return WebhookEvent(id=event["id"], type=event["type"], data=event.get("data", {}).get("object", {}))

    def validate_credentials(self) -> bool:
        try:
            stripe.Account.retrieve(api_key=self.api_key)
            return True
        except stripe.AuthenticationError:
            return False
        except stripe.StripeError as e:
            raise ProcessorError(f"Stripe error: {e.user_message or str(e)}", processor=self.processor_type)
