from .base import (
    PaymentProcessor, PaymentIntentResult, CheckoutSessionResult, RefundResult,
    WebhookEvent, ProcessorError, ProcessorNotFoundError
)
from .factory import ProcessorFactory

__all__ = [
    "PaymentProcessor", "PaymentIntentResult", "CheckoutSessionResult", "RefundResult",
    "WebhookEvent", "ProcessorError", "ProcessorNotFoundError", "ProcessorFactory"
]
