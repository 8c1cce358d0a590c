"""
Interfaz común para procesadores de pago.

Cada procesador traduce sus estados al conjunto de PaymentStatus y trabaja
con montos en centavos.
"""
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from app.common.errors import AppError, ErrorCode
from app.modules.payments.models import PaymentStatus


class ProcessorError(AppError):
    """Error devuelto por el procesador externo."""

    def __init__(self, message: str, processor: str = "", details: Optional[Any] = None):
        super().__init__(
            message,
            code=ErrorCode.EXTERNAL_SERVICE_ERROR,
            status_code=502,
            details=details or ({"processor": processor} if processor else None)
        )
        self.processor = processor


class ProcessorNotFoundError(AppError):
    def __init__(self, message: str):
        super().__init__(message, code=ErrorCode.VALIDATION_ERROR, status_code=400)


@dataclass
class PaymentIntentResult:
    id: str
    status: PaymentStatus
    amount: int
    currency: str
    client_secret: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict)


@dataclass
class CheckoutSessionResult:
    id: str
    url: str
    payment_intent_id: Optional[str] = None


@dataclass
class RefundResult:
    id: str
    status: str
    amount: int


@dataclass
class WebhookEvent:
    id: str
    type: str
    data: Dict[str, Any]


class PaymentProcessor(ABC):
    processor_type: str = ""

    def __init__(self, credentials: Dict[str, Any], is_test_mode: bool = True):
        self.credentials = credentials
        self.is_test_mode = is_test_mode

    @abstractmethod
    def create_payment_intent(self, amount: int, currency: str,
                              metadata: Optional[Dict[str, str]] = None) -> PaymentIntentResult:
        ...

    @abstractmethod
    def create_checkout_session(self, amount: int, currency: str, description: str, success_url: str,
                                cancel_url: str, metadata: Optional[Dict[str, str]] = None) -> CheckoutSessionResult:
        ...

    @abstractmethod
    def refund(self, payment_id: str, amount: Optional[int] = None,
               reason: Optional[str] = None) -> RefundResult:
        ...

    @abstractmethod
    def construct_webhook_event(self, payload: bytes, signature: str, secret: str) -> WebhookEvent:
        ...

    @abstractmethod
    def validate_credentials(self) -> bool:
        ...
