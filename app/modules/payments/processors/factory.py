from typing import Any, Dict, Type, Union

from app.modules.payments.models import ProcessorType
from app.modules.payments.processors.base import PaymentProcessor, ProcessorNotFoundError
from app.modules.payments.processors.stripe_processor import StripeProcessor

# Tipos reconocidos que aún no tienen implementación
PLANNED_PROCESSORS = (ProcessorType.SQUARE, ProcessorType.PAYPAL, ProcessorType.AUTHORIZE_NET)


class ProcessorFactory:
    _processors: Dict[ProcessorType, Type[PaymentProcessor]] = {
        ProcessorType.STRIPE: StripeProcessor,
    }

    @classmethod
    def create(cls, processor_type: Union[ProcessorType, str], credentials: Dict[str, Any],
               is_test_mode: bool = True) -> PaymentProcessor:
        try:
            processor_type = ProcessorType(processor_type)
        except ValueError:
            raise ProcessorNotFoundError(f"Unsupported payment processor: {processor_type}")

        if processor_type in PLANNED_PROCESSORS:
            raise ProcessorNotFoundError(f"Payment processor '{processor_type.value}' is not yet implemented")

        processor_class = cls._processors.get(processor_type)
        if processor_class is None:
            raise ProcessorNotFoundError(f"Unsupported payment processor: {processor_type.value}")
        return processor_class(credentials, is_test_mode)

    @classmethod
    def supported_processors(cls) -> list:
        return [p.value for p in cls._processors]
