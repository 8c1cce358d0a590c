import logging
from typing import List, Optional
from uuid import UUID
from sqlalchemy.orm import Session

from app.modules.payments.models import MerchantProcessor, ProcessorType
from app.modules.payments.schemas import MerchantProcessorCreate, MerchantProcessorUpdate
from app.modules.payments.encryption import encrypt_credentials, decrypt_credentials
from app.modules.payments.processors import ProcessorFactory, PaymentProcessor
from app.core.config import settings
from app.common.errors import AppError, NotFoundError, ValidationError, ConflictError, DatabaseError

logger = logging.getLogger(__name__)


class MerchantProcessorService:
    """
    Configuración de procesadores por organización. Las credenciales se
    guardan cifradas y nunca se devuelven en las respuestas.
    """

    def __init__(self, db: Session):
        self.db = db

    def list_processors(self, organization_id: UUID) -> List[MerchantProcessor]:
        return self.db.query(MerchantProcessor).filter(
            MerchantProcessor.organization_id == organization_id
        ).order_by(MerchantProcessor.created_at).all()

    def get_processor_config(self, processor_id: UUID, organization_id: UUID) -> MerchantProcessor:
        config = self.db.query(MerchantProcessor).filter(
            MerchantProcessor.id == processor_id,
            MerchantProcessor.organization_id == organization_id
        ).first()
        if not config:
            raise NotFoundError("Merchant processor")
        return config

    def add_processor(self, data: MerchantProcessorCreate, organization_id: UUID) -> MerchantProcessor:
        existing = self.db.query(MerchantProcessor).filter(
            MerchantProcessor.organization_id == organization_id,
            MerchantProcessor.processor_type == data.processor_type,
            MerchantProcessor.is_test_mode == data.is_test_mode
        ).first()
        if existing:
            mode = "test" if data.is_test_mode else "live"
            raise ConflictError(f"A {data.processor_type.value} processor is already configured for {mode} mode")

        processor = ProcessorFactory.create(data.processor_type, data.credentials, data.is_test_mode)
        if not processor.validate_credentials():
            raise ValidationError("Invalid processor credentials")

        try:
            config = MerchantProcessor(
                organization_id=organization_id,
                processor_type=data.processor_type,
                is_active=True,
                is_test_mode=data.is_test_mode,
                encrypted_credentials=encrypt_credentials(data.credentials)
            )
            self.db.add(config)
            self.db.commit()
            self.db.refresh(config)
            logger.info(f"Processor {data.processor_type.value} configured for organization {organization_id}")
            return config
        except AppError:
            raise
        except Exception as e:
            self.db.rollback()
            logger.error(f"Error adding merchant processor: {e}")
            raise DatabaseError("Failed to add payment processor")

    def update_processor(self, processor_id: UUID, data: MerchantProcessorUpdate,
                         organization_id: UUID) -> MerchantProcessor:
        config = self.get_processor_config(processor_id, organization_id)

        if data.credentials is not None:
            processor = ProcessorFactory.create(config.processor_type, data.credentials, config.is_test_mode)
            if not processor.validate_credentials():
                raise ValidationError("Invalid processor credentials")
            config.encrypted_credentials = encrypt_credentials(data.credentials)
        if data.is_active is not None:
            config.is_active = data.is_active

        self.db.commit()
        self.db.refresh(config)
        return config

    def delete_processor(self, processor_id: UUID, organization_id: UUID) -> None:
        config = self.get_processor_config(processor_id, organization_id)
        self.db.delete(config)
        self.db.commit()
        logger.info(f"Processor {processor_id} removed from organization {organization_id}")

    def get_processor(self, organization_id: UUID,
                      processor_type: ProcessorType = ProcessorType.STRIPE) -> PaymentProcessor:
        """
        Procesador activo de la organización; para Stripe sin configuración
        propia se usa la llave de la plataforma.
        """
        query = self.db.query(MerchantProcessor).filter(
            MerchantProcessor.organization_id == organization_id,
            MerchantProcessor.processor_type == processor_type,
            MerchantProcessor.is_active == True
        )
        config: Optional[MerchantProcessor] = query.filter(
            MerchantProcessor.is_test_mode == (settings.ENVIRONMENT != "production")
        ).first() or query.first()

        if config:
            return ProcessorFactory.create(
                config.processor_type, decrypt_credentials(config.encrypted_credentials), config.is_test_mode
            )

        if processor_type == ProcessorType.STRIPE and settings.STRIPE_SECRET_KEY:
            return ProcessorFactory.create(
                ProcessorType.STRIPE,
                {"secret_key": settings.STRIPE_SECRET_KEY},
                is_test_mode=settings.STRIPE_SECRET_KEY.startswith("sk_test")
            )
        raise ValidationError(f"No active {processor_type.value} processor configured for this organization")
