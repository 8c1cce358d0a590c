from app.database.database import Base
from sqlalchemy import Column, String, Boolean, Numeric, ForeignKey, JSON, Enum, Text, Uuid, UniqueConstraint
from sqlalchemy.orm import relationship
from uuid import uuid4
from app.common.mixins import TenantMixin, TimestampMixin
import enum


class PaymentStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELED = "canceled"
    REFUNDED = "refunded"


class ProcessorType(str, enum.Enum):
    STRIPE = "stripe"
    SQUARE = "square"
    PAYPAL = "paypal"
    AUTHORIZE_NET = "authorize_net"


class Payment(Base, TenantMixin, TimestampMixin):
    __tablename__ = "payments"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid4)
    tab_id = Column(Uuid(as_uuid=True), ForeignKey("tabs.id"), nullable=False, index=True)
    invoice_id = Column(Uuid(as_uuid=True), ForeignKey("invoices.id"), nullable=True, index=True)
    billing_group_id = Column(Uuid(as_uuid=True), ForeignKey("billing_groups.id"), nullable=True, index=True)

    amount = Column(Numeric(15, 2), nullable=False)
    refunded_amount = Column(Numeric(15, 2), nullable=False, default=0)
    currency = Column(String(3), nullable=False, default="USD")
    status = Column(Enum(PaymentStatus), nullable=False, default=PaymentStatus.PENDING, index=True)
    processor = Column(Enum(ProcessorType), nullable=False, default=ProcessorType.STRIPE)
    processor_payment_id = Column(String, nullable=True, index=True)
    failure_reason = Column(Text, nullable=True)
    metadata_ = Column("metadata", JSON, nullable=True)

    # Relationships
    tab = relationship("Tab", back_populates="payments")
    invoice = relationship("Invoice", back_populates="payments")
    billing_group = relationship("BillingGroup")


class MerchantProcessor(Base, TenantMixin, TimestampMixin):
    """Credenciales de procesador por organización (cifradas con Fernet)."""
    __tablename__ = "merchant_processors"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid4)
    processor_type = Column(Enum(ProcessorType), nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)
    is_test_mode = Column(Boolean, nullable=False, default=True)
    encrypted_credentials = Column(Text, nullable=False)
    metadata_ = Column("metadata", JSON, nullable=True)

    __table_args__ = (
        UniqueConstraint("organization_id", "processor_type", "is_test_mode", name="uq_merchant_processor"),
    )
