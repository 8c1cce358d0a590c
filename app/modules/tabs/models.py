from app.database.database import Base
from sqlalchemy import Column, String, DateTime, Numeric, Enum, JSON, Uuid
from sqlalchemy.orm import relationship
from uuid import uuid4
from app.common.mixins import TenantMixin, TimestampMixin
import enum


class TabStatus(str, enum.Enum):
    OPEN = "open"          # Abierta, acepta cargos
    PARTIAL = "partial"    # Con pagos parciales
    PAID = "paid"          # Pagada completamente
    VOID = "void"          # Anulada (soft delete con auditoría)
    CLOSED = "closed"      # Cerrada manualmente


# Estados en los que la cuenta ya no admite modificaciones
LOCKED_TAB_STATUSES = (TabStatus.PAID, TabStatus.VOID, TabStatus.CLOSED)


class Tab(Base, TenantMixin, TimestampMixin):
    __tablename__ = "tabs"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid4)

    # Customer
    customer_email = Column(String, nullable=True, index=True)
    customer_name = Column(String, nullable=True)
    customer_organization_id = Column(Uuid(as_uuid=True), nullable=True, index=True)
    external_reference = Column(String, nullable=True)

    status = Column(Enum(TabStatus), nullable=False, default=TabStatus.OPEN, index=True)
    currency = Column(String(3), nullable=False, default="USD")

    # Totals (calculated)
    subtotal = Column(Numeric(15, 2), nullable=False, default=0)
    tax_amount = Column(Numeric(15, 2), nullable=False, default=0)
    total_amount = Column(Numeric(15, 2), nullable=False, default=0)
    paid_amount = Column(Numeric(15, 2), nullable=False, default=0)

    metadata_ = Column("metadata", JSON, nullable=True)

    # Void audit
    voided_at = Column(DateTime(timezone=True), nullable=True)
    voided_by = Column(String, nullable=True)
    void_reason = Column(String, nullable=True)
    previous_status = Column(String(20), nullable=True)

    # Relationships
    line_items = relationship("LineItem", back_populates="tab", cascade="all, delete-orphan",
                              order_by="LineItem.created_at")
    payments = relationship("Payment", back_populates="tab")
    invoices = relationship("Invoice", back_populates="tab")
    billing_groups = relationship("BillingGroup", back_populates="tab", cascade="all, delete-orphan",
                                  order_by="BillingGroup.group_number")

    @property
    def balance(self):
        return (self.total_amount or 0) - (self.paid_amount or 0)
