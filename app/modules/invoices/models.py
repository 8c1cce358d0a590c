from app.database.database import Base
from sqlalchemy import Column, Integer, String, DateTime, ForeignKey, UniqueConstraint, Numeric, Enum, Date, Text, JSON, Uuid
from sqlalchemy.orm import relationship
from datetime import date
from uuid import uuid4
from app.common.mixins import TenantMixin, TimestampMixin
import enum


class InvoiceStatus(str, enum.Enum):
    DRAFT = "draft"      # Borrador, aún no enviada
    SENT = "sent"        # Enviada al cliente, pendiente de pago
    PAID = "paid"        # Pagada completamente
    VOID = "void"        # Anulada


# Estados finales: la factura ya no cambia de monto
FINAL_INVOICE_STATUSES = (InvoiceStatus.PAID, InvoiceStatus.VOID)


class Invoice(Base, TenantMixin, TimestampMixin):
    __tablename__ = "invoices"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid4)

    # References
    tab_id = Column(Uuid(as_uuid=True), ForeignKey("tabs.id"), nullable=False, index=True)
    billing_group_id = Column(Uuid(as_uuid=True), ForeignKey("billing_groups.id"), nullable=True, index=True)

    invoice_number = Column(String(50), nullable=False)
    status = Column(Enum(InvoiceStatus), nullable=False, default=InvoiceStatus.DRAFT, index=True)

    # Customer snapshot
    customer_email = Column(String, nullable=True)
    customer_name = Column(String, nullable=True)

    # Dates
    issue_date = Column(Date, nullable=False, default=date.today)
    due_date = Column(Date, nullable=True)
    sent_at = Column(DateTime(timezone=True), nullable=True)
    paid_at = Column(DateTime(timezone=True), nullable=True)
    voided_at = Column(DateTime(timezone=True), nullable=True)

    # Content
    notes = Column(Text, nullable=True)
    currency = Column(String(3), nullable=False, default="USD")
    public_url = Column(String(64), unique=True, nullable=False, index=True)
    metadata_ = Column("metadata", JSON, nullable=True)

    # Totals
    total_amount = Column(Numeric(15, 2), nullable=False, default=0)
    paid_amount = Column(Numeric(15, 2), nullable=False, default=0)
    balance_due = Column(Numeric(15, 2), nullable=False, default=0)

    # Relationships
    tab = relationship("Tab", back_populates="invoices")
    billing_group = relationship("BillingGroup", back_populates="invoices")
    line_items = relationship("InvoiceLineItem", back_populates="invoice", cascade="all, delete-orphan")
    payments = relationship("Payment", back_populates="invoice")

    __table_args__ = (
        UniqueConstraint("organization_id", "invoice_number", name="uq_invoice_organization_number"),
    )


class InvoiceLineItem(Base, TimestampMixin):
    __tablename__ = "invoice_line_items"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid4)
    invoice_id = Column(Uuid(as_uuid=True), ForeignKey("invoices.id", ondelete="CASCADE"), nullable=False)
    line_item_id = Column(Uuid(as_uuid=True), ForeignKey("line_items.id", ondelete="SET NULL"), nullable=True)

    # Snapshot data (preserva la información si el cargo cambia)
    description = Column(String(500), nullable=False)
    quantity = Column(Integer, nullable=False)
    unit_price = Column(Numeric(15, 2), nullable=False)
    total = Column(Numeric(15, 2), nullable=False)

    # Relationships
    invoice = relationship("Invoice", back_populates="line_items")


class InvoiceSequence(Base, TenantMixin):
    """Secuencia de numeración de facturas por organización y año"""
    __tablename__ = "invoice_sequences"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid4)
    year = Column(Integer, nullable=False)
    current_number = Column(Integer, nullable=False, default=0)
    prefix = Column(String(10), nullable=False, default="INV")

    __table_args__ = (
        UniqueConstraint("organization_id", "year", name="uq_sequence_organization_year"),
    )
