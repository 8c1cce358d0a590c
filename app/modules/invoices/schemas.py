from pydantic import BaseModel, EmailStr, Field, AliasChoices
from decimal import Decimal
from typing import Optional, List, Dict, Any
from uuid import UUID
from datetime import date, datetime

from app.modules.invoices.models import InvoiceStatus


class InvoiceCreate(BaseModel):
    """
    Factura a partir de una cuenta: completa, con cargos seleccionados,
    o por el saldo de un grupo de facturación.
    """
    tab_id: UUID
    line_item_ids: Optional[List[UUID]] = None
    billing_group_id: Optional[UUID] = None
    amount: Optional[Decimal] = Field(None, gt=0, max_digits=13, decimal_places=2)
    customer_email: Optional[EmailStr] = None
    customer_name: Optional[str] = Field(None, max_length=200)
    due_date: Optional[date] = None
    notes: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None


class GroupInvoiceCreate(BaseModel):
    amount: Optional[Decimal] = Field(None, gt=0, max_digits=13, decimal_places=2)
    due_date: Optional[date] = None
    notes: Optional[str] = None
    send_immediately: bool = False


class TabInvoiceCreate(BaseModel):
    due_date: Optional[date] = None
    notes: Optional[str] = None
    recipient_email: Optional[EmailStr] = None
    cc_emails: List[EmailStr] = []


class InvoiceSend(BaseModel):
    recipient_email: Optional[EmailStr] = None
    cc_emails: List[EmailStr] = []
    message: Optional[str] = Field(None, max_length=2000)


class InvoiceMarkPaid(BaseModel):
    amount: Optional[Decimal] = Field(None, gt=0, max_digits=13, decimal_places=2)


class InvoiceFilters(BaseModel):
    status: Optional[InvoiceStatus] = None
    tab_id: Optional[UUID] = None


class InvoiceLineItemOut(BaseModel):
    id: UUID
    line_item_id: Optional[UUID] = None
    description: str
    quantity: int
    unit_price: Decimal
    total: Decimal

    class Config:
        from_attributes = True


class InvoiceOut(BaseModel):
    id: UUID
    organization_id: UUID
    tab_id: UUID
    billing_group_id: Optional[UUID] = None
    invoice_number: str
    status: InvoiceStatus
    customer_email: Optional[str] = None
    customer_name: Optional[str] = None
    issue_date: date
    due_date: Optional[date] = None
    sent_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None
    voided_at: Optional[datetime] = None
    notes: Optional[str] = None
    currency: str
    public_url: str
    total_amount: Decimal
    paid_amount: Decimal
    balance_due: Decimal
    metadata: Optional[Dict[str, Any]] = Field(None, validation_alias=AliasChoices("metadata_", "metadata"))
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class InvoiceDetail(InvoiceOut):
    line_items: List[InvoiceLineItemOut] = []


class PublicInvoiceOut(BaseModel):
    """Vista pública (sin autenticación) de una factura."""
    invoice_number: str
    status: InvoiceStatus
    customer_name: Optional[str] = None
    issue_date: date
    due_date: Optional[date] = None
    currency: str
    total_amount: Decimal
    paid_amount: Decimal
    balance_due: Decimal
    notes: Optional[str] = None
    line_items: List[InvoiceLineItemOut] = []

    class Config:
        from_attributes = True
