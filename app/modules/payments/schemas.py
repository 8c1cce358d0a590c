from pydantic import BaseModel, EmailStr, Field, AliasChoices, HttpUrl
from typing import Optional, Dict, Any
from uuid import UUID
from decimal import Decimal
from datetime import datetime

from app.modules.payments.models import PaymentStatus, ProcessorType


class PaymentIntentCreate(BaseModel):
    tab_id: UUID
    amount: Optional[Decimal] = Field(None, gt=0, max_digits=13, decimal_places=2)
    invoice_id: Optional[UUID] = None
    billing_group_id: Optional[UUID] = None
    processor: ProcessorType = ProcessorType.STRIPE
    metadata: Optional[Dict[str, Any]] = None


class CheckoutSessionCreate(BaseModel):
    tab_id: UUID
    amount: Optional[Decimal] = Field(None, gt=0, max_digits=13, decimal_places=2)
    invoice_id: Optional[UUID] = None
    billing_group_id: Optional[UUID] = None
    success_url: HttpUrl
    cancel_url: HttpUrl


class RefundCreate(BaseModel):
    amount: Optional[Decimal] = Field(None, gt=0, max_digits=13, decimal_places=2)
    reason: Optional[str] = Field(None, max_length=500)


class PaymentOut(BaseModel):
    id: UUID
    tab_id: UUID
    invoice_id: Optional[UUID] = None
    billing_group_id: Optional[UUID] = None
    amount: Decimal
    refunded_amount: Decimal
    currency: str
    status: PaymentStatus
    processor: ProcessorType
    processor_payment_id: Optional[str] = None
    failure_reason: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = Field(None, validation_alias=AliasChoices("metadata_", "metadata"))
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class PaymentIntentOut(BaseModel):
    payment: PaymentOut
    client_secret: Optional[str] = None
    processor_payment_id: str


class CheckoutSessionOut(BaseModel):
    payment: PaymentOut
    session_id: str
    url: str


# ===== Public invoice payments =====

class PublicInvoicePayment(BaseModel):
    """Pago del cliente desde el enlace público de la factura."""
    amount: Optional[Decimal] = Field(None, gt=0, max_digits=13, decimal_places=2)
    customer_email: EmailStr
    customer_name: Optional[str] = Field(None, max_length=200)


class PublicInvoiceCheckout(PublicInvoicePayment):
    success_url: HttpUrl
    cancel_url: HttpUrl


class PublicPaymentOut(BaseModel):
    payment_id: UUID
    invoice_number: str
    amount: Decimal
    currency: str
    status: PaymentStatus
    client_secret: Optional[str] = None
    checkout_url: Optional[str] = None


# ===== Merchant processors =====

class MerchantProcessorCreate(BaseModel):
    processor_type: ProcessorType
    credentials: Dict[str, Any]
    is_test_mode: bool = True


class MerchantProcessorUpdate(BaseModel):
    credentials: Optional[Dict[str, Any]] = None
    is_active: Optional[bool] = None


class MerchantProcessorOut(BaseModel):
    """Nunca expone las credenciales."""
    id: UUID
    processor_type: ProcessorType
    is_active: bool
    is_test_mode: bool
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True
