from pydantic import BaseModel, EmailStr, Field, AliasChoices, field_validator, model_validator
from typing import Optional, List, Dict, Any, Literal
from uuid import UUID
from decimal import Decimal
from datetime import datetime

from app.modules.tabs.models import TabStatus
from app.modules.line_items.schemas import LineItemInput, LineItemOut
from app.modules.payments.schemas import PaymentOut
from app.common.validators import validate_currency


class TabCreate(BaseModel):
    customer_email: Optional[EmailStr] = None
    customer_name: Optional[str] = Field(None, max_length=200)
    customer_organization_id: Optional[UUID] = None
    external_reference: Optional[str] = Field(None, max_length=200)
    currency: str = Field("USD", min_length=3, max_length=3)
    metadata: Optional[Dict[str, Any]] = None
    line_items: List[LineItemInput] = Field(..., min_length=1)

    @field_validator('currency')
    @classmethod
    def validate_currency_code(cls, v):
        v = v.upper()
        if not validate_currency(v):
            raise ValueError('Currency must be a 3-letter ISO code')
        return v

    @model_validator(mode='after')
    def validate_customer(self):
        if not self.customer_email and not self.customer_organization_id:
            raise ValueError('Either customer_email or customer_organization_id is required')
        return self


class TabUpdate(BaseModel):
    customer_email: Optional[EmailStr] = None
    customer_name: Optional[str] = Field(None, max_length=200)
    external_reference: Optional[str] = Field(None, max_length=200)
    metadata: Optional[Dict[str, Any]] = None
    status: Optional[TabStatus] = None

    @field_validator('status')
    @classmethod
    def validate_status(cls, v):
        # Solo el cierre manual es un cambio de estado directo
        if v is not None and v != TabStatus.CLOSED:
            raise ValueError('Only status "closed" can be set directly')
        return v


class TabFilters(BaseModel):
    status: Optional[TabStatus] = None
    customer_email: Optional[str] = None
    search: Optional[str] = None


class TabOut(BaseModel):
    id: UUID
    organization_id: UUID
    customer_email: Optional[str] = None
    customer_name: Optional[str] = None
    customer_organization_id: Optional[UUID] = None
    external_reference: Optional[str] = None
    status: TabStatus
    currency: str
    subtotal: Decimal
    tax_amount: Decimal
    total_amount: Decimal
    paid_amount: Decimal
    balance: Decimal
    metadata: Optional[Dict[str, Any]] = Field(None, validation_alias=AliasChoices("metadata_", "metadata"))
    voided_at: Optional[datetime] = None
    voided_by: Optional[str] = None
    void_reason: Optional[str] = None
    previous_status: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class TabDetail(TabOut):
    line_items: List[LineItemOut] = []
    payments: List[PaymentOut] = []


# ===== Voiding =====

class VoidTabRequest(BaseModel):
    reason: str = Field(..., min_length=1, max_length=500)
    skip_validation: bool = False
    close_active_billing_groups: bool = True
    void_draft_invoices: bool = True


class VoidBlocker(BaseModel):
    """Motivo que impide anular; details lista los registros afectados."""
    type: Literal["payment", "invoice"]
    count: int
    message: str
    details: List[Dict[str, Any]] = []


class VoidValidationOut(BaseModel):
    can_void: bool
    blockers: List[VoidBlocker] = []
    warnings: List[str] = []
    summary: Dict[str, Any] = {}


class VoidResultOut(BaseModel):
    tab: TabOut
    audit_entry: Dict[str, Any]
    warnings: List[str] = []


class BulkVoidRequest(BaseModel):
    tab_ids: List[UUID] = Field(..., min_length=1, max_length=100)
    reason: str = Field(..., min_length=1, max_length=500)
    skip_validation: bool = False


class BulkVoidItemResult(BaseModel):
    tab_id: UUID
    success: bool
    error: Optional[str] = None
