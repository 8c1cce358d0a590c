from pydantic import BaseModel, Field, AliasChoices
from typing import Optional, List, Dict, Any
from uuid import UUID
from decimal import Decimal
from datetime import datetime


class LineItemInput(BaseModel):
    """Cargo enviado al crear una cuenta o agregado después."""
    description: str = Field(..., min_length=1, max_length=500)
    quantity: int = Field(1, ge=1)
    unit_price: Decimal = Field(..., ge=0, max_digits=13, decimal_places=2)
    metadata: Optional[Dict[str, Any]] = None
    billing_group_id: Optional[UUID] = None


class LineItemCreate(LineItemInput):
    tab_id: UUID


class LineItemUpdate(BaseModel):
    description: Optional[str] = Field(None, min_length=1, max_length=500)
    quantity: Optional[int] = Field(None, ge=1)
    unit_price: Optional[Decimal] = Field(None, ge=0, max_digits=13, decimal_places=2)
    metadata: Optional[Dict[str, Any]] = None


class LineItemOut(BaseModel):
    id: UUID
    tab_id: UUID
    billing_group_id: Optional[UUID] = None
    description: str
    quantity: int
    unit_price: Decimal
    total: Decimal
    metadata: Optional[Dict[str, Any]] = Field(None, validation_alias=AliasChoices("metadata_", "metadata"))
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class PaymentProtection(BaseModel):
    is_protected: bool
    reasons: List[str] = []
    payment_status: str  # unpaid | partial | paid


class LineItemWithProtection(LineItemOut):
    payment_status: str
    can_edit: bool
    can_delete: bool
    protection_reasons: List[str] = []


class LineItemAssign(BaseModel):
    billing_group_id: UUID
    reason: Optional[str] = Field(None, max_length=500)


class BulkAssignRequest(BaseModel):
    line_item_ids: List[UUID] = Field(..., min_length=1, max_length=200)
    billing_group_id: Optional[UUID] = None  # None = desasignar
    reason: Optional[str] = Field(None, max_length=500)
