from pydantic import BaseModel, EmailStr, Field, AliasChoices, field_validator, model_validator
from typing import Optional, List, Dict, Any, Literal
from uuid import UUID
from decimal import Decimal
from datetime import datetime

from app.modules.billing_groups.models import BillingGroupType, BillingGroupStatus, RuleAction
from app.modules.line_items.schemas import LineItemOut
from app.common.validators import validate_time_hhmm


class BillingGroupCreate(BaseModel):
    tab_id: UUID
    name: str = Field(..., min_length=1, max_length=120)
    group_type: BillingGroupType = BillingGroupType.STANDARD
    payer_email: Optional[EmailStr] = None
    payer_organization_id: Optional[UUID] = None
    credit_limit: Optional[Decimal] = Field(None, ge=0, max_digits=13, decimal_places=2)
    deposit_amount: Decimal = Field(Decimal("0"), ge=0, max_digits=13, decimal_places=2)
    authorization_code: Optional[str] = Field(None, max_length=100)
    po_number: Optional[str] = Field(None, max_length=100)
    metadata: Optional[Dict[str, Any]] = None


class BillingGroupUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=120)
    group_type: Optional[BillingGroupType] = None
    status: Optional[BillingGroupStatus] = None
    payer_email: Optional[EmailStr] = None
    payer_organization_id: Optional[UUID] = None
    credit_limit: Optional[Decimal] = Field(None, ge=0, max_digits=13, decimal_places=2)
    deposit_amount: Optional[Decimal] = Field(None, ge=0, max_digits=13, decimal_places=2)
    authorization_code: Optional[str] = Field(None, max_length=100)
    po_number: Optional[str] = Field(None, max_length=100)
    metadata: Optional[Dict[str, Any]] = None


class BillingGroupOut(BaseModel):
    id: UUID
    tab_id: UUID
    group_number: int
    name: str
    group_type: BillingGroupType
    status: BillingGroupStatus
    payer_email: Optional[str] = None
    payer_organization_id: Optional[UUID] = None
    credit_limit: Optional[Decimal] = None
    current_balance: Decimal
    deposit_amount: Decimal
    deposit_applied: Decimal
    deposit_remaining: Decimal
    authorization_code: Optional[str] = None
    po_number: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = Field(None, validation_alias=AliasChoices("metadata_", "metadata"))
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


# ===== Rules =====

class AmountCondition(BaseModel):
    min: Optional[Decimal] = None
    max: Optional[Decimal] = None


class TimeCondition(BaseModel):
    start: str
    end: str

    @field_validator('start', 'end')
    @classmethod
    def validate_time(cls, v):
        if not validate_time_hhmm(v):
            raise ValueError('Time must use HH:MM format')
        return v


class RuleConditions(BaseModel):
    category: Optional[List[str]] = None
    amount: Optional[AmountCondition] = None
    time: Optional[TimeCondition] = None
    day_of_week: Optional[List[int]] = None  # 0 = domingo
    metadata: Optional[Dict[str, Any]] = None

    @field_validator('day_of_week')
    @classmethod
    def validate_days(cls, v):
        if v is not None and any(d < 0 or d > 6 for d in v):
            raise ValueError('day_of_week values must be between 0 (Sunday) and 6 (Saturday)')
        return v


class RuleCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=120)
    conditions: RuleConditions
    action: RuleAction = RuleAction.AUTO_ASSIGN
    priority: int = Field(100, ge=0, le=10000)
    is_active: bool = True


class RuleUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=120)
    conditions: Optional[RuleConditions] = None
    action: Optional[RuleAction] = None
    priority: Optional[int] = Field(None, ge=0, le=10000)
    is_active: Optional[bool] = None


class RuleOut(BaseModel):
    id: UUID
    billing_group_id: UUID
    name: str
    conditions: Dict[str, Any]
    action: RuleAction
    priority: int
    is_active: bool

    class Config:
        from_attributes = True


# ===== Operations =====

class DepositApply(BaseModel):
    amount: Decimal = Field(..., max_digits=13, decimal_places=2)


class GroupDefinition(BaseModel):
    name: str = Field(..., min_length=1, max_length=120)
    group_type: BillingGroupType = BillingGroupType.STANDARD


class EnableBillingGroupsRequest(BaseModel):
    """Con default_groups se ignora la plantilla."""
    template: str = Field("default", pattern="^(hotel|restaurant|corporate|default)$")
    default_groups: Optional[List[GroupDefinition]] = Field(None, min_length=1, max_length=20)


class SplitRule(BaseModel):
    categories: Optional[List[str]] = None
    time_range: Optional[TimeCondition] = None
    weekdays_only: bool = False


class CorporatePersonalRules(BaseModel):
    corporate: Optional[SplitRule] = None
    personal: Optional[SplitRule] = None


class QuickSplitRequest(BaseModel):
    split_type: Literal["even", "by_category", "corporate_personal"]
    number_of_groups: Optional[int] = Field(None, ge=2, le=10)
    rules: Optional[CorporatePersonalRules] = None

    @model_validator(mode="after")
    def check_split_options(self):
        if self.split_type == "even" and self.number_of_groups is None:
            raise ValueError("number_of_groups is required for an even split")
        return self


class QuickSplitOut(BaseModel):
    split_type: str
    groups: List[BillingGroupOut]
    groups_created: int
    items_assigned: int


class GroupSummary(BaseModel):
    group: BillingGroupOut
    line_items: List[LineItemOut]
    line_item_count: int


class BillingSummaryOut(BaseModel):
    tab_id: UUID
    groups: List[GroupSummary]
    unassigned_items: List[LineItemOut]
    totals: Dict[str, Decimal]
    deposit_remaining: Decimal


class DeletionCheckOut(BaseModel):
    can_delete: bool
    blockers: List[str] = []
    line_item_count: int
    has_draft_invoice: bool


class BillingGroupDelete(BaseModel):
    target_group_id: Optional[UUID] = None
