from pydantic import BaseModel, EmailStr, Field
from typing import Optional, Dict, Any
from uuid import UUID
from datetime import datetime

from app.modules.organizations.models import OrganizationRole


class OrganizationCreate(BaseModel):
    name: str = Field(..., min_length=2, max_length=200)
    is_merchant: bool = True
    is_corporate: bool = False
    billing_email: Optional[EmailStr] = None


class OrganizationUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=2, max_length=200)
    is_merchant: Optional[bool] = None
    is_corporate: Optional[bool] = None
    billing_email: Optional[EmailStr] = None
    settings: Optional[Dict[str, Any]] = None


class OrganizationOut(BaseModel):
    id: UUID
    name: str
    slug: str
    is_merchant: bool
    is_corporate: bool
    billing_email: Optional[str] = None
    settings: Optional[Dict[str, Any]] = None
    created_at: datetime

    class Config:
        from_attributes = True


class TeamMemberAdd(BaseModel):
    email: EmailStr
    role: OrganizationRole = OrganizationRole.MEMBER


class TeamMemberUpdate(BaseModel):
    role: OrganizationRole


class TeamMemberOut(BaseModel):
    user_id: UUID
    email: str
    full_name: Optional[str] = None
    role: OrganizationRole
    is_active: bool
    joined_at: Optional[datetime] = None
