from pydantic import BaseModel, Field, field_validator
from typing import Optional
from uuid import UUID
from datetime import datetime

from app.modules.api_keys.models import ApiKeyScope, ApiKeyEnvironment


class ApiKeyCreate(BaseModel):
    name: str = Field(..., max_length=100)
    scope: ApiKeyScope = ApiKeyScope.MERCHANT
    environment: ApiKeyEnvironment = ApiKeyEnvironment.TEST
    expires_at: Optional[datetime] = None

    @field_validator('name')
    @classmethod
    def validate_name(cls, v):
        if not v or not v.strip():
            raise ValueError('Name is required')
        return v.strip()


class ApiKeyUpdate(BaseModel):
    name: Optional[str] = Field(None, max_length=100)
    is_active: Optional[bool] = None

    @field_validator('name')
    @classmethod
    def validate_name(cls, v):
        if v is not None and not v.strip():
            raise ValueError('Name is required')
        return v.strip() if v else v


class ApiKeyOut(BaseModel):
    id: UUID
    name: str
    key_prefix: str
    scope: ApiKeyScope
    environment: ApiKeyEnvironment
    is_active: bool
    last_used_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    revoked_at: Optional[datetime] = None
    created_at: datetime

    class Config:
        from_attributes = True


class ApiKeyCreated(ApiKeyOut):
    """Incluye la llave en claro: solo se devuelve una vez."""
    key: str
