from pydantic import BaseModel, EmailStr, Field, field_validator
from typing import Optional, List
from uuid import UUID
from datetime import datetime

# User schemas
class UserCreate(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=8, max_length=128)
    full_name: Optional[str] = Field(None, max_length=120)

    @field_validator('email')
    @classmethod
    def normalize_email(cls, v):
        return v.lower()

    @field_validator('password')
    @classmethod
    def validate_password(cls, v):
        if v.strip() != v:
            raise ValueError('Password must not start or end with whitespace')
        return v

class UserLogin(BaseModel):
    email: EmailStr
    password: str

class UserOut(BaseModel):
    id: UUID
    email: EmailStr
    full_name: Optional[str] = None
    is_active: bool
    last_login: Optional[datetime] = None

    class Config:
        from_attributes = True

class UserMembershipOut(BaseModel):
    organization_id: UUID
    organization_name: str
    role: str
    is_merchant: bool
    is_corporate: bool

# Token schemas
class TokenResponse(BaseModel):
    access_token: str
    token_type: str = "bearer"
    expires_in: int
    user: UserOut
    organizations: List[UserMembershipOut] = []

class AuthContext(BaseModel):
    """Contexto de autenticación resuelto por request (API key o sesión)."""
    organization_id: UUID
    auth_type: str  # "api_key" | "session"
    user_id: Optional[UUID] = None
    role: Optional[str] = None
    scope: Optional[str] = None
    api_key_id: Optional[UUID] = None
    is_merchant: bool = False
    is_corporate: bool = False

    @property
    def actor(self) -> str:
        """Identificador usado en los campos de auditoría."""
        if self.user_id:
            return f"user:{self.user_id}"
        return f"api_key:{self.api_key_id}"
