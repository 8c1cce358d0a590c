from sqlalchemy import Column, String, Boolean, DateTime, ForeignKey, Enum, Uuid
from sqlalchemy.orm import relationship
from uuid import uuid4
from app.database.database import Base
from app.common.mixins import TimestampMixin
import enum


class ApiKeyScope(str, enum.Enum):
    MERCHANT = "merchant"
    CORPORATE = "corporate"
    FULL = "full"


class ApiKeyEnvironment(str, enum.Enum):
    LIVE = "live"
    TEST = "test"


class ApiKey(Base, TimestampMixin):
    __tablename__ = "api_keys"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid4)
    organization_id = Column(Uuid(as_uuid=True), ForeignKey("organizations.id"), nullable=False, index=True)
    name = Column(String(100), nullable=False)
    key_hash = Column(String(64), unique=True, nullable=False, index=True)
    key_prefix = Column(String(20), nullable=False)
    scope = Column(Enum(ApiKeyScope), nullable=False, default=ApiKeyScope.MERCHANT)
    environment = Column(Enum(ApiKeyEnvironment), nullable=False, default=ApiKeyEnvironment.TEST)
    is_active = Column(Boolean, default=True, nullable=False)
    last_used_at = Column(DateTime(timezone=True), nullable=True)
    expires_at = Column(DateTime(timezone=True), nullable=True)
    revoked_at = Column(DateTime(timezone=True), nullable=True)
    created_by = Column(Uuid(as_uuid=True), ForeignKey("users.id"), nullable=True)

    organization = relationship("Organization")
