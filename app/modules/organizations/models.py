from sqlalchemy import Column, String, Boolean, DateTime, ForeignKey, UniqueConstraint, JSON, Enum, Uuid
from sqlalchemy.orm import relationship
from datetime import datetime, timezone
from uuid import uuid4
from app.database.database import Base
from app.common.mixins import TimestampMixin
import enum


class OrganizationRole(str, enum.Enum):
    OWNER = "owner"
    ADMIN = "admin"
    MEMBER = "member"
    VIEWER = "viewer"


class Organization(Base, TimestampMixin):
    __tablename__ = "organizations"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid4)
    name = Column(String(200), nullable=False)
    slug = Column(String(220), unique=True, nullable=False, index=True)
    is_merchant = Column(Boolean, default=True, nullable=False)
    is_corporate = Column(Boolean, default=False, nullable=False)
    billing_email = Column(String, nullable=True)
    settings = Column(JSON, nullable=True)

    # Relationships
    members = relationship("OrganizationUser", back_populates="organization", cascade="all, delete-orphan")


class OrganizationUser(Base, TimestampMixin):
    __tablename__ = "organization_users"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid4)
    organization_id = Column(Uuid(as_uuid=True), ForeignKey("organizations.id"), nullable=False, index=True)
    user_id = Column(Uuid(as_uuid=True), ForeignKey("users.id"), nullable=False, index=True)
    role = Column(Enum(OrganizationRole), nullable=False, default=OrganizationRole.MEMBER)
    is_active = Column(Boolean, default=True, nullable=False)
    joined_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    # Relationships
    organization = relationship("Organization", back_populates="members")
    user = relationship("User", back_populates="memberships")

    __table_args__ = (
        UniqueConstraint("organization_id", "user_id", name="uq_organization_user"),
    )
