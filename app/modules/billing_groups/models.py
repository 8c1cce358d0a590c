from app.database.database import Base
from sqlalchemy import Column, String, Integer, Boolean, Numeric, ForeignKey, JSON, Enum, Uuid, UniqueConstraint, DateTime
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from uuid import uuid4
from app.common.mixins import TenantMixin, TimestampMixin
import enum


class BillingGroupType(str, enum.Enum):
    STANDARD = "standard"
    CORPORATE = "corporate"
    PERSONAL = "personal"
    MASTER = "master"


class BillingGroupStatus(str, enum.Enum):
    ACTIVE = "active"
    CLOSED = "closed"


class RuleAction(str, enum.Enum):
    AUTO_ASSIGN = "auto_assign"
    REQUIRE_APPROVAL = "require_approval"
    REJECT = "reject"


class BillingGroup(Base, TenantMixin, TimestampMixin):
    __tablename__ = "billing_groups"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid4)
    tab_id = Column(Uuid(as_uuid=True), ForeignKey("tabs.id", ondelete="CASCADE"), nullable=False, index=True)
    group_number = Column(Integer, nullable=False)
    name = Column(String(120), nullable=False)
    group_type = Column(Enum(BillingGroupType), nullable=False, default=BillingGroupType.STANDARD)
    status = Column(Enum(BillingGroupStatus), nullable=False, default=BillingGroupStatus.ACTIVE)

    # Payer
    payer_email = Column(String, nullable=True)
    payer_organization_id = Column(Uuid(as_uuid=True), nullable=True)

    # Balances
    credit_limit = Column(Numeric(15, 2), nullable=True)
    current_balance = Column(Numeric(15, 2), nullable=False, default=0)
    deposit_amount = Column(Numeric(15, 2), nullable=False, default=0)
    deposit_applied = Column(Numeric(15, 2), nullable=False, default=0)

    authorization_code = Column(String(100), nullable=True)
    po_number = Column(String(100), nullable=True)
    metadata_ = Column("metadata", JSON, nullable=True)

    # Relationships
    tab = relationship("Tab", back_populates="billing_groups")
    line_items = relationship("LineItem", back_populates="billing_group")
    rules = relationship("BillingGroupRule", back_populates="billing_group", cascade="all, delete-orphan",
                         order_by="BillingGroupRule.priority")
    invoices = relationship("Invoice", back_populates="billing_group")

    __table_args__ = (
        UniqueConstraint("tab_id", "group_number", name="uq_billing_group_tab_number"),
    )

    @property
    def deposit_remaining(self):
        return (self.deposit_amount or 0) - (self.deposit_applied or 0)


class BillingGroupRule(Base, TenantMixin, TimestampMixin):
    __tablename__ = "billing_group_rules"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid4)
    billing_group_id = Column(Uuid(as_uuid=True), ForeignKey("billing_groups.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String(120), nullable=False)
    # {"category": [...], "amount": {"min", "max"}, "time": {"start", "end"}, "day_of_week": [...], "metadata": {...}}
    conditions = Column(JSON, nullable=False, default=dict)
    action = Column(Enum(RuleAction), nullable=False, default=RuleAction.AUTO_ASSIGN)
    priority = Column(Integer, nullable=False, default=100)
    is_active = Column(Boolean, nullable=False, default=True)

    billing_group = relationship("BillingGroup", back_populates="rules")


class LineItemGroupOverride(Base, TenantMixin):
    """Registro de reasignaciones manuales de cargos entre grupos."""
    __tablename__ = "line_item_group_overrides"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid4)
    line_item_id = Column(Uuid(as_uuid=True), ForeignKey("line_items.id", ondelete="CASCADE"), nullable=False, index=True)
    original_group_id = Column(Uuid(as_uuid=True), nullable=True)
    new_group_id = Column(Uuid(as_uuid=True), nullable=True)
    reason = Column(String(500), nullable=True)
    overridden_by = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
