from app.database.database import Base
from sqlalchemy import Column, String, Integer, Numeric, ForeignKey, JSON, Uuid
from sqlalchemy.orm import relationship
from uuid import uuid4
from app.common.mixins import TenantMixin, TimestampMixin


class LineItem(Base, TenantMixin, TimestampMixin):
    __tablename__ = "line_items"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid4)
    tab_id = Column(Uuid(as_uuid=True), ForeignKey("tabs.id", ondelete="CASCADE"), nullable=False, index=True)
    billing_group_id = Column(Uuid(as_uuid=True), ForeignKey("billing_groups.id"), nullable=True, index=True)

    description = Column(String(500), nullable=False)
    quantity = Column(Integer, nullable=False, default=1)
    unit_price = Column(Numeric(15, 2), nullable=False)
    total = Column(Numeric(15, 2), nullable=False)  # quantity * unit_price

    metadata_ = Column("metadata", JSON, nullable=True)

    # Relationships
    tab = relationship("Tab", back_populates="line_items")
    billing_group = relationship("BillingGroup", back_populates="line_items")

    @property
    def category(self):
        return (self.metadata_ or {}).get("category")
