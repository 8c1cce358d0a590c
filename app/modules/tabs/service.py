import logging
from typing import Tuple, List, Optional
from uuid import UUID
from sqlalchemy.orm import Session, selectinload
from sqlalchemy import or_

from app.modules.tabs.models import Tab, TabStatus, LOCKED_TAB_STATUSES
from app.modules.tabs.schemas import TabCreate, TabUpdate, TabFilters
from app.modules.tabs.totals import recalculate_tab_totals
from app.modules.tabs.voiding import TabVoidingService
from app.modules.line_items.models import LineItem
from app.modules.payments.models import Payment
from app.common.errors import AppError, NotFoundError, ValidationError, DatabaseError
from app.common.money import to_money

logger = logging.getLogger(__name__)


class TabService:
    """
    Gestión de cuentas (tabs): listado, creación con cargos, actualización
    y anulación como borrado lógico.
    """

    def __init__(self, db: Session):
        self.db = db

    def get_tab(self, tab_id: UUID, organization_id: UUID, with_details: bool = False) -> Tab:
        query = self.db.query(Tab)
        if with_details:
            query = query.options(selectinload(Tab.line_items), selectinload(Tab.payments))
        tab = query.filter(Tab.id == tab_id, Tab.organization_id == organization_id).first()
        if not tab:
            raise NotFoundError("Tab")
        return tab

    def list_tabs(self, organization_id: UUID, filters: TabFilters, page: int, page_size: int) -> Tuple[List[Tab], int]:
        query = self.db.query(Tab).filter(Tab.organization_id == organization_id)

        if filters.status:
            query = query.filter(Tab.status == filters.status)
        if filters.customer_email:
            query = query.filter(Tab.customer_email == filters.customer_email.lower())
        if filters.search:
            term = f"%{filters.search}%"
            query = query.filter(or_(
                Tab.customer_name.ilike(term),
                Tab.customer_email.ilike(term),
                Tab.external_reference.ilike(term)
            ))

        total = query.count()
        tabs = query.order_by(Tab.created_at.desc()).offset((page - 1) * page_size).limit(page_size).all()
        return tabs, total

    def list_customer_tabs(
        self,
        customer_organization_id: UUID,
        merchant_id: Optional[UUID],
        status: Optional[TabStatus],
        page: int,
        page_size: int
    ) -> Tuple[List[Tab], int]:
        """
        Cuentas abiertas por cualquier comercio a nombre de una organización cliente.
        """
        query = self.db.query(Tab).filter(Tab.customer_organization_id == customer_organization_id)
        if merchant_id:
            query = query.filter(Tab.organization_id == merchant_id)
        if status:
            query = query.filter(Tab.status == status)

        total = query.count()
        tabs = query.order_by(Tab.created_at.desc()).offset((page - 1) * page_size).limit(page_size).all()
        return tabs, total

    def create_tab(self, data: TabCreate, organization_id: UUID) -> Tab:
        """
        Crear cuenta con sus cargos en una sola transacción.
        """
        try:
            tab = Tab(
                organization_id=organization_id,
                customer_email=data.customer_email.lower() if data.customer_email else None,
                customer_name=data.customer_name,
                customer_organization_id=data.customer_organization_id,
                external_reference=data.external_reference,
                currency=data.currency,
                metadata_=data.metadata,
                status=TabStatus.OPEN,
                paid_amount=0
            )
            self.db.add(tab)

            for item in data.line_items:
                tab.line_items.append(LineItem(
                    organization_id=organization_id,
                    description=item.description,
                    quantity=item.quantity,
                    unit_price=to_money(item.unit_price),
                    total=to_money(item.unit_price * item.quantity),
                    metadata_=item.metadata
                ))

            recalculate_tab_totals(self.db, tab)
            self.db.commit()
            self.db.refresh(tab)
            logger.info(f"Tab {tab.id} created with {len(data.line_items)} line item(s), total {tab.total_amount}")
            return tab

        except AppError:
            raise
        except Exception as e:
            self.db.rollback()
            logger.error(f"Error creating tab: {e}")
            raise DatabaseError("Failed to create tab")

    def update_tab(self, tab_id: UUID, data: TabUpdate, organization_id: UUID) -> Tab:
        tab = self.get_tab(tab_id, organization_id)

        if tab.status in LOCKED_TAB_STATUSES:
            raise ValidationError(f"Cannot update a {tab.status.value} tab")

        try:
            updates = data.model_dump(exclude_unset=True)
            if "metadata" in updates:
                tab.metadata_ = updates.pop("metadata")
            if updates.get("customer_email"):
                updates["customer_email"] = updates["customer_email"].lower()
            for field, value in updates.items():
                if value is not None:
                    setattr(tab, field, value)

            self.db.commit()
            self.db.refresh(tab)
            return tab
        except AppError:
            raise
        except Exception as e:
            self.db.rollback()
            logger.error(f"Error updating tab {tab_id}: {e}")
            raise DatabaseError("Failed to update tab")

    def delete_tab(self, tab_id: UUID, organization_id: UUID, actor: str) -> Tab:
        """
        Borrado = anulación. No se permite si la cuenta tiene pagos registrados.
        """
        tab = self.get_tab(tab_id, organization_id)

        payment_count = self.db.query(Payment).filter(Payment.tab_id == tab.id).count()
        if payment_count > 0:
            raise ValidationError("Cannot delete tab with existing payments. Void or refund payments first.")
        if tab.status == TabStatus.VOID:
            raise ValidationError("Tab is already void")

        tab, _ = TabVoidingService(self.db).void_tab(
            tab.id, organization_id, reason="Deleted", actor=actor
        )
        return tab
