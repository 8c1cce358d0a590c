"""
Servicio de cargos (line items).

Un cargo queda protegido cuando la cuenta ya recibió pagos o cuando una
factura que lo incluye fue pagada. Editar o borrar un cargo protegido
requiere force=True.
"""
import logging
from decimal import Decimal
from typing import List, Optional
from uuid import UUID
from sqlalchemy.orm import Session

from app.modules.line_items.models import LineItem
from app.modules.line_items.schemas import (
    LineItemCreate, LineItemUpdate, LineItemWithProtection, LineItemOut, PaymentProtection
)
from app.modules.tabs.models import Tab, LOCKED_TAB_STATUSES
from app.modules.tabs.totals import recalculate_tab_totals
from app.modules.payments.models import Payment, PaymentStatus
from app.modules.invoices.models import Invoice, InvoiceLineItem, InvoiceStatus
from app.modules.billing_groups.models import BillingGroupStatus
from app.modules.billing_groups.service import BillingGroupService
from app.common.errors import AppError, NotFoundError, ValidationError, DatabaseError
from app.common.money import to_money, format_money

logger = logging.getLogger(__name__)


class LineItemService:
    def __init__(self, db: Session):
        self.db = db
        self.groups = BillingGroupService(db)

    def _get_tab(self, tab_id: UUID, organization_id: UUID) -> Tab:
        tab = self.db.query(Tab).filter(Tab.id == tab_id, Tab.organization_id == organization_id).first()
        if not tab:
            raise NotFoundError("Tab")
        return tab

    def get_line_item(self, item_id: UUID, organization_id: UUID) -> LineItem:
        item = self.db.query(LineItem).filter(
            LineItem.id == item_id,
            LineItem.organization_id == organization_id
        ).first()
        if not item:
            raise NotFoundError("Line item")
        return item

    # ===== Protección por pagos =====

    def check_payment_protection(self, item: LineItem) -> PaymentProtection:
        reasons: List[str] = []
        tab = item.tab

        succeeded = self.db.query(Payment).filter(
            Payment.tab_id == tab.id,
            Payment.status == PaymentStatus.SUCCEEDED
        ).all()
        paid_total = sum((to_money(p.amount) - to_money(p.refunded_amount) for p in succeeded), Decimal("0"))
        if paid_total > 0:
            reasons.append(f"Tab has received payment(s) totaling {format_money(paid_total)}")

        invoices = self.db.query(Invoice).join(
            InvoiceLineItem, InvoiceLineItem.invoice_id == Invoice.id
        ).filter(InvoiceLineItem.line_item_id == item.id).all()
        for invoice in invoices:
            if invoice.status == InvoiceStatus.PAID:
                reasons.append(f"Associated invoice is in final status '{invoice.status.value}'")
            elif to_money(invoice.paid_amount) > 0:
                reasons.append(f"Associated invoice has been paid {format_money(invoice.paid_amount)}")

        total = to_money(tab.total_amount)
        paid = to_money(tab.paid_amount)
        if total > 0 and paid >= total:
            payment_status = "paid"
        elif paid > 0:
            payment_status = "partial"
        else:
            payment_status = "unpaid"

        return PaymentProtection(is_protected=bool(reasons), reasons=reasons, payment_status=payment_status)

    def with_protection(self, item: LineItem) -> LineItemWithProtection:
        protection = self.check_payment_protection(item)
        data = LineItemOut.model_validate(item).model_dump()
        return LineItemWithProtection(
            **data,
            payment_status=protection.payment_status,
            can_edit=not protection.is_protected,
            can_delete=not protection.is_protected,
            protection_reasons=protection.reasons
        )

    def list_by_tab(self, tab_id: UUID, organization_id: UUID) -> List[LineItemWithProtection]:
        tab = self._get_tab(tab_id, organization_id)
        return [self.with_protection(item) for item in tab.line_items]

    # ===== Escritura =====

    def create_line_item(self, data: LineItemCreate, organization_id: UUID, actor: Optional[str] = None) -> LineItem:
        tab = self._get_tab(data.tab_id, organization_id)
        if tab.status in LOCKED_TAB_STATUSES:
            raise ValidationError(f"Cannot add line items to a {tab.status.value} tab")

        group = None
        if data.billing_group_id:
            group = self.groups.get_group(data.billing_group_id, organization_id)
            if group.tab_id != tab.id:
                raise ValidationError("Billing group belongs to a different tab")
            if group.status != BillingGroupStatus.ACTIVE:
                raise ValidationError("Cannot assign line items to a closed billing group")

        try:
            total = to_money(data.unit_price * data.quantity)
            item = LineItem(
                organization_id=organization_id,
                description=data.description,
                quantity=data.quantity,
                unit_price=to_money(data.unit_price),
                total=total,
                metadata_=data.metadata
            )

            if group is not None:
                self.groups.check_credit_limit(group, total)
            elif tab.billing_groups:
                candidate, rule = self.groups.find_group_for_item(tab, item)
                if candidate is not None:
                    try:
                        self.groups.check_credit_limit(candidate, total)
                        group = candidate
                        if rule is not None:
                            logger.debug(f"Line item routed to group {candidate.id} by rule {rule.id}")
                    except ValidationError:
                        logger.warning(
                            f"Auto-assignment to billing group {candidate.id} skipped: credit limit exceeded"
                        )

            tab.line_items.append(item)
            item.billing_group = group
            recalculate_tab_totals(self.db, tab)
            self.db.commit()
            self.db.refresh(item)
            logger.info(f"Line item {item.id} added to tab {tab.id} ({total})")
            return item
        except AppError:
            raise
        except Exception as e:
            self.db.rollback()
            logger.error(f"Error creating line item: {e}")
            raise DatabaseError("Failed to create line item")

    def update_line_item(self, item_id: UUID, data: LineItemUpdate, organization_id: UUID,
                         force: bool = False) -> LineItem:
        item = self.get_line_item(item_id, organization_id)
        # force solo cubre la protección por pagos, nunca el estado de la cuenta
        if item.tab.status in LOCKED_TAB_STATUSES:
            raise ValidationError(f"Cannot edit line items of a {item.tab.status.value} tab")

        protection = self.check_payment_protection(item)
        if protection.is_protected and not force:
            raise ValidationError(
                f"Cannot edit line item: {'; '.join(protection.reasons)}. Use force=true to override.",
                details={"reasons": protection.reasons}
            )

        try:
            updates = data.model_dump(exclude_unset=True)
            if "metadata" in updates:
                item.metadata_ = updates.pop("metadata")
            for field, value in updates.items():
                if value is not None:
                    setattr(item, field, value)
            item.unit_price = to_money(item.unit_price)
            item.total = to_money(item.unit_price * item.quantity)

            if force and protection.is_protected:
                logger.warning(f"Protected line item {item.id} edited with force")

            recalculate_tab_totals(self.db, item.tab)
            self.db.commit()
            self.db.refresh(item)
            return item
        except AppError:
            raise
        except Exception as e:
            self.db.rollback()
            logger.error(f"Error updating line item {item_id}: {e}")
            raise DatabaseError("Failed to update line item")

    def delete_line_item(self, item_id: UUID, organization_id: UUID, force: bool = False) -> None:
        item = self.get_line_item(item_id, organization_id)
        tab = item.tab
        if tab.status in LOCKED_TAB_STATUSES:
            raise ValidationError(f"Cannot delete line items of a {tab.status.value} tab")

        protection = self.check_payment_protection(item)
        if protection.is_protected and not force:
            raise ValidationError(
                f"Cannot delete line item: {'; '.join(protection.reasons)}. Use force=true to override.",
                details={"reasons": protection.reasons}
            )

        try:
            tab.line_items.remove(item)
            self.db.delete(item)
            recalculate_tab_totals(self.db, tab)
            self.db.commit()
            logger.info(f"Line item {item_id} deleted from tab {tab.id}")
        except AppError:
            raise
        except Exception as e:
            self.db.rollback()
            logger.error(f"Error deleting line item {item_id}: {e}")
            raise DatabaseError("Failed to delete line item")

    # ===== Asignación a grupos =====

    def assign(self, item_id: UUID, group_id: UUID, organization_id: UUID, actor: str,
               reason: Optional[str] = None) -> LineItem:
        item = self.get_line_item(item_id, organization_id)
        group = self.groups.get_group(group_id, organization_id)
        return self.groups.assign_line_item(item, group, actor, reason)

    def unassign(self, item_id: UUID, organization_id: UUID, actor: str, reason: Optional[str] = None) -> LineItem:
        item = self.get_line_item(item_id, organization_id)
        return self.groups.assign_line_item(item, None, actor, reason)
