"""
Eliminación segura de grupos de facturación.
"""
import logging
from typing import List, Optional
from uuid import UUID
from sqlalchemy.orm import Session

from app.modules.billing_groups.models import BillingGroup, BillingGroupType, BillingGroupStatus
from app.modules.billing_groups.schemas import DeletionCheckOut
from app.modules.billing_groups.service import BillingGroupService
from app.modules.invoices.models import Invoice, InvoiceStatus
from app.modules.payments.models import Payment, PaymentStatus
from app.modules.tabs.models import Tab, TabStatus
from app.modules.tabs.totals import recalculate_tab_totals
from app.common.errors import AppError, NotFoundError, ValidationError, DatabaseError
from app.common.money import to_money

logger = logging.getLogger(__name__)


class BillingGroupDeletionService:
    def __init__(self, db: Session):
        self.db = db
        self.groups = BillingGroupService(db)

    def _blockers(self, group: BillingGroup) -> List[str]:
        blockers = []

        invoices = self.db.query(Invoice).filter(Invoice.billing_group_id == group.id).all()
        for invoice in invoices:
            if invoice.status == InvoiceStatus.PAID:
                blockers.append(f"Billing group has a paid invoice ({invoice.invoice_number})")
            elif invoice.status != InvoiceStatus.VOID and to_money(invoice.paid_amount) > 0:
                blockers.append(f"Billing group invoice {invoice.invoice_number} has received payments")

        succeeded = self.db.query(Payment).filter(
            Payment.billing_group_id == group.id,
            Payment.status == PaymentStatus.SUCCEEDED
        ).count()
        if succeeded:
            blockers.append(f"Billing group has {succeeded} successful payment(s)")

        if group.line_items and group.tab.status == TabStatus.PAID:
            blockers.append("Billing group contains line items that have been paid")

        return blockers

    def check_deletion(self, group_id: UUID, organization_id: UUID) -> DeletionCheckOut:
        group = self.groups.get_group(group_id, organization_id)
        blockers = self._blockers(group)
        has_draft = self.db.query(Invoice).filter(
            Invoice.billing_group_id == group.id,
            Invoice.status == InvoiceStatus.DRAFT
        ).count() > 0
        return DeletionCheckOut(
            can_delete=not blockers,
            blockers=blockers,
            line_item_count=len(group.line_items),
            has_draft_invoice=has_draft
        )

    def delete_group(self, group_id: UUID, organization_id: UUID, target_group_id: Optional[UUID] = None) -> dict:
        """
        Elimina el grupo moviendo sus cargos al grupo destino (o dejándolos sin grupo).
        La factura borrador del grupo se elimina.
        """
        group = self.groups.get_group(group_id, organization_id)
        blockers = self._blockers(group)
        if blockers:
            raise ValidationError("Cannot delete billing group: " + "; ".join(blockers), details={"blockers": blockers})

        target = None
        if target_group_id:
            if target_group_id == group.id:
                raise ValidationError("Target billing group must be different from the group being deleted")
            target = self.groups.get_group(target_group_id, organization_id)
            if target.tab_id != group.tab_id:
                raise ValidationError("Target billing group belongs to a different tab")
            if target.status != BillingGroupStatus.ACTIVE:
                raise ValidationError("Target billing group is closed")

        try:
            tab = group.tab
            moved = 0
            for item in list(group.line_items):
                item.billing_group = target
                moved += 1

            deleted_invoices = 0
            for invoice in self.db.query(Invoice).filter(Invoice.billing_group_id == group.id).all():
                if invoice.status == InvoiceStatus.DRAFT:
                    self.db.delete(invoice)
                    deleted_invoices += 1
                else:
                    invoice.billing_group_id = None

            self.db.query(Payment).filter(Payment.billing_group_id == group.id).update(
                {Payment.billing_group_id: None}, synchronize_session=False
            )

            tab.billing_groups.remove(group)
            self.db.delete(group)
            recalculate_tab_totals(self.db, tab)
            self.db.commit()

            logger.info(f"Billing group {group_id} deleted; {moved} line item(s) moved to {target_group_id}")
            return {
                "deleted_group_id": str(group_id),
                "moved_line_items": moved,
                "target_group_id": str(target.id) if target else None,
                "deleted_draft_invoices": deleted_invoices,
            }
        except AppError:
            raise
        except Exception as e:
            self.db.rollback()
            logger.error(f"Error deleting billing group {group_id}: {e}")
            raise DatabaseError("Failed to delete billing group")

    def get_or_create_default_group(self, tab_id: UUID, organization_id: UUID) -> BillingGroup:
        tab = self.db.query(Tab).filter(Tab.id == tab_id, Tab.organization_id == organization_id).first()
        if not tab:
            raise NotFoundError("Tab")

        for group in tab.billing_groups:
            if (group.metadata_ or {}).get("is_default") and group.status == BillingGroupStatus.ACTIVE:
                return group

        if tab.status == TabStatus.VOID:
            raise ValidationError("Cannot add billing groups to a void tab")

        group = self.groups.build_group(
            tab, "General", BillingGroupType.STANDARD,
            deposit_amount=0,
            metadata_={"is_default": True}
        )
        self.db.commit()
        self.db.refresh(group)
        return group
