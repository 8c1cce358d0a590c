"""
Anulación de cuentas con validación previa y rastro de auditoría.

Bloquean la anulación: pagos exitosos sin reembolsar y facturas con pagos.
Advertencias (no bloquean): grupos de facturación activos que se cerrarán
y cargos que quedarán incobrables.
"""
import logging
from decimal import Decimal
from typing import List, Tuple
from uuid import UUID
from sqlalchemy.orm import Session

from app.modules.tabs.models import Tab, TabStatus
from app.modules.tabs.schemas import VoidValidationOut, VoidBlocker, BulkVoidItemResult
from app.modules.tabs.totals import derive_status
from app.modules.payments.models import Payment, PaymentStatus
from app.modules.invoices.models import Invoice, InvoiceStatus
from app.modules.billing_groups.models import BillingGroupStatus
from app.common.errors import AppError, NotFoundError, ValidationError, DatabaseError
from app.common.money import to_money, format_money
from app.common.utils import utcnow

logger = logging.getLogger(__name__)


class TabVoidingService:
    def __init__(self, db: Session):
        self.db = db

    def _get_tab(self, tab_id: UUID, organization_id: UUID) -> Tab:
        tab = self.db.query(Tab).filter(Tab.id == tab_id, Tab.organization_id == organization_id).first()
        if not tab:
            raise NotFoundError("Tab")
        return tab

    def validate_voiding(self, tab: Tab) -> VoidValidationOut:
        if tab.status == TabStatus.VOID:
            raise ValidationError("Tab is already void")

        blockers: List[VoidBlocker] = []
        warnings: List[str] = []

        succeeded = self.db.query(Payment).filter(
            Payment.tab_id == tab.id,
            Payment.status == PaymentStatus.SUCCEEDED
        ).all()
        if succeeded:
            total_paid = sum((to_money(p.amount) for p in succeeded), Decimal("0"))
            blockers.append(VoidBlocker(
                type="payment",
                count=len(succeeded),
                message=(
                    f"Cannot void tab with {len(succeeded)} successful payment(s) totaling "
                    f"{format_money(total_paid)}. Payments must be refunded first."
                ),
                details=[
                    {
                        "id": str(p.id),
                        "amount": str(to_money(p.amount)),
                        "processor": p.processor.value,
                        "processor_payment_id": p.processor_payment_id,
                    }
                    for p in succeeded
                ]
            ))

        invoices = self.db.query(Invoice).filter(
            Invoice.tab_id == tab.id,
            Invoice.status != InvoiceStatus.VOID
        ).all()
        paid_invoices = [i for i in invoices if to_money(i.paid_amount) > 0]
        if paid_invoices:
            invoice_paid = sum((to_money(i.paid_amount) for i in paid_invoices), Decimal("0"))
            blockers.append(VoidBlocker(
                type="invoice",
                count=len(paid_invoices),
                message=(
                    f"Cannot void tab with {len(paid_invoices)} paid invoice(s) totaling "
                    f"{format_money(invoice_paid)}. Invoice payments must be handled first."
                ),
                details=[
                    {
                        "invoice_id": str(i.id),
                        "invoice_number": i.invoice_number,
                        "paid_amount": str(to_money(i.paid_amount)),
                        "billing_group_id": str(i.billing_group_id) if i.billing_group_id else None,
                    }
                    for i in paid_invoices
                ]
            ))

        active_groups = [g for g in tab.billing_groups if g.status == BillingGroupStatus.ACTIVE]
        if active_groups:
            warnings.append(f"{len(active_groups)} active billing group(s) will be closed when tab is voided.")

        if tab.line_items:
            line_total = sum((to_money(i.total) for i in tab.line_items), Decimal("0"))
            warnings.append(
                f"{len(tab.line_items)} line item(s) totaling {format_money(line_total)} "
                f"will become uncollectible when voided."
            )

        return VoidValidationOut(
            can_void=not blockers,
            blockers=blockers,
            warnings=warnings,
            summary={
                "status": tab.status.value,
                "total_amount": str(to_money(tab.total_amount)),
                "paid_amount": str(to_money(tab.paid_amount)),
                "successful_payments": len(succeeded),
                "line_items": len(tab.line_items),
                "active_billing_groups": len(active_groups),
                "open_invoices": len(invoices),
            }
        )

    def check_voiding(self, tab_id: UUID, organization_id: UUID) -> VoidValidationOut:
        return self.validate_voiding(self._get_tab(tab_id, organization_id))

    def void_tab(
        self,
        tab_id: UUID,
        organization_id: UUID,
        reason: str,
        actor: str,
        skip_validation: bool = False,
        close_active_billing_groups: bool = True,
        void_draft_invoices: bool = True
    ) -> Tuple[Tab, dict]:
        tab = self._get_tab(tab_id, organization_id)
        validation = self.validate_voiding(tab)

        if not skip_validation and not validation.can_void:
            raise ValidationError(
                "Cannot void tab: " + "; ".join(b.message for b in validation.blockers),
                details={
                    "blockers": [b.model_dump() for b in validation.blockers],
                    "warnings": validation.warnings
                }
            )

        try:
            now = utcnow()
            previous_status = tab.status.value

            closed_group_ids = []
            if close_active_billing_groups:
                for group in tab.billing_groups:
                    if group.status == BillingGroupStatus.ACTIVE:
                        group.status = BillingGroupStatus.CLOSED
                        closed_group_ids.append(str(group.id))

            voided_invoice_ids = []
            if void_draft_invoices:
                drafts = self.db.query(Invoice).filter(
                    Invoice.tab_id == tab.id,
                    Invoice.status == InvoiceStatus.DRAFT
                ).all()
                for invoice in drafts:
                    invoice.status = InvoiceStatus.VOID
                    invoice.voided_at = now
                    voided_invoice_ids.append(str(invoice.id))

            tab.status = TabStatus.VOID
            tab.voided_at = now
            tab.voided_by = actor
            tab.void_reason = reason
            tab.previous_status = previous_status

            audit_entry = {
                "action": "voided",
                "timestamp": now.isoformat(),
                "actor": actor,
                "reason": reason,
                "previous_status": previous_status,
                "validation_skipped": skip_validation,
                "closed_billing_group_ids": closed_group_ids,
                "voided_invoice_ids": voided_invoice_ids,
            }
            self._append_history(tab, audit_entry)

            self.db.commit()
            self.db.refresh(tab)
            logger.info(f"Tab {tab.id} voided by {actor} (previous status {previous_status})")
            return tab, audit_entry

        except AppError:
            raise
        except Exception as e:
            self.db.rollback()
            logger.error(f"Error voiding tab {tab_id}: {e}")
            raise DatabaseError("Failed to void tab")

    def get_voiding_history(self, tab_id: UUID, organization_id: UUID) -> List[dict]:
        tab = self._get_tab(tab_id, organization_id)
        return list((tab.metadata_ or {}).get("void_history", []))

    def restore_voided_tab(self, tab_id: UUID, organization_id: UUID, actor: str) -> Tuple[Tab, dict]:
        """
        Restaura el estado previo a la anulación y reabre los grupos cerrados por ella.
        """
        tab = self._get_tab(tab_id, organization_id)
        if tab.status != TabStatus.VOID:
            raise ValidationError("Only void tabs can be restored")

        history = self.get_voiding_history(tab_id, organization_id)
        last_void = next((e for e in reversed(history) if e.get("action") == "voided"), None)

        try:
            restored_status = TabStatus.OPEN
            if tab.previous_status and tab.previous_status != TabStatus.VOID.value:
                restored_status = TabStatus(tab.previous_status)

            if last_void:
                reopened = set(last_void.get("closed_billing_group_ids", []))
                for group in tab.billing_groups:
                    if str(group.id) in reopened:
                        group.status = BillingGroupStatus.ACTIVE

            tab.status = restored_status
            tab.status = derive_status(tab)
            tab.voided_at = None
            tab.voided_by = None
            tab.void_reason = None
            tab.previous_status = None

            entry = {
                "action": "restored",
                "timestamp": utcnow().isoformat(),
                "actor": actor,
                "restored_status": tab.status.value,
            }
            self._append_history(tab, entry)

            self.db.commit()
            self.db.refresh(tab)
            logger.info(f"Tab {tab.id} restored to {tab.status.value} by {actor}")
            return tab, entry
        except AppError:
            raise
        except Exception as e:
            self.db.rollback()
            logger.error(f"Error restoring tab {tab_id}: {e}")
            raise DatabaseError("Failed to restore tab")

    def list_voided_tabs(self, organization_id: UUID, page: int, page_size: int) -> Tuple[List[Tab], int]:
        query = self.db.query(Tab).filter(
            Tab.organization_id == organization_id,
            Tab.status == TabStatus.VOID
        )
        total = query.count()
        tabs = query.order_by(Tab.voided_at.desc()).offset((page - 1) * page_size).limit(page_size).all()
        return tabs, total

    def bulk_void(self, tab_ids: List[UUID], organization_id: UUID, reason: str, actor: str,
                  skip_validation: bool = False) -> List[BulkVoidItemResult]:
        """Cada cuenta se anula por separado; un error no detiene el lote."""
        results = []
        for tab_id in tab_ids:
            try:
                self.void_tab(tab_id, organization_id, reason, actor, skip_validation=skip_validation)
                results.append(BulkVoidItemResult(tab_id=tab_id, success=True))
            except AppError as e:
                self.db.rollback()
                results.append(BulkVoidItemResult(tab_id=tab_id, success=False, error=e.message))
        return results

    @staticmethod
    def _append_history(tab: Tab, entry: dict) -> None:
        # JSON columns are not mutation-tracked: assign a new dict
        metadata = dict(tab.metadata_ or {})
        metadata["void_history"] = list(metadata.get("void_history", [])) + [entry]
        tab.metadata_ = metadata
