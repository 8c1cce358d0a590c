import logging
import secrets
from datetime import timedelta
from decimal import Decimal
from typing import List, Optional, Tuple
from uuid import UUID
from sqlalchemy.orm import Session, selectinload

from app.modules.invoices.models import Invoice, InvoiceLineItem, InvoiceSequence, InvoiceStatus
from app.modules.invoices.schemas import (
    InvoiceCreate, GroupInvoiceCreate, InvoiceSend, InvoiceFilters, PublicInvoiceOut
)
from app.modules.tabs.models import Tab, TabStatus
from app.modules.tabs.totals import calculate_tax
from app.modules.line_items.models import LineItem
from app.modules.billing_groups.models import BillingGroup
from app.modules.organizations.models import Organization
from app.core.cache import cache_get, cache_set, cache_delete
from app.core.config import settings
from app.common.errors import AppError, NotFoundError, ValidationError, DatabaseError, ExternalServiceError
from app.common.money import to_money
from app.common.utils import utcnow

logger = logging.getLogger(__name__)

PUBLIC_INVOICE_CACHE_PREFIX = "public_invoice:"


class InvoiceService:
    """
    Facturas emitidas a partir de cuentas o grupos de facturación.
    """

    def __init__(self, db: Session):
        self.db = db

    def generate_invoice_number(self, organization_id: UUID, year: Optional[int] = None) -> str:
        """Número secuencial por organización y año: INV-2025-0001"""
        year = year or utcnow().year
        sequence = self.db.query(InvoiceSequence).filter(
            InvoiceSequence.organization_id == organization_id,
            InvoiceSequence.year == year
        ).with_for_update().first()

        if not sequence:
            sequence = InvoiceSequence(
                organization_id=organization_id,
                year=year,
                current_number=0,
                prefix="INV"
            )
            self.db.add(sequence)
            self.db.flush()

        sequence.current_number += 1
        return f"{sequence.prefix}-{year}-{sequence.current_number:04d}"

    @staticmethod
    def generate_public_url() -> str:
        return f"inv_{secrets.token_hex(12)}"

    # ===== Creación =====

    def _get_tab(self, tab_id: UUID, organization_id: UUID) -> Tab:
        tab = self.db.query(Tab).filter(Tab.id == tab_id, Tab.organization_id == organization_id).first()
        if not tab:
            raise NotFoundError("Tab")
        return tab

    def create_invoice(self, data: InvoiceCreate, organization_id: UUID) -> Invoice:
        tab = self._get_tab(data.tab_id, organization_id)
        if tab.status == TabStatus.VOID:
            raise ValidationError("Cannot create an invoice for a void tab")

        group: Optional[BillingGroup] = None
        if data.billing_group_id:
            group = self.db.query(BillingGroup).filter(
                BillingGroup.id == data.billing_group_id,
                BillingGroup.organization_id == organization_id
            ).first()
            if not group:
                raise NotFoundError("Billing group")
            if group.tab_id != tab.id:
                raise ValidationError("Billing group belongs to a different tab")
            items = [i for i in tab.line_items if i.billing_group_id == group.id]
            amount = to_money(data.amount) if data.amount is not None else to_money(group.current_balance)
        elif data.line_item_ids:
            wanted = set(data.line_item_ids)
            items = [i for i in tab.line_items if i.id in wanted]
            missing = [str(i) for i in data.line_item_ids if i not in {item.id for item in items}]
            if missing:
                raise NotFoundError("Line item", details={"missing_ids": missing})
            subtotal = sum((to_money(i.total) for i in items), Decimal("0"))
            amount = to_money(data.amount) if data.amount is not None else subtotal + calculate_tax(subtotal)
        else:
            items = list(tab.line_items)
            amount = to_money(data.amount) if data.amount is not None else to_money(tab.balance)

        if amount <= 0:
            raise ValidationError("Invoice amount must be greater than zero")

        try:
            invoice = self._build_invoice(
                tab, items, amount,
                billing_group=group,
                customer_email=data.customer_email or (group.payer_email if group else None) or tab.customer_email,
                customer_name=data.customer_name or tab.customer_name,
                due_date=data.due_date,
                notes=data.notes,
                metadata=data.metadata
            )
            self.db.commit()
            self.db.refresh(invoice)
            logger.info(f"Invoice {invoice.invoice_number} created for tab {tab.id} ({amount})")
            return invoice
        except AppError:
            raise
        except Exception as e:
            self.db.rollback()
            logger.error(f"Error creating invoice for tab {tab.id}: {e}")
            raise DatabaseError("Failed to create invoice")

    def create_group_invoice(self, group_id: UUID, data: GroupInvoiceCreate, organization_id: UUID) -> Invoice:
        group = self.db.query(BillingGroup).filter(
            BillingGroup.id == group_id,
            BillingGroup.organization_id == organization_id
        ).first()
        if not group:
            raise NotFoundError("Billing group")
        return self.create_invoice(
            InvoiceCreate(
                tab_id=group.tab_id,
                billing_group_id=group.id,
                amount=data.amount,
                due_date=data.due_date,
                notes=data.notes
            ),
            organization_id
        )

    def _build_invoice(self, tab: Tab, items: List[LineItem], amount: Decimal, **fields) -> Invoice:
        issue_date = utcnow().date()
        group = fields.get("billing_group")
        invoice = Invoice(
            organization_id=tab.organization_id,
            tab_id=tab.id,
            billing_group_id=group.id if group else None,
            invoice_number=self.generate_invoice_number(tab.organization_id, issue_date.year),
            status=InvoiceStatus.DRAFT,
            customer_email=fields.get("customer_email"),
            customer_name=fields.get("customer_name"),
            issue_date=issue_date,
            due_date=fields.get("due_date") or issue_date + timedelta(days=settings.INVOICE_DUE_DAYS),
            notes=fields.get("notes"),
            currency=tab.currency,
            public_url=self.generate_public_url(),
            metadata_=fields.get("metadata"),
            total_amount=amount,
            paid_amount=0,
            balance_due=amount
        )
        for item in items:
            invoice.line_items.append(InvoiceLineItem(
                line_item_id=item.id,
                description=item.description,
                quantity=item.quantity,
                unit_price=item.unit_price,
                total=item.total
            ))
        self.db.add(invoice)
        self.db.flush()
        return invoice

    # ===== Lectura =====

    def get_invoice(self, invoice_id: UUID, organization_id: UUID) -> Invoice:
        invoice = self.db.query(Invoice).options(selectinload(Invoice.line_items)).filter(
            Invoice.id == invoice_id,
            Invoice.organization_id == organization_id
        ).first()
        if not invoice:
            raise NotFoundError("Invoice")
        return invoice

    def get_public_invoice(self, public_url: str) -> PublicInvoiceOut:
        """
        Vista pública sin autenticación, cacheada en Redis.
        """
        cache_key = f"{PUBLIC_INVOICE_CACHE_PREFIX}{public_url}"
        cached = cache_get(cache_key)
        if cached:
            return PublicInvoiceOut.model_validate(cached)

        invoice = self.db.query(Invoice).filter(Invoice.public_url == public_url).first()
        if not invoice or invoice.status == InvoiceStatus.VOID:
            raise NotFoundError("Invoice")

        public = PublicInvoiceOut.model_validate(invoice)
        cache_set(cache_key, public.model_dump(mode="json"))
        return public

    def list_invoices(self, organization_id: UUID, filters: InvoiceFilters, page: int,
                      page_size: int) -> Tuple[List[Invoice], int]:
        query = self.db.query(Invoice).filter(Invoice.organization_id == organization_id)
        if filters.status:
            query = query.filter(Invoice.status == filters.status)
        if filters.tab_id:
            query = query.filter(Invoice.tab_id == filters.tab_id)

        total = query.count()
        invoices = query.order_by(Invoice.created_at.desc(), Invoice.invoice_number.desc()) \
            .offset((page - 1) * page_size).limit(page_size).all()
        return invoices, total

    # ===== Ciclo de vida =====

    def send_invoice(self, invoice_id: UUID, data: InvoiceSend, organization_id: UUID) -> Tuple[Invoice, Optional[str]]:
        """
        Encola el correo de la factura y la marca como enviada.
        """
        invoice = self.get_invoice(invoice_id, organization_id)
        if invoice.status not in (InvoiceStatus.DRAFT, InvoiceStatus.SENT):
            raise ValidationError(f"Cannot send a {invoice.status.value} invoice")

        recipient = data.recipient_email or invoice.customer_email
        if not recipient:
            raise ValidationError("Invoice has no recipient email")

        organization = self.db.query(Organization).filter(Organization.id == organization_id).first()

        invoice_data = {
            "number": invoice.invoice_number,
            "issue_date": invoice.issue_date.isoformat() if invoice.issue_date else "",
            "due_date": invoice.due_date.isoformat() if invoice.due_date else None,
            "currency": invoice.currency,
            "total_amount": str(to_money(invoice.total_amount)),
            "balance_due": str(to_money(invoice.balance_due)),
            "customer_name": invoice.customer_name,
            "payment_url": f"{settings.FRONTEND_URL}/pay/{invoice.public_url}",
            "line_items": [
                {"description": li.description, "quantity": li.quantity, "total": str(to_money(li.total))}
                for li in invoice.line_items
            ],
        }
        organization_data = {
            "name": organization.name if organization else "",
            "email": organization.billing_email if organization else None,
        }

        from app.modules.email.tasks import send_invoice_email_task
        try:
            task = send_invoice_email_task.delay(
                to_email=recipient,
                invoice_data=invoice_data,
                organization_data=organization_data,
                cc_emails=[str(e) for e in data.cc_emails] or None,
                custom_message=data.message
            )
        except Exception as e:
            logger.error(f"Could not queue invoice email for {invoice.invoice_number}: {e}")
            raise ExternalServiceError("email", "Failed to queue invoice email")

        try:
            invoice.status = InvoiceStatus.SENT
            invoice.sent_at = utcnow()
            self.db.commit()
            self.db.refresh(invoice)
            cache_delete(f"{PUBLIC_INVOICE_CACHE_PREFIX}{invoice.public_url}")
            logger.info(f"Invoice {invoice.invoice_number} sent to {recipient}")
            return invoice, getattr(task, "id", None)
        except Exception as e:
            self.db.rollback()
            logger.error(f"Error marking invoice {invoice_id} as sent: {e}")
            raise DatabaseError("Failed to send invoice")

    def apply_payment(self, invoice: Invoice, amount: Decimal) -> Invoice:
        """
        Registra un pago (o un reembolso con monto negativo) sin hacer commit.
        """
        paid = max(to_money(invoice.paid_amount) + to_money(amount), Decimal("0.00"))
        invoice.paid_amount = paid
        invoice.balance_due = max(to_money(invoice.total_amount) - paid, Decimal("0.00"))
        if invoice.balance_due == 0 and paid > 0:
            invoice.status = InvoiceStatus.PAID
            invoice.paid_at = invoice.paid_at or utcnow()
        elif invoice.status == InvoiceStatus.PAID:
            invoice.status = InvoiceStatus.SENT
            invoice.paid_at = None
        cache_delete(f"{PUBLIC_INVOICE_CACHE_PREFIX}{invoice.public_url}")
        return invoice

    def mark_paid(self, invoice_id: UUID, organization_id: UUID, amount: Optional[Decimal] = None) -> Invoice:
        invoice = self.get_invoice(invoice_id, organization_id)
        if invoice.status in (InvoiceStatus.PAID, InvoiceStatus.VOID):
            raise ValidationError(f"Invoice is already {invoice.status.value}")

        amount = to_money(amount) if amount is not None else to_money(invoice.balance_due)
        if amount <= 0:
            raise ValidationError("Payment amount must be greater than zero")
        if amount > to_money(invoice.balance_due):
            raise ValidationError("Payment amount exceeds the invoice balance")

        self.apply_payment(invoice, amount)
        if invoice.status == InvoiceStatus.DRAFT:
            invoice.status = InvoiceStatus.SENT
        self.db.commit()
        self.db.refresh(invoice)
        logger.info(f"Invoice {invoice.invoice_number} marked paid ({amount})")
        return invoice

    def void_invoice(self, invoice_id: UUID, organization_id: UUID) -> Invoice:
        invoice = self.get_invoice(invoice_id, organization_id)
        if invoice.status == InvoiceStatus.PAID:
            raise ValidationError("Cannot void a paid invoice")
        if invoice.status == InvoiceStatus.VOID:
            raise ValidationError("Invoice is already void")

        invoice.status = InvoiceStatus.VOID
        invoice.voided_at = utcnow()
        self.db.commit()
        self.db.refresh(invoice)
        cache_delete(f"{PUBLIC_INVOICE_CACHE_PREFIX}{invoice.public_url}")
        logger.info(f"Invoice {invoice.invoice_number} voided")
        return invoice
