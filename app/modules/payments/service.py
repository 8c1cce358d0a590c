"""
Pagos de cuentas: intents, checkout alojado, reembolsos y eventos de webhook.

El pago se registra como 'pending' antes de llamar al procesador y solo
cambia el monto pagado de la cuenta al confirmarse vía webhook.
"""
import logging
from decimal import Decimal
from typing import List, Optional, Tuple
from uuid import UUID
from sqlalchemy import or_
from sqlalchemy.orm import Session

from app.modules.payments.models import Payment, PaymentStatus, ProcessorType
from app.modules.payments.schemas import (
    PaymentIntentCreate, CheckoutSessionCreate, RefundCreate, PublicInvoicePayment, PublicInvoiceCheckout
)
from app.modules.payments.merchant_service import MerchantProcessorService
from app.modules.payments.processors import CheckoutSessionResult, WebhookEvent
from app.modules.tabs.models import Tab, TabStatus
from app.modules.tabs.totals import apply_paid_amount
from app.modules.invoices.models import Invoice, InvoiceStatus
from app.modules.invoices.service import InvoiceService
from app.modules.billing_groups.models import BillingGroup
from app.common.errors import AppError, NotFoundError, ValidationError, DatabaseError, PaymentError
from app.common.money import to_money, to_cents, from_cents

logger = logging.getLogger(__name__)


class PaymentService:
    def __init__(self, db: Session):
        self.db = db
        self.processors = MerchantProcessorService(db)

    # ===== Lectura =====

    def get_payment(self, payment_id: UUID, organization_id: UUID) -> Payment:
        payment = self.db.query(Payment).filter(
            Payment.id == payment_id,
            Payment.organization_id == organization_id
        ).first()
        if not payment:
            raise NotFoundError("Payment")
        return payment

    def list_payments(self, organization_id: UUID, page: int, page_size: int, tab_id: Optional[UUID] = None,
                      status: Optional[PaymentStatus] = None) -> Tuple[List[Payment], int]:
        query = self.db.query(Payment).filter(Payment.organization_id == organization_id)
        if tab_id:
            query = query.filter(Payment.tab_id == tab_id)
        if status:
            query = query.filter(Payment.status == status)
        total = query.count()
        payments = query.order_by(Payment.created_at.desc()).offset((page - 1) * page_size).limit(page_size).all()
        return payments, total

    def group_outstanding(self, group: BillingGroup) -> Decimal:
        """
        Saldo del grupo menos depósitos aplicados y pagos confirmados, incluidos
        los pagos hechos contra facturas del grupo.
        """
        payments = self.db.query(Payment).outerjoin(Invoice, Payment.invoice_id == Invoice.id).filter(
            or_(Payment.billing_group_id == group.id, Invoice.billing_group_id == group.id),
            Payment.status == PaymentStatus.SUCCEEDED
        ).all()
        paid = sum(
            (to_money(p.amount) - to_money(p.refunded_amount) for p in payments),
            Decimal("0")
        )
        outstanding = to_money(group.current_balance) - to_money(group.deposit_applied) - paid
        return max(to_money(outstanding), Decimal("0.00"))

    # ===== Creación =====

    def _resolve_target(self, tab_id: UUID, organization_id: UUID, invoice_id: Optional[UUID],
                        billing_group_id: Optional[UUID], amount: Optional[Decimal]):
        tab = self.db.query(Tab).filter(Tab.id == tab_id, Tab.organization_id == organization_id).first()
        if not tab:
            raise NotFoundError("Tab")
        if tab.status == TabStatus.VOID:
            raise ValidationError("Cannot accept payments for a void tab")
        if tab.status == TabStatus.PAID:
            raise ValidationError("Tab is already paid")

        balance = to_money(tab.balance)
        invoice = None
        group = None

        if invoice_id:
            invoice = self.db.query(Invoice).filter(
                Invoice.id == invoice_id,
                Invoice.organization_id == organization_id
            ).first()
            if not invoice or invoice.tab_id != tab.id:
                raise NotFoundError("Invoice")
            if invoice.status in (InvoiceStatus.PAID, InvoiceStatus.VOID):
                raise ValidationError(f"Cannot pay a {invoice.status.value} invoice")
            balance = min(balance, to_money(invoice.balance_due))
            if invoice.billing_group_id:
                if billing_group_id and billing_group_id != invoice.billing_group_id:
                    raise ValidationError("Invoice belongs to a different billing group")
                group = invoice.billing_group

        if billing_group_id and group is None:
            group = self.db.query(BillingGroup).filter(
                BillingGroup.id == billing_group_id,
                BillingGroup.organization_id == organization_id
            ).first()
            if not group or group.tab_id != tab.id:
                raise NotFoundError("Billing group")
        if group is not None:
            balance = min(balance, self.group_outstanding(group))

        amount = to_money(amount) if amount is not None else balance
        if amount <= 0:
            raise ValidationError("Payment amount must be greater than zero")
        if amount > balance:
            raise ValidationError(
                "Payment amount exceeds the outstanding balance",
                details={"amount": str(amount), "balance": str(balance)}
            )
        return tab, invoice, group, amount

    def _new_payment(self, tab: Tab, invoice, group, amount: Decimal, processor: ProcessorType, metadata=None) -> Payment:
        payment = Payment(
            organization_id=tab.organization_id,
            tab_id=tab.id,
            invoice_id=invoice.id if invoice else None,
            billing_group_id=group.id if group else None,
            amount=amount,
            refunded_amount=0,
            currency=tab.currency,
            status=PaymentStatus.PENDING,
            processor=processor,
            metadata_=metadata
        )
        self.db.add(payment)
        self.db.flush()
        return payment

    @staticmethod
    def _processor_metadata(payment: Payment) -> dict:
        metadata = {
            "payment_id": str(payment.id),
            "tab_id": str(payment.tab_id),
            "organization_id": str(payment.organization_id),
        }
        if payment.invoice_id:
            metadata["invoice_id"] = str(payment.invoice_id)
        if payment.billing_group_id:
            metadata["billing_group_id"] = str(payment.billing_group_id)
        return metadata

    def create_payment_intent(self, data: PaymentIntentCreate, organization_id: UUID) -> Tuple[Payment, Optional[str]]:
        tab, invoice, group, amount = self._resolve_target(
            data.tab_id, organization_id, data.invoice_id, data.billing_group_id, data.amount
        )
        return self._start_payment_intent(tab, invoice, group, amount, data.processor, data.metadata)

    def create_checkout_session(self, data: CheckoutSessionCreate,
                                organization_id: UUID) -> Tuple[Payment, CheckoutSessionResult]:
        tab, invoice, group, amount = self._resolve_target(
            data.tab_id, organization_id, data.invoice_id, data.billing_group_id, data.amount
        )
        return self._start_checkout_session(tab, invoice, group, amount, str(data.success_url), str(data.cancel_url))

    def _start_payment_intent(self, tab: Tab, invoice, group, amount: Decimal, processor_type: ProcessorType,
                              metadata: Optional[dict] = None) -> Tuple[Payment, Optional[str]]:
        processor = self.processors.get_processor(tab.organization_id, processor_type)

        try:
            payment = self._new_payment(tab, invoice, group, amount, processor_type, metadata)
            result = processor.create_payment_intent(
                to_cents(amount), tab.currency, metadata=self._processor_metadata(payment)
            )
            payment.processor_payment_id = result.id
            if result.status in (PaymentStatus.PENDING, PaymentStatus.PROCESSING):
                payment.status = result.status
            self.db.commit()
            self.db.refresh(payment)
            logger.info(f"Payment intent {result.id} created for tab {tab.id} ({amount})")
            return payment, result.client_secret
        except AppError:
            self.db.rollback()
            raise
        except Exception as e:
            self.db.rollback()
            logger.error(f"Error creating payment intent for tab {tab.id}: {e}")
            raise DatabaseError("Failed to create payment")

    def _start_checkout_session(self, tab: Tab, invoice, group, amount: Decimal, success_url: str, cancel_url: str,
                                metadata: Optional[dict] = None) -> Tuple[Payment, CheckoutSessionResult]:
        processor = self.processors.get_processor(tab.organization_id)

        description = f"Invoice {invoice.invoice_number}" if invoice else f"Tab {tab.external_reference or tab.id}"
        try:
            payment = self._new_payment(tab, invoice, group, amount, ProcessorType(processor.processor_type), metadata)
            session = processor.create_checkout_session(
                to_cents(amount), tab.currency, description,
                success_url=success_url,
                cancel_url=cancel_url,
                metadata=self._processor_metadata(payment)
            )
            payment.processor_payment_id = session.payment_intent_id or session.id
            payment.metadata_ = {**(payment.metadata_ or {}), "checkout_session_id": session.id}
            self.db.commit()
            self.db.refresh(payment)
            logger.info(f"Checkout session {session.id} created for tab {tab.id} ({amount})")
            return payment, session
        except AppError:
            self.db.rollback()
            raise
        except Exception as e:
            self.db.rollback()
            logger.error(f"Error creating checkout session for tab {tab.id}: {e}")
            raise DatabaseError("Failed to create checkout session")

    # ===== Pagos públicos =====

    def _resolve_public_invoice(self, public_url: str, data: PublicInvoicePayment):
        """
        Factura pagable desde su enlace público. Las anuladas no existen para el cliente.
        """
        invoice = self.db.query(Invoice).filter(Invoice.public_url == public_url).first()
        if not invoice or invoice.status == InvoiceStatus.VOID:
            raise NotFoundError("Invoice")
        if invoice.status == InvoiceStatus.PAID:
            raise ValidationError("Invoice is already paid")

        tab, invoice, group, amount = self._resolve_target(
            invoice.tab_id, invoice.organization_id, invoice.id, None, data.amount
        )
        metadata = {
            "public_payment": True,
            "customer_email": data.customer_email,
            "customer_name": data.customer_name,
            "invoice_number": invoice.invoice_number,
        }
        return tab, invoice, group, amount, metadata

    def create_public_invoice_payment(self, public_url: str,
                                      data: PublicInvoicePayment) -> Tuple[Payment, Optional[str]]:
        tab, invoice, group, amount, metadata = self._resolve_public_invoice(public_url, data)
        payment, client_secret = self._start_payment_intent(tab, invoice, group, amount, ProcessorType.STRIPE, metadata)
        logger.info(f"Public payment {payment.id} started for invoice {invoice.invoice_number}")
        return payment, client_secret

    def create_public_invoice_checkout(self, public_url: str,
                                       data: PublicInvoiceCheckout) -> Tuple[Payment, CheckoutSessionResult]:
        tab, invoice, group, amount, metadata = self._resolve_public_invoice(public_url, data)
        return self._start_checkout_session(
            tab, invoice, group, amount, str(data.success_url), str(data.cancel_url), metadata
        )

    # ===== Reembolsos =====

    def refund_payment(self, payment_id: UUID, data: RefundCreate, organization_id: UUID) -> Payment:
        payment = self.get_payment(payment_id, organization_id)
        if payment.status != PaymentStatus.SUCCEEDED:
            raise PaymentError("Only succeeded payments can be refunded")

        remaining = to_money(payment.amount) - to_money(payment.refunded_amount)
        amount = to_money(data.amount) if data.amount is not None else remaining
        if amount <= 0 or amount > remaining:
            raise ValidationError(
                "Refund amount exceeds the refundable amount",
                details={"refundable": str(remaining)}
            )

        if payment.processor_payment_id:
            processor = self.processors.get_processor(organization_id, payment.processor)
            processor.refund(payment.processor_payment_id, to_cents(amount), data.reason)

        try:
            self._apply_refund(payment, amount, data.reason)
            self.db.commit()
            self.db.refresh(payment)
            logger.info(f"Payment {payment.id} refunded {amount}")
            return payment
        except Exception as e:
            self.db.rollback()
            logger.error(f"Error recording refund for payment {payment.id}: {e}")
            raise DatabaseError("Failed to record refund")

    def _apply_refund(self, payment: Payment, amount: Decimal, reason: Optional[str] = None) -> None:
        payment.refunded_amount = to_money(payment.refunded_amount) + amount
        if to_money(payment.refunded_amount) >= to_money(payment.amount):
            payment.status = PaymentStatus.REFUNDED
        if reason:
            payment.metadata_ = {**(payment.metadata_ or {}), "refund_reason": reason}
        apply_paid_amount(payment.tab, -amount)
        if payment.invoice:
            InvoiceService(self.db).apply_payment(payment.invoice, -amount)

    # ===== Webhooks =====

    def _find_payment(self, processor_payment_id: Optional[str], metadata: Optional[dict] = None) -> Optional[Payment]:
        payment_id = (metadata or {}).get("payment_id")
        if payment_id:
            try:
                payment = self.db.query(Payment).filter(Payment.id == UUID(payment_id)).first()
                if payment:
                    return payment
            except ValueError:
                logger.warning(f"Webhook carried an invalid payment_id: {payment_id}")
        if processor_payment_id:
            return self.db.query(Payment).filter(Payment.processor_payment_id == processor_payment_id).first()
        return None

    def mark_succeeded(self, payment: Payment) -> bool:
        """Idempotente: un pago ya confirmado no se aplica dos veces."""
        if payment.status in (PaymentStatus.SUCCEEDED, PaymentStatus.REFUNDED):
            logger.info(f"Payment {payment.id} already processed, skipping")
            return False

        payment.status = PaymentStatus.SUCCEEDED
        payment.failure_reason = None
        apply_paid_amount(payment.tab, payment.amount)
        if payment.invoice:
            InvoiceService(self.db).apply_payment(payment.invoice, payment.amount)
        logger.info(f"Payment {payment.id} succeeded; tab {payment.tab_id} is now {payment.tab.status.value}")
        return True

    def handle_webhook_event(self, event: WebhookEvent) -> dict:
        obj = event.data or {}
        handled = True

        try:
            if event.type == "payment_intent.succeeded":
                payment = self._find_payment(obj.get("id"), obj.get("metadata"))
                if payment:
                    self.mark_succeeded(payment)

            elif event.type == "checkout.session.completed":
                payment = self._find_payment(obj.get("payment_intent"), obj.get("metadata"))
                if payment:
                    if obj.get("payment_intent"):
                        payment.processor_payment_id = obj["payment_intent"]
                    if obj.get("payment_status") == "paid":
                        self.mark_succeeded(payment)

            elif event.type == "payment_intent.payment_failed":
                payment = self._find_payment(obj.get("id"), obj.get("metadata"))
                if payment and payment.status not in (PaymentStatus.SUCCEEDED, PaymentStatus.REFUNDED):
                    payment.status = PaymentStatus.FAILED
                    payment.failure_reason = (obj.get("last_payment_error") or {}).get("message")
                    logger.info(f"Payment {payment.id} failed: {payment.failure_reason}")

            elif event.type == "charge.refunded":
                payment = self._find_payment(obj.get("payment_intent"), obj.get("metadata"))
                if payment and payment.status == PaymentStatus.SUCCEEDED:
                    refunded = from_cents(obj.get("amount_refunded", 0))
                    delta = refunded - to_money(payment.refunded_amount)
                    if delta > 0:
                        self._apply_refund(payment, delta)

            elif event.type == "charge.dispute.created":
                payment = self._find_payment(obj.get("payment_intent"), obj.get("metadata"))
                if payment:
                    payment.metadata_ = {
                        **(payment.metadata_ or {}),
                        "disputed": True,
                        "dispute_id": obj.get("id"),
                        "dispute_reason": obj.get("reason"),
                    }
                    logger.warning(f"Dispute {obj.get('id')} opened for payment {payment.id}")

            else:
                handled = False
                logger.debug(f"Unhandled webhook event type {event.type}")

            self.db.commit()
        except AppError:
            self.db.rollback()
            raise
        except Exception as e:
            self.db.rollback()
            logger.error(f"Error handling webhook event {event.id} ({event.type}): {e}")
            raise DatabaseError("Failed to process webhook event")

        return {"received": True, "handled": handled, "event_type": event.type}

