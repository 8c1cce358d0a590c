"""
Tareas asíncronas de Celery para el envío de correos electrónicos.
"""
import logging
from typing import Dict, Any, List, Optional
from app.core.celery import celery_app
from app.modules.email.service import email_service

logger = logging.getLogger(__name__)


class EmailDeliveryError(Exception):
    pass


@celery_app.task(bind=True, max_retries=3)
def send_template_email_task(
    self,
    to_emails: List[str],
    subject: str,
    template_name: str,
    context: Dict[str, Any],
    cc_emails: Optional[List[str]] = None
):
    """
    Tarea asíncrona para envío de correos con template.
    """
    try:
        if not email_service.send_template_email(
            to_emails=to_emails,
            subject=subject,
            template_name=template_name,
            context=context,
            cc_emails=cc_emails
        ):
            raise EmailDeliveryError(f"Failed to send template email '{template_name}'")
        return {"status": "success", "template": template_name, "recipients": to_emails}

    except EmailDeliveryError as exc:
        logger.error(f"Template email sending failed: {exc}")

        # Retry with exponential backoff
        if self.request.retries < self.max_retries:
            raise self.retry(exc=exc, countdown=60 * (2 ** self.request.retries))

        return {"status": "failed", "error": str(exc), "template": template_name, "recipients": to_emails}


@celery_app.task(bind=True, max_retries=3)
def send_invoice_email_task(
    self,
    to_email: str,
    invoice_data: Dict[str, Any],
    organization_data: Dict[str, Any],
    cc_emails: Optional[List[str]] = None,
    custom_message: Optional[str] = None,
    subject: Optional[str] = None
):
    """
    Enviar factura por correo con enlace de pago.

    Args:
        to_email: Email del destinatario
        invoice_data: number, issue_date, due_date, currency, total_amount,
            balance_due, customer_name, payment_url, line_items
        organization_data: name, email
        cc_emails: Destinatarios en copia
        custom_message: Mensaje personalizado opcional
        subject: Asunto personalizado opcional
    """
    organization_name = organization_data.get("name") or email_service.from_name
    context = {
        "organization_name": organization_name,
        "organization_email": organization_data.get("email"),
        "customer_name": invoice_data.get("customer_name") or "Customer",
        "invoice_number": invoice_data.get("number"),
        "invoice_date": invoice_data.get("issue_date"),
        "due_date": invoice_data.get("due_date"),
        "currency": invoice_data.get("currency", "USD"),
        "total_amount": invoice_data.get("total_amount"),
        "balance_due": invoice_data.get("balance_due"),
        "line_items": invoice_data.get("line_items", []),
        "payment_url": invoice_data.get("payment_url"),
        "custom_message": custom_message,
    }
    subject = subject or f"Invoice {invoice_data.get('number')} from {organization_name}"

    try:
        if not email_service.send_template_email(
            to_emails=[to_email],
            subject=subject,
            template_name="invoice.html",
            context=context,
            cc_emails=cc_emails
        ):
            raise EmailDeliveryError(f"Failed to send invoice {invoice_data.get('number')}")

        logger.info(f"Invoice email {invoice_data.get('number')} sent to {to_email}")
        return {"status": "success", "recipient": to_email, "invoice_number": invoice_data.get("number")}

    except EmailDeliveryError as exc:
        logger.error(f"Invoice email sending failed to {to_email}: {exc}")
        if self.request.retries < self.max_retries:
            logger.info(f"Retrying invoice email task (attempt {self.request.retries + 1}/{self.max_retries})")
            raise self.retry(exc=exc, countdown=60 * (2 ** self.request.retries))

        logger.error(f"Invoice email task failed permanently after {self.max_retries} retries")
        return {
            "status": "failed",
            "error": str(exc),
            "recipient": to_email,
            "invoice_number": invoice_data.get("number")
        }
