import logging
from fastapi import APIRouter, Depends, Header, Request
from sqlalchemy.orm import Session
from typing import Optional

from app.core.config import settings
from app.database.database import get_db
from app.modules.payments.models import ProcessorType
from app.modules.payments.processors import ProcessorFactory, ProcessorError
from app.modules.payments.service import PaymentService
from app.common.errors import ValidationError, ExternalServiceError
from app.common.responses import success_response

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["Webhooks"])


@router.post("/stripe")
async def stripe_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(None, alias="stripe-signature"),
    db: Session = Depends(get_db)
):
    """
    Recibe eventos de Stripe. La firma se verifica con STRIPE_WEBHOOK_SECRET.
    """
    if not settings.STRIPE_WEBHOOK_SECRET:
        raise ExternalServiceError("stripe", "Stripe webhook secret is not configured")
    if not stripe_signature:
        raise ValidationError("Missing stripe-signature header")

    payload = await request.body()
    processor = ProcessorFactory.create(ProcessorType.STRIPE, {"secret_key": settings.STRIPE_SECRET_KEY})
    try:
        event = processor.construct_webhook_event(payload, stripe_signature, settings.STRIPE_WEBHOOK_SECRET)
    except ProcessorError as e:
        logger.warning(f"Rejected Stripe webhook: {e.message}")
        raise ValidationError("Invalid webhook signature")

    logger.info(f"Stripe webhook received: {event.type} ({event.id})")
    return success_response(PaymentService(db).handle_webhook_event(event))
