from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session
from typing import List, Optional
from uuid import UUID

from app.database.database import get_db
from app.modules.auth.dependencies import AuthDependencies
from app.modules.auth.schemas import AuthContext
from app.modules.payments.models import PaymentStatus
from app.modules.payments.service import PaymentService
from app.modules.payments.merchant_service import MerchantProcessorService
from app.modules.payments.schemas import (
    PaymentIntentCreate, CheckoutSessionCreate, RefundCreate, PaymentOut,
    PaymentIntentOut, CheckoutSessionOut,
    PublicInvoicePayment, PublicInvoiceCheckout, PublicPaymentOut,
    MerchantProcessorCreate, MerchantProcessorUpdate, MerchantProcessorOut
)
from app.common.responses import (
    ApiResponse, PaginatedResponse, success_response, paginated_response, normalize_pagination
)

router = APIRouter(prefix="/payments", tags=["Payments"])
processors_router = APIRouter(prefix="/merchant/processors", tags=["Payment Processors"])
public_payments_router = APIRouter(prefix="/public/invoices", tags=["Public"])


@router.post("/intent", response_model=ApiResponse[PaymentIntentOut], status_code=status.HTTP_201_CREATED)
def create_payment_intent(
    data: PaymentIntentCreate,
    db: Session = Depends(get_db),
    auth_context: AuthContext = Depends(AuthDependencies.require_merchant())
):
    """
    Crear un payment intent. Sin monto se cobra el saldo pendiente.
    """
    payment, client_secret = PaymentService(db).create_payment_intent(data, auth_context.organization_id)
    return success_response(PaymentIntentOut(
        payment=PaymentOut.model_validate(payment),
        client_secret=client_secret,
        processor_payment_id=payment.processor_payment_id
    ))


@router.post("/checkout", response_model=ApiResponse[CheckoutSessionOut], status_code=status.HTTP_201_CREATED)
def create_checkout_session(
    data: CheckoutSessionCreate,
    db: Session = Depends(get_db),
    auth_context: AuthContext = Depends(AuthDependencies.require_merchant())
):
    payment, session = PaymentService(db).create_checkout_session(data, auth_context.organization_id)
    return success_response(CheckoutSessionOut(
        payment=PaymentOut.model_validate(payment),
        session_id=session.id,
        url=session.url
    ))


@router.get("/", response_model=PaginatedResponse[PaymentOut])
def list_payments(
    tab_id: Optional[UUID] = Query(None),
    status_filter: Optional[PaymentStatus] = Query(None, alias="status"),
    page: Optional[int] = Query(None),
    page_size: Optional[int] = Query(None),
    db: Session = Depends(get_db),
    auth_context: AuthContext = Depends(AuthDependencies.require_merchant())
):
    page, page_size = normalize_pagination(page, page_size)
    payments, total = PaymentService(db).list_payments(
        auth_context.organization_id, page, page_size, tab_id=tab_id, status=status_filter
    )
    return paginated_response([PaymentOut.model_validate(p) for p in payments], page, page_size, total)


@router.get("/{payment_id}", response_model=ApiResponse[PaymentOut])
def get_payment(
    payment_id: UUID,
    db: Session = Depends(get_db),
    auth_context: AuthContext = Depends(AuthDependencies.require_merchant())
):
    payment = PaymentService(db).get_payment(payment_id, auth_context.organization_id)
    return success_response(PaymentOut.model_validate(payment))


@router.post("/{payment_id}/refund", response_model=ApiResponse[PaymentOut])
def refund_payment(
    payment_id: UUID,
    data: RefundCreate,
    db: Session = Depends(get_db),
    auth_context: AuthContext = Depends(AuthDependencies.require_merchant())
):
    payment = PaymentService(db).refund_payment(payment_id, data, auth_context.organization_id)
    return success_response(PaymentOut.model_validate(payment))


# ===== Merchant processors =====

@processors_router.get("/", response_model=ApiResponse[List[MerchantProcessorOut]])
def list_processors(
    db: Session = Depends(get_db),
    auth_context: AuthContext = Depends(AuthDependencies.require_owner_or_admin())
):
    processors = MerchantProcessorService(db).list_processors(auth_context.organization_id)
    return success_response([MerchantProcessorOut.model_validate(p) for p in processors])


@processors_router.post("/", response_model=ApiResponse[MerchantProcessorOut], status_code=status.HTTP_201_CREATED)
def add_processor(
    data: MerchantProcessorCreate,
    db: Session = Depends(get_db),
    auth_context: AuthContext = Depends(AuthDependencies.require_owner_or_admin())
):
    """
    Registrar credenciales de un procesador. Se validan contra el procesador
    y se guardan cifradas.
    """
    config = MerchantProcessorService(db).add_processor(data, auth_context.organization_id)
    return success_response(MerchantProcessorOut.model_validate(config))


@processors_router.patch("/{processor_id}", response_model=ApiResponse[MerchantProcessorOut])
def update_processor(
    processor_id: UUID,
    data: MerchantProcessorUpdate,
    db: Session = Depends(get_db),
    auth_context: AuthContext = Depends(AuthDependencies.require_owner_or_admin())
):
    config = MerchantProcessorService(db).update_processor(processor_id, data, auth_context.organization_id)
    return success_response(MerchantProcessorOut.model_validate(config))


@processors_router.delete("/{processor_id}", response_model=ApiResponse[dict])
def delete_processor(
    processor_id: UUID,
    db: Session = Depends(get_db),
    auth_context: AuthContext = Depends(AuthDependencies.require_owner_or_admin())
):
    MerchantProcessorService(db).delete_processor(processor_id, auth_context.organization_id)
    return success_response({"id": str(processor_id), "deleted": True})


# ===== Public (sin autenticación) =====

@public_payments_router.post("/{public_url}/pay", response_model=ApiResponse[PublicPaymentOut],
                             status_code=status.HTTP_201_CREATED)
def pay_public_invoice(public_url: str, data: PublicInvoicePayment, db: Session = Depends(get_db)):
    """
    El cliente paga la factura desde su enlace público. Sin monto se cobra el saldo.
    """
    payment, client_secret = PaymentService(db).create_public_invoice_payment(public_url, data)
    return success_response(PublicPaymentOut(
        payment_id=payment.id,
        invoice_number=payment.invoice.invoice_number,
        amount=payment.amount,
        currency=payment.currency,
        status=payment.status,
        client_secret=client_secret
    ))


@public_payments_router.post("/{public_url}/checkout", response_model=ApiResponse[PublicPaymentOut],
                             status_code=status.HTTP_201_CREATED)
def checkout_public_invoice(public_url: str, data: PublicInvoiceCheckout, db: Session = Depends(get_db)):
    payment, session = PaymentService(db).create_public_invoice_checkout(public_url, data)
    return success_response(PublicPaymentOut(
        payment_id=payment.id,
        invoice_number=payment.invoice.invoice_number,
        amount=payment.amount,
        currency=payment.currency,
        status=payment.status,
        checkout_url=session.url
    ))
