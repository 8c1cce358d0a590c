from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session
from typing import Optional
from uuid import UUID

from app.database.database import get_db
from app.modules.auth.dependencies import AuthDependencies
from app.modules.auth.schemas import AuthContext
from app.modules.invoices.service import InvoiceService
from app.modules.invoices.models import InvoiceStatus
from app.modules.invoices.schemas import (
    InvoiceCreate, InvoiceOut, InvoiceDetail, InvoiceSend, InvoiceMarkPaid,
    InvoiceFilters, PublicInvoiceOut
)
from app.common.responses import (
    ApiResponse, PaginatedResponse, success_response, paginated_response, normalize_pagination
)

# Router principal del módulo de facturas
router = APIRouter(prefix="/invoices", tags=["Invoices"])

# Vista pública, sin autenticación
public_router = APIRouter(prefix="/public/invoices", tags=["Public"])


@router.post("/", response_model=ApiResponse[InvoiceDetail], status_code=status.HTTP_201_CREATED)
def create_invoice(
    data: InvoiceCreate,
    db: Session = Depends(get_db),
    auth_context: AuthContext = Depends(AuthDependencies.require_merchant())
):
    """
    Crear factura desde una cuenta. Sin line_item_ids ni billing_group_id
    se factura el saldo completo de la cuenta.
    """
    invoice = InvoiceService(db).create_invoice(data, auth_context.organization_id)
    return success_response(InvoiceDetail.model_validate(invoice))


@router.get("/", response_model=PaginatedResponse[InvoiceOut])
def list_invoices(
    status_filter: Optional[InvoiceStatus] = Query(None, alias="status"),
    tab_id: Optional[UUID] = Query(None),
    page: Optional[int] = Query(None),
    page_size: Optional[int] = Query(None),
    db: Session = Depends(get_db),
    auth_context: AuthContext = Depends(AuthDependencies.require_merchant())
):
    page, page_size = normalize_pagination(page, page_size)
    invoices, total = InvoiceService(db).list_invoices(
        auth_context.organization_id,
        InvoiceFilters(status=status_filter, tab_id=tab_id),
        page, page_size
    )
    return paginated_response([InvoiceOut.model_validate(i) for i in invoices], page, page_size, total)


@router.get("/{invoice_id}", response_model=ApiResponse[InvoiceDetail])
def get_invoice(
    invoice_id: UUID,
    db: Session = Depends(get_db),
    auth_context: AuthContext = Depends(AuthDependencies.require_merchant())
):
    invoice = InvoiceService(db).get_invoice(invoice_id, auth_context.organization_id)
    return success_response(InvoiceDetail.model_validate(invoice))


@router.post("/{invoice_id}/send", response_model=ApiResponse[InvoiceOut])
def send_invoice(
    invoice_id: UUID,
    data: InvoiceSend,
    db: Session = Depends(get_db),
    auth_context: AuthContext = Depends(AuthDependencies.require_merchant())
):
    """
    Encola el envío por email y marca la factura como enviada.
    """
    invoice, task_id = InvoiceService(db).send_invoice(invoice_id, data, auth_context.organization_id)
    return success_response(InvoiceOut.model_validate(invoice), meta={"task_id": task_id})


@router.post("/{invoice_id}/mark-paid", response_model=ApiResponse[InvoiceOut])
def mark_invoice_paid(
    invoice_id: UUID,
    data: InvoiceMarkPaid,
    db: Session = Depends(get_db),
    auth_context: AuthContext = Depends(AuthDependencies.require_merchant())
):
    invoice = InvoiceService(db).mark_paid(invoice_id, auth_context.organization_id, data.amount)
    return success_response(InvoiceOut.model_validate(invoice))


@router.post("/{invoice_id}/void", response_model=ApiResponse[InvoiceOut])
def void_invoice(
    invoice_id: UUID,
    db: Session = Depends(get_db),
    auth_context: AuthContext = Depends(AuthDependencies.require_merchant())
):
    invoice = InvoiceService(db).void_invoice(invoice_id, auth_context.organization_id)
    return success_response(InvoiceOut.model_validate(invoice))


@public_router.get("/{public_url}", response_model=ApiResponse[PublicInvoiceOut])
def get_public_invoice(public_url: str, db: Session = Depends(get_db)):
    return success_response(InvoiceService(db).get_public_invoice(public_url))
