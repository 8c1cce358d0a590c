from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session
from typing import List, Optional
from uuid import UUID

from app.database.database import get_db
from app.modules.auth.dependencies import AuthDependencies
from app.modules.auth.schemas import AuthContext
from app.modules.tabs.models import TabStatus
from app.modules.tabs.service import TabService
from app.modules.tabs.voiding import TabVoidingService
from app.modules.tabs.schemas import (
    TabCreate, TabUpdate, TabFilters, TabOut, TabDetail,
    VoidTabRequest, VoidValidationOut, VoidResultOut, BulkVoidRequest, BulkVoidItemResult
)
from app.modules.billing_groups.service import BillingGroupService
from app.modules.billing_groups.deletion import BillingGroupDeletionService
from app.modules.billing_groups.schemas import (
    EnableBillingGroupsRequest, BillingGroupOut, BillingSummaryOut, QuickSplitRequest, QuickSplitOut
)
from app.modules.invoices.service import InvoiceService
from app.modules.invoices.schemas import InvoiceCreate, InvoiceDetail, InvoiceSend, TabInvoiceCreate
from app.common.responses import (
    ApiResponse, PaginatedResponse, success_response, paginated_response, normalize_pagination
)

router = APIRouter(prefix="/tabs", tags=["Tabs"])


@router.get("/", response_model=PaginatedResponse[TabOut])
def list_tabs(
    status_filter: Optional[TabStatus] = Query(None, alias="status"),
    customer_email: Optional[str] = Query(None),
    search: Optional[str] = Query(None),
    page: Optional[int] = Query(None),
    page_size: Optional[int] = Query(None),
    db: Session = Depends(get_db),
    auth_context: AuthContext = Depends(AuthDependencies.require_merchant())
):
    """
    Listar cuentas de la organización, más recientes primero.
    """
    page, page_size = normalize_pagination(page, page_size)
    filters = TabFilters(status=status_filter, customer_email=customer_email, search=search)
    tabs, total = TabService(db).list_tabs(auth_context.organization_id, filters, page, page_size)
    return paginated_response([TabOut.model_validate(t) for t in tabs], page, page_size, total)


@router.post("/", response_model=ApiResponse[TabDetail], status_code=status.HTTP_201_CREATED)
def create_tab(
    data: TabCreate,
    db: Session = Depends(get_db),
    auth_context: AuthContext = Depends(AuthDependencies.require_merchant())
):
    tab = TabService(db).create_tab(data, auth_context.organization_id)
    return success_response(TabDetail.model_validate(tab))


@router.get("/voided", response_model=PaginatedResponse[TabOut])
def list_voided_tabs(
    page: Optional[int] = Query(None),
    page_size: Optional[int] = Query(None),
    db: Session = Depends(get_db),
    auth_context: AuthContext = Depends(AuthDependencies.require_merchant())
):
    page, page_size = normalize_pagination(page, page_size)
    tabs, total = TabVoidingService(db).list_voided_tabs(auth_context.organization_id, page, page_size)
    return paginated_response([TabOut.model_validate(t) for t in tabs], page, page_size, total)


@router.post("/bulk-void", response_model=ApiResponse[List[BulkVoidItemResult]])
def bulk_void_tabs(
    data: BulkVoidRequest,
    db: Session = Depends(get_db),
    auth_context: AuthContext = Depends(AuthDependencies.require_merchant())
):
    """
    Anula varias cuentas; el resultado se reporta por cuenta.
    """
    results = TabVoidingService(db).bulk_void(
        data.tab_ids, auth_context.organization_id, data.reason, auth_context.actor,
        skip_validation=data.skip_validation
    )
    succeeded = sum(1 for r in results if r.success)
    return success_response(results, meta={"succeeded": succeeded, "failed": len(results) - succeeded})


@router.get("/{tab_id}", response_model=ApiResponse[TabDetail])
def get_tab(
    tab_id: UUID,
    db: Session = Depends(get_db),
    auth_context: AuthContext = Depends(AuthDependencies.require_merchant())
):
    tab = TabService(db).get_tab(tab_id, auth_context.organization_id, with_details=True)
    return success_response(TabDetail.model_validate(tab))


@router.patch("/{tab_id}", response_model=ApiResponse[TabOut])
def update_tab(
    tab_id: UUID,
    data: TabUpdate,
    db: Session = Depends(get_db),
    auth_context: AuthContext = Depends(AuthDependencies.require_merchant())
):
    tab = TabService(db).update_tab(tab_id, data, auth_context.organization_id)
    return success_response(TabOut.model_validate(tab))


@router.delete("/{tab_id}", response_model=ApiResponse[TabOut])
def delete_tab(
    tab_id: UUID,
    db: Session = Depends(get_db),
    auth_context: AuthContext = Depends(AuthDependencies.require_merchant())
):
    tab = TabService(db).delete_tab(tab_id, auth_context.organization_id, auth_context.actor)
    return success_response(TabOut.model_validate(tab))


# ===== Voiding =====

@router.get("/{tab_id}/void", response_model=ApiResponse[VoidValidationOut])
def check_tab_voiding(
    tab_id: UUID,
    db: Session = Depends(get_db),
    auth_context: AuthContext = Depends(AuthDependencies.require_merchant())
):
    return success_response(TabVoidingService(db).check_voiding(tab_id, auth_context.organization_id))


@router.post("/{tab_id}/void", response_model=ApiResponse[VoidResultOut])
def void_tab(
    tab_id: UUID,
    data: VoidTabRequest,
    db: Session = Depends(get_db),
    auth_context: AuthContext = Depends(AuthDependencies.require_merchant())
):
    service = TabVoidingService(db)
    warnings = service.check_voiding(tab_id, auth_context.organization_id).warnings
    tab, audit_entry = service.void_tab(
        tab_id, auth_context.organization_id, data.reason, auth_context.actor,
        skip_validation=data.skip_validation,
        close_active_billing_groups=data.close_active_billing_groups,
        void_draft_invoices=data.void_draft_invoices
    )
    return success_response(VoidResultOut(tab=TabOut.model_validate(tab), audit_entry=audit_entry, warnings=warnings))


@router.get("/{tab_id}/void-history", response_model=ApiResponse[List[dict]])
def get_void_history(
    tab_id: UUID,
    db: Session = Depends(get_db),
    auth_context: AuthContext = Depends(AuthDependencies.require_merchant())
):
    return success_response(TabVoidingService(db).get_voiding_history(tab_id, auth_context.organization_id))


@router.post("/{tab_id}/restore", response_model=ApiResponse[VoidResultOut])
def restore_tab(
    tab_id: UUID,
    db: Session = Depends(get_db),
    auth_context: AuthContext = Depends(AuthDependencies.require_merchant())
):
    tab, entry = TabVoidingService(db).restore_voided_tab(tab_id, auth_context.organization_id, auth_context.actor)
    return success_response(VoidResultOut(tab=TabOut.model_validate(tab), audit_entry=entry))


# ===== Billing groups and invoices =====

@router.post("/{tab_id}/enable-billing-groups", response_model=ApiResponse[List[BillingGroupOut]],
             status_code=status.HTTP_201_CREATED)
def enable_billing_groups(
    tab_id: UUID,
    data: EnableBillingGroupsRequest,
    db: Session = Depends(get_db),
    auth_context: AuthContext = Depends(AuthDependencies.require_merchant())
):
    groups = BillingGroupService(db).enable_billing_groups(
        tab_id, auth_context.organization_id, data.template, default_groups=data.default_groups
    )
    return success_response([BillingGroupOut.model_validate(g) for g in groups])


@router.post("/{tab_id}/quick-split", response_model=ApiResponse[QuickSplitOut], status_code=status.HTTP_201_CREATED)
def quick_split_tab(
    tab_id: UUID,
    data: QuickSplitRequest,
    db: Session = Depends(get_db),
    auth_context: AuthContext = Depends(AuthDependencies.require_merchant())
):
    """
    Dividir la cuenta en grupos: en partes iguales, por categoría o empresa/personal.
    """
    groups, assigned = BillingGroupService(db).quick_split(tab_id, auth_context.organization_id, data)
    return success_response(QuickSplitOut(
        split_type=data.split_type,
        groups=[BillingGroupOut.model_validate(g) for g in groups],
        groups_created=len(groups),
        items_assigned=assigned
    ))


@router.get("/{tab_id}/billing-summary", response_model=ApiResponse[BillingSummaryOut])
def get_billing_summary(
    tab_id: UUID,
    db: Session = Depends(get_db),
    auth_context: AuthContext = Depends(AuthDependencies.require_merchant())
):
    return success_response(BillingGroupService(db).get_billing_summary(tab_id, auth_context.organization_id))


@router.get("/{tab_id}/default-billing-group", response_model=ApiResponse[BillingGroupOut])
def get_default_billing_group(
    tab_id: UUID,
    db: Session = Depends(get_db),
    auth_context: AuthContext = Depends(AuthDependencies.require_merchant())
):
    group = BillingGroupDeletionService(db).get_or_create_default_group(tab_id, auth_context.organization_id)
    return success_response(BillingGroupOut.model_validate(group))


@router.post("/{tab_id}/invoice", response_model=ApiResponse[InvoiceDetail], status_code=status.HTTP_201_CREATED)
def create_tab_invoice(
    tab_id: UUID,
    data: TabInvoiceCreate,
    send: bool = Query(False),
    db: Session = Depends(get_db),
    auth_context: AuthContext = Depends(AuthDependencies.require_merchant())
):
    """
    Generar factura por el saldo de la cuenta. Con ?send=true se envía de inmediato.
    """
    service = InvoiceService(db)
    invoice = service.create_invoice(
        InvoiceCreate(tab_id=tab_id, due_date=data.due_date, notes=data.notes),
        auth_context.organization_id
    )
    if send:
        invoice, _ = service.send_invoice(
            invoice.id,
            InvoiceSend(recipient_email=data.recipient_email, cc_emails=data.cc_emails),
            auth_context.organization_id
        )
    return success_response(InvoiceDetail.model_validate(invoice), meta={"sent": send})


corporate_router = APIRouter(prefix="/corporate/tabs", tags=["Corporate"])


@corporate_router.get("/", response_model=PaginatedResponse[TabOut])
def list_corporate_tabs(
    merchant_id: Optional[UUID] = Query(None),
    status_filter: Optional[TabStatus] = Query(None, alias="status"),
    page: Optional[int] = Query(None),
    page_size: Optional[int] = Query(None),
    db: Session = Depends(get_db),
    auth_context: AuthContext = Depends(AuthDependencies.require_corporate())
):
    """
    Listar las cuentas que los comercios abrieron a nombre de la organización corporativa.
    """
    page, page_size = normalize_pagination(page, page_size)
    tabs, total = TabService(db).list_customer_tabs(
        auth_context.organization_id, merchant_id, status_filter, page, page_size
    )
    return paginated_response([TabOut.model_validate(t) for t in tabs], page, page_size, total)
