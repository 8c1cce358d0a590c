import logging
from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session
from typing import List, Optional
from uuid import UUID

from app.database.database import get_db
from app.modules.auth.dependencies import AuthDependencies
from app.modules.auth.schemas import AuthContext
from app.modules.billing_groups.service import BillingGroupService
from app.modules.billing_groups.deletion import BillingGroupDeletionService
from app.modules.billing_groups.schemas import (
    BillingGroupCreate, BillingGroupUpdate, BillingGroupOut,
    RuleCreate, RuleUpdate, RuleOut, DepositApply, DeletionCheckOut
)
from app.modules.invoices.service import InvoiceService
from app.modules.invoices.schemas import GroupInvoiceCreate, InvoiceDetail, InvoiceSend
from app.common.errors import AppError
from app.common.responses import ApiResponse, success_response

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/billing-groups", tags=["Billing Groups"])


@router.get("/", response_model=ApiResponse[List[BillingGroupOut]])
def list_billing_groups(
    tab_id: Optional[UUID] = Query(None),
    db: Session = Depends(get_db),
    auth_context: AuthContext = Depends(AuthDependencies.require_merchant())
):
    groups = BillingGroupService(db).list_groups(auth_context.organization_id, tab_id)
    return success_response([BillingGroupOut.model_validate(g) for g in groups])


@router.post("/", response_model=ApiResponse[BillingGroupOut], status_code=status.HTTP_201_CREATED)
def create_billing_group(
    data: BillingGroupCreate,
    db: Session = Depends(get_db),
    auth_context: AuthContext = Depends(AuthDependencies.require_merchant())
):
    group = BillingGroupService(db).create_group(data, auth_context.organization_id)
    return success_response(BillingGroupOut.model_validate(group))


@router.get("/{group_id}", response_model=ApiResponse[BillingGroupOut])
def get_billing_group(
    group_id: UUID,
    db: Session = Depends(get_db),
    auth_context: AuthContext = Depends(AuthDependencies.require_merchant())
):
    group = BillingGroupService(db).get_group(group_id, auth_context.organization_id)
    return success_response(BillingGroupOut.model_validate(group))


@router.patch("/{group_id}", response_model=ApiResponse[BillingGroupOut])
def update_billing_group(
    group_id: UUID,
    data: BillingGroupUpdate,
    db: Session = Depends(get_db),
    auth_context: AuthContext = Depends(AuthDependencies.require_merchant())
):
    group = BillingGroupService(db).update_group(group_id, data, auth_context.organization_id)
    return success_response(BillingGroupOut.model_validate(group))


@router.get("/{group_id}/deletion-check", response_model=ApiResponse[DeletionCheckOut])
def check_billing_group_deletion(
    group_id: UUID,
    db: Session = Depends(get_db),
    auth_context: AuthContext = Depends(AuthDependencies.require_merchant())
):
    return success_response(BillingGroupDeletionService(db).check_deletion(group_id, auth_context.organization_id))


@router.delete("/{group_id}", response_model=ApiResponse[dict])
def delete_billing_group(
    group_id: UUID,
    target_group_id: Optional[UUID] = Query(None),
    db: Session = Depends(get_db),
    auth_context: AuthContext = Depends(AuthDependencies.require_merchant())
):
    """
    Eliminar un grupo. Sus cargos pasan a target_group_id o quedan sin grupo.
    """
    result = BillingGroupDeletionService(db).delete_group(group_id, auth_context.organization_id, target_group_id)
    return success_response(result)


# ===== Rules =====

@router.get("/{group_id}/rules", response_model=ApiResponse[List[RuleOut]])
def list_rules(
    group_id: UUID,
    db: Session = Depends(get_db),
    auth_context: AuthContext = Depends(AuthDependencies.require_merchant())
):
    rules = BillingGroupService(db).list_rules(group_id, auth_context.organization_id)
    return success_response([RuleOut.model_validate(r) for r in rules])


@router.post("/{group_id}/rules", response_model=ApiResponse[RuleOut], status_code=status.HTTP_201_CREATED)
def create_rule(
    group_id: UUID,
    data: RuleCreate,
    db: Session = Depends(get_db),
    auth_context: AuthContext = Depends(AuthDependencies.require_merchant())
):
    rule = BillingGroupService(db).create_rule(group_id, data, auth_context.organization_id)
    return success_response(RuleOut.model_validate(rule))


@router.patch("/{group_id}/rules/{rule_id}", response_model=ApiResponse[RuleOut])
def update_rule(
    group_id: UUID,
    rule_id: UUID,
    data: RuleUpdate,
    db: Session = Depends(get_db),
    auth_context: AuthContext = Depends(AuthDependencies.require_merchant())
):
    rule = BillingGroupService(db).update_rule(group_id, rule_id, data, auth_context.organization_id)
    return success_response(RuleOut.model_validate(rule))


@router.delete("/{group_id}/rules/{rule_id}", response_model=ApiResponse[dict])
def delete_rule(
    group_id: UUID,
    rule_id: UUID,
    db: Session = Depends(get_db),
    auth_context: AuthContext = Depends(AuthDependencies.require_merchant())
):
    BillingGroupService(db).delete_rule(group_id, rule_id, auth_context.organization_id)
    return success_response({"id": str(rule_id), "deleted": True})


# ===== Deposits and invoices =====

@router.post("/{group_id}/deposit", response_model=ApiResponse[BillingGroupOut])
def apply_deposit(
    group_id: UUID,
    data: DepositApply,
    db: Session = Depends(get_db),
    auth_context: AuthContext = Depends(AuthDependencies.require_merchant())
):
    group, applied = BillingGroupService(db).apply_deposit(group_id, data.amount, auth_context.organization_id)
    return success_response(BillingGroupOut.model_validate(group), meta={"applied": str(applied)})


@router.post("/{group_id}/invoice", response_model=ApiResponse[InvoiceDetail], status_code=status.HTTP_201_CREATED)
def create_group_invoice(
    group_id: UUID,
    data: GroupInvoiceCreate,
    db: Session = Depends(get_db),
    auth_context: AuthContext = Depends(AuthDependencies.require_merchant())
):
    """
    Factura por el saldo del grupo; con send_immediately se envía al pagador.
    """
    service = InvoiceService(db)
    invoice = service.create_group_invoice(group_id, data, auth_context.organization_id)
    sent = False
    if data.send_immediately:
        try:
            invoice, _ = service.send_invoice(invoice.id, InvoiceSend(message=data.notes), auth_context.organization_id)
            sent = True
        except AppError as e:
            # La factura queda creada en borrador
            logger.warning(f"Invoice {invoice.invoice_number} created but not sent: {e.message}")
    return success_response(InvoiceDetail.model_validate(invoice), meta={"sent": sent})
