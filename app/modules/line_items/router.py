from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session
from typing import List
from uuid import UUID

from app.database.database import get_db
from app.modules.auth.dependencies import AuthDependencies
from app.modules.auth.schemas import AuthContext
from app.modules.line_items.service import LineItemService
from app.modules.line_items.schemas import (
    LineItemCreate, LineItemUpdate, LineItemOut, LineItemWithProtection,
    PaymentProtection, LineItemAssign, BulkAssignRequest
)
from app.modules.billing_groups.service import BillingGroupService
from app.common.responses import ApiResponse, success_response

router = APIRouter(prefix="/line-items", tags=["Line Items"])


@router.post("/", response_model=ApiResponse[LineItemOut], status_code=status.HTTP_201_CREATED)
def create_line_item(
    data: LineItemCreate,
    db: Session = Depends(get_db),
    auth_context: AuthContext = Depends(AuthDependencies.require_merchant())
):
    """
    Agregar un cargo a una cuenta. Si la cuenta tiene grupos de facturación
    y no se indica uno, se asigna por reglas.
    """
    item = LineItemService(db).create_line_item(data, auth_context.organization_id, auth_context.actor)
    return success_response(LineItemOut.model_validate(item))


@router.get("/", response_model=ApiResponse[List[LineItemWithProtection]])
def list_line_items(
    tab_id: UUID = Query(...),
    db: Session = Depends(get_db),
    auth_context: AuthContext = Depends(AuthDependencies.require_merchant())
):
    return success_response(LineItemService(db).list_by_tab(tab_id, auth_context.organization_id))


@router.post("/bulk-assign", response_model=ApiResponse[List[LineItemOut]])
def bulk_assign_line_items(
    data: BulkAssignRequest,
    db: Session = Depends(get_db),
    auth_context: AuthContext = Depends(AuthDependencies.require_merchant())
):
    items = BillingGroupService(db).bulk_assign(
        data.line_item_ids, data.billing_group_id, auth_context.organization_id,
        actor=auth_context.actor, reason=data.reason
    )
    return success_response([LineItemOut.model_validate(i) for i in items])


@router.get("/{item_id}", response_model=ApiResponse[LineItemWithProtection])
def get_line_item(
    item_id: UUID,
    db: Session = Depends(get_db),
    auth_context: AuthContext = Depends(AuthDependencies.require_merchant())
):
    service = LineItemService(db)
    item = service.get_line_item(item_id, auth_context.organization_id)
    return success_response(service.with_protection(item))


@router.patch("/{item_id}", response_model=ApiResponse[LineItemOut])
def update_line_item(
    item_id: UUID,
    data: LineItemUpdate,
    force: bool = Query(False),
    db: Session = Depends(get_db),
    auth_context: AuthContext = Depends(AuthDependencies.require_merchant())
):
    item = LineItemService(db).update_line_item(item_id, data, auth_context.organization_id, force=force)
    return success_response(LineItemOut.model_validate(item))


@router.delete("/{item_id}", response_model=ApiResponse[dict])
def delete_line_item(
    item_id: UUID,
    force: bool = Query(False),
    db: Session = Depends(get_db),
    auth_context: AuthContext = Depends(AuthDependencies.require_merchant())
):
    LineItemService(db).delete_line_item(item_id, auth_context.organization_id, force=force)
    return success_response({"id": str(item_id), "deleted": True})


@router.get("/{item_id}/protection-status", response_model=ApiResponse[PaymentProtection])
def get_protection_status(
    item_id: UUID,
    db: Session = Depends(get_db),
    auth_context: AuthContext = Depends(AuthDependencies.require_merchant())
):
    service = LineItemService(db)
    item = service.get_line_item(item_id, auth_context.organization_id)
    return success_response(service.check_payment_protection(item))


@router.post("/{item_id}/assign", response_model=ApiResponse[LineItemOut])
def assign_line_item(
    item_id: UUID,
    data: LineItemAssign,
    db: Session = Depends(get_db),
    auth_context: AuthContext = Depends(AuthDependencies.require_merchant())
):
    item = LineItemService(db).assign(
        item_id, data.billing_group_id, auth_context.organization_id, auth_context.actor, data.reason
    )
    return success_response(LineItemOut.model_validate(item))


@router.post("/{item_id}/unassign", response_model=ApiResponse[LineItemOut])
def unassign_line_item(
    item_id: UUID,
    db: Session = Depends(get_db),
    auth_context: AuthContext = Depends(AuthDependencies.require_merchant())
):
    item = LineItemService(db).unassign(item_id, auth_context.organization_id, auth_context.actor)
    return success_response(LineItemOut.model_validate(item))
