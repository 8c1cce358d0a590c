from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session
from typing import List
from uuid import UUID

from app.database.database import get_db
from app.modules.auth.dependencies import AuthDependencies
from app.modules.auth.schemas import AuthContext
from app.modules.api_keys.service import ApiKeyService
from app.modules.api_keys.schemas import ApiKeyCreate, ApiKeyUpdate, ApiKeyOut, ApiKeyCreated
from app.modules.organizations.router import ensure_same_organization
from app.common.responses import ApiResponse, success_response

router = APIRouter(prefix="/organizations/{organization_id}/api-keys", tags=["API Keys"])


@router.get("/", response_model=ApiResponse[List[ApiKeyOut]])
def list_api_keys(
    organization_id: UUID,
    db: Session = Depends(get_db),
    auth_context: AuthContext = Depends(AuthDependencies.require_role(["owner", "admin"]))
):
    ensure_same_organization(organization_id, auth_context)
    keys = ApiKeyService(db).list_keys(organization_id)
    return success_response([ApiKeyOut.model_validate(k) for k in keys])


@router.post("/", response_model=ApiResponse[ApiKeyCreated], status_code=status.HTTP_201_CREATED)
def create_api_key(
    organization_id: UUID,
    data: ApiKeyCreate,
    db: Session = Depends(get_db),
    auth_context: AuthContext = Depends(AuthDependencies.require_role(["owner", "admin"]))
):
    """
    Crear una API key. La llave completa solo se muestra en esta respuesta.
    """
    ensure_same_organization(organization_id, auth_context)
    api_key, raw_key = ApiKeyService(db).create_key(data, organization_id, auth_context.user_id)
    payload = ApiKeyOut.model_validate(api_key).model_dump()
    return success_response(ApiKeyCreated(**payload, key=raw_key))


@router.patch("/{key_id}", response_model=ApiResponse[ApiKeyOut])
def update_api_key(
    organization_id: UUID,
    key_id: UUID,
    data: ApiKeyUpdate,
    db: Session = Depends(get_db),
    auth_context: AuthContext = Depends(AuthDependencies.require_role(["owner", "admin"]))
):
    ensure_same_organization(organization_id, auth_context)
    api_key = ApiKeyService(db).update_key(key_id, data, organization_id)
    return success_response(ApiKeyOut.model_validate(api_key))


@router.delete("/{key_id}", response_model=ApiResponse[ApiKeyOut])
def revoke_api_key(
    organization_id: UUID,
    key_id: UUID,
    db: Session = Depends(get_db),
    auth_context: AuthContext = Depends(AuthDependencies.require_role(["owner", "admin"]))
):
    ensure_same_organization(organization_id, auth_context)
    api_key = ApiKeyService(db).revoke_key(key_id, organization_id)
    return success_response(ApiKeyOut.model_validate(api_key))
