from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session
from typing import List
from uuid import UUID

from app.database.database import get_db
from app.modules.auth.dependencies import AuthDependencies, get_current_user
from app.modules.auth.models import User
from app.modules.auth.schemas import AuthContext
from app.modules.organizations.service import OrganizationService
from app.modules.organizations.schemas import (
    OrganizationCreate, OrganizationUpdate, OrganizationOut,
    TeamMemberAdd, TeamMemberUpdate, TeamMemberOut
)
from app.common.errors import ForbiddenError
from app.common.responses import ApiResponse, success_response

router = APIRouter(prefix="/organizations", tags=["Organizations"])


def ensure_same_organization(organization_id: UUID, auth_context: AuthContext) -> None:
    """El id de la ruta debe coincidir con la organización autenticada."""
    if auth_context.organization_id != organization_id:
        raise ForbiddenError("You do not have access to this organization")


@router.post("/", response_model=ApiResponse[OrganizationOut], status_code=status.HTTP_201_CREATED)
def create_organization(
    data: OrganizationCreate,
    db: Session = Depends(get_db),
    current_user: User = Depends(get_current_user)
):
    """
    Crear una organización. El usuario que la crea queda como owner.
    """
    organization = OrganizationService(db).create_organization(data, current_user)
    return success_response(OrganizationOut.model_validate(organization))


@router.get("/", response_model=ApiResponse[List[OrganizationOut]])
def list_my_organizations(db: Session = Depends(get_db), current_user: User = Depends(get_current_user)):
    organizations = OrganizationService(db).list_user_organizations(current_user)
    return success_response([OrganizationOut.model_validate(o) for o in organizations])


@router.get("/{organization_id}", response_model=ApiResponse[OrganizationOut])
def get_organization(
    organization_id: UUID,
    db: Session = Depends(get_db),
    auth_context: AuthContext = Depends(AuthDependencies.get_auth_context)
):
    ensure_same_organization(organization_id, auth_context)
    organization = OrganizationService(db).get_organization(organization_id)
    return success_response(OrganizationOut.model_validate(organization))


@router.patch("/{organization_id}", response_model=ApiResponse[OrganizationOut])
def update_organization(
    organization_id: UUID,
    data: OrganizationUpdate,
    db: Session = Depends(get_db),
    auth_context: AuthContext = Depends(AuthDependencies.require_role(["owner", "admin"]))
):
    ensure_same_organization(organization_id, auth_context)
    organization = OrganizationService(db).update_organization(organization_id, data)
    return success_response(OrganizationOut.model_validate(organization))


@router.get("/{organization_id}/team", response_model=ApiResponse[List[TeamMemberOut]])
def list_team(
    organization_id: UUID,
    db: Session = Depends(get_db),
    auth_context: AuthContext = Depends(AuthDependencies.require_role(["owner", "admin", "member", "viewer"]))
):
    ensure_same_organization(organization_id, auth_context)
    return success_response(OrganizationService(db).list_team(organization_id))


@router.post("/{organization_id}/team", response_model=ApiResponse[dict], status_code=status.HTTP_201_CREATED)
def add_team_member(
    organization_id: UUID,
    data: TeamMemberAdd,
    db: Session = Depends(get_db),
    auth_context: AuthContext = Depends(AuthDependencies.require_role(["owner", "admin"]))
):
    """
    Agregar un usuario existente al equipo por email.
    """
    ensure_same_organization(organization_id, auth_context)
    membership = OrganizationService(db).add_member(organization_id, data, auth_context.role)
    return success_response({"user_id": str(membership.user_id), "role": membership.role.value})


@router.patch("/{organization_id}/team/{user_id}", response_model=ApiResponse[dict])
def update_team_member(
    organization_id: UUID,
    user_id: UUID,
    data: TeamMemberUpdate,
    db: Session = Depends(get_db),
    auth_context: AuthContext = Depends(AuthDependencies.require_role(["owner", "admin"]))
):
    ensure_same_organization(organization_id, auth_context)
    membership = OrganizationService(db).update_member_role(organization_id, user_id, data.role, auth_context.role)
    return success_response({"user_id": str(membership.user_id), "role": membership.role.value})


@router.delete("/{organization_id}/team/{user_id}", response_model=ApiResponse[dict])
def remove_team_member(
    organization_id: UUID,
    user_id: UUID,
    db: Session = Depends(get_db),
    auth_context: AuthContext = Depends(AuthDependencies.require_role(["owner", "admin"]))
):
    ensure_same_organization(organization_id, auth_context)
    OrganizationService(db).remove_member(organization_id, user_id, auth_context.role)
    return success_response({"user_id": str(user_id), "removed": True})
