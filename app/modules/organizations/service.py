import logging
from typing import List
from uuid import UUID
from sqlalchemy.orm import Session

from app.modules.organizations.models import Organization, OrganizationUser, OrganizationRole
from app.modules.organizations.schemas import (
    OrganizationCreate, OrganizationUpdate, TeamMemberAdd, TeamMemberOut
)
from app.modules.auth.models import User
from app.common.errors import AppError, ConflictError, NotFoundError, ForbiddenError, ValidationError, DatabaseError
from app.common.validators import slugify
from app.core.config import settings

logger = logging.getLogger(__name__)


class OrganizationService:
    """Organizaciones (tenants) y su equipo."""

    def __init__(self, db: Session):
        self.db = db

    def _unique_slug(self, name: str) -> str:
        base = slugify(name)
        slug = base
        suffix = 1
        while self.db.query(Organization).filter(Organization.slug == slug).first():
            suffix += 1
            slug = f"{base}-{suffix}"
        return slug

    def create_organization(self, data: OrganizationCreate, user: User) -> Organization:
        """El creador queda como owner."""
        try:
            organization = Organization(
                name=data.name.strip(),
                slug=self._unique_slug(data.name),
                is_merchant=data.is_merchant,
                is_corporate=data.is_corporate,
                billing_email=data.billing_email or user.email
            )
            self.db.add(organization)
            self.db.flush()

            self.db.add(OrganizationUser(
                organization_id=organization.id,
                user_id=user.id,
                role=OrganizationRole.OWNER
            ))
            self.db.commit()
            self.db.refresh(organization)
            logger.info(f"Organization {organization.id} created by user {user.id}")
            return organization
        except AppError:
            raise
        except Exception as e:
            self.db.rollback()
            logger.error(f"Error creating organization: {e}")
            raise DatabaseError("Failed to create organization")

    def list_user_organizations(self, user: User) -> List[Organization]:
        return self.db.query(Organization).join(OrganizationUser).filter(
            OrganizationUser.user_id == user.id,
            OrganizationUser.is_active == True
        ).order_by(Organization.name).all()

    def get_organization(self, organization_id: UUID) -> Organization:
        organization = self.db.query(Organization).filter(Organization.id == organization_id).first()
        if not organization:
            raise NotFoundError("Organization")
        return organization

    def update_organization(self, organization_id: UUID, data: OrganizationUpdate) -> Organization:
        organization = self.get_organization(organization_id)
        updates = data.model_dump(exclude_unset=True)
        for field, value in updates.items():
            setattr(organization, field, value)
        self.db.commit()
        self.db.refresh(organization)
        return organization

    # ===== Team =====

    def _membership(self, organization_id: UUID, user_id: UUID) -> OrganizationUser:
        membership = self.db.query(OrganizationUser).filter(
            OrganizationUser.organization_id == organization_id,
            OrganizationUser.user_id == user_id
        ).first()
        if not membership:
            raise NotFoundError("Team member")
        return membership

    def _owner_count(self, organization_id: UUID) -> int:
        return self.db.query(OrganizationUser).filter(
            OrganizationUser.organization_id == organization_id,
            OrganizationUser.role == OrganizationRole.OWNER,
            OrganizationUser.is_active == True
        ).count()

    def list_team(self, organization_id: UUID) -> List[TeamMemberOut]:
        memberships = self.db.query(OrganizationUser).filter(
            OrganizationUser.organization_id == organization_id
        ).all()
        return [
            TeamMemberOut(
                user_id=m.user_id,
                email=m.user.email,
                full_name=m.user.full_name,
                role=m.role,
                is_active=m.is_active,
                joined_at=m.joined_at
            )
            for m in memberships
        ]

    def add_member(self, organization_id: UUID, data: TeamMemberAdd, actor_role: str) -> OrganizationUser:
        if data.role == OrganizationRole.OWNER and actor_role != OrganizationRole.OWNER.value:
            raise ForbiddenError("Only owners can add other owners")

        user = self.db.query(User).filter(User.email == data.email.lower()).first()
        if not user:
            raise NotFoundError("User")

        existing = self.db.query(OrganizationUser).filter(
            OrganizationUser.organization_id == organization_id,
            OrganizationUser.user_id == user.id
        ).first()
        if existing and existing.is_active:
            raise ConflictError("User is already a member of this organization")

        if existing:
            existing.is_active = True
            existing.role = data.role
            membership = existing
        else:
            membership = OrganizationUser(organization_id=organization_id, user_id=user.id, role=data.role)
            self.db.add(membership)
        self.db.commit()
        self.db.refresh(membership)
        self._notify_member_added(organization_id, user, data.role)
        return membership

    def _notify_member_added(self, organization_id: UUID, user: User, role: OrganizationRole) -> None:
        """Aviso por correo al nuevo miembro. Si la cola falla, el alta se mantiene."""
        from app.modules.email.tasks import send_template_email_task

        organization = self.get_organization(organization_id)
        try:
            send_template_email_task.delay(
                to_emails=[user.email],
                subject=f"You've been added to {organization.name} on Tab",
                template_name="team_member_added.html",
                context={
                    "organization_name": organization.name,
                    "member_name": user.full_name or user.email,
                    "role": role.value,
                    "dashboard_url": f"{settings.FRONTEND_URL}/dashboard",
                }
            )
        except Exception as e:
            logger.warning(f"Could not queue team notification for {user.email}: {e}")

    def update_member_role(self, organization_id: UUID, user_id: UUID, role: OrganizationRole,
                           actor_role: str) -> OrganizationUser:
        membership = self._membership(organization_id, user_id)
        touches_owner = role == OrganizationRole.OWNER or membership.role == OrganizationRole.OWNER
        if touches_owner and actor_role != OrganizationRole.OWNER.value:
            raise ForbiddenError("Only owners can grant or revoke the owner role")

        if membership.role == OrganizationRole.OWNER and role != OrganizationRole.OWNER:
            if self._owner_count(organization_id) <= 1:
                raise ValidationError("Organization must keep at least one owner")

        membership.role = role
        self.db.commit()
        self.db.refresh(membership)
        return membership

    def remove_member(self, organization_id: UUID, user_id: UUID, actor_role: str) -> None:
        membership = self._membership(organization_id, user_id)
        if membership.role == OrganizationRole.OWNER:
            if actor_role != OrganizationRole.OWNER.value:
                raise ForbiddenError("Only owners can remove an owner")
            if self._owner_count(organization_id) <= 1:
                raise ValidationError("Cannot remove the last owner of the organization")

        self.db.delete(membership)
        self.db.commit()
        logger.info(f"User {user_id} removed from organization {organization_id}")
