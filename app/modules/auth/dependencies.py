"""
Dependencias de autenticación para FastAPI.

Una petición se autentica con `x-api-key` (integraciones) o con un JWT
Bearer más el header `x-organization-id` (dashboard). Ambos caminos
producen un AuthContext con la organización activa.
"""
import logging
from typing import Optional
from uuid import UUID
from fastapi import Depends, Header
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.orm import Session

from app.database.database import get_db
from app.modules.auth.models import User
from app.modules.auth.schemas import AuthContext
from app.modules.auth.utils import verify_token, hash_api_key
from app.modules.api_keys.models import ApiKey, ApiKeyScope
from app.modules.organizations.models import Organization, OrganizationUser
from app.common.errors import UnauthorizedError, ForbiddenError, ValidationError, RateLimitError
from app.common.validators import validate_api_key_format
from app.common.utils import utcnow, as_utc
from app.core.cache import check_rate_limit
from app.core.config import settings

logger = logging.getLogger(__name__)

# auto_error=False: la ausencia de Bearer se resuelve como 401 propio (o API key)
security = HTTPBearer(auto_error=False)


class AuthDependencies:
    """Dependencias de autenticación reutilizables."""

    @staticmethod
    def get_current_user(
        credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
        db: Session = Depends(get_db)
    ) -> User:
        """
        Obtener usuario actual desde token JWT.
        No requiere organización (para endpoints generales).
        """
        if credentials is None:
            raise UnauthorizedError()

        payload = verify_token(credentials.credentials)
        user_id = payload.get("sub")
        if user_id is None:
            raise UnauthorizedError("Invalid token")

        try:
            user = db.query(User).filter(User.id == UUID(user_id)).first()
        except ValueError:
            raise UnauthorizedError("Invalid token")

        if user is None or not user.is_active:
            raise UnauthorizedError("Could not validate credentials")

        return user

    @staticmethod
    def _authenticate_api_key(raw_key: str, db: Session) -> AuthContext:
        if not validate_api_key_format(raw_key):
            raise UnauthorizedError("Invalid API key format")

        api_key = db.query(ApiKey).filter(ApiKey.key_hash == hash_api_key(raw_key)).first()
        if api_key is None or not api_key.is_active or api_key.revoked_at is not None:
            raise UnauthorizedError("Invalid API key")

        if api_key.expires_at is not None and as_utc(api_key.expires_at) <= utcnow():
            raise UnauthorizedError("API key has expired")

        allowed, retry_after = check_rate_limit(
            f"api_key:{api_key.id}", settings.RATE_LIMIT_REQUESTS, settings.RATE_LIMIT_WINDOW
        )
        if not allowed:
            raise RateLimitError(retry_after=retry_after)

        organization = db.query(Organization).filter(Organization.id == api_key.organization_id).first()
        if organization is None:
            raise UnauthorizedError("Invalid API key")

        api_key.last_used_at = utcnow()
        db.commit()

        return AuthContext(
            organization_id=organization.id,
            auth_type="api_key",
            scope=api_key.scope.value,
            api_key_id=api_key.id,
            is_merchant=organization.is_merchant,
            is_corporate=organization.is_corporate,
        )

    @staticmethod
    def _authenticate_session(token: str, organization_header: Optional[str], db: Session) -> AuthContext:
        payload = verify_token(token)
        user_id = payload.get("sub")
        if user_id is None:
            raise UnauthorizedError("Invalid token")

        if not organization_header:
            raise ValidationError("x-organization-id header is required for session authentication")
        try:
            organization_id = UUID(organization_header)
            user_uuid = UUID(user_id)
        except ValueError:
            raise ValidationError("Invalid organization id")

        user = db.query(User).filter(User.id == user_uuid).first()
        if user is None or not user.is_active:
            raise UnauthorizedError("Could not validate credentials")

        membership = db.query(OrganizationUser).filter(
            OrganizationUser.organization_id == organization_id,
            OrganizationUser.user_id == user.id,
            OrganizationUser.is_active == True
        ).first()
        if membership is None:
            raise ForbiddenError("You do not have access to this organization")

        organization = membership.organization
        return AuthContext(
            organization_id=organization.id,
            auth_type="session",
            user_id=user.id,
            role=membership.role.value,
            is_merchant=organization.is_merchant,
            is_corporate=organization.is_corporate,
        )

    @staticmethod
    def get_auth_context(
        x_api_key: Optional[str] = Header(None, alias="x-api-key"),
        x_organization_id: Optional[str] = Header(None, alias="x-organization-id"),
        credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
        db: Session = Depends(get_db)
    ) -> AuthContext:
        """
        Obtener contexto de autenticación completo con organización.
        La API key tiene prioridad sobre la sesión.
        """
        if x_api_key:
            return AuthDependencies._authenticate_api_key(x_api_key, db)
        if credentials is not None:
            return AuthDependencies._authenticate_session(credentials.credentials, x_organization_id, db)
        raise UnauthorizedError("Missing API key or bearer token")

    @staticmethod
    def require_merchant():
        """Requiere organización comercio y, con API key, scope merchant/full."""
        def merchant_checker(auth_context: AuthContext = Depends(AuthDependencies.get_auth_context)):
            if not auth_context.is_merchant:
                raise ForbiddenError("Organization is not a merchant")
            if auth_context.auth_type == "api_key" and auth_context.scope not in (
                ApiKeyScope.MERCHANT.value, ApiKeyScope.FULL.value
            ):
                raise ForbiddenError("API key scope does not allow merchant operations")
            return auth_context
        return merchant_checker

    @staticmethod
    def require_corporate():
        """Requiere organización corporativa y, con API key, scope corporate/full."""
        def corporate_checker(auth_context: AuthContext = Depends(AuthDependencies.get_auth_context)):
            if not auth_context.is_corporate:
                raise ForbiddenError("Organization is not a corporate account")
            if auth_context.auth_type == "api_key" and auth_context.scope not in (
                ApiKeyScope.CORPORATE.value, ApiKeyScope.FULL.value
            ):
                raise ForbiddenError("API key scope does not allow corporate operations")
            return auth_context
        return corporate_checker

    @staticmethod
    def require_role(allowed_roles: list[str]):
        """
        Dependencia para requerir roles específicos (solo sesión de usuario).
        """
        def role_checker(auth_context: AuthContext = Depends(AuthDependencies.get_auth_context)):
            if auth_context.auth_type != "session":
                raise ForbiddenError("This operation requires a user session")
            if auth_context.role not in allowed_roles:
                raise ForbiddenError(f"Requires one of these roles: {', '.join(allowed_roles)}")
            return auth_context
        return role_checker

    @staticmethod
    def require_owner_or_admin():
        """Dependencia para requerir rol de owner o admin."""
        return AuthDependencies.require_role(["owner", "admin"])

# Instancias de dependencias
get_current_user = AuthDependencies.get_current_user
get_auth_context = AuthDependencies.get_auth_context
require_merchant = AuthDependencies.require_merchant
require_owner_or_admin = AuthDependencies.require_owner_or_admin
