import logging
from typing import List, Tuple
from uuid import UUID
from sqlalchemy.orm import Session

from app.modules.api_keys.models import ApiKey
from app.modules.api_keys.schemas import ApiKeyCreate, ApiKeyUpdate
from app.modules.auth.utils import generate_api_key, hash_api_key
from app.common.errors import AppError, NotFoundError, ValidationError, DatabaseError
from app.common.utils import utcnow

logger = logging.getLogger(__name__)

KEY_PREFIX_LENGTH = 13  # "tab_live_" + 4 caracteres visibles


class ApiKeyService:
    def __init__(self, db: Session):
        self.db = db

    def list_keys(self, organization_id: UUID) -> List[ApiKey]:
        return self.db.query(ApiKey).filter(
            ApiKey.organization_id == organization_id
        ).order_by(ApiKey.created_at.desc()).all()

    def get_key(self, key_id: UUID, organization_id: UUID) -> ApiKey:
        api_key = self.db.query(ApiKey).filter(
            ApiKey.id == key_id,
            ApiKey.organization_id == organization_id
        ).first()
        if not api_key:
            raise NotFoundError("API key")
        return api_key

    def create_key(self, data: ApiKeyCreate, organization_id: UUID, user_id: UUID) -> Tuple[ApiKey, str]:
        """
        Genera una llave nueva. Retorna (registro, llave en claro).
        """
        try:
            raw_key = generate_api_key(data.environment.value)
            api_key = ApiKey(
                organization_id=organization_id,
                name=data.name,
                key_hash=hash_api_key(raw_key),
                key_prefix=raw_key[:KEY_PREFIX_LENGTH],
                scope=data.scope,
                environment=data.environment,
                expires_at=data.expires_at,
                created_by=user_id
            )
            self.db.add(api_key)
            self.db.commit()
            self.db.refresh(api_key)
            logger.info(f"API key {api_key.id} created for organization {organization_id}")
            return api_key, raw_key
        except AppError:
            raise
        except Exception as e:
            self.db.rollback()
            logger.error(f"Error creating API key: {e}")
            raise DatabaseError("Failed to create API key")

    def update_key(self, key_id: UUID, data: ApiKeyUpdate, organization_id: UUID) -> ApiKey:
        api_key = self.get_key(key_id, organization_id)
        if data.is_active and api_key.revoked_at is not None:
            raise ValidationError("Revoked API keys cannot be re-activated")

        updates = data.model_dump(exclude_unset=True, exclude_none=True)
        for field, value in updates.items():
            setattr(api_key, field, value)
        self.db.commit()
        self.db.refresh(api_key)
        return api_key

    def revoke_key(self, key_id: UUID, organization_id: UUID) -> ApiKey:
        api_key = self.get_key(key_id, organization_id)
        if api_key.revoked_at is not None:
            raise ValidationError("API key is already revoked")
        api_key.is_active = False
        api_key.revoked_at = utcnow()
        self.db.commit()
        self.db.refresh(api_key)
        logger.info(f"API key {api_key.id} revoked")
        return api_key
