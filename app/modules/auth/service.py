import logging
from sqlalchemy.orm import Session

from app.modules.auth.models import User
from app.modules.auth.schemas import UserCreate, UserOut, TokenResponse, UserMembershipOut
from app.modules.auth.utils import hash_password, verify_password, create_access_token
from app.common.errors import AppError, ConflictError, UnauthorizedError, ForbiddenError, DatabaseError
from app.common.utils import utcnow
from app.core.config import settings

logger = logging.getLogger(__name__)


class AuthService:
    """
    Registro y login de usuarios del dashboard.
    """

    def __init__(self, db: Session):
        self.db = db

    def create_user(self, user_data: UserCreate) -> User:
        existing = self.db.query(User).filter(User.email == user_data.email).first()
        if existing:
            raise ConflictError("A user with this email already exists")

        try:
            user = User(
                email=user_data.email,
                password=hash_password(user_data.password),
                full_name=user_data.full_name,
                is_active=True
            )
            self.db.add(user)
            self.db.commit()
            self.db.refresh(user)
            logger.info(f"User registered: {user.id}")
            return user
        except AppError:
            raise
        except Exception as e:
            self.db.rollback()
            logger.error(f"Error registering user: {e}")
            raise DatabaseError("Failed to register user")

    def login(self, email: str, password: str) -> TokenResponse:
        """
        Login de usuario con listado de organizaciones.
        """
        user = self.db.query(User).filter(User.email == email.lower()).first()

        if not user or not verify_password(password, user.password):
            raise UnauthorizedError("Invalid email or password")

        if not user.is_active:
            raise ForbiddenError("Account is inactive")

        user.last_login = utcnow()
        self.db.commit()

        access_token = create_access_token({"sub": str(user.id), "email": user.email})

        return TokenResponse(
            access_token=access_token,
            token_type="bearer",
            expires_in=settings.ACCESS_TOKEN_EXPIRE_MINUTES * 60,
            user=UserOut.model_validate(user),
            organizations=self.get_memberships(user)
        )

    def get_memberships(self, user: User) -> list[UserMembershipOut]:
        return [
            UserMembershipOut(
                organization_id=m.organization_id,
                organization_name=m.organization.name,
                role=m.role.value,
                is_merchant=m.organization.is_merchant,
                is_corporate=m.organization.is_corporate
            )
            for m in user.memberships if m.is_active
        ]
