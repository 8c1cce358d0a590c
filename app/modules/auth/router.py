from fastapi import APIRouter, Depends, status
from fastapi.security import OAuth2PasswordRequestForm
from sqlalchemy.orm import Session

from app.database.database import get_db
from app.modules.auth.service import AuthService
from app.modules.auth.dependencies import get_current_user
from app.modules.auth.models import User
from app.modules.auth.schemas import UserCreate, UserOut, TokenResponse
from app.common.responses import ApiResponse, success_response

auth_router = APIRouter(prefix="/auth", tags=["Auth"])


@auth_router.post("/register", response_model=ApiResponse[UserOut], status_code=status.HTTP_201_CREATED)
def register(user_data: UserCreate, db: Session = Depends(get_db)):
    """
    Registrar nuevo usuario.
    """
    user = AuthService(db).create_user(user_data)
    return success_response(UserOut.model_validate(user))


@auth_router.post("/login", response_model=ApiResponse[TokenResponse])
def login(form_data: OAuth2PasswordRequestForm = Depends(), db: Session = Depends(get_db)):
    """
    Login de usuario. Retorna token de acceso y lista de organizaciones.
    """
    return success_response(AuthService(db).login(form_data.username, form_data.password))


@auth_router.get("/me", response_model=ApiResponse[dict])
def get_current_user_info(current_user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    service = AuthService(db)
    return success_response({
        "user": UserOut.model_validate(current_user).model_dump(mode="json"),
        "organizations": [m.model_dump(mode="json") for m in service.get_memberships(current_user)],
    })
