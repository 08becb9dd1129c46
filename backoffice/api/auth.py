from datetime import datetime

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.orm import Session

from backoffice.api.deps import get_current_user
from backoffice.database import get_db
from backoffice.errors import AuthenticationError
from backoffice.models.user import User
from backoffice.services import auth_service

router = APIRouter(prefix="/auth", tags=["Auth"])


class LoginRequest(BaseModel):
    username: str
    password: str


class UserOut(BaseModel):
    id: str
    tenant_id: str
    username: str
    display_name: str
    roles: list[str]
    active: bool = True
    created_at: datetime | None = None

    model_config = {"from_attributes": True}


class LoginOut(BaseModel):
    token: str
    token_type: str = "bearer"
    user: UserOut


@router.post("/login", response_model=LoginOut)
def login(data: LoginRequest, db: Session = Depends(get_db)):
    user = auth_service.authenticate(db, data.username, data.password)
    if not user:
        raise AuthenticationError("Invalid username or password")
    token = auth_service.create_access_token(user.id, user.username, user.tenant_id)
    return LoginOut(token=token, user=UserOut.model_validate(user))


@router.get("/me", response_model=UserOut)
def me(user: User = Depends(get_current_user)):
    return UserOut.model_validate(user)
