from __future__ import annotations

from fastapi import APIRouter, status
from pydantic import BaseModel, EmailStr, Field, field_validator

from apps.helpdesk.api.routes.users import UserCreateRequest, UserModel
from apps.helpdesk.dependencies.auth import CurrentActor
from apps.helpdesk.dependencies.services import TokenCodecDep, UserServiceDep
from apps.helpdesk.services.security import TokenClaims
from apps.helpdesk.services.users import Role

router = APIRouter(prefix="/auth", tags=["auth"])


class LoginRequest(BaseModel):
    username: str = Field(min_length=1)
    password: str = Field(min_length=1)


class TokenModel(BaseModel):
    access_token: str
    token_type: str = "bearer"


class RegisterRequest(UserCreateRequest):
    """Public sign-up payload; administrator accounts are provisioned by admins only."""

    @field_validator("role")
    @classmethod
    def reject_admin(cls, value: Role) -> Role:
        if value is Role.ADMIN:
            raise ValueError("Administrator accounts cannot be self-registered")
        return value


class VerifyEmailRequest(BaseModel):
    email: EmailStr
    token: str = Field(min_length=1)


class VerifyEmailResponse(BaseModel):
    message: str
    status: str


@router.post("/login", response_model=TokenModel, summary="Exchange credentials for an access token")
async def login(payload: LoginRequest, service: UserServiceDep, codec: TokenCodecDep) -> TokenModel:
    user = await service.authenticate(payload.username, payload.password)
    token = codec.issue(TokenClaims(user_id=user.id, username=user.username, role=user.role.value))
    return TokenModel(access_token=token)


@router.post("/register", response_model=UserModel, status_code=status.HTTP_201_CREATED)
async def register(payload: RegisterRequest, service: UserServiceDep) -> UserModel:
    user = await service.register(**payload.model_dump())
    return UserModel.from_entity(user)


@router.post("/verify-email", response_model=VerifyEmailResponse)
async def verify_email(payload: VerifyEmailRequest, service: UserServiceDep) -> VerifyEmailResponse:
    user = await service.verify_email(payload.email, payload.token)
    return VerifyEmailResponse(
        message="Email verified. Your account is awaiting administrator approval.",
        status=user.status.value,
    )


@router.get("/me", response_model=UserModel)
async def current_user(actor: CurrentActor, service: UserServiceDep) -> UserModel:
    return UserModel.from_entity(await service.get_user(actor.user_id))
