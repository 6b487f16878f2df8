"""HTTP API exposing the identity service."""

from __future__ import annotations

import logging
from dataclasses import asdict
from datetime import datetime
from typing import AsyncContextManager, Callable, Dict, List, Optional

from fastapi import FastAPI, Query, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from .codes import Purpose
from .errors import (
    BadCredential,
    DeliveryFailure,
    DuplicateUser,
    IdentityError,
    InvalidPage,
    InvalidPassword,
    StorageFailure,
    UserNotFound,
    VerificationFailed,
)
from .models import RegisterRequest, UpdatePasswordRequest, UpdateUserRequest
from .service import IdentityService

logger = logging.getLogger("identity.api")

Lifespan = Callable[[FastAPI], AsyncContextManager[None]]

_STATUS_BY_ERROR = (
    (VerificationFailed, status.HTTP_400_BAD_REQUEST),
    (DuplicateUser, status.HTTP_400_BAD_REQUEST),
    (BadCredential, status.HTTP_400_BAD_REQUEST),
    (InvalidPage, status.HTTP_400_BAD_REQUEST),
    (InvalidPassword, status.HTTP_400_BAD_REQUEST),
    (UserNotFound, status.HTTP_404_NOT_FOUND),
    (DeliveryFailure, status.HTTP_502_BAD_GATEWAY),
    (StorageFailure, status.HTTP_503_SERVICE_UNAVAILABLE),
)


class RegisterUserBody(BaseModel):
    username: str = Field(..., min_length=1, max_length=50)
    password: str = Field(..., min_length=6, max_length=128)
    email: str = Field(..., min_length=3, max_length=255)
    nickname: str = Field(..., min_length=1, max_length=50)
    captcha: str = Field(..., min_length=1, max_length=16)


class LoginUserBody(BaseModel):
    username: str = Field(..., min_length=1, max_length=50)
    password: str = Field(..., min_length=1, max_length=128)


class UpdatePasswordBody(BaseModel):
    email: str = Field(..., min_length=3, max_length=255)
    password: str = Field(..., min_length=6, max_length=128)
    captcha: str = Field(..., min_length=1, max_length=16)


class UpdateUserBody(BaseModel):
    email: str = Field(..., min_length=3, max_length=255)
    captcha: str = Field(..., min_length=1, max_length=16)
    nickname: Optional[str] = Field(default=None, max_length=50)
    head_pic: Optional[str] = Field(default=None, max_length=512)


class MessageResponse(BaseModel):
    message: str


class LoginUserResponse(BaseModel):
    id: int
    username: str
    nickname: str
    email: str
    phone_number: Optional[str] = None
    head_pic: Optional[str] = None
    created_at: int
    is_frozen: bool
    is_admin: bool
    roles: List[str]
    permissions: List[str]


class UserInfoResponse(BaseModel):
    id: int
    username: str
    is_admin: bool
    roles: List[str]
    permissions: List[str]


class UserDetailResponse(BaseModel):
    id: int
    username: str
    nickname: str
    email: str
    phone_number: Optional[str] = None
    head_pic: Optional[str] = None
    is_frozen: bool
    is_admin: bool
    created_at: datetime


class UserSummaryResponse(BaseModel):
    id: int
    username: str
    nickname: str
    email: str
    phone_number: Optional[str] = None
    is_frozen: bool
    head_pic: Optional[str] = None
    created_at: datetime


class UserListResponse(BaseModel):
    users: List[UserSummaryResponse]
    total_count: int


def _status_for(exc: IdentityError) -> int:
    for error_type, code in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


def register_api_routes(app: FastAPI, service: IdentityService) -> None:
    """Expose the identity endpoints on the provided FastAPI application."""

    @app.exception_handler(IdentityError)
    async def identity_error_handler(request: Request, exc: IdentityError) -> JSONResponse:
        code = _status_for(exc)
        if code >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc)
        return JSONResponse(status_code=code, content={"detail": exc.message, "error": exc.kind})

    @app.get("/healthz")
    async def healthcheck() -> Dict[str, str]:
        return {"status": "ok"}

    async def _send(purpose: Purpose, address: str) -> MessageResponse:
        return MessageResponse(message=await service.send_code(purpose, address))

    @app.get("/user/register-captcha", response_model=MessageResponse)
    async def register_captcha(address: str = Query(..., min_length=3)) -> MessageResponse:
        return await _send(Purpose.REGISTER, address)

    @app.get("/user/update-password/captcha", response_model=MessageResponse)
    async def update_password_captcha(address: str = Query(..., min_length=3)) -> MessageResponse:
        return await _send(Purpose.UPDATE_PASSWORD, address)

    @app.get("/user/update/captcha", response_model=MessageResponse)
    async def update_captcha(address: str = Query(..., min_length=3)) -> MessageResponse:
        return await _send(Purpose.UPDATE_PROFILE, address)

    @app.post("/user/register", response_model=MessageResponse)
    async def register(body: RegisterUserBody) -> MessageResponse:
        message = await service.register(
            RegisterRequest(
                username=body.username,
                password=body.password,
                email=body.email,
                nickname=body.nickname,
                captcha=body.captcha,
            )
        )
        return MessageResponse(message=message)

    @app.post("/user/login", response_model=LoginUserResponse)
    async def login(body: LoginUserBody) -> LoginUserResponse:
        view = await service.login(body.username, body.password, as_admin=False)
        return LoginUserResponse(**asdict(view))

    @app.post("/user/admin/login", response_model=LoginUserResponse)
    async def admin_login(body: LoginUserBody) -> LoginUserResponse:
        view = await service.login(body.username, body.password, as_admin=True)
        return LoginUserResponse(**asdict(view))

    @app.get("/user/list", response_model=UserListResponse)
    async def list_users(
        username: Optional[str] = None,
        nickname: Optional[str] = None,
        email: Optional[str] = None,
        page_no: int = Query(1),
        page_size: int = Query(10, le=100),
    ) -> UserListResponse:
        page = await service.search(
            username=username,
            nickname=nickname,
            email=email,
            page_no=page_no,
            page_size=page_size,
        )
        return UserListResponse(
            users=[UserSummaryResponse(**asdict(item)) for item in page.items],
            total_count=page.total_count,
        )

    @app.get("/user/{user_id}/info", response_model=UserInfoResponse)
    async def user_info(user_id: int, admin: bool = False) -> UserInfoResponse:
        view = await service.find_user_by_id(user_id, is_admin=admin)
        return UserInfoResponse(**asdict(view))

    @app.get("/user/{user_id}", response_model=UserDetailResponse)
    async def user_detail(user_id: int) -> UserDetailResponse:
        view = await service.find_user_detail_by_id(user_id)
        return UserDetailResponse(**asdict(view))

    @app.post("/user/{user_id}/update-password", response_model=MessageResponse)
    async def update_password(user_id: int, body: UpdatePasswordBody) -> MessageResponse:
        message = await service.update_password(
            user_id,
            UpdatePasswordRequest(email=body.email, password=body.password, captcha=body.captcha),
        )
        return MessageResponse(message=message)

    @app.post("/user/{user_id}/update", response_model=MessageResponse)
    async def update_profile(user_id: int, body: UpdateUserBody) -> MessageResponse:
        message = await service.update_profile(
            user_id,
            UpdateUserRequest(
                email=body.email,
                captcha=body.captcha,
                nickname=body.nickname,
                head_pic=body.head_pic,
            ),
        )
        return MessageResponse(message=message)

    @app.post("/user/{user_id}/freeze", response_model=MessageResponse)
    async def freeze(user_id: int) -> MessageResponse:
        await service.freeze(user_id)
        return MessageResponse(message="User frozen")


def create_app(*, service: IdentityService, lifespan: Optional[Lifespan] = None) -> FastAPI:
    """Instantiate the FastAPI application around ``service``."""

    app = FastAPI(
        lifespan=lifespan,
        title="Identity Service",
        version="0.1.0",
        description="Account registration, authentication, and role-based permissions.",
    )
    app.state.service = service
    register_api_routes(app, service)
    return app


__all__ = ["Lifespan", "create_app", "register_api_routes"]
