"""
agora.api.routes.auth — Registration, login & token lifecycle
===============================================================
"""

from __future__ import annotations

import logging
from typing import Annotated

from fastapi import APIRouter, Depends, Header, Request
from pydantic import BaseModel, EmailStr, Field

from agora.api.deps import (
    bearer_token,
    get_config,
    get_current_user,
    get_engine,
    get_mailer,
    get_token_signer,
)
from agora.api.responses import created, ok
from agora.config import AgoraConfig
from agora.database.engine import run_db
from agora.services import auth_service
from agora.services.auth_service import TokenSigner
from agora.services.email_service import Mailer

router = APIRouter(prefix="/auth", tags=["auth"])
logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Pydantic schemas
# ---------------------------------------------------------------------------
class RegisterBody(BaseModel):
    username: str = Field(min_length=3, max_length=30, pattern=r"^[A-Za-z0-9_]+$")
    email: EmailStr
    password: str = Field(min_length=8, max_length=128)
    first_name: str | None = Field(default=None, max_length=50)
    last_name: str | None = Field(default=None, max_length=50)


class LoginBody(BaseModel):
    email: EmailStr
    password: str


class RefreshBody(BaseModel):
    refresh_token: str


class LogoutBody(BaseModel):
    refresh_token: str | None = None


class ForgotPasswordBody(BaseModel):
    email: EmailStr


class ResetPasswordBody(BaseModel):
    token: str
    password: str = Field(min_length=8, max_length=128)


def _client_info(request: Request) -> tuple[str | None, str | None]:
    host = request.client.host if request.client else None
    return host, request.headers.get("user-agent")


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------
@router.post("/register", status_code=201)
async def register(
    body: RegisterBody,
    request: Request,
    engine=Depends(get_engine),
    signer: TokenSigner = Depends(get_token_signer),
    mailer: Mailer = Depends(get_mailer),
):
    ip_address, user_agent = _client_info(request)
    result = await run_db(
        auth_service.register_user,
        engine,
        signer,
        mailer,
        username=body.username,
        email=body.email,
        password=body.password,
        first_name=body.first_name,
        last_name=body.last_name,
        ip_address=ip_address,
        user_agent=user_agent,
    )
    return created(result, "User registered successfully")


@router.post("/login")
async def login(
    body: LoginBody,
    request: Request,
    engine=Depends(get_engine),
    signer: TokenSigner = Depends(get_token_signer),
    cfg: AgoraConfig = Depends(get_config),
):
    ip_address, user_agent = _client_info(request)
    result = await run_db(
        auth_service.login_user,
        engine,
        signer,
        cfg,
        email=body.email,
        password=body.password,
        ip_address=ip_address,
        user_agent=user_agent,
    )
    return ok(result, "Login successful")


@router.post("/refresh")
async def refresh(
    body: RefreshBody,
    engine=Depends(get_engine),
    signer: TokenSigner = Depends(get_token_signer),
):
    tokens = await run_db(auth_service.refresh_auth, engine, signer, body.refresh_token)
    return ok({"tokens": tokens}, "Token refreshed successfully")


@router.post("/logout")
async def logout(
    body: LogoutBody,
    authorization: Annotated[str | None, Header()] = None,
    user: dict = Depends(get_current_user),
    engine=Depends(get_engine),
    signer: TokenSigner = Depends(get_token_signer),
):
    await run_db(
        auth_service.logout_user, engine, signer, body.refresh_token, bearer_token(authorization)
    )
    logger.info("User logged out: %s", user["email"])
    return ok(None, "Logout successful")


@router.get("/me")
async def me(user: dict = Depends(get_current_user)):
    return ok(user)


@router.get("/verify-email/{token}")
async def verify_email(token: str, engine=Depends(get_engine)):
    await run_db(auth_service.verify_email, engine, token)
    return ok(None, "Email verified successfully")


@router.post("/forgot-password")
async def forgot_password(
    body: ForgotPasswordBody,
    engine=Depends(get_engine),
    mailer: Mailer = Depends(get_mailer),
    cfg: AgoraConfig = Depends(get_config),
):
    await run_db(auth_service.forgot_password, engine, mailer, cfg, body.email)
    return ok(None, "If the email exists, a reset link has been sent")


@router.post("/reset-password")
async def reset_password(
    body: ResetPasswordBody,
    engine=Depends(get_engine),
    mailer: Mailer = Depends(get_mailer),
):
    await run_db(auth_service.reset_password, engine, mailer, body.token, body.password)
    return ok(None, "Password reset successfully")
