"""
agora.api.deps — FastAPI dependency injection
===============================================

Process-wide singletons (engine, config, cache, AI client, mailer, token
signer, realtime gateway) are built lazily once and shared by every request
and socket.  Tests swap them via ``app.dependency_overrides``.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Annotated

from fastapi import Depends, Header, Query
from sqlalchemy import Engine

from agora.config import AgoraConfig, load_config
from agora.constants import DEFAULT_LIMIT, DEFAULT_PAGE, MAX_LIMIT
from agora.database.engine import create_db_engine, run_db
from agora.engine.cache import TTLCache
from agora.errors import AuthenticationError
from agora.realtime.gateway import RealtimeGateway
from agora.services.ai_service import AIService
from agora.services.auth_service import TokenSigner, authenticate
from agora.services.email_service import Mailer

_WEAK_SECRETS = frozenset({
    "agora-dev-secret-change-me",
    "your-super-secret-jwt-key",
    "change-me",
    "secret",
    "dev",
    "",
})

_MIN_SECRET_LENGTH = 32

JWT_ALGORITHM = "HS256"


def _load_jwt_secret() -> str:
    """Load and validate JWT_SECRET from the environment.

    Raises RuntimeError at import time if the secret is missing, blank,
    too short (< 32 chars), or a known weak default.
    """
    secret = os.getenv("JWT_SECRET", "")
    if not secret:
        raise RuntimeError(
            "JWT_SECRET environment variable is not set. "
            "Generate one with: python -c \"import secrets; print(secrets.token_urlsafe(64))\""
        )
    if secret in _WEAK_SECRETS:
        raise RuntimeError(
            f"JWT_SECRET is set to a known weak default ('{secret}'). "
            "Please set a strong, unique secret."
        )
    if len(secret) < _MIN_SECRET_LENGTH:
        raise RuntimeError(
            f"JWT_SECRET is too short ({len(secret)} chars). "
            f"Minimum length is {_MIN_SECRET_LENGTH} characters."
        )
    return secret


JWT_SECRET: str = _load_jwt_secret()


# ---------------------------------------------------------------------------
# Singletons
# ---------------------------------------------------------------------------
@lru_cache(maxsize=1)
def get_engine() -> Engine:
    return create_db_engine()


@lru_cache(maxsize=1)
def get_config() -> AgoraConfig:
    return load_config(os.getenv("AGORA_CONFIG", "config.yaml"))


@lru_cache(maxsize=1)
def get_cache() -> TTLCache:
    return TTLCache.from_config(get_config())


@lru_cache(maxsize=1)
def get_ai() -> AIService:
    cfg = get_config()
    return AIService(
        base_url=cfg.ai_service_url,
        api_key=os.getenv("AI_SERVICE_API_KEY") or None,
        timeout=cfg.ai_timeout_seconds,
        retries=cfg.ai_retries,
    )


@lru_cache(maxsize=1)
def get_mailer() -> Mailer:
    return Mailer.from_env()


@lru_cache(maxsize=1)
def get_token_signer() -> TokenSigner:
    return TokenSigner.from_config(JWT_SECRET, get_config())


@lru_cache(maxsize=1)
def get_gateway() -> RealtimeGateway:
    return RealtimeGateway(get_engine(), get_cache(), get_ai(), get_config())


# ---------------------------------------------------------------------------
# Authentication
# ---------------------------------------------------------------------------
def bearer_token(authorization: str | None) -> str | None:
    if not authorization or not authorization.startswith("Bearer "):
        return None
    return authorization.split(" ", 1)[1].strip() or None


async def get_current_user(
    authorization: Annotated[str | None, Header()] = None,
    engine: Engine = Depends(get_engine),
    signer: TokenSigner = Depends(get_token_signer),
) -> dict:
    """Validate the bearer JWT and return the caller's private profile."""
    token = bearer_token(authorization)
    if token is None:
        raise AuthenticationError("Access token required")
    return await run_db(authenticate, engine, signer, token)


async def get_optional_user(
    authorization: Annotated[str | None, Header()] = None,
    engine: Engine = Depends(get_engine),
    signer: TokenSigner = Depends(get_token_signer),
) -> dict | None:
    """Like :func:`get_current_user` but anonymous (or bad) tokens yield ``None``."""
    token = bearer_token(authorization)
    if token is None:
        return None
    try:
        return await run_db(authenticate, engine, signer, token)
    except AuthenticationError:
        return None


# ---------------------------------------------------------------------------
# Pagination
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class Pagination:
    page: int
    limit: int
    sort: str | None
    search: str | None


def get_pagination(
    page: int = Query(DEFAULT_PAGE, ge=1),
    limit: int = Query(DEFAULT_LIMIT, ge=1, le=MAX_LIMIT),
    sort: str | None = Query(None),
    search: str | None = Query(None, max_length=100),
) -> Pagination:
    return Pagination(page=page, limit=limit, sort=sort, search=search)
