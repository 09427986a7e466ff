"""
agora.services.auth_service — Accounts, Tokens & Lockout
=========================================================

* Passwords are hashed with passlib (``pbkdf2_sha256``).
* Access tokens are short-lived HS256 JWTs carrying ``sub`` (user id),
  ``role`` and ``username``.
* Refresh tokens are opaque random strings stored in ``tokens``; each
  refresh blacklists the old one and issues a new pair (rotation).
* Logout blacklists the refresh token and records the access token as
  blacklisted until it would have expired anyway.
* Repeated failed logins lock the account for a while.
"""

from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any

import jwt
from jwt.exceptions import InvalidTokenError
from passlib.context import CryptContext
from sqlalchemy import func, or_, select, update

from agora.config import AgoraConfig
from agora.database.engine import get_session
from agora.database.models import Token, TokenType, User, utcnow
from agora.errors import (
    AuthenticationError,
    ConflictError,
    LockedError,
    NotFoundError,
    ValidationError,
)
from agora.services.email_service import Mailer
from agora.services.user_service import user_dict

logger = logging.getLogger(__name__)

pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")

VERIFY_TOKEN_HOURS = 24


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(password: str, password_hash: str) -> bool:
    return pwd_context.verify(password, password_hash)


# ---------------------------------------------------------------------------
# Token signing
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class TokenSigner:
    secret: str
    algorithm: str = "HS256"
    access_minutes: int = 15
    refresh_days: int = 7

    @classmethod
    def from_config(cls, secret: str, cfg: AgoraConfig) -> TokenSigner:
        return cls(
            secret=secret,
            access_minutes=cfg.access_token_minutes,
            refresh_days=cfg.refresh_token_days,
        )

    def sign_access(self, user: User) -> str:
        now = utcnow()
        payload = {
            "sub": str(user.id),
            "role": user.role,
            "username": user.username,
            "type": TokenType.ACCESS.value,
            "jti": secrets.token_hex(8),
            "iat": now,
            "exp": now + timedelta(minutes=self.access_minutes),
        }
        return jwt.encode(payload, self.secret, algorithm=self.algorithm)

    def decode(self, token: str) -> dict[str, Any]:
        try:
            payload = jwt.decode(token, self.secret, algorithms=[self.algorithm])
        except InvalidTokenError:
            raise AuthenticationError("Invalid token")
        if payload.get("type") != TokenType.ACCESS or not payload.get("sub"):
            raise AuthenticationError("Invalid token")
        return payload


def _issue_tokens(
    session, signer: TokenSigner, user: User, ip_address: str | None, user_agent: str | None
) -> dict[str, Any]:
    refresh_token = secrets.token_hex(40)
    refresh_expiry = utcnow() + timedelta(days=signer.refresh_days)
    session.add(Token(
        user_id=user.id,
        token=refresh_token,
        type=TokenType.REFRESH,
        expires_at=refresh_expiry,
        ip_address=ip_address,
        user_agent=user_agent,
    ))
    return {
        "access": {
            "token": signer.sign_access(user),
            "expires_in": signer.access_minutes * 60,
        },
        "refresh": {
            "token": refresh_token,
            "expires_at": refresh_expiry.isoformat(),
        },
    }


# ---------------------------------------------------------------------------
# Registration / login
# ---------------------------------------------------------------------------
def register_user(
    engine,
    signer: TokenSigner,
    mailer: Mailer,
    *,
    username: str,
    email: str,
    password: str,
    first_name: str | None = None,
    last_name: str | None = None,
    ip_address: str | None = None,
    user_agent: str | None = None,
) -> dict[str, Any]:
    email = email.strip().lower()
    verify_token = secrets.token_hex(32)
    with get_session(engine) as session:
        existing = session.scalar(
            select(User.id).where(
                or_(User.email == email, func.lower(User.username) == username.lower())
            )
        )
        if existing is not None:
            raise ConflictError("User already exists with this email or username")

        user = User(
            username=username,
            email=email,
            password_hash=hash_password(password),
            first_name=first_name,
            last_name=last_name,
        )
        session.add(user)
        session.flush()
        session.add(Token(
            user_id=user.id,
            token=verify_token,
            type=TokenType.VERIFY,
            expires_at=utcnow() + timedelta(hours=VERIFY_TOKEN_HOURS),
        ))
        tokens = _issue_tokens(session, signer, user, ip_address, user_agent)
        result = {"user": user_dict(user, private=True), "tokens": tokens}

    mailer.send_verification(email, verify_token)
    logger.info("User registered: %s", email)
    return result


def login_user(
    engine,
    signer: TokenSigner,
    cfg: AgoraConfig,
    *,
    email: str,
    password: str,
    ip_address: str | None = None,
    user_agent: str | None = None,
) -> dict[str, Any]:
    email = email.strip().lower()
    with get_session(engine) as session:
        user = session.scalar(select(User).where(User.email == email))
        if user is None:
            raise AuthenticationError("Invalid credentials")

        now = utcnow()
        if user.is_locked(now):
            raise LockedError("Account is temporarily locked")
        if user.locked_until is not None:
            # Lock expired: start counting afresh
            user.locked_until = None
            user.failed_login_attempts = 0

        if not verify_password(password, user.password_hash):
            user.failed_login_attempts += 1
            if user.failed_login_attempts >= cfg.max_login_attempts:
                user.locked_until = now + timedelta(minutes=cfg.lockout_minutes)
                logger.warning(
                    "Account %s locked after %d failed logins",
                    email, user.failed_login_attempts,
                )
            session.commit()
            raise AuthenticationError("Invalid credentials")

        user.failed_login_attempts = 0
        user.locked_until = None
        tokens = _issue_tokens(session, signer, user, ip_address, user_agent)
        result = {"user": user_dict(user, private=True), "tokens": tokens}

    logger.info("User logged in: %s", email)
    return result


def verify_email(engine, token: str) -> None:
    with get_session(engine) as session:
        row = session.scalar(
            select(Token).where(
                Token.token == token,
                Token.type == TokenType.VERIFY,
                Token.blacklisted.is_(False),
                Token.expires_at > utcnow(),
            )
        )
        if row is None:
            raise ValidationError("Invalid or expired verification token")
        session.execute(update(User).where(User.id == row.user_id).values(is_verified=True))
        row.blacklisted = True


# ---------------------------------------------------------------------------
# Access-token verification
# ---------------------------------------------------------------------------
def _is_blacklisted(session, token: str) -> bool:
    return session.scalar(
        select(Token.id).where(
            Token.token == token,
            Token.type == TokenType.ACCESS,
            Token.blacklisted.is_(True),
        )
    ) is not None


def authenticate(engine, signer: TokenSigner, token: str) -> dict[str, Any]:
    """Return the token's user as a private profile dict or raise 401."""
    payload = signer.decode(token)
    with get_session(engine) as session:
        if _is_blacklisted(session, token):
            raise AuthenticationError("Invalid token")
        user = session.get(User, int(payload["sub"]))
        if user is None:
            raise AuthenticationError("User not found")
        if user.is_locked():
            raise LockedError("Account is temporarily locked")
        return user_dict(user, private=True)


# ---------------------------------------------------------------------------
# Refresh / logout
# ---------------------------------------------------------------------------
def refresh_auth(engine, signer: TokenSigner, refresh_token: str) -> dict[str, Any]:
    with get_session(engine) as session:
        row = session.scalar(
            select(Token)
            .where(
                Token.token == refresh_token,
                Token.type == TokenType.REFRESH,
                Token.blacklisted.is_(False),
                Token.expires_at > utcnow(),
            )
            .with_for_update()
        )
        if row is None:
            raise AuthenticationError("Invalid refresh token")
        user = session.get(User, row.user_id)
        if user is None:
            raise NotFoundError("User not found")

        row.blacklisted = True
        return _issue_tokens(session, signer, user, row.ip_address, row.user_agent)


def logout_user(
    engine, signer: TokenSigner, refresh_token: str | None, access_token: str | None
) -> None:
    with get_session(engine) as session:
        if refresh_token:
            session.execute(
                update(Token)
                .where(Token.token == refresh_token, Token.type == TokenType.REFRESH)
                .values(blacklisted=True)
            )
        if access_token:
            try:
                payload = signer.decode(access_token)
            except AuthenticationError:
                return
            session.add(Token(
                user_id=int(payload["sub"]),
                token=access_token,
                type=TokenType.ACCESS,
                expires_at=datetime.fromtimestamp(payload["exp"], tz=UTC),
                blacklisted=True,
            ))


# ---------------------------------------------------------------------------
# Password reset
# ---------------------------------------------------------------------------
def forgot_password(engine, mailer: Mailer, cfg: AgoraConfig, email: str) -> None:
    """Issue a reset token.  Unknown emails succeed silently."""
    email = email.strip().lower()
    reset_token = secrets.token_hex(32)
    with get_session(engine) as session:
        user = session.scalar(select(User).where(User.email == email))
        if user is None:
            return
        user.reset_password_token = reset_token
        user.reset_password_expires = utcnow() + timedelta(minutes=cfg.reset_token_minutes)
    mailer.send_password_reset(email, reset_token)


def reset_password(engine, mailer: Mailer, token: str, new_password: str) -> None:
    with get_session(engine) as session:
        user = session.scalar(
            select(User).where(
                User.reset_password_token == token,
                User.reset_password_expires > utcnow(),
            )
        )
        if user is None:
            raise ValidationError("Invalid or expired reset token")
        user.password_hash = hash_password(new_password)
        user.reset_password_token = None
        user.reset_password_expires = None
        user.failed_login_attempts = 0
        user.locked_until = None
        email = user.email
    mailer.send_password_changed(email)
    logger.info("Password reset for %s", email)
