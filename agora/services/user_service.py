"""
agora.services.user_service — Profiles & Presence Mirror
=========================================================

Profile reads/updates plus the persisted half of presence: ``is_online`` /
``last_seen`` on :class:`User` are a best-effort mirror of the in-memory
registry in :mod:`agora.realtime.presence`.
"""

from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import func, select, update

from agora.database.engine import get_session
from agora.database.models import User, isoformat, utcnow
from agora.errors import ConflictError, NotFoundError

logger = logging.getLogger(__name__)

# Fields a user may change on their own profile
PROFILE_FIELDS = (
    "first_name",
    "last_name",
    "bio",
    "avatar_url",
    "location",
    "website",
    "preferences",
)


# ---------------------------------------------------------------------------
# Serialization
# ---------------------------------------------------------------------------
def user_summary(user: User) -> dict[str, Any]:
    """Compact author/sender shape embedded in posts, comments, messages."""
    return {
        "id": user.id,
        "username": user.username,
        "avatar_url": user.avatar_url,
    }


def user_dict(user: User, *, private: bool = False) -> dict[str, Any]:
    data = {
        "id": user.id,
        "username": user.username,
        "first_name": user.first_name,
        "last_name": user.last_name,
        "bio": user.bio,
        "avatar_url": user.avatar_url,
        "location": user.location,
        "website": user.website,
        "role": user.role,
        "status": {
            "is_online": user.is_online,
            "last_seen": isoformat(user.last_seen),
            "custom_status": user.custom_status,
        },
        "created_at": isoformat(user.created_at),
    }
    if private:
        data["email"] = user.email
        data["is_verified"] = user.is_verified
        data["preferences"] = user.preferences or {}
    return data


# ---------------------------------------------------------------------------
# Profiles
# ---------------------------------------------------------------------------
def get_user(engine, user_id: int, *, private: bool = False) -> dict[str, Any]:
    with get_session(engine) as session:
        user = session.get(User, user_id)
        if user is None:
            raise NotFoundError("User not found")
        return user_dict(user, private=private)


def get_user_by_username(engine, username: str) -> dict[str, Any]:
    with get_session(engine) as session:
        user = session.scalar(
            select(User).where(func.lower(User.username) == username.lower())
        )
        if user is None:
            raise NotFoundError("User not found")
        return user_dict(user)


def update_profile(engine, user_id: int, **changes: Any) -> dict[str, Any]:
    """Apply profile changes; unknown keys and ``None`` values are ignored."""
    with get_session(engine) as session:
        user = session.get(User, user_id)
        if user is None:
            raise NotFoundError("User not found")

        username = changes.get("username")
        if username and username != user.username:
            taken = session.scalar(
                select(User.id).where(func.lower(User.username) == username.lower())
            )
            if taken is not None:
                raise ConflictError("Username is already taken")
            user.username = username

        for key in PROFILE_FIELDS:
            value = changes.get(key)
            if value is not None:
                setattr(user, key, value)
        session.flush()
        logger.info("Profile updated for user %d", user_id)
        return user_dict(user, private=True)


def search_users(engine, query: str, *, limit: int = 20) -> list[dict[str, Any]]:
    pattern = f"%{query.lower()}%"
    with get_session(engine) as session:
        rows = session.scalars(
            select(User)
            .where(func.lower(User.username).like(pattern))
            .order_by(User.username)
            .limit(limit)
        ).all()
        return [user_dict(u) for u in rows]


# ---------------------------------------------------------------------------
# Presence mirror
# ---------------------------------------------------------------------------
def set_online(engine, user_id: int, online: bool) -> None:
    with get_session(engine) as session:
        session.execute(
            update(User)
            .where(User.id == user_id)
            .values(is_online=online, last_seen=utcnow())
        )


def touch_last_seen(engine, user_id: int) -> None:
    with get_session(engine) as session:
        session.execute(
            update(User).where(User.id == user_id).values(last_seen=utcnow())
        )


def set_custom_status(engine, user_id: int, custom_status: str | None) -> dict[str, Any]:
    with get_session(engine) as session:
        user = session.get(User, user_id)
        if user is None:
            raise NotFoundError("User not found")
        user.custom_status = custom_status
        user.last_seen = utcnow()
        session.flush()
        return {
            "is_online": user.is_online,
            "last_seen": isoformat(user.last_seen),
            "custom_status": user.custom_status,
        }
