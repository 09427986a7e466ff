"""
agora.api.routes.users — Profiles, search & presence status
=============================================================
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field, HttpUrl

from agora.api.deps import get_cache, get_current_user, get_engine, get_gateway
from agora.api.responses import ok
from agora.database.engine import run_db
from agora.engine.cache import TTLCache
from agora.realtime.gateway import RealtimeGateway
from agora.services import user_service
from agora.services.community_service import get_user_communities

router = APIRouter(prefix="/users", tags=["users"])


class ProfileUpdate(BaseModel):
    username: str | None = Field(default=None, min_length=3, max_length=30, pattern=r"^[A-Za-z0-9_]+$")
    first_name: str | None = Field(default=None, max_length=50)
    last_name: str | None = Field(default=None, max_length=50)
    bio: str | None = Field(default=None, max_length=500)
    avatar_url: HttpUrl | None = None
    location: str | None = Field(default=None, max_length=100)
    website: HttpUrl | None = None
    preferences: dict | None = None


class StatusUpdate(BaseModel):
    status: str | None = Field(default=None, max_length=20)
    custom_status: str | None = Field(default=None, max_length=100)


@router.get("/me")
async def my_profile(user: dict = Depends(get_current_user)):
    return ok(user)


@router.put("/me")
async def update_my_profile(
    body: ProfileUpdate,
    user: dict = Depends(get_current_user),
    engine=Depends(get_engine),
):
    changes = body.model_dump(exclude_none=True, mode="json")
    profile = await run_db(user_service.update_profile, engine, user["id"], **changes)
    return ok(profile, "Profile updated successfully")


@router.get("/me/communities")
async def my_communities(
    user: dict = Depends(get_current_user),
    engine=Depends(get_engine),
    cache: TTLCache = Depends(get_cache),
):
    communities = await run_db(get_user_communities, engine, cache, user["id"])
    return ok(communities)


@router.put("/me/status")
async def update_my_status(
    body: StatusUpdate,
    user: dict = Depends(get_current_user),
    engine=Depends(get_engine),
    gateway: RealtimeGateway = Depends(get_gateway),
):
    status = await run_db(user_service.set_custom_status, engine, user["id"], body.custom_status)
    status["is_online"] = gateway.presence.is_online(user["id"])
    await gateway.publish_presence(
        user["id"], user["username"], status["custom_status"], body.status
    )
    return ok(status, "Status updated")


@router.get("/search")
async def search(
    q: str = Query(..., min_length=1, max_length=100),
    limit: int = Query(20, ge=1, le=100),
    user: dict = Depends(get_current_user),
    engine=Depends(get_engine),
):
    return ok(await run_db(user_service.search_users, engine, q, limit=limit))


@router.get("/username/{username}")
async def profile_by_username(username: str, engine=Depends(get_engine)):
    return ok(await run_db(user_service.get_user_by_username, engine, username))


@router.get("/{user_id}")
async def profile(
    user_id: int,
    engine=Depends(get_engine),
    gateway: RealtimeGateway = Depends(get_gateway),
):
    data = await run_db(user_service.get_user, engine, user_id)
    data["status"]["is_online"] = gateway.presence.is_online(user_id)
    return ok(data)
