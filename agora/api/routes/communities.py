"""
agora.api.routes.communities — Community CRUD, membership & moderators
========================================================================
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field, HttpUrl

from agora.api.deps import (
    Pagination,
    get_ai,
    get_cache,
    get_current_user,
    get_engine,
    get_pagination,
)
from agora.api.responses import created, ok, paginated
from agora.constants import MAX_TAGS
from agora.database.engine import run_db
from agora.database.models import CommunityPrivacy, ContentVisibility, JoinMethod, PostPermission
from agora.engine.cache import TTLCache
from agora.services import community_service
from agora.services.ai_service import AIService

router = APIRouter(prefix="/communities", tags=["communities"])


# ---------------------------------------------------------------------------
# Pydantic schemas
# ---------------------------------------------------------------------------
class Rule(BaseModel):
    title: str = Field(max_length=100)
    description: str | None = Field(default=None, max_length=500)


class CommunityCreate(BaseModel):
    name: str = Field(min_length=3, max_length=50)
    description: str = Field(min_length=10, max_length=500)
    privacy: CommunityPrivacy = CommunityPrivacy.PUBLIC
    join_method: JoinMethod = JoinMethod.OPEN
    post_permission: PostPermission = PostPermission.ALL
    content_visibility: ContentVisibility = ContentVisibility.VISIBLE
    tags: list[str] = Field(default_factory=list, max_length=MAX_TAGS)
    rules: list[Rule] = Field(default_factory=list)
    avatar_url: HttpUrl | None = None
    banner_url: HttpUrl | None = None


class CommunityUpdate(BaseModel):
    description: str | None = Field(default=None, min_length=10, max_length=500)
    privacy: CommunityPrivacy | None = None
    join_method: JoinMethod | None = None
    post_permission: PostPermission | None = None
    content_visibility: ContentVisibility | None = None
    tags: list[str] | None = Field(default=None, max_length=MAX_TAGS)
    rules: list[Rule] | None = None
    avatar_url: HttpUrl | None = None
    banner_url: HttpUrl | None = None


class ModeratorBody(BaseModel):
    user_id: int


class TransferBody(BaseModel):
    new_owner_id: int


class RecommendationBody(BaseModel):
    interests: list[str] = Field(default_factory=list, max_length=20)


# ---------------------------------------------------------------------------
# CRUD
# ---------------------------------------------------------------------------
@router.get("")
async def list_communities(
    privacy: CommunityPrivacy | None = None,
    owner_id: int | None = Query(None, alias="owner"),
    pagination: Pagination = Depends(get_pagination),
    engine=Depends(get_engine),
    cache: TTLCache = Depends(get_cache),
):
    result = await run_db(
        community_service.list_communities,
        engine,
        cache,
        privacy=privacy,
        owner_id=owner_id,
        search=pagination.search or "",
        page=pagination.page,
        limit=pagination.limit,
        sort=pagination.sort,
    )
    return paginated(result["communities"], result["pagination"])


@router.post("", status_code=201)
async def create_community(
    body: CommunityCreate,
    user: dict = Depends(get_current_user),
    engine=Depends(get_engine),
    cache: TTLCache = Depends(get_cache),
):
    fields = body.model_dump(mode="json")
    community = await run_db(
        community_service.create_community, engine, cache, user["id"], **fields
    )
    return created(community, "Community created successfully")


@router.post("/recommendations")
async def recommendations(
    body: RecommendationBody,
    user: dict = Depends(get_current_user),
    engine=Depends(get_engine),
    ai: AIService = Depends(get_ai),
):
    result = await community_service.get_recommendations(engine, ai, user["id"], body.interests)
    return ok(result)


@router.get("/slug/{slug}")
async def get_by_slug(
    slug: str,
    engine=Depends(get_engine),
    cache: TTLCache = Depends(get_cache),
):
    return ok(await run_db(community_service.get_community_by_slug, engine, cache, slug))


@router.get("/{community_id}")
async def get_community(
    community_id: int,
    include_members: bool = Query(False, alias="includeMembers"),
    engine=Depends(get_engine),
    cache: TTLCache = Depends(get_cache),
):
    community = await run_db(
        community_service.get_community,
        engine,
        cache,
        community_id,
        include_members=include_members,
    )
    return ok(community)


@router.put("/{community_id}")
async def update_community(
    community_id: int,
    body: CommunityUpdate,
    user: dict = Depends(get_current_user),
    engine=Depends(get_engine),
    cache: TTLCache = Depends(get_cache),
):
    changes = body.model_dump(exclude_none=True, mode="json")
    community = await run_db(
        community_service.update_community, engine, cache, community_id, user["id"], **changes
    )
    return ok(community, "Community updated successfully")


@router.delete("/{community_id}")
async def delete_community(
    community_id: int,
    user: dict = Depends(get_current_user),
    engine=Depends(get_engine),
    cache: TTLCache = Depends(get_cache),
):
    await run_db(community_service.delete_community, engine, cache, community_id, user["id"])
    return ok(None, "Community deleted successfully")


# ---------------------------------------------------------------------------
# Membership
# ---------------------------------------------------------------------------
@router.post("/{community_id}/join")
async def join(
    community_id: int,
    user: dict = Depends(get_current_user),
    engine=Depends(get_engine),
    cache: TTLCache = Depends(get_cache),
):
    community = await run_db(
        community_service.join_community, engine, cache, community_id, user["id"]
    )
    return ok(community, "Successfully joined community")


@router.post("/{community_id}/leave")
async def leave(
    community_id: int,
    user: dict = Depends(get_current_user),
    engine=Depends(get_engine),
    cache: TTLCache = Depends(get_cache),
):
    community = await run_db(
        community_service.leave_community, engine, cache, community_id, user["id"]
    )
    return ok(community, "Successfully left community")


@router.post("/{community_id}/moderators")
async def add_moderator(
    community_id: int,
    body: ModeratorBody,
    user: dict = Depends(get_current_user),
    engine=Depends(get_engine),
    cache: TTLCache = Depends(get_cache),
):
    community = await run_db(
        community_service.add_moderator, engine, cache, community_id, body.user_id, user["id"]
    )
    return ok(community, "Moderator added successfully")


@router.delete("/{community_id}/moderators/{moderator_id}")
async def remove_moderator(
    community_id: int,
    moderator_id: int,
    user: dict = Depends(get_current_user),
    engine=Depends(get_engine),
    cache: TTLCache = Depends(get_cache),
):
    community = await run_db(
        community_service.remove_moderator, engine, cache, community_id, moderator_id, user["id"]
    )
    return ok(community, "Moderator removed successfully")


@router.post("/{community_id}/transfer")
async def transfer(
    community_id: int,
    body: TransferBody,
    user: dict = Depends(get_current_user),
    engine=Depends(get_engine),
    cache: TTLCache = Depends(get_cache),
):
    community = await run_db(
        community_service.transfer_ownership,
        engine,
        cache,
        community_id,
        body.new_owner_id,
        user["id"],
    )
    return ok(community, "Ownership transferred successfully")
