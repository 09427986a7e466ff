"""
agora.api.routes.posts — Posts, voting, pinning & search
==========================================================

Votes and moderation flags cast here are pushed to live viewers through the
realtime gateway, exactly as socket-originated votes are.
"""

from __future__ import annotations

from typing import Literal

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from agora.api.deps import (
    Pagination,
    get_ai,
    get_cache,
    get_config,
    get_current_user,
    get_engine,
    get_gateway,
    get_optional_user,
    get_pagination,
)
from agora.api.responses import created, ok, paginated
from agora.config import AgoraConfig
from agora.constants import MAX_POST_CONTENT, MAX_POST_TITLE, MAX_TAGS
from agora.database.engine import run_db
from agora.database.models import PostType
from agora.engine.cache import TTLCache
from agora.engine.ranking import VoteDirection
from agora.realtime.gateway import RealtimeGateway
from agora.services import post_service
from agora.services.ai_service import AIService

router = APIRouter(prefix="/posts", tags=["posts"])


# ---------------------------------------------------------------------------
# Pydantic schemas
# ---------------------------------------------------------------------------
class PostCreate(BaseModel):
    community_id: int
    title: str = Field(min_length=1, max_length=MAX_POST_TITLE)
    content: str = Field(min_length=1, max_length=MAX_POST_CONTENT)
    type: PostType = PostType.TEXT
    media: list[dict] = Field(default_factory=list)
    tags: list[str] = Field(default_factory=list, max_length=MAX_TAGS)
    link_preview: dict | None = None


class PostUpdate(BaseModel):
    title: str | None = Field(default=None, min_length=1, max_length=MAX_POST_TITLE)
    content: str | None = Field(default=None, min_length=1, max_length=MAX_POST_CONTENT)
    tags: list[str] | None = Field(default=None, max_length=MAX_TAGS)
    media: list[dict] | None = None
    link_preview: dict | None = None


# ---------------------------------------------------------------------------
# Listings
# ---------------------------------------------------------------------------
@router.get("/search")
async def search(
    q: str = Query(..., min_length=1, max_length=100),
    community_id: int | None = Query(None, alias="communityId"),
    pagination: Pagination = Depends(get_pagination),
    engine=Depends(get_engine),
):
    result = await run_db(
        post_service.search_posts,
        engine,
        q,
        community_id=community_id,
        page=pagination.page,
        limit=pagination.limit,
    )
    return paginated(result["posts"], result["pagination"])


@router.get("/community/{community_id}")
async def community_posts(
    community_id: int,
    author: int | None = None,
    type: PostType | None = None,
    tags: str | None = Query(None, description="Comma-separated tag list"),
    pagination: Pagination = Depends(get_pagination),
    engine=Depends(get_engine),
    cache: TTLCache = Depends(get_cache),
):
    tag_list = [t.strip() for t in tags.split(",") if t.strip()] if tags else None
    result = await run_db(
        post_service.list_community_posts,
        engine,
        cache,
        community_id,
        author_id=author,
        type=type,
        tags=tag_list,
        page=pagination.page,
        limit=pagination.limit,
        sort=pagination.sort,
    )
    return paginated(result["posts"], result["pagination"])


@router.get("/user/{user_id}")
async def user_posts(
    user_id: int,
    pagination: Pagination = Depends(get_pagination),
    engine=Depends(get_engine),
    cache: TTLCache = Depends(get_cache),
):
    result = await run_db(
        post_service.list_user_posts,
        engine,
        cache,
        user_id,
        page=pagination.page,
        limit=pagination.limit,
    )
    return paginated(result["posts"], result["pagination"])


# ---------------------------------------------------------------------------
# CRUD
# ---------------------------------------------------------------------------
@router.post("", status_code=201)
async def create_post(
    body: PostCreate,
    user: dict = Depends(get_current_user),
    engine=Depends(get_engine),
    cache: TTLCache = Depends(get_cache),
    ai: AIService = Depends(get_ai),
    cfg: AgoraConfig = Depends(get_config),
):
    fields = body.model_dump(mode="json")
    community_id = fields.pop("community_id")
    post = await post_service.create_post(
        engine, cache, ai, cfg, user["id"], community_id=community_id, **fields
    )
    return created(post, "Post created successfully")


@router.get("/{post_id}")
async def get_post(
    post_id: int,
    user: dict | None = Depends(get_optional_user),
    engine=Depends(get_engine),
    cache: TTLCache = Depends(get_cache),
):
    viewer_id = user["id"] if user else None
    return ok(await run_db(post_service.get_post, engine, cache, post_id, viewer_id))


@router.put("/{post_id}")
async def update_post(
    post_id: int,
    body: PostUpdate,
    user: dict = Depends(get_current_user),
    engine=Depends(get_engine),
    cache: TTLCache = Depends(get_cache),
    ai: AIService = Depends(get_ai),
    cfg: AgoraConfig = Depends(get_config),
    gateway: RealtimeGateway = Depends(get_gateway),
):
    changes = body.model_dump(exclude_none=True, mode="json")
    post = await post_service.update_post(engine, cache, ai, cfg, post_id, user["id"], **changes)
    await gateway.publish_post_changes(
        post_id, post["community_id"], {**changes, "is_edited": True}
    )
    return ok(post, "Post updated successfully")


@router.delete("/{post_id}")
async def delete_post(
    post_id: int,
    user: dict = Depends(get_current_user),
    engine=Depends(get_engine),
    cache: TTLCache = Depends(get_cache),
):
    await run_db(post_service.delete_post, engine, cache, post_id, user["id"])
    return ok(None, "Post deleted successfully")


# ---------------------------------------------------------------------------
# Votes
# ---------------------------------------------------------------------------
async def _vote(post_id: int, user_id: int, direction: VoteDirection, engine, cache, gateway):
    summary = await run_db(post_service.vote_post, engine, cache, post_id, user_id, direction)
    await gateway.publish_vote(summary, user_id)
    return summary


@router.post("/{post_id}/upvote")
async def upvote(
    post_id: int,
    user: dict = Depends(get_current_user),
    engine=Depends(get_engine),
    cache: TTLCache = Depends(get_cache),
    gateway: RealtimeGateway = Depends(get_gateway),
):
    summary = await _vote(post_id, user["id"], VoteDirection.UP, engine, cache, gateway)
    return ok(summary, "Vote recorded")


@router.post("/{post_id}/downvote")
async def downvote(
    post_id: int,
    user: dict = Depends(get_current_user),
    engine=Depends(get_engine),
    cache: TTLCache = Depends(get_cache),
    gateway: RealtimeGateway = Depends(get_gateway),
):
    summary = await _vote(post_id, user["id"], VoteDirection.DOWN, engine, cache, gateway)
    return ok(summary, "Vote recorded")


# ---------------------------------------------------------------------------
# Moderation flags
# ---------------------------------------------------------------------------
FlagAction = Literal["pin", "unpin", "lock", "unlock"]

_FLAG_ACTIONS = {
    "pin": (post_service.pin_post, "is_pinned", True, "Post pinned"),
    "unpin": (post_service.unpin_post, "is_pinned", False, "Post unpinned"),
    "lock": (post_service.lock_post, "is_locked", True, "Post locked"),
    "unlock": (post_service.unlock_post, "is_locked", False, "Post unlocked"),
}


@router.post("/{post_id}/{action}")
async def set_flag(
    post_id: int,
    action: FlagAction,
    user: dict = Depends(get_current_user),
    engine=Depends(get_engine),
    cache: TTLCache = Depends(get_cache),
    gateway: RealtimeGateway = Depends(get_gateway),
):
    func, field, value, message = _FLAG_ACTIONS[action]
    post = await run_db(func, engine, cache, post_id, user["id"])
    await gateway.publish_post_changes(post_id, post["community_id"], {field: value})
    return ok(post, message)
