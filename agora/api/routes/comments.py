"""
agora.api.routes.comments — Threaded comments
===============================================
"""

from __future__ import annotations

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from agora.api.deps import get_ai, get_cache, get_config, get_current_user, get_engine, get_gateway
from agora.api.responses import created, ok
from agora.config import AgoraConfig
from agora.constants import MAX_COMMENT_CONTENT
from agora.database.engine import run_db
from agora.engine.cache import TTLCache
from agora.realtime.gateway import RealtimeGateway
from agora.services import comment_service
from agora.services.ai_service import AIService

router = APIRouter(prefix="/comments", tags=["comments"])


class CommentCreate(BaseModel):
    post_id: int
    content: str = Field(min_length=1, max_length=MAX_COMMENT_CONTENT)
    parent_id: int | None = None


class CommentUpdate(BaseModel):
    content: str = Field(min_length=1, max_length=MAX_COMMENT_CONTENT)


@router.get("/post/{post_id}")
async def list_comments(post_id: int, engine=Depends(get_engine)):
    return ok(await run_db(comment_service.list_comments, engine, post_id))


@router.post("", status_code=201)
async def create_comment(
    body: CommentCreate,
    user: dict = Depends(get_current_user),
    engine=Depends(get_engine),
    cache: TTLCache = Depends(get_cache),
    ai: AIService = Depends(get_ai),
    cfg: AgoraConfig = Depends(get_config),
    gateway: RealtimeGateway = Depends(get_gateway),
):
    comment = await comment_service.create_comment(
        engine,
        cache,
        ai,
        cfg,
        user["id"],
        post_id=body.post_id,
        content=body.content,
        parent_id=body.parent_id,
    )
    await gateway.publish_comment(comment, user["id"])
    return created(comment, "Comment created successfully")


@router.put("/{comment_id}")
async def update_comment(
    comment_id: int,
    body: CommentUpdate,
    user: dict = Depends(get_current_user),
    engine=Depends(get_engine),
    ai: AIService = Depends(get_ai),
    cfg: AgoraConfig = Depends(get_config),
):
    comment = await comment_service.update_comment(
        engine, ai, cfg, comment_id, user["id"], body.content
    )
    return ok(comment, "Comment updated successfully")


@router.delete("/{comment_id}")
async def delete_comment(
    comment_id: int,
    user: dict = Depends(get_current_user),
    engine=Depends(get_engine),
    cache: TTLCache = Depends(get_cache),
):
    await run_db(comment_service.delete_comment, engine, cache, comment_id, user["id"])
    return ok(None, "Comment deleted successfully")
