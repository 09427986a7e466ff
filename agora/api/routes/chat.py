"""
agora.api.routes.chat — Channel & direct messages over REST
=============================================================

Messages sent here are fanned out through the realtime gateway; none of the
sender's own connections receive a copy.
"""

from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field, model_validator

from agora.api.deps import get_ai, get_config, get_current_user, get_engine, get_gateway
from agora.api.responses import created, ok
from agora.config import AgoraConfig
from agora.constants import DEFAULT_MESSAGE_LIMIT, MAX_LIMIT, MAX_MESSAGE_CONTENT
from agora.database.engine import run_db
from agora.database.models import MessageType
from agora.realtime.gateway import RealtimeGateway
from agora.services import chat_service
from agora.services.ai_service import AIService

router = APIRouter(prefix="/chat", tags=["chat"])


class MessageCreate(BaseModel):
    content: str = Field(min_length=1, max_length=MAX_MESSAGE_CONTENT)
    community_id: int | None = None
    receiver_id: int | None = None
    type: MessageType = MessageType.TEXT
    media: dict | None = None
    reply_to: int | None = None

    @model_validator(mode="after")
    def _one_target(self) -> MessageCreate:
        if self.community_id is None and self.receiver_id is None:
            raise ValueError("Either communityId or receiverId is required")
        if self.community_id is not None and self.receiver_id is not None:
            raise ValueError("Cannot specify both communityId and receiverId")
        return self


class ReactionBody(BaseModel):
    emoji: str = Field(min_length=1, max_length=32)


@router.post("/messages", status_code=201)
async def send_message(
    body: MessageCreate,
    user: dict = Depends(get_current_user),
    engine=Depends(get_engine),
    ai: AIService = Depends(get_ai),
    cfg: AgoraConfig = Depends(get_config),
    gateway: RealtimeGateway = Depends(get_gateway),
):
    message = await chat_service.send_message(
        engine, ai, cfg, user["id"], **body.model_dump(mode="json")
    )
    await gateway.publish_message(message)
    return created(message, "Message sent successfully")


@router.get("/communities/{community_id}/messages")
async def community_messages(
    community_id: int,
    page: int = Query(1, ge=1),
    limit: int = Query(DEFAULT_MESSAGE_LIMIT, ge=1, le=MAX_LIMIT),
    before: datetime | None = None,
    user: dict = Depends(get_current_user),
    engine=Depends(get_engine),
):
    messages = await run_db(
        chat_service.get_community_messages,
        engine,
        community_id,
        user["id"],
        page=page,
        limit=limit,
        before=before,
    )
    return ok(messages)


@router.get("/direct/{other_user_id}/messages")
async def direct_messages(
    other_user_id: int,
    page: int = Query(1, ge=1),
    limit: int = Query(DEFAULT_MESSAGE_LIMIT, ge=1, le=MAX_LIMIT),
    before: datetime | None = None,
    user: dict = Depends(get_current_user),
    engine=Depends(get_engine),
):
    messages = await run_db(
        chat_service.get_direct_messages,
        engine,
        user["id"],
        other_user_id,
        page=page,
        limit=limit,
        before=before,
    )
    return ok(messages)


@router.post("/messages/{message_id}/read")
async def mark_read(
    message_id: int,
    user: dict = Depends(get_current_user),
    engine=Depends(get_engine),
    gateway: RealtimeGateway = Depends(get_gateway),
):
    receipt = await run_db(chat_service.mark_as_read, engine, message_id, user["id"])
    await gateway.publish_read(receipt)
    return ok(receipt, "Message marked as read")


@router.delete("/messages/{message_id}")
async def delete_message(
    message_id: int,
    for_everyone: bool = Query(True, alias="forEveryone"),
    user: dict = Depends(get_current_user),
    engine=Depends(get_engine),
):
    result = await run_db(
        chat_service.delete_message, engine, message_id, user["id"], for_everyone=for_everyone
    )
    return ok(result, "Message deleted successfully")


@router.post("/messages/{message_id}/reactions")
async def add_reaction(
    message_id: int,
    body: ReactionBody,
    user: dict = Depends(get_current_user),
    engine=Depends(get_engine),
):
    message = await run_db(chat_service.add_reaction, engine, message_id, user["id"], body.emoji)
    return ok(message, "Reaction added")


@router.delete("/messages/{message_id}/reactions")
async def remove_reaction(
    message_id: int,
    user: dict = Depends(get_current_user),
    engine=Depends(get_engine),
):
    message = await run_db(chat_service.remove_reaction, engine, message_id, user["id"])
    return ok(message, "Reaction removed")


@router.get("/unread")
async def unread_count(
    community_id: int | None = Query(None, alias="communityId"),
    user: dict = Depends(get_current_user),
    engine=Depends(get_engine),
):
    count = await run_db(chat_service.get_unread_count, engine, user["id"], community_id)
    return ok({"unread_count": count})
