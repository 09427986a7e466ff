"""
agora.realtime.events — WebSocket Event Schemas
================================================

Frames on the wire are ``{"event": <name>, "data": {...}}``.  Every event
name maps to one pydantic model.  Top-level payload fields are camelCase on
the wire (``communityId``) and snake_case in Python; nested service dicts
(a message, a post summary) are passed through as-is.
"""

from __future__ import annotations

from typing import Any, ClassVar

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator
from pydantic.alias_generators import to_camel

from agora.constants import MAX_COMMENT_CONTENT, MAX_MESSAGE_CONTENT
from agora.engine.ranking import VoteDirection
from agora.errors import ValidationError as AgoraValidationError


class _Event(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ---------------------------------------------------------------------------
# Client → server
# ---------------------------------------------------------------------------
class JoinCommunity(_Event):
    community_id: int


class LeaveCommunity(_Event):
    community_id: int


class SendMessage(_Event):
    content: str = Field(min_length=1, max_length=MAX_MESSAGE_CONTENT)
    community_id: int | None = None
    receiver_id: int | None = None
    type: str = "text"
    media: dict | None = None
    reply_to: int | None = None

    @model_validator(mode="after")
    def _one_target(self) -> SendMessage:
        if self.community_id is None and self.receiver_id is None:
            raise ValueError("Either communityId or receiverId is required")
        if self.community_id is not None and self.receiver_id is not None:
            raise ValueError("Cannot specify both communityId and receiverId")
        return self


class Typing(_Event):
    community_id: int | None = None
    receiver_id: int | None = None


class ReadReceipt(_Event):
    message_id: int


class UpdatePresence(_Event):
    status: str | None = Field(default=None, max_length=20)
    custom_status: str | None = Field(default=None, max_length=100)


class Heartbeat(_Event):
    pass


class PostVote(_Event):
    post_id: int


class CreateComment(_Event):
    post_id: int
    content: str = Field(min_length=1, max_length=MAX_COMMENT_CONTENT)
    parent_id: int | None = None


class WatchPost(_Event):
    post_id: int


class JoinDirect(_Event):
    user_id: int


CLIENT_EVENTS: dict[str, type[_Event]] = {
    "join_community": JoinCommunity,
    "leave_community": LeaveCommunity,
    "send_message": SendMessage,
    "typing_start": Typing,
    "typing_stop": Typing,
    "read_receipt": ReadReceipt,
    "update_presence": UpdatePresence,
    "heartbeat": Heartbeat,
    "upvote_post": PostVote,
    "downvote_post": PostVote,
    "new_comment": CreateComment,
    "watch_post": WatchPost,
    "unwatch_post": WatchPost,
    "join_direct": JoinDirect,
    "leave_direct": JoinDirect,
}

VOTE_EVENTS = {"upvote_post": VoteDirection.UP, "downvote_post": VoteDirection.DOWN}


def parse_client_event(frame: Any) -> tuple[str, _Event]:
    """Validate an inbound frame and return ``(event_name, payload_model)``.

    Raises :class:`agora.errors.ValidationError` for anything malformed.
    """
    if not isinstance(frame, dict):
        raise AgoraValidationError("Frame must be a JSON object")
    name = frame.get("event")
    model = CLIENT_EVENTS.get(name) if isinstance(name, str) else None
    if model is None:
        raise AgoraValidationError(f"Unknown event: {name}")
    data = frame.get("data") or {}
    if not isinstance(data, dict):
        raise AgoraValidationError("Event data must be an object")
    try:
        return name, model.model_validate(data)
    except ValidationError as exc:
        first = exc.errors()[0]
        field = ".".join(str(p) for p in first.get("loc", ()))
        message = first.get("msg", "Invalid event data").removeprefix("Value error, ")
        raise AgoraValidationError(
            message, details=[{"field": field, "message": message}] if field else None
        ) from exc


# ---------------------------------------------------------------------------
# Server → client
# ---------------------------------------------------------------------------
class ServerEvent(_Event):
    event: ClassVar[str]

    def payload(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json")


class NewMessage(ServerEvent):
    event: ClassVar[str] = "new_message"
    message: dict[str, Any]


class UserTyping(ServerEvent):
    event: ClassVar[str] = "user_typing"
    user_id: int
    username: str
    is_typing: bool
    community_id: int | None = None


class MessageRead(ServerEvent):
    event: ClassVar[str] = "message_read"
    message_id: int
    read_by: int
    read_at: str | None = None


class UserJoined(ServerEvent):
    event: ClassVar[str] = "user_joined"
    user_id: int
    username: str
    community_id: int
    timestamp: str | None = None


class UserLeft(ServerEvent):
    event: ClassVar[str] = "user_left"
    user_id: int
    username: str
    community_id: int
    timestamp: str | None = None


class PresenceUpdate(ServerEvent):
    event: ClassVar[str] = "presence_update"
    user_id: int
    username: str
    status: str | None = None
    custom_status: str | None = None
    timestamp: str | None = None


class UserPresence(ServerEvent):
    event: ClassVar[str] = "user_presence"
    user_id: int
    is_online: bool
    last_seen: str | None = None


class VoteUpdate(ServerEvent):
    event: ClassVar[str] = "vote_update"
    post_id: int
    upvotes: int
    downvotes: int
    score: float
    user_id: int | None = None
    user_vote: str | None = None


class PostUpdated(ServerEvent):
    event: ClassVar[str] = "post_updated"
    post_id: int
    community_id: int
    changes: dict[str, Any]


class CommentAdded(ServerEvent):
    event: ClassVar[str] = "new_comment"
    post_id: int
    comment: dict[str, Any]


class Notification(ServerEvent):
    event: ClassVar[str] = "notification"
    type: str
    message: str
    data: dict[str, Any] = Field(default_factory=dict)


class ErrorEvent(ServerEvent):
    event: ClassVar[str] = "error"
    message: str
    source: str | None = None
