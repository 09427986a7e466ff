"""
agora.realtime.gateway — WebSocket Event Gateway
=================================================

Owns the presence registry and the room hub, routes every client event to
its handler, and publishes service results to the right rooms.  REST routes
call the ``publish_*`` helpers too, so an action has the same live effect
whichever surface triggered it.

A handler failure never escapes :meth:`RealtimeGateway.dispatch`: domain
errors become an ``error`` event for the originating connection; anything
else is logged and reported as ``"Internal server error"``.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Awaitable, Callable
from typing import Any

from agora.config import AgoraConfig
from agora.database.engine import run_db
from agora.database.models import isoformat, utcnow
from agora.engine.cache import TTLCache
from agora.errors import AgoraError, AuthorizationError, ValidationError
from agora.realtime.events import (
    VOTE_EVENTS,
    CommentAdded,
    ErrorEvent,
    MessageRead,
    NewMessage,
    Notification,
    PostUpdated,
    PresenceUpdate,
    UserJoined,
    UserLeft,
    UserPresence,
    UserTyping,
    VoteUpdate,
    parse_client_event,
)
from agora.realtime.presence import PresenceRegistry
from agora.realtime.rooms import (
    Connection,
    Room,
    RoomHub,
    community_room,
    direct_room,
    post_room,
    presence_room,
    user_room,
)
from agora.services import chat_service, comment_service, post_service, user_service
from agora.services.ai_service import AIService
from agora.services.community_service import get_member_role, member_community_ids

logger = logging.getLogger(__name__)


class WebSocketConnection:
    """Adapter giving a Starlette ``WebSocket`` the hub's connection shape."""

    def __init__(self, websocket, user_id: int, username: str) -> None:
        self.id = uuid.uuid4().hex
        self.websocket = websocket
        self.user_id = user_id
        self.username = username

    async def send(self, event: str, data: dict) -> None:
        await self.websocket.send_json({"event": event, "data": data})

    def __repr__(self) -> str:
        return f"<WebSocketConnection {self.id} user={self.user_id}>"


Handler = Callable[[Connection, str, Any], Awaitable[None]]


class RealtimeGateway:
    """Routes client socket events to services and fans results out to rooms.

    Usage:
        gateway = RealtimeGateway(engine, cache, ai, cfg)
        await gateway.on_connect(conn)               # joins user:<id>, marks online
        await gateway.dispatch(conn, {"event": "join_community", "data": {"communityId": 3}})
        await gateway.on_disconnect(conn)            # leaves every room

    Failures inside a handler reach the sender as an ``error`` event and
    never escape :meth:`dispatch`.
    """

    def __init__(
        self,
        engine,
        cache: TTLCache,
        ai: AIService,
        cfg: AgoraConfig,
        *,
        hub: RoomHub | None = None,
    ) -> None:
        self.engine = engine
        self.cache = cache
        self.ai = ai
        self.cfg = cfg
        self.hub = hub or RoomHub()
        self.presence = PresenceRegistry(
            on_change=self._presence_changed,
            on_heartbeat=self._heartbeat,
        )
        self._handlers: dict[str, Handler] = {
            "join_community": self._join_community,
            "leave_community": self._leave_community,
            "send_message": self._send_message,
            "typing_start": self._typing,
            "typing_stop": self._typing,
            "read_receipt": self._read_receipt,
            "update_presence": self._update_presence,
            "heartbeat": self._on_heartbeat,
            "upvote_post": self._vote,
            "downvote_post": self._vote,
            "new_comment": self._new_comment,
            "watch_post": self._watch_post,
            "unwatch_post": self._unwatch_post,
            "join_direct": self._join_direct,
            "leave_direct": self._leave_direct,
        }

    # -------------------------------------------------------------------
    # Connection lifecycle
    # -------------------------------------------------------------------
    async def on_connect(self, conn: Connection) -> None:
        self.hub.join(conn, user_room(conn.user_id))
        await self.presence.connect(conn.user_id, conn.id)
        logger.info("User connected: %s (%d) via %s", conn.username, conn.user_id, conn.id)

    async def on_disconnect(self, conn: Connection) -> None:
        self.hub.leave_all(conn)
        await self.presence.disconnect(conn.user_id, conn.id)
        logger.info("User disconnected: %s (%d) via %s", conn.username, conn.user_id, conn.id)

    async def _presence_changed(self, user_id: int, online: bool) -> None:
        await run_db(user_service.set_online, self.engine, user_id, online)
        community_ids = await run_db(member_community_ids, self.engine, user_id)
        event = UserPresence(user_id=user_id, is_online=online, last_seen=isoformat(utcnow()))
        await self.hub.emit([presence_room(cid) for cid in community_ids], event)

    async def _heartbeat(self, user_id: int) -> None:
        await run_db(user_service.touch_last_seen, self.engine, user_id)

    # -------------------------------------------------------------------
    # Dispatch
    # -------------------------------------------------------------------
    async def dispatch(self, conn: Connection, frame: Any) -> None:
        name = frame.get("event") if isinstance(frame, dict) else None
        source = name if isinstance(name, str) else None
        try:
            name, payload = parse_client_event(frame)
            await self._handlers[name](conn, name, payload)
        except AgoraError as exc:
            logger.debug("Event %r from %s rejected: %s", name, conn.id, exc.message)
            await self.hub.send(conn, ErrorEvent(message=exc.message, source=source))
        except Exception:
            logger.exception("Unhandled error in %r handler for user %d", name, conn.user_id)
            await self.hub.send(conn, ErrorEvent(message="Internal server error", source=source))

    # -------------------------------------------------------------------
    # Community rooms
    # -------------------------------------------------------------------
    async def _join_community(self, conn: Connection, name: str, payload) -> None:
        cid = payload.community_id
        role = await run_db(get_member_role, self.engine, cid, conn.user_id)
        if role is None:
            raise AuthorizationError("You must be a member to join chat")
        self.hub.join(conn, community_room(cid))
        self.hub.join(conn, presence_room(cid))
        await self.hub.emit(
            presence_room(cid),
            UserJoined(
                user_id=conn.user_id,
                username=conn.username,
                community_id=cid,
                timestamp=isoformat(utcnow()),
            ),
            exclude=conn,
        )

    async def _leave_community(self, conn: Connection, name: str, payload) -> None:
        cid = payload.community_id
        self.hub.leave(conn, community_room(cid))
        self.hub.leave(conn, presence_room(cid))
        await self.hub.emit(
            presence_room(cid),
            UserLeft(
                user_id=conn.user_id,
                username=conn.username,
                community_id=cid,
                timestamp=isoformat(utcnow()),
            ),
        )

    # -------------------------------------------------------------------
    # Messages
    # -------------------------------------------------------------------
    @staticmethod
    def _message_rooms(sender_id: int, community_id: int | None, receiver_id: int | None) -> list[Room]:
        if community_id is not None:
            return [community_room(community_id)]
        if receiver_id is not None:
            return [user_room(receiver_id), direct_room(sender_id, receiver_id)]
        raise ValidationError("Either communityId or receiverId is required")

    async def publish_message(self, message: dict[str, Any], origin: Connection | None = None) -> None:
        """Fan a stored message out to its channel.

        With *origin* (socket send) that one connection is skipped and gets
        the event directly as its acknowledgement; without it (REST send)
        none of the sender's connections get a copy.
        """
        rooms = self._message_rooms(
            message["sender_id"], message["community_id"], message["receiver_id"]
        )
        event = NewMessage(message=message)
        if origin is not None:
            await self.hub.emit(rooms, event, exclude=origin)
            await self.hub.send(origin, event)
        else:
            await self.hub.emit(rooms, event, exclude_user=message["sender_id"])

    async def _send_message(self, conn: Connection, name: str, payload) -> None:
        message = await chat_service.send_message(
            self.engine,
            self.ai,
            self.cfg,
            conn.user_id,
            content=payload.content,
            community_id=payload.community_id,
            receiver_id=payload.receiver_id,
            type=payload.type,
            media=payload.media,
            reply_to=payload.reply_to,
        )
        await self.publish_message(message, origin=conn)

    async def _typing(self, conn: Connection, name: str, payload) -> None:
        if payload.community_id is not None and not self.hub.is_in(
            conn, community_room(payload.community_id)
        ):
            raise AuthorizationError("Join the community chat first")
        rooms = self._message_rooms(conn.user_id, payload.community_id, payload.receiver_id)
        event = UserTyping(
            user_id=conn.user_id,
            username=conn.username,
            is_typing=name == "typing_start",
            community_id=payload.community_id,
        )
        await self.hub.emit(rooms, event, exclude_user=conn.user_id)

    async def publish_read(self, receipt: dict[str, Any]) -> None:
        """Tell the sender (and the channel) that a message was read, once."""
        if not receipt["newly_read"]:
            return
        rooms: list[Room] = []
        if receipt["sender_id"] != receipt["read_by"]:
            rooms.append(user_room(receipt["sender_id"]))
        if receipt["community_id"] is not None:
            rooms.append(community_room(receipt["community_id"]))
        event = MessageRead(
            message_id=receipt["message_id"],
            read_by=receipt["read_by"],
            read_at=receipt["read_at"],
        )
        await self.hub.emit(rooms, event)

    async def _read_receipt(self, conn: Connection, name: str, payload) -> None:
        receipt = await run_db(chat_service.mark_as_read, self.engine, payload.message_id, conn.user_id)
        await self.publish_read(receipt)

    async def _join_direct(self, conn: Connection, name: str, payload) -> None:
        if payload.user_id == conn.user_id:
            raise ValidationError("Cannot open a direct conversation with yourself")
        await run_db(user_service.get_user, self.engine, payload.user_id)
        self.hub.join(conn, direct_room(conn.user_id, payload.user_id))

    async def _leave_direct(self, conn: Connection, name: str, payload) -> None:
        self.hub.leave(conn, direct_room(conn.user_id, payload.user_id))

    # -------------------------------------------------------------------
    # Presence
    # -------------------------------------------------------------------
    async def publish_presence(
        self,
        user_id: int,
        username: str,
        custom_status: str | None,
        status: str | None = None,
    ) -> None:
        community_ids = await run_db(member_community_ids, self.engine, user_id)
        event = PresenceUpdate(
            user_id=user_id,
            username=username,
            status=status,
            custom_status=custom_status,
            timestamp=isoformat(utcnow()),
        )
        await self.hub.emit([presence_room(cid) for cid in community_ids], event)

    async def _update_presence(self, conn: Connection, name: str, payload) -> None:
        status = await run_db(
            user_service.set_custom_status, self.engine, conn.user_id, payload.custom_status
        )
        await self.publish_presence(
            conn.user_id, conn.username, status["custom_status"], payload.status
        )

    async def _on_heartbeat(self, conn: Connection, name: str, payload) -> None:
        await self.presence.heartbeat(conn.user_id)

    # -------------------------------------------------------------------
    # Posts
    # -------------------------------------------------------------------
    async def publish_vote(self, summary: dict[str, Any], user_id: int) -> None:
        await self.hub.emit(
            post_room(summary["post_id"]),
            VoteUpdate(
                post_id=summary["post_id"],
                upvotes=summary["upvotes"],
                downvotes=summary["downvotes"],
                score=summary["score"],
                user_id=user_id,
                user_vote=summary["user_vote"],
            ),
        )
        await self.publish_post_changes(
            summary["post_id"],
            summary["community_id"],
            {
                "upvotes": summary["upvotes"],
                "downvotes": summary["downvotes"],
                "score": summary["score"],
            },
        )

    async def publish_post_changes(
        self, post_id: int, community_id: int, changes: dict[str, Any]
    ) -> None:
        await self.hub.emit(
            community_room(community_id),
            PostUpdated(post_id=post_id, community_id=community_id, changes=changes),
        )

    async def _vote(self, conn: Connection, name: str, payload) -> None:
        summary = await run_db(
            post_service.vote_post,
            self.engine,
            self.cache,
            payload.post_id,
            conn.user_id,
            VOTE_EVENTS[name],
        )
        await self.publish_vote(summary, conn.user_id)

    async def publish_comment(self, comment: dict[str, Any], user_id: int) -> None:
        post = comment["post"]
        body = {k: v for k, v in comment.items() if k != "post"}
        await self.hub.emit(post_room(post["id"]), CommentAdded(post_id=post["id"], comment=body))
        if post["author_id"] == user_id:
            return
        username = (comment.get("author") or {}).get("username", "Someone")
        await self.hub.emit(
            user_room(post["author_id"]),
            Notification(
                type="comment",
                message=f"{username} commented on your post",
                data={"postId": post["id"], "commentId": comment["id"], "postTitle": post["title"]},
            ),
        )

    async def _new_comment(self, conn: Connection, name: str, payload) -> None:
        comment = await comment_service.create_comment(
            self.engine,
            self.cache,
            self.ai,
            self.cfg,
            conn.user_id,
            post_id=payload.post_id,
            content=payload.content,
            parent_id=payload.parent_id,
        )
        await self.publish_comment(comment, conn.user_id)

    async def _watch_post(self, conn: Connection, name: str, payload) -> None:
        await run_db(post_service.ensure_active_post, self.engine, payload.post_id)
        self.hub.join(conn, post_room(payload.post_id))

    async def _unwatch_post(self, conn: Connection, name: str, payload) -> None:
        self.hub.leave(conn, post_room(payload.post_id))
