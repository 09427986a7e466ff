"""
agora.services.chat_service — Community Channels & Direct Messages
====================================================================

Channel keys:

* community message → ``community:<community_id>``
* direct message    → ``dm:<lo>:<hi>`` (the two user ids, numerically ordered)

Delivered / read receipts are rows unique per (message, user, kind), so
marking twice never duplicates.  Fetching a page of history marks every
returned message delivered to the reader.  A user holds at most one
reaction per message; reacting again replaces it.

"Delete for everyone" soft-deletes the message (sender, or a community
moderator for channel messages); "delete for me" only hides it from the
requesting user.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

from agora.config import AgoraConfig
from agora.constants import page_offset
from agora.database.engine import get_session, run_db
from agora.database.models import (
    Community,
    CommunityMember,
    Message,
    MessageHidden,
    MessageReaction,
    MessageReceipt,
    MessageType,
    ReceiptKind,
    User,
    ensure_aware,
    isoformat,
    live,
    utcnow,
)
from agora.errors import AuthorizationError, NotFoundError, StateError, ValidationError
from agora.services.ai_service import AIService, screen_content
from agora.services.community_service import is_moderator
from agora.services.user_service import user_summary

logger = logging.getLogger(__name__)


def direct_channel(user_a: int, user_b: int) -> str:
    lo, hi = sorted((int(user_a), int(user_b)))
    return f"dm:{lo}:{hi}"


def community_channel(community_id: int) -> str:
    return f"community:{community_id}"


# ---------------------------------------------------------------------------
# Serialization
# ---------------------------------------------------------------------------
def message_dict(message: Message, sender: User | None = None) -> dict[str, Any]:
    receipts = sorted(message.receipts, key=lambda r: ensure_aware(r.at))
    data = {
        "id": message.id,
        "channel": message.channel,
        "sender_id": message.sender_id,
        "receiver_id": message.receiver_id,
        "community_id": message.community_id,
        "content": message.content,
        "type": message.type,
        "media": message.media,
        "reply_to_id": message.reply_to_id,
        "delivered_to": [
            {"user_id": r.user_id, "at": isoformat(r.at)}
            for r in receipts if r.kind == ReceiptKind.DELIVERED
        ],
        "read_by": [
            {"user_id": r.user_id, "at": isoformat(r.at)}
            for r in receipts if r.kind == ReceiptKind.READ
        ],
        "reactions": [
            {"user_id": r.user_id, "emoji": r.emoji}
            for r in sorted(message.reactions, key=lambda r: ensure_aware(r.created_at))
        ],
        "is_deleted": message.is_deleted,
        "created_at": isoformat(message.created_at),
    }
    if sender is not None:
        data["sender"] = user_summary(sender)
    if message.ai_sentiment is not None or message.ai_toxicity_score is not None:
        data["ai_analysis"] = {
            "sentiment": message.ai_sentiment,
            "toxicity_score": message.ai_toxicity_score,
        }
    return data


# ---------------------------------------------------------------------------
# Receipts
# ---------------------------------------------------------------------------
def _add_receipt(session, message_id: int, user_id: int, kind: ReceiptKind) -> bool:
    """Insert a receipt if missing.  Returns ``True`` only when newly added."""
    if session.get(MessageReceipt, (message_id, user_id, kind.value)) is not None:
        return False
    try:
        with session.begin_nested():  # SAVEPOINT
            session.add(MessageReceipt(message_id=message_id, user_id=user_id, kind=kind))
            session.flush()
    except IntegrityError:
        # A concurrent request recorded it first.
        logger.debug("Receipt %s for message %d / user %d already present", kind, message_id, user_id)
        return False
    return True


def _mark_delivered(session, message_ids: list[int], user_id: int) -> None:
    if not message_ids:
        return
    already = set(session.scalars(
        select(MessageReceipt.message_id).where(
            MessageReceipt.message_id.in_(message_ids),
            MessageReceipt.user_id == user_id,
            MessageReceipt.kind == ReceiptKind.DELIVERED,
        )
    ).all())
    for message_id in message_ids:
        if message_id not in already:
            _add_receipt(session, message_id, user_id, ReceiptKind.DELIVERED)


# ---------------------------------------------------------------------------
# Access checks
# ---------------------------------------------------------------------------
def _is_member(session, community_id: int, user_id: int) -> bool:
    return session.get(CommunityMember, (community_id, user_id)) is not None


def _is_participant(session, message: Message, user_id: int) -> bool:
    if message.sender_id == user_id or message.receiver_id == user_id:
        return True
    return message.community_id is not None and _is_member(session, message.community_id, user_id)


def _load_message(session, message_id: int) -> Message:
    message = session.get(Message, message_id)
    if message is None or message.is_deleted:
        raise NotFoundError("Message not found")
    return message


def _check_target(
    engine,
    user_id: int,
    community_id: int | None,
    receiver_id: int | None,
    reply_to: int | None,
) -> str:
    """Validate where a message is going and return its channel key."""
    if community_id is None and receiver_id is None:
        raise ValidationError("Either communityId or receiverId is required")
    if community_id is not None and receiver_id is not None:
        raise ValidationError("Cannot specify both communityId and receiverId")

    with get_session(engine) as session:
        if community_id is not None:
            community = session.get(Community, community_id)
            if community is None:
                raise NotFoundError("Community not found")
            if community.is_deleted:
                raise StateError("Community is not active")
            if not _is_member(session, community_id, user_id):
                raise AuthorizationError(
                    "You must be a member to send messages in this community"
                )
            channel = community_channel(community_id)
        else:
            if receiver_id == user_id:
                raise ValidationError("Cannot send a direct message to yourself")
            if session.get(User, receiver_id) is None:
                raise NotFoundError("Receiver not found")
            channel = direct_channel(user_id, receiver_id)

        if reply_to is not None:
            replied = session.get(Message, reply_to)
            if replied is None or replied.channel != channel:
                raise NotFoundError("Replied message not found")
    return channel


# ---------------------------------------------------------------------------
# Send
# ---------------------------------------------------------------------------
def _insert_message(engine, user_id: int, channel: str, fields: dict[str, Any]) -> dict[str, Any]:
    with get_session(engine) as session:
        message = Message(sender_id=user_id, channel=channel, **fields)
        session.add(message)
        session.flush()
        session.add(MessageReceipt(
            message_id=message.id, user_id=user_id, kind=ReceiptKind.DELIVERED
        ))
        session.flush()
        session.refresh(message)
        return message_dict(message, session.get(User, user_id))


async def send_message(
    engine,
    ai: AIService,
    cfg: AgoraConfig,
    user_id: int,
    *,
    content: str,
    community_id: int | None = None,
    receiver_id: int | None = None,
    type: str = MessageType.TEXT,
    media: dict | None = None,
    reply_to: int | None = None,
) -> dict[str, Any]:
    channel = await run_db(_check_target, engine, user_id, community_id, receiver_id, reply_to)
    analysis = await screen_content(
        ai, content, min_length=cfg.moderation_min_length, threshold=cfg.toxicity_threshold
    )
    fields = {
        "content": content,
        "community_id": community_id,
        "receiver_id": receiver_id,
        "type": type,
        "media": media,
        "reply_to_id": reply_to,
        "ai_sentiment": analysis.sentiment if analysis else None,
        "ai_toxicity_score": analysis.toxicity_score if analysis else None,
    }
    data = await run_db(_insert_message, engine, user_id, channel, fields)
    logger.info("Message sent: %d by user %d on %s", data["id"], user_id, channel)
    return data


# ---------------------------------------------------------------------------
# History
# ---------------------------------------------------------------------------
def _history(
    session,
    user_id: int,
    condition,
    page: int,
    limit: int,
    before: datetime | None,
) -> list[dict[str, Any]]:
    hidden = select(MessageHidden.message_id).where(MessageHidden.user_id == user_id)
    stmt = live(select(Message), Message).where(condition, Message.id.not_in(hidden))
    if before is not None:
        stmt = stmt.where(Message.created_at < before)
    messages = list(session.scalars(
        stmt.order_by(Message.created_at.desc(), Message.id.desc())
        .offset(page_offset(page, limit))
        .limit(limit)
    ).all())

    _mark_delivered(session, [m.id for m in messages], user_id)
    session.flush()

    senders = {
        u.id: u
        for u in session.scalars(
            select(User).where(User.id.in_({m.sender_id for m in messages}))
        ).all()
    }
    messages.reverse()
    result = []
    for message in messages:
        session.refresh(message)
        result.append(message_dict(message, senders.get(message.sender_id)))
    return result


def get_community_messages(
    engine,
    community_id: int,
    user_id: int,
    *,
    page: int = 1,
    limit: int = 50,
    before: datetime | None = None,
) -> list[dict[str, Any]]:
    """Return one page of channel history, oldest first, marking it delivered."""
    with get_session(engine) as session:
        community = session.get(Community, community_id)
        if community is None or community.is_deleted:
            raise NotFoundError("Community not found")
        if not _is_member(session, community_id, user_id):
            raise AuthorizationError("You must be a member to view messages")
        return _history(
            session, user_id, Message.community_id == community_id, page, limit, before
        )


def get_direct_messages(
    engine,
    user_id: int,
    other_user_id: int,
    *,
    page: int = 1,
    limit: int = 50,
    before: datetime | None = None,
) -> list[dict[str, Any]]:
    with get_session(engine) as session:
        if session.get(User, other_user_id) is None:
            raise NotFoundError("User not found")
        channel = direct_channel(user_id, other_user_id)
        return _history(session, user_id, Message.channel == channel, page, limit, before)


# ---------------------------------------------------------------------------
# Read receipts
# ---------------------------------------------------------------------------
def mark_as_read(engine, message_id: int, user_id: int) -> dict[str, Any]:
    """Record that *user_id* read the message.

    ``newly_read`` is ``False`` when the receipt already existed, so callers
    only notify on the first read.
    """
    with get_session(engine) as session:
        message = _load_message(session, message_id)
        if not _is_participant(session, message, user_id):
            raise AuthorizationError("Not authorized to mark this message as read")
        newly_read = _add_receipt(session, message_id, user_id, ReceiptKind.READ)
        receipt = session.get(MessageReceipt, (message_id, user_id, ReceiptKind.READ.value))
        return {
            "message_id": message.id,
            "sender_id": message.sender_id,
            "receiver_id": message.receiver_id,
            "community_id": message.community_id,
            "read_by": user_id,
            "read_at": isoformat(receipt.at) if receipt else isoformat(utcnow()),
            "newly_read": newly_read,
        }


# ---------------------------------------------------------------------------
# Delete
# ---------------------------------------------------------------------------
def delete_message(
    engine, message_id: int, user_id: int, *, for_everyone: bool = True
) -> dict[str, Any]:
    with get_session(engine) as session:
        message = _load_message(session, message_id)

        if not for_everyone:
            if not _is_participant(session, message, user_id):
                raise AuthorizationError("Not authorized to delete this message")
            if session.get(MessageHidden, (message_id, user_id)) is None:
                session.add(MessageHidden(message_id=message_id, user_id=user_id))
            logger.info("Message %d hidden for user %d", message_id, user_id)
            return {"message_id": message_id, "deleted_for": user_id}

        if message.sender_id != user_id:
            if message.community_id is None:
                raise AuthorizationError("Only sender can delete this message")
            community = session.get(Community, message.community_id)
            member = session.get(CommunityMember, (message.community_id, user_id))
            if community is None or not is_moderator(community, member, user_id):
                raise AuthorizationError("Insufficient permissions")

        message.soft_delete(by=user_id)
        session.flush()
        logger.info("Message deleted: %d by user %d", message_id, user_id)
        return {
            "message_id": message_id,
            "channel": message.channel,
            "community_id": message.community_id,
            "deleted_by": user_id,
        }


# ---------------------------------------------------------------------------
# Reactions
# ---------------------------------------------------------------------------
def add_reaction(engine, message_id: int, user_id: int, emoji: str) -> dict[str, Any]:
    """Set the user's reaction, replacing any earlier one."""
    with get_session(engine) as session:
        message = _load_message(session, message_id)
        if not _is_participant(session, message, user_id):
            raise AuthorizationError("Not authorized to react to this message")
        existing = session.get(MessageReaction, (message_id, user_id))
        if existing is not None:
            session.delete(existing)
            session.flush()
        session.add(MessageReaction(message_id=message_id, user_id=user_id, emoji=emoji))
        session.flush()
        session.refresh(message)
        return message_dict(message)


def remove_reaction(engine, message_id: int, user_id: int) -> dict[str, Any]:
    with get_session(engine) as session:
        message = _load_message(session, message_id)
        existing = session.get(MessageReaction, (message_id, user_id))
        if existing is not None:
            session.delete(existing)
            session.flush()
        session.refresh(message)
        return message_dict(message)


# ---------------------------------------------------------------------------
# Unread count
# ---------------------------------------------------------------------------
def get_unread_count(engine, user_id: int, community_id: int | None = None) -> int:
    """Messages addressed to *user_id* (or in *community_id*) not yet read."""
    read = select(MessageReceipt.message_id).where(
        MessageReceipt.user_id == user_id,
        MessageReceipt.kind == ReceiptKind.READ,
    )
    if community_id is not None:
        target = Message.community_id == community_id
    else:
        target = Message.receiver_id == user_id
    with get_session(engine) as session:
        return session.scalar(
            live(select(func.count(Message.id)), Message).where(
                target,
                Message.sender_id != user_id,
                Message.id.not_in(read),
            )
        ) or 0
