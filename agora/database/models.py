"""
agora.database.models — SQLAlchemy 2.0 Data Models
===================================================

Tables:
- users               — Accounts, profile, lockout state, presence mirror
- communities         — Community metadata, settings, stats, lifecycle
- community_members   — (community, user) membership with role
- posts               — Posts with vote counters and derived hot score
- post_votes          — One row per (post, user): +1 / -1
- comments            — Threaded comments (parent_id, depth)
- messages            — Community channel + direct messages
- message_receipts    — Delivered / read markers, unique per (message, user, kind)
- message_reactions   — At most one reaction per (message, user)
- message_hidden      — Per-user "delete for me" visibility exceptions
- tokens              — Refresh tokens and blacklisted access tokens

Soft deletion is modelled as a lifecycle (:class:`Active` |
:class:`Deleted`) backed by ``deleted_at`` / ``deleted_by`` columns.  Use
:func:`live` to filter a query; deleted rows only appear when a caller asks
for them with ``include_deleted=True``.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from datetime import UTC, datetime

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    Select,
    SmallInteger,
    String,
    Text,
    event,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.ext.hybrid import hybrid_property
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from agora.engine.ranking import hot_score

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests).
JSONType = JSON().with_variant(JSONB(), "postgresql")


def utcnow() -> datetime:
    return datetime.now(UTC)


def ensure_aware(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes read back from SQLite."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


def isoformat(value: datetime | None) -> str | None:
    value = ensure_aware(value)
    return value.isoformat() if value else None


# ---------------------------------------------------------------------------
# Base
# ---------------------------------------------------------------------------
class Base(DeclarativeBase):
    """Shared base for all Agora ORM models."""


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------
class UserRole(enum.StrEnum):
    USER = "user"
    MODERATOR = "moderator"
    ADMIN = "admin"


class MemberRole(enum.StrEnum):
    """Role inside one community.  The owner holds ``admin``."""
    MEMBER = "member"
    MODERATOR = "moderator"
    ADMIN = "admin"


class CommunityPrivacy(enum.StrEnum):
    PUBLIC = "public"
    PRIVATE = "private"
    RESTRICTED = "restricted"


class JoinMethod(enum.StrEnum):
    OPEN = "open"
    APPROVAL = "approval"
    INVITE = "invite"


class PostPermission(enum.StrEnum):
    ALL = "all"
    MODERATORS = "moderators"
    APPROVED = "approved"


class ContentVisibility(enum.StrEnum):
    VISIBLE = "visible"
    HIDDEN = "hidden"


class PostType(enum.StrEnum):
    TEXT = "text"
    LINK = "link"
    IMAGE = "image"
    POLL = "poll"


class MessageType(enum.StrEnum):
    TEXT = "text"
    IMAGE = "image"
    FILE = "file"
    SYSTEM = "system"


class ReceiptKind(enum.StrEnum):
    DELIVERED = "delivered"
    READ = "read"


class TokenType(enum.StrEnum):
    ACCESS = "access"
    REFRESH = "refresh"
    RESET = "reset"
    VERIFY = "verify"


# ---------------------------------------------------------------------------
# Lifecycle: explicit soft-delete state
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class Active:
    pass


@dataclass(frozen=True, slots=True)
class Deleted:
    at: datetime
    by: int | None


Lifecycle = Active | Deleted


class SoftDeleteMixin:
    """``deleted_at`` / ``deleted_by`` columns exposed as a lifecycle."""

    deleted_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), default=None
    )
    deleted_by: Mapped[int | None] = mapped_column(Integer, default=None)

    @hybrid_property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    @is_deleted.inplace.expression
    @classmethod
    def _is_deleted_expression(cls):
        return cls.deleted_at.is_not(None)

    @property
    def lifecycle(self) -> Lifecycle:
        if self.deleted_at is None:
            return Active()
        return Deleted(at=ensure_aware(self.deleted_at), by=self.deleted_by)

    def soft_delete(self, by: int | None, at: datetime | None = None) -> None:
        self.deleted_at = at or utcnow()
        self.deleted_by = by


def live(stmt: Select, model: type[SoftDeleteMixin], *, include_deleted: bool = False) -> Select:
    """Restrict *stmt* to active rows of *model* unless deleted rows are requested."""
    if include_deleted:
        return stmt
    return stmt.where(model.deleted_at.is_(None))


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------
class User(Base):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    username: Mapped[str] = mapped_column(String(30), nullable=False, unique=True)
    email: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    password_hash: Mapped[str] = mapped_column(String(255), nullable=False)
    role: Mapped[str] = mapped_column(String(20), default=UserRole.USER)

    # Profile
    first_name: Mapped[str | None] = mapped_column(String(50), default=None)
    last_name: Mapped[str | None] = mapped_column(String(50), default=None)
    bio: Mapped[str | None] = mapped_column(String(500), default=None)
    avatar_url: Mapped[str | None] = mapped_column(String(500), default=None)
    location: Mapped[str | None] = mapped_column(String(100), default=None)
    website: Mapped[str | None] = mapped_column(String(500), default=None)
    preferences: Mapped[dict | None] = mapped_column(JSONType, default=dict)

    # Presence mirror, best effort; the in-memory registry is authoritative
    is_online: Mapped[bool] = mapped_column(Boolean, default=False)
    last_seen: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    custom_status: Mapped[str | None] = mapped_column(String(100), default=None)

    # Account state
    is_verified: Mapped[bool] = mapped_column(Boolean, default=False)
    failed_login_attempts: Mapped[int] = mapped_column(Integer, default=0)
    locked_until: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), default=None)
    reset_password_token: Mapped[str | None] = mapped_column(String(128), default=None)
    reset_password_expires: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), default=None
    )

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )

    memberships: Mapped[list[CommunityMember]] = relationship(
        back_populates="user", cascade="all, delete-orphan"
    )

    __table_args__ = (
        Index("ix_users_last_seen", "last_seen"),
    )

    def is_locked(self, now: datetime | None = None) -> bool:
        locked_until = ensure_aware(self.locked_until)
        return locked_until is not None and locked_until > (now or utcnow())

    def __repr__(self) -> str:
        return f"<User id={self.id} username={self.username!r}>"


# ---------------------------------------------------------------------------
# Communities
# ---------------------------------------------------------------------------
class Community(SoftDeleteMixin, Base):
    __tablename__ = "communities"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(50), nullable=False, unique=True)
    slug: Mapped[str] = mapped_column(String(60), nullable=False, unique=True)
    description: Mapped[str] = mapped_column(String(500), nullable=False)
    owner_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id"), nullable=False, index=True
    )

    # Settings
    privacy: Mapped[str] = mapped_column(String(20), default=CommunityPrivacy.PUBLIC)
    join_method: Mapped[str] = mapped_column(String(20), default=JoinMethod.OPEN)
    post_permission: Mapped[str] = mapped_column(String(20), default=PostPermission.ALL)
    content_visibility: Mapped[str] = mapped_column(
        String(20), default=ContentVisibility.VISIBLE
    )

    # Stats
    member_count: Mapped[int] = mapped_column(Integer, default=0)
    post_count: Mapped[int] = mapped_column(Integer, default=0)

    tags: Mapped[list | None] = mapped_column(JSONType, default=list)
    rules: Mapped[list | None] = mapped_column(JSONType, default=list)
    avatar_url: Mapped[str | None] = mapped_column(String(500), default=None)
    banner_url: Mapped[str | None] = mapped_column(String(500), default=None)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )

    members: Mapped[list[CommunityMember]] = relationship(
        back_populates="community", cascade="all, delete-orphan"
    )

    __table_args__ = (
        Index("ix_communities_member_count", "member_count"),
        Index("ix_communities_created_at", "created_at"),
    )

    @property
    def moderator_ids(self) -> set[int]:
        return {m.user_id for m in self.members if m.role == MemberRole.MODERATOR}

    def __repr__(self) -> str:
        return f"<Community id={self.id} slug={self.slug!r}>"


class CommunityMember(Base):
    __tablename__ = "community_members"

    community_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("communities.id", ondelete="CASCADE"), primary_key=True
    )
    user_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), primary_key=True
    )
    role: Mapped[str] = mapped_column(String(20), default=MemberRole.MEMBER)
    joined_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    community: Mapped[Community] = relationship(back_populates="members")
    user: Mapped[User] = relationship(back_populates="memberships")

    __table_args__ = (
        Index("ix_community_members_user", "user_id"),
    )

    def __repr__(self) -> str:
        return f"<CommunityMember community={self.community_id} user={self.user_id} role={self.role}>"


# ---------------------------------------------------------------------------
# Posts
# ---------------------------------------------------------------------------
class Post(SoftDeleteMixin, Base):
    __tablename__ = "posts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    title: Mapped[str] = mapped_column(String(300), nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    author_id: Mapped[int] = mapped_column(Integer, ForeignKey("users.id"), nullable=False)
    community_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("communities.id"), nullable=False
    )
    type: Mapped[str] = mapped_column(String(20), default=PostType.TEXT)
    media: Mapped[list | None] = mapped_column(JSONType, default=list)
    link_preview: Mapped[dict | None] = mapped_column(JSONType, default=None)
    tags: Mapped[list | None] = mapped_column(JSONType, default=list)

    upvote_count: Mapped[int] = mapped_column(Integer, default=0)
    downvote_count: Mapped[int] = mapped_column(Integer, default=0)
    score: Mapped[float] = mapped_column(Float, default=0.0)
    comment_count: Mapped[int] = mapped_column(Integer, default=0)
    view_count: Mapped[int] = mapped_column(Integer, default=0)

    is_pinned: Mapped[bool] = mapped_column(Boolean, default=False)
    is_locked: Mapped[bool] = mapped_column(Boolean, default=False)
    is_edited: Mapped[bool] = mapped_column(Boolean, default=False)
    edited_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), default=None)

    # AI analysis (absent when the moderation service was unavailable)
    ai_sentiment: Mapped[str | None] = mapped_column(String(20), default=None)
    ai_toxicity_score: Mapped[float | None] = mapped_column(Float, default=None)
    ai_categories: Mapped[list | None] = mapped_column(JSONType, default=None)
    ai_analyzed_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), default=None
    )

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )

    author: Mapped[User] = relationship()
    votes: Mapped[list[PostVote]] = relationship(
        back_populates="post", cascade="all, delete-orphan"
    )

    __table_args__ = (
        Index("ix_posts_community_score", "community_id", "score"),
        Index("ix_posts_community_created", "community_id", "created_at"),
        Index("ix_posts_community_pinned", "community_id", "is_pinned", "score"),
        Index("ix_posts_author_created", "author_id", "created_at"),
    )

    @property
    def vote_count(self) -> int:
        return self.upvote_count - self.downvote_count

    @property
    def ai_analysis(self) -> dict | None:
        if self.ai_analyzed_at is None:
            return None
        return {
            "sentiment": self.ai_sentiment,
            "toxicity_score": self.ai_toxicity_score,
            "categories": list(self.ai_categories or []),
            "analyzed_at": isoformat(self.ai_analyzed_at),
        }

    def recompute_score(self, now: datetime | None = None) -> float:
        if self.created_at is None:
            self.created_at = utcnow()
        self.score = hot_score(
            self.upvote_count or 0,
            self.downvote_count or 0,
            self.comment_count or 0,
            self.created_at,
            now,
        )
        return self.score

    def __repr__(self) -> str:
        return f"<Post id={self.id} community={self.community_id} score={self.score}>"


@event.listens_for(Post, "before_insert")
@event.listens_for(Post, "before_update")
def _refresh_post_score(mapper, connection, target: Post) -> None:
    target.recompute_score()


class PostVote(Base):
    """A user's single vote on a post; the composite PK keeps up/down exclusive."""
    __tablename__ = "post_votes"

    post_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("posts.id", ondelete="CASCADE"), primary_key=True
    )
    user_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), primary_key=True
    )
    value: Mapped[int] = mapped_column(SmallInteger, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    post: Mapped[Post] = relationship(back_populates="votes")

    __table_args__ = (
        CheckConstraint("value IN (1, -1)", name="ck_post_votes_value"),
        Index("ix_post_votes_user", "user_id"),
    )


# ---------------------------------------------------------------------------
# Comments
# ---------------------------------------------------------------------------
class Comment(SoftDeleteMixin, Base):
    __tablename__ = "comments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    content: Mapped[str] = mapped_column(String(2000), nullable=False)
    author_id: Mapped[int] = mapped_column(Integer, ForeignKey("users.id"), nullable=False)
    post_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("posts.id", ondelete="CASCADE"), nullable=False
    )
    parent_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("comments.id"), default=None
    )
    depth: Mapped[int] = mapped_column(Integer, default=0)
    is_edited: Mapped[bool] = mapped_column(Boolean, default=False)
    edited_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), default=None)

    ai_sentiment: Mapped[str | None] = mapped_column(String(20), default=None)
    ai_toxicity_score: Mapped[float | None] = mapped_column(Float, default=None)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )

    author: Mapped[User] = relationship()

    __table_args__ = (
        CheckConstraint("depth >= 0 AND depth <= 10", name="ck_comments_depth"),
        Index("ix_comments_post_created", "post_id", "created_at"),
        Index("ix_comments_parent", "parent_id"),
    )

    def __repr__(self) -> str:
        return f"<Comment id={self.id} post={self.post_id} depth={self.depth}>"


# ---------------------------------------------------------------------------
# Messages
# ---------------------------------------------------------------------------
class Message(SoftDeleteMixin, Base):
    """Chat message — exactly one of ``receiver_id`` / ``community_id`` is set."""
    __tablename__ = "messages"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    sender_id: Mapped[int] = mapped_column(Integer, ForeignKey("users.id"), nullable=False)
    receiver_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("users.id"), default=None
    )
    community_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("communities.id"), default=None
    )
    channel: Mapped[str] = mapped_column(String(64), nullable=False)
    content: Mapped[str] = mapped_column(String(2000), nullable=False)
    type: Mapped[str] = mapped_column(String(20), default=MessageType.TEXT)
    media: Mapped[dict | None] = mapped_column(JSONType, default=None)
    reply_to_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("messages.id"), default=None
    )

    ai_sentiment: Mapped[str | None] = mapped_column(String(20), default=None)
    ai_toxicity_score: Mapped[float | None] = mapped_column(Float, default=None)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    sender: Mapped[User] = relationship(foreign_keys=[sender_id])
    receipts: Mapped[list[MessageReceipt]] = relationship(
        back_populates="message", cascade="all, delete-orphan"
    )
    reactions: Mapped[list[MessageReaction]] = relationship(
        back_populates="message", cascade="all, delete-orphan"
    )

    __table_args__ = (
        CheckConstraint(
            "(receiver_id IS NULL) <> (community_id IS NULL)",
            name="ck_messages_single_target",
        ),
        Index("ix_messages_channel_created", "channel", "created_at"),
        Index("ix_messages_community_created", "community_id", "created_at"),
        Index("ix_messages_sender_created", "sender_id", "created_at"),
    )

    @property
    def is_direct(self) -> bool:
        return self.receiver_id is not None

    def __repr__(self) -> str:
        return f"<Message id={self.id} channel={self.channel!r}>"


class MessageReceipt(Base):
    __tablename__ = "message_receipts"

    message_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("messages.id", ondelete="CASCADE"), primary_key=True
    )
    user_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), primary_key=True
    )
    kind: Mapped[str] = mapped_column(String(10), primary_key=True)
    at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    message: Mapped[Message] = relationship(back_populates="receipts")

    __table_args__ = (
        Index("ix_message_receipts_user_kind", "user_id", "kind"),
    )


class MessageReaction(Base):
    __tablename__ = "message_reactions"

    message_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("messages.id", ondelete="CASCADE"), primary_key=True
    )
    user_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), primary_key=True
    )
    emoji: Mapped[str] = mapped_column(String(32), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    message: Mapped[Message] = relationship(back_populates="reactions")


class MessageHidden(Base):
    """A message the user removed from their own view only."""
    __tablename__ = "message_hidden"

    message_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("messages.id", ondelete="CASCADE"), primary_key=True
    )
    user_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), primary_key=True
    )
    hidden_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


# ---------------------------------------------------------------------------
# Tokens: refresh tokens and blacklisted access tokens
# ---------------------------------------------------------------------------
class Token(Base):
    __tablename__ = "tokens"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    token: Mapped[str] = mapped_column(String(512), nullable=False)
    type: Mapped[str] = mapped_column(String(10), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    blacklisted: Mapped[bool] = mapped_column(Boolean, default=False)
    ip_address: Mapped[str | None] = mapped_column(String(64), default=None)
    user_agent: Mapped[str | None] = mapped_column(String(255), default=None)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    __table_args__ = (
        Index("ix_tokens_token_type", "token", "type"),
        Index("ix_tokens_user", "user_id"),
        Index("ix_tokens_expires_at", "expires_at"),
    )

    def __repr__(self) -> str:
        return f"<Token id={self.id} user={self.user_id} type={self.type} blacklisted={self.blacklisted}>"
