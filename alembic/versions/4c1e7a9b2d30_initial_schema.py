"""Initial schema: users, communities, posts, comments, chat, tokens

Revision ID: 4c1e7a9b2d30
Revises:
Create Date: 2026-10-17 09:00:00.000000

"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "4c1e7a9b2d30"
down_revision = None
branch_labels = None
depends_on = None

JSONType = sa.JSON().with_variant(postgresql.JSONB(), "postgresql")


def _timestamps(*, updated: bool = True) -> list[sa.Column]:
    cols = [sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now())]
    if updated:
        cols.append(sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.func.now()))
    return cols


def _soft_delete() -> list[sa.Column]:
    return [
        sa.Column("deleted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("deleted_by", sa.Integer(), nullable=True),
    ]


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), autoincrement=True, primary_key=True),
        sa.Column("username", sa.String(30), nullable=False, unique=True),
        sa.Column("email", sa.String(255), nullable=False, unique=True),
        sa.Column("password_hash", sa.String(255), nullable=False),
        sa.Column("role", sa.String(20), server_default="user"),
        sa.Column("first_name", sa.String(50), nullable=True),
        sa.Column("last_name", sa.String(50), nullable=True),
        sa.Column("bio", sa.String(500), nullable=True),
        sa.Column("avatar_url", sa.String(500), nullable=True),
        sa.Column("location", sa.String(100), nullable=True),
        sa.Column("website", sa.String(500), nullable=True),
        sa.Column("preferences", JSONType, nullable=True),
        sa.Column("is_online", sa.Boolean(), server_default=sa.false()),
        sa.Column("last_seen", sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column("custom_status", sa.String(100), nullable=True),
        sa.Column("is_verified", sa.Boolean(), server_default=sa.false()),
        sa.Column("failed_login_attempts", sa.Integer(), server_default="0"),
        sa.Column("locked_until", sa.DateTime(timezone=True), nullable=True),
        sa.Column("reset_password_token", sa.String(128), nullable=True),
        sa.Column("reset_password_expires", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_users_last_seen", "users", ["last_seen"])

    op.create_table(
        "communities",
        sa.Column("id", sa.Integer(), autoincrement=True, primary_key=True),
        sa.Column("name", sa.String(50), nullable=False, unique=True),
        sa.Column("slug", sa.String(60), nullable=False, unique=True),
        sa.Column("description", sa.String(500), nullable=False),
        sa.Column("owner_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("privacy", sa.String(20), server_default="public"),
        sa.Column("join_method", sa.String(20), server_default="open"),
        sa.Column("post_permission", sa.String(20), server_default="all"),
        sa.Column("content_visibility", sa.String(20), server_default="visible"),
        sa.Column("member_count", sa.Integer(), server_default="0"),
        sa.Column("post_count", sa.Integer(), server_default="0"),
        sa.Column("tags", JSONType, nullable=True),
        sa.Column("rules", JSONType, nullable=True),
        sa.Column("avatar_url", sa.String(500), nullable=True),
        sa.Column("banner_url", sa.String(500), nullable=True),
        *_soft_delete(),
        *_timestamps(),
    )
    op.create_index("ix_communities_owner_id", "communities", ["owner_id"])
    op.create_index("ix_communities_member_count", "communities", ["member_count"])
    op.create_index("ix_communities_created_at", "communities", ["created_at"])

    op.create_table(
        "community_members",
        sa.Column(
            "community_id", sa.Integer(),
            sa.ForeignKey("communities.id", ondelete="CASCADE"), primary_key=True,
        ),
        sa.Column(
            "user_id", sa.Integer(),
            sa.ForeignKey("users.id", ondelete="CASCADE"), primary_key=True,
        ),
        sa.Column("role", sa.String(20), server_default="member"),
        sa.Column("joined_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_community_members_user", "community_members", ["user_id"])

    op.create_table(
        "posts",
        sa.Column("id", sa.Integer(), autoincrement=True, primary_key=True),
        sa.Column("title", sa.String(300), nullable=False),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("author_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("community_id", sa.Integer(), sa.ForeignKey("communities.id"), nullable=False),
        sa.Column("type", sa.String(20), server_default="text"),
        sa.Column("media", JSONType, nullable=True),
        sa.Column("link_preview", JSONType, nullable=True),
        sa.Column("tags", JSONType, nullable=True),
        sa.Column("upvote_count", sa.Integer(), server_default="0"),
        sa.Column("downvote_count", sa.Integer(), server_default="0"),
        sa.Column("score", sa.Float(), server_default="0"),
        sa.Column("comment_count", sa.Integer(), server_default="0"),
        sa.Column("view_count", sa.Integer(), server_default="0"),
        sa.Column("is_pinned", sa.Boolean(), server_default=sa.false()),
        sa.Column("is_locked", sa.Boolean(), server_default=sa.false()),
        sa.Column("is_edited", sa.Boolean(), server_default=sa.false()),
        sa.Column("edited_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("ai_sentiment", sa.String(20), nullable=True),
        sa.Column("ai_toxicity_score", sa.Float(), nullable=True),
        sa.Column("ai_categories", JSONType, nullable=True),
        sa.Column("ai_analyzed_at", sa.DateTime(timezone=True), nullable=True),
        *_soft_delete(),
        *_timestamps(),
    )
    op.create_index("ix_posts_community_score", "posts", ["community_id", "score"])
    op.create_index("ix_posts_community_created", "posts", ["community_id", "created_at"])
    op.create_index("ix_posts_community_pinned", "posts", ["community_id", "is_pinned", "score"])
    op.create_index("ix_posts_author_created", "posts", ["author_id", "created_at"])

    op.create_table(
        "post_votes",
        sa.Column(
            "post_id", sa.Integer(),
            sa.ForeignKey("posts.id", ondelete="CASCADE"), primary_key=True,
        ),
        sa.Column(
            "user_id", sa.Integer(),
            sa.ForeignKey("users.id", ondelete="CASCADE"), primary_key=True,
        ),
        sa.Column("value", sa.SmallInteger(), nullable=False),
        *_timestamps(updated=False),
        sa.CheckConstraint("value IN (1, -1)", name="ck_post_votes_value"),
    )
    op.create_index("ix_post_votes_user", "post_votes", ["user_id"])

    op.create_table(
        "comments",
        sa.Column("id", sa.Integer(), autoincrement=True, primary_key=True),
        sa.Column("content", sa.String(2000), nullable=False),
        sa.Column("author_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column(
            "post_id", sa.Integer(),
            sa.ForeignKey("posts.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column("parent_id", sa.Integer(), sa.ForeignKey("comments.id"), nullable=True),
        sa.Column("depth", sa.Integer(), server_default="0"),
        sa.Column("is_edited", sa.Boolean(), server_default=sa.false()),
        sa.Column("edited_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("ai_sentiment", sa.String(20), nullable=True),
        sa.Column("ai_toxicity_score", sa.Float(), nullable=True),
        *_soft_delete(),
        *_timestamps(),
        sa.CheckConstraint("depth >= 0 AND depth <= 10", name="ck_comments_depth"),
    )
    op.create_index("ix_comments_post_created", "comments", ["post_id", "created_at"])
    op.create_index("ix_comments_parent", "comments", ["parent_id"])

    op.create_table(
        "messages",
        sa.Column("id", sa.Integer(), autoincrement=True, primary_key=True),
        sa.Column("sender_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("receiver_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=True),
        sa.Column("community_id", sa.Integer(), sa.ForeignKey("communities.id"), nullable=True),
        sa.Column("channel", sa.String(64), nullable=False),
        sa.Column("content", sa.String(2000), nullable=False),
        sa.Column("type", sa.String(20), server_default="text"),
        sa.Column("media", JSONType, nullable=True),
        sa.Column("reply_to_id", sa.Integer(), sa.ForeignKey("messages.id"), nullable=True),
        sa.Column("ai_sentiment", sa.String(20), nullable=True),
        sa.Column("ai_toxicity_score", sa.Float(), nullable=True),
        *_soft_delete(),
        *_timestamps(updated=False),
        sa.CheckConstraint(
            "(receiver_id IS NULL) <> (community_id IS NULL)",
            name="ck_messages_single_target",
        ),
    )
    op.create_index("ix_messages_channel_created", "messages", ["channel", "created_at"])
    op.create_index("ix_messages_community_created", "messages", ["community_id", "created_at"])
    op.create_index("ix_messages_sender_created", "messages", ["sender_id", "created_at"])

    op.create_table(
        "message_receipts",
        sa.Column(
            "message_id", sa.Integer(),
            sa.ForeignKey("messages.id", ondelete="CASCADE"), primary_key=True,
        ),
        sa.Column(
            "user_id", sa.Integer(),
            sa.ForeignKey("users.id", ondelete="CASCADE"), primary_key=True,
        ),
        sa.Column("kind", sa.String(10), primary_key=True),
        sa.Column("at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index("ix_message_receipts_user_kind", "message_receipts", ["user_id", "kind"])

    op.create_table(
        "message_reactions",
        sa.Column(
            "message_id", sa.Integer(),
            sa.ForeignKey("messages.id", ondelete="CASCADE"), primary_key=True,
        ),
        sa.Column(
            "user_id", sa.Integer(),
            sa.ForeignKey("users.id", ondelete="CASCADE"), primary_key=True,
        ),
        sa.Column("emoji", sa.String(32), nullable=False),
        *_timestamps(updated=False),
    )

    op.create_table(
        "message_hidden",
        sa.Column(
            "message_id", sa.Integer(),
            sa.ForeignKey("messages.id", ondelete="CASCADE"), primary_key=True,
        ),
        sa.Column(
            "user_id", sa.Integer(),
            sa.ForeignKey("users.id", ondelete="CASCADE"), primary_key=True,
        ),
        sa.Column("hidden_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    op.create_table(
        "tokens",
        sa.Column("id", sa.Integer(), autoincrement=True, primary_key=True),
        sa.Column(
            "user_id", sa.Integer(),
            sa.ForeignKey("users.id", ondelete="CASCADE"), nullable=False,
        ),
        sa.Column("token", sa.String(512), nullable=False),
        sa.Column("type", sa.String(10), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("blacklisted", sa.Boolean(), server_default=sa.false()),
        sa.Column("ip_address", sa.String(64), nullable=True),
        sa.Column("user_agent", sa.String(255), nullable=True),
        *_timestamps(updated=False),
    )
    op.create_index("ix_tokens_token_type", "tokens", ["token", "type"])
    op.create_index("ix_tokens_user", "tokens", ["user_id"])
    op.create_index("ix_tokens_expires_at", "tokens", ["expires_at"])


def downgrade() -> None:
    for table in (
        "tokens",
        "message_hidden",
        "message_reactions",
        "message_receipts",
        "messages",
        "comments",
        "post_votes",
        "posts",
        "community_members",
        "communities",
        "users",
    ):
        op.drop_table(table)
