"""
agora.services.comment_service — Threaded Comments
====================================================

Comments form a tree under a post (``parent_id`` / ``depth``, depth ≤ 10).
Creating or deleting a comment adjusts the post's ``comment_count``, which
feeds the post's hot score, and drops the post's cached views.
"""

from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import select

from agora.config import AgoraConfig
from agora.constants import MAX_COMMENT_DEPTH
from agora.database.engine import get_session, run_db
from agora.database.models import Comment, Post, User, isoformat, live, utcnow
from agora.engine.cache import TTLCache
from agora.errors import AuthorizationError, NotFoundError, StateError, ValidationError
from agora.services.ai_service import AIService, ModerationResult, screen_content
from agora.services.post_service import can_moderate_post, invalidate_post, load_active_post
from agora.services.user_service import user_summary

logger = logging.getLogger(__name__)

DELETED_PLACEHOLDER = "[deleted]"


def comment_dict(comment: Comment, author: User | None = None) -> dict[str, Any]:
    deleted = comment.is_deleted
    data = {
        "id": comment.id,
        "post_id": comment.post_id,
        "parent_id": comment.parent_id,
        "depth": comment.depth,
        "content": DELETED_PLACEHOLDER if deleted else comment.content,
        "author_id": None if deleted else comment.author_id,
        "is_deleted": deleted,
        "is_edited": comment.is_edited,
        "edited_at": isoformat(comment.edited_at),
        "created_at": isoformat(comment.created_at),
    }
    if author is not None and not deleted:
        data["author"] = user_summary(author)
    if comment.ai_sentiment is not None or comment.ai_toxicity_score is not None:
        data["ai_analysis"] = {
            "sentiment": comment.ai_sentiment,
            "toxicity_score": comment.ai_toxicity_score,
        }
    return data


# ---------------------------------------------------------------------------
# Create
# ---------------------------------------------------------------------------
def _check_can_comment(engine, post_id: int, parent_id: int | None) -> int:
    """Validate the target post/parent and return the new comment's depth."""
    with get_session(engine) as session:
        post = load_active_post(session, post_id)
        if post.is_locked:
            raise StateError("Post is locked")
        if parent_id is None:
            return 0
        parent = session.get(Comment, parent_id)
        if parent is None or parent.post_id != post_id or parent.is_deleted:
            raise NotFoundError("Parent comment not found")
        if parent.depth + 1 > MAX_COMMENT_DEPTH:
            raise ValidationError("Maximum comment depth reached")
        return parent.depth + 1


def _insert_comment(
    engine,
    user_id: int,
    post_id: int,
    parent_id: int | None,
    depth: int,
    content: str,
    analysis: ModerationResult | None,
) -> dict[str, Any]:
    with get_session(engine) as session:
        post = load_active_post(session, post_id, for_update=True)
        if post.is_locked:
            raise StateError("Post is locked")
        comment = Comment(
            content=content,
            author_id=user_id,
            post_id=post_id,
            parent_id=parent_id,
            depth=depth,
        )
        if analysis is not None:
            comment.ai_sentiment = analysis.sentiment
            comment.ai_toxicity_score = analysis.toxicity_score
        session.add(comment)
        post.comment_count += 1
        session.flush()
        data = comment_dict(comment, session.get(User, user_id))
        data["post"] = {
            "id": post.id,
            "author_id": post.author_id,
            "community_id": post.community_id,
            "title": post.title,
            "comment_count": post.comment_count,
            "score": post.score,
        }
        return data


async def create_comment(
    engine,
    cache: TTLCache,
    ai: AIService,
    cfg: AgoraConfig,
    user_id: int,
    *,
    post_id: int,
    content: str,
    parent_id: int | None = None,
) -> dict[str, Any]:
    """Add a comment; the returned dict carries a ``post`` summary for notifications."""
    depth = await run_db(_check_can_comment, engine, post_id, parent_id)
    analysis = await screen_content(
        ai, content, min_length=cfg.moderation_min_length, threshold=cfg.toxicity_threshold
    )
    data = await run_db(
        _insert_comment, engine, user_id, post_id, parent_id, depth, content, analysis
    )
    invalidate_post(
        cache, post_id, data["post"]["community_id"], data["post"]["author_id"]
    )
    logger.info("Comment %d added to post %d by user %d", data["id"], post_id, user_id)
    return data


# ---------------------------------------------------------------------------
# Read
# ---------------------------------------------------------------------------
def list_comments(engine, post_id: int) -> list[dict[str, Any]]:
    """Return the post's comments as a tree (oldest first at every level).

    Deleted comments that still have replies stay as ``[deleted]``
    placeholders so the thread keeps its shape; childless ones are dropped.
    """
    with get_session(engine) as session:
        load_active_post(session, post_id)
        rows = session.execute(
            live(
                select(Comment, User)
                .join(User, User.id == Comment.author_id)
                .where(Comment.post_id == post_id)
                .order_by(Comment.created_at, Comment.id),
                Comment,
                include_deleted=True,
            )
        ).all()
        nodes = {c.id: {**comment_dict(c, u), "replies": []} for c, u in rows}

    roots: list[dict[str, Any]] = []
    for node in nodes.values():
        parent = nodes.get(node["parent_id"]) if node["parent_id"] else None
        (parent["replies"] if parent else roots).append(node)

    def prune(items: list[dict[str, Any]]) -> list[dict[str, Any]]:
        kept = []
        for item in items:
            item["replies"] = prune(item["replies"])
            if item["is_deleted"] and not item["replies"]:
                continue
            kept.append(item)
        return kept

    return prune(roots)


# ---------------------------------------------------------------------------
# Update / delete
# ---------------------------------------------------------------------------
def _load_comment(session, comment_id: int) -> Comment:
    comment = session.get(Comment, comment_id)
    if comment is None or comment.is_deleted:
        raise NotFoundError("Comment not found")
    return comment


def _authorize_comment_edit(engine, comment_id: int, user_id: int) -> None:
    with get_session(engine) as session:
        comment = _load_comment(session, comment_id)
        if comment.author_id != user_id:
            raise AuthorizationError("Only the author can edit this comment")


def _apply_comment_update(
    engine, comment_id: int, content: str, analysis: ModerationResult | None
) -> dict[str, Any]:
    with get_session(engine) as session:
        comment = _load_comment(session, comment_id)
        comment.content = content
        comment.is_edited = True
        comment.edited_at = utcnow()
        if analysis is not None:
            comment.ai_sentiment = analysis.sentiment
            comment.ai_toxicity_score = analysis.toxicity_score
        session.flush()
        return comment_dict(comment, session.get(User, comment.author_id))


async def update_comment(
    engine,
    ai: AIService,
    cfg: AgoraConfig,
    comment_id: int,
    user_id: int,
    content: str,
) -> dict[str, Any]:
    await run_db(_authorize_comment_edit, engine, comment_id, user_id)
    analysis = await screen_content(
        ai, content, min_length=cfg.moderation_min_length, threshold=cfg.toxicity_threshold
    )
    return await run_db(_apply_comment_update, engine, comment_id, content, analysis)


def delete_comment(engine, cache: TTLCache, comment_id: int, user_id: int) -> dict[str, Any]:
    with get_session(engine) as session:
        comment = _load_comment(session, comment_id)
        post = session.scalar(
            select(Post).where(Post.id == comment.post_id).with_for_update()
        )
        if comment.author_id != user_id and not (
            post is not None and can_moderate_post(session, post, user_id)
        ):
            raise AuthorizationError("Insufficient permissions")
        comment.soft_delete(by=user_id)
        if post is not None and post.comment_count > 0:
            post.comment_count -= 1
        session.flush()
        data = comment_dict(comment)
        owner = (post.community_id, post.author_id) if post is not None else None

    if owner is not None:
        invalidate_post(cache, data["post_id"], *owner)
    logger.info("Comment %d deleted by user %d", comment_id, user_id)
    return data
