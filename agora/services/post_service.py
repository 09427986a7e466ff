"""
agora.services.post_service — Posts, Votes, Pinning & Listings
================================================================

Every persist of a :class:`Post` recomputes its hot score (mapper hooks in
:mod:`agora.database.models`), so votes, comment-count changes and edits
all refresh the ranking.

Cache views touched here::

    ("post", id, "detail", viewer | "anonymous")              TTL post
    ("community", cid, "posts", filters, page, limit, sort)   TTL post_list
    ("user", uid, "posts", page, limit)                       TTL user_posts

Any post mutation drops ``("post", id)``, ``("community", cid, "posts")`` and
the author's ``("user", uid, "posts")``.
"""

from __future__ import annotations

import json
import logging
from typing import Any

from sqlalchemy import func, or_, select, update

from agora.config import AgoraConfig
from agora.constants import MAX_PINNED_POSTS, page_count, page_offset, parse_sort
from agora.database.engine import get_session, run_db
from agora.database.models import (
    Community,
    CommunityMember,
    Post,
    PostPermission,
    PostVote,
    User,
    isoformat,
    live,
    utcnow,
)
from agora.engine.cache import TTLCache
from agora.engine.ranking import VoteDirection, toggle_vote
from agora.errors import AuthorizationError, NotFoundError, StateError
from agora.services.ai_service import AIService, ModerationResult, screen_content
from agora.services.community_service import is_moderator
from agora.services.user_service import user_summary

logger = logging.getLogger(__name__)

SORT_COLUMNS = {
    "score": Post.score,
    "createdAt": Post.created_at,
    "commentCount": Post.comment_count,
    "views": Post.view_count,
    "upvotes": Post.upvote_count,
}

UPDATABLE_FIELDS = ("title", "content", "media", "tags", "link_preview")


# ---------------------------------------------------------------------------
# Serialization
# ---------------------------------------------------------------------------
def post_dict(
    post: Post,
    *,
    author: User | None = None,
    community: Community | None = None,
    user_vote: str | None = None,
) -> dict[str, Any]:
    data = {
        "id": post.id,
        "title": post.title,
        "content": post.content,
        "type": post.type,
        "media": list(post.media or []),
        "link_preview": post.link_preview,
        "tags": list(post.tags or []),
        "author_id": post.author_id,
        "community_id": post.community_id,
        "upvotes": post.upvote_count,
        "downvotes": post.downvote_count,
        "vote_count": post.vote_count,
        "score": post.score,
        "comment_count": post.comment_count,
        "views": post.view_count,
        "is_pinned": post.is_pinned,
        "is_locked": post.is_locked,
        "is_edited": post.is_edited,
        "edited_at": isoformat(post.edited_at),
        "ai_analysis": post.ai_analysis,
        "user_vote": user_vote,
        "created_at": isoformat(post.created_at),
        "updated_at": isoformat(post.updated_at),
    }
    if author is not None:
        data["author"] = user_summary(author)
    if community is not None:
        data["community"] = {"id": community.id, "name": community.name, "slug": community.slug}
    return data


def vote_summary(post: Post, user_vote: str | None) -> dict[str, Any]:
    return {
        "post_id": post.id,
        "community_id": post.community_id,
        "upvotes": post.upvote_count,
        "downvotes": post.downvote_count,
        "score": post.score,
        "user_vote": user_vote,
    }


def _apply_analysis(post: Post, analysis: ModerationResult | None) -> None:
    if analysis is None:
        return
    post.ai_sentiment = analysis.sentiment
    post.ai_toxicity_score = analysis.toxicity_score
    post.ai_categories = list(analysis.categories)
    post.ai_analyzed_at = utcnow()


def invalidate_post(cache: TTLCache, post_id: int, community_id: int, author_id: int) -> None:
    cache.invalidate("post", post_id)
    cache.invalidate("community", community_id, "posts")
    cache.invalidate("user", author_id, "posts")


# ---------------------------------------------------------------------------
# Loading / permission helpers
# ---------------------------------------------------------------------------
def load_active_post(session, post_id: int, *, for_update: bool = False) -> Post:
    stmt = select(Post).where(Post.id == post_id)
    if for_update:
        stmt = stmt.with_for_update()
    post = session.scalar(stmt)
    if post is None:
        raise NotFoundError("Post not found")
    if post.is_deleted:
        raise NotFoundError("Post has been deleted")
    return post


def ensure_active_post(engine, post_id: int) -> int:
    """Raise unless the post exists and is live; returns its community id."""
    with get_session(engine) as session:
        return load_active_post(session, post_id).community_id


def can_moderate_post(session, post: Post, user_id: int) -> bool:
    community = session.get(Community, post.community_id)
    if community is None:
        return False
    member = session.get(CommunityMember, (post.community_id, user_id))
    return is_moderator(community, member, user_id)


def _check_can_post(engine, community_id: int, user_id: int) -> None:
    with get_session(engine) as session:
        community = session.get(Community, community_id)
        if community is None:
            raise NotFoundError("Community not found")
        if community.is_deleted:
            raise StateError("Community is not active")
        member = session.get(CommunityMember, (community_id, user_id))
        if member is None:
            raise AuthorizationError("You must be a member to post in this community")
        if (
            community.post_permission == PostPermission.MODERATORS
            and not is_moderator(community, member, user_id)
        ):
            raise AuthorizationError("Only moderators can post in this community")


# ---------------------------------------------------------------------------
# Create / read / update / delete
# ---------------------------------------------------------------------------
def _insert_post(
    engine,
    user_id: int,
    community_id: int,
    fields: dict[str, Any],
    analysis: ModerationResult | None,
) -> dict[str, Any]:
    with get_session(engine) as session:
        post = Post(author_id=user_id, community_id=community_id, **fields)
        _apply_analysis(post, analysis)
        session.add(post)
        session.flush()
        session.execute(
            update(Community)
            .where(Community.id == community_id)
            .values(post_count=Community.post_count + 1)
        )
        return post_dict(post, author=session.get(User, user_id))


async def create_post(
    engine,
    cache: TTLCache,
    ai: AIService,
    cfg: AgoraConfig,
    user_id: int,
    *,
    community_id: int,
    title: str,
    content: str,
    type: str = "text",
    media: list[dict] | None = None,
    tags: list[str] | None = None,
    link_preview: dict | None = None,
) -> dict[str, Any]:
    await run_db(_check_can_post, engine, community_id, user_id)
    analysis = await screen_content(
        ai, content, min_length=cfg.moderation_min_length, threshold=cfg.toxicity_threshold
    )
    fields = {
        "title": title,
        "content": content,
        "type": type,
        "media": media or [],
        "tags": tags or [],
        "link_preview": link_preview,
    }
    data = await run_db(_insert_post, engine, user_id, community_id, fields, analysis)

    invalidate_post(cache, data["id"], community_id, user_id)
    cache.invalidate("community", community_id, "detail")
    logger.info("Post created: %d by user %d in community %d", data["id"], user_id, community_id)
    return data


def _count_view(session, post_id: int) -> int | None:
    session.execute(
        update(Post)
        .where(Post.id == post_id)
        .values(view_count=Post.view_count + 1)
        .execution_options(synchronize_session=False)
    )
    return session.scalar(select(Post.view_count).where(Post.id == post_id))


def get_post(engine, cache: TTLCache, post_id: int, viewer_id: int | None = None) -> dict[str, Any]:
    """Post detail for *viewer_id*; every signed-in view bumps the counter, cached or not."""
    key = ("post", post_id, "detail", viewer_id or "anonymous")
    token = cache.generation()
    cached = cache.get(key)
    if cached is not None:
        if viewer_id is not None:
            with get_session(engine) as session:
                cached["views"] = _count_view(session, post_id)
        return cached

    with get_session(engine) as session:
        if viewer_id is not None:
            _count_view(session, post_id)
        post = load_active_post(session, post_id)
        user_vote = None
        if viewer_id is not None:
            vote = session.get(PostVote, (post_id, viewer_id))
            user_vote = VoteDirection(vote.value).label if vote else None
        data = post_dict(
            post,
            author=session.get(User, post.author_id),
            community=session.get(Community, post.community_id),
            user_vote=user_vote,
        )

    cache.set(key, data, cache.ttl("post"), since=token)
    return data


def _authorize_edit(engine, post_id: int, user_id: int) -> None:
    with get_session(engine) as session:
        post = load_active_post(session, post_id)
        if post.author_id != user_id and not can_moderate_post(session, post, user_id):
            raise AuthorizationError("Insufficient permissions")


def _apply_update(
    engine, post_id: int, changes: dict[str, Any], analysis: ModerationResult | None
) -> dict[str, Any]:
    with get_session(engine) as session:
        post = load_active_post(session, post_id, for_update=True)
        for key in UPDATABLE_FIELDS:
            if changes.get(key) is not None:
                setattr(post, key, changes[key])
        _apply_analysis(post, analysis)
        post.is_edited = True
        post.edited_at = utcnow()
        session.flush()
        return post_dict(post, author=session.get(User, post.author_id))


async def update_post(
    engine,
    cache: TTLCache,
    ai: AIService,
    cfg: AgoraConfig,
    post_id: int,
    user_id: int,
    **changes: Any,
) -> dict[str, Any]:
    await run_db(_authorize_edit, engine, post_id, user_id)
    analysis = None
    if changes.get("content"):
        analysis = await screen_content(
            ai,
            changes["content"],
            min_length=cfg.moderation_min_length,
            threshold=cfg.toxicity_threshold,
        )
    data = await run_db(_apply_update, engine, post_id, changes, analysis)

    invalidate_post(cache, post_id, data["community_id"], data["author_id"])
    logger.info("Post updated: %d by user %d", post_id, user_id)
    return data


def delete_post(engine, cache: TTLCache, post_id: int, user_id: int) -> dict[str, Any]:
    with get_session(engine) as session:
        post = load_active_post(session, post_id, for_update=True)
        if post.author_id != user_id and not can_moderate_post(session, post, user_id):
            raise AuthorizationError("Insufficient permissions")
        post.soft_delete(by=user_id)
        session.flush()
        session.execute(
            update(Community)
            .where(Community.id == post.community_id)
            .values(post_count=Community.post_count - 1)
        )
        data = post_dict(post)

    invalidate_post(cache, post_id, data["community_id"], data["author_id"])
    cache.invalidate("community", data["community_id"], "detail")
    logger.info("Post deleted: %d by user %d", post_id, user_id)
    return data


# ---------------------------------------------------------------------------
# Listings
# ---------------------------------------------------------------------------
def _order_by(sort: str) -> list:
    return [
        SORT_COLUMNS[field].desc() if desc else SORT_COLUMNS[field].asc()
        for field, desc in parse_sort(sort, "-score")
        if field in SORT_COLUMNS
    ] or [Post.score.desc()]


def _ids_with_tags(session, community_id: int, tags: list[str]) -> list[int]:
    # Tag lists are JSON arrays; match in Python to stay portable across dialects.
    wanted = set(tags)
    rows = session.execute(
        live(select(Post.id, Post.tags).where(Post.community_id == community_id), Post)
    ).all()
    return [pid for pid, post_tags in rows if wanted.intersection(post_tags or [])]


def list_community_posts(
    engine,
    cache: TTLCache,
    community_id: int,
    *,
    author_id: int | None = None,
    type: str | None = None,
    tags: list[str] | None = None,
    page: int = 1,
    limit: int = 20,
    sort: str | None = None,
) -> dict[str, Any]:
    """Page through a community's posts; pinned posts lead page 1 unless sorting by newest."""
    sort = sort or "-score"
    filters = json.dumps({"author": author_id, "type": type, "tags": tags or []}, sort_keys=True)
    key = ("community", community_id, "posts", filters, page, limit, sort)
    token = cache.generation()
    cached = cache.get(key)
    if cached is not None:
        return cached

    with get_session(engine) as session:
        stmt = live(select(Post).where(Post.community_id == community_id), Post)
        if author_id is not None:
            stmt = stmt.where(Post.author_id == author_id)
        if type:
            stmt = stmt.where(Post.type == type)
        if tags:
            stmt = stmt.where(Post.id.in_(_ids_with_tags(session, community_id, tags)))

        total = session.scalar(select(func.count()).select_from(stmt.subquery())) or 0
        posts = list(session.scalars(
            stmt.order_by(*_order_by(sort), Post.id.desc())
            .offset(page_offset(page, limit))
            .limit(limit)
        ).all())

        if page == 1 and sort != "-createdAt":
            pinned = list(session.scalars(
                live(
                    select(Post).where(Post.community_id == community_id, Post.is_pinned.is_(True)),
                    Post,
                )
                .order_by(Post.score.desc())
                .limit(MAX_PINNED_POSTS)
            ).all())
            pinned_ids = {p.id for p in pinned}
            posts = pinned + [p for p in posts if p.id not in pinned_ids]

        authors = {
            u.id: u
            for u in session.scalars(
                select(User).where(User.id.in_({p.author_id for p in posts}))
            ).all()
        }
        result = {
            "posts": [post_dict(p, author=authors.get(p.author_id)) for p in posts],
            "pagination": {
                "page": page,
                "limit": limit,
                "total": total,
                "pages": page_count(total, limit),
            },
        }

    cache.set(key, result, cache.ttl("post_list"), since=token)
    return result


def list_user_posts(
    engine, cache: TTLCache, user_id: int, *, page: int = 1, limit: int = 20
) -> dict[str, Any]:
    key = ("user", user_id, "posts", page, limit)
    token = cache.generation()
    cached = cache.get(key)
    if cached is not None:
        return cached

    with get_session(engine) as session:
        author = session.get(User, user_id)
        if author is None:
            raise NotFoundError("User not found")
        stmt = live(select(Post).where(Post.author_id == user_id), Post)
        total = session.scalar(select(func.count()).select_from(stmt.subquery())) or 0
        posts = session.scalars(
            stmt.order_by(Post.created_at.desc(), Post.id.desc())
            .offset(page_offset(page, limit))
            .limit(limit)
        ).all()
        result = {
            "posts": [post_dict(p, author=author) for p in posts],
            "pagination": {
                "page": page,
                "limit": limit,
                "total": total,
                "pages": page_count(total, limit),
            },
        }

    cache.set(key, result, cache.ttl("user_posts"), since=token)
    return result


def search_posts(
    engine,
    query: str,
    *,
    community_id: int | None = None,
    page: int = 1,
    limit: int = 20,
) -> dict[str, Any]:
    pattern = f"%{query.lower()}%"
    stmt = live(select(Post), Post).where(or_(
        func.lower(Post.title).like(pattern),
        func.lower(Post.content).like(pattern),
    ))
    if community_id is not None:
        stmt = stmt.where(Post.community_id == community_id)

    with get_session(engine) as session:
        total = session.scalar(select(func.count()).select_from(stmt.subquery())) or 0
        posts = session.scalars(
            stmt.order_by(Post.score.desc(), Post.id.desc())
            .offset(page_offset(page, limit))
            .limit(limit)
        ).all()
        return {
            "posts": [
                post_dict(
                    p,
                    author=session.get(User, p.author_id),
                    community=session.get(Community, p.community_id),
                )
                for p in posts
            ],
            "pagination": {
                "page": page,
                "limit": limit,
                "total": total,
                "pages": page_count(total, limit),
            },
        }


# ---------------------------------------------------------------------------
# Votes
# ---------------------------------------------------------------------------
def vote_post(
    engine, cache: TTLCache, post_id: int, user_id: int, direction: VoteDirection
) -> dict[str, Any]:
    """Cast *direction* on a post.

    Same vote again removes it; the opposite vote replaces it.  Counters are
    recounted from the vote rows while the post row is locked.
    """
    with get_session(engine) as session:
        post = load_active_post(session, post_id, for_update=True)
        vote = session.get(PostVote, (post_id, user_id))
        current = VoteDirection(vote.value) if vote else None
        result = toggle_vote(current, direction)

        if result is None:
            session.delete(vote)
        elif vote is not None:
            vote.value = int(result)
        else:
            session.add(PostVote(post_id=post_id, user_id=user_id, value=int(result)))
        session.flush()

        counts = dict(session.execute(
            select(PostVote.value, func.count())
            .where(PostVote.post_id == post_id)
            .group_by(PostVote.value)
        ).all())
        post.upvote_count = counts.get(int(VoteDirection.UP), 0)
        post.downvote_count = counts.get(int(VoteDirection.DOWN), 0)
        session.flush()
        data = vote_summary(post, result.label if result else None)
        author_id = post.author_id

    invalidate_post(cache, post_id, data["community_id"], author_id)
    logger.info("Post %d %svoted by user %d", post_id, direction.label, user_id)
    return data


# ---------------------------------------------------------------------------
# Moderation flags
# ---------------------------------------------------------------------------
def _set_flag(
    engine, cache: TTLCache, post_id: int, user_id: int, field: str, value: bool
) -> dict[str, Any]:
    verb = {"is_pinned": "pin", "is_locked": "lock"}[field]
    if not value:
        verb = "un" + verb
    with get_session(engine) as session:
        post = load_active_post(session, post_id, for_update=True)
        if not can_moderate_post(session, post, user_id):
            raise AuthorizationError(f"Only moderators can {verb} posts")
        if field == "is_pinned" and value and not post.is_pinned:
            pinned = session.scalar(
                live(select(func.count(Post.id)), Post).where(
                    Post.community_id == post.community_id, Post.is_pinned.is_(True)
                )
            )
            if pinned >= MAX_PINNED_POSTS:
                raise StateError(f"A community can pin at most {MAX_PINNED_POSTS} posts")
        setattr(post, field, value)
        session.flush()
        data = post_dict(post)

    invalidate_post(cache, post_id, data["community_id"], data["author_id"])
    logger.info("Post %d %s=%s by user %d", post_id, field, value, user_id)
    return data


def pin_post(engine, cache: TTLCache, post_id: int, user_id: int) -> dict[str, Any]:
    return _set_flag(engine, cache, post_id, user_id, "is_pinned", True)


def unpin_post(engine, cache: TTLCache, post_id: int, user_id: int) -> dict[str, Any]:
    return _set_flag(engine, cache, post_id, user_id, "is_pinned", False)


def lock_post(engine, cache: TTLCache, post_id: int, user_id: int) -> dict[str, Any]:
    return _set_flag(engine, cache, post_id, user_id, "is_locked", True)


def unlock_post(engine, cache: TTLCache, post_id: int, user_id: int) -> dict[str, Any]:
    return _set_flag(engine, cache, post_id, user_id, "is_locked", False)
