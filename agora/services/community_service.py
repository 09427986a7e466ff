"""
agora.services.community_service — Communities, Membership & Moderators
=========================================================================

Read paths are read-through cached; every mutation invalidates the
community's own views, its slug view, every community listing and, for
membership changes, the affected user's community list.

Roles inside a community live on :class:`CommunityMember`: the owner holds
``admin``, moderators hold ``moderator``.
"""

from __future__ import annotations

import json
import logging
from typing import Any

from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import IntegrityError

from agora.constants import page_count, page_offset, parse_sort, slugify
from agora.database.engine import get_session, run_db
from agora.database.models import (
    Community,
    CommunityMember,
    CommunityPrivacy,
    JoinMethod,
    MemberRole,
    User,
    ensure_aware,
    isoformat,
    live,
)
from agora.engine.cache import TTLCache
from agora.errors import (
    AuthorizationError,
    ConflictError,
    NotFoundError,
    StateError,
    ValidationError,
)
from agora.services.ai_service import AIService
from agora.services.user_service import user_summary

logger = logging.getLogger(__name__)

# Fields owners/moderators may change through update_community()
UPDATABLE_FIELDS = (
    "description",
    "privacy",
    "join_method",
    "post_permission",
    "content_visibility",
    "tags",
    "rules",
    "avatar_url",
    "banner_url",
)

SORT_COLUMNS = {
    "createdAt": Community.created_at,
    "name": Community.name,
    "memberCount": Community.member_count,
    "postCount": Community.post_count,
}


# ---------------------------------------------------------------------------
# Serialization
# ---------------------------------------------------------------------------
def community_dict(community: Community, *, include_members: bool = False) -> dict[str, Any]:
    data = {
        "id": community.id,
        "name": community.name,
        "slug": community.slug,
        "description": community.description,
        "owner_id": community.owner_id,
        "settings": {
            "privacy": community.privacy,
            "join_method": community.join_method,
            "post_permission": community.post_permission,
            "content_visibility": community.content_visibility,
        },
        "stats": {
            "member_count": community.member_count,
            "post_count": community.post_count,
        },
        "tags": list(community.tags or []),
        "rules": list(community.rules or []),
        "avatar_url": community.avatar_url,
        "banner_url": community.banner_url,
        "is_active": not community.is_deleted,
        "created_at": isoformat(community.created_at),
        "updated_at": isoformat(community.updated_at),
    }
    if include_members:
        data["moderators"] = sorted(community.moderator_ids)
        data["members"] = [
            {
                "user": user_summary(m.user) | {"is_online": m.user.is_online},
                "role": m.role,
                "joined_at": isoformat(m.joined_at),
            }
            for m in sorted(community.members, key=lambda m: ensure_aware(m.joined_at))
        ]
    return data


def _invalidate(cache: TTLCache, community: Community) -> None:
    cache.invalidate("community", community.id, "detail")
    cache.invalidate("community_slug", community.slug)
    cache.invalidate("communities")


def _member_ids(session, community_id: int) -> list[int]:
    return list(session.scalars(
        select(CommunityMember.user_id).where(CommunityMember.community_id == community_id)
    ).all())


def _invalidate_members(cache: TTLCache, member_ids: list[int]) -> None:
    # membership lists embed community fields such as member_count
    for uid in member_ids:
        cache.invalidate("user", uid, "communities")


# ---------------------------------------------------------------------------
# Lookups shared with posts, chat and the real-time layer
# ---------------------------------------------------------------------------
def _load_active(session, community_id: int) -> Community:
    community = session.get(Community, community_id)
    if community is None or community.is_deleted:
        raise NotFoundError("Community not found")
    return community


def _membership(session, community_id: int, user_id: int) -> CommunityMember | None:
    return session.get(CommunityMember, (community_id, user_id))


def get_member_role(engine, community_id: int, user_id: int) -> str | None:
    """Return *user_id*'s role in the community, ``None`` when not a member.

    Raises :class:`NotFoundError` when the community is missing or deleted.
    """
    with get_session(engine) as session:
        _load_active(session, community_id)
        member = _membership(session, community_id, user_id)
        return member.role if member else None


def is_moderator(community: Community, member: CommunityMember | None, user_id: int) -> bool:
    """Owner, admins and moderators may moderate."""
    if community.owner_id == user_id:
        return True
    return member is not None and member.role in (MemberRole.MODERATOR, MemberRole.ADMIN)


def member_community_ids(engine, user_id: int) -> list[int]:
    with get_session(engine) as session:
        return list(session.scalars(
            live(
                select(CommunityMember.community_id)
                .join(Community, Community.id == CommunityMember.community_id)
                .where(CommunityMember.user_id == user_id),
                Community,
            )
        ).all())


# ---------------------------------------------------------------------------
# CRUD
# ---------------------------------------------------------------------------
def create_community(
    engine,
    cache: TTLCache,
    owner_id: int,
    *,
    name: str,
    description: str,
    privacy: str = CommunityPrivacy.PUBLIC,
    join_method: str = JoinMethod.OPEN,
    post_permission: str = "all",
    content_visibility: str = "visible",
    tags: list[str] | None = None,
    rules: list[dict] | None = None,
    avatar_url: str | None = None,
    banner_url: str | None = None,
) -> dict[str, Any]:
    slug = slugify(name)
    if not slug:
        raise ValidationError("Community name must contain letters or digits")

    with get_session(engine) as session:
        existing = session.scalar(
            select(Community.id).where(or_(Community.name == name, Community.slug == slug))
        )
        if existing is not None:
            raise ConflictError("Community name already exists")

        community = Community(
            name=name,
            slug=slug,
            description=description,
            owner_id=owner_id,
            privacy=privacy,
            join_method=join_method,
            post_permission=post_permission,
            content_visibility=content_visibility,
            tags=tags or [],
            rules=rules or [],
            avatar_url=avatar_url,
            banner_url=banner_url,
            member_count=1,
            post_count=0,
        )
        session.add(community)
        try:
            session.flush()
        except IntegrityError:
            raise ConflictError("Community name already exists")
        session.add(CommunityMember(
            community_id=community.id, user_id=owner_id, role=MemberRole.ADMIN
        ))
        session.flush()
        data = community_dict(community)

    cache.invalidate("communities")
    cache.invalidate("user", owner_id, "communities")
    logger.info("Community created: %s by user %d", name, owner_id)
    return data


def get_community(
    engine, cache: TTLCache, community_id: int, *, include_members: bool = False
) -> dict[str, Any]:
    key = ("community", community_id, "detail", include_members)
    token = cache.generation()
    cached = cache.get(key)
    if cached is not None:
        return cached

    with get_session(engine) as session:
        community = _load_active(session, community_id)
        data = community_dict(community, include_members=include_members)
        if include_members:
            owner = session.get(User, community.owner_id)
            data["owner"] = user_summary(owner) if owner else None

    cache.set(key, data, cache.ttl("community"), since=token)
    return data


def get_community_by_slug(engine, cache: TTLCache, slug: str) -> dict[str, Any]:
    key = ("community_slug", slug, "detail")
    token = cache.generation()
    cached = cache.get(key)
    if cached is not None:
        return cached

    with get_session(engine) as session:
        community = session.scalar(
            live(select(Community).where(Community.slug == slug), Community)
        )
        if community is None:
            raise NotFoundError("Community not found")
        data = community_dict(community)
        owner = session.get(User, community.owner_id)
        data["owner"] = user_summary(owner) if owner else None

    cache.set(key, data, cache.ttl("community"), since=token)
    return data


def list_communities(
    engine,
    cache: TTLCache,
    *,
    privacy: str | None = None,
    owner_id: int | None = None,
    search: str = "",
    page: int = 1,
    limit: int = 20,
    sort: str | None = None,
) -> dict[str, Any]:
    filters = json.dumps({"privacy": privacy, "owner": owner_id}, sort_keys=True)
    sort = sort or "-createdAt"
    key = ("communities", "list", filters, page, limit, sort, search)
    token = cache.generation()
    cached = cache.get(key)
    if cached is not None:
        return cached

    stmt = live(select(Community), Community)
    if privacy:
        stmt = stmt.where(Community.privacy == privacy)
    if owner_id is not None:
        stmt = stmt.where(Community.owner_id == owner_id)
    if search:
        pattern = f"%{search.lower()}%"
        stmt = stmt.where(or_(
            func.lower(Community.name).like(pattern),
            func.lower(Community.description).like(pattern),
        ))

    order = [
        SORT_COLUMNS[field].desc() if desc else SORT_COLUMNS[field].asc()
        for field, desc in parse_sort(sort, "-createdAt")
        if field in SORT_COLUMNS
    ] or [Community.created_at.desc()]

    with get_session(engine) as session:
        total = session.scalar(select(func.count()).select_from(stmt.subquery())) or 0
        rows = session.scalars(
            stmt.order_by(*order, Community.id.desc())
            .offset(page_offset(page, limit))
            .limit(limit)
        ).all()
        result = {
            "communities": [community_dict(c) for c in rows],
            "pagination": {
                "page": page,
                "limit": limit,
                "total": total,
                "pages": page_count(total, limit),
            },
        }

    cache.set(key, result, cache.ttl("community_list"), since=token)
    return result


def update_community(
    engine, cache: TTLCache, community_id: int, user_id: int, **changes: Any
) -> dict[str, Any]:
    with get_session(engine) as session:
        community = _load_active(session, community_id)
        member = _membership(session, community_id, user_id)
        if not is_moderator(community, member, user_id):
            raise AuthorizationError("Insufficient permissions")

        for key in UPDATABLE_FIELDS:
            if changes.get(key) is not None:
                setattr(community, key, changes[key])
        session.flush()
        data = community_dict(community)
        member_ids = _member_ids(session, community_id)

    _invalidate(cache, community)
    _invalidate_members(cache, member_ids)
    logger.info("Community updated: %s by user %d", community.name, user_id)
    return data


def delete_community(engine, cache: TTLCache, community_id: int, user_id: int) -> dict[str, Any]:
    with get_session(engine) as session:
        community = _load_active(session, community_id)
        if community.owner_id != user_id:
            raise AuthorizationError("Only community owner can delete")
        community.soft_delete(by=user_id)
        member_ids = _member_ids(session, community_id)
        session.flush()
        data = community_dict(community)

    _invalidate(cache, community)
    _invalidate_members(cache, member_ids)
    logger.info("Community deleted: %s by user %d", community.name, user_id)
    return data


# ---------------------------------------------------------------------------
# Membership
# ---------------------------------------------------------------------------
def join_community(engine, cache: TTLCache, community_id: int, user_id: int) -> dict[str, Any]:
    with get_session(engine) as session:
        community = session.get(Community, community_id)
        if community is None:
            raise NotFoundError("Community not found")
        if community.is_deleted:
            raise StateError("Community is not active")
        if _membership(session, community_id, user_id) is not None:
            raise ConflictError("Already a member of this community")
        if (
            community.privacy == CommunityPrivacy.PRIVATE
            or community.join_method == JoinMethod.INVITE
        ):
            raise AuthorizationError("This community requires an invitation")

        session.add(CommunityMember(
            community_id=community_id, user_id=user_id, role=MemberRole.MEMBER
        ))
        try:
            session.flush()
        except IntegrityError:
            raise ConflictError("Already a member of this community")
        session.execute(
            update(Community)
            .where(Community.id == community_id)
            .values(member_count=Community.member_count + 1)
        )
        session.refresh(community)
        data = community_dict(community)
        member_ids = _member_ids(session, community_id)

    _invalidate(cache, community)
    _invalidate_members(cache, member_ids)
    logger.info("User %d joined community %s", user_id, community.name)
    return data


def leave_community(engine, cache: TTLCache, community_id: int, user_id: int) -> dict[str, Any]:
    with get_session(engine) as session:
        community = session.get(Community, community_id)
        if community is None:
            raise NotFoundError("Community not found")
        member = _membership(session, community_id, user_id)
        if member is None:
            raise ValidationError("Not a member of this community")
        if community.owner_id == user_id:
            raise StateError("Community owner cannot leave. Transfer ownership first.")

        session.delete(member)
        session.flush()
        session.execute(
            update(Community)
            .where(Community.id == community_id)
            .values(member_count=Community.member_count - 1)
        )
        session.refresh(community)
        data = community_dict(community)
        member_ids = _member_ids(session, community_id)

    _invalidate(cache, community)
    _invalidate_members(cache, [*member_ids, user_id])
    logger.info("User %d left community %s", user_id, community.name)
    return data


def add_moderator(
    engine, cache: TTLCache, community_id: int, moderator_id: int, owner_id: int
) -> dict[str, Any]:
    with get_session(engine) as session:
        community = _load_active(session, community_id)
        if community.owner_id != owner_id:
            raise AuthorizationError("Only community owner can add moderators")
        if session.get(User, moderator_id) is None:
            raise NotFoundError("User not found")

        member = _membership(session, community_id, moderator_id)
        if member is not None and member.role == MemberRole.MODERATOR:
            raise ConflictError("User is already a moderator")
        if member is None:
            session.add(CommunityMember(
                community_id=community_id, user_id=moderator_id, role=MemberRole.MODERATOR
            ))
            community.member_count += 1
        else:
            member.role = MemberRole.MODERATOR
        session.flush()
        session.refresh(community)
        data = community_dict(community, include_members=True)
        member_ids = _member_ids(session, community_id)

    _invalidate(cache, community)
    _invalidate_members(cache, member_ids)
    logger.info("User %d added as moderator to community %s", moderator_id, community.name)
    return data


def remove_moderator(
    engine, cache: TTLCache, community_id: int, moderator_id: int, owner_id: int
) -> dict[str, Any]:
    with get_session(engine) as session:
        community = _load_active(session, community_id)
        if community.owner_id != owner_id:
            raise AuthorizationError("Only community owner can remove moderators")
        member = _membership(session, community_id, moderator_id)
        if member is None or member.role != MemberRole.MODERATOR:
            raise NotFoundError("User is not a moderator")
        member.role = MemberRole.MEMBER
        session.flush()
        session.refresh(community)
        data = community_dict(community, include_members=True)

    _invalidate(cache, community)
    cache.invalidate("user", moderator_id, "communities")
    logger.info("User %d removed as moderator from community %s", moderator_id, community.name)
    return data


def transfer_ownership(
    engine, cache: TTLCache, community_id: int, new_owner_id: int, owner_id: int
) -> dict[str, Any]:
    """Hand the community to another member; the old owner stays a moderator."""
    with get_session(engine) as session:
        community = _load_active(session, community_id)
        if community.owner_id != owner_id:
            raise AuthorizationError("Only community owner can transfer ownership")
        if new_owner_id == owner_id:
            raise ValidationError("User already owns this community")
        new_member = _membership(session, community_id, new_owner_id)
        if new_member is None:
            raise ValidationError("New owner must be a member of this community")

        old_member = _membership(session, community_id, owner_id)
        if old_member is not None:
            old_member.role = MemberRole.MODERATOR
        new_member.role = MemberRole.ADMIN
        community.owner_id = new_owner_id
        session.flush()
        data = community_dict(community)

    _invalidate(cache, community)
    cache.invalidate("user", owner_id, "communities")
    cache.invalidate("user", new_owner_id, "communities")
    logger.info(
        "Community %s transferred from user %d to user %d",
        community.name, owner_id, new_owner_id,
    )
    return data


def get_user_communities(engine, cache: TTLCache, user_id: int) -> list[dict[str, Any]]:
    key = ("user", user_id, "communities")
    token = cache.generation()
    cached = cache.get(key)
    if cached is not None:
        return cached

    with get_session(engine) as session:
        if session.get(User, user_id) is None:
            raise NotFoundError("User not found")
        rows = session.execute(
            live(
                select(CommunityMember, Community)
                .join(Community, Community.id == CommunityMember.community_id)
                .where(CommunityMember.user_id == user_id)
                .order_by(CommunityMember.joined_at),
                Community,
            )
        ).all()
        result = [
            {
                "community": {
                    "id": c.id,
                    "name": c.name,
                    "slug": c.slug,
                    "description": c.description,
                    "avatar_url": c.avatar_url,
                    "member_count": c.member_count,
                    "privacy": c.privacy,
                },
                "role": m.role,
                "joined_at": isoformat(m.joined_at),
            }
            for m, c in rows
        ]

    cache.set(key, result, cache.ttl("user_communities"), since=token)
    return result


# ---------------------------------------------------------------------------
# Recommendations (AI-backed)
# ---------------------------------------------------------------------------
def _community_topics(engine) -> list[str]:
    with get_session(engine) as session:
        rows = session.scalars(
            live(select(Community), Community).order_by(Community.member_count.desc()).limit(50)
        ).all()
        topics: list[str] = []
        for c in rows:
            for tag in c.tags or []:
                if tag not in topics:
                    topics.append(tag)
        return topics[:20]


def _match_communities(engine, names: list[str]) -> dict[str, dict[str, Any]]:
    matched: dict[str, dict[str, Any]] = {}
    with get_session(engine) as session:
        for name in names:
            community = session.scalar(
                live(
                    select(Community).where(func.lower(Community.name).like(f"%{name.lower()}%")),
                    Community,
                ).limit(1)
            )
            if community is not None:
                matched[name] = community_dict(community)
    return matched


async def get_recommendations(
    engine, ai: AIService, user_id: int, interests: list[str]
) -> dict[str, Any]:
    topics = await run_db(_community_topics, engine)
    response = await ai.recommend(interests, topics)
    names = [
        str(rec.get("community_name", ""))
        for rec in response.get("recommendations", [])
        if isinstance(rec, dict) and rec.get("community_name")
    ]
    matched = await run_db(_match_communities, engine, names)
    recommendations = [
        {**rec, "community": matched[rec["community_name"]]}
        for rec in response.get("recommendations", [])
        if isinstance(rec, dict) and rec.get("community_name") in matched
    ]
    logger.debug("Recommendations for user %d: %d match(es)", user_id, len(recommendations))
    return {**response, "recommendations": recommendations}
