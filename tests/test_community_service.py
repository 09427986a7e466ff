"""
tests/test_community_service.py — Communities & Membership Tests
==================================================================
"""

from __future__ import annotations

import json

import httpx
import pytest

from agora.database.models import MemberRole
from agora.errors import (
    AuthorizationError,
    ConflictError,
    NotFoundError,
    StateError,
    ValidationError,
)
from agora.services import community_service as svc
from conftest import add_member, make_ai, make_community, make_user, offline_ai, run_async


@pytest.fixture
def owner(db_engine):
    return make_user(db_engine, "owner")


@pytest.fixture
def community(db_engine, cache, owner):
    return make_community(db_engine, cache, owner, "Python Devs!")


class TestCreate:
    def test_owner_is_admin_member(self, db_engine, cache, owner, community):
        data = svc.get_community(db_engine, cache, community)
        assert data["slug"] == "python-devs"
        assert data["stats"] == {"member_count": 1, "post_count": 0}
        assert svc.get_member_role(db_engine, community, owner) == MemberRole.ADMIN

    def test_duplicate_name_conflicts(self, db_engine, cache, owner, community):
        with pytest.raises(ConflictError):
            make_community(db_engine, cache, owner, "Python Devs!")

    def test_duplicate_slug_conflicts(self, db_engine, cache, owner, community):
        with pytest.raises(ConflictError):
            make_community(db_engine, cache, owner, "python devs")

    def test_name_without_letters_rejected(self, db_engine, cache, owner):
        with pytest.raises(ValidationError):
            make_community(db_engine, cache, owner, "!!!")

    def test_creation_drops_cached_listings(self, db_engine, cache, owner, community):
        first = svc.list_communities(db_engine, cache)
        make_community(db_engine, cache, owner, "Rustaceans")
        second = svc.list_communities(db_engine, cache)
        assert first["pagination"]["total"] == 1
        assert second["pagination"]["total"] == 2


class TestReads:
    def test_by_slug_includes_owner(self, db_engine, cache, owner, community):
        data = svc.get_community_by_slug(db_engine, cache, "python-devs")
        assert data["owner"]["username"] == "owner"

    def test_missing_slug(self, db_engine, cache):
        with pytest.raises(NotFoundError):
            svc.get_community_by_slug(db_engine, cache, "nope")

    def test_include_members(self, db_engine, cache, owner, community):
        mod = make_user(db_engine, "mod")
        add_member(db_engine, community, mod, MemberRole.MODERATOR)
        data = svc.get_community(db_engine, cache, community, include_members=True)
        assert data["moderators"] == [mod]
        assert {m["user"]["username"] for m in data["members"]} == {"owner", "mod"}

    def test_list_filters_and_search(self, db_engine, cache, owner, community):
        make_community(db_engine, cache, owner, "Secret Club", privacy="private")
        public = svc.list_communities(db_engine, cache, privacy="public")
        assert [c["name"] for c in public["communities"]] == ["Python Devs!"]
        found = svc.list_communities(db_engine, cache, search="club")
        assert [c["name"] for c in found["communities"]] == ["Secret Club"]

    def test_list_sort_by_name(self, db_engine, cache, owner, community):
        make_community(db_engine, cache, owner, "Ada Fans")
        listing = svc.list_communities(db_engine, cache, sort="name")
        assert [c["name"] for c in listing["communities"]] == ["Ada Fans", "Python Devs!"]

    def test_get_member_role_for_deleted_community(self, db_engine, cache, owner, community):
        svc.delete_community(db_engine, cache, community, owner)
        with pytest.raises(NotFoundError):
            svc.get_member_role(db_engine, community, owner)


class TestMembership:
    def test_join_and_leave_keep_count(self, db_engine, cache, owner, community):
        bob = make_user(db_engine, "bob")
        joined = svc.join_community(db_engine, cache, community, bob)
        assert joined["stats"]["member_count"] == 2
        assert svc.get_member_role(db_engine, community, bob) == MemberRole.MEMBER

        left = svc.leave_community(db_engine, cache, community, bob)
        assert left["stats"]["member_count"] == 1
        assert svc.get_member_role(db_engine, community, bob) is None

    def test_join_twice_conflicts(self, db_engine, cache, owner, community):
        bob = make_user(db_engine, "bob")
        svc.join_community(db_engine, cache, community, bob)
        with pytest.raises(ConflictError):
            svc.join_community(db_engine, cache, community, bob)

    def test_private_community_requires_invite(self, db_engine, cache, owner):
        cid = make_community(db_engine, cache, owner, "Secret Club", privacy="private")
        with pytest.raises(AuthorizationError):
            svc.join_community(db_engine, cache, cid, make_user(db_engine, "bob"))

    def test_join_deleted_community(self, db_engine, cache, owner, community):
        svc.delete_community(db_engine, cache, community, owner)
        with pytest.raises(StateError):
            svc.join_community(db_engine, cache, community, make_user(db_engine, "bob"))

    def test_owner_cannot_leave(self, db_engine, cache, owner, community):
        with pytest.raises(StateError, match="Transfer ownership first"):
            svc.leave_community(db_engine, cache, community, owner)

    def test_leave_when_not_member(self, db_engine, cache, owner, community):
        with pytest.raises(ValidationError):
            svc.leave_community(db_engine, cache, community, make_user(db_engine, "bob"))

    def test_user_communities_cache_refreshed_on_join(self, db_engine, cache, owner, community):
        bob = make_user(db_engine, "bob")
        assert svc.get_user_communities(db_engine, cache, bob) == []
        svc.join_community(db_engine, cache, community, bob)
        memberships = svc.get_user_communities(db_engine, cache, bob)
        assert [m["community"]["id"] for m in memberships] == [community]
        assert svc.member_community_ids(db_engine, bob) == [community]

    def test_join_and_leave_refresh_other_members_lists(self, db_engine, cache, owner, community):
        bob = make_user(db_engine, "bob")
        assert svc.get_user_communities(db_engine, cache, owner)[0]["community"]["member_count"] == 1
        svc.join_community(db_engine, cache, community, bob)
        assert svc.get_user_communities(db_engine, cache, owner)[0]["community"]["member_count"] == 2
        svc.leave_community(db_engine, cache, community, bob)
        assert svc.get_user_communities(db_engine, cache, owner)[0]["community"]["member_count"] == 1
        assert svc.get_user_communities(db_engine, cache, bob) == []


class TestUpdateDelete:
    def test_moderator_may_update(self, db_engine, cache, owner, community):
        mod = make_user(db_engine, "mod")
        add_member(db_engine, community, mod, MemberRole.MODERATOR)
        data = svc.update_community(db_engine, cache, community, mod, description="New")
        assert data["description"] == "New"

    def test_member_may_not_update(self, db_engine, cache, owner, community):
        bob = make_user(db_engine, "bob")
        add_member(db_engine, community, bob)
        with pytest.raises(AuthorizationError):
            svc.update_community(db_engine, cache, community, bob, description="New")

    def test_update_invalidates_cached_detail(self, db_engine, cache, owner, community):
        svc.get_community(db_engine, cache, community)
        svc.update_community(db_engine, cache, community, owner, description="Fresh")
        assert svc.get_community(db_engine, cache, community)["description"] == "Fresh"

    def test_update_refreshes_members_community_lists(self, db_engine, cache, owner, community):
        bob = make_user(db_engine, "bob")
        add_member(db_engine, community, bob)
        for uid in (owner, bob):
            svc.get_user_communities(db_engine, cache, uid)
        svc.update_community(
            db_engine, cache, community, owner, description="Fresh", privacy="restricted"
        )
        for uid in (owner, bob):
            entry = svc.get_user_communities(db_engine, cache, uid)[0]["community"]
            assert (entry["description"], entry["privacy"]) == ("Fresh", "restricted")

    def test_only_owner_deletes(self, db_engine, cache, owner, community):
        mod = make_user(db_engine, "mod")
        add_member(db_engine, community, mod, MemberRole.MODERATOR)
        with pytest.raises(AuthorizationError):
            svc.delete_community(db_engine, cache, community, mod)

    def test_delete_is_soft(self, db_engine, cache, owner, community):
        svc.get_community(db_engine, cache, community)
        data = svc.delete_community(db_engine, cache, community, owner)
        assert data["is_active"] is False
        with pytest.raises(NotFoundError):
            svc.get_community(db_engine, cache, community)
        assert svc.list_communities(db_engine, cache)["communities"] == []


class TestModerators:
    def test_add_and_remove(self, db_engine, cache, owner, community):
        bob = make_user(db_engine, "bob")
        data = svc.add_moderator(db_engine, cache, community, bob, owner)
        assert bob in data["moderators"]
        assert data["stats"]["member_count"] == 2

        data = svc.remove_moderator(db_engine, cache, community, bob, owner)
        assert data["moderators"] == []
        assert svc.get_member_role(db_engine, community, bob) == MemberRole.MEMBER

    def test_add_twice_conflicts(self, db_engine, cache, owner, community):
        bob = make_user(db_engine, "bob")
        svc.add_moderator(db_engine, cache, community, bob, owner)
        with pytest.raises(ConflictError):
            svc.add_moderator(db_engine, cache, community, bob, owner)

    def test_only_owner_manages_moderators(self, db_engine, cache, owner, community):
        bob = make_user(db_engine, "bob")
        with pytest.raises(AuthorizationError):
            svc.add_moderator(db_engine, cache, community, bob, bob)

    def test_remove_non_moderator(self, db_engine, cache, owner, community):
        bob = make_user(db_engine, "bob")
        add_member(db_engine, community, bob)
        with pytest.raises(NotFoundError):
            svc.remove_moderator(db_engine, cache, community, bob, owner)

    def test_add_unknown_user(self, db_engine, cache, owner, community):
        with pytest.raises(NotFoundError):
            svc.add_moderator(db_engine, cache, community, 999, owner)


class TestTransfer:
    def test_transfer_demotes_old_owner(self, db_engine, cache, owner, community):
        bob = make_user(db_engine, "bob")
        add_member(db_engine, community, bob)
        data = svc.transfer_ownership(db_engine, cache, community, bob, owner)
        assert data["owner_id"] == bob
        assert svc.get_member_role(db_engine, community, bob) == MemberRole.ADMIN
        assert svc.get_member_role(db_engine, community, owner) == MemberRole.MODERATOR
        svc.leave_community(db_engine, cache, community, owner)

    def test_new_owner_must_be_member(self, db_engine, cache, owner, community):
        with pytest.raises(ValidationError):
            svc.transfer_ownership(db_engine, cache, community, make_user(db_engine, "bob"), owner)


class TestRecommendations:
    def test_matches_ai_names_to_communities(self, db_engine, cache, owner):
        make_community(db_engine, cache, owner, "Python Devs", tags=["python"])
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={
                "recommendations": [
                    {"community_name": "python", "score": 0.9},
                    {"community_name": "knitting", "score": 0.4},
                ],
                "explanation": "Based on your interests",
            })

        result = run_async(svc.get_recommendations(db_engine, make_ai(handler), owner, ["python"]))

        assert [r["community"]["name"] for r in result["recommendations"]] == ["Python Devs"]
        assert result["explanation"] == "Based on your interests"
        assert seen["body"]["community_topics"] == ["python"]

    def test_ai_unavailable(self, db_engine, cache, owner):
        result = run_async(svc.get_recommendations(db_engine, offline_ai(), owner, ["python"]))
        assert result["recommendations"] == []
