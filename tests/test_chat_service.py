"""
tests/test_chat_service.py — Community Channels & Direct Messages
===================================================================
"""

from __future__ import annotations

import pytest

from agora.database.engine import get_session
from agora.database.models import MemberRole, MessageReceipt, ReceiptKind
from agora.errors import AuthorizationError, NotFoundError, ValidationError
from agora.services import chat_service as svc
from conftest import add_member, make_community, make_user, moderation_ai, offline_ai, run_async


@pytest.fixture
def world(db_engine, cache):
    owner = make_user(db_engine, "owner")
    alice = make_user(db_engine, "alice")
    bob = make_user(db_engine, "bob")
    community = make_community(db_engine, cache, owner)
    add_member(db_engine, community, alice)
    return {"owner": owner, "alice": alice, "bob": bob, "community": community}


def _send(db_engine, cfg, sender, content="hello there", ai=None, **target):
    return run_async(svc.send_message(
        db_engine, ai or offline_ai(), cfg, sender, content=content, **target
    ))


class TestChannels:
    def test_direct_channel_is_symmetric(self):
        assert svc.direct_channel(12, 5) == svc.direct_channel(5, 12) == "dm:5:12"
        assert svc.direct_channel(10, 9) == "dm:9:10"

    def test_community_channel(self):
        assert svc.community_channel(3) == "community:3"


class TestSend:
    def test_community_message(self, db_engine, cfg, world):
        msg = _send(db_engine, cfg, world["alice"], community_id=world["community"])
        assert msg["channel"] == f"community:{world['community']}"
        assert msg["sender"]["username"] == "alice"
        assert [d["user_id"] for d in msg["delivered_to"]] == [world["alice"]]
        assert msg["read_by"] == []

    def test_direct_message(self, db_engine, cfg, world):
        msg = _send(db_engine, cfg, world["bob"], receiver_id=world["alice"])
        lo, hi = sorted((world["alice"], world["bob"]))
        assert msg["channel"] == f"dm:{lo}:{hi}"
        assert msg["receiver_id"] == world["alice"]

    def test_needs_exactly_one_target(self, db_engine, cfg, world):
        with pytest.raises(ValidationError, match="Either communityId or receiverId"):
            _send(db_engine, cfg, world["alice"])
        with pytest.raises(ValidationError, match="Cannot specify both"):
            _send(db_engine, cfg, world["alice"],
                  community_id=world["community"], receiver_id=world["bob"])

    def test_non_member_cannot_post_in_channel(self, db_engine, cfg, world):
        with pytest.raises(AuthorizationError):
            _send(db_engine, cfg, world["bob"], community_id=world["community"])

    def test_cannot_message_self(self, db_engine, cfg, world):
        with pytest.raises(ValidationError):
            _send(db_engine, cfg, world["bob"], receiver_id=world["bob"])

    def test_unknown_receiver(self, db_engine, cfg, world):
        with pytest.raises(NotFoundError):
            _send(db_engine, cfg, world["bob"], receiver_id=999)

    def test_reply_must_be_in_same_channel(self, db_engine, cfg, world):
        dm = _send(db_engine, cfg, world["bob"], receiver_id=world["alice"])
        with pytest.raises(NotFoundError, match="Replied message"):
            _send(db_engine, cfg, world["alice"],
                  community_id=world["community"], reply_to=dm["id"])
        reply = _send(db_engine, cfg, world["alice"], receiver_id=world["bob"], reply_to=dm["id"])
        assert reply["reply_to_id"] == dm["id"]

    def test_flagged_message_rejected(self, db_engine, cfg, world):
        with pytest.raises(ValidationError):
            _send(db_engine, cfg, world["alice"], content="something quite nasty",
                  ai=moderation_ai(flagged=True), community_id=world["community"])


class TestHistory:
    def test_oldest_first_and_marks_delivered(self, db_engine, cfg, world):
        cid = world["community"]
        for text in ("one", "two", "three"):
            _send(db_engine, cfg, world["alice"], text, community_id=cid)

        history = svc.get_community_messages(db_engine, cid, world["owner"])

        assert [m["content"] for m in history] == ["one", "two", "three"]
        assert all(
            {d["user_id"] for d in m["delivered_to"]} == {world["alice"], world["owner"]}
            for m in history
        )

    def test_history_is_member_only(self, db_engine, cfg, world):
        with pytest.raises(AuthorizationError):
            svc.get_community_messages(db_engine, world["community"], world["bob"])

    def test_pagination_newest_page_first(self, db_engine, cfg, world):
        for i in range(5):
            _send(db_engine, cfg, world["bob"], f"m{i}", receiver_id=world["alice"])
        page1 = svc.get_direct_messages(db_engine, world["alice"], world["bob"], limit=2)
        page2 = svc.get_direct_messages(db_engine, world["alice"], world["bob"], page=2, limit=2)
        assert [m["content"] for m in page1] == ["m3", "m4"]
        assert [m["content"] for m in page2] == ["m1", "m2"]

    def test_hidden_messages_skipped_for_that_user_only(self, db_engine, cfg, world):
        msg = _send(db_engine, cfg, world["bob"], receiver_id=world["alice"])
        svc.delete_message(db_engine, msg["id"], world["alice"], for_everyone=False)
        assert svc.get_direct_messages(db_engine, world["alice"], world["bob"]) == []
        assert len(svc.get_direct_messages(db_engine, world["bob"], world["alice"])) == 1


class TestReadReceipts:
    def test_second_read_is_not_new(self, db_engine, cfg, world):
        msg = _send(db_engine, cfg, world["bob"], receiver_id=world["alice"])
        first = svc.mark_as_read(db_engine, msg["id"], world["alice"])
        second = svc.mark_as_read(db_engine, msg["id"], world["alice"])
        assert first["newly_read"] is True
        assert second["newly_read"] is False
        assert first["read_at"] == second["read_at"]
        with get_session(db_engine) as session:
            assert session.query(MessageReceipt).filter_by(
                message_id=msg["id"], kind=ReceiptKind.READ
            ).count() == 1

    def test_outsider_cannot_mark(self, db_engine, cfg, world):
        msg = _send(db_engine, cfg, world["bob"], receiver_id=world["alice"])
        with pytest.raises(AuthorizationError):
            svc.mark_as_read(db_engine, msg["id"], world["owner"])

    def test_unread_count(self, db_engine, cfg, world):
        first = _send(db_engine, cfg, world["bob"], "a", receiver_id=world["alice"])
        _send(db_engine, cfg, world["bob"], "b", receiver_id=world["alice"])
        assert svc.get_unread_count(db_engine, world["alice"]) == 2
        svc.mark_as_read(db_engine, first["id"], world["alice"])
        assert svc.get_unread_count(db_engine, world["alice"]) == 1
        assert svc.get_unread_count(db_engine, world["bob"]) == 0

    def test_unread_count_in_community(self, db_engine, cfg, world):
        _send(db_engine, cfg, world["alice"], community_id=world["community"])
        assert svc.get_unread_count(db_engine, world["owner"], world["community"]) == 1
        assert svc.get_unread_count(db_engine, world["alice"], world["community"]) == 0


class TestDelete:
    def test_sender_deletes_for_everyone(self, db_engine, cfg, world):
        msg = _send(db_engine, cfg, world["bob"], receiver_id=world["alice"])
        result = svc.delete_message(db_engine, msg["id"], world["bob"])
        assert result["deleted_by"] == world["bob"]
        assert svc.get_direct_messages(db_engine, world["bob"], world["alice"]) == []

    def test_receiver_cannot_delete_for_everyone(self, db_engine, cfg, world):
        msg = _send(db_engine, cfg, world["bob"], receiver_id=world["alice"])
        with pytest.raises(AuthorizationError, match="Only sender"):
            svc.delete_message(db_engine, msg["id"], world["alice"])

    def test_moderator_deletes_channel_message(self, db_engine, cfg, world):
        mod = make_user(db_engine, "mod")
        add_member(db_engine, world["community"], mod, MemberRole.MODERATOR)
        msg = _send(db_engine, cfg, world["alice"], community_id=world["community"])
        svc.delete_message(db_engine, msg["id"], mod)
        with pytest.raises(NotFoundError):
            svc.mark_as_read(db_engine, msg["id"], mod)


class TestReactions:
    def test_reacting_again_replaces(self, db_engine, cfg, world):
        msg = _send(db_engine, cfg, world["bob"], receiver_id=world["alice"])
        svc.add_reaction(db_engine, msg["id"], world["alice"], "👍")
        data = svc.add_reaction(db_engine, msg["id"], world["alice"], "🎉")
        assert data["reactions"] == [{"user_id": world["alice"], "emoji": "🎉"}]

    def test_remove(self, db_engine, cfg, world):
        msg = _send(db_engine, cfg, world["bob"], receiver_id=world["alice"])
        svc.add_reaction(db_engine, msg["id"], world["bob"], "👍")
        assert svc.remove_reaction(db_engine, msg["id"], world["bob"])["reactions"] == []
        assert svc.remove_reaction(db_engine, msg["id"], world["bob"])["reactions"] == []

    def test_outsider_cannot_react(self, db_engine, cfg, world):
        msg = _send(db_engine, cfg, world["bob"], receiver_id=world["alice"])
        with pytest.raises(AuthorizationError):
            svc.add_reaction(db_engine, msg["id"], world["owner"], "👀")
