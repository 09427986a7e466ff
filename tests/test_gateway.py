"""
tests/test_gateway.py — Real-Time Gateway Tests
=================================================

Drives :class:`RealtimeGateway` with in-memory connections so every
fan-out rule can be checked per connection: who receives an event, who is
excluded, and that failures only ever reach the originating connection.
"""

from __future__ import annotations

import pytest

from agora.database.engine import get_session
from agora.database.models import User
from agora.realtime.gateway import RealtimeGateway
from agora.services import chat_service, post_service
from conftest import (
    FakeConnection,
    add_member,
    make_community,
    make_post,
    make_user,
    offline_ai,
    run_async,
)


@pytest.fixture
def world(db_engine, cache):
    owner = make_user(db_engine, "owner")
    alice = make_user(db_engine, "alice")
    bob = make_user(db_engine, "bob")
    community = make_community(db_engine, cache, owner)
    add_member(db_engine, community, alice)
    return {"owner": owner, "alice": alice, "bob": bob, "community": community}


@pytest.fixture
def gateway(db_engine, cache, cfg):
    return RealtimeGateway(db_engine, cache, offline_ai(), cfg)


def _conn(world, name: str) -> FakeConnection:
    return FakeConnection(world[name], name)


def _frame(event: str, **data) -> dict:
    return {"event": event, "data": data}


class TestLifecycle:
    def test_presence_broadcast_on_first_and_last_connection(self, db_engine, gateway, world):
        watcher = _conn(world, "owner")
        tab_a, tab_b = _conn(world, "alice"), _conn(world, "alice")
        cid = world["community"]

        async def scenario():
            await gateway.on_connect(watcher)
            await gateway.dispatch(watcher, _frame("join_community", communityId=cid))
            await gateway.on_connect(tab_a)
            await gateway.on_connect(tab_b)
            await gateway.on_disconnect(tab_a)
            assert gateway.presence.is_online(world["alice"])
            await gateway.on_disconnect(tab_b)

        run_async(scenario())

        presence = watcher.events("user_presence")
        assert [(p["userId"], p["isOnline"]) for p in presence] == [
            (world["alice"], True),
            (world["alice"], False),
        ]
        assert not gateway.presence.is_online(world["alice"])
        with get_session(db_engine) as session:
            assert session.get(User, world["alice"]).is_online is False
            assert session.get(User, world["owner"]).is_online is True

    def test_disconnect_leaves_every_room(self, gateway, world):
        conn = _conn(world, "alice")

        async def scenario():
            await gateway.on_connect(conn)
            await gateway.dispatch(conn, _frame("join_community", communityId=world["community"]))
            await gateway.on_disconnect(conn)

        run_async(scenario())
        assert gateway.hub.rooms_of(conn) == set()


class TestDispatchErrors:
    def test_unknown_event(self, gateway, world):
        conn = _conn(world, "alice")
        run_async(gateway.dispatch(conn, _frame("dance")))
        assert conn.sent == [("error", {"message": "Unknown event: dance", "source": "dance"})]

    def test_malformed_frame(self, gateway, world):
        conn = _conn(world, "alice")
        run_async(gateway.dispatch(conn, None))
        assert conn.events("error") == [{"message": "Frame must be a JSON object", "source": None}]

    def test_non_string_event_name(self, gateway, world):
        conn = _conn(world, "alice")
        run_async(gateway.dispatch(conn, {"event": 5, "data": {}}))
        run_async(gateway.dispatch(conn, {"event": ["send_message"], "data": {}}))
        assert conn.sent == [
            ("error", {"message": "Unknown event: 5", "source": None}),
            ("error", {"message": "Unknown event: ['send_message']", "source": None}),
        ]

    def test_non_member_join(self, gateway, world):
        conn = _conn(world, "bob")
        run_async(gateway.dispatch(conn, _frame("join_community", communityId=world["community"])))
        assert conn.events("error")[0]["message"] == "You must be a member to join chat"
        assert gateway.hub.rooms_of(conn) == set()

    def test_missing_community(self, gateway, world):
        conn = _conn(world, "alice")
        run_async(gateway.dispatch(conn, _frame("join_community", communityId=999)))
        assert conn.events("error")[0]["message"] == "Community not found"

    def test_unexpected_failure_is_reported_generically(self, gateway, world, monkeypatch):
        async def boom(conn, name, payload):
            raise RuntimeError("database exploded")

        monkeypatch.setitem(gateway._handlers, "heartbeat", boom)
        conn, other = _conn(world, "alice"), _conn(world, "owner")

        async def scenario():
            await gateway.on_connect(other)
            await gateway.dispatch(conn, _frame("heartbeat"))

        run_async(scenario())
        assert conn.sent == [("error", {"message": "Internal server error", "source": "heartbeat"})]
        assert other.events("error") == []

    def test_error_only_reaches_origin(self, gateway, world):
        origin, peer = _conn(world, "bob"), _conn(world, "owner")

        async def scenario():
            await gateway.on_connect(origin)
            await gateway.on_connect(peer)
            await gateway.dispatch(peer, _frame("join_community", communityId=world["community"]))
            await gateway.dispatch(
                origin, _frame("send_message", content="hi", communityId=world["community"])
            )

        run_async(scenario())
        assert origin.events("error")[0]["message"].startswith("You must be a member")
        assert peer.events("error") == []
        assert peer.events("new_message") == []


class TestCommunityRooms:
    def test_join_announces_to_others_only(self, gateway, world):
        owner, alice = _conn(world, "owner"), _conn(world, "alice")
        cid = world["community"]

        async def scenario():
            await gateway.dispatch(owner, _frame("join_community", communityId=cid))
            await gateway.dispatch(alice, _frame("join_community", communityId=cid))
            await gateway.dispatch(alice, _frame("leave_community", communityId=cid))

        run_async(scenario())
        joined = owner.events("user_joined")
        assert len(joined) == 1
        assert joined[0]["userId"] == world["alice"]
        assert joined[0]["username"] == "alice"
        assert joined[0]["communityId"] == cid
        assert joined[0]["timestamp"]
        assert owner.events("user_left")[0]["userId"] == world["alice"]
        assert alice.events("user_joined") == []


class TestMessages:
    def test_socket_message_acks_origin_once(self, gateway, world):
        cid = world["community"]
        tab_a, tab_b, owner = _conn(world, "alice"), _conn(world, "alice"), _conn(world, "owner")

        async def scenario():
            for conn in (tab_a, tab_b, owner):
                await gateway.on_connect(conn)
                await gateway.dispatch(conn, _frame("join_community", communityId=cid))
            await gateway.dispatch(tab_a, _frame("send_message", content="hello all", communityId=cid))

        run_async(scenario())
        for conn in (tab_a, tab_b, owner):
            messages = conn.events("new_message")
            assert len(messages) == 1
            assert messages[0]["message"]["content"] == "hello all"

    def test_direct_message_reaches_receiver_inbox(self, gateway, world):
        bob, alice, owner = _conn(world, "bob"), _conn(world, "alice"), _conn(world, "owner")

        async def scenario():
            for conn in (bob, alice, owner):
                await gateway.on_connect(conn)
            await gateway.dispatch(bob, _frame("send_message", content="psst", receiverId=world["alice"]))

        run_async(scenario())
        assert len(alice.events("new_message")) == 1
        assert len(bob.events("new_message")) == 1
        assert owner.events("new_message") == []

    def test_direct_room_members_get_it_once(self, gateway, world):
        bob, alice = _conn(world, "bob"), _conn(world, "alice")

        async def scenario():
            for conn in (bob, alice):
                await gateway.on_connect(conn)
            await gateway.dispatch(alice, _frame("join_direct", userId=world["bob"]))
            await gateway.dispatch(bob, _frame("join_direct", userId=world["alice"]))
            await gateway.dispatch(bob, _frame("send_message", content="psst", receiverId=world["alice"]))

        run_async(scenario())
        assert len(alice.events("new_message")) == 1
        assert len(bob.events("new_message")) == 1

    def test_rest_publish_skips_all_sender_connections(self, db_engine, cfg, gateway, world):
        cid = world["community"]
        alice, owner = _conn(world, "alice"), _conn(world, "owner")

        async def scenario():
            for conn in (alice, owner):
                await gateway.on_connect(conn)
                await gateway.dispatch(conn, _frame("join_community", communityId=cid))
            message = await chat_service.send_message(
                db_engine, offline_ai(), cfg, world["alice"], content="from REST", community_id=cid
            )
            await gateway.publish_message(message)

        run_async(scenario())
        assert alice.events("new_message") == []
        assert len(owner.events("new_message")) == 1

    def test_typing_requires_joined_room(self, gateway, world):
        cid = world["community"]
        alice, tab_b, owner = _conn(world, "alice"), _conn(world, "alice"), _conn(world, "owner")

        async def scenario():
            await gateway.dispatch(alice, _frame("typing_start", communityId=cid))
            for conn in (alice, tab_b, owner):
                await gateway.dispatch(conn, _frame("join_community", communityId=cid))
            await gateway.dispatch(alice, _frame("typing_start", communityId=cid))
            await gateway.dispatch(alice, _frame("typing_stop", communityId=cid))

        run_async(scenario())
        assert alice.events("error")[0]["message"] == "Join the community chat first"
        assert [t["isTyping"] for t in owner.events("user_typing")] == [True, False]
        assert tab_b.events("user_typing") == []

    def test_read_receipt_notifies_sender_once(self, db_engine, cfg, gateway, world):
        bob, alice = _conn(world, "bob"), _conn(world, "alice")

        async def scenario():
            for conn in (bob, alice):
                await gateway.on_connect(conn)
            message = await chat_service.send_message(
                db_engine, offline_ai(), cfg, world["bob"], content="read me", receiver_id=world["alice"]
            )
            await gateway.dispatch(alice, _frame("read_receipt", messageId=message["id"]))
            await gateway.dispatch(alice, _frame("read_receipt", messageId=message["id"]))
            return message["id"]

        message_id = run_async(scenario())
        reads = bob.events("message_read")
        assert len(reads) == 1
        assert reads[0]["messageId"] == message_id
        assert reads[0]["readBy"] == world["alice"]
        assert alice.events("message_read") == []

    def test_join_direct_with_self(self, gateway, world):
        conn = _conn(world, "alice")
        run_async(gateway.dispatch(conn, _frame("join_direct", userId=world["alice"])))
        assert conn.events("error")[0]["message"] == "Cannot open a direct conversation with yourself"


class TestPresence:
    def test_update_presence_fans_out_to_communities(self, db_engine, gateway, world):
        watcher, alice = _conn(world, "owner"), _conn(world, "alice")

        async def scenario():
            await gateway.dispatch(watcher, _frame("join_community", communityId=world["community"]))
            await gateway.dispatch(alice, _frame("update_presence", status="busy", customStatus="Coding"))

        run_async(scenario())
        update = watcher.events("presence_update")[0]
        assert update["userId"] == world["alice"]
        assert update["status"] == "busy"
        assert update["customStatus"] == "Coding"
        assert update["timestamp"]
        with get_session(db_engine) as session:
            assert session.get(User, world["alice"]).custom_status == "Coding"

    def test_heartbeat_touches_last_seen_silently(self, db_engine, gateway, world):
        conn = _conn(world, "alice")
        with get_session(db_engine) as session:
            before = session.get(User, world["alice"]).last_seen

        run_async(gateway.dispatch(conn, _frame("heartbeat")))

        assert conn.sent == []
        with get_session(db_engine) as session:
            assert session.get(User, world["alice"]).last_seen > before


class TestPosts:
    @pytest.fixture
    def post(self, db_engine, world):
        return make_post(db_engine, world["community"], world["alice"], "Live post")

    def test_vote_updates_watchers_and_community(self, gateway, world, post):
        watcher, voter, feed = _conn(world, "alice"), _conn(world, "owner"), _conn(world, "owner")

        async def scenario():
            await gateway.dispatch(watcher, _frame("watch_post", postId=post))
            await gateway.dispatch(feed, _frame("join_community", communityId=world["community"]))
            await gateway.dispatch(voter, _frame("upvote_post", postId=post))

        run_async(scenario())
        votes = watcher.events("vote_update")
        assert votes[0]["upvotes"] == 1
        assert votes[0]["userId"] == world["owner"]
        assert votes[0]["userVote"] == "up"
        changes = feed.events("post_updated")[0]
        assert changes["postId"] == post
        assert changes["changes"]["upvotes"] == 1

    def test_downvote_twice_clears(self, gateway, world, post):
        watcher, voter = _conn(world, "alice"), _conn(world, "owner")

        async def scenario():
            await gateway.dispatch(watcher, _frame("watch_post", postId=post))
            await gateway.dispatch(voter, _frame("downvote_post", postId=post))
            await gateway.dispatch(voter, _frame("downvote_post", postId=post))

        run_async(scenario())
        assert [(v["downvotes"], v["userVote"]) for v in watcher.events("vote_update")] == [
            (1, "down"), (0, None),
        ]

    def test_unwatch_stops_updates(self, gateway, world, post):
        watcher, voter = _conn(world, "alice"), _conn(world, "owner")

        async def scenario():
            await gateway.dispatch(watcher, _frame("watch_post", postId=post))
            await gateway.dispatch(watcher, _frame("unwatch_post", postId=post))
            await gateway.dispatch(voter, _frame("upvote_post", postId=post))

        run_async(scenario())
        assert watcher.events("vote_update") == []

    def test_comment_notifies_author(self, gateway, world, post):
        author, watcher, commenter = _conn(world, "alice"), _conn(world, "bob"), _conn(world, "owner")

        async def scenario():
            for conn in (author, watcher, commenter):
                await gateway.on_connect(conn)
            await gateway.dispatch(watcher, _frame("watch_post", postId=post))
            await gateway.dispatch(commenter, _frame("new_comment", postId=post, content="Great post"))

        run_async(scenario())
        added = watcher.events("new_comment")[0]
        assert added["postId"] == post
        assert added["comment"]["content"] == "Great post"
        assert "post" not in added["comment"]
        notification = author.events("notification")[0]
        assert notification["type"] == "comment"
        assert notification["message"] == "owner commented on your post"
        assert notification["data"]["postTitle"] == "Live post"

    def test_own_comment_does_not_notify(self, gateway, world, post):
        author = _conn(world, "alice")

        async def scenario():
            await gateway.on_connect(author)
            await gateway.dispatch(author, _frame("new_comment", postId=post, content="Bump"))

        run_async(scenario())
        assert author.events("notification") == []

    def test_watch_deleted_post(self, db_engine, cache, gateway, world, post):
        post_service.delete_post(db_engine, cache, post, world["alice"])
        conn = _conn(world, "owner")
        run_async(gateway.dispatch(conn, _frame("watch_post", postId=post)))
        assert conn.events("error")[0]["message"] == "Post has been deleted"

    def test_comment_on_locked_post(self, db_engine, cache, gateway, world, post):
        post_service.lock_post(db_engine, cache, post, world["owner"])
        conn = _conn(world, "alice")
        run_async(gateway.dispatch(conn, _frame("new_comment", postId=post, content="Too late")))
        assert conn.events("error") == [{"message": "Post is locked", "source": "new_comment"}]
