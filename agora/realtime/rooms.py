"""
agora.realtime.rooms — Typed Rooms & Fan-Out
=============================================

A room is a named broadcast group of live connections:

============  ====================  ===========================================
kind          key                   members
============  ====================  ===========================================
community     ``community:<id>``    connections viewing the community's chat
presence      ``presence:<id>``     community members' connections (presence)
user          ``user:<id>``         every connection of one user (inbox)
post          ``post:<id>``         connections watching one post live
dm            ``dm:<lo>:<hi>``      both participants of a direct conversation
============  ====================  ===========================================

:meth:`RoomHub.emit` takes several rooms at once and delivers each event at
most once per connection.  Sends are best-effort: a failing connection is
logged and skipped.
"""

from __future__ import annotations

import asyncio
import enum
import logging
from collections.abc import Iterable
from typing import TYPE_CHECKING, NamedTuple, Protocol

if TYPE_CHECKING:
    from agora.realtime.events import ServerEvent

logger = logging.getLogger(__name__)


class RoomKind(enum.StrEnum):
    COMMUNITY = "community"
    PRESENCE = "presence"
    USER = "user"
    POST = "post"
    DM = "dm"


class Room(NamedTuple):
    kind: RoomKind
    key: str

    def __str__(self) -> str:
        return f"{self.kind}:{self.key}"


def community_room(community_id: int) -> Room:
    return Room(RoomKind.COMMUNITY, str(community_id))


def presence_room(community_id: int) -> Room:
    return Room(RoomKind.PRESENCE, str(community_id))


def user_room(user_id: int) -> Room:
    return Room(RoomKind.USER, str(user_id))


def post_room(post_id: int) -> Room:
    return Room(RoomKind.POST, str(post_id))


def direct_room(user_a: int, user_b: int) -> Room:
    lo, hi = sorted((int(user_a), int(user_b)))
    return Room(RoomKind.DM, f"{lo}:{hi}")


class Connection(Protocol):
    id: str
    user_id: int
    username: str

    async def send(self, event: str, data: dict) -> None: ...


class RoomHub:
    """Room membership plus scoped broadcast."""

    def __init__(self) -> None:
        self._members: dict[Room, dict[str, Connection]] = {}
        self._rooms_of: dict[str, set[Room]] = {}

    # -------------------------------------------------------------------
    # Membership
    # -------------------------------------------------------------------
    def join(self, conn: Connection, room: Room) -> None:
        self._members.setdefault(room, {})[conn.id] = conn
        self._rooms_of.setdefault(conn.id, set()).add(room)

    def leave(self, conn: Connection, room: Room) -> None:
        members = self._members.get(room)
        if members is not None:
            members.pop(conn.id, None)
            if not members:
                del self._members[room]
        rooms = self._rooms_of.get(conn.id)
        if rooms is not None:
            rooms.discard(room)
            if not rooms:
                del self._rooms_of[conn.id]

    def leave_all(self, conn: Connection) -> set[Room]:
        rooms = set(self._rooms_of.get(conn.id, ()))
        for room in rooms:
            self.leave(conn, room)
        return rooms

    def members(self, room: Room) -> list[Connection]:
        return list(self._members.get(room, {}).values())

    def rooms_of(self, conn: Connection) -> set[Room]:
        return set(self._rooms_of.get(conn.id, ()))

    def is_in(self, conn: Connection, room: Room) -> bool:
        return conn.id in self._members.get(room, {})

    # -------------------------------------------------------------------
    # Delivery
    # -------------------------------------------------------------------
    def _targets(
        self,
        rooms: Iterable[Room],
        exclude: Connection | None,
        exclude_user: int | None,
    ) -> list[Connection]:
        seen: dict[str, Connection] = {}
        for room in rooms:
            for conn_id, conn in self._members.get(room, {}).items():
                if exclude is not None and conn_id == exclude.id:
                    continue
                if exclude_user is not None and conn.user_id == exclude_user:
                    continue
                seen.setdefault(conn_id, conn)
        return list(seen.values())

    async def send(self, conn: Connection, event: ServerEvent) -> bool:
        try:
            await conn.send(event.event, event.payload())
            return True
        except Exception:
            logger.exception("Failed to deliver %s to connection %s", event.event, conn.id)
            return False

    async def emit(
        self,
        rooms: Room | Iterable[Room],
        event: ServerEvent,
        *,
        exclude: Connection | None = None,
        exclude_user: int | None = None,
    ) -> int:
        """Deliver *event* to every connection in *rooms*, once each.

        Returns the number of connections that accepted the event.
        """
        if isinstance(rooms, Room):
            rooms = (rooms,)
        targets = self._targets(rooms, exclude, exclude_user)
        if not targets:
            return 0
        results = await asyncio.gather(*(self.send(conn, event) for conn in targets))
        return sum(results)
