"""
agora.realtime.presence — Multi-Connection Presence Registry
=============================================================

Tracks which users hold at least one live connection.  A user is online
iff their connection set is non-empty.  The registry only reports
transitions; persisting ``is_online`` and broadcasting ``user_presence`` is
the job of the ``on_change`` callback the gateway installs.

Mutations and their transition callbacks are serialized per user with an
``asyncio.Lock``, so two sockets of the same user connecting/disconnecting
at once can neither lose an update nor fire a transition twice.  Locks are
reference-counted and dropped when no task holds or waits on them.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from contextlib import asynccontextmanager

logger = logging.getLogger(__name__)

PresenceCallback = Callable[[int, bool], Awaitable[None]]
HeartbeatCallback = Callable[[int], Awaitable[None]]


class PresenceRegistry:
    """In-memory ``user_id → {connection_id}`` map with transition hooks.

    Usage:
        registry = PresenceRegistry(on_change=announce)
        await registry.connect(7, "a1")     # True  (offline → online)
        await registry.connect(7, "b2")     # False (still online)
        await registry.disconnect(7, "a1")  # False
        await registry.disconnect(7, "b2")  # True  (online → offline)
    """

    def __init__(
        self,
        on_change: PresenceCallback | None = None,
        on_heartbeat: HeartbeatCallback | None = None,
    ) -> None:
        self._connections: dict[int, set[str]] = {}
        self._locks: dict[int, asyncio.Lock] = {}
        self._lock_refs: dict[int, int] = {}
        self._on_change = on_change
        self._on_heartbeat = on_heartbeat

    @asynccontextmanager
    async def _user_lock(self, user_id: int):
        lock = self._locks.get(user_id)
        if lock is None:
            lock = self._locks[user_id] = asyncio.Lock()
        self._lock_refs[user_id] = self._lock_refs.get(user_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_refs[user_id] -= 1
            if self._lock_refs[user_id] == 0:
                del self._lock_refs[user_id]
                del self._locks[user_id]

    async def _notify(self, user_id: int, online: bool) -> None:
        if self._on_change is None:
            return
        try:
            await self._on_change(user_id, online)
        except Exception:
            logger.exception(
                "Presence transition handler failed for user %d (online=%s)", user_id, online
            )

    # -------------------------------------------------------------------
    # Transitions
    # -------------------------------------------------------------------
    async def connect(self, user_id: int, connection_id: str) -> bool:
        """Register a connection.  Returns ``True`` on the offline→online edge."""
        async with self._user_lock(user_id):
            conns = self._connections.setdefault(user_id, set())
            if connection_id in conns:
                return False
            conns.add(connection_id)
            came_online = len(conns) == 1
            if came_online:
                logger.info("User %d is online", user_id)
                await self._notify(user_id, True)
            return came_online

    async def disconnect(self, user_id: int, connection_id: str) -> bool:
        """Drop a connection.  Returns ``True`` on the online→offline edge."""
        async with self._user_lock(user_id):
            conns = self._connections.get(user_id)
            if not conns or connection_id not in conns:
                return False
            conns.discard(connection_id)
            if conns:
                return False
            del self._connections[user_id]
            logger.info("User %d is offline", user_id)
            await self._notify(user_id, False)
            return True

    async def heartbeat(self, user_id: int) -> None:
        """Refresh last-seen; never changes online state, never raises."""
        if self._on_heartbeat is None:
            return
        try:
            await self._on_heartbeat(user_id)
        except Exception:
            logger.exception("Heartbeat update failed for user %d", user_id)

    # -------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------
    def is_online(self, user_id: int) -> bool:
        return bool(self._connections.get(user_id))

    def connections(self, user_id: int) -> frozenset[str]:
        return frozenset(self._connections.get(user_id, ()))

    def online_users(self) -> list[int]:
        return [uid for uid, conns in self._connections.items() if conns]

    def __len__(self) -> int:
        return len(self._connections)
