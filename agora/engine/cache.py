"""
agora.engine.cache — In-Memory Read-Through Cache with Structured Invalidation
================================================================================

Services consult the cache before the database and write results back with
a TTL.  Keys are tuples whose leading elements name the entity scope::

    ("post", 42, "detail", 7)
    ("community", 3, "posts", '{"type":"text"}', 1, 20, "-score")
    ("community", 3, "detail", False)
    ("community_slug", "python-devs", "detail")
    ("communities", "list", "{}", 1, 20, "-memberCount")
    ("user", 7, "communities")

Invalidation removes every key whose leading elements equal a prefix, so
``invalidate("community", 3, "posts")`` drops every cached listing page of
community 3 regardless of filters/sort/page.

Values are deep-copied on the way in and out; callers may mutate what they
get back.

Read-through callers take a generation token before loading from the
database and hand it back to ``set``.  If any prefix of the key was
invalidated in between, the load may predate the mutation and the write is
dropped::

    token = cache.generation()
    data = load_from_db()
    cache.set(key, data, ttl, since=token)
"""

from __future__ import annotations

import copy
import logging
import threading
import time
from collections.abc import Callable, Hashable, Mapping
from typing import Any

logger = logging.getLogger(__name__)

CacheKey = tuple[Hashable, ...]

# Seconds; listings are shorter-lived than single-entity reads
DEFAULT_TTLS: dict[str, float] = {
    "post": 60,
    "post_list": 30,
    "community": 300,
    "community_list": 60,
    "user_communities": 300,
    "user_posts": 60,
}

# Cleared prefixes remembered for stale-write detection before collapsing
MAX_TRACKED_CLEARS = 4096


class TTLCache:
    """Thread-safe in-memory cache keyed by tuples.

    Usage:
        cache = TTLCache()
        cache.set(("post", 1, "detail", "anonymous"), payload, ttl=60)
        cache.get(("post", 1, "detail", "anonymous"))   # → payload copy
        cache.invalidate("post", 1)                     # drops every view
    """

    def __init__(
        self,
        clock: Callable[[], float] = time.monotonic,
        ttls: Mapping[str, float] | None = None,
    ) -> None:
        self._clock = clock
        self._ttls = {**DEFAULT_TTLS, **(ttls or {})}
        self._lock = threading.Lock()
        # key → (expires_at, value)
        self._entries: dict[CacheKey, tuple[float, Any]] = {}
        self._generation = 0
        # prefix → generation at which it was last cleared
        self._cleared: dict[CacheKey, int] = {}
        # tokens older than this are treated as stale
        self._floor = 0

    @classmethod
    def from_config(cls, cfg) -> TTLCache:
        return cls(ttls={
            "post": cfg.post_ttl,
            "post_list": cfg.post_list_ttl,
            "community": cfg.community_ttl,
            "community_list": cfg.community_list_ttl,
            "user_communities": cfg.user_communities_ttl,
            "user_posts": cfg.user_posts_ttl,
        })

    def ttl(self, name: str) -> float:
        """Configured TTL for a named view kind."""
        return self._ttls[name]

    # -------------------------------------------------------------------
    # Reads / writes
    # -------------------------------------------------------------------
    def get(self, key: CacheKey) -> Any | None:
        """Return a copy of the cached value, or ``None`` on miss/expiry."""
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return None
            expires_at, value = entry
            if expires_at <= now:
                del self._entries[key]
                return None
        return copy.deepcopy(value)

    def generation(self) -> int:
        """Token to pass as ``since`` when writing back a database load."""
        with self._lock:
            return self._generation

    def set(self, key: CacheKey, value: Any, ttl: float, *, since: int | None = None) -> bool:
        """Store *value* under *key*; return whether it was stored.

        With *since*, the write is skipped when any prefix of *key* was
        cleared after that token was taken.
        """
        if ttl <= 0:
            return False
        stored = copy.deepcopy(value)
        with self._lock:
            if since is not None and self._stale(key, since):
                logger.debug("Cache skipped stale write for %r", key)
                return False
            self._entries[key] = (self._clock() + ttl, stored)
        return True

    def _stale(self, key: CacheKey, since: int) -> bool:
        if since < self._floor:
            return True
        return any(
            self._cleared.get(key[:size], -1) > since for size in range(len(key) + 1)
        )

    def _mark_cleared(self, prefix: CacheKey) -> None:
        self._generation += 1
        if len(self._cleared) >= MAX_TRACKED_CLEARS:
            self._cleared.clear()
            self._floor = self._generation
        self._cleared[prefix] = self._generation

    def delete(self, key: CacheKey) -> None:
        with self._lock:
            self._entries.pop(key, None)

    # -------------------------------------------------------------------
    # Invalidation
    # -------------------------------------------------------------------
    def clear_pattern(self, prefix: CacheKey) -> int:
        """Drop every key starting with *prefix*; return how many went."""
        size = len(prefix)
        with self._lock:
            doomed = [k for k in self._entries if k[:size] == prefix]
            for key in doomed:
                del self._entries[key]
            self._mark_cleared(prefix)
        if doomed:
            logger.debug("Cache cleared %d key(s) under %r", len(doomed), prefix)
        return len(doomed)

    def invalidate(
        self,
        entity_type: str,
        entity_id: Hashable | None = None,
        view: str | None = None,
    ) -> int:
        """Drop every cached view of an entity scope.

        ``invalidate("post", 5)`` drops all post-5 views;
        ``invalidate("community", 3, "posts")`` drops only its listings;
        ``invalidate("communities")`` drops every community listing.
        """
        prefix: tuple[Hashable, ...] = (entity_type,)
        if entity_id is not None:
            prefix += (entity_id,)
            if view is not None:
                prefix += (view,)
        return self.clear_pattern(prefix)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._mark_cleared(())

    def __len__(self) -> int:
        now = self._clock()
        with self._lock:
            return sum(1 for expires_at, _ in self._entries.values() if expires_at > now)

    def __contains__(self, key: object) -> bool:
        now = self._clock()
        with self._lock:
            entry = self._entries.get(key)  # type: ignore[arg-type]
            return entry is not None and entry[0] > now
