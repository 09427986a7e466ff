"""
agora.engine.ranking — Hot Score & Vote Toggle Rules
=====================================================

Pure functions, no DB I/O.  The post model calls :func:`hot_score` from its
before-insert / before-update hooks so the stored ``score`` is recomputed on
every persist.

Score formula (Reddit-style hot ranking, simplified)::

    vote_count     = upvotes - downvotes
    order          = log10(max(|vote_count|, 1))
    sign           = +1 / 0 / -1 per sign of vote_count
    age_in_hours   = (now - created_at) / 3600 s
    comment_weight = comment_count * 0.5
    score = round((order + sign * age_in_hours / 45000 + comment_weight) * 10000) / 10000
"""

from __future__ import annotations

import enum
import math
from datetime import UTC, datetime

__all__ = ["VoteDirection", "hot_score", "toggle_vote"]

AGE_DIVISOR_HOURS = 45_000
COMMENT_WEIGHT = 0.5
SCORE_PRECISION = 10_000


class VoteDirection(enum.IntEnum):
    UP = 1
    DOWN = -1

    @property
    def label(self) -> str:
        return "up" if self is VoteDirection.UP else "down"


def _aware(value: datetime) -> datetime:
    # SQLite hands back naive datetimes; everything we store is UTC.
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


def hot_score(
    upvotes: int,
    downvotes: int,
    comment_count: int,
    created_at: datetime,
    now: datetime | None = None,
) -> float:
    """Return the ranking score for a post.

    Deterministic for a fixed *now*; callers that need an idempotent
    recompute pass the same instant twice.
    """
    now = _aware(now or datetime.now(UTC))
    vote_count = upvotes - downvotes
    order = math.log10(max(abs(vote_count), 1))
    sign = (vote_count > 0) - (vote_count < 0)
    age_in_hours = (now - _aware(created_at)).total_seconds() / 3600
    comment_weight = comment_count * COMMENT_WEIGHT

    raw = order + sign * age_in_hours / AGE_DIVISOR_HOURS + comment_weight
    return round(raw * SCORE_PRECISION) / SCORE_PRECISION


def toggle_vote(
    current: VoteDirection | None, cast: VoteDirection
) -> VoteDirection | None:
    """Resolve the voter's state after casting *cast*.

    * no vote          → *cast*
    * same vote again  → ``None`` (toggle off)
    * opposite vote    → *cast* (the old vote is removed first)
    """
    if current is cast:
        return None
    return cast
