"""
agora.constants — Shared Constants & Helpers
=============================================

Single source of truth for pagination defaults, content limits and the slug
rule.  Import from here instead of duplicating in services and routes.
"""

from __future__ import annotations

import re

# ---------------------------------------------------------------------------
# Pagination
# ---------------------------------------------------------------------------
DEFAULT_PAGE = 1
DEFAULT_LIMIT = 20
MAX_LIMIT = 100
DEFAULT_MESSAGE_LIMIT = 50


def page_offset(page: int, limit: int) -> int:
    """Row offset for a 1-based *page*."""
    return (max(page, 1) - 1) * limit


def page_count(total: int, limit: int) -> int:
    return -(-total // limit) if limit > 0 else 0


def parse_sort(sort: str | None, default: str) -> list[tuple[str, bool]]:
    """Split a ``"-createdAt,title"`` sort string into ``(field, descending)``.

    >>> parse_sort("-score,title", "-createdAt")
    [('score', True), ('title', False)]
    """
    parts = [p.strip() for p in (sort or default).split(",") if p.strip()]
    return [(p.lstrip("-+"), p.startswith("-")) for p in parts]


# ---------------------------------------------------------------------------
# Content limits
# ---------------------------------------------------------------------------
MAX_POST_TITLE = 300
MAX_POST_CONTENT = 10_000
MAX_COMMENT_CONTENT = 2_000
MAX_MESSAGE_CONTENT = 2_000
MAX_COMMENT_DEPTH = 10
MAX_PINNED_POSTS = 5
MAX_TAGS = 10


# ---------------------------------------------------------------------------
# Community slugs
# ---------------------------------------------------------------------------
_NON_WORD = re.compile(r"[^\w\s]")
_WHITESPACE = re.compile(r"\s+")


def slugify(name: str) -> str:
    """Derive a community slug: lower-case, punctuation stripped, spaces → ``-``.

    >>> slugify("Python Devs!")
    'python-devs'
    """
    return _WHITESPACE.sub("-", _NON_WORD.sub("", name.lower()).strip())
