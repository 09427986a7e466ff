"""
tests/conftest.py — Shared Test Fixtures
=========================================
"""

from __future__ import annotations

import asyncio
import os

# ---------------------------------------------------------------------------
# Ensure a valid JWT_SECRET is always set for test runs.
# This must happen before any import of agora.api.deps which validates
# the secret at module-load time.
# ---------------------------------------------------------------------------
_TEST_JWT_SECRET = "test-secret-for-pytest-only-" + "x" * 40  # > 32 chars
os.environ.setdefault("JWT_SECRET", _TEST_JWT_SECRET)

import httpx  # noqa: E402
import pytest  # noqa: E402
from sqlalchemy import Engine, create_engine  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from agora.config import AgoraConfig  # noqa: E402
from agora.database.engine import get_session, init_db  # noqa: E402
from agora.database.models import CommunityMember, MemberRole, Post, User  # noqa: E402
from agora.engine.cache import TTLCache  # noqa: E402
from agora.services.ai_service import AIService  # noqa: E402
from agora.services.auth_service import TokenSigner, hash_password  # noqa: E402
from agora.services.email_service import Mailer  # noqa: E402

TEST_PASSWORD = "correct-horse-battery"


def run_async(coro):
    """Run a coroutine to completion on a fresh event loop."""
    return asyncio.run(coro)


def make_config(**overrides) -> AgoraConfig:
    values = {"app_name": "Agora Test", "ai_service_url": "http://ai.test"}
    values.update(overrides)
    return AgoraConfig(**values)


def make_ai(handler) -> AIService:
    """AI client whose HTTP calls are answered by *handler*."""
    return AIService(base_url="http://ai.test", transport=httpx.MockTransport(handler))


def offline_ai() -> AIService:
    """AI client for a service that answers every call with 503."""
    return make_ai(lambda request: httpx.Response(503, json={"detail": "down"}))


def moderation_ai(**result) -> AIService:
    """AI client whose /moderate answer is *result*."""
    body = {"toxicity_score": 0.1, "is_safe": True, "flagged": False, "sentiment": "positive"}
    body.update(result)
    return make_ai(lambda request: httpx.Response(200, json=body))


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------
@pytest.fixture
def db_engine() -> Engine:
    """Create an in-memory SQLite engine with all Agora tables.

    Uses StaticPool so all threads share the same in-memory database
    (required by ``asyncio.to_thread`` used in :func:`run_db`).
    """
    engine = create_engine(
        "sqlite://",
        echo=False,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    init_db(engine)
    return engine


@pytest.fixture
def cache() -> TTLCache:
    return TTLCache()


@pytest.fixture
def cfg() -> AgoraConfig:
    return make_config()


@pytest.fixture
def signer() -> TokenSigner:
    return TokenSigner(secret=_TEST_JWT_SECRET)


@pytest.fixture
def mailer() -> Mailer:
    return Mailer()


# ---------------------------------------------------------------------------
# Factories
# ---------------------------------------------------------------------------
def make_user(engine: Engine, username: str, **fields) -> int:
    with get_session(engine) as session:
        user = User(
            username=username,
            email=fields.pop("email", f"{username}@example.com"),
            password_hash=hash_password(fields.pop("password", TEST_PASSWORD)),
            **fields,
        )
        session.add(user)
        session.flush()
        return user.id


def make_community(engine: Engine, cache: TTLCache, owner_id: int, name: str = "Python Devs", **fields) -> int:
    from agora.services.community_service import create_community

    fields.setdefault("description", f"All about {name}")
    return create_community(engine, cache, owner_id, name=name, **fields)["id"]


def add_member(
    engine: Engine, community_id: int, user_id: int, role: str = MemberRole.MEMBER
) -> None:
    from agora.database.models import Community

    with get_session(engine) as session:
        session.add(CommunityMember(community_id=community_id, user_id=user_id, role=role))
        community = session.get(Community, community_id)
        community.member_count += 1


def make_post(engine: Engine, community_id: int, author_id: int, title: str = "Hello", **fields) -> int:
    with get_session(engine) as session:
        post = Post(
            community_id=community_id,
            author_id=author_id,
            title=title,
            content=fields.pop("content", f"{title} body"),
            **fields,
        )
        session.add(post)
        session.flush()
        return post.id


# ---------------------------------------------------------------------------
# API client
# ---------------------------------------------------------------------------
@pytest.fixture
def api(db_engine, cache, cfg, signer, mailer):
    """TestClient wired to the in-memory database and offline AI service.

    Yields ``(client, gateway)``.
    """
    from fastapi.testclient import TestClient

    from agora.api import deps
    from agora.api.main import app
    from agora.realtime.gateway import RealtimeGateway

    ai = offline_ai()
    gateway = RealtimeGateway(db_engine, cache, ai, cfg)
    app.dependency_overrides.update({
        deps.get_engine: lambda: db_engine,
        deps.get_cache: lambda: cache,
        deps.get_config: lambda: cfg,
        deps.get_ai: lambda: ai,
        deps.get_mailer: lambda: mailer,
        deps.get_token_signer: lambda: signer,
        deps.get_gateway: lambda: gateway,
    })
    try:
        yield TestClient(app, raise_server_exceptions=False), gateway
    finally:
        app.dependency_overrides.clear()


def auth_header(signer: TokenSigner, engine: Engine, user_id: int) -> dict:
    with get_session(engine) as session:
        token = signer.sign_access(session.get(User, user_id))
    return {"Authorization": f"Bearer {token}"}


class FakeConnection:
    """Records every event the hub delivers to it."""

    _counter = 0

    def __init__(self, user_id: int, username: str | None = None, *, fail: bool = False) -> None:
        FakeConnection._counter += 1
        self.id = f"conn-{FakeConnection._counter}"
        self.user_id = user_id
        self.username = username or f"user{user_id}"
        self.fail = fail
        self.sent: list[tuple[str, dict]] = []

    async def send(self, event: str, data: dict) -> None:
        if self.fail:
            raise ConnectionError("socket closed")
        self.sent.append((event, data))

    def events(self, name: str) -> list[dict]:
        return [data for event, data in self.sent if event == name]
