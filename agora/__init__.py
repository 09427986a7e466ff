"""
Agora — Communities, Posts and Real-Time Chat
==============================================
A community platform: user accounts, communities, ranked posts with voting,
threaded comments, and live chat (community channels and direct messages)
with presence tracking over WebSockets.

Package layout::

    agora/
    ├── config.py          # YAML → typed Python config
    ├── constants.py       # Shared enums-as-strings, pagination, slugs
    ├── errors.py          # Domain error taxonomy (kind + HTTP status)
    ├── database/
    │   ├── engine.py      # SQLAlchemy engine + async helper
    │   └── models.py      # All ORM models + score recompute hooks
    ├── engine/
    │   ├── ranking.py     # Hot score + vote toggle rules
    │   └── cache.py       # Read-through TTL cache, structured invalidation
    ├── services/
    │   ├── auth_service.py       # Register / login / JWT / refresh / reset
    │   ├── user_service.py       # Profiles + persisted presence mirror
    │   ├── community_service.py  # Membership, moderators, listings
    │   ├── post_service.py       # Posts, votes, pins, listings
    │   ├── comment_service.py    # Threaded comments
    │   ├── chat_service.py       # Messages, receipts, reactions
    │   ├── ai_service.py         # Moderation proxy with safe fallback
    │   └── email_service.py      # Outbound mail collaborator
    ├── realtime/
    │   ├── presence.py    # Multi-connection presence registry
    │   ├── rooms.py       # Room hub + fan-out
    │   ├── events.py      # Typed client/server event envelopes
    │   └── gateway.py     # Client event dispatch
    └── api/
        ├── main.py        # FastAPI app
        ├── deps.py        # Dependency injection + bearer auth
        ├── responses.py   # Uniform response envelope
        └── routes/        # REST + WebSocket endpoints
"""

__version__ = "0.1.0"
