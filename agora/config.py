"""
agora.config — YAML Configuration Loader
=========================================

Reads ``config.yaml`` for infrastructure and tuning settings (AI service
location, moderation thresholds, token lifetimes, lockout policy, cache
TTLs).  Secrets (``DATABASE_URL``, ``JWT_SECRET``, ``AI_SERVICE_API_KEY``)
stay in the environment / ``.env``.

Usage::

    from agora.config import load_config

    cfg = load_config()              # reads ./config.yaml by default
    print(cfg.app_name)              # "Agora"
    print(cfg.toxicity_threshold)    # 0.7
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

import yaml


# ---------------------------------------------------------------------------
# Typed settings object
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class AgoraConfig:
    """Immutable configuration loaded from ``config.yaml``."""

    # Identity
    app_name: str

    # AI moderation / recommendation service
    ai_service_url: str
    ai_timeout_seconds: float = 10.0
    ai_retries: int = 1
    moderation_min_length: int = 10  # Content this short is never sent
    toxicity_threshold: float = 0.7

    # Tokens
    access_token_minutes: int = 15
    refresh_token_days: int = 7
    reset_token_minutes: int = 10

    # Login lockout
    max_login_attempts: int = 5
    lockout_minutes: int = 15

    # Cache TTLs (seconds); listings expire sooner than single entities
    post_ttl: int = 60
    post_list_ttl: int = 30
    community_ttl: int = 300
    community_list_ttl: int = 60
    user_communities_ttl: int = 300
    user_posts_ttl: int = 60

    # Dev convenience: run ``create_all`` on API startup
    auto_create_schema: bool = False
    log_level: str = "INFO"


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------
def load_config(path: str | Path = "config.yaml") -> AgoraConfig:
    """Read *path* and return an :class:`AgoraConfig` instance.

    ``app_name`` and ``ai_service_url`` are required; every other key falls
    back to the dataclass default.

    Raises
    ------
    FileNotFoundError
        If the YAML file doesn't exist.
    KeyError
        If a required key is missing from the YAML file.
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(
            f"Configuration file not found: {config_path.resolve()}\n"
            "Hint: copy config.yaml.example → config.yaml and edit it."
        )

    with open(config_path, encoding="utf-8") as fh:
        raw: dict = yaml.safe_load(fh) or {}

    defaults = AgoraConfig(app_name="", ai_service_url="")
    cache_raw: dict = raw.get("cache_ttl") or {}

    return AgoraConfig(
        app_name=raw["app_name"],
        ai_service_url=str(raw["ai_service_url"]).rstrip("/"),
        ai_timeout_seconds=float(raw.get("ai_timeout_seconds", defaults.ai_timeout_seconds)),
        ai_retries=int(raw.get("ai_retries", defaults.ai_retries)),
        moderation_min_length=int(
            raw.get("moderation_min_length", defaults.moderation_min_length)
        ),
        toxicity_threshold=float(raw.get("toxicity_threshold", defaults.toxicity_threshold)),
        access_token_minutes=int(
            raw.get("access_token_minutes", defaults.access_token_minutes)
        ),
        refresh_token_days=int(raw.get("refresh_token_days", defaults.refresh_token_days)),
        reset_token_minutes=int(raw.get("reset_token_minutes", defaults.reset_token_minutes)),
        max_login_attempts=int(raw.get("max_login_attempts", defaults.max_login_attempts)),
        lockout_minutes=int(raw.get("lockout_minutes", defaults.lockout_minutes)),
        post_ttl=int(cache_raw.get("post", defaults.post_ttl)),
        post_list_ttl=int(cache_raw.get("post_list", defaults.post_list_ttl)),
        community_ttl=int(cache_raw.get("community", defaults.community_ttl)),
        community_list_ttl=int(cache_raw.get("community_list", defaults.community_list_ttl)),
        user_communities_ttl=int(
            cache_raw.get("user_communities", defaults.user_communities_ttl)
        ),
        user_posts_ttl=int(cache_raw.get("user_posts", defaults.user_posts_ttl)),
        auto_create_schema=bool(raw.get("auto_create_schema", False)),
        log_level=str(raw.get("log_level", defaults.log_level)).upper(),
    )
