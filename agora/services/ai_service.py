"""
agora.services.ai_service — AI Moderation / Recommendation Client
===================================================================

Thin async client for the external AI service.  Every call degrades to a
safe default when the service is slow, unreachable, returns a non-2xx status
or an unexpected body: moderation is advisory, never a hard dependency.

Endpoints (relative to ``ai_service_url``):

* ``POST /moderate``           ``{text}``
* ``POST /analyze-sentiment``  ``{text}``
* ``POST /recommend``          ``{user_interests, community_topics}``
* ``POST /batch-moderate``     ``?texts=…&texts=…``
* ``POST /summarize``          ``{text, max_length}``
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

import httpx

from agora.errors import ValidationError

logger = logging.getLogger(__name__)

UNAVAILABLE = "Moderation service unavailable"


@dataclass(frozen=True, slots=True)
class ModerationResult:
    toxicity_score: float = 0.0
    is_safe: bool = True
    flagged: bool = False
    sentiment: str | None = None
    categories: tuple[str, ...] = ()
    available: bool = True
    error: str | None = None

    @classmethod
    def safe_default(cls, error: str = UNAVAILABLE) -> ModerationResult:
        return cls(available=False, error=error)

    @classmethod
    def from_payload(cls, data: dict[str, Any]) -> ModerationResult:
        """Build a result from a /moderate body; raises ValueError on malformed fields."""
        categories = data.get("categories") or []
        if not isinstance(categories, list) or not all(isinstance(c, str) for c in categories):
            raise ValueError(f"Malformed categories in moderation response: {categories!r}")
        return cls(
            toxicity_score=float(data.get("toxicity_score", 0.0) or 0.0),
            is_safe=bool(data.get("is_safe", True)),
            flagged=bool(data.get("flagged", False)),
            sentiment=data.get("sentiment"),
            categories=tuple(categories),
        )

    def violates(self, threshold: float) -> bool:
        return self.available and (self.flagged or self.toxicity_score > threshold)

    def as_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "toxicity_score": self.toxicity_score,
            "is_safe": self.is_safe,
            "flagged": self.flagged,
        }
        if self.sentiment is not None:
            data["sentiment"] = self.sentiment
        if self.categories:
            data["categories"] = list(self.categories)
        if self.error:
            data["error"] = self.error
        return data


@dataclass
class AIService:
    """Client for the AI moderation/recommendation service.

    *transport* exists for tests (``httpx.MockTransport``); production uses
    an ``AsyncHTTPTransport`` with *retries* connection retries.
    """

    base_url: str
    api_key: str | None = None
    timeout: float = 10.0
    retries: int = 1
    transport: httpx.AsyncBaseTransport | None = field(default=None, repr=False)

    # -------------------------------------------------------------------
    # Transport
    # -------------------------------------------------------------------
    def _client(self) -> httpx.AsyncClient:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["X-API-Key"] = self.api_key
        transport = self.transport or httpx.AsyncHTTPTransport(retries=self.retries)
        return httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self.timeout,
            headers=headers,
            transport=transport,
        )

    async def _post(
        self, path: str, payload: dict | None = None, params: list | None = None
    ) -> dict[str, Any]:
        async with self._client() as client:
            resp = await client.post(path, json=payload, params=params)
        resp.raise_for_status()
        data = resp.json()
        if not isinstance(data, dict):
            raise ValueError(f"Unexpected response body from {path}")
        return data

    # -------------------------------------------------------------------
    # Operations
    # -------------------------------------------------------------------
    async def moderate(self, text: str) -> ModerationResult:
        try:
            data = await self._post("/moderate", {"text": text})
            return ModerationResult.from_payload(data)
        except (httpx.HTTPError, TypeError, ValueError) as exc:
            logger.error("AI moderation failed: %s", exc)
            return ModerationResult.safe_default()

    async def analyze_sentiment(self, text: str) -> dict[str, Any]:
        try:
            return await self._post("/analyze-sentiment", {"text": text})
        except (httpx.HTTPError, ValueError) as exc:
            logger.error("AI sentiment analysis failed: %s", exc)
            return {
                "sentiment": "neutral",
                "confidence": 0.0,
                "error": "Sentiment analysis service unavailable",
            }

    async def recommend(
        self, interests: list[str], community_topics: list[str]
    ) -> dict[str, Any]:
        try:
            data = await self._post(
                "/recommend",
                {"user_interests": interests, "community_topics": community_topics},
            )
            if not isinstance(data.get("recommendations"), list):
                raise ValueError("recommendations missing from response")
            return data
        except (httpx.HTTPError, ValueError) as exc:
            logger.error("AI recommendations failed: %s", exc)
            return {
                "recommendations": [],
                "explanation": "Unable to generate recommendations",
            }

    async def batch_moderate(self, texts: list[str]) -> dict[str, Any]:
        try:
            return await self._post(
                "/batch-moderate", params=[("texts", t) for t in texts]
            )
        except (httpx.HTTPError, ValueError) as exc:
            logger.error("AI batch moderation failed: %s", exc)
            return {
                "results": [
                    {"text": t, "error": UNAVAILABLE, "status": "failed"} for t in texts
                ],
                "total": len(texts),
                "successful": 0,
            }

    async def summarize(self, text: str, max_length: int = 200) -> dict[str, Any]:
        try:
            return await self._post("/summarize", {"text": text, "max_length": max_length})
        except (httpx.HTTPError, ValueError) as exc:
            logger.error("AI summarization failed: %s", exc)
            return {
                "summary": text[:max_length] + "...",
                "key_points": [],
                "length": min(len(text), max_length),
                "error": "Summarization service unavailable",
            }


# ---------------------------------------------------------------------------
# Content gate shared by posts, comments and chat
# ---------------------------------------------------------------------------
async def screen_content(
    ai: AIService,
    text: str,
    *,
    min_length: int,
    threshold: float,
) -> ModerationResult | None:
    """Moderate *text* before it is persisted.

    Returns ``None`` when the text is too short to analyse or the service
    was unavailable (the content is stored without analysis).  Raises
    :class:`ValidationError` when the service flags the content.
    """
    if len(text) <= min_length:
        return None
    result = await ai.moderate(text)
    if not result.available:
        return None
    if result.violates(threshold):
        logger.info(
            "Content rejected by moderation (toxicity=%.2f flagged=%s)",
            result.toxicity_score, result.flagged,
        )
        raise ValidationError("Content violates community guidelines")
    return result
