"""
tests/test_ai_service.py — AI Client Degradation Tests
========================================================

The AI service is advisory: timeouts, non-2xx answers and garbage bodies
all turn into safe defaults; only an explicit violation blocks content.
"""

from __future__ import annotations

import json

import httpx
import pytest

from agora.errors import ValidationError
from agora.services.ai_service import UNAVAILABLE, AIService, ModerationResult, screen_content
from conftest import make_ai, moderation_ai, offline_ai, run_async


def _timeout(request: httpx.Request) -> httpx.Response:
    raise httpx.ReadTimeout("timed out", request=request)


class TestModerate:
    def test_parses_response_and_sends_api_key(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["path"] = request.url.path
            seen["key"] = request.headers.get("X-API-Key")
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={
                "toxicity_score": 0.2, "is_safe": True, "flagged": False,
                "sentiment": "neutral", "categories": ["tech"],
            })

        ai = AIService(
            base_url="http://ai.test", api_key="k-123", transport=httpx.MockTransport(handler)
        )
        result = run_async(ai.moderate("some text"))

        assert seen == {"path": "/moderate", "key": "k-123", "body": {"text": "some text"}}
        assert result == ModerationResult(
            toxicity_score=0.2, sentiment="neutral", categories=("tech",)
        )

    @pytest.mark.parametrize("body", [
        {"toxicity_score": 0.1, "flagged": False, "categories": 5},
        {"toxicity_score": 0.1, "categories": "spam"},
        {"toxicity_score": {"value": 0.9}},
    ])
    def test_malformed_fields_give_safe_default(self, body):
        ai = make_ai(lambda request: httpx.Response(200, json=body))
        result = run_async(ai.moderate("text"))
        assert result == ModerationResult.safe_default()

    def test_timeout_gives_safe_default(self):
        result = run_async(make_ai(_timeout).moderate("text"))
        assert result.available is False
        assert result.as_dict() == {
            "toxicity_score": 0.0, "is_safe": True, "flagged": False, "error": UNAVAILABLE,
        }

    def test_server_error_gives_safe_default(self):
        assert run_async(offline_ai().moderate("text")).available is False

    def test_non_object_body_gives_safe_default(self):
        ai = make_ai(lambda request: httpx.Response(200, json=[1, 2]))
        assert run_async(ai.moderate("text")).available is False

    def test_violation_rules(self):
        assert ModerationResult(toxicity_score=0.71).violates(0.7)
        assert not ModerationResult(toxicity_score=0.7).violates(0.7)
        assert ModerationResult(flagged=True).violates(0.7)
        assert not ModerationResult.safe_default().violates(0.0)


class TestFallbacks:
    def test_sentiment(self):
        result = run_async(offline_ai().analyze_sentiment("text"))
        assert result["sentiment"] == "neutral"
        assert result["confidence"] == 0.0

    def test_recommend_requires_list(self):
        ai = make_ai(lambda request: httpx.Response(200, json={"recommendations": "nope"}))
        result = run_async(ai.recommend(["python"], ["python"]))
        assert result == {
            "recommendations": [], "explanation": "Unable to generate recommendations",
        }

    def test_batch_moderate_sends_texts_as_query(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["texts"] = request.url.params.get_list("texts")
            return httpx.Response(200, json={"results": [], "total": 2, "successful": 2})

        result = run_async(make_ai(handler).batch_moderate(["a", "b"]))
        assert seen["texts"] == ["a", "b"]
        assert result["successful"] == 2

    def test_batch_moderate_fallback(self):
        result = run_async(make_ai(_timeout).batch_moderate(["a", "b"]))
        assert result["total"] == 2
        assert result["successful"] == 0
        assert [r["status"] for r in result["results"]] == ["failed", "failed"]

    def test_summarize_fallback_truncates(self):
        result = run_async(offline_ai().summarize("x" * 300, max_length=100))
        assert result["summary"] == "x" * 100 + "..."
        assert result["length"] == 100
        assert result["key_points"] == []


class TestScreenContent:
    def test_short_text_skips_service(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(200, json={"flagged": True})

        assert run_async(screen_content(make_ai(handler), "hi", min_length=10, threshold=0.7)) is None
        assert calls == []

    def test_unavailable_service_lets_content_through(self):
        text = "a perfectly normal sentence"
        assert run_async(screen_content(offline_ai(), text, min_length=10, threshold=0.7)) is None

    def test_toxic_content_raises(self):
        with pytest.raises(ValidationError, match="violates community guidelines"):
            run_async(screen_content(
                moderation_ai(toxicity_score=0.9), "a rather hostile sentence",
                min_length=10, threshold=0.7,
            ))

    def test_clean_content_returns_analysis(self):
        result = run_async(screen_content(
            moderation_ai(), "a perfectly normal sentence", min_length=10, threshold=0.7
        ))
        assert result.sentiment == "positive"
