"""
agora.api.routes.ai — Authenticated proxy to the AI service
=============================================================

Every endpoint answers even when the AI service is down: the client methods
fall back to their safe defaults.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from agora.api.deps import get_ai, get_current_user
from agora.api.responses import ok
from agora.services.ai_service import AIService

router = APIRouter(prefix="/ai", tags=["ai"])


class TextBody(BaseModel):
    text: str = Field(min_length=1, max_length=10_000)


class BatchBody(BaseModel):
    texts: list[str] = Field(min_length=1, max_length=50)


class RecommendBody(BaseModel):
    interests: list[str] = Field(default_factory=list, max_length=20)
    community_topics: list[str] = Field(default_factory=list, max_length=50)


class SummarizeBody(TextBody):
    max_length: int = Field(default=200, ge=20, le=1000)


@router.post("/moderate")
async def moderate(
    body: TextBody,
    user: dict = Depends(get_current_user),
    ai: AIService = Depends(get_ai),
):
    result = await ai.moderate(body.text)
    return ok(result.as_dict())


@router.post("/analyze-sentiment")
async def analyze_sentiment(
    body: TextBody,
    user: dict = Depends(get_current_user),
    ai: AIService = Depends(get_ai),
):
    return ok(await ai.analyze_sentiment(body.text))


@router.post("/recommend")
async def recommend(
    body: RecommendBody,
    user: dict = Depends(get_current_user),
    ai: AIService = Depends(get_ai),
):
    return ok(await ai.recommend(body.interests, body.community_topics))


@router.post("/batch-moderate")
async def batch_moderate(
    body: BatchBody,
    user: dict = Depends(get_current_user),
    ai: AIService = Depends(get_ai),
):
    return ok(await ai.batch_moderate(body.texts))


@router.post("/summarize")
async def summarize(
    body: SummarizeBody,
    user: dict = Depends(get_current_user),
    ai: AIService = Depends(get_ai),
):
    return ok(await ai.summarize(body.text, body.max_length))
