"""
agora.api.main — FastAPI application entry point
==================================================

Run with::

    uvicorn agora.api.main:app --reload --port 8000
"""

from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager

from dotenv import load_dotenv
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from starlette.exceptions import HTTPException as StarletteHTTPException

load_dotenv()

from agora.api.deps import get_config, get_engine  # noqa: E402
from agora.api.responses import error_response, ok  # noqa: E402
from agora.api.routes.ai import router as ai_router  # noqa: E402
from agora.api.routes.auth import router as auth_router  # noqa: E402
from agora.api.routes.chat import router as chat_router  # noqa: E402
from agora.api.routes.comments import router as comments_router  # noqa: E402
from agora.api.routes.communities import router as communities_router  # noqa: E402
from agora.api.routes.posts import router as posts_router  # noqa: E402
from agora.api.routes.realtime import router as realtime_router  # noqa: E402
from agora.api.routes.users import router as users_router  # noqa: E402
from agora.database.engine import init_db  # noqa: E402
from agora.errors import AgoraError  # noqa: E402

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def _cors_origins() -> list[str]:
    """Resolve allowed CORS origins from env with safe defaults.

    Priority:
      1) CORS_ALLOW_ORIGINS (comma-separated)
      2) CLIENT_URL (single origin)
    """
    raw = os.getenv("CORS_ALLOW_ORIGINS", "").strip()
    if raw:
        return [origin.strip().rstrip("/") for origin in raw.split(",") if origin.strip()]

    client_url = os.getenv("CLIENT_URL", "").strip()
    if client_url:
        return [client_url.rstrip("/")]

    return []


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup/shutdown lifecycle — configure logging and warm the DB engine."""
    cfg = get_config()
    logging.basicConfig(level=cfg.log_level.upper(), format=LOG_FORMAT)

    engine = get_engine()
    if cfg.auto_create_schema:
        init_db(engine)
        logger.info("Database schema ensured (auto_create_schema)")
    logger.info("%s API started — engine ready (%s)", cfg.app_name, engine.url.database)
    yield
    logger.info("%s API shutting down", cfg.app_name)


app = FastAPI(
    title="Agora API",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins(),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---------------------------------------------------------------------------
# Error envelope
# ---------------------------------------------------------------------------
@app.exception_handler(AgoraError)
async def agora_error_handler(request: Request, exc: AgoraError):
    return error_response(exc.status_code, exc.message, exc.details)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    details = [
        {
            "field": ".".join(str(p) for p in err.get("loc", ()) if p != "body"),
            "message": err.get("msg", "Invalid value"),
        }
        for err in exc.errors()
    ]
    return error_response(400, "Validation failed", details)


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return error_response(exc.status_code, str(exc.detail))


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return error_response(500, "Internal server error")


# Mount routers
app.include_router(auth_router, prefix="/api")
app.include_router(users_router, prefix="/api")
app.include_router(communities_router, prefix="/api")
app.include_router(posts_router, prefix="/api")
app.include_router(comments_router, prefix="/api")
app.include_router(chat_router, prefix="/api")
app.include_router(ai_router, prefix="/api")
app.include_router(realtime_router, prefix="/api")


@app.get("/api/health")
def health():
    return ok({"status": "ok"}, "Agora API is running")
