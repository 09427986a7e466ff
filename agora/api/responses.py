"""
agora.api.responses — Uniform response envelope
=================================================

Every REST response, success or failure, has the shape::

    {"success": bool, "message": str, "data": ..., "meta": {...}?, "timestamp": iso8601}
"""

from __future__ import annotations

from typing import Any

from fastapi.responses import JSONResponse

from agora.database.models import isoformat, utcnow


def envelope(
    data: Any = None,
    message: str = "Success",
    *,
    success: bool = True,
    meta: dict[str, Any] | None = None,
) -> dict[str, Any]:
    body: dict[str, Any] = {
        "success": success,
        "message": message,
        "data": data,
    }
    if meta is not None:
        body["meta"] = meta
    body["timestamp"] = isoformat(utcnow())
    return body


def ok(data: Any = None, message: str = "Success", *, meta: dict[str, Any] | None = None) -> dict:
    return envelope(data, message, meta=meta)


def created(data: Any = None, message: str = "Created successfully") -> JSONResponse:
    return JSONResponse(status_code=201, content=envelope(data, message))


def paginated(items: list, pagination: dict[str, Any], message: str = "Success") -> dict:
    return envelope(items, message, meta={"pagination": pagination})


def error_response(
    status_code: int, message: str, details: list[dict[str, Any]] | None = None
) -> JSONResponse:
    meta = {"errors": details} if details else None
    return JSONResponse(
        status_code=status_code,
        content=envelope(None, message, success=False, meta=meta),
    )
