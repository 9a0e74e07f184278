"""API key guard for admin routes (on-demand sync)."""

from __future__ import annotations

import secrets

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from blog.config import settings


def _is_protected(path: str) -> bool:
    return path.startswith(f"{settings.api_prefix}/sync")


class ApiKeyAuthMiddleware(BaseHTTPMiddleware):
    """Require X-API-Key on admin routes; reads and the signed webhook stay open."""

    async def dispatch(self, request: Request, call_next) -> Response:
        if request.method == "OPTIONS" or not _is_protected(request.url.path):
            return await call_next(request)

        expected_key = settings.api_key
        if not expected_key:
            if settings.debug:
                return await call_next(request)
            return JSONResponse(
                status_code=500,
                content={"detail": "BLOG_CORE_API_KEY not configured"},
            )

        provided_key = request.headers.get("X-API-Key", "")
        if not provided_key or not secrets.compare_digest(provided_key, expected_key):
            return JSONResponse(
                status_code=401,
                content={"detail": "Invalid or missing X-API-Key"},
            )

        return await call_next(request)
