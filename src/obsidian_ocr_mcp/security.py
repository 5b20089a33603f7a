"""HTTP middleware for the OCR search server."""

from __future__ import annotations

import hmac
from collections.abc import Awaitable, Callable

from fastapi import Request
from fastapi.responses import JSONResponse
from starlette.middleware import Middleware
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.middleware.cors import CORSMiddleware
from starlette.responses import Response
from starlette.types import ASGIApp

HEALTH_PATH = "/mcp/health"
SECRET_HEADER = "x-mcp-secret"


class SharedSecretMiddleware(BaseHTTPMiddleware):
    """Reject requests whose ``x-mcp-secret`` header does not match."""

    def __init__(self, app: ASGIApp, secret: str, exempt: frozenset[str] = frozenset({HEALTH_PATH})) -> None:
        super().__init__(app)
        if not secret:
            raise ValueError("Shared secret must be configured")
        self._secret = secret.encode("utf-8")
        self._exempt = exempt

    async def dispatch(
        self, request: Request, call_next: Callable[[Request], Awaitable[Response]]
    ) -> Response:
        if request.url.path in self._exempt or request.method == "OPTIONS":
            return await call_next(request)

        provided = request.headers.get(SECRET_HEADER, "").encode("utf-8")
        if not hmac.compare_digest(provided, self._secret):
            return JSONResponse({"ok": False, "error": "Unauthorized"}, status_code=401)

        return await call_next(request)


def build_security_middleware(secret: str | None) -> list[Middleware]:
    """CORS for every deployment, plus the shared secret check when *secret* is set.

    CORS is the outermost layer.
    """

    middleware: list[Middleware] = [
        Middleware(
            CORSMiddleware,
            allow_origins=["*"],
            allow_methods=["GET", "POST", "DELETE"],
            allow_headers=["*"],
            expose_headers=["mcp-session-id"],
        )
    ]

    if secret:
        middleware.append(Middleware(SharedSecretMiddleware, secret=secret))

    return middleware
