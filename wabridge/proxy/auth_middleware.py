"""ASGI middleware guarding the reply endpoint with a Bearer token."""

from __future__ import annotations

import hmac

from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.types import ASGIApp, Receive, Scope, Send

# Paths that require the token (exact match)
PROTECTED_PATHS = frozenset({"/reply"})


class ReplyAuthMiddleware:
    """Validates Bearer tokens on protected paths using constant-time comparison."""

    def __init__(
        self,
        app: ASGIApp,
        token: str,
        protected_paths: frozenset[str] = PROTECTED_PATHS,
    ) -> None:
        self.app = app
        self._token = token.encode()
        self._protected_paths = protected_paths

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http" or scope["path"] not in self._protected_paths:
            await self.app(scope, receive, send)
            return

        request = Request(scope)
        auth_header = request.headers.get("authorization", "")

        if not auth_header.startswith("Bearer "):
            response = JSONResponse({"error": "Authentication required"}, status_code=401)
            await response(scope, receive, send)
            return

        if not hmac.compare_digest(auth_header[7:].encode(), self._token):
            response = JSONResponse({"error": "Access denied"}, status_code=403)
            await response(scope, receive, send)
            return

        await self.app(scope, receive, send)
