"""ASGI middleware for Bearer token authentication of the API surface."""

from __future__ import annotations

import hmac
import logging

from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.types import ASGIApp, Receive, Scope, Send

logger = logging.getLogger(__name__)

# Only paths under these prefixes require a token
PROTECTED_PREFIXES = ("/api/",)


class AuthMiddleware:
    """Validates Bearer tokens on ``/api`` paths using constant-time comparison.

    An empty token disables the check; provider callbacks and health checks
    are never gated by it.
    """

    def __init__(
        self,
        app: ASGIApp,
        token: str,
        protected_prefixes: tuple[str, ...] = PROTECTED_PREFIXES,
    ) -> None:
        self.app = app
        self._token = token.encode()
        self._protected_prefixes = protected_prefixes

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http" or not self._token:
            await self.app(scope, receive, send)
            return

        request = Request(scope)
        path = request.url.path
        if not path.startswith(self._protected_prefixes):
            await self.app(scope, receive, send)
            return

        auth_header = request.headers.get("authorization", "")
        if not auth_header.startswith("Bearer "):
            reason = "missing_token" if not auth_header else "invalid_format"
            self._log_failure(request, reason)
            response = JSONResponse(
                {"success": False, "error": "Unauthorized"}, status_code=401,
            )
            await response(scope, receive, send)
            return

        provided_token = auth_header[7:].encode()
        if not hmac.compare_digest(provided_token, self._token):
            self._log_failure(request, "invalid_token")
            response = JSONResponse(
                {"success": False, "error": "Access denied"}, status_code=403,
            )
            await response(scope, receive, send)
            return

        await self.app(scope, receive, send)

    @staticmethod
    def _log_failure(request: Request, reason: str) -> None:
        logger.warning(
            "auth_failed method=%s path=%s ip=%s reason=%s",
            request.method,
            request.url.path,
            request.client.host if request.client else None,
            reason,
        )
