"""Security middleware for gateway password authentication."""

from __future__ import annotations

import logging
import secrets
from collections.abc import Awaitable, Callable, Iterable
from typing import Any

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse

from gcli_gateway.core.common.logging_utils import redact

logger = logging.getLogger(__name__)

DEFAULT_BYPASS_PATHS = ("/", "/health", "/docs", "/openapi.json", "/redoc")

AUTH_FAILED_MESSAGE = "Invalid or missing password"


def extract_bearer_token(header_value: str | None) -> str | None:
    """Return the token of an ``Authorization: Bearer <token>`` header."""
    if not header_value:
        return None
    scheme, _, token = header_value.partition(" ")
    if scheme.lower() != "bearer":
        return None
    token = token.strip()
    return token or None


class PasswordAuthMiddleware(BaseHTTPMiddleware):
    """
    Middleware for gateway password authentication.

    Every request outside ``bypass_paths`` must carry
    ``Authorization: Bearer <password>``. Anything else is answered with a
    403 and an OpenAI-style error body.
    """

    def __init__(
        self,
        app: Any,
        password: str,
        bypass_paths: Iterable[str] | None = None,
    ) -> None:
        super().__init__(app)
        self._password = password
        self.bypass_paths = set(
            bypass_paths if bypass_paths is not None else DEFAULT_BYPASS_PATHS
        )

    def is_authorized(self, request: Request) -> bool:
        token = extract_bearer_token(request.headers.get("Authorization"))
        if token is None:
            return False
        return secrets.compare_digest(
            token.encode("utf-8"), self._password.encode("utf-8")
        )

    async def dispatch(
        self, request: Request, call_next: Callable[[Request], Awaitable[Response]]
    ) -> Response:
        if request.url.path in self.bypass_paths:
            return await call_next(request)

        if not self.is_authorized(request):
            client_ip = request.client.host if request.client else "unknown"
            if logger.isEnabledFor(logging.WARNING):
                token = extract_bearer_token(request.headers.get("Authorization"))
                logger.warning(
                    "Rejected request to %s from %s: bad password (%s)",
                    request.url.path,
                    client_ip,
                    redact(token) if token else "missing",
                )
            return JSONResponse(
                status_code=403,
                content={
                    "error": {
                        "message": AUTH_FAILED_MESSAGE,
                        "type": "authentication_error",
                        "code": 403,
                    }
                },
            )

        return await call_next(request)
