from __future__ import annotations

import json
import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from starlette.responses import JSONResponse

from gcli_gateway.core.common.exceptions import GatewayError

logger = logging.getLogger(__name__)


async def gateway_error_handler(request: Request, exc: Exception) -> JSONResponse:
    """Render a ``GatewayError`` with its own status code and error body."""
    assert isinstance(exc, GatewayError)
    if exc.status_code >= 500:
        logger.error("%s on %s: %s", type(exc).__name__, request.url.path, exc.message)
    elif logger.isEnabledFor(logging.INFO):
        logger.info("%s on %s: %s", type(exc).__name__, request.url.path, exc.message)
    return JSONResponse(exc.to_dict(), status_code=exc.status_code)


async def json_decode_error_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handle JSON decoding errors as 400 Bad Request."""
    logger.warning("JSON decode error: %s", exc)
    return JSONResponse(
        {
            "error": {
                "message": "Malformed JSON payload",
                "type": "invalid_request_error",
                "code": 400,
            }
        },
        status_code=400,
    )


async def request_validation_error_handler(
    request: Request, exc: Exception
) -> JSONResponse:
    """Handle request body validation errors as 422 Unprocessable Entity."""
    details = (
        exc.errors() if isinstance(exc, RequestValidationError) else None
    )
    logger.warning("Validation error on %s: %s", request.url.path, details)
    return JSONResponse(
        {
            "error": {
                "message": "Validation failed",
                "type": "invalid_request_error",
                "code": 422,
                "details": json.loads(json.dumps(details, default=str)),
            }
        },
        status_code=422,
    )


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error("Unhandled exception on %s: %s", request.url.path, exc, exc_info=True)
    return JSONResponse(
        {
            "error": {
                "message": "Internal server error",
                "type": "api_error",
                "code": 500,
            }
        },
        status_code=500,
    )


def register_exception_handlers(app: FastAPI) -> None:
    """Register the gateway's exception handlers on ``app``."""
    app.add_exception_handler(GatewayError, gateway_error_handler)
    app.add_exception_handler(json.JSONDecodeError, json_decode_error_handler)
    app.add_exception_handler(RequestValidationError, request_validation_error_handler)
    app.add_exception_handler(Exception, unhandled_exception_handler)
