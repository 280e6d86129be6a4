"""
HTTP middleware and exception handlers for the relay API.

Every response carries ``X-Request-ID``; every error body has the
``{error: {code, message, request_id, details?}}`` shape that the chat
socket's error frames mirror.
"""

import re
import time
import uuid
from collections.abc import Callable

from fastapi import FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.middleware.base import BaseHTTPMiddleware

from chatrelay.core.errors import AppError, ErrorCode, ErrorResponse
from chatrelay.core.logging import conversation_id_ctx, get_logger, request_id_ctx

logger = get_logger(__name__)

_CHAT_PATH = re.compile(r"^/chat/(?!ws/)([^/]+)(?:/|$)")

_HTTP_STATUS_CODES = {
    400: ErrorCode.VALIDATION_ERROR,
    404: ErrorCode.NOT_FOUND,
    405: ErrorCode.VALIDATION_ERROR,
    409: ErrorCode.CONVERSATION_BUSY,
}


def _conversation_from_path(path: str) -> str | None:
    match = _CHAT_PATH.match(path)
    return match.group(1) if match else None


class RequestContextMiddleware(BaseHTTPMiddleware):
    """Bind request (and, for chat controls, conversation) ids to the log context."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request_token = request_id_ctx.set(request_id)
        conversation_token = conversation_id_ctx.set(_conversation_from_path(request.url.path))
        started = time.perf_counter()

        try:
            response = await call_next(request)
            response.headers["X-Request-ID"] = request_id
            logger.info(
                "Request completed",
                data={
                    "method": request.method,
                    "path": request.url.path,
                    "status": response.status_code,
                    "duration_ms": round((time.perf_counter() - started) * 1000, 2),
                },
            )
            return response
        finally:
            conversation_id_ctx.reset(conversation_token)
            request_id_ctx.reset(request_token)


def _error_json(status_code: int, error: ErrorResponse) -> JSONResponse:
    headers = {"X-Request-ID": error.request_id} if error.request_id else {}
    return JSONResponse(status_code=status_code, content=error.to_dict(), headers=headers)


def setup_exception_handlers(app: FastAPI) -> None:
    """Map every exception to the structured error body."""

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(
        _request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        return _error_json(
            422,
            ErrorResponse(
                code=ErrorCode.VALIDATION_ERROR,
                message="Validation error",
                request_id=request_id_ctx.get(),
                details={"errors": exc.errors()},
            ),
        )

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(
        _request: Request, exc: StarletteHTTPException
    ) -> JSONResponse:
        return _error_json(
            exc.status_code,
            ErrorResponse(
                code=_HTTP_STATUS_CODES.get(exc.status_code, ErrorCode.INTERNAL_ERROR),
                message=str(exc.detail) if exc.detail else "HTTP error",
                request_id=request_id_ctx.get(),
            ),
        )

    @app.exception_handler(AppError)
    async def app_error_handler(_request: Request, exc: AppError) -> JSONResponse:
        logger.warning(
            f"Request rejected: {exc.message}",
            data={"code": exc.code.value, "details": exc.details},
        )
        return _error_json(exc.status_code, exc.to_response(request_id=request_id_ctx.get()))

    @app.exception_handler(Exception)
    async def generic_error_handler(request: Request, exc: Exception) -> JSONResponse:
        # Internals stay in the log, never in the body
        logger.error(
            "Unhandled exception",
            exc_info=exc,
            data={"path": request.url.path, "method": request.method},
        )
        return _error_json(
            500,
            ErrorResponse(
                code=ErrorCode.INTERNAL_ERROR,
                message="An unexpected error occurred",
                request_id=request_id_ctx.get(),
            ),
        )
