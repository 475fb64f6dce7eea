"""
Centralized Error Handlers for CodeRoom

Global FastAPI exception handlers returning a single JSON error shape, plus
the WebSocket helpers the relay uses to report failures to the acting
connection only.
"""

import logging
from traceback import format_exc
from typing import Any, Union

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse
from fastapi.exceptions import RequestValidationError, ResponseValidationError
from starlette.exceptions import HTTPException as StarletteHTTPException

from coderoom.config import settings
from coderoom.exceptions import AppException, ErrorCode


# Routed into loguru by the InterceptHandler installed in setup_logging()
logger = logging.getLogger(__name__)


class ErrorResponse:
    """
    Standard error response format.

    Every API error uses this shape:
    {
        "success": false,
        "error": "ERROR_CODE",
        "message": "Message shown to the user",
        "details": {...},  // optional
        "status_code": 400
    }
    """

    @staticmethod
    def create(
        error_code: Union[ErrorCode, str],
        message: str,
        status_code: int,
        details: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        response: dict[str, Any] = {
            "success": False,
            "error": error_code.value if isinstance(error_code, ErrorCode) else error_code,
            "message": message,
            "status_code": status_code,
        }
        if details:
            response["details"] = details
        return response


def log_error(
    error: Exception,
    request: Request | None = None,
    level: str = "ERROR",
    extra: dict[str, Any] | None = None,
) -> None:
    """
    Log errors in a consistent way.

    Args:
        error: The exception
        request: FastAPI Request (optional)
        level: Log level (ERROR, WARNING, INFO)
        extra: Extra context
    """
    log_func = getattr(logger, level.lower(), logger.error)

    log_data: dict[str, Any] = {
        "error_type": type(error).__name__,
        "error_message": str(error),
    }

    if request:
        client_host: str | None = None
        if request.client is not None:
            client_host = request.client.host
        log_data.update({
            "method": request.method,
            "url": str(request.url),
            "client": client_host,
        })

    if extra:
        log_data.update(extra)

    log_func("Error occurred: %s", log_data)

    if settings.DEBUG and level.upper() == "ERROR":
        logger.debug("Stack trace:\n%s", format_exc())


def register_exception_handlers(app: FastAPI) -> None:
    """
    Register every exception handler on the FastAPI app.

    Called from main.py.
    """

    @app.exception_handler(AppException)
    async def app_exception_handler(
        request: Request, exc: AppException
    ) -> JSONResponse:
        log_error(exc, request, level="WARNING")

        return JSONResponse(
            status_code=exc.status_code,
            content=ErrorResponse.create(
                error_code=exc.code,
                message=exc.message,
                status_code=exc.status_code,
                details=exc.details if exc.details else None,
            ),
        )

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(
        request: Request, exc: StarletteHTTPException
    ) -> JSONResponse:
        """Plain HTTPExceptions (FastAPI security dependencies, 404 routes)."""
        error_code_map = {
            400: ErrorCode.VALIDATION_ERROR,
            401: ErrorCode.INVALID_TOKEN,
            403: ErrorCode.PERMISSION_DENIED,
            404: ErrorCode.ROOM_NOT_FOUND,
            422: ErrorCode.VALIDATION_ERROR,
            429: ErrorCode.RATE_LIMIT_EXCEEDED,
            500: ErrorCode.INTERNAL_SERVER_ERROR,
        }
        error_code = error_code_map.get(exc.status_code, ErrorCode.INTERNAL_SERVER_ERROR)

        log_error(exc, request, level="WARNING")

        return JSONResponse(
            status_code=exc.status_code,
            content=ErrorResponse.create(
                error_code=error_code,
                message=str(exc.detail) if exc.detail else "HTTP error",
                status_code=exc.status_code,
            ),
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        errors = []
        for error in exc.errors():
            field = ".".join(str(loc) for loc in error["loc"][1:])  # skip 'body'
            errors.append({
                "field": field,
                "message": error["msg"],
                "type": error["type"],
            })

        log_error(
            exc,
            request,
            level="WARNING",
            extra={"validation_errors": errors},
        )

        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content=ErrorResponse.create(
                error_code=ErrorCode.VALIDATION_ERROR,
                message="Validation failed, please check your input",
                status_code=422,
                details={"validation_errors": errors},
            ),
        )

    @app.exception_handler(ResponseValidationError)
    async def response_validation_exception_handler(
        request: Request, exc: ResponseValidationError
    ) -> JSONResponse:
        errors = [
            {
                "field": ".".join(str(loc) for loc in error["loc"]),
                "message": error["msg"],
                "type": error["type"],
            }
            for error in exc.errors()
        ]

        log_error(
            exc,
            request,
            level="ERROR",
            extra={"validation_errors": errors},
        )

        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=ErrorResponse.create(
                error_code=ErrorCode.VALIDATION_ERROR,
                message="Response validation failed",
                status_code=500,
                details={"validation_errors": errors},
            ),
        )

    @app.exception_handler(Exception)
    async def general_exception_handler(
        request: Request, exc: Exception
    ) -> JSONResponse:
        """
        Catch-all handler.

        No internals are exposed outside DEBUG.
        """
        log_error(exc, request, level="ERROR")

        if settings.DEBUG:
            message = f"{type(exc).__name__}: {str(exc)}"
            details = {"traceback": format_exc()}
        else:
            message = "An unexpected error occurred. Please try again later."
            details = None

        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=ErrorResponse.create(
                error_code=ErrorCode.INTERNAL_SERVER_ERROR,
                message=message,
                status_code=500,
                details=details,
            ),
        )


# ==================== WebSocket Error Handling ====================

class WebSocketErrorHandler:
    """
    Error handling utilities for WebSocket connections.

    Used to log socket failures with room context, to build the scoped
    ``error`` event sent back to the acting connection, and to close a
    socket with a proper close code.
    """

    @staticmethod
    async def handle_connection_error(
        websocket,
        error: Exception,
        reason: str = "Connection error",
        close_code: int = 1011,
    ) -> None:
        """
        Log a connection level failure and close the socket.

        Args:
            websocket: The WebSocket connection
            error: The exception
            reason: Close reason sent to the client
            close_code: WebSocket close code
        """
        log_error(
            error,
            level="WARNING",
            extra={"websocket_close_reason": reason, "close_code": close_code},
        )

        try:
            await websocket.close(code=close_code, reason=reason[:123])
        except RuntimeError as close_error:
            # Already closed by the peer or by the server
            logger.debug("Failed to close websocket: %s", close_error)

    @staticmethod
    def error_event(error: Exception, event_type: str | None = None) -> dict[str, Any]:
        """
        Build the ``error`` frame for the connection that caused ``error``.

        AppException messages are safe to show; anything else is reported
        as a generic internal error.
        """
        if isinstance(error, AppException):
            frame: dict[str, Any] = {"type": "error", **error.to_dict()}
        else:
            frame = {
                "type": "error",
                "error": ErrorCode.INTERNAL_SERVER_ERROR.value,
                "message": "Internal error while handling the event",
            }
        if event_type:
            frame["event"] = event_type
        return frame

    @staticmethod
    def log_websocket_error(
        error: Exception,
        room_id: str | None = None,
        user_id: str | None = None,
        message_type: str | None = None,
    ) -> None:
        """
        Log WebSocket errors with their room context.

        Args:
            error: The exception
            room_id: Room id (if any)
            user_id: User id (if any)
            message_type: Client event type (if any)
        """
        log_data: dict[str, Any] = {
            "error_type": type(error).__name__,
            "error_message": str(error),
        }

        if room_id:
            log_data["room_id"] = room_id
        if user_id:
            log_data["user_id"] = user_id
        if message_type:
            log_data["message_type"] = message_type

        level = logging.WARNING if isinstance(error, AppException) else logging.ERROR
        logger.log(level, "WebSocket error occurred: %s", log_data)
