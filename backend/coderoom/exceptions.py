"""
Custom Exception Classes for CodeRoom

Every failure the service reports is an AppException subclass carrying a
stable error code, an HTTP status and optional details. HTTP handlers turn
them into JSON responses; the WebSocket relay turns them into scoped
``error`` events for the acting connection only.
"""

from typing import Any, Optional
from enum import Enum


class ErrorCode(str, Enum):
    """Standard error codes for consistent error responses"""

    # Authentication & Authorization (AUTH_xxx)
    INVALID_TOKEN = "AUTH_001"
    TOKEN_EXPIRED = "AUTH_002"
    INVALID_CREDENTIALS = "AUTH_003"
    USER_INACTIVE = "AUTH_005"
    TOKEN_REVOKED = "AUTH_006"
    PERMISSION_DENIED = "AUTH_009"

    # Team rooms (ROOM_xxx)
    ROOM_NOT_FOUND = "ROOM_001"
    ROOM_INACTIVE = "ROOM_002"
    ROOM_FULL = "ROOM_003"
    NOT_ROOM_HOST = "ROOM_005"
    ROOM_LOCKED = "ROOM_006"
    NOT_IN_ROOM = "ROOM_007"
    EDITOR_LOCKED = "ROOM_008"
    INVALID_ROOM_CONFIG = "ROOM_009"

    # Problem catalog (PROB_xxx)
    PROBLEM_NOT_FOUND = "PROB_001"

    # WebSocket (WS_xxx)
    WS_CONNECTION_FAILED = "WS_001"
    WS_INVALID_MESSAGE = "WS_002"
    WS_UNAUTHORIZED = "WS_003"
    WS_SEND_FAILED = "WS_005"
    WS_SLOW_CONSUMER = "WS_006"

    # Validation (VAL_xxx)
    VALIDATION_ERROR = "VAL_001"
    INVALID_INPUT = "VAL_002"

    # Database (DB_xxx)
    DATABASE_ERROR = "DB_001"

    # General (GEN_xxx)
    INTERNAL_SERVER_ERROR = "GEN_001"
    SERVICE_UNAVAILABLE = "GEN_002"
    RATE_LIMIT_EXCEEDED = "GEN_003"


class AppException(Exception):
    """
    Base exception class for all application errors.

    Attributes:
        message: Human readable message shown to the client
        code: Error code (ErrorCode enum)
        status_code: HTTP status code
        details: Extra error details (optional)
    """

    def __init__(
        self,
        message: str,
        code: ErrorCode = ErrorCode.INTERNAL_SERVER_ERROR,
        status_code: int = 500,
        details: Optional[dict[str, Any]] = None,
    ):
        self.message = message
        self.code = code
        self.status_code = status_code
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        """Convert the exception into the API error payload"""
        result = {
            "error": self.code.value,
            "message": self.message,
            "status_code": self.status_code,
        }
        if self.details:
            result["details"] = self.details
        return result


# ==================== Authentication Exceptions ====================

class AuthenticationException(AppException):
    """Generic authentication failure"""

    def __init__(
        self,
        message: str = "Authentication failed",
        code: ErrorCode = ErrorCode.INVALID_TOKEN,
        details: Optional[dict[str, Any]] = None,
    ):
        super().__init__(message, code, 401, details)


class TokenExpiredException(AuthenticationException):
    def __init__(self, message: str = "Session expired, please sign in again"):
        super().__init__(message, ErrorCode.TOKEN_EXPIRED)


class TokenRevokedException(AuthenticationException):
    def __init__(self, message: str = "Token has been revoked"):
        super().__init__(message, ErrorCode.TOKEN_REVOKED)


class InvalidCredentialsException(AuthenticationException):
    def __init__(self, message: str = "Invalid username or password"):
        super().__init__(message, ErrorCode.INVALID_CREDENTIALS)


class UserInactiveException(AuthenticationException):
    def __init__(self, message: str = "Account is disabled"):
        super().__init__(message, ErrorCode.USER_INACTIVE)


class PermissionDeniedException(AppException):
    """Authorization failure"""

    def __init__(
        self,
        message: str = "You are not allowed to perform this action",
        code: ErrorCode = ErrorCode.PERMISSION_DENIED,
    ):
        super().__init__(message, code, 403)


class NotRoomHostException(PermissionDeniedException):
    """Only the room host may do this"""

    def __init__(self, message: str = "Only the room host can perform this action"):
        super().__init__(message, ErrorCode.NOT_ROOM_HOST)


# ==================== Room Exceptions ====================

class RoomException(AppException):
    """Generic room error"""

    def __init__(
        self,
        message: str,
        code: ErrorCode = ErrorCode.ROOM_NOT_FOUND,
        status_code: int = 404,
        details: Optional[dict[str, Any]] = None,
    ):
        super().__init__(message, code, status_code, details)


class RoomNotFoundException(RoomException):
    def __init__(self, message: str = "Room not found"):
        super().__init__(message, ErrorCode.ROOM_NOT_FOUND, 404)


class InvalidRoomConfigException(RoomException):
    def __init__(self, message: str = "Invalid room configuration", details: Optional[dict[str, Any]] = None):
        super().__init__(message, ErrorCode.INVALID_ROOM_CONFIG, 400, details)


class CapacityException(RoomException):
    """Admission refused: the room cannot take this user right now"""

    def __init__(self, message: str, code: ErrorCode):
        super().__init__(message, code, 400)


class RoomFullException(CapacityException):
    def __init__(self, message: str = "Room is full"):
        super().__init__(message, ErrorCode.ROOM_FULL)


class RoomLockedException(CapacityException):
    def __init__(self, message: str = "Room is locked"):
        super().__init__(message, ErrorCode.ROOM_LOCKED)


class StateConflictException(RoomException):
    """Operation conflicts with the current room state"""

    def __init__(self, message: str, code: ErrorCode):
        super().__init__(message, code, 409)


class RoomInactiveException(StateConflictException):
    def __init__(self, message: str = "Room is no longer active"):
        super().__init__(message, ErrorCode.ROOM_INACTIVE)


class NotInRoomException(StateConflictException):
    def __init__(self, message: str = "You are not in this room"):
        super().__init__(message, ErrorCode.NOT_IN_ROOM)


class EditorLockedException(StateConflictException):
    def __init__(self, message: str = "Editor is locked by another participant"):
        super().__init__(message, ErrorCode.EDITOR_LOCKED)


# ==================== Problem Exceptions ====================

class ProblemNotFoundException(AppException):
    def __init__(self, message: str = "Problem not found"):
        super().__init__(message, ErrorCode.PROBLEM_NOT_FOUND, 404)


# ==================== WebSocket Exceptions ====================

class WebSocketException(AppException):
    """Transport level failure, never shown to other room members"""

    def __init__(
        self,
        message: str,
        code: ErrorCode = ErrorCode.WS_CONNECTION_FAILED,
        details: Optional[dict[str, Any]] = None,
    ):
        super().__init__(message, code, 1000, details)


class WebSocketUnauthorizedException(WebSocketException):
    def __init__(self, message: str = "WebSocket authentication failed"):
        super().__init__(message, ErrorCode.WS_UNAUTHORIZED, {"close_code": 4001})


class WebSocketSendException(WebSocketException):
    def __init__(self, recipient: str, reason: str = "Unknown"):
        super().__init__(
            f"Could not deliver WebSocket message to {recipient}",
            ErrorCode.WS_SEND_FAILED,
            {"recipient": recipient, "reason": reason},
        )


class WebSocketSlowConsumerException(WebSocketException):
    def __init__(self, recipient: str):
        super().__init__(
            f"Outbound queue overflow for {recipient}",
            ErrorCode.WS_SLOW_CONSUMER,
            {"recipient": recipient, "close_code": 4008},
        )


class WebSocketInvalidMessageException(WebSocketException):
    def __init__(self, reason: str = "Invalid message format"):
        super().__init__(
            f"Invalid message: {reason}",
            ErrorCode.WS_INVALID_MESSAGE,
            {"reason": reason},
        )


# ==================== Validation Exceptions ====================

class ValidationException(AppException):
    def __init__(
        self,
        message: str = "Validation error",
        details: Optional[dict[str, Any]] = None,
    ):
        super().__init__(message, ErrorCode.VALIDATION_ERROR, 400, details)


class InvalidInputException(ValidationException):
    def __init__(self, field: str, reason: str = "Invalid value"):
        super().__init__(
            f"Invalid value: {field}",
            {"field": field, "reason": reason},
        )
        self.code = ErrorCode.INVALID_INPUT


# ==================== Database Exceptions ====================

class DatabaseException(AppException):
    def __init__(
        self,
        message: str = "Database error",
        details: Optional[dict[str, Any]] = None,
    ):
        super().__init__(message, ErrorCode.DATABASE_ERROR, 500, details)
