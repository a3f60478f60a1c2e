"""
Custom exception classes for the Mood Chat application.
Provides structured error handling with machine-readable error codes.
"""

from enum import Enum
from typing import Any


class ErrorCode(str, Enum):
    """Error codes shared with clients"""

    # Authentication errors (401)
    AUTH_NOT_AUTHENTICATED = "AUTH_NOT_AUTHENTICATED"
    AUTH_TOKEN_INVALID = "AUTH_TOKEN_INVALID"

    # Authorization errors (403)
    AUTHZ_FORBIDDEN = "AUTHZ_FORBIDDEN"
    ROOM_ACCESS_DENIED = "ROOM_ACCESS_DENIED"

    # Resource errors (404, 409, 410)
    RESOURCE_NOT_FOUND = "RESOURCE_NOT_FOUND"
    RESOURCE_CONFLICT = "RESOURCE_CONFLICT"
    ROOM_ENDED = "ROOM_ENDED"

    # Validation errors (422)
    VALIDATION_ERROR = "VALIDATION_ERROR"
    DECRYPTION_FAILED = "DECRYPTION_FAILED"

    # Server errors (500+)
    SERVER_ERROR = "SERVER_ERROR"
    STORE_UNAVAILABLE = "STORE_UNAVAILABLE"
    MATCHMAKING_FAILED = "MATCHMAKING_FAILED"


class AppException(Exception):
    """
    Base exception class for application errors.
    All custom exceptions should inherit from this class.
    """

    def __init__(
        self,
        message: str,
        code: ErrorCode = ErrorCode.SERVER_ERROR,
        status_code: int = 500,
        field: str | None = None,
        metadata: dict[str, Any] | None = None,
    ):
        self.message = message
        self.code = code
        self.status_code = status_code
        self.field = field
        self.metadata = metadata or {}
        super().__init__(self.message)

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to response dictionary"""
        response = {
            "detail": self.message,
            "code": self.code.value,
        }
        if self.field:
            response["field"] = self.field
        if self.metadata:
            response["metadata"] = self.metadata
        return response


# Authentication Errors (401)


class AuthenticationError(AppException):
    """Base authentication error"""

    def __init__(
        self,
        message: str = "Authentication required",
        code: ErrorCode = ErrorCode.AUTH_NOT_AUTHENTICATED,
    ):
        super().__init__(
            message=message,
            code=code,
            status_code=401,
        )


class TokenInvalidError(AuthenticationError):
    """JWT token is invalid, expired or belongs to a signed-out identity"""

    def __init__(self, message: str = "Session token is invalid"):
        super().__init__(
            message=message,
            code=ErrorCode.AUTH_TOKEN_INVALID,
        )


# Authorization Errors (403)


class AuthorizationError(AppException):
    """Base authorization error"""

    def __init__(
        self,
        message: str = "You are not allowed to do this",
        code: ErrorCode = ErrorCode.AUTHZ_FORBIDDEN,
        metadata: dict[str, Any] | None = None,
    ):
        super().__init__(
            message=message,
            code=code,
            status_code=403,
            metadata=metadata,
        )


class RoomAccessDeniedError(AuthorizationError):
    """
    Row-level policy rejected access to a room's messages or key.

    Raised once the room has ended (or for non-participants). Session code
    treats it as "the room ended", never as a generic failure.
    """

    def __init__(
        self,
        message: str = "This chat session has ended",
        room_id: str | None = None,
    ):
        super().__init__(
            message=message,
            code=ErrorCode.ROOM_ACCESS_DENIED,
            metadata={"room_id": room_id} if room_id else None,
        )


# Resource Errors (404, 409, 410)


class NotFoundError(AppException):
    """Resource not found"""

    def __init__(
        self,
        message: str = "Requested resource was not found",
        resource: str | None = None,
    ):
        metadata = {"resource": resource} if resource else None
        super().__init__(
            message=message,
            code=ErrorCode.RESOURCE_NOT_FOUND,
            status_code=404,
            metadata=metadata,
        )


class ConflictError(AppException):
    """Resource conflict"""

    def __init__(
        self,
        message: str = "Resource already exists",
        field: str | None = None,
    ):
        super().__init__(
            message=message,
            code=ErrorCode.RESOURCE_CONFLICT,
            status_code=409,
            field=field,
        )


class RoomEndedError(AppException):
    """Send attempted on a channel that already observed the room ending"""

    def __init__(self, message: str = "This chat session has ended"):
        super().__init__(
            message=message,
            code=ErrorCode.ROOM_ENDED,
            status_code=410,
        )


# Validation Errors (422)


class ValidationError(AppException):
    """Validation error"""

    def __init__(
        self,
        message: str = "Please check the submitted data",
        field: str | None = None,
        code: ErrorCode = ErrorCode.VALIDATION_ERROR,
    ):
        super().__init__(
            message=message,
            code=code,
            status_code=422,
            field=field,
        )


class DecryptionError(ValidationError):
    """Ciphertext does not match the key/iv it was opened with"""

    def __init__(self, message: str = "Message could not be decrypted"):
        super().__init__(
            message=message,
            code=ErrorCode.DECRYPTION_FAILED,
        )


# Server Errors (500+)


class StoreUnavailableError(AppException):
    """Transient failure talking to the backing store"""

    def __init__(
        self,
        message: str = "Store is temporarily unavailable",
        operation: str | None = None,
    ):
        super().__init__(
            message=message,
            code=ErrorCode.STORE_UNAVAILABLE,
            status_code=503,
            metadata={"operation": operation} if operation else None,
        )


class MatchmakingError(AppException):
    """Finding, joining or creating a room failed"""

    def __init__(self, message: str = "Could not find a room. Try again."):
        super().__init__(
            message=message,
            code=ErrorCode.MATCHMAKING_FAILED,
            status_code=503,
        )
