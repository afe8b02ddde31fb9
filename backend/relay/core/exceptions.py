"""Custom exceptions for the application.

Every caller-facing failure is an AppException subclass carrying the HTTP
status it maps to; main.py renders them as structured JSON.
"""
from typing import Optional
from fastapi import status


class AppException(Exception):
    """Base exception for application errors."""

    http_status: int = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(
        self,
        message: str,
        code: str = "UNKNOWN_ERROR",
        details: Optional[dict] = None
    ):
        self.message = message
        self.code = code
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict:
        return {
            "error": self.code,
            "message": self.message,
            "details": self.details
        }


class AuthError(AppException):
    """Missing, invalid or not-yet-registered credential."""

    http_status = status.HTTP_401_UNAUTHORIZED

    def __init__(self, message: str = "Unauthorized", code: str = "UNAUTHORIZED"):
        super().__init__(message=message, code=code)


class ValidationError(AppException):
    """Caller input rejected: malformed payload, id mismatch, non-member write."""

    http_status = status.HTTP_400_BAD_REQUEST

    def __init__(
        self,
        message: str,
        code: str = "VALIDATION_ERROR",
        details: Optional[dict] = None
    ):
        super().__init__(message=message, code=code, details=details)


class PayloadError(ValidationError):
    """Raised by the codec when a save token cannot be decoded."""

    def __init__(self, message: str):
        super().__init__(message=message, code="INVALID_PAYLOAD")


class NotFoundError(AppException):
    """No snapshot (or no visible snapshot) for the requested game."""

    http_status = status.HTTP_404_NOT_FOUND

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(message=message, code="NOT_FOUND", details=details)


class SnapshotNotFoundError(NotFoundError):
    """Raised when a game has no readable snapshot of the requested kind."""

    def __init__(self, game_id: str, kind: str):
        super().__init__(
            message=f"Save not found: {game_id}",
            details={"game_id": game_id, "kind": kind}
        )


class GameNotFoundError(NotFoundError):
    """Raised when a game record does not exist."""

    def __init__(self, game_id: str):
        super().__init__(
            message=f"Game not found: {game_id}",
            details={"game_id": game_id}
        )


class PlayerNotFoundError(NotFoundError):
    """Raised when a player record does not exist."""

    def __init__(self, player_id: str):
        super().__init__(
            message=f"Player not found: {player_id}",
            details={"player_id": player_id}
        )


class ForbiddenError(AppException):
    """Authenticated caller lacks permission for an admin/user action."""

    http_status = status.HTTP_403_FORBIDDEN

    def __init__(self, message: str = "Forbidden"):
        super().__init__(message=message, code="FORBIDDEN")


class RateLimitedError(AppException):
    """Raised when too many failed admin logins came from one client."""

    http_status = status.HTTP_429_TOO_MANY_REQUESTS

    def __init__(self, retry_after: Optional[int] = None):
        super().__init__(
            message="Too many failed attempts, try again later",
            code="RATE_LIMITED",
            details={"retry_after": retry_after} if retry_after else {}
        )
        self.retry_after = retry_after


class InternalError(AppException):
    """Storage or codec failure unrelated to caller input."""

    http_status = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: str = "Internal server error", details: Optional[dict] = None):
        super().__init__(message=message, code="INTERNAL_ERROR", details=details)


class StorageError(Exception):
    """Raised by storage backends on engine failures."""


class StorageConflictError(StorageError):
    """Transient contention; the whole transaction may be retried."""
