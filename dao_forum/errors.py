"""
Error taxonomy for the forum engine.

Engine code raises these; only the HTTP layer translates them into
status codes. Store-level transient failures (database or Redis
connection errors) are not wrapped and propagate unchanged.
"""

from enum import Enum


class ErrorCode(str, Enum):
    BAD_PARAMS = "BAD_PARAMS"
    NOT_FOUND = "NOT_FOUND"
    UNAUTHORIZED = "UNAUTHORIZED"
    INTERNAL_ERROR = "INTERNAL_ERROR"


class ForumError(Exception):
    """Base class for errors surfaced to callers of the forum engine."""

    code: ErrorCode = ErrorCode.INTERNAL_ERROR

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def __str__(self) -> str:
        return f"{self.code.value}: {self.message}"


class BadParams(ForumError):
    """Malformed input: empty or over-long body, unknown DAO, bad paging."""
    code = ErrorCode.BAD_PARAMS


class NotFound(ForumError):
    """Referenced message does not exist or is soft-deleted."""
    code = ErrorCode.NOT_FOUND


class Unauthorized(ForumError):
    """Caller is not allowed to perform the operation (e.g. delete by non-author)."""
    code = ErrorCode.UNAUTHORIZED


class InternalError(ForumError):
    """An invariant was found broken at runtime."""
    code = ErrorCode.INTERNAL_ERROR
