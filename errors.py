"""
Error signals raised by the query operations.

BadInputError  a required argument is missing or does not parse.
NotFoundError  a well-formed key matched nothing.

Storage failures (SQLAlchemy exceptions) are never wrapped; they propagate
to the caller as-is.
"""

from typing import Any


class BadInputError(ValueError):
    def __init__(self, param: str, message: str) -> None:
        super().__init__(message)
        self.param = param


class NotFoundError(LookupError):
    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.details = details or {}
