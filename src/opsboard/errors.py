"""Error taxonomy and the ``Result`` wrapper returned by mutating operations."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Generic, Optional, TypeVar

from .constants import GENERIC_FAILURE_MESSAGE

T = TypeVar("T")


class BoardError(Exception):
    """Base class for every failure surfaced by opsboard.

    Attributes:
        message: Human readable reason.
        status: HTTP-like status code (``0`` when no response was received).
    """

    def __init__(self, message: str, status: int = 0) -> None:
        super().__init__(message)
        self.message = message
        self.status = status

    def to_dict(self) -> dict[str, object]:
        return {"message": self.message, "status": self.status, "type": self.__class__.__name__}


class ApiError(BoardError):
    """The backend answered with a non-success status."""


class AuthenticationError(ApiError):
    """Terminal authentication failure; credentials have already been cleared."""

    def __init__(self, message: str = "Authentication required", status: int = 401) -> None:
        super().__init__(message, status)


class TransportError(BoardError):
    """Network unreachable or an undecodable response body."""

    def __init__(self, message: str = GENERIC_FAILURE_MESSAGE, status: int = 0) -> None:
        super().__init__(message, status)


class LifecycleError(BoardError):
    """A transition precondition failed locally; no call was issued."""


class ValidationError(BoardError):
    """Profile or password input rejected locally; no call was issued."""

    def __init__(self, message: str, status: int = 422) -> None:
        super().__init__(message, status)


class ConfigError(BoardError):
    """A configuration value is unusable, such as a non-http(s) base URL."""


@dataclass(frozen=True)
class Result(Generic[T]):
    """Outcome of a mutating operation: either a value or a typed error."""

    value: Optional[T] = None
    error: Optional[BoardError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, value: Optional[T] = None) -> "Result[T]":
        return cls(value=value)

    @classmethod
    def failure(cls, error: BoardError) -> "Result[T]":
        return cls(error=error)
