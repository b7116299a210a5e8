from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Generic, Optional, TypeVar

T = TypeVar("T")


class ErrorKind(str, Enum):
    """Failure kinds returned by service operations."""

    INVALID_CREDENTIALS = "invalid_credentials"
    UNAUTHENTICATED = "unauthenticated"
    INVALID_TOKEN = "invalid_token"
    ACCOUNT_LOCKED = "account_locked"
    ACCOUNT_INACTIVE = "account_inactive"
    FORBIDDEN = "forbidden"
    VALIDATION_FAILED = "validation_failed"
    INVALID_OR_EXPIRED_TOKEN = "invalid_or_expired_token"
    DUPLICATE_KEY = "duplicate_key"
    RATE_LIMITED = "rate_limited"
    NOT_FOUND = "not_found"


@dataclass(frozen=True)
class Result(Generic[T]):
    """Outcome of a service operation, passed back by value.

    Exactly one of ``value`` or ``error`` is meaningful: a successful result
    has ``error is None``.
    """

    value: Optional[T] = None
    error: Optional[ErrorKind] = None
    message: str = ""
    detail: Optional[dict[str, Any]] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, value: T = None) -> "Result[T]":
        return cls(value=value)

    @classmethod
    def failure(
        cls, kind: ErrorKind, message: str, detail: Optional[dict[str, Any]] = None
    ) -> "Result[T]":
        return cls(error=kind, message=message, detail=detail)


__all__ = ["ErrorKind", "Result"]
