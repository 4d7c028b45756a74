"""
Structured exchange errors.

Every adapter raises ExchangeError with an ErrorKind so callers branch on the
kind instead of re-parsing human-readable messages.
"""
from __future__ import annotations

from enum import Enum
from typing import Optional


class ErrorKind(Enum):
    """Classification of an exchange failure."""
    AUTH = "auth"
    RATE_LIMIT = "rate_limit"
    INSUFFICIENT_BALANCE = "insufficient_balance"
    NETWORK = "network"
    REJECTED = "rejected"
    MAINTENANCE = "maintenance"
    UNKNOWN = "unknown"


# Kinds that abort immediately without consuming retry attempts
NON_RETRYABLE = frozenset({
    ErrorKind.AUTH,
    ErrorKind.REJECTED,
    ErrorKind.INSUFFICIENT_BALANCE,
    ErrorKind.MAINTENANCE,
})


class ExchangeError(Exception):
    """Failure reported by an exchange adapter."""

    def __init__(self, kind: ErrorKind, message: str, operation: Optional[str] = None):
        self.kind = kind
        self.operation = operation
        self.raw_message = message
        text = f"[{operation}] {message}" if operation else message
        super().__init__(text)

    @property
    def retryable(self) -> bool:
        return self.kind not in NON_RETRYABLE and self.kind is not ErrorKind.RATE_LIMIT

    def __repr__(self) -> str:
        return f"ExchangeError(kind={self.kind.value}, message={str(self)!r})"


class RequestLayerClosed(RuntimeError):
    """Raised when work is submitted after the request layer was stopped."""
