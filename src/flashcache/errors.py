from __future__ import annotations

import math
from enum import StrEnum
from typing import Literal


class ErrorKind(StrEnum):
    STORE = "STORE"
    RATE_LIMIT = "RATE_LIMIT"
    UPSTREAM = "UPSTREAM"
    TIMEOUT = "TIMEOUT"
    PARSE = "PARSE"


class FlashcacheError(Exception):
    """Base class for every failure raised by flashcache.

    Each subclass pins ``kind`` so callers can branch with
    ``match error.kind`` instead of walking the class hierarchy or
    inspecting messages.
    """

    kind: ErrorKind

    def __init__(self, message: str, *, retryable: bool = False) -> None:
        super().__init__(message)
        self.message = message
        self.retryable = retryable

    def to_dict(self) -> dict:
        return {
            "error": {
                "kind": self.kind,
                "message": self.message,
                "retryable": self.retryable,
            }
        }


class StoreError(FlashcacheError):
    """The cache store is unreachable or returned malformed data."""

    kind = ErrorKind.STORE


class RateLimitError(FlashcacheError):
    """Local admission control rejected a call.

    Never retried internally. ``retry_after_ms`` tells the caller how long
    to wait before the current window closes.
    """

    kind = ErrorKind.RATE_LIMIT

    def __init__(self, limit_kind: Literal["requests", "tokens"], retry_after_ms: int) -> None:
        noun = "Request" if limit_kind == "requests" else "Token"
        super().__init__(
            f"{noun} rate limit exceeded. Please wait {math.ceil(retry_after_ms / 1000)} seconds.",
            retryable=False,
        )
        self.limit_kind = limit_kind
        self.retry_after_ms = retry_after_ms

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["error"]["limit_kind"] = self.limit_kind
        data["error"]["retry_after_ms"] = self.retry_after_ms
        return data


class UpstreamError(FlashcacheError):
    """Classified failure reported by (or on the way to) the generation API."""

    kind = ErrorKind.UPSTREAM

    def __init__(
        self,
        message: str,
        *,
        type: str,
        code: str | None = None,
        retryable: bool = False,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message, retryable=retryable)
        self.type = type
        self.code = code
        self.status_code = status_code

    def to_dict(self) -> dict:
        data = super().to_dict()
        data["error"]["type"] = self.type
        data["error"]["code"] = self.code
        data["error"]["status_code"] = self.status_code
        return data


class RetriesExhaustedError(UpstreamError):
    """Every attempt failed with a retryable error.

    The last observed error is kept on ``last_error`` and chained as
    ``__cause__``.
    """

    def __init__(self, attempts: int, last_error: FlashcacheError) -> None:
        super().__init__(
            f"Upstream call failed after {attempts} attempt(s): {last_error.message}",
            type="service_error",
            code="retries_exhausted",
            retryable=False,
            status_code=getattr(last_error, "status_code", None),
        )
        self.attempts = attempts
        self.last_error = last_error


class AttemptTimeoutError(FlashcacheError):
    """A single attempt exceeded its deadline or was aborted by the caller."""

    kind = ErrorKind.TIMEOUT

    def __init__(self, timeout_ms: int, *, aborted: bool = False) -> None:
        if aborted:
            message = "Upstream attempt aborted by caller"
        else:
            message = f"Upstream attempt timed out after {timeout_ms} ms"
        super().__init__(message, retryable=True)
        self.timeout_ms = timeout_ms
        self.aborted = aborted


class ParseError(FlashcacheError):
    """A successful response did not match the expected shape. Never retried."""

    kind = ErrorKind.PARSE

    def __init__(self, message: str, *, code: str = "invalid_response") -> None:
        super().__init__(message, retryable=False)
        self.code = code
