"""Local request/token admission control over a one-minute window.

One RateLimiter exists per upstream key/configuration and owns its
RateLimitWindow exclusively. Every dispatched attempt is committed against
the window whether it later succeeds or fails, so retries cannot slip past
the ceilings.
"""

from __future__ import annotations

import math
import threading
import time
from collections.abc import Callable
from dataclasses import replace
from typing import TYPE_CHECKING

import structlog

from flashcache.errors import RateLimitError
from flashcache.models.rate_limit import RateLimitWindow, Reservation

if TYPE_CHECKING:
    from flashcache.config import RateLimitSettings

log = structlog.get_logger()

WINDOW_MS = 60_000


def monotonic_ms() -> float:
    return time.monotonic() * 1000


def estimate_tokens(system_message: str | None, user_message: str | None) -> int:
    """Approximate provider tokens as four characters per token."""
    return math.ceil(len(system_message or "") / 4 + len(user_message or "") / 4)


class RateLimiter:
    """Rolling one-minute request and token ceilings.

    ``check_and_reserve`` and ``commit`` share one lock, so two concurrent
    callers can never both take the last remaining slot.
    """

    def __init__(
        self,
        max_requests_per_minute: int,
        max_tokens_per_minute: int,
        *,
        clock: Callable[[], float] = monotonic_ms,
    ) -> None:
        self.max_requests_per_minute = max_requests_per_minute
        self.max_tokens_per_minute = max_tokens_per_minute
        self._clock = clock
        self._lock = threading.Lock()
        self._window = RateLimitWindow(window_start=clock())

    @classmethod
    def from_settings(
        cls,
        settings: RateLimitSettings,
        *,
        clock: Callable[[], float] = monotonic_ms,
    ) -> RateLimiter:
        return cls(
            settings.max_requests_per_minute,
            settings.max_tokens_per_minute,
            clock=clock,
        )

    def check_and_reserve(self, estimated_tokens: int) -> Reservation:
        """Admit one attempt or raise ``RateLimitError``.

        The returned reservation holds its slot until it is passed to
        ``commit`` (attempt dispatched) or ``release`` (never dispatched).
        """
        with self._lock:
            now = self._clock()
            window = self._window
            if now - window.window_start >= WINDOW_MS:
                log.debug("rate_limit_window_reset", previous_requests=window.request_count)
                window.window_start = now
                window.request_count = 0
                window.token_count = 0

            retry_after_ms = math.ceil(WINDOW_MS - (now - window.window_start))

            requests = window.request_count + window.reserved_requests
            if requests >= self.max_requests_per_minute:
                log.warning(
                    "rate_limit_exceeded",
                    limit="requests",
                    current=requests,
                    max=self.max_requests_per_minute,
                    retry_after_ms=retry_after_ms,
                )
                raise RateLimitError("requests", retry_after_ms)

            tokens = window.token_count + window.reserved_tokens
            if tokens >= self.max_tokens_per_minute:
                log.warning(
                    "rate_limit_exceeded",
                    limit="tokens",
                    current=tokens,
                    max=self.max_tokens_per_minute,
                    retry_after_ms=retry_after_ms,
                )
                raise RateLimitError("tokens", retry_after_ms)

            window.reserved_requests += 1
            window.reserved_tokens += estimated_tokens
            return Reservation(tokens=estimated_tokens)

    def commit(self, reservation: Reservation, tokens: int | None = None) -> None:
        """Charge a dispatched attempt to the window.

        ``tokens`` overrides the reserved estimate when the real count is known.
        """
        charged = reservation.tokens if tokens is None else tokens
        with self._lock:
            self._drop_reservation(reservation)
            self._window.request_count += 1
            self._window.token_count += charged
            log.debug(
                "rate_limit_committed",
                request_count=self._window.request_count,
                token_count=self._window.token_count,
                added_tokens=charged,
            )

    def release(self, reservation: Reservation) -> None:
        """Return an unused reservation without charging the window."""
        with self._lock:
            self._drop_reservation(reservation)

    def snapshot(self) -> RateLimitWindow:
        """Copy of the current window, for observability and tests."""
        with self._lock:
            return replace(self._window)

    def _drop_reservation(self, reservation: Reservation) -> None:
        window = self._window
        window.reserved_requests = max(0, window.reserved_requests - 1)
        window.reserved_tokens = max(0, window.reserved_tokens - reservation.tokens)
