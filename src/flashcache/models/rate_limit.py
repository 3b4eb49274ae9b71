from __future__ import annotations

from dataclasses import dataclass


@dataclass
class RateLimitWindow:
    """Usage accounted against the current one-minute window.

    Owned by exactly one RateLimiter. Times are clock readings in milliseconds.
    """

    window_start: float
    request_count: int = 0
    token_count: int = 0

    # Admissions handed out by check_and_reserve that have not been
    # committed or released yet. They count against the ceilings.
    reserved_requests: int = 0
    reserved_tokens: int = 0


@dataclass(frozen=True)
class Reservation:
    """Admission ticket returned by RateLimiter.check_and_reserve."""

    tokens: int
