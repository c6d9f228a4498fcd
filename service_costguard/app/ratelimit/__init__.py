"""Rate limiting (fixed window, transactional, fail-open)."""

from .fixed_window import (
    FixedWindowRateLimiter,
    RateLimitPolicy,
    RateLimitResult,
    client_identifier,
    make_identifier,
)

__all__ = [
    "FixedWindowRateLimiter",
    "RateLimitPolicy",
    "RateLimitResult",
    "client_identifier",
    "make_identifier",
]
