"""
Retry utilities for outbound vendor calls.

Vendor APIs used here recover from throttling in seconds, so backoff is
linear and capped rather than exponential. Classification of failures is a
lookup the caller can branch on instead of string matching on exceptions.
"""
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Tuple, Type

import httpx


class FetchErrorKind(str, Enum):
    RATE_LIMITED = "rate_limited"
    TRANSIENT_NETWORK = "transient_network"
    PERMANENT = "permanent"

    @property
    def is_retryable(self) -> bool:
        return self is not FetchErrorKind.PERMANENT


# HTTP statuses treated as transient server-side trouble
TRANSIENT_STATUS_CODES: Tuple[int, ...] = (500, 502, 503, 504)
RATE_LIMIT_STATUS_CODES: Tuple[int, ...] = (429,)

# Transport failures worth another attempt
TRANSIENT_EXCEPTIONS: Tuple[Type[Exception], ...] = (
    httpx.TimeoutException,
    httpx.NetworkError,
    httpx.RemoteProtocolError,
)


@dataclass(frozen=True)
class RetryPolicy:
    """
    Bounded retry settings passed into the fetcher.

    Delay for attempt n (1-indexed) is min(base_delay * n, max_delay).
    """
    max_attempts: int = 3
    base_delay: float = 2.0
    max_delay: float = 10.0

    def delay_for(self, attempt: int, retry_after: Optional[float] = None) -> float:
        return calculate_backoff(attempt, self.base_delay, self.max_delay, retry_after)

    @classmethod
    def from_settings(cls, settings) -> "RetryPolicy":
        return cls(
            max_attempts=max(1, settings.fetch_max_attempts),
            base_delay=settings.fetch_base_delay_seconds,
            max_delay=settings.fetch_max_delay_seconds,
        )


def calculate_backoff(
    attempt: int,
    base_delay: float = 2.0,
    max_delay: float = 10.0,
    retry_after: Optional[float] = None
) -> float:
    """
    Linear, capped backoff.

    Args:
        attempt: Attempt that just failed (1-indexed)
        base_delay: Seconds added per attempt
        max_delay: Hard ceiling
        retry_after: Server hint (Retry-After); may lengthen the wait, never past max_delay

    Returns:
        Delay in seconds
    """
    delay = base_delay * max(attempt, 1)
    if retry_after is not None and retry_after > delay:
        delay = retry_after
    return min(delay, max_delay)


def classify_status(status_code: int) -> Optional[FetchErrorKind]:
    """Map an HTTP status to an error kind (None means success)"""
    if 200 <= status_code < 300:
        return None
    if status_code in RATE_LIMIT_STATUS_CODES:
        return FetchErrorKind.RATE_LIMITED
    if status_code in TRANSIENT_STATUS_CODES:
        return FetchErrorKind.TRANSIENT_NETWORK
    return FetchErrorKind.PERMANENT


def classify_exception(error: Exception) -> FetchErrorKind:
    """Transport exceptions are transient; anything else is permanent"""
    if isinstance(error, TRANSIENT_EXCEPTIONS):
        return FetchErrorKind.TRANSIENT_NETWORK
    return FetchErrorKind.PERMANENT


def parse_retry_after(value: Optional[str]) -> Optional[float]:
    """Seconds from a Retry-After header (HTTP-date form is ignored)"""
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        return None


@dataclass
class RetryStats:
    """Tracks retry statistics for a single fetch."""
    attempts: int = 0
    total_delay_seconds: float = 0.0
    last_error: Optional[str] = None
    errors: List[str] = field(default_factory=list)
    success: bool = False

    def record_attempt(self, error: Optional[str] = None, delay: float = 0.0):
        """Record a retry attempt."""
        self.attempts += 1
        self.total_delay_seconds += delay
        if error:
            self.last_error = error
            self.errors.append(error)

    def mark_success(self):
        self.success = True

    def to_dict(self) -> dict:
        """Convert to dictionary for logging/storage."""
        return {
            "attempts": self.attempts,
            "total_delay_seconds": round(self.total_delay_seconds, 2),
            "success": self.success,
            "last_error": self.last_error,
            "errors": self.errors[:5]  # Cap at 5 errors
        }
