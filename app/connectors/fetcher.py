"""
Rate-limited fetcher

Executes one outbound vendor call, classifies the response and retries
rate-limit and transient failures with linear, capped backoff. Failures are
returned as a classified FetchError instead of being raised, so callers can
choose between skip-and-continue (rate limited) and abort (permanent).
"""
import asyncio
import weakref
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Callable, Dict, Optional

import httpx

from app.config import get_settings
from app.utils.logger import log
from app.utils.retry import (
    FetchErrorKind,
    RetryPolicy,
    RetryStats,
    classify_exception,
    classify_status,
    parse_retry_after,
)

# Vendor hook: inspect a response and return a kind, or None for "no opinion"
VendorClassifier = Callable[[httpx.Response], Optional[FetchErrorKind]]


@dataclass
class FetchRequest:
    """One outbound call. Only reads and read-only queries go through here."""
    url: str
    method: str = "GET"
    params: Optional[Dict[str, Any]] = None
    json: Optional[Dict[str, Any]] = None
    headers: Dict[str, str] = field(default_factory=dict)
    credential: str = ""
    # Calls that start remote work (bulk submit) must not be repeated
    idempotent: bool = True
    label: str = "request"


class FetchError(Exception):
    """Classified failure after retries were exhausted (or not allowed)"""

    def __init__(
        self,
        kind: FetchErrorKind,
        message: str,
        status_code: Optional[int] = None,
        attempts: int = 1
    ):
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.status_code = status_code
        self.attempts = attempts

    @property
    def gave_up_rate_limited(self) -> bool:
        return self.kind == FetchErrorKind.RATE_LIMITED

    @property
    def is_permanent(self) -> bool:
        return self.kind == FetchErrorKind.PERMANENT

    def __repr__(self):
        return f"FetchError({self.kind.value}, status={self.status_code}, attempts={self.attempts}, {self.message!r})"


@dataclass
class FetchResult:
    response: Optional[httpx.Response] = None
    error: Optional[FetchError] = None
    stats: RetryStats = field(default_factory=RetryStats)

    @property
    def ok(self) -> bool:
        return self.error is None and self.response is not None

    def json(self) -> Any:
        return self.response.json() if self.response is not None else None

    def raise_for_error(self) -> httpx.Response:
        if self.error is not None:
            raise self.error
        return self.response


class CredentialGate:
    """
    Caps concurrent in-flight calls per vendor credential.

    Every connection that shares a credential draws on the same vendor
    rate-limit bucket, so the cap is keyed by credential rather than by
    connection.
    """

    def __init__(self, max_in_flight: int = 4):
        self.max_in_flight = max(1, max_in_flight)
        # Semaphores bind to the loop that first waits on them, so one set per loop
        self._semaphores = weakref.WeakKeyDictionary()
        self._in_flight: Dict[str, int] = {}

    def _semaphore(self, key: str) -> asyncio.Semaphore:
        per_loop = self._semaphores.setdefault(asyncio.get_running_loop(), {})
        if key not in per_loop:
            per_loop[key] = asyncio.Semaphore(self.max_in_flight)
        return per_loop[key]

    @asynccontextmanager
    async def slot(self, credential: str):
        key = credential or "_anonymous"
        async with self._semaphore(key):
            self._in_flight[key] = self._in_flight.get(key, 0) + 1
            try:
                yield
            finally:
                self._in_flight[key] -= 1

    def in_flight(self, credential: str) -> int:
        return self._in_flight.get(credential or "_anonymous", 0)


_shared_gate: Optional[CredentialGate] = None


def shared_gate() -> CredentialGate:
    """Process-wide gate so all connections on one credential share the cap"""
    global _shared_gate
    if _shared_gate is None:
        _shared_gate = CredentialGate(get_settings().max_in_flight_per_credential)
    return _shared_gate


class RateLimitedFetcher:
    """Single-call executor with bounded retries"""

    def __init__(
        self,
        client: httpx.AsyncClient,
        policy: Optional[RetryPolicy] = None,
        gate: Optional[CredentialGate] = None,
        vendor_classifier: Optional[VendorClassifier] = None,
        sleep: Callable[[float], Any] = asyncio.sleep,
        name: str = "vendor"
    ):
        self.client = client
        self.policy = policy or RetryPolicy.from_settings(get_settings())
        self.gate = gate or shared_gate()
        self.vendor_classifier = vendor_classifier
        self._sleep = sleep
        self.name = name

    async def fetch(self, request: FetchRequest) -> FetchResult:
        stats = RetryStats()
        max_attempts = self.policy.max_attempts if request.idempotent else 1

        for attempt in range(1, max_attempts + 1):
            response, kind, message, retry_after = await self._attempt(request)

            if kind is None:
                stats.record_attempt()
                stats.mark_success()
                if attempt > 1:
                    log.info(f"{self.name} {request.label} succeeded on attempt {attempt}")
                return FetchResult(response=response, stats=stats)

            status_code = response.status_code if response is not None else None
            log.warning(
                f"{self.name} {request.label} attempt {attempt}/{max_attempts} "
                f"classified {kind.value} (status={status_code}): {message}"
            )

            if not kind.is_retryable or attempt >= max_attempts:
                stats.record_attempt(error=f"{kind.value}: {message}")
                return FetchResult(
                    error=FetchError(kind, message, status_code=status_code, attempts=attempt),
                    stats=stats
                )

            delay = self.policy.delay_for(attempt, retry_after)
            stats.record_attempt(error=f"{kind.value}: {message}", delay=delay)
            await self._sleep(delay)

        # max_attempts is always >= 1, the loop returns before reaching here
        raise RuntimeError("Retry loop exited without a result")

    async def stream_lines(self, request: FetchRequest) -> AsyncIterator[str]:
        """
        Stream a line-oriented body (bulk result files).

        Opening the stream is retried like fetch(). Once a line has been
        yielded a broken stream is raised as a FetchError, never replayed.
        """
        max_attempts = self.policy.max_attempts if request.idempotent else 1

        for attempt in range(1, max_attempts + 1):
            started = False
            retry_after = None
            status_code = None
            try:
                async with self.client.stream(
                    request.method, request.url, params=request.params, headers=request.headers
                ) as response:
                    kind = classify_status(response.status_code)
                    if kind is None:
                        async for line in response.aiter_lines():
                            started = True
                            yield line
                        return
                    status_code = response.status_code
                    retry_after = parse_retry_after(response.headers.get("Retry-After"))
                    message = f"{request.label} returned {status_code}"
            except httpx.HTTPError as e:
                kind = classify_exception(e)
                message = f"{request.label} failed: {type(e).__name__}: {e}"
                if started:
                    raise FetchError(kind, message, attempts=attempt)

            log.warning(
                f"{self.name} {request.label} attempt {attempt}/{max_attempts} "
                f"classified {kind.value} (status={status_code}): {message}"
            )
            if not kind.is_retryable or attempt >= max_attempts:
                raise FetchError(kind, message, status_code=status_code, attempts=attempt)
            await self._sleep(self.policy.delay_for(attempt, retry_after))

    async def _attempt(self, request: FetchRequest):
        """Run one call; returns (response, kind, message, retry_after)"""
        try:
            async with self.gate.slot(request.credential):
                response = await self.client.request(
                    request.method,
                    request.url,
                    params=request.params,
                    json=request.json,
                    headers=request.headers,
                )
        except (httpx.HTTPError, httpx.InvalidURL) as e:
            return None, classify_exception(e), f"{type(e).__name__}: {e}", None

        kind = self.vendor_classifier(response) if self.vendor_classifier else None
        if kind is None:
            kind = classify_status(response.status_code)
        if kind is None:
            return response, None, "", None

        retry_after = parse_retry_after(response.headers.get("Retry-After"))
        return response, kind, response.text[:300], retry_after
