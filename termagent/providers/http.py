"""HTTP send with retry, backoff and Retry-After handling.

Retried: 408, 429, every 5xx, and transport-level failures (connection
resets, timeouts, protocol errors).  Other 4xx responses fail on the
first attempt.  A Retry-After header (seconds or HTTP-date) overrides the
computed backoff; otherwise the delay is full-jitter exponential.
"""

from __future__ import annotations

import asyncio
import logging
import random
import re
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime

import httpx
from dateutil import parser as dateutil_parser

from termagent.cancellation import CancellationToken
from termagent.errors import CancellationError, ProviderError

logger = logging.getLogger(__name__)

# Upper bound for a server-provided Retry-After
MAX_RETRY_AFTER = 60.0

_NETWORK_ERROR_PATTERN = re.compile(
    r"econnreset|econnrefused|etimedout|socket hang up|connection (reset|refused|closed)|network",
    re.IGNORECASE,
)

Sleep = Callable[[float], Awaitable[None]]


@dataclass
class RetryPolicy:
    max_retries: int = 2
    base_delay: float = 0.5
    max_delay: float = 8.0
    jitter: float = 1.0

    @classmethod
    def from_settings(cls, settings_service) -> RetryPolicy:
        return cls(
            max_retries=int(settings_service.get("agent.retry.max_retries", 2)),
            base_delay=float(settings_service.get("agent.retry.base_delay", 0.5)),
            max_delay=float(settings_service.get("agent.retry.max_delay", 8.0)),
            jitter=float(settings_service.get("agent.retry.jitter", 1.0)),
        )


def is_retryable_status(status: int | None) -> bool:
    if status is None:
        return False
    return status in (408, 429) or 500 <= status < 600


def is_retryable_error(error: BaseException) -> bool:
    if isinstance(error, CancellationError):
        return False
    if isinstance(error, ProviderError):
        if error.status is not None:
            return is_retryable_status(error.status)
        return bool(_NETWORK_ERROR_PATTERN.search(str(error)))
    if isinstance(error, httpx.TransportError):
        return True
    return bool(_NETWORK_ERROR_PATTERN.search(str(error)))


def parse_retry_after(value: str | None, now: datetime | None = None) -> float | None:
    """Seconds to wait from a Retry-After header value, or None if unusable."""
    if not value:
        return None
    value = value.strip()
    try:
        seconds = float(value)
    except ValueError:
        seconds = None
    if seconds is not None:
        return max(0.0, seconds)

    try:
        when = dateutil_parser.parse(value)
    except (OverflowError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=UTC)
    now = now or datetime.now(UTC)
    return max(0.0, (when - now).total_seconds())


def compute_backoff(attempt: int, policy: RetryPolicy, rng: Callable[[], float] = random.random) -> float:
    """Delay before retry number *attempt* (0-based)."""
    capped = min(policy.max_delay, policy.base_delay * (2**attempt))
    jitter = min(max(policy.jitter, 0.0), 1.0)
    return capped * (1 - jitter) + capped * jitter * rng()


def retry_delay(error: BaseException, attempt: int, policy: RetryPolicy) -> float:
    if isinstance(error, ProviderError):
        retry_after = parse_retry_after(error.headers.get("retry-after"))
        if retry_after is not None:
            return min(retry_after, MAX_RETRY_AFTER)
    return compute_backoff(attempt, policy)


async def raise_for_status(response: httpx.Response, provider: str) -> None:
    """Read the body of a failed response and raise ProviderError."""
    if response.status_code < 400:
        return
    body = (await response.aread()).decode("utf-8", errors="replace")
    await response.aclose()
    raise ProviderError(
        f"{provider} request failed: {response.status_code} {response.reason_phrase} - {body[:500]}",
        status=response.status_code,
        headers=dict(response.headers),
        response_body=body,
    )


async def send_with_retry(
    client: httpx.AsyncClient,
    build_request: Callable[[], httpx.Request],
    *,
    provider: str,
    policy: RetryPolicy,
    signal: CancellationToken | None = None,
    stream: bool = False,
    sleep: Sleep | None = None,
) -> httpx.Response:
    """Send a request, retrying transient failures.

    Returns a response with a 2xx/3xx status.  With ``stream=True`` the
    caller owns the response and must ``aclose()`` it.
    """
    attempt = 0
    while True:
        if signal:
            signal.raise_if_cancelled()
        try:
            request = build_request()
            send = client.send(request, stream=stream)
            response = await (signal.run(send) if signal else send)
            await raise_for_status(response, provider)
            return response
        except (ProviderError, httpx.TransportError) as e:
            if attempt >= policy.max_retries or not is_retryable_error(e):
                if isinstance(e, httpx.TransportError):
                    raise ProviderError(f"{provider} request failed: {e}") from e
                raise
            delay = retry_delay(e, attempt, policy)
            logger.warning(
                "%s request failed (attempt %d/%d), retrying in %.2fs: %s",
                provider,
                attempt + 1,
                policy.max_retries + 1,
                delay,
                e,
            )
            attempt += 1
            if sleep is not None:
                if signal:
                    await signal.run(sleep(delay))
                else:
                    await sleep(delay)
            elif signal:
                await signal.sleep(delay)
            else:
                await asyncio.sleep(delay)
