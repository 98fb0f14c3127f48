"""HTTP transport with bounded retry and exponential backoff.

Only the request that *establishes* a response is retried.  Once bytes
start flowing the caller owns the response, and a failure mid-body is the
caller's to report; replaying it here would duplicate partial output.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator

import httpx

_logger = logging.getLogger(__name__)

# Defaults
DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_TIMEOUT = 30.0  # seconds until the response must begin
_BACKOFF_BASE = 1.0  # seconds -- exponential: 1, 2, 4, ...
_ERROR_BODY_LIMIT = 500


@dataclass(frozen=True)
class RetryPolicy:
    """How hard to try establishing a response."""

    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    timeout: float = DEFAULT_TIMEOUT
    backoff_base: float = _BACKOFF_BASE

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            object.__setattr__(self, "max_attempts", 1)

    def delay(self, attempt: int) -> float:
        """Seconds to wait after failed *attempt* (0-based)."""
        return self.backoff_base * (2 ** attempt)


class TransportError(Exception):
    """No response could be established after all attempts."""

    def __init__(
        self,
        message: str,
        *,
        last_error: BaseException | None = None,
        attempts: int = 0,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.last_error = last_error
        self.attempts = attempts
        self.status_code = status_code


async def _backoff(seconds: float) -> None:
    await asyncio.sleep(seconds)


async def _error_body(response: httpx.Response) -> str:
    try:
        body = (await response.aread()).decode(errors="replace")
    except httpx.HTTPError:
        return ""
    return body.strip()[:_ERROR_BODY_LIMIT]


def _describe(error: BaseException | None) -> str:
    if error is None:
        return "unknown error"
    if isinstance(error, asyncio.TimeoutError):
        return "timed out waiting for response"
    text = str(error)
    return text or type(error).__name__


async def _connect(
    client: httpx.AsyncClient,
    method: str,
    url: str,
    policy: RetryPolicy,
    **kwargs: Any,
) -> httpx.Response:
    """Send with retries; return a 2xx response whose body is unread."""
    last_error: BaseException | None = None
    status_code: int | None = None

    for attempt in range(policy.max_attempts):
        request = client.build_request(method, url, **kwargs)
        try:
            response = await asyncio.wait_for(
                client.send(request, stream=True), timeout=policy.timeout,
            )
        except asyncio.TimeoutError as e:
            last_error = e
        except httpx.HTTPError as e:
            last_error = e
        else:
            if response.is_success:
                if attempt:
                    _logger.info(
                        "%s %s succeeded on attempt %d/%d",
                        method, url, attempt + 1, policy.max_attempts,
                    )
                return response
            status_code = response.status_code
            body = await _error_body(response)
            await response.aclose()
            detail = f"HTTP {status_code}"
            if body:
                detail = f"{detail}: {body}"
            last_error = httpx.HTTPStatusError(detail, request=request, response=response)

        _logger.warning(
            "%s %s failed (attempt %d/%d): %s",
            method, url, attempt + 1, policy.max_attempts, _describe(last_error),
        )
        if attempt < policy.max_attempts - 1:
            await _backoff(policy.delay(attempt))

    raise TransportError(
        f"Request failed after {policy.max_attempts} attempt(s): {_describe(last_error)}",
        last_error=last_error,
        attempts=policy.max_attempts,
        status_code=status_code,
    )


@asynccontextmanager
async def open_stream(
    client: httpx.AsyncClient,
    method: str,
    url: str,
    *,
    policy: RetryPolicy | None = None,
    headers: dict[str, str] | None = None,
    json: Any = None,
) -> AsyncIterator[httpx.Response]:
    """Establish a streaming response, retrying until it begins.

    Usage::

        async with open_stream(client, "POST", "/chat", json=body) as resp:
            async for chunk in resp.aiter_bytes():
                ...

    Raises ``TransportError`` after exhaustion.  The response is closed on
    exit.
    """
    response = await _connect(
        client, method, url, policy or RetryPolicy(), headers=headers, json=json,
    )
    try:
        yield response
    finally:
        await response.aclose()


async def request_with_retry(
    client: httpx.AsyncClient,
    method: str,
    url: str,
    *,
    policy: RetryPolicy | None = None,
    headers: dict[str, str] | None = None,
    json: Any = None,
) -> httpx.Response:
    """Non-streaming request: same retry policy, body fully read."""
    async with open_stream(
        client, method, url, policy=policy, headers=headers, json=json,
    ) as response:
        await response.aread()
    return response
