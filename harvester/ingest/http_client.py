"""Centralized HTTP client with size-capped streaming and status-aware error handling."""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Optional

import httpx

from harvester.config import settings

logger = logging.getLogger(__name__)

USER_AGENT = "Harvester Price Crawler/1.0"

# Retryable exceptions (transport errors)
RETRYABLE_EXC = (
    httpx.ReadTimeout,
    httpx.ConnectTimeout,
    httpx.ConnectError,
    httpx.RemoteProtocolError,
    httpx.PoolTimeout,
)


@dataclass(frozen=True)
class SitePolicy:
    """HTTP request policy for one upstream."""

    name: str
    max_attempts: int = 3
    timeout: httpx.Timeout = None  # Will be set from settings if None
    treat_403_as_blocked: bool = True
    treat_404_as_permanent: bool = True
    treat_401_as_blocked: bool = True

    def __post_init__(self):
        if self.timeout is None:
            object.__setattr__(self, "timeout", httpx.Timeout(settings.fetch_timeout_seconds))


@dataclass
class FetchedPage:
    """Body and metadata of one successful response."""

    url: str
    status_code: int
    content: bytes
    content_type: str = ""


class BlockedError(RuntimeError):
    """Raised when access is blocked (403, 401, or /blocked redirect)."""
    pass


class PermanentURLError(RuntimeError):
    """Raised when URL is permanently invalid (404)."""
    pass


class TransientFetchError(RuntimeError):
    """Raised when fetch fails after retries (5xx, timeouts, etc.)."""
    pass


class RateLimitedError(RuntimeError):
    """Raised when rate limited (429)."""

    def __init__(self, retry_after: Optional[int] = None):
        super().__init__("Rate limited")
        self.retry_after = retry_after


class ResponseTooLargeError(RuntimeError):
    """Raised when a response body exceeds the byte limit; the stream is aborted."""

    def __init__(self, url: str, limit: int):
        super().__init__(f"Response from {url} exceeds {limit} bytes")
        self.url = url
        self.limit = limit


def default_headers() -> dict[str, str]:
    return {
        "User-Agent": USER_AGENT,
        "Accept": "application/json, application/xml, text/html;q=0.9, */*;q=0.8",
        "Accept-Encoding": "gzip, deflate",
    }


def default_policy() -> SitePolicy:
    return SitePolicy(name="default", max_attempts=settings.fetch_max_attempts)


def create_client() -> httpx.AsyncClient:
    """Shared client for all fetches."""
    return httpx.AsyncClient(
        timeout=httpx.Timeout(settings.fetch_timeout_seconds),
        follow_redirects=True,
        limits=httpx.Limits(max_connections=50, max_keepalive_connections=10),
    )


async def _read_capped(resp: httpx.Response, url: str, max_bytes: int) -> bytes:
    declared = resp.headers.get("Content-Length")
    if declared and declared.isdigit() and int(declared) > max_bytes:
        raise ResponseTooLargeError(url, max_bytes)

    chunks: list[bytes] = []
    size = 0
    async for chunk in resp.aiter_bytes():
        size += len(chunk)
        if size > max_bytes:
            raise ResponseTooLargeError(url, max_bytes)
        chunks.append(chunk)
    return b"".join(chunks)


def _backoff(attempt: int) -> float:
    return (2 ** attempt) + random.random()


async def fetch_with_policy(
    client: httpx.AsyncClient,
    url: str,
    policy: SitePolicy,
    max_bytes: int,
    headers: Optional[dict[str, str]] = None,
) -> FetchedPage:
    """
    Fetch URL with policy, status-aware error handling and a body size cap.

    The body is streamed and the connection closed as soon as ``max_bytes``
    is exceeded, so an oversized upstream never lands in memory.

    Args:
        client: httpx AsyncClient instance
        url: URL to fetch
        policy: SitePolicy configuration
        max_bytes: Maximum body size
        headers: Optional additional headers (merged with defaults)

    Returns:
        FetchedPage on success

    Raises:
        BlockedError: If access is blocked (403, 401, or /blocked redirect)
        PermanentURLError: If URL is permanently invalid (404)
        RateLimitedError: If still rate limited after retries (429)
        TransientFetchError: If fetch fails after retries
        ResponseTooLargeError: If the body exceeds max_bytes
    """
    hdrs = default_headers()
    if headers:
        hdrs.update(headers)

    last_exc: Exception | None = None

    for attempt in range(1, policy.max_attempts + 1):
        try:
            async with client.stream(
                "GET",
                url,
                headers=hdrs,
                timeout=policy.timeout,
                follow_redirects=True,
            ) as resp:
                if "/blocked" in str(resp.url).lower():
                    raise BlockedError(f"{policy.name}: blocked redirect: {resp.url}")

                sc = resp.status_code

                if sc == 404 and policy.treat_404_as_permanent:
                    raise PermanentURLError(f"{policy.name}: 404 for {url}")

                if (sc == 401 and policy.treat_401_as_blocked) or (
                    sc == 403 and policy.treat_403_as_blocked
                ):
                    raise BlockedError(f"{policy.name}: {sc} for {url}")

                if sc == 429:
                    retry_after = resp.headers.get("Retry-After")
                    raise RateLimitedError(
                        retry_after=int(retry_after) if retry_after and retry_after.isdigit() else None
                    )

                if 200 <= sc < 300:
                    content = await _read_capped(resp, url, max_bytes)
                    return FetchedPage(
                        url=str(resp.url),
                        status_code=sc,
                        content=content,
                        content_type=resp.headers.get("Content-Type", ""),
                    )

                raise TransientFetchError(f"{policy.name}: status {sc} for {url}")

        except RateLimitedError as e:
            last_exc = e
            if attempt >= policy.max_attempts:
                raise
            if e.retry_after is not None and e.retry_after > settings.fetch_max_retry_after_seconds:
                # Too long to hold the worker; the job queue reschedules instead
                logger.warning(
                    f"{policy.name}: Rate limited (429) with Retry-After {e.retry_after}s, "
                    f"handing back to the job queue"
                )
                raise
            sleep_s = float(e.retry_after) if e.retry_after is not None else _backoff(attempt)
            logger.warning(
                f"{policy.name}: Rate limited (429), retrying in {sleep_s:.1f}s "
                f"(attempt {attempt}/{policy.max_attempts})"
            )
            await asyncio.sleep(sleep_s)

        except RETRYABLE_EXC as e:
            last_exc = e
            if attempt >= policy.max_attempts:
                raise TransientFetchError(
                    f"{policy.name}: Transport error after {policy.max_attempts} attempts: {url}"
                ) from e
            sleep_s = _backoff(attempt)
            logger.warning(
                f"{policy.name}: Transport error ({type(e).__name__}), "
                f"retrying in {sleep_s:.1f}s (attempt {attempt}/{policy.max_attempts})"
            )
            await asyncio.sleep(sleep_s)

        except TransientFetchError as e:
            last_exc = e
            if attempt >= policy.max_attempts:
                raise
            sleep_s = _backoff(attempt)
            logger.warning(
                f"{policy.name}: {e}, retrying in {sleep_s:.1f}s "
                f"(attempt {attempt}/{policy.max_attempts})"
            )
            await asyncio.sleep(sleep_s)

    raise TransientFetchError(
        f"{policy.name}: failed after {policy.max_attempts} attempts: {url}"
    ) from last_exc
