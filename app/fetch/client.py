"""
Upstream fetch client with timeout and bounded retry.

Every call the proxy makes to the upstream platform goes through
``UpstreamClient.fetch``. Retries happen on transport failures and on 429/5xx
answers, sleeping ``base_delay * attempt`` between attempts. When attempts run
out, a retryable status raises ``UpstreamError`` (status passed through by the
route layer) and a transport failure raises ``UpstreamUnreachable``.
"""

import asyncio
import functools
import logging
from typing import Awaitable, Callable, Dict, Optional

import httpx

from app.config import SiteConfig, get_config
from app.errors import UpstreamError, UpstreamUnreachable

logger = logging.getLogger("uvicorn.error")

RETRY_STATUSES = frozenset({429})


def is_retryable_status(status_code: int) -> bool:
    return status_code in RETRY_STATUSES or status_code >= 500


def with_retries(attempts: int = 3, base_delay: float = 0.4):
    """Decorate an async call returning ``httpx.Response`` with retry/backoff.

    The decorated function may receive ``attempts`` / ``base_delay`` keyword
    overrides; they are consumed by the wrapper.
    """

    def decorator(fn: Callable[..., Awaitable[httpx.Response]]):
        @functools.wraps(fn)
        async def wrapper(*args, **kwargs) -> httpx.Response:
            max_attempts = max(1, kwargs.pop("attempts", None) or attempts)
            delay = kwargs.pop("base_delay", None)
            delay = base_delay if delay is None else delay
            url = kwargs.get("url") or (args[1] if len(args) > 1 else "<unknown>")

            last_exc: Optional[BaseException] = None
            for attempt in range(1, max_attempts + 1):
                try:
                    response = await fn(*args, **kwargs)
                except (httpx.TimeoutException, httpx.TransportError) as exc:
                    last_exc = exc
                    logger.warning(
                        f"[Fetch] Attempt {attempt}/{max_attempts} for {url} failed: {exc!r}"
                    )
                else:
                    if not is_retryable_status(response.status_code):
                        return response
                    if attempt == max_attempts:
                        logger.error(
                            f"[Fetch] {url} still answering {response.status_code} "
                            f"after {max_attempts} attempts"
                        )
                        raise UpstreamError(response)
                    logger.warning(
                        f"[Fetch] Attempt {attempt}/{max_attempts} for {url} "
                        f"returned {response.status_code}"
                    )
                if attempt < max_attempts:
                    await asyncio.sleep(delay * attempt)

            logger.error(f"[Fetch] Giving up on {url} after {max_attempts} attempts")
            raise UpstreamUnreachable(str(url), last_exc)

        return wrapper

    return decorator


@with_retries()
async def send_once(
    method: str,
    url: str,
    headers: Optional[Dict[str, str]] = None,
    content: Optional[bytes] = None,
    timeout: float = 30.0,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> httpx.Response:
    async with httpx.AsyncClient(
        timeout=httpx.Timeout(timeout),
        follow_redirects=False,
        transport=transport,
    ) as http:
        return await http.request(
            method=method,
            url=url,
            headers=headers,
            content=content if method not in ("GET", "HEAD") else None,
        )


class UpstreamClient:
    """Single-shot upstream requests; redirects are never followed."""

    def __init__(
        self,
        timeout: float = 30.0,
        attempts: int = 3,
        backoff_seconds: float = 0.4,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.timeout = timeout
        self.attempts = attempts
        self.backoff_seconds = backoff_seconds
        self.transport = transport

    @classmethod
    def from_config(cls, config: SiteConfig) -> "UpstreamClient":
        return cls(
            timeout=config.timeout,
            attempts=config.fetch_attempts,
            backoff_seconds=config.backoff_seconds,
        )

    async def fetch(
        self,
        method: str,
        url: str,
        headers: Optional[Dict[str, str]] = None,
        content: Optional[bytes] = None,
    ) -> httpx.Response:
        return await send_once(
            method,
            url,
            headers=headers,
            content=content,
            timeout=self.timeout,
            transport=self.transport,
            attempts=self.attempts,
            base_delay=self.backoff_seconds,
        )


_default_client: Optional[UpstreamClient] = None


def get_upstream_client() -> UpstreamClient:
    global _default_client
    if _default_client is None:
        _default_client = UpstreamClient.from_config(get_config())
    return _default_client
