import logging
from typing import Awaitable, Optional

import httpx
from fastapi.responses import PlainTextResponse, Response
from opentelemetry import trace

from app.relay.headers import passthrough_response, sanitize_response_headers
from app.utils.exception_logging import (
    format_exception_message,
    log_exception_with_details,
)

logger = logging.getLogger("uvicorn.error")

UPSTREAM_FAILED_MESSAGE = "Upstream fetch failed."


class RelayError(Exception):
    """Base class for failures that map onto a client-visible response."""

    status_code = 502
    public_message = UPSTREAM_FAILED_MESSAGE

    def __init__(self, message: Optional[str] = None):
        super().__init__(message or self.public_message)
        if message:
            self.public_message = message


class BadRequest(RelayError):
    """Disallowed or malformed relay target. No upstream call is made."""

    status_code = 400
    public_message = "bad target"


class UpstreamUnreachable(RelayError):
    """Timeout or transport failure after all retries were spent."""

    status_code = 502
    public_message = UPSTREAM_FAILED_MESSAGE

    def __init__(self, url: str, cause: Optional[BaseException] = None):
        super().__init__(UPSTREAM_FAILED_MESSAGE)
        self.url = url
        self.cause = cause

    def __str__(self) -> str:
        return f"Upstream unreachable: {self.url} ({self.cause!r})"


class UpstreamError(RelayError):
    """Upstream answered with 4xx/5xx; the status is passed through."""

    def __init__(self, response: httpx.Response):
        super().__init__(f"Upstream returned {response.status_code}")
        self.response = response
        self.status_code = response.status_code


class ParseFailure(RelayError):
    """A body could not be parsed; callers fall back to passthrough."""


def error_response(error: RelayError, public_host: str) -> Response:
    return PlainTextResponse(
        error.public_message,
        status_code=error.status_code,
        headers={"access-control-allow-origin": public_host},
    )


async def guarded(prefix: str, handler: Awaitable[Response], public_host: str) -> Response:
    """Await a route handler and convert failures into plain-text responses.

    Internal details are logged, never returned to the client.
    """
    try:
        return await handler
    except UpstreamError as e:
        upstream = e.response
        logger.warning(f"{prefix} Upstream answered {upstream.status_code} after retries")
        headers = sanitize_response_headers(upstream.headers, strip_security=True)
        headers["access-control-allow-origin"] = public_host
        return passthrough_response(upstream.status_code, headers, upstream.content)
    except BadRequest as e:
        logger.warning(f"{prefix} Rejected: {e.public_message}")
        return error_response(e, public_host)
    except RelayError as e:
        log_exception_with_details(logger, prefix, e)
        trace.get_current_span().set_attribute("proxy.error", format_exception_message(e))
        return error_response(e, public_host)
    except Exception as e:
        log_exception_with_details(logger, prefix, e)
        trace.get_current_span().set_attribute("proxy.error", format_exception_message(e))
        return PlainTextResponse(
            UPSTREAM_FAILED_MESSAGE,
            status_code=502,
            headers={"access-control-allow-origin": public_host},
        )
