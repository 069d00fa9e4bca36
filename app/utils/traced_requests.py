import logging
from contextlib import contextmanager
from typing import Optional

import httpx
from opentelemetry.trace import Span, Status, StatusCode, Tracer

from app.utils import shorten_url

logger = logging.getLogger("uvicorn.error")


@contextmanager
def traced_request(
    tracer: Tracer,
    operation: str,
    target_url: Optional[str],
    method: Optional[str],
    start_message: str,
    category: Optional[str] = None,
):
    """Open a span for one upstream round trip and log where it goes."""
    with tracer.start_as_current_span(operation) as span:
        if target_url:
            span.set_attribute("proxy.target_url", shorten_url(target_url))
        if method:
            span.set_attribute("proxy.method", method)
        if category:
            span.set_attribute("relay.category", category)
        logger.debug(start_message)
        yield span


def record_status(span: Span, response: httpx.Response) -> None:
    span.set_attribute("proxy.status_code", response.status_code)
    if response.status_code >= 500:
        span.set_status(Status(StatusCode.ERROR, f"upstream {response.status_code}"))
