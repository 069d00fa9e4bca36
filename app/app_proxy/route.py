import logging
import posixpath

from fastapi import APIRouter, Depends, Request
from fastapi.responses import Response
from opentelemetry import trace

from app.config import SiteConfig, get_config
from app.errors import guarded
from app.fetch.client import UpstreamClient, get_upstream_client
from app.relay.headers import (
    filter_request_headers,
    passthrough_response,
    sanitize_response_headers,
)
from app.rewrite.markup import MarkupRewriter
from app.rewrite.url_classifier import UrlClassifier, classifier_for
from app.utils import shorten_url
from app.utils.traced_requests import record_status, traced_request

router = APIRouter()
tracer = trace.get_tracer(__name__)
logger = logging.getLogger("uvicorn.error")

FORWARD_METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE"]
STATIC_EXTENSIONS = {
    ".js",
    ".css",
    ".png",
    ".jpg",
    ".jpeg",
    ".webp",
    ".gif",
    ".svg",
    ".ico",
    ".woff",
    ".woff2",
    ".ttf",
}
STATIC_CACHE_CONTROL = "public, max-age=86400"


def file_extension(path: str) -> str:
    return posixpath.splitext(path)[1].lower()


def looks_like_html(path: str) -> bool:
    """Paths without an extension or ending in .html are pages."""
    return file_extension(path) in ("", ".html", ".htm")


def get_target_url(path: str, query: str, classifier: UrlClassifier) -> str:
    """Construct the upstream URL for a public request path.

    A path that already carries the site prefix is not prefixed twice.
    """
    upstream_path = classifier.reattach_site_prefix(classifier.strip_site_prefix(path))
    url = classifier.config.origin + upstream_path
    return f"{url}?{query}" if query else url


def rewrite_location_header(location: str, classifier: UrlClassifier) -> str:
    """Map an upstream redirect target onto the public site."""
    if not location:
        return "/"
    return classifier.to_public(location)


async def forward_to_origin(
    request: Request, classifier: UrlClassifier, client: UpstreamClient
) -> Response:
    """
    Forward a public request to the upstream origin and rewrite the answer.
    - redirects only keep a rewritten Location
    - HTML goes through the markup passes
    - JavaScript gets the upstream origin replaced
    - everything else is passed through with a default cache lifetime
    """
    config = classifier.config
    path = request.url.path
    query = request.url.query
    target_url = get_target_url(path, query, classifier)

    with traced_request(
        tracer,
        operation="forward_request",
        target_url=target_url,
        method=request.method,
        start_message=f"[Forward] {request.method} {path} -> {shorten_url(target_url)}",
    ) as span:
        headers = filter_request_headers(
            request.headers, config.public_host, html_like=looks_like_html(path)
        )
        body = await request.body() if request.method not in ("GET", "HEAD") else None
        upstream = await client.fetch(request.method, target_url, headers=headers, content=body)
        record_status(span, upstream)

        if 300 <= upstream.status_code < 400 and upstream.status_code != 304:
            location = rewrite_location_header(upstream.headers.get("location"), classifier)
            span.set_attribute("proxy.rewritten_location", location)
            return Response(
                status_code=upstream.status_code,
                headers={
                    "location": location,
                    "access-control-allow-origin": config.public_host,
                },
            )

        response_headers = sanitize_response_headers(upstream.headers, strip_security=True)
        response_headers["access-control-allow-origin"] = config.public_host
        if upstream.status_code == 304 or request.method == "HEAD":
            return passthrough_response(upstream.status_code, response_headers)

        content_type = response_headers.get("content-type", "").lower()
        if "text/html" in content_type:
            html = MarkupRewriter(config, classifier).rewrite(upstream.text, path, query)
            return passthrough_response(
                upstream.status_code, response_headers, html.encode("utf-8")
            )

        if "javascript" in content_type or file_extension(path) == ".js":
            script = classifier.substitute_origin(upstream.text)
            response_headers["content-type"] = "application/javascript; charset=UTF-8"
            return passthrough_response(
                upstream.status_code, response_headers, script.encode("utf-8")
            )

        if file_extension(path) in STATIC_EXTENSIONS:
            response_headers.setdefault("cache-control", STATIC_CACHE_CONTROL)
        return passthrough_response(upstream.status_code, response_headers, upstream.content)


# Register catch-all route for forwarding; must be included last
@router.api_route("/{path:path}", methods=FORWARD_METHODS)
async def forward_all(
    request: Request,
    path: str,
    config: SiteConfig = Depends(get_config),
    client: UpstreamClient = Depends(get_upstream_client),
):
    """Catch-all route that forwards every other request to the upstream site."""
    return await guarded(
        "[Forward]",
        forward_to_origin(request, classifier_for(config), client),
        config.public_host,
    )
