import logging
from typing import Optional
from urllib.parse import SplitResult, parse_qsl, urlencode, urlsplit, urlunsplit

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import RedirectResponse, Response
from opentelemetry import trace

from app.config import SiteConfig, get_config
from app.errors import BadRequest, ParseFailure, UpstreamError, guarded
from app.fetch.client import UpstreamClient, get_upstream_client
from app.relay.headers import (
    api_relay_headers,
    passthrough_response,
    sanitize_response_headers,
)
from app.rewrite.client_scripts import worker_prologue
from app.rewrite.state_blob import API_PAYLOAD, PAGES_DATA, StateBlobRewriter
from app.rewrite.stylesheet import is_stylesheet, rewrite_stylesheet
from app.rewrite.url_classifier import RelayCategory, UrlClassifier, classifier_for
from app.utils import shorten_url
from app.utils.traced_requests import record_status, traced_request
from app.vars import RELAY_PREFIX

router = APIRouter(prefix=RELAY_PREFIX)
tracer = trace.get_tracer(__name__)
logger = logging.getLogger("uvicorn.error")

API_METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE"]
PAGES_DATA_PATH = "/pages/pages/thunderbolt"
SHORT_CACHE_HOSTS = ("wixstatic", "parastorage")
WORKER_CACHE_CONTROL = "public, max-age=31536000, immutable"


def parse_target(target: Optional[str], message: str) -> SplitResult:
    """Split an absolute http(s) relay target or raise ``BadRequest``."""
    if not target:
        raise BadRequest(message)
    try:
        parts = urlsplit(target)
        parts.port
    except ValueError:
        raise BadRequest(message)
    if parts.scheme not in ("http", "https") or not parts.hostname:
        raise BadRequest(message)
    return parts


def default_asset_cache_control(target: str) -> str:
    if any(name in target for name in SHORT_CACHE_HOSTS):
        return "public, max-age=120"
    return "public, max-age=86400"


def is_json(content_type: str) -> bool:
    return "json" in (content_type or "").lower()


def replace_query_param(url: str, name: str, value: str) -> str:
    parts = urlsplit(url)
    params = parse_qsl(parts.query, keep_blank_values=True)
    if not any(key == name for key, _ in params):
        return url
    params = [(key, value if key == name else val) for key, val in params]
    return urlunsplit(parts._replace(query=urlencode(params)))


# -- asset relay -----------------------------------------------------------


async def relay_asset(
    request: Request,
    target: Optional[str],
    classifier: UrlClassifier,
    client: UpstreamClient,
) -> Response:
    parts = parse_target(target, "bad asset url")
    if parts.scheme != "https" or not classifier.is_allowed_host(parts.hostname):
        raise BadRequest("bad asset url")
    public_host = classifier.config.public_host

    api_relay = classifier.api_relay_url(target)
    if api_relay is not None:
        logger.info(f"[AssetRelay] API URL sent to the asset relay, redirecting: {shorten_url(target)}")
        return RedirectResponse(
            api_relay,
            status_code=307,
            headers={"access-control-allow-origin": public_host},
        )

    with traced_request(
        tracer,
        operation="relay_asset",
        target_url=target,
        method=request.method,
        start_message=f"[AssetRelay] {request.method} {shorten_url(target)}",
        category=RelayCategory.ASSET_RELAY.value,
    ) as span:
        upstream = await client.fetch(request.method, target, headers={"accept": "*/*"})
        record_status(span, upstream)

        headers = sanitize_response_headers(upstream.headers, strip_security=True)
        headers["access-control-allow-origin"] = public_host
        headers.setdefault("cache-control", default_asset_cache_control(target))
        if "location" in headers:
            headers["location"] = classifier.rewrite(headers["location"])

        content_type = headers.get("content-type", "")
        body = upstream.content
        if request.method == "HEAD" or not body:
            return passthrough_response(upstream.status_code, headers, body)

        if is_stylesheet(content_type, parts.path):
            body = rewrite_stylesheet(upstream.text, classifier).encode("utf-8")
            headers["content-type"] = "text/css; charset=utf-8"
        elif is_json(content_type) or PAGES_DATA_PATH in parts.path:
            try:
                rewritten = StateBlobRewriter(classifier).rewrite_json_body(
                    upstream.text, PAGES_DATA
                )
            except ParseFailure as e:
                logger.debug(f"[AssetRelay] Passing JSON through unchanged: {e}")
            else:
                body = rewritten.encode("utf-8")
                headers["content-type"] = "application/json; charset=utf-8"

        return passthrough_response(upstream.status_code, headers, body)


@router.api_route("/asset", methods=["GET", "HEAD"])
async def asset_relay(
    request: Request,
    target: Optional[str] = Query(None),
    config: SiteConfig = Depends(get_config),
    client: UpstreamClient = Depends(get_upstream_client),
):
    """Fetch an allowlisted CDN resource on behalf of the page."""
    return await guarded(
        "[AssetRelay]",
        relay_asset(request, target, classifier_for(config), client),
        config.public_host,
    )


# -- api relay -------------------------------------------------------------


async def relay_api(
    request: Request,
    target: Optional[str],
    classifier: UrlClassifier,
    client: UpstreamClient,
) -> Response:
    parts = parse_target(target, "bad target")
    if not classifier.is_api_host(parts.hostname) or classifier.upstream_api_url(target) is None:
        raise BadRequest("bad target")
    public_host = classifier.config.public_host

    with traced_request(
        tracer,
        operation="relay_api",
        target_url=target,
        method=request.method,
        start_message=f"[ApiRelay] {request.method} {shorten_url(target)}",
        category=RelayCategory.API_RELAY.value,
    ) as span:
        body = await request.body() if request.method not in ("GET", "HEAD") else None
        upstream = await client.fetch(
            request.method,
            target,
            headers=api_relay_headers(request.headers),
            content=body,
        )
        record_status(span, upstream)

        headers = sanitize_response_headers(upstream.headers, strip_security=True)
        headers["access-control-allow-origin"] = public_host
        if 300 <= upstream.status_code < 400:
            headers["location"] = upstream.headers.get("location") or "/"

        content = upstream.content
        if is_json(headers.get("content-type", "")) and content:
            try:
                rewritten = StateBlobRewriter(classifier).rewrite_json_body(
                    upstream.text, API_PAYLOAD
                )
            except ParseFailure as e:
                logger.debug(f"[ApiRelay] Passing JSON through unchanged: {e}")
            else:
                content = rewritten.encode("utf-8")
                headers["content-type"] = "application/json; charset=utf-8"

        return passthrough_response(upstream.status_code, headers, content)


@router.api_route("/api", methods=API_METHODS)
async def api_relay(
    request: Request,
    target: Optional[str] = Query(None),
    config: SiteConfig = Depends(get_config),
    client: UpstreamClient = Depends(get_upstream_client),
):
    """Same-origin entry point for platform API calls."""
    return await guarded(
        "[ApiRelay]",
        relay_api(request, target, classifier_for(config), client),
        config.public_host,
    )


# -- worker relay ----------------------------------------------------------


async def relay_worker(
    target: Optional[str],
    classifier: UrlClassifier,
    client: UpstreamClient,
) -> Response:
    parts = parse_target(target, "bad worker url")
    if parts.scheme != "https" or not classifier.is_allowed_host(parts.hostname):
        raise BadRequest("bad worker url")
    if classifier.config.api_path in parts.path:
        raise BadRequest("api must go through the api relay")
    config = classifier.config

    upstream_url = replace_query_param(target, "externalBaseUrl", config.public_origin)
    with traced_request(
        tracer,
        operation="relay_worker",
        target_url=upstream_url,
        method="GET",
        start_message=f"[WorkerRelay] GET {shorten_url(upstream_url)}",
        category=RelayCategory.WORKER_RELAY.value,
    ) as span:
        upstream = await client.fetch("GET", upstream_url, headers={"accept": "*/*"})
        record_status(span, upstream)
        if upstream.status_code >= 400:
            raise UpstreamError(upstream)

        script = worker_prologue(classifier) + upstream.text
        return Response(
            content=script.encode("utf-8"),
            status_code=200,
            headers={
                "content-type": "application/javascript; charset=UTF-8",
                "cache-control": WORKER_CACHE_CONTROL,
                "access-control-allow-origin": config.public_host,
            },
        )


@router.get("/worker")
async def worker_relay(
    target: Optional[str] = Query(None),
    config: SiteConfig = Depends(get_config),
    client: UpstreamClient = Depends(get_upstream_client),
):
    """Serve a platform worker script with the interception prologue prepended."""
    return await guarded(
        "[WorkerRelay]",
        relay_worker(target, classifier_for(config), client),
        config.public_host,
    )
