from typing import Dict, Iterable, List, Mapping, Optional, Tuple, Union

from fastapi.responses import Response

ALLOW_METHODS = "GET,HEAD,POST,OPTIONS,PUT,PATCH,DELETE"

# Hop-by-hop headers that should NOT be forwarded (RFC 2616), plus a few
# request-scoped ones the upstream must not see echoed back.
HOP_BY_HOP_HEADERS = {
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailer",
    "trailers",
    "transfer-encoding",
    "upgrade",
    "expect",
    "pragma",
}

# Headers that stop the page from being embedded or rehosted
SECURITY_HEADERS = {
    "content-security-policy",
    "content-security-policy-report-only",
    "x-frame-options",
    "permissions-policy",
    "cross-origin-embedder-policy",
    "cross-origin-opener-policy",
    "report-to",
    "nel",
}

# Bodies are re-emitted decoded, so the upstream framing no longer applies
BODY_FRAMING_HEADERS = {"content-length", "content-encoding"}

REQUEST_SAFELIST = {
    "content-type",
    "accept",
    "accept-language",
    "origin",
    "referer",
    "user-agent",
    "authorization",
}

REQUEST_DROP = {"host", "content-length", "accept-encoding"} | HOP_BY_HOP_HEADERS

API_RELAY_HEADERS = ("content-type", "accept", "accept-language")

HeaderSource = Union[Mapping[str, str], Iterable[Tuple[str, str]]]


def _items(headers: HeaderSource) -> Iterable[Tuple[str, str]]:
    if hasattr(headers, "multi_items"):
        return headers.multi_items()
    if hasattr(headers, "items"):
        return headers.items()
    return headers


class PassthroughHeaders(dict):
    """Flat response headers plus every upstream ``set-cookie`` value.

    Cookies cannot be folded into one header value, so they are kept apart
    and appended to the outgoing response by ``passthrough_response``.
    """

    def __init__(self):
        super().__init__()
        self.cookies: List[str] = []


def sanitize_response_headers(
    headers: HeaderSource, strip_security: bool = True
) -> PassthroughHeaders:
    """Copy upstream response headers, dropping hop-by-hop and framing headers.

    Header names are lower-cased and repeated headers are joined with a
    comma, except ``set-cookie`` which is collected in ``.cookies``.
    """
    result = PassthroughHeaders()
    for name, value in _items(headers):
        name_lower = name.lower()
        if name_lower in HOP_BY_HOP_HEADERS or name_lower in BODY_FRAMING_HEADERS:
            continue
        if strip_security and name_lower in SECURITY_HEADERS:
            continue
        if name_lower == "set-cookie":
            result.cookies.append(value)
        elif name_lower in result:
            result[name_lower] = f"{result[name_lower]}, {value}"
        else:
            result[name_lower] = value
    return result


def passthrough_response(
    status_code: int, headers: Mapping[str, str], content: Optional[bytes] = None
) -> Response:
    """Response carrying sanitized upstream headers, one line per upstream cookie."""
    response = Response(content=content, status_code=status_code, headers=headers)
    for cookie in getattr(headers, "cookies", ()):
        response.headers.append("set-cookie", cookie)
    return response


def filter_request_headers(
    headers: HeaderSource, public_host: str, html_like: bool = False
) -> Dict[str, str]:
    """
    Prepare headers for forwarding to the upstream origin.
    Only a safelist and any x-* header pass; origin/referer default to the
    public host so the upstream sees requests coming from the public site.
    """
    forwarded: Dict[str, str] = {
        "user-agent": "Mozilla/5.0",
        "accept": "*/*",
        "accept-language": "en",
    }
    for name, value in _items(headers):
        name_lower = name.lower()
        if name_lower in REQUEST_DROP:
            continue
        if name_lower not in REQUEST_SAFELIST and not name_lower.startswith("x-"):
            continue
        if value:
            forwarded[name_lower] = value

    forwarded.setdefault("origin", public_host)
    forwarded.setdefault("referer", public_host + "/")
    if html_like:
        forwarded["accept-encoding"] = "identity"
    return forwarded


def api_relay_headers(headers: Mapping[str, str]) -> Dict[str, str]:
    result = {}
    for name in API_RELAY_HEADERS:
        value = headers.get(name)
        if value:
            result[name] = value
    return result


def preflight_headers(public_host: str, requested: Optional[str]) -> Dict[str, str]:
    return {
        "access-control-allow-origin": public_host,
        "access-control-allow-methods": ALLOW_METHODS,
        "access-control-allow-headers": requested or "*",
        "access-control-max-age": "600",
    }
