"""
URL classification and translation between upstream and public identities.

Every URL discovered in a response body is passed through
``UrlClassifier.classify`` which decides whether it is relayed through one of
the proxy's relay endpoints, rewritten to a plain public link, or left alone.
The same rules are exported through ``client_rules`` so the scripts injected
into pages and workers make identical decisions at runtime.
"""

import logging
import posixpath
import re
from dataclasses import dataclass
from enum import Enum
from functools import lru_cache
from typing import Any, Dict, Optional
from urllib.parse import SplitResult, quote, urlsplit

from app.config import WORKER_URL_FIELDS, SiteConfig

logger = logging.getLogger("uvicorn.error")

# A match must not run on into a longer host, port or path segment. A dot
# only continues the host when another label follows it.
_CONTINUATION = r"(?![\w:-]|\.[\w-])"

DEFAULT_PORTS = {"http": "80", "https": "443"}

DOCUMENT_EXT_RE = re.compile(r"\.html?$", re.IGNORECASE)
VIEWER_DOCUMENT_RE = re.compile(
    r"/services/[^/]+/.*viewer(?:Widget|App)\.html$", re.IGNORECASE
)
EMBED_PATH_RE = re.compile(r"/iframe|/embed", re.IGNORECASE)


class RelayCategory(str, Enum):
    PASSTHROUGH_CROSS_ORIGIN = "passthrough_cross_origin"
    ASSET_RELAY = "asset"
    API_RELAY = "api"
    WORKER_RELAY = "worker"
    PUBLIC_LINK = "public_link"
    UNCLASSIFIED = "unclassified"


RELAY_CATEGORIES = frozenset(
    {RelayCategory.ASSET_RELAY, RelayCategory.API_RELAY, RelayCategory.WORKER_RELAY}
)


@dataclass(frozen=True)
class Classification:
    category: RelayCategory
    rewritten: Optional[str] = None

    @property
    def is_relay(self) -> bool:
        return self.category in RELAY_CATEGORIES

    @property
    def replaces(self) -> bool:
        """True when the rewritten form should replace the original URL."""
        return self.rewritten is not None and (
            self.is_relay or self.category == RelayCategory.PUBLIC_LINK
        )


UNCLASSIFIED = Classification(RelayCategory.UNCLASSIFIED)
PASSTHROUGH = Classification(RelayCategory.PASSTHROUGH_CROSS_ORIGIN)


def encode_target(url: str) -> str:
    return quote(url, safe="")


class UrlClassifier:
    def __init__(self, config: SiteConfig):
        self.config = config
        self.site_path = config.site_path or ""
        self.relay_prefix = config.relay_prefix
        self.origin_host = config.origin_host
        self.public_hostname = config.public_hostname
        self.static_hosts = frozenset(h.lower() for h in config.static_hosts)
        self.allowed_hosts = frozenset(h.lower() for h in config.allowed_hosts)
        self.api_domains = tuple(d.lower() for d in config.api_domains)

        scheme = urlsplit(config.origin).scheme.lower()
        origin = re.escape(config.origin)
        default_port = DEFAULT_PORTS.get(scheme)
        if default_port:
            origin += f"(?::{default_port})?"
        site = re.escape(self.site_path)
        self._origin_site_text = (
            re.compile(origin + site + _CONTINUATION, re.IGNORECASE)
            if self.site_path
            else None
        )
        self._origin_text = re.compile(origin + _CONTINUATION, re.IGNORECASE)
        self._origin_site_anchored = (
            re.compile("^" + origin + site + _CONTINUATION, re.IGNORECASE)
            if self.site_path
            else None
        )
        self._origin_anchored = re.compile("^" + origin + _CONTINUATION, re.IGNORECASE)
        self.allowed_hosts_re = re.compile(
            r"^https?://(?:"
            + "|".join(re.escape(h) for h in sorted(self.allowed_hosts))
            + r")(?=[/?#]|$)",
            re.IGNORECASE,
        )
        self.static_hosts_re = re.compile(
            r"^https://(?:"
            + "|".join(re.escape(h) for h in sorted(self.static_hosts))
            + r")(?=[/?#]|$)",
            re.IGNORECASE,
        )

    # -- site path prefix -------------------------------------------------

    def strip_site_prefix(self, path: Any) -> Any:
        """Remove the site mount point from the front of a path.

        Non-strings and paths outside the mount point are returned unchanged.
        """
        if not isinstance(path, str) or not self.site_path:
            return path
        if path == self.site_path:
            return "/"
        if not path.startswith(self.site_path):
            return path
        rest = path[len(self.site_path):]
        if rest.startswith("/"):
            return rest
        if rest[:1] in ("?", "#"):
            return "/" + rest
        return path

    def reattach_site_prefix(self, path: str) -> str:
        if not self.site_path:
            return path
        if not path.startswith("/"):
            path = "/" + path
        return self.site_path + path

    def has_site_prefix(self, path: Any) -> bool:
        return isinstance(path, str) and self.strip_site_prefix(path) != path

    # -- origin substitution ----------------------------------------------

    def to_public(self, url: Any) -> Any:
        """Anchored Origin(+SitePathPrefix) -> PublicOrigin / PublicHost."""
        if not isinstance(url, str):
            return url
        if self._origin_site_anchored is not None:
            replaced, count = self._origin_site_anchored.subn(
                lambda _: self.config.public_origin, url, count=1
            )
            if count:
                return replaced
        return self._origin_anchored.sub(lambda _: self.config.public_host, url, count=1)

    def substitute_origin(self, text: str) -> str:
        """Replace every upstream origin occurrence inside a text body."""
        if self._origin_site_text is not None:
            text = self._origin_site_text.sub(lambda _: self.config.public_origin, text)
        return self._origin_text.sub(lambda _: self.config.public_host, text)

    # -- host checks --------------------------------------------------------

    def is_allowed_host(self, host: Optional[str]) -> bool:
        return bool(host) and host.lower() in self.allowed_hosts

    def is_static_host(self, host: Optional[str]) -> bool:
        return bool(host) and host.lower() in self.static_hosts

    def is_api_host(self, host: Optional[str]) -> bool:
        if not host:
            return False
        host = host.lower()
        if host == self.origin_host:
            return True
        return any(host == d or host.endswith("." + d) for d in self.api_domains)

    def is_api_path(self, path: str) -> bool:
        return (path or "").startswith(self.config.api_path)

    def is_relay_url(self, url: str) -> bool:
        prefix = self.relay_prefix + "/"
        return url.startswith(prefix) or url.startswith(self.config.public_host + prefix)

    # -- relay forms ----------------------------------------------------------

    def relay_url(self, kind: str, target: str) -> str:
        return f"{self.relay_prefix}/{kind}?target={encode_target(target)}"

    def asset_relay_url(self, url: str) -> str:
        return self.relay_url("asset", _absolute(url))

    def worker_relay_url(self, url: str) -> str:
        return self.relay_url("worker", _absolute(url))

    def upstream_api_url(self, url: str) -> Optional[str]:
        """Upstream-facing form of an API URL, or None when ``url`` is not one.

        Same-origin (relative or public host) API paths are rebuilt against
        ``Origin + SitePathPrefix``.
        """
        try:
            parts = urlsplit(url)
            host = (parts.hostname or "").lower()
        except ValueError:
            return None
        if parts.scheme and parts.scheme not in ("http", "https"):
            return None
        if not parts.netloc or host == self.public_hostname:
            if not self.is_api_path(parts.path):
                return None
            tail = parts.path + (f"?{parts.query}" if parts.query else "")
            return self.config.origin + self.site_path + tail
        if not self.is_api_host(host):
            return None
        path = parts.path
        if host == self.origin_host:
            path = self.strip_site_prefix(path)
        if not self.is_api_path(path):
            return None
        return _absolute(url)

    def api_relay_url(self, url: str) -> Optional[str]:
        upstream = self.upstream_api_url(url)
        if upstream is None:
            return None
        return self.relay_url("api", upstream)

    # -- classification -------------------------------------------------------

    def is_document(self, parts: SplitResult, attr: Optional[str] = None) -> bool:
        path = parts.path or ""
        if DOCUMENT_EXT_RE.search(path) or VIEWER_DOCUMENT_RE.search(path):
            return True
        if attr and attr.lower() == "src" and EMBED_PATH_RE.search(path):
            return True
        extension = posixpath.splitext(path)[1]
        return not extension and not self.is_static_host(parts.hostname)

    def classify(
        self, url: Any, attr: Optional[str] = None, field: Optional[str] = None
    ) -> Classification:
        """Decide the relay category of ``url`` and its public replacement.

        ``attr`` is the markup attribute the URL was found in (``src``/``href``)
        and ``field`` the JSON field name, when known.
        """
        if not isinstance(url, str) or not url or self.is_relay_url(url):
            return UNCLASSIFIED
        try:
            parts = urlsplit(url)
            parts.port
        except ValueError:
            logger.debug(f"[Classifier] Unparseable URL left untouched: {url!r}")
            return UNCLASSIFIED

        api_relay = self.api_relay_url(url)
        if api_relay is not None:
            return Classification(RelayCategory.API_RELAY, api_relay)

        if not parts.netloc or parts.scheme not in ("http", "https", ""):
            return UNCLASSIFIED
        host = (parts.hostname or "").lower()

        if field in WORKER_URL_FIELDS and self.is_allowed_host(host):
            return Classification(RelayCategory.WORKER_RELAY, self.worker_relay_url(url))

        if self.is_document(parts, attr):
            if host == self.origin_host:
                public = self.to_public(url)
                if public != url:
                    return Classification(RelayCategory.PUBLIC_LINK, public)
            return PASSTHROUGH

        if self.is_allowed_host(host):
            return Classification(RelayCategory.ASSET_RELAY, self.asset_relay_url(url))

        public = self.to_public(url)
        if public != url:
            return Classification(RelayCategory.PUBLIC_LINK, public)
        return UNCLASSIFIED

    def rewrite(self, url: Any, attr: Optional[str] = None, field: Optional[str] = None) -> Any:
        """Public replacement for ``url``, or ``url`` itself when it stays."""
        result = self.classify(url, attr=attr, field=field)
        return result.rewritten if result.replaces else url

    def client_rules(self) -> Dict[str, Any]:
        """Rule set serialized into the interception scripts."""
        return {
            "relayPrefix": self.relay_prefix,
            "apiPath": self.config.api_path,
            "origin": self.config.origin,
            "originHost": self.origin_host,
            "sitePath": self.site_path,
            "publicHost": self.config.public_host,
            "publicOrigin": self.config.public_origin,
            "apiDomains": list(self.api_domains),
            "allowedHosts": sorted(self.allowed_hosts),
        }


def _absolute(url: str) -> str:
    return "https:" + url if url.startswith("//") else url


@lru_cache(maxsize=8)
def classifier_for(config: SiteConfig) -> UrlClassifier:
    """Shared classifier per configuration; regexes are compiled once."""
    return UrlClassifier(config)
