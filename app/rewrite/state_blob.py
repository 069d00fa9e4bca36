"""
Deep rewriting of embedded JSON state (viewer model, warmup data, page maps).

The upstream platform's bootstrap state has no contract, so it is handled as
an untyped tree of dicts, lists and scalars. Rewriting is a set of independent
passes over that tree:

* route values: well-known URL-bearing keys are stripped of the site prefix
  and translated to relay or public links;
* key remapping: mapping keys that are prefixed paths (``pagesMap``) lose the
  site prefix;
* known shapes: explicit fixes for fields whose meaning the generic passes
  cannot infer (worker bootstrap URL, API base paths, cookie path, ...).

Unknown fields pass through unchanged.
"""

import json
import logging
import re
from typing import Any, Dict, FrozenSet, Iterator, List, Optional, Tuple, Union
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from app.config import WORKER_URL_FIELDS
from app.errors import ParseFailure
from app.rewrite.url_classifier import RelayCategory, UrlClassifier

logger = logging.getLogger("uvicorn.error")

JsonTree = Union[Dict[str, Any], List[Any], str, int, float, bool, None]

ROUTE_KEYS: FrozenSet[str] = frozenset(
    {
        "url",
        "href",
        "baseUrl",
        "basePath",
        "publicBaseUrl",
        "routerPublicBaseUrl",
        "appRouterPrefix",
        "prefix",
        "pageUriSEO",
        "canonicalUrl",
    }
)
PAGES_DATA_ROUTE_KEYS: FrozenSet[str] = frozenset(
    {
        "url",
        "baseUrl",
        "basePath",
        "publicBaseUrl",
        "routerPublicBaseUrl",
        "appRouterPrefix",
        "prefix",
    }
)

MAX_DEPTH = 6
WARMUP_DEPTH = 5
WORKER_FIELD_DEPTH = 5
BASE_PATH_DEPTH = 7

VIEWER_MODEL = "viewer_model"
WARMUP = "warmup"
API_PAYLOAD = "api"
PAGES_DATA = "pages_data"


def iter_mappings(node: JsonTree, max_depth: int = MAX_DEPTH, depth: int = 0) -> Iterator[Tuple[dict, int]]:
    """Yield every mapping of the tree, parents first.

    A mapping's children are read only after it has been yielded, so the
    consumer may rename keys or replace values of the yielded mapping.
    """
    if depth > max_depth:
        return
    if isinstance(node, dict):
        yield node, depth
        children = list(node.values())
    elif isinstance(node, list):
        children = list(node)
    else:
        return
    for child in children:
        if isinstance(child, (dict, list)):
            yield from iter_mappings(child, max_depth, depth + 1)


def parse_state_blob(text: str) -> JsonTree:
    try:
        return json.loads(text)
    except (ValueError, TypeError) as e:
        raise ParseFailure(f"state blob is not valid JSON: {e}") from e


def html_safe_json(raw: str) -> str:
    """Escape serialized JSON so it can sit inside a <script> element.

    ``<`` is written as its unicode escape, which disarms ``</script`` and
    ``<!--`` while leaving the JSON value unchanged.
    """
    return (
        raw.replace("<", "\\u003c")
        .replace("\u2028", "\\u2028")
        .replace("\u2029", "\\u2029")
    )


def dump_json(tree: JsonTree) -> str:
    return json.dumps(tree, ensure_ascii=False, separators=(",", ":"))


def _child(tree: Any, *path: str) -> Optional[dict]:
    node = tree
    for key in path:
        if not isinstance(node, dict):
            return None
        node = node.get(key)
    return node if isinstance(node, dict) else None


class StateBlobRewriter:
    def __init__(self, classifier: UrlClassifier):
        self.classifier = classifier
        self.config = classifier.config
        origin = re.escape(self.config.origin)
        site = re.escape(classifier.site_path)
        self._literal_site_re = (
            re.compile('"' + site + r'(/[^"]*)"') if classifier.site_path else None
        )
        self._literal_origin_site_re = (
            re.compile('"' + origin + site + r"(?![\w.:-])") if classifier.site_path else None
        )
        self._literal_origin_re = re.compile('"' + origin + r"(?![\w.:-])")

    # -- string translation -------------------------------------------------

    def rewrite_route_value(self, value: str) -> str:
        """Strip the site prefix, then relay API links or publicize the rest."""
        translated = self.classifier.strip_site_prefix(value)
        if self.classifier.is_relay_url(translated):
            return translated
        if self.config.api_path in translated:
            relay = self.classifier.api_relay_url(translated)
            return relay if relay is not None else translated
        return self.classifier.to_public(translated)

    def translate_string(self, value: str) -> str:
        """API/origin translation for string values outside the route keys."""
        if self.classifier.is_relay_url(value):
            return value
        if self.config.api_path in value:
            if "://" in value:
                relay = self.classifier.api_relay_url(value)
                if relay is not None:
                    return relay
            return value
        return self.classifier.to_public(value)

    def map_api_base(self, value: str) -> str:
        if "_api/" not in value or self.classifier.is_relay_url(value):
            return value
        relay = self.classifier.api_relay_url(value)
        return relay if relay is not None else value

    # -- generic passes -------------------------------------------------------

    def rewrite_route_values(
        self,
        tree: JsonTree,
        keys: FrozenSet[str] = ROUTE_KEYS,
        scan_strings: bool = False,
        max_depth: int = MAX_DEPTH,
    ) -> JsonTree:
        for mapping, _ in iter_mappings(tree, max_depth):
            for key, value in list(mapping.items()):
                if not isinstance(value, str):
                    continue
                if key in keys:
                    mapping[key] = self.rewrite_route_value(value)
                elif scan_strings:
                    mapping[key] = self.translate_string(value)
        return tree

    def remap_prefixed_keys(self, tree: JsonTree, max_depth: int = MAX_DEPTH) -> JsonTree:
        """Rename mapping keys that start with the site prefix.

        Order is preserved. When two keys collapse onto the same stripped
        name the later one in document order wins.
        """
        strip = self.classifier.strip_site_prefix
        for mapping, _ in iter_mappings(tree, max_depth):
            if not any(self.classifier.has_site_prefix(key) for key in mapping):
                continue
            remapped: Dict[str, Any] = {}
            for key, value in mapping.items():
                new_key = strip(key)
                if new_key in remapped:
                    logger.warning(
                        f"[StateBlob] Key {key!r} collapses onto {new_key!r}; keeping the later value"
                    )
                remapped[new_key] = value
            mapping.clear()
            mapping.update(remapped)
        return tree

    # -- known shapes ---------------------------------------------------------

    def fix_worker_urls(self, tree: JsonTree, max_depth: int = WORKER_FIELD_DEPTH) -> JsonTree:
        for mapping, _ in iter_mappings(tree, max_depth):
            for key in mapping.keys() & WORKER_URL_FIELDS:
                value = mapping[key]
                if not isinstance(value, str) or not re.match(r"^https?://", value):
                    continue
                result = self.classifier.classify(value, field=key)
                if result.category == RelayCategory.WORKER_RELAY:
                    mapping[key] = result.rewritten
        return tree

    def fix_api_base_paths(self, tree: JsonTree, max_depth: int = BASE_PATH_DEPTH) -> JsonTree:
        for mapping, _ in iter_mappings(tree, max_depth):
            url_data = mapping.get("urlData")
            if isinstance(url_data, dict) and isinstance(url_data.get("basePath"), str):
                url_data["basePath"] = self.map_api_base(url_data["basePath"])
            if isinstance(mapping.get("basePath"), str):
                mapping["basePath"] = self.map_api_base(mapping["basePath"])
        return tree

    def fix_viewer_model_shapes(self, tree: JsonTree) -> JsonTree:
        if not isinstance(tree, dict):
            return tree
        public_origin = self.config.public_origin
        to_public = self.classifier.to_public

        if tree.get("requestUrl"):
            tree["requestUrl"] = public_origin + "/"
        site = _child(tree, "site")
        if site is not None and site.get("externalBaseUrl"):
            site["externalBaseUrl"] = public_origin

        self.fix_worker_urls(tree)

        cookies = _child(tree, "siteFeaturesConfigs", "cookiesManager")
        if cookies is not None and cookies.get("cookieSitePath"):
            cookies["cookieSitePath"] = "/"

        self.fix_api_base_paths(tree)

        code_sdk = _child(tree, "siteFeaturesConfigs", "elementorySupportWixCodeSdk")
        if code_sdk is not None:
            if code_sdk.get("baseUrl"):
                code_sdk["baseUrl"] = to_public(code_sdk["baseUrl"])
            if code_sdk.get("relativePath"):
                code_sdk["relativePath"] = self.classifier.strip_site_prefix(
                    code_sdk["relativePath"]
                )
        data_sdk = _child(tree, "siteFeaturesConfigs", "dataWixCodeSdk")
        if data_sdk is not None and data_sdk.get("cloudDataUrlWithExternalBase"):
            data_sdk["cloudDataUrlWithExternalBase"] = to_public(
                data_sdk["cloudDataUrlWithExternalBase"]
            )

        multilingual = _child(tree, "siteFeaturesConfigs", "multilingual")
        if multilingual is not None:
            for name in ("originalLanguage", "currentLanguage"):
                language = _child(multilingual, name)
                if language is not None and language.get("url"):
                    language["url"] = to_public(language["url"])
            for language in multilingual.get("siteLanguages") or []:
                if isinstance(language, dict) and language.get("url"):
                    language["url"] = to_public(language["url"])

        if isinstance(tree.get("dynamicModelUrl"), str):
            tree["dynamicModelUrl"] = self._set_query_param(
                tree["dynamicModelUrl"], "originUrl", public_origin + "/"
            )
        return tree

    def fix_pages_data_shapes(self, tree: JsonTree) -> JsonTree:
        if not isinstance(tree, dict):
            return tree
        strip = self.classifier.strip_site_prefix
        pages_map = tree.get("pagesMap")
        if isinstance(pages_map, dict):
            self.remap_prefixed_keys(pages_map, max_depth=0)
        for router in tree.get("routers") or []:
            if not isinstance(router, dict):
                continue
            for key in ("prefix", "baseUrl", "basePath"):
                if isinstance(router.get(key), str):
                    router[key] = strip(router[key])
            for page in router.get("pages") or []:
                if isinstance(page, dict) and isinstance(page.get("url"), str):
                    page["url"] = strip(page["url"])
        if isinstance(tree.get("baseUrl"), str):
            tree["baseUrl"] = strip(tree["baseUrl"])
        return tree

    @staticmethod
    def _set_query_param(url: str, name: str, value: str) -> str:
        try:
            parts = urlsplit(url)
        except ValueError:
            return url
        params = parse_qsl(parts.query, keep_blank_values=True)
        if not any(key == name for key, _ in params):
            return url
        params = [(key, value if key == name else val) for key, val in params]
        return urlunsplit(parts._replace(query=urlencode(params)))

    # -- profiles -------------------------------------------------------------

    def rewrite_tree(self, tree: JsonTree, profile: str) -> JsonTree:
        if profile == VIEWER_MODEL:
            self.rewrite_route_values(tree, ROUTE_KEYS, scan_strings=True)
            self.remap_prefixed_keys(tree)
            self.fix_viewer_model_shapes(tree)
            self.remap_prefixed_keys(tree)
        elif profile == WARMUP:
            self.rewrite_route_values(tree, ROUTE_KEYS, max_depth=WARMUP_DEPTH)
            self.remap_prefixed_keys(tree)
        elif profile == PAGES_DATA:
            self.fix_pages_data_shapes(tree)
            self.rewrite_route_values(tree, PAGES_DATA_ROUTE_KEYS)
            self.remap_prefixed_keys(tree)
        elif profile == API_PAYLOAD:
            self.rewrite_route_values(tree, ROUTE_KEYS)
            self.remap_prefixed_keys(tree)
        else:
            raise ValueError(f"Unknown state blob profile: {profile}")
        return tree

    def rewrite_serialized_literals(self, raw: str) -> str:
        """Last textual sweep over JSON string literals of the viewer model."""
        if self._literal_site_re is not None:
            raw = self._literal_site_re.sub(lambda m: '"' + m.group(1) + '"', raw)
        if self._literal_origin_site_re is not None:
            raw = self._literal_origin_site_re.sub(
                lambda _: '"' + self.config.public_origin, raw
            )
        return self._literal_origin_re.sub(lambda _: '"' + self.config.public_host, raw)

    def rewrite_embedded_block(self, text: str, profile: str) -> str:
        """Rewrite the JSON inside a page <script> block. Raises ParseFailure."""
        tree = self.rewrite_tree(parse_state_blob(text), profile)
        raw = dump_json(tree)
        if profile == VIEWER_MODEL:
            raw = self.rewrite_serialized_literals(raw)
        return html_safe_json(raw)

    def rewrite_json_body(self, text: str, profile: str) -> str:
        """Rewrite a JSON response body. Raises ParseFailure."""
        return dump_json(self.rewrite_tree(parse_state_blob(text), profile))
