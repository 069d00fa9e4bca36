import copy
import json
import logging
from urllib.parse import quote

import pytest

from app.errors import ParseFailure
from app.rewrite.state_blob import (
    API_PAYLOAD,
    PAGES_DATA,
    VIEWER_MODEL,
    WARMUP,
    StateBlobRewriter,
    html_safe_json,
    iter_mappings,
)


@pytest.fixture
def rewriter(classifier):
    return StateBlobRewriter(classifier)


def api(url):
    return "/__x/api?target=" + quote(url, safe="")


class TestRouteValues:
    """Generic pass over well-known URL-bearing keys."""

    def test_prefix_is_stripped_from_route_keys(self, rewriter):
        tree = {"routes": [{"url": "/mysite/about", "prefix": "/mysite/blog", "title": "/mysite/x"}]}
        rewriter.rewrite_route_values(tree)
        assert tree["routes"][0] == {"url": "/about", "prefix": "/blog", "title": "/mysite/x"}

    def test_absolute_origin_links_become_public(self, rewriter):
        tree = {"canonicalUrl": "https://example.wixsite.com/mysite/shop"}
        rewriter.rewrite_route_values(tree)
        assert tree["canonicalUrl"] == "https://www.example.com/shop"

    def test_api_links_go_through_the_api_relay(self, rewriter):
        url = "https://www.wix.com/_api/v1/things"
        tree = {"baseUrl": url}
        rewriter.rewrite_route_values(tree)
        assert tree["baseUrl"] == api(url)

    def test_scan_strings_translates_other_values(self, rewriter):
        url = "https://example.wixsite.com/mysite/_api/v2/dynamicmodel"
        tree = {"dynamicModelApi": url, "logoUrl": "https://example.wixsite.com/pic.png", "n": 3}
        rewriter.rewrite_route_values(tree, scan_strings=True)
        assert tree["dynamicModelApi"] == api(url)
        assert tree["logoUrl"] == "https://www.example.com/pic.png"
        assert tree["n"] == 3

    def test_depth_limit(self, rewriter):
        deep = {"url": "/mysite/deep"}
        tree = deep
        for _ in range(8):
            tree = {"child": tree}
        rewriter.rewrite_route_values(tree, max_depth=6)
        assert deep["url"] == "/mysite/deep"

    def test_relay_links_are_not_rewritten_again(self, rewriter):
        relayed = api("https://www.wix.com/_api/x")
        tree = {"url": relayed}
        rewriter.rewrite_route_values(tree)
        assert tree["url"] == relayed


class TestKeyRemap:
    def test_pages_map_keys_lose_the_prefix(self, rewriter):
        tree = {"pagesMap": {"/mysite/about": {"id": "a"}, "/mysite/contact": {"id": "c"}}}
        rewriter.remap_prefixed_keys(tree)
        assert list(tree["pagesMap"]) == ["/about", "/contact"]
        assert tree["pagesMap"]["/about"] == {"id": "a"}

    def test_order_is_preserved(self, rewriter):
        tree = {"m": {"first": 1, "/mysite/second": 2, "third": 3}}
        rewriter.remap_prefixed_keys(tree)
        assert list(tree["m"]) == ["first", "/second", "third"]

    def test_collision_keeps_later_value_and_logs(self, rewriter, caplog):
        tree = json.loads('{"m": {"/about": "plain", "/mysite/about": "prefixed"}}')
        with caplog.at_level(logging.WARNING, logger="uvicorn.error"):
            rewriter.remap_prefixed_keys(tree)
        assert tree["m"] == {"/about": "prefixed"}
        assert "collapses" in caplog.text


class TestKnownShapes:
    def test_viewer_model_shapes(self, rewriter):
        worker = "https://static.parastorage.com/services/wix-thunderbolt/dist/clientWorker.js"
        tree = {
            "requestUrl": "https://example.wixsite.com/mysite/about",
            "site": {"externalBaseUrl": "https://example.wixsite.com/mysite"},
            "clientTopology": {"clientWorkerUrl": worker},
            "siteFeaturesConfigs": {
                "cookiesManager": {"cookieSitePath": "/mysite"},
                "elementorySupportWixCodeSdk": {
                    "baseUrl": "https://example.wixsite.com/mysite",
                    "relativePath": "/mysite/_api/x",
                },
                "dataWixCodeSdk": {
                    "cloudDataUrlWithExternalBase": "https://example.wixsite.com/mysite/_api/cloud-data"
                },
                "multilingual": {
                    "originalLanguage": {"url": "https://example.wixsite.com/mysite"},
                    "siteLanguages": [{"url": "https://example.wixsite.com/mysite/fr"}],
                },
            },
            "dynamicModelUrl": "https://example.wixsite.com/mysite/_api/v2/dynamicmodel?originUrl=x&b=1",
        }
        rewriter.fix_viewer_model_shapes(tree)
        assert tree["requestUrl"] == "https://www.example.com/"
        assert tree["site"]["externalBaseUrl"] == "https://www.example.com"
        assert tree["clientTopology"]["clientWorkerUrl"] == "/__x/worker?target=" + quote(worker, safe="")
        features = tree["siteFeaturesConfigs"]
        assert features["cookiesManager"]["cookieSitePath"] == "/"
        assert features["elementorySupportWixCodeSdk"]["baseUrl"] == "https://www.example.com"
        assert features["elementorySupportWixCodeSdk"]["relativePath"] == "/_api/x"
        assert (
            features["dataWixCodeSdk"]["cloudDataUrlWithExternalBase"]
            == "https://www.example.com/_api/cloud-data"
        )
        assert features["multilingual"]["originalLanguage"]["url"] == "https://www.example.com"
        assert features["multilingual"]["siteLanguages"][0]["url"] == "https://www.example.com/fr"
        assert "originUrl=https%3A%2F%2Fwww.example.com%2F" in tree["dynamicModelUrl"]
        assert tree["dynamicModelUrl"].endswith("&b=1")

    def test_api_base_paths(self, rewriter):
        base = "https://example.wixsite.com/mysite/_api/wix-forms"
        tree = {"apps": {"forms": {"urlData": {"basePath": base}, "basePath": "/static/x"}}}
        rewriter.fix_api_base_paths(tree)
        assert tree["apps"]["forms"]["urlData"]["basePath"] == api(base)
        assert tree["apps"]["forms"]["basePath"] == "/static/x"

    def test_pages_data_shapes(self, rewriter):
        tree = {
            "pagesMap": {"/mysite/a": 1},
            "routers": [
                {
                    "prefix": "/mysite/blog",
                    "baseUrl": "/mysite",
                    "pages": [{"url": "/mysite/blog/post"}],
                }
            ],
            "baseUrl": "/mysite/",
        }
        rewriter.fix_pages_data_shapes(tree)
        assert tree["pagesMap"] == {"/a": 1}
        assert tree["routers"][0]["prefix"] == "/blog"
        assert tree["routers"][0]["baseUrl"] == "/"
        assert tree["routers"][0]["pages"][0]["url"] == "/blog/post"
        assert tree["baseUrl"] == "/"


class TestProfiles:
    @pytest.mark.parametrize("profile", [VIEWER_MODEL, WARMUP, API_PAYLOAD, PAGES_DATA])
    def test_idempotent_without_route_or_prefixed_keys(self, rewriter, profile):
        tree = {
            "title": "Home",
            "items": [{"id": 1, "tags": ["a", "b"]}, {"id": 2, "nested": {"flag": True}}],
            "image": "https://static.wixstatic.com/media/a.jpg",
        }
        once = rewriter.rewrite_tree(copy.deepcopy(tree), profile)
        twice = rewriter.rewrite_tree(copy.deepcopy(once), profile)
        assert once == twice

    def test_unknown_profile(self, rewriter):
        with pytest.raises(ValueError):
            rewriter.rewrite_tree({}, "nope")

    def test_warmup_profile_strips_route_keys(self, rewriter):
        tree = {"pages": {"current": {"url": "/mysite/about"}}}
        assert rewriter.rewrite_tree(tree, WARMUP) == {"pages": {"current": {"url": "/about"}}}

    def test_api_payload_leaves_unknown_fields(self, rewriter):
        tree = {"href": "/mysite/item/1", "payload": "/mysite/item/1"}
        assert rewriter.rewrite_tree(tree, API_PAYLOAD) == {"href": "/item/1", "payload": "/mysite/item/1"}


class TestSerialization:
    def test_embedded_block_is_html_safe(self, rewriter):
        text = json.dumps({"note": "</script><!-- x", "url": "/mysite/a"})
        out = rewriter.rewrite_embedded_block(text, VIEWER_MODEL)
        assert "</script" not in out
        assert "<!--" not in out
        assert json.loads(out) == {"note": "</script><!-- x", "url": "/a"}

    def test_line_separators_are_escaped(self):
        raw = json.dumps({"t": "a\u2028b\u2029c"}, ensure_ascii=False)
        safe = html_safe_json(raw)
        assert "\u2028" not in safe and "\u2029" not in safe
        assert json.loads(safe) == {"t": "a\u2028b\u2029c"}

    def test_literal_pass_on_viewer_model(self, rewriter):
        text = json.dumps({"a": {"b": {"c": {"d": {"e": {"f": {"g": {"path": "/mysite/deep"}}}}}}}})
        out = rewriter.rewrite_embedded_block(text, VIEWER_MODEL)
        assert '"/deep"' in out

    def test_parse_failure(self, rewriter):
        with pytest.raises(ParseFailure):
            rewriter.rewrite_embedded_block("{not json", VIEWER_MODEL)

    def test_json_body_is_compact(self, rewriter):
        out = rewriter.rewrite_json_body('{"url": "/mysite/x", "n": [1, 2]}', API_PAYLOAD)
        assert out == '{"url":"/x","n":[1,2]}'


def test_iter_mappings_yields_parents_first():
    tree = {"a": [{"b": {}}]}
    seen = [sorted(mapping) for mapping, _ in iter_mappings(tree)]
    assert seen == [["a"], ["b"], []]
