from typing import Dict, List, Tuple, Union

import httpx
import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from app.config import SiteConfig, get_config
from app.fetch.client import UpstreamClient, get_upstream_client
from app.rewrite.url_classifier import UrlClassifier

ORIGIN = "https://example.wixsite.com"
SITE_PATH = "/mysite"
PUBLIC_HOST = "https://www.example.com"


class FakeUpstream:
    """httpx transport handler answering from canned responses per URL.

    Responses are keyed by scheme://host/path (query ignored). Several
    responses for one key are served in order, the last one repeating.
    """

    def __init__(self):
        self.calls: List[httpx.Request] = []
        self.routes: Dict[str, List[Tuple[Union[int, Exception], dict]]] = {}

    def add(
        self, url: str, status_code: Union[int, Exception] = 200, **kwargs
    ) -> "FakeUpstream":
        """Queue a response, or an exception to raise, for ``url``."""
        self.routes.setdefault(url, []).append((status_code, kwargs))
        return self

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.calls.append(request)
        key = f"{request.url.scheme}://{request.url.host}{request.url.path}"
        queue = self.routes.get(key)
        if not queue:
            return httpx.Response(404, text="not found")
        status_code, kwargs = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(status_code, Exception):
            raise status_code
        return httpx.Response(status_code, **kwargs)


@pytest.fixture
def site_config(tmp_path) -> SiteConfig:
    return SiteConfig(
        origin=ORIGIN,
        site_path=SITE_PATH,
        public_host=PUBLIC_HOST,
        public_origin=PUBLIC_HOST,
        site_title="Example & Co",
        site_description='Bakery "downtown"',
        assets_dir=str(tmp_path),
        backoff_seconds=0.0,
    )


@pytest.fixture
def classifier(site_config) -> UrlClassifier:
    return UrlClassifier(site_config)


@pytest.fixture
def upstream() -> FakeUpstream:
    return FakeUpstream()


@pytest.fixture
def make_client(site_config, upstream):
    """Build a TestClient for the given routers with config and upstream overridden."""

    def _build(*routers) -> TestClient:
        app = FastAPI()
        for router in routers:
            app.include_router(router)
        app.dependency_overrides[get_config] = lambda: site_config
        app.dependency_overrides[get_upstream_client] = lambda: UpstreamClient(
            timeout=5.0,
            attempts=3,
            backoff_seconds=0.0,
            transport=httpx.MockTransport(upstream),
        )
        return TestClient(app)

    return _build
