import logging
from functools import lru_cache
from typing import Tuple
from urllib.parse import urlparse

from pydantic import BaseModel, ConfigDict

from app import vars as env

logger = logging.getLogger("uvicorn.error")

STATIC_HOSTS: Tuple[str, ...] = (
    "static.wixstatic.com",
    "static-origin.wixstatic.com",
    "video.wixstatic.com",
    "video-orig.wixstatic.com",
    "static.parastorage.com",
    "siteassets.parastorage.com",
    "pages.parastorage.com",
)

API_PATH = "/_api/"
WORKER_URL_FIELDS = frozenset({"clientWorkerUrl"})


class SiteConfig(BaseModel):
    """Immutable per-process configuration shared by every request."""

    model_config = ConfigDict(frozen=True)

    origin: str
    site_path: str = ""
    public_host: str
    public_origin: str
    relay_prefix: str = "/__x"
    static_hosts: Tuple[str, ...] = STATIC_HOSTS
    api_domains: Tuple[str, ...] = ("wix.com", "wixsite.com")
    api_path: str = API_PATH

    favicon_url: str = "/assets/logo.png"
    og_image_url: str = "/assets/logo.png"
    logo_alt_names: Tuple[str, ...] = ("logo.png", "logo1.png")
    site_title: str = "My Proxy Site"
    site_description: str = ""
    assets_dir: str = "assets"

    timeout: float = 30.0
    fetch_attempts: int = 3
    backoff_seconds: float = 0.4

    @property
    def origin_host(self) -> str:
        return (urlparse(self.origin).hostname or "").lower()

    @property
    def public_hostname(self) -> str:
        return (urlparse(self.public_host).hostname or "").lower()

    @property
    def allowed_hosts(self) -> Tuple[str, ...]:
        """Hosts eligible for asset and worker relaying."""
        return tuple(self.static_hosts) + (self.origin_host,)

    @classmethod
    def from_env(cls) -> "SiteConfig":
        return cls(
            origin=env.ORIGIN,
            site_path=env.SITE_PATH,
            public_host=env.PUBLIC_HOST,
            public_origin=env.PUBLIC_ORIGIN,
            relay_prefix=env.RELAY_PREFIX,
            static_hosts=STATIC_HOSTS + tuple(env.EXTRA_ALLOWED_HOSTS),
            api_domains=tuple(env.API_DOMAINS),
            favicon_url=env.FAVICON_URL,
            og_image_url=env.OG_IMAGE_URL,
            logo_alt_names=tuple(env.LOGO_ALT_NAMES),
            site_title=env.SITE_TITLE,
            site_description=env.SITE_DESCRIPTION,
            assets_dir=env.ASSETS_DIR,
            timeout=env.PROXY_TIMEOUT,
            fetch_attempts=env.FETCH_ATTEMPTS,
            backoff_seconds=env.FETCH_BACKOFF_SECONDS,
        )


@lru_cache(maxsize=1)
def get_config() -> SiteConfig:
    config = SiteConfig.from_env()
    logger.info(
        f"[Config] Relaying {config.origin}{config.site_path} as {config.public_origin} "
        f"(relay prefix {config.relay_prefix})"
    )
    return config
