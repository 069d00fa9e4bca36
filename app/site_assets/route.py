import logging
import mimetypes
import os
from typing import Optional

from fastapi import APIRouter, Depends
from fastapi.responses import FileResponse, PlainTextResponse, RedirectResponse, Response

from app.config import SiteConfig, get_config
from app.errors import RelayError
from app.fetch.client import UpstreamClient, get_upstream_client
from app.rewrite.url_classifier import classifier_for

router = APIRouter()
logger = logging.getLogger("uvicorn.error")

IMMUTABLE_CACHE_CONTROL = "public, max-age=31536000, immutable"
FAVICON_CACHE_CONTROL = "public, max-age=86400"
FALLBACK_FAVICON_URL = "https://www.wix.com/favicon.ico"


def guess_type(path: str) -> str:
    content_type, _ = mimetypes.guess_type(path)
    return content_type or "application/octet-stream"


def resolve_asset(assets_dir: str, name: str) -> Optional[str]:
    """Absolute path of ``name`` inside ``assets_dir``; None when it escapes."""
    root = os.path.realpath(assets_dir)
    candidate = os.path.realpath(os.path.join(root, name))
    if candidate != root and not candidate.startswith(root + os.sep):
        return None
    return candidate


def _file(path: str, cache_control: str) -> FileResponse:
    return FileResponse(
        path,
        media_type=guess_type(path),
        headers={"cache-control": cache_control},
    )


@router.get("/robots.txt")
async def robots(config: SiteConfig = Depends(get_config)):
    body = f"User-agent: *\nAllow: /\nSitemap: {config.public_host}/sitemap.xml\n"
    return PlainTextResponse(body)


@router.get("/sitemap.xml")
async def sitemap(
    config: SiteConfig = Depends(get_config),
    client: UpstreamClient = Depends(get_upstream_client),
):
    """Upstream sitemap with every upstream URL moved to the public site."""
    url = f"{config.origin}{config.site_path}/sitemap.xml"
    try:
        upstream = await client.fetch("GET", url, headers={"accept": "application/xml"})
    except RelayError as e:
        logger.warning(f"[Sitemap] Upstream sitemap unavailable: {e}")
        return PlainTextResponse("No sitemap", status_code=404)
    if upstream.status_code >= 400:
        logger.warning(f"[Sitemap] Upstream answered {upstream.status_code}")
        return PlainTextResponse("No sitemap", status_code=404)
    xml = classifier_for(config).substitute_origin(upstream.text)
    return Response(content=xml, media_type="application/xml")


@router.get("/assets/{name:path}")
async def local_asset(name: str, config: SiteConfig = Depends(get_config)):
    path = resolve_asset(config.assets_dir, name)
    if path is None:
        logger.warning(f"[Assets] Refusing path outside the assets directory: {name!r}")
        return PlainTextResponse("forbidden", status_code=403)
    if os.path.isfile(path):
        return _file(path, IMMUTABLE_CACHE_CONTROL)

    if len(config.logo_alt_names) > 1:
        alternative = resolve_asset(config.assets_dir, config.logo_alt_names[1])
        if alternative and os.path.isfile(alternative):
            logger.debug(f"[Assets] {name} missing, serving {config.logo_alt_names[1]}")
            return _file(alternative, IMMUTABLE_CACHE_CONTROL)
    return PlainTextResponse("asset not found", status_code=404)


@router.get("/favicon.ico")
async def favicon(config: SiteConfig = Depends(get_config)):
    for name in config.logo_alt_names:
        path = resolve_asset(config.assets_dir, name)
        if path and os.path.isfile(path):
            return _file(path, FAVICON_CACHE_CONTROL)
    return RedirectResponse(FALLBACK_FAVICON_URL, status_code=302)
