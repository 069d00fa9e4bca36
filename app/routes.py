import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import Response

from app.app_proxy.route import router as forward_router
from app.config import SiteConfig, get_config
from app.relay.headers import preflight_headers
from app.relay.route import router as relay_router
from app.site_assets.route import router as site_assets_router

router = APIRouter()

logger = logging.getLogger("uvicorn.error")


@router.options("/{path:path}")
async def preflight(request: Request, path: str, config: SiteConfig = Depends(get_config)):
    """Answer CORS preflight for every path without contacting the upstream."""
    requested = request.headers.get("access-control-request-headers")
    logger.debug(f"[Preflight] /{path} requested headers: {requested}")
    return Response(status_code=204, headers=preflight_headers(config.public_host, requested))


router.include_router(relay_router)
router.include_router(site_assets_router)
# Catch-all forwarding must stay last
router.include_router(forward_router)
