"""
Delivery sync and token administration endpoints.

All endpoints require an operator bearer token. The token refresh and
webhook signing helpers exist for development only and answer 404 in
production.
"""
import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request

from app.api.deps import Delivery
from app.core.errors import ConfigurationMissing
from app.core.rate_limit import limiter
from app.core.security import RequireOperator
from app.schemas.delivery import SignWebhookRequest, StoreSyncResponse, TokenStatus
from app.services.delivery.signature import compute_signature

router = APIRouter(tags=["Delivery Sync"])
logger = logging.getLogger(__name__)


def require_dev_endpoints(services: Delivery):
    if not services.settings.dev_endpoints_enabled:
        raise HTTPException(status_code=404, detail="Not Found")


@router.post("/stores/{brand_id}/{store_id}/menu-sync", response_model=StoreSyncResponse)
@limiter.limit("30/minute")
async def sync_store_menu(
    request: Request,
    brand_id: str,
    store_id: str,
    services: Delivery,
    current_user: RequireOperator,
):
    """Push the store's published menu to every active delivery platform."""
    logger.info(f"Menu sync for store {store_id} requested by {current_user.user_id}")
    results = await services.orchestrator.sync_store(brand_id, store_id)
    return StoreSyncResponse(brand_id=brand_id, store_id=store_id, results=results)


@router.post("/stores/{brand_id}/{store_id}/inventory-sync", response_model=StoreSyncResponse)
@limiter.limit("30/minute")
async def sync_store_inventory(
    request: Request,
    brand_id: str,
    store_id: str,
    services: Delivery,
    current_user: RequireOperator,
    platforms: Optional[List[str]] = Query(None, description="Limit to these platforms"),
):
    """Suspend or resume items on every active platform according to stock."""
    logger.info(f"Inventory sync for store {store_id} requested by {current_user.user_id}")
    results = await services.orchestrator.sync_inventory(brand_id, store_id, platforms)
    return StoreSyncResponse(brand_id=brand_id, store_id=store_id, results=results)


@router.get("/tokens/{platform}", response_model=TokenStatus)
@limiter.limit("60/minute")
async def get_token_status(request: Request, platform: str, services: Delivery, current_user: RequireOperator):
    """Cached token state for a platform. Never returns the token itself."""
    return services.token_manager.status(platform)


@router.post(
    "/tokens/{platform}/refresh",
    response_model=TokenStatus,
    dependencies=[Depends(require_dev_endpoints)],
)
@limiter.limit("10/minute")
async def refresh_token(request: Request, platform: str, services: Delivery, current_user: RequireOperator):
    """Force a token refresh (development only)."""
    await services.token_manager.force_refresh(platform)
    return services.token_manager.status(platform)


@router.post("/dev/sign-webhook", dependencies=[Depends(require_dev_endpoints)])
@limiter.limit("30/minute")
async def sign_webhook(
    request: Request,
    body: SignWebhookRequest,
    services: Delivery,
    current_user: RequireOperator,
):
    """Sign a body with the configured Uber Eats secret (development only)."""
    verifier = services.ubereats_verifier
    secret = verifier.secondary if body.use_secondary else verifier.primary
    if not secret:
        raise ConfigurationMissing("Requested Uber Eats webhook secret is not configured")
    return {
        "header": "X-Uber-Signature",
        "signature": compute_signature(body.body.encode("utf-8"), secret),
    }
