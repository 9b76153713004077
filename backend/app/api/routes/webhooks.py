"""
Inbound delivery platform webhooks.

Handlers read the raw request bytes and hand them to the ingest pipeline
untouched: the signature is computed over exactly those bytes. Order
processing is deferred to a background task so the platform gets its
acknowledgement right away.
"""
import logging

from fastapi import APIRouter, BackgroundTasks, Request

from app.api.deps import Delivery
from app.core.config import settings
from app.core.rate_limit import limiter
from app.schemas.delivery import IngestOutcome, Platform

router = APIRouter(tags=["Delivery Webhooks"])
logger = logging.getLogger(__name__)

UBER_SIGNATURE_HEADER = "X-Uber-Signature"


def _acknowledge(outcome: IngestOutcome, services, background_tasks: BackgroundTasks) -> dict:
    if outcome.order is not None:
        background_tasks.add_task(services.order_intake.process_in_background, outcome.order)
    return {
        "status": "OK",
        "event_id": outcome.event_id,
        "event_type": outcome.event_type,
        "order_id": outcome.order.platform_order_id if outcome.order else None,
    }


@router.post("/ubereats")
@limiter.limit(settings.webhook_rate_limit)
async def ubereats_webhook(request: Request, background_tasks: BackgroundTasks, services: Delivery):
    """Handle Uber Eats webhooks (signed with X-Uber-Signature)."""
    body = await request.body()
    signature = request.headers.get(UBER_SIGNATURE_HEADER)
    outcome = services.pipeline.ingest(Platform.UBEREATS.value, body, signature)
    return _acknowledge(outcome, services, background_tasks)


@router.post("/foodpanda")
@limiter.limit(settings.webhook_rate_limit)
async def foodpanda_webhook(request: Request, background_tasks: BackgroundTasks, services: Delivery):
    """Handle Foodpanda order webhooks. Foodpanda does not sign its deliveries."""
    body = await request.body()
    outcome = services.pipeline.ingest(Platform.FOODPANDA.value, body)
    return _acknowledge(outcome, services, background_tasks)


@router.post("/foodpanda/catalog-callback")
@limiter.limit(settings.webhook_rate_limit)
async def foodpanda_catalog_callback(request: Request):
    """Result of an asynchronous catalog import. Only logged."""
    try:
        payload = await request.json()
    except ValueError:
        payload = None
    if isinstance(payload, dict):
        status = payload.get("status")
        log = logger.warning if status and str(status).lower() not in ("success", "completed", "done") else logger.info
        log(f"Foodpanda catalog import callback: status={status} details={payload.get('message') or payload.get('details')}")
    else:
        logger.warning("Foodpanda catalog callback with a non-object body")
    return {"status": "OK"}
