"""API routes."""

from fastapi import APIRouter

from app.api.routes import delivery_sync, webhooks

api_router = APIRouter()

api_router.include_router(webhooks.router, prefix="/webhooks", tags=["webhooks"])
api_router.include_router(delivery_sync.router, prefix="/delivery", tags=["delivery"])
