"""Wiring of the delivery services.

One ``DeliveryServices`` instance is built per application in the lifespan
handler and stored on ``app.state``. Everything that holds shared state (the
token cache, the dedup cache, the HTTP connection pool) lives on it, so tests
can build an isolated instance with their own settings and transports.
"""

import logging
from datetime import timedelta
from typing import Dict, Optional

import httpx

from app.core.config import Settings
from app.schemas.delivery import Platform
from app.services.delivery.base import PlatformAdapter
from app.services.delivery.collaborators import (
    SessionFactory,
    SqlBindingRepository,
    SqlInventorySource,
    SqlMenuSource,
    SqlOrderStore,
)
from app.services.delivery.foodpanda import FoodpandaAdapter
from app.services.delivery.order_intake import OrderIntakeService
from app.services.delivery.replay_guard import ReplayGuard
from app.services.delivery.signature import SignatureVerifier
from app.services.delivery.sync_orchestrator import SyncOrchestrator
from app.services.delivery.token_manager import OAuthClientCredentialsFetcher, TokenManager
from app.services.delivery.ubereats import UberEatsAdapter
from app.services.delivery.webhook_pipeline import WebhookIngestPipeline, WebhookRoute

logger = logging.getLogger(__name__)


class DeliveryServices:
    """Container for the delivery integration services of one application."""

    def __init__(
        self,
        settings: Settings,
        session_factory: SessionFactory,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.settings = settings
        self._owns_client = http_client is None
        self.http_client = http_client or httpx.AsyncClient(timeout=settings.platform_request_timeout)
        timeout = settings.platform_request_timeout

        self.fetchers = {
            Platform.UBEREATS.value: OAuthClientCredentialsFetcher(
                platform=Platform.UBEREATS.value,
                token_url=settings.ubereats_auth_url,
                client_id=settings.ubereats_client_id,
                client_secret=settings.ubereats_client_secret,
                scope=settings.ubereats_scope,
                http_client=self.http_client,
                timeout=timeout,
            ),
            Platform.FOODPANDA.value: OAuthClientCredentialsFetcher(
                platform=Platform.FOODPANDA.value,
                token_url=f"{settings.foodpanda_base_url.rstrip('/')}/v2/login",
                client_id=settings.foodpanda_username,
                client_secret=settings.foodpanda_password,
                id_field="username",
                secret_field="password",
                http_client=self.http_client,
                timeout=timeout,
            ),
        }
        self.token_manager = TokenManager(
            self.fetchers,
            refresh_margin=timedelta(seconds=settings.token_refresh_margin_seconds),
        )

        self.adapters: Dict[str, PlatformAdapter] = {
            Platform.UBEREATS.value: UberEatsAdapter(
                self.token_manager, self.http_client, timeout, api_base=settings.ubereats_api_base
            ),
            Platform.FOODPANDA.value: FoodpandaAdapter(
                self.token_manager,
                self.http_client,
                timeout,
                base_url=settings.foodpanda_base_url,
                chain_code=settings.foodpanda_chain_code,
                callback_url=settings.foodpanda_callback_url,
            ),
        }

        self.replay_guard = ReplayGuard(
            max_skew_seconds=settings.webhook_max_skew_seconds,
            capacity=settings.webhook_dedup_capacity,
            ttl_seconds=settings.webhook_dedup_ttl_seconds,
        )
        primary, secondary = settings.ubereats_webhook_secrets
        self.ubereats_verifier = SignatureVerifier(primary, secondary)
        self.pipeline = WebhookIngestPipeline(
            {
                Platform.UBEREATS.value: WebhookRoute(
                    platform=Platform.UBEREATS.value,
                    adapter=self.adapters[Platform.UBEREATS.value],
                    verifier=self.ubereats_verifier,
                ),
                # Foodpanda does not sign its webhooks
                Platform.FOODPANDA.value: WebhookRoute(
                    platform=Platform.FOODPANDA.value,
                    adapter=self.adapters[Platform.FOODPANDA.value],
                    require_event_id=False,
                ),
            },
            self.replay_guard,
            require_timestamp=settings.webhook_require_timestamp,
        )

        self.bindings = SqlBindingRepository(session_factory)
        self.orchestrator = SyncOrchestrator(
            self.adapters,
            self.bindings,
            SqlMenuSource(session_factory),
            SqlInventorySource(session_factory),
            timeout=timeout,
        )
        self.order_intake = OrderIntakeService(self.adapters, self.bindings, SqlOrderStore(session_factory))

        if not self.ubereats_verifier.configured:
            logger.error("UBEREATS_WEBHOOK_SECRET is not configured; Uber Eats webhooks will be rejected")

    async def aclose(self):
        if self._owns_client:
            await self.http_client.aclose()
