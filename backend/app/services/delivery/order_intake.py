"""Hands verified platform orders to persistence and auto-accepts them.

Storage calls are blocking SQLAlchemy work and run in worker threads.
"""

import asyncio
import logging
from typing import Dict, Optional

from app.core.errors import DeliveryIntegrationError, UnsupportedPlatform
from app.schemas.delivery import NormalizedOrder
from app.services.delivery.base import PlatformAdapter
from app.services.delivery.collaborators import BindingRepository, OrderStore

logger = logging.getLogger(__name__)


class OrderIntakeService:
    """Runs after the webhook has been acknowledged, as a background task."""

    def __init__(self, adapters: Dict[str, PlatformAdapter], bindings: BindingRepository, orders: OrderStore):
        self.adapters = dict(adapters)
        self.bindings = bindings
        self.orders = orders

    async def process(self, order: NormalizedOrder) -> Optional[int]:
        """Store a new order. Returns the stored id, or None when nothing was stored."""
        platform = order.platform.value
        adapter = self.adapters.get(platform)
        if adapter is None:
            raise UnsupportedPlatform(platform)

        if await asyncio.to_thread(self.orders.exists, platform, order.platform_order_id):
            logger.info(f"{platform} order {order.platform_order_id} already exists, skipping")
            return None

        if order.details_pending:
            order = await adapter.fetch_order(order)

        binding = None
        if order.external_store_id:
            binding = await asyncio.to_thread(self.bindings.find_by_external_store, platform, order.external_store_id)
        if binding is None:
            logger.warning(
                f"No {platform} binding for external store {order.external_store_id}; "
                f"storing order {order.platform_order_id} unassigned"
            )

        order_id = await asyncio.to_thread(self.orders.save, order, binding)
        if order_id is None:
            return None
        logger.info(f"Stored {platform} order {order.platform_order_id} as #{order_id}")

        if binding is not None and binding.auto_accept:
            try:
                await adapter.accept_order(order)
            except DeliveryIntegrationError as e:
                logger.error(f"Auto-accept of {platform} order {order.platform_order_id} failed: {e.message}")
            else:
                await asyncio.to_thread(self.orders.mark_accepted, order_id)
        return order_id

    async def process_in_background(self, order: NormalizedOrder):
        """Background-task entry point: failures are logged, there is no caller to raise to."""
        try:
            await self.process(order)
        except Exception:
            logger.exception(f"Processing {order.platform.value} order {order.platform_order_id} failed")
