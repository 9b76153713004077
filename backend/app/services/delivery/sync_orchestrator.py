"""
Multi-platform menu and inventory synchronization.

A sync fans out to every active platform binding of a store at once. Each
platform gets its own task and its own ``SyncResult``: one platform failing
or timing out never affects the others. The call as a whole fails when there
is nothing to sync, or when a bound platform is not configured at all.
"""

import asyncio
import logging
import threading
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

from app.core.errors import (
    ConfigurationMissing,
    DeliveryIntegrationError,
    MenuNotFound,
    NoPlatformEnabled,
    PlatformApiError,
    UnsupportedPlatform,
)
from app.schemas.delivery import (
    AvailabilityReport,
    ItemAvailabilityChange,
    MenuSnapshot,
    PlatformStoreBindingView,
    SyncResult,
)
from app.services.delivery.availability import (
    InventoryMap,
    iter_menu_dishes,
    iter_menu_options,
    should_suspend_dish,
    should_suspend_option,
    suspension_reason,
)
from app.services.delivery.base import PlatformAdapter
from app.services.delivery.collaborators import BindingRepository, InventorySource, MenuSource

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def platform_key(binding: PlatformStoreBindingView) -> str:
    """Adapter registry key of a binding's platform."""
    return getattr(binding.platform, "value", binding.platform)


class SyncOrchestrator:
    """Pushes a store's menu and item availability to all of its platforms."""

    def __init__(
        self,
        adapters: Dict[str, PlatformAdapter],
        bindings: BindingRepository,
        menus: MenuSource,
        inventory: InventorySource,
        timeout: float = 30.0,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.adapters = dict(adapters)
        self.bindings = bindings
        self.menus = menus
        self.inventory = inventory
        self.timeout = timeout
        self._clock = clock
        # Sync-time writes go through one at a time
        self._record_lock = threading.Lock()

    def _active_bindings(
        self, brand_id: str, store_id: str, platforms: Optional[Iterable[str]] = None
    ) -> List[PlatformStoreBindingView]:
        bindings = self.bindings.active_bindings(brand_id, store_id)
        if platforms is not None:
            wanted = {str(p) for p in platforms}
            bindings = [b for b in bindings if platform_key(b) in wanted]
        if not bindings:
            raise NoPlatformEnabled(brand_id, store_id)
        return bindings

    def _menu(self, brand_id: str, store_id: str) -> MenuSnapshot:
        menu = self.menus.menu_for_store(brand_id, store_id)
        if menu is None:
            raise MenuNotFound(f"No published menu for store {store_id} of brand {brand_id}")
        return menu

    def _mark_synced(self, binding_id: int, kind: str, at: datetime):
        with self._record_lock:
            self.bindings.mark_synced(binding_id, kind, at)

    def _adapter(self, binding: PlatformStoreBindingView) -> PlatformAdapter:
        adapter = self.adapters.get(platform_key(binding))
        if adapter is None:
            raise UnsupportedPlatform(platform_key(binding))
        return adapter

    def _ensure_configured(self, bindings: List[PlatformStoreBindingView], menu: bool):
        """Missing credentials fail the whole sync before anything is sent."""
        for binding in bindings:
            adapter = self.adapters.get(platform_key(binding))
            if adapter is not None:
                adapter.ensure_configured(binding, menu=menu)

    async def _run(
        self,
        binding: PlatformStoreBindingView,
        kind: str,
        work: Callable[[PlatformAdapter], Awaitable[Optional[Dict[str, Any]]]],
        timeout: Optional[float],
    ) -> SyncResult:
        """Run one platform's share of a sync and capture its outcome."""
        platform = platform_key(binding)
        try:
            adapter = self._adapter(binding)
            if timeout is None:
                details = await work(adapter)
            else:
                details = await asyncio.wait_for(work(adapter), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(f"{platform} {kind} sync for store {binding.store_id} timed out after {timeout}s")
            return SyncResult(
                platform=platform,
                success=False,
                error=f"timed out after {timeout}s",
                error_kind="Timeout",
                retryable=True,
            )
        except ConfigurationMissing:
            raise
        except PlatformApiError as e:
            logger.warning(f"{platform} {kind} sync for store {binding.store_id} failed: {e.message}")
            return SyncResult(
                platform=platform, success=False, error=e.message, error_kind=e.kind, retryable=e.retryable
            )
        except DeliveryIntegrationError as e:
            logger.error(f"{platform} {kind} sync for store {binding.store_id} failed: {e.message}")
            return SyncResult(platform=platform, success=False, error=e.message, error_kind=e.kind, retryable=False)
        except Exception as e:
            logger.exception(f"Unexpected error in {platform} {kind} sync for store {binding.store_id}")
            return SyncResult(
                platform=platform, success=False, error=str(e), error_kind=type(e).__name__, retryable=False
            )

        synced_at = self._clock()
        if binding.id is not None:
            try:
                await asyncio.to_thread(self._mark_synced, binding.id, kind, synced_at)
            except Exception:
                logger.exception(f"Could not record {kind} sync time for binding {binding.id}")
        logger.info(f"{platform} {kind} sync for store {binding.store_id} succeeded")
        return SyncResult(platform=platform, success=True, synced_at=synced_at, details=details)

    # =========================================================================
    # Menu
    # =========================================================================

    async def sync_store(self, brand_id: str, store_id: str) -> List[SyncResult]:
        """Push the store's current menu to every active platform concurrently."""
        bindings = await asyncio.to_thread(self._active_bindings, brand_id, store_id)
        menu = await asyncio.to_thread(self._menu, brand_id, store_id)
        self._ensure_configured(bindings, menu=True)
        logger.info(
            f"Menu sync for store {store_id} of brand {brand_id} to "
            f"{', '.join(platform_key(b) for b in bindings)}"
        )

        def push(binding: PlatformStoreBindingView):
            async def work(adapter: PlatformAdapter):
                payload = adapter.convert_menu(menu)
                ack = await adapter.push_menu(binding.external_store_id, payload, binding)
                return {"external_store_id": binding.external_store_id, "response": ack.data}

            return work

        return list(await asyncio.gather(
            *(self._run(binding, "menu", push(binding), self.timeout) for binding in bindings)
        ))

    # =========================================================================
    # Inventory
    # =========================================================================

    async def sync_inventory(
        self, brand_id: str, store_id: str, platforms: Optional[Iterable[str]] = None
    ) -> List[SyncResult]:
        """Suspend or resume every menu item according to current stock."""
        bindings = await asyncio.to_thread(self._active_bindings, brand_id, store_id, platforms)
        menu = await asyncio.to_thread(self._menu, brand_id, store_id)
        self._ensure_configured(bindings, menu=False)
        inventory = await asyncio.to_thread(self.inventory.inventory_for_store, store_id)

        def push(binding: PlatformStoreBindingView):
            async def work(adapter: PlatformAdapter):
                return await self._push_availability(adapter, binding, menu, inventory)

            return work

        # Each item call carries its own timeout; a large menu is allowed to take longer than one call
        return list(await asyncio.gather(
            *(self._run(binding, "inventory", push(binding), None) for binding in bindings)
        ))

    async def _push_availability(
        self,
        adapter: PlatformAdapter,
        binding: PlatformStoreBindingView,
        menu: MenuSnapshot,
        inventory: InventoryMap,
    ) -> Dict[str, Any]:
        report = AvailabilityReport()
        last_error: Optional[PlatformApiError] = None

        async def apply(change: ItemAvailabilityChange, suspended: bool):
            nonlocal last_error
            try:
                await asyncio.wait_for(
                    adapter.set_item_availability(binding.external_store_id, change.item_id, suspended),
                    timeout=self.timeout,
                )
            except asyncio.TimeoutError:
                last_error = PlatformApiError(adapter.platform, f"item {change.item_id} timed out")
                report.errors.append(change.model_copy(update={"error": last_error.message}))
                return
            except PlatformApiError as e:
                last_error = e
                report.errors.append(change.model_copy(update={"error": e.message}))
                return
            (report.suspended if suspended else report.resumed).append(change)

        for dish in iter_menu_dishes(menu):
            if dish.id not in inventory:
                report.skipped.append(ItemAvailabilityChange(item_id=dish.id, name=dish.name, reason="no inventory record"))
                continue
            suspended = should_suspend_dish(dish.id, inventory)
            reason = suspension_reason(dish.id, inventory) if suspended else None
            await apply(ItemAvailabilityChange(item_id=dish.id, name=dish.name, reason=reason), suspended)

        for _, option in iter_menu_options(menu):
            change = ItemAvailabilityChange(item_id=option.id, name=option.name, ref_dish_id=option.ref_dish_id)
            if not option.ref_dish_id:
                report.skipped.append(change.model_copy(update={"reason": "no reference dish"}))
                continue
            if option.ref_dish_id not in inventory:
                report.skipped.append(change.model_copy(update={"reason": "reference dish has no inventory record"}))
                continue
            suspended = should_suspend_option(option, inventory)
            if suspended:
                change = change.model_copy(update={"reason": suspension_reason(option.ref_dish_id, inventory)})
            await apply(change, suspended)

        if report.errors and not report.suspended and not report.resumed:
            # Nothing went through: report the platform as failed
            raise last_error

        logger.info(
            f"{adapter.platform} availability for store {binding.store_id}: "
            f"{len(report.suspended)} suspended, {len(report.resumed)} resumed, "
            f"{len(report.skipped)} skipped, {len(report.errors)} failed"
        )
        return report.model_dump()
