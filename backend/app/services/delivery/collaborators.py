"""
Collaborators of the delivery services: store bindings, published menus,
inventory and order persistence.

The services depend only on the protocols below. The SQLAlchemy
implementations open a short-lived session per call so they can be shared by
concurrent sync tasks. They block, so async callers run them with
``asyncio.to_thread``.
"""

import logging
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Protocol

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.models.delivery import (
    DeliveryOrder,
    DeliveryOrderItem,
    InventoryRecord,
    PlatformStoreBinding,
    StoreMenuSnapshot,
)
from app.schemas.delivery import (
    InventoryStatus,
    MenuSnapshot,
    NormalizedOrder,
    PlatformStoreBindingView,
    parse_platform_specific,
)

logger = logging.getLogger(__name__)

SessionFactory = Callable[[], Session]


class BindingRepository(Protocol):
    def active_bindings(self, brand_id: str, store_id: str) -> List[PlatformStoreBindingView]: ...

    def find_by_external_store(self, platform: str, external_store_id: str) -> Optional[PlatformStoreBindingView]: ...

    def mark_synced(self, binding_id: int, kind: str, at: datetime) -> None: ...


class MenuSource(Protocol):
    def menu_for_store(self, brand_id: str, store_id: str) -> Optional[MenuSnapshot]: ...


class InventorySource(Protocol):
    def inventory_for_store(self, store_id: str) -> Dict[str, InventoryStatus]: ...


class OrderStore(Protocol):
    def exists(self, platform: str, platform_order_id: str) -> bool: ...

    def save(self, order: NormalizedOrder, binding: Optional[PlatformStoreBindingView]) -> Optional[int]: ...

    def mark_accepted(self, order_id: int) -> None: ...


def binding_view(row: PlatformStoreBinding) -> PlatformStoreBindingView:
    return PlatformStoreBindingView(
        id=row.id,
        brand_id=row.brand_id,
        store_id=row.store_id,
        platform=row.platform,
        external_store_id=row.external_store_id,
        operational_status=row.operational_status or "OFFLINE",
        prep_time_minutes=row.prep_time_minutes or 30,
        busy_prep_time_minutes=row.busy_prep_time_minutes or 45,
        auto_accept=bool(row.auto_accept),
        platform_specific=parse_platform_specific(row.platform, row.platform_specific),
        is_active=bool(row.is_active),
        menu_last_sync_at=row.menu_last_sync_at,
        inventory_last_sync_at=row.inventory_last_sync_at,
    )


class SqlBindingRepository:
    SYNC_COLUMNS = {"menu": "menu_last_sync_at", "inventory": "inventory_last_sync_at"}

    def __init__(self, session_factory: SessionFactory):
        self._session_factory = session_factory

    def active_bindings(self, brand_id: str, store_id: str) -> List[PlatformStoreBindingView]:
        with self._session_factory() as db:
            rows = (
                db.query(PlatformStoreBinding)
                .filter(
                    PlatformStoreBinding.brand_id == brand_id,
                    PlatformStoreBinding.store_id == store_id,
                    PlatformStoreBinding.is_active.is_(True),
                )
                .order_by(PlatformStoreBinding.id)
                .all()
            )
            return [binding_view(row) for row in rows]

    def find_by_external_store(self, platform: str, external_store_id: str) -> Optional[PlatformStoreBindingView]:
        with self._session_factory() as db:
            row = (
                db.query(PlatformStoreBinding)
                .filter(
                    PlatformStoreBinding.platform == platform,
                    PlatformStoreBinding.external_store_id == external_store_id,
                )
                .first()
            )
            return binding_view(row) if row else None

    def mark_synced(self, binding_id: int, kind: str, at: datetime) -> None:
        column = self.SYNC_COLUMNS[kind]
        with self._session_factory() as db:
            row = db.get(PlatformStoreBinding, binding_id)
            if row is None:
                logger.warning(f"Binding {binding_id} disappeared before its {kind} sync time was recorded")
                return
            setattr(row, column, at)
            db.commit()


class SqlMenuSource:
    def __init__(self, session_factory: SessionFactory):
        self._session_factory = session_factory

    def menu_for_store(self, brand_id: str, store_id: str) -> Optional[MenuSnapshot]:
        with self._session_factory() as db:
            row = (
                db.query(StoreMenuSnapshot)
                .filter(StoreMenuSnapshot.brand_id == brand_id, StoreMenuSnapshot.store_id == store_id)
                .first()
            )
            if row is None:
                return None
            data = dict(row.menu or {})
            if row.business_hours is not None:
                data["business_hours"] = row.business_hours
            return MenuSnapshot.model_validate(data)


class SqlInventorySource:
    def __init__(self, session_factory: SessionFactory):
        self._session_factory = session_factory

    def inventory_for_store(self, store_id: str) -> Dict[str, InventoryStatus]:
        with self._session_factory() as db:
            rows = db.query(InventoryRecord).filter(InventoryRecord.store_id == store_id).all()
            return {
                row.dish_id: InventoryStatus(
                    dish_id=row.dish_id,
                    is_sold_out=bool(row.is_sold_out),
                    is_inventory_tracked=bool(row.is_inventory_tracked),
                    enable_available_stock=bool(row.enable_available_stock),
                    available_stock=row.available_stock or 0,
                    total_stock=row.total_stock or 0,
                )
                for row in rows
            }


class SqlOrderStore:
    def __init__(self, session_factory: SessionFactory):
        self._session_factory = session_factory

    def exists(self, platform: str, platform_order_id: str) -> bool:
        with self._session_factory() as db:
            return (
                db.query(DeliveryOrder.id)
                .filter(
                    DeliveryOrder.platform == platform,
                    DeliveryOrder.platform_order_id == platform_order_id,
                )
                .first()
                is not None
            )

    def save(self, order: NormalizedOrder, binding: Optional[PlatformStoreBindingView]) -> Optional[int]:
        """Persist the order. Returns None when another delivery stored it first."""
        row = DeliveryOrder(
            binding_id=binding.id if binding else None,
            brand_id=binding.brand_id if binding else None,
            store_id=binding.store_id if binding else None,
            platform=order.platform.value,
            platform_order_id=order.platform_order_id,
            display_id=order.display_id,
            platform_status=order.platform_status,
            order_type=order.order_type,
            customer_name=order.customer_name,
            customer_phone=order.customer_phone,
            delivery_address=order.delivery_address,
            subtotal=order.subtotal,
            delivery_fee=order.delivery_fee,
            service_charge=order.service_charge,
            total=order.total,
            notes=order.notes,
            estimated_ready_at=order.estimated_ready_at,
            items=[
                DeliveryOrderItem(
                    platform_item_id=item.platform_item_id,
                    name=item.name,
                    quantity=item.quantity,
                    unit_price=item.unit_price,
                    modifiers=list(item.modifiers),
                    note=item.note,
                )
                for item in order.items
            ],
        )
        with self._session_factory() as db:
            db.add(row)
            try:
                db.commit()
            except IntegrityError:
                db.rollback()
                logger.info(f"{order.platform.value} order {order.platform_order_id} already stored")
                return None
            return row.id

    def mark_accepted(self, order_id: int) -> None:
        with self._session_factory() as db:
            row = db.get(DeliveryOrder, order_id)
            if row is None:
                return
            row.status = "accepted"
            row.accepted_at = datetime.now(timezone.utc)
            db.commit()
