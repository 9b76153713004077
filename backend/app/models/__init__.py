"""SQLAlchemy models."""

from app.models.delivery import (
    DeliveryOrder,
    DeliveryOrderItem,
    InventoryRecord,
    PlatformStoreBinding,
    StoreMenuSnapshot,
)

__all__ = [
    "DeliveryOrder",
    "DeliveryOrderItem",
    "InventoryRecord",
    "PlatformStoreBinding",
    "StoreMenuSnapshot",
]
