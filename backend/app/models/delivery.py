"""Delivery platform integration models."""

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    JSON,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from app.db.base import Base, TimestampMixin


class PlatformStoreBinding(Base, TimestampMixin):
    """A store's account on one delivery platform.

    Owned by the store administration layer; the delivery services only read
    it and stamp the last-sync timestamps.
    """
    __tablename__ = "platform_store_bindings"
    __table_args__ = (
        UniqueConstraint("brand_id", "store_id", "platform", name="uq_binding_store_platform"),
    )

    id = Column(Integer, primary_key=True, index=True)
    brand_id = Column(String(64), nullable=False, index=True)
    store_id = Column(String(64), nullable=False, index=True)
    platform = Column(String(32), nullable=False)  # ubereats / foodpanda
    external_store_id = Column(String(200), nullable=False, index=True)

    operational_status = Column(String(16), default="OFFLINE", nullable=False)
    prep_time_minutes = Column(Integer, default=30)
    busy_prep_time_minutes = Column(Integer, default=45)
    auto_accept = Column(Boolean, default=True)

    # Platform-specific settings, validated by the pydantic union on read
    platform_specific = Column(JSON, nullable=True)

    is_active = Column(Boolean, default=False, index=True)
    menu_last_sync_at = Column(DateTime(timezone=True), nullable=True)
    inventory_last_sync_at = Column(DateTime(timezone=True), nullable=True)


class StoreMenuSnapshot(Base, TimestampMixin):
    """Published menu of a store, as produced by the menu layer."""
    __tablename__ = "store_menu_snapshots"

    id = Column(Integer, primary_key=True, index=True)
    brand_id = Column(String(64), nullable=False, index=True)
    store_id = Column(String(64), nullable=False, unique=True, index=True)
    menu = Column(JSON, nullable=False)
    business_hours = Column(JSON, nullable=True)


class InventoryRecord(Base, TimestampMixin):
    """Per-store stock state of one dish."""
    __tablename__ = "inventory_records"
    __table_args__ = (
        UniqueConstraint("store_id", "dish_id", name="uq_inventory_store_dish"),
    )

    id = Column(Integer, primary_key=True, index=True)
    store_id = Column(String(64), nullable=False, index=True)
    dish_id = Column(String(64), nullable=False)
    is_sold_out = Column(Boolean, default=False)
    is_inventory_tracked = Column(Boolean, default=False)
    enable_available_stock = Column(Boolean, default=False)
    available_stock = Column(Integer, default=0)
    total_stock = Column(Integer, default=0)


class DeliveryOrder(Base, TimestampMixin):
    """Orders received from delivery platforms."""
    __tablename__ = "delivery_orders"
    __table_args__ = (
        UniqueConstraint("platform", "platform_order_id", name="uq_delivery_order_platform_id"),
    )

    id = Column(Integer, primary_key=True, index=True)
    binding_id = Column(Integer, ForeignKey("platform_store_bindings.id"), nullable=True)
    brand_id = Column(String(64), nullable=True, index=True)
    store_id = Column(String(64), nullable=True, index=True)

    # Platform identifiers
    platform = Column(String(32), nullable=False)
    platform_order_id = Column(String(200), nullable=False)
    display_id = Column(String(100), nullable=True)
    platform_status = Column(String(50), nullable=True)

    order_type = Column(String(20), default="delivery")
    status = Column(String(20), default="received")

    customer_name = Column(String(200), nullable=True)
    customer_phone = Column(String(50), nullable=True)
    delivery_address = Column(Text, nullable=True)

    subtotal = Column(Numeric(10, 2), default=0)
    delivery_fee = Column(Numeric(10, 2), default=0)
    service_charge = Column(Numeric(10, 2), default=0)
    total = Column(Numeric(10, 2), default=0)

    notes = Column(Text, nullable=True)
    estimated_ready_at = Column(DateTime(timezone=True), nullable=True)
    accepted_at = Column(DateTime(timezone=True), nullable=True)

    items = relationship("DeliveryOrderItem", back_populates="order", cascade="all, delete-orphan")


class DeliveryOrderItem(Base):
    """Line items of a delivery order."""
    __tablename__ = "delivery_order_items"

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(Integer, ForeignKey("delivery_orders.id"), nullable=False)
    platform_item_id = Column(String(200), nullable=True)
    name = Column(String(200), nullable=False)
    quantity = Column(Integer, default=1)
    unit_price = Column(Numeric(10, 2), default=0)
    modifiers = Column(JSON, nullable=True)
    note = Column(Text, nullable=True)

    order = relationship("DeliveryOrder", back_populates="items")
