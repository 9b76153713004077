"""Delivery platform integration schemas."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter


class Platform(str, Enum):
    UBEREATS = "ubereats"
    FOODPANDA = "foodpanda"


class OperationalStatus(str, Enum):
    ONLINE = "ONLINE"
    BUSY = "BUSY"
    OFFLINE = "OFFLINE"


# =============================================================================
# Platform-specific binding settings (tagged by platform)
# =============================================================================

class UberEatsSettings(BaseModel):
    platform: Literal["ubereats"] = "ubereats"
    robocall_enabled: bool = False
    multi_courier_enabled: bool = False


class FoodpandaSettings(BaseModel):
    platform: Literal["foodpanda"] = "foodpanda"
    chain_code: Optional[str] = None
    commission_rate: Optional[float] = None


PlatformSpecific = Annotated[
    Union[UberEatsSettings, FoodpandaSettings], Field(discriminator="platform")
]

_platform_specific_adapter = TypeAdapter(PlatformSpecific)


def parse_platform_specific(platform: str, raw: Optional[Dict[str, Any]]) -> Union[UberEatsSettings, FoodpandaSettings]:
    """Parse the stored JSON for a binding; the platform tag always wins."""
    data = dict(raw or {})
    data["platform"] = platform
    return _platform_specific_adapter.validate_python(data)


class PlatformStoreBindingView(BaseModel):
    """Read model of a store's binding to one delivery platform."""
    id: Optional[int] = None
    brand_id: str
    store_id: str
    platform: Platform
    external_store_id: str
    operational_status: OperationalStatus = OperationalStatus.OFFLINE
    prep_time_minutes: int = 30
    busy_prep_time_minutes: int = 45
    auto_accept: bool = True
    platform_specific: PlatformSpecific
    is_active: bool = False
    menu_last_sync_at: Optional[datetime] = None
    inventory_last_sync_at: Optional[datetime] = None


# =============================================================================
# Menu snapshot (produced by the menu layer)
# =============================================================================

class OptionRef(BaseModel):
    id: str
    name: str
    price: Decimal = Decimal("0")
    tags: List[str] = Field(default_factory=list)
    # Dish an upsell/combo option stands for; drives option availability
    ref_dish_id: Optional[str] = None


class OptionCategory(BaseModel):
    id: str
    name: str
    input_type: Literal["single", "multiple"] = "single"
    options: List[OptionRef] = Field(default_factory=list)


class DishTemplate(BaseModel):
    id: str
    name: str
    description: str = ""
    base_price: Decimal = Decimal("0")
    image_url: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    option_categories: List[OptionCategory] = Field(default_factory=list)


class MenuItem(BaseModel):
    item_type: Literal["dish", "bundle"] = "dish"
    is_showing: bool = True
    price_override: Optional[Decimal] = None
    dish: Optional[DishTemplate] = None

    @property
    def effective_price(self) -> Decimal:
        if self.price_override is not None:
            return self.price_override
        return self.dish.base_price if self.dish else Decimal("0")

    @property
    def is_sellable_dish(self) -> bool:
        return self.is_showing and self.item_type == "dish" and self.dish is not None


class MenuCategory(BaseModel):
    id: str
    name: str
    description: str = ""
    items: List[MenuItem] = Field(default_factory=list)


class TimePeriod(BaseModel):
    open: str  # "HH:MM"
    close: str


class BusinessDay(BaseModel):
    day: int = Field(..., ge=0, le=6, description="0 = Sunday")
    is_closed: bool = False
    periods: List[TimePeriod] = Field(default_factory=list)


class MenuSnapshot(BaseModel):
    id: str
    name: str
    categories: List[MenuCategory] = Field(default_factory=list)
    business_hours: List[BusinessDay] = Field(default_factory=list)

    def sellable_dishes(self) -> List[DishTemplate]:
        return [item.dish for category in self.categories for item in category.items if item.is_sellable_dish]


class InventoryStatus(BaseModel):
    """Stock state of one dish as reported by the inventory layer."""
    dish_id: str
    is_sold_out: bool = False
    is_inventory_tracked: bool = False
    enable_available_stock: bool = False
    available_stock: int = 0
    total_stock: int = 0


# =============================================================================
# Orders
# =============================================================================

class NormalizedOrderItem(BaseModel):
    platform_item_id: Optional[str] = None
    name: str
    quantity: int = 1
    unit_price: Decimal = Decimal("0")
    modifiers: List[str] = Field(default_factory=list)
    note: str = ""

    @property
    def subtotal(self) -> Decimal:
        return self.unit_price * self.quantity


class NormalizedOrder(BaseModel):
    """Platform order mapped into the internal order shape."""
    platform: Platform
    platform_order_id: str
    display_id: Optional[str] = None
    external_store_id: Optional[str] = None
    platform_status: Optional[str] = None
    order_type: Literal["delivery", "takeout"] = "delivery"
    customer_name: str = ""
    customer_phone: str = ""
    delivery_address: str = ""
    items: List[NormalizedOrderItem] = Field(default_factory=list)
    subtotal: Decimal = Decimal("0")
    delivery_fee: Decimal = Decimal("0")
    service_charge: Decimal = Decimal("0")
    total: Decimal = Decimal("0")
    notes: str = ""
    estimated_ready_at: Optional[datetime] = None
    # Webhook only carried a reference; details must be fetched from the platform
    details_pending: bool = False
    resource_href: Optional[str] = None


class IngestOutcome(BaseModel):
    platform: Platform
    event_id: Optional[str] = None
    event_type: Optional[str] = None
    order: Optional[NormalizedOrder] = None
    used_secondary_secret: bool = False

    @property
    def ignored(self) -> bool:
        return self.order is None


# =============================================================================
# Sync / tokens
# =============================================================================

class ItemAvailabilityChange(BaseModel):
    item_id: str
    name: str
    reason: Optional[str] = None
    ref_dish_id: Optional[str] = None
    error: Optional[str] = None


class AvailabilityReport(BaseModel):
    suspended: List[ItemAvailabilityChange] = Field(default_factory=list)
    resumed: List[ItemAvailabilityChange] = Field(default_factory=list)
    skipped: List[ItemAvailabilityChange] = Field(default_factory=list)
    errors: List[ItemAvailabilityChange] = Field(default_factory=list)


class SyncResult(BaseModel):
    platform: str
    success: bool
    error: Optional[str] = None
    error_kind: Optional[str] = None
    retryable: Optional[bool] = None
    synced_at: Optional[datetime] = None
    details: Optional[Dict[str, Any]] = None


class StoreSyncResponse(BaseModel):
    brand_id: str
    store_id: str
    results: List[SyncResult]

    @property
    def all_succeeded(self) -> bool:
        return all(r.success for r in self.results)


class TokenStatus(BaseModel):
    platform: str
    configured: bool
    cached: bool
    valid_until: Optional[datetime] = None
    refresh_due: bool = True
    refresh_in_flight: bool = False


class SignWebhookRequest(BaseModel):
    """Dev helper: body to sign with the configured Uber Eats secret."""
    body: str
    use_secondary: bool = False
