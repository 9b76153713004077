"""Foodpanda (Delivery Hero integration middleware) adapter.

The menu is uploaded as a chain catalog: a flat ``items`` map keyed by id in
which toppings, products, categories, the schedule and the menu reference
each other by id.
"""

import logging
from decimal import Decimal
from typing import Any, Dict, List, Optional

import httpx

from app.core.errors import ConfigurationMissing, MalformedPayload
from app.schemas.delivery import (
    BusinessDay,
    FoodpandaSettings,
    MenuSnapshot,
    NormalizedOrder,
    NormalizedOrderItem,
    Platform,
    PlatformStoreBindingView,
)
from app.services.delivery.base import (
    Ack,
    PlatformAdapter,
    as_list,
    as_object,
    dig,
    parse_datetime,
    parse_quantity,
    to_decimal,
)
from app.services.delivery.token_manager import TokenManager

logger = logging.getLogger(__name__)

FOODPANDA_BASE_URL = "https://integration-middleware.as.restaurant-partners.com"

SCHEDULE_ID = "schedule00001"
TOPPINGS_CATEGORY_ID = "Category#Toppings"

ORDER_EVENTS = ("order.created", "order.updated")


def format_price(value: Any) -> str:
    return f"{to_decimal(value).quantize(Decimal('0.01'))}"


def _text(value: str) -> Dict[str, str]:
    return {"default": value}


def schedule_entry(business_hours: List[BusinessDay]) -> Dict[str, Any]:
    """A single schedule entry taken from the first open business period."""
    start, end = "00:00:00", "23:59:59"
    if business_hours:
        start, end = "10:00:00", "22:00:00"
        for day in business_hours:
            if not day.is_closed and day.periods:
                start = f"{day.periods[0].open}:00"
                end = f"{day.periods[0].close}:00"
                break
    return {"id": SCHEDULE_ID, "type": "ScheduleEntry", "startTime": start, "endTime": end}


class FoodpandaAdapter(PlatformAdapter):
    """Foodpanda catalog, availability and order adapter.

    A binding's ``external_store_id`` is the Foodpanda vendor code: catalog
    pushes, availability updates and order lookups all use it.
    """

    platform = Platform.FOODPANDA.value

    def __init__(
        self,
        token_manager: TokenManager,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = 30.0,
        base_url: str = FOODPANDA_BASE_URL,
        chain_code: str = "",
        callback_url: str = "",
    ):
        super().__init__(token_manager, http_client, timeout)
        self.base_url = base_url.rstrip("/")
        self.chain_code = chain_code
        self.callback_url = callback_url

    # =========================================================================
    # Menu
    # =========================================================================

    def convert_menu(self, menu: MenuSnapshot) -> Dict[str, Any]:
        items: Dict[str, Dict[str, Any]] = {}
        topping_ids: Dict[str, str] = {}
        topping_product_ids: List[str] = []

        # Toppings (one per option category) and their option products
        for dish in menu.sellable_dishes():
            for category in dish.option_categories:
                if category.id in topping_ids:
                    continue
                order = len(topping_ids) + 1
                topping_id = f"tt{order:04d}"
                topping_ids[category.id] = topping_id

                products = {}
                for option in category.options:
                    price = format_price(option.price)
                    products[option.id] = {"id": option.id, "type": "Product", "price": price}
                    if option.id not in topping_product_ids:
                        topping_product_ids.append(option.id)
                    items.setdefault(option.id, {
                        "id": option.id,
                        "type": "Product",
                        "title": _text(option.name),
                        "description": _text(option.name),
                        "price": price,
                        "active": True,
                        "isPrepackedItem": False,
                        "isExpressItem": False,
                        "excludeDishInformation": False,
                    })

                single = category.input_type == "single"
                items[topping_id] = {
                    "id": topping_id,
                    "type": "Topping",
                    "order": order,
                    "title": _text(category.name),
                    "quantity": {
                        "minimum": 1 if single else 0,
                        "maximum": 1 if single else len(category.options),
                    },
                    "products": products,
                }

        # Dish products, then the categories that list them
        dish_ids: List[str] = []
        for category in menu.categories:
            category_products = {}
            for menu_item in category.items:
                if not menu_item.is_sellable_dish:
                    continue
                dish = menu_item.dish
                category_products[dish.id] = {"id": dish.id, "type": "Product"}
                if dish.id in dish_ids:
                    continue
                dish_ids.append(dish.id)

                product = {
                    "id": dish.id,
                    "type": "Product",
                    "title": _text(dish.name),
                    "description": _text(dish.description or dish.name),
                    "price": format_price(menu_item.effective_price),
                    "active": True,
                    "isPrepackedItem": False,
                    "isExpressItem": False,
                    "excludeDishInformation": False,
                }
                if dish.image_url:
                    product["images"] = {"default": {"url": dish.image_url}}
                toppings = {
                    topping_ids[c.id]: {"id": topping_ids[c.id], "type": "Topping"}
                    for c in dish.option_categories
                    if c.id in topping_ids
                }
                if toppings:
                    product["toppings"] = toppings
                items[dish.id] = product

            if category_products:
                category_id = f"Category#{category.id}"
                items[category_id] = {
                    "id": category_id,
                    "type": "Category",
                    "title": _text(category.name),
                    "description": _text(category.description or category.name),
                    "products": category_products,
                }

        if topping_product_ids:
            items[TOPPINGS_CATEGORY_ID] = {
                "id": TOPPINGS_CATEGORY_ID,
                "type": "Category",
                "title": _text("Toppings"),
                "description": _text("All selectable toppings"),
                "products": {pid: {"id": pid, "type": "Product"} for pid in topping_product_ids},
            }

        items[SCHEDULE_ID] = schedule_entry(menu.business_hours)

        menu_id = f"menu_{menu.id}"
        items[menu_id] = {
            "id": menu_id,
            "type": "Menu",
            "menuType": "DELIVERY",
            "title": _text(menu.name or "Regular Menu"),
            "description": _text(menu.name or "Regular Menu"),
            "schedule": {SCHEDULE_ID: {"id": SCHEDULE_ID, "type": "ScheduleEntry"}},
            "products": {dish_id: {"id": dish_id, "type": "Product"} for dish_id in dish_ids},
        }
        return {"items": items}

    def _chain_code(self, binding: Optional[PlatformStoreBindingView]) -> str:
        if binding is not None and isinstance(binding.platform_specific, FoodpandaSettings):
            if binding.platform_specific.chain_code:
                return binding.platform_specific.chain_code
        if not self.chain_code:
            raise ConfigurationMissing("Foodpanda chain code is not configured")
        return self.chain_code

    def ensure_configured(self, binding: Optional[PlatformStoreBindingView] = None, menu: bool = False):
        super().ensure_configured(binding, menu)
        if menu:
            self._chain_code(binding)

    async def push_menu(
        self,
        external_store_id: str,
        payload: Dict[str, Any],
        binding: Optional[PlatformStoreBindingView] = None,
    ) -> Ack:
        chain_code = self._chain_code(binding)
        body = {"callbackUrl": self.callback_url, "catalog": payload, "vendors": [external_store_id]}
        logger.info(f"Pushing Foodpanda catalog for vendor {external_store_id}: {len(payload.get('items', {}))} catalog items")
        data = await self._call("PUT", f"{self.base_url}/v2/chains/{chain_code}/catalog", json=body)
        return Ack(platform=self.platform, data=data)

    async def set_item_availability(self, external_store_id: str, item_id: str, suspended: bool) -> Ack:
        data = await self._call(
            "PATCH",
            f"{self.base_url}/v2/vendors/{external_store_id}/products/{item_id}/availability",
            json={"available": not suspended},
        )
        return Ack(platform=self.platform, data=data)

    # =========================================================================
    # Orders
    # =========================================================================

    def ingest_order(self, event: Dict[str, Any]) -> Optional[NormalizedOrder]:
        event_type = self.event_type(event)
        if event_type not in ORDER_EVENTS:
            logger.info(f"Ignoring Foodpanda event type {event_type}")
            return None

        embedded = event.get("order")
        if isinstance(embedded, dict) and (embedded.get("order_id") or embedded.get("order_code")):
            order = self.normalize_order(embedded)
            if not order.external_store_id and event.get("vendor_code"):
                order = order.model_copy(update={"external_store_id": event["vendor_code"]})
            return order

        order_id = event.get("order_id")
        if not order_id or isinstance(order_id, (dict, list)):
            raise MalformedPayload(f"{event_type} event has no order_id")
        return NormalizedOrder(
            platform=Platform.FOODPANDA,
            platform_order_id=str(order_id),
            external_store_id=event.get("vendor_code"),
            platform_status=event_type,
            details_pending=True,
        )

    def normalize_order(self, data: Dict[str, Any]) -> NormalizedOrder:
        """Parse a Foodpanda order document."""
        if not isinstance(data, dict):
            raise MalformedPayload("Foodpanda order is not an object")
        order_id = data.get("order_id") or data.get("order_code")
        if not order_id:
            raise MalformedPayload("Foodpanda order has no order_id")

        items = []
        for product in as_list(data.get("products"), "products"):
            product = as_object(product, "product")
            toppings = as_list(product.get("toppings"), "toppings")
            modifiers = [t.get("name", "") for t in toppings if isinstance(t, dict)]
            items.append(NormalizedOrderItem(
                platform_item_id=product.get("id"),
                name=product.get("name") or "Unknown item",
                quantity=parse_quantity(product.get("quantity")),
                unit_price=to_decimal(product.get("price")),
                modifiers=modifiers,
                note=product.get("instructions") or "",
            ))

        totals = as_object(data.get("order_total"), "order_total")
        customer = as_object(data.get("customer"), "customer")
        return NormalizedOrder(
            platform=Platform.FOODPANDA,
            platform_order_id=str(order_id),
            display_id=data.get("order_code"),
            external_store_id=data.get("vendor_code"),
            platform_status=data.get("order_status"),
            order_type="delivery" if data.get("is_delivery") else "takeout",
            customer_name=customer.get("name") or "Foodpanda customer",
            customer_phone=customer.get("phone_number") or "",
            delivery_address=self._format_address(as_object(customer.get("address"), "customer.address")),
            items=items,
            subtotal=to_decimal(totals.get("subtotal")),
            delivery_fee=to_decimal(totals.get("delivery_fee")),
            service_charge=to_decimal(totals.get("service_fee")),
            total=to_decimal(totals.get("total_price")),
            notes=data.get("customer_note") or "",
            estimated_ready_at=parse_datetime(data.get("estimated_delivery_time")),
        )

    @staticmethod
    def _format_address(address: Optional[Dict[str, Any]]) -> str:
        if not address:
            return ""
        parts = [address.get(key) for key in ("street_name", "street_number", "city", "postcode")]
        return ", ".join(str(p) for p in parts if p)

    async def fetch_order(self, order: NormalizedOrder) -> NormalizedOrder:
        data = await self._call("GET", f"{self.base_url}/v2/orders/{order.platform_order_id}")
        full = self.normalize_order(dig(data, "order", default=data))
        if not full.external_store_id and order.external_store_id:
            full = full.model_copy(update={"external_store_id": order.external_store_id})
        return full

    async def accept_order(self, order: NormalizedOrder) -> Ack:
        body = {"vendor_code": order.external_store_id, "order_status": "order_accepted"}
        if order.estimated_ready_at:
            body["estimated_ready_time"] = order.estimated_ready_at.isoformat()
        data = await self._call("POST", f"{self.base_url}/v2/orders/{order.platform_order_id}/status", json=body)
        logger.info(f"Accepted Foodpanda order {order.platform_order_id}")
        return Ack(platform=self.platform, data=data)
