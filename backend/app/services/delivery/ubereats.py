"""Uber Eats API integration."""

import logging
from decimal import Decimal
from typing import Any, Dict, List, Optional

import httpx

from app.core.errors import MalformedPayload
from app.schemas.delivery import (
    BusinessDay,
    MenuSnapshot,
    NormalizedOrder,
    NormalizedOrderItem,
    OptionCategory,
    Platform,
    PlatformStoreBindingView,
)
from app.services.delivery.base import (
    Ack,
    PlatformAdapter,
    as_list,
    as_object,
    dig,
    from_minor_units,
    parse_datetime,
    parse_quantity,
    to_minor_units,
)
from app.services.delivery.token_manager import TokenManager

logger = logging.getLogger(__name__)

UBEREATS_API_BASE = "https://api.uber.com"

# Far-future epoch milliseconds: "suspended until further notice"
SUSPEND_INDEFINITELY = 8640000000000

ORDER_NOTIFICATION = "orders.notification"

DAY_NAMES = {
    0: "sunday",
    1: "monday",
    2: "tuesday",
    3: "wednesday",
    4: "thursday",
    5: "friday",
    6: "saturday",
}
WEEK_ORDER = [1, 2, 3, 4, 5, 6, 0]


def _translations(text: str) -> Dict[str, Any]:
    return {"translations": {"en_us": text, "zh_tw": text}}


def service_availability(business_hours: List[BusinessDay]) -> List[Dict[str, Any]]:
    """Business hours as Uber ``service_availability``.

    No hours at all means open around the clock every day; closed days are
    left out entirely.
    """
    if not business_hours:
        return [
            {"day_of_week": DAY_NAMES[day], "time_periods": [{"start_time": "00:00", "end_time": "23:59"}]}
            for day in WEEK_ORDER
        ]

    availability = []
    for day in business_hours:
        if day.is_closed or day.day not in DAY_NAMES:
            continue
        availability.append({
            "day_of_week": DAY_NAMES[day.day],
            "time_periods": [{"start_time": p.open, "end_time": p.close} for p in day.periods],
        })
    return availability


def modifier_group(category: OptionCategory) -> Dict[str, Any]:
    if category.input_type == "single":
        quantity = {"min_permitted": 1, "max_permitted": 1}
    else:
        quantity = {"min_permitted": 0, "max_permitted": len(category.options)}
    return {
        "id": category.id,
        "title": _translations(category.name),
        "external_data": f"External data for {category.name}",
        "modifier_options": [{"type": "ITEM", "id": option.id} for option in category.options],
        "quantity_info": {"quantity": quantity},
        "display_type": None,
    }


class UberEatsAdapter(PlatformAdapter):
    """Uber Eats menu, availability and order adapter."""

    platform = Platform.UBEREATS.value

    def __init__(
        self,
        token_manager: TokenManager,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: float = 30.0,
        api_base: str = UBEREATS_API_BASE,
    ):
        super().__init__(token_manager, http_client, timeout)
        self.api_base = api_base.rstrip("/")

    def _store_url(self, store_id: str) -> str:
        return f"{self.api_base}/v2/eats/stores/{store_id}"

    # =========================================================================
    # Menu
    # =========================================================================

    def convert_menu(self, menu: MenuSnapshot) -> Dict[str, Any]:
        result: Dict[str, List[Dict[str, Any]]] = {
            "menus": [],
            "categories": [],
            "items": [],
            "modifier_groups": [],
        }
        main_menu = {
            "id": menu.id,
            "title": _translations(menu.name),
            "service_availability": service_availability(menu.business_hours),
            "category_ids": [],
        }
        seen_groups = set()
        seen_items = set()
        modifier_items = []

        for category in menu.categories:
            uber_category = {"id": category.id, "title": _translations(category.name), "entities": []}

            for menu_item in category.items:
                if not menu_item.is_sellable_dish:
                    continue
                dish = menu_item.dish
                uber_category["entities"].append({"id": dish.id, "type": "ITEM"})
                if dish.id in seen_items:
                    continue
                seen_items.add(dish.id)

                item = {
                    "id": dish.id,
                    "title": _translations(dish.name),
                    "description": _translations(dish.description or ""),
                    "price_info": {"price": to_minor_units(menu_item.effective_price)},
                    "tax_info": {},
                    "external_data": f"External data for {dish.name}",
                    "quantity_info": {},
                }
                if dish.image_url:
                    item["image_url"] = dish.image_url

                group_ids = []
                for option_category in dish.option_categories:
                    if option_category.id not in group_ids:
                        group_ids.append(option_category.id)
                    if option_category.id in seen_groups:
                        continue
                    seen_groups.add(option_category.id)
                    result["modifier_groups"].append(modifier_group(option_category))

                    for option in option_category.options:
                        if option.id in seen_items:
                            continue
                        seen_items.add(option.id)
                        modifier_item = {
                            "id": option.id,
                            "title": _translations(option.name),
                            "external_data": f"External data for {option.name}",
                            "price_info": {"price": to_minor_units(option.price)},
                            "tax_info": {},
                            "quantity_info": {},
                        }
                        if option.tags:
                            modifier_item["tags"] = list(option.tags)
                        modifier_items.append(modifier_item)
                if group_ids:
                    item["modifier_group_ids"] = {"ids": group_ids}

                result["items"].append(item)

            result["categories"].append(uber_category)
            main_menu["category_ids"].append(category.id)

        result["menus"].append(main_menu)
        result["items"].extend(modifier_items)
        return result

    async def push_menu(
        self,
        external_store_id: str,
        payload: Dict[str, Any],
        binding: Optional[PlatformStoreBindingView] = None,
    ) -> Ack:
        logger.info(
            f"Pushing Uber Eats menu to store {external_store_id}: "
            f"{len(payload.get('items', []))} items, {len(payload.get('modifier_groups', []))} modifier groups"
        )
        data = await self._call("PUT", f"{self._store_url(external_store_id)}/menus", json=payload)
        return Ack(platform=self.platform, data=data)

    async def set_item_availability(self, external_store_id: str, item_id: str, suspended: bool) -> Ack:
        body = {
            "suspension_info": {
                "suspension": {
                    "suspend_until": SUSPEND_INDEFINITELY if suspended else None,
                    "reason": None,
                }
            }
        }
        data = await self._call("POST", f"{self._store_url(external_store_id)}/menus/items/{item_id}", json=body)
        return Ack(platform=self.platform, data=data)

    # =========================================================================
    # Orders
    # =========================================================================

    def ingest_order(self, event: Dict[str, Any]) -> Optional[NormalizedOrder]:
        event_type = self.event_type(event)
        if event_type != ORDER_NOTIFICATION:
            logger.info(f"Ignoring Uber Eats event type {event_type}")
            return None

        meta = as_object(event.get("meta"), "meta")
        resource = meta.get("resource")
        if isinstance(resource, dict) and resource.get("id"):
            return self.normalize_order(resource)

        resource_id = meta.get("resource_id")
        if not resource_id or isinstance(resource_id, (dict, list)):
            raise MalformedPayload("orders.notification event has no meta.resource_id")
        return NormalizedOrder(
            platform=Platform.UBEREATS,
            platform_order_id=str(resource_id),
            external_store_id=meta.get("user_id"),
            platform_status=meta.get("status"),
            details_pending=True,
            resource_href=event.get("resource_href"),
        )

    def normalize_order(self, data: Dict[str, Any]) -> NormalizedOrder:
        """Parse an Uber Eats order document."""
        if not isinstance(data, dict) or not data.get("id"):
            raise MalformedPayload("Uber Eats order has no id")

        items = []
        for raw in as_list(dig(data, "cart", "items"), "cart.items"):
            raw = as_object(raw, "cart item")
            quantity = parse_quantity(raw.get("quantity"))
            unit_amount = dig(raw, "price", "unit_price", "amount")
            if unit_amount is not None:
                unit_price = from_minor_units(unit_amount)
            else:
                line_total = from_minor_units(dig(raw, "price", "total_price", "amount"))
                unit_price = (line_total / quantity).quantize(Decimal("0.01"))
            modifiers = [
                selected.get("title", "")
                for group in as_list(raw.get("selected_modifier_groups"), "selected_modifier_groups")
                if isinstance(group, dict)
                for selected in as_list(group.get("selected_items"), "selected_items")
                if isinstance(selected, dict)
            ]
            items.append(NormalizedOrderItem(
                platform_item_id=raw.get("id"),
                name=raw.get("title") or "Unknown item",
                quantity=quantity,
                unit_price=unit_price,
                modifiers=modifiers,
                note=raw.get("special_instructions") or "",
            ))

        eaters = as_list(data.get("eaters"), "eaters")
        eater = as_object(data.get("eater") or (eaters[0] if eaters else None), "eater")
        charges = as_object(dig(data, "payment", "charges"), "payment.charges")

        return NormalizedOrder(
            platform=Platform.UBEREATS,
            platform_order_id=str(data["id"]),
            display_id=data.get("display_id"),
            external_store_id=dig(data, "store", "id"),
            platform_status=data.get("current_state"),
            order_type="delivery" if data.get("type") == "DELIVERY_BY_UBER" else "takeout",
            customer_name=eater.get("first_name") or "Uber Eats customer",
            customer_phone=eater.get("phone") or "",
            delivery_address=self._format_address(as_object(dig(data, "delivery", "location"), "delivery.location")),
            items=items,
            subtotal=from_minor_units(dig(charges, "sub_total", "amount")),
            service_charge=from_minor_units(dig(charges, "total_fee", "amount")),
            total=from_minor_units(dig(charges, "total", "amount")),
            notes=data.get("special_instructions") or "",
            estimated_ready_at=parse_datetime(data.get("estimated_ready_for_pickup_at")),
        )

    @staticmethod
    def _format_address(location: Optional[Dict[str, Any]]) -> str:
        if not location:
            return ""
        parts = [
            location.get(key)
            for key in ("street_address_1", "street_address_2", "city", "state", "country")
        ]
        return ", ".join(p for p in parts if p)

    async def fetch_order(self, order: NormalizedOrder) -> NormalizedOrder:
        url = order.resource_href or f"{self.api_base}/v1/delivery/order/{order.platform_order_id}"
        data = await self._call("GET", url)
        full = self.normalize_order(data)
        if not full.external_store_id and order.external_store_id:
            full = full.model_copy(update={"external_store_id": order.external_store_id})
        return full

    async def accept_order(self, order: NormalizedOrder) -> Ack:
        data = await self._call(
            "POST",
            f"{self.api_base}/v1/delivery/order/{order.platform_order_id}/accept",
            json={"reason": "Order accepted by POS system"},
        )
        logger.info(f"Accepted Uber Eats order {order.platform_order_id}")
        return Ack(platform=self.platform, data=data)
