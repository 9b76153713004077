"""Item availability policy shared by every platform adapter.

A dish is suspended when it is manually marked sold out, or when stock
tracking with available-stock is enabled and nothing is left. The manual flag
always wins over the computed stock. An option is suspended exactly when the
dish it stands for (its reference dish) is suspended by the same rule.
"""

from typing import Dict, Iterator, Optional, Tuple

from app.schemas.delivery import InventoryStatus, MenuSnapshot, OptionRef, DishTemplate

InventoryMap = Dict[str, InventoryStatus]

REASON_MANUAL = "manually marked sold out"
REASON_STOCK = "out of stock"


def should_suspend_dish(dish_id: Optional[str], inventory: InventoryMap) -> bool:
    record = inventory.get(dish_id) if dish_id else None
    if record is None:
        return False
    if record.is_sold_out:
        return True
    if record.is_inventory_tracked and record.enable_available_stock:
        return record.available_stock <= 0
    return False


def should_suspend_option(option: OptionRef, inventory: InventoryMap) -> bool:
    if not option.ref_dish_id:
        return False
    return should_suspend_dish(option.ref_dish_id, inventory)


def suspension_reason(dish_id: str, inventory: InventoryMap) -> str:
    record = inventory.get(dish_id)
    return REASON_MANUAL if record is not None and record.is_sold_out else REASON_STOCK


def iter_menu_dishes(menu: MenuSnapshot) -> Iterator[DishTemplate]:
    """Sellable dishes, each yielded once."""
    seen = set()
    for dish in menu.sellable_dishes():
        if dish.id in seen:
            continue
        seen.add(dish.id)
        yield dish


def iter_menu_options(menu: MenuSnapshot) -> Iterator[Tuple[DishTemplate, OptionRef]]:
    """Options of sellable dishes, each option yielded once with its first parent."""
    seen = set()
    for dish in menu.sellable_dishes():
        for category in dish.option_categories:
            for option in category.options:
                if option.id in seen:
                    continue
                seen.add(option.id)
                yield dish, option
