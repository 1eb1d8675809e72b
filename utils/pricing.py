# utils/pricing.py
import logging
from decimal import Decimal, ROUND_HALF_UP, InvalidOperation
from typing import Any, Dict, Iterable, List, Optional, Tuple

from utils.errors import ValidationError
from utils.globals import MARGIN_FIXED, MARGIN_PERCENT

log = logging.getLogger(__name__)

CENT = Decimal("0.01")
MIN_OVERRIDE_PRICE = Decimal("1")


def to_money(value: Any, field: str = "amount") -> Decimal:
    """Parse a number/str into a Decimal rounded to two places (half up)."""
    if isinstance(value, Decimal):
        amount = value
    else:
        try:
            amount = Decimal(str(value))
        except (InvalidOperation, ValueError, TypeError):
            raise ValidationError(f"{field} is not a valid amount: {value!r}", field=field)
    if not amount.is_finite():
        raise ValidationError(f"{field} is not a valid amount: {value!r}", field=field)
    try:
        return amount.quantize(CENT, rounding=ROUND_HALF_UP)
    except InvalidOperation:
        raise ValidationError(f"{field} is out of range: {value!r}", field=field)


def compute_margin(base: Any, margin_type: Optional[str], margin_value: Any) -> Decimal:
    """
    Platform margin on top of a base price.
    percent -> base * value / 100, fixed -> value. Never negative.
    """
    base = to_money(base, "base_price")
    value = Decimal(str(margin_value if margin_value is not None else 0))
    if base < 0:
        raise ValidationError("base_price must be >= 0", field="base_price")
    if value < 0:
        raise ValidationError("margin_value must be >= 0", field="margin_value")

    margin_type = margin_type or MARGIN_PERCENT
    if margin_type == MARGIN_PERCENT:
        margin = base * value / Decimal(100)
    elif margin_type == MARGIN_FIXED:
        margin = value
    else:
        raise ValidationError(f"unknown margin_type {margin_type!r}", field="margin_type")
    return max(Decimal("0"), to_money(margin, "margin"))


def customer_price(item: Dict[str, Any]) -> Decimal:
    """Price shown to the customer: base price plus the platform margin."""
    return to_money(item["base_price"], "base_price") + compute_margin(
        item["base_price"], item.get("margin_type"), item.get("margin_value")
    )


def fulfiller_display_price(item: Dict[str, Any], override: Optional[Dict[str, Any]] = None) -> Decimal:
    """The fulfiller's own catalog price. Never includes the platform margin."""
    if override and override.get("custom_price") is not None:
        return to_money(override["custom_price"], "custom_price")
    return to_money(item["base_price"], "base_price")


def quote_order(lines: Iterable[Tuple[Dict[str, Any], int]]) -> Tuple[List[Dict[str, Any]], Decimal]:
    """
    Build order items from (catalog item, quantity) pairs.
    unit_price snapshots the customer price; total_amount is the sum of line totals.
    """
    items: List[Dict[str, Any]] = []
    total = Decimal("0.00")
    for item, quantity in lines:
        if int(quantity) < 1:
            raise ValidationError("quantity must be >= 1", field="quantity")
        unit = customer_price(item)
        line_total = to_money(unit * int(quantity))
        items.append({
            "food_item_id": item["id"],
            "quantity": int(quantity),
            "unit_price": unit,
            "total_price": line_total,
        })
        total += line_total
    return items, to_money(total)


async def set_override(store, fulfiller_id: int, item_id: int, new_price: Any, base_price: Any = None) -> Dict[str, Any]:
    """
    Store a fulfiller's custom price for a catalog item.

    A price equal to the base price deletes the override instead of storing it.
    Returns the effective pricing view so callers never need to refetch.
    """
    price = to_money(new_price, "custom_price")
    # The floor applies to the unrounded price.
    raw = new_price if isinstance(new_price, Decimal) else Decimal(str(new_price))
    if raw < MIN_OVERRIDE_PRICE:
        raise ValidationError("custom_price must be at least 1", field="custom_price")

    if base_price is None:
        item = await store.get_catalog_item(item_id)
        base_price = item["base_price"]
    base = to_money(base_price, "base_price")

    if price == base:
        await store.delete_override(fulfiller_id, item_id)
        log.info("Override for cook %s item %s reverted to base price %s", fulfiller_id, item_id, base)
        custom = None
    else:
        await store.put_override(fulfiller_id, item_id, price)
        log.info("Override for cook %s item %s set to %s (base %s)", fulfiller_id, item_id, price, base)
        custom = price

    return {
        "fulfiller_id": fulfiller_id,
        "item_id": item_id,
        "base_price": base,
        "custom_price": custom,
        "display_price": custom if custom is not None else base,
    }
