# handlers/catalog.py
from aiohttp import web

from app_context import STORE, TOKENS
from utils.errors import ValidationError
from utils.globals import ROLE_COOK
from utils.helpers import json_response, parse_int, read_json, require
from utils.pricing import compute_margin, customer_price, fulfiller_display_price, quote_order, set_override, to_money

router = web.RouteTableDef()


@router.get("/catalog/{item_id}")
async def get_item(request: web.Request) -> web.Response:
    item = await request.app[STORE].get_catalog_item(parse_int(request.match_info["item_id"], "item_id"))
    item["margin"] = compute_margin(item["base_price"], item.get("margin_type"), item.get("margin_value"))
    item["customer_price"] = customer_price(item)
    return json_response(item)


@router.get("/cooks/{cook_id}/items/{item_id}/price")
async def get_price(request: web.Request) -> web.Response:
    store = request.app[STORE]
    cook_id = parse_int(request.match_info["cook_id"], "cook_id")
    item_id = parse_int(request.match_info["item_id"], "item_id")
    item = await store.get_catalog_item(item_id)
    override = await store.get_override(cook_id, item_id)
    return json_response({
        "fulfiller_id": cook_id,
        "item_id": item_id,
        "base_price": to_money(item["base_price"]),
        "custom_price": override["custom_price"] if override else None,
        "display_price": fulfiller_display_price(item, override),
    })


@router.put("/cooks/{cook_id}/items/{item_id}/price")
async def put_price(request: web.Request) -> web.Response:
    """
    Set a cook's price. Going back to the base price drops the override,
    which needs a confirmation round-trip.
    """
    store = request.app[STORE]
    body = await read_json(request)
    cook_id = parse_int(request.match_info["cook_id"], "cook_id")
    item_id = parse_int(request.match_info["item_id"], "item_id")
    raw_price = require(body, "price")
    price = to_money(raw_price, "price")

    await store.get_fulfiller(cook_id, ROLE_COOK)
    item = await store.get_catalog_item(item_id)
    base = to_money(item["base_price"])
    if price == base and await store.get_override(cook_id, item_id):
        challenge = request.app[TOKENS].check(
            body.get("token"),
            "delete_override",
            {"cook_id": cook_id, "item_id": item_id},
            f"Remove cook {cook_id}'s custom price for item {item_id} and revert to base price {base}.",
        )
        if challenge:
            return json_response(challenge, status=202)

    return json_response(await set_override(store, cook_id, item_id, raw_price, base_price=base))


@router.post("/quote")
async def quote(request: web.Request) -> web.Response:
    store = request.app[STORE]
    body = await read_json(request)
    lines = require(body, "items")
    if not isinstance(lines, list) or not lines:
        raise ValidationError("items must be a non-empty list", field="items")

    pairs = []
    for line in lines:
        item = await store.get_catalog_item(parse_int(line.get("food_item_id"), "food_item_id"))
        pairs.append((item, parse_int(line.get("quantity"), "quantity")))
    items, total = quote_order(pairs)
    return json_response({"items": items, "total_amount": total})
