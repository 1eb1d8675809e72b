# handlers/admin_order.py
"""Order assignment and lifecycle endpoints used by the admin console and fulfiller apps."""
import logging

from aiohttp import web

from app_context import ALLOCATION, SETTLEMENT, STORE, TOKENS
from config import settings
from utils.errors import ConflictError, ValidationError
from utils.globals import ROLE_FIELDS, ROLES
from utils.helpers import json_response, parse_int, read_json, require

log = logging.getLogger(__name__)

router = web.RouteTableDef()


def _order_id(request: web.Request) -> int:
    return parse_int(request.match_info["order_id"], "order_id")


def _flag(value, default: bool = False) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("1", "true", "yes", "on")


@router.get("/orders/{order_id}")
async def get_order(request: web.Request) -> web.Response:
    store = request.app[STORE]
    order_id = _order_id(request)
    order = await store.get_order(order_id)
    order["items"] = await store.get_order_items(order_id)
    return json_response(order)


@router.get("/orders/{order_id}/eligible/{role}")
async def list_eligible(request: web.Request) -> web.Response:
    include_rejected = _flag(request.query.get("include_rejected"))
    candidates = await request.app[ALLOCATION].list_eligible(
        _order_id(request), request.match_info["role"], exclude_rejected=not include_rejected
    )
    return json_response({"candidates": candidates})


@router.post("/orders/{order_id}/assign")
async def assign(request: web.Request) -> web.Response:
    """Offer to a chosen fulfiller, or to the best candidate when none is given."""
    body = await read_json(request)
    order_id = _order_id(request)
    role = require(body, "role")
    allocation = request.app[ALLOCATION]

    fulfiller_id = parse_int(body.get("fulfiller_id"), "fulfiller_id", required=False)
    if fulfiller_id is not None:
        order = await allocation.assign(order_id, fulfiller_id, role)
    else:
        order = await allocation.assign_next(order_id, role)
        if order is None:
            raise ConflictError(f"no eligible {role} for order {order_id}")
    return json_response(order)


@router.post("/orders/{order_id}/respond")
async def respond(request: web.Request) -> web.Response:
    body = await read_json(request)
    order = await request.app[ALLOCATION].respond(
        _order_id(request),
        parse_int(body.get("fulfiller_id"), "fulfiller_id"),
        require(body, "role"),
        require(body, "response"),
    )
    return json_response(order)


@router.post("/orders/{order_id}/release")
async def release_assignment(request: web.Request) -> web.Response:
    body = await read_json(request)
    order_id = _order_id(request)
    role = require(body, "role")
    if role not in ROLES:
        raise ValidationError(f"role must be one of {', '.join(ROLES)}", field="role")
    order = await request.app[STORE].get_order(order_id)

    challenge = request.app[TOKENS].check(
        body.get("token"),
        "release_assignment",
        {"order_id": order_id, "role": role},
        f"Release the {role} assignment on order {order_id} "
        f"(currently {order[ROLE_FIELDS[role][1]]}).",
    )
    if challenge:
        return json_response(challenge, status=202)
    return json_response(await request.app[ALLOCATION].cancel_assignment(order_id, role))


@router.post("/orders/{order_id}/cancel")
async def cancel_order(request: web.Request) -> web.Response:
    body = await read_json(request)
    order_id = _order_id(request)
    order = await request.app[STORE].get_order(order_id)

    challenge = request.app[TOKENS].check(
        body.get("token"),
        "cancel_order",
        {"order_id": order_id},
        f"Cancel order {order_id} (status {order['status']}) and release all assignments.",
    )
    if challenge:
        return json_response(challenge, status=202)
    return json_response(await request.app[ALLOCATION].cancel_order(order_id))


@router.post("/orders/{order_id}/deliver")
async def deliver(request: web.Request) -> web.Response:
    body = await read_json(request)
    result = await request.app[SETTLEMENT].complete_delivery(
        _order_id(request),
        collected_amount=body.get("collected_amount"),
        job_earning=body.get("job_earning"),
    )
    return json_response(result)


@router.get("/orders/{order_id}/history")
async def history(request: web.Request) -> web.Response:
    rows = await request.app[ALLOCATION].history(_order_id(request), request.query.get("role"))
    return json_response({"assignments": rows})


@router.post("/assignments/sweep")
async def sweep(request: web.Request) -> web.Response:
    """Manual run of the offer-expiry sweep the scheduler performs."""
    body = await read_json(request)
    window = parse_int(body.get("window_seconds"), "window_seconds", required=False)
    if window is None:
        window = settings.OFFER_EXPIRY_SECONDS
    reoffer = _flag(body.get("reoffer"), settings.AUTO_REOFFER)
    roles = [body["role"]] if body.get("role") else list(ROLES)

    allocation = request.app[ALLOCATION]
    expired = {}
    for role in roles:
        expired[role] = await allocation.sweep_expired(role, window, reoffer=reoffer)
    log.info("Manual sweep (window=%ss): %s", window, expired)
    return json_response({"expired": expired})
