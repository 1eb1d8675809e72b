# handlers/delivery_staff.py
from aiohttp import web

from app_context import SETTLEMENT
from utils.helpers import json_response, parse_int, read_json, require

router = web.RouteTableDef()


def _staff_id(request: web.Request) -> int:
    return parse_int(request.match_info["staff_id"], "staff_id")


@router.get("/delivery-staff/{staff_id}/wallet")
async def get_wallet(request: web.Request) -> web.Response:
    return json_response(await request.app[SETTLEMENT].get_wallet(_staff_id(request)))


@router.post("/delivery-staff/{staff_id}/settle")
async def settle(request: web.Request) -> web.Response:
    body = await read_json(request)
    wallet = await request.app[SETTLEMENT].settle(_staff_id(request), require(body, "amount"))
    return json_response(wallet)


@router.post("/delivery-staff/{staff_id}/postings")
async def post_collection(request: web.Request) -> web.Response:
    body = await read_json(request)
    wallet = await request.app[SETTLEMENT].post_delivery_collection(
        parse_int(body.get("order_id"), "order_id"),
        _staff_id(request),
        body.get("collected_delta", 0),
        body.get("earnings_delta", 0),
    )
    return json_response(wallet, status=201 if wallet["applied"] else 200)
