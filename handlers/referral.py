# handlers/referral.py
from aiohttp import web

from app_context import SETTLEMENT
from config import settings
from utils.helpers import json_response, parse_int, read_json, require

router = web.RouteTableDef()


@router.post("/commissions")
async def create_commission(request: web.Request) -> web.Response:
    body = await read_json(request)
    percent = body.get("percent")
    row = await request.app[SETTLEMENT].create_commission(
        parse_int(body.get("order_id"), "order_id"),
        parse_int(body.get("referrer_id"), "referrer_id"),
        settings.REFERRAL_COMMISSION_PERCENT if percent is None else percent,
    )
    return json_response(row)


@router.post("/commissions/{commission_id}/status")
async def transition(request: web.Request) -> web.Response:
    body = await read_json(request)
    row = await request.app[SETTLEMENT].transition_commission(
        parse_int(request.match_info["commission_id"], "commission_id"),
        require(body, "status"),
    )
    return json_response(row)
