# handlers/reports.py
from aiohttp import web

from app_context import REPORTS
from utils.helpers import filters_from_query, json_response, parse_int

router = web.RouteTableDef()


@router.get("/reports/sales")
async def sales(request: web.Request) -> web.Response:
    return json_response(await request.app[REPORTS].sales_report(filters_from_query(request)))


@router.get("/reports/panchayats")
async def panchayats(request: web.Request) -> web.Response:
    limit = parse_int(request.query.get("limit"), "limit", required=False)
    rows = await request.app[REPORTS].panchayat_breakdown(filters_from_query(request), limit=limit or 10)
    return json_response({"panchayats": rows})


@router.get("/reports/cooks")
async def cooks(request: web.Request) -> web.Response:
    rows = await request.app[REPORTS].cook_performance_report(filters_from_query(request))
    return json_response({"cooks": rows})


@router.get("/reports/delivery")
async def delivery(request: web.Request) -> web.Response:
    return json_response(await request.app[REPORTS].delivery_settlement_report(filters_from_query(request)))


@router.get("/reports/referrals")
async def referrals(request: web.Request) -> web.Response:
    rows = await request.app[REPORTS].referral_report(filters_from_query(request))
    return json_response({"referrers": rows})


@router.get("/reports/commissions")
async def commissions(request: web.Request) -> web.Response:
    return json_response(await request.app[REPORTS].commission_summary(filters_from_query(request)))


@router.get("/reports/vehicles")
async def vehicles(request: web.Request) -> web.Response:
    return json_response(await request.app[REPORTS].vehicle_rent_report(filters_from_query(request)))
