import datetime
import json
from decimal import Decimal
from typing import Any, Dict, Optional

from aiohttp import web

from utils.errors import ValidationError
from utils.globals import SERVICE_TYPES
from utils.reports import ReportFilters


def to_jsonable(value: Any) -> Any:
    """Money as strings (no float rounding), datetimes as ISO-8601."""
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (datetime.datetime, datetime.date)):
        return value.isoformat()
    if isinstance(value, dict):
        return {str(k): to_jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [to_jsonable(v) for v in value]
    return value


def json_response(data: Any, status: int = 200) -> web.Response:
    return web.json_response(to_jsonable(data), status=status)


async def read_json(request: web.Request) -> Dict[str, Any]:
    if not request.can_read_body:
        return {}
    try:
        body = await request.json()
    except json.JSONDecodeError:
        raise ValidationError("request body is not valid JSON", field="body")
    if not isinstance(body, dict):
        raise ValidationError("request body must be a JSON object", field="body")
    return body


def parse_int(value: Any, field: str, required: bool = True) -> Optional[int]:
    if value is None or value == "":
        if required:
            raise ValidationError(f"{field} is required", field=field)
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{field} must be an integer", field=field)


def require(body: Dict[str, Any], field: str) -> Any:
    if body.get(field) is None:
        raise ValidationError(f"{field} is required", field=field)
    return body[field]


def parse_day(value: Optional[str], field: str, end_of_day: bool = False) -> Optional[datetime.datetime]:
    """YYYY-MM-DD -> aware UTC datetime at the start (or last instant) of that day."""
    if not value:
        return None
    try:
        day = datetime.date.fromisoformat(value)
    except ValueError:
        raise ValidationError(f"{field} must be YYYY-MM-DD", field=field)
    moment = datetime.time.max if end_of_day else datetime.time.min
    return datetime.datetime.combine(day, moment, tzinfo=datetime.timezone.utc)


def filters_from_query(request: web.Request) -> ReportFilters:
    q = request.query
    start = parse_day(q.get("start"), "start")
    end = parse_day(q.get("end"), "end", end_of_day=True)
    if start and end and start > end:
        raise ValidationError("start must not be after end", field="start")
    service_type = q.get("service_type")
    if service_type not in (None, "", "all") and service_type not in SERVICE_TYPES:
        raise ValidationError(f"service_type must be one of {', '.join(SERVICE_TYPES)}", field="service_type")
    return ReportFilters(
        start=start,
        end=end,
        service_type=None if service_type in (None, "", "all") else service_type,
        panchayat_id=None if q.get("panchayat_id") in (None, "", "all") else parse_int(q.get("panchayat_id"), "panchayat_id"),
    )
