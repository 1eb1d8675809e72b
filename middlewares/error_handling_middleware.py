# middlewares/error_handling_middleware.py
import logging

from aiohttp import web

from utils.errors import ConflictError, EngineError, NotFoundError, StoreError, ValidationError
from utils.helpers import json_response

logger = logging.getLogger(__name__)

STATUS_BY_ERROR = (
    (ValidationError, 400),
    (NotFoundError, 404),
    (ConflictError, 409),
    (StoreError, 503),
)


def status_for(exc: EngineError) -> int:
    for cls, status in STATUS_BY_ERROR:
        if isinstance(exc, cls):
            return status
    return 500


@web.middleware
async def error_handling_middleware(request: web.Request, handler):
    try:
        return await handler(request)
    except web.HTTPException:
        raise
    except EngineError as e:
        status = status_for(e)
        if status >= 500:
            logger.error("%s %s failed: %s", request.method, request.path, e)
        return json_response(e.to_dict(), status=status)
    except Exception:
        logger.exception("Unhandled exception in handler")
        return json_response({"error": "internal", "message": "internal error"}, status=500)
