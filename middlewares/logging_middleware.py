"""
Access log for every request.
"""

import logging
import time

from aiohttp import web

logger = logging.getLogger(__name__)


@web.middleware
async def logging_middleware(request: web.Request, handler):
    started = time.monotonic()
    status = 500
    try:
        response = await handler(request)
        status = response.status
        return response
    except web.HTTPException as e:
        status = e.status
        raise
    finally:
        logger.info(
            "%s %s -> %s (%.1f ms) actor=%s",
            request.method,
            request.path,
            status,
            (time.monotonic() - started) * 1000,
            request.headers.get("X-Actor-Id", "-"),
        )
