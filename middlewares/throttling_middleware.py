# middlewares/throttling_middleware.py
import time
from typing import Callable, Dict

from aiohttp import web

from config import settings
from utils.helpers import json_response

# Reads are cheap and dashboards poll them.
EXEMPT_METHODS = frozenset({"GET", "HEAD", "OPTIONS"})


def prune_stale(last_seen: Dict[str, float], now: float, interval: float) -> None:
    """Forget actors whose last write is old enough that they could not be throttled."""
    for actor in [a for a, t in last_seen.items() if now - t >= interval]:
        del last_seen[actor]


def throttling_middleware(interval: float = settings.THROTTLE_INTERVAL,
                          clock: Callable[[], float] = time.monotonic):
    """Reject a second write from the same actor inside `interval` seconds."""
    last_seen: Dict[str, float] = {}
    pruned_at = [clock()]

    @web.middleware
    async def middleware(request: web.Request, handler):
        if interval <= 0 or request.method in EXEMPT_METHODS:
            return await handler(request)

        actor = request.headers.get("X-Actor-Id") or request.remote or "anonymous"
        now = clock()
        if now - pruned_at[0] >= interval:
            prune_stale(last_seen, now, interval)
            pruned_at[0] = now

        last = last_seen.get(actor)
        if last is not None and (now - last) < interval:
            return json_response(
                {"error": "throttled", "message": "too many requests, slow down"},
                status=429,
            )
        last_seen[actor] = now
        return await handler(request)

    middleware.last_seen = last_seen
    return middleware
