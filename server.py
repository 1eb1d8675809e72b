import logging
from datetime import datetime
from typing import Callable, Optional

from aiohttp import web

from app_context import ALLOCATION, REPORTS, SCHEDULER, SETTLEMENT, STORE, TOKENS
from config import settings
from utils.allocation import AllocationEngine
from utils.confirmation import ConfirmationTokens
from utils.reports import ReportAggregator
from utils.retry import RetryPolicy
from utils.scheduler import EngineScheduler
from utils.settlement import SettlementLedger

# Routers
from handlers.admin_order import router as admin_order_router
from handlers.catalog import router as catalog_router
from handlers.delivery_staff import router as delivery_staff_router
from handlers.referral import router as referral_router
from handlers.reports import router as reports_router

# Middlewares
from middlewares.error_handling_middleware import error_handling_middleware
from middlewares.logging_middleware import logging_middleware
from middlewares.throttling_middleware import throttling_middleware

log = logging.getLogger(__name__)


# --- Health check ---
async def health_check(request):
    return web.Response(text="OK")


# --- Startup / Shutdown ---
async def on_startup(app: web.Application):
    log.info("🚀 Starting fulfillment engine...")
    store = app[STORE]
    if hasattr(store, "init_pool"):
        await store.init_pool()
        await store.init_schema()
    if SCHEDULER in app:
        app[SCHEDULER].start()


async def on_cleanup(app: web.Application):
    log.info("🛑 Shutting down fulfillment engine...")
    if SCHEDULER in app:
        app[SCHEDULER].shutdown()
    store = app[STORE]
    if hasattr(store, "close_pool"):
        await store.close_pool()


# --- App factory ---
def create_app(store, retry: Optional[RetryPolicy] = None, tokens: Optional[ConfirmationTokens] = None,
               with_scheduler: bool = True, throttle_interval: float = settings.THROTTLE_INTERVAL,
               clock: Optional[Callable[[], datetime]] = None) -> web.Application:
    """
    Wire the engines around one store. Tests pass a MemoryStore and
    `with_scheduler=False`; production passes the asyncpg Database.
    """
    retry = retry or RetryPolicy()
    allocation = AllocationEngine(store, retry=retry, clock=clock) if clock else AllocationEngine(store, retry=retry)

    app = web.Application(middlewares=[
        logging_middleware,
        error_handling_middleware,
        throttling_middleware(throttle_interval),
    ])
    app[STORE] = store
    app[ALLOCATION] = allocation
    app[SETTLEMENT] = SettlementLedger(store, retry=retry)
    app[REPORTS] = ReportAggregator(store)
    app[TOKENS] = tokens or ConfirmationTokens()
    if with_scheduler:
        app[SCHEDULER] = EngineScheduler(allocation)

    app.router.add_get("/health", health_check)
    app.add_routes(admin_order_router)
    app.add_routes(catalog_router)
    app.add_routes(delivery_staff_router)
    app.add_routes(referral_router)
    app.add_routes(reports_router)

    app.on_startup.append(on_startup)
    app.on_cleanup.append(on_cleanup)
    return app


# --- Entrypoint ---
if __name__ == "__main__":
    from database.db import Database

    logging.basicConfig(level=settings.LOG_LEVEL)
    log.info("Starting server on http://%s:%s", settings.HOST, settings.PORT)
    web.run_app(create_app(Database()), host=settings.HOST, port=settings.PORT)
