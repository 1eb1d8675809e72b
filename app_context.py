from aiohttp import web

from utils.allocation import AllocationEngine
from utils.confirmation import ConfirmationTokens
from utils.reports import ReportAggregator
from utils.scheduler import EngineScheduler
from utils.settlement import SettlementLedger

# Shared objects handlers reach through request.app[...]
STORE = web.AppKey("store", object)
ALLOCATION = web.AppKey("allocation", AllocationEngine)
SETTLEMENT = web.AppKey("settlement", SettlementLedger)
REPORTS = web.AppKey("reports", ReportAggregator)
TOKENS = web.AppKey("tokens", ConfirmationTokens)
SCHEDULER = web.AppKey("scheduler", EngineScheduler)
