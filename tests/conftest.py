from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from database.memory import MemoryStore
from utils.allocation import AllocationEngine
from utils.reports import ReportAggregator
from utils.retry import RetryPolicy
from utils.settlement import SettlementLedger

NO_WAIT = RetryPolicy(attempts=3, base_delay=0, max_delay=0)


def _now() -> datetime:
    return datetime(2026, 3, 2, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, now: datetime = None):
        self.now = now or _now()

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(clock: FakeClock) -> MemoryStore:
    s = MemoryStore(clock=clock)
    s.add_panchayat(1, "Athirampuzha")
    s.add_panchayat(2, "Ettumanoor")
    s.add_catalog_item(1, "200", "percent", "10", name="Chicken Biryani")
    s.add_catalog_item(2, "50", "fixed", "5", name="Porotta")
    s.add_catalog_item(3, "150", "percent", "0", name="Fish Curry")
    s.add_cook(10, "Amma's Kitchen", rating=4.8, allowed_order_types=["homemade", "cloud_kitchen"], panchayat_id=1)
    s.add_cook(11, "Spice Hub", rating=4.8, allowed_order_types=["homemade"], panchayat_id=1)
    s.add_cook(12, "Event Caterers", rating=4.9, allowed_order_types=["indoor_events"], panchayat_id=2)
    s.add_cook(13, "Closed Kitchen", rating=5.0, is_available=False, allowed_order_types=["homemade"])
    s.add_cook(14, "Night Kitchen", rating=3.9, allowed_order_types=["homemade"], panchayat_id=2)
    s.add_delivery_staff(20, "Ravi", rating=4.5, panchayat_id=1)
    s.add_delivery_staff(21, "Anu", rating=4.7, panchayat_id=1)
    s.add_profile(30, "Suresh Nair")
    s.add_referral_code(30, "SURESH30")
    return s


@pytest.fixture
def allocation(store: MemoryStore, clock: FakeClock) -> AllocationEngine:
    return AllocationEngine(store, retry=NO_WAIT, clock=clock)


@pytest.fixture
def ledger(store: MemoryStore) -> SettlementLedger:
    return SettlementLedger(store, retry=NO_WAIT)


@pytest.fixture
def reports(store: MemoryStore) -> ReportAggregator:
    return ReportAggregator(store)


async def place_order(store: MemoryStore, total: str = "200", **fields) -> dict:
    order = {"service_type": "homemade", "panchayat_id": 1, "total_amount": Decimal(total)}
    order.update(fields)
    return await store.create_order(order)


async def deliver(allocation: AllocationEngine, ledger: SettlementLedger, order_id: int,
                  cook_id: int = 10, staff_id: int = 20, **kwargs) -> dict:
    """Run an order through both roles to delivered."""
    await allocation.assign(order_id, cook_id, "cook")
    await allocation.respond(order_id, cook_id, "cook", "accept")
    await allocation.assign(order_id, staff_id, "delivery")
    await allocation.respond(order_id, staff_id, "delivery", "accept")
    return await ledger.complete_delivery(order_id, **kwargs)
