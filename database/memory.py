# database/memory.py
"""
In-process implementation of the persistence contract used by the engines.

Every read-modify-write runs under an asyncio.Lock scoped to the one record it
touches (order, wallet, commission pair), so two coroutines acting on the same
order or wallet are serialized while unrelated records proceed concurrently.
Used by the tests and by single-process deployments without PostgreSQL.
"""
import asyncio
import contextlib
import copy
import itertools
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Tuple

from utils.errors import ConflictError, NotFoundError
from utils.globals import (
    ASSIGN_ACCEPTED,
    ASSIGN_ACTIVE,
    ASSIGN_PENDING,
    ASSIGN_UNASSIGNED,
    COMMISSION_PAID,
    COMMISSION_PENDING,
    ORDER_CANCELLED,
    ORDER_DELIVERED,
    ORDER_PENDING,
    ORDER_TERMINAL,
    OUTCOME_ACCEPTED,
    OUTCOME_ASSIGNED,
    OUTCOME_CANCELLED,
    OUTCOME_REJECTED,
    ROLE_COOK,
    ROLE_DELIVERY,
    ROLE_FIELDS,
    ROLES,
)

ZERO = Decimal("0.00")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MemoryStore:
    def __init__(self, clock: Callable[[], datetime] = utcnow):
        self.clock = clock
        self.orders: Dict[int, Dict[str, Any]] = {}
        self.order_items: Dict[int, List[Dict[str, Any]]] = {}
        self.catalog: Dict[int, Dict[str, Any]] = {}
        self.overrides: Dict[Tuple[int, int], Dict[str, Any]] = {}
        self.fulfillers: Dict[str, Dict[int, Dict[str, Any]]] = {ROLE_COOK: {}, ROLE_DELIVERY: {}}
        self.assignments: List[Dict[str, Any]] = []
        self.wallets: Dict[int, Dict[str, Any]] = {}
        self.wallet_postings: Dict[Tuple[int, int], Dict[str, Any]] = {}
        self.settlements: List[Dict[str, Any]] = []
        self.commissions: Dict[int, Dict[str, Any]] = {}
        self.profiles: Dict[int, Dict[str, Any]] = {}
        self.referral_codes: Dict[int, Dict[str, Any]] = {}
        self.panchayats: Dict[int, Dict[str, Any]] = {}
        self.vehicles: List[Dict[str, Any]] = []
        self._ids = {name: itertools.count(1) for name in ("order", "assignment", "commission", "settlement", "vehicle")}
        # key -> [lock, holders and waiters]; dropped once nobody needs it.
        self._locks: Dict[str, List[Any]] = {}

    @contextlib.asynccontextmanager
    async def _locked(self, key: str):
        entry = self._locks.get(key)
        if entry is None:
            entry = self._locks[key] = [asyncio.Lock(), 0]
        entry[1] += 1
        try:
            async with entry[0]:
                yield
        finally:
            entry[1] -= 1
            if entry[1] == 0:
                del self._locks[key]

    @staticmethod
    def _copy(record: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
        return copy.deepcopy(record) if record is not None else None

    # -------------------- Seeding (records owned by external modules) --------------------
    def add_catalog_item(self, item_id: int, base_price: Any, margin_type: str = "percent",
                         margin_value: Any = 0, name: str = "") -> Dict[str, Any]:
        self.catalog[item_id] = {
            "id": item_id, "name": name, "base_price": Decimal(str(base_price)),
            "margin_type": margin_type, "margin_value": Decimal(str(margin_value)),
        }
        return self._copy(self.catalog[item_id])

    def add_cook(self, cook_id: int, kitchen_name: str = "", rating: float = 0.0, is_active: bool = True,
                 is_available: bool = True, allowed_order_types=(), panchayat_id: Optional[int] = None) -> Dict[str, Any]:
        self.fulfillers[ROLE_COOK][cook_id] = {
            "id": cook_id, "kitchen_name": kitchen_name, "rating": rating, "is_active": is_active,
            "is_available": is_available, "allowed_order_types": list(allowed_order_types),
            "panchayat_id": panchayat_id,
        }
        return self._copy(self.fulfillers[ROLE_COOK][cook_id])

    def add_delivery_staff(self, staff_id: int, name: str = "", rating: float = 0.0, is_active: bool = True,
                           is_available: bool = True, panchayat_id: Optional[int] = None) -> Dict[str, Any]:
        self.fulfillers[ROLE_DELIVERY][staff_id] = {
            "id": staff_id, "name": name, "rating": rating, "is_active": is_active,
            "is_available": is_available, "panchayat_id": panchayat_id, "total_deliveries": 0,
        }
        self.wallets.setdefault(staff_id, self._empty_wallet(staff_id))
        return self._copy(self.fulfillers[ROLE_DELIVERY][staff_id])

    def add_profile(self, user_id: int, name: str, mobile_number: str = "") -> None:
        self.profiles[user_id] = {"user_id": user_id, "name": name, "mobile_number": mobile_number}

    def add_referral_code(self, user_id: int, code: str) -> None:
        self.referral_codes[user_id] = {"user_id": user_id, "code": code}

    def add_panchayat(self, panchayat_id: int, name: str) -> None:
        self.panchayats[panchayat_id] = {"id": panchayat_id, "name": name}

    def add_vehicle(self, order_id: int, vehicle_number: str, driver_name: str = "",
                    rent_amount: Any = None, created_at: Optional[datetime] = None) -> Dict[str, Any]:
        row = {
            "id": next(self._ids["vehicle"]), "order_id": order_id, "vehicle_number": vehicle_number,
            "driver_name": driver_name,
            "rent_amount": Decimal(str(rent_amount)) if rent_amount is not None else None,
            "created_at": created_at or self.clock(),
        }
        self.vehicles.append(row)
        return self._copy(row)

    async def create_order(self, order: Dict[str, Any], items: Optional[List[Dict[str, Any]]] = None) -> Dict[str, Any]:
        order_id = order.get("id") or next(self._ids["order"])
        items = items or []
        total = order.get("total_amount")
        if total is None:
            total = sum((Decimal(str(i["total_price"])) for i in items), ZERO)
        record = {
            "id": order_id,
            "status": order.get("status", ORDER_PENDING),
            "total_amount": Decimal(str(total)),
            "service_type": order.get("service_type"),
            "panchayat_id": order.get("panchayat_id"),
            "ward_number": order.get("ward_number"),
            "payment_method": order.get("payment_method", "cod"),
            "referred_by": order.get("referred_by"),
            "created_at": order.get("created_at") or self.clock(),
            "delivered_at": None,
        }
        for role in ROLES:
            id_field, status_field, at_field = ROLE_FIELDS[role]
            record[id_field] = None
            record[status_field] = ASSIGN_UNASSIGNED
            record[at_field] = None
        self.orders[order_id] = record
        self.order_items[order_id] = copy.deepcopy(items)
        return self._copy(record)

    # -------------------- Catalog --------------------
    async def get_catalog_item(self, item_id: int) -> Dict[str, Any]:
        item = self.catalog.get(item_id)
        if item is None:
            raise NotFoundError("catalog item", item_id)
        return self._copy(item)

    async def get_override(self, fulfiller_id: int, item_id: int) -> Optional[Dict[str, Any]]:
        return self._copy(self.overrides.get((fulfiller_id, item_id)))

    async def put_override(self, fulfiller_id: int, item_id: int, custom_price: Decimal) -> Dict[str, Any]:
        if item_id not in self.catalog:
            raise NotFoundError("catalog item", item_id)
        row = {"fulfiller_id": fulfiller_id, "item_id": item_id, "custom_price": custom_price}
        self.overrides[(fulfiller_id, item_id)] = row
        return self._copy(row)

    async def delete_override(self, fulfiller_id: int, item_id: int) -> bool:
        return self.overrides.pop((fulfiller_id, item_id), None) is not None

    # -------------------- Orders & fulfillers --------------------
    def _order(self, order_id: int) -> Dict[str, Any]:
        order = self.orders.get(order_id)
        if order is None:
            raise NotFoundError("order", order_id)
        return order

    async def get_order(self, order_id: int) -> Dict[str, Any]:
        return self._copy(self._order(order_id))

    async def get_order_items(self, order_id: int) -> List[Dict[str, Any]]:
        self._order(order_id)
        return copy.deepcopy(self.order_items.get(order_id, []))

    async def get_fulfiller(self, fulfiller_id: int, role: str) -> Dict[str, Any]:
        fulfiller = self.fulfillers[role].get(fulfiller_id)
        if fulfiller is None:
            raise NotFoundError(role, fulfiller_id)
        return self._copy(fulfiller)

    async def list_fulfillers(self, role: str) -> List[Dict[str, Any]]:
        return [self._copy(f) for f in self.fulfillers[role].values()]

    async def list_eligible_fulfillers(self, service_type: Optional[str], role: str) -> List[Dict[str, Any]]:
        eligible = []
        for f in self.fulfillers[role].values():
            if not (f["is_active"] and f["is_available"]):
                continue
            if role == ROLE_COOK and service_type not in f.get("allowed_order_types", []):
                continue
            eligible.append(self._copy(f))
        return eligible

    def _append_assignment(self, order_id: int, fulfiller_id: Optional[int], role: str,
                           outcome: str, note: Optional[str] = None) -> None:
        self.assignments.append({
            "id": next(self._ids["assignment"]), "order_id": order_id, "fulfiller_id": fulfiller_id,
            "role": role, "outcome": outcome, "note": note, "created_at": self.clock(),
        })

    def _release(self, order: Dict[str, Any], role: str, outcome: str, note: Optional[str] = None) -> bool:
        id_field, status_field, at_field = ROLE_FIELDS[role]
        if order[status_field] not in ASSIGN_ACTIVE:
            return False
        self._append_assignment(order["id"], order[id_field], role, outcome, note)
        order[id_field] = None
        order[status_field] = ASSIGN_UNASSIGNED
        order[at_field] = None
        return True

    async def assign_fulfiller(self, order_id: int, fulfiller_id: int, role: str) -> Dict[str, Any]:
        id_field, status_field, at_field = ROLE_FIELDS[role]
        async with self._locked(f"order:{order_id}"):
            order = self._order(order_id)
            if order["status"] in ORDER_TERMINAL:
                raise ConflictError(f"order {order_id} is {order['status']}", current=self._copy(order))
            if order[status_field] in ASSIGN_ACTIVE:
                raise ConflictError(
                    f"order {order_id} already has a {order[status_field]} {role} assignment",
                    current=self._copy(order),
                )
            order[id_field] = fulfiller_id
            order[status_field] = ASSIGN_PENDING
            order[at_field] = self.clock()
            self._append_assignment(order_id, fulfiller_id, role, OUTCOME_ASSIGNED)
            return self._copy(order)

    async def record_assignment_outcome(self, order_id: int, fulfiller_id: int, outcome: str, role: str,
                                        note: Optional[str] = None) -> Dict[str, Any]:
        id_field, status_field, _ = ROLE_FIELDS[role]
        async with self._locked(f"order:{order_id}"):
            order = self._order(order_id)
            if order[status_field] != ASSIGN_PENDING or order[id_field] != fulfiller_id:
                raise ConflictError(
                    f"{role} {fulfiller_id} has no pending assignment on order {order_id}",
                    current=self._copy(order),
                )
            if outcome == OUTCOME_ACCEPTED:
                order[status_field] = ASSIGN_ACCEPTED
                self._append_assignment(order_id, fulfiller_id, role, OUTCOME_ACCEPTED, note)
            elif outcome == OUTCOME_REJECTED:
                self._release(order, role, OUTCOME_REJECTED, note)
            else:
                raise ValueError(f"unsupported outcome {outcome!r}")
            return self._copy(order)

    async def release_assignment(self, order_id: int, role: str) -> Dict[str, Any]:
        async with self._locked(f"order:{order_id}"):
            order = self._order(order_id)
            if order["status"] == ORDER_DELIVERED:
                raise ConflictError(f"order {order_id} is already delivered", current=self._copy(order))
            self._release(order, role, OUTCOME_CANCELLED)
            return self._copy(order)

    async def cancel_order(self, order_id: int) -> Dict[str, Any]:
        async with self._locked(f"order:{order_id}"):
            order = self._order(order_id)
            if order["status"] == ORDER_DELIVERED:
                raise ConflictError(f"order {order_id} is already delivered", current=self._copy(order))
            if order["status"] != ORDER_CANCELLED:
                for role in ROLES:
                    self._release(order, role, OUTCOME_CANCELLED)
                order["status"] = ORDER_CANCELLED
            return self._copy(order)

    async def mark_delivered(self, order_id: int) -> Tuple[Dict[str, Any], bool]:
        _, status_field, _ = ROLE_FIELDS[ROLE_DELIVERY]
        async with self._locked(f"order:{order_id}"):
            order = self._order(order_id)
            if order["status"] == ORDER_DELIVERED:
                return self._copy(order), False
            if order["status"] == ORDER_CANCELLED:
                raise ConflictError(f"order {order_id} is cancelled", current=self._copy(order))
            if order[status_field] != ASSIGN_ACCEPTED:
                raise ConflictError(f"order {order_id} has no accepted delivery assignment", current=self._copy(order))
            order["status"] = ORDER_DELIVERED
            order["delivered_at"] = self.clock()
            staff = self.fulfillers[ROLE_DELIVERY].get(order[ROLE_FIELDS[ROLE_DELIVERY][0]])
            if staff is not None:
                staff["total_deliveries"] = staff.get("total_deliveries", 0) + 1
            return self._copy(order), True

    async def list_assignments(self, order_id: Optional[int] = None, role: Optional[str] = None,
                               fulfiller_id: Optional[int] = None) -> List[Dict[str, Any]]:
        return [
            self._copy(a) for a in self.assignments
            if (order_id is None or a["order_id"] == order_id)
            and (role is None or a["role"] == role)
            and (fulfiller_id is None or a["fulfiller_id"] == fulfiller_id)
        ]

    async def list_pending_assignments(self, role: str, older_than: datetime) -> List[Dict[str, Any]]:
        _, status_field, at_field = ROLE_FIELDS[role]
        return [
            self._copy(o) for o in self.orders.values()
            if o[status_field] == ASSIGN_PENDING and o[at_field] is not None and o[at_field] <= older_than
        ]

    # -------------------- Delivery wallets --------------------
    @staticmethod
    def _empty_wallet(staff_id: int) -> Dict[str, Any]:
        return {"staff_id": staff_id, "collected_amount": ZERO, "job_earnings": ZERO, "total_settled": ZERO}

    def _wallet(self, staff_id: int) -> Dict[str, Any]:
        if staff_id not in self.fulfillers[ROLE_DELIVERY]:
            raise NotFoundError("wallet", staff_id)
        return self.wallets.setdefault(staff_id, self._empty_wallet(staff_id))

    async def get_wallet(self, staff_id: int) -> Dict[str, Any]:
        return self._copy(self._wallet(staff_id))

    async def post_wallet_delta(self, order_id: int, staff_id: int, collected_delta: Decimal,
                                earnings_delta: Decimal) -> Tuple[Dict[str, Any], bool]:
        async with self._locked(f"wallet:{staff_id}"):
            wallet = self._wallet(staff_id)
            key = (order_id, staff_id)
            if key in self.wallet_postings:
                return self._copy(wallet), False
            wallet["collected_amount"] += collected_delta
            wallet["job_earnings"] += earnings_delta
            self.wallet_postings[key] = {
                "order_id": order_id, "staff_id": staff_id, "collected_delta": collected_delta,
                "earnings_delta": earnings_delta, "created_at": self.clock(),
            }
            return self._copy(wallet), True

    async def settle_wallet(self, staff_id: int, amount: Decimal) -> Dict[str, Any]:
        async with self._locked(f"wallet:{staff_id}"):
            wallet = self._wallet(staff_id)
            available = wallet["collected_amount"] + wallet["job_earnings"] - wallet["total_settled"]
            if amount > available:
                raise ConflictError(
                    f"settlement {amount} exceeds pending balance {available} for staff {staff_id}",
                    current=self._copy(wallet),
                )
            wallet["total_settled"] += amount
            self.settlements.append({
                "id": next(self._ids["settlement"]), "staff_id": staff_id, "amount": amount,
                "created_at": self.clock(),
            })
            return self._copy(wallet)

    async def list_wallets(self) -> List[Dict[str, Any]]:
        rows = []
        for staff in self.fulfillers[ROLE_DELIVERY].values():
            row = dict(self._wallet(staff["id"]))
            row["name"] = staff.get("name")
            row["total_deliveries"] = staff.get("total_deliveries", 0)
            rows.append(copy.deepcopy(row))
        return rows

    # -------------------- Referral commissions --------------------
    async def upsert_commission(self, order_id: int, referrer_id: int, percent: Decimal,
                                amount: Decimal) -> Tuple[Dict[str, Any], bool]:
        async with self._locked(f"commission:{order_id}:{referrer_id}"):
            for row in self.commissions.values():
                if row["order_id"] == order_id and row["referrer_id"] == referrer_id:
                    return self._copy(row), False
            commission_id = next(self._ids["commission"])
            row = {
                "id": commission_id, "referrer_id": referrer_id, "order_id": order_id,
                "commission_percent": percent, "commission_amount": amount, "status": COMMISSION_PENDING,
                "created_at": self.clock(), "paid_at": None,
            }
            self.commissions[commission_id] = row
            return self._copy(row), True

    async def get_commission(self, commission_id: int) -> Dict[str, Any]:
        row = self.commissions.get(commission_id)
        if row is None:
            raise NotFoundError("commission", commission_id)
        return self._copy(row)

    async def transition_commission(self, commission_id: int, new_status: str, from_status: str) -> Dict[str, Any]:
        async with self._locked(f"commission-id:{commission_id}"):
            row = self.commissions.get(commission_id)
            if row is None:
                raise NotFoundError("commission", commission_id)
            if row["status"] != from_status:
                raise ConflictError(
                    f"commission {commission_id} is {row['status']}, expected {from_status}",
                    current=self._copy(row),
                )
            row["status"] = new_status
            if new_status == COMMISSION_PAID:
                row["paid_at"] = self.clock()
            return self._copy(row)

    async def list_commissions(self) -> List[Dict[str, Any]]:
        return [self._copy(c) for c in self.commissions.values()]

    # -------------------- Bulk reads for reports --------------------
    async def list_orders(self, start: Optional[datetime] = None, end: Optional[datetime] = None,
                          service_type: Optional[str] = None, panchayat_id: Optional[int] = None) -> List[Dict[str, Any]]:
        rows = []
        for o in self.orders.values():
            if start is not None and o["created_at"] < start:
                continue
            if end is not None and o["created_at"] > end:
                continue
            if service_type and o["service_type"] != service_type:
                continue
            if panchayat_id is not None and o["panchayat_id"] != panchayat_id:
                continue
            rows.append(self._copy(o))
        return rows

    async def list_profiles(self) -> List[Dict[str, Any]]:
        return [self._copy(p) for p in self.profiles.values()]

    async def list_referral_codes(self) -> List[Dict[str, Any]]:
        return [self._copy(r) for r in self.referral_codes.values()]

    async def list_panchayats(self) -> List[Dict[str, Any]]:
        return [self._copy(p) for p in self.panchayats.values()]

    async def list_vehicles(self, start: Optional[datetime] = None, end: Optional[datetime] = None) -> List[Dict[str, Any]]:
        return [
            self._copy(v) for v in self.vehicles
            if (start is None or v["created_at"] >= start) and (end is None or v["created_at"] <= end)
        ]
