# utils/reports.py
"""
Read-only rollups for admin dashboards.

All figures are folded from committed store state on every call. Revenue only
counts successful terminal states (delivered orders, paid commissions); counts
include every status. Records that fail to join (a referrer without a profile,
an order without a panchayat) are reported under UNKNOWN instead of failing.
"""
import logging
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from utils.globals import (
    ASSIGN_ACCEPTED,
    COMMISSION_APPROVED,
    COMMISSION_PAID,
    COMMISSION_PENDING,
    ORDER_CANCELLED,
    ORDER_DELIVERED,
    ORDER_STATUSES,
    OUTCOME_ACCEPTED,
    OUTCOME_ASSIGNED,
    OUTCOME_REJECTED,
    ROLE_COOK,
    ROLE_DELIVERY,
    ROLE_FIELDS,
    UNKNOWN,
)
from utils.pricing import to_money
from utils.settlement import pending_settlement

log = logging.getLogger(__name__)

ZERO = Decimal("0.00")


@dataclass(frozen=True)
class ReportFilters:
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    service_type: Optional[str] = None
    panchayat_id: Optional[int] = None

    def as_query(self) -> Dict[str, Any]:
        return {
            "start": self.start,
            "end": self.end,
            "service_type": self.service_type,
            "panchayat_id": self.panchayat_id,
        }


def _money(value: Any) -> Decimal:
    return to_money(value) if value is not None else ZERO


def _is_delivered(order: Optional[Dict[str, Any]]) -> bool:
    return bool(order) and order.get("status") == ORDER_DELIVERED


class ReportAggregator:
    def __init__(self, store):
        self.store = store

    async def _orders(self, filters: ReportFilters) -> List[Dict[str, Any]]:
        return await self.store.list_orders(**filters.as_query())

    async def _panchayat_names(self) -> Dict[Any, str]:
        return {p["id"]: p["name"] for p in await self.store.list_panchayats()}

    # -------------------- Sales --------------------
    async def sales_report(self, filters: ReportFilters = ReportFilters()) -> Dict[str, Any]:
        orders = await self._orders(filters)
        by_status = {status: 0 for status in ORDER_STATUSES}
        by_service: Dict[str, Dict[str, Any]] = defaultdict(lambda: {"orders": 0, "revenue": ZERO})
        revenue = ZERO
        delivered = 0

        for o in orders:
            by_status[o["status"]] = by_status.get(o["status"], 0) + 1
            bucket = by_service[o.get("service_type") or UNKNOWN]
            bucket["orders"] += 1
            if _is_delivered(o):
                amount = _money(o.get("total_amount"))
                revenue += amount
                bucket["revenue"] += amount
                delivered += 1

        denom = by_status[ORDER_DELIVERED] + by_status[ORDER_CANCELLED]
        return {
            "total_orders": len(orders),
            "by_status": by_status,
            "revenue": revenue,
            "average_order_value": to_money(revenue / delivered) if delivered else ZERO,
            "completion_pct": 0 if denom == 0 else round(100.0 * by_status[ORDER_DELIVERED] / denom),
            "by_service_type": {k: dict(v) for k, v in by_service.items()},
        }

    async def panchayat_breakdown(self, filters: ReportFilters = ReportFilters(),
                                  limit: Optional[int] = 10) -> List[Dict[str, Any]]:
        orders = await self._orders(filters)
        names = await self._panchayat_names()
        groups: Dict[str, Dict[str, Any]] = {}
        for o in orders:
            name = names.get(o.get("panchayat_id"), UNKNOWN)
            g = groups.setdefault(name, {"panchayat": name, "orders": 0, "delivered": 0, "revenue": ZERO})
            g["orders"] += 1
            if _is_delivered(o):
                g["delivered"] += 1
                g["revenue"] += _money(o.get("total_amount"))
        rows = sorted(groups.values(), key=lambda g: (-g["revenue"], g["panchayat"]))
        return rows[:limit] if limit else rows

    # -------------------- Cook performance (derived, never stored) --------------------
    async def cook_performance_report(self, filters: ReportFilters = ReportFilters()) -> List[Dict[str, Any]]:
        cooks = await self.store.list_fulfillers(ROLE_COOK)
        orders = {o["id"]: o for o in await self._orders(filters)}
        history = await self.store.list_assignments(role=ROLE_COOK)
        id_field, status_field, _ = ROLE_FIELDS[ROLE_COOK]

        per_cook: Dict[int, Dict[str, set]] = defaultdict(lambda: {"assigned": set(), "accepted": set(), "rejected": 0})
        for a in history:
            if a["order_id"] not in orders:
                continue
            stats = per_cook[a["fulfiller_id"]]
            if a["outcome"] == OUTCOME_ASSIGNED:
                stats["assigned"].add(a["order_id"])
            elif a["outcome"] == OUTCOME_ACCEPTED:
                stats["accepted"].add(a["order_id"])
            elif a["outcome"] == OUTCOME_REJECTED:
                stats["rejected"] += 1

        rows = []
        for cook in sorted(cooks, key=lambda c: c["id"]):
            stats = per_cook.get(cook["id"], {"assigned": set(), "accepted": set(), "rejected": 0})
            completed = [
                o for o in orders.values()
                if _is_delivered(o) and o.get(id_field) == cook["id"] and o.get(status_field) == ASSIGN_ACCEPTED
            ]
            rows.append({
                "cook_id": cook["id"],
                "kitchen_name": cook.get("kitchen_name") or UNKNOWN,
                "total_orders": len(stats["assigned"]),
                "accepted_orders": len(stats["accepted"]),
                "rejected_orders": stats["rejected"],
                "completed_orders": len(completed),
                "average_rating": cook.get("rating") or 0,
                "total_earnings": sum((_money(o.get("total_amount")) for o in completed), ZERO),
            })
        return rows

    # -------------------- Delivery settlement --------------------
    async def delivery_settlement_report(self, filters: ReportFilters = ReportFilters()) -> Dict[str, Any]:
        """Wallet balances are current; `deliveries_in_range` honours the filters."""
        wallets = await self.store.list_wallets()
        orders = await self._orders(filters)
        id_field = ROLE_FIELDS[ROLE_DELIVERY][0]
        delivered_by: Dict[int, int] = defaultdict(int)
        for o in orders:
            if _is_delivered(o) and o.get(id_field) is not None:
                delivered_by[o[id_field]] += 1

        rows = []
        totals = {"collected_amount": ZERO, "job_earnings": ZERO, "total_settled": ZERO, "pending_settlement": ZERO}
        for w in wallets:
            row = {
                "staff_id": w["staff_id"],
                "staff_name": w.get("name") or UNKNOWN,
                "total_deliveries": w.get("total_deliveries") or 0,
                "deliveries_in_range": delivered_by.get(w["staff_id"], 0),
                "collected_amount": _money(w.get("collected_amount")),
                "job_earnings": _money(w.get("job_earnings")),
                "total_settled": _money(w.get("total_settled")),
            }
            row["pending_settlement"] = pending_settlement(row)
            for key in totals:
                totals[key] += row[key]
            rows.append(row)
        return {"staff": rows, "totals": totals}

    # -------------------- Referrals --------------------
    async def _commissions_in_scope(self, filters: ReportFilters) -> List[Dict[str, Any]]:
        commissions = await self.store.list_commissions()
        if filters == ReportFilters():
            return commissions
        in_scope = {o["id"] for o in await self._orders(filters)}
        return [c for c in commissions if c["order_id"] in in_scope]

    async def referral_report(self, filters: ReportFilters = ReportFilters()) -> List[Dict[str, Any]]:
        codes = {rc["user_id"]: rc.get("code") for rc in await self.store.list_referral_codes()}
        names = {p["user_id"]: p.get("name") for p in await self.store.list_profiles()}
        commissions = await self._commissions_in_scope(filters)

        by_referrer: Dict[Any, List[Dict[str, Any]]] = defaultdict(list)
        for c in commissions:
            by_referrer[c["referrer_id"]].append(c)

        rows = []
        for referrer_id in sorted(set(codes) | set(by_referrer), key=lambda rid: (rid is None, rid)):
            refs = by_referrer.get(referrer_id, [])

            def total(status: Optional[str] = None) -> Decimal:
                return sum((_money(r["commission_amount"]) for r in refs if status is None or r["status"] == status), ZERO)

            rows.append({
                "referrer_id": referrer_id,
                "referrer_name": names.get(referrer_id) or UNKNOWN,
                "referral_code": codes.get(referrer_id),
                "total_referrals": len(refs),
                "total_commission": total(),
                "pending_commission": total(COMMISSION_PENDING),
                "approved_commission": total(COMMISSION_APPROVED),
                "paid_commission": total(COMMISSION_PAID),
            })
        return rows

    async def commission_summary(self, filters: ReportFilters = ReportFilters()) -> Dict[str, Any]:
        commissions = await self._commissions_in_scope(filters)
        summary = {status: {"count": 0, "amount": ZERO} for status in (COMMISSION_PENDING, COMMISSION_APPROVED, COMMISSION_PAID)}
        for c in commissions:
            bucket = summary.setdefault(c["status"], {"count": 0, "amount": ZERO})
            bucket["count"] += 1
            bucket["amount"] += _money(c["commission_amount"])
        summary["paid_out"] = summary[COMMISSION_PAID]["amount"]
        return summary

    # -------------------- Event vehicles --------------------
    async def vehicle_rent_report(self, filters: ReportFilters = ReportFilters()) -> Dict[str, Any]:
        """Rent paid for event vehicles; `start`/`end` apply to the vehicle record."""
        vehicles = await self.store.list_vehicles(filters.start, filters.end)
        names = await self._panchayat_names()
        orders = {o["id"]: o for o in await self.store.list_orders(
            service_type=filters.service_type, panchayat_id=filters.panchayat_id)}

        rows = []
        for v in vehicles:
            rent = v.get("rent_amount")
            if rent is None or _money(rent) <= 0:
                continue
            order = orders.get(v["order_id"])
            if order is None and (filters.service_type or filters.panchayat_id is not None):
                continue
            rows.append({
                "vehicle_id": v["id"],
                "order_id": v["order_id"],
                "vehicle_number": v.get("vehicle_number"),
                "driver_name": v.get("driver_name") or UNKNOWN,
                "rent_amount": _money(rent),
                "order_status": order["status"] if order else None,
                "panchayat": names.get(order.get("panchayat_id"), UNKNOWN) if order else UNKNOWN,
                "created_at": v["created_at"],
            })
        return {
            "vehicles": rows,
            "total_rent": sum((r["rent_amount"] for r in rows), ZERO),
        }
