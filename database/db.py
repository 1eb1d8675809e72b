# database/db.py (Postgres/asyncpg)
import asyncio
import contextlib
import logging
from datetime import datetime
from decimal import Decimal
from typing import Optional, Dict, Any, List, Tuple

import asyncpg
from asyncpg.pool import Pool

from config import settings
from utils.errors import ConflictError, EngineError, NotFoundError, StoreError
from utils.globals import (
    ASSIGN_ACTIVE,
    ASSIGN_PENDING,
    COMMISSION_PAID,
    ORDER_CANCELLED,
    ORDER_DELIVERED,
    OUTCOME_ACCEPTED,
    OUTCOME_ASSIGNED,
    OUTCOME_CANCELLED,
    OUTCOME_REJECTED,
    ROLE_COOK,
    ROLE_DELIVERY,
    ROLE_FIELDS,
    ROLES,
)

log = logging.getLogger(__name__)

# --- 1. UNIFIED SCHEMA SQL (Postgres Dialect) ---
SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS panchayats (
    id SERIAL PRIMARY KEY,
    name TEXT NOT NULL,
    is_active BOOLEAN DEFAULT TRUE
);

CREATE TABLE IF NOT EXISTS profiles (
    user_id BIGINT PRIMARY KEY,
    name TEXT,
    mobile_number TEXT UNIQUE
);

CREATE TABLE IF NOT EXISTS referral_codes (
    id SERIAL PRIMARY KEY,
    user_id BIGINT UNIQUE NOT NULL,
    code TEXT UNIQUE NOT NULL
);

CREATE TABLE IF NOT EXISTS food_items (
    id SERIAL PRIMARY KEY,
    name TEXT NOT NULL,
    price NUMERIC(12,2) NOT NULL CHECK (price >= 0),
    platform_margin_type TEXT DEFAULT 'percent' CHECK (platform_margin_type IN ('percent','fixed')),
    platform_margin_value NUMERIC(12,2) DEFAULT 0 CHECK (platform_margin_value >= 0)
);

CREATE TABLE IF NOT EXISTS cooks (
    id SERIAL PRIMARY KEY,
    kitchen_name TEXT,
    rating DOUBLE PRECISION DEFAULT 0.0,
    is_active BOOLEAN DEFAULT TRUE,
    is_available BOOLEAN DEFAULT FALSE,
    allowed_order_types TEXT[] DEFAULT '{}',
    panchayat_id INTEGER REFERENCES panchayats(id)
);

-- Present only while the cook's price differs from the item's base price.
CREATE TABLE IF NOT EXISTS cook_dishes (
    cook_id INTEGER NOT NULL REFERENCES cooks(id),
    food_item_id INTEGER NOT NULL REFERENCES food_items(id),
    custom_price NUMERIC(12,2) NOT NULL CHECK (custom_price >= 1),
    updated_at TIMESTAMPTZ DEFAULT NOW(),
    PRIMARY KEY (cook_id, food_item_id)
);

CREATE TABLE IF NOT EXISTS delivery_staff (
    id SERIAL PRIMARY KEY,
    name TEXT,
    rating DOUBLE PRECISION DEFAULT 0.0,
    is_active BOOLEAN DEFAULT TRUE,
    is_available BOOLEAN DEFAULT FALSE,
    panchayat_id INTEGER REFERENCES panchayats(id),
    total_deliveries INTEGER DEFAULT 0
);

CREATE TABLE IF NOT EXISTS orders (
    id SERIAL PRIMARY KEY,
    status TEXT NOT NULL DEFAULT 'pending'
        CHECK (status IN ('pending','confirmed','preparing','ready','delivered','cancelled')),
    total_amount NUMERIC(12,2) NOT NULL DEFAULT 0,
    service_type TEXT,
    panchayat_id INTEGER REFERENCES panchayats(id),
    ward_number INTEGER,
    payment_method TEXT DEFAULT 'cod',
    referred_by BIGINT NULL,
    assigned_cook_id INTEGER NULL,
    cook_assignment_status TEXT NOT NULL DEFAULT 'unassigned',
    cook_assigned_at TIMESTAMPTZ NULL,
    assigned_delivery_id INTEGER NULL,
    delivery_assignment_status TEXT NOT NULL DEFAULT 'unassigned',
    delivery_assigned_at TIMESTAMPTZ NULL,
    created_at TIMESTAMPTZ DEFAULT NOW(),
    delivered_at TIMESTAMPTZ NULL,
    updated_at TIMESTAMPTZ DEFAULT NOW()
);

CREATE TABLE IF NOT EXISTS order_items (
    id SERIAL PRIMARY KEY,
    order_id INTEGER NOT NULL REFERENCES orders(id),
    food_item_id INTEGER,
    quantity INTEGER NOT NULL CHECK (quantity >= 1),
    unit_price NUMERIC(12,2) NOT NULL,
    total_price NUMERIC(12,2) NOT NULL
);

-- Append-only assignment history, cook and delivery alike.
CREATE TABLE IF NOT EXISTS order_assignments (
    id SERIAL PRIMARY KEY,
    order_id INTEGER NOT NULL REFERENCES orders(id),
    fulfiller_id INTEGER,
    role TEXT NOT NULL CHECK (role IN ('cook','delivery')),
    outcome TEXT NOT NULL CHECK (outcome IN ('assigned','accepted','rejected','cancelled')),
    note TEXT,
    created_at TIMESTAMPTZ DEFAULT NOW()
);

CREATE TABLE IF NOT EXISTS delivery_wallets (
    staff_id INTEGER PRIMARY KEY REFERENCES delivery_staff(id),
    collected_amount NUMERIC(12,2) NOT NULL DEFAULT 0 CHECK (collected_amount >= 0),
    job_earnings NUMERIC(12,2) NOT NULL DEFAULT 0 CHECK (job_earnings >= 0),
    total_settled NUMERIC(12,2) NOT NULL DEFAULT 0 CHECK (total_settled >= 0),
    CHECK (total_settled <= collected_amount + job_earnings)
);

-- Dedup key for delivery completion postings.
CREATE TABLE IF NOT EXISTS wallet_postings (
    order_id INTEGER NOT NULL,
    staff_id INTEGER NOT NULL,
    collected_delta NUMERIC(12,2) NOT NULL,
    earnings_delta NUMERIC(12,2) NOT NULL,
    created_at TIMESTAMPTZ DEFAULT NOW(),
    PRIMARY KEY (order_id, staff_id)
);

CREATE TABLE IF NOT EXISTS wallet_settlements (
    id SERIAL PRIMARY KEY,
    staff_id INTEGER NOT NULL,
    amount NUMERIC(12,2) NOT NULL CHECK (amount > 0),
    created_at TIMESTAMPTZ DEFAULT NOW()
);

CREATE TABLE IF NOT EXISTS referrals (
    id SERIAL PRIMARY KEY,
    referrer_id BIGINT NOT NULL,
    order_id INTEGER NOT NULL REFERENCES orders(id),
    commission_percent NUMERIC(5,2) NOT NULL CHECK (commission_percent BETWEEN 0 AND 100),
    commission_amount NUMERIC(12,2) NOT NULL,
    status TEXT NOT NULL DEFAULT 'pending' CHECK (status IN ('pending','approved','paid')),
    created_at TIMESTAMPTZ DEFAULT NOW(),
    paid_at TIMESTAMPTZ NULL,
    CONSTRAINT unique_referral_order UNIQUE (order_id, referrer_id)
);

CREATE TABLE IF NOT EXISTS indoor_event_vehicles (
    id SERIAL PRIMARY KEY,
    order_id INTEGER REFERENCES orders(id),
    vehicle_number TEXT,
    driver_name TEXT,
    rent_amount NUMERIC(12,2),
    created_at TIMESTAMPTZ DEFAULT NOW()
);

CREATE INDEX IF NOT EXISTS idx_orders_created ON orders(created_at);
CREATE INDEX IF NOT EXISTS idx_orders_status ON orders(status);
CREATE INDEX IF NOT EXISTS idx_orders_cook_pending ON orders(cook_assigned_at) WHERE cook_assignment_status = 'pending';
CREATE INDEX IF NOT EXISTS idx_orders_delivery_pending ON orders(delivery_assigned_at) WHERE delivery_assignment_status = 'pending';
CREATE INDEX IF NOT EXISTS idx_assignments_order_role ON order_assignments(order_id, role);
CREATE INDEX IF NOT EXISTS idx_assignments_fulfiller ON order_assignments(fulfiller_id, role);
CREATE INDEX IF NOT EXISTS idx_referrals_referrer ON referrals(referrer_id);
"""

FULFILLER_TABLES = {ROLE_COOK: "cooks", ROLE_DELIVERY: "delivery_staff"}

CATALOG_COLUMNS = """
    id, name, price AS base_price,
    COALESCE(platform_margin_type, 'percent') AS margin_type,
    COALESCE(platform_margin_value, 0) AS margin_value
"""


def _role_fields(role: str) -> Tuple[str, str, str]:
    if role not in ROLE_FIELDS:
        raise ValueError(f"Unsupported role: {role}")
    return ROLE_FIELDS[role]


class Database:
    def __init__(self, database_url: Optional[str] = None):
        self.database_url = database_url or settings.DATABASE_URL
        if not self.database_url:
            raise ValueError("DATABASE_URL environment variable is not set.")
        self._pool: Optional[Pool] = None

    async def init_pool(self):
        """Initialize the asyncpg pool once at startup."""
        if self._pool is None:
            self._pool = await asyncpg.create_pool(self.database_url, min_size=1, max_size=20)

    async def reset_schema(self):
        """Drop all data and recreate schema fresh."""
        async with self._open_connection() as conn:
            await conn.execute("""
                DROP TABLE IF EXISTS
                    indoor_event_vehicles, referrals, wallet_settlements, wallet_postings,
                    delivery_wallets, order_assignments, order_items, orders, delivery_staff,
                    cook_dishes, cooks, food_items, referral_codes, profiles, panchayats
                CASCADE;
            """)
            await conn.execute(SCHEMA_SQL)

    def _get_pool(self) -> Pool:
        """Return the pool synchronously (must be initialized first)."""
        if not self._pool:
            raise RuntimeError("Pool not initialized. Call init_pool() first.")
        return self._pool

    async def close_pool(self):
        if self._pool:
            await self._pool.close()
            self._pool = None

    async def init_schema(self):
        """Run SCHEMA_SQL to create tables if they don't exist."""
        async with self._open_connection() as conn:
            await conn.execute(SCHEMA_SQL)

    def _open_connection(self):
        """Return an async context manager for acquiring a connection."""
        return self._get_pool().acquire()

    @staticmethod
    def _row_to_dict(record: asyncpg.Record) -> Dict[str, Any]:
        return dict(record)

    @contextlib.asynccontextmanager
    async def _guard(self, op: str, mutating: bool = False):
        """Translate driver failures into StoreError; engine errors pass through."""
        try:
            yield
        except EngineError:
            raise
        except asyncpg.exceptions.TransactionRollbackError as e:
            # Serialization failure / deadlock: Postgres rolled the whole transaction back.
            raise StoreError(f"{op}: transaction rolled back ({e})", ambiguous=False) from e
        except (asyncpg.exceptions.PostgresConnectionError, asyncpg.exceptions.InterfaceError,
                OSError, asyncio.TimeoutError) as e:
            log.warning("Store failure during %s: %s", op, e)
            raise StoreError(f"{op}: {e}", ambiguous=mutating) from e

    async def _order_or_raise(self, conn, order_id: int, lock: bool = False) -> Dict[str, Any]:
        sql = "SELECT * FROM orders WHERE id = $1" + (" FOR UPDATE" if lock else "")
        row = await conn.fetchrow(sql, order_id)
        if not row:
            raise NotFoundError("order", order_id)
        return self._row_to_dict(row)

    @staticmethod
    async def _append_assignment(conn, order_id: int, fulfiller_id: Optional[int], role: str,
                                 outcome: str, note: Optional[str] = None) -> None:
        await conn.execute(
            """
            INSERT INTO order_assignments (order_id, fulfiller_id, role, outcome, note)
            VALUES ($1, $2, $3, $4, $5)
            """,
            order_id, fulfiller_id, role, outcome, note
        )

    async def _release_locked(self, conn, order: Dict[str, Any], role: str, outcome: str,
                              note: Optional[str] = None) -> Dict[str, Any]:
        """Release an active assignment on an order row already locked by the caller."""
        id_field, status_field, at_field = _role_fields(role)
        if order[status_field] not in ASSIGN_ACTIVE:
            return order
        row = await conn.fetchrow(
            f"""
            UPDATE orders
            SET {id_field} = NULL, {status_field} = 'unassigned', {at_field} = NULL,
                updated_at = NOW()
            WHERE id = $1
            RETURNING *
            """,
            order["id"]
        )
        await self._append_assignment(conn, order["id"], order[id_field], role, outcome, note)
        return self._row_to_dict(row)

    # -------------------- Orders (created by the ordering flow) --------------------
    async def create_order(self, order: Dict[str, Any], items: Optional[List[Dict[str, Any]]] = None) -> Dict[str, Any]:
        items = items or []
        total = order.get("total_amount")
        if total is None:
            total = sum((Decimal(str(i["total_price"])) for i in items), Decimal("0.00"))
        async with self._guard("create_order", mutating=True):
            async with self._open_connection() as conn:
                async with conn.transaction():
                    row = await conn.fetchrow(
                        """
                        INSERT INTO orders
                        (status, total_amount, service_type, panchayat_id, ward_number, payment_method, referred_by)
                        VALUES ($1, $2, $3, $4, $5, $6, $7)
                        RETURNING *
                        """,
                        order.get("status", "pending"), total, order.get("service_type"),
                        order.get("panchayat_id"), order.get("ward_number"),
                        order.get("payment_method", "cod"), order.get("referred_by")
                    )
                    if items:
                        await conn.executemany(
                            """
                            INSERT INTO order_items (order_id, food_item_id, quantity, unit_price, total_price)
                            VALUES ($1, $2, $3, $4, $5)
                            """,
                            [(row["id"], i["food_item_id"], i["quantity"], i["unit_price"], i["total_price"]) for i in items]
                        )
                    return self._row_to_dict(row)

    async def get_order(self, order_id: int) -> Dict[str, Any]:
        async with self._guard("get_order"):
            async with self._open_connection() as conn:
                return await self._order_or_raise(conn, order_id)

    async def get_order_items(self, order_id: int) -> List[Dict[str, Any]]:
        async with self._guard("get_order_items"):
            async with self._open_connection() as conn:
                await self._order_or_raise(conn, order_id)
                rows = await conn.fetch("SELECT * FROM order_items WHERE order_id = $1 ORDER BY id", order_id)
                return [self._row_to_dict(r) for r in rows]

    # -------------------- Catalog & cook price overrides --------------------
    async def get_catalog_item(self, item_id: int) -> Dict[str, Any]:
        async with self._guard("get_catalog_item"):
            async with self._open_connection() as conn:
                row = await conn.fetchrow(f"SELECT {CATALOG_COLUMNS} FROM food_items WHERE id = $1", item_id)
                if not row:
                    raise NotFoundError("catalog item", item_id)
                return self._row_to_dict(row)

    async def get_override(self, fulfiller_id: int, item_id: int) -> Optional[Dict[str, Any]]:
        async with self._guard("get_override"):
            async with self._open_connection() as conn:
                row = await conn.fetchrow(
                    """
                    SELECT cook_id AS fulfiller_id, food_item_id AS item_id, custom_price
                    FROM cook_dishes WHERE cook_id = $1 AND food_item_id = $2
                    """,
                    fulfiller_id, item_id
                )
                return self._row_to_dict(row) if row else None

    async def put_override(self, fulfiller_id: int, item_id: int, custom_price: Decimal) -> Dict[str, Any]:
        async with self._guard("put_override", mutating=True):
            async with self._open_connection() as conn:
                try:
                    row = await conn.fetchrow(
                        """
                        INSERT INTO cook_dishes (cook_id, food_item_id, custom_price)
                        VALUES ($1, $2, $3)
                        ON CONFLICT (cook_id, food_item_id) DO UPDATE SET
                            custom_price = EXCLUDED.custom_price,
                            updated_at = NOW()
                        RETURNING cook_id AS fulfiller_id, food_item_id AS item_id, custom_price
                        """,
                        fulfiller_id, item_id, custom_price
                    )
                except asyncpg.exceptions.ForeignKeyViolationError:
                    raise NotFoundError("catalog item", item_id)
                return self._row_to_dict(row)

    async def delete_override(self, fulfiller_id: int, item_id: int) -> bool:
        async with self._guard("delete_override", mutating=True):
            async with self._open_connection() as conn:
                status = await conn.execute(
                    "DELETE FROM cook_dishes WHERE cook_id = $1 AND food_item_id = $2",
                    fulfiller_id, item_id
                )
                return status.endswith(" 1")

    # -------------------- Fulfillers --------------------
    async def get_fulfiller(self, fulfiller_id: int, role: str) -> Dict[str, Any]:
        table = FULFILLER_TABLES[role]
        async with self._guard("get_fulfiller"):
            async with self._open_connection() as conn:
                row = await conn.fetchrow(f"SELECT * FROM {table} WHERE id = $1", fulfiller_id)
                if not row:
                    raise NotFoundError(role, fulfiller_id)
                return self._row_to_dict(row)

    async def list_fulfillers(self, role: str) -> List[Dict[str, Any]]:
        table = FULFILLER_TABLES[role]
        async with self._guard("list_fulfillers"):
            async with self._open_connection() as conn:
                rows = await conn.fetch(f"SELECT * FROM {table} ORDER BY id")
                return [self._row_to_dict(r) for r in rows]

    async def list_eligible_fulfillers(self, service_type: Optional[str], role: str) -> List[Dict[str, Any]]:
        async with self._guard("list_eligible_fulfillers"):
            async with self._open_connection() as conn:
                if role == ROLE_COOK:
                    rows = await conn.fetch(
                        """
                        SELECT * FROM cooks
                        WHERE is_active = TRUE AND is_available = TRUE
                          AND $1 = ANY(allowed_order_types)
                        ORDER BY rating DESC NULLS LAST, id ASC
                        """,
                        service_type
                    )
                else:
                    rows = await conn.fetch(
                        """
                        SELECT * FROM delivery_staff
                        WHERE is_active = TRUE AND is_available = TRUE
                        ORDER BY rating DESC NULLS LAST, id ASC
                        """
                    )
                return [self._row_to_dict(r) for r in rows]

    # -------------------- Assignment (atomic CAS on the order row) --------------------
    async def assign_fulfiller(self, order_id: int, fulfiller_id: int, role: str) -> Dict[str, Any]:
        id_field, status_field, at_field = _role_fields(role)
        async with self._guard("assign_fulfiller", mutating=True):
            async with self._open_connection() as conn:
                async with conn.transaction():
                    row = await conn.fetchrow(
                        f"""
                        UPDATE orders
                        SET {id_field} = $2, {status_field} = 'pending', {at_field} = NOW(),
                            updated_at = NOW()
                        WHERE id = $1
                          AND status NOT IN ('delivered', 'cancelled')
                          AND {status_field} NOT IN ('pending', 'accepted')
                        RETURNING *
                        """,
                        order_id, fulfiller_id
                    )
                    if not row:
                        current = await self._order_or_raise(conn, order_id)
                        raise ConflictError(
                            f"order {order_id} cannot take a new {role} assignment "
                            f"(status={current['status']}, {status_field}={current[status_field]})",
                            current=current,
                        )
                    await self._append_assignment(conn, order_id, fulfiller_id, role, OUTCOME_ASSIGNED)
                    return self._row_to_dict(row)

    async def record_assignment_outcome(self, order_id: int, fulfiller_id: int, outcome: str, role: str,
                                        note: Optional[str] = None) -> Dict[str, Any]:
        id_field, status_field, at_field = _role_fields(role)
        if outcome == OUTCOME_ACCEPTED:
            set_clause = f"{status_field} = 'accepted'"
        elif outcome == OUTCOME_REJECTED:
            set_clause = f"{id_field} = NULL, {status_field} = 'unassigned', {at_field} = NULL"
        else:
            raise ValueError(f"Unsupported outcome: {outcome}")

        async with self._guard("record_assignment_outcome", mutating=True):
            async with self._open_connection() as conn:
                async with conn.transaction():
                    row = await conn.fetchrow(
                        f"""
                        UPDATE orders
                        SET {set_clause}, updated_at = NOW()
                        WHERE id = $1 AND {status_field} = $3 AND {id_field} = $2
                        RETURNING *
                        """,
                        order_id, fulfiller_id, ASSIGN_PENDING
                    )
                    if not row:
                        current = await self._order_or_raise(conn, order_id)
                        raise ConflictError(
                            f"{role} {fulfiller_id} has no pending assignment on order {order_id}",
                            current=current,
                        )
                    await self._append_assignment(conn, order_id, fulfiller_id, role, outcome, note)
                    return self._row_to_dict(row)

    async def release_assignment(self, order_id: int, role: str) -> Dict[str, Any]:
        async with self._guard("release_assignment", mutating=True):
            async with self._open_connection() as conn:
                async with conn.transaction():
                    order = await self._order_or_raise(conn, order_id, lock=True)
                    if order["status"] == ORDER_DELIVERED:
                        raise ConflictError(f"order {order_id} is already delivered", current=order)
                    return await self._release_locked(conn, order, role, OUTCOME_CANCELLED)

    async def cancel_order(self, order_id: int) -> Dict[str, Any]:
        async with self._guard("cancel_order", mutating=True):
            async with self._open_connection() as conn:
                async with conn.transaction():
                    order = await self._order_or_raise(conn, order_id, lock=True)
                    if order["status"] == ORDER_DELIVERED:
                        raise ConflictError(f"order {order_id} is already delivered", current=order)
                    if order["status"] == ORDER_CANCELLED:
                        return order
                    for role in ROLES:
                        order = await self._release_locked(conn, order, role, OUTCOME_CANCELLED)
                    row = await conn.fetchrow(
                        "UPDATE orders SET status = 'cancelled', updated_at = NOW() WHERE id = $1 RETURNING *",
                        order_id
                    )
                    return self._row_to_dict(row)

    async def mark_delivered(self, order_id: int) -> Tuple[Dict[str, Any], bool]:
        id_field, status_field, _ = _role_fields(ROLE_DELIVERY)
        async with self._guard("mark_delivered", mutating=True):
            async with self._open_connection() as conn:
                async with conn.transaction():
                    order = await self._order_or_raise(conn, order_id, lock=True)
                    if order["status"] == ORDER_DELIVERED:
                        return order, False
                    if order["status"] == ORDER_CANCELLED:
                        raise ConflictError(f"order {order_id} is cancelled", current=order)
                    if order[status_field] != "accepted":
                        raise ConflictError(f"order {order_id} has no accepted delivery assignment", current=order)
                    row = await conn.fetchrow(
                        """
                        UPDATE orders SET status = 'delivered', delivered_at = NOW(), updated_at = NOW()
                        WHERE id = $1 RETURNING *
                        """,
                        order_id
                    )
                    await conn.execute(
                        "UPDATE delivery_staff SET total_deliveries = total_deliveries + 1 WHERE id = $1",
                        order[id_field]
                    )
                    return self._row_to_dict(row), True

    async def list_assignments(self, order_id: Optional[int] = None, role: Optional[str] = None,
                               fulfiller_id: Optional[int] = None) -> List[Dict[str, Any]]:
        clauses, params = [], []
        for column, value in (("order_id", order_id), ("role", role), ("fulfiller_id", fulfiller_id)):
            if value is not None:
                params.append(value)
                clauses.append(f"{column} = ${len(params)}")
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        async with self._guard("list_assignments"):
            async with self._open_connection() as conn:
                rows = await conn.fetch(f"SELECT * FROM order_assignments {where} ORDER BY id", *params)
                return [self._row_to_dict(r) for r in rows]

    async def list_pending_assignments(self, role: str, older_than: datetime) -> List[Dict[str, Any]]:
        _, status_field, at_field = _role_fields(role)
        async with self._guard("list_pending_assignments"):
            async with self._open_connection() as conn:
                rows = await conn.fetch(
                    f"""
                    SELECT * FROM orders
                    WHERE {status_field} = 'pending' AND {at_field} <= $1
                    ORDER BY {at_field} ASC
                    """,
                    older_than
                )
                return [self._row_to_dict(r) for r in rows]

    # -------------------- Delivery wallets --------------------
    async def _wallet_or_raise(self, conn, staff_id: int) -> Dict[str, Any]:
        exists = await conn.fetchval("SELECT 1 FROM delivery_staff WHERE id = $1", staff_id)
        if not exists:
            raise NotFoundError("wallet", staff_id)
        await conn.execute(
            "INSERT INTO delivery_wallets (staff_id) VALUES ($1) ON CONFLICT (staff_id) DO NOTHING",
            staff_id
        )
        row = await conn.fetchrow("SELECT * FROM delivery_wallets WHERE staff_id = $1", staff_id)
        return self._row_to_dict(row)

    async def get_wallet(self, staff_id: int) -> Dict[str, Any]:
        async with self._guard("get_wallet"):
            async with self._open_connection() as conn:
                return await self._wallet_or_raise(conn, staff_id)

    async def post_wallet_delta(self, order_id: int, staff_id: int, collected_delta: Decimal,
                                earnings_delta: Decimal) -> Tuple[Dict[str, Any], bool]:
        async with self._guard("post_wallet_delta", mutating=True):
            async with self._open_connection() as conn:
                async with conn.transaction():
                    await self._wallet_or_raise(conn, staff_id)
                    inserted = await conn.fetchval(
                        """
                        INSERT INTO wallet_postings (order_id, staff_id, collected_delta, earnings_delta)
                        VALUES ($1, $2, $3, $4)
                        ON CONFLICT (order_id, staff_id) DO NOTHING
                        RETURNING order_id
                        """,
                        order_id, staff_id, collected_delta, earnings_delta
                    )
                    if inserted is None:
                        row = await conn.fetchrow("SELECT * FROM delivery_wallets WHERE staff_id = $1", staff_id)
                        return self._row_to_dict(row), False
                    row = await conn.fetchrow(
                        """
                        UPDATE delivery_wallets
                        SET collected_amount = collected_amount + $2,
                            job_earnings = job_earnings + $3
                        WHERE staff_id = $1
                        RETURNING *
                        """,
                        staff_id, collected_delta, earnings_delta
                    )
                    return self._row_to_dict(row), True

    async def settle_wallet(self, staff_id: int, amount: Decimal) -> Dict[str, Any]:
        async with self._guard("settle_wallet", mutating=True):
            async with self._open_connection() as conn:
                async with conn.transaction():
                    await self._wallet_or_raise(conn, staff_id)
                    row = await conn.fetchrow(
                        """
                        UPDATE delivery_wallets
                        SET total_settled = total_settled + $2
                        WHERE staff_id = $1
                          AND total_settled + $2 <= collected_amount + job_earnings
                        RETURNING *
                        """,
                        staff_id, amount
                    )
                    if not row:
                        current = await self._wallet_or_raise(conn, staff_id)
                        available = current["collected_amount"] + current["job_earnings"] - current["total_settled"]
                        raise ConflictError(
                            f"settlement {amount} exceeds pending balance {available} for staff {staff_id}",
                            current=current,
                        )
                    await conn.execute(
                        "INSERT INTO wallet_settlements (staff_id, amount) VALUES ($1, $2)",
                        staff_id, amount
                    )
                    return self._row_to_dict(row)

    async def list_wallets(self) -> List[Dict[str, Any]]:
        async with self._guard("list_wallets"):
            async with self._open_connection() as conn:
                rows = await conn.fetch(
                    """
                    SELECT s.id AS staff_id, s.name, COALESCE(s.total_deliveries, 0) AS total_deliveries,
                           COALESCE(w.collected_amount, 0) AS collected_amount,
                           COALESCE(w.job_earnings, 0) AS job_earnings,
                           COALESCE(w.total_settled, 0) AS total_settled
                    FROM delivery_staff s
                    LEFT JOIN delivery_wallets w ON w.staff_id = s.id
                    ORDER BY s.id
                    """
                )
                return [self._row_to_dict(r) for r in rows]

    # -------------------- Referral commissions --------------------
    async def upsert_commission(self, order_id: int, referrer_id: int, percent: Decimal,
                                amount: Decimal) -> Tuple[Dict[str, Any], bool]:
        async with self._guard("upsert_commission", mutating=True):
            async with self._open_connection() as conn:
                async with conn.transaction():
                    await self._order_or_raise(conn, order_id)
                    row = await conn.fetchrow(
                        """
                        INSERT INTO referrals (referrer_id, order_id, commission_percent, commission_amount)
                        VALUES ($1, $2, $3, $4)
                        ON CONFLICT (order_id, referrer_id) DO NOTHING
                        RETURNING *
                        """,
                        referrer_id, order_id, percent, amount
                    )
                    if row:
                        return self._row_to_dict(row), True
                    existing = await conn.fetchrow(
                        "SELECT * FROM referrals WHERE order_id = $1 AND referrer_id = $2",
                        order_id, referrer_id
                    )
                    return self._row_to_dict(existing), False

    async def get_commission(self, commission_id: int) -> Dict[str, Any]:
        async with self._guard("get_commission"):
            async with self._open_connection() as conn:
                row = await conn.fetchrow("SELECT * FROM referrals WHERE id = $1", commission_id)
                if not row:
                    raise NotFoundError("commission", commission_id)
                return self._row_to_dict(row)

    async def transition_commission(self, commission_id: int, new_status: str, from_status: str) -> Dict[str, Any]:
        async with self._guard("transition_commission", mutating=True):
            async with self._open_connection() as conn:
                row = await conn.fetchrow(
                    """
                    UPDATE referrals
                    SET status = $2,
                        paid_at = CASE WHEN $2 = $4 THEN NOW() ELSE paid_at END
                    WHERE id = $1 AND status = $3
                    RETURNING *
                    """,
                    commission_id, new_status, from_status, COMMISSION_PAID
                )
                if row:
                    return self._row_to_dict(row)
                current = await conn.fetchrow("SELECT * FROM referrals WHERE id = $1", commission_id)
                if not current:
                    raise NotFoundError("commission", commission_id)
                raise ConflictError(
                    f"commission {commission_id} is {current['status']}, expected {from_status}",
                    current=self._row_to_dict(current),
                )

    async def list_commissions(self) -> List[Dict[str, Any]]:
        async with self._guard("list_commissions"):
            async with self._open_connection() as conn:
                rows = await conn.fetch("SELECT * FROM referrals ORDER BY created_at DESC")
                return [self._row_to_dict(r) for r in rows]

    # -------------------- Bulk reads for reports --------------------
    async def list_orders(self, start: Optional[datetime] = None, end: Optional[datetime] = None,
                          service_type: Optional[str] = None, panchayat_id: Optional[int] = None) -> List[Dict[str, Any]]:
        sql_parts, params = [], []
        if start is not None:
            params.append(start)
            sql_parts.append(f"created_at >= ${len(params)}")
        if end is not None:
            params.append(end)
            sql_parts.append(f"created_at <= ${len(params)}")
        if service_type:
            params.append(service_type)
            sql_parts.append(f"service_type = ${len(params)}")
        if panchayat_id is not None:
            params.append(panchayat_id)
            sql_parts.append(f"panchayat_id = ${len(params)}")
        where = f"WHERE {' AND '.join(sql_parts)}" if sql_parts else ""
        async with self._guard("list_orders"):
            async with self._open_connection() as conn:
                rows = await conn.fetch(f"SELECT * FROM orders {where} ORDER BY created_at DESC", *params)
                return [self._row_to_dict(r) for r in rows]

    async def list_profiles(self) -> List[Dict[str, Any]]:
        async with self._guard("list_profiles"):
            async with self._open_connection() as conn:
                rows = await conn.fetch("SELECT user_id, name, mobile_number FROM profiles")
                return [self._row_to_dict(r) for r in rows]

    async def list_referral_codes(self) -> List[Dict[str, Any]]:
        async with self._guard("list_referral_codes"):
            async with self._open_connection() as conn:
                rows = await conn.fetch("SELECT user_id, code FROM referral_codes ORDER BY id")
                return [self._row_to_dict(r) for r in rows]

    async def list_panchayats(self) -> List[Dict[str, Any]]:
        async with self._guard("list_panchayats"):
            async with self._open_connection() as conn:
                rows = await conn.fetch("SELECT id, name FROM panchayats WHERE is_active = TRUE ORDER BY name")
                return [self._row_to_dict(r) for r in rows]

    async def list_vehicles(self, start: Optional[datetime] = None, end: Optional[datetime] = None) -> List[Dict[str, Any]]:
        async with self._guard("list_vehicles"):
            async with self._open_connection() as conn:
                rows = await conn.fetch(
                    """
                    SELECT * FROM indoor_event_vehicles
                    WHERE ($1::timestamptz IS NULL OR created_at >= $1)
                      AND ($2::timestamptz IS NULL OR created_at <= $2)
                    ORDER BY created_at DESC
                    """,
                    start, end
                )
                return [self._row_to_dict(r) for r in rows]
