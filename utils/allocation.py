# utils/allocation.py
"""
Assignment of cooks and delivery staff to orders.

Each role runs the same small machine on the order row:

    unassigned -> pending -> accepted
                     \\-> (rejected) -> unassigned

The engine is passive: it never starts timers. Offer expiry is handled by
`sweep_expired`, which a caller (the scheduler or an admin endpoint) invokes.
Exclusivity is enforced by the store's compare-and-swap, not by reading first.
"""
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

from utils.errors import ConflictError, NotFoundError, ValidationError
from utils.globals import (
    ORDER_TERMINAL,
    OUTCOME_ACCEPTED,
    OUTCOME_REJECTED,
    ROLE_COOK,
    ROLE_FIELDS,
    ROLES,
    TIMEOUT_NOTE,
)
from utils.retry import RetryPolicy

log = logging.getLogger(__name__)

RESPONSES = {"accept": OUTCOME_ACCEPTED, "reject": OUTCOME_REJECTED}


def _check_role(role: str) -> str:
    if role not in ROLES:
        raise ValidationError(f"role must be one of {', '.join(ROLES)}", field="role")
    return role


def is_eligible(fulfiller: Dict[str, Any], order: Dict[str, Any], role: str) -> bool:
    """Active, available and (for cooks) allowed to cook this service type."""
    if not fulfiller.get("is_active") or not fulfiller.get("is_available"):
        return False
    if role == ROLE_COOK:
        return order.get("service_type") in (fulfiller.get("allowed_order_types") or [])
    return True


def rank_fulfillers(fulfillers: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Rating descending, ties broken by id ascending."""
    return sorted(fulfillers, key=lambda f: (-(f.get("rating") or 0.0), f["id"]))


class AllocationEngine:
    def __init__(self, store, retry: Optional[RetryPolicy] = None,
                 clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc)):
        self.store = store
        self.retry = retry or RetryPolicy()
        self.clock = clock

    async def _rejected_by(self, order_id: int, role: str) -> set:
        history = await self.retry.run(self.store.list_assignments, order_id=order_id, role=role)
        return {a["fulfiller_id"] for a in history if a["outcome"] == OUTCOME_REJECTED}

    async def list_eligible(self, order_id: int, role: str, exclude_rejected: bool = True) -> List[Dict[str, Any]]:
        """
        Candidates for the order in this role, best first.

        Fulfillers that already turned this order down are left out unless
        `exclude_rejected` is False.
        """
        _check_role(role)
        order = await self.retry.run(self.store.get_order, order_id)
        candidates = await self.retry.run(self.store.list_eligible_fulfillers, order.get("service_type"), role)
        candidates = [f for f in candidates if is_eligible(f, order, role)]
        if exclude_rejected:
            rejected = await self._rejected_by(order_id, role)
            candidates = [f for f in candidates if f["id"] not in rejected]
        log.debug("[CANDIDATES] %d %s candidates for order %s", len(candidates), role, order_id)
        return rank_fulfillers(candidates)

    async def assign(self, order_id: int, fulfiller_id: int, role: str) -> Dict[str, Any]:
        """Offer the order to one fulfiller. Fails if another offer is pending or accepted."""
        _check_role(role)
        order = await self.retry.run(self.store.get_order, order_id)
        if order["status"] in ORDER_TERMINAL:
            raise ConflictError(f"order {order_id} is {order['status']}", current=order)
        fulfiller = await self.retry.run(self.store.get_fulfiller, fulfiller_id, role)
        if not is_eligible(fulfiller, order, role):
            raise ConflictError(f"{role} {fulfiller_id} is not eligible for order {order_id}", current=order)

        try:
            # Not idempotent: an ambiguous failure must be resolved by re-reading the order.
            updated = await self.retry.run(
                self.store.assign_fulfiller, order_id, fulfiller_id, role, idempotent=False
            )
        except ConflictError:
            log.warning("Assign %s %s to order %s rejected: assignment already active", role, fulfiller_id, order_id)
            raise
        log.info("Order %s offered to %s %s", order_id, role, fulfiller_id)
        return updated

    async def assign_next(self, order_id: int, role: str) -> Optional[Dict[str, Any]]:
        """Offer the order to the best remaining candidate, if any."""
        candidates = await self.list_eligible(order_id, role)
        if not candidates:
            log.warning("[REOFFER] No eligible %s found for order %s", role, order_id)
            return None
        return await self.assign(order_id, candidates[0]["id"], role)

    async def respond(self, order_id: int, fulfiller_id: int, role: str, response: str) -> Dict[str, Any]:
        """
        Accept or reject a pending offer.

        Only the fulfiller holding the pending offer may answer; a stale or duplicate
        answer raises ConflictError. A reject returns the order to `unassigned`.
        """
        _check_role(role)
        outcome = RESPONSES.get(response)
        if outcome is None:
            raise ValidationError("response must be 'accept' or 'reject'", field="response")
        updated = await self.retry.run(
            self.store.record_assignment_outcome, order_id, fulfiller_id, outcome, role, idempotent=False
        )
        log.info("%s %s %s order %s", role.capitalize(), fulfiller_id, outcome, order_id)
        return updated

    async def cancel_assignment(self, order_id: int, role: str) -> Dict[str, Any]:
        """Release a pending/accepted assignment. Refused once the order is delivered."""
        _check_role(role)
        # Releasing an already-released assignment is a no-op, so retrying is safe.
        updated = await self.retry.run(self.store.release_assignment, order_id, role)
        log.info("Released %s assignment on order %s", role, order_id)
        return updated

    async def cancel_order(self, order_id: int) -> Dict[str, Any]:
        """Cancel the order and release both roles in one atomic step."""
        updated = await self.retry.run(self.store.cancel_order, order_id)
        log.info("Order %s cancelled", order_id)
        return updated

    async def history(self, order_id: int, role: Optional[str] = None) -> List[Dict[str, Any]]:
        if role is not None:
            _check_role(role)
        await self.retry.run(self.store.get_order, order_id)
        return await self.retry.run(self.store.list_assignments, order_id=order_id, role=role)

    async def sweep_expired(self, role: str, window_seconds: int, reoffer: bool = False) -> List[int]:
        """
        Treat pending offers older than the window as rejected.

        The reject is a CAS on the fulfiller that holds the offer, so an accept that
        lands first wins and the order is simply skipped.
        """
        _check_role(role)
        id_field = ROLE_FIELDS[role][0]
        cutoff = self.clock() - timedelta(seconds=window_seconds)
        stale = await self.retry.run(self.store.list_pending_assignments, role, cutoff)

        expired: List[int] = []
        for order in stale:
            order_id, fulfiller_id = order["id"], order[id_field]
            try:
                await self.retry.run(
                    self.store.record_assignment_outcome, order_id, fulfiller_id, OUTCOME_REJECTED, role,
                    note=TIMEOUT_NOTE, idempotent=False,
                )
            except (ConflictError, NotFoundError):
                log.debug("Offer on order %s changed before expiry, skipping", order_id)
                continue
            log.warning("Order offer %s expired for %s %s.", order_id, role, fulfiller_id)
            expired.append(order_id)

            if reoffer:
                try:
                    await self.assign_next(order_id, role)
                except ConflictError:
                    log.info("[REOFFER] Order %s was reassigned concurrently", order_id)
        return expired
