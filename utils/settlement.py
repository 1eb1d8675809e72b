# utils/settlement.py
"""
Delivery wallet and referral commission ledgers.

Every posting is keyed by the order that caused it, so replaying an
"order delivered" event can never credit a wallet or a referrer twice.
Cook performance is not stored here; it is folded from assignment history
at read time (see utils/reports.py).
"""
import logging
from decimal import Decimal
from typing import Any, Dict, Optional

from config import settings
from utils.errors import ConflictError, ValidationError
from utils.globals import COMMISSION_TRANSITIONS, PAYMENT_COD, ROLE_FIELDS, ROLE_DELIVERY
from utils.pricing import to_money
from utils.retry import RetryPolicy

log = logging.getLogger(__name__)

ZERO = Decimal("0.00")


def pending_settlement(wallet: Dict[str, Any]) -> Decimal:
    return to_money(wallet["collected_amount"]) + to_money(wallet["job_earnings"]) - to_money(wallet["total_settled"])


def with_pending(wallet: Dict[str, Any]) -> Dict[str, Any]:
    wallet = dict(wallet)
    wallet["pending_settlement"] = pending_settlement(wallet)
    return wallet


def commission_amount(total_amount: Any, percent: Any) -> Decimal:
    return to_money(to_money(total_amount, "total_amount") * Decimal(str(percent)) / Decimal(100))


def _check_percent(percent: Any) -> Decimal:
    try:
        value = Decimal(str(percent))
    except ArithmeticError:
        raise ValidationError(f"percent is not a number: {percent!r}", field="percent")
    if not value.is_finite() or value < 0 or value > 100:
        raise ValidationError("percent must be between 0 and 100", field="percent")
    return value


class SettlementLedger:
    def __init__(self, store, retry: Optional[RetryPolicy] = None):
        self.store = store
        self.retry = retry or RetryPolicy()

    # -------------------- Delivery wallets --------------------
    async def get_wallet(self, staff_id: int) -> Dict[str, Any]:
        wallet = await self.retry.run(self.store.get_wallet, staff_id)
        return with_pending(wallet)

    async def post_delivery_collection(self, order_id: int, staff_id: int, collected_delta: Any,
                                       earnings_delta: Any) -> Dict[str, Any]:
        """
        Credit cash collected and job earnings for one delivered order.
        Keyed by (order_id, staff_id); a replay leaves the wallet untouched.
        """
        collected = to_money(collected_delta, "collected_delta")
        earnings = to_money(earnings_delta, "earnings_delta")
        if collected < 0:
            raise ValidationError("collected_delta must be >= 0", field="collected_delta")
        if earnings < 0:
            raise ValidationError("earnings_delta must be >= 0", field="earnings_delta")

        wallet, applied = await self.retry.run(self.store.post_wallet_delta, order_id, staff_id, collected, earnings)
        if applied:
            log.info("Wallet %s credited for order %s: collected=%s earnings=%s", staff_id, order_id, collected, earnings)
        else:
            log.info("Wallet posting for order %s / staff %s already applied, skipping", order_id, staff_id)
        wallet = with_pending(wallet)
        wallet["applied"] = applied
        return wallet

    async def settle(self, staff_id: int, amount: Any) -> Dict[str, Any]:
        """Pay out part of the pending balance. Over-settlement raises ConflictError."""
        amount = to_money(amount, "amount")
        if amount <= 0:
            raise ValidationError("amount must be > 0", field="amount")
        try:
            wallet = await self.retry.run(self.store.settle_wallet, staff_id, amount, idempotent=False)
        except ConflictError:
            log.warning("Settlement of %s for staff %s rejected: exceeds pending balance", amount, staff_id)
            raise
        log.info("Settled %s for staff %s (total_settled=%s)", amount, staff_id, wallet["total_settled"])
        return with_pending(wallet)

    # -------------------- Referral commissions --------------------
    async def create_commission(self, order_id: int, referrer_id: int, percent: Any) -> Dict[str, Any]:
        """
        Create the single commission row for (order, referrer).

        Replaying with the same percent returns the stored row unchanged; a different
        percent for an existing pair raises ConflictError carrying that row.
        """
        percent = _check_percent(percent)
        order = await self.retry.run(self.store.get_order, order_id)
        amount = commission_amount(order["total_amount"], percent)

        row, created = await self.retry.run(self.store.upsert_commission, order_id, referrer_id, percent, amount)
        if created:
            log.info("Commission %s created: order %s referrer %s %s%% = %s",
                     row["id"], order_id, referrer_id, percent, amount)
        elif Decimal(str(row["commission_percent"])) != percent:
            log.warning("Commission for order %s / referrer %s already exists at %s%%",
                        order_id, referrer_id, row["commission_percent"])
            raise ConflictError(
                f"commission for order {order_id} and referrer {referrer_id} already exists",
                current=row,
            )
        return row

    async def transition_commission(self, commission_id: int, new_status: str) -> Dict[str, Any]:
        """pending -> approved -> paid, nothing else. The amount is never recomputed."""
        current = await self.retry.run(self.store.get_commission, commission_id)
        if COMMISSION_TRANSITIONS.get(current["status"]) != new_status:
            raise ConflictError(
                f"illegal commission transition {current['status']} -> {new_status}",
                current=current,
            )
        # CAS on the status we just read; a concurrent transition surfaces as ConflictError.
        row = await self.retry.run(self.store.transition_commission, commission_id, new_status, current["status"])
        log.info("Commission %s moved %s -> %s", commission_id, current["status"], new_status)
        return row

    # -------------------- Order completion --------------------
    async def complete_delivery(self, order_id: int, collected_amount: Any = None,
                                job_earning: Any = None) -> Dict[str, Any]:
        """
        Mark the order delivered and post its ledger effects.

        The delivered transition and the not-cancelled precondition run in one
        atomic store call. Postings that follow are keyed by the order, so calling
        this again for a delivered order only fills in whatever a failed attempt
        left unposted.
        """
        order, changed = await self.retry.run(self.store.mark_delivered, order_id)
        if changed:
            log.info("Order %s marked delivered", order_id)

        staff_id = order[ROLE_FIELDS[ROLE_DELIVERY][0]]
        if collected_amount is None:
            collected_amount = order["total_amount"] if order.get("payment_method") == PAYMENT_COD else ZERO
        if job_earning is None:
            job_earning = settings.DELIVERY_JOB_EARNING

        result: Dict[str, Any] = {"order": order, "wallet": None, "commission": None}
        if staff_id is not None:
            result["wallet"] = await self.post_delivery_collection(order_id, staff_id, collected_amount, job_earning)
        if order.get("referred_by") is not None:
            result["commission"] = await self.create_commission(
                order_id, order["referred_by"], settings.REFERRAL_COMMISSION_PERCENT
            )
        return result
