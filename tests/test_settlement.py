"""Tests for delivery wallets, settlements, referral commissions and order completion."""

import asyncio
from decimal import Decimal

import pytest

from conftest import deliver, place_order
from utils.errors import ConflictError, NotFoundError, ValidationError
from utils.settlement import commission_amount, pending_settlement


def _seed_wallet(store, staff_id: int, collected: str, earnings: str, settled: str) -> None:
    store.wallets[staff_id].update({
        "collected_amount": Decimal(collected),
        "job_earnings": Decimal(earnings),
        "total_settled": Decimal(settled),
    })


class TestWallet:
    def test_pending_is_derived(self) -> None:
        wallet = {"collected_amount": "500", "job_earnings": "100", "total_settled": "400"}
        assert pending_settlement(wallet) == Decimal("200.00")

    def test_settle_up_to_exact_balance(self, store, ledger) -> None:
        _seed_wallet(store, 20, "500", "100", "400")
        wallet = asyncio.run(ledger.settle(20, "200"))
        assert wallet["total_settled"] == Decimal("600.00")
        assert wallet["pending_settlement"] == Decimal("0.00")

    def test_over_settlement_rejected_and_wallet_unchanged(self, store, ledger) -> None:
        _seed_wallet(store, 20, "500", "100", "400")
        with pytest.raises(ConflictError) as exc:
            asyncio.run(ledger.settle(20, "201"))
        assert exc.value.current["total_settled"] == Decimal("400")
        assert store.wallets[20]["total_settled"] == Decimal("400")
        assert store.settlements == []

    def test_concurrent_settles_never_overdraw(self, store, ledger) -> None:
        _seed_wallet(store, 20, "100", "0", "0")

        async def scenario():
            return await asyncio.gather(*(ledger.settle(20, "30") for _ in range(5)), return_exceptions=True)

        results = asyncio.run(scenario())
        assert sum(1 for r in results if isinstance(r, dict)) == 3
        assert store.wallets[20]["total_settled"] == Decimal("90.00")

    def test_record_locks_are_dropped_when_idle(self, store, ledger) -> None:
        _seed_wallet(store, 20, "100", "0", "0")

        async def scenario():
            await asyncio.gather(*(ledger.settle(20, "30") for _ in range(5)), return_exceptions=True)
            order = await place_order(store)
            await ledger.create_commission(order["id"], 30, 5)

        asyncio.run(scenario())
        assert store._locks == {}

    @pytest.mark.parametrize("amount", ["0", "-5"])
    def test_non_positive_settle(self, ledger, amount: str) -> None:
        with pytest.raises(ValidationError):
            asyncio.run(ledger.settle(20, amount))

    def test_unknown_wallet(self, ledger) -> None:
        with pytest.raises(NotFoundError):
            asyncio.run(ledger.get_wallet(99))

    def test_posting_is_deduplicated_per_order(self, store, ledger) -> None:
        async def scenario():
            first = await ledger.post_delivery_collection(7, 20, "250", "25")
            replay = await ledger.post_delivery_collection(7, 20, "250", "25")
            other = await ledger.post_delivery_collection(8, 20, "100", "25")
            return first, replay, other

        first, replay, other = asyncio.run(scenario())
        assert first["applied"] is True
        assert replay["applied"] is False
        assert replay["collected_amount"] == Decimal("250.00")
        assert other["collected_amount"] == Decimal("350.00")
        assert other["pending_settlement"] == Decimal("400.00")

    def test_negative_posting_rejected(self, ledger) -> None:
        with pytest.raises(ValidationError) as exc:
            asyncio.run(ledger.post_delivery_collection(7, 20, "-1", "25"))
        assert exc.value.field == "collected_delta"


class TestCommission:
    def test_amount_rounded_to_cents(self) -> None:
        assert commission_amount("999.99", "5") == Decimal("50.00")
        assert commission_amount("1000", "2.5") == Decimal("25.00")

    def test_create_and_replay(self, store, ledger) -> None:
        async def scenario():
            order = await place_order(store, total="1000")
            first = await ledger.create_commission(order["id"], 30, 5)
            again = await ledger.create_commission(order["id"], 30, 5)
            return first, again

        first, again = asyncio.run(scenario())
        assert first["commission_amount"] == Decimal("50.00")
        assert first["status"] == "pending"
        assert again == first
        assert len(store.commissions) == 1

    def test_replay_with_other_percent_conflicts(self, store, ledger) -> None:
        async def scenario():
            order = await place_order(store, total="1000")
            await ledger.create_commission(order["id"], 30, 5)
            await ledger.create_commission(order["id"], 30, 10)

        with pytest.raises(ConflictError) as exc:
            asyncio.run(scenario())
        assert exc.value.current["commission_amount"] == Decimal("50.00")

    @pytest.mark.parametrize("percent", [-1, 101, "abc"])
    def test_percent_out_of_range(self, store, ledger, percent) -> None:
        async def scenario():
            order = await place_order(store)
            await ledger.create_commission(order["id"], 30, percent)

        with pytest.raises(ValidationError) as exc:
            asyncio.run(scenario())
        assert exc.value.field == "percent"

    def test_status_walks_forward_only(self, store, ledger) -> None:
        async def scenario():
            order = await place_order(store, total="1000")
            row = await ledger.create_commission(order["id"], 30, 5)
            approved = await ledger.transition_commission(row["id"], "approved")
            paid = await ledger.transition_commission(row["id"], "paid")
            return approved, paid

        approved, paid = asyncio.run(scenario())
        assert approved["paid_at"] is None
        assert paid["status"] == "paid"
        assert paid["paid_at"] is not None
        assert paid["commission_amount"] == Decimal("50.00")

    @pytest.mark.parametrize("target", ["paid", "pending", "refunded"])
    def test_illegal_transition_from_pending(self, store, ledger, target: str) -> None:
        async def scenario():
            order = await place_order(store)
            row = await ledger.create_commission(order["id"], 30, 5)
            await ledger.transition_commission(row["id"], target)

        with pytest.raises(ConflictError):
            asyncio.run(scenario())

    def test_unknown_commission(self, ledger) -> None:
        with pytest.raises(NotFoundError):
            asyncio.run(ledger.transition_commission(404, "approved"))


class TestCompleteDelivery:
    def test_posts_wallet_and_commission(self, store, allocation, ledger) -> None:
        async def scenario():
            order = await place_order(store, total="400", referred_by=30)
            return await deliver(allocation, ledger, order["id"])

        result = asyncio.run(scenario())
        assert result["order"]["status"] == "delivered"
        assert result["wallet"]["collected_amount"] == Decimal("400.00")
        assert result["wallet"]["job_earnings"] == Decimal("25.00")
        assert result["commission"]["commission_amount"] == Decimal("20.00")
        assert store.fulfillers["delivery"][20]["total_deliveries"] == 1

    def test_online_payment_collects_nothing(self, store, allocation, ledger) -> None:
        async def scenario():
            order = await place_order(store, total="400", payment_method="online")
            return await deliver(allocation, ledger, order["id"])

        result = asyncio.run(scenario())
        assert result["wallet"]["collected_amount"] == Decimal("0.00")
        assert result["commission"] is None

    def test_replay_does_not_double_credit(self, store, allocation, ledger) -> None:
        async def scenario():
            order = await place_order(store, total="400", referred_by=30)
            await deliver(allocation, ledger, order["id"])
            return await ledger.complete_delivery(order["id"])

        replay = asyncio.run(scenario())
        assert replay["wallet"]["applied"] is False
        assert replay["wallet"]["collected_amount"] == Decimal("400.00")
        assert len(store.commissions) == 1
        assert store.fulfillers["delivery"][20]["total_deliveries"] == 1

    def test_requires_accepted_delivery(self, store, allocation, ledger) -> None:
        async def scenario():
            order = await place_order(store)
            await allocation.assign(order["id"], 20, "delivery")
            await ledger.complete_delivery(order["id"])

        with pytest.raises(ConflictError):
            asyncio.run(scenario())

    def test_cancelled_order_cannot_complete(self, store, allocation, ledger) -> None:
        async def scenario():
            order = await place_order(store)
            await allocation.assign(order["id"], 20, "delivery")
            await allocation.respond(order["id"], 20, "delivery", "accept")
            await allocation.cancel_order(order["id"])
            await ledger.complete_delivery(order["id"])

        with pytest.raises(ConflictError):
            asyncio.run(scenario())
        assert store.wallet_postings == {}

    def test_delivered_order_cannot_be_cancelled(self, store, allocation, ledger) -> None:
        async def scenario():
            order = await place_order(store)
            await deliver(allocation, ledger, order["id"])
            await allocation.cancel_order(order["id"])

        with pytest.raises(ConflictError):
            asyncio.run(scenario())

    def test_release_after_delivery_refused(self, store, allocation, ledger) -> None:
        async def scenario():
            order = await place_order(store)
            await deliver(allocation, ledger, order["id"])
            await allocation.cancel_assignment(order["id"], "delivery")

        with pytest.raises(ConflictError):
            asyncio.run(scenario())
