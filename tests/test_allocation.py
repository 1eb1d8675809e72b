"""Tests for cook and delivery assignment: eligibility, exclusivity, responses and expiry."""

import asyncio

import pytest

from conftest import place_order
from utils.errors import ConflictError, NotFoundError, ValidationError


class TestEligibility:
    def test_ranked_by_rating_then_id(self, store, allocation) -> None:
        async def scenario():
            order = await place_order(store)
            return await allocation.list_eligible(order["id"], "cook")

        # 13 is unavailable, 12 does not cook homemade.
        assert [c["id"] for c in asyncio.run(scenario())] == [10, 11, 14]

    def test_service_type_gates_cooks_only(self, store, allocation) -> None:
        async def scenario():
            order = await place_order(store, service_type="indoor_events")
            cooks = await allocation.list_eligible(order["id"], "cook")
            staff = await allocation.list_eligible(order["id"], "delivery")
            return cooks, staff

        cooks, staff = asyncio.run(scenario())
        assert [c["id"] for c in cooks] == [12]
        assert [s["id"] for s in staff] == [21, 20]

    def test_rejecters_left_out_unless_asked(self, store, allocation) -> None:
        async def scenario():
            order = await place_order(store)
            await allocation.assign(order["id"], 10, "cook")
            await allocation.respond(order["id"], 10, "cook", "reject")
            without = await allocation.list_eligible(order["id"], "cook")
            with_all = await allocation.list_eligible(order["id"], "cook", exclude_rejected=False)
            return without, with_all

        without, with_all = asyncio.run(scenario())
        assert [c["id"] for c in without] == [11, 14]
        assert [c["id"] for c in with_all] == [10, 11, 14]

    def test_unknown_role(self, store, allocation) -> None:
        async def scenario():
            order = await place_order(store)
            await allocation.list_eligible(order["id"], "waiter")

        with pytest.raises(ValidationError) as exc:
            asyncio.run(scenario())
        assert exc.value.field == "role"


class TestAssign:
    def test_assign_sets_pending_and_logs_history(self, store, allocation) -> None:
        async def scenario():
            order = await place_order(store)
            updated = await allocation.assign(order["id"], 10, "cook")
            return updated, await allocation.history(order["id"])

        updated, history = asyncio.run(scenario())
        assert updated["cook_assignment_status"] == "pending"
        assert updated["assigned_cook_id"] == 10
        assert updated["delivery_assignment_status"] == "unassigned"
        assert [(h["fulfiller_id"], h["outcome"]) for h in history] == [(10, "assigned")]

    def test_reject_then_reassign(self, store, allocation) -> None:
        async def scenario():
            order = await place_order(store)
            oid = order["id"]
            await allocation.assign(oid, 10, "cook")
            with pytest.raises(ConflictError):
                await allocation.assign(oid, 14, "cook")
            released = await allocation.respond(oid, 10, "cook", "reject")
            reassigned = await allocation.assign(oid, 11, "cook")
            return released, reassigned

        released, reassigned = asyncio.run(scenario())
        assert released["cook_assignment_status"] == "unassigned"
        assert released["assigned_cook_id"] is None
        assert reassigned["assigned_cook_id"] == 11

    def test_concurrent_assigns_only_one_wins(self, store, allocation) -> None:
        async def scenario():
            order = await place_order(store)
            return order["id"], await asyncio.gather(
                allocation.assign(order["id"], 10, "cook"),
                allocation.assign(order["id"], 11, "cook"),
                allocation.assign(order["id"], 14, "cook"),
                return_exceptions=True,
            )

        order_id, results = asyncio.run(scenario())
        wins = [r for r in results if isinstance(r, dict)]
        conflicts = [r for r in results if isinstance(r, ConflictError)]
        assert len(wins) == 1
        assert len(conflicts) == 2
        assert conflicts[0].current["id"] == order_id

    def test_roles_are_independent(self, store, allocation) -> None:
        async def scenario():
            order = await place_order(store)
            await allocation.assign(order["id"], 10, "cook")
            return await allocation.assign(order["id"], 20, "delivery")

        updated = asyncio.run(scenario())
        assert updated["cook_assignment_status"] == "pending"
        assert updated["delivery_assignment_status"] == "pending"

    def test_ineligible_fulfiller(self, store, allocation) -> None:
        async def scenario():
            order = await place_order(store)
            await allocation.assign(order["id"], 13, "cook")

        with pytest.raises(ConflictError):
            asyncio.run(scenario())

    def test_unknown_fulfiller(self, store, allocation) -> None:
        async def scenario():
            order = await place_order(store)
            await allocation.assign(order["id"], 99, "cook")

        with pytest.raises(NotFoundError):
            asyncio.run(scenario())

    def test_cancelled_order_cannot_be_assigned(self, store, allocation) -> None:
        async def scenario():
            order = await place_order(store)
            await allocation.cancel_order(order["id"])
            await allocation.assign(order["id"], 10, "cook")

        with pytest.raises(ConflictError):
            asyncio.run(scenario())

    def test_assign_next_picks_best_remaining(self, store, allocation) -> None:
        async def scenario():
            order = await place_order(store)
            await allocation.assign(order["id"], 10, "cook")
            await allocation.respond(order["id"], 10, "cook", "reject")
            return await allocation.assign_next(order["id"], "cook")

        assert asyncio.run(scenario())["assigned_cook_id"] == 11

    def test_assign_next_without_candidates(self, store, allocation) -> None:
        async def scenario():
            order = await place_order(store, service_type="cloud_kitchen")
            await allocation.assign(order["id"], 10, "cook")
            await allocation.respond(order["id"], 10, "cook", "reject")
            return await allocation.assign_next(order["id"], "cook")

        assert asyncio.run(scenario()) is None


class TestRespond:
    def test_accept(self, store, allocation) -> None:
        async def scenario():
            order = await place_order(store)
            await allocation.assign(order["id"], 10, "cook")
            return await allocation.respond(order["id"], 10, "cook", "accept")

        assert asyncio.run(scenario())["cook_assignment_status"] == "accepted"

    def test_stale_responder(self, store, allocation) -> None:
        async def scenario():
            order = await place_order(store)
            await allocation.assign(order["id"], 10, "cook")
            await allocation.respond(order["id"], 11, "cook", "accept")

        with pytest.raises(ConflictError):
            asyncio.run(scenario())

    def test_duplicate_accept(self, store, allocation) -> None:
        async def scenario():
            order = await place_order(store)
            await allocation.assign(order["id"], 10, "cook")
            await allocation.respond(order["id"], 10, "cook", "accept")
            await allocation.respond(order["id"], 10, "cook", "accept")

        with pytest.raises(ConflictError):
            asyncio.run(scenario())

    def test_bad_response(self, store, allocation) -> None:
        async def scenario():
            order = await place_order(store)
            await allocation.assign(order["id"], 10, "cook")
            await allocation.respond(order["id"], 10, "cook", "maybe")

        with pytest.raises(ValidationError):
            asyncio.run(scenario())


class TestCancellation:
    def test_cancel_assignment_releases(self, store, allocation) -> None:
        async def scenario():
            order = await place_order(store)
            await allocation.assign(order["id"], 10, "cook")
            await allocation.respond(order["id"], 10, "cook", "accept")
            released = await allocation.cancel_assignment(order["id"], "cook")
            return released, await allocation.history(order["id"], "cook")

        released, history = asyncio.run(scenario())
        assert released["cook_assignment_status"] == "unassigned"
        assert [h["outcome"] for h in history] == ["assigned", "accepted", "cancelled"]

    def test_cancel_assignment_is_noop_when_unassigned(self, store, allocation) -> None:
        async def scenario():
            order = await place_order(store)
            await allocation.cancel_assignment(order["id"], "cook")
            return await allocation.history(order["id"])

        assert asyncio.run(scenario()) == []

    def test_cancel_order_releases_both_roles(self, store, allocation, ledger) -> None:
        async def scenario():
            order = await place_order(store)
            await allocation.assign(order["id"], 10, "cook")
            await allocation.assign(order["id"], 20, "delivery")
            await allocation.respond(order["id"], 20, "delivery", "accept")
            cancelled = await allocation.cancel_order(order["id"])
            return cancelled, await ledger.get_wallet(20), store.commissions

        cancelled, wallet, commissions = asyncio.run(scenario())
        assert cancelled["status"] == "cancelled"
        assert cancelled["cook_assignment_status"] == "unassigned"
        assert cancelled["delivery_assignment_status"] == "unassigned"
        assert wallet["collected_amount"] == 0
        assert commissions == {}


class TestSweep:
    def test_expired_offer_becomes_timeout_reject(self, store, allocation, clock) -> None:
        async def scenario():
            order = await place_order(store)
            await allocation.assign(order["id"], 10, "cook")
            clock.advance(181)
            expired = await allocation.sweep_expired("cook", 180)
            return order["id"], expired, await allocation.history(order["id"], "cook")

        order_id, expired, history = asyncio.run(scenario())
        assert expired == [order_id]
        assert history[-1]["outcome"] == "rejected"
        assert history[-1]["note"] == "timeout"

    def test_fresh_offer_kept(self, store, allocation, clock) -> None:
        async def scenario():
            order = await place_order(store)
            await allocation.assign(order["id"], 10, "cook")
            clock.advance(60)
            return await allocation.sweep_expired("cook", 180)

        assert asyncio.run(scenario()) == []

    def test_accepted_offer_not_swept(self, store, allocation, clock) -> None:
        async def scenario():
            order = await place_order(store)
            await allocation.assign(order["id"], 10, "cook")
            await allocation.respond(order["id"], 10, "cook", "accept")
            clock.advance(600)
            return await allocation.sweep_expired("cook", 180)

        assert asyncio.run(scenario()) == []

    def test_reoffer_moves_to_next_candidate(self, store, allocation, clock) -> None:
        async def scenario():
            order = await place_order(store)
            await allocation.assign(order["id"], 10, "cook")
            clock.advance(200)
            await allocation.sweep_expired("cook", 180, reoffer=True)
            return await store.get_order(order["id"])

        order = asyncio.run(scenario())
        assert order["assigned_cook_id"] == 11
        assert order["cook_assignment_status"] == "pending"
