"""Tests for pricing: margins, customer vs fulfiller prices, overrides and quotes."""

import asyncio
from decimal import Decimal

import pytest

from utils.errors import NotFoundError, ValidationError
from utils.pricing import (
    compute_margin,
    customer_price,
    fulfiller_display_price,
    quote_order,
    set_override,
    to_money,
)


class TestMargin:
    def test_percent_margin(self) -> None:
        assert compute_margin("200", "percent", "10") == Decimal("20.00")

    def test_fixed_margin(self) -> None:
        assert compute_margin("50", "fixed", "5") == Decimal("5.00")

    def test_missing_type_defaults_to_percent(self) -> None:
        assert compute_margin("80", None, "25") == Decimal("20.00")

    def test_missing_value_is_zero(self) -> None:
        assert compute_margin("80", "fixed", None) == Decimal("0.00")

    def test_rounds_half_up_to_cents(self) -> None:
        assert compute_margin("0.25", "percent", "10") == Decimal("0.03")

    @pytest.mark.parametrize("base,value,field", [("-1", "10", "base_price"), ("10", "-1", "margin_value")])
    def test_negative_inputs_rejected(self, base: str, value: str, field: str) -> None:
        with pytest.raises(ValidationError) as exc:
            compute_margin(base, "percent", value)
        assert exc.value.field == field

    def test_unknown_margin_type(self) -> None:
        with pytest.raises(ValidationError):
            compute_margin("10", "tiered", "1")

    def test_garbage_amount(self) -> None:
        with pytest.raises(ValidationError):
            to_money("ten", "price")

    @pytest.mark.parametrize("value", ["1e30", Decimal("1e30")])
    def test_amount_too_large_to_quantize(self, value) -> None:
        with pytest.raises(ValidationError) as exc:
            to_money(value, "amount")
        assert exc.value.field == "amount"


class TestPrices:
    def test_customer_price_includes_margin(self) -> None:
        item = {"base_price": "200", "margin_type": "percent", "margin_value": "10"}
        assert customer_price(item) == Decimal("220.00")

    def test_display_price_never_includes_margin(self) -> None:
        item = {"base_price": "200", "margin_type": "percent", "margin_value": "10"}
        assert fulfiller_display_price(item) == Decimal("200.00")
        assert fulfiller_display_price(item, {"custom_price": "180"}) == Decimal("180.00")

    def test_quote_snapshots_customer_price(self) -> None:
        biryani = {"id": 1, "base_price": "200", "margin_type": "percent", "margin_value": "10"}
        porotta = {"id": 2, "base_price": "50", "margin_type": "fixed", "margin_value": "5"}
        items, total = quote_order([(biryani, 2), (porotta, 3)])
        assert [i["unit_price"] for i in items] == [Decimal("220.00"), Decimal("55.00")]
        assert [i["total_price"] for i in items] == [Decimal("440.00"), Decimal("165.00")]
        assert total == Decimal("605.00")

    def test_quote_rejects_zero_quantity(self) -> None:
        item = {"id": 1, "base_price": "10", "margin_type": "fixed", "margin_value": "0"}
        with pytest.raises(ValidationError):
            quote_order([(item, 0)])


class TestOverrides:
    def test_price_equal_to_base_stores_nothing(self, store) -> None:
        async def scenario():
            view = await set_override(store, 10, 3, "150")
            return view, await store.get_override(10, 3)

        view, stored = asyncio.run(scenario())
        assert stored is None
        assert view["custom_price"] is None
        assert view["display_price"] == Decimal("150.00")

    def test_custom_price_is_stored(self, store) -> None:
        async def scenario():
            view = await set_override(store, 10, 1, "180")
            return view, await store.get_override(10, 1)

        view, stored = asyncio.run(scenario())
        assert stored["custom_price"] == Decimal("180.00")
        assert view["display_price"] == Decimal("180.00")

    def test_reverting_deletes_existing_override(self, store) -> None:
        async def scenario():
            await set_override(store, 10, 1, "180")
            await set_override(store, 10, 1, "200")
            return await store.get_override(10, 1)

        assert asyncio.run(scenario()) is None

    def test_price_below_one_rejected(self, store) -> None:
        with pytest.raises(ValidationError) as exc:
            asyncio.run(set_override(store, 10, 1, "0.50"))
        assert exc.value.field == "custom_price"

    def test_price_rounding_up_to_one_still_rejected(self, store) -> None:
        with pytest.raises(ValidationError) as exc:
            asyncio.run(set_override(store, 10, 1, "0.995"))
        assert exc.value.field == "custom_price"
        assert asyncio.run(store.get_override(10, 1)) is None

    def test_unknown_item(self, store) -> None:
        with pytest.raises(NotFoundError):
            asyncio.run(set_override(store, 10, 99, "20"))
