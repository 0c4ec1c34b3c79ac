"""Tests for InventoryAggregate stock rules."""

import pytest

from storefront.errors import InsufficientStockError, OverDeductionError
from storefront.inventory.aggregate import InventoryAggregate


def make_product(quantity=10, reserved=0, threshold=3, status="active"):
    agg = InventoryAggregate()
    agg.id = "p-1"
    agg.name = "Widget"
    agg.quantity = quantity
    agg.reserved = reserved
    agg.low_stock_threshold = threshold
    agg.status = status
    return agg


class TestReserve:
    def test_reserve_increases_reserved(self):
        agg = make_product(quantity=5)
        agg.reserve_stock(3)

        assert agg.reserved == 3
        assert agg.available == 2

    def test_reserve_more_than_available_leaves_stock_unchanged(self):
        agg = make_product(quantity=2)

        with pytest.raises(InsufficientStockError) as exc:
            agg.reserve_stock(3)

        assert exc.value.available == 2
        assert agg.quantity == 2
        assert agg.reserved == 0

    def test_reserve_then_release_round_trips(self):
        agg = make_product(quantity=5, reserved=1)
        agg.reserve_stock(2)
        agg.release_stock(2)

        assert agg.reserved == 1

    def test_release_never_goes_negative(self):
        agg = make_product(reserved=1)
        agg.release_stock(5)

        assert agg.reserved == 0


class TestDeduct:
    def test_deduct_moves_reserved_into_sales(self):
        agg = make_product(quantity=5, reserved=1)
        agg.deduct_stock(1)

        assert agg.quantity == 4
        assert agg.reserved == 0
        assert agg.sales == 1
        assert agg.status == "active"

    def test_deduct_more_than_reserved_raises(self):
        agg = make_product(quantity=5, reserved=1)

        with pytest.raises(OverDeductionError):
            agg.deduct_stock(2)
        assert agg.quantity == 5
        assert agg.reserved == 1

    def test_deduct_last_unit_marks_out_of_stock(self):
        agg = make_product(quantity=1, reserved=1)
        agg.deduct_stock(1)

        assert agg.status == "out_of_stock"

    def test_restock_reactivates(self):
        agg = make_product(quantity=0, status="out_of_stock")
        agg.restock(4)

        assert agg.quantity == 4
        assert agg.status == "active"


class TestLowStock:
    def test_low_stock_uses_available(self):
        agg = make_product(quantity=6, reserved=3, threshold=3)
        assert agg.is_low_stock

    def test_not_low_stock(self):
        assert not make_product(quantity=10, threshold=3).is_low_stock

    def test_to_dict_nests_stock(self):
        data = make_product(quantity=7, reserved=2).to_dict()
        assert data["stock"] == {
            "quantity": 7,
            "reserved": 2,
            "available": 5,
            "low_stock_threshold": 3,
        }
