"""Tests for stock checks and conditional decrements."""

import pytest
from bson import ObjectId

from errors import InsufficientStockError, ValidationError
from inventory import (
    check_quantity,
    release_stock,
    release_stock_for_variation,
    reserve_stock,
    reserve_stock_for_variation,
)

COLOURS = [{"name": "Colour", "options": [
    {"value": "Red", "price_modifier": 0, "quantity": 3},
    {"value": "Blue", "price_modifier": 1, "quantity": 1},
]}]


def stock(db, product_id):
    return db["product"].find_one({"_id": ObjectId(product_id)})


def option_qty(db, product_id, value):
    options = stock(db, product_id)["variations"][0]["options"]
    return next(o["quantity"] for o in options if o["value"] == value)


class TestCheckQuantity:
    def test_enough(self):
        check_quantity({"name": "Mug", "quantity": 2}, [], 2)

    def test_product_short(self):
        with pytest.raises(InsufficientStockError, match="Insufficient quantity for product Mug"):
            check_quantity({"name": "Mug", "quantity": 1}, [], 2)

    def test_option_short(self):
        product = {"name": "Mug", "quantity": 10, "variations": COLOURS}
        with pytest.raises(InsufficientStockError):
            check_quantity(product, [{"name": "Colour", "option": {"value": "Blue"}}], 2)

    def test_unknown_variation(self):
        product = {"name": "Mug", "quantity": 10, "variations": COLOURS}
        with pytest.raises(ValidationError, match="Invalid variation"):
            check_quantity(product, [{"name": "Size", "option": {"value": "L"}}], 1)

    def test_unknown_option(self):
        product = {"name": "Mug", "quantity": 10, "variations": COLOURS}
        with pytest.raises(ValidationError, match="Invalid option"):
            check_quantity(product, [{"name": "Colour", "option": {"value": "Green"}}], 1)


class TestReserveStock:
    def test_decrements(self, db, make_product):
        pid = make_product(quantity=5)
        reserve_stock(db, pid, 3)
        assert stock(db, pid)["quantity"] == 2

    def test_never_goes_negative(self, db, make_product):
        pid = make_product(name="Lamp", quantity=2)
        with pytest.raises(InsufficientStockError, match="Lamp"):
            reserve_stock(db, pid, 3, "Lamp")
        assert stock(db, pid)["quantity"] == 2

    def test_release_adds_back(self, db, make_product):
        pid = make_product(quantity=5)
        reserve_stock(db, pid, 5)
        release_stock(db, pid, 5)
        assert stock(db, pid)["quantity"] == 5


class TestReserveVariation:
    def test_decrements_only_the_chosen_option(self, db, make_product):
        pid = make_product(variations=COLOURS)
        assert reserve_stock_for_variation(db, pid, "Colour", "Red", 2) is True
        assert option_qty(db, pid, "Red") == 1
        assert option_qty(db, pid, "Blue") == 1

    def test_short_option_raises(self, db, make_product):
        pid = make_product(variations=COLOURS)
        with pytest.raises(InsufficientStockError):
            reserve_stock_for_variation(db, pid, "Colour", "Blue", 2)
        assert option_qty(db, pid, "Blue") == 1

    def test_missing_option_is_skipped(self, db, make_product):
        pid = make_product(variations=COLOURS)
        assert reserve_stock_for_variation(db, pid, "Colour", "Green", 1) is False

    def test_release(self, db, make_product):
        pid = make_product(variations=COLOURS)
        reserve_stock_for_variation(db, pid, "Colour", "Red", 3)
        release_stock_for_variation(db, pid, "Colour", "Red", 3)
        assert option_qty(db, pid, "Red") == 3
