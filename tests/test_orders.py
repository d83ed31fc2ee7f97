"""Tests for checkout and the order lifecycle."""

import pytest
from bson import ObjectId

import orders
import payments
from errors import (
    CouponError,
    EmptyCartError,
    ForbiddenError,
    InsufficientStockError,
    InvalidAddressError,
    InvalidDeliveryMethodError,
    InvalidPaymentMethodError,
    InvalidStateError,
    MissingAddressError,
)
from schemas import CheckoutRequest

from conftest import ADDRESS


def checkout(delivery_rule, **overrides):
    params = {
        "delivery_method_id": delivery_rule,
        "use_saved_address": True,
        "delivery_address_id": "addr-1",
        "payment_type": "offline",
    }
    params.update(overrides)
    return CheckoutRequest(**params)


def uid(user):
    return str(user["_id"])


def product_qty(db, product_id):
    return db["product"].find_one({"_id": ObjectId(product_id)})["quantity"]


@pytest.fixture
def widget(make_product):
    return make_product(base_price=100.0, quantity=10)


class TestCreateOrder:
    def test_total_is_subtotal_plus_delivery(self, db, customer, widget, delivery_rule, fill_cart):
        fill_cart(customer, widget)
        result = orders.create_order(db, uid(customer), checkout(delivery_rule))
        order = result["order"]
        assert order["subtotal"] == 100.0
        assert order["total_amount"] == 120.0
        assert order["delivery"] == {"method": "Inside City", "price": 20.0, "estimated_days": 2}
        assert [h["status"] for h in order["status_history"]] == ["Pending"]

    def test_percentage_coupon(self, db, customer, widget, delivery_rule, fill_cart, make_coupon):
        coupon = make_coupon(code="SAVE10", discount_type="percentage", discount_amount=10)
        fill_cart(customer, widget)
        order = orders.create_order(db, uid(customer), checkout(delivery_rule, coupon_code="SAVE10"))["order"]
        assert order["total_amount"] == 108.0
        assert order["coupon_applied"]["code"] == "SAVE10"
        assert order["coupon_applied"]["discount_amount"] == 12.0
        assert db["coupon"].find_one({"_id": coupon["_id"]})["used_count"] == 1

    def test_fixed_coupon_clamps_total_at_zero(self, db, customer, widget, delivery_rule, fill_cart, make_coupon):
        make_coupon(code="BIG", discount_type="fixed", discount_amount=500)
        fill_cart(customer, widget)
        order = orders.create_order(db, uid(customer), checkout(delivery_rule, coupon_code="BIG"))["order"]
        assert order["total_amount"] == 0.0

    def test_offline_creates_verified_cod_payment(self, db, customer, widget, delivery_rule, fill_cart):
        fill_cart(customer, widget)
        result = orders.create_order(db, uid(customer), checkout(delivery_rule))
        payment = db["payment"].find_one({"_id": ObjectId(result["payment_id"])})
        assert payment["payment_method_name"] == "COD"
        assert payment["verified"] is True
        assert payment["method_id"] is None
        assert result["order"]["payment_id"] == result["payment_id"]
        assert result["message"] == "Order created with Cash on Delivery (COD)."

    def test_online_payment(self, db, customer, widget, delivery_rule, fill_cart, card_method):
        fill_cart(customer, widget)
        result = orders.create_order(
            db, uid(customer), checkout(delivery_rule, payment_type="online", payment_method_id=card_method))
        payment = db["payment"].find_one({"_id": ObjectId(result["payment_id"])})
        assert payment["payment_method_name"] == "Card"
        assert payment["verified"] is False
        assert result["message"] == "Order created."

    def test_side_effects(self, db, customer, widget, delivery_rule, fill_cart):
        fill_cart(customer, widget, quantity=3)
        orders.create_order(db, uid(customer), checkout(delivery_rule))
        assert product_qty(db, widget) == 7
        assert db["cart"].find_one({"user_id": uid(customer)})["items"] == []
        user = db["user"].find_one({"_id": customer["_id"]})
        assert user["total_orders"] == 1
        assert user["total_purchases"] == 320.0

    def test_variation_stock_and_price(self, db, customer, make_product, delivery_rule, fill_cart):
        pid = make_product(base_price=10.0, quantity=5, variations=[{"name": "Size", "options": [
            {"value": "L", "price_modifier": 2.5, "quantity": 4},
        ]}])
        fill_cart(customer, pid, quantity=2, variations=[{"name": "Size", "option": {"value": "L"}}])
        order = orders.create_order(db, uid(customer), checkout(delivery_rule))["order"]
        assert order["items"][0]["price"] == 12.5
        assert order["items"][0]["variations"][0]["option"]["price_modifier"] == 2.5
        product = db["product"].find_one({"_id": ObjectId(pid)})
        assert product["quantity"] == 3
        assert product["variations"][0]["options"][0]["quantity"] == 2

    def test_manual_address(self, db, customer, widget, delivery_rule, fill_cart):
        fill_cart(customer, widget)
        params = checkout(delivery_rule, use_saved_address=False, delivery_address_id=None,
                          manual_address={**ADDRESS, "city": "Chittagong"})
        order = orders.create_order(db, uid(customer), params)["order"]
        assert order["delivery_details"]["address"]["city"] == "Chittagong"


class TestCreateOrderValidation:
    def test_empty_cart_twice(self, db, customer, delivery_rule):
        for _ in range(2):
            with pytest.raises(EmptyCartError):
                orders.create_order(db, uid(customer), checkout(delivery_rule))
        assert db["order"].count_documents({}) == 0

    def test_unknown_saved_address(self, db, customer, widget, delivery_rule, fill_cart):
        fill_cart(customer, widget)
        with pytest.raises(InvalidAddressError):
            orders.create_order(db, uid(customer), checkout(delivery_rule, delivery_address_id="nope"))

    def test_missing_manual_address(self, db, customer, widget, delivery_rule, fill_cart):
        fill_cart(customer, widget)
        with pytest.raises(MissingAddressError):
            orders.create_order(db, uid(customer), checkout(delivery_rule, use_saved_address=False))

    def test_unknown_delivery_method(self, db, customer, widget, fill_cart):
        fill_cart(customer, widget)
        with pytest.raises(InvalidDeliveryMethodError):
            orders.create_order(db, uid(customer), checkout(str(ObjectId())))

    def test_online_needs_method(self, db, customer, widget, delivery_rule, fill_cart):
        fill_cart(customer, widget)
        with pytest.raises(InvalidPaymentMethodError):
            orders.create_order(db, uid(customer), checkout(delivery_rule, payment_type="online"))

    def test_online_cannot_pass_as_cod(self, db, customer, widget, delivery_rule, fill_cart):
        fill_cart(customer, widget)
        params = checkout(delivery_rule, payment_type="online", payment_method_id=str(ObjectId()),
                          payment_method_name="COD")
        with pytest.raises(InvalidPaymentMethodError):
            orders.create_order(db, uid(customer), params)
        assert db["order"].count_documents({}) == 0
        assert db["payment"].count_documents({}) == 0

    def test_online_name_comes_from_method(self, db, customer, widget, delivery_rule, fill_cart, card_method):
        fill_cart(customer, widget)
        params = checkout(delivery_rule, payment_type="online", payment_method_id=card_method,
                          payment_method_name="Something else")
        result = orders.create_order(db, uid(customer), params)
        payment = db["payment"].find_one({"_id": ObjectId(result["payment_id"])})
        assert payment["payment_method_name"] == "Card"
        assert payment["verified"] is False

    def test_stock_changed_since_adding_to_cart(self, db, customer, widget, delivery_rule, fill_cart):
        fill_cart(customer, widget, quantity=5)
        db["product"].update_one({"_id": ObjectId(widget)}, {"$set": {"quantity": 2}})
        with pytest.raises(InsufficientStockError):
            orders.create_order(db, uid(customer), checkout(delivery_rule))
        assert db["order"].count_documents({}) == 0


class TestCheckoutRollback:
    def test_bad_payment_method_leaves_no_partial_state(self, db, customer, widget, delivery_rule, fill_cart,
                                                        card_method, make_coupon):
        coupon = make_coupon()
        db["payment_method"].update_one({"_id": ObjectId(card_method)}, {"$set": {"is_active": False}})
        fill_cart(customer, widget, quantity=2)

        params = checkout(delivery_rule, payment_type="online", payment_method_id=card_method,
                          coupon_code="SAVE10")
        with pytest.raises(InvalidPaymentMethodError):
            orders.create_order(db, uid(customer), params)

        assert db["order"].count_documents({}) == 0
        assert db["payment"].count_documents({}) == 0
        assert db["coupon"].find_one({"_id": coupon["_id"]})["used_count"] == 0
        assert product_qty(db, widget) == 10
        user = db["user"].find_one({"_id": customer["_id"]})
        assert user["total_orders"] == 0
        assert user["total_purchases"] == 0
        assert len(db["cart"].find_one({"user_id": uid(customer)})["items"]) == 1

    def test_second_line_short_releases_first(self, db, customer, make_product, delivery_rule, fill_cart,
                                              monkeypatch):
        first = make_product(name="First", quantity=5)
        second = make_product(name="Second", quantity=5)
        fill_cart(customer, first, quantity=2)
        fill_cart(customer, second, quantity=2)
        original = orders.reserve_stock

        def drain_then_reserve(db_, pid, qty, name=None):
            # a concurrent checkout takes the last units between pricing and reserving
            if pid == second:
                db_["product"].update_one({"_id": ObjectId(second)}, {"$set": {"quantity": 0}})
            return original(db_, pid, qty, name)

        monkeypatch.setattr(orders, "reserve_stock", drain_then_reserve)
        with pytest.raises(InsufficientStockError):
            orders.create_order(db, uid(customer), checkout(delivery_rule))

        assert product_qty(db, first) == 5
        assert product_qty(db, second) == 0
        assert db["payment"].count_documents({}) == 0
        assert db["order"].count_documents({}) == 0

    def test_exhausted_coupon_creates_nothing(self, db, customer, widget, delivery_rule, fill_cart, make_coupon):
        make_coupon(usage_limit=1, used_count=1)
        fill_cart(customer, widget)
        with pytest.raises(CouponError):
            orders.create_order(db, uid(customer), checkout(delivery_rule, coupon_code="SAVE10"))
        assert db["order"].count_documents({}) == 0

    def test_retry_after_success_is_empty_cart(self, db, customer, widget, delivery_rule, fill_cart):
        fill_cart(customer, widget)
        orders.create_order(db, uid(customer), checkout(delivery_rule))
        with pytest.raises(EmptyCartError):
            orders.create_order(db, uid(customer), checkout(delivery_rule))
        assert db["order"].count_documents({}) == 1


@pytest.fixture
def placed(db, customer, widget, delivery_rule, fill_cart, card_method):
    fill_cart(customer, widget)
    result = orders.create_order(
        db, uid(customer), checkout(delivery_rule, payment_type="online", payment_method_id=card_method))
    return result["order"]


class TestCancelOrder:
    def test_pending_appends_one_cancelled_entry(self, db, customer, placed):
        order = orders.cancel_order(db, str(placed["_id"]), customer, "Changed my mind")
        assert order["status"] == "Cancelled"
        assert order["cancellation_reason"] == "Changed my mind"
        assert [h["status"] for h in order["status_history"]] == ["Pending", "Cancelled"]

    def test_default_reason(self, db, customer, placed):
        order = orders.cancel_order(db, str(placed["_id"]), customer)
        assert order["cancellation_reason"] == "No reason provided"

    def test_shipped_is_invalid_state(self, db, customer, placed):
        db["order"].update_one({"_id": placed["_id"]}, {"$set": {"status": "Shipped"}})
        with pytest.raises(InvalidStateError, match="Cannot cancel order with status Shipped"):
            orders.cancel_order(db, str(placed["_id"]), customer)

    def test_twice_is_invalid_state(self, db, customer, placed):
        orders.cancel_order(db, str(placed["_id"]), customer)
        with pytest.raises(InvalidStateError):
            orders.cancel_order(db, str(placed["_id"]), customer)

    def test_other_customer_forbidden(self, db, make_user, placed):
        with pytest.raises(ForbiddenError):
            orders.cancel_order(db, str(placed["_id"]), make_user("Mallory"))

    def test_admin_may_cancel(self, db, admin, placed):
        assert orders.cancel_order(db, str(placed["_id"]), admin)["status"] == "Cancelled"

    def test_completed_payment_is_refunded(self, db, customer, placed):
        payments.update_payment_status(db, placed["payment_id"], "Completed")
        order = orders.cancel_order(db, str(placed["_id"]), customer)
        payment = db["payment"].find_one({"_id": ObjectId(placed["payment_id"])})
        assert payment["status"] == "Refunded"
        assert order["payment_status"] == "Refunded"

    def test_pending_payment_untouched(self, db, customer, placed):
        orders.cancel_order(db, str(placed["_id"]), customer)
        assert db["payment"].find_one({"_id": ObjectId(placed["payment_id"])})["status"] == "Pending"

    def test_stock_is_not_returned(self, db, customer, placed, widget):
        orders.cancel_order(db, str(placed["_id"]), customer)
        assert product_qty(db, widget) == 9

    def test_stats_untouched_by_default(self, db, customer, placed):
        orders.cancel_order(db, str(placed["_id"]), customer, adjust_stats=False)
        user = db["user"].find_one({"_id": customer["_id"]})
        assert user["total_purchases"] == 120.0
        assert user["cancelled_orders"] == 0

    def test_stats_adjusted_when_enabled(self, db, customer, placed):
        orders.cancel_order(db, str(placed["_id"]), customer, adjust_stats=True)
        user = db["user"].find_one({"_id": customer["_id"]})
        assert user["total_purchases"] == 0
        assert user["cancelled_orders"] == 1

    def test_reopened_and_cancelled_again_counts_once(self, db, customer, placed):
        order_id = str(placed["_id"])
        orders.cancel_order(db, order_id, customer, adjust_stats=True)
        orders.update_order_status(db, order_id, "Pending")
        orders.cancel_order(db, order_id, customer, adjust_stats=True)
        user = db["user"].find_one({"_id": customer["_id"]})
        assert user["cancelled_orders"] == 1
        assert user["cancelled_orders"] <= user["total_orders"]
        assert user["total_purchases"] == 0


class TestUpdateOrderStatus:
    def test_appends_history(self, db, placed):
        orders.update_order_status(db, str(placed["_id"]), "Processing")
        order = orders.update_order_status(db, str(placed["_id"]), "Shipped")
        assert [h["status"] for h in order["status_history"]] == ["Pending", "Processing", "Shipped"]

    def test_admin_cancel_uses_same_policy(self, db, placed):
        payments.update_payment_status(db, placed["payment_id"], "Completed")
        order = orders.update_order_status(db, str(placed["_id"]), "Cancelled", adjust_stats=True)
        assert order["cancellation_reason"] == "Order cancelled by admin."
        assert order["payment_status"] == "Refunded"
        user = db["user"].find_one({"_id": ObjectId(placed["customer_id"])})
        assert user["cancelled_orders"] == 1

    def test_repeat_cancel_adjusts_stats_once(self, db, placed):
        orders.update_order_status(db, str(placed["_id"]), "Cancelled", adjust_stats=True)
        orders.update_order_status(db, str(placed["_id"]), "Cancelled", adjust_stats=True)
        user = db["user"].find_one({"_id": ObjectId(placed["customer_id"])})
        assert user["cancelled_orders"] == 1


class TestQueries:
    def test_get_order_embeds_customer_and_payment(self, db, customer, placed):
        order = orders.get_order(db, str(placed["_id"]), customer)
        assert order["customer"]["name"] == "Alice"
        assert order["payment"]["method"]["name"] == "Card"

    def test_get_order_forbidden_for_stranger(self, db, make_user, placed):
        with pytest.raises(ForbiddenError):
            orders.get_order(db, str(placed["_id"]), make_user("Mallory"))

    def test_list_user_orders(self, db, customer, placed):
        page = orders.list_user_orders(db, uid(customer))
        assert page["total"] == 1
        assert page["pages"] == 1
        assert orders.list_user_orders(db, uid(customer), status="Cancelled")["total"] == 0

    def test_list_orders_search_by_email(self, db, placed):
        assert orders.list_orders(db, search="alice@")["total"] == 1
        assert orders.list_orders(db, search="nobody")["total"] == 0

    def test_list_orders_search_is_literal(self, db, placed):
        assert orders.list_orders(db, search="(")["total"] == 0
        assert orders.list_orders(db, search="a.ice")["total"] == 0

    def test_delete_order_removes_payment(self, db, placed):
        orders.delete_order(db, str(placed["_id"]))
        assert db["order"].count_documents({}) == 0
        assert db["payment"].count_documents({}) == 0


class TestUserStats:
    def test_purchases_do_not_drift(self, db, customer):
        db["user"].update_one({"_id": customer["_id"]}, {"$set": {"total_purchases": 0.1}})
        orders._bump_user_stats(db, customer["_id"], 1, 0.2)
        orders._bump_user_stats(db, customer["_id"], -1, -0.2)
        user = db["user"].find_one({"_id": customer["_id"]})
        assert user["total_purchases"] == 0.1
        assert user["total_orders"] == 0

    def test_purchases_floor_at_zero(self, db, customer):
        orders._bump_user_stats(db, customer["_id"], 0, -50.0)
        assert db["user"].find_one({"_id": customer["_id"]})["total_purchases"] == 0.0
