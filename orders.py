"""
Checkout and order lifecycle.

create_order turns the user's cart into an order and its payment record. Every
write from coupon redemption to stock decrement runs as a Saga step with a
compensating action, so a failure part-way through leaves no half-built order,
orphaned payment, consumed coupon use or reserved stock behind. The cart is
cleared last.

Cancellation goes through one policy (_apply_cancellation) whether the customer
cancels or an admin moves the order to Cancelled: a completed payment is marked
Refunded, stock is not returned, and the customer's purchase statistics are
only adjusted when ADJUST_STATS_ON_CANCEL is enabled.
"""
import logging
import math
import re
import os
from datetime import datetime
from typing import Any, Dict, List, Optional

from bson import ObjectId

from carts import find_cart, save_items
from coupons import apply_coupon, release_coupon
from database import create_document, to_object_id
from errors import (
    EmptyCartError,
    ForbiddenError,
    InsufficientStockError,
    InvalidAddressError,
    InvalidDeliveryMethodError,
    InvalidPaymentMethodError,
    InvalidStateError,
    MissingAddressError,
    NotFoundError,
    ValidationError,
)
from inventory import release_stock, release_stock_for_variation, reserve_stock, reserve_stock_for_variation
from payments import create_payment, delete_payment, link_payment, refund_payment
from pricing import resolve_variations, unit_price
from saga import Saga
from schemas import (
    CANCELLABLE_STATUSES,
    COD,
    ORDER_STATUSES,
    PAYMENT_STATUSES,
    Address,
    CheckoutRequest,
    CouponApplied,
    DeliveryDetails,
    DeliveryInfo,
    Order,
    OrderItem,
    StatusHistoryEntry,
    is_admin,
)

logger = logging.getLogger(__name__)

ADJUST_STATS_ON_CANCEL = os.getenv("ADJUST_STATS_ON_CANCEL", "false").lower() in ("1", "true", "yes")

ADDRESS_FIELDS = tuple(Address.model_fields)


def resolve_delivery_address(user: Dict[str, Any], use_saved_address: bool, delivery_address_id: Optional[str],
                             manual_address: Optional[Any]) -> Dict[str, Any]:
    if use_saved_address:
        if not delivery_address_id:
            raise InvalidAddressError("Delivery address ID is required when using a saved address.")
        address = next((a for a in user.get("addresses") or [] if a.get("id") == delivery_address_id), None)
        if not address:
            raise InvalidAddressError()
        return {field: address.get(field) for field in ADDRESS_FIELDS}

    if manual_address is None:
        raise MissingAddressError()
    if isinstance(manual_address, Address):
        return manual_address.model_dump()
    return Address(**manual_address).model_dump()


def _find_order(db, order_id: str) -> Dict[str, Any]:
    order = db["order"].find_one({"_id": to_object_id(order_id, "order")})
    if not order:
        raise NotFoundError("Order", order_id)
    return order


def _settle_purchases(db, user_oid: ObjectId) -> None:
    """Round total_purchases to cents and floor it at 0 after an $inc."""
    user = db["user"].find_one({"_id": user_oid}, {"total_purchases": 1})
    if not user:
        return
    value = user.get("total_purchases", 0.0)
    settled = max(round(value, 2), 0.0)
    if settled != value:
        # compare-and-set against the value just read
        db["user"].update_one({"_id": user_oid, "total_purchases": value}, {"$set": {"total_purchases": settled}})


def _bump_user_stats(db, user_oid: ObjectId, orders: int, amount: float) -> None:
    db["user"].update_one(
        {"_id": user_oid},
        {"$inc": {"total_orders": orders, "total_purchases": amount}, "$set": {"updated_at": datetime.utcnow()}},
    )
    _settle_purchases(db, user_oid)


def _price_cart(db, cart: Dict[str, Any]):
    """Check stock and snapshot every cart line. Returns (order_items, products, subtotal)."""
    order_items: List[OrderItem] = []
    products: Dict[str, Dict[str, Any]] = {}
    subtotal = 0.0
    for item in cart["items"]:
        product = db["product"].find_one({"_id": to_object_id(item["product_id"], "product")})
        if not product:
            raise InsufficientStockError(item["product_id"], "product is no longer available")
        if product.get("quantity", 0) < item["quantity"]:
            raise InsufficientStockError(product["name"])

        price = unit_price(product, item.get("variations"))
        subtotal += price * item["quantity"]
        products[item["product_id"]] = product
        order_items.append(OrderItem(
            product_id=item["product_id"],
            product_name=product["name"],
            variations=resolve_variations(product, item.get("variations")),
            quantity=item["quantity"],
            price=price,
        ))
    return order_items, products, round(subtotal, 2)


def create_order(db, user_id: str, params: CheckoutRequest) -> Dict[str, Any]:
    cart = find_cart(db, user_id)
    if not cart or not cart.get("items"):
        raise EmptyCartError()

    user = db["user"].find_one({"_id": to_object_id(user_id, "user")})
    if not user:
        raise NotFoundError("User", user_id)

    address = resolve_delivery_address(user, params.use_saved_address, params.delivery_address_id,
                                       params.manual_address)

    if not params.delivery_method_id or not ObjectId.is_valid(params.delivery_method_id):
        raise InvalidDeliveryMethodError()
    rule = db["delivery_pricing"].find_one({"_id": ObjectId(params.delivery_method_id)})
    if not rule:
        raise InvalidDeliveryMethodError()

    cod = params.payment_type == "offline"
    if not cod:
        if not params.payment_method_id:
            raise InvalidPaymentMethodError("Payment method ID is required for online payments")
        if (params.payment_method_name or "").strip().upper() == COD:
            raise InvalidPaymentMethodError("COD is only available for offline payments")

    order_items, products, subtotal = _price_cart(db, cart)
    total = round(subtotal + rule["price"], 2)

    with Saga("checkout") as saga:
        coupon_applied = None
        if params.coupon_code:
            applied = saga.step(
                "redeem coupon",
                lambda: apply_coupon(db, params.coupon_code, total),
                compensate=lambda a: release_coupon(db, a["coupon"]["_id"]),
            )
            total = round(max(total - applied["discount_amount"], 0.0), 2)
            coupon_applied = CouponApplied(
                coupon_id=str(applied["coupon"]["_id"]),
                code=applied["coupon"]["code"],
                discount_type=applied["discount_type"],
                discount_amount=applied["discount_amount"],
            )

        order = Order(
            customer_id=user_id,
            items=order_items,
            subtotal=subtotal,
            total_amount=total,
            delivery=DeliveryInfo(method=rule["name"], price=rule["price"],
                                  estimated_days=rule.get("estimated_days")),
            status="Pending",
            status_history=[StatusHistoryEntry(status="Pending")],
            payment_type=params.payment_type,
            payment_status="Pending",
            delivery_details=DeliveryDetails(address=address, method=rule["name"]),
            coupon_applied=coupon_applied,
        )
        order_id = saga.step(
            "insert order",
            lambda: create_document("order", order, database=db),
            compensate=lambda oid: db["order"].delete_one({"_id": ObjectId(oid)}),
        )

        saga.step(
            "update user stats",
            lambda: _bump_user_stats(db, user["_id"], 1, total),
            compensate=lambda _: _bump_user_stats(db, user["_id"], -1, -total),
        )

        payment = saga.step(
            "create payment",
            lambda: create_payment(db, order_id, user_id, None if cod else params.payment_method_id,
                                   params.metadata, cod=cod),
            compensate=lambda p: delete_payment(db, str(p["_id"])),
        )
        payment_id = str(payment["_id"])
        saga.step("link payment", lambda: link_payment(db, order_id, payment_id))

        for item in cart["items"]:
            pid, qty = item["product_id"], item["quantity"]
            saga.step(
                f"reserve {pid}",
                lambda pid=pid, qty=qty: reserve_stock(db, pid, qty, products[pid]["name"]),
                compensate=lambda _, pid=pid, qty=qty: release_stock(db, pid, qty),
            )
            for selection in item.get("variations") or []:
                name, value = selection["name"], selection["option"]["value"]
                saga.step(
                    f"reserve {pid} {name}={value}",
                    lambda pid=pid, name=name, value=value, qty=qty:
                        reserve_stock_for_variation(db, pid, name, value, qty),
                    compensate=lambda reserved, pid=pid, name=name, value=value, qty=qty:
                        release_stock_for_variation(db, pid, name, value, qty) if reserved else None,
                )

    save_items(db, user_id, [])
    logger.info("Order %s created for user %s: total %.2f, payment %s (%s)",
                order_id, user_id, total, payment_id, payment["payment_method_name"])

    return {
        "order": _find_order(db, order_id),
        "payment_id": payment_id,
        "message": "Order created." if params.payment_type == "online"
        else "Order created with Cash on Delivery (COD).",
    }


def _adjust_stats_on_cancel(db, order: Dict[str, Any]) -> None:
    user_oid = to_object_id(order["customer_id"], "user")
    db["user"].update_one(
        {"_id": user_oid},
        {"$inc": {"total_purchases": -order["total_amount"], "cancelled_orders": 1}},
    )
    _settle_purchases(db, user_oid)


def _apply_cancellation(db, order: Dict[str, Any], adjust_stats: bool) -> None:
    if order.get("payment_id"):
        payment = db["payment"].find_one({"_id": ObjectId(order["payment_id"])}, {"status": 1})
        if payment and payment["status"] == "Completed":
            refund_payment(db, order["payment_id"])
            logger.info("Order %s: payment %s marked refunded", order["_id"], order["payment_id"])
    if adjust_stats:
        # an order's cancellation counts against the customer once, however often it is reopened
        claimed = db["order"].update_one(
            {"_id": order["_id"], "stats_adjusted": {"$ne": True}},
            {"$set": {"stats_adjusted": True}},
        )
        if claimed.modified_count:
            _adjust_stats_on_cancel(db, order)


def cancel_order(db, order_id: str, requester: Dict[str, Any], reason: Optional[str] = None,
                 adjust_stats: Optional[bool] = None) -> Dict[str, Any]:
    if adjust_stats is None:
        adjust_stats = ADJUST_STATS_ON_CANCEL
    order = _find_order(db, order_id)
    if not is_admin(requester) and order["customer_id"] != str(requester["_id"]):
        raise ForbiddenError()
    if order["status"] not in CANCELLABLE_STATUSES:
        raise InvalidStateError("Order", order["status"])

    now = datetime.utcnow()
    result = db["order"].update_one(
        {"_id": order["_id"], "status": {"$in": list(CANCELLABLE_STATUSES)}},
        {
            "$set": {"status": "Cancelled", "cancellation_reason": reason or "No reason provided",
                     "updated_at": now},
            "$push": {"status_history": {"status": "Cancelled", "updated_at": now}},
        },
    )
    if result.modified_count == 0:
        # status moved on between the read and the write
        raise InvalidStateError("Order", _find_order(db, order_id)["status"])

    _apply_cancellation(db, order, adjust_stats)
    logger.info("Order %s cancelled by %s", order_id, requester["_id"])
    return _find_order(db, order_id)


def update_order_status(db, order_id: str, status: str, remarks: Optional[str] = None,
                        adjust_stats: Optional[bool] = None) -> Dict[str, Any]:
    """Admin status change. Any status may follow any other; history is appended."""
    if status not in ORDER_STATUSES:
        raise ValidationError("Invalid status provided.")
    if adjust_stats is None:
        adjust_stats = ADJUST_STATS_ON_CANCEL
    order = _find_order(db, order_id)

    now = datetime.utcnow()
    fields: Dict[str, Any] = {"status": status, "updated_at": now}
    if status == "Cancelled":
        fields["cancellation_reason"] = remarks or "Order cancelled by admin."
    db["order"].update_one(
        {"_id": order["_id"]},
        {"$set": fields, "$push": {"status_history": {"status": status, "updated_at": now}}},
    )

    if status == "Cancelled":
        _apply_cancellation(db, order, adjust_stats)
    logger.info("Order %s: %s -> %s", order_id, order["status"], status)
    return _find_order(db, order_id)


def get_order(db, order_id: str, user: Dict[str, Any]) -> Dict[str, Any]:
    order = _find_order(db, order_id)
    if not is_admin(user) and order["customer_id"] != str(user["_id"]):
        raise ForbiddenError()

    customer = db["user"].find_one({"_id": to_object_id(order["customer_id"], "user")}, {"name": 1, "email": 1})
    order["customer"] = customer
    if order.get("payment_id"):
        payment = db["payment"].find_one({"_id": ObjectId(order["payment_id"])})
        if payment and payment.get("method_id"):
            payment["method"] = db["payment_method"].find_one(
                {"_id": ObjectId(payment["method_id"])}, {"name": 1, "type": 1})
        order["payment"] = payment
    return order


def _paginate(db, query: Dict[str, Any], page: int, limit: int) -> Dict[str, Any]:
    page = max(page, 1)
    limit = max(limit, 1)
    total = db["order"].count_documents(query)
    cursor = db["order"].find(query).sort("created_at", -1).skip((page - 1) * limit).limit(limit)
    return {
        "items": list(cursor),
        "page": page,
        "limit": limit,
        "total": total,
        "pages": math.ceil(total / limit) if total else 0,
    }


def list_user_orders(db, user_id: str, page: int = 1, limit: int = 10, status: Optional[str] = None):
    query: Dict[str, Any] = {"customer_id": user_id}
    if status and status != "all":
        if status not in ORDER_STATUSES:
            raise ValidationError("Invalid status provided.")
        query["status"] = status
    return _paginate(db, query, page, limit)


def list_orders(db, page: int = 1, limit: int = 10, status: Optional[str] = None,
                payment_status: Optional[str] = None, delivery_method: Optional[str] = None,
                search: Optional[str] = None) -> Dict[str, Any]:
    query: Dict[str, Any] = {}
    if status:
        if status not in ORDER_STATUSES:
            raise ValidationError("Invalid status provided.")
        query["status"] = status
    if payment_status:
        if payment_status not in PAYMENT_STATUSES:
            raise ValidationError("Invalid payment status")
        query["payment_status"] = payment_status
    if delivery_method:
        query["delivery.method"] = delivery_method
    if search:
        if ObjectId.is_valid(search):
            query["$or"] = [{"_id": ObjectId(search)}, {"customer_id": search}]
        else:
            users = db["user"].find(
                {"$or": [{"name": {"$regex": re.escape(search), "$options": "i"}},
                         {"email": {"$regex": re.escape(search), "$options": "i"}}]},
                {"_id": 1},
            )
            query["customer_id"] = {"$in": [str(u["_id"]) for u in users]}
    return _paginate(db, query, page, limit)


def delete_order(db, order_id: str) -> None:
    order = _find_order(db, order_id)
    db["order"].delete_one({"_id": order["_id"]})
    db["payment"].delete_many({"order_id": str(order["_id"])})
    logger.info("Order %s deleted with its payment", order_id)
