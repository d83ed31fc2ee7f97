"""Payment records, their status transitions and payment-method admin.

Payment status graph:

    Pending -> Completed -> Refunded
    Pending -> Failed

Writing the status a payment already has is a no-op (gateway retries);
every other move raises InvalidStateError.
"""
import hashlib
import hmac
import logging
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from bson import ObjectId
from pymongo.errors import DuplicateKeyError

from database import create_document, to_object_id
from errors import (
    ConflictError,
    ForbiddenError,
    InvalidPaymentMethodError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from schemas import COD, PAYMENT_STATUSES, Payment, PaymentMethod, is_admin

logger = logging.getLogger(__name__)

PAYMENT_TRANSITIONS = {
    "Pending": {"Completed", "Failed"},
    "Completed": {"Refunded"},
    "Failed": set(),
    "Refunded": set(),
}


def check_transition(current: str, target: str) -> bool:
    """True if the status changes, False for a repeat of the current status."""
    if target not in PAYMENT_STATUSES:
        raise ValidationError("Invalid payment status")
    if current == target:
        return False
    if target not in PAYMENT_TRANSITIONS.get(current, set()):
        raise InvalidStateError("Payment", current, target)
    return True


def _active_method(db, method_id: str) -> Dict[str, Any]:
    if not method_id or not ObjectId.is_valid(method_id):
        raise InvalidPaymentMethodError()
    method = db["payment_method"].find_one({"_id": ObjectId(method_id)})
    if not method or not method.get("is_active"):
        raise InvalidPaymentMethodError()
    return method


def _find_payment(db, payment_id: str) -> Dict[str, Any]:
    payment = db["payment"].find_one({"_id": to_object_id(payment_id, "payment")})
    if not payment:
        raise NotFoundError("Payment", payment_id)
    return payment


def get_payment(db, payment_id: str, user: Dict[str, Any]) -> Dict[str, Any]:
    payment = _find_payment(db, payment_id)
    if not is_admin(user) and payment["customer_id"] != str(user["_id"]):
        raise ForbiddenError()
    if payment.get("method_id"):
        payment["method"] = db["payment_method"].find_one(
            {"_id": ObjectId(payment["method_id"])}, {"name": 1, "type": 1})
    return payment


def create_payment(db, order_id: str, customer_id: str, payment_method_id: Optional[str] = None,
                   metadata: Optional[Dict[str, Any]] = None, cod: bool = False) -> Dict[str, Any]:
    """Create the payment record for an order.

    COD payments (cod=True) are recorded as verified straight away. Anything
    else needs an active registered payment method, is named after that
    method and starts unverified.
    """
    order = db["order"].find_one({"_id": to_object_id(order_id, "order")}, {"payment_id": 1})
    if (order and order.get("payment_id")) or db["payment"].find_one({"order_id": order_id}):
        raise ConflictError("Payment already exists for this order")

    if cod:
        payment = Payment(order_id=order_id, customer_id=customer_id, payment_method_name=COD,
                          metadata=metadata, verified=True)
    else:
        if not payment_method_id:
            raise InvalidPaymentMethodError("Payment method ID is required for online payments")
        method = _active_method(db, payment_method_id)
        payment = Payment(
            order_id=order_id,
            customer_id=customer_id,
            method_id=str(method["_id"]),
            payment_method_name=method["name"],
            metadata=metadata,
            verified=False,
        )

    try:
        payment_id = create_document("payment", payment, database=db)
    except DuplicateKeyError:
        raise ConflictError("Payment already exists for this order")
    logger.info("Payment %s created for order %s (%s)", payment_id, order_id, payment.payment_method_name)
    return db["payment"].find_one({"_id": ObjectId(payment_id)})


def link_payment(db, order_id: str, payment_id: str) -> None:
    db["order"].update_one(
        {"_id": to_object_id(order_id, "order")},
        {"$set": {"payment_id": payment_id, "updated_at": datetime.utcnow()}},
    )


def delete_payment(db, payment_id: str) -> None:
    db["payment"].delete_one({"_id": to_object_id(payment_id, "payment")})
    logger.info("Payment %s deleted", payment_id)


def attach_payment(db, order_id: str, user: Dict[str, Any], payment_method_id: str,
                   metadata: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Customer-initiated payment for one of their orders that has none yet."""
    order = db["order"].find_one({"_id": to_object_id(order_id, "order")})
    if not order:
        raise NotFoundError("Order", order_id)
    if order["customer_id"] != str(user["_id"]):
        raise ForbiddenError()
    if order.get("payment_id"):
        raise ConflictError("Payment already exists for this order")
    method = _active_method(db, payment_method_id)
    payment = create_payment(db, order_id, order["customer_id"], str(method["_id"]), metadata)
    link_payment(db, order_id, str(payment["_id"]))
    return payment


def _set_order_payment_status(db, order_id: str, status: str) -> None:
    result = db["order"].update_one(
        {"_id": to_object_id(order_id, "order")},
        {"$set": {"payment_status": status, "updated_at": datetime.utcnow()}},
    )
    if result.matched_count == 0:
        logger.warning("Payment points at missing order %s", order_id)


def _transition(db, payment_id: str, status: str, transaction_id: Optional[str],
                propagate: Iterable[str]) -> Dict[str, Any]:
    payment = _find_payment(db, payment_id)
    changed = check_transition(payment["status"], status)
    if not changed and not transaction_id:
        return payment

    now = datetime.utcnow()
    update: Dict[str, Any] = {"status": status, "updated_at": now}
    if transaction_id:
        update["transaction_id"] = transaction_id
    if changed and status == "Completed":
        update["payment_date"] = now
        update["verified"] = True

    db["payment"].update_one({"_id": payment["_id"]}, {"$set": update})
    if changed:
        logger.info("Payment %s: %s -> %s", payment_id, payment["status"], status)
        if status in propagate:
            _set_order_payment_status(db, payment["order_id"], status)
    return db["payment"].find_one({"_id": payment["_id"]})


def update_payment_status(db, payment_id: str, status: str, transaction_id: Optional[str] = None) -> Dict[str, Any]:
    """Admin status change. Only Completed is mirrored onto the order."""
    return _transition(db, payment_id, status, transaction_id, propagate=("Completed",))


def refund_payment(db, payment_id: str) -> Dict[str, Any]:
    """Mark a completed payment refunded (no funds move) and mirror it on the order."""
    return _transition(db, payment_id, "Refunded", None, propagate=("Refunded",))


def handle_webhook(db, payment_id: str, status: str, transaction_id: Optional[str]) -> Dict[str, Any]:
    return _transition(db, payment_id, status, transaction_id, propagate=("Completed", "Failed"))


def sign_webhook(secret: str, body: bytes) -> str:
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def verify_webhook_signature(secret: Optional[str], body: bytes, signature: Optional[str]) -> bool:
    if not secret or not signature:
        return False
    if signature.startswith("sha256="):
        signature = signature[len("sha256="):]
    return hmac.compare_digest(sign_webhook(secret, body), signature)


# Payment methods

def create_payment_method(db, method: PaymentMethod) -> Dict[str, Any]:
    if db["payment_method"].find_one({"name": method.name}):
        raise ConflictError("Payment method already exists.")
    try:
        method_id = create_document("payment_method", method, database=db)
    except DuplicateKeyError:
        raise ConflictError("Payment method already exists.")
    return db["payment_method"].find_one({"_id": ObjectId(method_id)})


def list_payment_methods(db, include_inactive: bool = False) -> List[Dict[str, Any]]:
    query = {} if include_inactive else {"is_active": True}
    return list(db["payment_method"].find(query).sort("created_at", -1))


def get_payment_method(db, method_id: str, include_inactive: bool = False) -> Dict[str, Any]:
    query: Dict[str, Any] = {"_id": to_object_id(method_id, "payment method")}
    if not include_inactive:
        query["is_active"] = True
    method = db["payment_method"].find_one(query)
    if not method:
        raise NotFoundError("Payment method", method_id)
    return method


def update_payment_method(db, method_id: str, changes: Dict[str, Any]) -> Dict[str, Any]:
    existing = get_payment_method(db, method_id, include_inactive=True)
    merged = {k: v for k, v in existing.items() if k in PaymentMethod.model_fields}
    merged.update({k: v for k, v in changes.items() if k in PaymentMethod.model_fields and v is not None})
    method = PaymentMethod(**merged)

    if method.name != existing["name"] and db["payment_method"].find_one({"name": method.name}):
        raise ConflictError("Payment method name already exists.")

    update = method.model_dump()
    update["updated_at"] = datetime.utcnow()
    db["payment_method"].update_one({"_id": existing["_id"]}, {"$set": update})
    return db["payment_method"].find_one({"_id": existing["_id"]})


def deactivate_payment_method(db, method_id: str) -> Dict[str, Any]:
    existing = get_payment_method(db, method_id, include_inactive=True)
    db["payment_method"].update_one(
        {"_id": existing["_id"]}, {"$set": {"is_active": False, "updated_at": datetime.utcnow()}})
    return db["payment_method"].find_one({"_id": existing["_id"]})


def delete_payment_method(db, method_id: str) -> None:
    result = db["payment_method"].delete_one({"_id": to_object_id(method_id, "payment method")})
    if result.deleted_count == 0:
        raise NotFoundError("Payment method", method_id)
