"""Coupon validation, discount computation and redemption."""
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from database import create_document, to_object_id
from errors import ConflictError, CouponError, NotFoundError
from schemas import Coupon

logger = logging.getLogger(__name__)


def normalize_code(code: str) -> str:
    return (code or "").strip().upper()


def check_coupon(coupon: Optional[Dict[str, Any]], subtotal: Optional[float] = None,
                 now: Optional[datetime] = None) -> None:
    """Raise CouponError if the coupon can't be used for `subtotal` right now.

    With subtotal=None the minimum order amount isn't checked.
    """
    now = now or datetime.utcnow()
    if not coupon:
        raise CouponError(CouponError.NOT_FOUND)
    if coupon["expires_at"] < now:
        raise CouponError(CouponError.EXPIRED)
    if coupon.get("used_count", 0) >= coupon.get("usage_limit", 0):
        raise CouponError(CouponError.USAGE_LIMIT_REACHED)
    if subtotal is not None and subtotal < coupon.get("min_order_amount", 0):
        raise CouponError(CouponError.MINIMUM_NOT_MET, coupon.get("min_order_amount"))


def compute_discount(coupon: Dict[str, Any], subtotal: float) -> float:
    """Percentage coupons are capped by max_discount_amount; fixed ones are flat
    and may exceed the subtotal, so callers clamp the total themselves."""
    if coupon["discount_type"] == "percentage":
        discount = coupon["discount_amount"] / 100 * subtotal
        cap = coupon.get("max_discount_amount")
        if cap is not None and discount > cap:
            discount = cap
        return round(discount, 2)
    return round(float(coupon["discount_amount"]), 2)


def find_coupon(db, code: str) -> Optional[Dict[str, Any]]:
    return db["coupon"].find_one({"code": normalize_code(code)})


def peek_coupon(db, code: str) -> Dict[str, Any]:
    """Look up a coupon and check it is usable, without redeeming it."""
    coupon = find_coupon(db, code)
    check_coupon(coupon)
    return coupon


def preview_discount(db, code: str, subtotal: float) -> Dict[str, Any]:
    coupon = find_coupon(db, code)
    check_coupon(coupon, subtotal)
    return {
        "coupon": coupon,
        "discount_type": coupon["discount_type"],
        "discount_amount": compute_discount(coupon, subtotal),
    }


def apply_coupon(db, code: str, subtotal: float, now: Optional[datetime] = None) -> Dict[str, Any]:
    """Validate, compute the discount and redeem one use of the coupon.

    The usage increment only matches while used_count is still under the limit,
    so two redemptions racing for the last use can't both succeed.
    """
    now = now or datetime.utcnow()
    coupon = find_coupon(db, code)
    check_coupon(coupon, subtotal, now)
    discount = compute_discount(coupon, subtotal)

    redeemed = db["coupon"].find_one_and_update(
        {
            "_id": coupon["_id"],
            "used_count": {"$lt": coupon["usage_limit"]},
            "expires_at": {"$gte": now},
        },
        {"$inc": {"used_count": 1}},
        return_document=ReturnDocument.AFTER,
    )
    if redeemed is None:
        logger.info("Coupon %s lost the race for its last use", coupon["code"])
        raise CouponError(CouponError.USAGE_LIMIT_REACHED)

    logger.info("Coupon %s redeemed (%d/%d), discount %.2f",
                redeemed["code"], redeemed["used_count"], redeemed["usage_limit"], discount)
    return {"coupon": redeemed, "discount_type": redeemed["discount_type"], "discount_amount": discount}


def release_coupon(db, coupon_id) -> None:
    """Give back one use after a failed checkout."""
    db["coupon"].update_one({"_id": coupon_id, "used_count": {"$gt": 0}}, {"$inc": {"used_count": -1}})
    logger.info("Coupon %s usage released", coupon_id)


# Admin

def create_coupon(db, coupon: Coupon) -> Dict[str, Any]:
    if db["coupon"].find_one({"code": coupon.code}):
        raise ConflictError("Coupon code already exists")
    try:
        coupon_id = create_document("coupon", coupon, database=db)
    except DuplicateKeyError:
        raise ConflictError("Coupon code already exists")
    return db["coupon"].find_one({"_id": to_object_id(coupon_id)})


def list_coupons(db) -> List[Dict[str, Any]]:
    return list(db["coupon"].find().sort("expires_at", -1))


def update_coupon(db, coupon_id: str, changes: Dict[str, Any]) -> Dict[str, Any]:
    oid = to_object_id(coupon_id, "coupon")
    existing = db["coupon"].find_one({"_id": oid})
    if not existing:
        raise NotFoundError("Coupon", coupon_id)

    merged = {k: v for k, v in existing.items() if k in Coupon.model_fields}
    merged.update({k: v for k, v in changes.items() if k in Coupon.model_fields})
    coupon = Coupon(**merged)

    if coupon.code != existing["code"] and db["coupon"].find_one({"code": coupon.code}):
        raise ConflictError("Coupon code already exists")

    update = coupon.model_dump()
    update["updated_at"] = datetime.utcnow()
    db["coupon"].update_one({"_id": oid}, {"$set": update})
    return db["coupon"].find_one({"_id": oid})


def delete_coupon(db, coupon_id: str) -> None:
    result = db["coupon"].delete_one({"_id": to_object_id(coupon_id, "coupon")})
    if result.deleted_count == 0:
        raise NotFoundError("Coupon", coupon_id)
