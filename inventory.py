"""Stock checks and decrements for products and their variation options.

Decrements are conditional single-document updates: the availability check
and the write happen in the same update, so concurrent checkouts can't drive
a quantity below zero. The release functions only undo a reservation made by
a checkout that failed later on; cancelling an order does not restock.
"""
import logging
from typing import Any, Dict, List, Optional, Tuple

from database import to_object_id
from errors import InsufficientStockError, ValidationError

logger = logging.getLogger(__name__)


def check_quantity(product: Dict[str, Any], selections: Optional[List[Dict[str, Any]]], quantity: int) -> None:
    """Raise if the product (and every selected option) can't cover `quantity`."""
    name = product.get("name", str(product.get("_id")))
    if product.get("quantity", 0) < quantity:
        raise InsufficientStockError(name)

    for selection in selections or []:
        variation = next((v for v in product.get("variations") or [] if v["name"] == selection["name"]), None)
        if variation is None:
            raise ValidationError(f"Invalid variation: {selection['name']}")
        value = selection["option"]["value"]
        option = next((o for o in variation.get("options") or [] if o["value"] == value), None)
        if option is None:
            raise ValidationError(f"Invalid option for variation {selection['name']}: {value}")
        if option.get("quantity", 0) < quantity:
            raise InsufficientStockError(
                name,
                f"{selection['name']} {value}: available {option.get('quantity', 0)}, requested {quantity}",
            )


def reserve_stock(db, product_id: str, quantity: int, product_name: Optional[str] = None) -> None:
    result = db["product"].update_one(
        {"_id": to_object_id(product_id, "product"), "quantity": {"$gte": quantity}},
        {"$inc": {"quantity": -quantity}},
    )
    if result.modified_count == 0:
        raise InsufficientStockError(product_name or product_id)
    logger.debug("Reserved %d of product %s", quantity, product_id)


def release_stock(db, product_id: str, quantity: int) -> None:
    db["product"].update_one({"_id": to_object_id(product_id, "product")}, {"$inc": {"quantity": quantity}})
    logger.info("Released %d of product %s", quantity, product_id)


def _option_path(db, product_id: str, variation_name: str, option_value: str) -> Optional[Tuple[str, str]]:
    product = db["product"].find_one({"_id": to_object_id(product_id, "product")}, {"variations": 1, "name": 1})
    if not product:
        return None
    for i, variation in enumerate(product.get("variations") or []):
        if variation.get("name") != variation_name:
            continue
        for j, option in enumerate(variation.get("options") or []):
            if option.get("value") == option_value:
                return f"variations.{i}.options.{j}", product.get("name", product_id)
    return None


def reserve_stock_for_variation(db, product_id: str, variation_name: str, option_value: str, quantity: int) -> bool:
    """Decrement one variation option. Returns False when the option no longer exists."""
    located = _option_path(db, product_id, variation_name, option_value)
    if located is None:
        logger.warning("Option %s=%s not found on product %s, nothing to reserve",
                       variation_name, option_value, product_id)
        return False
    path, name = located
    result = db["product"].update_one(
        {
            "_id": to_object_id(product_id, "product"),
            f"{path}.value": option_value,
            f"{path}.quantity": {"$gte": quantity},
        },
        {"$inc": {f"{path}.quantity": -quantity}},
    )
    if result.modified_count == 0:
        raise InsufficientStockError(name, f"{variation_name} {option_value}")
    return True


def release_stock_for_variation(db, product_id: str, variation_name: str, option_value: str, quantity: int) -> None:
    located = _option_path(db, product_id, variation_name, option_value)
    if located is None:
        logger.warning("Option %s=%s gone from product %s, can't release %d",
                       variation_name, option_value, product_id, quantity)
        return
    path, _ = located
    db["product"].update_one(
        {"_id": to_object_id(product_id, "product"), f"{path}.value": option_value},
        {"$inc": {f"{path}.quantity": quantity}},
    )
