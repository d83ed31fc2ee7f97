"""Per-user carts. One cart per user, created on first access."""
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from bson import ObjectId

from database import to_object_id
from errors import NotFoundError
from inventory import check_quantity
from schemas import Cart, CartItem

logger = logging.getLogger(__name__)


def _selection_key(selections: Optional[List[Dict[str, Any]]]):
    return tuple((s["name"], s["option"]["value"]) for s in selections or [])


def find_cart(db, user_id: str) -> Optional[Dict[str, Any]]:
    return db["cart"].find_one({"user_id": user_id})


def get_or_create_cart(db, user_id: str) -> Dict[str, Any]:
    cart = find_cart(db, user_id)
    if not cart:
        now = datetime.utcnow()
        cart = {**Cart(user_id=user_id).model_dump(), "created_at": now, "updated_at": now}
        db["cart"].insert_one(cart)
    return cart


def save_items(db, user_id: str, items: List[Dict[str, Any]]) -> Dict[str, Any]:
    db["cart"].update_one(
        {"user_id": user_id},
        {"$set": {"items": items, "updated_at": datetime.utcnow()}},
        upsert=True,
    )
    return find_cart(db, user_id)


def _load_product(db, product_id: str) -> Dict[str, Any]:
    product = db["product"].find_one({"_id": to_object_id(product_id, "product")})
    if not product:
        raise NotFoundError("Product", product_id)
    return product


def add_item(db, user_id: str, product_id: str, variations: Optional[List[Dict[str, Any]]],
             quantity: int) -> Dict[str, Any]:
    product = _load_product(db, product_id)
    selections = [{"name": v["name"], "option": {"value": v["option"]["value"]}} for v in variations or []]
    cart = get_or_create_cart(db, user_id)
    items = cart.get("items", [])

    key = _selection_key(selections)
    existing = next((it for it in items
                     if it["product_id"] == product_id and _selection_key(it.get("variations")) == key), None)
    wanted = quantity + (existing["quantity"] if existing else 0)
    check_quantity(product, selections, wanted)

    if existing:
        existing["quantity"] = wanted
    else:
        line = CartItem(id=str(ObjectId()), product_id=product_id, variations=selections, quantity=quantity)
        items.append(line.model_dump())
    return save_items(db, user_id, items)


def _find_item(cart: Optional[Dict[str, Any]], item_id: str) -> Dict[str, Any]:
    if not cart:
        raise NotFoundError("Cart")
    item = next((it for it in cart.get("items", []) if it["id"] == item_id), None)
    if not item:
        raise NotFoundError("Cart item", item_id)
    return item


def update_item(db, user_id: str, item_id: str, quantity: int) -> Dict[str, Any]:
    cart = find_cart(db, user_id)
    item = _find_item(cart, item_id)
    product = _load_product(db, item["product_id"])
    check_quantity(product, item.get("variations"), quantity)
    item["quantity"] = quantity
    return save_items(db, user_id, cart["items"])


def remove_item(db, user_id: str, item_id: str) -> Dict[str, Any]:
    cart = find_cart(db, user_id)
    _find_item(cart, item_id)
    return save_items(db, user_id, [it for it in cart["items"] if it["id"] != item_id])


def clear_cart(db, user_id: str) -> Dict[str, Any]:
    if not find_cart(db, user_id):
        raise NotFoundError("Cart")
    logger.debug("Clearing cart of user %s", user_id)
    return save_items(db, user_id, [])
