"""Unit price resolution for catalog products.

Products are the raw Mongo documents. Discount state and current price are
derived here at read time and never stored on the product.
"""
from datetime import datetime
from typing import Any, Dict, List, Optional


def is_discount_active(product: Dict[str, Any], now: Optional[datetime] = None) -> bool:
    discount = product.get("discount")
    if not discount:
        return False
    now = now or datetime.utcnow()
    return discount["start_date"] <= now <= discount["end_date"]


def current_price(product: Dict[str, Any], now: Optional[datetime] = None) -> float:
    """Base price with the active discount applied (before variation modifiers)."""
    base = float(product.get("base_price", 0.0))
    if is_discount_active(product, now):
        discount = product["discount"]
        if discount["type"] == "percentage":
            return max(base * (1 - discount["value"] / 100), 0.0)
        if discount["type"] == "fixed":
            return max(base - discount["value"], 0.0)
    return base


def find_option(product: Dict[str, Any], name: str, value: str) -> Optional[Dict[str, Any]]:
    for variation in product.get("variations") or []:
        if variation.get("name") != name:
            continue
        for option in variation.get("options") or []:
            if option.get("value") == value:
                return option
    return None


def resolve_variations(product: Dict[str, Any], selections: Optional[List[Dict[str, Any]]]) -> List[Dict[str, Any]]:
    """Snapshot of the selections with each matched option's price_modifier."""
    resolved = []
    for selection in selections or []:
        value = selection["option"]["value"]
        option = find_option(product, selection["name"], value)
        modifier = float(option.get("price_modifier") or 0.0) if option else 0.0
        resolved.append({"name": selection["name"], "option": {"value": value, "price_modifier": modifier}})
    return resolved


def variation_modifiers(product: Dict[str, Any], selections: Optional[List[Dict[str, Any]]]) -> float:
    # unmatched selections add nothing
    return sum(s["option"]["price_modifier"] for s in resolve_variations(product, selections))


def unit_price(product: Dict[str, Any], selections: Optional[List[Dict[str, Any]]] = None,
               now: Optional[datetime] = None) -> float:
    price = current_price(product, now) + variation_modifiers(product, selections)
    return round(max(price, 0.0), 2)


def with_pricing(product: Dict[str, Any], now: Optional[datetime] = None) -> Dict[str, Any]:
    """Copy of the product carrying the derived pricing fields for responses."""
    out = dict(product)
    out["is_discount_active"] = is_discount_active(product, now)
    out["current_price"] = round(current_price(product, now), 2)
    return out
