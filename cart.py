"""
Server-side cart

One document per user in the "cart" collection. This copy is a mirror of
the browser's cart and is not authoritative: the storefront keeps its own
local cart and syncs here best effort.
"""
import logging
from typing import Dict, Iterable, List, Mapping, Optional

from pymongo.database import Database

from catalog import find_product
from database import now, to_str_id
from errors import CartItemNotFoundError, ProductNotFoundError, ValidationError
from schemas import Cart, Product

logger = logging.getLogger(__name__)


def cart_total(items: Iterable[Mapping], products: Mapping[str, Optional[Product]]) -> float:
    """Sum quantity x price for every line whose product still resolves."""
    total = 0.0
    for item in items:
        product = products.get(item["product_id"])
        if product is None:
            continue
        total += int(item["quantity"]) * product.price_used
    return round(total, 2)


def _load(db: Database, user_id: str) -> dict:
    return db["cart"].find_one({"user_id": user_id}) or {"user_id": user_id, "items": []}


def _save(db: Database, cart: dict) -> None:
    # stored lines always pass CartItem validation, so quantity stays >= 1
    checked = Cart(user_id=cart["user_id"], items=cart["items"])
    db["cart"].update_one(
        {"user_id": checked.user_id},
        {"$set": {"items": checked.model_dump()["items"], "updated_at": now()}},
        upsert=True,
    )


def get_cart(db: Database, user_id: str) -> dict:
    cart = _load(db, user_id)
    products: Dict[str, Optional[Product]] = {}
    lines = []
    for item in cart.get("items", []):
        product = find_product(db, item["product_id"])
        products[item["product_id"]] = product
        lines.append({
            "product_id": item["product_id"],
            "quantity": item["quantity"],
            "added_at": item.get("added_at"),
            "updated_at": item.get("updated_at"),
            "product": product.model_dump() if product else None,
            "subtotal": round(item["quantity"] * product.price_used, 2) if product else 0,
        })
    return {"user_id": user_id, "items": lines, "total": cart_total(cart.get("items", []), products)}


def _require_stock(db: Database, product_id: str, quantity: int) -> Product:
    product = find_product(db, product_id)
    if product is None:
        raise ProductNotFoundError("Product not found")
    if product.stock < quantity:
        raise ValidationError("Not enough stock available")
    return product


def add_item(db: Database, user_id: str, product_id: str, quantity: int = 1) -> dict:
    if quantity < 1:
        raise ValidationError("Quantity must be at least 1")
    cart = _load(db, user_id)
    stamp = now()
    for item in cart["items"]:
        if item["product_id"] == product_id:
            new_quantity = item["quantity"] + quantity
            _require_stock(db, product_id, new_quantity)
            item["quantity"] = new_quantity
            item["updated_at"] = stamp
            break
    else:
        _require_stock(db, product_id, quantity)
        cart["items"].append({"product_id": product_id, "quantity": quantity, "added_at": stamp, "updated_at": stamp})
    _save(db, cart)
    return to_str_id(cart)


def set_quantity(db: Database, user_id: str, product_id: str, quantity: int) -> dict:
    """Set a line's quantity; zero removes the line."""
    if quantity <= 0:
        remove_item(db, user_id, product_id)
        return to_str_id(_load(db, user_id))
    cart = _load(db, user_id)
    for item in cart["items"]:
        if item["product_id"] == product_id:
            _require_stock(db, product_id, quantity)
            item["quantity"] = quantity
            item["updated_at"] = now()
            _save(db, cart)
            return to_str_id(cart)
    raise CartItemNotFoundError("Cart item not found")


def remove_item(db: Database, user_id: str, product_id: str) -> None:
    cart = _load(db, user_id)
    remaining = [i for i in cart["items"] if i["product_id"] != product_id]
    if len(remaining) == len(cart["items"]):
        raise CartItemNotFoundError("Cart item not found")
    cart["items"] = remaining
    _save(db, cart)


def remove_products(db: Database, user_id: str, product_ids: List[str]) -> None:
    """Drop ordered products from the user's cart after checkout."""
    db["cart"].update_one(
        {"user_id": user_id},
        {"$pull": {"items": {"product_id": {"$in": list(product_ids)}}}},
    )
    logger.info("Removed %d ordered product(s) from cart of user %s", len(product_ids), user_id)
