"""
Order creation and status transitions

Orders move through:

    created --> pending_payment --> paid
       |              |
       |              +--> payment_failed --> pending_payment (retry)
       +--> cash_on_delivery_confirmed

Every status write is a conditional update on the current status, so a
repeated gateway callback can't apply the same transition twice.
"""
import logging
from collections import OrderedDict
from typing import Callable, List, Optional, Sequence

from pymongo import DESCENDING, ReturnDocument
from pymongo.database import Database

from catalog import find_product_doc, as_product
from database import create_document, now, object_id_or_none, to_str_id
from errors import InvalidTransitionError, OrderNotFoundError, OrderValidationError, ValidationError
from schemas import Order, OrderItem, OrderLine, ShippingAddress

logger = logging.getLogger(__name__)

CREATED = "created"
PENDING_PAYMENT = "pending_payment"
PAID = "paid"
PAYMENT_FAILED = "payment_failed"
COD_CONFIRMED = "cash_on_delivery_confirmed"

TRANSITIONS = {
    CREATED: {PENDING_PAYMENT, COD_CONFIRMED},
    PENDING_PAYMENT: {PENDING_PAYMENT, PAID, PAYMENT_FAILED},
    PAYMENT_FAILED: {PENDING_PAYMENT},
    PAID: set(),
    COD_CONFIRMED: set(),
}


def sources_for(target: str) -> List[str]:
    return [state for state, targets in TRANSITIONS.items() if target in targets]


def require_shipping(address: Optional[ShippingAddress]) -> ShippingAddress:
    if address is None:
        raise ValidationError("Shipping information is required")
    missing = address.missing_fields()
    if missing:
        raise ValidationError("Please fill in all required fields: " + ", ".join(missing))
    return address


def create_order(
    db: Database,
    user_id: str,
    items: Sequence[OrderLine],
    shipping_address: Optional[ShippingAddress] = None,
    reserve_stock: bool = False,
) -> dict:
    if not user_id:
        raise OrderValidationError("User ID is required")
    if not items:
        raise OrderValidationError("Cannot create an order from an empty cart")
    if shipping_address is not None:
        require_shipping(shipping_address)

    lines: List[OrderItem] = []
    resolved = []
    for product_id, quantity in merge_lines(items).items():
        doc = find_product_doc(db, product_id)
        if not doc:
            raise OrderValidationError(f"Product {product_id} not found")
        product = as_product(doc)
        if product.stock <= 0:
            raise OrderValidationError(f"{product.name} is out of stock")
        if product.stock < quantity:
            raise OrderValidationError(f"Not enough stock for {product.name}")
        lines.append(OrderItem(
            product_id=product_id,
            name=product.name,
            quantity=quantity,
            price=product.price_used,
            image_url=product.image_url,
        ))
        resolved.append((doc, product.name, quantity))

    if reserve_stock:
        _reserve(db, resolved)

    total = round(sum(i.price * i.quantity for i in lines), 2)
    order = Order(user_id=user_id, items=lines, total_price=total, shipping_address=shipping_address)
    order_id = create_document(db, "order", order)
    logger.info("Created order %s for user %s, total %.2f", order_id, user_id, total)
    return get_order(db, order_id)


def merge_lines(items: Sequence[OrderLine]) -> "OrderedDict[str, int]":
    """Sum quantities of lines naming the same product, keeping first-seen order."""
    merged: "OrderedDict[str, int]" = OrderedDict()
    for line in items:
        merged[line.product_id] = merged.get(line.product_id, 0) + line.quantity
    return merged


def _reserve(db: Database, resolved) -> None:
    # each decrement only applies while enough stock is left; a miss undoes the earlier ones
    taken = []
    for doc, name, qty in resolved:
        result = db["product"].update_one(
            {"_id": doc["_id"], "stock": {"$gte": qty}},
            {"$inc": {"stock": -qty}},
        )
        if result.matched_count == 0:
            for done_id, done_qty in taken:
                db["product"].update_one({"_id": done_id}, {"$inc": {"stock": done_qty}})
            raise OrderValidationError(f"Not enough stock for {name}")
        taken.append((doc["_id"], qty))


def _by_object_id(db: Database, reference: str) -> Optional[dict]:
    oid = object_id_or_none(reference)
    if oid is None:
        return None
    return db["order"].find_one({"_id": oid})


def _by_string_id(db: Database, reference: str) -> Optional[dict]:
    return db["order"].find_one({"id": reference})


def _by_transaction_id(db: Database, reference: str) -> Optional[dict]:
    return db["order"].find_one({"transaction_id": reference})


LOOKUP_STRATEGIES: Sequence[Callable[[Database, str], Optional[dict]]] = (_by_object_id, _by_string_id)


def find_order(db: Database, reference: str, strategies=LOOKUP_STRATEGIES) -> Optional[dict]:
    """Try each lookup strategy in order and return the first hit."""
    if not reference:
        return None
    for strategy in strategies:
        doc = strategy(db, reference)
        if doc:
            return doc
    return None


def find_order_by_transaction(db: Database, tran_id: str) -> Optional[dict]:
    return find_order(db, tran_id, strategies=(_by_transaction_id,))


def get_order(db: Database, order_id: str) -> dict:
    doc = find_order(db, order_id)
    if not doc:
        raise OrderNotFoundError("Order not found")
    return to_str_id(doc)


def list_orders(db: Database, user_id: str) -> List[dict]:
    cursor = db["order"].find({"user_id": user_id}).sort("created_at", DESCENDING)
    return [to_str_id(o) for o in cursor]


def _transition(db: Database, order: dict, target: str, changes: dict) -> Optional[dict]:
    """Apply `changes` only while the order is still in a state that may move to `target`."""
    updated = db["order"].find_one_and_update(
        {"_id": order["_id"], "status": {"$in": sources_for(target)}},
        {"$set": {**changes, "status": target, "updated_at": now()}},
        return_document=ReturnDocument.AFTER,
    )
    return updated


def _raw(db: Database, order: dict) -> dict:
    # routes hand around string ids; status writes need the stored _id
    doc = find_order(db, str(order["_id"]))
    if not doc:
        raise OrderNotFoundError("Order not found")
    return doc


def mark_pending_payment(db: Database, order: dict, payment_info: dict, shipping_address: Optional[dict] = None) -> dict:
    changes = {
        "payment_method": payment_info.get("method"),
        "transaction_id": payment_info.get("tran_id"),
        "payment_info": payment_info,
        "payment_status": "pending",
    }
    if shipping_address is not None:
        changes["shipping_address"] = shipping_address
    doc = _raw(db, order)
    updated = _transition(db, doc, PENDING_PAYMENT, changes)
    if updated is None:
        raise InvalidTransitionError(f"Order is {doc.get('status')}, can't start a payment")
    return to_str_id(updated)


def confirm_cash_on_delivery(db: Database, order: dict, payment_info: dict, shipping_address: Optional[dict] = None) -> dict:
    changes = {"payment_method": "cod", "payment_info": payment_info, "payment_status": "pending"}
    if shipping_address is not None:
        changes["shipping_address"] = shipping_address
    doc = _raw(db, order)
    updated = _transition(db, doc, COD_CONFIRMED, changes)
    if updated is None:
        raise InvalidTransitionError(f"Order is {doc.get('status')}, can't switch to cash on delivery")
    return to_str_id(updated)


def mark_paid(db: Database, order: dict, tran_id: str, validation_data: dict) -> dict:
    """Idempotent: an order that is already paid is returned untouched."""
    doc = _raw(db, order)
    if doc.get("status") == PAID:
        logger.info("Order %s already paid, ignoring repeat callback", doc["_id"])
        return to_str_id(doc)
    payment_info = dict(doc.get("payment_info") or {})
    payment_info.update({
        "tran_id": tran_id,
        "status": "COMPLETED",
        "paid_at": now(),
        "validation_data": validation_data,
    })
    updated = _transition(db, doc, PAID, {"payment_status": "completed", "payment_info": payment_info})
    if updated is None:
        current = _raw(db, order)
        if current.get("status") == PAID:
            return to_str_id(current)
        raise InvalidTransitionError(f"Order is {current.get('status')}, can't mark it paid")
    logger.info("Order %s marked paid (tran_id=%s)", doc["_id"], tran_id)
    return to_str_id(updated)


def mark_payment_failed(db: Database, order: dict, tran_id: Optional[str], gateway_status: Optional[str]) -> Optional[dict]:
    doc = _raw(db, order)
    payment_info = dict(doc.get("payment_info") or {})
    payment_info.update({"tran_id": tran_id, "status": gateway_status or "FAILED", "failed_at": now()})
    updated = _transition(db, doc, PAYMENT_FAILED, {"payment_status": "failed", "payment_info": payment_info})
    if updated is None:
        logger.info("Order %s is %s, not marking it failed", doc["_id"], doc.get("status"))
        return None
    return to_str_id(updated)


# payment_status implied by an admin-set status
_PAYMENT_STATUS_FOR = {PAID: "completed", PAYMENT_FAILED: "failed"}


def update_status(db: Database, order_id: str, status: str) -> dict:
    """Admin status change, held to the same transition table as payments."""
    if status not in TRANSITIONS:
        raise ValidationError(f"Unknown order status: {status}")
    doc = _raw(db, {"_id": order_id})
    changes = {}
    if status in _PAYMENT_STATUS_FOR:
        changes["payment_status"] = _PAYMENT_STATUS_FOR[status]
    updated = _transition(db, doc, status, changes)
    if updated is None:
        raise InvalidTransitionError(f"Order is {doc.get('status')}, can't move to {status}")
    logger.info("Order %s moved from %s to %s by admin", doc["_id"], doc.get("status"), status)
    return to_str_id(updated)


def delete_order(db: Database, order_id: str) -> None:
    doc = _raw(db, {"_id": order_id})
    db["order"].delete_one({"_id": doc["_id"]})
    logger.info("Deleted order %s", doc["_id"])
