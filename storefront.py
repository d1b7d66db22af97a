"""
Storefront client side

`LocalCart` is the cart the shopper is actually using: a JSON file on disk
that every mutation reads, changes and writes back synchronously.
`CartMirror` copies each change to the server cart API in the background
and only logs when that fails; nothing is rolled back and the server copy
is never read back into the local cart.
"""
import json
import logging
import os
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import datetime, timezone
from typing import Dict, List, Mapping, Optional

import requests

from errors import NetworkError, ValidationError
from schemas import Product

logger = logging.getLogger(__name__)


def _stamp() -> str:
    return datetime.now(timezone.utc).isoformat()


class CartMirror:
    """Fire-and-forget sync of local cart changes to `/api/cart`."""

    def __init__(self, base_url: str, user_id: str, session: Optional[requests.Session] = None, timeout: float = 10.0):
        self.base_url = base_url.rstrip("/")
        self.user_id = user_id
        self.session = session or requests.Session()
        self.timeout = timeout
        # one worker keeps the syncs in mutation order
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="cart-sync")

    def _send(self, method: str, **kwargs) -> None:
        url = f"{self.base_url}/api/cart"
        try:
            response = self.session.request(method, url, timeout=self.timeout, **kwargs)
            response.raise_for_status()
        except requests.RequestException as e:
            logger.warning("Cart sync %s failed for user %s: %s", method, self.user_id, e)

    def quantity_changed(self, product_id: str, quantity: int) -> Future:
        body = {"user_id": self.user_id, "product_id": product_id, "quantity": quantity}
        return self._executor.submit(self._send, "PUT", json=body)

    def item_added(self, product_id: str, quantity: int) -> Future:
        body = {"user_id": self.user_id, "product_id": product_id, "quantity": quantity}
        return self._executor.submit(self._send, "POST", json=body)

    def item_removed(self, product_id: str) -> Future:
        params = {"userId": self.user_id, "productId": product_id}
        return self._executor.submit(self._send, "DELETE", params=params)

    def close(self) -> None:
        self._executor.shutdown(wait=True)


class LocalCart:
    """
    Durable cart keyed by product id.

    Entries look like `{"quantity": 2, "added_at": ..., "updated_at": ...}`.
    Quantities stay >= 1; bringing one to 0 deletes the entry.
    """

    def __init__(self, path: str, mirror: Optional[CartMirror] = None):
        self.path = path
        self.mirror = mirror
        self._lock = threading.Lock()

    def _read(self) -> Dict[str, dict]:
        if not os.path.exists(self.path):
            return {}
        with open(self.path, "r", encoding="utf-8") as fh:
            try:
                data = json.load(fh)
            except ValueError:
                logger.warning("Cart file %s is corrupt, starting empty", self.path)
                return {}
        return data if isinstance(data, dict) else {}

    def _write(self, entries: Dict[str, dict]) -> None:
        tmp = f"{self.path}.tmp"
        with open(tmp, "w", encoding="utf-8") as fh:
            json.dump(entries, fh)
        os.replace(tmp, self.path)

    def items(self) -> Dict[str, dict]:
        with self._lock:
            return self._read()

    def add(self, product_id: str, quantity: int = 1) -> dict:
        if quantity < 1:
            raise ValidationError("Quantity must be at least 1")
        with self._lock:
            entries = self._read()
            entry = entries.get(product_id)
            stamp = _stamp()
            if entry:
                entry["quantity"] += quantity
                entry["updated_at"] = stamp
            else:
                entry = {"quantity": quantity, "added_at": stamp, "updated_at": stamp}
                entries[product_id] = entry
            self._write(entries)
        if self.mirror:
            self.mirror.item_added(product_id, quantity)
        return entry

    def set_quantity(self, product_id: str, quantity: int) -> Optional[dict]:
        if quantity <= 0:
            self.remove(product_id)
            return None
        with self._lock:
            entries = self._read()
            entry = entries.get(product_id)
            if entry is None:
                raise KeyError(product_id)
            entry["quantity"] = quantity
            entry["updated_at"] = _stamp()
            self._write(entries)
        if self.mirror:
            self.mirror.quantity_changed(product_id, quantity)
        return entry

    def remove(self, product_id: str) -> None:
        with self._lock:
            entries = self._read()
            if entries.pop(product_id, None) is None:
                return
            self._write(entries)
        if self.mirror:
            self.mirror.item_removed(product_id)

    def clear(self) -> None:
        with self._lock:
            self._write({})

    def total(self, products: Mapping[str, Product]) -> float:
        total = 0.0
        for product_id, entry in self.items().items():
            product = products.get(product_id)
            if product is None:
                continue
            total += entry["quantity"] * product.price_used
        return round(total, 2)

    def order_lines(self) -> List[dict]:
        return [{"product_id": pid, "quantity": e["quantity"]} for pid, e in self.items().items()]


class StorefrontClient:
    """Read side of the storefront: fetches catalog data from the API."""

    def __init__(self, base_url: str, session: Optional[requests.Session] = None, timeout: float = 10.0):
        self.base_url = base_url.rstrip("/")
        self.session = session or requests.Session()
        self.timeout = timeout

    def _get(self, path: str, params: Optional[dict] = None):
        try:
            response = self.session.get(f"{self.base_url}{path}", params=params, timeout=self.timeout)
            response.raise_for_status()
            body = response.json()
        except (requests.RequestException, ValueError) as e:
            logger.error("GET %s failed: %s", path, e)
            raise NetworkError("Could not load data. Please check your connection and try again.")
        if not body.get("success"):
            raise NetworkError(body.get("message") or "Request failed. Please try again.")
        return body.get("data")

    def fetch_products(self) -> List[Product]:
        return [Product.model_validate(p) for p in self._get("/api/products") or []]

    def fetch_categories(self) -> List[dict]:
        return self._get("/api/categories") or []
