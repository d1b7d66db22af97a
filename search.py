"""
Catalog search, filtering and sorting

Everything here works on an in-memory list of products and is recomputed
from scratch on each call. Search filters first (substring match on any
field) and only then scores the survivors for ordering.
"""
import locale
import logging
import threading
from collections import OrderedDict
from typing import Callable, Dict, Iterable, List, Optional

from schemas import Product

logger = logging.getLogger(__name__)

SORT_KEYS = ("relevance", "price-low", "price-high", "rating", "name")

# (exact, prefix, substring) points per field
NAME_TIERS = (100, 80, 60)
BRAND_TIERS = (50, 40, 30)
CATEGORY_TIERS = (30, 20, 10)
DESCRIPTION_POINTS = 5


def _norm(value: Optional[str]) -> str:
    return (value or "").lower()


def _tier_points(text: str, term: str, tiers) -> int:
    exact, prefix, substring = tiers
    if text == term:
        return exact
    if text.startswith(term):
        return prefix
    if term in text:
        return substring
    return 0


def matches(product: Product, query: str) -> bool:
    term = _norm(query)
    return any(
        term in _norm(field)
        for field in (product.name, product.brand, product.category, product.description)
    )


def score(product: Product, query: str) -> int:
    term = _norm(query)
    points = _tier_points(_norm(product.name), term, NAME_TIERS)
    points += _tier_points(_norm(product.brand), term, BRAND_TIERS)
    points += _tier_points(_norm(product.category), term, CATEGORY_TIERS)
    if term in _norm(product.description):
        points += DESCRIPTION_POINTS
    return points


def _sort_price(product: Product) -> float:
    return product.final_price


def _name_key(product: Product) -> str:
    return locale.strxfrm(_norm(product.name))


def sort_products(products: Iterable[Product], sort_by: str = "relevance") -> List[Product]:
    """Order products by a sort key. `relevance` keeps the incoming order."""
    items = list(products)
    if sort_by == "relevance":
        return items
    if sort_by == "price-low":
        return sorted(items, key=_sort_price)
    if sort_by == "price-high":
        return sorted(items, key=_sort_price, reverse=True)
    if sort_by == "rating":
        return sorted(items, key=lambda p: p.rating, reverse=True)
    if sort_by == "name":
        return sorted(items, key=_name_key)
    raise ValueError(f"Unknown sort key: {sort_by}")


def search_products(products: Iterable[Product], query: str, sort_by: str = "relevance") -> List[Product]:
    query = (query or "").strip()
    if not query:
        return []
    found = [p for p in products if matches(p, query)]
    if sort_by == "relevance":
        # sorted() is stable, equal scores keep list order
        return sorted(found, key=lambda p: score(p, query), reverse=True)
    return sort_products(found, sort_by)


def filter_products(
    products: Iterable[Product],
    category: Optional[str] = None,
    min_price: Optional[float] = None,
    max_price: Optional[float] = None,
    brands: Optional[Iterable[str]] = None,
) -> List[Product]:
    wanted = _norm(category) if category else None
    wanted_brands = {_norm(b) for b in brands if b} if brands else None
    result = []
    for p in products:
        if wanted is not None and _norm(p.category) != wanted:
            continue
        if wanted_brands and _norm(p.brand) not in wanted_brands:
            continue
        price = p.price_used
        if min_price is not None and price < min_price:
            continue
        if max_price is not None and price > max_price:
            continue
        result.append(p)
    return result


def browse(
    products: Iterable[Product],
    category: Optional[str] = None,
    min_price: Optional[float] = None,
    max_price: Optional[float] = None,
    sort_by: str = "relevance",
    brands: Optional[Iterable[str]] = None,
) -> List[Product]:
    return sort_products(filter_products(products, category, min_price, max_price, brands), sort_by)


def facets(products: Iterable[Product]) -> Dict:
    """Brands (first-seen order) and the price_used range on offer, for listing filters."""
    brands: List[str] = []
    prices = []
    for p in products:
        if p.brand and p.brand not in brands:
            brands.append(p.brand)
        prices.append(p.price_used)
    price_range = {"min": min(prices), "max": max(prices)} if prices else {"min": 0, "max": 0}
    return {"brands": brands, "price_range": price_range}


def typeahead(products: Iterable[Product], query: str, limit: int = 5) -> List[Product]:
    """First `limit` matches in list order for the navigation dropdown."""
    term = _norm(query).strip()
    if not term:
        return []
    hits = []
    for p in products:
        if any(term in f for f in (_norm(p.name), _norm(p.brand), _norm(p.category))):
            hits.append(p)
            if len(hits) >= limit:
                break
    return hits


def summarize_categories(products: Iterable[Product]) -> List[Dict]:
    groups: "OrderedDict[str, Dict]" = OrderedDict()
    for p in products:
        if not isinstance(p.category, str) or not p.category:
            continue
        price = p.final_price or p.price or 0
        group = groups.get(p.category)
        if group is None:
            group = {
                "name": p.category,
                "count": 0,
                "total_price": 0.0,
                "image_url": None,
                "sample_products": [],
                "brands": [],
            }
            groups[p.category] = group
        group["count"] += 1
        group["total_price"] += price
        if not group["image_url"] and p.image_url:
            group["image_url"] = p.image_url
        if p.name and p.name not in group["sample_products"]:
            group["sample_products"].append(p.name)
        if p.brand and p.brand not in group["brands"]:
            group["brands"].append(p.brand)

    summaries = []
    for group in groups.values():
        total = group.pop("total_price")
        group["average_price"] = round(total / group["count"], 2) if group["count"] else 0
        group["brands"] = group["brands"][:3]
        summaries.append(group)
    return summaries


class Debouncer:
    """
    Run `fn` once the caller has been quiet for `delay` seconds.

    Each call() restarts the timer with the latest arguments, so a burst of
    keystrokes triggers a single search.
    """

    def __init__(self, fn: Callable, delay: float = 0.3):
        self.fn = fn
        self.delay = delay
        self._timer: Optional[threading.Timer] = None
        self._lock = threading.Lock()

    def call(self, *args, **kwargs) -> None:
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
            self._timer = threading.Timer(self.delay, self._fire, args=args, kwargs=kwargs)
            self._timer.daemon = True
            self._timer.start()

    def _fire(self, *args, **kwargs) -> None:
        with self._lock:
            self._timer = None
        try:
            self.fn(*args, **kwargs)
        except Exception:
            logger.exception("Debounced call failed")

    def cancel(self) -> None:
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
