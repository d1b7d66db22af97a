"""Product lookups and writes shared by the routes, carts and orders."""
import logging
import random
from typing import List, Optional

from pymongo import DESCENDING
from pymongo.database import Database

from database import create_document, get_documents, now, object_id_or_none, to_str_id
from schemas import Product, ProductUpdate, Review

logger = logging.getLogger(__name__)


def find_product_doc(db: Database, product_id: str) -> Optional[dict]:
    """Match by ObjectId first, then by the public `id` field."""
    oid = object_id_or_none(product_id)
    if oid is not None:
        doc = db["product"].find_one({"_id": oid})
        if doc:
            return doc
    return db["product"].find_one({"id": product_id})


def as_product(doc: dict) -> Product:
    return Product.model_validate(to_str_id(doc))


def find_product(db: Database, product_id: str) -> Optional[Product]:
    doc = find_product_doc(db, product_id)
    return as_product(doc) if doc else None


def load_products(db: Database) -> List[Product]:
    products = []
    for doc in get_documents(db, "product"):
        try:
            products.append(as_product(doc))
        except ValueError:
            logger.warning("Skipping malformed product %s", doc.get("_id"))
    return products


def generate_product_id(category: str) -> str:
    prefix = (category or "PRD")[:3].upper()
    return f"{prefix}{random.randint(1000, 9999)}"


def create_product(db: Database, product: Product) -> Product:
    if not product.id:
        product = product.model_copy(update={"id": generate_product_id(product.category)})
    create_document(db, "product", product)
    return product


def update_product(db: Database, product_id: str, changes: ProductUpdate) -> Optional[Product]:
    doc = find_product_doc(db, product_id)
    if not doc:
        return None
    merged = as_product(doc).model_dump()
    merged.update(changes.model_dump(exclude_unset=True))
    # re-validating recomputes final_price from the merged price and discount
    product = Product.model_validate(merged)
    db["product"].update_one(
        {"_id": doc["_id"]},
        {"$set": {**product.model_dump(), "updated_at": now()}},
    )
    return product


def delete_product(db: Database, product_id: str) -> bool:
    doc = find_product_doc(db, product_id)
    if not doc:
        return False
    db["product"].delete_one({"_id": doc["_id"]})
    return True


def add_review(db: Database, review: Review) -> float:
    """Store a review and return the product's recomputed rating."""
    create_document(db, "review", review)
    return update_product_rating(db, review.product_id)


def list_reviews(db: Database, product_id: str) -> List[dict]:
    cursor = db["review"].find({"product_id": product_id}).sort("created_at", DESCENDING)
    return [to_str_id(r) for r in cursor]


def update_product_rating(db: Database, product_id: str) -> float:
    reviews = list(db["review"].find({"product_id": product_id}))
    rating = 0.0
    if reviews:
        rating = sum(float(r.get("rating", 0)) for r in reviews) / len(reviews)
    rating = round(rating, 1)
    doc = find_product_doc(db, product_id)
    if doc:
        db["product"].update_one({"_id": doc["_id"]}, {"$set": {"rating": rating, "updated_at": now()}})
    logger.info("Updated rating for product %s to %.1f", product_id, rating)
    return rating


def review_stats(db: Database, product_id: str) -> dict:
    """Average rating, review count and how many reviews gave each star."""
    distribution = {star: 0 for star in range(5, 0, -1)}
    ratings = [float(r.get("rating", 0)) for r in db["review"].find({"product_id": product_id})]
    for rating in ratings:
        star = int(rating)
        if star in distribution:
            distribution[star] += 1
    average = round(sum(ratings) / len(ratings), 1) if ratings else 0
    return {"averageRating": average, "totalReviews": len(ratings), "ratingDistribution": distribution}
