import os
import logging
from functools import lru_cache
from typing import Dict, List, Optional

from fastapi import Depends, FastAPI, Form, HTTPException, Query
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, RedirectResponse
from pymongo.database import Database

import database
from cart import add_item, get_cart, remove_item, remove_products, set_quantity
from catalog import (
    add_review,
    create_product,
    delete_product,
    find_product,
    list_reviews,
    load_products,
    review_stats,
    update_product,
)
from config import Settings, get_settings
from database import get_db
from errors import StoreError
from orders import create_order, delete_order, get_order, list_orders, update_status
from payments import RedirectGateway, build_gateways, handle_payment_failure, handle_payment_success, initiate_payment
from schemas import (
    AddToCartRequest,
    CreateOrderRequest,
    InitiatePaymentRequest,
    OrderStatusUpdate,
    Product,
    ProductUpdate,
    Review,
    SslcommerzPayment,
    UpdateCartRequest,
)
from search import SORT_KEYS, browse, facets, filter_products, search_products, summarize_categories, typeahead

settings = get_settings()
logging.basicConfig(level=settings.log_level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)

app = FastAPI(title="Storefront API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@lru_cache(maxsize=1)
def get_gateways() -> Dict[type, RedirectGateway]:
    return build_gateways(get_settings())


# Errors always leave as {success: false, message}

@app.exception_handler(StoreError)
def store_error_handler(request, exc: StoreError):
    return JSONResponse(status_code=exc.status_code, content={"success": False, "message": exc.message})


@app.exception_handler(HTTPException)
def http_error_handler(request, exc: HTTPException):
    return JSONResponse(status_code=exc.status_code, content={"success": False, "message": str(exc.detail)})


@app.exception_handler(RequestValidationError)
def request_validation_handler(request, exc: RequestValidationError):
    problems = ["{}: {}".format(".".join(str(p) for p in e["loc"][1:]), e["msg"]) for e in exc.errors()]
    return JSONResponse(status_code=422, content={"success": False, "message": "; ".join(problems)})


def ok(data=None, message: Optional[str] = None, **extra):
    body = {"success": True, "data": data}
    if message:
        body["message"] = message
    body.update(extra)
    return body


@app.get("/")
def read_root():
    return {"message": "Storefront backend is running"}


# Seed some demo products if none exist
@app.post("/seed")
def seed_products(db: Database = Depends(get_db)):
    try:
        existing = db["product"].count_documents({})
        if existing == 0:
            demo = [
                Product(id="SKI1001", name="Cream", brand="Glowlab", category="Skincare", description="Everyday moisturizing cream", price=20, discount=25, stock=40, rating=4.6, ingredients=["Shea butter", "Glycerin"]),
                Product(id="SKI1002", name="Night Cream", brand="Glowlab", category="Skincare", description="Overnight repair", price=32, stock=25, rating=4.4, skin_type="Dry"),
                Product(id="MAK1001", name="Velvet Lipstick", brand="Rouge & Co", category="Makeup", description="Matte finish, pairs with any cream blush", price=18, discount=10, stock=60, rating=4.2, shade="Ruby"),
                Product(id="HAI1001", name="Argan Hair Oil", brand="Maroc", category="Haircare", description="Lightweight nourishing oil", price=24, stock=0, rating=4.8, volume="100ml"),
                Product(id="FRA1001", name="Citrus Eau de Parfum", brand="Maison Sol", category="Fragrance", description="Fresh citrus notes", price=65, discount=15, stock=12, rating=4.5, volume="50ml"),
            ]
            for p in demo:
                create_product(db, p)
        return ok({"seeded": existing == 0, "count": int(db["product"].count_documents({}))})
    except Exception as e:
        raise HTTPException(status_code=500, detail=str(e))


# Categories are derived from products on every request

@app.get("/api/categories")
def list_categories(search: Optional[str] = None, db: Database = Depends(get_db)):
    try:
        categories = summarize_categories(load_products(db))
        if search:
            term = search.lower()
            categories = [c for c in categories if term in c["name"].lower()]
        return ok(categories)
    except Exception as e:
        logger.exception("Error fetching categories")
        raise HTTPException(status_code=500, detail=str(e))


def _check_sort(sort_by: str) -> str:
    if sort_by not in SORT_KEYS:
        raise HTTPException(status_code=400, detail=f"sortBy must be one of: {', '.join(SORT_KEYS)}")
    return sort_by


@app.get("/api/products")
def list_products(
    category: Optional[str] = None,
    q: Optional[str] = None,
    min_price: Optional[float] = Query(None, ge=0, alias="minPrice"),
    max_price: Optional[float] = Query(None, ge=0, alias="maxPrice"),
    sort_by: str = Query("relevance", alias="sortBy"),
    brand: Optional[List[str]] = Query(None),
    db: Database = Depends(get_db),
):
    _check_sort(sort_by)
    try:
        products = load_products(db)
        # facets describe the category page before brand and price narrowing
        available = facets(filter_products(products, category))
        if q:
            products = search_products(products, q, sort_by)
            products = browse(products, category, min_price, max_price, brands=brand)
        else:
            products = browse(products, category, min_price, max_price, sort_by, brands=brand)
        return ok([p.model_dump() for p in products], facets=available)
    except Exception as e:
        logger.exception("Error fetching products")
        raise HTTPException(status_code=500, detail=str(e))


@app.get("/api/products/{product_id}")
def get_product(product_id: str, db: Database = Depends(get_db)):
    product = find_product(db, product_id)
    if not product:
        raise HTTPException(status_code=404, detail="Product not found")
    return ok(product.model_dump())


@app.post("/api/products", status_code=201)
def post_product(payload: Product, db: Database = Depends(get_db)):
    product = create_product(db, payload)
    return ok(product.model_dump(), message="Product created")


@app.put("/api/products/{product_id}")
def put_product(product_id: str, payload: ProductUpdate, db: Database = Depends(get_db)):
    product = update_product(db, product_id, payload)
    if not product:
        raise HTTPException(status_code=404, detail="Product not found")
    return ok(product.model_dump(), message="Product updated")


@app.delete("/api/products/{product_id}")
def remove_product(product_id: str, db: Database = Depends(get_db)):
    if not delete_product(db, product_id):
        raise HTTPException(status_code=404, detail="Product not found")
    return ok(message="Product deleted")


# Search

@app.get("/api/search")
def search(q: str = "", sort_by: str = Query("relevance", alias="sortBy"), db: Database = Depends(get_db)):
    _check_sort(sort_by)
    results = search_products(load_products(db), q, sort_by)
    return ok([p.model_dump() for p in results], total=len(results))


@app.get("/api/search/suggest")
def suggest(q: str = "", limit: int = Query(5, ge=1, le=20), db: Database = Depends(get_db)):
    return ok([p.model_dump() for p in typeahead(load_products(db), q, limit)])


# Cart (best-effort mirror of the storefront's local cart)

@app.get("/api/cart")
def read_cart(user_id: str = Query(..., alias="userId"), db: Database = Depends(get_db)):
    return ok(get_cart(db, user_id))


@app.post("/api/cart", status_code=201)
def post_cart(payload: AddToCartRequest, db: Database = Depends(get_db)):
    add_item(db, payload.user_id, payload.product_id, payload.quantity)
    return ok(get_cart(db, payload.user_id), message="Item added to cart successfully")


@app.put("/api/cart")
def put_cart(payload: UpdateCartRequest, db: Database = Depends(get_db)):
    set_quantity(db, payload.user_id, payload.product_id, payload.quantity)
    return ok(get_cart(db, payload.user_id), message="Cart item updated successfully")


@app.delete("/api/cart")
def delete_cart_item(
    user_id: str = Query(..., alias="userId"),
    product_id: str = Query(..., alias="productId"),
    db: Database = Depends(get_db),
):
    remove_item(db, user_id, product_id)
    return ok(message="Item removed from cart successfully")


# Orders

@app.post("/api/orders", status_code=201)
def post_order(payload: CreateOrderRequest, db: Database = Depends(get_db), settings: Settings = Depends(get_settings)):
    order = create_order(db, payload.user_id, payload.items, payload.shipping_address, reserve_stock=settings.reserve_stock)
    remove_products(db, payload.user_id, [line.product_id for line in payload.items])
    return ok(order, message="Order placed successfully", orderId=order["_id"])


@app.get("/api/orders")
def get_orders(user_id: str = Query(..., alias="userId"), db: Database = Depends(get_db)):
    return ok(list_orders(db, user_id))


@app.get("/api/orders/{order_id}")
def read_order(order_id: str, db: Database = Depends(get_db)):
    return ok(get_order(db, order_id))


@app.patch("/api/orders/{order_id}")
def patch_order(order_id: str, payload: OrderStatusUpdate, db: Database = Depends(get_db)):
    return ok(update_status(db, order_id, payload.status), message="Order updated successfully")


@app.delete("/api/orders/{order_id}")
def remove_order(order_id: str, db: Database = Depends(get_db)):
    delete_order(db, order_id)
    return ok(message="Order deleted successfully")


# Payments

@app.post("/api/payments/initiate")
def post_payment(
    payload: InitiatePaymentRequest,
    db: Database = Depends(get_db),
    gateways: Dict[type, RedirectGateway] = Depends(get_gateways),
    settings: Settings = Depends(get_settings),
):
    result = initiate_payment(db, payload.order_id, payload.amount, payload.payment, gateways, settings)
    if payload.payment.method == "cod":
        return ok(result, message="Cash on delivery order confirmed")
    return ok(result, paymentUrl=result["payment_url"])


@app.post("/api/sslcommerz/success")
def sslcommerz_success(
    tran_id: Optional[str] = Form(None),
    val_id: Optional[str] = Form(None),
    value_a: Optional[str] = Form(None),
    db: Database = Depends(get_db),
    gateways: Dict[type, RedirectGateway] = Depends(get_gateways),
    settings: Settings = Depends(get_settings),
):
    url = handle_payment_success(db, gateways[SslcommerzPayment], settings, tran_id, value_a, val_id)
    return RedirectResponse(url, status_code=303)


@app.post("/api/sslcommerz/fail")
def sslcommerz_fail(
    tran_id: Optional[str] = Form(None),
    status: Optional[str] = Form(None),
    db: Database = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    return RedirectResponse(handle_payment_failure(db, settings, tran_id, status or "FAILED"), status_code=303)


@app.post("/api/sslcommerz/cancel")
def sslcommerz_cancel(
    tran_id: Optional[str] = Form(None),
    db: Database = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    return RedirectResponse(handle_payment_failure(db, settings, tran_id, "CANCELLED"), status_code=303)


# Reviews

@app.get("/api/reviews")
def get_reviews(product_id: str = Query(..., alias="productId"), db: Database = Depends(get_db)):
    return ok(list_reviews(db, product_id))


@app.get("/api/reviews/stats")
def get_review_stats(product_id: str = Query(..., alias="productId"), db: Database = Depends(get_db)):
    return ok(review_stats(db, product_id))


@app.post("/api/reviews", status_code=201)
def post_review(payload: Review, db: Database = Depends(get_db)):
    if not find_product(db, payload.product_id):
        raise HTTPException(status_code=404, detail="Product not found")
    rating = add_review(db, payload)
    return ok({"product_id": payload.product_id, "rating": rating}, message="Review added")


@app.get("/test")
def test_database():
    db = database.db
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": "✅ Set" if os.getenv("DATABASE_URL") else "❌ Not Set",
        "database_name": "✅ Set" if os.getenv("DATABASE_NAME") else "❌ Not Set",
        "connection_status": "Not Connected",
        "collections": []
    }
    try:
        if db is not None:
            response["database"] = "✅ Available"
            response["connection_status"] = "Connected"
            try:
                collections = db.list_collection_names()
                response["collections"] = collections[:10]
                response["database"] = "✅ Connected & Working"
            except Exception as e:
                response["database"] = f"⚠️  Connected but Error: {str(e)[:50]}"
        else:
            response["database"] = "⚠️  Available but not initialized"
    except Exception as e:
        response["database"] = f"❌ Error: {str(e)[:50]}"
    return response


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
