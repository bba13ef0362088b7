import threading
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from carts import CartService
from config import Settings, get_settings
from coupons import CouponService, calculate_discount
from database import get_store
from errors import BusinessValidationError, NotFoundError, StoreError
from logger import get_logger
from orders import OrderService
from products import ProductService
from reports import StatisticsService
from reviews import ReviewService
from schemas import Address, Coupon, OrderDraft, Product, Review, User
from users import UserService

logger = get_logger("api")

app = FastAPI(title="Shop Data API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


class Services:
    """Every service bound to one store instance."""

    def __init__(self, store, settings: Settings):
        self.store = store
        self.products = ProductService(store)
        self.users = UserService(store)
        self.orders = OrderService(store, enforce_transitions=settings.enforce_order_transitions)
        self.carts = CartService(store)
        self.reviews = ReviewService(store)
        self.coupons = CouponService(store)
        self.stats = StatisticsService(store, low_stock_threshold=settings.low_stock_threshold)


_services: Optional[Services] = None
_services_lock = threading.Lock()


def get_services() -> Services:
    """One Services bundle (and one MongoClient) per process."""
    global _services
    if _services is None:
        with _services_lock:
            if _services is None:
                settings = get_settings()
                _services = Services(get_store(settings), settings)
    return _services


# Error mapping

@app.exception_handler(NotFoundError)
async def handle_not_found(request: Request, exc: NotFoundError):
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(BusinessValidationError)
async def handle_validation(request: Request, exc: BusinessValidationError):
    return JSONResponse(status_code=400, content={"detail": str(exc)})


@app.exception_handler(StoreError)
async def handle_store_error(request: Request, exc: StoreError):
    logger.error("Store error on %s: %s", request.url.path, exc)
    return JSONResponse(status_code=502, content={"detail": "Document store error"})


# Utilities

def dump(model) -> Optional[Dict[str, Any]]:
    if model is None:
        return None
    return model.model_dump(mode="json")


def resume_from(svc: Services, collection: str, cursor: Optional[str]) -> Optional[Dict[str, Any]]:
    """Turn a cursor id from a previous page into the snapshot the store resumes after."""
    if not cursor:
        return None
    snapshot = svc.store.get(collection, cursor)
    if snapshot is None:
        raise HTTPException(status_code=400, detail="Invalid cursor")
    return snapshot


def page_out(page, key: str) -> Dict[str, Any]:
    return {
        key: [dump(i) for i in page.items],
        "next_cursor": page.last_cursor["id"] if page.last_cursor else None,
        "has_more": page.has_more,
    }


# Request models

class StockUpdate(BaseModel):
    quantity: int = Field(..., ge=0)
    operation: str = Field("set", description="increment|decrement|set")


class CartItemRequest(BaseModel):
    user_id: str
    product_id: str
    quantity: int = 1


class StatusUpdate(BaseModel):
    status: str
    tracking_number: Optional[str] = None


class CouponCheck(BaseModel):
    code: str
    total_amount: float = Field(..., ge=0)


# Routes

@app.get("/")
def read_root():
    return {"message": "Shop Data API running"}


# Users
@app.post("/users")
def register_user(user: User, svc: Services = Depends(get_services)):
    return {"id": svc.users.register_user(user)}


@app.get("/users/by-email")
def get_user_by_email(email: str, svc: Services = Depends(get_services)):
    user = svc.users.get_by_email(email)
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    return dump(user)


@app.get("/users/{user_id}")
def get_user(user_id: str, svc: Services = Depends(get_services)):
    user = svc.users.get_user(user_id)
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    return dump(user)


@app.post("/users/{user_id}/addresses")
def add_address(user_id: str, address: Address, svc: Services = Depends(get_services)):
    svc.users.add_address(user_id, address)
    return {"ok": True}


@app.get("/users/{user_id}/orders")
def list_user_orders(user_id: str, svc: Services = Depends(get_services)):
    return [dump(o) for o in svc.orders.get_user_orders(user_id)]


# Products
@app.post("/products")
def create_product(product: Product, svc: Services = Depends(get_services)):
    return {"id": svc.products.create_product(product)}


@app.get("/products")
def list_products(
    category: Optional[str] = None,
    min_price: Optional[float] = None,
    max_price: Optional[float] = None,
    featured: Optional[bool] = None,
    sort_by: str = "created_at",
    sort_direction: str = Query("desc", pattern="^(asc|desc)$"),
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    svc: Services = Depends(get_services),
):
    listing = svc.products.get_products(
        category=category, min_price=min_price, max_price=max_price, featured=featured,
        sort_by=sort_by, sort_direction=sort_direction, page=page, limit=limit,
    )
    return {
        "products": [dump(p) for p in listing.products],
        "total": listing.total,
        "pages": listing.pages,
        "current_page": listing.current_page,
        "has_more": listing.has_more,
    }


@app.get("/products/search")
def search_products(q: str, limit: int = Query(10, ge=1, le=100), svc: Services = Depends(get_services)):
    return [dump(p) for p in svc.products.search(q, limit)]


@app.get("/products/low-stock")
def low_stock_products(threshold: Optional[int] = None, svc: Services = Depends(get_services)):
    return [dump(p) for p in svc.stats.get_low_stock_products(threshold)]


@app.get("/products/{product_id}")
def get_product(product_id: str, svc: Services = Depends(get_services)):
    product = svc.products.get_product(product_id)
    if not product:
        raise HTTPException(status_code=404, detail="Product not found")
    return dump(product)


@app.patch("/products/{product_id}/stock")
def update_stock(product_id: str, payload: StockUpdate, svc: Services = Depends(get_services)):
    svc.products.update_stock(product_id, payload.quantity, payload.operation)
    return {"ok": True}


@app.delete("/products/{product_id}")
def delete_product(product_id: str, svc: Services = Depends(get_services)):
    svc.products.delete_product(product_id)
    return {"deleted": True}


@app.get("/products/{product_id}/reviews")
def list_reviews(product_id: str, limit: int = Query(10, ge=1, le=100), cursor: Optional[str] = None,
                 svc: Services = Depends(get_services)):
    page = svc.reviews.get_product_reviews(product_id, limit, resume_from(svc, "review", cursor))
    return page_out(page, "reviews")


@app.get("/products/{product_id}/rating")
def product_rating(product_id: str, svc: Services = Depends(get_services)):
    summary = svc.reviews.get_product_rating_average(product_id)
    return {"average": summary.average, "count": summary.count}


# Cart
@app.get("/cart/{user_id}")
def get_cart(user_id: str, svc: Services = Depends(get_services)):
    return svc.carts.get_cart_details(user_id)


@app.post("/cart/add")
def add_to_cart(payload: CartItemRequest, svc: Services = Depends(get_services)):
    svc.carts.add_to_cart(payload.user_id, payload.product_id, payload.quantity)
    return {"ok": True}


@app.put("/cart/item")
def update_cart_item(payload: CartItemRequest, svc: Services = Depends(get_services)):
    svc.carts.update_cart_item(payload.user_id, payload.product_id, payload.quantity)
    return {"ok": True}


@app.delete("/cart/{user_id}/items/{product_id}")
def remove_from_cart(user_id: str, product_id: str, svc: Services = Depends(get_services)):
    svc.carts.remove_from_cart(user_id, product_id)
    return {"ok": True}


@app.delete("/cart/{user_id}")
def clear_cart(user_id: str, svc: Services = Depends(get_services)):
    svc.carts.clear_cart(user_id)
    return {"ok": True}


# Orders
@app.post("/orders")
def create_order(draft: OrderDraft, svc: Services = Depends(get_services)):
    return {"order_id": svc.orders.create_order(draft)}


@app.get("/orders/{order_id}")
def get_order(order_id: str, svc: Services = Depends(get_services)):
    order = svc.orders.get_order(order_id)
    if not order:
        raise HTTPException(status_code=404, detail="Order not found")
    return dump(order)


@app.post("/orders/{order_id}/cancel")
def cancel_order(order_id: str, svc: Services = Depends(get_services)):
    svc.orders.cancel_order(order_id)
    return dump(svc.orders.get_order(order_id))


@app.patch("/orders/{order_id}/status")
def update_order_status(order_id: str, payload: StatusUpdate, svc: Services = Depends(get_services)):
    svc.orders.update_order_status(order_id, payload.status, payload.tracking_number)
    return dump(svc.orders.get_order(order_id))


# Reviews
@app.post("/reviews")
def add_review(review: Review, svc: Services = Depends(get_services)):
    return {"id": svc.reviews.add_review(review)}


# Coupons
@app.post("/coupons")
def create_coupon(coupon: Coupon, svc: Services = Depends(get_services)):
    return {"id": svc.coupons.create_coupon(coupon)}


@app.post("/coupons/validate")
def validate_coupon(payload: CouponCheck, svc: Services = Depends(get_services)):
    result = svc.coupons.validate_coupon(payload.code, payload.total_amount)
    response: Dict[str, Any] = {"valid": result.valid, "error_message": result.error_message}
    if result.valid:
        response["coupon"] = dump(result.coupon)
        response["discount"] = calculate_discount(result.coupon, payload.total_amount)
    return response


@app.post("/coupons/{code}/apply")
def apply_coupon(code: str, svc: Services = Depends(get_services)):
    if not svc.coupons.apply_coupon(code):
        raise HTTPException(status_code=404, detail="Coupon not found or inactive")
    return {"ok": True}


# Statistics
@app.get("/stats/sales")
def sales_stats(start: datetime, end: datetime, svc: Services = Depends(get_services)):
    stats = svc.stats.get_sales_stats(start, end)
    return {
        "total_sales": stats.total_sales,
        "order_count": stats.order_count,
        "average_order_value": stats.average_order_value,
    }


@app.get("/stats/top-products")
def top_products(limit: int = Query(10, ge=1, le=100), svc: Services = Depends(get_services)) -> List[Dict[str, Any]]:
    return [
        {
            "product_id": s.product_id,
            "product_name": s.product_name,
            "total_quantity": s.total_quantity,
            "total_sales": s.total_sales,
        }
        for s in svc.stats.get_top_selling_products(limit)
    ]


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=get_settings().port)
