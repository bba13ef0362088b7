"""
Database Schemas for the shop data layer

Each Pydantic model corresponds to a MongoDB collection.
Collection name is the lowercase of the class name.

- Product -> "product"
- User -> "user"
- Order -> "order"
- Cart -> "cart"
- Review -> "review"
- Coupon -> "coupon"

Address, OrderItem and CartItem are always embedded.
"""

from datetime import datetime, timezone
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, EmailStr, Field, field_validator

OrderStatus = Literal["pending", "processing", "shipped", "delivered", "cancelled"]
PaymentStatus = Literal["pending", "paid", "failed"]

ORDER_STATUSES = ("pending", "processing", "shipped", "delivered", "cancelled")

# Fields the store owns; never written from a model
SYSTEM_FIELDS = {"id", "created_at", "updated_at"}


class Address(BaseModel):
    street: str
    city: str
    state: str
    country: str
    zip_code: str
    is_default: bool = Field(False, description="Whether this is the user's default address")


class Product(BaseModel):
    """Products collection schema"""
    id: Optional[str] = None
    name: str = Field(..., description="Product name")
    description: str = Field("", description="Product description")
    price: float = Field(..., ge=0, description="Price in dollars")
    discount_price: Optional[float] = Field(None, ge=0, description="Sale price, wins over price when set")
    categories: List[str] = Field(default_factory=list, description="Category slugs")
    images: List[str] = Field(default_factory=list, description="Image URLs")
    stock: int = Field(0, ge=0, description="Units available")
    sku: str = Field(..., description="Stock keeping unit")
    featured: Optional[bool] = None
    attributes: Optional[Dict[str, str]] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def unit_price(self) -> float:
        return self.discount_price if self.discount_price is not None else self.price


class User(BaseModel):
    """Users collection schema"""
    id: Optional[str] = None
    email: EmailStr = Field(..., description="Email address")
    first_name: str = Field(..., description="First name")
    last_name: str = Field(..., description="Last name")
    address: List[Address] = Field(default_factory=list)
    phone: Optional[str] = None
    role: Literal["customer", "admin"] = Field("customer", description="Role: customer or admin")
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @field_validator("address")
    @classmethod
    def single_default_address(cls, value: List[Address]) -> List[Address]:
        if sum(1 for a in value if a.is_default) > 1:
            raise ValueError("at most one address may be the default")
        return value


class OrderItem(BaseModel):
    product_id: str
    product_name: str
    quantity: int = Field(..., gt=0)
    price: float = Field(..., ge=0)
    total_price: float = Field(..., ge=0, description="price x quantity at order time")


class Order(BaseModel):
    """Orders collection schema"""
    id: Optional[str] = None
    user_id: str
    items: List[OrderItem]
    status: OrderStatus = "pending"
    total_amount: float = Field(..., ge=0)
    shipping_address: Address
    payment_method: str = ""
    payment_status: PaymentStatus = "pending"
    tracking_number: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class CartItem(BaseModel):
    product_id: str = Field(..., description="ID of the product")
    quantity: int = Field(1, gt=0, description="Quantity of the product")


class Cart(BaseModel):
    """Carts collection schema. The cart id is the owner's user id."""
    id: Optional[str] = None
    user_id: str = Field(..., description="Owner user id")
    items: List[CartItem] = Field(default_factory=list, description="List of cart items")
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class Review(BaseModel):
    """Reviews collection schema"""
    id: Optional[str] = None
    user_id: str
    product_id: str
    rating: int = Field(..., ge=1, le=5)
    comment: str = ""
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class Coupon(BaseModel):
    """Coupons collection schema"""
    id: Optional[str] = None
    code: str
    discount_type: Literal["percentage", "fixed"]
    discount_value: float = Field(..., ge=0)
    min_purchase: Optional[float] = Field(None, ge=0)
    start_date: datetime
    end_date: datetime
    usage_limit: Optional[int] = Field(None, ge=0)
    usage_count: int = Field(0, ge=0)
    is_active: bool = True
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @field_validator("start_date", "end_date")
    @classmethod
    def dates_in_utc(cls, value: datetime) -> datetime:
        # Dates without an offset are UTC
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value


COLLECTIONS = {
    "product": Product,
    "user": User,
    "order": Order,
    "cart": Cart,
    "review": Review,
    "coupon": Coupon,
}


def to_fields(model: BaseModel) -> dict:
    """Storable fields of a model, without the store-owned id and timestamps."""
    return model.model_dump(exclude=SYSTEM_FIELDS)


# Drafts (input shapes)

class OrderItemDraft(BaseModel):
    product_id: str
    quantity: int = Field(..., gt=0)
    product_name: Optional[str] = None
    price: Optional[float] = Field(None, ge=0)


class OrderDraft(BaseModel):
    user_id: str
    items: List[OrderItemDraft]
    shipping_address: Address
    payment_method: str = ""
    payment_status: PaymentStatus = "pending"
    total_amount: Optional[float] = Field(None, ge=0)
