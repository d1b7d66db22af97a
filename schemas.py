"""
Database Schemas

MongoDB collection schemas and request bodies as Pydantic models.
Model name is converted to lowercase for the collection name:
- Product -> "product" collection
- Cart -> "cart" collection
- Order -> "order" collection
- Review -> "review" collection
"""

from datetime import datetime
from typing import Annotated, Any, ClassVar, Dict, List, Literal, Optional, Tuple, Union

from pydantic import BaseModel, Field, computed_field, field_validator


def compute_final_price(price: float, discount: float) -> float:
    return round(price * (1 - discount / 100), 2)


class Product(BaseModel):
    """
    Products collection schema
    Collection name: "product"

    `final_price` is derived from price and discount on every read, so it
    can't drift from them after an edit.
    """
    id: Optional[str] = Field(None, description="Public product id, e.g. SKI4821")
    name: str = Field(..., description="Product name")
    brand: str = Field("", description="Brand name")
    category: str = Field(..., description="Free-text category")
    description: str = Field("", description="Long description")
    price: float = Field(..., ge=0, description="Price before discount")
    discount: float = Field(0, ge=0, le=100, description="Discount percentage")
    features: List[str] = Field(default_factory=list)
    ingredients: List[str] = Field(default_factory=list)
    tags: List[str] = Field(default_factory=list)
    rating: float = Field(0, ge=0, le=5, description="Average rating")
    stock: int = Field(0, ge=0, description="Units available; 0 means unavailable")
    image_url: Optional[str] = Field(None, description="Primary image URL")
    # category dependent variant attributes
    sizes: List[str] = Field(default_factory=list)
    color: Optional[str] = None
    material: Optional[str] = None
    shade: Optional[str] = None
    volume: Optional[str] = None
    skin_type: Optional[str] = None
    expiration_date: Optional[str] = None

    @field_validator("rating")
    @classmethod
    def _one_decimal(cls, v: float) -> float:
        return round(v, 1)

    @computed_field
    @property
    def final_price(self) -> float:
        return compute_final_price(self.price, self.discount)

    @property
    def price_used(self) -> float:
        return self.final_price if self.discount > 0 else self.price

    @property
    def in_stock(self) -> bool:
        return self.stock > 0


class ProductUpdate(BaseModel):
    name: Optional[str] = None
    brand: Optional[str] = None
    category: Optional[str] = None
    description: Optional[str] = None
    price: Optional[float] = Field(None, ge=0)
    discount: Optional[float] = Field(None, ge=0, le=100)
    features: Optional[List[str]] = None
    ingredients: Optional[List[str]] = None
    tags: Optional[List[str]] = None
    stock: Optional[int] = Field(None, ge=0)
    image_url: Optional[str] = None
    sizes: Optional[List[str]] = None
    color: Optional[str] = None
    material: Optional[str] = None
    shade: Optional[str] = None
    volume: Optional[str] = None
    skin_type: Optional[str] = None
    expiration_date: Optional[str] = None


class CartItem(BaseModel):
    product_id: str
    quantity: int = Field(1, ge=1)
    added_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class Cart(BaseModel):
    user_id: str
    items: List[CartItem] = []


class ShippingAddress(BaseModel):
    """Shipping details, also sent to gateways as customer info."""
    name: str = ""
    email: str = ""
    phone: str = ""
    address: str = ""
    city: str = ""
    postal_code: str = ""
    country: str = "Bangladesh"

    REQUIRED_FIELDS: ClassVar[Tuple[str, ...]] = ("name", "email", "phone", "address", "city", "postal_code")

    def missing_fields(self) -> List[str]:
        return [f for f in self.REQUIRED_FIELDS if not str(getattr(self, f) or "").strip()]


class OrderItem(BaseModel):
    """Line item frozen at order creation."""
    product_id: str
    name: str
    quantity: int = Field(..., ge=1)
    price: float = Field(..., ge=0)
    image_url: Optional[str] = None


OrderStatus = Literal["created", "pending_payment", "paid", "payment_failed", "cash_on_delivery_confirmed"]


class PaymentInfo(BaseModel):
    method: str
    gateway: str
    tran_id: Optional[str] = None
    amount: float
    currency: str = "BDT"
    status: str = "PENDING"
    validation_data: Optional[Dict[str, Any]] = None
    paid_at: Optional[datetime] = None


class Order(BaseModel):
    """
    Orders collection schema
    Collection name: "order"
    """
    user_id: str
    items: List[OrderItem]
    total_price: float = Field(..., ge=0)
    shipping_address: Optional[ShippingAddress] = None
    status: OrderStatus = "created"
    payment_status: str = "pending"
    payment_method: Optional[str] = None
    transaction_id: Optional[str] = None
    payment_info: Optional[PaymentInfo] = None


class Review(BaseModel):
    """
    Reviews collection schema
    Collection name: "review"
    """
    product_id: str
    user_name: str
    rating: int = Field(..., ge=1, le=5)
    comment: Optional[str] = None


# Request bodies

class OrderLine(BaseModel):
    product_id: str
    quantity: int = Field(1, ge=1)


class CreateOrderRequest(BaseModel):
    user_id: str
    items: List[OrderLine]
    shipping_address: Optional[ShippingAddress] = None


class AddToCartRequest(BaseModel):
    user_id: str
    product_id: str
    quantity: int = Field(1, ge=1)


class UpdateCartRequest(BaseModel):
    user_id: str
    product_id: str
    quantity: int = Field(..., ge=0)


class OrderStatusUpdate(BaseModel):
    status: OrderStatus


# Payment methods, discriminated on `method`

class CodPayment(BaseModel):
    method: Literal["cod"] = "cod"
    customer: Optional[ShippingAddress] = None


class SslcommerzPayment(BaseModel):
    method: Literal["sslcommerz"] = "sslcommerz"
    customer: ShippingAddress


class BkashPayment(BaseModel):
    method: Literal["bkash"] = "bkash"
    customer: ShippingAddress
    payer_reference: Optional[str] = Field(None, description="Defaults to the customer's phone")


class RocketPayment(BaseModel):
    method: Literal["rocket"] = "rocket"
    customer: ShippingAddress


class NagadPayment(BaseModel):
    method: Literal["nagad"] = "nagad"
    customer: ShippingAddress


PaymentMethod = Annotated[
    Union[CodPayment, SslcommerzPayment, BkashPayment, RocketPayment, NagadPayment],
    Field(discriminator="method"),
]


class InitiatePaymentRequest(BaseModel):
    order_id: str
    amount: float = Field(..., ge=0)
    payment: PaymentMethod
