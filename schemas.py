"""
Database Schemas for the Shop API

Each Pydantic model corresponds to a MongoDB collection. The collection name is the
snake_case of the class name.

Example: class DeliveryPricing -> collection "delivery_pricing"

References between collections are stored as id strings (customer_id, order_id, ...).
"""
from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, EmailStr, Field, field_validator, model_validator

ORDER_STATUSES = ("Pending", "Processing", "Shipped", "Delivered", "Cancelled")
PAYMENT_STATUSES = ("Pending", "Completed", "Failed", "Refunded")
CANCELLABLE_STATUSES = ("Pending", "Processing")

OrderStatus = Literal["Pending", "Processing", "Shipped", "Delivered", "Cancelled"]
PaymentStatus = Literal["Pending", "Completed", "Failed", "Refunded"]
PaymentType = Literal["online", "offline"]
DiscountType = Literal["percentage", "fixed"]

COD = "COD"


def naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Mongo hands back naive UTC datetimes, so store them that way too."""
    if value is not None and value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def is_admin(user: Dict[str, Any]) -> bool:
    return user.get("role") in ("admin", "superadmin")


# Users

class Address(BaseModel):
    label: str
    address_line1: str
    address_line2: Optional[str] = None
    city: str
    state: Optional[str] = None
    postal_code: str
    country: str
    phone: str


class SavedAddress(Address):
    id: str


class User(BaseModel):
    name: str
    email: EmailStr
    hashed_password: str
    role: Literal["customer", "admin", "superadmin"] = "customer"
    is_active: bool = True
    phone: Optional[str] = None
    addresses: List[SavedAddress] = Field(default_factory=list)
    total_orders: int = 0
    total_purchases: float = 0.0
    cancelled_orders: int = 0


# Catalog

class VariationOption(BaseModel):
    value: str
    price_modifier: float = 0.0
    images: List[str] = Field(default_factory=list)
    quantity: int = Field(0, ge=0)


class Variation(BaseModel):
    name: str
    options: List[VariationOption] = Field(default_factory=list)


class Discount(BaseModel):
    type: DiscountType
    value: float = Field(..., ge=0)
    start_date: datetime
    end_date: datetime
    description: str = ""

    @field_validator("start_date", "end_date")
    @classmethod
    def to_naive_utc(cls, v: datetime) -> datetime:
        return naive_utc(v)

    @model_validator(mode="after")
    def check_window(self):
        if self.end_date <= self.start_date:
            raise ValueError("end_date must be greater than start_date")
        return self


class Product(BaseModel):
    name: str
    slug: Optional[str] = None
    description: Optional[str] = None
    base_price: float = Field(..., ge=0)
    quantity: int = Field(..., ge=0)
    images: List[str] = Field(default_factory=list)
    category: Optional[str] = None
    variations: List[Variation] = Field(default_factory=list)
    properties: Dict[str, Any] = Field(default_factory=dict)
    tags: List[str] = Field(default_factory=list)
    discount: Optional[Discount] = None
    total_sales: int = 0
    average_rating: float = Field(0, ge=0, le=5)
    num_reviews: int = 0
    is_active: bool = True


class Review(BaseModel):
    product_id: str
    user_id: str
    rating: int = Field(..., ge=1, le=5)
    comment: Optional[str] = None


# Cart

class OptionSelection(BaseModel):
    value: str
    price_modifier: float = 0.0


class VariationSelection(BaseModel):
    name: str
    option: OptionSelection


class CartItem(BaseModel):
    id: str
    product_id: str
    variations: List[VariationSelection] = Field(default_factory=list)
    quantity: int = Field(1, ge=1)


class Cart(BaseModel):
    user_id: str
    items: List[CartItem] = Field(default_factory=list)


# Reference data

class Coupon(BaseModel):
    code: str
    discount_type: DiscountType
    discount_amount: float = Field(..., ge=0)
    min_order_amount: float = Field(0, ge=0)
    max_discount_amount: Optional[float] = Field(None, ge=0)
    expires_at: datetime
    usage_limit: int = Field(100, ge=0)  # POST /coupons defaults to 1 (main.CouponIn)
    used_count: int = Field(0, ge=0)

    @field_validator("expires_at")
    @classmethod
    def to_naive_utc(cls, v: datetime) -> datetime:
        return naive_utc(v)

    @field_validator("code")
    @classmethod
    def upper_code(cls, v: str) -> str:
        return v.strip().upper()


class DeliveryPricing(BaseModel):
    name: str
    region: str
    price: float = Field(..., ge=0)
    estimated_days: Optional[int] = Field(None, ge=0)


class PaymentMethod(BaseModel):
    name: str
    type: PaymentType
    details: Optional[Dict[str, Any]] = None
    is_active: bool = True

    @field_validator("name")
    @classmethod
    def strip_name(cls, v: str) -> str:
        v = v.strip()
        if v.upper() == COD:
            raise ValueError("COD is reserved for cash on delivery")
        return v

    @model_validator(mode="after")
    def online_needs_details(self):
        if self.type == "online" and not self.details:
            raise ValueError("details are required for online payment methods")
        return self


# Orders & payments

class OrderItem(BaseModel):
    product_id: str
    product_name: str
    variations: List[VariationSelection] = Field(default_factory=list)
    quantity: int = Field(1, ge=1)
    price: float = Field(..., ge=0)


class DeliveryInfo(BaseModel):
    method: str
    price: float
    estimated_days: Optional[int] = None


class DeliveryDetails(BaseModel):
    address: Address
    method: Optional[str] = None


class CouponApplied(BaseModel):
    coupon_id: str
    code: str
    discount_type: DiscountType
    discount_amount: float


class StatusHistoryEntry(BaseModel):
    status: OrderStatus
    updated_at: datetime = Field(default_factory=datetime.utcnow)


class Order(BaseModel):
    customer_id: str
    items: List[OrderItem]
    subtotal: float
    total_amount: float
    delivery: DeliveryInfo
    status: OrderStatus = "Pending"
    status_history: List[StatusHistoryEntry] = Field(default_factory=list)
    payment_type: PaymentType
    payment_status: PaymentStatus = "Pending"
    delivery_details: DeliveryDetails
    coupon_applied: Optional[CouponApplied] = None
    payment_id: Optional[str] = None
    cancellation_reason: Optional[str] = None
    stats_adjusted: bool = False


class Payment(BaseModel):
    order_id: str
    customer_id: str
    method_id: Optional[str] = None
    payment_method_name: str
    status: PaymentStatus = "Pending"
    payment_date: Optional[datetime] = None
    transaction_id: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None
    verified: bool = False

    @model_validator(mode="after")
    def method_unless_cod(self):
        if self.payment_method_name != COD and not self.method_id:
            raise ValueError("method_id is required unless paying by COD")
        return self


# Service inputs

class CheckoutRequest(BaseModel):
    delivery_method_id: str
    use_saved_address: bool = False
    delivery_address_id: Optional[str] = None
    manual_address: Optional[Address] = None
    coupon_code: Optional[str] = None
    payment_type: PaymentType
    payment_method_id: Optional[str] = None
    payment_method_name: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None
