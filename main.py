import logging
import os
import re
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

import jwt
from bson import ObjectId
from fastapi import Body, Depends, FastAPI, Header, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from passlib.context import CryptContext
from pydantic import BaseModel, EmailStr, Field
from pydantic import ValidationError as SchemaValidationError
from pymongo.errors import DuplicateKeyError

import carts
import coupons
import database
import orders
import payments
from database import create_document, ensure_indexes, serialize, to_object_id
from errors import (
    AuthenticationError,
    ConflictError,
    CouponError,
    EmptyCartError,
    ForbiddenError,
    InsufficientStockError,
    InvalidAddressError,
    InvalidDeliveryMethodError,
    InvalidPaymentMethodError,
    InvalidStateError,
    MissingAddressError,
    NotFoundError,
    ShopError,
    ValidationError,
)
from pricing import unit_price, with_pricing
from schemas import (
    Address,
    CheckoutRequest,
    Coupon,
    DeliveryPricing,
    DiscountType,
    PaymentMethod,
    PaymentStatus,
    OrderStatus,
    Product,
    Review,
    SavedAddress,
    User,
    is_admin,
)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    if database.db is not None:
        ensure_indexes(database.db)
    yield


# App setup
app = FastAPI(title="Shop API", version="0.2.0", lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Security/JWT setup
JWT_SECRET = os.getenv("JWT_SECRET", "dev-secret-change-me")
JWT_EXPIRES_MIN = int(os.getenv("JWT_EXPIRES_MIN", "60"))
PAYMENT_WEBHOOK_SECRET = os.getenv("PAYMENT_WEBHOOK_SECRET")
security = HTTPBearer()
password_ctx = CryptContext(schemes=["bcrypt"], deprecated="auto")


# Errors
ERROR_STATUS_CODES = {
    NotFoundError: 404,
    ConflictError: 409,
    ValidationError: 400,
    AuthenticationError: 401,
    ForbiddenError: 403,
    InvalidStateError: 400,
    InsufficientStockError: 400,
    CouponError: 400,
    EmptyCartError: 400,
    InvalidAddressError: 400,
    MissingAddressError: 400,
    InvalidDeliveryMethodError: 400,
    InvalidPaymentMethodError: 400,
}


@app.exception_handler(ShopError)
async def shop_error_handler(request: Request, exc: ShopError) -> JSONResponse:
    """Map ShopError subclasses to HTTP responses."""
    status_code = ERROR_STATUS_CODES.get(type(exc), 500)
    content = {"detail": str(exc), "error_type": type(exc).__name__}
    if isinstance(exc, CouponError):
        content["reason"] = exc.reason
        if exc.reason == CouponError.NOT_FOUND:
            status_code = 404
    return JSONResponse(status_code=status_code, content=content)


@app.exception_handler(SchemaValidationError)
async def schema_error_handler(request: Request, exc: SchemaValidationError) -> JSONResponse:
    return JSONResponse(status_code=400, content={"detail": str(exc), "error_type": "ValidationError"})


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"detail": "Server error"})


# Utilities
def get_db():
    if database.db is None:
        raise HTTPException(status_code=503, detail="Database not configured")
    return database.db


def hash_password(password: str) -> str:
    return password_ctx.hash(password)


def verify_password(password: str, hashed: str) -> bool:
    return password_ctx.verify(password, hashed)


def create_token(user: dict) -> str:
    payload = {
        "sub": str(user["_id"]),
        "email": user.get("email"),
        "role": user.get("role", "customer"),
        "exp": datetime.utcnow() + timedelta(minutes=JWT_EXPIRES_MIN),
        "iat": datetime.utcnow(),
    }
    return jwt.encode(payload, JWT_SECRET, algorithm="HS256")


def decode_token(token: str) -> dict:
    try:
        return jwt.decode(token, JWT_SECRET, algorithms=["HS256"])
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=401, detail="Token expired")
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=401, detail="Invalid token")


def get_current_user(credentials: HTTPAuthorizationCredentials = Depends(security), db=Depends(get_db)) -> dict:
    payload = decode_token(credentials.credentials)
    uid = payload.get("sub")
    if not uid or not ObjectId.is_valid(uid):
        raise HTTPException(status_code=401, detail="Invalid token")
    user = db["user"].find_one({"_id": ObjectId(uid)})
    if not user or not user.get("is_active", True):
        raise HTTPException(status_code=401, detail="User not found")
    return user


def require_admin(user: dict = Depends(get_current_user)) -> dict:
    if not is_admin(user):
        raise HTTPException(status_code=403, detail=f"Role {user.get('role')} not allowed")
    return user


def user_out(user: dict) -> dict:
    return {
        "id": str(user["_id"]),
        "name": user.get("name"),
        "email": user.get("email"),
        "role": user.get("role", "customer"),
        "phone": user.get("phone"),
        "addresses": user.get("addresses", []),
        "total_orders": user.get("total_orders", 0),
        "total_purchases": user.get("total_purchases", 0.0),
        "cancelled_orders": user.get("cancelled_orders", 0),
    }


def slugify(text: str) -> str:
    return re.sub(r"[^a-z0-9]+", "-", text.lower()).strip("-") or "product"


def unique_slug(db, name: str, exclude_id: Optional[ObjectId] = None) -> str:
    base = slugify(name)
    candidate, suffix = base, 1
    while db["product"].find_one({"slug": candidate, "_id": {"$ne": exclude_id}}):
        candidate = f"{base}-{suffix}"
        suffix += 1
    return candidate


def cart_view(db, cart: dict) -> dict:
    out = serialize(cart)
    subtotal = 0.0
    for item in out.get("items", []):
        product = db["product"].find_one({"_id": ObjectId(item["product_id"])},
                                         {"name": 1, "base_price": 1, "discount": 1, "images": 1, "variations": 1})
        if not product:
            item["product"] = None
            continue
        price = unit_price(product, item.get("variations"))
        item["product"] = {"name": product["name"], "images": product.get("images", []), "unit_price": price}
        subtotal += price * item["quantity"]
    out["subtotal"] = round(subtotal, 2)
    return out


# Schemas (request/response)
class RegisterRequest(BaseModel):
    name: str
    email: EmailStr
    password: str = Field(..., min_length=6)


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class ProfileUpdate(BaseModel):
    name: Optional[str] = None
    phone: Optional[str] = None


class ReviewIn(BaseModel):
    rating: int = Field(..., ge=1, le=5)
    comment: Optional[str] = None


class OptionChoice(BaseModel):
    value: str


class VariationChoice(BaseModel):
    name: str
    option: OptionChoice


class CartItemIn(BaseModel):
    product_id: str
    variations: List[VariationChoice] = []
    quantity: int = Field(1, ge=1)


class CartItemUpdate(BaseModel):
    item_id: str
    quantity: int = Field(..., ge=1)


class CartItemRemove(BaseModel):
    item_id: str


class CouponIn(BaseModel):
    code: str
    discount_type: DiscountType
    discount_amount: float = Field(..., ge=0)
    min_order_amount: float = Field(0, ge=0)
    max_discount_amount: Optional[float] = Field(None, ge=0)
    expires_at: datetime
    # admin-created coupons are single-use unless stated; stored coupons without a limit default to 100
    usage_limit: int = Field(1, ge=0)


class CouponPreviewRequest(BaseModel):
    code: str
    subtotal: float = Field(..., ge=0)


class CancelRequest(BaseModel):
    reason: Optional[str] = None


class OrderStatusUpdate(BaseModel):
    status: OrderStatus
    remarks: Optional[str] = None


class PaymentCreateRequest(BaseModel):
    order_id: str
    payment_method_id: str
    metadata: Optional[Dict[str, Any]] = None


class PaymentStatusUpdate(BaseModel):
    status: PaymentStatus
    transaction_id: Optional[str] = None


class WebhookPayload(BaseModel):
    payment_id: str
    status: PaymentStatus
    transaction_id: Optional[str] = None


# Health and helpers
@app.get("/")
def root():
    return {"message": "Shop API running"}


@app.get("/test")
def test_database():
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": "✅ Set" if os.getenv("DATABASE_URL") else "❌ Not Set",
        "database_name": "✅ Set" if os.getenv("DATABASE_NAME") else "❌ Not Set",
        "connection_status": "Not Connected",
        "collections": []
    }
    try:
        if database.db is not None:
            response["database"] = "✅ Connected & Working"
            response["connection_status"] = "Connected"
            response["collections"] = database.db.list_collection_names()[:10]
    except Exception as e:
        response["database"] = f"⚠️ Connected but error: {str(e)[:80]}"
    return response


# Auth
@app.post("/auth/register", status_code=201)
def register(payload: RegisterRequest, db=Depends(get_db)):
    email = payload.email.lower()
    if db["user"].find_one({"email": email}):
        raise HTTPException(status_code=400, detail="Email already registered")
    new_user = User(name=payload.name, email=email, hashed_password=hash_password(payload.password))
    try:
        inserted_id = create_document("user", new_user, database=db)
    except DuplicateKeyError:
        raise HTTPException(status_code=400, detail="Email already registered")
    user = db["user"].find_one({"_id": ObjectId(inserted_id)})
    return {"token": create_token(user), "user": user_out(user)}


@app.post("/auth/login")
def login(payload: LoginRequest, db=Depends(get_db)):
    user = db["user"].find_one({"email": payload.email.lower()})
    if not user or not verify_password(payload.password, user.get("hashed_password", "")):
        raise AuthenticationError("Invalid credentials")
    return {"token": create_token(user), "user": user_out(user)}


@app.get("/me")
def me(current_user: dict = Depends(get_current_user)):
    return user_out(current_user)


@app.put("/me")
def update_profile(update: ProfileUpdate, current_user: dict = Depends(get_current_user), db=Depends(get_db)):
    changes = update.model_dump(exclude_none=True)
    changes["updated_at"] = datetime.utcnow()
    db["user"].update_one({"_id": current_user["_id"]}, {"$set": changes})
    return user_out(db["user"].find_one({"_id": current_user["_id"]}))


@app.post("/me/addresses", status_code=201)
def add_address(address: Address, current_user: dict = Depends(get_current_user), db=Depends(get_db)):
    saved = SavedAddress(id=str(ObjectId()), **address.model_dump()).model_dump()
    db["user"].update_one({"_id": current_user["_id"]},
                          {"$push": {"addresses": saved}, "$set": {"updated_at": datetime.utcnow()}})
    return saved


@app.delete("/me/addresses/{address_id}")
def delete_address(address_id: str, current_user: dict = Depends(get_current_user), db=Depends(get_db)):
    result = db["user"].update_one({"_id": current_user["_id"], "addresses.id": address_id},
                                   {"$pull": {"addresses": {"id": address_id}}})
    if result.modified_count == 0:
        raise NotFoundError("Address", address_id)
    return {"id": address_id, "deleted": True}


# Products
@app.get("/products")
def list_products(q: Optional[str] = None, category: Optional[str] = None, tag: Optional[str] = None,
                  sort: Optional[str] = None, page: int = 1, page_size: int = 12,
                  min_price: Optional[float] = None, max_price: Optional[float] = None, db=Depends(get_db)):
    filt: Dict[str, Any] = {"is_active": True}
    if q:
        pattern = re.escape(q)
        filt["$or"] = [{"name": {"$regex": pattern, "$options": "i"}},
                       {"description": {"$regex": pattern, "$options": "i"}}]
    if category:
        filt["category"] = category
    if tag:
        filt["tags"] = tag
    price_cond = {}
    if min_price is not None:
        price_cond["$gte"] = min_price
    if max_price is not None:
        price_cond["$lte"] = max_price
    if price_cond:
        filt["base_price"] = price_cond

    cursor = db["product"].find(filt)
    if sort == "price_asc":
        cursor = cursor.sort("base_price", 1)
    elif sort == "price_desc":
        cursor = cursor.sort("base_price", -1)
    elif sort == "newest":
        cursor = cursor.sort("created_at", -1)
    elif sort == "rating":
        cursor = cursor.sort("average_rating", -1)

    total = db["product"].count_documents(filt)
    page = max(page, 1)
    cursor = cursor.skip((page - 1) * page_size).limit(page_size)
    items = [serialize(with_pricing(p)) for p in cursor]
    return {"items": items, "page": page, "page_size": page_size, "total": total}


@app.get("/products/{slug}")
def get_product(slug: str, db=Depends(get_db)):
    p = db["product"].find_one({"slug": slug})
    if not p:
        raise NotFoundError("Product", slug)
    return serialize(with_pricing(p))


@app.post("/products", status_code=201)
def create_product(payload: Product, user: dict = Depends(require_admin), db=Depends(get_db)):
    doc = payload.model_dump()
    doc["slug"] = unique_slug(db, payload.slug or payload.name)
    doc.update({"average_rating": 0.0, "num_reviews": 0})
    inserted = create_document("product", doc, database=db)
    logger.info("Product %s created by %s", inserted, user["_id"])
    return {"id": inserted, "slug": doc["slug"]}


@app.put("/products/{product_id}")
def update_product(product_id: str, payload: Dict[str, Any] = Body(...), user: dict = Depends(require_admin),
                   db=Depends(get_db)):
    oid = to_object_id(product_id, "product")
    existing = db["product"].find_one({"_id": oid})
    if not existing:
        raise NotFoundError("Product", product_id)
    merged = {k: v for k, v in existing.items() if k in Product.model_fields}
    merged.update({k: v for k, v in payload.items() if k in Product.model_fields})
    product = Product(**merged)

    doc = product.model_dump()
    if payload.get("slug"):
        doc["slug"] = unique_slug(db, payload["slug"], exclude_id=oid)
    elif product.name != existing.get("name"):
        doc["slug"] = unique_slug(db, product.name, exclude_id=oid)
    else:
        doc["slug"] = existing.get("slug")
    doc["updated_at"] = datetime.utcnow()
    db["product"].update_one({"_id": oid}, {"$set": doc})
    return {"id": product_id, "updated": True, "slug": doc["slug"]}


@app.delete("/products/{product_id}")
def delete_product(product_id: str, user: dict = Depends(require_admin), db=Depends(get_db)):
    oid = to_object_id(product_id, "product")
    result = db["product"].delete_one({"_id": oid})
    if result.deleted_count == 0:
        raise NotFoundError("Product", product_id)
    reviews = db["review"].delete_many({"product_id": product_id})
    logger.info("Product %s deleted with %d review(s)", product_id, reviews.deleted_count)
    return {"id": product_id, "deleted": True}


# Reviews
@app.get("/products/{product_id}/reviews")
def list_reviews(product_id: str, db=Depends(get_db)):
    reviews = db["review"].find({"product_id": product_id}).sort("created_at", -1)
    return {"items": serialize(list(reviews))}


@app.post("/products/{product_id}/reviews", status_code=201)
def add_review(product_id: str, payload: ReviewIn, user: dict = Depends(get_current_user), db=Depends(get_db)):
    oid = to_object_id(product_id, "product")
    if not db["product"].find_one({"_id": oid}, {"_id": 1}):
        raise NotFoundError("Product", product_id)
    uid = str(user["_id"])
    if db["review"].find_one({"product_id": product_id, "user_id": uid}):
        raise ConflictError("Product already reviewed")
    review = Review(product_id=product_id, user_id=uid, **payload.model_dump())
    review_id = create_document("review", review, database=db)

    ratings = [r["rating"] for r in db["review"].find({"product_id": product_id}, {"rating": 1})]
    db["product"].update_one({"_id": oid}, {"$set": {
        "average_rating": round(sum(ratings) / len(ratings), 2),
        "num_reviews": len(ratings),
    }})
    return {"id": review_id}


# Cart
@app.get("/cart")
def get_cart(user: dict = Depends(get_current_user), db=Depends(get_db)):
    return cart_view(db, carts.get_or_create_cart(db, str(user["_id"])))


@app.post("/cart/add")
def cart_add(item: CartItemIn, user: dict = Depends(get_current_user), db=Depends(get_db)):
    variations = [v.model_dump() for v in item.variations]
    cart = carts.add_item(db, str(user["_id"]), item.product_id, variations, item.quantity)
    return cart_view(db, cart)


@app.post("/cart/update")
def cart_update(item: CartItemUpdate, user: dict = Depends(get_current_user), db=Depends(get_db)):
    return cart_view(db, carts.update_item(db, str(user["_id"]), item.item_id, item.quantity))


@app.post("/cart/remove")
def cart_remove(item: CartItemRemove, user: dict = Depends(get_current_user), db=Depends(get_db)):
    return cart_view(db, carts.remove_item(db, str(user["_id"]), item.item_id))


@app.delete("/cart")
def cart_clear(user: dict = Depends(get_current_user), db=Depends(get_db)):
    return cart_view(db, carts.clear_cart(db, str(user["_id"])))


# Coupons
@app.post("/coupons", status_code=201)
def create_coupon(payload: CouponIn, user: dict = Depends(require_admin), db=Depends(get_db)):
    coupon = coupons.create_coupon(db, Coupon(**payload.model_dump(), used_count=0))
    return serialize(coupon)


@app.get("/coupons")
def list_coupons(user: dict = Depends(require_admin), db=Depends(get_db)):
    return serialize(coupons.list_coupons(db))


@app.post("/coupons/apply")
def preview_coupon(payload: CouponPreviewRequest, user: dict = Depends(get_current_user), db=Depends(get_db)):
    preview = coupons.preview_discount(db, payload.code, payload.subtotal)
    return {
        "code": preview["coupon"]["code"],
        "discount_type": preview["discount_type"],
        "discount_amount": preview["discount_amount"],
        "total": round(max(payload.subtotal - preview["discount_amount"], 0.0), 2),
    }


@app.get("/coupons/{code}")
def get_coupon(code: str, user: dict = Depends(get_current_user), db=Depends(get_db)):
    return serialize(coupons.peek_coupon(db, code))


@app.put("/coupons/{coupon_id}")
def update_coupon(coupon_id: str, payload: Dict[str, Any] = Body(...), user: dict = Depends(require_admin),
                  db=Depends(get_db)):
    return serialize(coupons.update_coupon(db, coupon_id, payload))


@app.delete("/coupons/{coupon_id}")
def delete_coupon(coupon_id: str, user: dict = Depends(require_admin), db=Depends(get_db)):
    coupons.delete_coupon(db, coupon_id)
    return {"message": "Coupon removed"}


# Delivery pricing
@app.get("/delivery-pricing")
def list_delivery_pricing(db=Depends(get_db)):
    return serialize(list(db["delivery_pricing"].find().sort("price", 1)))


@app.post("/delivery-pricing", status_code=201)
def create_delivery_pricing(payload: DeliveryPricing, user: dict = Depends(require_admin), db=Depends(get_db)):
    if db["delivery_pricing"].find_one({"name": payload.name}):
        raise ConflictError("Delivery pricing rule already exists")
    rule_id = create_document("delivery_pricing", payload, database=db)
    return serialize(db["delivery_pricing"].find_one({"_id": ObjectId(rule_id)}))


@app.put("/delivery-pricing/{rule_id}")
def update_delivery_pricing(rule_id: str, payload: Dict[str, Any] = Body(...), user: dict = Depends(require_admin),
                            db=Depends(get_db)):
    oid = to_object_id(rule_id, "delivery pricing")
    existing = db["delivery_pricing"].find_one({"_id": oid})
    if not existing:
        raise NotFoundError("Delivery pricing rule", rule_id)
    merged = {k: v for k, v in existing.items() if k in DeliveryPricing.model_fields}
    merged.update({k: v for k, v in payload.items() if k in DeliveryPricing.model_fields})
    rule = DeliveryPricing(**merged)
    if rule.name != existing["name"] and db["delivery_pricing"].find_one({"name": rule.name}):
        raise ConflictError("Delivery pricing rule already exists")
    db["delivery_pricing"].update_one({"_id": oid}, {"$set": {**rule.model_dump(), "updated_at": datetime.utcnow()}})
    return serialize(db["delivery_pricing"].find_one({"_id": oid}))


@app.delete("/delivery-pricing/{rule_id}")
def delete_delivery_pricing(rule_id: str, user: dict = Depends(require_admin), db=Depends(get_db)):
    result = db["delivery_pricing"].delete_one({"_id": to_object_id(rule_id, "delivery pricing")})
    if result.deleted_count == 0:
        raise NotFoundError("Delivery pricing rule", rule_id)
    return {"message": "Delivery pricing rule removed"}


# Payment methods
@app.post("/payment-methods", status_code=201)
def create_payment_method(payload: PaymentMethod, user: dict = Depends(require_admin), db=Depends(get_db)):
    return serialize(payments.create_payment_method(db, payload))


@app.get("/payment-methods")
def list_payment_methods(user: dict = Depends(get_current_user), db=Depends(get_db)):
    return serialize(payments.list_payment_methods(db, include_inactive=is_admin(user)))


@app.get("/payment-methods/{method_id}")
def get_payment_method(method_id: str, user: dict = Depends(get_current_user), db=Depends(get_db)):
    return serialize(payments.get_payment_method(db, method_id, include_inactive=is_admin(user)))


@app.put("/payment-methods/{method_id}")
def update_payment_method(method_id: str, payload: Dict[str, Any] = Body(...), user: dict = Depends(require_admin),
                          db=Depends(get_db)):
    return serialize(payments.update_payment_method(db, method_id, payload))


@app.post("/payment-methods/{method_id}/deactivate")
def deactivate_payment_method(method_id: str, user: dict = Depends(require_admin), db=Depends(get_db)):
    return serialize(payments.deactivate_payment_method(db, method_id))


@app.delete("/payment-methods/{method_id}")
def delete_payment_method(method_id: str, user: dict = Depends(require_admin), db=Depends(get_db)):
    payments.delete_payment_method(db, method_id)
    return {"message": "Payment method deleted."}


# Checkout & Orders
@app.post("/orders", status_code=201)
def create_order(payload: CheckoutRequest, user: dict = Depends(get_current_user), db=Depends(get_db)):
    result = orders.create_order(db, str(user["_id"]), payload)
    return {"order": serialize(result["order"]), "payment_id": result["payment_id"], "message": result["message"]}


@app.get("/orders")
def list_orders(page: int = 1, limit: int = 10, status: Optional[str] = None, payment_status: Optional[str] = None,
                delivery_method: Optional[str] = None, search: Optional[str] = None,
                user: dict = Depends(require_admin), db=Depends(get_db)):
    return serialize(orders.list_orders(db, page, limit, status, payment_status, delivery_method, search))


@app.get("/orders/mine")
def list_my_orders(page: int = 1, limit: int = 10, status: Optional[str] = None,
                   user: dict = Depends(get_current_user), db=Depends(get_db)):
    return serialize(orders.list_user_orders(db, str(user["_id"]), page, limit, status))


@app.get("/orders/{order_id}")
def get_order(order_id: str, user: dict = Depends(get_current_user), db=Depends(get_db)):
    return serialize(orders.get_order(db, order_id, user))


@app.post("/orders/{order_id}/cancel")
def cancel_order(order_id: str, payload: Optional[CancelRequest] = None,
                 user: dict = Depends(get_current_user), db=Depends(get_db)):
    order = orders.cancel_order(db, order_id, user, payload.reason if payload else None)
    return {"message": "Order cancelled successfully", "order": serialize(order)}


@app.put("/orders/{order_id}/status")
def update_order_status(order_id: str, payload: OrderStatusUpdate, user: dict = Depends(require_admin),
                        db=Depends(get_db)):
    order = orders.update_order_status(db, order_id, payload.status, payload.remarks)
    return {"message": "Order status updated successfully.", "order": serialize(order)}


@app.delete("/orders/{order_id}")
def delete_order(order_id: str, user: dict = Depends(require_admin), db=Depends(get_db)):
    orders.delete_order(db, order_id)
    return {"message": "Order deleted successfully."}


# Payments
@app.post("/payments/webhook")
async def payment_webhook(request: Request, x_webhook_signature: Optional[str] = Header(None), db=Depends(get_db)):
    body = await request.body()
    if not payments.verify_webhook_signature(PAYMENT_WEBHOOK_SECRET, body, x_webhook_signature):
        logger.warning("Rejected payment webhook from %s: bad or missing signature",
                       request.client.host if request.client else "unknown")
        raise HTTPException(status_code=401, detail="Invalid webhook signature")
    event = WebhookPayload.model_validate_json(body)
    payments.handle_webhook(db, event.payment_id, event.status, event.transaction_id)
    return {"message": "Payment status updated"}


@app.post("/payments", status_code=201)
def create_payment(payload: PaymentCreateRequest, user: dict = Depends(get_current_user), db=Depends(get_db)):
    payment = payments.attach_payment(db, payload.order_id, user, payload.payment_method_id, payload.metadata)
    return serialize(payment)


@app.get("/payments/{payment_id}")
def get_payment(payment_id: str, user: dict = Depends(get_current_user), db=Depends(get_db)):
    return serialize(payments.get_payment(db, payment_id, user))


@app.put("/payments/{payment_id}")
def update_payment_status(payment_id: str, payload: PaymentStatusUpdate, user: dict = Depends(require_admin),
                          db=Depends(get_db)):
    payment = payments.update_payment_status(db, payment_id, payload.status, payload.transaction_id)
    return {"message": "Payment updated successfully", "payment": serialize(payment)}


# Optional: seed sample catalog for demo
@app.post("/admin/seed")
def seed_catalog(user: dict = Depends(require_admin), db=Depends(get_db)):
    if db["product"].count_documents({}) > 0:
        return {"seeded": False, "message": "Products already exist"}
    samples = [
        {
            "name": "Classic Cotton Tee",
            "description": "Soft crew-neck t-shirt.",
            "base_price": 19.99,
            "quantity": 120,
            "images": ["https://images.unsplash.com/photo-1521572163474-6864f9cf17ab?q=80&w=1200&auto=format&fit=crop"],
            "category": "apparel",
            "tags": ["featured"],
            "variations": [
                {"name": "Size", "options": [
                    {"value": "M", "price_modifier": 0, "quantity": 60},
                    {"value": "XL", "price_modifier": 2, "quantity": 60},
                ]},
            ],
        },
        {
            "name": "Modern Phone Stand",
            "description": "Aluminum phone stand with cable management.",
            "base_price": 29.0,
            "quantity": 200,
            "images": ["https://images.unsplash.com/photo-1518770660439-4636190af475?q=80&w=1200&auto=format&fit=crop"],
            "category": "desk",
            "tags": ["new"],
        },
    ]
    for sample in samples:
        product = Product(**sample)
        doc = product.model_dump()
        doc["slug"] = unique_slug(db, product.name)
        create_document("product", doc, database=db)
    if db["delivery_pricing"].count_documents({}) == 0:
        create_document("delivery_pricing", DeliveryPricing(name="Inside City", region="City", price=60,
                                                            estimated_days=2), database=db)
        create_document("delivery_pricing", DeliveryPricing(name="Outside City", region="Outside", price=100,
                                                            estimated_days=5), database=db)
    return {"seeded": True, "count": len(samples)}


if __name__ == "__main__":
    import uvicorn
    logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO"),
                        format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
