import base64
import logging
import os
import time
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Optional, List, Dict, Any

from fastapi import FastAPI, APIRouter, Depends, File, UploadFile, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, EmailStr, Field, HttpUrl, model_validator
from pymongo.database import Database

import catalog
import config
import database
import orders
from database import get_db, create_document, serialize_doc, to_object_id, ensure_indexes
from errors import AppError, ok, pagination, register_exception_handlers
from schemas import Address, Color, Dimensions, OrderStatus, PaymentStatus, PaymentMethod, Upload, SLUG
from security import (
    AuthSession,
    auth_limiter,
    create_access_token,
    create_refresh_token,
    decode_refresh_token,
    general_limiter,
    get_optional_session,
    get_session,
    hash_password,
    require_admin,
    verify_password,
)
from seed import seed_database

logging.basicConfig(level=config.LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger("luxora")

OBJECT_ID = r"^[0-9a-fA-F]{24}$"
ALLOWED_IMAGE_TYPES = {"image/jpeg": {"jpg", "jpeg"}, "image/png": {"png"}, "image/webp": {"webp"}}
ACCESS_COOKIE_MAX_AGE = config.JWT_EXPIRES_MIN * 60
REFRESH_COOKIE_MAX_AGE = config.JWT_REFRESH_EXPIRES_DAYS * 24 * 60 * 60


@asynccontextmanager
async def lifespan(app: FastAPI):
    if database.db is not None:
        ensure_indexes(database.db)
    yield


# App setup
app = FastAPI(title="Luxora Boutique API", version="1.0.0", lifespan=lifespan,
              dependencies=[Depends(general_limiter)])
app.add_middleware(
    CORSMiddleware,
    allow_origins=config.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Requested-With"],
)
register_exception_handlers(app)

api = APIRouter(prefix="/api/v1")


@app.middleware("http")
async def log_requests(request: Request, call_next):
    started = time.perf_counter()
    response = await call_next(request)
    elapsed_ms = (time.perf_counter() - started) * 1000
    logger.info("%s %s %s %.1fms", request.method, request.url.path, response.status_code, elapsed_ms)
    return response


# Schemas (request/response)
class RegisterRequest(BaseModel):
    name: str = Field(..., min_length=2, max_length=50)
    email: EmailStr
    password: str = Field(..., min_length=6)


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class RefreshRequest(BaseModel):
    refresh_token: Optional[str] = None


class ProfileUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=2, max_length=50)
    phone: Optional[str] = None
    avatar: Optional[str] = None
    address: Optional[str] = None


class ProductIn(BaseModel):
    title: str = Field(..., min_length=3, max_length=200)
    slug: str = Field(..., pattern=SLUG)
    description: str = Field(..., min_length=10, max_length=2000)
    price: float = Field(..., ge=0)
    compare_price: Optional[float] = Field(None, ge=0)
    images: List[HttpUrl] = Field(..., min_length=1, max_length=10)
    category: str = Field(..., pattern=OBJECT_ID)
    sizes: List[str] = Field(..., min_length=1)
    colors: List[Color] = Field(..., min_length=1)
    in_stock: int = Field(..., ge=0)
    sku: str
    featured: bool = False
    tags: List[str] = []
    weight: Optional[float] = Field(None, ge=0)
    dimensions: Optional[Dimensions] = None
    seo_title: Optional[str] = Field(None, max_length=60)
    seo_description: Optional[str] = Field(None, max_length=160)

    @model_validator(mode="after")
    def check_compare_price(self):
        if self.compare_price and self.compare_price <= self.price:
            raise ValueError("Compare price must be greater than regular price")
        return self


class ProductUpdate(BaseModel):
    title: Optional[str] = Field(None, min_length=3, max_length=200)
    slug: Optional[str] = Field(None, pattern=SLUG)
    description: Optional[str] = Field(None, min_length=10, max_length=2000)
    price: Optional[float] = Field(None, ge=0)
    compare_price: Optional[float] = Field(None, ge=0)
    images: Optional[List[HttpUrl]] = Field(None, min_length=1, max_length=10)
    category: Optional[str] = Field(None, pattern=OBJECT_ID)
    sizes: Optional[List[str]] = Field(None, min_length=1)
    colors: Optional[List[Color]] = Field(None, min_length=1)
    in_stock: Optional[int] = Field(None, ge=0)
    sku: Optional[str] = None
    featured: Optional[bool] = None
    is_active: Optional[bool] = None
    tags: Optional[List[str]] = None
    weight: Optional[float] = Field(None, ge=0)
    dimensions: Optional[Dimensions] = None
    seo_title: Optional[str] = Field(None, max_length=60)
    seo_description: Optional[str] = Field(None, max_length=160)


class CategoryIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    slug: str = Field(..., pattern=SLUG)
    description: Optional[str] = Field(None, max_length=500)
    image: Optional[str] = None
    is_active: bool = True
    sort_order: int = 0


class CategoryUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    slug: Optional[str] = Field(None, pattern=SLUG)
    description: Optional[str] = Field(None, max_length=500)
    image: Optional[str] = None
    is_active: Optional[bool] = None
    sort_order: Optional[int] = None


class CartItemIn(BaseModel):
    product: str = Field(..., pattern=OBJECT_ID)
    quantity: int = Field(..., ge=1)
    size: str = Field(..., min_length=1)
    color: str = Field(..., min_length=1)


class CreateOrderRequest(BaseModel):
    items: List[CartItemIn] = Field(..., min_length=1)
    shipping_address: Address
    billing_address: Optional[Address] = None
    payment_method: PaymentMethod
    notes: Optional[str] = Field(None, max_length=500)
    order_number: Optional[str] = Field(None, min_length=1, max_length=40)


class StatusUpdate(BaseModel):
    status: OrderStatus
    tracking_number: Optional[str] = None


class PaymentUpdate(BaseModel):
    payment_status: PaymentStatus
    payment_id: Optional[str] = None


def public_user(user: dict) -> Dict[str, Any]:
    hidden = {"hashed_password", "refresh_token", "token_version"}
    return serialize_doc({k: v for k, v in user.items() if k not in hidden})


def set_auth_cookies(response: Response, access_token: str, refresh_token: Optional[str] = None):
    secure = config.ENVIRONMENT == "production"
    response.set_cookie("access_token", access_token, max_age=ACCESS_COOKIE_MAX_AGE,
                        httponly=True, secure=secure, samesite="strict")
    if refresh_token:
        response.set_cookie("refresh_token", refresh_token, max_age=REFRESH_COOKIE_MAX_AGE,
                            httponly=True, secure=secure, samesite="strict")


def issue_tokens(db: Database, user: dict, response: Response) -> str:
    access_token = create_access_token(user)
    refresh_token = create_refresh_token(user)
    db["user"].update_one({"_id": user["_id"]}, {"$set": {"refresh_token": refresh_token}})
    set_auth_cookies(response, access_token, refresh_token)
    return access_token


# Health and helpers
@app.get("/")
def root():
    return {
        "success": True,
        "message": "Welcome to Luxora Boutique API",
        "version": app.version,
        "documentation": "/api/v1/health",
    }


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


@api.get("/health")
def health():
    return {
        "success": True,
        "message": "Luxora API is running",
        "timestamp": datetime.utcnow().isoformat(),
        "environment": config.ENVIRONMENT,
    }


# Auth
@api.post("/auth/register", status_code=201, dependencies=[Depends(auth_limiter)])
def register(payload: RegisterRequest, response: Response, db: Database = Depends(get_db)):
    email = payload.email.lower()
    if db["user"].find_one({"email": email}):
        raise AppError("User already exists with this email", 400)
    now = datetime.utcnow()
    doc = {
        "name": payload.name,
        "email": email,
        "hashed_password": hash_password(payload.password),
        "is_admin": False,
        "token_version": 0,
        "created_at": now,
        "updated_at": now,
    }
    inserted_id = db["user"].insert_one(doc).inserted_id
    user = db["user"].find_one({"_id": inserted_id})
    access_token = issue_tokens(db, user, response)
    return ok("User registered successfully", {"user": public_user(user), "access_token": access_token})


@api.post("/auth/login", dependencies=[Depends(auth_limiter)])
def login(payload: LoginRequest, response: Response, db: Database = Depends(get_db)):
    user = db["user"].find_one({"email": payload.email.lower()})
    if not user or not verify_password(payload.password, user.get("hashed_password", "")):
        raise AppError("Invalid email or password", 401)
    access_token = issue_tokens(db, user, response)
    return ok("Login successful", {"user": public_user(user), "access_token": access_token})


@api.post("/auth/refresh-token")
def refresh(request: Request, response: Response, payload: Optional[RefreshRequest] = None,
            db: Database = Depends(get_db)):
    token = (payload.refresh_token if payload else None) or request.cookies.get("refresh_token")
    if not token:
        raise AppError("Refresh token is required", 401)
    claims = decode_refresh_token(token)
    user = db["user"].find_one({"_id": to_object_id(claims["sub"])})
    if not user or user.get("refresh_token") != token or claims.get("ver", 0) != user.get("token_version", 0):
        raise AppError("Invalid or expired refresh token", 401)
    access_token = create_access_token(user)
    set_auth_cookies(response, access_token)
    return ok("Token refreshed successfully", {"access_token": access_token})


@api.post("/auth/logout")
def logout(response: Response, session: AuthSession = Depends(get_session), db: Database = Depends(get_db)):
    db["user"].update_one(
        {"_id": session.user_id},
        {"$set": {"refresh_token": None, "updated_at": datetime.utcnow()}, "$inc": {"token_version": 1}},
    )
    response.delete_cookie("access_token")
    response.delete_cookie("refresh_token")
    return ok("Logout successful")


@api.get("/auth/profile")
def get_profile(session: AuthSession = Depends(get_session)):
    return ok("Profile retrieved successfully", public_user(session.user))


@api.patch("/auth/profile")
def update_profile(payload: ProfileUpdate, session: AuthSession = Depends(get_session),
                   db: Database = Depends(get_db)):
    update = payload.model_dump(exclude_unset=True)
    update["updated_at"] = datetime.utcnow()
    db["user"].update_one({"_id": session.user_id}, {"$set": update})
    user = db["user"].find_one({"_id": session.user_id})
    return ok("Profile updated successfully", public_user(user))


# Products
@api.get("/products")
def list_products(page: int = 1, limit: int = 12, category: Optional[str] = None, featured: Optional[bool] = None,
                  min_price: Optional[float] = None, max_price: Optional[float] = None,
                  sizes: Optional[str] = None, colors: Optional[str] = None, search: Optional[str] = None,
                  sort: Optional[str] = None, db: Database = Depends(get_db)):
    page, limit = max(page, 1), max(limit, 1)
    items, total = catalog.list_products(
        db, page=page, limit=limit, category=category, featured=featured,
        min_price=min_price, max_price=max_price,
        sizes=sizes.split(",") if sizes else None,
        colors=colors.split(",") if colors else None,
        search=search, sort=sort,
    )
    return ok("Products retrieved successfully", items, pagination(page, limit, total))


@api.get("/products/featured")
def featured_products(limit: int = 8, db: Database = Depends(get_db)):
    return ok("Featured products retrieved successfully", catalog.get_featured_products(db, limit))


@api.get("/products/slug/{slug}")
def product_by_slug(slug: str, db: Database = Depends(get_db)):
    return ok("Product retrieved successfully", catalog.get_product_by_slug(db, slug))


@api.get("/products/{product_id}")
def product_by_id(product_id: str, db: Database = Depends(get_db)):
    return ok("Product retrieved successfully", catalog.get_product_by_id(db, product_id))


@api.get("/products/{product_id}/related/{category_id}")
def related_products(product_id: str, category_id: str, limit: int = 4, db: Database = Depends(get_db)):
    return ok("Related products retrieved successfully",
              catalog.get_related_products(db, product_id, category_id, limit))


@api.post("/products", status_code=201, dependencies=[Depends(require_admin)])
def create_product(payload: ProductIn, db: Database = Depends(get_db)):
    return ok("Product created successfully", catalog.create_product(db, payload.model_dump(mode="json")))


@api.patch("/products/{product_id}", dependencies=[Depends(require_admin)])
def update_product(product_id: str, payload: ProductUpdate, db: Database = Depends(get_db)):
    data = payload.model_dump(mode="json", exclude_unset=True)
    return ok("Product updated successfully", catalog.update_product(db, product_id, data))


@api.delete("/products/{product_id}", dependencies=[Depends(require_admin)])
def delete_product(product_id: str, db: Database = Depends(get_db)):
    catalog.delete_product(db, product_id)
    return ok("Product deleted successfully")


# Categories
@api.get("/categories")
def list_categories(db: Database = Depends(get_db)):
    return ok("Categories retrieved successfully", catalog.list_categories(db))


@api.get("/categories/{slug}")
def category_by_slug(slug: str, db: Database = Depends(get_db)):
    return ok("Category retrieved successfully", catalog.get_category_by_slug(db, slug))


@api.post("/categories", status_code=201, dependencies=[Depends(require_admin)])
def create_category(payload: CategoryIn, db: Database = Depends(get_db)):
    return ok("Category created successfully", catalog.create_category(db, payload.model_dump()))


@api.patch("/categories/{category_id}", dependencies=[Depends(require_admin)])
def update_category(category_id: str, payload: CategoryUpdate, db: Database = Depends(get_db)):
    data = payload.model_dump(exclude_unset=True)
    return ok("Category updated successfully", catalog.update_category(db, category_id, data))


@api.delete("/categories/{category_id}", dependencies=[Depends(require_admin)])
def delete_category(category_id: str, db: Database = Depends(get_db)):
    catalog.delete_category(db, category_id)
    return ok("Category deleted successfully")


# Checkout & Orders
@api.post("/orders", status_code=201)
def create_order(payload: CreateOrderRequest, session: Optional[AuthSession] = Depends(get_optional_session),
                 db: Database = Depends(get_db)):
    order = orders.create_order(db, payload.model_dump(), user=session.user if session else None)
    return ok("Order created successfully", order)


@api.get("/orders/number/{order_number}")
def order_by_number(order_number: str, db: Database = Depends(get_db)):
    return ok("Order retrieved successfully", orders.get_order_by_number(db, order_number))


@api.get("/orders/my-orders")
def my_orders(page: int = 1, limit: int = 10, status: Optional[OrderStatus] = None,
              start_date: Optional[datetime] = None, end_date: Optional[datetime] = None,
              session: AuthSession = Depends(get_session), db: Database = Depends(get_db)):
    page, limit = max(page, 1), max(limit, 1)
    items, total = orders.list_user_orders(db, session.user_id, page=page, limit=limit, status=status,
                                           start_date=start_date, end_date=end_date)
    return ok("User orders retrieved successfully", items, pagination(page, limit, total))


@api.get("/orders", dependencies=[Depends(require_admin)])
def list_orders(page: int = 1, limit: int = 10, status: Optional[OrderStatus] = None,
                payment_status: Optional[PaymentStatus] = None, customer: Optional[str] = None,
                start_date: Optional[datetime] = None, end_date: Optional[datetime] = None,
                db: Database = Depends(get_db)):
    page, limit = max(page, 1), max(limit, 1)
    items, total = orders.list_orders(db, page=page, limit=limit, status=status, payment_status=payment_status,
                                      customer=customer, start_date=start_date, end_date=end_date)
    return ok("Orders retrieved successfully", items, pagination(page, limit, total))


@api.get("/orders/stats", dependencies=[Depends(require_admin)])
def order_stats(db: Database = Depends(get_db)):
    return ok("Order statistics retrieved successfully", orders.get_order_stats(db))


@api.get("/orders/{order_id}", dependencies=[Depends(require_admin)])
def order_by_id(order_id: str, db: Database = Depends(get_db)):
    return ok("Order retrieved successfully", orders.get_order_by_id(db, order_id))


@api.patch("/orders/{order_id}/status", dependencies=[Depends(require_admin)])
def update_order_status(order_id: str, payload: StatusUpdate, db: Database = Depends(get_db)):
    order = orders.update_order_status(db, order_id, payload.status, payload.tracking_number)
    return ok("Order status updated successfully", order)


@api.patch("/orders/{order_id}/payment", dependencies=[Depends(require_admin)])
def update_payment_status(order_id: str, payload: PaymentUpdate, db: Database = Depends(get_db)):
    order = orders.update_payment_status(db, order_id, payload.payment_status, payload.payment_id)
    return ok("Payment status updated successfully", order)


# Uploads
@api.post("/upload", dependencies=[Depends(get_session)])
async def upload_image(image: UploadFile = File(...), db: Database = Depends(get_db)):
    extension = (image.filename or "").rsplit(".", 1)[-1].lower()
    if extension not in ALLOWED_IMAGE_TYPES.get(image.content_type or "", set()):
        raise AppError("Only image files (jpeg, jpg, png, webp) are allowed!", 400)
    content = await image.read()
    if not content:
        raise AppError("Please upload an image", 400)
    if len(content) > config.MAX_UPLOAD_MB * 1024 * 1024:
        raise AppError(f"Image exceeds the {config.MAX_UPLOAD_MB}MB limit", 400)
    doc = Upload(
        filename=image.filename,
        content_type=image.content_type,
        size=len(content),
        data_b64=base64.b64encode(content).decode("utf-8"),
    )
    upload_id = create_document(db, "upload", doc)
    return {"success": True, "url": f"{api.prefix}/upload/{upload_id}", "public_id": upload_id}


@api.get("/upload/{public_id}")
def get_image(public_id: str, db: Database = Depends(get_db)):
    doc = db["upload"].find_one({"_id": to_object_id(public_id)})
    if not doc:
        raise AppError("Image not found", 404)
    return Response(content=base64.b64decode(doc["data_b64"]), media_type=doc["content_type"])


@api.delete("/upload/{public_id}", dependencies=[Depends(get_session)])
def delete_image(public_id: str, db: Database = Depends(get_db)):
    result = db["upload"].delete_one({"_id": to_object_id(public_id)})
    if result.deleted_count == 0:
        raise AppError("Image not found", 404)
    return ok("Image deleted successfully")


# Demo data
@api.post("/admin/seed", dependencies=[Depends(require_admin)])
def seed_products(db: Database = Depends(get_db)):
    if db["product"].count_documents({}) > 0:
        return ok("Products already exist", {"seeded": False})
    return ok("Database seeded", dict(seed_database(db), seeded=True))


app.include_router(api)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=config.PORT)
