"""
Database Schemas for the Luxora storefront

Each Pydantic model corresponds to a MongoDB collection. The collection name is the lowercase of the class name.

Example: class Product -> collection "product"
"""
from typing import List, Optional, Literal
from pydantic import BaseModel, Field, EmailStr, ConfigDict, field_validator, model_validator
from bson import ObjectId

ORDER_STATUSES = ("pending", "processing", "shipped", "delivered", "cancelled", "refunded")
PAYMENT_STATUSES = ("pending", "paid", "failed", "refunded")
PAYMENT_METHODS = ("card", "paypal", "bank_transfer", "cash_on_delivery")

OrderStatus = Literal["pending", "processing", "shipped", "delivered", "cancelled", "refunded"]
PaymentStatus = Literal["pending", "paid", "failed", "refunded"]
PaymentMethod = Literal["card", "paypal", "bank_transfer", "cash_on_delivery"]

HEX_COLOR = r"^#([A-Fa-f0-9]{6}|[A-Fa-f0-9]{3})$"
SLUG = r"^[a-z0-9-]+$"


class MongoModel(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)


# Users

class User(MongoModel):
    name: str = Field(..., min_length=2, max_length=50)
    email: EmailStr
    hashed_password: str
    is_admin: bool = False
    phone: Optional[str] = None
    avatar: Optional[str] = None
    address: Optional[str] = None
    refresh_token: Optional[str] = None
    token_version: int = 0

    @field_validator("email")
    @classmethod
    def lower_email(cls, v: str) -> str:
        return v.strip().lower()


# Catalog

class Category(MongoModel):
    name: str = Field(..., min_length=1, max_length=100)
    slug: str = Field(..., pattern=SLUG)
    description: Optional[str] = Field(None, max_length=500)
    image: Optional[str] = None
    is_active: bool = True
    sort_order: int = 0


class Color(BaseModel):
    name: str = Field(..., min_length=1)
    hex: str = Field(..., pattern=HEX_COLOR)


class Dimensions(BaseModel):
    length: float = Field(..., ge=0)
    width: float = Field(..., ge=0)
    height: float = Field(..., ge=0)


class Product(MongoModel):
    title: str = Field(..., min_length=3, max_length=200)
    slug: str = Field(..., pattern=SLUG)
    description: str = Field(..., min_length=10, max_length=2000)
    price: float = Field(..., ge=0)
    compare_price: Optional[float] = Field(None, ge=0)
    images: List[str] = Field(..., min_length=1, max_length=10)
    category: ObjectId
    sizes: List[str] = Field(..., min_length=1)
    colors: List[Color] = Field(..., min_length=1)
    in_stock: int = Field(0, ge=0)
    sku: str
    featured: bool = False
    is_active: bool = True
    tags: List[str] = Field(default_factory=list)
    weight: Optional[float] = Field(None, ge=0)
    dimensions: Optional[Dimensions] = None
    seo_title: Optional[str] = Field(None, max_length=60)
    seo_description: Optional[str] = Field(None, max_length=160)

    @field_validator("sku")
    @classmethod
    def upper_sku(cls, v: str) -> str:
        return v.strip().upper()

    @model_validator(mode="after")
    def check_compare_price(self):
        if self.compare_price and self.compare_price <= self.price:
            raise ValueError("Compare price must be greater than regular price")
        return self


# Orders

class Address(BaseModel):
    first_name: str
    last_name: str
    email: EmailStr
    phone: str
    street: str
    city: str
    state: str
    zip_code: str
    country: str = "USA"


class OrderItem(MongoModel):
    """Snapshot of a product line taken when the order is placed."""
    product: ObjectId
    title: str
    price: float = Field(..., ge=0)
    quantity: int = Field(..., ge=1)
    size: str
    color: str
    image: str


class Customer(MongoModel):
    user: Optional[ObjectId] = None
    name: str
    email: str
    phone: Optional[str] = None


class Order(MongoModel):
    order_number: str
    customer: Customer
    items: List[OrderItem] = Field(..., min_length=1)
    subtotal: float = Field(..., ge=0)
    tax: float = Field(0, ge=0)
    shipping: float = Field(0, ge=0)
    discount: float = Field(0, ge=0)
    total: float = Field(..., ge=0)
    status: OrderStatus = "pending"
    payment_status: PaymentStatus = "pending"
    payment_method: PaymentMethod
    payment_id: Optional[str] = None
    shipping_address: Address
    billing_address: Optional[Address] = None
    tracking_number: Optional[str] = None
    notes: Optional[str] = Field(None, max_length=500)


# Uploaded images

class Upload(BaseModel):
    filename: str
    content_type: str
    size: int
    data_b64: str = Field(..., description="Base64-encoded file contents")
