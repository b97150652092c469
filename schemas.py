"""
API Schemas for the Pharmacy Store

Request bodies and response shapes. JSON uses camelCase keys; snake_case is
accepted on input as well. Vocabularies that the database stores as free-form
strings are closed enums here so bad values never reach the database.
"""
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator
from pydantic.alias_generators import to_camel


class ApiModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


# ----------------------- Vocabularies -----------------------
class OrderStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"


class PrescriptionStatus(str, Enum):
    PENDING = "pending"
    VERIFIED = "verified"
    REJECTED = "rejected"


class AdminPermissionName(str, Enum):
    EDIT_PRODUCTS = "edit_products"
    ADD_PRODUCTS = "add_products"
    VIEW_PRESCRIPTIONS = "view_prescriptions"
    MANAGE_USERS = "manage_users"
    MANAGE_ORDERS = "manage_orders"


# ----------------------- Users -----------------------
class UserOut(ApiModel):
    """A user as returned to clients. The password hash is never part of it."""

    id: str
    username: Optional[str] = None
    email: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    profile_image_url: Optional[str] = None
    is_admin: bool = False
    admin_role: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class AdminPermissionOut(ApiModel):
    id: str
    user_id: str
    permission: str
    created_at: Optional[datetime] = None


class UserWithPermissions(UserOut):
    admin_permissions: List[AdminPermissionOut] = []


class LoginBody(ApiModel):
    username: Optional[str] = None
    password: Optional[str] = None


class RegisterBody(ApiModel):
    username: Optional[str] = None
    email: Optional[EmailStr] = None
    password: Optional[str] = None


class ExternalLoginBody(ApiModel):
    token: str


class SetAdminBody(ApiModel):
    is_admin: bool
    role: Optional[str] = None


class PermissionBody(ApiModel):
    permission: AdminPermissionName


# ----------------------- Catalog -----------------------
class CategoryOut(ApiModel):
    id: str
    name: str
    slug: str
    description: Optional[str] = None
    created_at: Optional[datetime] = None


class BrandOut(ApiModel):
    id: str
    name: str
    description: Optional[str] = None
    created_at: Optional[datetime] = None


class ProductBase(ApiModel):
    name: str = Field(..., min_length=1, max_length=200)
    slug: str = Field(..., min_length=1, max_length=200)
    description: Optional[str] = None
    short_description: Optional[str] = None
    price: Decimal = Field(..., ge=0)
    original_price: Optional[Decimal] = Field(None, ge=0)
    dosage: Optional[str] = Field(None, max_length=50)
    category_id: Optional[str] = None
    brand_id: Optional[str] = None
    image_url: Optional[str] = None
    stock_quantity: int = Field(0, ge=0)
    requires_prescription: bool = False
    is_active: bool = True
    rating: Decimal = Field(Decimal("0"), ge=0, le=5)
    review_count: int = Field(0, ge=0)


class ProductCreateBody(ProductBase):
    pass


class ProductUpdateBody(ApiModel):
    name: Optional[str] = Field(None, min_length=1, max_length=200)
    slug: Optional[str] = Field(None, min_length=1, max_length=200)
    description: Optional[str] = None
    short_description: Optional[str] = None
    price: Optional[Decimal] = Field(None, ge=0)
    original_price: Optional[Decimal] = Field(None, ge=0)
    dosage: Optional[str] = Field(None, max_length=50)
    category_id: Optional[str] = None
    brand_id: Optional[str] = None
    image_url: Optional[str] = None
    stock_quantity: Optional[int] = Field(None, ge=0)
    requires_prescription: Optional[bool] = None
    is_active: Optional[bool] = None
    rating: Optional[Decimal] = Field(None, ge=0, le=5)
    review_count: Optional[int] = Field(None, ge=0)


class StockBody(ApiModel):
    quantity: int = Field(..., ge=0)


class ProductImageBody(BaseModel):
    imageURL: str
    productId: str


class ProductOut(ProductBase):
    id: str
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    category: Optional[CategoryOut] = None
    brand: Optional[BrandOut] = None


class ProductFilters(ApiModel):
    """Options understood by the product listing. Unset fields do not filter."""

    category_id: Optional[str] = None
    brand_id: Optional[str] = None
    search: Optional[str] = None
    min_price: Optional[float] = None
    max_price: Optional[float] = None
    in_stock: Optional[bool] = None
    limit: Optional[int] = Field(None, ge=0)
    offset: Optional[int] = Field(None, ge=0)


# ----------------------- Cart -----------------------
class CartItemOut(ApiModel):
    id: str
    user_id: str
    product_id: str
    quantity: int
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class CartItemWithProduct(CartItemOut):
    product: ProductOut


class CartAddBody(ApiModel):
    product_id: str
    quantity: int = Field(1, ge=1)


class CartQuantityBody(ApiModel):
    quantity: int = Field(..., ge=1)


# ----------------------- Orders -----------------------
class OrderItemIn(ApiModel):
    product_id: str
    quantity: int = Field(..., ge=1)
    price: Decimal = Field(..., ge=0)


class OrderIn(ApiModel):
    user_id: str
    order_number: str = Field(..., max_length=50)
    status: OrderStatus = OrderStatus.PENDING
    total_amount: Decimal = Field(..., ge=0)
    shipping_address: Optional[Dict[str, Any]] = None
    billing_address: Optional[Dict[str, Any]] = None
    payment_status: PaymentStatus = PaymentStatus.PENDING
    stripe_payment_intent_id: Optional[str] = None


class OrderLineBody(ApiModel):
    product_id: str
    quantity: int = Field(..., ge=1)


class OrderCreateBody(ApiModel):
    items: List[OrderLineBody] = Field(..., min_length=1)
    shipping_address: Optional[Dict[str, Any]] = None
    billing_address: Optional[Dict[str, Any]] = None


class OrderStatusBody(ApiModel):
    status: OrderStatus
    payment_status: Optional[PaymentStatus] = None


class OrderOut(ApiModel):
    id: str
    user_id: str
    order_number: str
    status: str
    total_amount: Decimal
    shipping_address: Optional[Dict[str, Any]] = None
    billing_address: Optional[Dict[str, Any]] = None
    payment_status: Optional[str] = None
    stripe_payment_intent_id: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class OrderItemOut(ApiModel):
    id: str
    order_id: str
    product_id: str
    quantity: int
    price: Decimal
    created_at: Optional[datetime] = None


class OrderItemWithProduct(OrderItemOut):
    product: ProductOut


class OrderWithItems(OrderOut):
    order_items: List[OrderItemWithProduct] = Field(default_factory=list)


# ----------------------- Prescriptions -----------------------
class PrescriptionSubmitBody(ApiModel):
    patient_name: str = Field(..., min_length=1, max_length=200)
    doctor_name: str = Field(..., min_length=1, max_length=200)
    doctor_contact: str = Field(..., min_length=1, max_length=100)
    prescription_date: datetime
    medications: Optional[str] = None
    image_urls: List[str] = []


class PrescriptionStatusBody(ApiModel):
    status: PrescriptionStatus
    review_notes: Optional[str] = None


class PrescriptionOut(ApiModel):
    id: str
    user_id: Optional[str] = None
    patient_name: str
    doctor_name: str
    doctor_contact: str
    prescription_date: datetime
    medications: Optional[str] = None
    image_urls: Optional[List[str]] = None
    status: str
    review_notes: Optional[str] = None
    reviewed_by: Optional[str] = None
    reviewed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class PrescriptionWithUser(PrescriptionOut):
    user: UserOut
    reviewer: Optional[UserOut] = None


# ----------------------- Seeding -----------------------
class CatalogItem(BaseModel):
    """One row of the external catalog export, keyed the way the export names its columns."""

    model_config = ConfigDict(populate_by_name=True)

    product_name: Optional[str] = Field(None, alias="ProductName")
    brand: Optional[str] = Field(None, alias="Brand")
    category: Optional[str] = Field(None, alias="Category")
    price: Optional[Decimal] = Field(None, alias="Price(Ghc)")
    image_url: Optional[str] = Field(None, alias="Direct_Link")

    @field_validator("price", mode="before")
    @classmethod
    def blank_price(cls, value):
        if isinstance(value, str) and not value.strip():
            return None
        return value


class SeedSummary(BaseModel):
    categories: int
    brands: int
    products: int
