import logging
import os
import secrets
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from auth import (
    create_token,
    decode_external_token,
    get_current_user,
    get_storage,
    hash_password,
    require_admin,
    require_permission,
    verify_password,
)
from database import Database
from models import User
from schemas import AdminPermissionName as Perm
from schemas import (
    AdminPermissionOut,
    BrandOut,
    CartAddBody,
    CartItemOut,
    CartItemWithProduct,
    CartQuantityBody,
    CategoryOut,
    ExternalLoginBody,
    LoginBody,
    OrderCreateBody,
    OrderIn,
    OrderItemIn,
    OrderOut,
    OrderStatusBody,
    PermissionBody,
    PrescriptionOut,
    PrescriptionStatusBody,
    PrescriptionSubmitBody,
    PrescriptionWithUser,
    ProductCreateBody,
    ProductFilters,
    ProductImageBody,
    ProductOut,
    ProductUpdateBody,
    RegisterBody,
    SetAdminBody,
    StockBody,
    UserOut,
    UserWithPermissions,
)
from seed import seed_catalog
from storage import Storage

logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO"),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)

START_TIME = time.monotonic()

router = APIRouter()


# ----------------------- Health -----------------------
@router.get("/")
def root():
    return {"message": "Pharmacy API running"}


@router.get("/test")
def test_database(request: Request):
    database = request.app.state.database
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": "✅ Set" if os.getenv("DATABASE_URL") else "❌ Not Set",
        "connection_status": "Not Connected",
        "tables": [],
    }
    try:
        database.ping()
        response["database"] = "✅ Connected & Working"
        response["connection_status"] = "Connected"
        response["tables"] = database.table_names()[:10]
    except SQLAlchemyError as e:
        response["database"] = f"❌ Error: {str(e)[:80]}"
    return response


@router.get("/api/health")
def health():
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "uptime": time.monotonic() - START_TIME,
        "environment": os.getenv("APP_ENV", "development"),
    }


# ----------------------- Auth -----------------------
@router.post("/api/auth/login")
def login(body: LoginBody, storage: Storage = Depends(get_storage)):
    if not body.username or not body.password:
        raise HTTPException(status_code=400, detail="Username and password are required")
    user = storage.get_user_by_username(body.username)
    if not user or not verify_password(body.password, user.password):
        raise HTTPException(status_code=401, detail="Invalid credentials")
    return {"message": "Login successful", "user": UserOut.model_validate(user), "token": create_token(user.id)}


@router.post("/api/auth/register")
def register(body: RegisterBody, storage: Storage = Depends(get_storage)):
    if not body.username or not body.email or not body.password:
        raise HTTPException(status_code=400, detail="All fields are required")
    if storage.get_user_by_username(body.username):
        raise HTTPException(status_code=400, detail="Username already exists")
    if storage.get_user_by_email(body.email):
        raise HTTPException(status_code=400, detail="Email already exists")
    user = storage.create_user(
        username=body.username,
        email=body.email,
        password=hash_password(body.password),
        is_admin=False,
    )
    return {"message": "Registration successful", "user": UserOut.model_validate(user), "token": create_token(user.id)}


@router.post("/api/auth/external")
def external_login(body: ExternalLoginBody, storage: Storage = Depends(get_storage)):
    claims = decode_external_token(body.token)
    data = {"id": claims["sub"]}
    for claim in ("email", "first_name", "last_name", "profile_image_url"):
        if claim in claims:
            data[claim] = claims[claim]
    user = storage.upsert_user(data)
    return {"message": "Login successful", "user": UserOut.model_validate(user), "token": create_token(user.id)}


@router.post("/api/auth/logout")
def logout(user: User = Depends(get_current_user)):
    # Tokens are stateless; the client drops its copy
    return {"message": "Logout successful"}


@router.get("/api/auth/user")
def current_user(user: User = Depends(get_current_user)):
    return {"user": UserOut.model_validate(user)}


# ----------------------- Catalog -----------------------
@router.get("/api/categories")
def list_categories(storage: Storage = Depends(get_storage)):
    return {"categories": [CategoryOut.model_validate(c) for c in storage.get_categories()]}


@router.get("/api/brands")
def list_brands(storage: Storage = Depends(get_storage)):
    return {"brands": [BrandOut.model_validate(b) for b in storage.get_brands()]}


@router.get("/api/products")
def list_products(
    category_id: Optional[str] = Query(None, alias="categoryId"),
    brand_id: Optional[str] = Query(None, alias="brandId"),
    search: Optional[str] = None,
    min_price: Optional[float] = Query(None, alias="minPrice"),
    max_price: Optional[float] = Query(None, alias="maxPrice"),
    in_stock: Optional[bool] = Query(None, alias="inStock"),
    limit: int = Query(50, ge=0),
    offset: int = Query(0, ge=0),
    storage: Storage = Depends(get_storage),
):
    filters = ProductFilters(
        category_id=category_id,
        brand_id=brand_id,
        search=search,
        min_price=min_price,
        max_price=max_price,
        in_stock=in_stock,
        limit=limit,
        offset=offset,
    )
    return {"products": [ProductOut.model_validate(p) for p in storage.get_products(filters)]}


@router.get("/api/products/slug/{slug}")
def get_product_by_slug(slug: str, storage: Storage = Depends(get_storage)):
    product = storage.get_product_by_slug(slug)
    if not product:
        raise HTTPException(status_code=404, detail="Product not found")
    return {"product": ProductOut.model_validate(product)}


@router.get("/api/products/{product_id}")
def get_product(product_id: str, storage: Storage = Depends(get_storage)):
    product = storage.get_product(product_id)
    if not product:
        raise HTTPException(status_code=404, detail="Product not found")
    return {"product": ProductOut.model_validate(product)}


# ----------------------- Cart -----------------------
@router.get("/api/cart")
def get_cart(user: User = Depends(get_current_user), storage: Storage = Depends(get_storage)):
    return {"items": [CartItemWithProduct.model_validate(i) for i in storage.get_cart_items(user.id)]}


@router.post("/api/cart")
def add_to_cart(body: CartAddBody, user: User = Depends(get_current_user), storage: Storage = Depends(get_storage)):
    product = storage.get_product(body.product_id)
    if not product or not product.is_active:
        raise HTTPException(status_code=404, detail="Product not found")
    item = storage.add_to_cart(user.id, body.product_id, body.quantity)
    return {"item": CartItemOut.model_validate(item)}


@router.put("/api/cart/{product_id}")
def update_cart_item(
    product_id: str,
    body: CartQuantityBody,
    user: User = Depends(get_current_user),
    storage: Storage = Depends(get_storage),
):
    item = storage.update_cart_item(user.id, product_id, body.quantity)
    if not item:
        raise HTTPException(status_code=404, detail="Cart item not found")
    return {"item": CartItemOut.model_validate(item)}


@router.delete("/api/cart/{product_id}")
def remove_from_cart(product_id: str, user: User = Depends(get_current_user), storage: Storage = Depends(get_storage)):
    storage.remove_from_cart(user.id, product_id)
    return {"success": True}


@router.delete("/api/cart")
def clear_cart(user: User = Depends(get_current_user), storage: Storage = Depends(get_storage)):
    storage.clear_cart(user.id)
    return {"success": True}


# ----------------------- Orders -----------------------
def generate_order_number() -> str:
    return f"ORD-{int(time.time() * 1000)}-{secrets.token_hex(3).upper()}"


@router.get("/api/orders")
def list_orders(user: User = Depends(get_current_user), storage: Storage = Depends(get_storage)):
    return {"orders": storage.get_orders(user.id)}


@router.get("/api/orders/{order_id}")
def get_order(order_id: str, user: User = Depends(get_current_user), storage: Storage = Depends(get_storage)):
    order = storage.get_order(order_id)
    if not order or (order.user_id != user.id and not user.is_admin):
        raise HTTPException(status_code=404, detail="Order not found")
    return {"order": order}


@router.post("/api/orders")
def create_order(body: OrderCreateBody, user: User = Depends(get_current_user), storage: Storage = Depends(get_storage)):
    items: List[OrderItemIn] = []
    total = Decimal("0")
    for line in body.items:
        product = storage.get_product(line.product_id)
        if not product or not product.is_active:
            raise HTTPException(status_code=404, detail=f"Product not found: {line.product_id}")
        if product.stock_quantity < line.quantity:
            raise HTTPException(status_code=400, detail=f"Insufficient stock for {product.name}")
        items.append(OrderItemIn(product_id=product.id, quantity=line.quantity, price=product.price))
        total += product.price * line.quantity

    order = OrderIn(
        user_id=user.id,
        order_number=generate_order_number(),
        total_amount=total,
        shipping_address=body.shipping_address,
        billing_address=body.billing_address,
    )
    created = storage.create_order(order, items)
    storage.clear_cart(user.id)
    logger.info("Order %s created for user %s", created.order_number, user.id)
    return {"order": created}


# ----------------------- Prescriptions -----------------------
@router.post("/api/prescriptions/submit")
def submit_prescription(
    body: PrescriptionSubmitBody,
    user: User = Depends(get_current_user),
    storage: Storage = Depends(get_storage),
):
    prescription = storage.create_prescription(user_id=user.id, **body.model_dump())
    return {"prescription": PrescriptionOut.model_validate(prescription)}


@router.get("/api/prescriptions")
def my_prescriptions(user: User = Depends(get_current_user), storage: Storage = Depends(get_storage)):
    return {"prescriptions": [PrescriptionWithUser.model_validate(p) for p in storage.get_prescriptions(user.id)]}


# ----------------------- Admin -----------------------
@router.get("/api/admin/me")
def admin_me(admin: User = Depends(require_admin), storage: Storage = Depends(get_storage)):
    return {"user": UserWithPermissions.model_validate(storage.get_user_with_permissions(admin.id))}


@router.get("/api/admin/products")
def admin_list_products(
    admin: User = Depends(require_permission(Perm.EDIT_PRODUCTS)),
    storage: Storage = Depends(get_storage),
):
    return {"products": [ProductOut.model_validate(p) for p in storage.get_products()]}


@router.post("/api/admin/products")
def admin_create_product(
    body: ProductCreateBody,
    admin: User = Depends(require_permission(Perm.ADD_PRODUCTS)),
    storage: Storage = Depends(get_storage),
):
    product = storage.create_product(**body.model_dump())
    return {"product": ProductOut.model_validate(storage.get_product(product.id))}


@router.put("/api/admin/products/{product_id}")
def admin_update_product(
    product_id: str,
    body: ProductUpdateBody,
    admin: User = Depends(require_permission(Perm.EDIT_PRODUCTS)),
    storage: Storage = Depends(get_storage),
):
    product = storage.update_product(product_id, body.model_dump(exclude_unset=True))
    if not product:
        raise HTTPException(status_code=404, detail="Product not found")
    return {"product": ProductOut.model_validate(storage.get_product(product_id))}


@router.put("/api/admin/products/{product_id}/stock")
def admin_update_stock(
    product_id: str,
    body: StockBody,
    admin: User = Depends(require_permission(Perm.EDIT_PRODUCTS)),
    storage: Storage = Depends(get_storage),
):
    product = storage.update_product_stock(product_id, body.quantity)
    if not product:
        raise HTTPException(status_code=404, detail="Product not found")
    return {"product": ProductOut.model_validate(storage.get_product(product_id))}


@router.delete("/api/admin/products/{product_id}")
def admin_delete_product(
    product_id: str,
    admin: User = Depends(require_permission(Perm.EDIT_PRODUCTS)),
    storage: Storage = Depends(get_storage),
):
    storage.delete_product(product_id)
    return {"success": True}


@router.put("/api/admin/product-images")
def admin_set_product_image(
    body: ProductImageBody,
    admin: User = Depends(require_permission(Perm.EDIT_PRODUCTS)),
    storage: Storage = Depends(get_storage),
):
    if not storage.update_product(body.productId, {"image_url": body.imageURL}):
        raise HTTPException(status_code=404, detail="Product not found")
    return {"objectPath": body.imageURL}


@router.post("/api/admin/catalog/seed")
def admin_seed_catalog(
    items: List[Dict[str, Any]],
    clear: bool = False,
    admin: User = Depends(require_permission(Perm.ADD_PRODUCTS)),
    storage: Storage = Depends(get_storage),
):
    if clear:
        storage.clear_all_data()
    return seed_catalog(storage, items)


@router.get("/api/admin/prescriptions")
def admin_list_prescriptions(
    admin: User = Depends(require_permission(Perm.VIEW_PRESCRIPTIONS)),
    storage: Storage = Depends(get_storage),
):
    return {"prescriptions": [PrescriptionWithUser.model_validate(p) for p in storage.get_prescriptions()]}


@router.get("/api/admin/prescriptions/{prescription_id}")
def admin_get_prescription(
    prescription_id: str,
    admin: User = Depends(require_permission(Perm.VIEW_PRESCRIPTIONS)),
    storage: Storage = Depends(get_storage),
):
    prescription = storage.get_prescription(prescription_id)
    if not prescription:
        raise HTTPException(status_code=404, detail="Prescription not found")
    return {"prescription": PrescriptionWithUser.model_validate(prescription)}


@router.put("/api/admin/prescriptions/{prescription_id}/status")
def admin_review_prescription(
    prescription_id: str,
    body: PrescriptionStatusBody,
    admin: User = Depends(require_permission(Perm.VIEW_PRESCRIPTIONS)),
    storage: Storage = Depends(get_storage),
):
    prescription = storage.update_prescription_status(prescription_id, body.status.value, body.review_notes, admin.id)
    if not prescription:
        raise HTTPException(status_code=404, detail="Prescription not found")
    return {"prescription": PrescriptionOut.model_validate(prescription)}


@router.get("/api/admin/users/{user_id}")
def admin_get_user(
    user_id: str,
    admin: User = Depends(require_permission(Perm.MANAGE_USERS)),
    storage: Storage = Depends(get_storage),
):
    user = storage.get_user_with_permissions(user_id)
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    return {"user": UserWithPermissions.model_validate(user)}


@router.post("/api/admin/users/{user_id}/admin")
def admin_set_admin(
    user_id: str,
    body: SetAdminBody,
    admin: User = Depends(require_permission(Perm.MANAGE_USERS)),
    storage: Storage = Depends(get_storage),
):
    user = storage.set_user_admin(user_id, body.is_admin, body.role)
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    return {"user": UserOut.model_validate(user)}


@router.post("/api/admin/users/{user_id}/permissions")
def admin_add_permission(
    user_id: str,
    body: PermissionBody,
    admin: User = Depends(require_permission(Perm.MANAGE_USERS)),
    storage: Storage = Depends(get_storage),
):
    if not storage.get_user(user_id):
        raise HTTPException(status_code=404, detail="User not found")
    grant = storage.add_admin_permission(user_id, body.permission.value)
    return {"adminPermission": AdminPermissionOut.model_validate(grant)}


@router.delete("/api/admin/users/{user_id}/permissions/{permission}")
def admin_remove_permission(
    user_id: str,
    permission: Perm,
    admin: User = Depends(require_permission(Perm.MANAGE_USERS)),
    storage: Storage = Depends(get_storage),
):
    storage.remove_admin_permission(user_id, permission.value)
    return {"success": True}


@router.put("/api/admin/orders/{order_id}/status")
def admin_update_order_status(
    order_id: str,
    body: OrderStatusBody,
    admin: User = Depends(require_permission(Perm.MANAGE_ORDERS)),
    storage: Storage = Depends(get_storage),
):
    payment_status = body.payment_status.value if body.payment_status else None
    order = storage.update_order_status(order_id, body.status.value, payment_status)
    if not order:
        raise HTTPException(status_code=404, detail="Order not found")
    return {"order": OrderOut.model_validate(order)}


# ----------------------- Application -----------------------
async def handle_integrity_error(request: Request, exc: IntegrityError):
    logger.warning("Integrity error on %s %s: %s", request.method, request.url.path, exc.orig)
    return JSONResponse(status_code=409, content={"detail": "Conflict with existing data"})


async def handle_database_error(request: Request, exc: SQLAlchemyError):
    logger.exception("Database error on %s %s", request.method, request.url.path)
    return JSONResponse(status_code=500, content={"detail": "Internal server error"})


def create_app(database: Optional[Database] = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        db = database or Database()
        db.create_all()
        app.state.database = db
        logger.info("Database ready")
        try:
            yield
        finally:
            db.dispose()

    app = FastAPI(title="Pharmacy Backend", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(IntegrityError, handle_integrity_error)
    app.add_exception_handler(SQLAlchemyError, handle_database_error)
    app.include_router(router)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
