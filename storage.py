"""
Data access layer.

One method per business operation, each a direct query through the ORM session.
Lookups of a single row return None when nothing matches; persistence errors are
left to propagate to the caller.
"""
import logging
from collections import OrderedDict
from typing import Any, Dict, Iterable, List, Optional, Union

from sqlalchemy import delete, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session, contains_eager, joinedload, selectinload

from models import (
    AdminPermission,
    Brand,
    CartItem,
    Category,
    Order,
    OrderItem,
    Prescription,
    Product,
    User,
    new_id,
    utcnow,
)
from schemas import (
    OrderIn,
    OrderItemIn,
    OrderItemWithProduct,
    OrderWithItems,
    ProductFilters,
)

logger = logging.getLogger(__name__)

_UPSERT_DIALECTS = {"postgresql": postgresql.insert, "sqlite": sqlite.insert}


def _product_with_relations():
    return select(Product).options(joinedload(Product.category), joinedload(Product.brand))


def _fold_orders(rows: Iterable) -> List[OrderWithItems]:
    """Group (order, item, product) rows by order id, keeping first-seen order."""
    grouped: "OrderedDict[str, OrderWithItems]" = OrderedDict()
    for order, item, product in rows:
        if order.id not in grouped:
            grouped[order.id] = OrderWithItems.model_validate(order)
        if item is not None and product is not None:
            grouped[order.id].order_items.append(OrderItemWithProduct.model_validate(item))
    return list(grouped.values())


class Storage:
    def __init__(self, session: Session):
        self.session = session

    def _commit(self, *instances):
        self.session.commit()
        for instance in instances:
            self.session.refresh(instance)

    # ----------------------- Users -----------------------
    def get_user(self, user_id: str) -> Optional[User]:
        return self.session.get(User, user_id)

    get_user_by_id = get_user

    def get_user_by_username(self, username: str) -> Optional[User]:
        return self.session.scalars(select(User).where(User.username == username)).first()

    def get_user_by_email(self, email: str) -> Optional[User]:
        return self.session.scalars(select(User).where(User.email == email)).first()

    def create_user(self, **data) -> User:
        now = utcnow()
        user = User(
            id=data.get("id") or new_id(),
            username=data.get("username"),
            email=data.get("email"),
            password=data.get("password"),
            first_name=data.get("first_name"),
            last_name=data.get("last_name"),
            profile_image_url=data.get("profile_image_url"),
            is_admin=data.get("is_admin") or False,
            admin_role=data.get("admin_role"),
            created_at=now,
            updated_at=now,
        )
        self.session.add(user)
        self._commit(user)
        return user

    def upsert_user(self, data: Dict[str, Any]) -> User:
        """Insert a user, or overwrite the provided fields when the id already exists."""
        user = self.session.get(User, data["id"]) if data.get("id") else None
        if user is None:
            user = User(**data)
            self.session.add(user)
        else:
            for key, value in data.items():
                setattr(user, key, value)
            user.updated_at = utcnow()
        self._commit(user)
        return user

    def update_user_stripe_info(self, user_id: str, stripe_customer_id: str, stripe_subscription_id: str) -> Optional[User]:
        user = self.session.get(User, user_id)
        if user is None:
            return None
        user.stripe_customer_id = stripe_customer_id
        user.stripe_subscription_id = stripe_subscription_id
        user.updated_at = utcnow()
        self._commit(user)
        return user

    # ----------------------- Admin -----------------------
    def get_user_with_permissions(self, user_id: str) -> Optional[User]:
        stmt = select(User).options(selectinload(User.admin_permissions)).where(User.id == user_id)
        return self.session.scalars(stmt).first()

    def set_user_admin(self, user_id: str, is_admin: bool, role: Optional[str] = None) -> Optional[User]:
        # An omitted role is written as None: the role always travels with the flag
        user = self.session.get(User, user_id)
        if user is None:
            return None
        user.is_admin = is_admin
        user.admin_role = role
        user.updated_at = utcnow()
        self._commit(user)
        return user

    def add_admin_permission(self, user_id: str, permission: str) -> AdminPermission:
        grant = AdminPermission(user_id=user_id, permission=permission)
        self.session.add(grant)
        self._commit(grant)
        return grant

    def remove_admin_permission(self, user_id: str, permission: str) -> None:
        self.session.execute(
            delete(AdminPermission).where(
                AdminPermission.user_id == user_id, AdminPermission.permission == permission
            )
        )
        self.session.commit()

    def has_admin_permission(self, user_id: str, permission: str) -> bool:
        stmt = (
            select(AdminPermission.id)
            .where(AdminPermission.user_id == user_id, AdminPermission.permission == permission)
            .limit(1)
        )
        return self.session.scalars(stmt).first() is not None

    # ----------------------- Categories & brands -----------------------
    def get_categories(self) -> List[Category]:
        return list(self.session.scalars(select(Category).order_by(Category.name)))

    def get_category_by_slug(self, slug: str) -> Optional[Category]:
        return self.session.scalars(select(Category).where(Category.slug == slug)).first()

    def create_category(self, name: str, slug: str, description: Optional[str] = None) -> Category:
        category = Category(name=name, slug=slug, description=description)
        self.session.add(category)
        self._commit(category)
        return category

    def delete_all_categories(self) -> None:
        self.session.execute(delete(Category))
        self.session.commit()

    def get_brands(self) -> List[Brand]:
        return list(self.session.scalars(select(Brand).order_by(Brand.name)))

    def get_brand_by_name(self, name: str) -> Optional[Brand]:
        return self.session.scalars(select(Brand).where(Brand.name == name)).first()

    def create_brand(self, name: str, description: Optional[str] = None) -> Brand:
        brand = Brand(name=name, description=description)
        self.session.add(brand)
        self._commit(brand)
        return brand

    def delete_all_brands(self) -> None:
        self.session.execute(delete(Brand))
        self.session.commit()

    # ----------------------- Products -----------------------
    def get_products(self, filters: Optional[Union[ProductFilters, Dict[str, Any]]] = None) -> List[Product]:
        """Active products, newest first, with category and brand attached.

        Every option in ``filters`` that is set narrows the result; see ProductFilters.
        """
        if filters is None:
            filters = ProductFilters()
        elif isinstance(filters, dict):
            filters = ProductFilters.model_validate(filters)

        stmt = _product_with_relations().where(Product.is_active.is_(True))
        if filters.category_id:
            stmt = stmt.where(Product.category_id == filters.category_id)
        if filters.brand_id:
            stmt = stmt.where(Product.brand_id == filters.brand_id)
        if filters.search:
            stmt = stmt.where(Product.name.icontains(filters.search, autoescape=True))
        if filters.min_price is not None:
            stmt = stmt.where(Product.price >= filters.min_price)
        if filters.max_price is not None:
            stmt = stmt.where(Product.price <= filters.max_price)
        if filters.in_stock:
            stmt = stmt.where(Product.stock_quantity > 0)

        stmt = stmt.order_by(Product.created_at.desc())
        if filters.offset:
            stmt = stmt.offset(filters.offset)
        if filters.limit is not None:
            stmt = stmt.limit(filters.limit)
        return list(self.session.scalars(stmt).unique())

    def get_product(self, product_id: str) -> Optional[Product]:
        return self.session.scalars(_product_with_relations().where(Product.id == product_id)).first()

    def get_product_by_slug(self, slug: str) -> Optional[Product]:
        return self.session.scalars(_product_with_relations().where(Product.slug == slug)).first()

    def create_product(self, **data) -> Product:
        product = Product(**data)
        self.session.add(product)
        self._commit(product)
        return product

    def update_product(self, product_id: str, updates: Dict[str, Any]) -> Optional[Product]:
        product = self.session.get(Product, product_id)
        if product is None:
            return None
        for key, value in updates.items():
            setattr(product, key, value)
        product.updated_at = utcnow()
        self._commit(product)
        return product

    def update_product_stock(self, product_id: str, quantity: int) -> Optional[Product]:
        return self.update_product(product_id, {"stock_quantity": quantity})

    def delete_product(self, product_id: str) -> None:
        self.session.execute(delete(Product).where(Product.id == product_id))
        self.session.commit()

    def delete_all_products(self) -> None:
        self.session.execute(delete(Product))
        self.session.commit()

    def clear_all_data(self) -> None:
        # Children before parents
        for model in (OrderItem, Order, CartItem, Product, Category, Brand):
            self.session.execute(delete(model))
        self.session.commit()

    # ----------------------- Cart -----------------------
    def get_cart_items(self, user_id: str) -> List[CartItem]:
        stmt = (
            select(CartItem)
            .join(CartItem.product)
            .options(
                contains_eager(CartItem.product).joinedload(Product.category),
                contains_eager(CartItem.product).joinedload(Product.brand),
            )
            .where(CartItem.user_id == user_id)
            .order_by(CartItem.created_at.desc())
        )
        return list(self.session.scalars(stmt).unique())

    def get_cart_item(self, user_id: str, product_id: str) -> Optional[CartItem]:
        stmt = select(CartItem).where(CartItem.user_id == user_id, CartItem.product_id == product_id)
        return self.session.scalars(stmt).first()

    def add_to_cart(self, user_id: str, product_id: str, quantity: int) -> CartItem:
        """Add ``quantity`` of a product, accumulating onto an existing row for the pair."""
        now = utcnow()
        insert = _UPSERT_DIALECTS.get(self.session.get_bind().dialect.name)
        if insert is not None:
            stmt = insert(CartItem).values(
                id=new_id(),
                user_id=user_id,
                product_id=product_id,
                quantity=quantity,
                created_at=now,
                updated_at=now,
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=[CartItem.user_id, CartItem.product_id],
                set_={"quantity": CartItem.__table__.c.quantity + stmt.excluded.quantity, "updated_at": now},
            )
            item = self.session.scalars(
                stmt.returning(CartItem), execution_options={"populate_existing": True}
            ).one()
            self.session.commit()
            return item

        item = self.get_cart_item(user_id, product_id)
        if item is None:
            item = CartItem(user_id=user_id, product_id=product_id, quantity=quantity, created_at=now, updated_at=now)
            self.session.add(item)
        else:
            item.quantity += quantity
            item.updated_at = now
        self._commit(item)
        return item

    def update_cart_item(self, user_id: str, product_id: str, quantity: int) -> Optional[CartItem]:
        item = self.get_cart_item(user_id, product_id)
        if item is None:
            return None
        item.quantity = quantity
        item.updated_at = utcnow()
        self._commit(item)
        return item

    def remove_from_cart(self, user_id: str, product_id: str) -> None:
        self.session.execute(
            delete(CartItem).where(CartItem.user_id == user_id, CartItem.product_id == product_id)
        )
        self.session.commit()

    def clear_cart(self, user_id: str) -> None:
        self.session.execute(delete(CartItem).where(CartItem.user_id == user_id))
        self.session.commit()

    # ----------------------- Orders -----------------------
    def _order_rows(self):
        return (
            select(Order, OrderItem, Product)
            .outerjoin(OrderItem, OrderItem.order_id == Order.id)
            .outerjoin(Product, OrderItem.product_id == Product.id)
        )

    def get_orders(self, user_id: str) -> List[OrderWithItems]:
        stmt = (
            self._order_rows()
            .where(Order.user_id == user_id)
            .order_by(Order.created_at.desc(), Order.id.desc(), OrderItem.created_at)
        )
        return _fold_orders(self.session.execute(stmt))

    def get_order(self, order_id: str) -> Optional[OrderWithItems]:
        stmt = self._order_rows().where(Order.id == order_id).order_by(OrderItem.created_at)
        orders = _fold_orders(self.session.execute(stmt))
        return orders[0] if orders else None

    def create_order(self, order: OrderIn, items: List[OrderItemIn]) -> OrderWithItems:
        """Insert an order and its items in one transaction.

        Nothing is left behind if any insert fails.
        """
        try:
            record = Order(**order.model_dump(mode="python"))
            record.status = order.status.value
            record.payment_status = order.payment_status.value
            self.session.add(record)
            self.session.flush()

            self.session.add_all(
                OrderItem(order_id=record.id, product_id=i.product_id, quantity=i.quantity, price=i.price)
                for i in items
            )
            self.session.flush()
            self.session.commit()
        except Exception:
            logger.warning("Rolling back order %s", order.order_number)
            self.session.rollback()
            raise

        return self.get_order(record.id)

    def update_order_status(self, order_id: str, status: str, payment_status: Optional[str] = None) -> Optional[Order]:
        order = self.session.get(Order, order_id)
        if order is None:
            return None
        order.status = status
        if payment_status:
            order.payment_status = payment_status
        order.updated_at = utcnow()
        self._commit(order)
        return order

    # ----------------------- Prescriptions -----------------------
    def create_prescription(self, **data) -> Prescription:
        prescription = Prescription(**data)
        self.session.add(prescription)
        self._commit(prescription)
        return prescription

    def _prescriptions_with_users(self):
        return select(Prescription).options(joinedload(Prescription.user), joinedload(Prescription.reviewer))

    def get_prescriptions(self, user_id: Optional[str] = None) -> List[Prescription]:
        stmt = self._prescriptions_with_users().order_by(Prescription.created_at.desc())
        if user_id:
            stmt = stmt.where(Prescription.user_id == user_id)
        return [p for p in self.session.scalars(stmt).unique() if p.user is not None]

    def get_prescription(self, prescription_id: str) -> Optional[Prescription]:
        stmt = self._prescriptions_with_users().where(Prescription.id == prescription_id)
        prescription = self.session.scalars(stmt).first()
        if prescription is None or prescription.user is None:
            return None
        return prescription

    def update_prescription_status(
        self,
        prescription_id: str,
        status: str,
        review_notes: Optional[str] = None,
        reviewed_by: Optional[str] = None,
    ) -> Optional[Prescription]:
        prescription = self.session.get(Prescription, prescription_id)
        if prescription is None:
            return None
        now = utcnow()
        prescription.status = status
        prescription.review_notes = review_notes
        prescription.reviewed_by = reviewed_by
        prescription.reviewed_at = now
        prescription.updated_at = now
        self._commit(prescription)
        return prescription
