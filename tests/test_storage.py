from datetime import datetime, timezone
from decimal import Decimal

import pytest
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError

from models import CartItem, Order, OrderItem, Prescription, Product, User
from schemas import OrderIn, OrderItemIn, OrderStatus, PaymentStatus, ProductFilters


def make_user(storage, username="alice", email="a@x.com"):
    return storage.create_user(username=username, email=email, password="salt$hash")


def new_order(user_id, number="ORD-1", total="19.98"):
    return OrderIn(user_id=user_id, order_number=number, total_amount=Decimal(total), shipping_address={"city": "Accra"})


# ----------------------- Users & admin -----------------------
def test_create_user_defaults(storage):
    user = make_user(storage)
    assert user.is_admin is False
    assert user.admin_role is None
    assert user.created_at is not None
    assert storage.get_user_by_username("alice").id == user.id
    assert storage.get_user_by_email("a@x.com").id == user.id


def test_missing_user_lookups_return_none(storage):
    assert storage.get_user("nope") is None
    assert storage.get_user_by_username("nope") is None
    assert storage.get_user_by_email("nope@x.com") is None
    assert storage.get_user_with_permissions("nope") is None


def test_duplicate_username_raises(storage):
    make_user(storage)
    with pytest.raises(IntegrityError):
        make_user(storage, email="other@x.com")


def test_upsert_user_inserts_then_overwrites(storage):
    user = storage.upsert_user({"id": "ext-42", "email": "ext@x.com", "first_name": "Ext"})
    assert user.id == "ext-42"
    first_update = user.updated_at

    user = storage.upsert_user({"id": "ext-42", "email": "ext@x.com", "first_name": "Renamed"})
    assert user.first_name == "Renamed"
    assert user.updated_at >= first_update
    assert storage.session.scalar(select(func.count()).select_from(User)) == 1


def test_update_user_stripe_info(storage):
    user = make_user(storage)
    user = storage.update_user_stripe_info(user.id, "cus_1", "sub_1")
    assert (user.stripe_customer_id, user.stripe_subscription_id) == ("cus_1", "sub_1")
    assert storage.update_user_stripe_info("nope", "cus", "sub") is None


def test_permission_grant_and_revoke(storage):
    user = make_user(storage)
    assert storage.has_admin_permission(user.id, "edit_products") is False

    storage.add_admin_permission(user.id, "edit_products")
    assert storage.has_admin_permission(user.id, "edit_products") is True
    assert storage.has_admin_permission(user.id, "manage_users") is False

    storage.remove_admin_permission(user.id, "edit_products")
    assert storage.has_admin_permission(user.id, "edit_products") is False


def test_duplicate_permission_rows_are_harmless(storage):
    user = make_user(storage)
    storage.add_admin_permission(user.id, "add_products")
    storage.add_admin_permission(user.id, "add_products")
    assert storage.has_admin_permission(user.id, "add_products")

    storage.remove_admin_permission(user.id, "add_products")
    assert not storage.has_admin_permission(user.id, "add_products")


def test_user_with_permissions(storage):
    user = make_user(storage)
    storage.add_admin_permission(user.id, "edit_products")
    storage.add_admin_permission(user.id, "view_prescriptions")
    loaded = storage.get_user_with_permissions(user.id)
    assert sorted(p.permission for p in loaded.admin_permissions) == ["edit_products", "view_prescriptions"]


def test_set_user_admin_clears_role_when_omitted(storage):
    user = make_user(storage)
    user = storage.set_user_admin(user.id, True, "product_manager")
    assert user.is_admin and user.admin_role == "product_manager"

    user = storage.set_user_admin(user.id, True)
    assert user.is_admin
    assert user.admin_role is None
    assert storage.set_user_admin("nope", True) is None


# ----------------------- Catalog -----------------------
def test_inactive_products_never_listed(storage, catalog):
    slugs = {p.slug for p in storage.get_products()}
    assert "old-syrup" not in slugs
    assert slugs == {"vitamin-d3", "ibuprofen-200mg"}


def test_products_listed_newest_first(storage, catalog):
    assert [p.slug for p in storage.get_products()] == ["ibuprofen-200mg", "vitamin-d3"]


def test_product_filters(storage, catalog):
    by_category = storage.get_products(ProductFilters(category_id=catalog["vitamins"].id))
    assert [p.slug for p in by_category] == ["vitamin-d3"]

    by_brand = storage.get_products({"brand_id": catalog["brand"].id})
    assert [p.slug for p in by_brand] == ["vitamin-d3"]

    by_search = storage.get_products(ProductFilters(search="IBUPRO"))
    assert [p.slug for p in by_search] == ["ibuprofen-200mg"]

    in_range = storage.get_products(ProductFilters(min_price=4.5, max_price=5))
    assert [p.slug for p in in_range] == ["ibuprofen-200mg"]

    in_stock = storage.get_products(ProductFilters(in_stock=True))
    assert [p.slug for p in in_stock] == ["vitamin-d3"]


def test_search_treats_wildcards_literally(storage, catalog):
    assert storage.get_products(ProductFilters(search="_")) == []
    assert storage.get_products(ProductFilters(search="100%")) == []

    storage.create_product(name="Zinc 100% Daily_Value", slug="zinc", price=Decimal("2.00"))
    assert [p.slug for p in storage.get_products(ProductFilters(search="100%"))] == ["zinc"]
    assert [p.slug for p in storage.get_products(ProductFilters(search="daily_value"))] == ["zinc"]


def test_product_pagination(storage, catalog):
    assert [p.slug for p in storage.get_products(ProductFilters(limit=1))] == ["ibuprofen-200mg"]
    assert [p.slug for p in storage.get_products(ProductFilters(limit=1, offset=1))] == ["vitamin-d3"]


def test_product_by_slug_is_enriched(storage, catalog):
    product = storage.get_product_by_slug("vitamin-d3")
    assert product.price == Decimal("9.99")
    assert product.category.slug == "vitamins"
    assert product.brand.name == "Nature Made"

    unbranded = storage.get_product_by_slug("ibuprofen-200mg")
    assert unbranded.brand is None
    assert storage.get_product_by_slug("missing") is None
    assert storage.get_product("missing") is None


def test_duplicate_product_slug_raises(storage, catalog):
    with pytest.raises(IntegrityError):
        storage.create_product(name="Copy", slug="vitamin-d3", price=Decimal("1.00"))


def test_update_product_applies_only_given_fields(storage, catalog):
    before = catalog["d3"].updated_at
    product = storage.update_product(catalog["d3"].id, {"price": Decimal("7.49")})
    assert product.price == Decimal("7.49")
    assert product.name == "Vitamin D3 1000 IU"
    assert product.updated_at >= before
    assert storage.update_product("missing", {"price": Decimal("1")}) is None


def test_update_product_stock_sets_absolute_value(storage, catalog):
    product = storage.update_product_stock(catalog["d3"].id, 3)
    assert product.stock_quantity == 3


def test_delete_product(storage, catalog):
    storage.delete_product(catalog["hidden"].id)
    assert storage.get_product(catalog["hidden"].id) is None
    storage.delete_product("missing")


def test_categories_and_brands_sorted_by_name(storage, catalog):
    storage.create_brand(name="Centrum")
    assert [c.name for c in storage.get_categories()] == ["Pain Relief", "Vitamins"]
    assert [b.name for b in storage.get_brands()] == ["Centrum", "Nature Made"]
    assert storage.get_brand_by_name("Centrum") is not None
    assert storage.get_category_by_slug("vitamins").name == "Vitamins"


# ----------------------- Cart -----------------------
def test_add_to_cart_accumulates(storage, catalog):
    user = make_user(storage)
    storage.add_to_cart(user.id, catalog["d3"].id, 2)
    item = storage.add_to_cart(user.id, catalog["d3"].id, 3)
    assert item.quantity == 5

    items = storage.get_cart_items(user.id)
    assert len(items) == 1
    assert items[0].quantity == 5
    assert items[0].product.slug == "vitamin-d3"
    assert items[0].product.category.name == "Vitamins"
    rows = storage.session.scalar(select(func.count()).select_from(CartItem))
    assert rows == 1


def test_update_cart_item_replaces_quantity(storage, catalog):
    user = make_user(storage)
    storage.add_to_cart(user.id, catalog["d3"].id, 3)
    item = storage.update_cart_item(user.id, catalog["d3"].id, 7)
    assert item.quantity == 7


def test_update_missing_cart_item_returns_none(storage, catalog):
    user = make_user(storage)
    assert storage.update_cart_item(user.id, catalog["d3"].id, 2) is None


def test_remove_and_clear_cart(storage, catalog):
    user = make_user(storage)
    storage.add_to_cart(user.id, catalog["d3"].id, 1)
    storage.add_to_cart(user.id, catalog["ibuprofen"].id, 1)

    storage.remove_from_cart(user.id, catalog["d3"].id)
    storage.remove_from_cart(user.id, catalog["d3"].id)
    assert [i.product_id for i in storage.get_cart_items(user.id)] == [catalog["ibuprofen"].id]

    storage.clear_cart(user.id)
    assert storage.get_cart_items(user.id) == []


def test_carts_are_per_user(storage, catalog):
    alice = make_user(storage)
    bob = make_user(storage, "bob", "b@x.com")
    storage.add_to_cart(alice.id, catalog["d3"].id, 2)
    storage.add_to_cart(bob.id, catalog["d3"].id, 1)
    assert storage.get_cart_items(alice.id)[0].quantity == 2
    assert storage.get_cart_items(bob.id)[0].quantity == 1


# ----------------------- Orders -----------------------
def test_create_order_returns_enriched_items(storage, catalog):
    user = make_user(storage)
    order = storage.create_order(
        new_order(user.id),
        [OrderItemIn(product_id=catalog["d3"].id, quantity=2, price=Decimal("9.99"))],
    )
    assert order.order_number == "ORD-1"
    assert order.status == "pending"
    assert order.payment_status == "pending"
    assert order.shipping_address == {"city": "Accra"}
    assert len(order.order_items) == 1
    assert order.order_items[0].product.slug == "vitamin-d3"
    assert order.order_items[0].quantity == 2


def test_order_item_price_is_captured_at_purchase(storage, catalog):
    user = make_user(storage)
    order = storage.create_order(
        new_order(user.id),
        [OrderItemIn(product_id=catalog["d3"].id, quantity=1, price=Decimal("9.99"))],
    )
    storage.update_product(catalog["d3"].id, {"price": Decimal("12.00")})

    reloaded = storage.get_order(order.id)
    assert reloaded.order_items[0].price == Decimal("9.99")


def test_create_order_is_atomic(storage, catalog):
    user = make_user(storage)
    with pytest.raises(IntegrityError):
        storage.create_order(
            new_order(user.id),
            [
                OrderItemIn(product_id=catalog["d3"].id, quantity=1, price=Decimal("9.99")),
                OrderItemIn(product_id="no-such-product", quantity=1, price=Decimal("1.00")),
            ],
        )
    assert storage.session.scalar(select(func.count()).select_from(Order)) == 0
    assert storage.session.scalar(select(func.count()).select_from(OrderItem)) == 0
    assert storage.get_orders(user.id) == []


def test_order_without_items_still_found(storage):
    user = make_user(storage)
    order = storage.create_order(new_order(user.id, total="0"), [])
    found = storage.get_order(order.id)
    assert found is not None
    assert found.order_items == []
    assert storage.get_order("missing") is None


def test_get_orders_groups_rows_per_order(storage, catalog):
    user = make_user(storage)
    first = storage.create_order(
        new_order(user.id, "ORD-1"),
        [
            OrderItemIn(product_id=catalog["d3"].id, quantity=1, price=Decimal("9.99")),
            OrderItemIn(product_id=catalog["ibuprofen"].id, quantity=2, price=Decimal("4.50")),
        ],
    )
    second = storage.create_order(new_order(user.id, "ORD-2", "0"), [])

    orders = storage.get_orders(user.id)
    assert [o.id for o in orders] == [second.id, first.id]
    assert orders[0].order_items == []
    assert sorted(i.product.slug for i in orders[1].order_items) == ["ibuprofen-200mg", "vitamin-d3"]


def test_orders_with_same_timestamp_have_stable_order(storage):
    user = make_user(storage)
    ids = [storage.create_order(new_order(user.id, f"ORD-{n}", "0"), []).id for n in range(3)]
    storage.session.execute(update(Order).values(created_at=datetime(2024, 1, 1, tzinfo=timezone.utc)))
    storage.session.commit()

    assert [o.id for o in storage.get_orders(user.id)] == sorted(ids, reverse=True)


def test_duplicate_order_number_raises(storage):
    user = make_user(storage)
    storage.create_order(new_order(user.id, "ORD-1", "0"), [])
    with pytest.raises(IntegrityError):
        storage.create_order(new_order(user.id, "ORD-1", "0"), [])
    assert len(storage.get_orders(user.id)) == 1


def test_update_order_status_keeps_payment_status_when_omitted(storage):
    user = make_user(storage)
    order = storage.create_order(new_order(user.id, total="0"), [])

    updated = storage.update_order_status(order.id, OrderStatus.PROCESSING.value, PaymentStatus.PAID.value)
    assert (updated.status, updated.payment_status) == ("processing", "paid")

    updated = storage.update_order_status(order.id, OrderStatus.SHIPPED.value)
    assert (updated.status, updated.payment_status) == ("shipped", "paid")
    assert storage.update_order_status("missing", "shipped") is None


# ----------------------- Prescriptions -----------------------
def submit(storage, user_id, patient="Alice"):
    return storage.create_prescription(
        user_id=user_id,
        patient_name=patient,
        doctor_name="Dr. Mensah",
        doctor_contact="+233 20 000 0000",
        prescription_date=datetime(2026, 1, 5, tzinfo=timezone.utc),
        medications="Amoxicillin 500mg",
        image_urls=["/objects/rx-1.jpg"],
    )


def test_prescription_defaults_and_listing(storage):
    alice = make_user(storage)
    bob = make_user(storage, "bob", "b@x.com")
    mine = submit(storage, alice.id)
    submit(storage, bob.id, "Bob")

    assert mine.status == "pending"
    assert mine.image_urls == ["/objects/rx-1.jpg"]
    assert len(storage.get_prescriptions()) == 2

    own = storage.get_prescriptions(alice.id)
    assert [p.id for p in own] == [mine.id]
    assert own[0].user.username == "alice"
    assert own[0].reviewer is None


def test_prescription_without_user_is_excluded(storage):
    storage.create_prescription(
        patient_name="Walk-in",
        doctor_name="Dr. Owusu",
        doctor_contact="n/a",
        prescription_date=datetime(2026, 1, 5, tzinfo=timezone.utc),
    )
    assert storage.session.scalar(select(func.count()).select_from(Prescription)) == 1
    assert storage.get_prescriptions() == []


def test_review_prescription_records_reviewer(storage):
    alice = make_user(storage)
    reviewer = make_user(storage, "pharmacist", "ph@x.com")
    prescription = submit(storage, alice.id)

    reviewed = storage.update_prescription_status(prescription.id, "verified", "Looks valid", reviewer.id)
    assert reviewed.status == "verified"
    assert reviewed.reviewed_by == reviewer.id
    assert reviewed.reviewed_at is not None

    again = storage.update_prescription_status(prescription.id, "rejected")
    assert again.status == "rejected"
    assert again.review_notes is None
    assert again.reviewed_by is None

    loaded = storage.get_prescription(prescription.id)
    assert loaded.user.id == alice.id
    assert storage.get_prescription("missing") is None
    assert storage.update_prescription_status("missing", "verified") is None


# ----------------------- Bulk wipes -----------------------
def test_clear_all_data_respects_dependencies(storage, catalog):
    user = make_user(storage)
    storage.add_to_cart(user.id, catalog["d3"].id, 1)
    storage.create_order(
        new_order(user.id),
        [OrderItemIn(product_id=catalog["d3"].id, quantity=1, price=Decimal("9.99"))],
    )

    storage.clear_all_data()

    assert storage.session.scalar(select(func.count()).select_from(Product)) == 0
    assert storage.get_categories() == []
    assert storage.get_brands() == []
    assert storage.get_orders(user.id) == []
    assert storage.get_user(user.id) is not None


def test_delete_all_catalog_tables(storage, catalog):
    storage.delete_all_products()
    storage.delete_all_categories()
    storage.delete_all_brands()
    assert storage.get_products() == []
    assert storage.get_categories() == []
    assert storage.get_brands() == []
