from decimal import Decimal

import pytest
from fastapi.testclient import TestClient

from database import Database
from main import create_app
from storage import Storage


@pytest.fixture
def database():
    db = Database("sqlite://")
    db.create_all()
    yield db
    db.dispose()


@pytest.fixture
def storage(database):
    with database.session() as session:
        yield Storage(session)


@pytest.fixture
def client(database):
    with TestClient(create_app(database)) as c:
        yield c


@pytest.fixture
def catalog(storage):
    """A category, a brand and two active products plus one hidden product."""
    vitamins = storage.create_category(name="Vitamins", slug="vitamins", description="Daily vitamins")
    pain = storage.create_category(name="Pain Relief", slug="pain-relief")
    brand = storage.create_brand(name="Nature Made")
    d3 = storage.create_product(
        name="Vitamin D3 1000 IU",
        slug="vitamin-d3",
        price=Decimal("9.99"),
        stock_quantity=20,
        category_id=vitamins.id,
        brand_id=brand.id,
    )
    ibuprofen = storage.create_product(
        name="Ibuprofen 200mg",
        slug="ibuprofen-200mg",
        price=Decimal("4.50"),
        stock_quantity=0,
        category_id=pain.id,
    )
    hidden = storage.create_product(name="Old Syrup", slug="old-syrup", price=Decimal("3.00"), is_active=False)
    return {
        "vitamins": vitamins,
        "pain": pain,
        "brand": brand,
        "d3": d3,
        "ibuprofen": ibuprofen,
        "hidden": hidden,
    }


def auth_headers(token):
    return {"Authorization": f"Bearer {token}"}


def register(client, username="alice", email="a@x.com", password="pw123"):
    response = client.post("/api/auth/register", json={"username": username, "email": email, "password": password})
    assert response.status_code == 200, response.text
    body = response.json()
    return body["user"], auth_headers(body["token"])


def make_admin(storage, user_id, *permissions):
    storage.set_user_admin(user_id, True, "super_admin")
    for permission in permissions:
        storage.add_admin_permission(user_id, permission)
