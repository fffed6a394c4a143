from datetime import timedelta
from decimal import Decimal

import pytest

from core import create_app, db, Category, Product, Promo, User, utcnow


def make_media(*urls):
    return [{"id": i, "url": u, "alt": "", "type": "image"} for i, u in enumerate(urls, start=1)]


CUTLERY_SET_VARIANTS = [
    {"name": "Finish", "options": [
        {"value": "Silver", "price_adjustment": 0, "linked_media_id": 1},
        {"value": "Gold", "price_adjustment": 500, "linked_media_id": 2},
    ]},
    {"name": "Size", "options": [
        {"value": "Small", "price_adjustment": 0, "linked_media_id": None},
        {"value": "Large", "price_adjustment": 200, "linked_media_id": None},
    ]},
]


@pytest.fixture
def app():
    app = create_app({
        "TESTING": True,
        "SECRET_KEY": "test",
        "SQLALCHEMY_DATABASE_URI": "sqlite://",
        "SEED_ON_START": False,
        "SHIPPING_COST": Decimal("250"),
        "TAX_RATE": Decimal("0"),
    })
    yield app
    with app.app_context():
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def catalog(app):
    """Two categories, three active products and one hidden one. Returns ids and slugs."""
    with app.app_context():
        cutlery = Category(name="Cutlery", slug="cutlery")
        footwear = Category(name="Footwear", slug="footwear")
        db.session.add_all([cutlery, footwear])
        db.session.flush()
        cutlery_set = Product(
            name="Cutlery Set", slug="cutlery-set", short_description="Steel set for six",
            base_price=Decimal("1000"), cut_price=Decimal("1500"), category_id=cutlery.id,
            stock=5, is_featured=True, media=make_media("/s.jpg", "/g.jpg"),
            variant_types=CUTLERY_SET_VARIANTS,
        )
        spoon = Product(
            name="Table Spoon", slug="table-spoon", short_description="Single polished spoon",
            base_price=Decimal("300"), category_id=cutlery.id, stock=50,
            media=make_media("/spoon.jpg"), variant_types=[],
        )
        loafers = Product(
            name="Leather Loafers", slug="leather-loafers", short_description="Black leather shoes",
            base_price=Decimal("6500"), category_id=footwear.id, stock=3,
            media=make_media("/loafers.jpg"),
            variant_types=[{"name": "Size", "options": [
                {"value": "42", "price_adjustment": 0, "linked_media_id": None},
                {"value": "44", "price_adjustment": 300, "linked_media_id": None},
            ]}],
        )
        hidden = Product(
            name="Old Knife", slug="old-knife", short_description="Discontinued",
            base_price=Decimal("100"), category_id=cutlery.id, stock=10, is_active=False,
            media=make_media("/knife.jpg"), variant_types=[],
        )
        db.session.add_all([cutlery_set, spoon, loafers, hidden])
        db.session.commit()
        return {
            "cutlery_id": cutlery.id,
            "footwear_id": footwear.id,
            "set_id": cutlery_set.id,
            "spoon_id": spoon.id,
            "loafers_id": loafers.id,
            "hidden_id": hidden.id,
        }


@pytest.fixture
def promos(app):
    with app.app_context():
        now = utcnow()
        db.session.add_all([
            Promo(code="SAVE10", type="percent", value=Decimal("10"), min_order=Decimal("1000"),
                  is_active=True, expires_at=now + timedelta(days=30)),
            Promo(code="FLAT500", type="fixed", value=Decimal("500"), min_order=Decimal("0"),
                  is_active=True, expires_at=now + timedelta(days=30)),
            Promo(code="OLD", type="percent", value=Decimal("20"), min_order=Decimal("0"),
                  is_active=True, expires_at=now - timedelta(days=1)),
            Promo(code="OFF", type="percent", value=Decimal("20"), min_order=Decimal("0"),
                  is_active=False, expires_at=now + timedelta(days=30)),
        ])
        db.session.commit()


def _add_user(email, password, role="user", name=None):
    user = User(email=email, display_name=name or email.split("@")[0], role=role)
    user.set_password(password)
    db.session.add(user)
    db.session.commit()
    return user.id


@pytest.fixture
def users(app):
    with app.app_context():
        return {
            "buyer": _add_user("buyer@example.com", "secret1", name="Ayesha Buyer"),
            "admin": _add_user("boss@example.com", "secret1", role="admin", name="Boss"),
        }


def login(client, email, password="secret1"):
    return client.post("/auth/login", data={"email": email, "password": password})


@pytest.fixture
def buyer_client(client, users):
    login(client, "buyer@example.com")
    return client


@pytest.fixture
def admin_client(client, users):
    login(client, "boss@example.com")
    return client
