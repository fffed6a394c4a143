from datetime import timedelta
from decimal import Decimal
import uuid

import pytest

from core import db, Category, Order, OrderItem, Product, Promo, User, utcnow
from admin import FormError, format_variant_lines, parse_variant_lines, sales_performance
from conftest import CUTLERY_SET_VARIANTS


PRODUCT_FORM = {
    "name": "Dessert Fork",
    "short_description": "Small fork",
    "base_price": "250",
    "cut_price": "",
    "stock": "12",
    "is_active": "on",
    "media": "/fork.jpg\n/fork-gold.jpg",
    "variants": "Finish: Silver @1, Gold +100 @2",
}


def test_admin_pages_need_admin_role(client, buyer_client):
    resp = buyer_client.get("/admin/")
    assert resp.status_code == 302
    assert not resp.headers["Location"].endswith("/admin/")


def test_anonymous_admin_is_sent_to_login(client):
    resp = client.get("/admin/products")
    assert "/auth/login" in resp.headers["Location"]


def test_dashboard_renders(admin_client, catalog):
    resp = admin_client.get("/admin/")
    assert resp.status_code == 200
    assert "Welcome, Administrator!" in resp.get_data(as_text=True)


def test_parse_variant_lines():
    parsed = parse_variant_lines("Finish: Silver @1, Gold +500 @2\nSize: Small, Large +200\n\n")
    assert parsed == CUTLERY_SET_VARIANTS


def test_parse_variant_lines_rejects_bad_lines():
    with pytest.raises(FormError):
        parse_variant_lines("just words")
    with pytest.raises(FormError):
        parse_variant_lines("Color: , ")


def test_format_variant_lines_reads_back():
    text = format_variant_lines(CUTLERY_SET_VARIANTS)
    assert text == "Finish: Silver @1, Gold +500 @2\nSize: Small, Large +200"
    assert parse_variant_lines(text) == CUTLERY_SET_VARIANTS


def test_create_product(app, admin_client, catalog):
    form = dict(PRODUCT_FORM, category_id=str(catalog["cutlery_id"]))
    resp = admin_client.post("/admin/products/new", data=form)
    assert resp.status_code == 302
    with app.app_context():
        p = Product.query.filter_by(slug="dessert-fork").one()
        assert p.base_price == Decimal("250.00")
        assert p.is_active and not p.is_featured
        assert p.media[1] == {"id": 2, "url": "/fork-gold.jpg", "alt": "", "type": "image"}
        assert p.variant_types[0]["options"][1]["price_adjustment"] == 100


@pytest.mark.parametrize("override,message", [
    ({"base_price": "0"}, "Name, Price, Category, and Short Description are required."),
    ({"short_description": ""}, "Name, Price, Category, and Short Description are required."),
    ({"cut_price": "200"}, "Cut Price (Original Price) must be higher"),
    ({"media": ""}, "At least one image is required"),
    ({"name": "Table Spoon"}, "already used by another product"),
])
def test_create_product_validation(app, admin_client, catalog, override, message):
    form = dict(PRODUCT_FORM, category_id=str(catalog["cutlery_id"]), **override)
    resp = admin_client.post("/admin/products/new", data=form)
    assert resp.status_code == 200
    assert message in resp.get_data(as_text=True)
    with app.app_context():
        assert Product.query.count() == 4


def test_edit_and_delete_product(app, admin_client, catalog):
    edit_url = f"/admin/products/{catalog['spoon_id']}/edit"
    assert "Table Spoon" in admin_client.get(edit_url).get_data(as_text=True)
    form = dict(PRODUCT_FORM, name="Table Spoon", slug="table-spoon", base_price="350",
                category_id=str(catalog["cutlery_id"]))
    admin_client.post(edit_url, data=form)
    with app.app_context():
        assert db.session.get(Product, catalog["spoon_id"]).base_price == Decimal("350.00")

    admin_client.post(f"/admin/products/{catalog['spoon_id']}/delete")
    with app.app_context():
        assert db.session.get(Product, catalog["spoon_id"]) is None


def test_category_crud_and_delete_guard(app, admin_client, catalog):
    admin_client.post("/admin/categories", data={"name": "Home Goods", "description": "Kitchen"})
    with app.app_context():
        cat = Category.query.filter_by(slug="home-goods").one()
        cat_id = cat.id

    admin_client.post("/admin/categories", data={"id": cat_id, "name": "Home & Kitchen", "slug": ""})
    with app.app_context():
        assert db.session.get(Category, cat_id).slug == "home-kitchen"

    resp = admin_client.post(f"/admin/categories/{catalog['cutlery_id']}/delete", follow_redirects=True)
    assert "Cannot delete category" in resp.get_data(as_text=True)
    admin_client.post(f"/admin/categories/{cat_id}/delete")
    with app.app_context():
        assert db.session.get(Category, catalog["cutlery_id"]) is not None
        assert db.session.get(Category, cat_id) is None


def test_category_list_shows_product_counts(admin_client, catalog):
    html = admin_client.get("/admin/categories").get_data(as_text=True)
    assert "<td>3</td>" in html  # cutlery: set, spoon, hidden knife


def _place_order(app, user_id, status="pending", days_ago=0, items=()):
    with app.app_context():
        order = Order(order_id=uuid.uuid4().hex, user_id=user_id,
                      user_name="A", user_email="a@example.com", shipping_address="B",
                      shipping_phone="1", subtotal=0, total_amount=0, status=status,
                      created_at=utcnow() - timedelta(days=days_ago))
        db.session.add(order)
        db.session.flush()
        for name, category_id, price, qty in items:
            db.session.add(OrderItem(order_id_fk=order.id, name=name, category_id=category_id,
                                     price=Decimal(price), quantity=qty))
        db.session.commit()
        return order.id


def test_order_status_update(app, admin_client, users):
    order_pk = _place_order(app, users["buyer"])
    admin_client.post(f"/admin/orders/{order_pk}/status", data={"status": "shipped"})
    with app.app_context():
        assert db.session.get(Order, order_pk).status == "shipped"
    admin_client.post(f"/admin/orders/{order_pk}/status", data={"status": "lost"})
    with app.app_context():
        assert db.session.get(Order, order_pk).status == "shipped"


def test_sales_performance_covers_last_30_days(app, catalog, users):
    _place_order(app, users["buyer"], items=[
        ("Cutlery Set", catalog["cutlery_id"], "1000", 2),
        ("Leather Loafers", catalog["footwear_id"], "6500", 1),
    ])
    _place_order(app, users["buyer"], days_ago=1, items=[
        ("Table Spoon", catalog["cutlery_id"], "300", 10),
        ("Mystery", None, "50", 1),
    ])
    _place_order(app, users["buyer"], days_ago=45, items=[("Cutlery Set", catalog["cutlery_id"], "1000", 9)])
    with app.app_context():
        categories, products = sales_performance(utcnow() - timedelta(days=30))
    assert [(c["name"], c["sales"], c["units"]) for c in categories] == [
        ("Footwear", Decimal("6500.00"), 1),
        ("Cutlery", Decimal("5000.00"), 12),
        ("Uncategorized", Decimal("50.00"), 1),
    ]
    assert products[0]["name"] == "Leather Loafers"
    assert {p["name"]: p["units"] for p in products}["Cutlery Set"] == 2


def test_promo_create_validates_and_uppercases(app, admin_client):
    tomorrow = (utcnow() + timedelta(days=1)).strftime("%Y-%m-%d")
    yesterday = (utcnow() - timedelta(days=1)).strftime("%Y-%m-%d")
    base = {"code": " eid25 ", "type": "percent", "value": "25", "min_order": "2000",
            "expires_at": tomorrow, "is_active": "true"}
    admin_client.post("/admin/promos", data=base)
    admin_client.post("/admin/promos", data=dict(base, code="EID25"))
    admin_client.post("/admin/promos", data=dict(base, code="PAST", expires_at=yesterday))
    admin_client.post("/admin/promos", data=dict(base, code="ZERO", value="0"))
    admin_client.post("/admin/promos", data=dict(base, code="NODATE", expires_at=""))
    admin_client.post("/admin/promos", data=dict(base, code="WEIRD", type="bogo"))
    with app.app_context():
        assert [p.code for p in Promo.query.all()] == ["EID25"]
        promo = Promo.query.one()
        assert promo.type == "percent"
        assert promo.min_order == Decimal("2000.00")
        assert promo.expires_at.strftime("%Y-%m-%d") == tomorrow


def test_promo_edit_and_delete(app, admin_client, promos):
    with app.app_context():
        promo_id = Promo.query.filter_by(code="FLAT500").one().id
    expiry = (utcnow() + timedelta(days=10)).strftime("%Y-%m-%d")
    admin_client.post("/admin/promos", data={"id": promo_id, "code": "FLAT500", "type": "fixed",
                                             "value": "750", "min_order": "0", "expires_at": expiry,
                                             "is_active": "false"})
    with app.app_context():
        promo = db.session.get(Promo, promo_id)
        assert promo.value == Decimal("750.00")
        assert not promo.is_active

    html = admin_client.get("/admin/promos").get_data(as_text=True)
    assert "Disabled" in html and "Expired" in html

    admin_client.post(f"/admin/promos/{promo_id}/delete")
    with app.app_context():
        assert db.session.get(Promo, promo_id) is None


def test_role_change(app, admin_client, users):
    admin_client.post(f"/admin/users/{users['buyer']}/role", data={"role": "admin"})
    with app.app_context():
        assert db.session.get(User, users["buyer"]).role == "admin"


def test_admin_cannot_change_own_role(app, admin_client, users):
    resp = admin_client.post(f"/admin/users/{users['admin']}/role", data={"role": "user"},
                             follow_redirects=True)
    assert "You cannot change your own role" in resp.get_data(as_text=True)
    with app.app_context():
        assert db.session.get(User, users["admin"]).role == "admin"


@pytest.mark.parametrize("field,value,message", [
    ("base_price", "NaN", "Invalid base price."),
    ("cut_price", "sNaN", "Invalid cut price."),
    ("base_price", "Infinity", "Invalid base price."),
])
def test_product_form_rejects_non_finite_prices(app, admin_client, catalog, field, value, message):
    form = dict(PRODUCT_FORM, category_id=str(catalog["cutlery_id"]), **{field: value})
    resp = admin_client.post("/admin/products/new", data=form)
    assert resp.status_code == 200
    assert message in resp.get_data(as_text=True)
    with app.app_context():
        assert Product.query.count() == 4
