# core.py
from flask import Flask, render_template
from flask_sqlalchemy import SQLAlchemy
from datetime import datetime, timedelta, timezone
from decimal import Decimal
import logging
import os
import re
import sys

import click
from werkzeug.security import generate_password_hash, check_password_hash

# --- DB handle (imported by blueprints) ---
db = SQLAlchemy()

log = logging.getLogger(__name__)

BASE_DIR = os.path.abspath(os.path.dirname(__file__))

# --- Constants shared across blueprints ---
ROLES = ("user", "admin")
ORDER_STATUSES = ("pending", "shipped", "delivered", "cancelled")
PROMO_TYPES = ("percent", "fixed")
PAYMENT_COD = "Cash on Delivery"


class Config:
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-change-me")
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL", "sqlite:///" + os.path.join(BASE_DIR, "store.db")
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SHIPPING_COST = Decimal(os.environ.get("SHIPPING_COST", "250"))
    TAX_RATE = Decimal(os.environ.get("TAX_RATE", "0"))
    CURRENCY = os.environ.get("CURRENCY", "PKR")
    ADMIN_EMAIL = os.environ.get("ADMIN_EMAIL", "admin@signaturetrader.pk")
    ADMIN_PASSWORD = os.environ.get("ADMIN_PASSWORD", "admin123")
    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")
    SEED_ON_START = True


def utcnow():
    """Naive UTC timestamp; SQLite drops tzinfo on the way back anyway."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def slugify(text):
    return re.sub(r"[^a-z0-9]+", "-", (text or "").lower()).strip("-")


# --- Models ---
class Category(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(120), nullable=False)
    slug = db.Column(db.String(120), unique=True, nullable=False)
    description = db.Column(db.Text, nullable=False, default="")
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    products = db.relationship("Product", back_populates="category", lazy="dynamic")


class Product(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False)
    slug = db.Column(db.String(200), unique=True, nullable=False)
    short_description = db.Column(db.String(500), nullable=False)
    detailed_description = db.Column(db.Text, nullable=False, default="")
    base_price = db.Column(db.Numeric(10, 2), nullable=False)
    cut_price = db.Column(db.Numeric(10, 2), nullable=False, default=0)  # struck-through "was" price
    category_id = db.Column(db.Integer, db.ForeignKey("category.id"), nullable=False)
    stock = db.Column(db.Integer, nullable=False, default=0)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    is_featured = db.Column(db.Boolean, nullable=False, default=False)
    # [{"id", "url", "alt", "type"}]
    media = db.Column(db.JSON, nullable=False, default=list)
    # [{"name", "options": [{"value", "price_adjustment", "linked_media_id"}]}]
    variant_types = db.Column(db.JSON, nullable=False, default=list)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    category = db.relationship("Category", back_populates="products")

    @property
    def main_media(self):
        return self.media[0] if self.media else None

    def media_by_id(self, media_id):
        for m in self.media or []:
            if m.get("id") == media_id:
                return m
        return None

    @property
    def shows_cut_price(self):
        return bool(self.cut_price) and self.cut_price > self.base_price


class User(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(200), unique=True, nullable=False)
    display_name = db.Column(db.String(120), nullable=False)
    password_hash = db.Column(db.String(256), nullable=False)
    role = db.Column(db.String(10), nullable=True, default="user")
    phone = db.Column(db.String(40), nullable=False, default="")
    address = db.Column(db.Text, nullable=False, default="")
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    @property
    def is_admin(self):
        return (self.role or "user") == "admin"

    def set_password(self, password):
        self.password_hash = generate_password_hash(password)

    def check_password(self, password):
        return check_password_hash(self.password_hash, password)


class Promo(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    code = db.Column(db.String(40), unique=True, nullable=False)
    type = db.Column(db.String(10), nullable=False)  # percent | fixed
    value = db.Column(db.Numeric(10, 2), nullable=False)
    min_order = db.Column(db.Numeric(10, 2), nullable=False, default=0)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    expires_at = db.Column(db.DateTime, nullable=False)


class Order(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.String(32), unique=True, nullable=False)
    user_id = db.Column(db.Integer, db.ForeignKey("user.id"), nullable=False)
    user_name = db.Column(db.String(120), nullable=False)
    user_email = db.Column(db.String(200), nullable=False)
    shipping_address = db.Column(db.Text, nullable=False)
    shipping_phone = db.Column(db.String(40), nullable=False)
    subtotal = db.Column(db.Numeric(10, 2), nullable=False)
    discount = db.Column(db.Numeric(10, 2), nullable=False, default=0)
    promo_code = db.Column(db.String(40), nullable=True)
    tax_amount = db.Column(db.Numeric(10, 2), nullable=False, default=0)
    shipping_cost = db.Column(db.Numeric(10, 2), nullable=False, default=0)
    total_amount = db.Column(db.Numeric(10, 2), nullable=False)
    payment_method = db.Column(db.String(40), nullable=False, default=PAYMENT_COD)
    status = db.Column(db.String(20), nullable=False, default="pending")
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)

    items = db.relationship("OrderItem", backref="order", cascade="all, delete-orphan")

    @property
    def short_id(self):
        return self.order_id[-8:].upper()


class OrderItem(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    order_id_fk = db.Column(db.Integer, db.ForeignKey("order.id"), nullable=False)
    product_id = db.Column(db.Integer, nullable=True)
    category_id = db.Column(db.Integer, nullable=True)
    name = db.Column(db.String(200), nullable=False)
    price = db.Column(db.Numeric(10, 2), nullable=False)
    quantity = db.Column(db.Integer, nullable=False)
    variants = db.Column(db.JSON, nullable=False, default=dict)

    @property
    def line_total(self):
        return self.price * self.quantity


def _media(*urls):
    return [{"id": i, "url": u, "alt": "", "type": "image"} for i, u in enumerate(urls, start=1)]


def seed_if_empty(admin_email=None, admin_password=None):
    """Seed categories, a few products and a promo on first run, and make sure an admin exists."""
    if Category.query.count() == 0:
        cutlery = Category(name="Cutlery", slug="cutlery", description="Spoons, forks, knives and full sets.")
        footwear = Category(name="Footwear", slug="footwear", description="Everyday and formal shoes.")
        home = Category(name="Home Goods", slug="home-goods", description="Kitchen and household essentials.")
        db.session.add_all([cutlery, footwear, home])
        db.session.flush()

        products = [
            {"name": "Royal Steel Cutlery Set", "category_id": cutlery.id, "base_price": Decimal("4500"),
             "cut_price": Decimal("5200"), "stock": 25, "is_featured": True,
             "short_description": "24-piece stainless steel set.",
             "media": _media("/static/img/cutlery-silver.jpg", "/static/img/cutlery-gold.jpg"),
             "variant_types": [
                 {"name": "Finish", "options": [
                     {"value": "Silver", "price_adjustment": 0, "linked_media_id": 1},
                     {"value": "Gold", "price_adjustment": 800, "linked_media_id": 2},
                 ]},
                 {"name": "Pieces", "options": [
                     {"value": "24", "price_adjustment": 0, "linked_media_id": None},
                     {"value": "36", "price_adjustment": 1500, "linked_media_id": None},
                 ]},
             ]},
            {"name": "Chef Knife", "category_id": cutlery.id, "base_price": Decimal("1800"),
             "stock": 40, "short_description": "8 inch forged chef knife.",
             "media": _media("/static/img/chef-knife.jpg"), "variant_types": []},
            {"name": "Leather Loafers", "category_id": footwear.id, "base_price": Decimal("6500"),
             "stock": 15, "is_featured": True, "short_description": "Hand-stitched leather loafers.",
             "media": _media("/static/img/loafers-black.jpg", "/static/img/loafers-brown.jpg"),
             "variant_types": [
                 {"name": "Color", "options": [
                     {"value": "Black", "price_adjustment": 0, "linked_media_id": 1},
                     {"value": "Brown", "price_adjustment": 0, "linked_media_id": 2},
                 ]},
                 {"name": "Size", "options": [
                     {"value": str(s), "price_adjustment": 0 if s < 44 else 300, "linked_media_id": None}
                     for s in range(40, 46)
                 ]},
             ]},
            {"name": "Ceramic Dinner Plates", "category_id": home.id, "base_price": Decimal("3200"),
             "stock": 30, "short_description": "Set of six glazed dinner plates.",
             "media": _media("/static/img/plates.jpg"), "variant_types": []},
        ]
        for p in products:
            db.session.add(Product(slug=slugify(p["name"]), **p))

        db.session.add(Promo(code="WELCOME10", type="percent", value=Decimal("10"),
                             min_order=Decimal("2000"), is_active=True,
                             expires_at=utcnow() + timedelta(days=365)))
        db.session.commit()
        log.info("Seeded catalog with %d products", len(products))

    if admin_email and User.query.filter_by(role="admin").count() == 0:
        admin = User.query.filter_by(email=admin_email.lower()).first()
        if admin is None:
            admin = User(email=admin_email.lower(), display_name="Administrator")
            admin.set_password(admin_password)
            db.session.add(admin)
        admin.role = "admin"
        db.session.commit()
        log.info("Admin account ready: %s", admin.email)


def configure_logging(app):
    level = getattr(logging, str(app.config["LOG_LEVEL"]).upper(), logging.INFO)
    root = logging.getLogger()
    if not root.handlers:
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(logging.Formatter(
            "%(asctime)s | %(levelname)s | %(name)s | %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        ))
        root.addHandler(handler)
    root.setLevel(level)


def money(value, currency="PKR"):
    value = Decimal(value or 0).quantize(Decimal("0.01"))
    if value == value.to_integral():
        return f"{currency} {value:,.0f}"
    return f"{currency} {value:,.2f}"


def register_error_handlers(app):
    @app.errorhandler(404)
    def not_found(e):
        return render_template("error.html", code=404, message="Page not found."), 404

    @app.errorhandler(500)
    def server_error(e):
        db.session.rollback()
        log.exception("Unhandled error")
        return render_template("error.html", code=500, message="Something went wrong."), 500


def register_commands(app):
    @app.cli.command("seed")
    def seed_command():
        """Create tables and seed the catalog."""
        db.create_all()
        seed_if_empty(app.config["ADMIN_EMAIL"], app.config["ADMIN_PASSWORD"])
        click.echo("Database ready.")

    @app.cli.command("promote-admin")
    @click.argument("email")
    def promote_admin_command(email):
        """Give an existing user the admin role."""
        user = User.query.filter_by(email=email.strip().lower()).first()
        if user is None:
            raise click.ClickException(f"No user with email {email}")
        user.role = "admin"
        db.session.commit()
        click.echo(f"{user.email} is now an admin.")


def create_app(test_config=None):
    app = Flask(__name__)
    app.config.from_object(Config)
    if test_config:
        app.config.update(test_config)

    configure_logging(app)
    db.init_app(app)

    # Register blueprints (import inside to avoid circular imports)
    from shop import shop_bp
    from auth import auth_bp, account_bp
    from admin import admin_bp
    app.register_blueprint(shop_bp)          # storefront at /
    app.register_blueprint(auth_bp, url_prefix="/auth")
    app.register_blueprint(account_bp, url_prefix="/account")
    app.register_blueprint(admin_bp, url_prefix="/admin")

    from auth import current_user
    from pricing import Cart

    @app.context_processor
    def inject_globals():
        return {
            "current_user": current_user(),
            "cart_count": Cart.from_session().item_count,
            "nav_categories": Category.query.order_by(Category.name).all(),
            "currency": app.config["CURRENCY"],
        }

    app.jinja_env.filters["money"] = lambda v: money(v, app.config["CURRENCY"])

    register_error_handlers(app)
    register_commands(app)

    # Ensure tables exist at startup
    with app.app_context():
        db.create_all()
        if app.config.get("SEED_ON_START"):
            seed_if_empty(app.config["ADMIN_EMAIL"], app.config["ADMIN_PASSWORD"])

    return app
