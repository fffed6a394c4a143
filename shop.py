# shop.py
from flask import Blueprint, render_template, redirect, url_for, session, request, flash, abort, current_app
from decimal import Decimal, InvalidOperation
import logging
import math
import uuid
from urllib.parse import urlencode

from core import db, Category, Product, Order, OrderItem, PAYMENT_COD
from pricing import Cart, CartError, default_selection, price_for_selection, compute_discount, order_totals
from promos import get_valid_promo, normalize_code
from auth import current_user, login_required

log = logging.getLogger(__name__)

shop_bp = Blueprint("shop", __name__)

FEATURED_LIMIT = 6
SECTION_LIMIT = 4
RELATED_LIMIT = 4


# --- Helpers (storefront-specific) ---
def active_products(category=None):
    q = Product.query.filter(Product.is_active.is_(True))
    if category is not None:
        q = q.filter(Product.category_id == category.id)
    return q.order_by(Product.name).all()


def _decimal_arg(name):
    raw = request.args.get(name, "").strip()
    if not raw:
        return None
    try:
        value = Decimal(raw)
    except InvalidOperation:
        return None
    return value if value.is_finite() else None


def parse_variant_filters(values):
    """``["Color:Red", "Color:Black", "Size:42"]`` -> ``{"Color": {"Red", "Black"}, "Size": {"42"}}``."""
    selected = {}
    for raw in values:
        name, sep, value = raw.partition(":")
        if sep and name.strip() and value.strip():
            selected.setdefault(name.strip(), set()).add(value.strip())
    return selected


def filter_products(products, search="", min_price=None, max_price=None, variants=None):
    result = products
    term = (search or "").strip().lower()
    if term:
        result = [p for p in result
                  if term in p.name.lower() or term in (p.short_description or "").lower()]
    if min_price is not None:
        result = [p for p in result if p.base_price >= min_price]
    if max_price is not None:
        result = [p for p in result if p.base_price <= max_price]
    for type_name, wanted in (variants or {}).items():
        if not wanted:
            continue
        result = [p for p in result if any(
            vt["name"] == type_name and any(o["value"] in wanted for o in vt.get("options", []))
            for vt in p.variant_types or []
        )]
    return result


def filter_options(products):
    """Every variant value on offer, per type, and a price ceiling rounded up to the next 100."""
    options = {}
    ceiling = Decimal("0")
    for p in products:
        price = max(p.base_price, p.cut_price or 0)
        ceiling = max(ceiling, price)
        for vt in p.variant_types or []:
            bucket = options.setdefault(vt["name"], set())
            bucket.update(o["value"] for o in vt.get("options", []))
    max_price = int(math.ceil(ceiling / 100) * 100)
    return {name: sorted(values) for name, values in options.items()}, max_price


def applied_promo(subtotal):
    """Promo stored in the session, re-validated against the current subtotal."""
    code = session.get("promo_code")
    if not code:
        return None, None
    promo = get_valid_promo(code, subtotal)
    if promo is None:
        return None, f"Promo code {code} no longer applies to this cart."
    return promo, None


def cart_summary(cart, shipping=None):
    promo, promo_msg = applied_promo(cart.subtotal)
    discount = compute_discount(promo, cart.subtotal)
    if shipping is None:
        shipping = current_app.config["SHIPPING_COST"]
    totals = order_totals(cart.subtotal, discount, shipping, current_app.config["TAX_RATE"])
    return totals, promo, promo_msg


def _listing(category=None, title="All Products"):
    products = active_products(category)
    variant_options, max_price = filter_options(products)
    variants = parse_variant_filters(request.args.getlist("variant"))
    search = request.args.get("search", "")
    results = filter_products(products, search, _decimal_arg("min_price"),
                              _decimal_arg("max_price"), variants)
    return render_template(
        "products.html",
        title=title,
        category=category,
        products=results,
        search=search,
        variant_options=variant_options,
        selected_variants=variants,
        max_price=max_price,
    )


# --- Routes: Storefront ---
@shop_bp.route("/")
def index():
    products = (Product.query.filter(Product.is_active.is_(True))
                .order_by(Product.created_at.desc()).all())
    featured = [p for p in products if p.is_featured][:FEATURED_LIMIT]
    sections = []
    for cat in Category.query.order_by(Category.name).all():
        items = [p for p in products if p.category_id == cat.id][:SECTION_LIMIT]
        if items:
            sections.append({"category": cat, "products": items})
    return render_template("index.html", featured=featured, sections=sections)


@shop_bp.route("/products")
def products():
    return _listing()


@shop_bp.route("/products/category/<slug>")
def category(slug):
    cat = Category.query.filter_by(slug=slug).first()
    if cat is None:
        return render_template("products.html", title="Category", category=None, products=[],
                               search="", variant_options={}, selected_variants={}, max_price=0)
    return _listing(cat, cat.name)


@shop_bp.route("/products/<slug>")
def product_detail(slug):
    product = Product.query.filter_by(slug=slug, is_active=True).first()
    if product is None:
        abort(404)
    selected = default_selection(product)
    for vt in product.variant_types or []:
        value = request.args.get(vt["name"])
        if value and any(o["value"] == value for o in vt.get("options", [])):
            selected[vt["name"]] = value
    quote = price_for_selection(product, selected)
    related = (Product.query
               .filter(Product.category_id == product.category_id,
                       Product.is_active.is_(True),
                       Product.id != product.id)
               .limit(RELATED_LIMIT).all())
    return render_template("product.html", product=product, selected=selected, quote=quote,
                           media=quote.linked_media or product.main_media, related=related)


@shop_bp.route("/cart/add/<slug>", methods=["POST"])
def add_to_cart(slug):
    product = Product.query.filter_by(slug=slug).first()
    if product is None:
        flash("Product not found.", "error")
        return redirect(url_for("shop.products"))

    selected = default_selection(product)
    for vt in product.variant_types or []:
        value = request.form.get(f"variant-{vt['name']}")
        if value and any(o["value"] == value for o in vt.get("options", [])):
            selected[vt["name"]] = value
    try:
        qty = int(request.form.get("quantity", 1))
    except ValueError:
        qty = 0

    quote = price_for_selection(product, selected)
    media = quote.linked_media or product.main_media
    cart = Cart.from_session()
    try:
        cart.add_item(product.id, product.name, product.slug, quote.final_price, qty, selected,
                      media_url=media["url"] if media else None, stock=product.stock,
                      is_active=product.is_active)
    except CartError as e:
        flash(str(e), "error")
        if not product.is_active:
            return redirect(url_for("shop.products"))
        target = url_for("shop.product_detail", slug=slug)
        return redirect(f"{target}?{urlencode(selected)}" if selected else target)
    cart.save()
    flash(f"Added '{product.name}' to cart.", "success")
    return redirect(request.referrer or url_for("shop.cart_view"))


@shop_bp.route("/cart", methods=["GET", "POST"])
def cart_view():
    cart = Cart.from_session()
    if request.method == "POST":
        refused = False
        for key, val in request.form.items():
            if not key.startswith("qty-"):
                continue
            item_key = key.replace("qty-", "", 1)
            item = cart.find(item_key)
            if item is None:
                continue
            try:
                qty = int(val)
            except ValueError:
                qty = item["quantity"]
            product = db.session.get(Product, item["product_id"])
            try:
                cart.update_quantity(item_key, qty, stock=product.stock if product else None)
            except CartError as e:
                refused = True
                flash(f"{item['name']}: {e}", "error")
        cart.save()
        if not refused:
            flash("Cart updated.", "success")
        return redirect(url_for("shop.cart_view"))

    # shipping is only charged at checkout
    totals, promo, promo_msg = cart_summary(cart, shipping=Decimal("0"))
    return render_template("cart.html", items=cart.lines(), totals=totals,
                           promo=promo, promo_msg=promo_msg)


@shop_bp.route("/cart/remove", methods=["POST"])
def remove():
    cart = Cart.from_session()
    cart.remove_item(request.form.get("key", ""))
    cart.save()
    flash("Item removed.", "success")
    return redirect(url_for("shop.cart_view"))


@shop_bp.route("/cart/clear", methods=["POST"])
def clear():
    cart = Cart.from_session()
    cart.clear()
    cart.save()
    session.pop("promo_code", None)
    flash("Cart cleared.", "success")
    return redirect(url_for("shop.cart_view"))


@shop_bp.route("/cart/promo", methods=["POST"])
def apply_promo_route():
    code = normalize_code(request.form.get("promo"))
    if not code:
        flash("Enter a promo code.", "error")
        return redirect(url_for("shop.cart_view"))
    promo = get_valid_promo(code, Cart.from_session().subtotal)
    if promo is None:
        session.pop("promo_code", None)
        flash("Invalid, expired, or inapplicable promo code.", "error")
    else:
        session["promo_code"] = promo.code
        flash(f"Promo code {promo.code} applied.", "success")
    return redirect(url_for("shop.cart_view"))


@shop_bp.route("/cart/promo/remove", methods=["POST"])
def remove_promo():
    session.pop("promo_code", None)
    flash("Promo code removed.", "success")
    return redirect(url_for("shop.cart_view"))


@shop_bp.route("/checkout", methods=["GET", "POST"])
@login_required
def checkout():
    cart = Cart.from_session()
    if not cart:
        flash("Your cart is empty. Cannot checkout.", "info")
        return redirect(url_for("shop.products"))

    user = current_user()
    totals, promo, promo_msg = cart_summary(cart)
    if promo_msg:
        session.pop("promo_code", None)
        flash(promo_msg, "error")

    if request.method == "POST":
        full_name = request.form.get("full_name", "").strip()
        phone = request.form.get("phone", "").strip()
        address = request.form.get("address", "").strip()
        if not full_name or not phone or not address:
            flash("Please provide your name, phone number and address.", "error")
            return redirect(url_for("shop.checkout"))

        order = Order(
            order_id=uuid.uuid4().hex,
            user_id=user.id,
            user_name=full_name,
            user_email=user.email,
            shipping_address=address,
            shipping_phone=phone,
            subtotal=totals.subtotal,
            discount=totals.discount,
            promo_code=promo.code if promo else None,
            tax_amount=totals.tax,
            shipping_cost=totals.shipping,
            total_amount=totals.total,
            payment_method=PAYMENT_COD,
            status="pending",
        )
        db.session.add(order)
        db.session.flush()
        for it in cart.lines():
            product = db.session.get(Product, it["product_id"])
            db.session.add(
                OrderItem(
                    order_id_fk=order.id,
                    product_id=it["product_id"],
                    category_id=product.category_id if product else None,
                    name=it["name"],
                    price=it["unit_price"],
                    quantity=it["quantity"],
                    variants=it["variants"],
                )
            )
        db.session.commit()
        log.info("Order %s placed by %s: %s", order.short_id, user.email, order.total_amount)

        cart.clear()
        cart.save()
        session.pop("promo_code", None)
        flash(f"Order placed successfully! Order ID: {order.short_id}", "success")
        return redirect(url_for("shop.checkout_success", order_id=order.order_id))

    form = {
        "full_name": user.display_name or user.email,
        "email": user.email,
        "phone": user.phone,
        "address": user.address,
    }
    return render_template("checkout.html", items=cart.lines(), totals=totals, promo=promo, form=form)


@shop_bp.route("/checkout/success/<order_id>")
@login_required
def checkout_success(order_id):
    order = Order.query.filter_by(order_id=order_id).first()
    user = current_user()
    if order is None or (order.user_id != user.id and not user.is_admin):
        flash("Order not found.", "error")
        return redirect(url_for("shop.index"))
    return render_template("checkout_success.html", order=order)
