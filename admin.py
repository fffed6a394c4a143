# admin.py
from flask import Blueprint, render_template, redirect, url_for, request, flash
from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation
import logging
import re

from core import (
    db, Category, Product, Order, OrderItem, Promo, User,
    ORDER_STATUSES, PROMO_TYPES, ROLES, slugify, utcnow,
)
from auth import admin_required, current_user
from promos import normalize_code, promo_status

log = logging.getLogger(__name__)

admin_bp = Blueprint("admin", __name__)

PERFORMANCE_DAYS = 30
TOP_N = 5

# "Gold +800 @2" -> value, signed adjustment, linked media id
_OPTION_RE = re.compile(r"^(?P<value>.+?)(?:\s+(?P<adj>[+-]\d+(?:\.\d+)?))?(?:\s+@(?P<media>\d+))?$")


class FormError(ValueError):
    pass


def _decimal(raw, label):
    try:
        value = Decimal((raw or "0").strip() or "0")
    except InvalidOperation:
        raise FormError(f"Invalid {label}.")
    if not value.is_finite():
        raise FormError(f"Invalid {label}.")
    return value


def parse_variant_lines(text):
    """Parse ``Type: Value [+adj] [@media], ...`` lines into variant type dicts."""
    variant_types = []
    for lineno, line in enumerate((text or "").splitlines(), start=1):
        line = line.strip()
        if not line:
            continue
        name, sep, rest = line.partition(":")
        if not sep or not name.strip():
            raise FormError(f"Variant line {lineno} needs the form 'Type: Option, Option'.")
        options = []
        for chunk in rest.split(","):
            chunk = chunk.strip()
            if not chunk:
                continue
            m = _OPTION_RE.match(chunk)
            options.append({
                "value": m.group("value").strip(),
                "price_adjustment": float(m.group("adj")) if m.group("adj") else 0,
                "linked_media_id": int(m.group("media")) if m.group("media") else None,
            })
        if not options:
            raise FormError(f"Variant '{name.strip()}' has no options.")
        variant_types.append({"name": name.strip(), "options": options})
    return variant_types


def format_variant_lines(variant_types):
    lines = []
    for vt in variant_types or []:
        opts = []
        for o in vt.get("options", []):
            s = o["value"]
            adj = o.get("price_adjustment") or 0
            if adj:
                s += f" {adj:+g}"
            if o.get("linked_media_id") is not None:
                s += f" @{o['linked_media_id']}"
            opts.append(s)
        lines.append(f"{vt['name']}: {', '.join(opts)}")
    return "\n".join(lines)


def parse_media_lines(text):
    media = []
    for url in (text or "").splitlines():
        url = url.strip()
        if url:
            kind = "video" if url.lower().endswith((".mp4", ".webm", ".mov")) else "image"
            media.append({"id": len(media) + 1, "url": url, "alt": "", "type": kind})
    return media


def product_from_form(form, product=None):
    """Validate the product form and apply it to ``product`` (or a new Product)."""
    name = form.get("name", "").strip()
    short = form.get("short_description", "").strip()
    base_price = _decimal(form.get("base_price"), "base price")
    cut_price = _decimal(form.get("cut_price"), "cut price")
    try:
        stock = int(form.get("stock", "0") or 0)
        category_id = int(form.get("category_id", "") or 0)
    except ValueError:
        raise FormError("Stock and category must be numbers.")

    if base_price <= 0 or not name or not short or db.session.get(Category, category_id) is None:
        raise FormError("Name, Price, Category, and Short Description are required.")
    if cut_price > 0 and cut_price <= base_price:
        raise FormError("Cut Price (Original Price) must be higher than the Base Price (Discounted Price).")
    if stock < 0:
        raise FormError("Stock cannot be negative.")
    media = parse_media_lines(form.get("media", ""))
    if not media:
        raise FormError("At least one image is required for the product.")
    variant_types = parse_variant_lines(form.get("variants", ""))

    slug = slugify(form.get("slug", "")) or slugify(name)
    clash = Product.query.filter(Product.slug == slug)
    if product is not None and product.id is not None:
        clash = clash.filter(Product.id != product.id)
    if clash.first():
        raise FormError(f"Slug '{slug}' is already used by another product.")

    product = product or Product()
    product.name = name
    product.slug = slug
    product.short_description = short
    product.detailed_description = form.get("detailed_description", "").strip()
    product.base_price = base_price
    product.cut_price = cut_price
    product.category_id = category_id
    product.stock = stock
    product.is_active = form.get("is_active") == "on"
    product.is_featured = form.get("is_featured") == "on"
    product.media = media
    product.variant_types = variant_types
    return product


def sales_performance(since):
    """Top categories and products by sales for orders placed since ``since``."""
    category_names = {c.id: c.name for c in Category.query.all()}
    by_category, by_product = {}, {}
    items = (OrderItem.query.join(Order, OrderItem.order_id_fk == Order.id)
             .filter(Order.created_at >= since).all())
    for it in items:
        sales = (it.price or 0) * (it.quantity or 0)
        cat = category_names.get(it.category_id, "Uncategorized")
        for bucket, key in ((by_category, cat), (by_product, it.name or "Unnamed Product")):
            row = bucket.setdefault(key, {"name": key, "sales": Decimal("0"), "units": 0})
            row["sales"] += sales
            row["units"] += it.quantity or 0

    def top(bucket):
        return sorted(bucket.values(), key=lambda r: r["sales"], reverse=True)[:TOP_N]

    return top(by_category), top(by_product)


# --- Routes: Dashboard ---
@admin_bp.route("/")
@admin_required
def dashboard():
    top_categories, top_products = sales_performance(utcnow() - timedelta(days=PERFORMANCE_DAYS))
    stats = {
        "products": Product.query.count(),
        "orders": Order.query.count(),
        "pending": Order.query.filter_by(status="pending").count(),
        "users": User.query.count(),
    }
    return render_template("admin.html", stats=stats, top_categories=top_categories,
                           top_products=top_products, days=PERFORMANCE_DAYS)


# --- Routes: Products ---
@admin_bp.route("/products")
@admin_required
def products():
    rows = Product.query.order_by(Product.created_at.desc()).all()
    return render_template("admin_products.html", products=rows)


@admin_bp.route("/products/new", methods=["GET", "POST"])
@admin_required
def product_new():
    if request.method == "POST":
        try:
            product = product_from_form(request.form)
        except FormError as e:
            flash(str(e), "error")
            return render_template("admin_product_edit.html", product=None, form=request.form,
                                   categories=Category.query.order_by(Category.name).all())
        db.session.add(product)
        db.session.commit()
        log.info("Product %s created by %s", product.slug, current_user().email)
        flash(f"Product '{product.name}' successfully created!", "success")
        return redirect(url_for("admin.products"))
    return render_template("admin_product_edit.html", product=None, form={"is_active": "on"},
                           categories=Category.query.order_by(Category.name).all())


@admin_bp.route("/products/<int:product_id>/edit", methods=["GET", "POST"])
@admin_required
def product_edit(product_id):
    product = Product.query.get_or_404(product_id)
    if request.method == "POST":
        try:
            product_from_form(request.form, product)
        except FormError as e:
            db.session.rollback()
            flash(str(e), "error")
            return redirect(url_for("admin.product_edit", product_id=product_id))
        db.session.commit()
        log.info("Product %s updated by %s", product.slug, current_user().email)
        flash(f"Product '{product.name}' successfully updated!", "success")
        return redirect(url_for("admin.products"))
    form = {
        "name": product.name,
        "slug": product.slug,
        "short_description": product.short_description,
        "detailed_description": product.detailed_description,
        "base_price": product.base_price,
        "cut_price": product.cut_price,
        "category_id": product.category_id,
        "stock": product.stock,
        "is_active": "on" if product.is_active else "",
        "is_featured": "on" if product.is_featured else "",
        "media": "\n".join(m["url"] for m in product.media or []),
        "variants": format_variant_lines(product.variant_types),
    }
    return render_template("admin_product_edit.html", product=product, form=form,
                           categories=Category.query.order_by(Category.name).all())


@admin_bp.route("/products/<int:product_id>/delete", methods=["POST"])
@admin_required
def product_delete(product_id):
    product = Product.query.get_or_404(product_id)
    db.session.delete(product)
    db.session.commit()
    log.info("Product %s deleted by %s", product.slug, current_user().email)
    flash(f"Product '{product.name}' deleted.", "success")
    return redirect(url_for("admin.products"))


# --- Routes: Categories ---
@admin_bp.route("/categories", methods=["GET", "POST"])
@admin_required
def categories():
    if request.method == "POST":
        category_id = request.form.get("id", type=int)
        name = request.form.get("name", "").strip()
        slug = slugify(request.form.get("slug", "")) or slugify(name)
        description = request.form.get("description", "").strip()
        action = "updated" if category_id else "created"
        if not name or not slug:
            flash("Category name and slug are required.", "error")
            return redirect(url_for("admin.categories"))
        clash = Category.query.filter(Category.slug == slug)
        if category_id:
            clash = clash.filter(Category.id != category_id)
        if clash.first():
            flash(f"Slug '{slug}' is already in use.", "error")
            return redirect(url_for("admin.categories"))

        if category_id:
            cat = Category.query.get_or_404(category_id)
        else:
            cat = Category()
            db.session.add(cat)
        cat.name, cat.slug, cat.description = name, slug, description
        db.session.commit()
        log.info("Category %s %s by %s", slug, action, current_user().email)
        flash(f"Category '{name}' successfully {action}.", "success")
        return redirect(url_for("admin.categories"))

    rows = Category.query.order_by(Category.name).all()
    counts = {c.id: c.products.count() for c in rows}
    editing = None
    edit_id = request.args.get("edit", type=int)
    if edit_id:
        editing = db.session.get(Category, edit_id)
    return render_template("admin_categories.html", categories=rows, counts=counts, editing=editing)


@admin_bp.route("/categories/<int:category_id>/delete", methods=["POST"])
@admin_required
def category_delete(category_id):
    cat = Category.query.get_or_404(category_id)
    linked = cat.products.count()
    if linked:
        flash(f"Cannot delete category '{cat.name}'. It is currently linked to {linked} products.", "error")
        return redirect(url_for("admin.categories"))
    db.session.delete(cat)
    db.session.commit()
    log.info("Category %s deleted by %s", cat.slug, current_user().email)
    flash(f"Category '{cat.name}' deleted.", "info")
    return redirect(url_for("admin.categories"))


# --- Routes: Orders ---
@admin_bp.route("/orders")
@admin_required
def orders():
    rows = Order.query.order_by(Order.created_at.desc()).all()
    return render_template("admin_orders.html", orders=rows, statuses=ORDER_STATUSES)


@admin_bp.route("/orders/<int:order_pk>/status", methods=["POST"])
@admin_required
def order_status(order_pk):
    order = Order.query.get_or_404(order_pk)
    status = request.form.get("status", "")
    if status not in ORDER_STATUSES:
        flash("Invalid order status.", "error")
        return redirect(url_for("admin.orders"))
    order.status = status
    db.session.commit()
    log.info("Order %s set to %s by %s", order.short_id, status, current_user().email)
    flash(f"Order {order.short_id} status updated to {status}.", "success")
    return redirect(url_for("admin.orders"))


# --- Routes: Promos ---
def promo_from_form(form, promo=None):
    code = normalize_code(form.get("code"))
    kind = form.get("type", "percent")
    value = _decimal(form.get("value"), "value")
    min_order = _decimal(form.get("min_order"), "minimum order")
    if not code or value <= 0:
        raise FormError("Code and Value must be set.")
    if kind not in PROMO_TYPES:
        raise FormError("Type must be percent or fixed.")
    raw_expiry = form.get("expires_at", "").strip()
    if not raw_expiry:
        raise FormError("Expiry Date is required.")
    try:
        expires_at = datetime.strptime(raw_expiry, "%Y-%m-%d")
    except ValueError:
        raise FormError("Expiry Date must look like YYYY-MM-DD.")
    if expires_at.date() < utcnow().date():
        raise FormError("Expiry date cannot be in the past.")

    clash = Promo.query.filter(Promo.code == code)
    if promo is not None:
        clash = clash.filter(Promo.id != promo.id)
    if clash.first():
        raise FormError(f"Coupon code '{code}' already exists.")

    promo = promo or Promo()
    promo.code = code
    promo.type = kind
    promo.value = value
    promo.min_order = max(min_order, Decimal("0"))
    promo.is_active = form.get("is_active", "true") == "true"
    # valid through the whole expiry day
    promo.expires_at = expires_at + timedelta(days=1) - timedelta(seconds=1)
    return promo


@admin_bp.route("/promos", methods=["GET", "POST"])
@admin_required
def promos():
    if request.method == "POST":
        promo_id = request.form.get("id", type=int)
        existing = Promo.query.get_or_404(promo_id) if promo_id else None
        action = "updated" if existing else "created"
        try:
            promo = promo_from_form(request.form, existing)
        except FormError as e:
            db.session.rollback()
            flash(f"Failed to save coupon: {e}", "error")
            return redirect(url_for("admin.promos"))
        if existing is None:
            db.session.add(promo)
        db.session.commit()
        log.info("Promo %s %s by %s", promo.code, action, current_user().email)
        flash(f"Coupon '{promo.code}' successfully {action}.", "success")
        return redirect(url_for("admin.promos"))

    now = utcnow()
    rows = Promo.query.order_by(Promo.expires_at.desc()).all()
    statuses = {p.id: promo_status(p, now) for p in rows}
    editing = None
    edit_id = request.args.get("edit", type=int)
    if edit_id:
        editing = db.session.get(Promo, edit_id)
    return render_template("admin_promos.html", promos=rows, statuses=statuses,
                           editing=editing, types=PROMO_TYPES)


@admin_bp.route("/promos/<int:promo_id>/delete", methods=["POST"])
@admin_required
def promo_delete(promo_id):
    promo = Promo.query.get_or_404(promo_id)
    db.session.delete(promo)
    db.session.commit()
    log.info("Promo %s deleted by %s", promo.code, current_user().email)
    flash(f"Coupon '{promo.code}' deleted.", "info")
    return redirect(url_for("admin.promos"))


# --- Routes: Users ---
@admin_bp.route("/users")
@admin_required
def users():
    rows = User.query.order_by(User.created_at).all()
    return render_template("admin_users.html", users=rows, roles=ROLES)


@admin_bp.route("/users/<int:user_id>/role", methods=["POST"])
@admin_required
def user_role(user_id):
    user = User.query.get_or_404(user_id)
    role = request.form.get("role", "")
    if user.id == current_user().id:
        flash("You cannot change your own role from this interface.", "error")
        return redirect(url_for("admin.users"))
    if role not in ROLES:
        flash("Invalid role.", "error")
        return redirect(url_for("admin.users"))
    user.role = role
    db.session.commit()
    log.info("User %s role set to %s by %s", user.email, role, current_user().email)
    flash(f"{user.display_name} is now {role}.", "success")
    return redirect(url_for("admin.users"))
