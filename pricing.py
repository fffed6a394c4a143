# pricing.py
"""Variant pricing, the session cart and order total arithmetic.

Nothing in here touches the database. Money is always ``Decimal`` and
rounded to two places at the edges (discount, tax, totals).
"""
from collections import namedtuple
from decimal import Decimal, ROUND_HALF_UP

from flask import session

CENTS = Decimal("0.01")
ZERO = Decimal("0.00")

PriceQuote = namedtuple("PriceQuote", "final_price adjustment linked_media stock")
Totals = namedtuple("Totals", "subtotal discount tax shipping total")


class CartError(ValueError):
    """Raised when a cart change breaks a stock, quantity or availability rule."""


def _money(value):
    return Decimal(str(value)).quantize(CENTS, rounding=ROUND_HALF_UP)


def default_selection(product):
    """First option of every variant type that has options."""
    selected = {}
    for vt in product.variant_types or []:
        if vt.get("options"):
            selected[vt["name"]] = vt["options"][0]["value"]
    return selected


def price_for_selection(product, selected):
    adjustment = Decimal("0")
    linked_media_id = None
    for vt in product.variant_types or []:
        value = selected.get(vt["name"])
        option = next((o for o in vt.get("options", []) if o["value"] == value), None)
        if option is None:
            continue
        adjustment += Decimal(str(option.get("price_adjustment") or 0))
        if option.get("linked_media_id") is not None:
            linked_media_id = option["linked_media_id"]

    linked = product.media_by_id(linked_media_id) if linked_media_id is not None else None
    return PriceQuote(
        final_price=_money(Decimal(str(product.base_price)) + adjustment),
        adjustment=_money(adjustment),
        linked_media=linked,
        stock=product.stock,
    )


def cart_item_key(product_id, variants):
    parts = [f"{name}:{variants[name]}" for name in sorted(variants)]
    return "|".join([str(product_id)] + parts)


def compute_discount(promo, subtotal):
    """Discount for ``promo`` on ``subtotal``; never negative, never above the subtotal."""
    subtotal = Decimal(str(subtotal))
    if promo is None or subtotal <= 0:
        return ZERO
    value = Decimal(str(promo.value))
    if promo.type == "percent":
        discount = subtotal * value / 100
    elif promo.type == "fixed":
        discount = value
    else:
        return ZERO
    return _money(max(ZERO, min(discount, subtotal)))


def order_totals(subtotal, discount=ZERO, shipping=ZERO, tax_rate=ZERO):
    subtotal = _money(subtotal)
    discount = _money(discount)
    taxable = subtotal - discount
    tax = _money(taxable * Decimal(str(tax_rate)))
    shipping = _money(shipping)
    return Totals(subtotal, discount, tax, shipping, _money(taxable + tax + shipping))


class Cart:
    """Line items kept in the signed session cookie.

    Each item is a plain dict (product_id, name, slug, unit_price, quantity,
    variants, media_url) so it serialises as JSON. ``unit_price`` is stored
    as a string to keep Decimal precision.
    """

    SESSION_KEY = "cart"

    def __init__(self, items=None):
        self.items = list(items or [])

    @classmethod
    def from_session(cls):
        return cls(session.get(cls.SESSION_KEY, []))

    def save(self):
        session[self.SESSION_KEY] = self.items
        session.modified = True

    @staticmethod
    def key_of(item):
        return cart_item_key(item["product_id"], item.get("variants") or {})

    def find(self, key):
        return next((it for it in self.items if self.key_of(it) == key), None)

    def add_item(self, product_id, name, slug, unit_price, quantity=1, variants=None,
                 media_url=None, stock=None, is_active=True):
        if not is_active:
            raise CartError("This product is no longer available.")
        if quantity <= 0:
            raise CartError("Quantity must be at least 1.")
        variants = dict(variants or {})
        key = cart_item_key(product_id, variants)
        existing = self.find(key)
        new_qty = quantity + (existing["quantity"] if existing else 0)
        if stock is not None and new_qty > stock:
            raise CartError(f"Only {stock} in stock.")
        if existing:
            existing["quantity"] = new_qty
        else:
            self.items.append({
                "product_id": product_id,
                "name": name,
                "slug": slug,
                "unit_price": str(_money(unit_price)),
                "quantity": quantity,
                "variants": variants,
                "media_url": media_url,
            })
        return key

    def remove_item(self, key):
        self.items = [it for it in self.items if self.key_of(it) != key]

    def update_quantity(self, key, quantity, stock=None):
        if quantity <= 0:
            self.remove_item(key)
            return
        item = self.find(key)
        if item is None:
            return
        if stock is not None and quantity > stock:
            raise CartError(f"Only {stock} in stock.")
        item["quantity"] = quantity

    def clear(self):
        self.items = []

    def lines(self):
        """Items annotated with their key, Decimal unit price and line total."""
        out = []
        for it in self.items:
            price = Decimal(it["unit_price"])
            out.append(dict(it, key=self.key_of(it), unit_price=price,
                            line_total=_money(price * it["quantity"])))
        return out

    @property
    def subtotal(self):
        return _money(sum((Decimal(it["unit_price"]) * it["quantity"] for it in self.items), ZERO))

    @property
    def item_count(self):
        return sum(it["quantity"] for it in self.items)

    def __len__(self):
        return len(self.items)

    def __bool__(self):
        return bool(self.items)
