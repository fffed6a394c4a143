# promos.py
from decimal import Decimal
import logging

from core import Promo, utcnow

log = logging.getLogger(__name__)


def normalize_code(code):
    return (code or "").strip().upper()


def get_valid_promo(code, cart_total, now=None):
    """Return the active, unexpired Promo for ``code`` that ``cart_total`` qualifies for, else None."""
    code = normalize_code(code)
    cart_total = Decimal(str(cart_total or 0))
    if not code or cart_total <= 0:
        return None

    now = now or utcnow()
    promo = Promo.query.filter(
        Promo.is_active.is_(True),
        Promo.code == code,
        Promo.expires_at > now,
    ).first()
    if promo is None:
        log.debug("Promo %s not found, inactive or expired", code)
        return None
    if cart_total < promo.min_order:
        log.debug("Promo %s needs a minimum order of %s (cart %s)", code, promo.min_order, cart_total)
        return None
    return promo


def promo_status(promo, now=None):
    now = now or utcnow()
    expired = promo.expires_at <= now
    if promo.is_active and not expired:
        return "Active"
    return "Expired" if expired else "Disabled"
