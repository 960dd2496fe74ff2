from datetime import datetime, timezone
from decimal import Decimal

ZERO = Decimal("0")
HUNDRED = Decimal("100")


def evaluate_coupon(coupon, product, now=None):
    """
    coupon: dict with type, value, seller_id, product_id, max_usage,
            usage_count, expires_at
    product: dict with id, seller_id, price
    now: aware datetime (defaults to current UTC time)

    returns {"valid": bool, "reason": str | None, "discount": Decimal}.
    the discount is unclamped; callers apply it with apply_discount().
    usage is NOT consumed here.
    """
    if now is None:
        now = datetime.now(timezone.utc)

    # 1) scope: single product, or every product of the coupon's seller
    if coupon["product_id"] is not None:
        if coupon["product_id"] != product["id"]:
            return _invalid("out_of_scope")
    elif coupon["seller_id"] != product["seller_id"]:
        return _invalid("out_of_scope")

    # 2) usage ceiling (None = unlimited)
    max_usage = coupon["max_usage"]
    if max_usage is not None and coupon["usage_count"] >= max_usage:
        return _invalid("exhausted")

    # 3) expiry
    expires_at = coupon["expires_at"]
    if expires_at is not None and expires_at < now:
        return _invalid("expired")

    return {
        "valid": True,
        "reason": None,
        "discount": compute_discount(coupon, product["price"]),
    }


def compute_discount(coupon, price):
    value = Decimal(coupon["value"])
    if coupon["type"] == "percentage":
        return Decimal(price) * value / HUNDRED
    if coupon["type"] == "fixed":
        return value
    raise ValueError(f"Unknown coupon type '{coupon['type']}'.")


def apply_discount(price, discount):
    """price after discount, never below zero."""
    return max(ZERO, Decimal(price) - Decimal(discount))


def _invalid(reason):
    return {"valid": False, "reason": reason, "discount": ZERO}
