from decimal import Decimal, ROUND_HALF_UP

from commission_engine import compute_split
from fee_engine import compute_platform_fee

CENT = Decimal("0.01")


def quantize_money(value):
    return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def compute_settlement(amount, product, fee_percentage, has_affiliate):
    """
    pure settlement arithmetic for one sale.

    amount: Decimal charged to the buyer (price after any coupon)
    product: dict with commission_type / commission_rate
    fee_percentage: seller plan's platform fee percentage
    has_affiliate: whether an eligible affiliate earns commission

    intermediate values stay unrounded; only the persisted fields are
    quantized to cents, and seller_amount takes the remainder so that
        amount == seller_amount + affiliate_amount + platform_fee
    holds exactly.
    """
    amount = quantize_money(amount)

    split = compute_split(product, amount, has_affiliate)
    platform_fee_raw = compute_platform_fee(split["seller_amount_before_fee"], fee_percentage)

    affiliate_amount = quantize_money(split["affiliate_amount"])
    platform_fee = quantize_money(platform_fee_raw)
    seller_amount = amount - affiliate_amount - platform_fee

    # rounding both shares up can overshoot by a cent on tiny amounts
    if seller_amount < 0:
        platform_fee += seller_amount
        seller_amount = Decimal("0.00")

    return {
        "amount": amount,
        "raw_commission": split["raw_commission"],
        "affiliate_amount": affiliate_amount,
        "seller_amount_before_fee": quantize_money(split["seller_amount_before_fee"]),
        "fee_percentage": Decimal(fee_percentage),
        "platform_fee": platform_fee,
        "seller_amount": seller_amount,
    }
