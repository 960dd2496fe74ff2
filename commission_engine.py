from decimal import Decimal

# platform's cut of every affiliate commission
AFFILIATE_PLATFORM_FEE_RATE = Decimal("0.04")

ZERO = Decimal("0")


def compute_split(product, gross_amount, has_affiliate):
    """
    product: dict with commission_type ("percentage" | "fixed") and commission_rate
    gross_amount: Decimal, the amount actually charged (after coupons)
    has_affiliate: bool

    percentage commissions scale with gross_amount; fixed commissions are a
    flat amount per sale regardless of any discount. the affiliate receives
    the commission minus the 4% affiliate platform fee, clamped to
    [0, gross_amount]. nothing is rounded here.
    """
    gross = Decimal(gross_amount)

    if not has_affiliate:
        return {
            "raw_commission": ZERO,
            "affiliate_amount": ZERO,
            "seller_amount_before_fee": gross,
        }

    rate = Decimal(product["commission_rate"])
    if product["commission_type"] == "percentage":
        raw_commission = gross * rate / Decimal("100")
    elif product["commission_type"] == "fixed":
        raw_commission = rate
    else:
        raise ValueError(f"Unknown commission type '{product['commission_type']}'.")

    affiliate_amount = raw_commission * (Decimal("1") - AFFILIATE_PLATFORM_FEE_RATE)
    affiliate_amount = min(max(affiliate_amount, ZERO), gross)

    return {
        "raw_commission": raw_commission,
        "affiliate_amount": affiliate_amount,
        "seller_amount_before_fee": gross - affiliate_amount,
    }
