from decimal import Decimal

from errors import Fatal

# users without a plan are on the Free plan
DEFAULT_PLAN_ID = 1


def resolve_seller_fee_percentage(seller, get_plan, default_plan_id=DEFAULT_PLAN_ID):
    """
    seller: dict with plan_id (may be None)
    get_plan: callable plan_id -> plan dict or None

    returns the seller plan's platform_fee_percentage as a Decimal.
    a missing plan is a misconfiguration, not a business rule failure:
    settlement cannot proceed without a fee rate, so this raises Fatal.
    """
    plan_id = seller.get("plan_id") or default_plan_id
    plan = get_plan(plan_id)
    if plan is None:
        raise Fatal(
            f"Plan {plan_id} for seller {seller.get('id')} not found.",
            reason="plan_missing",
        )
    return Decimal(plan["platform_fee_percentage"])


def compute_platform_fee(amount_before_fee, fee_percentage):
    """
    platform fee on the seller's proceeds (never on the affiliate's share).
    unrounded.
    """
    return Decimal(amount_before_fee) * Decimal(fee_percentage) / Decimal("100")
