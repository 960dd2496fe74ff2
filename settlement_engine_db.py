import logging
from decimal import Decimal
from typing import Optional, Dict, Any

from psycopg import Connection
from psycopg.errors import UniqueViolation

from config import get_settings
from coupon_engine import evaluate_coupon, apply_discount
from errors import NotFound, InvalidState, Fatal
from fee_engine import resolve_seller_fee_percentage
from settlement_engine import compute_settlement, quantize_money
from ledger.db import get_conn
from ledger.repositories import (
    credit_balance,
    get_affiliate_relation,
    get_coupon_by_code,
    get_plan_by_id,
    get_product,
    get_sale_by_payment_ref,
    get_user_by_id,
    increment_coupon_usage,
    insert_sale,
)

logger = logging.getLogger(__name__)


def handle_payment_db(event: Dict[str, Any]) -> Dict[str, Any]:
    """
    settle one trusted payment-succeeded event.

    event: dict with keys:
      - product_id: int
      - buyer_id: int
      - seller_id: int
      - affiliate_id: int | None
      - coupon_code: str | None
      - gross_amount_cents: int | None   (what the provider charged)
      - external_payment_ref: str        (idempotency key)
      - payment_method: str | None

    coupon usage, balance credits and the sale insert happen in one
    transaction: either all of them commit or none do.
    """
    with get_conn() as conn:
        try:
            result = _handle_payment_db_in_tx(conn, event)
            conn.commit()
        except UniqueViolation:
            # a concurrent delivery of the same event won the insert
            conn.rollback()
            logger.info(
                "Duplicate payment event lost the insert race",
                extra={"external_payment_ref": event["external_payment_ref"]},
            )
            return _duplicate(event["external_payment_ref"])
        except Fatal:
            conn.rollback()
            logger.exception(
                "Settlement aborted by ledger misconfiguration",
                extra={"external_payment_ref": event.get("external_payment_ref")},
            )
            raise
        except Exception:
            conn.rollback()
            logger.warning(
                "Settlement failed; nothing was applied",
                extra={"external_payment_ref": event.get("external_payment_ref")},
                exc_info=True,
            )
            raise

    if result["status"] == "applied":
        logger.info(
            "Sale settled",
            extra={
                "sale_id": result["sale_id"],
                "external_payment_ref": result["external_payment_ref"],
                "amount": result["splits"]["amount"],
                "seller_amount": result["splits"]["seller_amount"],
                "affiliate_amount": result["splits"]["affiliate_amount"],
                "platform_fee": result["splits"]["platform_fee"],
            },
        )
    return result


def _handle_payment_db_in_tx(conn: Connection, event: Dict[str, Any]) -> Dict[str, Any]:
    settings = get_settings()
    payment_ref = event["external_payment_ref"]
    affiliate_id = event.get("affiliate_id")
    coupon_code = event.get("coupon_code")

    # 1) idempotency: the same payment reference settles at most once
    if get_sale_by_payment_ref(conn, payment_ref) is not None:
        logger.info("Duplicate payment event ignored", extra={"external_payment_ref": payment_ref})
        return _duplicate(payment_ref)

    # 2) resolve product and seller
    product = get_product(conn, event["product_id"])
    if product is None:
        raise NotFound(f"Product {event['product_id']} not found.")

    seller = get_user_by_id(conn, event["seller_id"])
    if seller is None:
        raise NotFound(f"Seller {event['seller_id']} not found.")
    if product["seller_id"] != seller["id"]:
        raise InvalidState(
            f"Product {product['id']} does not belong to seller {seller['id']}.",
            reason="seller_mismatch",
        )

    if get_user_by_id(conn, event["buyer_id"]) is None:
        raise NotFound(f"Buyer {event['buyer_id']} not found.")

    # 3) coupon: evaluate, then consume with a conditional increment
    amount = Decimal(product["price"])
    coupon_id = None
    coupon_applied = False
    if coupon_code:
        # the payment already went through: a coupon that is gone or no
        # longer valid costs the buyer the discount, never the sale
        coupon = get_coupon_by_code(conn, coupon_code)
        evaluation = evaluate_coupon(coupon, product) if coupon is not None else None

        if evaluation is None or not evaluation["valid"]:
            logger.warning(
                "Coupon not applied",
                extra={
                    "coupon_code": coupon_code,
                    "reason": evaluation["reason"] if evaluation else "unknown_code",
                },
            )
        elif increment_coupon_usage(conn, coupon["id"]):
            amount = apply_discount(amount, evaluation["discount"])
            coupon_id = coupon["id"]
            coupon_applied = True
        else:
            logger.warning(
                "Coupon usage race lost; settling without discount",
                extra={"coupon_code": coupon_code, "external_payment_ref": payment_ref},
            )

    # 4) affiliate eligibility
    if affiliate_id is not None and not _affiliate_is_eligible(
        conn, product["id"], affiliate_id, settings.REQUIRE_APPROVED_AFFILIATE
    ):
        logger.warning(
            "Affiliate not eligible; no commission paid",
            extra={"affiliate_id": affiliate_id, "product_id": product["id"]},
        )
        affiliate_id = None

    # 5) fee rate from the seller's plan (Fatal if the plan is missing)
    fee_percentage = resolve_seller_fee_percentage(
        seller,
        lambda plan_id: get_plan_by_id(conn, plan_id),
        default_plan_id=settings.DEFAULT_PLAN_ID,
    )

    # 6) pure split
    splits = compute_settlement(amount, product, fee_percentage, affiliate_id is not None)

    gross_cents = event.get("gross_amount_cents")
    if gross_cents is not None:
        charged = quantize_money(Decimal(gross_cents) / Decimal("100"))
        if charged != splits["amount"]:
            logger.warning(
                "Charged amount differs from settled amount",
                extra={
                    "external_payment_ref": payment_ref,
                    "charged": charged,
                    "settled": splits["amount"],
                },
            )

    # 7) balances, in user id order so concurrent settlements lock rows consistently
    credits = [(seller["id"], splits["seller_amount"])]
    if affiliate_id is not None:
        credits.append((affiliate_id, splits["affiliate_amount"]))
    for user_id, delta in sorted(credits):
        if delta > 0:
            credit_balance(conn, user_id, delta)

    # 8) immutable sale record
    sale = insert_sale(
        conn,
        product_id=product["id"],
        buyer_id=event["buyer_id"],
        seller_id=seller["id"],
        affiliate_id=affiliate_id,
        coupon_id=coupon_id,
        amount=splits["amount"],
        seller_amount=splits["seller_amount"],
        affiliate_amount=splits["affiliate_amount"] if affiliate_id is not None else None,
        platform_fee=splits["platform_fee"],
        payment_method=event.get("payment_method") or settings.DEFAULT_PAYMENT_METHOD,
        external_payment_ref=payment_ref,
    )

    return {
        "status": "applied",
        "sale_id": sale["id"],
        "external_payment_ref": payment_ref,
        "affiliate_id": affiliate_id,
        "coupon_applied": coupon_applied,
        "splits": splits,
    }


def validate_coupon_db(code: str, product_id: int) -> Dict[str, Any]:
    """
    checkout-time coupon check. does not consume usage; the coupon is only
    consumed when the payment settles.
    """
    with get_conn() as conn:
        coupon = get_coupon_by_code(conn, code)
        product = get_product(conn, product_id)

    if coupon is None:
        raise NotFound(f"Coupon '{code}' not found.")
    if product is None:
        raise NotFound(f"Product {product_id} not found.")

    evaluation = evaluate_coupon(coupon, product)
    if not evaluation["valid"]:
        raise InvalidState(f"Coupon '{code}' is not valid: {evaluation['reason']}.", reason=evaluation["reason"])

    return {
        "coupon": coupon,
        "discount": evaluation["discount"],
        "amount": quantize_money(apply_discount(product["price"], evaluation["discount"])),
    }


def quote_payment_db(
    product_id: int,
    coupon_code: Optional[str] = None,
    affiliate_id: Optional[int] = None,
) -> Dict[str, Any]:
    """
    preview the amount to charge and the split the sale would produce with
    the current coupon/plan state. read-only.
    """
    settings = get_settings()
    with get_conn() as conn:
        product = get_product(conn, product_id)
        if product is None:
            raise NotFound(f"Product {product_id} not found.")
        seller = get_user_by_id(conn, product["seller_id"])
        if seller is None:
            raise NotFound(f"Seller {product['seller_id']} not found.")

        amount = Decimal(product["price"])
        coupon_applied = False
        if coupon_code:
            coupon = get_coupon_by_code(conn, coupon_code)
            if coupon is not None:
                evaluation = evaluate_coupon(coupon, product)
                if evaluation["valid"]:
                    amount = apply_discount(amount, evaluation["discount"])
                    coupon_applied = True

        has_affiliate = affiliate_id is not None and _affiliate_is_eligible(
            conn, product_id, affiliate_id, settings.REQUIRE_APPROVED_AFFILIATE
        )
        fee_percentage = resolve_seller_fee_percentage(
            seller,
            lambda plan_id: get_plan_by_id(conn, plan_id),
            default_plan_id=settings.DEFAULT_PLAN_ID,
        )

    splits = compute_settlement(amount, product, fee_percentage, has_affiliate)
    return {
        "product_id": product_id,
        "coupon_applied": coupon_applied,
        "affiliate_eligible": has_affiliate,
        "amount_cents": int(splits["amount"] * 100),
        "splits": splits,
    }


def _affiliate_is_eligible(conn: Connection, product_id: int, affiliate_id: int, require_approved: bool) -> bool:
    if get_user_by_id(conn, affiliate_id) is None:
        return False
    if not require_approved:
        return True
    relation = get_affiliate_relation(conn, product_id, affiliate_id)
    return relation is not None and relation["status"] == "approved"


def _duplicate(payment_ref: str) -> Dict[str, Any]:
    return {
        "status": "duplicate",
        "sale_id": None,
        "external_payment_ref": payment_ref,
        "affiliate_id": None,
        "coupon_applied": False,
        "splits": None,
    }
