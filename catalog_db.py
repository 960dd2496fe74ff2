import logging
from decimal import Decimal
from typing import Optional, Dict, Any, List

from config import get_settings
from errors import NotFound, InvalidState, Forbidden
from plan_limits import within_limit, describe_limit
from ledger.db import get_conn
from ledger.repositories import (
    count_approved_affiliates_by_seller,
    count_products_by_seller,
    create_affiliate_relation,
    create_coupon,
    create_product,
    create_user,
    debit_balance,
    get_affiliate_relation_by_id,
    get_plan_by_id,
    get_product,
    get_sale,
    get_user_by_id,
    list_plans,
    list_sales_by_user,
    set_affiliate_relation_status,
    set_user_plan,
    update_sale_status,
)

logger = logging.getLogger(__name__)

SELLER_ROLES = ("vendor", "admin")
AFFILIATE_ROLES = ("affiliate", "vendor", "admin")
RELATION_STATUSES = ("pending", "approved", "rejected")


def _seller_plan(conn, seller: Dict[str, Any]) -> Dict[str, Any]:
    plan = get_plan_by_id(conn, seller["plan_id"] or get_settings().DEFAULT_PLAN_ID)
    if plan is None:
        raise NotFound(f"Plan {seller['plan_id']} not found.")
    return plan


def create_user_db(
    username: str,
    email: str,
    full_name: str,
    role: str = "buyer",
    plan_id: Optional[int] = None,
) -> Dict[str, Any]:
    with get_conn() as conn:
        try:
            user = create_user(conn, username, email, full_name, role=role, plan_id=plan_id)
            conn.commit()
            return user
        except Exception:
            conn.rollback()
            raise


def create_product_db(seller_id: int, title: str, price: Decimal, **fields) -> Dict[str, Any]:
    """
    create a product, enforcing the seller's plan product limit.
    the seller row is locked so two concurrent creates can't both slip under
    the limit.
    """
    if Decimal(price) < 0:
        raise InvalidState("Price cannot be negative.", reason="invalid_price")
    if fields.get("commission_type", "percentage") not in ("percentage", "fixed"):
        raise InvalidState("Invalid commission type.", reason="invalid_commission")

    with get_conn() as conn:
        try:
            seller = get_user_by_id(conn, seller_id, for_update=True)
            if seller is None:
                raise NotFound(f"User {seller_id} not found.")
            if seller["role"] not in SELLER_ROLES:
                raise Forbidden(f"User {seller_id} cannot sell products.")

            plan = _seller_plan(conn, seller)
            if not within_limit(plan["product_limit"], count_products_by_seller(conn, seller_id)):
                raise InvalidState(
                    f"Plan {plan['name']} allows {describe_limit(plan['product_limit'])} products.",
                    reason="product_limit",
                )

            product = create_product(conn, seller_id, title, Decimal(price), **fields)
            conn.commit()
        except Exception:
            conn.rollback()
            raise

    logger.info("Product created", extra={"product_id": product["id"], "seller_id": seller_id})
    return product


def create_coupon_db(
    seller_id: int,
    code: str,
    type: str,
    value: Decimal,
    product_id: Optional[int] = None,
    max_usage: Optional[int] = None,
    expires_at=None,
) -> Dict[str, Any]:
    """
    rules:
      - code must be unique (Conflict)
      - value must be positive; percentages at most 100
      - a product-scoped coupon must target one of the seller's products
    """
    code = code.strip()
    value = Decimal(value)
    if not code:
        raise InvalidState("Coupon code cannot be empty.", reason="invalid_code")
    if type not in ("percentage", "fixed"):
        raise InvalidState(f"Invalid coupon type '{type}'.", reason="invalid_type")
    if value <= 0 or (type == "percentage" and value > 100):
        raise InvalidState("Invalid coupon value.", reason="invalid_value")
    if max_usage is not None and max_usage < 0:
        raise InvalidState("max_usage cannot be negative.", reason="invalid_max_usage")

    with get_conn() as conn:
        try:
            seller = get_user_by_id(conn, seller_id)
            if seller is None:
                raise NotFound(f"User {seller_id} not found.")
            if seller["role"] not in SELLER_ROLES:
                raise Forbidden(f"User {seller_id} cannot create coupons.")

            if product_id is not None:
                product = get_product(conn, product_id)
                if product is None:
                    raise NotFound(f"Product {product_id} not found.")
                if product["seller_id"] != seller_id:
                    raise Forbidden(f"Product {product_id} does not belong to seller {seller_id}.")

            coupon = create_coupon(
                conn,
                seller_id,
                code,
                type,
                value,
                product_id=product_id,
                max_usage=max_usage,
                expires_at=expires_at,
            )
            conn.commit()
            return coupon
        except Exception:
            conn.rollback()
            raise


def request_affiliation_db(product_id: int, affiliate_id: int) -> Dict[str, Any]:
    """
    an affiliate asks to promote a product; starts 'pending'.
    """
    with get_conn() as conn:
        try:
            affiliate = get_user_by_id(conn, affiliate_id)
            if affiliate is None:
                raise NotFound(f"User {affiliate_id} not found.")
            if affiliate["role"] not in AFFILIATE_ROLES:
                raise Forbidden(f"User {affiliate_id} cannot be an affiliate.")

            product = get_product(conn, product_id)
            if product is None:
                raise NotFound(f"Product {product_id} not found.")
            if product["seller_id"] == affiliate_id:
                raise InvalidState("Sellers cannot affiliate their own products.", reason="self_affiliation")

            relation = create_affiliate_relation(conn, product_id, affiliate_id)
            conn.commit()
            return relation
        except Exception:
            conn.rollback()
            raise


def set_affiliate_relation_status_db(
    relation_id: int,
    status: str,
    acting_user_id: int,
) -> Dict[str, Any]:
    """
    the owning seller (or an admin) approves/rejects an affiliate.
    approval counts against the seller plan's affiliate limit.
    """
    if status not in RELATION_STATUSES:
        raise InvalidState(f"Invalid status '{status}'.", reason="invalid_status")

    with get_conn() as conn:
        try:
            relation = get_affiliate_relation_by_id(conn, relation_id, for_update=True)
            if relation is None:
                raise NotFound(f"Affiliate relation {relation_id} not found.")

            product = get_product(conn, relation["product_id"])
            actor = get_user_by_id(conn, acting_user_id)
            if actor is None:
                raise NotFound(f"User {acting_user_id} not found.")
            if product["seller_id"] != acting_user_id and actor["role"] != "admin":
                raise Forbidden("Only the product owner or an admin can change this relation.")

            if status == "approved" and relation["status"] != "approved":
                # lock the seller so concurrent approvals are counted one at a time
                seller = get_user_by_id(conn, product["seller_id"], for_update=True)
                plan = _seller_plan(conn, seller)
                approved = count_approved_affiliates_by_seller(conn, seller["id"])
                if not within_limit(plan["affiliate_limit"], approved):
                    raise InvalidState(
                        f"Plan {plan['name']} allows {describe_limit(plan['affiliate_limit'])} affiliates.",
                        reason="affiliate_limit",
                    )

            updated = set_affiliate_relation_status(conn, relation_id, status)
            conn.commit()
        except Exception:
            conn.rollback()
            raise

    logger.info(
        "Affiliate relation status changed",
        extra={"relation_id": relation_id, "from_status": relation["status"], "to_status": status},
    )
    return updated


def change_plan_db(
    user_id: int,
    plan_id: int,
    billing_subscription_ref: Optional[str] = None,
) -> Dict[str, Any]:
    """
    switch a user's subscription plan. billing with the payment provider
    happens outside the core; only the resulting reference is stored.
    """
    with get_conn() as conn:
        try:
            if get_plan_by_id(conn, plan_id) is None:
                raise NotFound(f"Plan {plan_id} not found.")
            user = set_user_plan(conn, user_id, plan_id, billing_subscription_ref)
            if user is None:
                raise NotFound(f"User {user_id} not found.")
            conn.commit()
            return user
        except Exception:
            conn.rollback()
            raise


def refund_sale_db(sale_id: int) -> Dict[str, Any]:
    """
    refund a completed sale: the status moves to 'refunded' and the seller
    and affiliate credits are taken back in the same transaction. if either
    balance no longer covers its share (already withdrawn), nothing changes.

    the platform fee is kept; returning money to the buyer is the payment
    provider's job.
    """
    with get_conn() as conn:
        try:
            sale = update_sale_status(conn, sale_id, "completed", "refunded")
            if sale is None:
                existing = get_sale(conn, sale_id)
                if existing is None:
                    raise NotFound(f"Sale {sale_id} not found.")
                if existing["status"] == "refunded":
                    conn.rollback()
                    return existing
                raise InvalidState(
                    f"Sale {sale_id} is {existing['status']} and cannot be refunded.",
                    reason="invalid_transition",
                )

            debits = [(sale["seller_id"], sale["seller_amount"])]
            if sale["affiliate_id"] is not None and sale["affiliate_amount"]:
                debits.append((sale["affiliate_id"], sale["affiliate_amount"]))
            # same user id order as settlement credits
            for user_id, delta in sorted(debits):
                if delta > 0 and debit_balance(conn, user_id, delta) is None:
                    raise InvalidState(
                        f"User {user_id} balance does not cover the refund of sale {sale_id}.",
                        reason="insufficient_balance",
                    )
            conn.commit()
        except Exception:
            conn.rollback()
            raise

    logger.info("Sale refunded", extra={"sale_id": sale_id})
    return sale


def list_sales_db(user_id: int, as_role: str = "buyer", limit: int = 50) -> List[Dict[str, Any]]:
    with get_conn() as conn:
        return list_sales_by_user(conn, user_id, as_role=as_role, limit=limit)


def get_balance_db(user_id: int) -> Decimal:
    with get_conn() as conn:
        user = get_user_by_id(conn, user_id)
    if user is None:
        raise NotFound(f"User {user_id} not found.")
    return user["balance"]


def list_plans_db() -> List[Dict[str, Any]]:
    with get_conn() as conn:
        return list_plans(conn)
