from decimal import Decimal

import pytest

from catalog_db import (
    change_plan_db,
    create_coupon_db,
    create_product_db,
    create_user_db,
    list_plans_db,
    list_sales_db,
    refund_sale_db,
    request_affiliation_db,
    set_affiliate_relation_status_db,
)
from errors import NotFound, InvalidState, Conflict, Forbidden
from plan_limits import within_limit, describe_limit
from settlement_engine_db import handle_payment_db
from withdrawal_db import request_withdrawal_db


def test_within_limit():
    assert within_limit(None, 10_000) is True
    assert within_limit(2, 1) is True
    assert within_limit(2, 2) is False
    assert within_limit(0, 0) is False  # zero means none, not unlimited
    assert describe_limit(None) == "unlimited"
    assert describe_limit(5) == "5"


def test_seeded_plans(ledger):
    plans = list_plans_db()

    assert [p["name"] for p in plans] == ["Free", "Start", "Pro", "Master", "Infinity"]
    fees = [p["platform_fee_percentage"] for p in plans]
    assert fees == sorted(fees, reverse=True)
    infinity = plans[-1]
    assert infinity["product_limit"] is None
    assert infinity["affiliate_limit"] is None


def test_new_user_defaults_to_free_plan(ledger):
    user = create_user_db("newbie", "newbie@example.com", "New Bie")

    assert user["plan_id"] == 1
    assert user["balance"] == Decimal("0.00")

    with pytest.raises(Conflict):
        create_user_db("newbie", "other@example.com", "Again")


def test_free_plan_product_limit(ledger):
    """
    Free allows one product; the second is refused.
    """
    seller = ledger.user("free_seller", role="vendor", plan_id=1)

    create_product_db(seller["id"], "First", Decimal("10"))
    with pytest.raises(InvalidState) as exc:
        create_product_db(seller["id"], "Second", Decimal("10"))

    assert exc.value.reason == "product_limit"


def test_unlimited_plan_has_no_product_limit(ledger):
    seller = ledger.user("infinite_seller", role="vendor", plan_id=5)

    for i in range(60):
        create_product_db(seller["id"], f"Product {i}", Decimal("1"))


def test_buyer_cannot_create_product(ledger):
    buyer = ledger.user("just_buyer")

    with pytest.raises(Forbidden):
        create_product_db(buyer["id"], "Nope", Decimal("10"))


def test_coupon_rules(ledger):
    seller = ledger.user("coupon_seller", role="vendor", plan_id=2)
    product = ledger.product(seller["id"])
    rival = ledger.user("rival", role="vendor", plan_id=2)

    coupon = create_coupon_db(seller["id"], "HALF", "percentage", Decimal("50"), product_id=product["id"])
    assert coupon["usage_count"] == 0
    assert coupon["max_usage"] is None

    with pytest.raises(Conflict):
        create_coupon_db(seller["id"], "HALF", "fixed", Decimal("5"))
    with pytest.raises(InvalidState):
        create_coupon_db(seller["id"], "TOOMUCH", "percentage", Decimal("150"))
    with pytest.raises(Forbidden):
        create_coupon_db(rival["id"], "STEAL", "fixed", Decimal("5"), product_id=product["id"])


def test_affiliate_relation_lifecycle(ledger):
    seller = ledger.user("aff_seller", role="vendor", plan_id=2)
    product = ledger.product(seller["id"])
    affiliate = ledger.user("aff_one", role="affiliate")

    relation = request_affiliation_db(product["id"], affiliate["id"])
    assert relation["status"] == "pending"

    with pytest.raises(Conflict):
        request_affiliation_db(product["id"], affiliate["id"])

    approved = set_affiliate_relation_status_db(relation["id"], "approved", seller["id"])
    assert approved["status"] == "approved"


def test_only_owner_changes_relation(ledger):
    seller = ledger.user("owner", role="vendor", plan_id=2)
    product = ledger.product(seller["id"])
    affiliate = ledger.user("aff_two", role="affiliate")
    relation = ledger.affiliate(product["id"], affiliate["id"], status="pending")

    with pytest.raises(Forbidden):
        set_affiliate_relation_status_db(relation["id"], "approved", affiliate["id"])

    admin = ledger.user("admin", role="admin")
    assert set_affiliate_relation_status_db(relation["id"], "rejected", admin["id"])["status"] == "rejected"


def test_affiliate_limit(ledger):
    """
    Start allows two affiliates; the third approval is refused.
    Free allows none.
    """
    seller = ledger.user("limited", role="vendor", plan_id=2)
    product = ledger.product(seller["id"])
    relations = [
        ledger.affiliate(product["id"], ledger.user(f"aff_{i}", role="affiliate")["id"], status="pending")
        for i in range(3)
    ]

    set_affiliate_relation_status_db(relations[0]["id"], "approved", seller["id"])
    set_affiliate_relation_status_db(relations[1]["id"], "approved", seller["id"])
    with pytest.raises(InvalidState) as exc:
        set_affiliate_relation_status_db(relations[2]["id"], "approved", seller["id"])
    assert exc.value.reason == "affiliate_limit"

    free_seller = ledger.user("free_one", role="vendor", plan_id=1)
    free_product = ledger.product(free_seller["id"])
    free_relation = ledger.affiliate(free_product["id"], relations[2]["affiliate_id"], status="pending")
    with pytest.raises(InvalidState):
        set_affiliate_relation_status_db(free_relation["id"], "approved", free_seller["id"])


def test_change_plan(ledger):
    user = ledger.user("upgrader", role="vendor")

    updated = change_plan_db(user["id"], 3, billing_subscription_ref="sub_123")
    assert updated["plan_id"] == 3
    assert updated["billing_subscription_ref"] == "sub_123"

    with pytest.raises(NotFound):
        change_plan_db(user["id"], 99)


def test_sales_listing_and_refund(marketplace, payment_event):
    seller_id = marketplace["seller"]["id"]
    buyer_id = marketplace["buyer"]["id"]
    result = handle_payment_db(payment_event("pi_list", affiliate_id=marketplace["affiliate"]["id"]))

    assert len(list_sales_db(seller_id, as_role="seller")) == 1
    assert len(list_sales_db(buyer_id, as_role="buyer")) == 1
    assert len(list_sales_db(marketplace["affiliate"]["id"], as_role="affiliate")) == 1
    assert list_sales_db(buyer_id, as_role="seller") == []

    refunded = refund_sale_db(result["sale_id"])
    assert refunded["status"] == "refunded"
    assert refunded["amount"] == Decimal("100.00")
    assert refund_sale_db(result["sale_id"])["status"] == "refunded"

    with pytest.raises(NotFound):
        refund_sale_db(999999)


def test_refund_takes_back_credits_once(marketplace, payment_event):
    ledger = marketplace["ledger"]
    seller_id = marketplace["seller"]["id"]
    affiliate_id = marketplace["affiliate"]["id"]
    result = handle_payment_db(payment_event("pi_refund", affiliate_id=affiliate_id))

    refund_sale_db(result["sale_id"])
    refund_sale_db(result["sale_id"])

    assert ledger.balance(seller_id) == Decimal("0.00")
    assert ledger.balance(affiliate_id) == Decimal("0.00")


def test_refund_after_withdrawal_is_refused(marketplace, payment_event):
    """
    the seller already withdrew most of the proceeds: the refund fails and
    neither the sale nor any balance changes.
    """
    ledger = marketplace["ledger"]
    seller_id = marketplace["seller"]["id"]
    affiliate_id = marketplace["affiliate"]["id"]
    result = handle_payment_db(payment_event("pi_spent", affiliate_id=affiliate_id))
    request_withdrawal_db(seller_id, Decimal("80.00"))

    with pytest.raises(InvalidState) as exc:
        refund_sale_db(result["sale_id"])

    assert exc.value.reason == "insufficient_balance"
    assert ledger.balance(seller_id) == Decimal("5.88")
    assert ledger.balance(affiliate_id) == Decimal("9.60")
    assert list_sales_db(seller_id, as_role="seller")[0]["status"] == "completed"
