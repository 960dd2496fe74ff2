"""
shared fixtures.

pure engine tests need nothing. ledger-backed tests need a PostgreSQL
database: TEST_DATABASE_URL (or DATABASE_URL) is used, the schema is applied
once per session, and every test starts from empty tables (plans and
categories stay seeded). when no database is reachable those tests are
skipped.
"""
import os
from decimal import Decimal

import psycopg
from psycopg.rows import dict_row
import pytest

from config import get_settings
from ledger.db import apply_schema

MUTABLE_TABLES = "withdrawals, sales, affiliate_relations, coupons, products, users"


@pytest.fixture(scope="session")
def ledger_dsn():
    dsn = os.getenv("TEST_DATABASE_URL") or os.getenv("DATABASE_URL") or get_settings().DATABASE_URL
    try:
        conn = psycopg.connect(dsn, connect_timeout=3)
    except psycopg.OperationalError as e:
        pytest.skip(f"PostgreSQL not available ({e})")

    with conn:
        apply_schema(conn)
    return dsn


@pytest.fixture
def ledger(ledger_dsn, monkeypatch):
    """
    point the app at the test database and reset the mutable tables.
    yields a helper for seeding rows directly.
    """
    monkeypatch.setenv("DATABASE_URL", ledger_dsn)
    get_settings.cache_clear()

    with psycopg.connect(ledger_dsn) as conn:
        with conn.cursor() as cur:
            cur.execute(f"TRUNCATE {MUTABLE_TABLES} RESTART IDENTITY CASCADE;")
        conn.commit()

    yield LedgerSeeder(ledger_dsn)

    get_settings.cache_clear()


class LedgerSeeder:
    """small helper to create rows and read them back in tests."""

    def __init__(self, dsn):
        self.dsn = dsn

    def _one(self, sql, params=()):
        with psycopg.connect(self.dsn) as conn:
            with conn.cursor(row_factory=dict_row) as cur:
                cur.execute(sql, params)
                row = cur.fetchone()
            conn.commit()
        return row

    def user(self, username, role="buyer", plan_id=1, balance=Decimal("0")):
        return self._one(
            """
            INSERT INTO users (username, email, full_name, role, plan_id, balance)
            VALUES (%s, %s, %s, %s, %s, %s)
            RETURNING *
            """,
            (username, f"{username}@example.com", username.title(), role, plan_id, balance),
        )

    def product(self, seller_id, price=Decimal("100.00"), commission_type="percentage",
                commission_rate=Decimal("10")):
        return self._one(
            """
            INSERT INTO products (seller_id, title, price, commission_type, commission_rate)
            VALUES (%s, %s, %s, %s, %s)
            RETURNING *
            """,
            (seller_id, "Test Product", price, commission_type, commission_rate),
        )

    def coupon(self, seller_id, code, type="percentage", value=Decimal("20"),
               product_id=None, max_usage=None, expires_at=None):
        return self._one(
            """
            INSERT INTO coupons (seller_id, code, type, value, product_id, max_usage, expires_at)
            VALUES (%s, %s, %s, %s, %s, %s, %s)
            RETURNING *
            """,
            (seller_id, code, type, value, product_id, max_usage, expires_at),
        )

    def affiliate(self, product_id, affiliate_id, status="approved"):
        return self._one(
            """
            INSERT INTO affiliate_relations (product_id, affiliate_id, status)
            VALUES (%s, %s, %s)
            RETURNING *
            """,
            (product_id, affiliate_id, status),
        )

    def balance(self, user_id):
        return self._one("SELECT balance FROM users WHERE id = %s", (user_id,))["balance"]

    def coupon_usage(self, coupon_id):
        return self._one("SELECT usage_count FROM coupons WHERE id = %s", (coupon_id,))["usage_count"]

    def sale_count(self):
        return self._one("SELECT COUNT(*) AS n FROM sales")["n"]


@pytest.fixture
def marketplace(ledger):
    """
    seller on the Start plan (5% fee), buyer, approved affiliate and a
    100.00 product with a 10% percentage commission.
    """
    seller = ledger.user("seller", role="vendor", plan_id=2)
    buyer = ledger.user("buyer")
    affiliate = ledger.user("affiliate", role="affiliate")
    product = ledger.product(seller["id"])
    ledger.affiliate(product["id"], affiliate["id"], status="approved")
    return {
        "ledger": ledger,
        "seller": seller,
        "buyer": buyer,
        "affiliate": affiliate,
        "product": product,
    }


@pytest.fixture
def payment_event(marketplace):
    """factory for trusted payment events against the marketplace fixture."""

    def _make(ref, **overrides):
        event = {
            "product_id": marketplace["product"]["id"],
            "buyer_id": marketplace["buyer"]["id"],
            "seller_id": marketplace["seller"]["id"],
            "affiliate_id": None,
            "coupon_code": None,
            "gross_amount_cents": 10000,
            "external_payment_ref": ref,
            "payment_method": "stripe",
        }
        event.update(overrides)
        return event

    return _make
