from decimal import Decimal
from typing import Optional, Dict, Any, List

from psycopg import Connection
from psycopg.errors import UniqueViolation
from psycopg.rows import dict_row

from errors import Conflict


USER_COLUMNS = """
    id, username, email, full_name, role, balance, plan_id,
    billing_customer_ref, billing_subscription_ref, created_at
"""

PRODUCT_COLUMNS = """
    id, seller_id, title, description, price, product_type,
    commission_type, commission_rate, is_public, is_active, is_paid,
    category_id, created_at
"""

COUPON_COLUMNS = """
    id, seller_id, code, type, value, product_id, max_usage,
    usage_count, expires_at, created_at
"""

SALE_COLUMNS = """
    id, product_id, buyer_id, seller_id, affiliate_id, coupon_id, amount,
    seller_amount, affiliate_amount, platform_fee, status, payment_method,
    external_payment_ref, created_at
"""

WITHDRAWAL_COLUMNS = """
    id, user_id, amount, status, external_transfer_ref, created_at, updated_at
"""


def _fetch_one(conn: Connection, sql: str, params: tuple) -> Optional[Dict[str, Any]]:
    with conn.cursor(row_factory=dict_row) as cur:
        cur.execute(sql, params)
        return cur.fetchone()


def _fetch_all(conn: Connection, sql: str, params: tuple) -> List[Dict[str, Any]]:
    with conn.cursor(row_factory=dict_row) as cur:
        cur.execute(sql, params)
        return cur.fetchall()


# ---------
# users
# ---------

def create_user(
    conn: Connection,
    username: str,
    email: str,
    full_name: str,
    role: str = "buyer",
    plan_id: Optional[int] = None,
) -> Dict[str, Any]:
    """
    create a user with a zero balance. plan_id falls back to the column
    default (Free plan) when not given.
    """
    username = username.strip()
    if not username:
        raise ValueError("username cannot be empty")

    try:
        return _fetch_one(
            conn,
            f"""
            INSERT INTO users (username, email, full_name, role, plan_id)
            VALUES (%s, %s, %s, %s, COALESCE(%s, 1))
            RETURNING {USER_COLUMNS}
            """,
            (username, email, full_name, role, plan_id),
        )
    except UniqueViolation:
        raise Conflict(f"username '{username}' or email '{email}' already exists")


def get_user_by_id(
    conn: Connection,
    user_id: int,
    for_update: bool = False,
) -> Optional[Dict[str, Any]]:
    lock = " FOR UPDATE" if for_update else ""
    return _fetch_one(
        conn,
        f"SELECT {USER_COLUMNS} FROM users WHERE id = %s{lock}",
        (user_id,),
    )


def set_user_plan(
    conn: Connection,
    user_id: int,
    plan_id: int,
    billing_subscription_ref: Optional[str] = None,
) -> Optional[Dict[str, Any]]:
    return _fetch_one(
        conn,
        f"""
        UPDATE users
        SET plan_id = %s,
            billing_subscription_ref = COALESCE(%s, billing_subscription_ref),
            updated_at = NOW()
        WHERE id = %s
        RETURNING {USER_COLUMNS}
        """,
        (plan_id, billing_subscription_ref, user_id),
    )


def credit_balance(conn: Connection, user_id: int, delta: Decimal) -> Decimal:
    """
    add delta to the user's balance in a single statement so concurrent
    credits to the same row serialize on the row lock (no lost updates).
    returns the new balance.
    """
    if delta < 0:
        raise ValueError("credit delta must be non-negative")

    with conn.cursor() as cur:
        cur.execute(
            """
            UPDATE users
            SET balance = balance + %s, updated_at = NOW()
            WHERE id = %s
            RETURNING balance
            """,
            (delta, user_id),
        )
        row = cur.fetchone()
        if row is None:
            raise ValueError(f"User {user_id} not found")
        return row[0]


def debit_balance(conn: Connection, user_id: int, delta: Decimal) -> Optional[Decimal]:
    """
    conditionally subtract delta. the balance check and the write are one
    statement, so a debit can never take the balance below zero.
    returns the new balance, or None if the balance was insufficient.
    """
    if delta < 0:
        raise ValueError("debit delta must be non-negative")

    with conn.cursor() as cur:
        cur.execute(
            """
            UPDATE users
            SET balance = balance - %s, updated_at = NOW()
            WHERE id = %s AND balance >= %s
            RETURNING balance
            """,
            (delta, user_id, delta),
        )
        row = cur.fetchone()
        return row[0] if row else None


# ---------
# plans
# ---------

def get_plan_by_id(conn: Connection, plan_id: int) -> Optional[Dict[str, Any]]:
    return _fetch_one(conn, "SELECT * FROM plans WHERE id = %s", (plan_id,))


def list_plans(conn: Connection) -> List[Dict[str, Any]]:
    return _fetch_all(conn, "SELECT * FROM plans ORDER BY price, id", ())


# ---------
# products
# ---------

def create_product(
    conn: Connection,
    seller_id: int,
    title: str,
    price: Decimal,
    commission_type: str = "percentage",
    commission_rate: Decimal = Decimal("10"),
    description: str = "",
    product_type: str = "ebook",
    category_id: Optional[int] = None,
    is_public: bool = True,
    is_active: bool = True,
    is_paid: bool = True,
) -> Dict[str, Any]:
    return _fetch_one(
        conn,
        f"""
        INSERT INTO products
            (seller_id, title, description, price, product_type, commission_type,
             commission_rate, category_id, is_public, is_active, is_paid)
        VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
        RETURNING {PRODUCT_COLUMNS}
        """,
        (
            seller_id,
            title,
            description,
            price,
            product_type,
            commission_type,
            commission_rate,
            category_id,
            is_public,
            is_active,
            is_paid,
        ),
    )


def get_product(conn: Connection, product_id: int) -> Optional[Dict[str, Any]]:
    return _fetch_one(
        conn,
        f"SELECT {PRODUCT_COLUMNS} FROM products WHERE id = %s",
        (product_id,),
    )


def count_products_by_seller(conn: Connection, seller_id: int) -> int:
    with conn.cursor() as cur:
        cur.execute("SELECT COUNT(*) FROM products WHERE seller_id = %s", (seller_id,))
        return cur.fetchone()[0]


# ---------
# coupons
# ---------

def create_coupon(
    conn: Connection,
    seller_id: int,
    code: str,
    type: str,
    value: Decimal,
    product_id: Optional[int] = None,
    max_usage: Optional[int] = None,
    expires_at=None,
) -> Dict[str, Any]:
    """
    create a coupon. code uniqueness is enforced by the DB constraint.
    """
    try:
        return _fetch_one(
            conn,
            f"""
            INSERT INTO coupons (seller_id, code, type, value, product_id, max_usage, expires_at)
            VALUES (%s, %s, %s, %s, %s, %s, %s)
            RETURNING {COUPON_COLUMNS}
            """,
            (seller_id, code, type, value, product_id, max_usage, expires_at),
        )
    except UniqueViolation:
        raise Conflict(f"Coupon code '{code}' already exists.")


def get_coupon_by_code(conn: Connection, code: str) -> Optional[Dict[str, Any]]:
    return _fetch_one(
        conn,
        f"SELECT {COUPON_COLUMNS} FROM coupons WHERE code = %s",
        (code,),
    )


def list_coupons_by_seller(conn: Connection, seller_id: int) -> List[Dict[str, Any]]:
    return _fetch_all(
        conn,
        f"SELECT {COUPON_COLUMNS} FROM coupons WHERE seller_id = %s ORDER BY id",
        (seller_id,),
    )


def increment_coupon_usage(conn: Connection, coupon_id: int) -> bool:
    """
    atomic check-and-increment of usage_count against max_usage.
    returns False if the coupon is already at its ceiling (race lost).
    """
    with conn.cursor() as cur:
        cur.execute(
            """
            UPDATE coupons
            SET usage_count = usage_count + 1
            WHERE id = %s
              AND (max_usage IS NULL OR usage_count < max_usage)
            RETURNING usage_count
            """,
            (coupon_id,),
        )
        return cur.fetchone() is not None


# ---------
# affiliate relations
# ---------

def create_affiliate_relation(
    conn: Connection,
    product_id: int,
    affiliate_id: int,
) -> Dict[str, Any]:
    try:
        return _fetch_one(
            conn,
            """
            INSERT INTO affiliate_relations (product_id, affiliate_id)
            VALUES (%s, %s)
            RETURNING *
            """,
            (product_id, affiliate_id),
        )
    except UniqueViolation:
        raise Conflict(
            f"Affiliate {affiliate_id} already has a relation with product {product_id}."
        )


def get_affiliate_relation(
    conn: Connection,
    product_id: int,
    affiliate_id: int,
) -> Optional[Dict[str, Any]]:
    return _fetch_one(
        conn,
        "SELECT * FROM affiliate_relations WHERE product_id = %s AND affiliate_id = %s",
        (product_id, affiliate_id),
    )


def get_affiliate_relation_by_id(
    conn: Connection,
    relation_id: int,
    for_update: bool = False,
) -> Optional[Dict[str, Any]]:
    lock = " FOR UPDATE" if for_update else ""
    return _fetch_one(
        conn,
        f"SELECT * FROM affiliate_relations WHERE id = %s{lock}",
        (relation_id,),
    )


def set_affiliate_relation_status(
    conn: Connection,
    relation_id: int,
    status: str,
) -> Optional[Dict[str, Any]]:
    return _fetch_one(
        conn,
        """
        UPDATE affiliate_relations
        SET status = %s, updated_at = NOW()
        WHERE id = %s
        RETURNING *
        """,
        (status, relation_id),
    )


def count_approved_affiliates_by_seller(conn: Connection, seller_id: int) -> int:
    """
    distinct affiliates approved on any of the seller's products.
    """
    with conn.cursor() as cur:
        cur.execute(
            """
            SELECT COUNT(DISTINCT ar.affiliate_id)
            FROM affiliate_relations ar
            JOIN products p ON ar.product_id = p.id
            WHERE p.seller_id = %s AND ar.status = 'approved'
            """,
            (seller_id,),
        )
        return cur.fetchone()[0]


# ---------
# sales
# ---------

def get_sale_by_payment_ref(conn: Connection, external_payment_ref: str) -> Optional[Dict[str, Any]]:
    return _fetch_one(
        conn,
        f"SELECT {SALE_COLUMNS} FROM sales WHERE external_payment_ref = %s",
        (external_payment_ref,),
    )


def insert_sale(
    conn: Connection,
    product_id: int,
    buyer_id: int,
    seller_id: int,
    affiliate_id: Optional[int],
    coupon_id: Optional[int],
    amount: Decimal,
    seller_amount: Decimal,
    affiliate_amount: Optional[Decimal],
    platform_fee: Decimal,
    payment_method: str,
    external_payment_ref: str,
    status: str = "completed",
) -> Dict[str, Any]:
    """
    append-only sale insert. the UNIQUE constraint on external_payment_ref
    is the last line of idempotency; a UniqueViolation propagates so the
    surrounding transaction rolls back.
    """
    return _fetch_one(
        conn,
        f"""
        INSERT INTO sales
            (product_id, buyer_id, seller_id, affiliate_id, coupon_id, amount,
             seller_amount, affiliate_amount, platform_fee, status,
             payment_method, external_payment_ref)
        VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
        RETURNING {SALE_COLUMNS}
        """,
        (
            product_id,
            buyer_id,
            seller_id,
            affiliate_id,
            coupon_id,
            amount,
            seller_amount,
            affiliate_amount,
            platform_fee,
            status,
            payment_method,
            external_payment_ref,
        ),
    )


def update_sale_status(
    conn: Connection,
    sale_id: int,
    from_status: str,
    to_status: str,
) -> Optional[Dict[str, Any]]:
    """
    status is the only mutable field of a sale. the transition is
    conditional on the current status; None means no row matched.
    """
    return _fetch_one(
        conn,
        f"""
        UPDATE sales SET status = %s
        WHERE id = %s AND status = %s
        RETURNING {SALE_COLUMNS}
        """,
        (to_status, sale_id, from_status),
    )


def get_sale(conn: Connection, sale_id: int) -> Optional[Dict[str, Any]]:
    return _fetch_one(conn, f"SELECT {SALE_COLUMNS} FROM sales WHERE id = %s", (sale_id,))


SALE_ROLE_COLUMNS = {
    "buyer": "buyer_id",
    "seller": "seller_id",
    "affiliate": "affiliate_id",
}


def list_sales_by_user(
    conn: Connection,
    user_id: int,
    as_role: str = "buyer",
    limit: int = 50,
) -> List[Dict[str, Any]]:
    column = SALE_ROLE_COLUMNS.get(as_role)
    if column is None:
        raise ValueError(f"Unknown sale role '{as_role}'.")

    return _fetch_all(
        conn,
        f"""
        SELECT {SALE_COLUMNS}
        FROM sales
        WHERE {column} = %s
        ORDER BY created_at DESC, id DESC
        LIMIT %s
        """,
        (user_id, limit),
    )


# ---------
# withdrawals
# ---------

def insert_withdrawal(conn: Connection, user_id: int, amount: Decimal) -> Dict[str, Any]:
    return _fetch_one(
        conn,
        f"""
        INSERT INTO withdrawals (user_id, amount, status)
        VALUES (%s, %s, 'pending')
        RETURNING {WITHDRAWAL_COLUMNS}
        """,
        (user_id, amount),
    )


def get_withdrawal(
    conn: Connection,
    withdrawal_id: int,
    for_update: bool = False,
) -> Optional[Dict[str, Any]]:
    lock = " FOR UPDATE" if for_update else ""
    return _fetch_one(
        conn,
        f"SELECT {WITHDRAWAL_COLUMNS} FROM withdrawals WHERE id = %s{lock}",
        (withdrawal_id,),
    )


def set_withdrawal_status(
    conn: Connection,
    withdrawal_id: int,
    status: str,
    external_transfer_ref: Optional[str] = None,
) -> Dict[str, Any]:
    return _fetch_one(
        conn,
        f"""
        UPDATE withdrawals
        SET status = %s,
            external_transfer_ref = COALESCE(%s, external_transfer_ref),
            updated_at = NOW()
        WHERE id = %s
        RETURNING {WITHDRAWAL_COLUMNS}
        """,
        (status, external_transfer_ref, withdrawal_id),
    )


def list_withdrawals(
    conn: Connection,
    user_id: Optional[int] = None,
    limit: int = 50,
) -> List[Dict[str, Any]]:
    if user_id is None:
        return _fetch_all(
            conn,
            f"SELECT {WITHDRAWAL_COLUMNS} FROM withdrawals ORDER BY created_at DESC, id DESC LIMIT %s",
            (limit,),
        )
    return _fetch_all(
        conn,
        f"""
        SELECT {WITHDRAWAL_COLUMNS}
        FROM withdrawals
        WHERE user_id = %s
        ORDER BY created_at DESC, id DESC
        LIMIT %s
        """,
        (user_id, limit),
    )
