import logging
from decimal import Decimal
from typing import Optional, Dict, Any, List

from config import get_settings
from errors import NotFound, InvalidState, Forbidden
from ledger.db import get_conn
from ledger.repositories import (
    credit_balance,
    debit_balance,
    get_user_by_id,
    get_withdrawal,
    insert_withdrawal,
    list_withdrawals,
    set_withdrawal_status,
)

logger = logging.getLogger(__name__)

WITHDRAWAL_STATUSES = ("pending", "completed", "rejected")
WITHDRAWAL_ROLES = ("vendor", "affiliate")


def request_withdrawal_db(user_id: int, amount: Decimal) -> Dict[str, Any]:
    """
    DB-backed withdrawal request.

    rules:
      - amount must be at least MINIMUM_WITHDRAWAL
      - user must exist and be a vendor or an affiliate
      - amount must not exceed the balance; the debit is a conditional
        update, so two concurrent requests can't both spend the same funds
      - the balance is debited immediately and the withdrawal starts 'pending'
    """
    amount = Decimal(amount)
    minimum = get_settings().MINIMUM_WITHDRAWAL
    if amount < minimum:
        raise InvalidState(
            f"Minimum withdrawal amount is {minimum:.2f}.",
            reason="below_minimum",
        )

    with get_conn() as conn:
        try:
            user = get_user_by_id(conn, user_id)
            if user is None:
                raise NotFound(f"User {user_id} not found.")
            if user["role"] not in WITHDRAWAL_ROLES:
                raise Forbidden(f"User {user_id} cannot request withdrawals.")

            new_balance = debit_balance(conn, user_id, amount)
            if new_balance is None:
                raise InvalidState("Insufficient balance.", reason="insufficient_balance")

            withdrawal = insert_withdrawal(conn, user_id, amount)
            conn.commit()
        except Exception:
            conn.rollback()
            raise

    logger.info(
        "Withdrawal requested",
        extra={
            "withdrawal_id": withdrawal["id"],
            "user_id": user_id,
            "amount": amount,
            "balance_after": new_balance,
        },
    )
    return withdrawal


def update_withdrawal_status_db(
    withdrawal_id: int,
    status: str,
    external_transfer_ref: Optional[str] = None,
) -> Dict[str, Any]:
    """
    move a pending withdrawal to 'completed' or 'rejected'.

    - the row is locked (FOR UPDATE) so two admins can't both reject it.
    - 'rejected' credits back exactly the stored amount (compensation).
    - 'completed' only records the transfer reference; the funds left the
      balance at request time.
    - repeating the current status is a no-op; any other transition out of a
      final state is refused.
    """
    if status not in WITHDRAWAL_STATUSES:
        raise InvalidState(f"Invalid status '{status}'.", reason="invalid_status")

    with get_conn() as conn:
        try:
            withdrawal = get_withdrawal(conn, withdrawal_id, for_update=True)
            if withdrawal is None:
                raise NotFound(f"Withdrawal {withdrawal_id} not found.")

            current = withdrawal["status"]
            if current == status:
                conn.rollback()
                return withdrawal
            if current != "pending" or status == "pending":
                raise InvalidState(
                    f"Withdrawal {withdrawal_id} cannot move from {current} to {status}.",
                    reason="invalid_transition",
                )

            updated = set_withdrawal_status(conn, withdrawal_id, status, external_transfer_ref)
            if status == "rejected":
                credit_balance(conn, withdrawal["user_id"], withdrawal["amount"])

            conn.commit()
        except Exception:
            conn.rollback()
            raise

    logger.info(
        "Withdrawal status changed",
        extra={
            "withdrawal_id": withdrawal_id,
            "user_id": withdrawal["user_id"],
            "from_status": current,
            "to_status": status,
            "amount": withdrawal["amount"],
        },
    )
    return updated


def list_withdrawals_db(user_id: Optional[int] = None, limit: int = 50) -> List[Dict[str, Any]]:
    with get_conn() as conn:
        return list_withdrawals(conn, user_id=user_id, limit=limit)
