import logging
from datetime import datetime
from decimal import Decimal
from typing import Optional, Literal, Dict, Any

from fastapi import FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from config import get_settings
from errors import SettlementError, NotFound, InvalidState, Conflict, Forbidden, Fatal
from logging_config import configure_logging
from settlement_engine_db import handle_payment_db, quote_payment_db, validate_coupon_db
from withdrawal_db import (
    list_withdrawals_db,
    request_withdrawal_db,
    update_withdrawal_status_db,
)
from catalog_db import (
    change_plan_db,
    create_coupon_db,
    create_product_db,
    get_balance_db,
    list_plans_db,
    list_sales_db,
    refund_sale_db,
    request_affiliation_db,
    set_affiliate_relation_status_db,
)

settings = get_settings()
configure_logging()
logger = logging.getLogger(__name__)

app = FastAPI(title=settings.APP_NAME, version=settings.APP_VERSION)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---------
# pydantic models (requests)
# ---------

class PaymentWebhookRequest(BaseModel):
    """trusted payment-succeeded event (signature already verified upstream)."""
    product_id: int
    buyer_id: int
    seller_id: int
    affiliate_id: Optional[int] = None
    coupon_code: Optional[str] = None
    gross_amount_cents: Optional[int] = Field(None, ge=0)
    external_payment_ref: str = Field(..., min_length=1)
    payment_method: Optional[str] = None


class CheckoutQuoteRequest(BaseModel):
    product_id: int
    coupon_code: Optional[str] = None
    affiliate_id: Optional[int] = None


class WithdrawalRequest(BaseModel):
    user_id: int = Field(..., description="User requesting the withdrawal")
    amount: Decimal = Field(..., gt=0, decimal_places=2)


class WithdrawalStatusRequest(BaseModel):
    status: Literal["pending", "completed", "rejected"]
    external_transfer_ref: Optional[str] = None


class ProductCreateRequest(BaseModel):
    seller_id: int
    title: str = Field(..., min_length=1)
    description: str = ""
    price: Decimal = Field(..., ge=0, decimal_places=2)
    product_type: str = "ebook"
    commission_type: Literal["percentage", "fixed"] = "percentage"
    commission_rate: Decimal = Field(Decimal("10"), ge=0)
    category_id: Optional[int] = None
    is_public: bool = True
    is_active: bool = True
    is_paid: bool = True


class CouponCreateRequest(BaseModel):
    seller_id: int
    code: str = Field(..., min_length=1)
    type: Literal["percentage", "fixed"]
    value: Decimal = Field(..., gt=0)
    product_id: Optional[int] = None
    max_usage: Optional[int] = Field(None, ge=0, description="Omit for unlimited")
    expires_at: Optional[datetime] = None


class AffiliateRelationRequest(BaseModel):
    product_id: int
    affiliate_id: int


class AffiliateRelationStatusRequest(BaseModel):
    status: Literal["pending", "approved", "rejected"]
    acting_user_id: int


class PlanChangeRequest(BaseModel):
    plan_id: int
    billing_subscription_ref: Optional[str] = None


# ---------
# helpers
# ---------

def _money(value: Optional[Decimal]) -> Optional[str]:
    return None if value is None else f"{value:.2f}"


def _jsonable(row: Dict[str, Any]) -> Dict[str, Any]:
    """decimals as 2dp strings, datetimes as ISO 8601."""
    out = {}
    for key, value in row.items():
        if isinstance(value, Decimal):
            out[key] = _money(value)
        elif isinstance(value, datetime):
            out[key] = value.isoformat()
        else:
            out[key] = value
    return out


def _http_error(e: SettlementError) -> HTTPException:
    if isinstance(e, NotFound):
        return HTTPException(status_code=404, detail=str(e))
    if isinstance(e, Forbidden):
        return HTTPException(status_code=403, detail=str(e))
    if isinstance(e, Conflict):
        return HTTPException(status_code=409, detail=str(e))
    if isinstance(e, InvalidState):
        return HTTPException(status_code=400, detail={"message": str(e), "reason": e.reason})
    return HTTPException(status_code=500, detail="Internal server error")


# ---------
# endpoints
# ---------

@app.post("/api/webhook/payment")
def webhook_payment(payload: PaymentWebhookRequest):
    """
    payment settlement webhook.
    calls handle_payment_db and returns either 'applied' or 'duplicate'.
    a duplicate is not an error: the provider may deliver an event twice.
    """
    try:
        result = handle_payment_db(payload.model_dump())
    except Fatal:
        raise HTTPException(status_code=500, detail="Internal server error")
    except SettlementError as e:
        raise _http_error(e)
    except Exception:
        logger.exception("Unexpected settlement error")
        raise HTTPException(status_code=500, detail="Internal server error")

    if result.get("splits"):
        result["splits"] = {
            k: f"{v:.2f}" for k, v in result["splits"].items() if k != "raw_commission"
        }
    return result


@app.get("/api/coupons/{code}/validate")
def coupon_validate(
    code: str,
    product_id: int = Query(..., description="Product the coupon would be applied to"),
):
    try:
        result = validate_coupon_db(code, product_id)
    except SettlementError as e:
        raise _http_error(e)

    return {
        "coupon": _jsonable(result["coupon"]),
        "discount": _money(result["discount"]),
        "amount": _money(result["amount"]),
    }


@app.post("/api/checkout/quote")
def checkout_quote(payload: CheckoutQuoteRequest):
    """
    amount to charge plus the split the sale would produce. read-only; the
    payment intent itself is created by the caller with the payment provider.
    """
    try:
        quote = quote_payment_db(payload.product_id, payload.coupon_code, payload.affiliate_id)
    except SettlementError as e:
        raise _http_error(e)

    quote["splits"] = {
        k: f"{v:.2f}" for k, v in quote["splits"].items() if k != "raw_commission"
    }
    return quote


@app.post("/api/withdrawals", status_code=201)
def withdrawal_request(payload: WithdrawalRequest):
    try:
        withdrawal = request_withdrawal_db(payload.user_id, payload.amount)
    except SettlementError as e:
        raise _http_error(e)
    return _jsonable(withdrawal)


@app.get("/api/withdrawals")
def withdrawal_list(
    user_id: Optional[int] = Query(None, description="Omit to list every user's withdrawals"),
    limit: int = Query(50, ge=1, le=500),
):
    return [_jsonable(w) for w in list_withdrawals_db(user_id=user_id, limit=limit)]


@app.put("/api/withdrawals/{withdrawal_id}/status")
def withdrawal_status(withdrawal_id: int, payload: WithdrawalStatusRequest):
    try:
        withdrawal = update_withdrawal_status_db(
            withdrawal_id,
            payload.status,
            payload.external_transfer_ref,
        )
    except SettlementError as e:
        raise _http_error(e)
    return _jsonable(withdrawal)


@app.get("/api/sales")
def sales_list(
    user_id: int = Query(..., description="User whose sales to list"),
    as_role: Literal["buyer", "seller", "affiliate"] = Query("buyer"),
    limit: int = Query(50, ge=1, le=500),
):
    return [_jsonable(s) for s in list_sales_db(user_id, as_role=as_role, limit=limit)]


@app.put("/api/sales/{sale_id}/refund")
def sale_refund(sale_id: int):
    try:
        sale = refund_sale_db(sale_id)
    except SettlementError as e:
        raise _http_error(e)
    return _jsonable(sale)


@app.get("/api/users/{user_id}/balance")
def user_balance(user_id: int):
    try:
        balance = get_balance_db(user_id)
    except SettlementError as e:
        raise _http_error(e)
    return {"user_id": user_id, "balance": _money(balance)}


@app.put("/api/users/{user_id}/plan")
def user_plan(user_id: int, payload: PlanChangeRequest):
    try:
        user = change_plan_db(user_id, payload.plan_id, payload.billing_subscription_ref)
    except SettlementError as e:
        raise _http_error(e)
    return _jsonable(user)


@app.get("/api/plans")
def plans_list():
    return [_jsonable(p) for p in list_plans_db()]


@app.post("/api/products", status_code=201)
def product_create(payload: ProductCreateRequest):
    fields = payload.model_dump(exclude={"seller_id", "title", "price"})
    try:
        product = create_product_db(payload.seller_id, payload.title, payload.price, **fields)
    except SettlementError as e:
        raise _http_error(e)
    return _jsonable(product)


@app.post("/api/coupons", status_code=201)
def coupon_create(payload: CouponCreateRequest):
    try:
        coupon = create_coupon_db(**payload.model_dump())
    except SettlementError as e:
        raise _http_error(e)
    return _jsonable(coupon)


@app.post("/api/affiliate-relations", status_code=201)
def affiliate_relation_create(payload: AffiliateRelationRequest):
    try:
        relation = request_affiliation_db(payload.product_id, payload.affiliate_id)
    except SettlementError as e:
        raise _http_error(e)
    return _jsonable(relation)


@app.put("/api/affiliate-relations/{relation_id}/status")
def affiliate_relation_status(relation_id: int, payload: AffiliateRelationStatusRequest):
    try:
        relation = set_affiliate_relation_status_db(
            relation_id,
            payload.status,
            payload.acting_user_id,
        )
    except SettlementError as e:
        raise _http_error(e)
    return _jsonable(relation)
