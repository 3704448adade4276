import logging
import os
from contextlib import contextmanager
from typing import Any, Iterator, Optional

import stripe
from fastapi import FastAPI, Header, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy.orm import Session

import checkout
import emails
import orders_db
from geocode import geocode_address, suggest_addresses
from pricing_engine import (
    NO_DISCOUNT,
    PaymentMethod,
    QuoteInputs,
    QuoteValidationError,
    UnknownDiscountCode,
    apply_discount_code,
    client_today,
    compute_quote,
)
from submission import ContactInfo, build_submission, validate_intake


# ----------------------------
# App + config
# ----------------------------
logging.basicConfig(
    level=os.environ.get("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("api_app")

app = FastAPI(title="ProCan Intake API", version="1.0.0")

ALLOWED_ORIGINS = [
    o.strip()
    for o in os.environ.get("CORS_ALLOW_ORIGINS", "https://procansanitation.com").split(",")
    if o.strip()
]
app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Optional API key for the intake endpoints (not Stripe webhooks)
API_KEY = os.environ.get("API_KEY", "")
# Bearer token for the dashboard/admin endpoints
ROUTE_SCHEDULER_TOKEN = os.environ.get("ROUTE_SCHEDULER_TOKEN", "")

WEBHOOK_SECRET = os.environ.get("STRIPE_WEBHOOK_SECRET", "")
APP_BASE_URL = os.environ.get("APP_BASE_URL", "https://procansanitation.com")


# ----------------------------
# Helpers
# ----------------------------
def _require_api_key(x_api_key: Optional[str]) -> None:
    if API_KEY:
        if not x_api_key or x_api_key != API_KEY:
            raise HTTPException(status_code=401, detail="Unauthorized")


def _require_bearer(authorization: Optional[str]) -> None:
    h = authorization or ""
    token = h[7:].strip() if h.startswith("Bearer ") else ""
    if not token or not ROUTE_SCHEDULER_TOKEN or token != ROUTE_SCHEDULER_TOKEN:
        raise HTTPException(status_code=401, detail="Unauthorized")


def _db_required() -> None:
    if not orders_db.is_configured():
        raise HTTPException(status_code=500, detail="DB not configured (missing DATABASE_URL).")


@contextmanager
def _optional_db() -> Iterator[Optional[Session]]:
    if not orders_db.is_configured():
        yield None
        return
    with orders_db.session_scope() as db:
        yield db


def _error(status: int, message: str, **extra: Any) -> JSONResponse:
    return JSONResponse(status_code=status, content={"ok": False, "error": message, **extra})


@app.exception_handler(QuoteValidationError)
def _quote_invalid(request: Request, exc: QuoteValidationError):
    return _error(422, exc.message)


@app.exception_handler(UnknownDiscountCode)
def _bad_code(request: Request, exc: UnknownDiscountCode):
    return _error(422, str(exc))


@app.exception_handler(checkout.CheckoutError)
def _checkout_failed(request: Request, exc: checkout.CheckoutError):
    return _error(exc.status_code, str(exc), retryable=exc.status_code >= 500)


@app.exception_handler(orders_db.CashOrderRejected)
def _cash_rejected(request: Request, exc: orders_db.CashOrderRejected):
    return _error(400, str(exc))


# ----------------------------
# Request models
# ----------------------------
class QuoteRequest(BaseModel):
    cadence: str = "biweekly"
    can_qty: Any = 0
    locations: Any = 1
    pad_addon: bool = False
    pad_size: str = "small"
    pad_cadence: str = "biweekly"
    deep_clean: bool = False
    deep_level: str = "standard"
    deep_applies: str = "allCans"
    deep_qty: Any = 0
    billing: str = "monthly"
    one_time_only: bool = False
    deposit: bool = False
    start_date: Optional[str] = None
    discount_code: str = ""
    # Customer's local calendar date (YYYY-MM-DD) for the capture-only rule.
    today: Optional[str] = None


class ContactRequest(BaseModel):
    business_name: str = ""
    contact_name: str = ""
    email: str = ""
    phone: str = ""
    address: str = ""
    preferred_service_day: str = "unspecified"
    notes: str = ""


class CheckoutCreateRequest(BaseModel):
    inputs: QuoteRequest
    contact: ContactRequest
    payment_method: str = "card"


class DiscountCodeRequest(BaseModel):
    code: str


class CancelRequest(BaseModel):
    mode: str = "before_start"  # before_start | after_start
    cancel_at_period_end: bool = True


class RouteAssignRequest(BaseModel):
    route_id: Optional[str] = None


class RouteScheduleRequest(BaseModel):
    route_id: str
    service_start_date: str
    cadence: str = "biweekly"


def _prepare_submission(req: CheckoutCreateRequest, payment_method: PaymentMethod):
    """Server-side recompute: the client's numbers are never trusted."""
    inputs = QuoteInputs.from_form(req.inputs.model_dump())
    quote = compute_quote(inputs, today=client_today(req.inputs.today))
    contact = ContactInfo(**req.contact.model_dump())

    errs = validate_intake(contact, inputs, quote)
    if errs:
        raise HTTPException(status_code=422, detail={"ok": False, "errors": errs})

    geo = geocode_address(contact.address)
    return quote, build_submission(quote, inputs, contact, payment_method=payment_method, geo=geo)


# ----------------------------
# Routes
# ----------------------------
@app.get("/health")
def health():
    return {"ok": True}


@app.post("/quote")
def quote(req: QuoteRequest, x_api_key: Optional[str] = Header(default=None)):
    _require_api_key(x_api_key)
    inputs = QuoteInputs.from_form(req.model_dump())
    return compute_quote(inputs, today=client_today(req.today)).to_dict()


@app.post("/discount-codes/validate")
def validate_discount_code(req: DiscountCodeRequest):
    try:
        applied = apply_discount_code(NO_DISCOUNT, req.code)
    except UnknownDiscountCode as e:
        return _error(404, str(e))
    if not applied.active:
        return _error(400, "Enter a discount code.")
    return {"ok": True, "code": applied.code, "rate": str(applied.rate), "label": applied.label}


@app.post("/checkout/create")
def checkout_create(req: CheckoutCreateRequest, x_api_key: Optional[str] = Header(default=None)):
    """
    Recompute the quote, freeze it into a Submission and hand it off:
    Stripe Checkout for card orders, the cash-order table for one-time cash.
    """
    _require_api_key(x_api_key)

    method = PaymentMethod.CASH if req.payment_method == "cash" else PaymentMethod.CARD
    quote_obj, sub = _prepare_submission(req, method)

    if not checkout.is_cash_order(sub) and not stripe.api_key:
        raise HTTPException(status_code=500, detail="Stripe is not configured (missing STRIPE_SECRET_KEY).")

    with _optional_db() as db:
        result = checkout.dispatch(sub, db=db, base_url=APP_BASE_URL)
        if result.kind == "cash":
            emails.send_cash_order_notice(orders_db.get_by_order_id(db, sub.id))

    return {"ok": True, **result.to_dict(), "due_today": quote_obj.to_dict()["due_today"]}


@app.post("/orders/cash")
def create_cash_order(req: CheckoutCreateRequest, x_api_key: Optional[str] = Header(default=None)):
    """Cash/check orders. Rejected here for recurring billing, whatever the UI allowed."""
    _require_api_key(x_api_key)
    _db_required()

    quote_obj, sub = _prepare_submission(req, PaymentMethod.CASH)
    with orders_db.session_scope() as db:
        o = orders_db.insert_cash_order(db, sub)
        emails.send_cash_order_notice(o)
        order = orders_db.order_to_dict(o)

    return {"ok": True, "order": order, "due_today": quote_obj.to_dict()["due_today"]}


@app.get("/orders/by-session/{session_id}")
def get_order_by_session(session_id: str):
    """
    Used by the success page to show an order summary after the Stripe redirect.
    """
    _db_required()

    with orders_db.session_scope() as db:
        o = orders_db.get_by_session(db, session_id)
        if not o:
            raise HTTPException(status_code=404, detail="Order not found yet")

        return {
            "id": o.id,
            "order_id": o.order_id,
            "status": o.status,
            "billing_type": o.billing_type,
            "customer_email": o.customer_email,
            "amount_paid_usd": (o.amount_paid_cents or 0) / 100.0,
            "due_today": str(o.due_today) if o.due_today is not None else None,
            "normal_due_today": str(o.normal_due_today) if o.normal_due_today is not None else None,
            "created_at": o.created_at.isoformat() if o.created_at else None,
        }


@app.post("/stripe/webhook")
async def stripe_webhook(request: Request):
    """
    Stripe calls this. Do NOT protect with API_KEY.
    Must verify signature using STRIPE_WEBHOOK_SECRET.
    Stripe retries deliveries, so every branch is safe to apply twice.
    """
    if not WEBHOOK_SECRET:
        raise HTTPException(status_code=500, detail="Stripe webhook not configured (missing STRIPE_WEBHOOK_SECRET).")

    payload = await request.body()
    sig = request.headers.get("stripe-signature")

    try:
        event = stripe.Webhook.construct_event(payload, sig, WEBHOOK_SECRET)
    except (ValueError, stripe.SignatureVerificationError):
        raise HTTPException(status_code=400, detail="Invalid Stripe signature")

    etype = event["type"]
    obj = event["data"]["object"]

    if not orders_db.is_configured():
        logger.info("DATABASE_URL not set; ignoring %s", etype)
        return {"ok": True}

    with orders_db.session_scope() as db:
        if etype == "checkout.session.completed":
            o, first_time = orders_db.complete_checkout_session(db, obj)
            logger.info("checkout completed: session=%s order=%s status=%s", obj.get("id"), o.order_id, o.status)
            if first_time:
                emails.send_order_confirmation(o)

            # Retried deliveries land here too until the subscription exists.
            if checkout.needs_deferred_subscription(o):
                try:
                    sub_id = checkout.start_deferred_subscription(o)
                except (stripe.StripeError, checkout.CheckoutError):
                    logger.exception("could not start subscription for order %s", o.id)
                    raise HTTPException(status_code=500, detail="Subscription setup failed; retry")
                orders_db.attach_subscription(db, o, sub_id)

        elif etype == "invoice.paid":
            orders_db.record_invoice(db, obj, paid=True)

        elif etype == "invoice.payment_failed":
            o = orders_db.record_invoice(db, obj, paid=False)
            if o is not None:
                emails.send_payment_failed(o)

        elif etype == "customer.subscription.deleted":
            orders_db.mark_subscription_canceled(db, obj.get("id"))

    return {"ok": True}


# ----------------------------
# Address lookups (Nominatim proxy)
# ----------------------------
@app.get("/address/suggest")
def address_suggest(q: str = ""):
    return suggest_addresses(q)


@app.get("/address/geocode")
def address_geocode(q: str = ""):
    geo = geocode_address(q)
    if geo is None:
        return None
    return {"lat": geo.lat, "lon": geo.lon, "type": geo.accuracy}


# ----------------------------
# Admin (dashboard)
# ----------------------------
@app.get("/admin/orders")
def admin_orders(limit: int = 50, authorization: Optional[str] = Header(default=None)):
    _require_bearer(authorization)
    _db_required()

    limit = max(1, min(int(limit), 500))
    with orders_db.session_scope() as db:
        return {"orders": [orders_db.order_to_dict(o) for o in orders_db.list_orders(db, limit)]}


@app.post("/admin/orders/{order_id}/cancel")
def admin_cancel_order(order_id: str, req: CancelRequest, authorization: Optional[str] = Header(default=None)):
    """
    Cancel without deleting Stripe history. A deposit is forfeited (no refund).
    before_start cancels the subscription now; after_start defaults to the
    end of the current period.
    """
    _require_bearer(authorization)
    _db_required()

    mode = req.mode.strip().lower()
    if mode not in ("before_start", "after_start"):
        raise HTTPException(status_code=400, detail="mode must be before_start or after_start")
    after_start = mode == "after_start"

    with orders_db.session_scope() as db:
        o = orders_db.get_order(db, order_id)
        if o is None:
            raise HTTPException(status_code=404, detail="Order not found")

        stripe_action = "none"
        if o.stripe_subscription_id:
            try:
                stripe_action = checkout.cancel_subscription(
                    o.stripe_subscription_id, at_period_end=after_start and req.cancel_at_period_end
                )
            except stripe.StripeError as e:
                logger.exception("cancel failed for order %s", o.id)
                raise HTTPException(status_code=502, detail=f"Stripe error: {e}")

        orders_db.mark_cancelled(db, o, after_start=after_start)
        logger.info("order %s cancelled (%s, stripe=%s)", o.id, mode, stripe_action)
        return {"ok": True, "order_id": o.id, "mode": mode, "stripe_action": stripe_action, "status": o.status}


@app.post("/admin/orders/{order_id}/route")
def admin_assign_route(order_id: str, req: RouteAssignRequest, authorization: Optional[str] = Header(default=None)):
    _require_bearer(authorization)
    _db_required()

    with orders_db.session_scope() as db:
        o = orders_db.get_order(db, order_id)
        if o is None:
            raise HTTPException(status_code=404, detail="Order not found")
        orders_db.assign_route(db, o, (req.route_id or "").strip())
        return {"ok": True, "order_id": o.id, "route_id": o.route_id}


@app.post("/admin/routes/schedule")
def admin_schedule_route(req: RouteScheduleRequest, authorization: Optional[str] = Header(default=None)):
    """
    Set a route's first service day, then move billing for every subscription
    on it: deposits are credited to the customer balance and the first
    invoice is pushed to the service day.
    """
    _require_bearer(authorization)
    _db_required()

    route_id = req.route_id.strip()
    start = req.service_start_date.strip()[:10]
    cadence = req.cadence.strip().lower() or "biweekly"
    if not route_id:
        raise HTTPException(status_code=400, detail="Missing route_id")
    if checkout.charge_timestamp(start) is None:
        raise HTTPException(status_code=400, detail="Invalid service_start_date")

    with orders_db.session_scope() as db:
        orders_db.upsert_route(db, route_id, start, cadence)
        summary = checkout.schedule_route_billing(orders_db.orders_on_route(db, route_id), route_id, start)

    return {"ok": True, "route_id": route_id, "service_start_date": start, "cadence": cadence, **summary}
