# checkout.py
"""
Hands a confirmed Submission to exactly one collaborator: Stripe Checkout,
or the cash-order table.

Stripe session modes, picked from the submission's billing type:

  one_time      mode=payment, charges due_today
  deposit       mode=payment, charges the $25 deposit and keeps the card
                for off-session charges later
  setup         mode=setup, no charge (service starts in the future)
  subscription  mode=subscription, monthly_total x term every term months,
                plus a one-time deep clean line when there is one

Nothing is marked paid here. The webhook does that once Stripe confirms.
Deposit and setup orders get their subscription from the webhook too
(`start_deferred_subscription`), trialing until the route start date.
"""
import logging
import os
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

import stripe
from sqlalchemy.orm import Session

import orders_db
import pricing_config as cfg
from pricing_engine import BillingType, PaymentMethod, parse_start_date, to_minor_units
from submission import Submission

logger = logging.getLogger(__name__)

stripe.api_key = os.environ.get("STRIPE_SECRET_KEY", "")
stripe.max_network_retries = int(os.environ.get("STRIPE_MAX_NETWORK_RETRIES", "2"))

PRODUCT_NAME = "ProCan Sanitation Service"

# Route charges land at 15:00 UTC on the service day (mid-morning US Central).
CHARGE_HOUR_UTC = 15


class CheckoutError(Exception):
    """Checkout could not be started. Safe to retry with the same submission."""

    status_code = 502


class AmountTooSmall(CheckoutError):
    status_code = 400


class PaymentProviderError(CheckoutError):
    status_code = 502


@dataclass(frozen=True)
class DispatchResult:
    kind: str  # "checkout" | "cash"
    order_id: str
    mode: str
    checkout_url: Optional[str] = None
    session_id: Optional[str] = None
    status: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {k: v for k, v in asdict(self).items() if v is not None}


# ----------------------------
# Helpers
# ----------------------------
def is_cash_order(sub: Submission) -> bool:
    return sub.billing.payment_method is PaymentMethod.CASH and sub.billing.one_time_only


def submission_metadata(sub: Submission) -> Dict[str, str]:
    """Flat copy of the submission's pricing for Stripe metadata (max 50 keys)."""
    d = sub.to_dict()
    services = d["services"]
    md: Dict[str, Any] = {
        "orderId": sub.id,
        "bizName": sub.business.name or "ProCan Client",
        "cadence": services["trash"]["cadence"],
        "cans": services["trash"]["cans"],
        "padEnabled": services["pad"]["enabled"],
        "padSize": services["pad"]["size"],
        "padCadence": services["pad"]["cadence"],
        "deepCleanEnabled": services["deepClean"]["enabled"],
        "deepCleanLevel": services["deepClean"]["level"],
        "deepCleanQty": services["deepClean"]["qty"],
    }
    md.update(d["billing"])
    md.update(d["pricing"])

    out = {}
    for k, v in md.items():
        s = str(v).lower() if isinstance(v, bool) else str(v)
        out[k[:40]] = s[:500]
    return out


def _line_item(name: str, description: str, cents: int, recurring: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    price_data: Dict[str, Any] = {
        "currency": cfg.CURRENCY,
        "product_data": {"name": name, "description": description},
        "unit_amount": cents,
    }
    if recurring:
        price_data["recurring"] = recurring
    return {"price_data": price_data, "quantity": 1}


def _require_min_charge(cents: int) -> None:
    if cents < cfg.MIN_CHARGE_CENTS:
        raise AmountTooSmall("Amount too small")


# ----------------------------
# Stripe Checkout
# ----------------------------
def build_session_params(sub: Submission, *, base_url: str) -> Dict[str, Any]:
    """Stripe Checkout parameters for `sub` (no network)."""
    base = base_url.rstrip("/")
    biz = sub.business.name or "ProCan Client"
    md = submission_metadata(sub)
    kind = sub.billing_type
    due_cents = to_minor_units(sub.pricing.due_today)

    params: Dict[str, Any] = {
        "client_reference_id": sub.id,
        "metadata": md,
        "success_url": f"{base}/success?session_id={{CHECKOUT_SESSION_ID}}",
        "cancel_url": f"{base}/?payment=cancelled",
    }
    if sub.business.email:
        params["customer_email"] = sub.business.email

    if kind is BillingType.ONE_TIME:
        _require_min_charge(due_cents)
        params.update(mode="payment", line_items=[_line_item(PRODUCT_NAME, biz, due_cents)])

    elif kind is BillingType.DEPOSIT:
        _require_min_charge(due_cents)
        params.update(
            mode="payment",
            customer_creation="always",
            payment_intent_data={"setup_future_usage": "off_session", "metadata": md},
            line_items=[_line_item(f"{PRODUCT_NAME} - reservation deposit", biz, due_cents)],
        )

    elif kind is BillingType.SETUP:
        params.update(mode="setup", currency=cfg.CURRENCY, setup_intent_data={"metadata": md})

    else:
        _require_min_charge(due_cents)
        deep_cents = to_minor_units(sub.pricing.deep_clean_total)
        # Recurring amount is what's left of due today after the one-time deep clean,
        # so the first invoice equals the amount the customer was shown.
        recurring_cents = due_cents - deep_cents
        _require_min_charge(recurring_cents)

        items = [
            _line_item(
                f"{PRODUCT_NAME} ({sub.billing.option} billing)",
                biz,
                recurring_cents,
                recurring={"interval": "month", "interval_count": sub.billing.months_in_term},
            )
        ]
        if deep_cents > 0:
            items.append(_line_item("Deep clean (one-time)", biz, deep_cents))
        params.update(mode="subscription", line_items=items, subscription_data={"metadata": md})

    return params


def create_checkout_session(sub: Submission, *, base_url: str):
    params = build_session_params(sub, base_url=base_url)

    try:
        if params["mode"] == "setup":
            # Setup sessions need an existing customer to attach the card to.
            customer = stripe.Customer.create(
                email=sub.business.email or None,
                name=sub.business.name or None,
                metadata={"orderId": sub.id},
            )
            params.pop("customer_email", None)
            params["customer"] = customer.id
        session = stripe.checkout.Session.create(**params)
    except stripe.StripeError as e:
        logger.exception("stripe checkout failed for order %s", sub.id)
        raise PaymentProviderError(getattr(e, "user_message", None) or "Payment provider error. Please try again.") from e

    logger.info("checkout session %s created (%s) for order %s", session.id, params["mode"], sub.id)
    return session


def dispatch(sub: Submission, *, db: Optional[Session], base_url: str) -> DispatchResult:
    """Send `sub` to the cash-order table or to Stripe Checkout. Exactly one of the two."""
    if is_cash_order(sub):
        if db is None:
            raise CheckoutError("Order storage is not configured.")
        o = orders_db.insert_cash_order(db, sub)
        return DispatchResult(kind="cash", order_id=sub.id, mode=sub.billing_type.value, status=o.status)

    session = create_checkout_session(sub, base_url=base_url)
    status = None
    if db is not None:
        status = orders_db.record_pending_order(db, sub, session.id).status
    return DispatchResult(
        kind="checkout",
        order_id=sub.id,
        mode=sub.billing_type.value,
        checkout_url=session.url,
        session_id=session.id,
        status=status,
    )


# ----------------------------
# Deferred subscriptions (deposit / setup)
# ----------------------------
DEFERRED_BILLING_TYPES = (BillingType.DEPOSIT.value, BillingType.SETUP.value)

# Stripe product the recurring prices hang off. Created per order when unset.
SERVICE_PRODUCT_ID = os.environ.get("STRIPE_PRODUCT_ID", "")

# Minimum lead time for a placeholder trial end.
MIN_TRIAL_SECONDS = 24 * 3600


def needs_deferred_subscription(o: orders_db.Order) -> bool:
    return (
        o.billing_type in DEFERRED_BILLING_TYPES
        and bool(o.stripe_customer_id)
        and not o.stripe_subscription_id
        and o.status in (orders_db.DEPOSIT_PAID, orders_db.CARD_SAVED)
    )


def _saved_payment_method(o: orders_db.Order) -> Optional[str]:
    if o.stripe_setup_intent:
        pm = stripe.SetupIntent.retrieve(o.stripe_setup_intent).payment_method
    elif o.stripe_payment_intent:
        pm = stripe.PaymentIntent.retrieve(o.stripe_payment_intent).payment_method
    else:
        return None
    return pm if isinstance(pm, str) or pm is None else pm.id


def _product_id(o: orders_db.Order) -> str:
    if SERVICE_PRODUCT_ID:
        return SERVICE_PRODUCT_ID
    product = stripe.Product.create(name=PRODUCT_NAME, idempotency_key=f"order_{o.id}_product")
    return product.id


def placeholder_trial_end(start_date: Any, now: Optional[datetime] = None) -> int:
    """
    First charge for a deferred subscription: the requested start day at
    15:00 UTC, never sooner than a day out. Route scheduling moves it later.
    """
    now = now or datetime.now(timezone.utc)
    floor = int(now.timestamp()) + MIN_TRIAL_SECONDS
    requested = charge_timestamp(start_date)
    return max(requested or floor, floor)


def start_deferred_subscription(o: orders_db.Order) -> str:
    """
    Create the recurring subscription for a paid deposit or a saved card.

    The subscription sits in a trial until the placeholder (or route) start
    date, then bills the full term price on the saved card. A one-time deep
    clean rides on the first invoice. Returns the subscription id.
    """
    terms = o.term_months or 1
    recurring_cents = to_minor_units(o.normal_due_today) - to_minor_units(o.deep_clean_total)
    _require_min_charge(recurring_cents)

    product = _product_id(o)
    params: Dict[str, Any] = {
        "customer": o.stripe_customer_id,
        "items": [{
            "price_data": {
                "currency": cfg.CURRENCY,
                "product": product,
                "unit_amount": recurring_cents,
                "recurring": {"interval": "month", "interval_count": terms},
            },
        }],
        "trial_end": placeholder_trial_end(o.start_date),
        "proration_behavior": "none",
        "metadata": {"orderId": o.order_id or o.id, "billingType": o.billing_type},
        "idempotency_key": f"order_{o.id}_subscription",
    }

    pm = _saved_payment_method(o)
    if pm:
        params["default_payment_method"] = pm

    deep_cents = to_minor_units(o.deep_clean_total)
    if deep_cents > 0:
        params["add_invoice_items"] = [{
            "price_data": {"currency": cfg.CURRENCY, "product": product, "unit_amount": deep_cents},
        }]

    sub = stripe.Subscription.create(**params)
    logger.info("deferred subscription %s created for order %s", sub.id, o.id)
    return sub.id


# ----------------------------
# Admin-side subscription changes
# ----------------------------
def cancel_subscription(subscription_id: str, *, at_period_end: bool) -> str:
    if at_period_end:
        stripe.Subscription.modify(subscription_id, cancel_at_period_end=True, proration_behavior="none")
        return "cancel_at_period_end"
    stripe.Subscription.cancel(subscription_id)
    return "cancel_now"


def charge_timestamp(service_start_date: Any) -> Optional[int]:
    d = parse_start_date(service_start_date)
    if d is None:
        return None
    return int(datetime(d.year, d.month, d.day, CHARGE_HOUR_UTC, tzinfo=timezone.utc).timestamp())


def schedule_route_billing(orders: Iterable[orders_db.Order], route_id: str, service_start_date: str) -> Dict[str, Any]:
    """
    For each order on the route with a Stripe subscription: credit the
    deposit to the customer's balance (so it comes off the first invoice)
    and push the subscription's trial end to the service day.

    Idempotency keys make reruns for the same route/date safe.
    """
    trial_end = charge_timestamp(service_start_date)
    if trial_end is None:
        raise ValueError("Invalid service_start_date")

    updated = 0
    credited = 0
    errors: List[Dict[str, str]] = []

    for o in orders:
        if not o.stripe_subscription_id or not o.stripe_customer_id:
            continue
        try:
            if o.is_deposit:
                deposit_cents = to_minor_units(o.deposit_amount if o.deposit_amount is not None else cfg.DEPOSIT_AMOUNT)
                if deposit_cents > 0:
                    stripe.Customer.create_balance_transaction(
                        o.stripe_customer_id,
                        amount=-deposit_cents,
                        currency=cfg.CURRENCY,
                        description=f"ProCan deposit credit for route {route_id}",
                        idempotency_key=f"route_{route_id}_order_{o.id}_depositcredit",
                    )
                    credited += 1

            stripe.Subscription.modify(
                o.stripe_subscription_id,
                trial_end=trial_end,
                proration_behavior="none",
                idempotency_key=f"route_{route_id}_sub_{o.stripe_subscription_id}_trialend_{service_start_date}",
            )
            updated += 1
        except stripe.StripeError as e:
            logger.warning("route %s: order %s not updated: %s", route_id, o.id, e)
            errors.append({"order_id": o.id, "message": str(e)})

    return {"updated_subscriptions": updated, "deposit_credits_applied": credited, "errors": errors}
