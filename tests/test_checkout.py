from datetime import datetime, timedelta, timezone
from decimal import Decimal
from types import SimpleNamespace

import pytest
import stripe

import checkout
import orders_db
from pricing_engine import PaymentMethod, to_minor_units

from conftest import TODAY, make_submission

BASE = "https://procan.test"


@pytest.fixture
def fake_stripe(monkeypatch):
    calls = {"sessions": [], "customers": [], "balance": [], "modify": [], "cancel": []}

    def create_session(**params):
        calls["sessions"].append(params)
        n = len(calls["sessions"])
        return SimpleNamespace(id=f"cs_test_{n}", url=f"https://checkout.stripe.test/cs_test_{n}")

    def create_customer(**kw):
        calls["customers"].append(kw)
        return SimpleNamespace(id="cus_test_1")

    def balance(customer_id, **kw):
        calls["balance"].append((customer_id, kw))

    def modify(sub_id, **kw):
        calls["modify"].append((sub_id, kw))

    def cancel(sub_id, **kw):
        calls["cancel"].append(sub_id)

    monkeypatch.setattr(stripe.checkout.Session, "create", create_session)
    monkeypatch.setattr(stripe.Customer, "create", create_customer)
    monkeypatch.setattr(stripe.Customer, "create_balance_transaction", balance)
    monkeypatch.setattr(stripe.Subscription, "modify", modify)
    monkeypatch.setattr(stripe.Subscription, "cancel", cancel)
    return calls


# ----------------------------
# Session parameters
# ----------------------------
def test_one_time_is_a_single_payment():
    p = checkout.build_session_params(make_submission(one_time_only=True, can_qty=4), base_url=BASE + "/")
    assert p["mode"] == "payment"
    assert p["line_items"][0]["price_data"]["unit_amount"] == 10000
    assert p["success_url"] == f"{BASE}/success?session_id={{CHECKOUT_SESSION_ID}}"
    assert p["metadata"]["billingType"] == "one_time"


def test_deposit_charges_25_and_keeps_the_card():
    p = checkout.build_session_params(make_submission(deposit=True, can_qty=30), base_url=BASE)
    assert p["mode"] == "payment"
    assert p["customer_creation"] == "always"
    assert p["payment_intent_data"]["setup_future_usage"] == "off_session"
    assert p["line_items"][0]["price_data"]["unit_amount"] == 2500
    assert p["metadata"]["normalDueToday"] == "600.00"


def test_future_start_uses_setup_mode():
    sub = make_submission(start_date=(TODAY + timedelta(days=10)).isoformat())
    p = checkout.build_session_params(sub, base_url=BASE)
    assert p["mode"] == "setup"
    assert "line_items" not in p
    assert p["metadata"]["captureOnly"] == "true"


def test_subscription_recurs_every_term_with_separate_deep_clean():
    sub = make_submission(can_qty=20, billing="quarterly", deep_clean=True)
    p = checkout.build_session_params(sub, base_url=BASE)
    assert p["mode"] == "subscription"

    recurring, deep = p["line_items"]
    assert recurring["price_data"]["unit_amount"] == 131100
    assert recurring["price_data"]["recurring"] == {"interval": "month", "interval_count": 3}
    assert deep["price_data"]["unit_amount"] == 70000
    assert "recurring" not in deep["price_data"]


def test_amount_below_minimum_is_rejected():
    sub = make_submission(one_time_only=True, cadence="none", can_qty=0)
    with pytest.raises(checkout.AmountTooSmall):
        checkout.build_session_params(sub, base_url=BASE)


def test_metadata_is_flat_strings():
    md = checkout.submission_metadata(make_submission(discount_code="EA2026"))
    assert md["orderId"]
    assert md["discountCode"] == "EA2026"
    assert md["padEnabled"] == "false"
    assert all(isinstance(v, str) for v in md.values())


# ----------------------------
# Dispatch
# ----------------------------
def test_dispatch_card_creates_session_and_pending_order(db, fake_stripe):
    sub = make_submission(can_qty=8)
    result = checkout.dispatch(sub, db=db, base_url=BASE)

    assert result.kind == "checkout"
    assert result.mode == "subscription"
    assert result.checkout_url == "https://checkout.stripe.test/cs_test_1"
    o = orders_db.get_by_session(db, "cs_test_1")
    assert o.status == orders_db.PENDING_PAYMENT
    assert o.order_id == sub.id


def test_dispatch_setup_creates_customer_first(db, fake_stripe):
    sub = make_submission(start_date=(TODAY + timedelta(days=5)).isoformat())
    checkout.dispatch(sub, db=db, base_url=BASE)
    assert fake_stripe["customers"][0]["email"] == "sam@bayoubistro.test"
    params = fake_stripe["sessions"][0]
    assert params["customer"] == "cus_test_1"
    assert "customer_email" not in params


def test_dispatch_cash_never_touches_stripe(db, fake_stripe):
    sub = make_submission(payment_method=PaymentMethod.CASH, one_time_only=True)
    result = checkout.dispatch(sub, db=db, base_url=BASE)
    assert result.kind == "cash"
    assert result.status == orders_db.NEW_CASH
    assert fake_stripe["sessions"] == []


def test_stripe_failure_surfaces_as_retryable_error(db, monkeypatch):
    def boom(**params):
        raise stripe.StripeError("card network down")

    monkeypatch.setattr(stripe.checkout.Session, "create", boom)
    with pytest.raises(checkout.PaymentProviderError) as exc:
        checkout.dispatch(make_submission(), db=db, base_url=BASE)
    assert exc.value.status_code == 502
    assert db.query(orders_db.Order).count() == 0


# ----------------------------
# Admin-side
# ----------------------------
def test_cancel_subscription_modes(fake_stripe):
    assert checkout.cancel_subscription("sub_1", at_period_end=False) == "cancel_now"
    assert checkout.cancel_subscription("sub_2", at_period_end=True) == "cancel_at_period_end"
    assert fake_stripe["cancel"] == ["sub_1"]
    assert fake_stripe["modify"][0] == ("sub_2", {"cancel_at_period_end": True, "proration_behavior": "none"})


def test_charge_timestamp_is_15_utc():
    assert checkout.charge_timestamp("2026-04-06") == 1775487600
    assert checkout.charge_timestamp("not a date") is None


def test_schedule_route_credits_deposits_and_moves_trial_end(fake_stripe):
    orders = [
        orders_db.Order(id="o1", stripe_subscription_id="sub_1", stripe_customer_id="cus_1",
                        is_deposit=True, deposit_amount=Decimal("25.00")),
        orders_db.Order(id="o2", stripe_subscription_id="sub_2", stripe_customer_id="cus_2", is_deposit=False),
        orders_db.Order(id="o3", stripe_subscription_id=None, stripe_customer_id="cus_3", is_deposit=True),
    ]
    out = checkout.schedule_route_billing(orders, "R7", "2026-04-06")

    assert out == {"updated_subscriptions": 2, "deposit_credits_applied": 1, "errors": []}
    customer_id, kw = fake_stripe["balance"][0]
    assert customer_id == "cus_1"
    assert kw["amount"] == -2500
    assert kw["idempotency_key"] == "route_R7_order_o1_depositcredit"
    assert [m[1]["trial_end"] for m in fake_stripe["modify"]] == [1775487600, 1775487600]


def test_schedule_route_collects_stripe_errors(monkeypatch, fake_stripe):
    def modify(sub_id, **kw):
        raise stripe.StripeError("No such subscription")

    monkeypatch.setattr(stripe.Subscription, "modify", modify)
    orders = [orders_db.Order(id="o1", stripe_subscription_id="sub_x", stripe_customer_id="cus_x", is_deposit=False)]
    out = checkout.schedule_route_billing(orders, "R1", "2026-04-06")
    assert out["updated_subscriptions"] == 0
    assert out["errors"][0]["order_id"] == "o1"


def test_schedule_route_rejects_bad_date():
    with pytest.raises(ValueError):
        checkout.schedule_route_billing([], "R1", "04/06/2026")


# ----------------------------
# Deferred subscriptions
# ----------------------------
@pytest.fixture
def fake_subscriptions(monkeypatch):
    created = []

    def create(**params):
        created.append(params)
        return SimpleNamespace(id="sub_new")

    monkeypatch.setattr(stripe.PaymentIntent, "retrieve", lambda pi_id: SimpleNamespace(payment_method="pm_1"))
    monkeypatch.setattr(stripe.Product, "create", lambda **kw: SimpleNamespace(id="prod_1"))
    monkeypatch.setattr(stripe.Subscription, "create", create)
    return created


def _paid_deposit(db, **form):
    sub = make_submission(deposit=True, **form)
    orders_db.record_pending_order(db, sub, "cs_1")
    o, _ = orders_db.complete_checkout_session(db, {
        "id": "cs_1",
        "customer": "cus_1",
        "payment_intent": "pi_1",
        "amount_total": 2500,
        "metadata": {"orderId": sub.id, "billingType": "deposit"},
    })
    return o


def test_paid_deposit_needs_a_subscription(db):
    o = _paid_deposit(db, can_qty=30)
    assert o.status == orders_db.DEPOSIT_PAID
    assert checkout.needs_deferred_subscription(o)

    orders_db.attach_subscription(db, o, "sub_new")
    assert not checkout.needs_deferred_subscription(o)


def test_subscription_orders_never_need_a_deferred_one(db):
    sub = make_submission(can_qty=5)
    orders_db.record_pending_order(db, sub, "cs_2")
    o, _ = orders_db.complete_checkout_session(db, {
        "id": "cs_2", "customer": "cus_2", "metadata": {"orderId": sub.id, "billingType": "subscription"},
    })
    assert not checkout.needs_deferred_subscription(o)


def test_deferred_subscription_bills_the_term_on_the_saved_card(db, fake_subscriptions):
    o = _paid_deposit(db, can_qty=30, billing="quarterly")

    assert checkout.start_deferred_subscription(o) == "sub_new"
    (params,) = fake_subscriptions
    assert params["customer"] == "cus_1"
    assert params["default_payment_method"] == "pm_1"
    price = params["items"][0]["price_data"]
    assert price["product"] == "prod_1"
    assert price["unit_amount"] == to_minor_units(o.normal_due_today)
    assert price["recurring"] == {"interval": "month", "interval_count": 3}
    assert params["trial_end"] > 0
    assert params["idempotency_key"] == f"order_{o.id}_subscription"
    assert "add_invoice_items" not in params


def test_deferred_subscription_puts_deep_clean_on_first_invoice(db, fake_subscriptions):
    o = _paid_deposit(db, can_qty=30, deep_clean=True)
    checkout.start_deferred_subscription(o)

    (params,) = fake_subscriptions
    deep = params["add_invoice_items"][0]["price_data"]
    assert deep["unit_amount"] == to_minor_units(o.deep_clean_total) > 0
    assert params["items"][0]["price_data"]["unit_amount"] == to_minor_units(o.normal_due_today) - deep["unit_amount"]


def test_placeholder_trial_end_is_at_least_a_day_out():
    now = datetime(2026, 3, 2, 12, tzinfo=timezone.utc)
    floor = int(now.timestamp()) + 24 * 3600
    assert checkout.placeholder_trial_end("2026-04-06", now=now) == 1775487600
    assert checkout.placeholder_trial_end("2026-03-02", now=now) == floor
    assert checkout.placeholder_trial_end(None, now=now) == floor
