# orders_db.py
"""
Order persistence (Postgres in production, SQLite in tests).

Every write that can be triggered more than once (Stripe retries webhooks)
upserts on a natural key: the Stripe checkout session id for completions,
the subscription id for invoices and cancellations, the submission id for
cash orders.
"""
import logging
import os
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Iterator, List, Optional, Tuple

from sqlalchemy import Boolean, Column, DateTime, Integer, JSON, Numeric, String, Text, create_engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from pricing_engine import round_money
from submission import Submission

logger = logging.getLogger(__name__)

DATABASE_URL = os.environ.get("DATABASE_URL", "")

Base = declarative_base()
engine = None
SessionLocal = None

# Status values
PENDING_PAYMENT = "pending_payment"
NEW_CASH = "new"
PAID = "paid"
DEPOSIT_PAID = "deposit_paid"
CARD_SAVED = "card_saved"
ACTIVE = "active"
PAST_DUE = "past_due"
CANCELLED = "cancelled"
CANCELLED_BEFORE_START = "cancelled_before_start"
CANCELLED_ACTIVE = "cancelled_active"

_COMPLETED_BY_BILLING_TYPE = {
    "one_time": PAID,
    "deposit": DEPOSIT_PAID,
    "setup": CARD_SAVED,
    "subscription": ACTIVE,
}
_CANCELLED = (CANCELLED, CANCELLED_BEFORE_START, CANCELLED_ACTIVE)


class CashOrderRejected(ValueError):
    pass


# ----------------------------
# Models
# ----------------------------
class Order(Base):
    __tablename__ = "orders"

    id = Column(String, primary_key=True)  # uuid4
    order_id = Column(String, unique=True, index=True)  # Submission.meta.id
    created_at = Column(DateTime, default=lambda: datetime.now(timezone.utc))
    status = Column(String, default=PENDING_PAYMENT)

    billing_type = Column(String, nullable=True)  # one_time / subscription / deposit / setup
    payment_method = Column(String, nullable=True)  # card / cash

    stripe_session_id = Column(String, unique=True, index=True, nullable=True)
    stripe_customer_id = Column(String, nullable=True)
    stripe_subscription_id = Column(String, index=True, nullable=True)
    stripe_payment_intent = Column(String, nullable=True)
    stripe_setup_intent = Column(String, nullable=True)

    biz_name = Column(String, nullable=True)
    contact_name = Column(String, nullable=True)
    customer_email = Column(String, nullable=True)
    phone = Column(String, nullable=True)
    address = Column(String, nullable=True)
    geo_lat = Column(String, nullable=True)
    geo_lng = Column(String, nullable=True)
    locations_count = Column(Integer, nullable=True)
    preferred_service_day = Column(String, nullable=True)
    start_date = Column(String, nullable=True)
    notes = Column(Text, nullable=True)

    billing = Column(String, nullable=True)
    term_months = Column(Integer, nullable=True)
    cadence = Column(String, nullable=True)
    cans = Column(Integer, nullable=True)
    pad_enabled = Column(Boolean, default=False)
    pad_size = Column(String, nullable=True)
    pad_cadence = Column(String, nullable=True)
    deep_clean_enabled = Column(Boolean, default=False)
    deep_clean_level = Column(String, nullable=True)
    deep_clean_qty = Column(Integer, nullable=True)
    deep_clean_total = Column(Numeric(12, 2), nullable=True)

    discount_code = Column(String, nullable=True)
    monthly_total = Column(Numeric(12, 2), nullable=True)
    due_today = Column(Numeric(12, 2), nullable=True)
    normal_due_today = Column(Numeric(12, 2), nullable=True)
    is_deposit = Column(Boolean, default=False)
    deposit_amount = Column(Numeric(10, 2), nullable=True)

    amount_paid_cents = Column(Integer, nullable=True)
    paid_at = Column(DateTime, nullable=True)
    last_invoice_id = Column(String, nullable=True)
    last_invoice_status = Column(String, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)
    route_id = Column(String, index=True, nullable=True)

    submission_payload = Column(JSON, nullable=True)  # Submission.to_dict()


class Route(Base):
    __tablename__ = "routes"

    id = Column(String, primary_key=True)
    service_start_date = Column(String, nullable=True)
    cadence = Column(String, nullable=True)
    updated_at = Column(DateTime, default=lambda: datetime.now(timezone.utc))


# ----------------------------
# Engine / sessions
# ----------------------------
def configure(url: str) -> None:
    """(Re)bind the module engine. Empty url = persistence disabled."""
    global engine, SessionLocal
    if not url:
        engine = None
        SessionLocal = None
        return

    if url.startswith("sqlite"):
        engine = create_engine(url, connect_args={"check_same_thread": False}, poolclass=StaticPool)
    else:
        engine = create_engine(url, pool_pre_ping=True)
    SessionLocal = sessionmaker(bind=engine)
    Base.metadata.create_all(bind=engine)


def is_configured() -> bool:
    return SessionLocal is not None


@contextmanager
def session_scope() -> Iterator[Session]:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


configure(DATABASE_URL)


# ----------------------------
# Writes
# ----------------------------
def _now() -> datetime:
    return datetime.now(timezone.utc)


def _columns_from_submission(sub: Submission) -> Dict[str, Any]:
    b = sub.business
    s = sub.services
    bill = sub.billing
    p = sub.pricing
    return {
        "order_id": sub.id,
        "billing_type": sub.billing_type.value,
        "payment_method": bill.payment_method.value,
        "biz_name": b.name[:200] or None,
        "contact_name": b.contact_name[:200] or None,
        "customer_email": b.email[:200] or None,
        "phone": b.phone[:60] or None,
        "address": b.address[:300] or None,
        "geo_lat": b.geo.lat if b.geo else None,
        "geo_lng": b.geo.lon if b.geo else None,
        "locations_count": b.locations,
        "preferred_service_day": b.preferred_service_day[:40] or None,
        "start_date": bill.start_date or None,
        "notes": sub.notes[:1000] or None,
        "billing": bill.option,
        "term_months": None if bill.one_time_only else bill.months_in_term,
        "cadence": s.trash_cadence,
        "cans": s.trash_cans,
        "pad_enabled": s.pad_enabled,
        "pad_size": s.pad_size if s.pad_enabled else None,
        "pad_cadence": s.pad_cadence if s.pad_enabled else None,
        "deep_clean_enabled": s.deep_clean_enabled,
        "deep_clean_level": s.deep_clean_level if s.deep_clean_enabled else None,
        "deep_clean_qty": s.deep_clean_qty if s.deep_clean_enabled else None,
        "deep_clean_total": round_money(p.deep_clean_total),
        "discount_code": p.discount_code or None,
        "monthly_total": round_money(p.monthly_total),
        "due_today": round_money(p.due_today),
        "normal_due_today": round_money(p.normal_due_today),
        "is_deposit": p.is_deposit,
        "deposit_amount": round_money(p.deposit_amount) if p.is_deposit else None,
        "submission_payload": sub.to_dict(),
    }


def record_pending_order(db: Session, sub: Submission, stripe_session_id: str) -> Order:
    """Save the submission against its checkout session before payment."""
    o = db.query(Order).filter(Order.stripe_session_id == stripe_session_id).first()
    if o is None:
        o = db.query(Order).filter(Order.order_id == sub.id).first()
    if o is None:
        o = Order(id=str(uuid.uuid4()), status=PENDING_PAYMENT)
        db.add(o)

    for k, v in _columns_from_submission(sub).items():
        setattr(o, k, v)
    o.stripe_session_id = stripe_session_id
    db.commit()
    return o


def insert_cash_order(db: Session, sub: Submission) -> Order:
    """Cash/check order. Only one-time service may be paid in cash."""
    if not sub.billing.one_time_only:
        raise CashOrderRejected("Cash/Check is only allowed for one-time service.")

    existing = db.query(Order).filter(Order.order_id == sub.id).first()
    if existing is not None:
        return existing

    o = Order(id=str(uuid.uuid4()), status=NEW_CASH, stripe_session_id=None)
    for k, v in _columns_from_submission(sub).items():
        setattr(o, k, v)
    db.add(o)
    db.commit()
    logger.info("cash order recorded: %s (%s)", o.order_id, o.biz_name)
    return o


def complete_checkout_session(db: Session, session: Dict[str, Any]) -> Tuple[Order, bool]:
    """
    Apply a `checkout.session.completed` event.

    Returns (order, first_time). `first_time` is False when Stripe redelivers
    an event we already applied.
    """
    session_id = session.get("id")
    metadata = session.get("metadata") or {}

    o = db.query(Order).filter(Order.stripe_session_id == session_id).first()
    if o is None and metadata.get("orderId"):
        o = db.query(Order).filter(Order.order_id == metadata["orderId"]).first()
    if o is None:
        o = Order(id=str(uuid.uuid4()), order_id=metadata.get("orderId") or None, stripe_session_id=session_id)
        o.billing_type = metadata.get("billingType")
        o.biz_name = metadata.get("bizName")
        db.add(o)

    # Only a pending (or brand new) row completes. A redelivery after payment
    # or after a cancel must not bring the order back.
    first_time = o.status in (None, PENDING_PAYMENT)
    billing_type = o.billing_type or metadata.get("billingType") or "one_time"

    o.stripe_session_id = session_id
    o.stripe_customer_id = session.get("customer") or o.stripe_customer_id
    o.stripe_subscription_id = session.get("subscription") or o.stripe_subscription_id
    o.stripe_payment_intent = session.get("payment_intent") or o.stripe_payment_intent
    o.stripe_setup_intent = session.get("setup_intent") or o.stripe_setup_intent
    o.customer_email = (session.get("customer_details") or {}).get("email") or o.customer_email

    if first_time:
        o.status = _COMPLETED_BY_BILLING_TYPE.get(billing_type, PAID)
        o.amount_paid_cents = session.get("amount_total")
        o.paid_at = _now()

    db.commit()
    return o, first_time


def record_invoice(db: Session, invoice: Dict[str, Any], *, paid: bool) -> Optional[Order]:
    """Apply `invoice.paid` / `invoice.payment_failed` to the subscription's order."""
    sub_id = invoice.get("subscription")
    if not sub_id:
        return None

    o = db.query(Order).filter(Order.stripe_subscription_id == sub_id).first()
    if o is None:
        logger.warning("invoice %s for unknown subscription %s", invoice.get("id"), sub_id)
        return None

    o.last_invoice_id = invoice.get("id")
    o.last_invoice_status = "paid" if paid else "payment_failed"
    # $0 invoices come from the trial a deposit/setup subscription sits in
    # until its route starts; they don't make the service active.
    if paid and not invoice.get("amount_paid"):
        db.commit()
        return o
    if o.status not in _CANCELLED:
        o.status = ACTIVE if paid else PAST_DUE
    db.commit()
    return o


def mark_subscription_canceled(db: Session, subscription_id: str) -> Optional[Order]:
    o = db.query(Order).filter(Order.stripe_subscription_id == subscription_id).first()
    if o is None:
        return None
    # An admin cancel already picked the more specific status.
    if o.status not in _CANCELLED:
        o.status = CANCELLED
    o.cancelled_at = o.cancelled_at or _now()
    db.commit()
    return o


def attach_subscription(db: Session, o: Order, subscription_id: str) -> Order:
    o.stripe_subscription_id = subscription_id
    db.commit()
    return o


def mark_cancelled(db: Session, o: Order, *, after_start: bool) -> Order:
    o.status = CANCELLED_ACTIVE if after_start else CANCELLED_BEFORE_START
    o.cancelled_at = _now()
    db.commit()
    return o


def upsert_route(db: Session, route_id: str, service_start_date: str, cadence: str) -> Route:
    r = db.get(Route, route_id)
    if r is None:
        r = Route(id=route_id)
        db.add(r)
    r.service_start_date = service_start_date
    r.cadence = cadence
    r.updated_at = _now()
    db.commit()
    return r


def assign_route(db: Session, o: Order, route_id: Optional[str]) -> Order:
    o.route_id = route_id or None
    db.commit()
    return o


# ----------------------------
# Reads
# ----------------------------
def get_order(db: Session, ident: str) -> Optional[Order]:
    """Look up by primary key, falling back to the submission id."""
    return db.get(Order, ident) or get_by_order_id(db, ident)


def get_by_order_id(db: Session, order_id: str) -> Optional[Order]:
    return db.query(Order).filter(Order.order_id == order_id).first()


def get_by_session(db: Session, stripe_session_id: str) -> Optional[Order]:
    return db.query(Order).filter(Order.stripe_session_id == stripe_session_id).first()


def list_orders(db: Session, limit: int = 50) -> List[Order]:
    return db.query(Order).order_by(Order.created_at.desc()).limit(limit).all()


def orders_on_route(db: Session, route_id: str) -> List[Order]:
    return db.query(Order).filter(Order.route_id == route_id).all()


def _json_value(v: Any) -> Any:
    if isinstance(v, Decimal):
        return str(v)
    if isinstance(v, datetime):
        return v.isoformat()
    return v


def order_to_dict(o: Order, *, include_payload: bool = False) -> Dict[str, Any]:
    out = {}
    for col in Order.__table__.columns:
        if col.name == "submission_payload" and not include_payload:
            continue
        out[col.name] = _json_value(getattr(o, col.name))
    return out
