# emails.py
import html
import logging
import os
from typing import Optional

from sendgrid import SendGridAPIClient
from sendgrid.helpers.mail import Mail

import orders_db
from pricing_engine import format_money

logger = logging.getLogger(__name__)

SENDGRID_API_KEY = os.environ.get("SENDGRID_API_KEY", "")
FROM_EMAIL = os.environ.get("FROM_EMAIL", "orders@procansanitation.com")
OPS_EMAIL = os.environ.get("OPS_EMAIL", "")


def send_email(to_email: str, subject: str, html_body: str) -> bool:
    """
    Fire one email. Never raises: a mail outage must not fail a webhook or
    an order. Returns True when SendGrid accepted the message.
    """
    if not SENDGRID_API_KEY:
        logger.info("SENDGRID_API_KEY not set; skipping email to %s", to_email)
        return False
    if not to_email:
        return False

    msg = Mail(from_email=FROM_EMAIL, to_emails=to_email, subject=subject, html_content=html_body)
    try:
        SendGridAPIClient(SENDGRID_API_KEY).send(msg)
    except Exception:
        logger.exception("sendgrid send failed (%s)", subject)
        return False
    return True


def _money(v: Optional[object]) -> str:
    return format_money(v or 0)


def _what_happens_next(o: orders_db.Order) -> str:
    if o.billing_type == "deposit":
        return (
            f"<p>Your <b>{_money(o.deposit_amount)}</b> deposit reserves your spot. "
            f"The remaining balance (<b>{_money(o.normal_due_today)}</b>) is collected when service starts.</p>"
        )
    if o.billing_type == "setup":
        return (
            "<p>Your card is saved and has not been charged. "
            f"We'll charge <b>{_money(o.normal_due_today)}</b> when service begins on {html.escape(o.start_date or 'your start date')}.</p>"
        )
    if o.billing_type == "subscription":
        return f"<p>Your plan renews every {o.term_months or 1} month(s).</p>"
    return "<p>We'll reach out to confirm your service visit.</p>"


def send_order_confirmation(o: orders_db.Order) -> bool:
    paid_cents = o.amount_paid_cents or 0
    body = f"""
    <p>Thanks {html.escape(o.contact_name or '')}, we received your ProCan order.</p>
    <p><b>Order ID:</b> {html.escape(o.order_id or o.id)}</p>
    <p><b>Paid today:</b> {format_money(paid_cents / 100)}</p>
    {_what_happens_next(o)}
    """
    sent = send_email(o.customer_email, "ProCan order received", body)
    if OPS_EMAIL:
        send_email(
            OPS_EMAIL,
            f"New {o.billing_type or 'card'} order: {o.biz_name or o.order_id}",
            f"<p>{html.escape(o.biz_name or '')} ({html.escape(o.customer_email or '')})</p>"
            f"<p>Status: {html.escape(o.status or '')}. Paid today: {format_money(paid_cents / 100)}</p>",
        )
    return sent


def send_cash_order_notice(o: orders_db.Order) -> bool:
    if not OPS_EMAIL:
        return False
    return send_email(
        OPS_EMAIL,
        f"Cash/check order: {o.biz_name or o.order_id}",
        f"<p>{html.escape(o.biz_name or '')} ({html.escape(o.phone or '')})</p>"
        f"<p>Collect <b>{_money(o.due_today)}</b> at the visit. Order ID {html.escape(o.order_id or '')}.</p>",
    )


def send_payment_failed(o: orders_db.Order) -> bool:
    return send_email(
        o.customer_email,
        "ProCan payment failed",
        "<p>We couldn't process your latest ProCan invoice. "
        "Please update your payment method so service isn't interrupted.</p>",
    )
