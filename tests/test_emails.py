from decimal import Decimal

import pytest

import emails
import orders_db


@pytest.fixture
def outbox(monkeypatch):
    sent = []

    class FakeClient:
        def __init__(self, key):
            self.key = key

        def send(self, msg):
            sent.append(msg)

    monkeypatch.setattr(emails, "SENDGRID_API_KEY", "SG.test")
    monkeypatch.setattr(emails, "OPS_EMAIL", "ops@procan.test")
    monkeypatch.setattr(emails, "SendGridAPIClient", FakeClient)
    return sent


def _order(**kw):
    fields = dict(
        id="o1", order_id="sub-1", status="deposit_paid", billing_type="deposit",
        customer_email="sam@bayoubistro.test", contact_name="Sam", biz_name="Bayou Bistro",
        amount_paid_cents=2500, deposit_amount=Decimal("25.00"), normal_due_today=Decimal("437.50"),
        due_today=Decimal("25.00"), phone="5045550142",
    )
    fields.update(kw)
    return orders_db.Order(**fields)


def test_no_api_key_skips_sending(monkeypatch):
    monkeypatch.setattr(emails, "SENDGRID_API_KEY", "")
    assert emails.send_email("a@b.test", "hi", "<p>x</p>") is False


def test_confirmation_goes_to_customer_and_ops(outbox):
    assert emails.send_order_confirmation(_order()) is True
    assert len(outbox) == 2
    body = outbox[0].get()["content"][0]["value"]
    assert "$437.50" in body
    assert "$25.00" in body


def test_cash_notice_only_when_ops_configured(outbox, monkeypatch):
    assert emails.send_cash_order_notice(_order(billing_type="one_time", due_today=Decimal("125.00"))) is True
    monkeypatch.setattr(emails, "OPS_EMAIL", "")
    assert emails.send_cash_order_notice(_order()) is False
    assert len(outbox) == 1


def test_send_failure_is_logged_not_raised(monkeypatch, caplog):
    class Broken:
        def __init__(self, key):
            pass

        def send(self, msg):
            raise RuntimeError("sendgrid down")

    monkeypatch.setattr(emails, "SENDGRID_API_KEY", "SG.test")
    monkeypatch.setattr(emails, "SendGridAPIClient", Broken)
    assert emails.send_payment_failed(_order()) is False
    assert "sendgrid send failed" in caplog.text
