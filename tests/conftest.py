from datetime import date

import pytest

import orders_db
from pricing_engine import QuoteInputs, compute_quote
from submission import ContactInfo, build_submission


TODAY = date(2026, 3, 2)


def make_inputs(**form) -> QuoteInputs:
    base = {"cadence": "biweekly", "can_qty": 5, "billing": "monthly", "start_date": TODAY.isoformat()}
    base.update(form)
    return QuoteInputs.from_form(base)


def make_contact(**overrides) -> ContactInfo:
    fields = dict(
        business_name="Bayou Bistro",
        contact_name="Sam Reyes",
        email="sam@bayoubistro.test",
        phone="(504) 555-0142",
        address="812 Magazine St, New Orleans, LA",
        preferred_service_day="tuesday",
        notes="Gate code 4411",
    )
    fields.update(overrides)
    return ContactInfo(**fields)


def make_submission(payment_method=None, today=TODAY, **form):
    inputs = make_inputs(**form)
    quote = compute_quote(inputs, today=today)
    kwargs = {}
    if payment_method is not None:
        kwargs["payment_method"] = payment_method
    return build_submission(quote, inputs, make_contact(), **kwargs)


@pytest.fixture
def db():
    orders_db.configure("sqlite://")
    with orders_db.session_scope() as s:
        yield s
    orders_db.configure("")
