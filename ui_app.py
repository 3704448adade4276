import os
from datetime import date

import requests
import streamlit as st

import pricing_config as cfg
from pricing_engine import (
    NO_DISCOUNT,
    QuoteInputs,
    QuoteValidationError,
    UnknownDiscountCode,
    apply_discount_code,
    compute_quote,
    format_money,
    normalize_billing,
    quote_summary_lines,
)
from submission import ContactInfo, validate_intake


API_BASE = os.environ.get("API_BASE", "http://localhost:8000").rstrip("/")
API_KEY = os.environ.get("API_KEY", "")

SERVICE_DAYS = ["unspecified", "monday", "tuesday", "wednesday", "thursday", "friday"]


def _headers() -> dict:
    return {"x-api-key": API_KEY} if API_KEY else {}


def _suggest(q: str) -> list:
    try:
        r = requests.get(f"{API_BASE}/address/suggest", params={"q": q}, timeout=30)
    except requests.RequestException:
        return []
    if r.status_code != 200:
        return []
    return [hit.get("display_name", "") for hit in r.json() if hit.get("display_name")]


st.set_page_config(page_title="ProCan Sanitation Quote", layout="centered")

st.markdown(
    """
    <style>
    h1 {
      font-family: Arial, sans-serif;
      font-weight: 800;
      letter-spacing: 0.2px;
      margin-bottom: 0.25rem;
    }
    </style>
    """,
    unsafe_allow_html=True
)

st.title("ProCan Sanitation Instant Quote")

if st.query_params.get("payment") == "cancelled":
    st.info("Checkout was cancelled. Your quote is still here.")

if "discount" not in st.session_state:
    st.session_state["discount"] = NO_DISCOUNT

# ----------------------------
# Services
# ----------------------------
st.subheader("1. Services")

cadence = st.selectbox("Trash can cleaning", options=["biweekly", "monthly", "none"],
                       format_func=lambda c: {"biweekly": "Every 2 weeks", "monthly": "Monthly", "none": "No can cleaning"}[c])
can_qty = 0
if cadence != "none":
    can_qty = st.number_input("Total cans (all locations)", min_value=0, value=10, step=1)
locations = st.number_input("Number of locations", min_value=1, value=1, step=1)

pad_addon = st.checkbox("Add dumpster pad cleaning", value=False)
pad_size, pad_cadence = "small", "biweekly"
if pad_addon:
    p1, p2 = st.columns(2)
    pad_size = p1.selectbox("Pad size", options=list(cfg.DUMPSTER_PAD_MONTHLY.keys()))
    pad_cadence = p2.selectbox("Pad cadence", options=list(cfg.PAD_VISITS_PER_MONTH.keys()), index=1)

deep_clean = st.checkbox("Add one-time deep clean", value=False)
deep_level, deep_applies, deep_qty = "standard", "allCans", 0
if deep_clean:
    d1, d2 = st.columns(2)
    deep_level = d1.selectbox("Condition", options=list(cfg.DEEP_CLEAN_PER_CAN.keys()))
    deep_applies = d2.radio("Applies to", options=["allCans", "someCans"],
                            format_func=lambda a: "All cans" if a == "allCans" else "Some cans")
    if deep_applies == "someCans":
        deep_qty = st.number_input("Cans needing deep clean", min_value=0, value=1, step=1)

# ----------------------------
# Billing
# ----------------------------
st.subheader("2. Billing")

billing = st.radio("Billing", options=list(cfg.TERM_MONTHS.keys()), horizontal=True)
one_time_only = st.checkbox("One-time service only (no subscription)", value=False)
deposit = st.checkbox(
    f"Reserve my spot with a {format_money(cfg.DEPOSIT_AMOUNT)} deposit",
    value=False,
    disabled=one_time_only,
)
one_time_only, deposit = normalize_billing(one_time_only, deposit)
start_date = st.date_input("Service start date", value=date.today(), min_value=date.today())

code_col, btn_col = st.columns([3, 1])
code_text = code_col.text_input("Discount code", value=st.session_state["discount"].code)
if btn_col.button("Apply"):
    try:
        st.session_state["discount"] = apply_discount_code(st.session_state["discount"], code_text)
    except UnknownDiscountCode as e:
        st.error(str(e))
if st.session_state["discount"].active:
    st.success(st.session_state["discount"].label)

form = {
    "cadence": cadence,
    "can_qty": int(can_qty),
    "locations": int(locations),
    "pad_addon": pad_addon,
    "pad_size": pad_size,
    "pad_cadence": pad_cadence,
    "deep_clean": deep_clean,
    "deep_level": deep_level,
    "deep_applies": deep_applies,
    "deep_qty": int(deep_qty),
    "billing": billing,
    "one_time_only": one_time_only,
    "deposit": deposit,
    "start_date": start_date.isoformat() if start_date else None,
    "discount_code": st.session_state["discount"].code,
    "today": date.today().isoformat(),
}

# ----------------------------
# Quote
# ----------------------------
st.divider()
st.subheader("Quote Summary")

inputs = QuoteInputs.from_form(form)
try:
    quote = compute_quote(inputs, today=date.fromisoformat(form["today"]))
except QuoteValidationError as e:
    st.error(e.message)
    st.info("Pick monthly or quarterly billing, or add services, to see pricing.")
    st.stop()

c1, c2 = st.columns(2)
if one_time_only:
    c1.metric("Per visit", format_money(quote.per_visit_total))
else:
    c1.metric("Monthly", format_money(quote.monthly_total))
c2.metric("Due today", format_money(quote.due_today))

for line in quote_summary_lines(quote):
    st.write(line)

# ----------------------------
# Contact
# ----------------------------
st.divider()
st.subheader("3. Your details")

business_name = st.text_input("Business / account name")
contact_name = st.text_input("Primary contact")
email = st.text_input("Email")
phone = st.text_input("Phone")

address = st.text_input("Service address")
if len(address.strip()) >= 3 and st.button("Look up address"):
    st.session_state["address_hits"] = _suggest(address.strip())
hits = st.session_state.get("address_hits") or []
if hits:
    picked = st.selectbox("Matches", options=["(keep what I typed)"] + hits)
    if picked != "(keep what I typed)":
        address = picked

preferred_day = st.selectbox("Preferred service day", options=SERVICE_DAYS)
notes = st.text_area("Notes (gate codes, access, etc.)")

payment_method = "card"
if one_time_only:
    payment_method = st.radio("Payment", options=["card", "cash"],
                              format_func=lambda m: "Card" if m == "card" else "Cash / check at visit",
                              horizontal=True)

contact = ContactInfo(
    business_name=business_name,
    contact_name=contact_name,
    email=email,
    phone=phone,
    address=address,
    preferred_service_day=preferred_day,
    notes=notes,
)

# ✅ Checkout button
if st.button("Place Order"):
    errors = validate_intake(contact, inputs, quote)
    if errors:
        for msg in errors:
            st.error(msg)
        st.stop()

    payload = {
        "inputs": form,
        "contact": {
            "business_name": business_name,
            "contact_name": contact_name,
            "email": email,
            "phone": phone,
            "address": address,
            "preferred_service_day": preferred_day,
            "notes": notes,
        },
        "payment_method": payment_method,
    }
    path = "/orders/cash" if payment_method == "cash" else "/checkout/create"

    try:
        r = requests.post(f"{API_BASE}{path}", json=payload, headers=_headers(), timeout=30)
    except requests.RequestException as e:
        st.error(f"Checkout failed: {e}")
        st.stop()

    if r.status_code != 200:
        st.error(f"Checkout API error: {r.status_code}")
        st.code(r.text)
        st.stop()

    data = r.json()
    if payment_method == "cash":
        st.success("Order received. We'll collect payment at the visit.")
        st.write(f"Order ID: **{data['order']['order_id']}**")
        st.stop()

    checkout_url = data["checkout_url"]
    st.markdown(
        f"<meta http-equiv='refresh' content='0; url={checkout_url}'>",
        unsafe_allow_html=True
    )
    st.write("Redirecting to secure checkout…")
