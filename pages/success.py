import os

import requests
import streamlit as st

from pricing_engine import format_money

API_BASE = os.environ.get("API_BASE", "http://localhost:8000").rstrip("/")

NEXT_STEPS = {
    "deposit": "Your deposit reserves your route spot. The rest is billed when service starts.",
    "setup": "Your card is saved. Nothing was charged today; billing starts on your service date.",
    "subscription": "Your plan is active. We'll be in touch to confirm your first visit.",
    "one_time": "We'll reach out to schedule your visit.",
}

st.title("Thanks, you're all set ✅")

session_id = st.query_params.get("session_id")
if isinstance(session_id, list):
    session_id = session_id[0] if session_id else None

if not session_id:
    st.error("Missing session ID.")
    st.stop()

with st.spinner("Loading order details…"):
    try:
        r = requests.get(f"{API_BASE}/orders/by-session/{session_id}", timeout=30)
    except requests.RequestException:
        r = None

if r is None or r.status_code != 200:
    st.warning("Order confirmed. Details are still finalizing; check your email for a receipt.")
    st.stop()

order = r.json()

st.subheader("Order summary")
st.write(f"Order ID: **{order.get('order_id') or order.get('id')}**")
st.write(f"Email: **{order.get('customer_email') or ''}**")
st.write(f"Paid today: **{format_money(order.get('amount_paid_usd') or 0)}**")
st.info(NEXT_STEPS.get(order.get("billing_type") or "", NEXT_STEPS["one_time"]))
