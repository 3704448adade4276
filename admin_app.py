# admin_app.py
import os
from datetime import date, datetime

import pandas as pd
import requests
import streamlit as st

from pricing_engine import format_money


st.set_page_config(page_title="ProCan Admin", layout="wide")

st.title("ProCan Admin Dashboard")
st.caption("Orders, cancellations and route start dates via the ProCan Intake API.")

# ----------------------------
# Config
# ----------------------------
API_BASE = os.environ.get("API_BASE", "http://localhost:8000").rstrip("/")
DEFAULT_LIMIT = int(os.environ.get("ADMIN_DEFAULT_LIMIT", "50"))

# ----------------------------
# Sidebar
# ----------------------------
with st.sidebar:
    st.subheader("Connection")
    st.write("API Base:")
    st.code(API_BASE)

    admin_key = st.text_input(
        "Admin token",
        type="password",
        value=os.environ.get("ADMIN_API_KEY", ""),
        help="Same value as ROUTE_SCHEDULER_TOKEN on the API service.",
    ).strip()

    st.divider()
    st.subheader("Filters")
    limit = st.number_input("Max rows", min_value=1, max_value=500, value=DEFAULT_LIMIT, step=10)
    status_filter = st.multiselect("Status", options=[
        "pending_payment", "new", "paid", "deposit_paid", "card_saved", "active",
        "past_due", "cancelled", "cancelled_before_start", "cancelled_active",
    ])

    col1, col2 = st.columns(2)
    with col1:
        st.button("🔄 Refresh")
    with col2:
        ping = st.button("🩺 Ping API")

# ----------------------------
# Helpers
# ----------------------------
def _fmt_money(v) -> str:
    if v is None or v == "":
        return ""
    return format_money(v)


def _fmt_dt(x) -> str:
    if not x:
        return ""
    try:
        return datetime.fromisoformat(str(x).replace("Z", "+00:00")).strftime("%Y-%m-%d %H:%M")
    except ValueError:
        return str(x)


def _headers() -> dict:
    return {"Authorization": f"Bearer {admin_key}"}


def api_get(path: str, *, params: dict | None = None) -> requests.Response:
    return requests.get(f"{API_BASE}{path}", headers=_headers(), params=params, timeout=30)


def api_post(path: str, payload: dict) -> requests.Response:
    return requests.post(f"{API_BASE}{path}", headers=_headers(), json=payload, timeout=30)


def _show_result(r: requests.Response) -> None:
    if r.status_code == 200:
        st.success("Done.")
        st.json(r.json())
    else:
        st.error(f"API error: {r.status_code}")
        st.code(r.text)


# ----------------------------
# Top actions
# ----------------------------
if ping:
    try:
        r = requests.get(f"{API_BASE}/health", timeout=10)
        st.success(f"API /health: {r.status_code} {r.text}")
    except requests.RequestException as e:
        st.error(f"API ping failed: {e}")

st.divider()

if not admin_key:
    st.info("Enter your **Admin token** in the sidebar to load orders.")
    st.stop()

# ----------------------------
# Load orders
# ----------------------------
with st.spinner("Loading orders..."):
    try:
        r = api_get("/admin/orders", params={"limit": int(limit)})
    except requests.RequestException as e:
        st.error(f"Failed to load orders: {e}")
        st.stop()

if r.status_code == 401:
    st.error("Unauthorized (401). Your admin token is wrong or not being sent.")
    st.stop()
if r.status_code != 200:
    st.error(f"API error: {r.status_code}")
    st.code(r.text)
    st.stop()

orders = r.json().get("orders", [])
if status_filter:
    orders = [o for o in orders if o.get("status") in status_filter]

if not orders:
    st.warning("No orders returned.")
    st.stop()

df = pd.DataFrame(
    [
        {
            "ID": o.get("id") or "",
            "Order ID": o.get("order_id") or "",
            "Created": _fmt_dt(o.get("created_at")),
            "Business": o.get("biz_name") or "",
            "Email": o.get("customer_email") or "",
            "Status": o.get("status") or "",
            "Type": o.get("billing_type") or "",
            "Billing": o.get("billing") or "",
            "Cans": o.get("cans"),
            "Monthly": _fmt_money(o.get("monthly_total")),
            "Due today": _fmt_money(o.get("due_today")),
            "Start": o.get("start_date") or "",
            "Route": o.get("route_id") or "",
        }
        for o in orders
    ]
)

st.subheader(f"Orders ({len(df)})")
st.dataframe(df, use_container_width=True, hide_index=True)

m1, m2, m3 = st.columns(3)
m1.metric("Active / paid", int(df["Status"].isin(["active", "paid", "deposit_paid", "card_saved"]).sum()))
m2.metric("Past due", int((df["Status"] == "past_due").sum()))
m3.metric("Deposits", int((df["Type"] == "deposit").sum()))

st.divider()

# ----------------------------
# Order actions
# ----------------------------
left, right = st.columns(2, gap="large")

with left:
    st.subheader("Cancel order")
    target = st.selectbox("Order", options=df["ID"].tolist(),
                          format_func=lambda i: f"{df.loc[df['ID'] == i, 'Business'].iloc[0]} ({i[:8]})")
    mode = st.radio("When", options=["before_start", "after_start"], horizontal=True,
                    format_func=lambda m: "Before service starts" if m == "before_start" else "After service started")
    at_period_end = True
    if mode == "after_start":
        at_period_end = st.checkbox("Let the current period finish", value=True)
    st.caption("Deposits are forfeited; nothing is refunded automatically.")
    if st.button("Cancel order", type="primary"):
        _show_result(api_post(f"/admin/orders/{target}/cancel",
                              {"mode": mode, "cancel_at_period_end": at_period_end}))

    st.subheader("Assign route")
    route_for_order = st.text_input("Route ID for this order")
    if st.button("Assign"):
        _show_result(api_post(f"/admin/orders/{target}/route", {"route_id": route_for_order}))

with right:
    st.subheader("Schedule route start")
    route_id = st.text_input("Route ID")
    start = st.date_input("First service day", value=date.today())
    cadence = st.selectbox("Route cadence", options=["biweekly", "monthly"])
    st.caption("Credits each deposit on the route and moves the first invoice to the service day.")
    if st.button("Schedule route"):
        if not route_id.strip():
            st.error("Route ID is required.")
        else:
            _show_result(api_post("/admin/routes/schedule", {
                "route_id": route_id.strip(),
                "service_start_date": start.isoformat(),
                "cadence": cadence,
            }))
