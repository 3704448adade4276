# pricing_config.py
"""
Static pricing tables for the ProCan intake.

Everything the quote engine needs to price an order lives here. Edit this
file to change the menu; nothing is loaded at runtime.
"""
from decimal import Decimal

# ============================================================
# 1) TRASH CAN CLEANING ($ per can per month, by cadence)
# ============================================================
# max_qty None = unbounded. Tiers must cover 1..inf with no gaps.
TRASH_CAN_TIERS = {
    "biweekly": [
        {"min_qty": 1,   "max_qty": 10,   "unit_price": Decimal("25")},
        {"min_qty": 11,  "max_qty": 20,   "unit_price": Decimal("23")},
        {"min_qty": 21,  "max_qty": 50,   "unit_price": Decimal("20")},
        {"min_qty": 51,  "max_qty": 100,  "unit_price": Decimal("18")},
        {"min_qty": 101, "max_qty": None, "unit_price": Decimal("16")},
    ],
    "monthly": [
        {"min_qty": 1,   "max_qty": 10,   "unit_price": Decimal("18")},
        {"min_qty": 11,  "max_qty": 20,   "unit_price": Decimal("16")},
        {"min_qty": 21,  "max_qty": 50,   "unit_price": Decimal("14")},
        {"min_qty": 51,  "max_qty": None, "unit_price": Decimal("12")},
    ],
}

TRASH_VISITS_PER_MONTH = {"biweekly": 2, "monthly": 1}

# ============================================================
# 2) DUMPSTER PAD ($ per month, size x cadence)
# ============================================================
DUMPSTER_PAD_MONTHLY = {
    "small":  {"weekly": Decimal("150"), "biweekly": Decimal("100"), "monthly": Decimal("75")},
    "medium": {"weekly": Decimal("250"), "biweekly": Decimal("175"), "monthly": Decimal("125")},
    "large":  {"weekly": Decimal("400"), "biweekly": Decimal("275"), "monthly": Decimal("200")},
}

PAD_VISITS_PER_MONTH = {"weekly": 4, "biweekly": 2, "monthly": 1}

# ============================================================
# 3) DEEP CLEAN (one-time, $ per can)
# ============================================================
DEEP_CLEAN_PER_CAN = {
    "standard": Decimal("35"),
    "heavy": Decimal("50"),
    "extreme": Decimal("75"),
}

# ============================================================
# 4) DISCOUNTS
# ============================================================
BILLING_DISCOUNTS = {
    "monthly": Decimal("0"),
    "quarterly": Decimal("0.05"),
    "annual": Decimal("0.10"),
}

TERM_MONTHS = {"monthly": 1, "quarterly": 3, "annual": 12}

# Multi-location discount: first row whose min_locations <= count wins
# (checked from the top).
LOCATION_DISCOUNT_STEPS = [
    {"min_locations": 7, "rate": Decimal("0.10")},
    {"min_locations": 4, "rate": Decimal("0.08")},
    {"min_locations": 2, "rate": Decimal("0.05")},
]

MAX_PROMO_RATE = Decimal("0.90")

# Promo codes. Only percent codes are supported.
#   CODE: {"kind": "percent", "rate": Decimal("0.08"), "label": "..."}
DISCOUNT_CODES = {
    "EA2026": {"kind": "percent", "rate": Decimal("0.08"), "label": "Code applied (8% off)"},
}

# ============================================================
# 5) BILLING RULES
# ============================================================
DEPOSIT_AMOUNT = Decimal("25")

ANNUAL_MIN_MONTHLY = Decimal("1000")
ANNUAL_MIN_MESSAGE = "Annual prepay requires $1,000+/month contract value."

# Stripe refuses charges below 50 cents.
MIN_CHARGE_CENTS = 50

CURRENCY = "usd"
