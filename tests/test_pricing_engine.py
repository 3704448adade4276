from dataclasses import replace
from datetime import date, timedelta
from decimal import Decimal

import pytest

import pricing_engine as pe
from pricing_engine import (
    AnnualEligibilityError,
    BillingCadence,
    BillingType,
    PriceTier,
    UnknownDiscountCode,
    apply_discount_code,
    apply_discounts,
    coerce_quantity,
    compute_quote,
    price_for_quantity,
    validate_tiers,
)

from conftest import TODAY, make_inputs


# ----------------------------
# Tier lookup
# ----------------------------
@pytest.mark.parametrize("cadence", ["biweekly", "monthly"])
def test_configured_tiers_are_valid(cadence):
    validate_tiers(pe.DEFAULT_TABLES.trash_tiers[cadence])


@pytest.mark.parametrize("cadence", ["biweekly", "monthly"])
def test_unit_price_never_rises_with_quantity(cadence):
    tiers = pe.DEFAULT_TABLES.trash_tiers[cadence]
    prices = [price_for_quantity(tiers, q) for q in range(1, 250)]
    assert all(a >= b for a, b in zip(prices, prices[1:]))


@pytest.mark.parametrize(
    "qty,expected",
    [(1, "25"), (10, "25"), (11, "23"), (20, "23"), (21, "20"), (50, "20"), (51, "18"), (100, "18"), (101, "16"), (5000, "16")],
)
def test_biweekly_tier_boundaries(qty, expected):
    assert price_for_quantity(pe.DEFAULT_TABLES.trash_tiers["biweekly"], qty) == Decimal(expected)


@pytest.mark.parametrize("raw", [None, "", "  ", "abc", -3, "-1", float("nan"), float("inf"), True, 0])
def test_bad_quantities_coerce_to_zero(raw):
    assert coerce_quantity(raw) == 0
    assert price_for_quantity(pe.DEFAULT_TABLES.trash_tiers["biweekly"], raw) == Decimal("0")


def test_fractional_quantity_truncates():
    assert coerce_quantity("12.9") == 12
    assert coerce_quantity(3.99) == 3


def test_validate_tiers_rejects_gap_and_price_increase():
    with pytest.raises(ValueError, match="gap"):
        validate_tiers((PriceTier(1, 10, Decimal("25")), PriceTier(12, None, Decimal("20"))))
    with pytest.raises(ValueError, match="rises"):
        validate_tiers((PriceTier(1, 10, Decimal("20")), PriceTier(11, None, Decimal("25"))))
    with pytest.raises(ValueError, match="unbounded"):
        validate_tiers((PriceTier(1, 10, Decimal("20")),))


# ----------------------------
# Discount stack
# ----------------------------
def test_discounts_multiply_location_then_billing_then_promo():
    got = apply_discounts(100, 4, "annual", Decimal("0.08"))
    assert got == Decimal("100") * Decimal("0.92") * Decimal("0.90") * Decimal("0.92")


@pytest.mark.parametrize("locations,rate", [(1, "0"), (2, "0.05"), (3, "0.05"), (4, "0.08"), (6, "0.08"), (7, "0.10"), (40, "0.10")])
def test_location_discount_steps(locations, rate):
    assert pe.location_discount_rate(locations) == Decimal(rate)


def test_promo_rate_is_clamped():
    assert pe.clamp_promo_rate("1.5") == Decimal("0.90")
    assert pe.clamp_promo_rate(-1) == Decimal("0")
    assert apply_discounts(100, 1, "monthly", 5) == Decimal("10.00")


def test_discount_code_lookup_normalizes_case_and_whitespace():
    applied = apply_discount_code(pe.NO_DISCOUNT, "  ea2026 ")
    assert applied.code == "EA2026"
    assert applied.rate == Decimal("0.08")
    assert apply_discount_code(applied, "   ") is pe.NO_DISCOUNT


def test_unknown_discount_code_raises():
    with pytest.raises(UnknownDiscountCode, match="Invalid discount code."):
        apply_discount_code(pe.NO_DISCOUNT, "FREESTUFF")
    with pytest.raises(UnknownDiscountCode, match="Unsupported"):
        apply_discount_code(pe.NO_DISCOUNT, "FLAT5", registry={"FLAT5": {"kind": "fixed", "amount": 5}})


# ----------------------------
# Annual gate
# ----------------------------
def _single_tier_tables(unit_price: str) -> pe.PricingTables:
    tier = (PriceTier(1, None, Decimal(unit_price)),)
    return replace(pe.DEFAULT_TABLES, trash_tiers={"biweekly": tier, "monthly": tier})


def test_annual_gate_rejects_999_99():
    # 1111.10 x 0.90 annual discount = 999.99
    inputs = make_inputs(can_qty=1, billing="annual")
    with pytest.raises(AnnualEligibilityError) as exc:
        compute_quote(inputs, today=TODAY, tables=_single_tier_tables("1111.10"))
    assert exc.value.message == "Annual prepay requires $1,000+/month contract value."


def test_annual_gate_accepts_exactly_1000():
    pe.check_annual_eligibility(BillingCadence.ANNUAL, Decimal("1000.00"))
    with pytest.raises(AnnualEligibilityError):
        pe.check_annual_eligibility(BillingCadence.ANNUAL, Decimal("999.99"))

    q = compute_quote(make_inputs(can_qty=1, billing="annual"), today=TODAY, tables=_single_tier_tables("1111.12"))
    assert q.monthly_total >= Decimal("1000")
    assert q.term_months == 12


def test_annual_gate_only_applies_to_annual():
    q = compute_quote(make_inputs(can_qty=1, billing="quarterly"), today=TODAY)
    assert q.term_months == 3


# ----------------------------
# Billing modes
# ----------------------------
def test_one_time_clears_deposit():
    assert pe.normalize_billing(True, True) == (True, False)
    q = compute_quote(make_inputs(one_time_only=True, deposit=True), today=TODAY)
    assert q.one_time_only is True
    assert q.is_deposit is False
    assert q.billing_type is BillingType.ONE_TIME


def test_deposit_overrides_due_today_but_keeps_normal_due():
    # 10 cans x 25 = 250, 2 locations -> 237.50/mo, plus 4 heavy deep cleans (200)
    inputs = make_inputs(
        can_qty=10, locations=2, deposit=True,
        deep_clean=True, deep_level="heavy", deep_applies="someCans", deep_qty=4,
        start_date=(TODAY + timedelta(days=30)).isoformat(),
    )
    q = compute_quote(inputs, today=TODAY)
    assert q.normal_due_today == Decimal("437.50")
    assert q.due_today == Decimal("25")
    assert q.capture_only is False
    assert q.billing_type is BillingType.DEPOSIT


def test_future_start_saves_card_without_charging():
    tomorrow = compute_quote(make_inputs(start_date=(TODAY + timedelta(days=1)).isoformat()), today=TODAY)
    assert tomorrow.capture_only is True
    assert tomorrow.due_today == Decimal("0")
    assert tomorrow.normal_due_today == Decimal("125")
    assert tomorrow.billing_type is BillingType.SETUP

    same_day = compute_quote(make_inputs(start_date=TODAY.isoformat()), today=TODAY)
    assert same_day.capture_only is False
    assert same_day.due_today == same_day.normal_due_today


def test_one_time_uses_biweekly_table_whatever_the_cadence():
    q = compute_quote(make_inputs(cadence="monthly", can_qty=15, one_time_only=True), today=TODAY)
    assert q.one_time_trash_total == Decimal("345")
    assert q.due_today == Decimal("345")
    assert q.per_visit_total == Decimal("345")


def test_one_time_pad_and_promo():
    inputs = make_inputs(
        can_qty=0, cadence="none", one_time_only=True,
        pad_addon=True, pad_size="medium", pad_cadence="biweekly", discount_code="EA2026",
    )
    q = compute_quote(inputs, today=TODAY)
    assert q.one_time_pad_total == Decimal("175")
    assert q.due_today == Decimal("175") * Decimal("0.92")


def test_basic_biweekly_scenario():
    q = compute_quote(make_inputs(can_qty=5), today=TODAY)
    assert q.trash_per_can == Decimal("25")
    assert q.trash_monthly == Decimal("125")
    assert q.monthly_total == Decimal("125")
    assert q.due_today == Decimal("125")
    assert q.normal_due_today == Decimal("125")
    assert q.per_visit_total == Decimal("62.5")
    assert q.billing_type is BillingType.SUBSCRIPTION


def test_quarterly_prepay_with_deep_clean():
    inputs = make_inputs(can_qty=20, billing="quarterly", deep_clean=True, deep_level="standard")
    q = compute_quote(inputs, today=TODAY)
    # 20 x 23 = 460, less 5% = 437 per month, x3 + 20 x 35
    assert q.monthly_total == Decimal("437.00")
    assert q.deep_clean_total == Decimal("700")
    assert q.due_today == Decimal("1311.00") + Decimal("700")


def test_empty_order_prices_at_zero():
    q = compute_quote(make_inputs(cadence="none", can_qty=0), today=TODAY)
    assert q.monthly_total == Decimal("0")
    assert q.due_today == Decimal("0")
    assert q.has_trash is False


def test_compute_quote_is_repeatable():
    inputs = make_inputs(can_qty=37, locations=3, billing="quarterly", discount_code="EA2026", pad_addon=True)
    first = compute_quote(inputs, today=TODAY)
    second = compute_quote(inputs, today=TODAY)
    assert first == second
    assert first.to_dict() == second.to_dict()


def test_quote_to_dict_renders_money_as_cents():
    d = compute_quote(make_inputs(can_qty=7, discount_code="EA2026"), today=TODAY).to_dict()
    assert d["ok"] is True
    assert d["monthly_total"] == "161.00"
    assert d["due_today_cents"] == 16100
    assert d["billing_type"] == "subscription"
    assert d["cadence"] == "biweekly"


def test_summary_lines_mention_deposit():
    q = compute_quote(make_inputs(deposit=True), today=TODAY)
    lines = pe.quote_summary_lines(q)
    assert any("$25.00 deposit" in line for line in lines)


def test_format_money_and_minor_units():
    assert pe.format_money(Decimal("1234.5")) == "$1,234.50"
    assert pe.to_minor_units(Decimal("0.125")) == 13
    assert pe.parse_start_date("2026-03-02T10:00") == date(2026, 3, 2)
    assert pe.parse_start_date("soon") is None


@pytest.mark.parametrize("form", [{}, {"pad_cadence": "fortnightly"}])
def test_pad_cadence_defaults_to_biweekly(form):
    inputs = make_inputs(cadence="none", pad_addon=True, pad_size="small", **form)
    assert inputs.pad.cadence == pe.PadCadence.BIWEEKLY
    q = compute_quote(inputs, today=TODAY)
    assert q.pad_monthly == Decimal("100")
    assert q.pad_visits_per_month == 2
    assert pe.PadService().cadence == pe.PadCadence.BIWEEKLY


def test_client_today_accepts_a_day_of_skew_only():
    assert pe.client_today("2026-03-01", server_today=TODAY) == date(2026, 3, 1)
    assert pe.client_today("2026-03-03", server_today=TODAY) == date(2026, 3, 3)
    assert pe.client_today("2026-02-20", server_today=TODAY) == TODAY
    assert pe.client_today(None, server_today=TODAY) == TODAY
    assert pe.client_today("yesterday", server_today=TODAY) == TODAY


def test_customer_date_decides_capture_only():
    inputs = make_inputs(start_date="2026-03-02")
    assert compute_quote(inputs, today=pe.client_today("2026-03-01", server_today=TODAY)).capture_only is True
    assert compute_quote(inputs, today=pe.client_today("2026-02-20", server_today=TODAY)).capture_only is False
