# pricing_engine.py
"""
Quote engine for the ProCan intake.

Three layers, leaf first:

- tier lookup (`price_for_quantity`): per-can price from ordered,
  inclusive quantity tiers
- discount stack (`apply_discounts`): multi-location, then billing cadence,
  then promo code, multiplied in that order
- quote (`compute_quote`): combines both with the per-service toggles and
  the billing mode into one immutable `Quote`

The quote is recomputed from scratch on every input change. Every number
the customer sees, and every number sent to Stripe, comes off the `Quote`.
"""
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

import pricing_config as cfg


ZERO = Decimal("0")
ONE = Decimal("1")
_CENT = Decimal("0.01")


# ----------------------------
# Enums
# ----------------------------
class TrashCadence(str, Enum):
    BIWEEKLY = "biweekly"
    MONTHLY = "monthly"
    NONE = "none"


class PadSize(str, Enum):
    SMALL = "small"
    MEDIUM = "medium"
    LARGE = "large"


class PadCadence(str, Enum):
    WEEKLY = "weekly"
    BIWEEKLY = "biweekly"
    MONTHLY = "monthly"


class DeepCleanLevel(str, Enum):
    STANDARD = "standard"
    HEAVY = "heavy"
    EXTREME = "extreme"


class DeepCleanScope(str, Enum):
    ALL_CANS = "allCans"
    SOME_CANS = "someCans"


class BillingCadence(str, Enum):
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    ANNUAL = "annual"


class PaymentMethod(str, Enum):
    CARD = "card"
    CASH = "cash"


class BillingType(str, Enum):
    ONE_TIME = "one_time"
    SUBSCRIPTION = "subscription"
    DEPOSIT = "deposit"
    SETUP = "setup"


# ----------------------------
# Errors
# ----------------------------
class QuoteValidationError(ValueError):
    """Inputs describe an order that cannot be quoted."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class AnnualEligibilityError(QuoteValidationError):
    pass


class UnknownDiscountCode(ValueError):
    pass


# ----------------------------
# Coercion helpers
# ----------------------------
def coerce_quantity(value: Any) -> int:
    """
    Quantity coercion policy for raw form input.

    None, blanks, bools, non-numeric text, NaN/inf and anything negative
    become 0. Fractions are truncated toward zero.
    """
    if value is None or isinstance(value, bool):
        return 0
    try:
        if isinstance(value, Decimal):
            d = value
        elif isinstance(value, str):
            text = value.strip()
            if not text:
                return 0
            d = Decimal(text)
        else:
            d = Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError):
        return 0

    if not d.is_finite() or d <= 0:
        return 0
    return int(d)


def to_decimal(value: Any, default: Decimal = ZERO) -> Decimal:
    if value is None or isinstance(value, bool):
        return default
    if isinstance(value, Decimal):
        return value if value.is_finite() else default
    try:
        d = Decimal(str(value).strip())
    except (InvalidOperation, ValueError, TypeError):
        return default
    return d if d.is_finite() else default


def round_money(amount: Any) -> Decimal:
    return to_decimal(amount).quantize(_CENT, rounding=ROUND_HALF_UP)


def to_minor_units(amount: Any) -> int:
    """Dollars -> cents, half-up."""
    return int((to_decimal(amount) * 100).quantize(ONE, rounding=ROUND_HALF_UP))


def format_money(amount: Any) -> str:
    return f"${round_money(amount):,.2f}"


def _parse_enum(enum_cls, value: Any, default):
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(str(value).strip())
    except ValueError:
        return default


def _parse_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    return bool(value)


def parse_start_date(value: Any) -> Optional[date]:
    """YYYY-MM-DD (from <input type="date">) or a date. Returns None if unusable."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return datetime.strptime(str(value).strip()[:10], "%Y-%m-%d").date()
    except ValueError:
        return None


# A customer's calendar date can differ from the server's by one day around
# midnight. Anything further off is a bad clock and is ignored.
MAX_CLIENT_DATE_SKEW_DAYS = 1


def client_today(value: Any, server_today: Optional[date] = None) -> date:
    """
    The date the customer's browser reports, if it is plausible; otherwise the
    server's date. capture_only compares start_date against this.
    """
    server_today = server_today or date.today()
    reported = parse_start_date(value)
    if reported is None:
        return server_today
    if abs((reported - server_today).days) > MAX_CLIENT_DATE_SKEW_DAYS:
        return server_today
    return reported


# ----------------------------
# Tier lookup
# ----------------------------
@dataclass(frozen=True)
class PriceTier:
    min_qty: int
    max_qty: Optional[int]  # None = unbounded
    unit_price: Decimal

    def contains(self, qty: int) -> bool:
        if qty < self.min_qty:
            return False
        return self.max_qty is None or qty <= self.max_qty


def tiers_from_rows(rows: Sequence[Mapping[str, Any]]) -> Tuple[PriceTier, ...]:
    return tuple(
        PriceTier(
            min_qty=int(r["min_qty"]),
            max_qty=None if r.get("max_qty") is None else int(r["max_qty"]),
            unit_price=to_decimal(r["unit_price"]),
        )
        for r in rows
    )


def price_for_quantity(tiers: Sequence[PriceTier], quantity: Any) -> Decimal:
    q = coerce_quantity(quantity)
    for tier in tiers:
        if tier.contains(q):
            return tier.unit_price
    return ZERO


def _require(cond: bool, msg: str) -> None:
    if not cond:
        raise ValueError(msg)


def validate_tiers(tiers: Sequence[PriceTier]) -> None:
    """
    Raise ValueError unless the tiers partition 1..inf in order and the
    unit price never goes up as quantity grows.
    """
    _require(len(tiers) > 0, "tier table is empty")
    _require(tiers[0].min_qty == 1, "first tier must start at 1")

    for prev, cur in zip(tiers, tiers[1:]):
        _require(prev.max_qty is not None, f"unbounded tier at {prev.min_qty} is not last")
        _require(cur.min_qty == prev.max_qty + 1, f"gap or overlap between {prev.max_qty} and {cur.min_qty}")
        _require(cur.unit_price <= prev.unit_price, f"unit price rises at {cur.min_qty}")

    for t in tiers:
        _require(t.max_qty is None or t.max_qty >= t.min_qty, f"empty tier at {t.min_qty}")
    _require(tiers[-1].max_qty is None, "last tier must be unbounded")


# ----------------------------
# Pricing tables
# ----------------------------
@dataclass(frozen=True)
class PricingTables:
    trash_tiers: Mapping[str, Tuple[PriceTier, ...]]
    trash_visits_per_month: Mapping[str, int]
    pad_monthly: Mapping[str, Mapping[str, Decimal]]
    pad_visits_per_month: Mapping[str, int]
    deep_clean_per_can: Mapping[str, Decimal]
    billing_discounts: Mapping[str, Decimal]
    term_months: Mapping[str, int]
    location_steps: Sequence[Mapping[str, Any]]
    deposit_amount: Decimal = cfg.DEPOSIT_AMOUNT
    annual_min_monthly: Decimal = cfg.ANNUAL_MIN_MONTHLY

    @classmethod
    def from_config(cls) -> "PricingTables":
        return cls(
            trash_tiers={k: tiers_from_rows(v) for k, v in cfg.TRASH_CAN_TIERS.items()},
            trash_visits_per_month=dict(cfg.TRASH_VISITS_PER_MONTH),
            pad_monthly={k: dict(v) for k, v in cfg.DUMPSTER_PAD_MONTHLY.items()},
            pad_visits_per_month=dict(cfg.PAD_VISITS_PER_MONTH),
            deep_clean_per_can=dict(cfg.DEEP_CLEAN_PER_CAN),
            billing_discounts=dict(cfg.BILLING_DISCOUNTS),
            term_months=dict(cfg.TERM_MONTHS),
            location_steps=list(cfg.LOCATION_DISCOUNT_STEPS),
        )


DEFAULT_TABLES = PricingTables.from_config()


# ----------------------------
# Discount stack
# ----------------------------
def location_discount_rate(locations: Any, tables: Optional[PricingTables] = None) -> Decimal:
    t = tables or DEFAULT_TABLES
    n = max(1, coerce_quantity(locations))
    for step in t.location_steps:
        if n >= step["min_locations"]:
            return to_decimal(step["rate"])
    return ZERO


def billing_discount_rate(cadence: Any, tables: Optional[PricingTables] = None) -> Decimal:
    t = tables or DEFAULT_TABLES
    bill = _parse_enum(BillingCadence, cadence, BillingCadence.MONTHLY)
    return to_decimal(t.billing_discounts.get(bill.value))


def term_months(cadence: Any, tables: Optional[PricingTables] = None) -> int:
    t = tables or DEFAULT_TABLES
    bill = _parse_enum(BillingCadence, cadence, BillingCadence.MONTHLY)
    return int(t.term_months.get(bill.value, 1))


def clamp_promo_rate(rate: Any) -> Decimal:
    return max(ZERO, min(cfg.MAX_PROMO_RATE, to_decimal(rate)))


def apply_discounts(
    base_monthly: Any,
    location_count: Any,
    billing_cadence: Any,
    promo_rate: Any,
    *,
    tables: Optional[PricingTables] = None,
) -> Decimal:
    """
    base x (1 - location) x (1 - billing) x (1 - promo), in that order.

    No intermediate rounding; the order is part of the contract.
    """
    base = to_decimal(base_monthly)
    loc = location_discount_rate(location_count, tables)
    bill = billing_discount_rate(billing_cadence, tables)
    promo = clamp_promo_rate(promo_rate)
    return base * (ONE - loc) * (ONE - bill) * (ONE - promo)


def check_annual_eligibility(
    billing_cadence: Any, monthly_total: Decimal, tables: Optional[PricingTables] = None
) -> None:
    t = tables or DEFAULT_TABLES
    bill = _parse_enum(BillingCadence, billing_cadence, BillingCadence.MONTHLY)
    if bill is BillingCadence.ANNUAL and to_decimal(monthly_total) < t.annual_min_monthly:
        raise AnnualEligibilityError(cfg.ANNUAL_MIN_MESSAGE)


# ----------------------------
# Discount codes
# ----------------------------
@dataclass(frozen=True)
class AppliedDiscount:
    code: str = ""
    rate: Decimal = ZERO
    label: str = ""

    @property
    def active(self) -> bool:
        return bool(self.code)


NO_DISCOUNT = AppliedDiscount()


def normalize_code(raw: Any) -> str:
    return str(raw or "").strip().upper()


def apply_discount_code(
    current: AppliedDiscount, raw: Any, registry: Optional[Mapping[str, Mapping[str, Any]]] = None
) -> AppliedDiscount:
    """
    Resolve a typed promo code against the registry.

    Blank input clears the code. Unknown or unsupported codes raise
    UnknownDiscountCode; `current` is returned untouched to the caller.
    """
    reg = cfg.DISCOUNT_CODES if registry is None else registry
    code = normalize_code(raw)
    if not code:
        return NO_DISCOUNT

    entry = reg.get(code)
    if entry is None:
        raise UnknownDiscountCode("Invalid discount code.")
    if entry.get("kind") != "percent":
        raise UnknownDiscountCode("Unsupported discount type.")

    return AppliedDiscount(
        code=code,
        rate=clamp_promo_rate(entry.get("rate")),
        label=str(entry.get("label") or code),
    )


# ----------------------------
# Inputs
# ----------------------------
@dataclass(frozen=True)
class TrashService:
    cadence: TrashCadence = TrashCadence.BIWEEKLY
    can_count: int = 0


@dataclass(frozen=True)
class PadService:
    enabled: bool = False
    size: PadSize = PadSize.SMALL
    cadence: PadCadence = PadCadence.BIWEEKLY


@dataclass(frozen=True)
class DeepCleanService:
    enabled: bool = False
    level: DeepCleanLevel = DeepCleanLevel.STANDARD
    applies_to: DeepCleanScope = DeepCleanScope.ALL_CANS
    quantity: int = 0


@dataclass(frozen=True)
class BillingSelection:
    cadence: BillingCadence = BillingCadence.MONTHLY
    one_time_only: bool = False
    deposit_reservation: bool = False
    start_date: Optional[date] = None

    def normalized(self) -> "BillingSelection":
        # A deposit reserves a recurring slot; it never rides along with one-time service.
        if self.one_time_only and self.deposit_reservation:
            return BillingSelection(self.cadence, True, False, self.start_date)
        return self

    @property
    def is_deposit(self) -> bool:
        return self.deposit_reservation and not self.one_time_only

    def capture_only(self, today: date) -> bool:
        if self.one_time_only or self.is_deposit or self.start_date is None:
            return False
        return self.start_date > today


def normalize_billing(one_time_only: bool, deposit: bool) -> Tuple[bool, bool]:
    """UI helper: returns (one_time_only, deposit) with the exclusivity applied."""
    one_time_only = bool(one_time_only)
    return one_time_only, bool(deposit) and not one_time_only


@dataclass(frozen=True)
class QuoteInputs:
    trash: TrashService = field(default_factory=TrashService)
    pad: PadService = field(default_factory=PadService)
    deep_clean: DeepCleanService = field(default_factory=DeepCleanService)
    locations: int = 1
    billing: BillingSelection = field(default_factory=BillingSelection)
    discount: AppliedDiscount = NO_DISCOUNT

    @classmethod
    def from_form(cls, form: Mapping[str, Any]) -> "QuoteInputs":
        """
        Build inputs from flat intake-form values (strings or native types).

        Unknown enum values fall back to the form defaults. An unknown
        discount code raises UnknownDiscountCode.
        """
        one_time, deposit = normalize_billing(
            _parse_bool(form.get("one_time_only", False)),
            _parse_bool(form.get("deposit", False)),
        )
        return cls(
            trash=TrashService(
                cadence=_parse_enum(TrashCadence, form.get("cadence"), TrashCadence.BIWEEKLY),
                can_count=coerce_quantity(form.get("can_qty")),
            ),
            pad=PadService(
                enabled=_parse_bool(form.get("pad_addon", False)),
                size=_parse_enum(PadSize, form.get("pad_size"), PadSize.SMALL),
                cadence=_parse_enum(PadCadence, form.get("pad_cadence"), PadCadence.BIWEEKLY),
            ),
            deep_clean=DeepCleanService(
                enabled=_parse_bool(form.get("deep_clean", False)),
                level=_parse_enum(DeepCleanLevel, form.get("deep_level"), DeepCleanLevel.STANDARD),
                applies_to=_parse_enum(DeepCleanScope, form.get("deep_applies"), DeepCleanScope.ALL_CANS),
                quantity=coerce_quantity(form.get("deep_qty")),
            ),
            locations=max(1, coerce_quantity(form.get("locations", 1))),
            billing=BillingSelection(
                cadence=_parse_enum(BillingCadence, form.get("billing"), BillingCadence.MONTHLY),
                one_time_only=one_time,
                deposit_reservation=deposit,
                start_date=parse_start_date(form.get("start_date")),
            ),
            discount=apply_discount_code(NO_DISCOUNT, form.get("discount_code")),
        )


# ----------------------------
# Quote
# ----------------------------
_MONEY_FIELDS = (
    "trash_per_can",
    "trash_monthly",
    "pad_monthly",
    "base_monthly",
    "monthly_total",
    "discount_total",
    "per_visit_total",
    "deep_clean_total",
    "one_time_trash_total",
    "one_time_pad_total",
    "due_today",
    "normal_due_today",
    "deposit_amount",
)


@dataclass(frozen=True)
class Quote:
    cadence: TrashCadence
    can_count: int
    trash_per_can: Decimal
    trash_monthly: Decimal
    trash_visits_per_month: int

    pad_monthly: Decimal
    pad_visits_per_month: int

    billing: BillingCadence
    term_months: int
    locations: int
    location_discount_rate: Decimal
    billing_discount_rate: Decimal
    discount_code: str
    promo_rate: Decimal

    base_monthly: Decimal
    monthly_total: Decimal
    discount_total: Decimal
    per_visit_total: Decimal
    deep_clean_total: Decimal
    one_time_trash_total: Decimal
    one_time_pad_total: Decimal

    due_today: Decimal
    normal_due_today: Decimal

    one_time_only: bool
    is_deposit: bool
    deposit_amount: Decimal
    capture_only: bool

    @property
    def billing_type(self) -> BillingType:
        if self.one_time_only:
            return BillingType.ONE_TIME
        if self.is_deposit:
            return BillingType.DEPOSIT
        if self.capture_only:
            return BillingType.SETUP
        return BillingType.SUBSCRIPTION

    @property
    def due_today_cents(self) -> int:
        return to_minor_units(self.due_today)

    @property
    def has_trash(self) -> bool:
        return self.cadence is not TrashCadence.NONE and self.can_count > 0

    def to_dict(self) -> Dict[str, Any]:
        """JSON-safe view. Money is rounded to cents and rendered as strings."""
        out: Dict[str, Any] = {"ok": True}
        for name in self.__dataclass_fields__:
            v = getattr(self, name)
            if name in _MONEY_FIELDS:
                out[name] = str(round_money(v))
            elif isinstance(v, Enum):
                out[name] = v.value
            elif isinstance(v, Decimal):
                out[name] = str(v)
            else:
                out[name] = v
        out["billing_type"] = self.billing_type.value
        out["due_today_cents"] = self.due_today_cents
        return out


def compute_quote(
    inputs: QuoteInputs,
    *,
    today: Optional[date] = None,
    tables: Optional[PricingTables] = None,
) -> Quote:
    """
    Price one intake.

    Raises AnnualEligibilityError when annual billing is picked for a contract
    under the annual minimum. Any other empty or disabled input just prices
    at zero.
    """
    t = tables or DEFAULT_TABLES
    today = today or date.today()
    billing = inputs.billing.normalized()

    locations = max(1, coerce_quantity(inputs.locations))
    cadence = inputs.trash.cadence
    can_count = coerce_quantity(inputs.trash.can_count)
    promo_rate = clamp_promo_rate(inputs.discount.rate)

    # ---- 1) Trash cans ----
    trash_per_can = ZERO
    trash_monthly = ZERO
    trash_visits = 0
    if cadence is not TrashCadence.NONE and can_count > 0:
        trash_per_can = price_for_quantity(t.trash_tiers.get(cadence.value, ()), can_count)
        trash_monthly = trash_per_can * can_count
        trash_visits = int(t.trash_visits_per_month.get(cadence.value, 1))

    # ---- 2) Dumpster pad ----
    pad_monthly = ZERO
    pad_visits = 0
    if inputs.pad.enabled:
        pad_monthly = to_decimal(t.pad_monthly.get(inputs.pad.size.value, {}).get(inputs.pad.cadence.value))
        pad_visits = int(t.pad_visits_per_month.get(inputs.pad.cadence.value, 1))

    # ---- 3) Discount stack ----
    base_monthly = trash_monthly + pad_monthly
    loc_rate = location_discount_rate(locations, t)
    bill_rate = billing_discount_rate(billing.cadence, t)
    monthly_total = apply_discounts(base_monthly, locations, billing.cadence, promo_rate, tables=t)

    # ---- 4) Annual gate ----
    check_annual_eligibility(billing.cadence, monthly_total, t)

    # ---- 5) Deep clean (one-time, never discounted) ----
    deep_clean_total = ZERO
    if inputs.deep_clean.enabled:
        per_can = to_decimal(t.deep_clean_per_can.get(inputs.deep_clean.level.value))
        if inputs.deep_clean.applies_to is DeepCleanScope.SOME_CANS:
            qty = coerce_quantity(inputs.deep_clean.quantity)
        else:
            qty = can_count
        deep_clean_total = per_can * qty

    # ---- 6) Per-visit estimate ----
    trash_per_visit = trash_monthly / trash_visits if trash_monthly > 0 and trash_visits > 0 else ZERO
    pad_per_visit = pad_monthly / pad_visits if pad_monthly > 0 and pad_visits > 0 else ZERO
    per_visit_total = (trash_per_visit + pad_per_visit) * (ONE - promo_rate)

    # ---- 7) Due today ----
    terms = term_months(billing.cadence, t)
    one_time_trash = ZERO
    one_time_pad = ZERO
    if billing.one_time_only:
        # One-time visits are priced off the biweekly table whatever cadence was picked.
        if cadence is not TrashCadence.NONE and can_count > 0:
            one_time_trash = price_for_quantity(t.trash_tiers.get(TrashCadence.BIWEEKLY.value, ()), can_count) * can_count
        if inputs.pad.enabled:
            one_time_pad = pad_monthly

        per_visit_total = (one_time_trash + one_time_pad) * (ONE - promo_rate)
        normal_due_today = per_visit_total + deep_clean_total
    else:
        normal_due_today = monthly_total * terms + deep_clean_total
    due_today = normal_due_today

    is_deposit = billing.is_deposit
    capture_only = billing.capture_only(today)
    if is_deposit:
        due_today = t.deposit_amount
    elif capture_only:
        due_today = ZERO

    return Quote(
        cadence=cadence,
        can_count=can_count,
        trash_per_can=trash_per_can,
        trash_monthly=trash_monthly,
        trash_visits_per_month=trash_visits,
        pad_monthly=pad_monthly,
        pad_visits_per_month=pad_visits,
        billing=billing.cadence,
        term_months=terms,
        locations=locations,
        location_discount_rate=loc_rate,
        billing_discount_rate=bill_rate,
        discount_code=inputs.discount.code,
        promo_rate=promo_rate,
        base_monthly=base_monthly,
        monthly_total=monthly_total,
        discount_total=max(ZERO, base_monthly - monthly_total),
        per_visit_total=per_visit_total,
        deep_clean_total=deep_clean_total,
        one_time_trash_total=one_time_trash,
        one_time_pad_total=one_time_pad,
        due_today=due_today,
        normal_due_today=normal_due_today,
        one_time_only=billing.one_time_only,
        is_deposit=is_deposit,
        deposit_amount=t.deposit_amount if is_deposit else ZERO,
        capture_only=capture_only,
    )


def quote_summary_lines(q: Quote) -> List[str]:
    """Plain-text breakdown used by the intake UI and the order emails."""
    lines = []
    if q.has_trash:
        lines.append(f"Trash cans: {q.can_count} x {format_money(q.trash_per_can)} ({q.cadence.value})")
    lines.append(f"Dumpster pad: {format_money(q.pad_monthly)}/mo" if q.pad_monthly > 0 else "Dumpster pad: Not added")
    if q.deep_clean_total > 0:
        lines.append(f"Deep clean (one-time): {format_money(q.deep_clean_total)}")

    if q.discount_total > 0:
        parts = []
        if q.location_discount_rate > 0:
            parts.append(f"{q.location_discount_rate * 100:.0f}% multi-location")
        if q.billing_discount_rate > 0:
            parts.append(f"{q.billing_discount_rate * 100:.0f}% billing")
        if q.promo_rate > 0:
            parts.append(f"{q.promo_rate * 100:.0f}% code {q.discount_code}")
        lines.append(f"Discounts: {format_money(q.discount_total)}/mo (" + " + ".join(parts) + ")")

    if not q.one_time_only:
        lines.append(f"Monthly total: {format_money(q.monthly_total)}")

    if q.is_deposit:
        lines.append(f"Due today: {format_money(q.due_today)} deposit (normal due at launch: {format_money(q.normal_due_today)})")
    elif q.capture_only:
        lines.append(f"Due today: {format_money(0)} (card saved; {format_money(q.normal_due_today)} charged at start)")
    elif q.one_time_only:
        lines.append(f"Due today: {format_money(q.due_today)} (one visit)")
    else:
        lines.append(f"Due today: {format_money(q.due_today)} ({q.term_months} month(s) prepay)")
    return lines
