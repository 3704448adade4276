# submission.py
"""
Frozen order-intent record.

A Submission is built once, when the customer confirms, from the latest
Quote plus the contact fields. It is the only payload handed to Stripe
checkout or to the cash-order path, and it is never edited afterwards.
"""
import re
import uuid
from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pricing_engine import (
    BillingType,
    DeepCleanScope,
    PaymentMethod,
    Quote,
    QuoteInputs,
    TrashCadence,
    round_money,
)

SOURCE = "procan-intake"

_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


@dataclass(frozen=True)
class ContactInfo:
    business_name: str
    contact_name: str
    email: str
    phone: str
    address: str
    preferred_service_day: str = "unspecified"
    notes: str = ""


@dataclass(frozen=True)
class GeoPoint:
    lat: str
    lon: str
    accuracy: str = ""
    source: str = "nominatim"


def normalize_phone(phone: str) -> str:
    return re.sub(r"\D", "", phone or "")


def is_valid_email(email: str) -> bool:
    return bool(_EMAIL_RE.match((email or "").strip()))


def validate_intake(contact: ContactInfo, inputs: QuoteInputs, quote: Optional[Quote] = None) -> List[str]:
    """User-facing problems that block confirmation. Empty list = OK."""
    errs = []
    if not contact.business_name.strip():
        errs.append("Business / account name is required.")
    if not contact.contact_name.strip():
        errs.append("Primary contact name is required.")
    if not is_valid_email(contact.email):
        errs.append("A valid email is required (for contract + receipt).")
    if len(normalize_phone(contact.phone)) < 10:
        errs.append("A valid phone number is required.")
    if not contact.address.strip():
        errs.append("Service address is required.")

    cans = inputs.trash.can_count
    has_trash = inputs.trash.cadence is not TrashCadence.NONE and cans > 0
    has_pad = inputs.pad.enabled
    if not has_trash and not has_pad:
        errs.append("Select at least one service: Trash can cleaning (with # of cans) and/or Dumpster pad add-on.")
    if inputs.trash.cadence is not TrashCadence.NONE and cans <= 0 and not has_pad:
        errs.append("Enter the total number of cans (must be greater than 0).")

    if inputs.billing.start_date is None:
        errs.append("Start date is required.")
    return errs


# ----------------------------
# Snapshot pieces
# ----------------------------
@dataclass(frozen=True)
class SubmissionMeta:
    id: str
    created_at: str
    source: str = SOURCE


@dataclass(frozen=True)
class BusinessSnapshot:
    name: str
    contact_name: str
    phone: str
    email: str
    address: str
    locations: int
    preferred_service_day: str
    geo: Optional[GeoPoint] = None


@dataclass(frozen=True)
class ServicesSnapshot:
    trash_cadence: str
    trash_cans: int
    trash_tier_price_per_can_month: Decimal
    pad_enabled: bool
    pad_size: str
    pad_cadence: str
    pad_monthly_value: Decimal
    deep_clean_enabled: bool
    deep_clean_level: str
    deep_clean_applies: str
    deep_clean_qty: int
    deep_clean_total: Decimal


@dataclass(frozen=True)
class BillingSnapshot:
    option: str
    months_in_term: int
    start_date: str
    one_time_only: bool
    capture_only: bool
    deposit: bool
    payment_method: PaymentMethod


@dataclass(frozen=True)
class PricingSnapshot:
    discount_code: str
    discount_code_rate: Decimal
    base_monthly: Decimal
    monthly_total: Decimal
    per_visit_total: Decimal
    discount_total: Decimal
    location_discount_rate: Decimal
    billing_discount_rate: Decimal
    deep_clean_total: Decimal
    due_today: Decimal
    normal_due_today: Decimal
    is_deposit: bool
    deposit_amount: Decimal


@dataclass(frozen=True)
class Submission:
    meta: SubmissionMeta
    business: BusinessSnapshot
    services: ServicesSnapshot
    billing: BillingSnapshot
    pricing: PricingSnapshot
    billing_type: BillingType
    notes: str = ""

    @property
    def id(self) -> str:
        return self.meta.id

    @property
    def is_cash(self) -> bool:
        return self.billing.payment_method is PaymentMethod.CASH and self.billing.one_time_only

    def to_dict(self) -> Dict[str, Any]:
        """Wire form (camelCase, money as cent-rounded strings)."""
        b = self.business
        s = self.services
        bill = self.billing
        p = self.pricing

        business: Dict[str, Any] = {
            "name": b.name,
            "contactName": b.contact_name,
            "phone": b.phone,
            "email": b.email,
            "address": b.address,
            "locations": b.locations,
            "preferredServiceDay": b.preferred_service_day,
        }
        if b.geo is not None:
            business.update(
                geoLat=b.geo.lat, geoLng=b.geo.lon, geoSource=b.geo.source, geoAccuracy=b.geo.accuracy
            )

        return {
            "meta": {"id": self.meta.id, "createdAt": self.meta.created_at, "source": self.meta.source},
            "business": business,
            "services": {
                "trash": {
                    "cadence": s.trash_cadence,
                    "cans": s.trash_cans,
                    "tierPricePerCanMonth": str(round_money(s.trash_tier_price_per_can_month)),
                },
                "pad": {
                    "enabled": s.pad_enabled,
                    "size": s.pad_size,
                    "cadence": s.pad_cadence,
                    "monthlyValue": str(round_money(s.pad_monthly_value)),
                },
                "deepClean": {
                    "enabled": s.deep_clean_enabled,
                    "level": s.deep_clean_level,
                    "applies": s.deep_clean_applies,
                    "qty": s.deep_clean_qty,
                    "total": str(round_money(s.deep_clean_total)),
                },
            },
            "billing": {
                "option": bill.option,
                "monthsInTerm": bill.months_in_term,
                "startDate": bill.start_date,
                "oneTimeOnly": bill.one_time_only,
                "captureOnly": bill.capture_only,
                "deposit": bill.deposit,
                "paymentMethod": bill.payment_method.value,
                "billingType": self.billing_type.value,
            },
            "pricing": {
                "discountCode": p.discount_code,
                "discountCodeRate": str(p.discount_code_rate),
                "baseMonthly": str(round_money(p.base_monthly)),
                "monthlyTotal": str(round_money(p.monthly_total)),
                "perVisitTotal": str(round_money(p.per_visit_total)),
                "discountTotal": str(round_money(p.discount_total)),
                "locationDiscountRate": str(p.location_discount_rate),
                "billingDiscountRate": str(p.billing_discount_rate),
                "deepCleanTotal": str(round_money(p.deep_clean_total)),
                "dueToday": str(round_money(p.due_today)),
                "normalDueToday": str(round_money(p.normal_due_today)),
                "isDeposit": p.is_deposit,
                "depositAmount": str(round_money(p.deposit_amount)),
            },
            "notes": self.notes,
        }


def new_submission_id() -> str:
    return str(uuid.uuid4())


def build_submission(
    quote: Quote,
    inputs: QuoteInputs,
    contact: ContactInfo,
    *,
    payment_method: PaymentMethod = PaymentMethod.CARD,
    geo: Optional[GeoPoint] = None,
    now: Optional[datetime] = None,
) -> Submission:
    """
    Snapshot `quote` and the contact fields into a new Submission.

    Pricing fields are copied off the quote as-is; nothing is recomputed.
    Cash is only kept for one-time orders, recurring billing is always card.
    """
    now = now or datetime.now(timezone.utc)
    start: Optional[date] = inputs.billing.start_date

    method = payment_method if quote.one_time_only else PaymentMethod.CARD

    deep = inputs.deep_clean
    if deep.applies_to is DeepCleanScope.SOME_CANS:
        deep_qty = deep.quantity
    else:
        deep_qty = quote.can_count

    return Submission(
        meta=SubmissionMeta(id=new_submission_id(), created_at=now.isoformat(timespec="seconds")),
        business=BusinessSnapshot(
            name=contact.business_name.strip(),
            contact_name=contact.contact_name.strip(),
            phone=contact.phone.strip(),
            email=contact.email.strip(),
            address=contact.address.strip(),
            locations=quote.locations,
            preferred_service_day=contact.preferred_service_day or "unspecified",
            geo=geo,
        ),
        services=ServicesSnapshot(
            trash_cadence=quote.cadence.value,
            trash_cans=quote.can_count,
            trash_tier_price_per_can_month=quote.trash_per_can,
            pad_enabled=inputs.pad.enabled,
            pad_size=inputs.pad.size.value,
            pad_cadence=inputs.pad.cadence.value,
            pad_monthly_value=quote.pad_monthly,
            deep_clean_enabled=deep.enabled,
            deep_clean_level=deep.level.value,
            deep_clean_applies=deep.applies_to.value,
            deep_clean_qty=deep_qty,
            deep_clean_total=quote.deep_clean_total,
        ),
        billing=BillingSnapshot(
            option=quote.billing.value,
            months_in_term=quote.term_months,
            start_date=start.isoformat() if start else "",
            one_time_only=quote.one_time_only,
            capture_only=quote.capture_only,
            deposit=quote.is_deposit,
            payment_method=method,
        ),
        pricing=PricingSnapshot(
            discount_code=quote.discount_code,
            discount_code_rate=quote.promo_rate,
            base_monthly=quote.base_monthly,
            monthly_total=quote.monthly_total,
            per_visit_total=quote.per_visit_total,
            discount_total=quote.discount_total,
            location_discount_rate=quote.location_discount_rate,
            billing_discount_rate=quote.billing_discount_rate,
            deep_clean_total=quote.deep_clean_total,
            due_today=quote.due_today,
            normal_due_today=quote.normal_due_today,
            is_deposit=quote.is_deposit,
            deposit_amount=quote.deposit_amount,
        ),
        billing_type=quote.billing_type,
        notes=contact.notes.strip(),
    )
