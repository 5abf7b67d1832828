"""Promotion eligibility rules shared by every promotion listing and by code redemption.

All functions here are pure: they look only at their arguments, so the web
and mobile listings, the booking flow and ``/promotions/apply`` agree on the
outcome for the same inputs.
"""
from __future__ import annotations

import re
from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal

AUDIENCE_ALL = "All"
AUDIENCE_NEW_CLIENTS = "New Clients"
AUDIENCE_BIRTHDAY = "Birthday"
AUDIENCE_VIP = "VIP"

USED_SERVICE_STATUSES = frozenset({"completed", "upcoming", "scheduled"})

_TIER_AUDIENCE = re.compile(r"^Tier Level (\d+)$")
_TRUE_FLAGS = frozenset({"1", "true"})


def normalize_flag(value) -> bool:
    """Read a boolean stored as bool, 0/1 or '0'/'1'."""
    if isinstance(value, bool):
        return value
    if value is None:
        return False
    if isinstance(value, (int, float, Decimal)):
        return value == 1
    return str(value).strip().lower() in _TRUE_FLAGS


def _as_date(value) -> date | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value)[:10])


def _same_month(day: date, today: date) -> bool:
    return (day.year, day.month) == (today.year, today.month)


def tier_level_from_audience(audience: str | None) -> int | None:
    match = _TIER_AUDIENCE.match(audience or "")
    return int(match.group(1)) if match else None


def is_targeted(promotion) -> bool:
    """Whether the promotion is reserved for a specific group of clients."""
    audience = promotion.target_audience or AUDIENCE_ALL
    return (
        audience in (AUDIENCE_BIRTHDAY, AUDIENCE_NEW_CLIENTS, AUDIENCE_VIP)
        or tier_level_from_audience(audience) is not None
    )


def is_birthday(user, today: date) -> bool:
    birthday = _as_date(getattr(user, "birthday", None))
    if birthday is None:
        return False
    return (birthday.month, birthday.day) == (today.month, today.day)


def has_used_service(appointments, service_id=None) -> bool:
    """True when any paid appointment is completed or still on the books."""
    for appointment in appointments:
        if service_id is not None and appointment.service_id != service_id:
            continue
        if appointment.status in USED_SERVICE_STATUSES and appointment.payment_status == "Paid":
            return True
    return False


def is_redeemable(promotion, today: date) -> bool:
    if not promotion.is_active:
        return False
    expiry = _as_date(promotion.expiry_date)
    if expiry is None or today > expiry:
        return False
    return promotion.stock is None or promotion.stock > 0


def usage_exhausted(promotion, usages, today: date) -> bool:
    """Per-user redemption limit.

    Birthday vouchers reset every calendar year. Tier vouchers reset every
    calendar month, and a voucher that was delivered but never attached to
    an appointment does not count against the month.
    """
    used = [u for u in usages if u.promotion_id == promotion.promotion_id]
    audience = promotion.target_audience or AUDIENCE_ALL
    if audience == AUDIENCE_BIRTHDAY:
        return any(_as_date(u.used_at).year == today.year for u in used)
    if tier_level_from_audience(audience) is not None:
        used = [
            u for u in used
            if getattr(u, "appointment_id", None) is not None
            and _same_month(_as_date(u.used_at), today)
        ]
    limit = promotion.usage_limit or 1
    return len(used) >= limit


def ineligibility_reason(
    promotion,
    user,
    appointments,
    today: date | None = None,
    tier_level: int | None = None,
    usages=None,
    service_id=None,
    vip_min_level: int = 2,
) -> str | None:
    """Return why ``user`` cannot use ``promotion`` right now, or None."""
    today = today or date.today()

    if not promotion.is_active:
        return "inactive"
    expiry = _as_date(promotion.expiry_date)
    if expiry is None or today > expiry:
        return "expired"
    if promotion.stock is not None and promotion.stock <= 0:
        return "out_of_stock"

    audience = promotion.target_audience or AUDIENCE_ALL
    required_tier = tier_level_from_audience(audience)

    if audience == AUDIENCE_BIRTHDAY:
        if not is_birthday(user, today):
            return "not_birthday"
    elif audience == AUDIENCE_NEW_CLIENTS:
        if has_used_service(appointments):
            return "not_new_client"
        applicable = promotion.applicable_service_ids or []
        if service_id is not None and applicable and service_id not in applicable:
            return "service_not_applicable"
    elif audience == AUDIENCE_VIP:
        if tier_level is None or tier_level < vip_min_level:
            return "tier_not_eligible"
    elif required_tier is not None:
        if tier_level != required_tier:
            return "tier_not_eligible"

    if usages is not None and usage_exhausted(promotion, usages, today):
        return "already_used"

    return None


def is_eligible(promotion, user, appointments, **kwargs) -> bool:
    return ineligibility_reason(promotion, user, appointments, **kwargs) is None


def is_general(promotion, today: date | None = None) -> bool:
    """Public, untargeted and currently redeemable."""
    today = today or date.today()
    return (
        is_redeemable(promotion, today)
        and normalize_flag(promotion.is_public)
        and not is_targeted(promotion)
    )


def is_points_voucher(promotion, today: date | None = None) -> bool:
    """Private voucher that clients buy with wallet points."""
    today = today or date.today()
    return (
        is_redeemable(promotion, today)
        and not normalize_flag(promotion.is_public)
        and (promotion.points_required or 0) > 0
    )


def split_for_user(promotions, user, appointments, **kwargs):
    """Partition into (personal, general) listings for ``user``."""
    today = kwargs.get("today") or date.today()
    personal, general = [], []
    for promotion in promotions:
        if is_targeted(promotion):
            if is_eligible(promotion, user, appointments, **kwargs):
                personal.append(promotion)
        elif is_general(promotion, today):
            general.append(promotion)
    return personal, general


def calculate_discount(promotion, order_value) -> Decimal:
    order_value = Decimal(str(order_value or 0))
    if order_value <= 0:
        return Decimal("0.00")

    minimum = Decimal(str(promotion.min_order_value or 0))
    if order_value < minimum:
        return Decimal("0.00")

    value = Decimal(str(promotion.discount_value or 0))
    if promotion.discount_type == "percentage":
        discount = order_value * value / Decimal("100")
        if promotion.max_discount is not None:
            discount = min(discount, Decimal(str(promotion.max_discount)))
    else:
        discount = value

    discount = min(discount, order_value)
    return discount.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
