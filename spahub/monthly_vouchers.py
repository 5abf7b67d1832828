"""Monthly vouchers for tier members.

Once a month every client receives the newest active promotion targeted at
their tier ("Tier Level N"). Delivery is stored as a PromotionUsage row with
no appointment; the row is claimed by the first appointment the voucher is
used on, so a delivered voucher never counts against the monthly limit.
"""
from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal

from flask import current_app

from .extensions import db
from .models import CustomerProfile, Notification, Promotion, PromotionUsage, Tier, User

SENT = "sent"
SKIPPED = "skipped"
FAILED = "failed"


def month_window(day: date) -> tuple[datetime, datetime]:
    """First instant of ``day``'s month and of the month after it."""
    start = datetime(day.year, day.month, 1)
    if day.month == 12:
        return start, datetime(day.year + 1, 1, 1)
    return start, datetime(day.year, day.month + 1, 1)


def tier_voucher_template(tier_level: int, today: date) -> Promotion | None:
    return (
        Promotion.query.filter(
            Promotion.target_audience == f"Tier Level {tier_level}",
            Promotion.is_active.is_(True),
            Promotion.expiry_date >= today,
        )
        .order_by(Promotion.created_at.desc(), Promotion.promotion_id.desc())
        .first()
    )


def has_received_this_month(user_id: int, promotion_id: int, today: date) -> bool:
    start, end = month_window(today)
    return db.session.query(
        PromotionUsage.query.filter(
            PromotionUsage.user_id == user_id,
            PromotionUsage.promotion_id == promotion_id,
            PromotionUsage.used_at >= start,
            PromotionUsage.used_at < end,
        ).exists()
    ).scalar()


def _discount_text(promotion: Promotion) -> str:
    if promotion.discount_type == "percentage":
        return f"{Decimal(str(promotion.discount_value)).normalize():f}% off"
    return f"{promotion.discount_value:,.0f} VND off"


def send_monthly_voucher(user: User, tier_level: int, today: date | None = None) -> dict[str, object]:
    """Deliver this month's tier voucher to ``user``. The caller commits."""
    today = today or date.today()
    result: dict[str, object] = {"user_id": user.user_id, "tier_level": tier_level}

    promotion = tier_voucher_template(tier_level, today)
    if promotion is None:
        result.update(status=FAILED, message=f"no active voucher for Tier Level {tier_level}")
        return result
    result["code"] = promotion.code

    if has_received_this_month(user.user_id, promotion.promotion_id, today):
        result.update(status=SKIPPED, message="voucher already received this month")
        return result

    tier = Tier.query.get(tier_level)
    tier_name = tier.name if tier else f"Tier {tier_level}"

    db.session.add(PromotionUsage(
        user_id=user.user_id,
        promotion_id=promotion.promotion_id,
        appointment_id=None,
        used_at=datetime.combine(today, datetime.min.time()),
    ))
    db.session.add(Notification(
        user_id=user.user_id,
        title=f"Your monthly {tier_name} voucher",
        message=(
            f"Congratulations! Your {tier_name} voucher for this month is \"{promotion.title}\" "
            f"({_discount_text(promotion)}). Use code {promotion.code} before "
            f"{promotion.expiry_date.strftime('%d/%m/%Y')}."
        ),
        notification_type="promotion",
    ))

    result.update(status=SENT, message="voucher sent")
    return result


def send_monthly_tier_vouchers(today: date | None = None, tier_level: int | None = None) -> dict[str, object]:
    """Send this month's voucher to every client, optionally for one tier only."""
    today = today or date.today()

    query = (
        User.query.join(CustomerProfile, CustomerProfile.user_id == User.user_id)
        .filter(User.role == "client")
        .order_by(User.user_id)
    )
    if tier_level is not None:
        query = query.filter(CustomerProfile.tier_level == tier_level)

    summary: dict[str, object] = {
        "month": today.strftime("%Y-%m"),
        "total": 0,
        SENT: 0,
        SKIPPED: 0,
        FAILED: 0,
        "details": [],
    }
    for user in query.all():
        result = send_monthly_voucher(user, user.customer_profile.tier_level, today)
        summary["total"] += 1
        summary[result["status"]] += 1
        summary["details"].append(result)

    db.session.flush()
    current_app.logger.info(
        "Monthly vouchers for %s: %s sent, %s skipped, %s failed",
        summary["month"], summary[SENT], summary[SKIPPED], summary[FAILED],
    )
    return summary


def monthly_voucher_status(today: date | None = None) -> dict[str, object]:
    """How many clients have received a tier voucher in ``today``'s month."""
    today = today or date.today()
    start, end = month_window(today)

    total_clients = (
        User.query.join(CustomerProfile, CustomerProfile.user_id == User.user_id)
        .filter(User.role == "client")
        .count()
    )
    received = (
        db.session.query(PromotionUsage.user_id)
        .join(Promotion, Promotion.promotion_id == PromotionUsage.promotion_id)
        .filter(
            Promotion.target_audience.like("Tier Level %"),
            PromotionUsage.used_at >= start,
            PromotionUsage.used_at < end,
        )
        .distinct()
        .count()
    )
    return {
        "month": today.strftime("%Y-%m"),
        "total_clients": total_clients,
        "sent": received,
        "remaining": max(0, total_clients - received),
    }
