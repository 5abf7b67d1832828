"""Payment completion and the loyalty bookkeeping that follows it."""
from __future__ import annotations

import uuid
from datetime import date, datetime, timezone

from flask import current_app

from .extensions import db
from .loyalty import (award_points, calculate_total_spending, check_and_upgrade_tier,
                      get_or_create_profile, points_for_amount)
from .models import Appointment, Notification, Payment, Promotion, PromotionUsage, Tier, User
from .promotions import usage_exhausted


class PaymentError(Exception):
    """Raised when a payment cannot be processed."""


class PaymentAlreadyCompleted(PaymentError):
    pass


def new_transaction_ref() -> str:
    return f"TXN-{uuid.uuid4().hex[:12].upper()}"


def promotion_usages(user_id: int, exclude_appointment_id=None) -> list[PromotionUsage]:
    """Recorded usages for ``user_id`` plus promotions held by unpaid bookings.

    A booking made with a promotion code reserves one use until it is paid
    or cancelled. Reservations are returned as unsaved PromotionUsage rows.
    """
    usages = PromotionUsage.query.filter_by(user_id=user_id).all()
    recorded = {u.appointment_id for u in usages if u.appointment_id is not None}

    held = Appointment.query.filter(
        Appointment.user_id == user_id,
        Appointment.promotion_id.isnot(None),
        Appointment.status != "cancelled",
        Appointment.payment_status != "Paid",
    ).all()
    for appointment in held:
        if appointment.appointment_id in recorded or appointment.appointment_id == exclude_appointment_id:
            continue
        usages.append(PromotionUsage(
            user_id=user_id,
            promotion_id=appointment.promotion_id,
            appointment_id=appointment.appointment_id,
            service_id=appointment.service_id,
            used_at=appointment.created_at or datetime.now(timezone.utc),
        ))
    return usages


def record_promotion_usage(user_id: int, promotion: Promotion, appointment_id=None, service_id=None) -> PromotionUsage:
    # A delivered monthly voucher is claimed by the first appointment it is used on
    usage = None
    if appointment_id is not None:
        usage = PromotionUsage.query.filter_by(
            user_id=user_id, promotion_id=promotion.promotion_id, appointment_id=None
        ).first()

    if usage is not None:
        usage.appointment_id = appointment_id
        usage.service_id = service_id
        usage.used_at = datetime.now(timezone.utc)
    else:
        usage = PromotionUsage(
            user_id=user_id,
            promotion_id=promotion.promotion_id,
            appointment_id=appointment_id,
            service_id=service_id,
        )
        db.session.add(usage)

    promotion.usage_count = (promotion.usage_count or 0) + 1
    if promotion.stock is not None:
        promotion.stock = max(0, promotion.stock - 1)
    return usage


def _finalize_promotion(payment: Payment) -> None:
    appointment = payment.appointment
    if appointment is None or appointment.promotion_id is None:
        return

    existing = PromotionUsage.query.filter_by(
        user_id=payment.user_id,
        promotion_id=appointment.promotion_id,
        appointment_id=appointment.appointment_id,
    ).first()
    if existing is not None:
        return

    promotion = appointment.promotion
    usages = PromotionUsage.query.filter_by(user_id=payment.user_id).all()
    if usage_exhausted(promotion, usages, date.today()):
        current_app.logger.warning(
            "Promotion %s already used up by user %s; appointment %s not recorded",
            promotion.code, payment.user_id, appointment.appointment_id,
        )
        return

    record_promotion_usage(
        payment.user_id,
        promotion,
        appointment_id=appointment.appointment_id,
        service_id=appointment.service_id,
    )


def complete_payment(payment: Payment) -> dict[str, object]:
    """Mark ``payment`` completed and apply its loyalty effects.

    Spending is re-aggregated from completed payments after the status
    change is flushed, so the tier check reads the new totals. The caller
    commits or rolls back.
    """
    if payment.status == "Completed":
        raise PaymentAlreadyCompleted(f"payment {payment.payment_id} has already been completed")
    if payment.amount is None or payment.amount <= 0:
        raise PaymentError("payment has an invalid amount")
    if payment.appointment is not None and payment.appointment.payment_status == "Paid":
        raise PaymentError(f"appointment {payment.appointment_id} is already paid")

    user = User.query.get(payment.user_id)
    if user is None:
        raise PaymentError(f"user {payment.user_id} not found")

    payment.status = "Completed"
    payment.paid_at = datetime.now(timezone.utc)
    if payment.appointment is not None:
        payment.appointment.payment_status = "Paid"
    db.session.flush()

    profile = get_or_create_profile(user)
    profile.total_spending = calculate_total_spending(user.user_id)

    points = points_for_amount(payment.amount)
    if points:
        award_points(user, points, "payment", f"Payment {payment.transaction_ref}: +{points} points")

    _finalize_promotion(payment)

    upgraded = check_and_upgrade_tier(user)
    if upgraded:
        tier = Tier.query.get(profile.tier_level)
        tier_name = tier.name if tier else f"Tier {profile.tier_level}"
        db.session.add(Notification(
            user_id=user.user_id,
            title="Tier upgraded",
            message=f"Congratulations! You have reached the {tier_name} tier.",
            notification_type="tier_upgrade",
        ))

    db.session.flush()
    current_app.logger.info(
        "Payment %s completed for user %s (+%s points)", payment.transaction_ref, user.user_id, points
    )

    return {
        "points_earned": points,
        "tier_upgraded": upgraded,
        "tier_level": profile.tier_level,
        "total_spending": float(profile.total_spending),
    }
