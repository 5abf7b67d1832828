"""Loyalty routes: tiers, wallets, promotions and notifications."""
from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal, InvalidOperation

from flask import Blueprint, current_app, jsonify, request
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from .extensions import db
from .loyalty import (award_points, calculate_total_spending, check_and_upgrade_tier,
                      get_or_create_profile, get_or_create_wallet, ordered_tiers, tier_progress)
from .models import Appointment, Notification, PointsHistory, Promotion, User
from .monthly_vouchers import monthly_voucher_status, send_monthly_tier_vouchers, send_monthly_voucher
from .payments import record_promotion_usage
from .promotions import (AUDIENCE_ALL, calculate_discount, ineligibility_reason, is_general,
                         is_points_voucher, normalize_flag, split_for_user,
                         tier_level_from_audience)
from .routes import eligibility_context, get_jwt_identity, require_admin

bp_loyalty = Blueprint("loyalty", __name__)

TARGET_AUDIENCES = ["All", "New Clients", "Birthday", "VIP"]


# TIERS AND WALLET
@bp_loyalty.get("/tiers")
def list_tiers() -> tuple[dict[str, object], int]:
    try:
        return jsonify({"tiers": [t.to_dict() for t in ordered_tiers()]}), 200
    except SQLAlchemyError as exc:
        current_app.logger.exception("Failed to fetch tiers", exc_info=exc)
        return jsonify({"error": "database_error"}), 500


@bp_loyalty.get("/users/<int:user_id>/loyalty")
def get_user_loyalty(user_id: int) -> tuple[dict[str, object], int]:
    """Loyalty summary: points, tier, lifetime spending and the next tier.
    ---
    tags:
      - Loyalty
    parameters:
      - in: path
        name: user_id
        required: true
        schema:
          type: integer
    responses:
      200:
        description: Success
      404:
        description: User not found
      500:
        description: Database error
    """
    try:
        user = User.query.get(user_id)
        if not user:
            return jsonify({"error": "user_not_found"}), 404

        profile = get_or_create_profile(user)
        wallet = get_or_create_wallet(user)
        db.session.commit()

        payload = {
            "user_id": user_id,
            "points": wallet.points,
            "tier_level": profile.tier_level,
            "total_spending": float(profile.total_spending),
            "last_tier_upgrade_date": (
                profile.last_tier_upgrade_date.isoformat() if profile.last_tier_upgrade_date else None
            ),
        }
        payload.update(tier_progress(profile, wallet, ordered_tiers()))
        return jsonify(payload), 200

    except SQLAlchemyError as exc:
        db.session.rollback()
        current_app.logger.exception("Failed to fetch loyalty summary", exc_info=exc)
        return jsonify({"error": "database_error"}), 500


@bp_loyalty.post("/users/<int:user_id>/loyalty/evaluate")
def evaluate_user_tier(user_id: int) -> tuple[dict[str, object], int]:
    """Re-aggregate spending and run the tier evaluator (admin only)."""
    denied = require_admin()
    if denied:
        return denied

    try:
        user = User.query.get(user_id)
        if not user:
            return jsonify({"error": "user_not_found"}), 404

        profile = get_or_create_profile(user)
        profile.total_spending = calculate_total_spending(user.user_id)
        db.session.flush()

        upgraded = check_and_upgrade_tier(user)
        db.session.commit()

        return jsonify({"upgraded": upgraded, "profile": profile.to_dict()}), 200
    except SQLAlchemyError as exc:
        db.session.rollback()
        current_app.logger.exception("Failed to evaluate tier", exc_info=exc)
        return jsonify({"error": "database_error"}), 500


@bp_loyalty.get("/users/<int:user_id>/points-history")
def get_points_history(user_id: int) -> tuple[dict[str, object], int]:
    try:
        entries = (
            PointsHistory.query.filter_by(user_id=user_id)
            .order_by(PointsHistory.created_at.desc(), PointsHistory.entry_id.desc())
            .all()
        )
        return jsonify({"history": [e.to_dict() for e in entries]}), 200
    except SQLAlchemyError as exc:
        current_app.logger.exception("Failed to fetch points history", exc_info=exc)
        return jsonify({"error": "database_error"}), 500


# PROMOTIONS
def _parse_promotion_payload(payload: dict, partial: bool = False) -> tuple[dict[str, object], str | None]:
    """Validate and convert a promotion payload into column values."""
    values: dict[str, object] = {}

    required = ["title", "code", "expiry_date", "discount_value"]
    if not partial:
        missing = [field for field in required if payload.get(field) in (None, "")]
        if missing:
            return {}, f"missing required fields: {', '.join(missing)}"

    for field in ("title", "description", "code"):
        if field in payload:
            values[field] = (payload.get(field) or "").strip() or None

    if "discount_type" in payload:
        if payload["discount_type"] not in ("percentage", "fixed"):
            return {}, "discount_type must be 'percentage' or 'fixed'"
        values["discount_type"] = payload["discount_type"]

    if "target_audience" in payload:
        audience = payload.get("target_audience") or AUDIENCE_ALL
        if audience not in TARGET_AUDIENCES and tier_level_from_audience(audience) is None:
            return {}, f"target_audience must be one of {', '.join(TARGET_AUDIENCES)} or 'Tier Level N'"
        values["target_audience"] = audience

    if "expiry_date" in payload:
        try:
            values["expiry_date"] = date.fromisoformat(str(payload["expiry_date"])[:10])
        except ValueError:
            return {}, "expiry_date must be YYYY-MM-DD"

    try:
        for field in ("discount_value", "max_discount", "min_order_value"):
            if field in payload:
                raw = payload.get(field)
                values[field] = Decimal(str(raw)) if raw is not None else None
        for field in ("stock", "usage_limit", "points_required"):
            if field in payload:
                raw = payload.get(field)
                values[field] = int(raw) if raw is not None else None
    except (InvalidOperation, ValueError, TypeError):
        return {}, "numeric fields must be numbers"

    if values.get("min_order_value") is None and "min_order_value" in values:
        values["min_order_value"] = Decimal("0")
    if values.get("points_required") is None and "points_required" in values:
        values["points_required"] = 0

    if "is_active" in payload:
        values["is_active"] = bool(payload["is_active"])
    if "is_public" in payload:
        values["is_public"] = "1" if normalize_flag(payload["is_public"]) else "0"
    if "applicable_service_ids" in payload:
        values["applicable_service_ids"] = list(payload.get("applicable_service_ids") or [])

    return values, None


@bp_loyalty.get("/promotions")
def list_promotions() -> tuple[dict[str, object], int]:
    """Public, untargeted promotions that can be redeemed today."""
    try:
        today = date.today()
        promotions = Promotion.query.filter(Promotion.is_active.is_(True)).all()
        return jsonify({
            "promotions": [p.to_dict() for p in promotions if is_general(p, today)],
            "redeemable_with_points": [p.to_dict() for p in promotions if is_points_voucher(p, today)],
        }), 200
    except SQLAlchemyError as exc:
        current_app.logger.exception("Failed to fetch promotions", exc_info=exc)
        return jsonify({"error": "database_error"}), 500


@bp_loyalty.get("/users/<int:user_id>/promotions")
def list_user_promotions(user_id: int) -> tuple[dict[str, object], int]:
    """Promotions for a client, split into personal vouchers and general offers.
    ---
    tags:
      - Promotions
    parameters:
      - name: user_id
        in: path
        type: integer
        required: true
      - name: service_id
        in: query
        type: integer
        description: Restrict New Clients vouchers to this service
    responses:
      200:
        description: personal and general promotion lists
      400:
        description: Invalid parameters
      404:
        description: User not found
      500:
        description: Database error
    """
    try:
        service_id = request.args.get("service_id", type=int)

        user = User.query.get(user_id)
        if not user:
            return jsonify({"error": "user_not_found"}), 404

        appointments = Appointment.query.filter_by(user_id=user_id).all()
        promotions = Promotion.query.filter(Promotion.is_active.is_(True)).all()

        personal, general = split_for_user(
            promotions,
            user,
            appointments,
            today=date.today(),
            service_id=service_id,
            **eligibility_context(user),
        )
        db.session.commit()

        return jsonify({
            "personal": [p.to_dict() for p in personal],
            "general": [p.to_dict() for p in general],
        }), 200
    except SQLAlchemyError as exc:
        db.session.rollback()
        current_app.logger.exception("Failed to fetch user promotions", exc_info=exc)
        return jsonify({"error": "database_error"}), 500


@bp_loyalty.get("/promotions/<int:promotion_id>")
def get_promotion(promotion_id: int) -> tuple[dict[str, object], int]:
    promotion = Promotion.query.get(promotion_id)
    if not promotion:
        return jsonify({"error": "not_found", "message": "Promotion not found"}), 404
    return jsonify({"promotion": promotion.to_dict()}), 200


@bp_loyalty.post("/promotions")
def create_promotion() -> tuple[dict[str, object], int]:
    """Create a promotion (admin only)."""
    denied = require_admin()
    if denied:
        return denied

    values, error = _parse_promotion_payload(request.get_json(silent=True) or {})
    if error:
        return jsonify({"error": "invalid_payload", "message": error}), 400

    try:
        promotion = Promotion(**values)
        db.session.add(promotion)
        db.session.commit()
        return jsonify({"promotion": promotion.to_dict()}), 201
    except IntegrityError:
        db.session.rollback()
        return jsonify({"error": "conflict", "message": "promotion code is already in use"}), 409
    except SQLAlchemyError as exc:
        db.session.rollback()
        current_app.logger.exception("Failed to create promotion", exc_info=exc)
        return jsonify({"error": "database_error"}), 500


@bp_loyalty.put("/promotions/<int:promotion_id>")
def update_promotion(promotion_id: int) -> tuple[dict[str, object], int]:
    denied = require_admin()
    if denied:
        return denied

    values, error = _parse_promotion_payload(request.get_json(silent=True) or {}, partial=True)
    if error:
        return jsonify({"error": "invalid_payload", "message": error}), 400

    try:
        promotion = Promotion.query.get(promotion_id)
        if not promotion:
            return jsonify({"error": "not_found", "message": "Promotion not found"}), 404

        for field, value in values.items():
            setattr(promotion, field, value)
        db.session.commit()
        return jsonify({"promotion": promotion.to_dict()}), 200
    except IntegrityError:
        db.session.rollback()
        return jsonify({"error": "conflict", "message": "promotion code is already in use"}), 409
    except SQLAlchemyError as exc:
        db.session.rollback()
        current_app.logger.exception("Failed to update promotion", exc_info=exc)
        return jsonify({"error": "database_error"}), 500


@bp_loyalty.delete("/promotions/<int:promotion_id>")
def delete_promotion(promotion_id: int):
    denied = require_admin()
    if denied:
        return denied

    try:
        promotion = Promotion.query.get(promotion_id)
        if not promotion:
            return jsonify({"error": "not_found", "message": "Promotion not found"}), 404

        # Keep the row for usage history; it simply stops being redeemable
        promotion.is_active = False
        db.session.commit()
        return "", 204
    except SQLAlchemyError as exc:
        db.session.rollback()
        current_app.logger.exception("Failed to delete promotion", exc_info=exc)
        return jsonify({"error": "database_error"}), 500


@bp_loyalty.post("/promotions/apply/<code>")
def apply_promotion(code: str) -> tuple[dict[str, object], int]:
    """Check a promotion code for a client and compute the discount.
    ---
    tags:
      - Promotions
    parameters:
      - name: code
        in: path
        type: string
        required: true
      - name: body
        in: body
        required: true
        schema:
          type: object
          properties:
            user_id:
              type: integer
              description: Defaults to the authenticated client
            order_value:
              type: number
            service_id:
              type: integer
            appointment_id:
              type: integer
              description: When present the promotion is attached to this unpaid appointment and its usage recorded
    responses:
      200:
        description: Promotion applies, discount returned
      400:
        description: Promotion cannot be used
      401:
        description: Authentication required
      403:
        description: User or appointment belongs to someone else
      404:
        description: Unknown code or user
      409:
        description: Appointment already paid or cancelled
      500:
        description: Database error
    """
    payload = request.get_json(silent=True) or {}
    identity = get_jwt_identity()
    if not identity:
        return jsonify({"error": "unauthorized", "message": "Authentication required"}), 401

    try:
        user_id = int(payload.get("user_id") or identity)
        service_id = int(payload["service_id"]) if payload.get("service_id") is not None else None
        appointment_id = int(payload["appointment_id"]) if payload.get("appointment_id") else None
    except (ValueError, TypeError):
        return jsonify({"error": "invalid_payload", "message": "user_id, service_id and appointment_id must be integers"}), 400
    if user_id != int(identity):
        return jsonify({"error": "forbidden", "message": "You can only apply promotions for yourself"}), 403
    try:
        order_value = Decimal(str(payload.get("order_value") or 0))
    except InvalidOperation:
        return jsonify({"error": "invalid_payload", "message": "order_value must be a number"}), 400

    try:
        promotion = Promotion.query.filter_by(code=code).first()
        if not promotion:
            return jsonify({"error": "not_found", "message": "Promotion code is not valid"}), 404

        user = User.query.get(user_id)
        if not user:
            return jsonify({"error": "user_not_found"}), 404

        appointment = None
        if appointment_id:
            appointment = Appointment.query.get(appointment_id)
            if not appointment:
                return jsonify({"error": "not_found", "message": "Appointment not found"}), 404
            if appointment.user_id != user.user_id:
                return jsonify({"error": "forbidden", "message": "Appointment belongs to another client"}), 403
            if appointment.payment_status == "Paid":
                return jsonify({"error": "already_paid", "message": "Appointment is already paid"}), 409
            if appointment.status == "cancelled":
                return jsonify({"error": "invalid_status", "message": "Appointment is cancelled"}), 409
            if service_id is None:
                service_id = appointment.service_id

        history = Appointment.query.filter_by(user_id=user.user_id).all()
        reason = ineligibility_reason(
            promotion, user, history, service_id=service_id,
            **eligibility_context(user, exclude_appointment_id=appointment_id)
        )
        if reason:
            db.session.rollback()
            return jsonify({"error": "promotion_not_applicable", "message": reason}), 400

        if order_value < Decimal(str(promotion.min_order_value or 0)):
            db.session.rollback()
            return jsonify({"error": "promotion_not_applicable", "message": "below_min_order_value"}), 400

        discount = calculate_discount(promotion, order_value)

        recorded = False
        if appointment is not None:
            appointment.promotion_id = promotion.promotion_id
            record_promotion_usage(user.user_id, promotion, appointment_id=appointment_id, service_id=service_id)
            recorded = True
        db.session.commit()

        return jsonify({
            "success": True,
            "promotion": promotion.to_dict(),
            "discount": float(discount),
            "final_amount": float(max(Decimal("0"), order_value - discount)),
            "recorded": recorded,
        }), 200
    except SQLAlchemyError as exc:
        db.session.rollback()
        current_app.logger.exception("Failed to apply promotion", exc_info=exc)
        return jsonify({"error": "database_error"}), 500


@bp_loyalty.post("/promotions/<int:promotion_id>/redeem")
def redeem_promotion_with_points(promotion_id: int) -> tuple[dict[str, object], int]:
    """Buy a private voucher with wallet points; the authenticated client receives its code."""
    user_id = get_jwt_identity()
    if not user_id:
        return jsonify({"error": "unauthorized", "message": "Authentication required"}), 401

    try:
        user = User.query.get(user_id)
        if not user:
            return jsonify({"error": "user_not_found"}), 404

        promotion = Promotion.query.get(promotion_id)
        if not promotion or not is_points_voucher(promotion):
            return jsonify({"error": "not_found", "message": "Voucher is not available for points"}), 404

        wallet = get_or_create_wallet(user)
        if wallet.points < promotion.points_required:
            db.session.rollback()
            return jsonify({
                "error": "insufficient_points",
                "message": f"{promotion.points_required} points required, {wallet.points} available",
            }), 400

        award_points(user, -promotion.points_required, "redemption", f"Redeemed voucher {promotion.code}")
        if promotion.stock is not None:
            promotion.stock = max(0, promotion.stock - 1)
        db.session.add(Notification(
            user_id=user.user_id,
            title="Voucher redeemed",
            message=f"Your voucher code is {promotion.code}.",
            notification_type="promotion",
        ))
        db.session.commit()

        return jsonify({"code": promotion.code, "wallet": wallet.to_dict()}), 200
    except SQLAlchemyError as exc:
        db.session.rollback()
        current_app.logger.exception("Failed to redeem voucher", exc_info=exc)
        return jsonify({"error": "database_error"}), 500


# MONTHLY TIER VOUCHERS
def _parse_month(raw) -> date | None:
    """Turn 'YYYY-MM' into the first day of that month; None means this month."""
    if not raw:
        return None
    return datetime.strptime(str(raw), "%Y-%m").date()


@bp_loyalty.post("/promotions/monthly-vouchers/send")
def send_monthly_vouchers() -> tuple[dict[str, object], int]:
    """Send this month's tier voucher to every client (admin only).
    ---
    tags:
      - Promotions
    security:
      - Bearer: []
    parameters:
      - name: body
        in: body
        required: false
        schema:
          type: object
          properties:
            month:
              type: string
              description: YYYY-MM, defaults to the current month
            tier_level:
              type: integer
    responses:
      200:
        description: Delivery summary with per-client details
      400:
        description: Invalid month or tier level
      401:
        description: Authentication required
      403:
        description: Admin access required
      500:
        description: Database error
    """
    denied = require_admin()
    if denied:
        return denied

    payload = request.get_json(silent=True) or {}
    try:
        month = _parse_month(payload.get("month"))
        tier_level = int(payload["tier_level"]) if payload.get("tier_level") is not None else None
    except (ValueError, TypeError):
        return jsonify({"error": "invalid_format", "message": "month must be YYYY-MM and tier_level an integer"}), 400

    try:
        summary = send_monthly_tier_vouchers(today=month, tier_level=tier_level)
        db.session.commit()
        return jsonify(summary), 200
    except SQLAlchemyError as exc:
        db.session.rollback()
        current_app.logger.exception("Failed to send monthly vouchers", exc_info=exc)
        return jsonify({"error": "database_error"}), 500


@bp_loyalty.post("/users/<int:user_id>/monthly-voucher")
def send_user_monthly_voucher(user_id: int) -> tuple[dict[str, object], int]:
    """Send this month's tier voucher to one client (admin only)."""
    denied = require_admin()
    if denied:
        return denied

    payload = request.get_json(silent=True) or {}
    try:
        month = _parse_month(payload.get("month"))
    except ValueError:
        return jsonify({"error": "invalid_format", "message": "month must be YYYY-MM"}), 400

    try:
        user = User.query.get(user_id)
        if not user:
            return jsonify({"error": "user_not_found"}), 404

        profile = get_or_create_profile(user)
        result = send_monthly_voucher(user, profile.tier_level, month)
        db.session.commit()
        return jsonify(result), 200
    except SQLAlchemyError as exc:
        db.session.rollback()
        current_app.logger.exception("Failed to send monthly voucher", exc_info=exc)
        return jsonify({"error": "database_error"}), 500


@bp_loyalty.get("/promotions/monthly-vouchers/status")
def get_monthly_voucher_status() -> tuple[dict[str, object], int]:
    denied = require_admin()
    if denied:
        return denied

    try:
        month = _parse_month(request.args.get("month"))
    except ValueError:
        return jsonify({"error": "invalid_format", "message": "month must be YYYY-MM"}), 400

    try:
        return jsonify(monthly_voucher_status(month)), 200
    except SQLAlchemyError as exc:
        current_app.logger.exception("Failed to fetch monthly voucher status", exc_info=exc)
        return jsonify({"error": "database_error"}), 500


# NOTIFICATIONS
@bp_loyalty.get("/users/<int:user_id>/notifications")
def get_notifications(user_id: int) -> tuple[dict[str, object], int]:
    """Get notifications for a user with pagination."""
    try:
        page = max(1, int(request.args.get("page", 1)))
        limit = min(50, max(1, int(request.args.get("limit", 20))))
        unread_only = request.args.get("unread_only", "false").lower() == "true"

        query = Notification.query.filter(Notification.user_id == user_id)
        if unread_only:
            query = query.filter(Notification.is_read.is_(False))

        total = query.count()
        notifications = (
            query.order_by(Notification.created_at.desc(), Notification.notification_id.desc())
            .limit(limit)
            .offset((page - 1) * limit)
            .all()
        )

        return jsonify({
            "notifications": [n.to_dict() for n in notifications],
            "pagination": {
                "page": page,
                "limit": limit,
                "total": total,
                "pages": (total + limit - 1) // limit,
            },
        }), 200
    except (ValueError, TypeError) as exc:
        current_app.logger.warning(f"Invalid pagination parameters: {exc}")
        return jsonify({"error": "invalid_parameters"}), 400
    except SQLAlchemyError as exc:
        current_app.logger.exception("Failed to fetch notifications", exc_info=exc)
        return jsonify({"error": "database_error"}), 500


@bp_loyalty.put("/notifications/<int:notification_id>/read")
def mark_notification_read(notification_id: int) -> tuple[dict[str, object], int]:
    try:
        notification = Notification.query.get(notification_id)
        if not notification:
            return jsonify({"error": "not_found"}), 404

        notification.is_read = True
        db.session.commit()
        return jsonify({"notification": notification.to_dict()}), 200
    except SQLAlchemyError as exc:
        db.session.rollback()
        current_app.logger.exception("Failed to mark notification read", exc_info=exc)
        return jsonify({"error": "database_error"}), 500


@bp_loyalty.put("/users/<int:user_id>/notifications/read-all")
def mark_all_notifications_read(user_id: int) -> tuple[dict[str, object], int]:
    try:
        updated = (
            Notification.query.filter(Notification.user_id == user_id, Notification.is_read.is_(False))
            .update({"is_read": True}, synchronize_session="fetch")
        )
        db.session.commit()
        return jsonify({"updated": updated}), 200
    except SQLAlchemyError as exc:
        db.session.rollback()
        current_app.logger.exception("Failed to mark notifications read", exc_info=exc)
        return jsonify({"error": "database_error"}), 500
