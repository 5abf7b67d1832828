"""HTTP routes for the SpaHub backend: auth, appointments and payments."""
from __future__ import annotations

from datetime import date, datetime, timezone
from decimal import Decimal

import stripe
from flask import Blueprint, current_app, jsonify, request
from itsdangerous import BadSignature, URLSafeTimedSerializer
from sqlalchemy import text
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from werkzeug.security import check_password_hash, generate_password_hash

from .extensions import db
from .loyalty import get_or_create_profile, get_or_create_wallet
from .models import Appointment, AuthAccount, Notification, Payment, Promotion, Service, User
from .payments import (PaymentAlreadyCompleted, PaymentError, complete_payment, new_transaction_ref,
                       promotion_usages)
from .promotions import calculate_discount, ineligibility_reason

bp = Blueprint("api", __name__)

APPOINTMENT_STATUSES = ["pending", "scheduled", "upcoming", "completed", "cancelled"]


@bp.get("/health")
def health_check() -> tuple[dict[str, str], int]:
    """
    Expose a simple uptime check endpoint.
    ---
    tags:
      - Health
    responses:
      200:
        description: Service is healthy and running.
    """
    return jsonify({"status": "ok"}), 200


@bp.get("/db-health")
def database_health() -> tuple[dict[str, str], int]:
    """Check connectivity to the configured database."""
    try:
        db.session.execute(text("SELECT 1"))
    except SQLAlchemyError as exc:
        current_app.logger.exception("Database connectivity check failed", exc_info=exc)
        return jsonify({"database": "unavailable"}), 500

    return jsonify({"database": "ok"}), 200


# ---------------------------------------------------------------------------
# Authentication
# ---------------------------------------------------------------------------

def _build_token(payload: dict[str, object]) -> str:
    serializer = URLSafeTimedSerializer(current_app.config["SECRET_KEY"], salt="auth-token")
    return serializer.dumps(payload)


def get_jwt_identity() -> int | None:
    """Extract and validate user_id from the Authorization header token.

    Returns the user_id if the token is valid, None if missing, expired or
    tampered with.
    """
    auth_header = request.headers.get("Authorization", "")

    if not auth_header.startswith("Bearer "):
        return None

    token = auth_header[7:]

    try:
        serializer = URLSafeTimedSerializer(current_app.config["SECRET_KEY"], salt="auth-token")
        payload = serializer.loads(token, max_age=current_app.config.get("TOKEN_MAX_AGE", 86400))
    except BadSignature:
        return None
    return payload.get("user_id")


def require_admin() -> tuple[object, int] | None:
    """Return an error response unless the caller holds an admin token."""
    user_id = get_jwt_identity()
    if not user_id:
        return jsonify({"error": "unauthorized", "message": "Authentication required"}), 401
    user = User.query.get(user_id)
    if user is None or user.role != "admin":
        return jsonify({"error": "forbidden", "message": "Admin access required"}), 403
    return None


def eligibility_context(user: User, exclude_appointment_id=None) -> dict[str, object]:
    """Keyword arguments for promotions.ineligibility_reason for ``user``."""
    profile = get_or_create_profile(user)
    return {
        "tier_level": profile.tier_level,
        "usages": promotion_usages(user.user_id, exclude_appointment_id=exclude_appointment_id),
        "vip_min_level": current_app.config.get("VIP_MIN_TIER_LEVEL", 2),
    }


@bp.post("/auth/register")
def register_user() -> tuple[dict[str, object], int]:
    """Register a new client.
    ---
    tags:
      - Authentication
    parameters:
      - name: body
        in: body
        required: true
        schema:
          type: object
          properties:
            name:
              type: string
            email:
              type: string
            password:
              type: string
            phone:
              type: string
            birthday:
              type: string
              format: date
          required:
            - name
            - email
            - password
    responses:
      201:
        description: User registered, loyalty profile and wallet created
      400:
        description: Invalid payload
      409:
        description: Email already in use
      500:
        description: Server error
    """
    payload = request.get_json(silent=True) or {}

    name = (payload.get("name") or "").strip()
    email = (payload.get("email") or "").strip().lower()
    password = payload.get("password") or ""
    phone = (payload.get("phone") or "").strip() or None
    birthday_str = (payload.get("birthday") or "").strip()

    if not name or not email or not password:
        return (
            jsonify({"error": "invalid_payload", "message": "name, email, and password are required"}),
            400,
        )

    birthday = None
    if birthday_str:
        try:
            birthday = date.fromisoformat(birthday_str)
        except ValueError:
            return jsonify({"error": "invalid_payload", "message": "birthday must be YYYY-MM-DD"}), 400

    if User.query.filter_by(email=email).first():
        return jsonify({"error": "conflict", "message": "email address is already in use"}), 409

    try:
        new_user = User(name=name, email=email, role="client", phone=phone, birthday=birthday)
        db.session.add(new_user)
        db.session.flush()

        db.session.add(AuthAccount(user_id=new_user.user_id, password_hash=generate_password_hash(password)))
        get_or_create_profile(new_user)
        get_or_create_wallet(new_user)

        db.session.commit()
    except SQLAlchemyError as exc:
        db.session.rollback()
        current_app.logger.exception("Failed to register new user", exc_info=exc)
        return jsonify({"error": "database_error"}), 500

    token = _build_token({"user_id": new_user.user_id, "role": new_user.role})

    return jsonify({"token": token, "user": new_user.to_dict_basic()}), 201


@bp.post("/auth/login")
def login() -> tuple[dict[str, object], int]:
    """Authenticate a user by email/password and return an access token."""
    payload = request.get_json(silent=True) or {}

    email = (payload.get("email") or "").strip().lower()
    password = payload.get("password") or ""

    if not email or not password:
        return (
            jsonify({"error": "invalid_payload", "message": "email and password are required"}),
            400,
        )

    record = (
        db.session.query(User, AuthAccount)
        .join(AuthAccount, AuthAccount.user_id == User.user_id)
        .filter(User.email == email)
        .first()
    )

    if not record:
        return jsonify({"error": "unauthorized", "message": "invalid email or password"}), 401

    user, auth_account = record

    if not check_password_hash(auth_account.password_hash, password):
        return jsonify({"error": "unauthorized", "message": "invalid email or password"}), 401

    auth_account.last_login_at = datetime.now(timezone.utc)

    try:
        db.session.commit()
    except SQLAlchemyError as exc:
        db.session.rollback()
        current_app.logger.exception("Failed to update last login timestamp", exc_info=exc)
        return jsonify({"error": "database_error"}), 500

    token = _build_token({"user_id": user.user_id, "role": user.role})

    return jsonify({"token": token, "user": user.to_dict_basic()}), 200


# ---------------------------------------------------------------------------
# Appointments
# ---------------------------------------------------------------------------

@bp.get("/users/<int:user_id>/appointments")
def list_user_appointments(user_id: int) -> tuple[dict[str, object], int]:
    try:
        user = User.query.get(user_id)
        if not user:
            return jsonify({"error": "user_not_found"}), 404

        appointments = (
            Appointment.query.filter_by(user_id=user_id)
            .order_by(Appointment.starts_at.desc())
            .all()
        )
        return jsonify({"appointments": [a.to_dict() for a in appointments]}), 200
    except SQLAlchemyError as exc:
        current_app.logger.exception("Failed to fetch appointments", exc_info=exc)
        return jsonify({"error": "database_error"}), 500


@bp.post("/appointments")
def create_appointment() -> tuple[dict[str, object], int]:
    """Book a service, optionally with a promotion code.
    ---
    tags:
      - Appointments
    parameters:
      - name: body
        in: body
        required: true
        schema:
          type: object
          properties:
            user_id:
              type: integer
            service_id:
              type: integer
            starts_at:
              type: string
              format: date-time
            promotion_code:
              type: string
            notes:
              type: string
          required:
            - user_id
            - service_id
            - starts_at
    responses:
      201:
        description: Appointment created
      400:
        description: Invalid payload or promotion not usable
      404:
        description: User, service or promotion not found
      500:
        description: Server error
    """
    payload = request.get_json(silent=True) or {}

    user_id = payload.get("user_id")
    service_id = payload.get("service_id")
    starts_at_str = payload.get("starts_at")
    promotion_code = (payload.get("promotion_code") or "").strip()
    notes = (payload.get("notes") or "").strip() or None

    if not all([user_id, service_id, starts_at_str]):
        return (
            jsonify({"error": "invalid_payload", "message": "user_id, service_id, and starts_at are required"}),
            400,
        )

    try:
        starts_at = datetime.fromisoformat(starts_at_str)
    except (ValueError, TypeError):
        return jsonify({"error": "invalid_payload", "message": "starts_at must be a valid ISO format datetime"}), 400

    try:
        user = User.query.get(user_id)
        if not user:
            return jsonify({"error": "not_found", "message": "User not found"}), 404

        service = Service.query.get(service_id)
        if not service or not service.is_active:
            return jsonify({"error": "not_found", "message": "Service not found"}), 404

        promotion = None
        if promotion_code:
            promotion = Promotion.query.filter_by(code=promotion_code).first()
            if not promotion:
                return jsonify({"error": "not_found", "message": "Promotion code is not valid"}), 404

            history = Appointment.query.filter_by(user_id=user.user_id).all()
            reason = ineligibility_reason(
                promotion, user, history, service_id=service.service_id, **eligibility_context(user)
            )
            if reason is None and calculate_discount(promotion, service.price) <= 0:
                reason = "below_min_order_value"
            if reason:
                current_app.logger.warning("Promotion %s rejected for user %s: %s", promotion_code, user_id, reason)
                return jsonify({"error": "promotion_not_applicable", "message": reason}), 400

        appointment = Appointment(
            user_id=user.user_id,
            service_id=service.service_id,
            starts_at=starts_at,
            status="scheduled",
            promotion_id=promotion.promotion_id if promotion else None,
            notes=notes,
        )
        db.session.add(appointment)
        db.session.flush()

        db.session.add(Notification(
            user_id=user.user_id,
            title="Appointment Confirmed",
            message=f"Your {service.name} appointment is booked for {starts_at.strftime('%d/%m/%Y %H:%M')}.",
            notification_type="appointment",
        ))
        db.session.commit()

        return jsonify({"message": "Appointment created successfully", "appointment": appointment.to_dict()}), 201

    except SQLAlchemyError as exc:
        db.session.rollback()
        current_app.logger.exception("Failed to create appointment", exc_info=exc)
        return jsonify({"error": "database_error"}), 500


@bp.put("/appointments/<int:appointment_id>/status")
def update_appointment_status(appointment_id: int) -> tuple[dict[str, object], int]:
    """Move an appointment through its lifecycle.

    Cancelled and completed appointments are final.
    """
    data = request.get_json(silent=True) or {}
    new_status = data.get("status")

    if new_status not in APPOINTMENT_STATUSES:
        return (
            jsonify({
                "error": "invalid_status",
                "message": f"Status must be one of: {', '.join(APPOINTMENT_STATUSES)}",
            }),
            400,
        )

    try:
        appointment = Appointment.query.get(appointment_id)
        if not appointment:
            return jsonify({"error": "not_found", "message": "Appointment not found"}), 404

        if appointment.status in ("cancelled", "completed") and new_status != appointment.status:
            return (
                jsonify({
                    "error": "invalid_transition",
                    "message": f"Cannot change status of a {appointment.status} appointment",
                }),
                400,
            )

        appointment.status = new_status
        db.session.commit()

        return jsonify({"appointment": appointment.to_dict()}), 200
    except SQLAlchemyError as exc:
        db.session.rollback()
        current_app.logger.exception("Failed to update appointment status", exc_info=exc)
        return jsonify({"error": "database_error"}), 500


# ---------------------------------------------------------------------------
# Payments
# ---------------------------------------------------------------------------

def _appointment_amount(appointment: Appointment) -> Decimal:
    price = Decimal(str(appointment.service.price))
    if appointment.promotion is not None:
        price -= calculate_discount(appointment.promotion, price)
    return price


@bp.post("/payments")
def create_payment() -> tuple[dict[str, object], int]:
    """Create a pending counter payment for an appointment."""
    payload = request.get_json(silent=True) or {}
    appointment_id = payload.get("appointment_id")
    method = (payload.get("method") or "Pay at Counter").strip()

    if not appointment_id:
        return jsonify({"error": "invalid_payload", "message": "appointment_id is required"}), 400

    try:
        appointment = Appointment.query.get(appointment_id)
        if not appointment:
            return jsonify({"error": "not_found", "message": "Appointment not found"}), 404
        if appointment.payment_status == "Paid":
            return jsonify({"error": "already_paid", "message": "Appointment is already paid"}), 409
        pending = Payment.query.filter_by(appointment_id=appointment.appointment_id, status="Pending").first()
        if pending:
            return (
                jsonify({
                    "error": "payment_pending",
                    "message": f"Payment {pending.transaction_ref} is already waiting for this appointment",
                }),
                409,
            )

        payment = Payment(
            user_id=appointment.user_id,
            appointment_id=appointment.appointment_id,
            amount=_appointment_amount(appointment),
            method=method,
            status="Pending",
            transaction_ref=new_transaction_ref(),
        )
        db.session.add(payment)
        db.session.commit()

        return jsonify({"payment": payment.to_dict()}), 201
    except SQLAlchemyError as exc:
        db.session.rollback()
        current_app.logger.exception("Failed to create payment", exc_info=exc)
        return jsonify({"error": "database_error"}), 500


@bp.put("/payments/<int:payment_id>/complete")
def complete_counter_payment(payment_id: int) -> tuple[dict[str, object], int]:
    """Confirm a counter payment (admin only) and apply loyalty effects.
    ---
    tags:
      - Payments
    security:
      - Bearer: []
    responses:
      200:
        description: Payment completed, points awarded, tier re-evaluated
      400:
        description: Payment already completed or invalid
      401:
        description: Authentication required
      403:
        description: Admin access required
      404:
        description: Payment not found
      500:
        description: Database error
    """
    denied = require_admin()
    if denied:
        return denied

    try:
        payment = Payment.query.get(payment_id)
        if not payment:
            return jsonify({"error": "not_found", "message": "Payment not found"}), 404

        summary = complete_payment(payment)
        db.session.commit()

        return jsonify({"payment": payment.to_dict(), "loyalty": summary}), 200
    except PaymentAlreadyCompleted as exc:
        db.session.rollback()
        return jsonify({"error": "already_completed", "message": str(exc)}), 400
    except PaymentError as exc:
        db.session.rollback()
        return jsonify({"error": "invalid_payment", "message": str(exc)}), 400
    except SQLAlchemyError as exc:
        db.session.rollback()
        current_app.logger.exception("Failed to complete payment", exc_info=exc)
        return jsonify({"error": "database_error"}), 500


@bp.get("/users/<int:user_id>/payments")
def list_user_payments(user_id: int) -> tuple[dict[str, object], int]:
    try:
        payments = (
            Payment.query.filter_by(user_id=user_id)
            .order_by(Payment.created_at.desc())
            .all()
        )
        return jsonify({"payments": [p.to_dict() for p in payments]}), 200
    except SQLAlchemyError as exc:
        current_app.logger.exception("Failed to fetch payments", exc_info=exc)
        return jsonify({"error": "database_error"}), 500


def _settle_gateway_payment(payment_intent_id: str, amount: int, user_id: int, appointment_id: int) -> Payment:
    """Record and complete a gateway payment once per PaymentIntent."""
    payment = Payment.query.filter_by(gateway_payment_id=payment_intent_id).first()
    if payment is None:
        payment = Payment(
            user_id=user_id,
            appointment_id=appointment_id,
            amount=Decimal(amount),
            method="Card",
            status="Pending",
            transaction_ref=new_transaction_ref(),
            gateway_payment_id=payment_intent_id,
        )
        db.session.add(payment)
        db.session.flush()

    if payment.status != "Completed":
        complete_payment(payment)
    return payment


@bp.post("/create-payment-intent")
def create_payment_intent() -> tuple[dict[str, object], int]:
    """Create a Stripe PaymentIntent for an appointment.
    ---
    tags:
      - Payments
    security:
      - Bearer: []
    parameters:
      - name: body
        in: body
        required: true
        schema:
          type: object
          properties:
            appointment_id:
              type: integer
    responses:
      200:
        description: Payment intent created
      400:
        description: Invalid request payload
      401:
        description: Authentication required
      403:
        description: Appointment belongs to another user
      404:
        description: Appointment not found
      500:
        description: Server error or payment processing error
    """
    payload = request.get_json(silent=True) or {}
    appointment_id = payload.get("appointment_id")

    user_id = get_jwt_identity()
    if not user_id:
        return jsonify({"error": "unauthorized", "message": "Authentication required. Please log in to continue."}), 401

    if not appointment_id:
        return jsonify({"error": "invalid_payload", "message": "appointment_id required"}), 400

    try:
        appt = Appointment.query.get(appointment_id)
        if not appt:
            return jsonify({"error": "not_found", "message": "Appointment not found"}), 404
        if appt.user_id != int(user_id):
            return jsonify({"error": "forbidden", "message": "You are not authorized to pay for this appointment"}), 403
        if appt.payment_status == "Paid":
            return jsonify({"error": "already_paid", "message": "Appointment is already paid"}), 409

        stripe_key = current_app.config.get("STRIPE_SECRET_KEY")
        if not stripe_key:
            current_app.logger.warning("Stripe secret key not configured")
            return jsonify({"error": "server_error", "message": "Payments are not currently available. Please contact support."}), 500

        stripe.api_key = stripe_key
        intent = stripe.PaymentIntent.create(
            amount=int(_appointment_amount(appt)),
            currency=current_app.config.get("PAYMENT_CURRENCY", "vnd"),
            metadata={
                "appointment_id": str(appt.appointment_id),
                "client_id": str(user_id),
            },
        )

        return jsonify({"client_secret": intent.client_secret, "payment_intent_id": intent.id}), 200

    except stripe.StripeError as exc:
        current_app.logger.exception("Stripe API error while creating payment intent", exc_info=exc)
        return jsonify({"error": "payment_error", "message": "An error occurred while processing the payment."}), 500
    except SQLAlchemyError as exc:
        current_app.logger.exception("Failed to load appointment for payment intent", exc_info=exc)
        return jsonify({"error": "database_error"}), 500


@bp.post("/confirm-payment")
def confirm_payment() -> tuple[dict[str, object], int]:
    """Confirm a Stripe PaymentIntent and complete the payment."""
    payload = request.get_json(silent=True) or {}
    payment_intent_id = payload.get("payment_intent_id")
    appointment_id = payload.get("appointment_id")

    user_id = get_jwt_identity()
    if not user_id:
        return jsonify({"error": "unauthorized", "message": "Authentication required. Please log in to continue."}), 401

    if not payment_intent_id or not appointment_id:
        return jsonify({"error": "invalid_payload", "message": "payment_intent_id and appointment_id required"}), 400

    stripe_key = current_app.config.get("STRIPE_SECRET_KEY")
    if not stripe_key:
        return jsonify({"error": "server_error", "message": "Payments are not currently available. Please contact support."}), 500

    stripe.api_key = stripe_key
    try:
        intent = stripe.PaymentIntent.retrieve(payment_intent_id)
    except stripe.StripeError as exc:
        current_app.logger.exception("Stripe API error while retrieving payment intent", exc_info=exc)
        return jsonify({"error": "payment_error", "message": "Failed to retrieve payment intent"}), 500

    if intent.status != "succeeded":
        return jsonify({"status": intent.status}), 200

    try:
        appt = Appointment.query.get(appointment_id)
        if not appt or appt.user_id != int(user_id):
            return jsonify({"error": "forbidden"}), 403

        if not intent.amount or intent.amount <= 0:
            return jsonify({"error": "invalid_payment_intent", "message": "Payment intent has invalid amount"}), 500

        payment = _settle_gateway_payment(payment_intent_id, int(intent.amount), appt.user_id, appt.appointment_id)
        db.session.commit()

        return jsonify({"status": "ok", "payment_id": payment.payment_id}), 200

    except IntegrityError:
        db.session.rollback()
        current_app.logger.warning("Duplicate payment attempt detected for payment_intent %s", payment_intent_id)
        existing = Payment.query.filter_by(gateway_payment_id=payment_intent_id).first()
        if existing:
            return jsonify({"status": "ok", "payment_id": existing.payment_id}), 200
        return jsonify({"error": "database_error"}), 500
    except PaymentError as exc:
        db.session.rollback()
        return jsonify({"error": "invalid_payment", "message": str(exc)}), 400
    except SQLAlchemyError as exc:
        db.session.rollback()
        current_app.logger.exception("Failed to record payment", exc_info=exc)
        return jsonify({"error": "database_error"}), 500


@bp.post("/stripe-webhook")
def stripe_webhook():
    """Stripe webhook endpoint to receive asynchronous payment events."""
    payload = request.get_data()
    sig_header = request.headers.get("Stripe-Signature")
    webhook_secret = current_app.config.get("STRIPE_WEBHOOK_SECRET")

    if not webhook_secret:
        current_app.logger.error("Stripe webhook secret not configured - webhooks will not be processed")
        return jsonify({"received": True}), 200

    try:
        event = stripe.Webhook.construct_event(payload, sig_header, webhook_secret)
    except ValueError:
        current_app.logger.warning("Invalid webhook payload")
        return jsonify({"error": "invalid_payload"}), 400
    except stripe.SignatureVerificationError:
        current_app.logger.warning("Invalid signature for webhook")
        return jsonify({"error": "invalid_signature"}), 400

    if event.get("type") != "payment_intent.succeeded":
        return jsonify({"received": True}), 200

    data = event.get("data", {}).get("object", {})
    payment_intent_id = data.get("id")
    amount = data.get("amount")
    metadata = data.get("metadata", {}) or {}
    appointment_id = metadata.get("appointment_id") or None
    client_id = metadata.get("client_id") or None

    if not amount or amount <= 0:
        current_app.logger.warning("Webhook event has invalid amount for payment_intent %s", payment_intent_id)
        return jsonify({"received": True}), 200
    if not client_id or not appointment_id:
        current_app.logger.info(
            "Webhook payment_intent.succeeded without client/appointment metadata; skipping."
        )
        return jsonify({"received": True}), 200

    try:
        _settle_gateway_payment(payment_intent_id, int(amount), int(client_id), int(appointment_id))
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        current_app.logger.warning("Duplicate payment from webhook for payment_intent %s", payment_intent_id)
    except (PaymentError, SQLAlchemyError, ValueError, TypeError) as exc:
        db.session.rollback()
        current_app.logger.exception("Failed to record payment from webhook", exc_info=exc)

    return jsonify({"received": True}), 200
