"""Database models for the SpaHub backend."""
from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal

from .extensions import db
from .promotions import normalize_flag


def utc_now() -> datetime:
    """Return a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def _money(value) -> float:
    return float(value) if value is not None else 0.0


class User(db.Model):
    __tablename__ = "users"

    user_id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(100), nullable=False)
    email = db.Column(db.String(255), unique=True, nullable=False)
    role = db.Column(
        db.Enum(
            "client",
            "staff",
            "admin",
            name="user_role",
            native_enum=False,
            validate_strings=True,
        ),
        nullable=False,
        server_default="client",
    )
    phone = db.Column(db.String(30))
    birthday = db.Column(db.Date, nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=utc_now)
    updated_at = db.Column(
        db.DateTime,
        nullable=False,
        default=utc_now,
        onupdate=utc_now,
    )

    auth_account = db.relationship("AuthAccount", back_populates="user", uselist=False)
    customer_profile = db.relationship("CustomerProfile", back_populates="user", uselist=False)
    wallet = db.relationship("Wallet", back_populates="user", uselist=False)

    def to_dict_basic(self) -> dict[str, object]:
        return {
            "id": self.user_id,
            "user_id": self.user_id,
            "name": self.name,
            "email": self.email,
            "role": self.role,
            "phone": self.phone,
            "birthday": self.birthday.isoformat() if self.birthday else None,
        }


class AuthAccount(db.Model):
    __tablename__ = "auth_accounts"

    user_id = db.Column(db.Integer, db.ForeignKey("users.user_id"), primary_key=True)
    password_hash = db.Column(db.String(255), nullable=False)
    last_login_at = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, nullable=False, default=utc_now)
    updated_at = db.Column(db.DateTime, nullable=False, default=utc_now, onupdate=utc_now)

    user = db.relationship("User", back_populates="auth_account")


class Tier(db.Model):
    """Loyalty tier reference data, ordered by level."""

    __tablename__ = "tiers"

    level = db.Column(db.Integer, primary_key=True, autoincrement=False)
    name = db.Column(db.String(100), nullable=False)
    points_required = db.Column(db.Integer, nullable=False, default=0)
    min_spending_required = db.Column(db.Numeric(14, 2), nullable=False, default=0)
    color = db.Column(db.String(20))

    def to_dict(self) -> dict[str, object]:
        return {
            "level": self.level,
            "name": self.name,
            "points_required": self.points_required,
            "min_spending_required": _money(self.min_spending_required),
            "color": self.color,
        }


class CustomerProfile(db.Model):
    """Per-client loyalty state. Only the tier evaluator raises tier_level."""

    __tablename__ = "customer_profiles"

    user_id = db.Column(db.Integer, db.ForeignKey("users.user_id"), primary_key=True)
    tier_level = db.Column(db.Integer, db.ForeignKey("tiers.level"), nullable=False, default=1)
    total_spending = db.Column(db.Numeric(14, 2), nullable=False, default=Decimal("0"))
    last_tier_upgrade_date = db.Column(db.DateTime, nullable=True)

    user = db.relationship("User", back_populates="customer_profile")
    tier = db.relationship("Tier")

    def to_dict(self) -> dict[str, object]:
        return {
            "user_id": self.user_id,
            "tier_level": self.tier_level,
            "tier_name": self.tier.name if self.tier else None,
            "total_spending": _money(self.total_spending),
            "last_tier_upgrade_date": (
                self.last_tier_upgrade_date.isoformat() if self.last_tier_upgrade_date else None
            ),
        }


class Wallet(db.Model):
    __tablename__ = "wallets"

    wallet_id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.user_id"), unique=True, nullable=False)
    points = db.Column(db.Integer, nullable=False, default=0)
    updated_at = db.Column(db.DateTime, nullable=False, default=utc_now, onupdate=utc_now)

    user = db.relationship("User", back_populates="wallet")

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.wallet_id,
            "user_id": self.user_id,
            "points": self.points,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


class Service(db.Model):
    __tablename__ = "services"

    service_id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(150), nullable=False)
    description = db.Column(db.Text)
    price = db.Column(db.Numeric(14, 2), nullable=False)
    duration_minutes = db.Column(db.Integer, nullable=False, default=60)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime, nullable=False, default=utc_now)

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.service_id,
            "name": self.name,
            "description": self.description,
            "price": _money(self.price),
            "duration_minutes": self.duration_minutes,
            "is_active": bool(self.is_active),
        }


class Appointment(db.Model):
    """Client bookings for a spa service."""

    __tablename__ = "appointments"

    appointment_id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.user_id"), nullable=False)
    service_id = db.Column(db.Integer, db.ForeignKey("services.service_id"), nullable=False)
    starts_at = db.Column(db.DateTime, nullable=False)
    status = db.Column(
        db.Enum(
            "pending",
            "scheduled",
            "upcoming",
            "completed",
            "cancelled",
            name="appointment_status",
            native_enum=False,
            validate_strings=True,
        ),
        nullable=False,
        default="pending",
        server_default="pending",
    )
    payment_status = db.Column(
        db.Enum(
            "Unpaid",
            "Paid",
            name="appointment_payment_status",
            native_enum=False,
            validate_strings=True,
        ),
        nullable=False,
        default="Unpaid",
        server_default="Unpaid",
    )
    promotion_id = db.Column(db.Integer, db.ForeignKey("promotions.promotion_id"), nullable=True)
    notes = db.Column(db.Text)
    created_at = db.Column(db.DateTime, nullable=False, default=utc_now)
    updated_at = db.Column(
        db.DateTime,
        nullable=False,
        default=utc_now,
        onupdate=utc_now,
    )

    user = db.relationship("User")
    service = db.relationship("Service")
    promotion = db.relationship("Promotion")

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.appointment_id,
            "user_id": self.user_id,
            "service_id": self.service_id,
            "service": {
                "id": self.service.service_id,
                "name": self.service.name,
                "price": _money(self.service.price),
            } if self.service else None,
            "starts_at": self.starts_at.isoformat() if self.starts_at else None,
            "status": self.status,
            "payment_status": self.payment_status,
            "promotion_id": self.promotion_id,
            "notes": self.notes,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


class Payment(db.Model):
    __tablename__ = "payments"

    payment_id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.user_id"), nullable=False)
    appointment_id = db.Column(db.Integer, db.ForeignKey("appointments.appointment_id"), nullable=True)
    amount = db.Column(db.Numeric(14, 2), nullable=False)
    method = db.Column(db.String(50), nullable=False, default="Pay at Counter")  # Pay at Counter, Card
    status = db.Column(db.String(50), nullable=False, default="Pending")  # Pending, Completed, Refunded, Failed
    transaction_ref = db.Column(db.String(64), unique=True, nullable=False)
    # Stripe PaymentIntent id when paid through the gateway
    gateway_payment_id = db.Column(db.String(255), nullable=True, unique=True)
    paid_at = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=utc_now)

    user = db.relationship("User")
    appointment = db.relationship("Appointment")

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.payment_id,
            "user_id": self.user_id,
            "appointment_id": self.appointment_id,
            "amount": _money(self.amount),
            "method": self.method,
            "status": self.status,
            "transaction_ref": self.transaction_ref,
            "gateway_payment_id": self.gateway_payment_id,
            "paid_at": self.paid_at.isoformat() if self.paid_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


class Promotion(db.Model):
    """Vouchers and promotional codes."""

    __tablename__ = "promotions"

    promotion_id = db.Column(db.Integer, primary_key=True)
    title = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text)
    code = db.Column(db.String(50), unique=True, nullable=False)
    discount_type = db.Column(
        db.Enum("percentage", "fixed", name="discount_type", native_enum=False, validate_strings=True),
        nullable=False,
        default="percentage",
        server_default="percentage",
    )
    discount_value = db.Column(db.Numeric(14, 2), nullable=False)
    max_discount = db.Column(db.Numeric(14, 2), nullable=True)
    # "All", "New Clients", "Birthday", "VIP", "Tier Level N"
    target_audience = db.Column(db.String(50), nullable=True, default="All")
    applicable_service_ids = db.Column(db.JSON, nullable=True, default=list)
    expiry_date = db.Column(db.Date, nullable=False)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    # Older rows store 0/1 or '0'/'1'; read through promotions.normalize_flag
    is_public = db.Column(db.String(5), nullable=False, default="1")
    stock = db.Column(db.Integer, nullable=True)
    usage_limit = db.Column(db.Integer, nullable=True)
    usage_count = db.Column(db.Integer, nullable=False, default=0)
    min_order_value = db.Column(db.Numeric(14, 2), nullable=False, default=0)
    points_required = db.Column(db.Integer, nullable=False, default=0)
    created_at = db.Column(db.DateTime, nullable=False, default=utc_now)
    updated_at = db.Column(
        db.DateTime,
        nullable=False,
        default=utc_now,
        onupdate=utc_now,
    )

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.promotion_id,
            "title": self.title,
            "description": self.description,
            "code": self.code,
            "discount_type": self.discount_type,
            "discount_value": _money(self.discount_value),
            "max_discount": _money(self.max_discount) if self.max_discount is not None else None,
            "target_audience": self.target_audience or "All",
            "applicable_service_ids": self.applicable_service_ids or [],
            "expiry_date": self.expiry_date.isoformat() if self.expiry_date else None,
            "is_active": bool(self.is_active),
            "is_public": normalize_flag(self.is_public),
            "stock": self.stock,
            "usage_limit": self.usage_limit,
            "usage_count": self.usage_count,
            "min_order_value": _money(self.min_order_value),
            "points_required": self.points_required,
        }


class PromotionUsage(db.Model):
    __tablename__ = "promotion_usage"

    usage_id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.user_id"), nullable=False)
    promotion_id = db.Column(db.Integer, db.ForeignKey("promotions.promotion_id"), nullable=False)
    appointment_id = db.Column(db.Integer, db.ForeignKey("appointments.appointment_id"), nullable=True)
    service_id = db.Column(db.Integer, db.ForeignKey("services.service_id"), nullable=True)
    used_at = db.Column(db.DateTime, nullable=False, default=utc_now)

    user = db.relationship("User")
    promotion = db.relationship("Promotion")

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.usage_id,
            "user_id": self.user_id,
            "promotion_id": self.promotion_id,
            "appointment_id": self.appointment_id,
            "service_id": self.service_id,
            "used_at": self.used_at.isoformat() if self.used_at else None,
        }


class PointsHistory(db.Model):
    __tablename__ = "points_history"

    entry_id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.user_id"), nullable=False)
    points_change = db.Column(db.Integer, nullable=False)
    source = db.Column(db.String(30), nullable=False)  # payment, redemption, adjustment
    description = db.Column(db.String(255))
    created_at = db.Column(db.DateTime, nullable=False, default=utc_now)

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.entry_id,
            "user_id": self.user_id,
            "points_change": self.points_change,
            "type": "earned" if self.points_change >= 0 else "spent",
            "source": self.source,
            "description": self.description,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


class Notification(db.Model):
    __tablename__ = "notifications"

    notification_id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.user_id"), nullable=False)
    title = db.Column(db.String(200), nullable=False)
    message = db.Column(db.Text, nullable=False)
    notification_type = db.Column(
        db.Enum(
            "tier_upgrade",
            "promotion",
            "payment",
            "appointment",
            name="notification_type",
            native_enum=False,
            validate_strings=True,
        ),
        nullable=False,
    )
    is_read = db.Column(db.Boolean, nullable=False, default=False, server_default="0")
    created_at = db.Column(db.DateTime, nullable=False, default=utc_now)

    user = db.relationship("User")

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.notification_id,
            "user_id": self.user_id,
            "title": self.title,
            "message": self.message,
            "type": self.notification_type,
            "is_read": bool(self.is_read),
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


class StaffShift(db.Model):
    """A working shift or leave request for a staff member."""

    __tablename__ = "staff_shifts"

    shift_id = db.Column(db.Integer, primary_key=True)
    staff_id = db.Column(db.Integer, db.ForeignKey("users.user_id"), nullable=False)
    shift_date = db.Column(db.Date, nullable=False)
    shift_type = db.Column(
        db.Enum(
            "morning",
            "afternoon",
            "evening",
            "leave",
            "custom",
            name="shift_type",
            native_enum=False,
            validate_strings=True,
        ),
        nullable=False,
    )
    status = db.Column(
        db.Enum(
            "pending",
            "approved",
            "rejected",
            name="shift_status",
            native_enum=False,
            validate_strings=True,
        ),
        nullable=False,
        default="pending",
        server_default="pending",
    )
    start_time = db.Column(db.Time, nullable=True)
    end_time = db.Column(db.Time, nullable=True)
    room = db.Column(db.String(50))
    is_up_for_swap = db.Column(db.Boolean, nullable=False, default=False, server_default="0")
    requested_by = db.Column(db.Integer, db.ForeignKey("users.user_id"), nullable=True)
    notes = db.Column(db.Text)
    created_at = db.Column(db.DateTime, nullable=False, default=utc_now)
    updated_at = db.Column(
        db.DateTime,
        nullable=False,
        default=utc_now,
        onupdate=utc_now,
    )

    staff = db.relationship("User", foreign_keys=[staff_id])

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.shift_id,
            "staff_id": self.staff_id,
            "date": self.shift_date.isoformat() if self.shift_date else None,
            "shift_type": self.shift_type,
            "status": self.status,
            "shift_hours": {
                "start": self.start_time.strftime("%H:%M"),
                "end": self.end_time.strftime("%H:%M"),
            } if self.start_time and self.end_time else None,
            "room": self.room,
            "is_up_for_swap": bool(self.is_up_for_swap),
            "requested_by": self.requested_by,
            "notes": self.notes,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


class TreatmentCourse(db.Model):
    """A prepaid package of sessions of one service for a client."""

    __tablename__ = "treatment_courses"

    course_id = db.Column(db.Integer, primary_key=True)
    client_id = db.Column(db.Integer, db.ForeignKey("users.user_id"), nullable=False)
    service_id = db.Column(db.Integer, db.ForeignKey("services.service_id"), nullable=False)
    therapist_id = db.Column(db.Integer, db.ForeignKey("users.user_id"), nullable=True)
    total_sessions = db.Column(db.Integer, nullable=False)
    completed_sessions = db.Column(db.Integer, nullable=False, default=0, server_default="0")
    start_date = db.Column(db.Date, nullable=False)
    duration_weeks = db.Column(db.Integer, nullable=False)
    expiry_date = db.Column(db.Date, nullable=False)
    frequency_type = db.Column(
        db.Enum(
            "weeks_per_session",
            "sessions_per_week",
            name="course_frequency_type",
            native_enum=False,
            validate_strings=True,
        ),
        nullable=True,
    )
    frequency_value = db.Column(db.Integer, nullable=True)
    status = db.Column(
        db.Enum(
            "active",
            "completed",
            "expired",
            "cancelled",
            name="course_status",
            native_enum=False,
            validate_strings=True,
        ),
        nullable=False,
        default="active",
        server_default="active",
    )
    payment_status = db.Column(
        db.Enum(
            "Unpaid",
            "Paid",
            name="course_payment_status",
            native_enum=False,
            validate_strings=True,
        ),
        nullable=False,
        default="Unpaid",
        server_default="Unpaid",
    )
    total_amount = db.Column(db.Numeric(14, 2), nullable=True)
    notes = db.Column(db.Text)
    created_at = db.Column(db.DateTime, nullable=False, default=utc_now)
    updated_at = db.Column(
        db.DateTime,
        nullable=False,
        default=utc_now,
        onupdate=utc_now,
    )

    client = db.relationship("User", foreign_keys=[client_id])
    service = db.relationship("Service")
    sessions = db.relationship(
        "TreatmentSession",
        back_populates="course",
        order_by="TreatmentSession.session_number",
        cascade="all, delete-orphan",
    )

    def to_dict(self, include_sessions: bool = False) -> dict[str, object]:
        payload = {
            "id": self.course_id,
            "client_id": self.client_id,
            "service_id": self.service_id,
            "service_name": self.service.name if self.service else None,
            "therapist_id": self.therapist_id,
            "total_sessions": self.total_sessions,
            "completed_sessions": self.completed_sessions,
            "remaining_sessions": max(0, self.total_sessions - (self.completed_sessions or 0)),
            "start_date": self.start_date.isoformat() if self.start_date else None,
            "duration_weeks": self.duration_weeks,
            "expiry_date": self.expiry_date.isoformat() if self.expiry_date else None,
            "frequency_type": self.frequency_type,
            "frequency_value": self.frequency_value,
            "status": self.status,
            "payment_status": self.payment_status,
            "total_amount": _money(self.total_amount) if self.total_amount is not None else None,
            "notes": self.notes,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
        if include_sessions:
            payload["sessions"] = [s.to_dict() for s in self.sessions]
        return payload


class TreatmentSession(db.Model):
    __tablename__ = "treatment_sessions"

    session_id = db.Column(db.Integer, primary_key=True)
    course_id = db.Column(db.Integer, db.ForeignKey("treatment_courses.course_id"), nullable=False)
    appointment_id = db.Column(db.Integer, db.ForeignKey("appointments.appointment_id"), nullable=True)
    staff_id = db.Column(db.Integer, db.ForeignKey("users.user_id"), nullable=True)
    session_number = db.Column(db.Integer, nullable=False)
    session_date = db.Column(db.Date, nullable=False)
    status = db.Column(
        db.Enum(
            "scheduled",
            "completed",
            "cancelled",
            "missed",
            name="treatment_session_status",
            native_enum=False,
            validate_strings=True,
        ),
        nullable=False,
        default="completed",
    )
    notes = db.Column(db.Text)
    completed_at = db.Column(db.DateTime, nullable=True)

    course = db.relationship("TreatmentCourse", back_populates="sessions")

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.session_id,
            "course_id": self.course_id,
            "appointment_id": self.appointment_id,
            "staff_id": self.staff_id,
            "session_number": self.session_number,
            "session_date": self.session_date.isoformat() if self.session_date else None,
            "status": self.status,
            "notes": self.notes,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }
