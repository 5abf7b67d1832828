"""Spa operations routes: staff shifts and treatment courses."""
from __future__ import annotations

from datetime import date, datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation

from flask import Blueprint, current_app, jsonify, request
from sqlalchemy.exc import SQLAlchemyError

from .extensions import db
from .models import Service, StaffShift, TreatmentCourse, TreatmentSession, User
from .routes import get_jwt_identity

bp_operations = Blueprint("operations", __name__)

SHIFT_TYPES = ["morning", "afternoon", "evening", "leave", "custom"]
SHIFT_STATUSES = ["pending", "approved", "rejected"]
COURSE_STATUSES = ["active", "completed", "expired", "cancelled"]
FREQUENCY_TYPES = ["weeks_per_session", "sessions_per_week"]


def _current_user(*roles: str) -> tuple[User | None, tuple[object, int] | None]:
    """Load the caller and check their role; returns (user, error_response)."""
    user_id = get_jwt_identity()
    if not user_id:
        return None, (jsonify({"error": "unauthorized", "message": "Authentication required"}), 401)
    user = User.query.get(user_id)
    if user is None or user.role not in roles:
        return None, (jsonify({"error": "forbidden", "message": "Insufficient permissions"}), 403)
    return user, None


# --- Staff shifts ---

def _apply_shift_fields(shift: StaffShift, payload: dict) -> str | None:
    """Copy shift fields from ``payload``; returns an error message on bad input."""
    if "date" in payload:
        try:
            shift.shift_date = date.fromisoformat(str(payload["date"]))
        except ValueError:
            return "date must be YYYY-MM-DD"
    if "shift_type" in payload:
        if payload["shift_type"] not in SHIFT_TYPES:
            return f"shift_type must be one of: {', '.join(SHIFT_TYPES)}"
        shift.shift_type = payload["shift_type"]

    hours = payload.get("shift_hours")
    if hours is not None:
        try:
            # Time format: "HH:MM"
            shift.start_time = datetime.strptime(hours["start"], "%H:%M").time()
            shift.end_time = datetime.strptime(hours["end"], "%H:%M").time()
        except (KeyError, TypeError, ValueError):
            return "shift_hours must have start and end in HH:MM format"
        if shift.end_time <= shift.start_time:
            return "shift end must be after its start"

    for field in ("room", "notes"):
        if field in payload:
            setattr(shift, field, (payload.get(field) or "").strip() or None)
    if "is_up_for_swap" in payload:
        shift.is_up_for_swap = bool(payload["is_up_for_swap"])
    return None


@bp_operations.get("/staff/shifts")
def list_shifts() -> tuple[dict[str, object], int]:
    """List shifts, optionally for one date or status."""
    try:
        query = StaffShift.query
        if request.args.get("date"):
            query = query.filter_by(shift_date=date.fromisoformat(request.args["date"]))
        if request.args.get("status"):
            query = query.filter_by(status=request.args["status"])
        shifts = query.order_by(StaffShift.shift_date, StaffShift.shift_id).all()
        return jsonify({"shifts": [s.to_dict() for s in shifts]}), 200
    except ValueError:
        return jsonify({"error": "invalid_format", "message": "date must be YYYY-MM-DD"}), 400
    except SQLAlchemyError as exc:
        current_app.logger.exception("Failed to fetch shifts", exc_info=exc)
        return jsonify({"error": "database_error"}), 500


@bp_operations.get("/staff/<int:staff_id>/shifts")
def get_staff_shifts(staff_id: int) -> tuple[dict[str, object], int]:
    """Get the shifts and leave requests of one staff member.
    ---
    tags:
      - Staff Shifts
    parameters:
      - in: path
        name: staff_id
        required: true
        schema:
          type: integer
    responses:
      200:
        description: List of shifts
      404:
        description: Staff member not found
      500:
        description: Database error
    """
    try:
        staff = User.query.get(staff_id)
        if not staff or staff.role == "client":
            return jsonify({"error": "not_found", "message": "Staff member not found"}), 404

        shifts = StaffShift.query.filter_by(staff_id=staff_id).order_by(StaffShift.shift_date).all()
        return jsonify({"shifts": [s.to_dict() for s in shifts]}), 200
    except SQLAlchemyError as exc:
        current_app.logger.exception("Failed to fetch shifts", exc_info=exc)
        return jsonify({"error": "database_error"}), 500


@bp_operations.post("/staff/shifts")
def create_shift() -> tuple[dict[str, object], int]:
    """Add a shift or leave request.
    ---
    tags:
      - Staff Shifts
    security:
      - Bearer: []
    parameters:
      - in: body
        name: body
        required: true
        schema:
          properties:
            staff_id:
              type: integer
            date:
              type: string
              format: date
            shift_type:
              type: string
              enum: [morning, afternoon, evening, leave, custom]
            shift_hours:
              type: object
              properties:
                start:
                  type: string
                end:
                  type: string
            room:
              type: string
            notes:
              type: string
    responses:
      201:
        description: Shift created, pending approval unless added by an admin
      400:
        description: Invalid input
      401:
        description: Authentication required
      403:
        description: Staff may only request their own shifts
      404:
        description: Staff member not found
      500:
        description: Database error
    """
    caller, denied = _current_user("staff", "admin")
    if denied:
        return denied

    payload = request.get_json(silent=True) or {}
    if not payload.get("staff_id") or not payload.get("date") or not payload.get("shift_type"):
        return (
            jsonify({"error": "invalid_payload", "message": "staff_id, date, and shift_type are required"}),
            400,
        )

    try:
        staff_id = int(payload["staff_id"])
    except (TypeError, ValueError):
        return jsonify({"error": "invalid_payload", "message": "staff_id must be an integer"}), 400
    if caller.role != "admin" and staff_id != caller.user_id:
        return jsonify({"error": "forbidden", "message": "Staff may only request their own shifts"}), 403

    shift = StaffShift(staff_id=staff_id, requested_by=caller.user_id)
    error = _apply_shift_fields(shift, payload)
    if error:
        return jsonify({"error": "invalid_format", "message": error}), 400
    shift.status = "approved" if caller.role == "admin" else "pending"

    try:
        staff = User.query.get(staff_id)
        if not staff or staff.role == "client":
            return jsonify({"error": "not_found", "message": "Staff member not found"}), 404

        db.session.add(shift)
        db.session.commit()
        return jsonify({"shift": shift.to_dict()}), 201
    except SQLAlchemyError as exc:
        db.session.rollback()
        current_app.logger.exception("Failed to create shift", exc_info=exc)
        return jsonify({"error": "database_error"}), 500


@bp_operations.put("/staff/shifts/<int:shift_id>")
def update_shift(shift_id: int) -> tuple[dict[str, object], int]:
    """Update a shift. Only admins approve or reject; staff edit their own requests."""
    caller, denied = _current_user("staff", "admin")
    if denied:
        return denied

    payload = request.get_json(silent=True) or {}
    try:
        shift = StaffShift.query.get(shift_id)
        if not shift:
            return jsonify({"error": "not_found", "message": "Shift not found"}), 404

        if caller.role != "admin":
            if shift.staff_id != caller.user_id:
                return jsonify({"error": "forbidden", "message": "Staff may only edit their own shifts"}), 403
            if "status" in payload:
                return jsonify({"error": "forbidden", "message": "Only admins can approve shifts"}), 403

        error = _apply_shift_fields(shift, payload)
        if error is None and "status" in payload and payload["status"] not in SHIFT_STATUSES:
            error = f"status must be one of: {', '.join(SHIFT_STATUSES)}"
        if error:
            db.session.rollback()
            return jsonify({"error": "invalid_format", "message": error}), 400
        if "status" in payload:
            shift.status = payload["status"]

        db.session.commit()
        return jsonify({"shift": shift.to_dict()}), 200
    except SQLAlchemyError as exc:
        db.session.rollback()
        current_app.logger.exception("Failed to update shift", exc_info=exc)
        return jsonify({"error": "database_error"}), 500


@bp_operations.delete("/staff/shifts/<int:shift_id>")
def delete_shift(shift_id: int):
    caller, denied = _current_user("staff", "admin")
    if denied:
        return denied

    try:
        shift = StaffShift.query.get(shift_id)
        if not shift:
            return jsonify({"error": "not_found", "message": "Shift not found"}), 404
        if caller.role != "admin" and shift.staff_id != caller.user_id:
            return jsonify({"error": "forbidden", "message": "Staff may only delete their own shifts"}), 403

        db.session.delete(shift)
        db.session.commit()
        return "", 204
    except SQLAlchemyError as exc:
        db.session.rollback()
        current_app.logger.exception("Failed to delete shift", exc_info=exc)
        return jsonify({"error": "database_error"}), 500


# --- Treatment courses ---

def course_expiry(start: date, duration_weeks: int) -> date:
    return start + timedelta(weeks=duration_weeks)


def refresh_course_status(course: TreatmentCourse, today: date | None = None) -> None:
    """Active courses past their expiry date become expired."""
    today = today or date.today()
    if course.status == "active" and course.expiry_date and today > course.expiry_date:
        course.status = "expired"


def _parse_course_payload(payload: dict, partial: bool = False) -> tuple[dict[str, object], str | None]:
    values: dict[str, object] = {}

    required = ["client_id", "service_id", "total_sessions", "start_date", "duration_weeks"]
    if not partial:
        missing = [field for field in required if payload.get(field) in (None, "")]
        if missing:
            return {}, f"missing required fields: {', '.join(missing)}"

    try:
        for field in ("client_id", "service_id", "therapist_id", "total_sessions",
                      "duration_weeks", "frequency_value"):
            if field in payload:
                raw = payload.get(field)
                values[field] = int(raw) if raw is not None else None
        if "total_amount" in payload:
            raw = payload.get("total_amount")
            values["total_amount"] = Decimal(str(raw)) if raw is not None else None
    except (InvalidOperation, ValueError, TypeError):
        return {}, "numeric fields must be numbers"

    if "start_date" in payload:
        try:
            values["start_date"] = date.fromisoformat(str(payload["start_date"])[:10])
        except ValueError:
            return {}, "start_date must be YYYY-MM-DD"

    if values.get("total_sessions") is not None and values["total_sessions"] < 1:
        return {}, "total_sessions must be at least 1"
    if values.get("duration_weeks") is not None and values["duration_weeks"] < 1:
        return {}, "duration_weeks must be at least 1"

    if payload.get("frequency_type") is not None:
        if payload["frequency_type"] not in FREQUENCY_TYPES:
            return {}, f"frequency_type must be one of: {', '.join(FREQUENCY_TYPES)}"
        values["frequency_type"] = payload["frequency_type"]
    if "status" in payload:
        if payload["status"] not in COURSE_STATUSES:
            return {}, f"status must be one of: {', '.join(COURSE_STATUSES)}"
        values["status"] = payload["status"]
    if "payment_status" in payload:
        if payload["payment_status"] not in ("Unpaid", "Paid"):
            return {}, "payment_status must be 'Unpaid' or 'Paid'"
        values["payment_status"] = payload["payment_status"]
    if "notes" in payload:
        values["notes"] = (payload.get("notes") or "").strip() or None

    return values, None


@bp_operations.get("/treatment-courses")
def list_treatment_courses() -> tuple[dict[str, object], int]:
    """List treatment courses, optionally for one client."""
    try:
        query = TreatmentCourse.query
        if request.args.get("client_id"):
            query = query.filter_by(client_id=int(request.args["client_id"]))
        courses = query.order_by(TreatmentCourse.created_at.desc(), TreatmentCourse.course_id.desc()).all()
        for course in courses:
            refresh_course_status(course)
        db.session.commit()
        return jsonify({"courses": [c.to_dict() for c in courses]}), 200
    except ValueError:
        return jsonify({"error": "invalid_format", "message": "client_id must be an integer"}), 400
    except SQLAlchemyError as exc:
        db.session.rollback()
        current_app.logger.exception("Failed to fetch treatment courses", exc_info=exc)
        return jsonify({"error": "database_error"}), 500


@bp_operations.get("/treatment-courses/<int:course_id>")
def get_treatment_course(course_id: int) -> tuple[dict[str, object], int]:
    try:
        course = TreatmentCourse.query.get(course_id)
        if not course:
            return jsonify({"error": "not_found", "message": "Treatment course not found"}), 404
        refresh_course_status(course)
        db.session.commit()
        return jsonify({"course": course.to_dict(include_sessions=True)}), 200
    except SQLAlchemyError as exc:
        db.session.rollback()
        current_app.logger.exception("Failed to fetch treatment course", exc_info=exc)
        return jsonify({"error": "database_error"}), 500


@bp_operations.post("/treatment-courses")
def create_treatment_course() -> tuple[dict[str, object], int]:
    """Sell a course of sessions to a client (staff or admin).
    ---
    tags:
      - Treatment Courses
    security:
      - Bearer: []
    parameters:
      - in: body
        name: body
        required: true
        schema:
          properties:
            client_id:
              type: integer
            service_id:
              type: integer
            total_sessions:
              type: integer
            start_date:
              type: string
              format: date
            duration_weeks:
              type: integer
            frequency_type:
              type: string
              enum: [weeks_per_session, sessions_per_week]
            frequency_value:
              type: integer
            therapist_id:
              type: integer
            total_amount:
              type: number
    responses:
      201:
        description: Course created, expiry date derived from start date and duration
      400:
        description: Invalid input
      401:
        description: Authentication required
      403:
        description: Staff or admin access required
      404:
        description: Client or service not found
      500:
        description: Database error
    """
    _, denied = _current_user("staff", "admin")
    if denied:
        return denied

    values, error = _parse_course_payload(request.get_json(silent=True) or {})
    if error:
        return jsonify({"error": "invalid_payload", "message": error}), 400

    try:
        client = User.query.get(values["client_id"])
        if not client or client.role != "client":
            return jsonify({"error": "not_found", "message": "Client not found"}), 404
        service = Service.query.get(values["service_id"])
        if not service:
            return jsonify({"error": "not_found", "message": "Service not found"}), 404

        course = TreatmentCourse(**values)
        course.expiry_date = course_expiry(course.start_date, course.duration_weeks)
        if course.total_amount is None:
            course.total_amount = Decimal(str(service.price)) * course.total_sessions
        db.session.add(course)
        db.session.commit()

        current_app.logger.info(
            "Treatment course %s created for client %s (%s sessions)",
            course.course_id, course.client_id, course.total_sessions,
        )
        return jsonify({"course": course.to_dict()}), 201
    except SQLAlchemyError as exc:
        db.session.rollback()
        current_app.logger.exception("Failed to create treatment course", exc_info=exc)
        return jsonify({"error": "database_error"}), 500


@bp_operations.put("/treatment-courses/<int:course_id>")
def update_treatment_course(course_id: int) -> tuple[dict[str, object], int]:
    _, denied = _current_user("staff", "admin")
    if denied:
        return denied

    values, error = _parse_course_payload(request.get_json(silent=True) or {}, partial=True)
    if error:
        return jsonify({"error": "invalid_payload", "message": error}), 400

    try:
        course = TreatmentCourse.query.get(course_id)
        if not course:
            return jsonify({"error": "not_found", "message": "Treatment course not found"}), 404

        for field, value in values.items():
            setattr(course, field, value)
        if "start_date" in values or "duration_weeks" in values:
            course.expiry_date = course_expiry(course.start_date, course.duration_weeks)
        if course.completed_sessions > course.total_sessions:
            db.session.rollback()
            return jsonify({"error": "invalid_payload", "message": "total_sessions is below completed sessions"}), 400

        db.session.commit()
        return jsonify({"course": course.to_dict()}), 200
    except SQLAlchemyError as exc:
        db.session.rollback()
        current_app.logger.exception("Failed to update treatment course", exc_info=exc)
        return jsonify({"error": "database_error"}), 500


@bp_operations.delete("/treatment-courses/<int:course_id>")
def delete_treatment_course(course_id: int):
    _, denied = _current_user("admin")
    if denied:
        return denied

    try:
        course = TreatmentCourse.query.get(course_id)
        if not course:
            return jsonify({"error": "not_found", "message": "Treatment course not found"}), 404
        db.session.delete(course)
        db.session.commit()
        return "", 204
    except SQLAlchemyError as exc:
        db.session.rollback()
        current_app.logger.exception("Failed to delete treatment course", exc_info=exc)
        return jsonify({"error": "database_error"}), 500


@bp_operations.post("/treatment-courses/<int:course_id>/sessions")
def complete_treatment_session(course_id: int) -> tuple[dict[str, object], int]:
    """Record one completed session; the course completes with its last session."""
    caller, denied = _current_user("staff", "admin")
    if denied:
        return denied

    payload = request.get_json(silent=True) or {}
    try:
        session_date = date.fromisoformat(str(payload["session_date"])) if payload.get("session_date") else date.today()
        appointment_id = int(payload["appointment_id"]) if payload.get("appointment_id") else None
    except (TypeError, ValueError):
        return jsonify({"error": "invalid_format", "message": "session_date must be YYYY-MM-DD"}), 400

    try:
        course = TreatmentCourse.query.get(course_id)
        if not course:
            return jsonify({"error": "not_found", "message": "Treatment course not found"}), 404

        refresh_course_status(course, session_date)
        if course.status != "active":
            db.session.commit()
            return jsonify({"error": "course_not_active", "message": f"Course is {course.status}"}), 409

        course.completed_sessions = (course.completed_sessions or 0) + 1
        session = TreatmentSession(
            course=course,
            appointment_id=appointment_id,
            staff_id=caller.user_id,
            session_number=course.completed_sessions,
            session_date=session_date,
            status="completed",
            notes=(payload.get("notes") or "").strip() or None,
            completed_at=datetime.now(timezone.utc),
        )
        db.session.add(session)
        if course.completed_sessions >= course.total_sessions:
            course.status = "completed"
        db.session.commit()

        return jsonify({"session": session.to_dict(), "course": course.to_dict()}), 201
    except SQLAlchemyError as exc:
        db.session.rollback()
        current_app.logger.exception("Failed to record treatment session", exc_info=exc)
        return jsonify({"error": "database_error"}), 500
