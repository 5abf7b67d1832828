"""Tests for staff shifts and treatment courses."""
from __future__ import annotations

from datetime import date, timedelta

import pytest

from spahub.extensions import db
from spahub.models import StaffShift, TreatmentCourse


@pytest.fixture
def staff(make_user, auth_header):
    staff_id = make_user("therapist@spahub.test", role="staff")
    return staff_id, auth_header(staff_id)


def _shift_payload(staff_id: int, **overrides) -> dict[str, object]:
    payload = {
        "staff_id": staff_id,
        "date": "2026-06-01",
        "shift_type": "morning",
        "shift_hours": {"start": "08:00", "end": "12:00"},
        "room": "R2",
    }
    payload.update(overrides)
    return payload


def test_staff_requests_shift_and_admin_approves(client, staff, admin_header) -> None:
    staff_id, headers = staff

    created = client.post("/staff/shifts", json=_shift_payload(staff_id), headers=headers)

    assert created.status_code == 201
    shift = created.json["shift"]
    assert shift["status"] == "pending"
    assert shift["shift_hours"] == {"start": "08:00", "end": "12:00"}
    assert shift["requested_by"] == staff_id

    self_approval = client.put(f"/staff/shifts/{shift['id']}", json={"status": "approved"}, headers=headers)
    assert self_approval.status_code == 403

    approved = client.put(f"/staff/shifts/{shift['id']}", json={"status": "approved"}, headers=admin_header)
    assert approved.status_code == 200
    assert approved.json["shift"]["status"] == "approved"

    listing = client.get(f"/staff/{staff_id}/shifts")
    assert [s["id"] for s in listing.json["shifts"]] == [shift["id"]]
    assert client.get("/staff/shifts?status=pending").json["shifts"] == []


def test_shift_validation(client, staff, make_user, auth_header) -> None:
    staff_id, headers = staff
    client_id = make_user("guest@spahub.test")

    missing = client.post("/staff/shifts", json={"staff_id": staff_id}, headers=headers)
    assert missing.status_code == 400

    bad_type = client.post("/staff/shifts", json=_shift_payload(staff_id, shift_type="night"), headers=headers)
    assert bad_type.status_code == 400
    assert bad_type.json["error"] == "invalid_format"

    bad_hours = client.post(
        "/staff/shifts", json=_shift_payload(staff_id, shift_hours={"start": "14:00", "end": "9am"}), headers=headers
    )
    assert bad_hours.status_code == 400

    for someone_else in (client_id, staff_id + 100):
        other = client.post("/staff/shifts", json=_shift_payload(someone_else), headers=headers)
        assert other.status_code == 403

    assert client.post("/staff/shifts", json=_shift_payload(staff_id)).status_code == 401
    assert client.post("/staff/shifts", json=_shift_payload(staff_id), headers=auth_header(client_id)).status_code == 403
    assert StaffShift.query.count() == 0


def test_leave_request_can_be_deleted(client, staff) -> None:
    staff_id, headers = staff
    shift_id = client.post(
        "/staff/shifts", json=_shift_payload(staff_id, shift_type="leave", shift_hours=None), headers=headers
    ).json["shift"]["id"]

    assert client.delete(f"/staff/shifts/{shift_id}", headers=headers).status_code == 204
    assert client.delete(f"/staff/shifts/{shift_id}", headers=headers).status_code == 404


def _course_payload(client_id: int, service_id: int, **overrides) -> dict[str, object]:
    payload = {
        "client_id": client_id,
        "service_id": service_id,
        "total_sessions": 2,
        "start_date": date.today().isoformat(),
        "duration_weeks": 4,
        "frequency_type": "weeks_per_session",
        "frequency_value": 2,
    }
    payload.update(overrides)
    return payload


def test_treatment_course_runs_to_completion(client, make_user, service, staff) -> None:
    _, headers = staff
    client_id = make_user("course@spahub.test")

    created = client.post("/treatment-courses", json=_course_payload(client_id, service), headers=headers)

    assert created.status_code == 201
    course = created.json["course"]
    assert course["status"] == "active"
    assert course["expiry_date"] == (date.today() + timedelta(weeks=4)).isoformat()
    assert course["total_amount"] == 12000000.0
    assert course["remaining_sessions"] == 2

    for number in (1, 2):
        recorded = client.post(f"/treatment-courses/{course['id']}/sessions", json={}, headers=headers)
        assert recorded.status_code == 201
        assert recorded.json["session"]["session_number"] == number

    assert recorded.json["course"]["status"] == "completed"
    extra = client.post(f"/treatment-courses/{course['id']}/sessions", json={}, headers=headers)
    assert extra.status_code == 409

    detail = client.get(f"/treatment-courses/{course['id']}")
    assert [s["session_number"] for s in detail.json["course"]["sessions"]] == [1, 2]
    assert client.get(f"/treatment-courses?client_id={client_id}").json["courses"][0]["id"] == course["id"]


def test_expired_course_takes_no_more_sessions(client, make_user, service, staff) -> None:
    _, headers = staff
    client_id = make_user("late@spahub.test")
    start = (date.today() - timedelta(weeks=6)).isoformat()
    course_id = client.post(
        "/treatment-courses", json=_course_payload(client_id, service, start_date=start), headers=headers
    ).json["course"]["id"]

    response = client.post(f"/treatment-courses/{course_id}/sessions", json={}, headers=headers)

    assert response.status_code == 409
    assert db.session.get(TreatmentCourse, course_id).status == "expired"


def test_treatment_course_management(client, make_user, service, staff, admin_header) -> None:
    _, headers = staff
    client_id = make_user("manage@spahub.test")

    invalid = client.post(
        "/treatment-courses", json=_course_payload(client_id, service, total_sessions=0), headers=headers
    )
    assert invalid.status_code == 400
    assert client.post("/treatment-courses", json=_course_payload(client_id, 999), headers=headers).status_code == 404
    assert client.post("/treatment-courses", json=_course_payload(client_id, service)).status_code == 401

    course_id = client.post(
        "/treatment-courses", json=_course_payload(client_id, service), headers=headers
    ).json["course"]["id"]

    updated = client.put(
        f"/treatment-courses/{course_id}", json={"duration_weeks": 8, "payment_status": "Paid"}, headers=headers
    )
    assert updated.status_code == 200
    assert updated.json["course"]["expiry_date"] == (date.today() + timedelta(weeks=8)).isoformat()
    assert updated.json["course"]["payment_status"] == "Paid"

    assert client.delete(f"/treatment-courses/{course_id}", headers=headers).status_code == 403
    assert client.delete(f"/treatment-courses/{course_id}", headers=admin_header).status_code == 204
    assert client.get(f"/treatment-courses/{course_id}").status_code == 404
