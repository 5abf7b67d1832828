"""Tests for the promotion listing, management and redemption endpoints."""
from __future__ import annotations

from datetime import date, datetime, timedelta
from decimal import Decimal

import pytest

from spahub.extensions import db
from spahub.models import Appointment, Notification, Promotion, PromotionUsage, Wallet


def _add_promotion(code: str, **overrides) -> int:
    values = {
        "title": f"Promotion {code}",
        "code": code,
        "discount_type": "percentage",
        "discount_value": Decimal("10"),
        "target_audience": "All",
        "expiry_date": date.today() + timedelta(days=30),
        "is_active": True,
        "is_public": "1",
    }
    values.update(overrides)
    promotion = Promotion(**values)
    db.session.add(promotion)
    db.session.commit()
    return promotion.promotion_id


def _add_appointment(user_id: int, service_id: int, **overrides) -> int:
    values = {
        "user_id": user_id,
        "service_id": service_id,
        "starts_at": datetime(2026, 6, 1, 10, 0),
        "status": "scheduled",
    }
    values.update(overrides)
    appointment = Appointment(**values)
    db.session.add(appointment)
    db.session.commit()
    return appointment.appointment_id


def _birthday_today() -> date:
    today = date.today()
    return date(2000, today.month, today.day)


@pytest.fixture
def catalogue(app):
    return {
        "BDAY": _add_promotion("BDAY", target_audience="Birthday", is_public="0"),
        "WELCOME": _add_promotion("WELCOME", target_audience="New Clients"),
        "ALL10": _add_promotion("ALL10"),
        "HIDDEN": _add_promotion("HIDDEN", is_public="0"),
        "OLD": _add_promotion("OLD", expiry_date=date.today() - timedelta(days=1)),
        "SILVER": _add_promotion("SILVER", target_audience="Tier Level 2"),
        "EMPTY": _add_promotion("EMPTY", stock=0),
    }


def test_general_listing_only_has_public_untargeted(client, catalogue) -> None:
    response = client.get("/promotions")

    assert response.status_code == 200
    assert [p["code"] for p in response.json["promotions"]] == ["ALL10"]
    assert response.json["redeemable_with_points"] == []


def test_user_listing_splits_personal_and_general(client, make_user, catalogue) -> None:
    user_id = make_user("hoa@spahub.test", birthday=_birthday_today())

    response = client.get(f"/users/{user_id}/promotions")

    assert response.status_code == 200
    assert sorted(p["code"] for p in response.json["personal"]) == ["BDAY", "WELCOME"]
    assert [p["code"] for p in response.json["general"]] == ["ALL10"]


def test_user_listing_for_returning_silver_client(client, make_user, service, catalogue) -> None:
    user_id = make_user("khanh@spahub.test", tier_level=2)
    _add_appointment(user_id, service, status="completed", payment_status="Paid")

    response = client.get(f"/users/{user_id}/promotions")

    assert [p["code"] for p in response.json["personal"]] == ["SILVER"]
    assert [p["code"] for p in response.json["general"]] == ["ALL10"]


def test_user_listing_unknown_user(client, tiers) -> None:
    assert client.get("/users/404/promotions").status_code == 404


def test_get_promotion(client, catalogue) -> None:
    response = client.get(f"/promotions/{catalogue['ALL10']}")

    assert response.status_code == 200
    assert response.json["promotion"]["code"] == "ALL10"
    assert client.get("/promotions/9999").status_code == 404


def test_admin_creates_promotion(client, admin_header) -> None:
    payload = {
        "title": "Summer glow",
        "code": "SUMMER",
        "discount_type": "fixed",
        "discount_value": 100000,
        "expiry_date": "2030-08-31",
        "target_audience": "VIP",
        "is_public": 1,
        "stock": 20,
    }

    response = client.post("/promotions", json=payload, headers=admin_header)

    assert response.status_code == 201
    promotion = response.json["promotion"]
    assert promotion["code"] == "SUMMER"
    assert promotion["is_public"] is True
    assert promotion["target_audience"] == "VIP"
    assert promotion["stock"] == 20

    duplicate = client.post("/promotions", json=payload, headers=admin_header)
    assert duplicate.status_code == 409


def test_create_promotion_validates_payload(client, admin_header) -> None:
    missing = client.post("/promotions", json={"title": "No code"}, headers=admin_header)
    assert missing.status_code == 400

    bad_audience = client.post(
        "/promotions",
        json={"title": "X", "code": "X1", "expiry_date": "2030-01-01", "discount_value": 5, "target_audience": "Everyone"},
        headers=admin_header,
    )
    assert bad_audience.status_code == 400


def test_create_promotion_requires_admin(client, make_user, auth_header) -> None:
    user_id = make_user("lan@spahub.test")
    payload = {"title": "X", "code": "X2", "expiry_date": "2030-01-01", "discount_value": 5}

    assert client.post("/promotions", json=payload).status_code == 401
    assert client.post("/promotions", json=payload, headers=auth_header(user_id)).status_code == 403


def test_update_and_delete_promotion(client, admin_header, catalogue) -> None:
    promotion_id = catalogue["ALL10"]

    updated = client.put(
        f"/promotions/{promotion_id}", json={"discount_value": 15, "is_public": "0"}, headers=admin_header
    )
    assert updated.status_code == 200
    assert updated.json["promotion"]["discount_value"] == 15.0
    assert updated.json["promotion"]["is_public"] is False

    deleted = client.delete(f"/promotions/{promotion_id}", headers=admin_header)
    assert deleted.status_code == 204
    assert client.get(f"/promotions/{promotion_id}").json["promotion"]["is_active"] is False


def test_apply_computes_capped_discount_and_records_usage(client, make_user, service, auth_header) -> None:
    promotion_id = _add_promotion("SPA10", max_discount=Decimal("50000"))
    user_id = make_user("minh@spahub.test")
    appointment_id = _add_appointment(user_id, service)

    response = client.post(
        "/promotions/apply/SPA10",
        json={"user_id": user_id, "order_value": 1000000, "service_id": service, "appointment_id": appointment_id},
        headers=auth_header(user_id),
    )

    assert response.status_code == 200
    assert response.json["discount"] == 50000.0
    assert response.json["final_amount"] == 950000.0
    assert response.json["recorded"] is True
    assert PromotionUsage.query.filter_by(user_id=user_id).count() == 1
    assert db.session.get(Appointment, appointment_id).promotion_id == promotion_id

    again = client.post(
        "/promotions/apply/SPA10", json={"user_id": user_id, "order_value": 1000000}, headers=auth_header(user_id)
    )
    assert again.status_code == 400
    assert again.json == {"error": "promotion_not_applicable", "message": "already_used"}


def test_apply_without_appointment_is_a_preview(client, make_user, auth_header) -> None:
    _add_promotion("PREVIEW", discount_type="fixed", discount_value=Decimal("200000"), stock=3)
    user_id = make_user("nga@spahub.test")

    first = client.post("/promotions/apply/PREVIEW", json={"order_value": 500000}, headers=auth_header(user_id))
    second = client.post("/promotions/apply/PREVIEW", json={"order_value": 500000}, headers=auth_header(user_id))

    assert first.status_code == second.status_code == 200
    assert first.json["recorded"] is False
    assert second.json["promotion"]["stock"] == 3


def test_apply_rejections(client, make_user, auth_header) -> None:
    _add_promotion("BIGSPEND", min_order_value=Decimal("2000000"))
    _add_promotion("BIRTHDAY", target_audience="Birthday")
    user_id = make_user("oanh@spahub.test", birthday=(date.today() + timedelta(days=1)).replace(year=2000))
    headers = auth_header(user_id)

    below = client.post("/promotions/apply/BIGSPEND", json={"order_value": 1000000}, headers=headers)
    assert below.status_code == 400
    assert below.json["message"] == "below_min_order_value"

    birthday = client.post("/promotions/apply/BIRTHDAY", json={"order_value": 1000000}, headers=headers)
    assert birthday.status_code == 400
    assert birthday.json["message"] == "not_birthday"

    unknown = client.post("/promotions/apply/NOPE", json={"order_value": 1000000}, headers=headers)
    assert unknown.status_code == 404

    bad_user = client.post("/promotions/apply/BIGSPEND", json={"user_id": "me", "order_value": 1000000}, headers=headers)
    assert bad_user.status_code == 400


def test_apply_requires_the_clients_own_token(client, make_user, service, auth_header) -> None:
    _add_promotion("MINE")
    owner_id = make_user("phat@spahub.test")
    other_id = make_user("quyen@spahub.test")
    appointment_id = _add_appointment(owner_id, service)
    body = {"user_id": owner_id, "order_value": 1000000, "appointment_id": appointment_id}

    anonymous = client.post("/promotions/apply/MINE", json=body)
    assert anonymous.status_code == 401

    impostor = client.post("/promotions/apply/MINE", json=body, headers=auth_header(other_id))
    assert impostor.status_code == 403
    assert PromotionUsage.query.count() == 0


def test_apply_checks_the_appointment(client, make_user, service, auth_header) -> None:
    _add_promotion("CHECKED")
    user_id = make_user("sang@spahub.test")
    other_id = make_user("tam@spahub.test")
    foreign_id = _add_appointment(other_id, service)
    paid_id = _add_appointment(user_id, service, payment_status="Paid")
    headers = auth_header(user_id)

    def apply(appointment_id):
        return client.post(
            "/promotions/apply/CHECKED",
            json={"order_value": 1000000, "appointment_id": appointment_id},
            headers=headers,
        )

    assert apply(9999).status_code == 404
    assert apply(foreign_id).status_code == 403
    paid = apply(paid_id)
    assert paid.status_code == 409
    assert paid.json["error"] == "already_paid"

    assert PromotionUsage.query.count() == 0
    assert db.session.get(Appointment, foreign_id).promotion_id is None
    assert db.session.get(Appointment, paid_id).promotion_id is None


def test_apply_accepts_service_id_as_string(client, make_user, service, auth_header) -> None:
    _add_promotion("ONLYHERE", target_audience="New Clients", applicable_service_ids=[service])
    user_id = make_user("uyen@spahub.test")

    response = client.post(
        "/promotions/apply/ONLYHERE",
        json={"order_value": 1000000, "service_id": str(service)},
        headers=auth_header(user_id),
    )

    assert response.status_code == 200
    assert response.json["discount"] == 100000.0

    elsewhere = client.post(
        "/promotions/apply/ONLYHERE",
        json={"order_value": 1000000, "service_id": str(service + 1)},
        headers=auth_header(user_id),
    )
    assert elsewhere.json["message"] == "service_not_applicable"


def test_redeem_voucher_with_points(client, make_user, auth_header) -> None:
    voucher_id = _add_promotion("PTS300", is_public="0", points_required=300, stock=5)
    user_id = make_user("phuong@spahub.test", points=500)

    listing = client.get("/promotions").json
    assert [p["code"] for p in listing["redeemable_with_points"]] == ["PTS300"]

    response = client.post(f"/promotions/{voucher_id}/redeem", headers=auth_header(user_id))

    assert response.status_code == 200
    assert response.json["code"] == "PTS300"
    assert response.json["wallet"]["points"] == 200

    assert Wallet.query.filter_by(user_id=user_id).one().points == 200
    assert db.session.get(Promotion, voucher_id).stock == 4
    assert Notification.query.filter_by(user_id=user_id, notification_type="promotion").count() == 1


def test_redeem_rejections(client, make_user, auth_header) -> None:
    voucher_id = _add_promotion("PTS900", is_public="0", points_required=900)
    public_id = _add_promotion("OPEN", points_required=100)
    user_id = make_user("quang@spahub.test", points=100)

    assert client.post(f"/promotions/{voucher_id}/redeem").status_code == 401

    short = client.post(f"/promotions/{voucher_id}/redeem", headers=auth_header(user_id))
    assert short.status_code == 400
    assert short.json["error"] == "insufficient_points"

    assert client.post(f"/promotions/{public_id}/redeem", headers=auth_header(user_id)).status_code == 404


def test_booking_with_promotion_code(client, make_user, service) -> None:
    _add_promotion("WELCOME", target_audience="New Clients", applicable_service_ids=[service])
    _add_promotion("BDAYONLY", target_audience="Birthday")
    user_id = make_user("son@spahub.test")

    booked = client.post(
        "/appointments",
        json={"user_id": user_id, "service_id": service, "starts_at": "2026-06-01T10:00:00", "promotion_code": "WELCOME"},
    )
    assert booked.status_code == 201
    assert booked.json["appointment"]["promotion_id"] is not None
    assert booked.json["appointment"]["status"] == "scheduled"

    rejected = client.post(
        "/appointments",
        json={"user_id": user_id, "service_id": service, "starts_at": "2026-06-02T10:00:00", "promotion_code": "BDAYONLY"},
    )
    assert rejected.status_code == 400
    assert rejected.json["message"] == "not_birthday"


def test_one_use_code_cannot_be_booked_twice(client, make_user, service) -> None:
    _add_promotion("ONCE")
    user_id = make_user("vy@spahub.test")

    def book(day):
        return client.post(
            "/appointments",
            json={"user_id": user_id, "service_id": service, "starts_at": f"2026-06-0{day}T10:00:00", "promotion_code": "ONCE"},
        )

    first = book(1)
    assert first.status_code == 201

    second = book(2)
    assert second.status_code == 400
    assert second.json == {"error": "promotion_not_applicable", "message": "already_used"}

    cancelled = client.put(f"/appointments/{first.json['appointment']['id']}/status", json={"status": "cancelled"})
    assert cancelled.status_code == 200
    assert book(3).status_code == 201
