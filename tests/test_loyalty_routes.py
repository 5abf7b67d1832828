"""Tests for the tier, wallet and points-history endpoints."""
from __future__ import annotations

from decimal import Decimal

from spahub.extensions import db
from spahub.loyalty import award_points
from spahub.models import CustomerProfile, Notification, Payment, User


def _completed_payment(user_id: int, amount: str, ref: str) -> None:
    db.session.add(Payment(
        user_id=user_id,
        amount=Decimal(amount),
        method="Pay at Counter",
        status="Completed",
        transaction_ref=ref,
    ))
    db.session.commit()


def test_list_tiers_is_ordered(client, tiers) -> None:
    response = client.get("/tiers")

    assert response.status_code == 200
    levels = [tier["level"] for tier in response.json["tiers"]]
    assert levels == [1, 2, 3]
    assert response.json["tiers"][1]["min_spending_required"] == 5000000.0


def test_loyalty_summary_reports_progress(client, make_user) -> None:
    user_id = make_user("linh@spahub.test", points=200, spending=1_000_000)

    response = client.get(f"/users/{user_id}/loyalty")

    assert response.status_code == 200
    body = response.json
    assert body["points"] == 200
    assert body["tier_level"] == 1
    assert body["current_tier"]["name"] == "Member"
    assert body["next_tier"]["name"] == "Silver"
    assert body["progress"] == {"points_remaining": 300, "spending_remaining": 4000000.0}


def test_loyalty_summary_at_top_tier(client, make_user) -> None:
    user_id = make_user("gold@spahub.test", points=2000, spending=20_000_000, tier_level=3)

    body = client.get(f"/users/{user_id}/loyalty").json

    assert body["next_tier"] is None
    assert body["progress"] is None


def test_loyalty_summary_unknown_user(client, tiers) -> None:
    response = client.get("/users/999/loyalty")

    assert response.status_code == 404
    assert response.json == {"error": "user_not_found"}


def test_evaluate_upgrades_from_completed_payments(client, make_user, admin_header) -> None:
    user_id = make_user("mai@spahub.test", points=600)
    _completed_payment(user_id, "6000000", "TXN-EVAL0001")

    response = client.post(f"/users/{user_id}/loyalty/evaluate", headers=admin_header)

    assert response.status_code == 200
    assert response.json["upgraded"] is True
    assert response.json["profile"]["tier_level"] == 2
    assert response.json["profile"]["total_spending"] == 6000000.0

    profile = db.session.get(CustomerProfile, user_id)
    assert profile.tier_level == 2
    assert profile.last_tier_upgrade_date is not None


def test_evaluate_without_enough_points_keeps_tier(client, make_user, admin_header) -> None:
    user_id = make_user("an@spahub.test", points=100)
    _completed_payment(user_id, "9000000", "TXN-EVAL0002")

    response = client.post(f"/users/{user_id}/loyalty/evaluate", headers=admin_header)

    assert response.status_code == 200
    assert response.json["upgraded"] is False
    assert response.json["profile"]["tier_level"] == 1
    assert response.json["profile"]["last_tier_upgrade_date"] is None


def test_evaluate_requires_token(client, make_user) -> None:
    user_id = make_user("binh@spahub.test")

    response = client.post(f"/users/{user_id}/loyalty/evaluate")

    assert response.status_code == 401


def test_evaluate_rejects_clients(client, make_user, auth_header) -> None:
    user_id = make_user("chi@spahub.test")

    response = client.post(f"/users/{user_id}/loyalty/evaluate", headers=auth_header(user_id))

    assert response.status_code == 403
    assert response.json["error"] == "forbidden"


def test_points_history_lists_entries(client, make_user) -> None:
    user_id = make_user("dung@spahub.test")
    user = db.session.get(User, user_id)
    award_points(user, 150, "payment", "Payment TXN-1")
    award_points(user, -50, "redemption", "Redeemed voucher")
    db.session.commit()

    response = client.get(f"/users/{user_id}/points-history")

    assert response.status_code == 200
    changes = sorted(entry["points_change"] for entry in response.json["history"])
    assert changes == [-50, 150]
    types = {entry["points_change"]: entry["type"] for entry in response.json["history"]}
    assert types == {150: "earned", -50: "spent"}


def test_notifications_paginate_and_mark_read(client, make_user) -> None:
    user_id = make_user("em@spahub.test")
    for index in range(3):
        db.session.add(Notification(
            user_id=user_id,
            title=f"Notice {index}",
            message="Hello",
            notification_type="promotion",
        ))
    db.session.commit()

    page = client.get(f"/users/{user_id}/notifications?limit=2")

    assert page.status_code == 200
    assert len(page.json["notifications"]) == 2
    assert page.json["pagination"] == {"page": 1, "limit": 2, "total": 3, "pages": 2}

    notification_id = page.json["notifications"][0]["id"]
    marked = client.put(f"/notifications/{notification_id}/read")
    assert marked.status_code == 200
    assert marked.json["notification"]["is_read"] is True

    unread = client.get(f"/users/{user_id}/notifications?unread_only=true")
    assert unread.json["pagination"]["total"] == 2

    assert client.get(f"/users/{user_id}/notifications?page=abc").status_code == 400

    read_all = client.put(f"/users/{user_id}/notifications/read-all")
    assert read_all.json == {"updated": 2}
    assert client.get(f"/users/{user_id}/notifications?unread_only=true").json["pagination"]["total"] == 0
