"""pytest configuration: path management and shared fixtures."""
from __future__ import annotations

import sys
from datetime import date
from decimal import Decimal
from pathlib import Path

import pytest

# Ensure the project root is available on sys.path so tests can import the spahub package.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from itsdangerous import URLSafeTimedSerializer  # noqa: E402

from spahub import create_app  # noqa: E402
from spahub.config import TestingConfig  # noqa: E402
from spahub.extensions import db  # noqa: E402
from spahub.models import CustomerProfile, Service, Tier, User, Wallet  # noqa: E402


@pytest.fixture
def app():
    flask_app = create_app(TestingConfig)
    with flask_app.app_context():
        db.create_all()
        yield flask_app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def tiers(app):
    rows = [
        Tier(level=1, name="Member", points_required=0, min_spending_required=Decimal("0")),
        Tier(level=2, name="Silver", points_required=500, min_spending_required=Decimal("5000000")),
        Tier(level=3, name="Gold", points_required=1500, min_spending_required=Decimal("15000000")),
    ]
    db.session.add_all(rows)
    db.session.commit()
    return rows


@pytest.fixture
def make_user(app, tiers):
    """Create a user with a loyalty profile and wallet."""
    def _make_user(
        email: str,
        role: str = "client",
        birthday: date | None = None,
        points: int = 0,
        spending: int = 0,
        tier_level: int = 1,
    ) -> int:
        user = User(name=email.split("@")[0].title(), email=email, role=role, birthday=birthday)
        db.session.add(user)
        db.session.flush()
        db.session.add(CustomerProfile(
            user_id=user.user_id,
            tier_level=tier_level,
            total_spending=Decimal(spending),
        ))
        db.session.add(Wallet(user_id=user.user_id, points=points))
        db.session.commit()
        return user.user_id

    return _make_user


@pytest.fixture
def service(app):
    svc = Service(name="Hot Stone Massage", price=Decimal("6000000"), duration_minutes=90)
    db.session.add(svc)
    db.session.commit()
    return svc.service_id


@pytest.fixture
def auth_header(app):
    def _auth_header(user_id: int) -> dict[str, str]:
        serializer = URLSafeTimedSerializer(app.config["SECRET_KEY"], salt="auth-token")
        return {"Authorization": f"Bearer {serializer.dumps({'user_id': user_id})}"}

    return _auth_header


@pytest.fixture
def admin_header(make_user, auth_header):
    admin_id = make_user("admin@spahub.test", role="admin")
    return auth_header(admin_id)
