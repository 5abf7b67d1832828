"""Utility to seed or update user account passwords for local development."""
from __future__ import annotations

import argparse
import sys
from pathlib import Path

from werkzeug.security import generate_password_hash

# Ensure the project root is on sys.path so ``spahub`` can be imported when the script is executed directly.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from spahub import create_app
from spahub.extensions import db
from spahub.loyalty import get_or_create_profile, get_or_create_wallet
from spahub.models import AuthAccount, User

ROLES = ["client", "staff", "admin"]


def set_password(email: str, password: str, role: str = "admin", name: str | None = None) -> None:
    app = create_app()
    display_name = name or f"SpaHub {role.title()}"

    with app.app_context():
        user = User.query.filter_by(email=email.lower()).first()
        if user is None:
            user = User(name=display_name, email=email.lower(), role=role)
            db.session.add(user)
            db.session.flush()
            print(f"Created new {role} user: {email}")
        elif user.role != role:
            print(f"Updating user role from '{user.role}' to '{role}'")
            user.role = role

        if role == "client":
            get_or_create_profile(user)
            get_or_create_wallet(user)

        account = AuthAccount.query.filter_by(user_id=user.user_id).first()
        if account is None:
            account = AuthAccount(user_id=user.user_id)
            db.session.add(account)
            print(f"Created auth account for user: {email}")

        account.password_hash = generate_password_hash(password)
        db.session.commit()

        print(f"Password for {role} user '{email}' has been set successfully.")


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Set a user password for local testing.")
    parser.add_argument("email", help="User email address")
    parser.add_argument("password", help="Plain-text password to hash and store")
    parser.add_argument("--role", choices=ROLES, default="admin", help="User role (default: admin)")
    parser.add_argument("--name", help="Display name used when the account is created")
    return parser.parse_args()


def main() -> None:
    args = parse_args()
    set_password(args.email, args.password, args.role, args.name)


if __name__ == "__main__":
    main()
