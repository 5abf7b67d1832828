#!/usr/bin/env python3
"""Recompute lifetime spending and re-run the tier evaluator for every client.

Useful after importing payments directly into the database.
"""
from __future__ import annotations

import argparse
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from spahub import create_app
from spahub.extensions import db
from spahub.loyalty import calculate_total_spending, check_and_upgrade_tier, get_or_create_profile
from spahub.models import User


def sync_all_tiers(dry_run: bool = False) -> int:
    app = create_app()
    upgraded_count = 0

    with app.app_context():
        clients = User.query.filter_by(role="client").order_by(User.user_id).all()
        print(f"🔄 Syncing tiers for {len(clients)} clients...")

        for user in clients:
            profile = get_or_create_profile(user)
            previous = profile.tier_level
            profile.total_spending = calculate_total_spending(user.user_id)
            db.session.flush()

            if check_and_upgrade_tier(user):
                upgraded_count += 1
                print(f"⬆️  {user.email}: tier {previous} → {profile.tier_level}")

        if dry_run:
            db.session.rollback()
            print("ℹ️  Dry run, no changes saved")
        else:
            db.session.commit()

        print(f"✅ Done. {upgraded_count} clients upgraded")

    return upgraded_count


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Recompute spending and tiers for all clients.")
    parser.add_argument("--dry-run", action="store_true", help="Report upgrades without saving them")
    return parser.parse_args()


def main() -> None:
    args = parse_args()
    sync_all_tiers(dry_run=args.dry_run)


if __name__ == "__main__":
    main()
