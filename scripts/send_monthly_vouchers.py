#!/usr/bin/env python3
"""Send this month's tier voucher to every client.

Meant to run from cron on the first day of each month. Clients who already
received the voucher for the month are skipped, so re-running is safe.
"""
from __future__ import annotations

import argparse
import sys
from datetime import datetime
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from spahub import create_app
from spahub.extensions import db
from spahub.monthly_vouchers import send_monthly_tier_vouchers


def send_vouchers(month=None, tier_level=None, dry_run: bool = False) -> dict:
    app = create_app()

    with app.app_context():
        summary = send_monthly_tier_vouchers(today=month, tier_level=tier_level)

        for result in summary["details"]:
            if result["status"] == "failed":
                print(f"❌ user {result['user_id']}: {result['message']}")
            elif result["status"] == "sent":
                print(f"🎁 user {result['user_id']}: {result['code']}")

        if dry_run:
            db.session.rollback()
            print("ℹ️  Dry run, no vouchers saved")
        else:
            db.session.commit()

        print(
            f"✅ {summary['month']}: {summary['sent']} sent, "
            f"{summary['skipped']} skipped, {summary['failed']} failed"
        )

    return summary


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Send monthly tier vouchers to clients.")
    parser.add_argument(
        "--month",
        type=lambda value: datetime.strptime(value, "%Y-%m").date(),
        help="Month to send for, as YYYY-MM (default: current month)",
    )
    parser.add_argument("--tier", type=int, dest="tier_level", help="Only send to clients at this tier level")
    parser.add_argument("--dry-run", action="store_true", help="Report what would be sent without saving")
    return parser.parse_args()


def main() -> None:
    args = parse_args()
    send_vouchers(month=args.month, tier_level=args.tier_level, dry_run=args.dry_run)


if __name__ == "__main__":
    main()
