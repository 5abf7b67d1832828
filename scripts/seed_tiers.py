#!/usr/bin/env python3
"""Insert or refresh the loyalty tier table."""
from __future__ import annotations

import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from spahub import create_app
from spahub.extensions import db
from spahub.loyalty import DEFAULT_TIERS
from spahub.models import Tier


def seed_tiers() -> None:
    app = create_app()

    with app.app_context():
        db.create_all()
        for row in DEFAULT_TIERS:
            tier = Tier.query.get(row["level"])
            if tier is None:
                db.session.add(Tier(**row))
                print(f"✅ Created tier {row['level']} ({row['name']})")
            else:
                for field, value in row.items():
                    setattr(tier, field, value)
                print(f"🔄 Updated tier {row['level']} ({row['name']})")
        db.session.commit()


if __name__ == "__main__":
    seed_tiers()
