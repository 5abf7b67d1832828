#!/usr/bin/env python3
"""Create the SpaHub tables, optionally seeding the tier table."""
import argparse
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from spahub import create_app
from spahub.extensions import db
from spahub.loyalty import DEFAULT_TIERS
from spahub.models import Tier


def init_database(with_tiers: bool = False) -> None:
    app = create_app()
    with app.app_context():
        db.create_all()
        print(f"✅ Tables ready on {app.config['SQLALCHEMY_DATABASE_URI']}")

        if with_tiers and Tier.query.count() == 0:
            db.session.add_all(Tier(**row) for row in DEFAULT_TIERS)
            db.session.commit()
            print(f"✅ Seeded {len(DEFAULT_TIERS)} loyalty tiers")


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("--with-tiers", action="store_true", help="Insert the default tiers when the table is empty")
    init_database(parser.parse_args().with_tiers)
