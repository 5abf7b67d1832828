"""Loyalty tiers and points.

Tier upgrades require both the wallet points and the lifetime spending
thresholds of a tier. Tiers are walked in ascending order and the walk stops
at the first tier the client does not qualify for, so a tier is never
skipped. Tiers are only ever raised here.
"""
from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal

from flask import current_app
from sqlalchemy import func, select

from .extensions import db
from .models import CustomerProfile, Payment, PointsHistory, Tier, User, Wallet

DEFAULT_TIERS = (
    {"level": 1, "name": "Member", "points_required": 0, "min_spending_required": Decimal("0"), "color": "#A8A29E"},
    {"level": 2, "name": "Silver", "points_required": 500, "min_spending_required": Decimal("5000000"), "color": "#C0C0C0"},
    {"level": 3, "name": "Gold", "points_required": 1500, "min_spending_required": Decimal("15000000"), "color": "#D4AF37"},
    {"level": 4, "name": "Diamond", "points_required": 5000, "min_spending_required": Decimal("50000000"), "color": "#B9F2FF"},
)


def evaluate_tier(profile, wallet, tiers, now: datetime | None = None) -> bool:
    """Raise ``profile.tier_level`` as far as the ascending ``tiers`` allow.

    Returns True when at least one upgrade happened.
    """
    now = now or datetime.now(timezone.utc)
    upgraded = False

    for tier in tiers:
        if tier.level <= profile.tier_level:
            continue
        if (
            wallet.points >= tier.points_required
            and Decimal(str(profile.total_spending)) >= Decimal(str(tier.min_spending_required))
        ):
            profile.tier_level = tier.level
            profile.last_tier_upgrade_date = now
            upgraded = True
        else:
            break

    return upgraded


def calculate_total_spending(user_id: int) -> Decimal:
    total = db.session.execute(
        select(func.coalesce(func.sum(Payment.amount), 0)).where(
            Payment.user_id == user_id,
            Payment.status == "Completed",
        )
    ).scalar_one()
    return Decimal(str(total))


def ordered_tiers() -> list[Tier]:
    return Tier.query.order_by(Tier.level.asc()).all()


def get_or_create_profile(user: User) -> CustomerProfile:
    profile = CustomerProfile.query.get(user.user_id)
    if profile is None:
        lowest = Tier.query.order_by(Tier.level.asc()).first()
        profile = CustomerProfile(
            user_id=user.user_id,
            tier_level=lowest.level if lowest else 1,
            total_spending=Decimal("0"),
        )
        db.session.add(profile)
        db.session.flush()
    return profile


def get_or_create_wallet(user: User) -> Wallet:
    wallet = Wallet.query.filter_by(user_id=user.user_id).first()
    if wallet is None:
        wallet = Wallet(user_id=user.user_id, points=0)
        db.session.add(wallet)
        db.session.flush()
    return wallet


def check_and_upgrade_tier(user: User) -> bool:
    """Run the tier evaluator against the user's persisted loyalty state.

    The caller owns the transaction: pending payment and points changes must
    already be flushed so the evaluator sees them. Nothing is written unless
    the tier goes up.
    """
    profile = get_or_create_profile(user)
    wallet = get_or_create_wallet(user)
    previous_level = profile.tier_level

    if not evaluate_tier(profile, wallet, ordered_tiers()):
        return False

    db.session.flush()
    current_app.logger.info(
        "User %s upgraded from tier %s to tier %s", user.user_id, previous_level, profile.tier_level
    )
    return True


def points_for_amount(amount) -> int:
    unit = current_app.config.get("LOYALTY_POINTS_UNIT", 1000)
    if not amount or Decimal(str(amount)) <= 0:
        return 0
    return int(Decimal(str(amount)) // Decimal(unit))


def award_points(user: User, points: int, source: str, description: str | None = None) -> Wallet:
    """Credit (or debit, for negative ``points``) the wallet and log the change."""
    wallet = get_or_create_wallet(user)
    wallet.points = (wallet.points or 0) + points
    db.session.add(PointsHistory(
        user_id=user.user_id,
        points_change=points,
        source=source,
        description=description,
    ))
    db.session.flush()
    return wallet


def tier_progress(profile, wallet, tiers) -> dict[str, object]:
    current = next((t for t in tiers if t.level == profile.tier_level), None)
    upcoming = next((t for t in tiers if t.level > profile.tier_level), None)

    progress = None
    if upcoming is not None:
        spending = Decimal(str(profile.total_spending))
        progress = {
            "points_remaining": max(0, upcoming.points_required - wallet.points),
            "spending_remaining": float(max(Decimal("0"), Decimal(str(upcoming.min_spending_required)) - spending)),
        }

    return {
        "current_tier": current.to_dict() if current is not None else None,
        "next_tier": upcoming.to_dict() if upcoming is not None else None,
        "progress": progress,
    }
