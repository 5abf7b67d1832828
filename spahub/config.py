"""Configuration objects loaded by the app factory."""
from __future__ import annotations

import os


class Config:
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-change-me")
    SQLALCHEMY_DATABASE_URI = os.environ.get("DATABASE_URL", "sqlite:///spahub.db")
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    STRIPE_SECRET_KEY = os.environ.get("STRIPE_SECRET_KEY")
    STRIPE_WEBHOOK_SECRET = os.environ.get("STRIPE_WEBHOOK_SECRET")
    PAYMENT_CURRENCY = os.environ.get("PAYMENT_CURRENCY", "vnd")

    # 1 point for every 1000 VND spent
    LOYALTY_POINTS_UNIT = int(os.environ.get("LOYALTY_POINTS_UNIT", 1000))
    # Lowest tier level that counts as VIP for "VIP" promotions
    VIP_MIN_TIER_LEVEL = int(os.environ.get("VIP_MIN_TIER_LEVEL", 2))

    TOKEN_MAX_AGE = int(os.environ.get("TOKEN_MAX_AGE", 86400))
    CORS_ORIGINS = os.environ.get("CORS_ORIGINS", "*").split(",")


class TestingConfig(Config):
    TESTING = True
    SECRET_KEY = "test-secret"
    SQLALCHEMY_DATABASE_URI = "sqlite:///:memory:"
    STRIPE_SECRET_KEY = "sk_test_dummy"
    STRIPE_WEBHOOK_SECRET = "whsec_test_dummy"
