"""
Shared fixtures.

Config reads SECRET_KEY and LOG_DIR at import time, so the environment is
prepared before anything from the application is imported.
"""
import os
import tempfile
from decimal import Decimal

os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ.setdefault("LOG_DIR", tempfile.mkdtemp(prefix="wayglobe-logs-"))
os.environ.setdefault("FLASK_ENV", "testing")

import pytest

from app import create_app
from config import TestingConfig
from extensions import db
from models import User, Wallet, PlatformSettings
from blueprints.withdraw_helpers import BalanceLockManager
from mlm.activation import ActivationService
from mlm.config import IncomeConfig
from mlm.referral_tree import ReferralTreeHelper

DEFAULT_PASSWORD = "secret123"
WALLET_ADDRESS = "0x" + "ab" * 20


@pytest.fixture
def app():
    app = create_app(TestingConfig)
    with app.app_context():
        db.create_all()
        PlatformSettings.get()
        db.session.commit()
        yield app
        db.session.remove()
        db.drop_all()
    BalanceLockManager._locked_users.clear()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def settings(app):
    return PlatformSettings.get()


@pytest.fixture
def make_user(app):
    """
    Factory for committed users.

    Args:
        sponsor: User to attach under
        balance: starting available balance
        funding: starting funding wallet balance
        role: "user" or "admin"
    """
    counter = {"n": 0}

    def _make_user(sponsor=None, balance="0", funding="0", role="user", email=None,
                   password=DEFAULT_PASSWORD, status="active"):
        counter["n"] += 1
        n = counter["n"]
        user = User(
            user_code=f"WG{n:06d}",
            full_name=f"Member {n}",
            email=email or f"member{n}@example.com",
            wallet_address=WALLET_ADDRESS,
            role=role,
            status=status,
            available_balance=Decimal(balance),
        )
        user.set_password(password)
        db.session.add(user)
        db.session.flush()
        if sponsor is not None:
            ReferralTreeHelper.attach_to_sponsor(user, sponsor)
        db.session.add(Wallet(user_id=user.id, balance=Decimal(funding)))
        db.session.commit()
        return user

    return _make_user


@pytest.fixture
def activate(app):
    """Fund the exact rank price and activate it from the available balance."""
    def _activate(user, rank="azurite"):
        user = db.session.get(User, user.id)
        user.available_balance = Decimal(user.available_balance or 0) + IncomeConfig.activation_amount(rank)
        db.session.commit()
        return ActivationService.activate_rank(user.id, rank)

    return _activate


@pytest.fixture
def login(client):
    def _login(user, password=DEFAULT_PASSWORD):
        response = client.post("/api/login", json={"email_or_code": user.email, "password": password})
        assert response.status_code == 200, response.get_json()
        return response

    return _login


@pytest.fixture
def admin(make_user):
    return make_user(role="admin", email="admin@example.com")
