from datetime import timedelta
from decimal import Decimal

import pytest

from blueprints.withdraw_helpers import (
    WithdrawalProcessor, WithdrawalValidator, BalanceLockManager,
)
from extensions import db
from models import User, Withdrawal, PayoutQueue, Transaction
from utils import utcnow

WALLET_ADDRESS = "0x" + "ab" * 20


@pytest.fixture
def member(make_user, activate):
    user = make_user()
    activate(user)
    user = db.session.get(User, user.id)
    user.available_balance = Decimal("100.00")
    db.session.commit()
    return user


def test_request_deducts_gross_and_queues_net(member):
    before = utcnow()
    success, message, data = WithdrawalProcessor.process_withdrawal_request(
        member.id, 50, "usdt_bep20", wallet_address=WALLET_ADDRESS
    )
    assert success, message

    assert data["withdrawal"]["amount"] == 50.0
    assert data["withdrawal"]["fee"] == 2.5
    assert data["withdrawal"]["netAmount"] == 47.5
    assert data["withdrawal"]["status"] == "pending"
    assert data["queue"]["priority"] == "low"
    assert data["availableBalance"] == 50.0

    user = db.session.get(User, member.id)
    assert user.available_balance == Decimal("50.00")
    assert user.total_withdrawn == Decimal("50.00")

    entry = PayoutQueue.query.one()
    assert entry.amount == Decimal("47.50")
    assert entry.scheduled_at >= before + timedelta(minutes=30)

    transaction = Transaction.query.filter_by(type="withdrawal").one()
    assert transaction.status == "pending"
    assert transaction.fee == Decimal("2.50")


@pytest.mark.parametrize("amount,method,kwargs,message", [
    ("abc", "usdt_bep20", {"wallet_address": WALLET_ADDRESS}, "Invalid amount format"),
    (5, "usdt_bep20", {"wallet_address": WALLET_ADDRESS}, "Minimum withdrawal"),
    (60000, "usdt_bep20", {"wallet_address": WALLET_ADDRESS}, "Maximum withdrawal"),
    (20, "paypal", {}, "Invalid withdrawal method"),
    (20, "usdt_bep20", {"wallet_address": "0x123"}, "valid BEP20 wallet address"),
    (20, "fund_conversion", {"bank_details": {"bankName": "X"}}, "Bank details are required"),
    (20, "p2p", {"p2p_details": {}}, "Recipient details are required"),
    (500, "usdt_bep20", {"wallet_address": WALLET_ADDRESS}, "Insufficient balance"),
])
def test_validation_failures(member, amount, method, kwargs, message):
    success, error, data = WithdrawalProcessor.process_withdrawal_request(member.id, amount, method, **kwargs)
    assert success is False
    assert message in error
    assert data is None
    assert db.session.get(User, member.id).available_balance == Decimal("100.00")


def test_inactive_user_cannot_withdraw(make_user):
    user = make_user(balance="100")
    valid, message = WithdrawalValidator.validate_withdrawal_request(
        user.id, 20, "usdt_bep20", wallet_address=WALLET_ADDRESS
    )
    assert valid is False
    assert message == "Activate a rank before withdrawing"


def test_only_one_open_withdrawal(member):
    assert WithdrawalProcessor.process_withdrawal_request(member.id, 20, "p2p", p2p_details={"recipientCode": "WG000009"})[0]

    success, message, _ = WithdrawalProcessor.process_withdrawal_request(
        member.id, 20, "usdt_bep20", wallet_address=WALLET_ADDRESS
    )
    assert success is False
    assert message.startswith("You have a pending withdrawal")


def test_daily_limit(member, settings):
    settings.daily_withdrawal_limit = Decimal("30")
    db.session.commit()

    success, message, _ = WithdrawalProcessor.process_withdrawal_request(
        member.id, 40, "usdt_bep20", wallet_address=WALLET_ADDRESS
    )
    assert success is False
    assert "Daily withdrawal limit" in message


def test_concurrent_request_is_refused(member):
    assert BalanceLockManager.acquire_lock(member.id)
    try:
        success, message, _ = WithdrawalProcessor.process_withdrawal_request(
            member.id, 20, "usdt_bep20", wallet_address=WALLET_ADDRESS
        )
    finally:
        BalanceLockManager.release_lock(member.id)

    assert success is False
    assert message == "Another withdrawal in progress"


def test_fund_conversion_fee(member):
    _, _, data = WithdrawalProcessor.process_withdrawal_request(
        member.id, 40, "fund_conversion",
        bank_details={"accountNumber": "001", "bankName": "Bank", "accountHolderName": "Member"},
    )
    assert data["withdrawal"]["fee"] == 4.0
    assert data["withdrawal"]["netAmount"] == 36.0


def test_reject_refunds_gross_amount(member, admin):
    _, _, data = WithdrawalProcessor.process_withdrawal_request(
        member.id, 50, "usdt_bep20", wallet_address=WALLET_ADDRESS
    )
    withdrawal_id = data["withdrawal"]["id"]

    success, _ = WithdrawalProcessor.reject_withdrawal(withdrawal_id, admin.id, "Suspicious")
    assert success

    withdrawal = db.session.get(Withdrawal, withdrawal_id)
    assert withdrawal.status == "rejected"
    assert withdrawal.rejection_reason == "Suspicious"
    assert PayoutQueue.query.count() == 0
    assert db.session.get(User, member.id).available_balance == Decimal("100.00")
    assert Transaction.query.filter_by(type="withdrawal").one().status == "failed"

    success, message = WithdrawalProcessor.reject_withdrawal(withdrawal_id, admin.id, "again")
    assert success is False
    assert "rejected" in message


def test_approve_makes_payout_due_now(member, admin):
    _, _, data = WithdrawalProcessor.process_withdrawal_request(
        member.id, 50, "usdt_bep20", wallet_address=WALLET_ADDRESS
    )
    withdrawal_id = data["withdrawal"]["id"]

    success, _ = WithdrawalProcessor.approve_withdrawal(withdrawal_id, admin.id)
    assert success

    withdrawal = db.session.get(Withdrawal, withdrawal_id)
    assert withdrawal.status == "approved"
    assert withdrawal.approved_by == admin.id
    assert PayoutQueue.query.one().scheduled_at <= utcnow()

    assert WithdrawalProcessor.approve_withdrawal(withdrawal_id, admin.id)[0] is False
    assert WithdrawalProcessor.approve_withdrawal(999, admin.id) == (False, "Withdrawal not found")
