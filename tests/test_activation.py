from decimal import Decimal

import pytest

from extensions import db
from models import (
    User, Wallet, Transaction, IncomePool, AutopoolPosition, GlobalCycleParticipant,
)
from mlm.activation import ActivationService, ActivationError


def test_activation_updates_rank_and_side_effects(make_user):
    user = make_user(balance="12")

    result = ActivationService.activate_rank(user.id, "azurite")

    assert result["activatedRanks"] == ["azurite"]
    assert result["totalAmount"] == 5.0
    assert result["currentRank"] == "azurite"

    user = db.session.get(User, user.id)
    assert user.is_active is True
    assert user.rank == "azurite"
    assert user.rank_activated_at is not None
    assert user.available_balance == Decimal("7.00")

    pool = IncomePool.query.filter_by(user_id=user.id, rank="azurite").one()
    assert pool.max_pool_income == Decimal("500.00")
    assert pool.is_locked is True

    assert AutopoolPosition.query.filter_by(user_id=user.id, rank="azurite").one().position == 1
    assert GlobalCycleParticipant.query.filter_by(user_id=user.id).count() == 1

    transaction = Transaction.query.filter_by(user_id=user.id, type="activation").one()
    assert transaction.status == "completed"
    assert transaction.income_distributed is True


def test_insufficient_balance(make_user):
    user = make_user(balance="4.99")
    with pytest.raises(ActivationError, match="Insufficient balance"):
        ActivationService.activate_rank(user.id, "azurite")
    assert db.session.get(User, user.id).available_balance == Decimal("4.99")
    assert Transaction.query.count() == 0


def test_rank_cannot_be_activated_twice(make_user):
    user = make_user(balance="20")
    ActivationService.activate_rank(user.id, "azurite")
    with pytest.raises(ActivationError, match="already activated"):
        ActivationService.activate_rank(user.id, "azurite")


def test_invalid_rank_and_method(make_user):
    user = make_user(balance="20")
    with pytest.raises(ActivationError, match="Invalid rank"):
        ActivationService.activate_rank(user.id, "platinum")
    with pytest.raises(ActivationError, match="Unsupported payment method"):
        ActivationService.activate_rank(user.id, "azurite", payment_method="cash")


def test_activate_all_ranks_up_to_target(make_user):
    user = make_user(balance="40")
    ActivationService.activate_rank(user.id, "azurite")

    result = ActivationService.activate_rank(user.id, "ruby", activate_all_ranks=True)

    assert result["activatedRanks"] == ["pearl", "ruby"]
    assert result["totalAmount"] == 30.0
    assert result["currentRank"] == "ruby"
    assert ActivationService.activated_ranks(user.id) == {"azurite", "pearl", "ruby"}
    assert db.session.get(User, user.id).available_balance == Decimal("5.00")
    assert IncomePool.query.filter_by(user_id=user.id).count() == 3


def test_lower_rank_does_not_downgrade(make_user):
    user = make_user(balance="15")
    ActivationService.activate_rank(user.id, "pearl")
    ActivationService.activate_rank(user.id, "azurite")
    assert db.session.get(User, user.id).rank == "pearl"


def test_fund_wallet_payment(make_user):
    user = make_user(funding="10")
    ActivationService.activate_rank(user.id, "pearl", payment_method="fund_wallet")

    wallet = Wallet.query.filter_by(user_id=user.id).one()
    assert wallet.balance == Decimal("0.00")
    assert db.session.get(User, user.id).rank == "pearl"

    with pytest.raises(ActivationError, match="Insufficient funding wallet balance"):
        ActivationService.activate_rank(user.id, "ruby", payment_method="fund_wallet")


def test_external_payment_requires_unique_hash(make_user):
    first = make_user()
    second = make_user()

    with pytest.raises(ActivationError, match="Transaction hash is required"):
        ActivationService.activate_rank(first.id, "azurite", payment_method="external")

    ActivationService.activate_rank(first.id, "azurite", payment_method="external", transaction_hash="0xfeed")
    with pytest.raises(ActivationError, match="already used"):
        ActivationService.activate_rank(second.id, "azurite", payment_method="external", transaction_hash="0xfeed")


def test_suspended_user_cannot_activate(make_user):
    user = make_user(balance="10", status="suspended")
    with pytest.raises(ActivationError, match="suspended"):
        ActivationService.activate_rank(user.id, "azurite")


def test_first_activation_counts_towards_sponsor(make_user):
    sponsor = make_user()
    member = make_user(sponsor=sponsor, balance="15")

    ActivationService.activate_rank(member.id, "azurite")
    ActivationService.activate_rank(member.id, "pearl")

    assert db.session.get(User, sponsor.id).active_direct_referrals == 1


def _completed_topup(user, amount, rank):
    transaction = Transaction(
        user_id=user.id,
        type="topup",
        status="completed",
        amount=Decimal(amount),
        net_amount=Decimal(amount),
        rank=rank,
        payment_method="external",
    )
    db.session.add(transaction)
    db.session.commit()
    return transaction


def test_topup_above_entry_price_keeps_rank(make_user):
    user = make_user()
    transaction = _completed_topup(user, "10", "pearl")

    ActivationService.handle_activation_transaction(transaction.id)

    user = db.session.get(User, user.id)
    assert user.rank is None
    assert user.is_active is False
    assert AutopoolPosition.query.filter_by(user_id=user.id).count() == 0
    assert GlobalCycleParticipant.query.filter_by(user_id=user.id).count() == 0
    assert db.session.get(Transaction, transaction.id).income_distributed is True


def test_topup_at_entry_price_activates(make_user):
    user = make_user()
    transaction = _completed_topup(user, "5", "azurite")

    ActivationService.handle_activation_transaction(transaction.id)

    user = db.session.get(User, user.id)
    assert user.rank == "azurite"
    assert user.is_active is True
    assert AutopoolPosition.query.filter_by(user_id=user.id, rank="azurite").count() == 1
