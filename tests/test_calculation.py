from datetime import timedelta
from decimal import Decimal

import pytest

from blueprints.withdraw_helpers import WithdrawalConfig
from mlm.calculation import (
    IncomeCalculator, tree_level, positions_at_level, participants_at_level,
    levels_filled, next_rank_amount,
)
from mlm.config import IncomeConfig
from mlm.payout_processor import calculate_retry_delay


def test_referral_income_is_half_of_activation():
    assert IncomeCalculator.referral_income(Decimal("5")) == Decimal("2.50")
    assert IncomeCalculator.referral_income(Decimal("2560")) == Decimal("1280.00")


@pytest.mark.parametrize("level,expected", [
    (1, Decimal("0.50")),
    (2, Decimal("0.40")),
    (3, Decimal("0.30")),
    (4, Decimal("0.10")),
    (5, Decimal("0.10")),
    (6, Decimal("0.10")),
    (7, Decimal("0.00")),
    (0, Decimal("0.00")),
])
def test_level_income_percentages(level, expected):
    assert IncomeCalculator.level_income(level, Decimal("10")) == expected


def test_upline_distribution_stops_at_six_levels():
    distribution = IncomeCalculator.upline_distribution(Decimal("100"), 9)
    assert [level for level, _ in distribution] == [1, 2, 3, 4, 5, 6]
    assert sum(amount for _, amount in distribution) == Decimal("15.00")


def test_global_income_split_over_ten_levels():
    assert IncomeCalculator.global_income(Decimal("5")) == Decimal("0.50")
    assert IncomeCalculator.global_income_per_level(Decimal("5")) == Decimal("0.05")
    assert IncomeCalculator.global_income_per_level(Decimal("5"), 0) == Decimal("0.00")


def test_pool_ceiling_and_accrual():
    assert IncomeCalculator.max_pool_income("azurite") == Decimal("500.00")
    assert IncomeCalculator.pool_accrual("azurite") == Decimal("0.05")
    assert IncomeCalculator.pool_accrual("royal_crown") == Decimal("25.60")


def test_capped_pool_amount():
    assert IncomeCalculator.capped_pool_amount(Decimal("1.00"), Decimal("499.50"), Decimal("500")) == Decimal("0.50")
    assert IncomeCalculator.capped_pool_amount(Decimal("1.00"), Decimal("500"), Decimal("500")) == Decimal("0.00")
    assert IncomeCalculator.capped_pool_amount(Decimal("1.00"), Decimal("10"), Decimal("500")) == Decimal("1.00")


def test_binary_layout():
    assert tree_level(1) == 1
    assert tree_level(2) == 2
    assert tree_level(3) == 2
    assert tree_level(1023) == 10
    assert list(positions_at_level(3)) == [4, 5, 6, 7]
    assert participants_at_level(list("abcdefg"), 2) == ["b", "c"]
    assert participants_at_level(list("abcd"), 3) == ["d"]
    assert levels_filled(0) == 0
    assert levels_filled(1024) == 11

    with pytest.raises(ValueError):
        tree_level(0)


def test_rank_table():
    assert list(IncomeConfig.RANKS)[0] == "azurite"
    assert IncomeConfig.next_rank(None) == "azurite"
    assert IncomeConfig.next_rank("crown") == "royal_crown"
    assert IncomeConfig.next_rank("royal_crown") is None
    assert IncomeConfig.ranks_up_to("ruby") == ["azurite", "pearl", "ruby"]
    assert IncomeConfig.rank_order("emerald") == 4
    assert IncomeConfig.rank_order("unknown") == 0
    assert next_rank_amount("azurite") == Decimal("10")
    assert next_rank_amount("royal_crown") is None


def test_income_configuration_is_valid():
    valid, message = IncomeConfig.validate_income_configuration()
    assert valid, message

    summary = IncomeConfig.get_income_distribution_summary()
    assert summary["total_percentage"] == 75.0
    assert summary["ranks"]["pearl"]["activation_amount"] == 10.0


@pytest.mark.parametrize("method,fee", [
    ("usdt_bep20", Decimal("5.00")),
    ("fund_conversion", Decimal("10.00")),
    ("p2p", Decimal("0.00")),
])
def test_withdrawal_fees(method, fee):
    assert WithdrawalConfig.calculate_fee(Decimal("100"), method) == fee
    assert WithdrawalConfig.calculate_net(Decimal("100"), method) == Decimal("100.00") - fee


def test_withdrawal_priority_and_delay():
    assert WithdrawalConfig.get_priority(Decimal("1000"), "usdt_bep20") == "high"
    assert WithdrawalConfig.get_priority(Decimal("150"), "usdt_bep20") == "medium"
    assert WithdrawalConfig.get_priority(Decimal("20"), "p2p") == "medium"
    assert WithdrawalConfig.get_priority(Decimal("20"), "usdt_bep20") == "low"

    assert WithdrawalConfig.get_schedule_delay("p2p") == timedelta(0)
    assert WithdrawalConfig.get_schedule_delay("usdt_bep20") == timedelta(minutes=30)
    assert WithdrawalConfig.get_schedule_delay("fund_conversion") == timedelta(minutes=60)


def test_retry_delay_doubles():
    assert calculate_retry_delay(1) == timedelta(minutes=2)
    assert calculate_retry_delay(2) == timedelta(minutes=4)
    assert calculate_retry_delay(3) == timedelta(minutes=8)
