from decimal import Decimal
from typing import List, Optional, Sequence, Tuple, Dict, Any

from mlm.config import IncomeConfig
from utils import round2


def percentage_of(amount, percentage) -> Decimal:
    return round2(Decimal(str(amount)) * Decimal(str(percentage)) / Decimal("100"))


class IncomeCalculator:
    """Pure commission arithmetic; nothing here touches the database."""

    @staticmethod
    def referral_income(amount) -> Decimal:
        return percentage_of(amount, IncomeConfig.REFERRAL_PERCENTAGE)

    @staticmethod
    def level_income(level: int, amount) -> Decimal:
        percentage = IncomeConfig.get_level_percentage(level)
        if percentage <= 0:
            return Decimal("0.00")
        return percentage_of(amount, percentage)

    @staticmethod
    def global_income(amount) -> Decimal:
        """Global share of one activation."""
        return percentage_of(amount, IncomeConfig.GLOBAL_PERCENTAGE)

    @staticmethod
    def global_income_per_level(amount, total_levels: int = IncomeConfig.GLOBAL_LEVELS) -> Decimal:
        """Payout each cycle level receives: the global share split evenly over the levels."""
        if total_levels <= 0:
            return Decimal("0.00")
        total = Decimal(str(amount)) * IncomeConfig.GLOBAL_PERCENTAGE / Decimal("100")
        return round2(total / Decimal(total_levels))

    @staticmethod
    def max_pool_income(rank: str) -> Decimal:
        return round2(IncomeConfig.activation_amount(rank) * IncomeConfig.POOL_MAX_MULTIPLIER)

    @staticmethod
    def pool_accrual(rank: str) -> Decimal:
        return percentage_of(IncomeConfig.activation_amount(rank), IncomeConfig.POOL_ACCRUAL_PERCENTAGE)

    @staticmethod
    def capped_pool_amount(amount, total_accrued, max_pool_income) -> Decimal:
        """How much of ``amount`` still fits under the pool ceiling."""
        room = Decimal(str(max_pool_income)) - Decimal(str(total_accrued))
        if room <= 0:
            return Decimal("0.00")
        return round2(min(Decimal(str(amount)), room))

    @staticmethod
    def upline_distribution(amount, upline_count: int) -> List[Tuple[int, Decimal]]:
        """(level, amount) pairs for an upline of ``upline_count`` members, capped at MAX_LEVEL."""
        levels = min(upline_count, IncomeConfig.MAX_LEVEL)
        return [(level, IncomeCalculator.level_income(level, amount)) for level in range(1, levels + 1)]

    @staticmethod
    def activation_breakdown(rank: str) -> Dict[str, Any]:
        amount = IncomeConfig.activation_amount(rank)
        return {
            "rank": rank,
            "activation_amount": float(amount),
            "referral_income": float(IncomeCalculator.referral_income(amount)),
            "level_income": {
                level: float(value)
                for level, value in IncomeCalculator.upline_distribution(amount, IncomeConfig.MAX_LEVEL)
            },
            "global_income": float(IncomeCalculator.global_income(amount)),
            "global_income_per_level": float(IncomeCalculator.global_income_per_level(amount)),
            "max_pool_income": float(IncomeCalculator.max_pool_income(rank)),
        }


# ==========================================================
#                  BINARY CYCLE LAYOUT
# ==========================================================
# Cycle participants fill a complete binary tree in join order:
# position 1 is level 1, positions 2-3 level 2, 4-7 level 3, ...

def tree_level(position: int) -> int:
    if position < 1:
        raise ValueError("Positions start at 1")
    return position.bit_length()


def positions_at_level(level: int) -> range:
    if level < 1:
        raise ValueError("Levels start at 1")
    return range(2 ** (level - 1), 2 ** level)


def participants_at_level(participants: Sequence, level: int) -> list:
    """Slice of an ordered participant list that sits on ``level``."""
    start = 2 ** (level - 1) - 1
    end = 2 ** level - 1
    return list(participants[start:end])


def levels_filled(participant_count: int) -> int:
    """Number of binary levels that hold at least one participant."""
    return participant_count.bit_length() if participant_count > 0 else 0


def next_rank_amount(rank: Optional[str]) -> Optional[Decimal]:
    upcoming = IncomeConfig.next_rank(rank)
    return IncomeConfig.activation_amount(upcoming) if upcoming else None
