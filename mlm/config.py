# mlm/config.py
import logging
from collections import OrderedDict
from decimal import Decimal
from typing import Dict, Any, Optional, Tuple

logger = logging.getLogger(__name__)


class IncomeConfig:
    """
    Rank table and commission percentages.
    Referral 50% to the sponsor, level income 5/4/3/1/1/1 % over six uplines,
    global income 10% spread over ten cycle levels.
    """

    # Activation amount (USD) per rank, in promotion order
    RANKS = OrderedDict([
        ("azurite", {"name": "Azurite", "activation_amount": Decimal("5")}),
        ("pearl", {"name": "Pearl", "activation_amount": Decimal("10")}),
        ("ruby", {"name": "Ruby", "activation_amount": Decimal("20")}),
        ("emerald", {"name": "Emerald", "activation_amount": Decimal("40")}),
        ("sapphire", {"name": "Sapphire", "activation_amount": Decimal("80")}),
        ("diamond", {"name": "Diamond", "activation_amount": Decimal("160")}),
        ("double_diamond", {"name": "Double Diamond", "activation_amount": Decimal("320")}),
        ("triple_diamond", {"name": "Triple Diamond", "activation_amount": Decimal("640")}),
        ("crown", {"name": "Crown", "activation_amount": Decimal("1280")}),
        ("royal_crown", {"name": "Royal Crown", "activation_amount": Decimal("2560")}),
    ])

    REFERRAL_PERCENTAGE = Decimal("50")

    LEVEL_PERCENTAGES = {
        1: Decimal("5"),
        2: Decimal("4"),
        3: Decimal("3"),
        4: Decimal("1"),
        5: Decimal("1"),
        6: Decimal("1"),
    }
    MAX_LEVEL = 6

    GLOBAL_PERCENTAGE = Decimal("10")
    GLOBAL_LEVELS = 10
    GLOBAL_CYCLE_SIZE = 1024

    # Pool income ceiling is a multiple of the rank's activation amount
    POOL_MAX_MULTIPLIER = Decimal("100")
    # Share of the activation amount accrued per autopool run
    POOL_ACCRUAL_PERCENTAGE = Decimal("1")

    DIRECT_REFERRAL_REQUIREMENT = 2

    # Bounded tree walks
    MAX_TEAM_DEPTH = 5
    MAX_UPLINE_DEPTH = 6

    @staticmethod
    def is_valid_rank(rank: Optional[str]) -> bool:
        return rank in IncomeConfig.RANKS

    @staticmethod
    def get_rank(rank: str) -> Optional[Dict[str, Any]]:
        return IncomeConfig.RANKS.get(rank)

    @staticmethod
    def activation_amount(rank: str) -> Decimal:
        info = IncomeConfig.RANKS.get(rank)
        if not info:
            raise KeyError(f"Unknown rank: {rank}")
        return info["activation_amount"]

    @staticmethod
    def rank_order(rank: str) -> int:
        """1-based position of ``rank`` in the promotion order, 0 when unknown."""
        for index, key in enumerate(IncomeConfig.RANKS, start=1):
            if key == rank:
                return index
        return 0

    @staticmethod
    def next_rank(rank: Optional[str]) -> Optional[str]:
        keys = list(IncomeConfig.RANKS)
        if rank is None:
            return keys[0]
        if rank not in IncomeConfig.RANKS:
            return None
        index = keys.index(rank)
        return keys[index + 1] if index + 1 < len(keys) else None

    @staticmethod
    def ranks_up_to(rank: str):
        """Every rank key from the first through ``rank`` inclusive."""
        keys = list(IncomeConfig.RANKS)
        return keys[:keys.index(rank) + 1]

    @staticmethod
    def get_level_percentage(level: int) -> Decimal:
        if not isinstance(level, int) or level < 1 or level > IncomeConfig.MAX_LEVEL:
            return Decimal("0")
        return IncomeConfig.LEVEL_PERCENTAGES.get(level, Decimal("0"))

    @staticmethod
    def get_income_distribution_summary() -> Dict[str, Any]:
        """Get summary of the commission split for one activation"""
        levels = {
            level: {
                "percentage": float(pct),
                "percentage_display": f"{pct}%",
            }
            for level, pct in IncomeConfig.LEVEL_PERCENTAGES.items()
        }
        total_level = sum(IncomeConfig.LEVEL_PERCENTAGES.values(), Decimal("0"))
        return {
            "referral_percentage": float(IncomeConfig.REFERRAL_PERCENTAGE),
            "levels": levels,
            "total_level_percentage": float(total_level),
            "global_percentage": float(IncomeConfig.GLOBAL_PERCENTAGE),
            "global_levels": IncomeConfig.GLOBAL_LEVELS,
            "total_percentage": float(
                IncomeConfig.REFERRAL_PERCENTAGE + total_level + IncomeConfig.GLOBAL_PERCENTAGE
            ),
            "ranks": {
                key: {"name": info["name"], "activation_amount": float(info["activation_amount"])}
                for key, info in IncomeConfig.RANKS.items()
            },
        }

    @staticmethod
    def validate_income_configuration() -> Tuple[bool, str]:
        """Validate that the commission split never pays out more than it takes in"""
        total = (
            IncomeConfig.REFERRAL_PERCENTAGE
            + sum(IncomeConfig.LEVEL_PERCENTAGES.values(), Decimal("0"))
            + IncomeConfig.GLOBAL_PERCENTAGE
        )
        if total > Decimal("100"):
            return False, f"Total commission percentage too high: {total}%"
        if total <= 0:
            return False, "Total commission percentage must be positive"

        amounts = [info["activation_amount"] for info in IncomeConfig.RANKS.values()]
        if any(later <= earlier for earlier, later in zip(amounts, amounts[1:])):
            return False, "Rank activation amounts must increase with rank"

        return True, f"Income configuration valid: {total}% total across {IncomeConfig.MAX_LEVEL} levels"


class ErrorCodes:
    """Machine-readable ``code`` values carried in JSON error responses"""

    AUTH_REQUIRED = "AUTH_REQUIRED"
    AUTH_INSUFFICIENT_PERMISSIONS = "AUTH_INSUFFICIENT_PERMISSIONS"

    VALIDATION_INVALID_EMAIL = "VALIDATION_INVALID_EMAIL"
    VALIDATION_INVALID_WALLET = "VALIDATION_INVALID_WALLET"
    VALIDATION_INVALID_CONTACT = "VALIDATION_INVALID_CONTACT"
    VALIDATION_INVALID_AMOUNT = "VALIDATION_INVALID_AMOUNT"

    INSUFFICIENT_BALANCE = "INSUFFICIENT_BALANCE"
    INVALID_RANK_UPGRADE = "INVALID_RANK_UPGRADE"
    SPONSOR_NOT_FOUND = "SPONSOR_NOT_FOUND"
    USER_ALREADY_ACTIVE = "USER_ALREADY_ACTIVE"

    DATABASE_ERROR = "DATABASE_ERROR"
    EXTERNAL_API_ERROR = "EXTERNAL_API_ERROR"
    INTERNAL_SERVER_ERROR = "INTERNAL_SERVER_ERROR"

    SIGNUP_FAILED = "SIGNUP_FAILED"
    LOGIN_FAILED = "LOGIN_FAILED"
    ACTIVATION_FAILED = "ACTIVATION_FAILED"
    WITHDRAWAL_FAILED = "WITHDRAWAL_FAILED"
    CLAIM_FAILED = "CLAIM_FAILED"
    PAYOUT_CLAIM_FAILED = "PAYOUT_CLAIM_FAILED"
    TRANSFER_FAILED = "TRANSFER_FAILED"
