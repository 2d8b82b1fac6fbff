import logging
from decimal import Decimal
from typing import Dict, Any, Optional

from extensions import db
from logger import log_event, income_logger
from models import (
    User, Income, Transaction, AuditLog,
    IncomeType, IncomeStatus, TransactionType, TransactionStatus, UserStatus,
)
from mlm.calculation import IncomeCalculator
from mlm.config import IncomeConfig
from mlm.income_pools import IncomePoolService
from mlm.referral_tree import ReferralTreeHelper
from utils import utcnow, round2


logger = logging.getLogger(__name__)

ACTIVATION_TYPES = (
    TransactionType.ACTIVATION.value,
    TransactionType.TOPUP.value,
    TransactionType.AUTO_TOPUP.value,
)


class IncomeEngineError(Exception):
    pass


class IncomeEngine:
    """
    Commission distribution for one completed activation or top-up:
    referral income to the sponsor, level income to six uplines and the
    gated global share to the activator.
    """

    @staticmethod
    def credit_available(user: User, amount: Decimal, income_type: str, rank: Optional[str] = None,
                         level: Optional[int] = None, source_user_id: Optional[int] = None,
                         source_transaction_id: Optional[int] = None, cycle_id: Optional[int] = None,
                         description: Optional[str] = None) -> Optional[Income]:
        """Credit spendable income and record it. No commit."""
        amount = round2(amount)
        if amount <= 0:
            return None

        user.available_balance = round2(Decimal(user.available_balance or 0) + amount)
        user.total_earnings = round2(Decimal(user.total_earnings or 0) + amount)
        user.last_income_at = utcnow()

        income = Income(
            user_id=user.id,
            type=income_type,
            amount=amount,
            status=IncomeStatus.CREDITED.value,
            rank=rank,
            level=level,
            source_user_id=source_user_id,
            source_transaction_id=source_transaction_id,
            cycle_id=cycle_id,
            description=description,
        )
        db.session.add(income)
        return income

    @staticmethod
    def _can_receive(user: User) -> bool:
        return user.status not in (UserStatus.SUSPENDED.value, UserStatus.BLOCKED.value)

    @staticmethod
    def _process_referral_income(activator: User, transaction: Transaction, amount: Decimal) -> Optional[Income]:
        if not activator.sponsor_id:
            return None

        sponsor = db.session.get(User, activator.sponsor_id, with_for_update=True)
        if not sponsor or not IncomeEngine._can_receive(sponsor):
            return None

        return IncomeEngine.credit_available(
            sponsor,
            IncomeCalculator.referral_income(amount),
            IncomeType.REFERRAL.value,
            rank=transaction.rank,
            source_user_id=activator.id,
            source_transaction_id=transaction.id,
            description=f"Referral income from {activator.user_code}",
        )

    @staticmethod
    def _process_level_income(activator: User, transaction: Transaction, amount: Decimal) -> list:
        paid = []
        upline = ReferralTreeHelper.get_upline_chain(activator.id, IncomeConfig.MAX_LEVEL)
        for level, upline_user in enumerate(upline, start=1):
            # Unactivated uplines are skipped; the walk continues above them
            if not upline_user.is_active or not upline_user.rank or not IncomeEngine._can_receive(upline_user):
                continue

            income = IncomeEngine.credit_available(
                upline_user,
                IncomeCalculator.level_income(level, amount),
                IncomeType.LEVEL.value,
                rank=transaction.rank,
                level=level,
                source_user_id=activator.id,
                source_transaction_id=transaction.id,
                description=f"Level {level} income from {activator.user_code}",
            )
            if income:
                paid.append(income)
        return paid

    @staticmethod
    def _process_global_income(activator: User, transaction: Transaction, amount: Decimal) -> Optional[Income]:
        if not transaction.rank:
            return None
        return IncomePoolService.credit_gated_income(
            activator,
            transaction.rank,
            IncomeCalculator.global_income(amount),
            IncomeType.GLOBAL.value,
            source_user_id=activator.id,
            source_transaction_id=transaction.id,
            description=f"Global income for {transaction.rank} activation",
        )

    @staticmethod
    def process_all_incomes(transaction_id: int) -> Dict[str, Any]:
        """
        Distribute commissions for ``transaction_id`` exactly once.
        A transaction already marked distributed is skipped.
        """
        try:
            transaction = db.session.get(Transaction, transaction_id, with_for_update=True)
            if not transaction:
                raise IncomeEngineError(f"Transaction {transaction_id} not found")

            if transaction.type not in ACTIVATION_TYPES:
                raise IncomeEngineError(f"Transaction {transaction_id} is not an activation")

            if transaction.status != TransactionStatus.COMPLETED.value:
                raise IncomeEngineError(f"Transaction {transaction_id} is not completed")

            if transaction.income_distributed:
                logger.info(f"Incomes for transaction {transaction_id} already distributed, skipping")
                return {"transactionId": transaction_id, "skipped": True}

            activator = db.session.get(User, transaction.user_id, with_for_update=True)
            if not activator:
                raise IncomeEngineError(f"Activator {transaction.user_id} not found")

            amount = Decimal(transaction.amount)

            referral = IncomeEngine._process_referral_income(activator, transaction, amount)
            levels = IncomeEngine._process_level_income(activator, transaction, amount)
            global_income = IncomeEngine._process_global_income(activator, transaction, amount)

            transaction.income_distributed = True
            summary = {
                "transactionId": transaction.id,
                "skipped": False,
                "referralIncome": float(referral.amount) if referral else 0.0,
                "levelIncome": [
                    {"level": income.level, "userId": income.user_id, "amount": float(income.amount)}
                    for income in levels
                ],
                "globalIncome": float(global_income.amount) if global_income else 0.0,
                "globalIncomeStatus": global_income.status if global_income else None,
            }
            AuditLog.record(
                "incomes_distributed",
                actor_id=activator.id,
                transaction_id=transaction.id,
                rank=transaction.rank,
                amount=str(amount),
                level_payouts=len(levels),
            )
            db.session.commit()

            log_event(income_logger, "income", "Incomes distributed", user_id=activator.id,
                      transaction_id=transaction.id, rank=transaction.rank)
            return summary

        except Exception:
            db.session.rollback()
            raise
