import logging
from decimal import Decimal
from typing import Dict, Any, List, Optional

from extensions import db
from logger import log_event
from models import (
    User, Income, IncomePool, Transaction, AuditLog, PlatformSettings,
    IncomeStatus, TransactionType, TransactionStatus,
)
from mlm.calculation import IncomeCalculator
from mlm.config import IncomeConfig
from mlm.referral_tree import ReferralTreeHelper
from utils import utcnow, round2


logger = logging.getLogger(__name__)


class PoolClaimError(Exception):
    """Raised when pool or locked income cannot be claimed"""
    pass


class IncomePoolService:
    """
    Per-rank income pools. Pool-bound income stays locked (pool_income and
    the user's locked_balance move together) until the user has enough
    active direct referrals; claiming moves it into the available balance.

    Only the claim_* operations commit; the rest run inside the caller's
    transaction.
    """

    @staticmethod
    def required_direct_referrals() -> int:
        settings = PlatformSettings.get()
        return settings.direct_referral_requirement or IncomeConfig.DIRECT_REFERRAL_REQUIREMENT

    @staticmethod
    def gate_open(user: User) -> bool:
        return (user.active_direct_referrals or 0) >= IncomePoolService.required_direct_referrals()

    @staticmethod
    def get_pool(user_id: int, rank: str, lock: bool = False) -> Optional[IncomePool]:
        query = IncomePool.query.filter_by(user_id=user_id, rank=rank)
        if lock:
            query = query.with_for_update()
        return query.first()

    @staticmethod
    def create_income_pool(user: User, rank: str) -> IncomePool:
        """Create the pool for ``rank``; returns the existing one on re-activation."""
        pool = IncomePoolService.get_pool(user.id, rank)
        if pool:
            return pool

        required = IncomePoolService.required_direct_referrals()
        count = user.active_direct_referrals or 0
        pool = IncomePool(
            user_id=user.id,
            rank=rank,
            pool_income=Decimal("0.00"),
            total_accrued=Decimal("0.00"),
            max_pool_income=IncomeCalculator.max_pool_income(rank),
            direct_referrals_count=count,
            required_direct_referrals=required,
            can_claim=count >= required,
            is_locked=count < required,
            activated_at=utcnow(),
        )
        db.session.add(pool)
        db.session.flush()
        logger.info(f"Income pool created for user {user.id} rank {rank}")
        return pool

    @staticmethod
    def add_income_to_pool(pool: IncomePool, user: User, amount: Decimal) -> Decimal:
        """
        Lock ``amount`` into ``pool`` up to its lifetime ceiling.
        Returns the amount actually added.
        """
        added = IncomeCalculator.capped_pool_amount(amount, pool.total_accrued or 0, pool.max_pool_income)
        if added <= 0:
            return Decimal("0.00")

        now = utcnow()
        pool.pool_income = round2(Decimal(pool.pool_income or 0) + added)
        pool.total_accrued = round2(Decimal(pool.total_accrued or 0) + added)
        pool.last_income_at = now
        user.locked_balance = round2(Decimal(user.locked_balance or 0) + added)
        user.last_income_at = now
        return added

    @staticmethod
    def credit_gated_income(user: User, rank: str, amount: Decimal, income_type: str,
                            source_user_id: Optional[int] = None,
                            source_transaction_id: Optional[int] = None,
                            cycle_id: Optional[int] = None,
                            description: Optional[str] = None) -> Optional[Income]:
        """
        Credit pool-bound income. Paid straight to the available balance when
        the referral gate is open, otherwise locked in the rank's pool.
        Either way it counts against the pool ceiling.
        """
        amount = round2(amount)
        if amount <= 0:
            return None

        pool = IncomePoolService.get_pool(user.id, rank, lock=True) or IncomePoolService.create_income_pool(user, rank)

        if IncomePoolService.gate_open(user):
            credited = IncomeCalculator.capped_pool_amount(amount, pool.total_accrued or 0, pool.max_pool_income)
            if credited <= 0:
                return None
            now = utcnow()
            pool.total_accrued = round2(Decimal(pool.total_accrued or 0) + credited)
            pool.last_income_at = now
            user.available_balance = round2(Decimal(user.available_balance or 0) + credited)
            user.total_earnings = round2(Decimal(user.total_earnings or 0) + credited)
            user.last_income_at = now
            status = IncomeStatus.CREDITED.value
        else:
            credited = IncomePoolService.add_income_to_pool(pool, user, amount)
            if credited <= 0:
                return None
            status = IncomeStatus.LOCKED.value

        income = Income(
            user_id=user.id,
            type=income_type,
            amount=credited,
            status=status,
            rank=rank,
            source_user_id=source_user_id,
            source_transaction_id=source_transaction_id,
            pool_id=pool.id,
            cycle_id=cycle_id,
            description=description,
        )
        db.session.add(income)
        return income

    @staticmethod
    def update_direct_referrals(user_id: int) -> int:
        """Recount active direct referrals and refresh every pool's claim gate."""
        user = db.session.get(User, user_id)
        if not user:
            return 0

        count = ReferralTreeHelper.count_active_direct_referrals(user_id)
        required = IncomePoolService.required_direct_referrals()
        user.active_direct_referrals = count

        for pool in IncomePool.query.filter_by(user_id=user_id).all():
            pool.direct_referrals_count = count
            pool.required_direct_referrals = required
            pool.can_claim = count >= required
            pool.is_locked = not pool.can_claim

        return count

    @staticmethod
    def _release_pool(user: User, pool: IncomePool, now) -> Decimal:
        amount = round2(pool.pool_income or 0)
        if amount <= 0:
            return Decimal("0.00")

        user.available_balance = round2(Decimal(user.available_balance or 0) + amount)
        user.locked_balance = max(Decimal("0.00"), round2(Decimal(user.locked_balance or 0) - amount))
        user.total_earnings = round2(Decimal(user.total_earnings or 0) + amount)

        pool.pool_income = Decimal("0.00")
        pool.claimed_at = now

        (Income.query
         .filter_by(pool_id=pool.id, status=IncomeStatus.LOCKED.value)
         .update({"status": IncomeStatus.RELEASED.value, "released_at": now}))
        return amount

    @staticmethod
    def _check_gate(user: User) -> None:
        required = IncomePoolService.required_direct_referrals()
        count = user.active_direct_referrals or 0
        if count < required:
            raise PoolClaimError(
                f"You need at least {required} active direct referrals to claim. Current: {count}"
            )

    @staticmethod
    def claim_pool_income(user_id: int, rank: str) -> Dict[str, Any]:
        """Move one pool's locked income into the available balance."""
        try:
            user = db.session.get(User, user_id, with_for_update=True)
            if not user:
                raise PoolClaimError("User not found")

            pool = IncomePoolService.get_pool(user_id, rank, lock=True)
            if not pool:
                raise PoolClaimError("Income pool not found")

            IncomePoolService.update_direct_referrals(user_id)
            IncomePoolService._check_gate(user)

            if Decimal(pool.pool_income or 0) <= 0:
                raise PoolClaimError("No income available to claim")

            now = utcnow()
            amount = IncomePoolService._release_pool(user, pool, now)
            user.last_claimed_at = now

            transaction = Transaction(
                user_id=user.id,
                type=TransactionType.INCOME_CLAIM.value,
                status=TransactionStatus.COMPLETED.value,
                amount=amount,
                net_amount=amount,
                rank=rank,
                description=f"Pool income claimed for {rank}",
                details={"pool_id": pool.id},
                processed_at=now,
            )
            db.session.add(transaction)
            AuditLog.record("pool_income_claimed", actor_id=user.id, rank=rank, amount=str(amount))
            db.session.commit()

            log_event(logger, "income", "Pool income claimed", user_id=user.id, rank=rank, amount=str(amount))
            return {
                "claimedAmount": float(amount),
                "rank": rank,
                "transactionId": transaction.id,
                "availableBalance": float(user.available_balance),
                "lockedBalance": float(user.locked_balance),
            }
        except Exception:
            db.session.rollback()
            raise

    @staticmethod
    def claim_locked_income(user_id: int) -> Dict[str, Any]:
        """Release every pool with locked income once the referral gate is met."""
        try:
            user = db.session.get(User, user_id, with_for_update=True)
            if not user:
                raise PoolClaimError("User not found")

            if Decimal(user.locked_balance or 0) <= 0:
                raise PoolClaimError("No locked income available to claim")

            IncomePoolService.update_direct_referrals(user_id)
            IncomePoolService._check_gate(user)

            now = utcnow()
            pools = (IncomePool.query
                     .filter(IncomePool.user_id == user_id, IncomePool.pool_income > 0)
                     .with_for_update()
                     .all())
            total = Decimal("0.00")
            claimed_ranks = []
            for pool in pools:
                released = IncomePoolService._release_pool(user, pool, now)
                if released > 0:
                    total += released
                    claimed_ranks.append(pool.rank)

            if total <= 0:
                raise PoolClaimError("No locked income available to claim")

            user.last_claimed_at = now
            transaction = Transaction(
                user_id=user.id,
                type=TransactionType.INCOME_CLAIM.value,
                status=TransactionStatus.COMPLETED.value,
                amount=total,
                net_amount=total,
                description="Locked income claimed",
                details={"sub_type": "locked_income_claim", "ranks": claimed_ranks},
                processed_at=now,
            )
            db.session.add(transaction)
            AuditLog.record("locked_income_claimed", actor_id=user.id, amount=str(total), ranks=claimed_ranks)
            db.session.commit()

            log_event(logger, "income", "Locked income claimed", user_id=user.id, amount=str(total))
            return {
                "claimedAmount": float(total),
                "ranks": claimed_ranks,
                "transactionId": transaction.id,
                "availableBalance": float(user.available_balance),
                "lockedBalance": float(user.locked_balance),
            }
        except Exception:
            db.session.rollback()
            raise

    @staticmethod
    def get_user_income_pools(user_id: int) -> List[Dict[str, Any]]:
        pools = IncomePool.query.filter_by(user_id=user_id).all()
        pools.sort(key=lambda p: IncomeConfig.rank_order(p.rank))
        return [pool.to_dict() for pool in pools]
