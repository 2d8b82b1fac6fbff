import logging
from datetime import timedelta
from decimal import Decimal
from typing import Dict, Any, Optional

from extensions import db
from logger import log_event, income_logger
from models import (
    User, GlobalCycle, GlobalCycleParticipant, Transaction, AuditLog, PlatformSettings,
    IncomeType, TransactionType, TransactionStatus, UserStatus,
)
from mlm.calculation import IncomeCalculator, participants_at_level
from mlm.config import IncomeConfig
from mlm.income_engine import IncomeEngine
from utils import utcnow, round2


logger = logging.getLogger(__name__)

SYSTEM_JOB_ACTIONS = ("autopool_run", "payout_sweep", "cycles_processed")


class GlobalCycleError(Exception):
    pass


class GlobalCycleService:
    """
    Per-rank global cycles. Activations join the rank's open cycle in order;
    a full cycle pays the global share level by level over its binary layout.
    """

    @staticmethod
    def cycle_size() -> int:
        return PlatformSettings.get().global_cycle_size or IncomeConfig.GLOBAL_CYCLE_SIZE

    @staticmethod
    def get_active_cycle(rank: str) -> GlobalCycle:
        cycle = (GlobalCycle.query
                 .filter_by(rank=rank, status="active")
                 .order_by(GlobalCycle.cycle_number.desc())
                 .with_for_update()
                 .first())
        if cycle:
            return cycle

        last_number = (db.session.query(db.func.max(GlobalCycle.cycle_number))
                       .filter(GlobalCycle.rank == rank)
                       .scalar()) or 0
        cycle = GlobalCycle(
            rank=rank,
            cycle_number=last_number + 1,
            status="active",
            cycle_size=GlobalCycleService.cycle_size(),
            participant_count=0,
        )
        db.session.add(cycle)
        db.session.flush()
        logger.info(f"Opened global cycle {cycle.cycle_number} for {rank}")
        return cycle

    @staticmethod
    def join_global_cycle(user_id: int, rank: str) -> GlobalCycleParticipant:
        """Append the user to the rank's open cycle. No commit."""
        if not IncomeConfig.is_valid_rank(rank):
            raise GlobalCycleError(f"Invalid rank: {rank}")

        cycle = GlobalCycleService.get_active_cycle(rank)
        existing = GlobalCycleParticipant.query.filter_by(cycle_id=cycle.id, user_id=user_id).first()
        if existing:
            return existing

        cycle.participant_count = (cycle.participant_count or 0) + 1
        participant = GlobalCycleParticipant(cycle_id=cycle.id, user_id=user_id, position=cycle.participant_count)
        db.session.add(participant)
        cycle.total_pool = round2(
            Decimal(cycle.total_pool or 0) + IncomeCalculator.global_income(IncomeConfig.activation_amount(rank))
        )

        if cycle.participant_count >= cycle.cycle_size:
            cycle.status = "completed"
            cycle.completed_at = utcnow()
            logger.info(f"Global cycle {cycle.id} ({rank}) completed with {cycle.participant_count} participants")

        db.session.flush()
        return participant

    @staticmethod
    def _process_cycle(cycle: GlobalCycle) -> Dict[str, Any]:
        participants = list(cycle.participants)
        payout = IncomeCalculator.global_income_per_level(IncomeConfig.activation_amount(cycle.rank))
        distributed = Decimal("0.00")
        paid = 0

        for level in range(1, IncomeConfig.GLOBAL_LEVELS + 1):
            members = participants_at_level(participants, level)
            if not members:
                break
            for member in members:
                user = db.session.get(User, member.user_id, with_for_update=True)
                if not user or user.status in (UserStatus.SUSPENDED.value, UserStatus.BLOCKED.value):
                    continue
                income = IncomeEngine.credit_available(
                    user,
                    payout,
                    IncomeType.GLOBAL_CYCLE.value,
                    rank=cycle.rank,
                    level=level,
                    cycle_id=cycle.id,
                    description=f"Global cycle {cycle.cycle_number} level {level} income",
                )
                if income:
                    distributed += Decimal(income.amount)
                    paid += 1

        cycle.distributed_amount = round2(distributed)
        cycle.processed = True
        cycle.processed_at = utcnow()
        cycle.last_error = None

        top_up = None
        if PlatformSettings.get().auto_topup_enabled and participants:
            top_up = GlobalCycleService._auto_topup(participants[0].user_id)

        return {"cycle_id": cycle.id, "payouts": paid, "distributed": float(distributed), "auto_topup": top_up}

    @staticmethod
    def _auto_topup(user_id: int) -> Optional[int]:
        """Promote the cycle leader one rank when the available balance covers it. No commit."""
        user = db.session.get(User, user_id, with_for_update=True)
        if not user:
            return None

        upcoming = IncomeConfig.next_rank(user.rank)
        if not upcoming:
            return None

        amount = IncomeConfig.activation_amount(upcoming)
        if Decimal(user.available_balance or 0) < amount:
            logger.info(f"Auto top-up skipped for user {user_id}: balance below {amount}")
            return None

        user.available_balance = round2(Decimal(user.available_balance) - amount)
        transaction = Transaction(
            user_id=user.id,
            type=TransactionType.AUTO_TOPUP.value,
            status=TransactionStatus.COMPLETED.value,
            amount=amount,
            net_amount=amount,
            rank=upcoming,
            payment_method="wallet",
            description=f"Auto top-up to {upcoming}",
            processed_at=utcnow(),
        )
        db.session.add(transaction)
        db.session.flush()
        return transaction.id

    @staticmethod
    def process_completed_cycles(limit: int = 10) -> Dict[str, Any]:
        """Pay out completed cycles; one failing cycle does not stop the rest."""
        from mlm.activation import ActivationService

        stats = {"processed": 0, "failed": 0, "results": [], "errors": []}
        cycle_ids = [
            row.id for row in (GlobalCycle.query
                               .filter_by(status="completed", processed=False)
                               .order_by(GlobalCycle.completed_at.asc())
                               .limit(limit)
                               .all())
        ]

        for cycle_id in cycle_ids:
            try:
                cycle = GlobalCycle.query.filter_by(id=cycle_id).with_for_update().first()
                if not cycle or cycle.processed:
                    continue
                result = GlobalCycleService._process_cycle(cycle)
                db.session.commit()
                stats["processed"] += 1
                stats["results"].append(result)
                log_event(income_logger, "global_cycle", "Cycle processed", cycle_id=cycle_id,
                          distributed=result["distributed"])

                if result["auto_topup"]:
                    ActivationService.handle_activation_transaction(result["auto_topup"])

            except Exception as e:
                db.session.rollback()
                stats["failed"] += 1
                stats["errors"].append({"cycle_id": cycle_id, "error": str(e)})
                logger.error(f"Global cycle {cycle_id} processing failed: {e}")
                cycle = db.session.get(GlobalCycle, cycle_id)
                if cycle:
                    cycle.last_error = str(e)[:500]
                    db.session.commit()

        if cycle_ids:
            AuditLog.record("cycles_processed", processed=stats["processed"], failed=stats["failed"])
            db.session.commit()
        return stats

    @staticmethod
    def cleanup_old_data(days: int = 30) -> Dict[str, int]:
        """Drop processed cycles and system-job audit rows older than ``days``."""
        cutoff = utcnow() - timedelta(days=days)
        try:
            old_cycles = (GlobalCycle.query
                          .filter(GlobalCycle.processed.is_(True), GlobalCycle.processed_at < cutoff)
                          .all())
            for cycle in old_cycles:
                db.session.delete(cycle)

            logs_deleted = (AuditLog.query
                            .filter(AuditLog.action.in_(SYSTEM_JOB_ACTIONS), AuditLog.created_at < cutoff)
                            .delete(synchronize_session=False))
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise

        logger.info(f"Cleanup removed {len(old_cycles)} cycles and {logs_deleted} job logs older than {days} days")
        return {"cycles_deleted": len(old_cycles), "logs_deleted": logs_deleted}

    @staticmethod
    def get_cycle_status(rank: Optional[str] = None):
        query = GlobalCycle.query
        if rank:
            query = query.filter_by(rank=rank)
        return [c.to_dict() for c in query.order_by(GlobalCycle.created_at.desc()).limit(50).all()]
