import logging
from decimal import Decimal
from typing import Dict, Any, Optional

from extensions import db
from logger import log_event, income_logger
from models import User, AutopoolPosition, AutopoolMeta, AuditLog, IncomeType, IncomeStatus, UserStatus
from mlm.calculation import IncomeCalculator
from mlm.config import IncomeConfig
from mlm.income_pools import IncomePoolService
from utils import utcnow


logger = logging.getLogger(__name__)


class AutopoolService:
    """
    Global sequential positions. Every (user, rank) activation takes the next
    free position; the accrual job walks the filled positions round-robin
    from a persisted pointer.
    """

    META_ID = 1

    @staticmethod
    def get_meta(lock: bool = False) -> AutopoolMeta:
        query = AutopoolMeta.query.filter_by(id=AutopoolService.META_ID)
        if lock:
            query = query.with_for_update()
        meta = query.first()
        if meta is None:
            meta = AutopoolMeta(id=AutopoolService.META_ID, last_filled_position=0, next_distribution_position=1)
            db.session.add(meta)
            db.session.flush()
        return meta

    @staticmethod
    def assign_to_next_position(user_id: int, rank: str) -> AutopoolPosition:
        """Take the next position for (user, rank); the same position is returned on repeat calls. No commit."""
        existing = AutopoolPosition.query.filter_by(user_id=user_id, rank=rank).first()
        if existing:
            return existing

        meta = AutopoolService.get_meta(lock=True)
        meta.last_filled_position = (meta.last_filled_position or 0) + 1
        position = AutopoolPosition(
            position=meta.last_filled_position,
            user_id=user_id,
            rank=rank,
            assigned_at=utcnow(),
        )
        db.session.add(position)
        db.session.flush()

        logger.info(f"User {user_id} assigned autopool position {position.position} for {rank}")
        return position

    @staticmethod
    def get_next_distribution_position() -> Optional[int]:
        """Position the next accrual run starts from, wrapping to 1; None when the pool is empty."""
        meta = AutopoolService.get_meta()
        last_filled = meta.last_filled_position or 0
        if last_filled == 0:
            return None
        position = meta.next_distribution_position or 1
        if position < 1 or position > last_filled:
            position = 1
        return position

    @staticmethod
    def get_user_positions(user_id: int):
        positions = (AutopoolPosition.query
                     .filter_by(user_id=user_id)
                     .order_by(AutopoolPosition.position.asc())
                     .all())
        return [p.to_dict() for p in positions]

    @staticmethod
    def generate_pool_income(max_positions: Optional[int] = None) -> Dict[str, Any]:
        """
        One accrual pass: every visited position accrues 1% of its rank's
        activation amount through the referral gate. A filled position is
        visited at most once per pass.
        """
        stats = {
            "visited": 0,
            "credited": 0,
            "locked": 0,
            "skipped": 0,
            "total_amount": Decimal("0.00"),
            "start_position": None,
            "next_position": None,
        }

        try:
            meta = AutopoolService.get_meta(lock=True)
            last_filled = meta.last_filled_position or 0
            if last_filled == 0:
                db.session.commit()
                return AutopoolService._serialise(stats)

            count = last_filled if not max_positions else min(max_positions, last_filled)
            current = AutopoolService.get_next_distribution_position()
            stats["start_position"] = current
            now = utcnow()

            for _ in range(count):
                stats["visited"] += 1
                position = AutopoolPosition.query.filter_by(position=current).first()
                user = db.session.get(User, position.user_id, with_for_update=True) if position else None

                if (position is None or user is None
                        or not IncomeConfig.is_valid_rank(position.rank)
                        or user.status in (UserStatus.SUSPENDED.value, UserStatus.BLOCKED.value)):
                    stats["skipped"] += 1
                else:
                    income = IncomePoolService.credit_gated_income(
                        user,
                        position.rank,
                        IncomeCalculator.pool_accrual(position.rank),
                        IncomeType.AUTOPOOL.value,
                        description=f"Autopool income for position {position.position}",
                    )
                    position.last_distributed_at = now
                    position.distribution_count = (position.distribution_count or 0) + 1
                    if income is None:
                        stats["skipped"] += 1
                    else:
                        stats["total_amount"] += Decimal(income.amount)
                        if income.status == IncomeStatus.LOCKED.value:
                            stats["locked"] += 1
                        else:
                            stats["credited"] += 1

                current = current + 1 if current < last_filled else 1

            meta.next_distribution_position = current
            stats["next_position"] = current

            AuditLog.record(
                "autopool_run",
                visited=stats["visited"],
                credited=stats["credited"],
                locked=stats["locked"],
                skipped=stats["skipped"],
                total_amount=str(stats["total_amount"]),
            )
            db.session.commit()

            log_event(income_logger, "autopool", "Pool income generated",
                      visited=stats["visited"], total_amount=str(stats["total_amount"]))
            return AutopoolService._serialise(stats)

        except Exception:
            db.session.rollback()
            raise

    @staticmethod
    def _serialise(stats):
        result = dict(stats)
        result["total_amount"] = float(stats["total_amount"])
        return result
