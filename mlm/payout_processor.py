import logging
from datetime import timedelta
from decimal import Decimal
from typing import Dict, Any, List, Optional

from flask import current_app

from blueprints.withdraw_helpers import WithdrawalProcessor, WithdrawalNotifier
from extensions import db
from logger import log_event, payments_logger
from models import (
    Withdrawal, PayoutQueue, Transaction, AuditLog,
    WithdrawalStatus, TransactionStatus,
)
from mlm.gateway import PayoutGateway
from utils import utcnow


logger = logging.getLogger(__name__)

MAX_PAYOUT_ATTEMPTS = 3
RETRY_BASE_SECONDS = 60
PAYABLE_STATUSES = (WithdrawalStatus.PENDING.value, WithdrawalStatus.APPROVED.value)
FINAL_STATUSES = (WithdrawalStatus.COMPLETED.value, WithdrawalStatus.REJECTED.value)
# Claimed entries are pushed this far ahead so a parallel sweep skips them
PROCESSING_LEASE = timedelta(minutes=10)


class PayoutProcessingError(Exception):
    pass


def calculate_retry_delay(attempts: int) -> timedelta:
    """Backoff before the next attempt: 2^attempts minutes."""
    return timedelta(seconds=(2 ** attempts) * RETRY_BASE_SECONDS)


class PayoutProcessor:
    """
    Drains the payout queue. Each due entry is disbursed through the gateway;
    failures are retried with exponential backoff and, after the third
    failed attempt, the withdrawal is rejected and refunded.
    """

    def __init__(self, gateway: Optional[PayoutGateway] = None):
        self.gateway = gateway or PayoutGateway.from_config(current_app.config)

    def process_payout_queue(self, batch_size: int = 10, now=None) -> Dict[str, Any]:
        now = now or utcnow()
        stats = {
            "processed": 0,
            "succeeded": 0,
            "removed": 0,
            "retry_scheduled": 0,
            "rejected": 0,
            "errors": [],
        }

        due_entries = (PayoutQueue.query
                       .filter(PayoutQueue.scheduled_at <= now)
                       .order_by(PayoutQueue.scheduled_at.asc(), PayoutQueue.id.asc())
                       .limit(batch_size)
                       .with_for_update(skip_locked=True)
                       .all())
        entry_ids = []
        for entry in due_entries:
            entry.scheduled_at = now + PROCESSING_LEASE
            entry_ids.append(entry.id)
        db.session.commit()

        if not entry_ids:
            return stats

        logger.info(f"Processing {len(entry_ids)} due payouts")

        for entry_id in entry_ids:
            stats["processed"] += 1
            try:
                outcome = self._process_single_payout(entry_id, now)
            except Exception as e:
                db.session.rollback()
                logger.warning(f"Payout queue entry {entry_id} failed: {e}")
                stats["errors"].append({"queue_id": entry_id, "error": str(e)})
                outcome = self._handle_payout_error(entry_id, e, now)

            if outcome == "completed":
                stats["succeeded"] += 1
            elif outcome == "removed":
                stats["removed"] += 1
            elif outcome == "retry":
                stats["retry_scheduled"] += 1
            elif outcome == "rejected":
                stats["rejected"] += 1

        AuditLog.record(
            "payout_sweep",
            processed=stats["processed"],
            succeeded=stats["succeeded"],
            retry_scheduled=stats["retry_scheduled"],
            rejected=stats["rejected"],
        )
        db.session.commit()

        log_event(payments_logger, "payout", "Payout sweep finished",
                  processed=stats["processed"], succeeded=stats["succeeded"],
                  retry_scheduled=stats["retry_scheduled"], rejected=stats["rejected"])
        return stats

    def _process_single_payout(self, entry_id: int, now) -> str:
        entry = db.session.get(PayoutQueue, entry_id, with_for_update=True)
        if entry is None:
            return "missing"

        withdrawal = db.session.get(Withdrawal, entry.withdrawal_id, with_for_update=True)
        if withdrawal is None:
            raise PayoutProcessingError(f"Withdrawal {entry.withdrawal_id} not found")

        if withdrawal.status in FINAL_STATUSES:
            db.session.delete(entry)
            db.session.commit()
            logger.info(f"Removed queue entry {entry_id}; withdrawal {withdrawal.id} is {withdrawal.status}")
            return "removed"

        # Still processing after the lease ran out: the earlier attempt never finished
        if withdrawal.status == WithdrawalStatus.PROCESSING.value:
            raise PayoutProcessingError(f"Withdrawal {withdrawal.id} was left in processing by an interrupted sweep")

        withdrawal.status = WithdrawalStatus.PROCESSING.value
        entry.last_attempt_at = now
        db.session.commit()

        success, tx_hash = self.gateway.disburse(withdrawal)
        if not success:
            raise PayoutProcessingError("Payout was not accepted by the gateway")

        withdrawal.status = WithdrawalStatus.COMPLETED.value
        withdrawal.processed_at = now
        withdrawal.transaction_hash = tx_hash

        if withdrawal.transaction_id:
            transaction = db.session.get(Transaction, withdrawal.transaction_id)
            if transaction:
                transaction.status = TransactionStatus.COMPLETED.value
                transaction.processed_at = now
                if tx_hash:
                    transaction.transaction_hash = tx_hash

        db.session.delete(entry)
        AuditLog.record("payout_completed", actor_id=withdrawal.user_id, withdrawal_id=withdrawal.id,
                        net_amount=str(withdrawal.net_amount), transaction_hash=tx_hash)
        db.session.commit()

        WithdrawalNotifier.notify_withdrawal_completed(withdrawal)
        return "completed"

    def _handle_payout_error(self, entry_id: int, error: Exception, now) -> str:
        try:
            entry = db.session.get(PayoutQueue, entry_id, with_for_update=True)
            if entry is None:
                return "missing"

            attempts = (entry.attempts or 0) + 1
            withdrawal = db.session.get(Withdrawal, entry.withdrawal_id, with_for_update=True)

            if attempts >= MAX_PAYOUT_ATTEMPTS:
                reason = f"Payout failed after {attempts} attempts: {error}"
                if withdrawal and withdrawal.status in PAYABLE_STATUSES + (WithdrawalStatus.PROCESSING.value,):
                    WithdrawalProcessor.refund_and_reject(withdrawal, reason)
                    AuditLog.record("payout_rejected", actor_id=withdrawal.user_id,
                                    withdrawal_id=withdrawal.id, attempts=attempts, error=str(error)[:255])
                else:
                    db.session.delete(entry)
                db.session.commit()
                if withdrawal:
                    WithdrawalNotifier.notify_withdrawal_rejected(withdrawal)
                return "rejected"

            entry.attempts = attempts
            entry.last_error = str(error)[:1000]
            entry.last_attempt_at = now
            entry.scheduled_at = now + calculate_retry_delay(attempts)

            # Back to the status it was picked up in so the next sweep can retry it
            if withdrawal and withdrawal.status == WithdrawalStatus.PROCESSING.value:
                withdrawal.status = (WithdrawalStatus.APPROVED.value if withdrawal.approved_at
                                     else WithdrawalStatus.PENDING.value)
            db.session.commit()

            payments_logger.warning(
                f"[RETRY] Queue entry {entry_id} attempt {attempts} failed; next at {entry.scheduled_at}"
            )
            return "retry"

        except Exception as e:
            db.session.rollback()
            logger.error(f"Could not record payout failure for queue entry {entry_id}: {e}")
            return "error"

    # ==========================================================
    #                  QUERY HELPERS
    # ==========================================================
    @staticmethod
    def get_user_withdrawal_history(user_id: int, limit: int = 20) -> List[Dict[str, Any]]:
        withdrawals = (Withdrawal.query
                       .filter_by(user_id=user_id)
                       .order_by(Withdrawal.created_at.desc())
                       .limit(limit)
                       .all())
        return [w.to_dict() for w in withdrawals]

    @staticmethod
    def get_withdrawal_stats(user_id: Optional[int] = None) -> Dict[str, Any]:
        query = Withdrawal.query
        if user_id is not None:
            query = query.filter_by(user_id=user_id)
        withdrawals = query.all()

        def total(items):
            return sum((Decimal(w.amount) for w in items), Decimal("0"))

        completed = [w for w in withdrawals if w.status == WithdrawalStatus.COMPLETED.value]
        pending = [w for w in withdrawals if w.status in PAYABLE_STATUSES + (WithdrawalStatus.PROCESSING.value,)]
        rejected = [w for w in withdrawals if w.status == WithdrawalStatus.REJECTED.value]
        overall = total(withdrawals)

        return {
            "totalWithdrawals": len(withdrawals),
            "totalAmount": float(overall),
            "completedWithdrawals": len(completed),
            "completedAmount": float(total(completed)),
            "pendingWithdrawals": len(pending),
            "pendingAmount": float(total(pending)),
            "rejectedWithdrawals": len(rejected),
            "averageAmount": float(overall / len(withdrawals)) if withdrawals else 0.0,
        }

    @staticmethod
    def get_queue_snapshot(limit: int = 50) -> List[Dict[str, Any]]:
        entries = PayoutQueue.query.order_by(PayoutQueue.scheduled_at.asc()).limit(limit).all()
        return [entry.to_dict() for entry in entries]
