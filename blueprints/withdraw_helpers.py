from decimal import Decimal, ROUND_HALF_UP
from datetime import datetime, timedelta, time
from functools import wraps
import uuid
import logging
from typing import Tuple, Dict, Optional, Any

from extensions import db
from logger import payments_logger
from models import (
    User, Withdrawal, PayoutQueue, Transaction, AuditLog, PlatformSettings,
    WithdrawalStatus, TransactionType, TransactionStatus, UserStatus,
)
from utils import utcnow, to_decimal, validate_wallet_address


logger = logging.getLogger(__name__)

OPEN_STATUSES = (
    WithdrawalStatus.PENDING.value,
    WithdrawalStatus.APPROVED.value,
    WithdrawalStatus.PROCESSING.value,
)

# ==========================================================
#                  CONFIGURATION
# ==========================================================
class WithdrawalConfig:
    MIN_WITHDRAWAL = Decimal("10")
    MAX_WITHDRAWAL = Decimal("50000")
    DAILY_LIMIT = Decimal("10000")

    METHODS = ("usdt_bep20", "fund_conversion", "p2p")
    FEE_PERCENTAGES = {
        "usdt_bep20": Decimal("5"),
        "fund_conversion": Decimal("10"),
        "p2p": Decimal("0"),
    }
    PROCESSING_FEE_PERCENT = Decimal("5")

    HIGH_PRIORITY_AMOUNT = Decimal("1000")
    MEDIUM_PRIORITY_AMOUNT = Decimal("100")

    # Minutes before a queued payout becomes due
    SCHEDULE_DELAY_MINUTES = {
        "p2p": 0,
        "usdt_bep20": 30,
        "fund_conversion": 60,
    }
    DEFAULT_DELAY_MINUTES = 15

    @staticmethod
    def fee_percentage(method: str) -> Decimal:
        return WithdrawalConfig.FEE_PERCENTAGES.get(method, WithdrawalConfig.PROCESSING_FEE_PERCENT)

    @staticmethod
    def calculate_fee(amount: Decimal, method: str) -> Decimal:
        """Calculate processing fee"""
        fee = (Decimal(str(amount)) * WithdrawalConfig.fee_percentage(method)) / Decimal("100")
        return fee.quantize(Decimal('0.01'), rounding=ROUND_HALF_UP)

    @staticmethod
    def calculate_net(amount: Decimal, method: str) -> Decimal:
        amount = Decimal(str(amount)).quantize(Decimal('0.01'), rounding=ROUND_HALF_UP)
        return amount - WithdrawalConfig.calculate_fee(amount, method)

    @staticmethod
    def get_priority(amount: Decimal, method: str) -> str:
        amount = Decimal(str(amount))
        if amount >= WithdrawalConfig.HIGH_PRIORITY_AMOUNT:
            return "high"
        if amount >= WithdrawalConfig.MEDIUM_PRIORITY_AMOUNT or method == "p2p":
            return "medium"
        return "low"

    @staticmethod
    def get_schedule_delay(method: str) -> timedelta:
        minutes = WithdrawalConfig.SCHEDULE_DELAY_MINUTES.get(method, WithdrawalConfig.DEFAULT_DELAY_MINUTES)
        return timedelta(minutes=minutes)

    @staticmethod
    def limits() -> Dict[str, Decimal]:
        """Effective limits; the settings row overrides the defaults."""
        settings = PlatformSettings.get()
        return {
            "min": Decimal(settings.min_withdrawal or WithdrawalConfig.MIN_WITHDRAWAL),
            "max": Decimal(settings.max_withdrawal or WithdrawalConfig.MAX_WITHDRAWAL),
            "daily": Decimal(settings.daily_withdrawal_limit or WithdrawalConfig.DAILY_LIMIT),
        }

# ==========================================================
#                  EXCEPTIONS
# ==========================================================
class WithdrawalException(Exception):
    """Base withdrawal exception"""
    pass

class InsufficientBalanceError(WithdrawalException):
    pass

class ValidationError(WithdrawalException):
    pass

class WithdrawalNotFoundError(WithdrawalException):
    pass

# ==========================================================
#                  BALANCE LOCK MANAGER
# ==========================================================
class BalanceLockManager:
    """In-process guard against double submission by the same user."""
    _locked_users = set()

    @classmethod
    def acquire_lock(cls, user_id: int) -> bool:
        if user_id in cls._locked_users:
            return False
        cls._locked_users.add(user_id)
        return True

    @classmethod
    def release_lock(cls, user_id: int):
        cls._locked_users.discard(user_id)

    @classmethod
    def with_lock(cls, func):
        """Decorator that locks based on first argument `user_id`"""
        @wraps(func)
        def wrapper(user_id, *args, **kwargs):
            if not cls.acquire_lock(user_id):
                return False, "Another withdrawal in progress", None
            try:
                return func(user_id, *args, **kwargs)
            finally:
                cls.release_lock(user_id)
        return wrapper

# ==========================================================
#                  WITHDRAWAL VALIDATOR
# ==========================================================
class WithdrawalValidator:
    @staticmethod
    def validate_withdrawal_request(user_id: int, amount, method: str,
                                    wallet_address: Optional[str] = None,
                                    bank_details: Optional[Dict] = None,
                                    p2p_details: Optional[Dict] = None) -> Tuple[bool, str]:
        """Every check a withdrawal must pass before any balance moves."""
        # 1️⃣ Amount validation
        amount_dec = to_decimal(amount)
        if amount_dec is None:
            return False, "Invalid amount format"

        limits = WithdrawalConfig.limits()
        if amount_dec < limits["min"]:
            return False, f"Minimum withdrawal is {limits['min']} USDT"

        if amount_dec > limits["max"]:
            return False, f"Maximum withdrawal is {limits['max']} USDT"

        # 2️⃣ User validation
        user = db.session.get(User, user_id)
        if not user:
            return False, "User not found"

        if user.status in (UserStatus.SUSPENDED.value, UserStatus.BLOCKED.value):
            return False, f"Account is {user.status}"

        if not user.is_active:
            return False, "Activate a rank before withdrawing"

        # 3️⃣ Method specific details
        if method not in WithdrawalConfig.METHODS:
            return False, "Invalid withdrawal method"

        if method == "usdt_bep20" and not validate_wallet_address(wallet_address):
            return False, "A valid BEP20 wallet address is required"

        if method == "fund_conversion":
            if not bank_details or not all(bank_details.get(k) for k in ("accountNumber", "bankName", "accountHolderName")):
                return False, "Bank details are required for fund conversion"

        if method == "p2p" and not (p2p_details and p2p_details.get("recipientCode")):
            return False, "Recipient details are required for P2P withdrawal"

        # 4️⃣ Balance
        if amount_dec > Decimal(user.available_balance or 0):
            return False, "Insufficient balance"

        # 5️⃣ One open withdrawal at a time
        open_withdrawal = Withdrawal.query.filter(
            Withdrawal.user_id == user_id,
            Withdrawal.status.in_(OPEN_STATUSES),
        ).first()
        if open_withdrawal:
            return False, "You have a pending withdrawal. Please wait for it to complete."

        # 6️⃣ Daily limit
        today_total = WithdrawalValidator.withdrawn_today(user_id)
        if today_total + amount_dec > limits["daily"]:
            return False, f"Daily withdrawal limit of {limits['daily']} USDT exceeded"

        return True, "Validation passed"

    @staticmethod
    def withdrawn_today(user_id: int) -> Decimal:
        start_of_day = datetime.combine(utcnow().date(), time.min)
        total = db.session.query(db.func.coalesce(db.func.sum(Withdrawal.amount), 0)).filter(
            Withdrawal.user_id == user_id,
            Withdrawal.created_at >= start_of_day,
            Withdrawal.status.in_(OPEN_STATUSES + (WithdrawalStatus.COMPLETED.value,)),
        ).scalar()
        return Decimal(str(total or 0))

# ==========================================================
#                  BALANCE MANAGER
# ==========================================================
class BalanceManager:
    @staticmethod
    def deduct(user: User, amount: Decimal) -> None:
        """Take ``amount`` from the available balance; never leaves it negative. No commit."""
        available = Decimal(user.available_balance or 0)
        if amount > available:
            raise InsufficientBalanceError("Insufficient balance")
        user.available_balance = available - amount
        user.total_withdrawn = Decimal(user.total_withdrawn or 0) + amount

    @staticmethod
    def refund(user: User, amount: Decimal) -> None:
        """Return a withdrawn amount to the available balance. No commit."""
        user.available_balance = Decimal(user.available_balance or 0) + amount
        user.total_withdrawn = max(Decimal("0.00"), Decimal(user.total_withdrawn or 0) - amount)

# ==========================================================
#                  NOTIFICATION MANAGER
# ==========================================================
class WithdrawalNotifier:
    @staticmethod
    def notify_withdrawal_created(withdrawal: Withdrawal):
        payments_logger.info(
            f"[REQUESTED] User {withdrawal.user_id} - Amount: {withdrawal.amount} - "
            f"Net: {withdrawal.net_amount} - Method: {withdrawal.method} - ID: {withdrawal.id}"
        )

    @staticmethod
    def notify_withdrawal_completed(withdrawal: Withdrawal):
        payments_logger.info(
            f"[COMPLETED] User {withdrawal.user_id} - Net: {withdrawal.net_amount} - "
            f"ID: {withdrawal.id} - Hash: {withdrawal.transaction_hash}"
        )

    @staticmethod
    def notify_withdrawal_failure(user_id: int, amount, reason: str):
        payments_logger.warning(f"[FAILED] User {user_id} - Amount: {amount} - Reason: {reason}")

    @staticmethod
    def notify_withdrawal_rejected(withdrawal: Withdrawal):
        payments_logger.warning(
            f"[REJECTED] User {withdrawal.user_id} - Amount: {withdrawal.amount} refunded - "
            f"ID: {withdrawal.id} - Reason: {withdrawal.rejection_reason}"
        )

# ==========================================================
#                  MAIN WITHDRAWAL PROCESSOR
# ==========================================================
class WithdrawalProcessor:

    @staticmethod
    @BalanceLockManager.with_lock
    def process_withdrawal_request(user_id: int, amount, method: str,
                                   wallet_address: Optional[str] = None,
                                   bank_details: Optional[Dict] = None,
                                   p2p_details: Optional[Dict] = None) -> Tuple[bool, str, Optional[Dict[str, Any]]]:
        """
        Validate, deduct the gross amount, record the withdrawal and queue its payout.
        Returns: (success, message, withdrawal_data)
        """
        is_valid, validation_msg = WithdrawalValidator.validate_withdrawal_request(
            user_id, amount, method, wallet_address, bank_details, p2p_details
        )
        if not is_valid:
            WithdrawalNotifier.notify_withdrawal_failure(user_id, amount, validation_msg)
            return False, validation_msg, None

        amount_dec = to_decimal(amount).quantize(Decimal('0.01'), rounding=ROUND_HALF_UP)
        fee = WithdrawalConfig.calculate_fee(amount_dec, method)
        net_amount = amount_dec - fee

        try:
            user = db.session.get(User, user_id, with_for_update=True)
            BalanceManager.deduct(user, amount_dec)

            now = utcnow()
            reference = uuid.uuid4().hex
            transaction = Transaction(
                user_id=user_id,
                type=TransactionType.WITHDRAWAL.value,
                status=TransactionStatus.PENDING.value,
                amount=amount_dec,
                fee=fee,
                net_amount=net_amount,
                payment_method=method,
                reference=f"WD-{reference}",
                description=f"Withdrawal via {method}",
            )
            db.session.add(transaction)
            db.session.flush()

            withdrawal = Withdrawal(
                user_id=user_id,
                transaction_id=transaction.id,
                amount=amount_dec,
                fee=fee,
                net_amount=net_amount,
                method=method,
                wallet_address=wallet_address if method == "usdt_bep20" else None,
                bank_details=bank_details if method == "fund_conversion" else None,
                p2p_details=p2p_details if method == "p2p" else None,
                status=WithdrawalStatus.PENDING.value,
                reference=reference,
            )
            db.session.add(withdrawal)
            db.session.flush()

            queue_entry = PayoutQueue(
                withdrawal_id=withdrawal.id,
                user_id=user_id,
                amount=net_amount,
                method=method,
                priority=WithdrawalConfig.get_priority(amount_dec, method),
                scheduled_at=now + WithdrawalConfig.get_schedule_delay(method),
                attempts=0,
            )
            db.session.add(queue_entry)
            AuditLog.record("withdrawal_requested", actor_id=user_id, withdrawal_id=withdrawal.id,
                            amount=str(amount_dec), fee=str(fee), method=method)
            db.session.commit()

        except InsufficientBalanceError as e:
            db.session.rollback()
            WithdrawalNotifier.notify_withdrawal_failure(user_id, amount, str(e))
            return False, str(e), None
        except Exception as e:
            db.session.rollback()
            logger.error(f"Withdrawal processing failed for user {user_id}: {e}")
            WithdrawalNotifier.notify_withdrawal_failure(user_id, amount, str(e))
            return False, "Withdrawal processing failed. Please try again.", None

        WithdrawalNotifier.notify_withdrawal_created(withdrawal)
        return True, "Withdrawal request submitted successfully", {
            "withdrawal": withdrawal.to_dict(),
            "queue": queue_entry.to_dict(),
            "availableBalance": float(user.available_balance),
        }

    @staticmethod
    def approve_withdrawal(withdrawal_id: int, admin_id: int) -> Tuple[bool, str]:
        """Approve a pending withdrawal and make its payout due immediately."""
        try:
            withdrawal = Withdrawal.query.filter_by(id=withdrawal_id).with_for_update().first()
            if not withdrawal:
                return False, "Withdrawal not found"
            if withdrawal.status != WithdrawalStatus.PENDING.value:
                return False, f"Withdrawal status is {withdrawal.status}, expected pending"

            now = utcnow()
            withdrawal.status = WithdrawalStatus.APPROVED.value
            withdrawal.approved_by = admin_id
            withdrawal.approved_at = now

            queue_entry = PayoutQueue.query.filter_by(withdrawal_id=withdrawal.id).first()
            if queue_entry is None:
                queue_entry = PayoutQueue(
                    withdrawal_id=withdrawal.id,
                    user_id=withdrawal.user_id,
                    amount=withdrawal.net_amount,
                    method=withdrawal.method,
                    priority=WithdrawalConfig.get_priority(withdrawal.amount, withdrawal.method),
                    attempts=0,
                )
                db.session.add(queue_entry)
            queue_entry.scheduled_at = now

            AuditLog.record("withdrawal_approved", actor_id=admin_id, withdrawal_id=withdrawal.id)
            db.session.commit()
            payments_logger.info(f"[APPROVED] Withdrawal {withdrawal.id} approved by admin {admin_id}")
            return True, "Withdrawal approved and queued for payout"

        except Exception as e:
            db.session.rollback()
            logger.error(f"Failed to approve withdrawal {withdrawal_id}: {e}")
            return False, "Failed to approve withdrawal"

    @staticmethod
    def reject_withdrawal(withdrawal_id: int, admin_id: Optional[int], reason: str) -> Tuple[bool, str]:
        """Reject an open withdrawal, refund the gross amount and drop its queue entry."""
        try:
            withdrawal = Withdrawal.query.filter_by(id=withdrawal_id).with_for_update().first()
            if not withdrawal:
                return False, "Withdrawal not found"
            if withdrawal.status not in (WithdrawalStatus.PENDING.value, WithdrawalStatus.APPROVED.value):
                return False, f"Cannot reject a withdrawal that is {withdrawal.status}"

            WithdrawalProcessor.refund_and_reject(withdrawal, reason, admin_id)
            AuditLog.record("withdrawal_rejected", actor_id=admin_id, withdrawal_id=withdrawal.id, reason=reason)
            db.session.commit()
            WithdrawalNotifier.notify_withdrawal_rejected(withdrawal)
            return True, "Withdrawal rejected and balance refunded"

        except Exception as e:
            db.session.rollback()
            logger.error(f"Failed to reject withdrawal {withdrawal_id}: {e}")
            return False, "Failed to reject withdrawal"

    @staticmethod
    def refund_and_reject(withdrawal: Withdrawal, reason: str, admin_id: Optional[int] = None) -> None:
        """Shared terminal path for admin rejection and exhausted payout retries. No commit."""
        user = db.session.get(User, withdrawal.user_id, with_for_update=True)
        BalanceManager.refund(user, Decimal(withdrawal.amount))

        now = utcnow()
        withdrawal.status = WithdrawalStatus.REJECTED.value
        withdrawal.rejection_reason = (reason or "Rejected")[:255]
        withdrawal.processed_by = admin_id
        withdrawal.processed_at = now

        if withdrawal.transaction_id:
            transaction = db.session.get(Transaction, withdrawal.transaction_id)
            if transaction:
                transaction.status = TransactionStatus.FAILED.value
                transaction.processed_at = now

        PayoutQueue.query.filter_by(withdrawal_id=withdrawal.id).delete()

# ==========================================================
#                  QUERY HELPERS
# ==========================================================
class WithdrawalQueryHelper:
    @staticmethod
    def get_user_withdrawals(user_id: int, limit: int = 20):
        """Get user's withdrawal history"""
        return Withdrawal.query.filter_by(user_id=user_id)\
                              .order_by(Withdrawal.created_at.desc())\
                              .limit(limit)\
                              .all()

    @staticmethod
    def get_withdrawals_by_status(status: Optional[str] = None, limit: int = 100):
        query = Withdrawal.query
        if status:
            query = query.filter_by(status=status)
        return query.order_by(Withdrawal.created_at.desc()).limit(limit).all()

    @staticmethod
    def get_withdrawal_by_ref(reference: str):
        """Find withdrawal by reference"""
        return Withdrawal.query.filter_by(reference=reference).first()
