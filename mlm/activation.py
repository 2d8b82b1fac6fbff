import logging
import uuid
from decimal import Decimal
from typing import Dict, Any, List, Optional

from extensions import db
from logger import log_event, income_logger
from models import User, Wallet, Transaction, AuditLog, TransactionType, TransactionStatus, UserStatus
from mlm.autopool import AutopoolService
from mlm.config import IncomeConfig
from mlm.global_cycle import GlobalCycleService
from mlm.income_engine import IncomeEngine, ACTIVATION_TYPES
from mlm.income_pools import IncomePoolService
from utils import utcnow, round2


logger = logging.getLogger(__name__)

PAYMENT_METHODS = ("wallet", "fund_wallet", "external")


class ActivationError(Exception):
    pass


class ActivationService:

    @staticmethod
    def activated_ranks(user_id: int) -> set:
        rows = (db.session.query(Transaction.rank)
                .filter(
                    Transaction.user_id == user_id,
                    Transaction.type.in_(ACTIVATION_TYPES),
                    Transaction.status == TransactionStatus.COMPLETED.value,
                    Transaction.rank.isnot(None),
                ).distinct().all())
        return {row[0] for row in rows}

    @staticmethod
    def activate_rank(user_id: int, rank: str, payment_method: str = "wallet",
                      activate_all_ranks: bool = False, transaction_hash: Optional[str] = None) -> Dict[str, Any]:
        """
        Pay for ``rank`` (or every rank up to it) and run the activation handler
        for each completed activation.
        """
        if not IncomeConfig.is_valid_rank(rank):
            raise ActivationError(f"Invalid rank: {rank}")

        if payment_method not in PAYMENT_METHODS:
            raise ActivationError(f"Unsupported payment method: {payment_method}")

        try:
            user = db.session.get(User, user_id, with_for_update=True)
            if not user:
                raise ActivationError("User not found")

            if user.status in (UserStatus.SUSPENDED.value, UserStatus.BLOCKED.value):
                raise ActivationError(f"Account is {user.status}")

            candidates = IncomeConfig.ranks_up_to(rank) if activate_all_ranks else [rank]
            already = ActivationService.activated_ranks(user_id)
            to_activate = [r for r in candidates if r not in already]
            if not to_activate:
                raise ActivationError("Rank already activated")

            total = sum((IncomeConfig.activation_amount(r) for r in to_activate), Decimal("0"))

            if payment_method == "wallet":
                if Decimal(user.available_balance or 0) < total:
                    raise ActivationError("Insufficient balance")
                user.available_balance = round2(Decimal(user.available_balance) - total)

            elif payment_method == "fund_wallet":
                wallet = Wallet.query.filter_by(user_id=user_id).with_for_update().first()
                if not wallet or Decimal(wallet.balance or 0) < total:
                    raise ActivationError("Insufficient funding wallet balance")
                wallet.balance = round2(Decimal(wallet.balance) - total)

            else:
                if not transaction_hash:
                    raise ActivationError("Transaction hash is required for external payments")
                if Transaction.query.filter_by(transaction_hash=transaction_hash).first():
                    raise ActivationError("Transaction hash already used")

            now = utcnow()
            batch_reference = uuid.uuid4().hex[:12]
            transactions: List[Transaction] = []
            for index, rank_key in enumerate(to_activate):
                amount = IncomeConfig.activation_amount(rank_key)
                transaction = Transaction(
                    user_id=user.id,
                    type=TransactionType.ACTIVATION.value,
                    status=TransactionStatus.COMPLETED.value,
                    amount=amount,
                    net_amount=amount,
                    rank=rank_key,
                    payment_method=payment_method,
                    reference=f"ACT-{batch_reference}-{index + 1}",
                    transaction_hash=transaction_hash if index == 0 else None,
                    description=f"{IncomeConfig.get_rank(rank_key)['name']} rank activation",
                    details={"batch": batch_reference, "external_hash": transaction_hash},
                    processed_at=now,
                )
                db.session.add(transaction)
                transactions.append(transaction)

            AuditLog.record("rank_activation", actor_id=user.id, ranks=to_activate,
                            amount=str(total), payment_method=payment_method)
            db.session.commit()

        except Exception:
            db.session.rollback()
            raise

        results = []
        for transaction in transactions:
            results.append({
                "transactionId": transaction.id,
                "rank": transaction.rank,
                "amount": float(transaction.amount),
                "incomes": ActivationService.handle_activation_transaction(transaction.id),
            })

        user = db.session.get(User, user_id)
        log_event(income_logger, "activation", "Ranks activated", user_id=user_id, ranks=to_activate)
        return {
            "activatedRanks": to_activate,
            "totalAmount": float(total),
            "currentRank": user.rank,
            "transactions": results,
        }

    @staticmethod
    def unlocks_rank(transaction: Transaction) -> bool:
        """Activations and auto top-ups always unlock; a plain top-up only at the entry rank price."""
        if transaction.type != TransactionType.TOPUP.value:
            return True
        entry_rank = IncomeConfig.next_rank(None)
        return round2(transaction.amount) == IncomeConfig.activation_amount(entry_rank)

    @staticmethod
    def handle_activation_transaction(transaction_id: int) -> Optional[Dict[str, Any]]:
        """
        Post-commit activation handler: update rank and activity, open the
        pool, take autopool and global-cycle places, then distribute incomes.
        Failures are logged; the activation transaction itself stands.
        """
        try:
            transaction = db.session.get(Transaction, transaction_id)
            if (not transaction or transaction.type not in ACTIVATION_TYPES
                    or transaction.status != TransactionStatus.COMPLETED.value):
                logger.warning(f"Transaction {transaction_id} is not a completed activation, ignoring")
                return None

            user = db.session.get(User, transaction.user_id, with_for_update=True)
            rank = transaction.rank
            if not user or not IncomeConfig.is_valid_rank(rank):
                logger.warning(f"Activation {transaction_id} has no valid user or rank")
                return None

            if ActivationService.unlocks_rank(transaction):
                if IncomeConfig.rank_order(rank) > IncomeConfig.rank_order(user.rank):
                    user.rank = rank
                was_active = user.is_active
                user.is_active = True
                user.rank_activated_at = utcnow()

                IncomePoolService.create_income_pool(user, rank)
                AutopoolService.assign_to_next_position(user.id, rank)
                GlobalCycleService.join_global_cycle(user.id, rank)

                if not was_active and user.sponsor_id:
                    IncomePoolService.update_direct_referrals(user.sponsor_id)

                db.session.commit()
                logger.info(f"User {user.id} activated {rank} via transaction {transaction_id}")
            else:
                logger.info(f"Top-up {transaction_id} of {transaction.amount} leaves user {user.id} rank unchanged")

            return IncomeEngine.process_all_incomes(transaction_id)

        except Exception as e:
            db.session.rollback()
            logger.error(f"Activation handling failed for transaction {transaction_id}: {e}", exc_info=True)
            return None
