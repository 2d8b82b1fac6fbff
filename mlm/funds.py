import logging
import uuid
from datetime import timedelta
from decimal import Decimal
from typing import Dict, Any, Optional

from extensions import db
from logger import log_event, payments_logger
from models import (
    User, Wallet, Transaction, FundRequest, Payout, AuditLog,
    TransactionType, TransactionStatus, UserStatus, IncomeType,
)
from mlm.income_engine import IncomeEngine
from utils import utcnow, to_decimal, round2


logger = logging.getLogger(__name__)

FUND_REQUEST_CURRENCIES = ("USDT",)


class FundsError(Exception):
    """Base class for transfer, fund request and payout claim failures"""
    pass


class TransferError(FundsError):
    pass


class FundRequestError(FundsError):
    pass


class PayoutClaimError(FundsError):
    pass


# ==========================================================
#                  P2P TRANSFERS
# ==========================================================
def transfer_funds(sender_id: int, recipient_code: str, amount) -> Dict[str, Any]:
    """Move available balance to another member identified by user code."""
    amount_dec = to_decimal(amount)
    if amount_dec is None or amount_dec <= 0:
        raise TransferError("Amount must be greater than zero")
    amount_dec = round2(amount_dec)

    recipient_code = (recipient_code or "").strip().upper()
    if not recipient_code:
        raise TransferError("Recipient code is required")

    try:
        sender = db.session.get(User, sender_id, with_for_update=True)
        if not sender:
            raise TransferError("Sender not found")
        if sender.status in (UserStatus.SUSPENDED.value, UserStatus.BLOCKED.value):
            raise TransferError(f"Account is {sender.status}")

        recipient = User.query.filter_by(user_code=recipient_code).with_for_update().first()
        if not recipient:
            raise TransferError("Recipient not found")
        if recipient.id == sender.id:
            raise TransferError("Cannot transfer to yourself")

        if Decimal(sender.available_balance or 0) < amount_dec:
            raise TransferError("Insufficient balance")

        sender.available_balance = round2(Decimal(sender.available_balance) - amount_dec)
        recipient.available_balance = round2(Decimal(recipient.available_balance or 0) + amount_dec)

        now = utcnow()
        reference = uuid.uuid4().hex[:16]
        outgoing = Transaction(
            user_id=sender.id,
            type=TransactionType.TRANSFER.value,
            status=TransactionStatus.COMPLETED.value,
            amount=amount_dec,
            net_amount=amount_dec,
            counterparty_id=recipient.id,
            reference=f"TRF-{reference}-OUT",
            description=f"Transfer to {recipient.user_code}",
            details={"direction": "out", "recipient_code": recipient.user_code},
            processed_at=now,
        )
        incoming = Transaction(
            user_id=recipient.id,
            type=TransactionType.TRANSFER.value,
            status=TransactionStatus.COMPLETED.value,
            amount=amount_dec,
            net_amount=amount_dec,
            counterparty_id=sender.id,
            reference=f"TRF-{reference}-IN",
            description=f"Transfer from {sender.user_code}",
            details={"direction": "in", "sender_code": sender.user_code},
            processed_at=now,
        )
        db.session.add_all([outgoing, incoming])
        AuditLog.record("funds_transferred", actor_id=sender.id, recipient_id=recipient.id, amount=str(amount_dec))
        db.session.commit()

    except Exception:
        db.session.rollback()
        raise

    log_event(payments_logger, "transfer", "Funds transferred", user_id=sender_id,
              recipient=recipient_code, amount=str(amount_dec))
    return {
        "amount": float(amount_dec),
        "recipientCode": recipient_code,
        "reference": reference,
        "availableBalance": float(sender.available_balance),
    }


# ==========================================================
#                  FUND REQUESTS
# ==========================================================
def create_fund_request(user_id: int, amount, currency: str = "USDT",
                        transaction_hash: Optional[str] = None) -> FundRequest:
    amount_dec = to_decimal(amount)
    if amount_dec is None or amount_dec <= 0:
        raise FundRequestError("Amount must be greater than zero")

    currency = (currency or "").upper()
    if currency not in FUND_REQUEST_CURRENCIES:
        raise FundRequestError("Only USDT fund requests are supported")

    request_row = FundRequest(
        user_id=user_id,
        amount=round2(amount_dec),
        currency=currency,
        transaction_hash=transaction_hash,
        status="pending",
    )
    db.session.add(request_row)
    db.session.commit()
    logger.info(f"Fund request {request_row.id} created by user {user_id} for {amount_dec} {currency}")
    return request_row


def _get_pending_fund_request(request_id: int) -> FundRequest:
    request_row = FundRequest.query.filter_by(id=request_id).with_for_update().first()
    if not request_row:
        raise FundRequestError("Fund request not found")
    if request_row.status != "pending":
        raise FundRequestError(f"Fund request is already {request_row.status}")
    return request_row


def approve_fund_request(request_id: int, admin_id: int, note: Optional[str] = None) -> FundRequest:
    """Credit the requester's funding wallet."""
    try:
        request_row = _get_pending_fund_request(request_id)

        wallet = Wallet.query.filter_by(user_id=request_row.user_id).with_for_update().first()
        if wallet is None:
            wallet = Wallet(user_id=request_row.user_id, balance=Decimal("0.00"), currency=request_row.currency)
            db.session.add(wallet)
        wallet.balance = round2(Decimal(wallet.balance or 0) + Decimal(request_row.amount))

        now = utcnow()
        request_row.status = "approved"
        request_row.processed_by = admin_id
        request_row.processed_at = now
        request_row.admin_note = note

        db.session.add(Transaction(
            user_id=request_row.user_id,
            type=TransactionType.FUND_REQUEST.value,
            status=TransactionStatus.COMPLETED.value,
            amount=request_row.amount,
            net_amount=request_row.amount,
            description="Funding wallet top-up",
            details={"fund_request_id": request_row.id},
            processed_at=now,
        ))
        AuditLog.record("fund_request_approved", actor_id=admin_id, fund_request_id=request_row.id,
                        amount=str(request_row.amount))
        db.session.commit()
        return request_row

    except Exception:
        db.session.rollback()
        raise


def reject_fund_request(request_id: int, admin_id: int, note: Optional[str] = None) -> FundRequest:
    try:
        request_row = _get_pending_fund_request(request_id)
        request_row.status = "rejected"
        request_row.processed_by = admin_id
        request_row.processed_at = utcnow()
        request_row.admin_note = note
        AuditLog.record("fund_request_rejected", actor_id=admin_id, fund_request_id=request_row.id)
        db.session.commit()
        return request_row

    except Exception:
        db.session.rollback()
        raise


# ==========================================================
#                  CLAIMABLE PAYOUTS
# ==========================================================
def issue_payout(user_id: int, amount, admin_id: int, description: Optional[str] = None,
                 expires_in_days: Optional[int] = 30) -> Payout:
    amount_dec = to_decimal(amount)
    if amount_dec is None or amount_dec <= 0:
        raise PayoutClaimError("Amount must be greater than zero")
    if not db.session.get(User, user_id):
        raise PayoutClaimError("User not found")

    payout = Payout(
        user_id=user_id,
        amount=round2(amount_dec),
        status="ready",
        description=description,
        expires_at=utcnow() + timedelta(days=expires_in_days) if expires_in_days else None,
        issued_by=admin_id,
    )
    db.session.add(payout)
    AuditLog.record("payout_issued", actor_id=admin_id, user_id=user_id, amount=str(payout.amount))
    db.session.commit()
    return payout


def claim_payout(user_id: int, payout_id: int, password: str) -> Dict[str, Any]:
    """Claim a ready payout after re-checking the member's password."""
    try:
        user = db.session.get(User, user_id, with_for_update=True)
        if not user:
            raise PayoutClaimError("User not found")
        if not password or not user.check_password(password):
            raise PayoutClaimError("Invalid password")

        payout = Payout.query.filter_by(id=payout_id).with_for_update().first()
        if not payout or payout.user_id != user_id:
            raise PayoutClaimError("Payout not found")

        now = utcnow()
        if payout.status != "ready":
            raise PayoutClaimError(f"Payout is {payout.status}")
        if payout.expires_at and payout.expires_at < now:
            payout.status = "expired"
            db.session.commit()
            raise PayoutClaimError("Payout has expired")

        income = IncomeEngine.credit_available(
            user,
            Decimal(payout.amount),
            IncomeType.PAYOUT_CLAIM.value,
            description=payout.description or "Payout claimed",
        )
        transaction = Transaction(
            user_id=user.id,
            type=TransactionType.INCOME_CLAIM.value,
            status=TransactionStatus.COMPLETED.value,
            amount=payout.amount,
            net_amount=payout.amount,
            description="Payout claimed",
            details={"payout_id": payout.id, "sub_type": "payout_claim"},
            processed_at=now,
        )
        db.session.add(transaction)
        db.session.flush()

        payout.status = "claimed"
        payout.claimed_at = now
        payout.transaction_id = transaction.id
        user.last_claimed_at = now
        AuditLog.record("payout_claimed", actor_id=user.id, payout_id=payout.id, amount=str(income.amount))
        db.session.commit()

    except Exception:
        db.session.rollback()
        raise

    return {
        "payoutId": payout_id,
        "claimedAmount": float(payout.amount),
        "availableBalance": float(user.available_balance),
    }


def expire_payouts() -> int:
    """Mark ready payouts past their expiry as expired."""
    count = (Payout.query
             .filter(Payout.status == "ready", Payout.expires_at.isnot(None), Payout.expires_at < utcnow())
             .update({"status": "expired"}, synchronize_session=False))
    db.session.commit()
    return count
