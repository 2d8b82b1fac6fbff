#======================================================================================================
#
#   WITHDRAWAL API BLUEPRINT
#
#===========================================================================================================
import logging

from flask import Blueprint, request, jsonify

from models import Withdrawal
from mlm.config import ErrorCodes
from blueprints.withdraw_helpers import (
    WithdrawalProcessor, WithdrawalConfig, WithdrawalQueryHelper, WithdrawalValidator,
)
from utils import login_required_api, error_response


bp = Blueprint("payments", __name__)
logger = logging.getLogger(__name__)


#=============================================================================================
#      WITHDRAWAL REQUEST ENDPOINT
#============================================================================================
@bp.route("/payments/withdraw", methods=["POST"])
@login_required_api
def withdraw(user):
    """
    Queue a withdrawal. The gross amount leaves the available balance now;
    the payout sweep disburses the net amount later.
    Expected JSON:
    {
        "amount": 50,
        "method": "usdt_bep20" | "fund_conversion" | "p2p",
        "walletAddress": "0x...",
        "bankDetails": {"accountNumber": "", "bankName": "", "accountHolderName": ""},
        "p2pDetails": {"recipientCode": ""}
    }
    """
    if not request.is_json:
        return error_response("Request must be JSON")

    data = request.get_json(silent=True) or {}
    amount = data.get("amount")
    method = (data.get("method") or "usdt_bep20").strip()

    if amount is None:
        return error_response("Amount is required", code=ErrorCodes.VALIDATION_INVALID_AMOUNT)

    logger.info(f"Withdrawal requested by user {user.id}: {amount} via {method}")

    success, message, withdrawal_data = WithdrawalProcessor.process_withdrawal_request(
        user.id,
        amount,
        method,
        wallet_address=(data.get("walletAddress") or user.wallet_address),
        bank_details=data.get("bankDetails"),
        p2p_details=data.get("p2pDetails"),
    )

    if not success:
        code = ErrorCodes.INSUFFICIENT_BALANCE if message == "Insufficient balance" else ErrorCodes.WITHDRAWAL_FAILED
        status = 409 if message == "Another withdrawal in progress" else 400
        return error_response(message, status, code)

    return jsonify({
        "success": True,
        "message": "Withdrawal request submitted",
        **withdrawal_data,
    }), 201

#===============================================================================================================

@bp.route("/payments/withdrawals", methods=["GET"])
@login_required_api
def withdrawal_history(user):
    """
    Get user's withdrawal history
    """
    limit = request.args.get('limit', 10, type=int)
    withdrawals = WithdrawalQueryHelper.get_user_withdrawals(user.id, max(1, min(limit, 100)))
    return jsonify({
        "success": True,
        "withdrawals": [w.to_dict() for w in withdrawals],
        "total": len(withdrawals)
    }), 200


@bp.route("/payments/withdrawals/limits", methods=["GET"])
@login_required_api
def withdrawal_limits(user):
    """
    Get withdrawal limits and fee schedule
    """
    limits = WithdrawalConfig.limits()
    withdrawn_today = WithdrawalValidator.withdrawn_today(user.id)
    return jsonify({
        "success": True,
        "limits": {
            "minWithdrawal": float(limits["min"]),
            "maxWithdrawal": float(limits["max"]),
            "dailyLimit": float(limits["daily"]),
            "withdrawnToday": float(withdrawn_today),
            "remainingToday": float(max(limits["daily"] - withdrawn_today, 0)),
            "fees": {method: float(WithdrawalConfig.fee_percentage(method)) for method in WithdrawalConfig.METHODS},
        },
        "availableBalance": float(user.available_balance or 0),
    }), 200


@bp.route("/payments/withdrawals/<int:withdrawal_id>", methods=["GET"])
@login_required_api
def get_withdrawal_status(user, withdrawal_id):
    """
    Get specific withdrawal status
    """
    withdrawal = Withdrawal.query.filter_by(id=withdrawal_id, user_id=user.id).first()
    if not withdrawal:
        return error_response("Withdrawal not found", 404)

    result = withdrawal.to_dict()
    if withdrawal.queue_entry:
        result["queue"] = withdrawal.queue_entry.to_dict()
    return jsonify({"success": True, "withdrawal": result}), 200
