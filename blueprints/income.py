import logging

from flask import Blueprint, request, jsonify, current_app

from models import Payout, FundRequest
from mlm.activation import ActivationService, ActivationError
from mlm.config import IncomeConfig, ErrorCodes
from mlm.funds import (
    transfer_funds, create_fund_request, claim_payout,
    TransferError, FundRequestError, PayoutClaimError,
)
from mlm.income_pools import IncomePoolService, PoolClaimError
from utils import login_required_api, error_response

logger = logging.getLogger(__name__)

income_bp = Blueprint("income", __name__, url_prefix="/api")


def _claim_error_status(message):
    if message.startswith("You need at least"):
        return 403
    if "not found" in message:
        return 404
    return 400


# ==========================================================
#                  RANK ACTIVATION
# ==========================================================
@income_bp.route("/ranks", methods=["GET"])
def list_ranks():
    return jsonify({
        "success": True,
        "distribution": IncomeConfig.get_income_distribution_summary(),
    }), 200


@income_bp.route("/activate-rank", methods=["POST"])
@login_required_api
def activate_rank(user):
    """
    Expected JSON:
    {
        "rank": "pearl",
        "paymentMethod": "wallet" | "fund_wallet" | "external",
        "activateAllRanks": false,
        "transactionHash": ""
    }
    """
    data = request.get_json(silent=True) or {}
    rank = (data.get("rank") or "").strip().lower()
    if not rank:
        return error_response("Rank is required", code=ErrorCodes.INVALID_RANK_UPGRADE)

    try:
        result = ActivationService.activate_rank(
            user.id,
            rank,
            payment_method=data.get("paymentMethod") or "wallet",
            activate_all_ranks=bool(data.get("activateAllRanks", False)),
            transaction_hash=(data.get("transactionHash") or "").strip() or None,
        )
    except ActivationError as e:
        message = str(e)
        code = ErrorCodes.INSUFFICIENT_BALANCE if "Insufficient" in message else ErrorCodes.ACTIVATION_FAILED
        return error_response(message, code=code)
    except Exception as e:
        current_app.logger.error(f"Activation failed for user {user.id}: {e}")
        return error_response("Activation failed. Please try again.", 500, ErrorCodes.ACTIVATION_FAILED)

    return jsonify({
        "success": True,
        "message": "Rank activation successful",
        **result,
    }), 200


# ==========================================================
#                  INCOME POOLS
# ==========================================================
@income_bp.route("/income-pools", methods=["GET"])
@login_required_api
def get_income_pools(user):
    return jsonify({
        "success": True,
        "pools": IncomePoolService.get_user_income_pools(user.id),
        "lockedBalance": float(user.locked_balance or 0),
        "activeDirectReferrals": user.active_direct_referrals,
        "requiredDirectReferrals": IncomePoolService.required_direct_referrals(),
    }), 200


@income_bp.route("/income-pools/claim", methods=["POST"])
@login_required_api
def claim_pool(user):
    data = request.get_json(silent=True) or {}
    rank = (data.get("rank") or "").strip().lower()
    if not IncomeConfig.is_valid_rank(rank):
        return error_response("Invalid rank", code=ErrorCodes.CLAIM_FAILED)

    try:
        result = IncomePoolService.claim_pool_income(user.id, rank)
    except PoolClaimError as e:
        return error_response(str(e), _claim_error_status(str(e)), ErrorCodes.CLAIM_FAILED)
    except Exception as e:
        current_app.logger.error(f"Pool claim failed for user {user.id}: {e}")
        return error_response("Claim failed. Please try again.", 500, ErrorCodes.CLAIM_FAILED)

    return jsonify({"success": True, **result}), 200


@income_bp.route("/claim-locked-income", methods=["POST"])
@login_required_api
def claim_locked_income(user):
    try:
        result = IncomePoolService.claim_locked_income(user.id)
    except PoolClaimError as e:
        return error_response(str(e), _claim_error_status(str(e)), ErrorCodes.CLAIM_FAILED)
    except Exception as e:
        current_app.logger.error(f"Locked income claim failed for user {user.id}: {e}")
        return error_response("Claim failed. Please try again.", 500, ErrorCodes.CLAIM_FAILED)

    return jsonify({"success": True, **result}), 200


# ==========================================================
#                  TRANSFERS & FUNDING
# ==========================================================
@income_bp.route("/transfer", methods=["POST"])
@login_required_api
def transfer(user):
    data = request.get_json(silent=True) or {}
    try:
        result = transfer_funds(user.id, data.get("recipientCode"), data.get("amount"))
    except TransferError as e:
        message = str(e)
        status = 404 if message == "Recipient not found" else 400
        code = ErrorCodes.INSUFFICIENT_BALANCE if message == "Insufficient balance" else ErrorCodes.TRANSFER_FAILED
        return error_response(message, status, code)
    except Exception as e:
        current_app.logger.error(f"Transfer failed for user {user.id}: {e}")
        return error_response("Transfer failed. Please try again.", 500, ErrorCodes.TRANSFER_FAILED)

    return jsonify({"success": True, "message": "Transfer completed", **result}), 200


@income_bp.route("/fund-requests", methods=["POST"])
@login_required_api
def submit_fund_request(user):
    data = request.get_json(silent=True) or {}
    try:
        fund_request = create_fund_request(
            user.id,
            data.get("amount"),
            currency=data.get("currency") or "USDT",
            transaction_hash=(data.get("transactionHash") or "").strip() or None,
        )
    except FundRequestError as e:
        return error_response(str(e), code=ErrorCodes.VALIDATION_INVALID_AMOUNT)

    return jsonify({"success": True, "fundRequest": fund_request.to_dict()}), 201


@income_bp.route("/fund-requests", methods=["GET"])
@login_required_api
def list_fund_requests(user):
    requests_ = (FundRequest.query.filter_by(user_id=user.id)
                 .order_by(FundRequest.created_at.desc()).limit(50).all())
    return jsonify({"success": True, "fundRequests": [r.to_dict() for r in requests_]}), 200


# ==========================================================
#                  CLAIMABLE PAYOUTS
# ==========================================================
@income_bp.route("/payouts", methods=["GET"])
@login_required_api
def list_payouts(user):
    payouts = (Payout.query.filter_by(user_id=user.id)
               .order_by(Payout.created_at.desc()).limit(50).all())
    return jsonify({"success": True, "payouts": [p.to_dict() for p in payouts]}), 200


@income_bp.route("/payouts/claim", methods=["POST"])
@login_required_api
def claim_payout_route(user):
    data = request.get_json(silent=True) or {}
    payout_id = data.get("payoutId")
    if not isinstance(payout_id, int):
        return error_response("payoutId is required", code=ErrorCodes.PAYOUT_CLAIM_FAILED)

    try:
        result = claim_payout(user.id, payout_id, data.get("password") or "")
    except PayoutClaimError as e:
        message = str(e)
        if message == "Invalid password":
            status = 401
        elif message == "Payout not found":
            status = 404
        else:
            status = 400
        return error_response(message, status, ErrorCodes.PAYOUT_CLAIM_FAILED)
    except Exception as e:
        current_app.logger.error(f"Payout claim failed for user {user.id}: {e}")
        return error_response("Payout claim failed. Please try again.", 500, ErrorCodes.PAYOUT_CLAIM_FAILED)

    return jsonify({"success": True, "message": "Payout claimed successfully", **result}), 200
