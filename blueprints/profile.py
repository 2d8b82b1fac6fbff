from flask import Blueprint, jsonify, request, current_app

from extensions import db
from models import Transaction, AuditLog, IncomeType
from mlm.referral_tree import ReferralTreeHelper
from mlm.state import IncomeStateHelper
from mlm.payout_processor import PayoutProcessor
from mlm.config import ErrorCodes
from utils import (
    login_required_api, validate_phone, validate_wallet_address, error_response, get_client_ip,
)


bp = Blueprint('profile', __name__, url_prefix="")

MAX_LIST_LIMIT = 200


def _limit_arg(default=50):
    limit = request.args.get("limit", default, type=int)
    return max(1, min(limit, MAX_LIST_LIMIT))


# ----------------------------------------------------------------------------------
# DASHBOARD DATA FOR THE LOGGED-IN MEMBER
# ----------------------------------------------------------------------------------
@bp.route("/api/user/dashboard", methods=["GET"])
@login_required_api
def get_dashboard(user):
    dashboard = IncomeStateHelper.get_user_dashboard(user.id)
    return jsonify({"success": True, "dashboard": dashboard}), 200


@bp.route("/api/user/profile", methods=["GET"])
@login_required_api
def get_user_profile(user):
    return jsonify({"success": True, "user": user.to_dict()}), 200


#===================================================================================

@bp.route('/api/user/profile', methods=['PUT'])
@login_required_api
def update_user_profile(user):
    """Update user profile and return fresh data"""
    data = request.get_json(silent=True) or {}
    full_name = (data.get("fullName") or "").strip()
    phone = (data.get("phone") or "").strip()
    wallet_address = (data.get("walletAddress") or "").strip()

    # Validate everything before touching the user row
    if "fullName" in data and not full_name:
        return error_response("Full name cannot be empty")
    if phone and not validate_phone(phone):
        return error_response("Invalid phone number", code=ErrorCodes.VALIDATION_INVALID_CONTACT)
    if wallet_address and not validate_wallet_address(wallet_address):
        return error_response("Invalid BEP20 wallet address", code=ErrorCodes.VALIDATION_INVALID_WALLET)

    if "fullName" in data:
        user.full_name = full_name
    if "phone" in data:
        user.phone = phone or None
    if "walletAddress" in data:
        user.wallet_address = wallet_address or None

    AuditLog.record("profile_updated", actor_id=user.id, ip_address=get_client_ip(request),
                    fields=sorted(k for k in data if k in ("fullName", "phone", "walletAddress")))
    db.session.commit()
    return jsonify({
        "success": True,
        "message": "Profile updated successfully",
        "user": user.to_dict(),
    }), 200


@bp.route("/api/user/referral", methods=["GET"])
@login_required_api
def get_referral_info(user):
    base_url = current_app.config.get("APP_BASE_URL", "").rstrip("/")
    directs = ReferralTreeHelper.get_direct_referrals(user.id)
    return jsonify({
        "success": True,
        "referralCode": user.user_code,
        "referralLink": f"{base_url}/signup?ref={user.user_code}",
        "directReferrals": user.direct_referrals,
        "activeDirectReferrals": user.active_direct_referrals,
        "referrals": [d.to_dict(include_balances=False) for d in directs],
    }), 200


@bp.route("/api/user/transactions", methods=["GET"])
@login_required_api
def get_transactions(user):
    query = user.transactions
    tx_type = request.args.get("type")
    if tx_type:
        query = query.filter(Transaction.type == tx_type)
    transactions = query.order_by(Transaction.created_at.desc(), Transaction.id.desc()).limit(_limit_arg()).all()
    return jsonify({
        "success": True,
        "transactions": [t.to_dict() for t in transactions],
    }), 200


@bp.route("/api/user/incomes", methods=["GET"])
@login_required_api
def get_incomes(user):
    income_type = request.args.get("type")
    if income_type and income_type not in {t.value for t in IncomeType}:
        return error_response("Invalid income type")
    return jsonify({
        "success": True,
        "incomes": IncomeStateHelper.get_user_income_history(user.id, _limit_arg(), income_type),
        "summary": IncomeStateHelper.get_income_summary(user.id),
    }), 200


@bp.route("/api/user/withdrawals", methods=["GET"])
@login_required_api
def get_withdrawals(user):
    return jsonify({
        "success": True,
        "withdrawals": PayoutProcessor.get_user_withdrawal_history(user.id, _limit_arg(20)),
        "stats": PayoutProcessor.get_withdrawal_stats(user.id),
    }), 200


#=======================================================================================
#      TEAM / NETWORK
#=======================================================================================

@bp.route("/api/user/team", methods=["GET"])
@login_required_api
def get_team(user):
    """
    Downline tree with per-level counts
    """
    max_level = request.args.get("levels", 5, type=int)
    max_level = max(1, min(max_level, 5))
    team = ReferralTreeHelper.get_team(user.id, max_level)
    return jsonify({
        "success": True,
        "team": team["team"],
        "stats": team["stats"],
    }), 200
