#======================================================================================
#
# ADMIN API
#
#=======================================================================================
from decimal import Decimal
from functools import wraps
import logging

from flask import jsonify, request, Blueprint, session, current_app, g
from sqlalchemy import or_

from extensions import db
from models import (
    User, Withdrawal, Transaction, FundRequest, AuditLog, PlatformSettings,
    TransactionType, TransactionStatus, UserStatus,
)
from blueprints.withdraw_helpers import WithdrawalProcessor, WithdrawalQueryHelper
from mlm.autopool import AutopoolService
from mlm.config import ErrorCodes
from mlm.funds import approve_fund_request, reject_fund_request, issue_payout, FundsError
from mlm.global_cycle import GlobalCycleService
from mlm.payout_processor import PayoutProcessor
from mlm.referral_tree import ReferralTreeHelper
from mlm.state import IncomeStateHelper
from utils import error_response, get_client_ip, to_decimal, round2

logger = logging.getLogger(__name__)

USER_ROLES = ("user", "admin")


def _abort_update(message, status=400, code=None):
    db.session.rollback()
    return error_response(message, status, code)


def admin_required(f):
    """
    Decorator to restrict access to admin-only routes.
    - Checks that 'user_id' exists in session.
    - Fetches the user from the database (to get current role).
    - Returns 403 JSON if not an admin.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        user_id = session.get("user_id")
        if not user_id:
            return error_response("Unauthorized", 401, ErrorCodes.AUTH_REQUIRED)

        user = db.session.get(User, user_id)
        if not user or user.role != "admin":
            return error_response("Admin access required", 403, ErrorCodes.AUTH_INSUFFICIENT_PERMISSIONS)

        g.admin = user
        return f(*args, **kwargs)

    return decorated_function


admin_bp = Blueprint('admin', __name__, url_prefix='/admin')


@admin_bp.route("/data", methods=["GET"])
@admin_required
def admin_data():
    return jsonify({
        "success": True,
        "stats": IncomeStateHelper.get_admin_statistics(),
        "topEarners": IncomeStateHelper.get_top_earners(),
    }), 200


#============================================================================================================
#
#     ----------------------------ADMIN SEARCH FUNCTIONALITY-------------------------------------------
#
#============================================================================================================

@admin_bp.route('/search', methods=['GET'])
@admin_required
def admin_search():
    """Admin search across users, transactions and withdrawals"""
    query = request.args.get('q', '').strip()
    if not query:
        return jsonify({
            'success': False,
            'users': [],
            'transactions': [],
            'withdrawals': [],
            'error': 'Please provide a search query'
        }), 400

    users = search_users(query)
    transactions = search_transactions(query)
    withdrawals = search_withdrawals(query)

    return jsonify({
        'success': True,
        'users': users,
        'transactions': transactions,
        'withdrawals': withdrawals,
        'total_results': len(users) + len(transactions) + len(withdrawals)
    }), 200


def search_users(query):
    """Search users by name, email, phone, user code, or ID"""
    conditions = [
        User.full_name.ilike(f'%{query}%'),
        User.email.ilike(f'%{query}%'),
        User.phone.ilike(f'%{query}%'),
        User.user_code.ilike(f'%{query}%'),
    ]
    if query.isdigit():
        conditions.append(User.id == int(query))
    users = User.query.filter(or_(*conditions)).limit(50).all()
    return [user.to_dict() for user in users]


def search_transactions(query):
    """Search transactions by reference, hash, or ID"""
    conditions = [
        Transaction.reference.ilike(f'%{query}%'),
        Transaction.transaction_hash.ilike(f'%{query}%'),
    ]
    if query.isdigit():
        conditions.append(Transaction.id == int(query))
    transactions = Transaction.query.filter(or_(*conditions)).limit(50).all()
    return [t.to_dict() for t in transactions]


def search_withdrawals(query):
    conditions = [
        Withdrawal.reference.ilike(f'%{query}%'),
        Withdrawal.wallet_address.ilike(f'%{query}%'),
        Withdrawal.transaction_hash.ilike(f'%{query}%'),
    ]
    if query.isdigit():
        conditions.append(Withdrawal.id == int(query))
    withdrawals = Withdrawal.query.filter(or_(*conditions)).limit(50).all()
    return [w.to_dict() for w in withdrawals]

#=======================================================================
#       USERS
#=======================================================================

@admin_bp.route('/users', methods=['GET'])
@admin_required
def list_users():
    page = max(request.args.get('page', 1, type=int), 1)
    per_page = max(1, min(request.args.get('per_page', 50, type=int), 200))
    query = User.query
    status = request.args.get('status')
    if status:
        query = query.filter_by(status=status)
    if request.args.get('active') in ('true', 'false'):
        query = query.filter_by(is_active=request.args.get('active') == 'true')

    total = query.count()
    users = query.order_by(User.created_at.desc()).offset((page - 1) * per_page).limit(per_page).all()
    return jsonify({
        'success': True,
        'users': [u.to_dict() for u in users],
        'pagination': {'page': page, 'per_page': per_page, 'total': total},
    }), 200


@admin_bp.route('/users/<int:user_id>', methods=['GET'])
@admin_required
def user_detail(user_id):
    user = db.session.get(User, user_id)
    if not user:
        return error_response("User not found", 404)

    return jsonify({
        'success': True,
        'user': user.to_dict(),
        'network': ReferralTreeHelper.get_user_network_summary(user_id),
        'incomeSummary': IncomeStateHelper.get_income_summary(user_id),
        'withdrawals': PayoutProcessor.get_withdrawal_stats(user_id),
    }), 200


@admin_bp.route('/users/<int:user_id>', methods=['PUT'])
@admin_required
def update_user(user_id):
    """
    Update status / role, or adjust the available balance.
    A balance adjustment needs a reason and is recorded as an adjustment transaction.
    """
    data = request.get_json(silent=True) or {}
    try:
        user = db.session.get(User, user_id, with_for_update=True)
        if not user:
            return _abort_update("User not found", 404)

        changes = {}
        if 'status' in data:
            if data['status'] not in {s.value for s in UserStatus}:
                return _abort_update("Invalid status")
            changes['status'] = [user.status, data['status']]
            user.status = data['status']

        if 'role' in data:
            if data['role'] not in USER_ROLES:
                return _abort_update("Invalid role")
            if user.id == g.admin.id and data['role'] != 'admin':
                return _abort_update("You cannot remove your own admin role")
            changes['role'] = [user.role, data['role']]
            user.role = data['role']

        if 'balanceAdjustment' in data:
            adjustment = to_decimal(data.get('balanceAdjustment'))
            reason = (data.get('reason') or '').strip()
            if adjustment is None or adjustment == 0:
                return _abort_update("Invalid balance adjustment", code=ErrorCodes.VALIDATION_INVALID_AMOUNT)
            if not reason:
                return _abort_update("A reason is required for balance adjustments")
            adjustment = round2(adjustment)
            new_balance = Decimal(user.available_balance or 0) + adjustment
            if new_balance < 0:
                return _abort_update("Adjustment would make the balance negative",
                                      code=ErrorCodes.INSUFFICIENT_BALANCE)
            user.available_balance = round2(new_balance)
            db.session.add(Transaction(
                user_id=user.id,
                type=TransactionType.DEPOSIT.value,
                status=TransactionStatus.COMPLETED.value,
                amount=abs(adjustment),
                net_amount=abs(adjustment),
                description=f"Admin adjustment: {reason}"[:255],
                details={"sub_type": "admin_adjustment", "signed_amount": str(adjustment), "admin_id": g.admin.id},
            ))
            changes['availableBalance'] = str(adjustment)

        if not changes:
            return _abort_update("Nothing to update")

        AuditLog.record("user_updated", actor_id=g.admin.id, ip_address=get_client_ip(request),
                        user_id=user.id, changes=changes)
        db.session.commit()

    except Exception as e:
        db.session.rollback()
        current_app.logger.error(f"Admin update of user {user_id} failed: {e}")
        return error_response("Failed to update user", 500)

    return jsonify({'success': True, 'user': user.to_dict()}), 200

#=======================================================================
#       WITHDRAWALS
#=======================================================================

@admin_bp.route('/withdrawals', methods=['GET'])
@admin_required
def list_withdrawals():
    status = request.args.get('status')
    limit = max(1, min(request.args.get('limit', 100, type=int), 500))
    withdrawals = WithdrawalQueryHelper.get_withdrawals_by_status(status, limit)
    return jsonify({
        'success': True,
        'withdrawals': [w.to_dict() for w in withdrawals],
        'queue': PayoutProcessor.get_queue_snapshot(),
    }), 200


@admin_bp.route('/withdrawals/<int:withdrawal_id>/approve', methods=['POST'])
@admin_required
def approve_withdrawal(withdrawal_id):
    success, message = WithdrawalProcessor.approve_withdrawal(withdrawal_id, g.admin.id)
    if not success:
        return error_response(message, 404 if message == "Withdrawal not found" else 400)
    return jsonify({'success': True, 'message': message}), 200


@admin_bp.route('/withdrawals/<int:withdrawal_id>/reject', methods=['POST'])
@admin_required
def reject_withdrawal(withdrawal_id):
    data = request.get_json(silent=True) or {}
    reason = (data.get('reason') or 'Rejected by admin').strip()
    success, message = WithdrawalProcessor.reject_withdrawal(withdrawal_id, g.admin.id, reason)
    if not success:
        return error_response(message, 404 if message == "Withdrawal not found" else 400)
    return jsonify({'success': True, 'message': message}), 200

#=======================================================================
#       PLATFORM SETTINGS
#=======================================================================

SETTINGS_FIELDS = {
    'directReferralRequirement': ('direct_referral_requirement', int),
    'minWithdrawal': ('min_withdrawal', Decimal),
    'maxWithdrawal': ('max_withdrawal', Decimal),
    'dailyWithdrawalLimit': ('daily_withdrawal_limit', Decimal),
    'welcomeBonus': ('welcome_bonus', Decimal),
    'registrationOpen': ('registration_open', bool),
    'maintenanceMode': ('maintenance_mode', bool),
    'globalCycleSize': ('global_cycle_size', int),
    'autoTopupEnabled': ('auto_topup_enabled', bool),
}


@admin_bp.route('/settings', methods=['GET'])
@admin_required
def get_settings():
    settings = PlatformSettings.get()
    db.session.commit()
    return jsonify({'success': True, 'settings': settings.to_dict()}), 200


@admin_bp.route('/settings', methods=['PUT'])
@admin_required
def update_settings():
    data = request.get_json(silent=True) or {}
    settings = PlatformSettings.get()
    updated = {}

    for key, (attr, kind) in SETTINGS_FIELDS.items():
        if key not in data:
            continue
        value = data[key]
        if kind is bool:
            if not isinstance(value, bool):
                return _abort_update(f"{key} must be true or false")
        elif kind is int:
            if not isinstance(value, int) or isinstance(value, bool) or value < 0:
                return _abort_update(f"{key} must be a non-negative integer")
        else:
            value = to_decimal(value)
            if value is None or value < 0:
                return _abort_update(f"{key} must be a non-negative amount")
            value = round2(value)
        setattr(settings, attr, value)
        updated[key] = str(value) if isinstance(value, Decimal) else value

    if 'globalCycleSize' in updated and settings.global_cycle_size < 2:
        return _abort_update("globalCycleSize must be at least 2")

    if Decimal(settings.min_withdrawal) > Decimal(settings.max_withdrawal):
        return _abort_update("minWithdrawal cannot exceed maxWithdrawal")

    settings.updated_by = g.admin.id
    AuditLog.record("settings_updated", actor_id=g.admin.id, ip_address=get_client_ip(request), **updated)
    db.session.commit()
    return jsonify({'success': True, 'settings': settings.to_dict()}), 200

#=======================================================================
#       MANUAL JOB TRIGGERS
#=======================================================================

@admin_bp.route('/process-payouts', methods=['POST'])
@admin_required
def process_payouts():
    batch_size = request.args.get('batch_size', current_app.config.get('PAYOUT_BATCH_SIZE', 10), type=int)
    stats = PayoutProcessor().process_payout_queue(batch_size=batch_size)
    return jsonify({'success': True, 'stats': stats}), 200


@admin_bp.route('/process-cycles', methods=['POST'])
@admin_required
def process_cycles():
    limit = request.args.get('limit', 10, type=int)
    result = GlobalCycleService.process_completed_cycles(limit=limit)
    return jsonify({'success': True, **result}), 200


@admin_bp.route('/generate-pool-income', methods=['POST'])
@admin_required
def generate_pool_income():
    max_positions = request.args.get(
        'max_positions', current_app.config.get('AUTOPOOL_BATCH_SIZE', 100), type=int
    )
    stats = AutopoolService.generate_pool_income(max_positions=max_positions)
    return jsonify({'success': True, 'stats': stats}), 200


@admin_bp.route('/cleanup', methods=['POST'])
@admin_required
def cleanup():
    days = request.args.get('days', current_app.config.get('DATA_RETENTION_DAYS', 30), type=int)
    result = GlobalCycleService.cleanup_old_data(days=days)
    return jsonify({'success': True, **result}), 200


@admin_bp.route('/cycles', methods=['GET'])
@admin_required
def cycle_status():
    return jsonify({'success': True, 'cycles': GlobalCycleService.get_cycle_status(request.args.get('rank'))}), 200

#=======================================================================
#       FUND REQUESTS & PAYOUTS
#=======================================================================

@admin_bp.route('/fund-requests', methods=['GET'])
@admin_required
def list_fund_requests():
    status = request.args.get('status', 'pending')
    rows = (FundRequest.query.filter_by(status=status)
            .order_by(FundRequest.created_at.asc()).limit(200).all())
    return jsonify({'success': True, 'fundRequests': [r.to_dict() for r in rows]}), 200


@admin_bp.route('/fund-requests/<int:request_id>/approve', methods=['POST'])
@admin_required
def approve_fund_request_route(request_id):
    data = request.get_json(silent=True) or {}
    try:
        row = approve_fund_request(request_id, g.admin.id, data.get('note'))
    except FundsError as e:
        return error_response(str(e), 404 if "not found" in str(e) else 400)
    return jsonify({'success': True, 'fundRequest': row.to_dict()}), 200


@admin_bp.route('/fund-requests/<int:request_id>/reject', methods=['POST'])
@admin_required
def reject_fund_request_route(request_id):
    data = request.get_json(silent=True) or {}
    try:
        row = reject_fund_request(request_id, g.admin.id, data.get('note'))
    except FundsError as e:
        return error_response(str(e), 404 if "not found" in str(e) else 400)
    return jsonify({'success': True, 'fundRequest': row.to_dict()}), 200


@admin_bp.route('/payouts', methods=['POST'])
@admin_required
def issue_payout_route():
    data = request.get_json(silent=True) or {}
    user_id = data.get('userId')
    if not isinstance(user_id, int):
        return error_response("userId is required")
    try:
        payout = issue_payout(user_id, data.get('amount'), g.admin.id,
                              description=data.get('description'),
                              expires_in_days=data.get('expiresInDays', 30))
    except FundsError as e:
        return error_response(str(e), 404 if str(e) == "User not found" else 400)
    return jsonify({'success': True, 'payout': payout.to_dict()}), 201

#=======================================================================
#       AUDIT LOG
#=======================================================================

@admin_bp.route('/audit-logs', methods=['GET'])
@admin_required
def audit_logs():
    query = AuditLog.query
    action = request.args.get('action')
    if action:
        query = query.filter_by(action=action)
    limit = max(1, min(request.args.get('limit', 100, type=int), 500))
    logs = query.order_by(AuditLog.created_at.desc(), AuditLog.id.desc()).limit(limit).all()
    return jsonify({'success': True, 'logs': [entry.to_dict() for entry in logs]}), 200


@admin_bp.route('/health', methods=['GET'])
@admin_required
def admin_health():
    db.session.execute(db.text("SELECT 1"))
    return jsonify({
        'success': True,
        'database': 'ok',
        'payoutQueue': len(PayoutProcessor.get_queue_snapshot(limit=1000)),
        'gatewaySimulated': not current_app.config.get('PAYOUT_API_URL'),
    }), 200
