from flask import Blueprint, request, jsonify, current_app

from models import Transaction, Withdrawal, Income, IncomeType, TransactionType
from utils import login_required_api

activity_bp = Blueprint('activity', __name__)

CURRENCY = "USDT"


def safe_float_convert(value, default=0.0):
    """Safely convert value to float"""
    try:
        if value is None:
            return default
        return float(value)
    except (TypeError, ValueError):
        return default


def safe_isoformat(dt_value):
    return dt_value.isoformat() if dt_value else None


def map_transaction_to_activity(transaction):
    """Map Transaction model to activity format"""
    type_mapping = {
        TransactionType.ACTIVATION.value: ('activation', 'Rank Activation'),
        TransactionType.TOPUP.value: ('activation', 'Rank Top-up'),
        TransactionType.AUTO_TOPUP.value: ('activation', 'Auto Top-up'),
        TransactionType.WITHDRAWAL.value: ('withdraw', 'Withdrawal'),
        TransactionType.DEPOSIT.value: ('deposit', 'Deposit'),
        TransactionType.TRANSFER.value: ('transfer', 'Fund Transfer'),
        TransactionType.INCOME_CLAIM.value: ('income', 'Income Claim'),
        TransactionType.FUND_REQUEST.value: ('deposit', 'Funding Wallet Top-up'),
    }
    activity_type, title = type_mapping.get(transaction.type, ('transaction', 'Transaction'))
    if transaction.rank and activity_type == 'activation':
        title = f"{title} - {transaction.rank.replace('_', ' ').title()}"

    return {
        'type': activity_type,
        'title': title,
        'status': transaction.status,
        'timestamp': safe_isoformat(transaction.created_at),
        'amount': safe_float_convert(transaction.amount),
        'currency': CURRENCY,
        'source': 'transaction',
        'id': transaction.id,
    }


def map_income_to_activity(income):
    """Map Income model to activity format"""
    titles = {
        IncomeType.REFERRAL.value: 'Referral Income',
        IncomeType.LEVEL.value: 'Level Income',
        IncomeType.GLOBAL.value: 'Global Income',
        IncomeType.GLOBAL_CYCLE.value: 'Global Cycle Income',
        IncomeType.AUTOPOOL.value: 'Autopool Income',
        IncomeType.WELCOME.value: 'Welcome Bonus',
        IncomeType.PAYOUT_CLAIM.value: 'Payout',
    }
    title = titles.get(income.type, 'Income')
    if income.level:
        title = f"{title} (Level {income.level})"

    return {
        'type': 'income',
        'title': title,
        'status': income.status,
        'timestamp': safe_isoformat(income.created_at),
        'amount': safe_float_convert(income.amount),
        'currency': CURRENCY,
        'source': 'income',
        'id': income.id,
    }


def map_withdrawal_to_activity(withdrawal):
    """Map Withdrawal model to activity format"""
    return {
        'type': 'withdraw',
        'title': f"Withdrawal ({withdrawal.method.replace('_', ' ')})",
        'status': withdrawal.status,
        'timestamp': safe_isoformat(withdrawal.created_at),
        'amount': safe_float_convert(withdrawal.amount),
        'currency': CURRENCY,
        'source': 'withdrawal',
        'id': withdrawal.id,
    }


def _parse_pagination():
    page = request.args.get('page', 1, type=int)
    page_size = request.args.get('page_size', current_app.config.get('DEFAULT_PAGE_SIZE', 20), type=int)
    max_page_size = current_app.config.get('MAX_PAGE_SIZE', 100)
    if page < 1:
        return None, None, 'Page must be greater than 0'
    if page_size < 1 or page_size > max_page_size:
        return None, None, f'Page size must be between 1 and {max_page_size}'
    return page, page_size, None


def collect_activities(user_id=None, limit=100):
    """Merge transactions, incomes and withdrawals into one newest-first feed."""
    transactions = Transaction.query
    incomes = Income.query
    withdrawals = Withdrawal.query
    if user_id is not None:
        transactions = transactions.filter_by(user_id=user_id)
        incomes = incomes.filter_by(user_id=user_id)
        withdrawals = withdrawals.filter_by(user_id=user_id)
    else:
        # Platform feed shows activations and payouts only
        transactions = transactions.filter(Transaction.type.in_([
            TransactionType.ACTIVATION.value, TransactionType.TOPUP.value,
        ]))
        incomes = None
        withdrawals = withdrawals.filter_by(status='completed')

    activities = []
    # Withdrawal transactions are shown through the withdrawal record
    for transaction in (transactions.filter(Transaction.type != TransactionType.WITHDRAWAL.value)
                        .order_by(Transaction.created_at.desc()).limit(limit).all()):
        activities.append(map_transaction_to_activity(transaction))
    if incomes is not None:
        for income in incomes.order_by(Income.created_at.desc()).limit(limit).all():
            activities.append(map_income_to_activity(income))
    for withdrawal in withdrawals.order_by(Withdrawal.created_at.desc()).limit(limit).all():
        activities.append(map_withdrawal_to_activity(withdrawal))

    activities.sort(key=lambda a: a['timestamp'] or '', reverse=True)
    return activities


def _paginate(activities, page, page_size):
    total = len(activities)
    start = (page - 1) * page_size
    return jsonify({
        'success': True,
        'activities': activities[start:start + page_size],
        'pagination': {
            'page': page,
            'page_size': page_size,
            'total': total,
            'pages': (total + page_size - 1) // page_size,
        },
    }), 200


@activity_bp.route('/api/recent_activity', methods=['GET'])
def get_recent_activity():
    """Platform-wide feed of recent activations and completed payouts"""
    page, page_size, error = _parse_pagination()
    if error:
        return jsonify({'success': False, 'error': error}), 400
    return _paginate(collect_activities(), page, page_size)


@activity_bp.route('/api/user/activity', methods=['GET'])
@login_required_api
def get_user_activity(user):
    page, page_size, error = _parse_pagination()
    if error:
        return jsonify({'success': False, 'error': error}), 400
    return _paginate(collect_activities(user.id), page, page_size)
