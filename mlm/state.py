from datetime import timedelta
from decimal import Decimal
from typing import List, Dict, Any, Optional

from flask import current_app
from sqlalchemy import func

from extensions import db
from models import (
    User, Transaction, Income, Withdrawal, PayoutQueue, FundRequest, IncomePool,
    TransactionType, TransactionStatus, IncomeType, IncomeStatus, WithdrawalStatus,
)
from mlm.config import IncomeConfig
from mlm.payout_processor import PayoutProcessor
from utils import utcnow, money


class IncomeStateHelper:
    """Read side: dashboards, income history and reporting"""

    @staticmethod
    def get_rank_progress(user: User) -> Dict[str, Any]:
        next_rank = IncomeConfig.next_rank(user.rank)
        current = IncomeConfig.get_rank(user.rank) if user.rank else None
        upcoming = IncomeConfig.get_rank(next_rank) if next_rank else None
        return {
            'currentRank': user.rank,
            'currentRankName': current['name'] if current else None,
            'currentRankAmount': float(current['activation_amount']) if current else 0.0,
            'nextRank': next_rank,
            'nextRankName': upcoming['name'] if upcoming else None,
            'nextRankAmount': float(upcoming['activation_amount']) if upcoming else None,
            'isMaxRank': user.rank is not None and next_rank is None,
        }

    @staticmethod
    def get_user_dashboard(user_id: int) -> Optional[Dict[str, Any]]:
        """
        Everything the member dashboard shows in one payload
        """
        user = db.session.get(User, user_id)
        if not user:
            return None

        recent_transactions = (user.transactions
                               .order_by(Transaction.created_at.desc())
                               .limit(5).all())
        recent_incomes = (user.incomes
                          .order_by(Income.created_at.desc())
                          .limit(5).all())
        pending_withdrawals = (user.withdrawals
                               .filter(Withdrawal.status.in_([
                                   WithdrawalStatus.PENDING.value,
                                   WithdrawalStatus.APPROVED.value,
                                   WithdrawalStatus.PROCESSING.value,
                               ]))
                               .count())
        pool_total = (db.session.query(func.coalesce(func.sum(IncomePool.pool_income), 0))
                      .filter(IncomePool.user_id == user_id)
                      .scalar())

        return {
            'user': user.to_dict(),
            'stats': {
                'directReferrals': user.direct_referrals,
                'activeDirectReferrals': user.active_direct_referrals,
                'teamSize': user.team_size,
                'pendingWithdrawals': pending_withdrawals,
                'poolIncome': money(pool_total),
            },
            'rankProgress': IncomeStateHelper.get_rank_progress(user),
            'incomeSummary': IncomeStateHelper.get_income_summary(user_id),
            'recentTransactions': [t.to_dict() for t in recent_transactions],
            'recentIncomes': [i.to_dict() for i in recent_incomes],
        }

    @staticmethod
    def get_user_income_history(user_id: int, limit: int = 50,
                                income_type: Optional[str] = None) -> List[Dict[str, Any]]:
        query = Income.query.filter_by(user_id=user_id)
        if income_type:
            query = query.filter_by(type=income_type)
        incomes = query.order_by(Income.created_at.desc(), Income.id.desc()).limit(limit).all()
        return [income.to_dict() for income in incomes]

    @staticmethod
    def get_income_summary(user_id: int) -> Dict[str, Any]:
        """
        Totals per income type, split into credited and still-locked amounts
        """
        rows = (db.session.query(Income.type, Income.status, func.sum(Income.amount), func.count(Income.id))
                .filter(Income.user_id == user_id)
                .group_by(Income.type, Income.status)
                .all())

        by_type = {t.value: {'total': Decimal('0'), 'locked': Decimal('0'), 'count': 0} for t in IncomeType}
        total = Decimal('0')
        locked = Decimal('0')
        for income_type, status, amount, count in rows:
            entry = by_type.setdefault(income_type, {'total': Decimal('0'), 'locked': Decimal('0'), 'count': 0})
            amount = Decimal(str(amount or 0))
            entry['total'] += amount
            entry['count'] += count
            total += amount
            if status == IncomeStatus.LOCKED.value:
                entry['locked'] += amount
                locked += amount

        # Convert to float for JSON serialization
        for data in by_type.values():
            data['total'] = float(data['total'])
            data['locked'] = float(data['locked'])

        return {
            'totalIncome': float(total),
            'lockedIncome': float(locked),
            'byType': by_type,
        }

    @staticmethod
    def get_admin_statistics() -> Dict[str, Any]:
        try:
            today = utcnow().replace(hour=0, minute=0, second=0, microsecond=0)

            total_users = User.query.count()
            active_users = User.query.filter_by(is_active=True).count()
            new_today = User.query.filter(User.created_at >= today).count()

            activation_volume = (db.session.query(func.coalesce(func.sum(Transaction.amount), 0))
                                 .filter(Transaction.type.in_([
                                     TransactionType.ACTIVATION.value,
                                     TransactionType.TOPUP.value,
                                     TransactionType.AUTO_TOPUP.value,
                                 ]),
                                         Transaction.status == TransactionStatus.COMPLETED.value)
                                 .scalar())
            income_total = (db.session.query(func.coalesce(func.sum(Income.amount), 0)).scalar())
            income_today = (db.session.query(func.coalesce(func.sum(Income.amount), 0))
                            .filter(Income.created_at >= today)
                            .scalar())

            return {
                'users': {
                    'total': total_users,
                    'active': active_users,
                    'newToday': new_today,
                },
                'activationVolume': money(activation_volume),
                'income': {
                    'total': money(income_total),
                    'today': money(income_today),
                },
                'withdrawals': PayoutProcessor.get_withdrawal_stats(),
                'pendingFundRequests': FundRequest.query.filter_by(status='pending').count(),
                'payoutQueueSize': PayoutQueue.query.count(),
            }

        except Exception as e:
            current_app.logger.error(f"Error getting admin statistics: {str(e)}")
            raise

    @staticmethod
    def get_top_earners(days: int = 30, limit: int = 10) -> List[Dict[str, Any]]:
        cutoff_date = utcnow() - timedelta(days=days)
        rows = (db.session.query(Income.user_id, func.sum(Income.amount).label('total_earned'),
                                 func.count(Income.id).label('income_count'))
                .filter(Income.created_at >= cutoff_date)
                .group_by(Income.user_id)
                .order_by(func.sum(Income.amount).desc())
                .limit(limit)
                .all())

        top_earners = []
        for row in rows:
            user = db.session.get(User, row.user_id)
            top_earners.append({
                'userId': row.user_id,
                'userCode': user.user_code if user else 'Unknown',
                'totalEarned': money(row.total_earned),
                'incomeCount': row.income_count,
            })
        return top_earners
