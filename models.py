# models.py - Flask-SQLAlchemy models for users, balances, incomes and payouts
from decimal import Decimal
from enum import Enum
from sqlalchemy import UniqueConstraint, Index, text
from extensions import db
from werkzeug.security import check_password_hash, generate_password_hash
from utils import utcnow, money, isoformat

# ===========================================================
# ENUM DEFINITIONS
# ===========================================================

class TransactionType(Enum):
    ACTIVATION = "activation"
    TOPUP = "topup"
    AUTO_TOPUP = "auto_topup"
    WITHDRAWAL = "withdrawal"
    DEPOSIT = "deposit"
    TRANSFER = "transfer"
    INCOME_CLAIM = "income_claim"
    FUND_REQUEST = "fund_request"


class TransactionStatus(Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class IncomeType(Enum):
    REFERRAL = "referral"
    LEVEL = "level"
    GLOBAL = "global"
    GLOBAL_CYCLE = "global_cycle"
    AUTOPOOL = "autopool"
    WELCOME = "welcome"
    PAYOUT_CLAIM = "payout_claim"


class IncomeStatus(Enum):
    CREDITED = "credited"
    LOCKED = "locked"
    RELEASED = "released"


class WithdrawalStatus(Enum):
    PENDING = "pending"
    APPROVED = "approved"
    PROCESSING = "processing"
    COMPLETED = "completed"
    REJECTED = "rejected"


class UserStatus(Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    SUSPENDED = "suspended"
    BLOCKED = "blocked"


# ===========================================================
# BASE MIXIN FOR COMMON FIELDS
# ===========================================================

class BaseMixin:
    """Provides created_at and updated_at timestamps to inheriting models."""
    created_at = db.Column(db.DateTime, default=utcnow, index=True)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

# ===========================================================
# USER MODELS
# ===========================================================

class User(db.Model, BaseMixin):
    """Member of the referral tree; balances live on the user row."""
    __tablename__ = 'users'

    id = db.Column(db.Integer, primary_key=True)
    user_code = db.Column(db.String(16), unique=True, nullable=False)
    full_name = db.Column(db.String(150), nullable=False)
    email = db.Column(db.String(120), unique=True, nullable=False)
    phone = db.Column(db.String(20), nullable=True)
    wallet_address = db.Column(db.String(64), nullable=True)
    password_hash = db.Column(db.String(255), nullable=False)
    role = db.Column(db.String(20), nullable=False, default="user", index=True)
    status = db.Column(db.String(20), nullable=False, default=UserStatus.ACTIVE.value)

    # Rank / activation
    rank = db.Column(db.String(32), nullable=True, index=True)
    is_active = db.Column(db.Boolean, nullable=False, default=False)
    rank_activated_at = db.Column(db.DateTime, nullable=True)

    # Sponsor tree
    sponsor_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=True, index=True)
    direct_referrals = db.Column(db.Integer, nullable=False, default=0)
    active_direct_referrals = db.Column(db.Integer, nullable=False, default=0)
    team_size = db.Column(db.Integer, nullable=False, default=1)

    # Balances
    available_balance = db.Column(db.Numeric(18, 2), nullable=False, default=Decimal("0.00"), server_default=text("0.00"))
    locked_balance = db.Column(db.Numeric(18, 2), nullable=False, default=Decimal("0.00"), server_default=text("0.00"))
    pending_balance = db.Column(db.Numeric(18, 2), nullable=False, default=Decimal("0.00"), server_default=text("0.00"))
    total_earnings = db.Column(db.Numeric(18, 2), nullable=False, default=Decimal("0.00"), server_default=text("0.00"))
    total_withdrawn = db.Column(db.Numeric(18, 2), nullable=False, default=Decimal("0.00"), server_default=text("0.00"))

    last_login_at = db.Column(db.DateTime, nullable=True)
    last_claimed_at = db.Column(db.DateTime, nullable=True)
    last_income_at = db.Column(db.DateTime, nullable=True)

    sponsor = db.relationship('User', remote_side=[id], backref=db.backref('referrals', lazy='dynamic'))
    wallet = db.relationship('Wallet', uselist=False, back_populates='user', cascade="all,delete-orphan")

    __table_args__ = (
        Index('idx_user_sponsor_active', 'sponsor_id', 'is_active'),
    )

    # Flask-Login protocol; ``is_active`` is the rank-activation flag
    @property
    def is_authenticated(self):
        return True

    @property
    def is_anonymous(self):
        return False

    def get_id(self):
        return str(self.id)

    @property
    def is_admin(self):
        return self.role == "admin"

    def set_password(self, password: str):
        self.password_hash = generate_password_hash(password)

    def check_password(self, password: str) -> bool:
        return check_password_hash(self.password_hash, password)

    def to_dict(self, include_balances=True):
        result = {
            "id": self.id,
            "userCode": self.user_code,
            "fullName": self.full_name,
            "email": self.email,
            "phone": self.phone,
            "walletAddress": self.wallet_address,
            "role": self.role,
            "status": self.status,
            "rank": self.rank,
            "isActive": self.is_active,
            "rankActivatedAt": isoformat(self.rank_activated_at),
            "sponsorId": self.sponsor_id,
            "sponsorCode": self.sponsor.user_code if self.sponsor else None,
            "directReferrals": self.direct_referrals,
            "activeDirectReferrals": self.active_direct_referrals,
            "teamSize": self.team_size,
            "memberSince": isoformat(self.created_at),
            "lastLoginAt": isoformat(self.last_login_at),
        }
        if include_balances:
            result.update({
                "availableBalance": money(self.available_balance),
                "lockedBalance": money(self.locked_balance),
                "pendingBalance": money(self.pending_balance),
                "totalEarnings": money(self.total_earnings),
                "totalWithdrawn": money(self.total_withdrawn),
                "fundingBalance": money(self.wallet.balance) if self.wallet else 0.0,
            })
        return result

    def __repr__(self):
        return f"<User {self.id} {self.user_code}>"

# ===========================================================
# WALLET & TRANSACTIONS
# ===========================================================

class Wallet(db.Model, BaseMixin):
    """Funding wallet credited by approved fund requests."""
    __tablename__ = 'wallets'

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id', ondelete='CASCADE'), nullable=False, unique=True, index=True)
    balance = db.Column(db.Numeric(precision=18, scale=2), nullable=False, default=Decimal("0.00"))
    currency = db.Column(db.String(10), default='USDT')

    user = db.relationship('User', back_populates='wallet')


class Transaction(db.Model, BaseMixin):
    __tablename__ = 'transactions'

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id', ondelete='CASCADE'), nullable=False, index=True)
    type = db.Column(db.String(30), nullable=False, index=True)
    status = db.Column(db.String(20), default=TransactionStatus.PENDING.value, nullable=False, index=True)
    amount = db.Column(db.Numeric(precision=18, scale=2), nullable=False)
    fee = db.Column(db.Numeric(precision=18, scale=2), nullable=False, default=Decimal("0.00"))
    net_amount = db.Column(db.Numeric(precision=18, scale=2), nullable=True)
    rank = db.Column(db.String(32), nullable=True)
    payment_method = db.Column(db.String(30), nullable=True)
    reference = db.Column(db.String(120), unique=True, nullable=True, index=True)
    transaction_hash = db.Column(db.String(120), unique=True, nullable=True)
    counterparty_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=True)
    description = db.Column(db.String(255))
    details = db.Column(db.JSON)
    income_distributed = db.Column(db.Boolean, nullable=False, default=False)
    processed_at = db.Column(db.DateTime, nullable=True)

    user = db.relationship('User', foreign_keys=[user_id], backref=db.backref('transactions', lazy='dynamic'))

    __table_args__ = (
        Index('idx_transaction_user_type', 'user_id', 'type'),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "type": self.type,
            "status": self.status,
            "amount": money(self.amount),
            "fee": money(self.fee),
            "netAmount": money(self.net_amount) if self.net_amount is not None else None,
            "rank": self.rank,
            "paymentMethod": self.payment_method,
            "reference": self.reference,
            "transactionHash": self.transaction_hash,
            "description": self.description,
            "details": self.details or {},
            "createdAt": isoformat(self.created_at),
            "processedAt": isoformat(self.processed_at),
        }

# ===========================================================
# INCOME & POOLS
# ===========================================================

class Income(db.Model, BaseMixin):
    __tablename__ = 'incomes'

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id', ondelete='CASCADE'), nullable=False, index=True)
    type = db.Column(db.String(30), nullable=False, index=True)
    amount = db.Column(db.Numeric(18, 2), nullable=False)
    status = db.Column(db.String(20), nullable=False, default=IncomeStatus.CREDITED.value)
    rank = db.Column(db.String(32), nullable=True)
    level = db.Column(db.Integer, nullable=True)
    source_user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=True)
    source_transaction_id = db.Column(db.Integer, db.ForeignKey('transactions.id'), nullable=True, index=True)
    pool_id = db.Column(db.Integer, db.ForeignKey('income_pools.id'), nullable=True, index=True)
    cycle_id = db.Column(db.Integer, db.ForeignKey('global_cycles.id', ondelete='SET NULL'), nullable=True)
    description = db.Column(db.String(255))
    released_at = db.Column(db.DateTime, nullable=True)

    user = db.relationship('User', foreign_keys=[user_id], backref=db.backref('incomes', lazy='dynamic'))
    source_user = db.relationship('User', foreign_keys=[source_user_id])

    __table_args__ = (
        UniqueConstraint('source_transaction_id', 'user_id', 'type', 'level', name='uq_income_source_recipient'),
        Index('idx_income_user_type', 'user_id', 'type'),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "type": self.type,
            "amount": money(self.amount),
            "status": self.status,
            "rank": self.rank,
            "level": self.level,
            "sourceUserId": self.source_user_id,
            "sourceUserCode": self.source_user.user_code if self.source_user else None,
            "sourceTransactionId": self.source_transaction_id,
            "description": self.description,
            "createdAt": isoformat(self.created_at),
        }


class IncomePool(db.Model, BaseMixin):
    """Per-rank pool of income held back until the direct-referral gate opens."""
    __tablename__ = 'income_pools'

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id', ondelete='CASCADE'), nullable=False, index=True)
    rank = db.Column(db.String(32), nullable=False)
    pool_income = db.Column(db.Numeric(18, 2), nullable=False, default=Decimal("0.00"))
    total_accrued = db.Column(db.Numeric(18, 2), nullable=False, default=Decimal("0.00"))
    max_pool_income = db.Column(db.Numeric(18, 2), nullable=False)
    direct_referrals_count = db.Column(db.Integer, nullable=False, default=0)
    required_direct_referrals = db.Column(db.Integer, nullable=False, default=2)
    can_claim = db.Column(db.Boolean, nullable=False, default=False)
    is_locked = db.Column(db.Boolean, nullable=False, default=True)
    activated_at = db.Column(db.DateTime, default=utcnow)
    last_income_at = db.Column(db.DateTime, nullable=True)
    claimed_at = db.Column(db.DateTime, nullable=True)

    user = db.relationship('User', backref=db.backref('income_pools', lazy='dynamic'))

    __table_args__ = (
        UniqueConstraint('user_id', 'rank', name='uq_income_pool_user_rank'),
    )

    @property
    def is_capped(self):
        return Decimal(self.total_accrued or 0) >= Decimal(self.max_pool_income or 0)

    def to_dict(self):
        return {
            "id": self.id,
            "rank": self.rank,
            "poolIncome": money(self.pool_income),
            "totalAccrued": money(self.total_accrued),
            "maxPoolIncome": money(self.max_pool_income),
            "directReferralsCount": self.direct_referrals_count,
            "requiredDirectReferrals": self.required_direct_referrals,
            "canClaim": self.can_claim,
            "isLocked": self.is_locked,
            "isCapped": self.is_capped,
            "activatedAt": isoformat(self.activated_at),
            "lastIncomeAt": isoformat(self.last_income_at),
            "claimedAt": isoformat(self.claimed_at),
        }

# ===========================================================
# WITHDRAWALS & PAYOUTS
# ===========================================================

class Withdrawal(db.Model, BaseMixin):
    __tablename__ = 'withdrawals'

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    transaction_id = db.Column(db.Integer, db.ForeignKey('transactions.id', ondelete='SET NULL'), nullable=True, index=True)
    amount = db.Column(db.Numeric(precision=18, scale=2), nullable=False)
    fee = db.Column(db.Numeric(18, 2), nullable=False, default=Decimal("0.00"))
    net_amount = db.Column(db.Numeric(18, 2), nullable=False)
    method = db.Column(db.String(30), nullable=False)
    wallet_address = db.Column(db.String(64), nullable=True)
    bank_details = db.Column(db.JSON, nullable=True)
    p2p_details = db.Column(db.JSON, nullable=True)
    status = db.Column(db.String(20), nullable=False, default=WithdrawalStatus.PENDING.value, index=True)
    reference = db.Column(db.String(64), unique=True, nullable=False)
    rejection_reason = db.Column(db.String(255), nullable=True)
    transaction_hash = db.Column(db.String(120), nullable=True)
    approved_by = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=True)
    approved_at = db.Column(db.DateTime, nullable=True)
    processed_by = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=True)
    processed_at = db.Column(db.DateTime, nullable=True)

    user = db.relationship('User', foreign_keys=[user_id], backref=db.backref('withdrawals', lazy='dynamic'))

    __table_args__ = (
        Index('idx_withdrawal_user_status', 'user_id', 'status'),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "userId": self.user_id,
            "amount": money(self.amount),
            "fee": money(self.fee),
            "netAmount": money(self.net_amount),
            "method": self.method,
            "walletAddress": self.wallet_address,
            "bankDetails": self.bank_details,
            "p2pDetails": self.p2p_details,
            "status": self.status,
            "reference": self.reference,
            "rejectionReason": self.rejection_reason,
            "transactionHash": self.transaction_hash,
            "createdAt": isoformat(self.created_at),
            "approvedAt": isoformat(self.approved_at),
            "processedAt": isoformat(self.processed_at),
        }


class PayoutQueue(db.Model, BaseMixin):
    """One queued disbursement per withdrawal"""
    __tablename__ = 'payout_queue'

    id = db.Column(db.Integer, primary_key=True)
    withdrawal_id = db.Column(db.Integer, db.ForeignKey('withdrawals.id', ondelete='CASCADE'), nullable=False, unique=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False, index=True)
    amount = db.Column(db.Numeric(18, 2), nullable=False)
    method = db.Column(db.String(30), nullable=False)
    priority = db.Column(db.String(10), nullable=False, default="low")
    scheduled_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    attempts = db.Column(db.Integer, nullable=False, default=0)
    last_attempt_at = db.Column(db.DateTime, nullable=True)
    last_error = db.Column(db.Text)

    withdrawal = db.relationship('Withdrawal', backref=db.backref('queue_entry', uselist=False))

    __table_args__ = (
        Index('idx_payout_queue_scheduled', 'scheduled_at'),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "withdrawalId": self.withdrawal_id,
            "userId": self.user_id,
            "amount": money(self.amount),
            "method": self.method,
            "priority": self.priority,
            "scheduledAt": isoformat(self.scheduled_at),
            "attempts": self.attempts,
            "lastAttemptAt": isoformat(self.last_attempt_at),
            "lastError": self.last_error,
        }


class Payout(db.Model, BaseMixin):
    """Admin-issued payout the member claims into the available balance."""
    __tablename__ = 'payouts'

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False, index=True)
    amount = db.Column(db.Numeric(18, 2), nullable=False)
    status = db.Column(db.String(20), nullable=False, default="ready")
    description = db.Column(db.String(255))
    expires_at = db.Column(db.DateTime, nullable=True)
    issued_by = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=True)
    claimed_at = db.Column(db.DateTime, nullable=True)
    transaction_id = db.Column(db.Integer, db.ForeignKey('transactions.id'), nullable=True)

    def to_dict(self):
        return {
            "id": self.id,
            "amount": money(self.amount),
            "status": self.status,
            "description": self.description,
            "expiresAt": isoformat(self.expires_at),
            "claimedAt": isoformat(self.claimed_at),
            "createdAt": isoformat(self.created_at),
        }

# ===========================================================
# GLOBAL CYCLES & AUTOPOOL
# ===========================================================

class GlobalCycle(db.Model, BaseMixin):
    __tablename__ = 'global_cycles'

    id = db.Column(db.Integer, primary_key=True)
    rank = db.Column(db.String(32), nullable=False, index=True)
    cycle_number = db.Column(db.Integer, nullable=False)
    status = db.Column(db.String(20), nullable=False, default="active")
    cycle_size = db.Column(db.Integer, nullable=False)
    participant_count = db.Column(db.Integer, nullable=False, default=0)
    processed = db.Column(db.Boolean, nullable=False, default=False)
    total_pool = db.Column(db.Numeric(18, 2), nullable=False, default=Decimal("0.00"))
    distributed_amount = db.Column(db.Numeric(18, 2), nullable=False, default=Decimal("0.00"))
    completed_at = db.Column(db.DateTime, nullable=True)
    processed_at = db.Column(db.DateTime, nullable=True)
    last_error = db.Column(db.Text)

    participants = db.relationship('GlobalCycleParticipant', back_populates='cycle',
                                   order_by='GlobalCycleParticipant.position',
                                   cascade="all,delete-orphan")

    __table_args__ = (
        UniqueConstraint('rank', 'cycle_number', name='uq_global_cycle_rank_number'),
    )

    def to_dict(self):
        return {
            "id": self.id,
            "rank": self.rank,
            "cycleNumber": self.cycle_number,
            "status": self.status,
            "cycleSize": self.cycle_size,
            "participantCount": self.participant_count,
            "processed": self.processed,
            "totalPool": money(self.total_pool),
            "distributedAmount": money(self.distributed_amount),
            "completedAt": isoformat(self.completed_at),
            "processedAt": isoformat(self.processed_at),
        }


class GlobalCycleParticipant(db.Model, BaseMixin):
    __tablename__ = 'global_cycle_participants'

    id = db.Column(db.Integer, primary_key=True)
    cycle_id = db.Column(db.Integer, db.ForeignKey('global_cycles.id', ondelete='CASCADE'), nullable=False, index=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False, index=True)
    position = db.Column(db.Integer, nullable=False)

    cycle = db.relationship('GlobalCycle', back_populates='participants')

    __table_args__ = (
        UniqueConstraint('cycle_id', 'position', name='uq_cycle_position'),
        UniqueConstraint('cycle_id', 'user_id', name='uq_cycle_user'),
    )


class AutopoolPosition(db.Model, BaseMixin):
    __tablename__ = 'autopool_positions'

    id = db.Column(db.Integer, primary_key=True)
    position = db.Column(db.Integer, nullable=False, unique=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False, index=True)
    rank = db.Column(db.String(32), nullable=False)
    assigned_at = db.Column(db.DateTime, default=utcnow)
    last_distributed_at = db.Column(db.DateTime, nullable=True)
    distribution_count = db.Column(db.Integer, nullable=False, default=0)

    __table_args__ = (
        UniqueConstraint('user_id', 'rank', name='uq_autopool_user_rank'),
    )

    def to_dict(self):
        return {
            "position": self.position,
            "userId": self.user_id,
            "rank": self.rank,
            "assignedAt": isoformat(self.assigned_at),
            "lastDistributedAt": isoformat(self.last_distributed_at),
            "distributionCount": self.distribution_count,
        }


class AutopoolMeta(db.Model):
    """Single-row position counters for the autopool."""
    __tablename__ = 'autopool_meta'

    id = db.Column(db.Integer, primary_key=True)
    last_filled_position = db.Column(db.Integer, nullable=False, default=0)
    next_distribution_position = db.Column(db.Integer, nullable=False, default=1)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

# ===========================================================
# FUND REQUESTS & PLATFORM SETTINGS
# ===========================================================

class FundRequest(db.Model, BaseMixin):
    __tablename__ = 'fund_requests'

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False, index=True)
    amount = db.Column(db.Numeric(18, 2), nullable=False)
    currency = db.Column(db.String(10), nullable=False, default="USDT")
    transaction_hash = db.Column(db.String(120), nullable=True)
    status = db.Column(db.String(20), nullable=False, default="pending", index=True)
    admin_note = db.Column(db.String(255))
    processed_by = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=True)
    processed_at = db.Column(db.DateTime, nullable=True)

    user = db.relationship('User', foreign_keys=[user_id])

    def to_dict(self):
        return {
            "id": self.id,
            "userId": self.user_id,
            "userCode": self.user.user_code if self.user else None,
            "amount": money(self.amount),
            "currency": self.currency,
            "transactionHash": self.transaction_hash,
            "status": self.status,
            "adminNote": self.admin_note,
            "createdAt": isoformat(self.created_at),
            "processedAt": isoformat(self.processed_at),
        }


class PlatformSettings(db.Model, BaseMixin):
    __tablename__ = 'platform_settings'

    id = db.Column(db.Integer, primary_key=True)
    direct_referral_requirement = db.Column(db.Integer, nullable=False, default=2)
    min_withdrawal = db.Column(db.Numeric(18, 2), nullable=False, default=Decimal("10"))
    max_withdrawal = db.Column(db.Numeric(18, 2), nullable=False, default=Decimal("50000"))
    daily_withdrawal_limit = db.Column(db.Numeric(18, 2), nullable=False, default=Decimal("10000"))
    welcome_bonus = db.Column(db.Numeric(18, 2), nullable=False, default=Decimal("0.00"))
    registration_open = db.Column(db.Boolean, nullable=False, default=True)
    maintenance_mode = db.Column(db.Boolean, nullable=False, default=False)
    global_cycle_size = db.Column(db.Integer, nullable=False, default=1024)
    auto_topup_enabled = db.Column(db.Boolean, nullable=False, default=False)
    updated_by = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=True)

    @staticmethod
    def get():
        """Return the settings row, creating it with defaults on first use."""
        settings = db.session.get(PlatformSettings, 1)
        if settings is None:
            settings = PlatformSettings(id=1)
            db.session.add(settings)
            db.session.flush()
        return settings

    def to_dict(self):
        return {
            "directReferralRequirement": self.direct_referral_requirement,
            "minWithdrawal": money(self.min_withdrawal),
            "maxWithdrawal": money(self.max_withdrawal),
            "dailyWithdrawalLimit": money(self.daily_withdrawal_limit),
            "welcomeBonus": money(self.welcome_bonus),
            "registrationOpen": self.registration_open,
            "maintenanceMode": self.maintenance_mode,
            "globalCycleSize": self.global_cycle_size,
            "autoTopupEnabled": self.auto_topup_enabled,
            "updatedAt": isoformat(self.updated_at),
        }

# ===========================================================
# AUDITING
# ===========================================================

class AuditLog(db.Model, BaseMixin):
    __tablename__ = 'audit_logs'

    id = db.Column(db.Integer, primary_key=True)
    actor_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=True, index=True)
    action = db.Column(db.String(255), nullable=False, index=True)
    details = db.Column(db.JSON)
    ip_address = db.Column(db.String(50))

    @staticmethod
    def record(action, actor_id=None, ip_address="system", **details):
        entry = AuditLog(actor_id=actor_id, action=action, ip_address=ip_address, details=details or None)
        db.session.add(entry)
        return entry

    def to_dict(self):
        return {
            "id": self.id,
            "actorId": self.actor_id,
            "action": self.action,
            "details": self.details or {},
            "ipAddress": self.ip_address,
            "createdAt": isoformat(self.created_at),
        }
