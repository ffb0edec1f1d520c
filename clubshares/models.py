from datetime import datetime, timezone
from enum import Enum

from flask_login import UserMixin
from sqlalchemy.ext.hybrid import hybrid_property
from werkzeug.security import generate_password_hash, check_password_hash

from clubshares.errors import InvalidTransitionError
from clubshares.extensions import db


def utcnow():
    """Naive UTC timestamp (SQLite stores datetimes without tz)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _enum_values(enum_cls):
    return [member.value for member in enum_cls]


def _enum_column(enum_cls, name, **kwargs):
    return db.Column(
        db.Enum(enum_cls, name=name, native_enum=False, create_constraint=True,
                values_callable=_enum_values, length=30, validate_strings=True),
        **kwargs
    )


# ============================================================
# ENUMS
# ============================================================

class UserRole(Enum):
    ADMIN = 'admin'
    USER = 'user'


class AllocationStatus(Enum):
    PENDING_INVITATION = 'pending_invitation'
    PENDING_CONSENT = 'pending_consent'
    ACCEPTED = 'accepted'
    REJECTED = 'rejected'
    PENDING_RELEASE = 'pending_release'
    RELEASED_PARTIALLY = 'released_partially'
    RELEASED_FULLY = 'released_fully'

    def can_transition_to(self, target):
        return target in ALLOWED_TRANSITIONS[self]

    @property
    def is_releasable(self):
        return self in RELEASABLE_STATUSES

    @property
    def is_resettable(self):
        return self in RESETTABLE_STATUSES


class HoldingStatus(Enum):
    HOLDING = 'holding'
    PARTIALLY_RELEASED = 'partially_released'
    FULLY_RELEASED = 'fully_released'


class ReleaseTrigger(Enum):
    BULK_RELEASE = 'bulk_release'
    MANUAL_ADMIN = 'manual_admin'


# Statuses a release operation may read; anything else is skipped
RELEASABLE_STATUSES = frozenset({
    AllocationStatus.ACCEPTED,
    AllocationStatus.PENDING_RELEASE,
    AllocationStatus.RELEASED_PARTIALLY,
})

# Statuses an admin may reset back to pending_invitation (everything but released_fully).
# The consent service additionally refuses once shares reached a tradable holding.
RESETTABLE_STATUSES = frozenset({
    AllocationStatus.PENDING_INVITATION,
    AllocationStatus.PENDING_CONSENT,
    AllocationStatus.ACCEPTED,
    AllocationStatus.REJECTED,
    AllocationStatus.PENDING_RELEASE,
    AllocationStatus.RELEASED_PARTIALLY,
})

_RELEASE_TARGETS = frozenset({
    AllocationStatus.PENDING_RELEASE,
    AllocationStatus.RELEASED_PARTIALLY,
    AllocationStatus.RELEASED_FULLY,
})

_FORWARD_TRANSITIONS = {
    AllocationStatus.PENDING_INVITATION: frozenset({AllocationStatus.PENDING_CONSENT}),
    AllocationStatus.PENDING_CONSENT: frozenset({AllocationStatus.ACCEPTED, AllocationStatus.REJECTED}),
    AllocationStatus.ACCEPTED: _RELEASE_TARGETS,
    AllocationStatus.REJECTED: frozenset(),
    AllocationStatus.PENDING_RELEASE: _RELEASE_TARGETS,
    AllocationStatus.RELEASED_PARTIALLY: _RELEASE_TARGETS,
    AllocationStatus.RELEASED_FULLY: frozenset(),
}
ALLOWED_TRANSITIONS = {
    status: targets | ({AllocationStatus.PENDING_INVITATION} if status in RESETTABLE_STATUSES else set())
    for status, targets in _FORWARD_TRANSITIONS.items()
}


# ============================================================
# USER MODEL
# ============================================================
class User(UserMixin, db.Model):
    """
    Account in the identity store.

    Admins drive the club share workflow. Regular users receive released
    shares once their account is activated and linked to a club member.
    """
    __tablename__ = 'users'

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(100), nullable=False)
    email = db.Column(db.String(120), unique=True, nullable=False)
    phone = db.Column(db.String(40), nullable=True)
    password_hash = db.Column(db.String(256), nullable=False)
    role = _enum_column(UserRole, 'user_role', default=UserRole.USER, nullable=False)
    is_activated = db.Column(db.Boolean, default=False, nullable=False)
    activation_token = db.Column(db.String(255), nullable=True)
    created_at = db.Column(db.DateTime, default=utcnow)

    def set_password(self, password):
        """Hash and set the user's password."""
        self.password_hash = generate_password_hash(password)

    def check_password(self, password):
        """Verify password against stored hash."""
        return check_password_hash(self.password_hash, password)

    @property
    def is_admin(self):
        return self.role == UserRole.ADMIN

    def __repr__(self):
        return f'<User {self.email}>'


# ============================================================
# CLUB MEMBER MODEL
# ============================================================
class ClubMember(db.Model):
    """
    A person or entity eligible for a club share allocation.

    user_id stays empty until the member has an activated account.
    Only deleted as an orphan when a batch rollback removes its last
    allocation.
    """
    __tablename__ = 'club_members'

    id = db.Column(db.Integer, primary_key=True)
    member_name = db.Column(db.String(150), nullable=False, index=True)
    email = db.Column(db.String(120), nullable=True, index=True)
    phone = db.Column(db.String(40), nullable=True, index=True)
    member_code = db.Column(db.String(40), unique=True, nullable=False)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=True)
    created_at = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    user = db.relationship('User', backref=db.backref('club_members', lazy='dynamic'))
    allocations = db.relationship('ClubShareAllocation', backref='member', lazy='dynamic')

    def __repr__(self):
        return f'<ClubMember {self.member_name}>'


# ============================================================
# CLUB SHARE ALLOCATION MODEL
# ============================================================
class ClubShareAllocation(db.Model):
    """
    One debt-to-share conversion record.

    Lifecycle:
    1. Imported with status='pending_invitation'
    2. Consent invitation sent -> 'pending_consent' with a deadline
    3. Member answers -> 'accepted' or 'rejected'
    4. Bulk tranche queued -> 'pending_release'
    5. Shares handed over -> 'released_partially' / 'released_fully'

    allocated_shares is fixed at creation; releases consume it through
    the holding account, never increase it.
    """
    __tablename__ = 'club_share_allocations'

    id = db.Column(db.Integer, primary_key=True)
    club_member_id = db.Column(db.Integer, db.ForeignKey('club_members.id'), nullable=False, index=True)

    allocated_shares = db.Column(db.Integer, nullable=False)

    # Financial snapshot of the conversion
    transfer_fee_paid = db.Column(db.Float, default=0.0, nullable=False)
    debt_amount_settled = db.Column(db.Float, default=0.0, nullable=False)
    debt_rejected = db.Column(db.Float, default=0.0, nullable=False)
    total_cost = db.Column(db.Float, default=0.0, nullable=False)
    cost_per_share = db.Column(db.Float, default=0.0, nullable=False)

    allocation_status = _enum_column(
        AllocationStatus, 'allocation_status',
        default=AllocationStatus.PENDING_INVITATION, nullable=False, index=True
    )
    consent_deadline = db.Column(db.DateTime, nullable=True)
    consent_signed_at = db.Column(db.DateTime, nullable=True)
    rejection_reason = db.Column(db.String(500), nullable=True)

    import_batch_reference = db.Column(db.String(120), nullable=True, index=True)
    created_by = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=True)

    # Tranche holding queued by the last bulk release, cleared once settled or reset.
    # Plain id: rollback deletes holdings before allocations.
    queued_tranche_id = db.Column(db.Integer, nullable=True)

    created_at = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    # Optimistic concurrency: stale writers get StaleDataError on flush
    version = db.Column(db.Integer, nullable=False, default=1)
    __mapper_args__ = {'version_id_col': version}

    __table_args__ = (
        db.CheckConstraint('allocated_shares > 0', name='ck_allocation_shares_positive'),
        db.CheckConstraint(
            'transfer_fee_paid >= 0 AND debt_amount_settled >= 0 AND debt_rejected >= 0 '
            'AND total_cost >= 0 AND cost_per_share >= 0',
            name='ck_allocation_money_non_negative'
        ),
    )

    holding_accounts = db.relationship('ClubShareHoldingAccount', backref='allocation', lazy='dynamic')
    release_logs = db.relationship('ClubShareReleaseLog', backref='allocation', lazy='dynamic')

    def transition_to(self, target):
        """Move to `target`, refusing anything outside the transition table."""
        current = self.allocation_status
        if not current.can_transition_to(target):
            raise InvalidTransitionError(
                f"Allocation {self.id} cannot move from {current.value} to {target.value}"
            )
        self.allocation_status = target

    def escrow_holding_account(self):
        """The full-quantity holding created at import (None for legacy rows)."""
        return self.holding_accounts.filter(
            ClubShareHoldingAccount.is_tranche == False
        ).order_by(ClubShareHoldingAccount.id).first()

    def queued_tranche(self):
        """Bulk tranche awaiting settlement, if it still has shares left."""
        if self.queued_tranche_id is None:
            return None
        return self.holding_accounts.filter(
            ClubShareHoldingAccount.id == self.queued_tranche_id,
            ClubShareHoldingAccount.status != HoldingStatus.FULLY_RELEASED
        ).first()

    def shares_delivered(self):
        """Shares already credited to a tradable holding from this allocation."""
        return db.session.query(
            db.func.coalesce(db.func.sum(UserShareHolding.quantity), 0)
        ).filter(UserShareHolding.source_allocation_id == self.id).scalar()

    def to_dict(self):
        return {
            'id': self.id,
            'club_member_id': self.club_member_id,
            'member_name': self.member.member_name if self.member else None,
            'allocated_shares': self.allocated_shares,
            'transfer_fee_paid': self.transfer_fee_paid,
            'debt_amount_settled': self.debt_amount_settled,
            'debt_rejected': self.debt_rejected,
            'total_cost': self.total_cost,
            'cost_per_share': self.cost_per_share,
            'allocation_status': self.allocation_status.value,
            'consent_deadline': self.consent_deadline.isoformat() if self.consent_deadline else None,
            'consent_signed_at': self.consent_signed_at.isoformat() if self.consent_signed_at else None,
            'rejection_reason': self.rejection_reason,
            'import_batch_reference': self.import_batch_reference,
            'queued_tranche_id': self.queued_tranche_id,
        }

    def __repr__(self):
        return f'<ClubShareAllocation {self.id} shares={self.allocated_shares} status={self.allocation_status.value}>'


# ============================================================
# CLUB SHARE HOLDING ACCOUNT MODEL
# ============================================================
class ClubShareHoldingAccount(db.Model):
    """
    Escrow tracker for shares owed to a member but not yet tradable.

    Each allocation has one import escrow (full quantity) and zero or more
    tranche holdings, one per bulk release run. Settling a tranche releases
    from the tranche and the escrow together, so the escrow always shows
    what the allocation still holds.

    CRITICAL: shares_remaining is always shares_quantity - shares_released
    and never negative. Only release operations move shares_released.
    """
    __tablename__ = 'club_share_holding_accounts'

    id = db.Column(db.Integer, primary_key=True)
    club_allocation_id = db.Column(db.Integer, db.ForeignKey('club_share_allocations.id'),
                                   nullable=False, index=True)
    club_member_id = db.Column(db.Integer, db.ForeignKey('club_members.id'), nullable=False)

    shares_quantity = db.Column(db.Integer, nullable=False)
    shares_released = db.Column(db.Integer, default=0, nullable=False)
    status = _enum_column(HoldingStatus, 'holding_status', default=HoldingStatus.HOLDING, nullable=False)
    # True for slices queued by a bulk release; False for the import escrow
    is_tranche = db.Column(db.Boolean, default=False, nullable=False)

    created_at = db.Column(db.DateTime, default=utcnow)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow)

    version = db.Column(db.Integer, nullable=False, default=1)
    __mapper_args__ = {'version_id_col': version}

    __table_args__ = (
        db.CheckConstraint('shares_quantity > 0', name='ck_holding_quantity_positive'),
        db.CheckConstraint('shares_released >= 0 AND shares_released <= shares_quantity',
                           name='ck_holding_released_in_range'),
    )

    member = db.relationship('ClubMember')
    release_logs = db.relationship('ClubShareReleaseLog', backref='holding_account', lazy='dynamic')

    @hybrid_property
    def shares_remaining(self):
        return self.shares_quantity - self.shares_released

    def release(self, shares):
        """Move `shares` out of holding and refresh the status."""
        if shares <= 0 or shares > self.shares_remaining:
            raise ValueError(
                f"Cannot release {shares} shares from holding account {self.id} "
                f"({self.shares_remaining} remaining)"
            )
        self.shares_released += shares
        if self.shares_remaining == 0:
            self.status = HoldingStatus.FULLY_RELEASED
        else:
            self.status = HoldingStatus.PARTIALLY_RELEASED

    def __repr__(self):
        return f'<ClubShareHoldingAccount {self.id} {self.shares_released}/{self.shares_quantity}>'


# ============================================================
# USER SHARE HOLDING MODEL (tradable ledger hand-off)
# ============================================================
class UserShareHolding(db.Model):
    """
    Tradable shares credited to a user account by a release.

    source_allocation_id is a plain reference: the trading subsystem keeps
    its holdings even if the originating import batch is rolled back.
    """
    __tablename__ = 'user_share_holdings'

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=False, index=True)
    quantity = db.Column(db.Integer, nullable=False)
    purchase_price_per_share = db.Column(db.Float, default=0.0, nullable=False)
    currency = db.Column(db.String(10), nullable=False)
    source_allocation_id = db.Column(db.Integer, nullable=True)
    created_at = db.Column(db.DateTime, default=utcnow)

    user = db.relationship('User', backref=db.backref('share_holdings', lazy='dynamic'))

    def __repr__(self):
        return f'<UserShareHolding user={self.user_id} quantity={self.quantity}>'


# ============================================================
# CLUB SHARE RELEASE LOG MODEL (AUDIT)
# ============================================================
class ClubShareReleaseLog(db.Model):
    """
    Append-only audit row, one per release event.

    release_percentage is relative to the allocation (bulk tranches) or
    the holding account (manual releases). market_ratio_data keeps the
    inputs the release was computed from.
    """
    __tablename__ = 'club_share_release_logs'

    id = db.Column(db.Integer, primary_key=True)
    club_allocation_id = db.Column(db.Integer, db.ForeignKey('club_share_allocations.id'),
                                   nullable=False, index=True)
    club_holding_account_id = db.Column(db.Integer, db.ForeignKey('club_share_holding_accounts.id'),
                                        nullable=False, index=True)
    shares_released = db.Column(db.Integer, nullable=False)
    release_percentage = db.Column(db.Float, nullable=False)
    release_trigger = _enum_column(ReleaseTrigger, 'release_trigger', nullable=False)
    release_reason = db.Column(db.String(500), nullable=True)
    market_ratio_data = db.Column(db.JSON, nullable=True)
    user_share_holding_id = db.Column(db.Integer, db.ForeignKey('user_share_holdings.id'), nullable=True)
    released_by = db.Column(db.Integer, db.ForeignKey('users.id'), nullable=True)
    created_at = db.Column(db.DateTime, default=utcnow)

    user_share_holding = db.relationship('UserShareHolding')

    def to_dict(self):
        return {
            'id': self.id,
            'club_allocation_id': self.club_allocation_id,
            'club_holding_account_id': self.club_holding_account_id,
            'shares_released': self.shares_released,
            'release_percentage': self.release_percentage,
            'release_trigger': self.release_trigger.value,
            'release_reason': self.release_reason,
            'market_ratio_data': self.market_ratio_data,
            'user_share_holding_id': self.user_share_holding_id,
            'created_at': self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f'<ClubShareReleaseLog allocation={self.club_allocation_id} shares={self.shares_released}>'
