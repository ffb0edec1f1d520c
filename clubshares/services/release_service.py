"""
PROPORTIONAL RELEASE ENGINE
===========================

CRITICAL BUSINESS RULES:
1. Bulk share for an allocation = floor(a_i * Q / T), T = sum over ALL
   accepted allocations (full allocated quantity, not what is still held)
2. The rounding shortfall Q - sum(s_i) is kept, never redistributed
3. Every member is processed in its own unit of work
4. Allocations are re-read inside each unit; anything no longer
   releasable is skipped, a deleted allocation is a failure
5. Releasing an allocation that is already fully released is a no-op
6. A bulk release always queues its own tranche holding of s_i shares;
   the next manual release settles that tranche before touching the rest
   of the escrow
7. A full release logs release_percentage=100 whatever was left
"""

import logging
from dataclasses import dataclass, field
from fractions import Fraction
from typing import List

from flask import current_app

from clubshares.errors import NotFoundError, ValidationError
from clubshares.extensions import db
from clubshares.models import (
    AllocationStatus, ClubShareAllocation, ClubShareHoldingAccount, ClubShareReleaseLog,
    HoldingStatus, ReleaseTrigger, UserShareHolding, utcnow
)
from clubshares.services.authorization_service import require_admin
from clubshares.services.unit_of_work import BatchResult, SkipUnit, run_batch, run_unit

logger = logging.getLogger(__name__)

MODE_PERCENTAGE = 'percentage'
MODE_ABSOLUTE = 'absolute'
RELEASE_MODES = (MODE_PERCENTAGE, MODE_ABSOLUTE)


# ============================================================
# PLANNING (pure)
# ============================================================

@dataclass
class ReleaseEntry:
    allocation_id: int
    club_member_id: int
    allocated_shares: int
    ratio: Fraction
    shares: int

    def to_dict(self):
        return {
            'allocation_id': self.allocation_id,
            'club_member_id': self.club_member_id,
            'allocated_shares': self.allocated_shares,
            'ratio': float(self.ratio),
            'shares': self.shares,
        }


@dataclass
class ReleasePlan:
    total_pool: int
    requested_quantity: int
    entries: List[ReleaseEntry] = field(default_factory=list)
    skipped: List[int] = field(default_factory=list)

    @property
    def planned_total(self):
        return sum(entry.shares for entry in self.entries)

    @property
    def shortfall(self):
        return self.requested_quantity - self.planned_total

    def to_dict(self):
        return {
            'total_pool': self.total_pool,
            'requested_quantity': self.requested_quantity,
            'planned_total': self.planned_total,
            'shortfall': self.shortfall,
            'entries': [entry.to_dict() for entry in self.entries],
            'skipped': self.skipped,
        }


def plan_proportional_release(allocations, quantity):
    """
    Split `quantity` across `allocations` in proportion to allocated_shares.

    `allocations` is any iterable of objects with id, club_member_id and
    allocated_shares. Integer arithmetic only, so floor() is exact.
    Entries come back in (club_member_id, id) order; allocations whose
    share floors to zero are listed in `skipped`.
    """
    _check_quantity(quantity)

    candidates = sorted(allocations, key=lambda a: (a.club_member_id, a.id))
    total_pool = sum(a.allocated_shares for a in candidates)
    plan = ReleasePlan(total_pool=total_pool, requested_quantity=quantity)

    if total_pool <= 0:
        plan.skipped = [a.id for a in candidates]
        return plan

    for allocation in candidates:
        shares = (allocation.allocated_shares * quantity) // total_pool
        if shares <= 0:
            plan.skipped.append(allocation.id)
            continue
        plan.entries.append(ReleaseEntry(
            allocation_id=allocation.id,
            club_member_id=allocation.club_member_id,
            allocated_shares=allocation.allocated_shares,
            ratio=Fraction(allocation.allocated_shares, total_pool),
            shares=shares,
        ))

    return plan


def _check_quantity(quantity):
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
        raise ValidationError("Release quantity must be a positive whole number")


def _check_reason(reason):
    reason = (reason or '').strip()
    if not reason:
        raise ValidationError("A release reason is required")
    return reason


def _eligible_for_bulk():
    return ClubShareAllocation.query.filter(
        ClubShareAllocation.allocation_status == AllocationStatus.ACCEPTED
    ).order_by(ClubShareAllocation.club_member_id, ClubShareAllocation.id).all()


def preview_bulk_release(quantity):
    """Plan a bulk release against the current accepted pool without writing"""
    return plan_proportional_release(_eligible_for_bulk(), quantity)


# ============================================================
# BULK PROPORTIONAL RELEASE
# ============================================================

def bulk_release(quantity, reason, actor_id):
    """
    Queue a proportional tranche of `quantity` shares across every
    accepted allocation.

    Each planned allocation gets a bulk_release log entry and moves to
    'pending_release'. Failures on one member never stop the others.

    Returns: (ReleasePlan, BatchResult)
    """
    require_admin(actor_id)
    reason = _check_reason(reason)
    plan = preview_bulk_release(quantity)
    released_at = utcnow()

    batch = BatchResult(operation='bulk_release')
    for entry in plan.entries:
        batch.record(run_unit(
            'bulk_release', entry.allocation_id,
            _queue_tranche, entry, plan, reason, actor_id, released_at
        ))

    logger.info("Bulk release of %d by %s: planned %d (shortfall %d), %s",
                quantity, actor_id, plan.planned_total, plan.shortfall, batch.summary())
    return plan, batch


def _queue_tranche(entry, plan, reason, actor_id, released_at):
    allocation = db.session.get(ClubShareAllocation, entry.allocation_id, populate_existing=True)
    if allocation is None:
        raise NotFoundError(f"Allocation {entry.allocation_id} no longer exists")
    if allocation.allocation_status != AllocationStatus.ACCEPTED:
        raise SkipUnit(f"allocation is {allocation.allocation_status.value}")

    escrow = allocation.escrow_holding_account()
    available = escrow.shares_remaining if escrow is not None else allocation.allocated_shares
    shares = min(entry.shares, available)
    if shares <= 0:
        raise SkipUnit("nothing left in escrow")

    tranche = ClubShareHoldingAccount(
        club_allocation_id=allocation.id,
        club_member_id=allocation.club_member_id,
        shares_quantity=shares,
        shares_released=0,
        status=HoldingStatus.HOLDING,
        is_tranche=True,
    )
    db.session.add(tranche)
    db.session.flush()

    log = ClubShareReleaseLog(
        club_allocation_id=allocation.id,
        club_holding_account_id=tranche.id,
        shares_released=shares,
        release_percentage=shares / allocation.allocated_shares * 100,
        release_trigger=ReleaseTrigger.BULK_RELEASE,
        release_reason=reason,
        market_ratio_data={
            'total_pool': plan.total_pool,
            'requested_quantity': plan.requested_quantity,
            'member_ratio': float(entry.ratio),
            'released_at': released_at.isoformat(),
        },
        released_by=actor_id,
    )
    db.session.add(log)

    allocation.queued_tranche_id = tranche.id
    allocation.transition_to(AllocationStatus.PENDING_RELEASE)
    db.session.flush()
    return log.id


# ============================================================
# FULL MANUAL RELEASE
# ============================================================

def release_full(allocation_ids, actor_id, reason='Admin bulk release'):
    """
    Hand every remaining held share of each allocation to its member's
    tradable balance.

    Per allocation: no holding account or no linked user is a failure,
    already fully released is skipped.

    Returns: BatchResult
    """
    require_admin(actor_id)
    reason = _check_reason(reason)

    return run_batch(
        'release_full', allocation_ids,
        lambda allocation_id: _release_shares(allocation_id, None, reason, actor_id)
    )


# ============================================================
# PARTIAL MANUAL RELEASE
# ============================================================

def release_partial(allocation_ids, mode, value, actor_id, reason):
    """
    Release part of what each allocation still holds.

    mode='percentage': floor(remaining * value / 100), 0 < value <= 100
    mode='absolute':   min(value, remaining)

    Returns: BatchResult
    """
    require_admin(actor_id)
    reason = _check_reason(reason)

    if mode not in RELEASE_MODES:
        raise ValidationError(f"Release mode must be one of: {', '.join(RELEASE_MODES)}")
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
        raise ValidationError("Release value must be greater than 0")
    if mode == MODE_PERCENTAGE and value > 100:
        raise ValidationError("Release percentage cannot exceed 100")
    if mode == MODE_ABSOLUTE and value != int(value):
        raise ValidationError("Absolute release must be a whole number of shares")

    def shares_for(remaining):
        if mode == MODE_PERCENTAGE:
            return int(remaining * Fraction(str(value)) / 100)
        return min(int(value), remaining)

    return run_batch(
        'release_partial', allocation_ids,
        lambda allocation_id: _release_shares(allocation_id, shares_for, reason, actor_id)
    )


# ============================================================
# SHARED: holding -> tradable
# ============================================================

def _release_shares(allocation_id, shares_for, reason, actor_id):
    """
    One allocation's release unit. shares_for=None releases everything left.

    A queued bulk tranche is settled first: shares come out of the tranche
    and the import escrow together. Without a tranche they come straight
    out of the escrow.
    """
    allocation = db.session.get(ClubShareAllocation, allocation_id, populate_existing=True)
    if allocation is None:
        raise NotFoundError(f"Allocation {allocation_id} not found")

    status = allocation.allocation_status
    if status == AllocationStatus.RELEASED_FULLY:
        raise SkipUnit("already fully released")
    if not status.is_releasable:
        raise SkipUnit(f"allocation is {status.value}")

    tranche = allocation.queued_tranche()
    escrow = allocation.escrow_holding_account()
    source = tranche or escrow
    if source is None:
        raise NotFoundError(f"Allocation {allocation_id} has no holding account")
    if source.shares_remaining == 0:
        raise SkipUnit("holding account already fully released")

    member = allocation.member
    if member is None or member.user_id is None:
        raise NotFoundError(f"Club member for allocation {allocation_id} has no linked user account")

    remaining = source.shares_remaining
    shares = remaining if shares_for is None else shares_for(remaining)
    if tranche is not None and escrow is not None:
        shares = min(shares, escrow.shares_remaining)
    if shares <= 0:
        raise SkipUnit("nothing to release")

    tradable = _credit_tradable_holding(member.user_id, shares, allocation.id)
    percentage = 100.0 if shares_for is None else shares / source.shares_quantity * 100
    source.release(shares)
    if tranche is not None and escrow is not None:
        escrow.release(shares)

    db.session.add(ClubShareReleaseLog(
        club_allocation_id=allocation.id,
        club_holding_account_id=source.id,
        shares_released=shares,
        release_percentage=percentage,
        release_trigger=ReleaseTrigger.MANUAL_ADMIN,
        release_reason=reason,
        market_ratio_data={
            'holding_quantity': source.shares_quantity,
            'remaining_before': remaining,
            'settled_tranche': tranche is not None,
            'released_at': utcnow().isoformat(),
        },
        user_share_holding_id=tradable.id,
        released_by=actor_id,
    ))

    if tranche is not None and tranche.shares_remaining == 0:
        allocation.queued_tranche_id = None

    db.session.flush()
    if allocation.shares_delivered() >= allocation.allocated_shares:
        allocation.transition_to(AllocationStatus.RELEASED_FULLY)
    else:
        allocation.transition_to(AllocationStatus.RELEASED_PARTIALLY)

    db.session.flush()
    return shares


def _credit_tradable_holding(user_id, quantity, allocation_id):
    """Released club shares enter the trading ledger at zero cost basis"""
    holding = UserShareHolding(
        user_id=user_id,
        quantity=quantity,
        purchase_price_per_share=0.0,
        currency=current_app.config.get('SHARE_CURRENCY', 'UGX'),
        source_allocation_id=allocation_id,
    )
    db.session.add(holding)
    db.session.flush()
    return holding
