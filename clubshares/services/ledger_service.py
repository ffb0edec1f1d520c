"""
ALLOCATION LEDGER
=================

Read side of the core entities plus the admin edits that do not belong
to a specific workflow step. Status changes go through
ClubShareAllocation.transition_to(), which enforces the transition table.
"""

import logging

from sqlalchemy import func

from clubshares.errors import ClubShareError, NotFoundError, ValidationError
from clubshares.extensions import db
from clubshares.models import (
    AllocationStatus, ClubMember, ClubShareAllocation, ClubShareReleaseLog
)
from clubshares.services.authorization_service import require_admin
from clubshares.services.identity_service import normalize_email

logger = logging.getLogger(__name__)

EDITABLE_MEMBER_FIELDS = ('member_name', 'email', 'phone')


def get_allocation(allocation_id):
    """Load an allocation or raise NotFoundError"""
    allocation = db.session.get(ClubShareAllocation, allocation_id)
    if not allocation:
        raise NotFoundError(f"Allocation {allocation_id} not found")
    return allocation


def get_member(member_id):
    member = db.session.get(ClubMember, member_id)
    if not member:
        raise NotFoundError(f"Club member {member_id} not found")
    return member


def list_allocations(status=None, batch_reference=None):
    """Allocations newest first, optionally filtered"""
    query = ClubShareAllocation.query
    if status is not None:
        try:
            status = AllocationStatus(status)
        except ValueError:
            raise ValidationError(f"Unknown allocation status: {status}")
        query = query.filter(ClubShareAllocation.allocation_status == status)
    if batch_reference is not None:
        query = query.filter(ClubShareAllocation.import_batch_reference == batch_reference)
    return query.order_by(ClubShareAllocation.created_at.desc(), ClubShareAllocation.id.desc()).all()


# ============================================================
# ADMIN EDIT
# ============================================================

def update_member(member_id, actor_id, **fields):
    """Admin edit of a club member's contact details."""
    try:
        require_admin(actor_id)

        unknown = set(fields) - set(EDITABLE_MEMBER_FIELDS)
        if unknown:
            raise ValidationError(f"Cannot edit member fields: {', '.join(sorted(unknown))}")

        member = get_member(member_id)

        if 'member_name' in fields:
            name = (fields['member_name'] or '').strip()
            if not name:
                raise ValidationError("Member name is required")
            member.member_name = name
        if 'email' in fields:
            member.email = normalize_email(fields['email'])
        if 'phone' in fields:
            member.phone = (fields['phone'] or '').strip() or None

        db.session.commit()
        logger.info("Member %s updated by %s: %s", member_id, actor_id, sorted(fields))
        return member

    except ClubShareError:
        db.session.rollback()
        raise
    except Exception as e:
        db.session.rollback()
        raise ClubShareError(f"Failed to update member: {str(e)}") from e


# ============================================================
# AUDIT / REPORTING
# ============================================================

def get_release_history(allocation_id):
    """Release log entries for one allocation, oldest first"""
    get_allocation(allocation_id)
    return ClubShareReleaseLog.query.filter_by(
        club_allocation_id=allocation_id
    ).order_by(ClubShareReleaseLog.created_at, ClubShareReleaseLog.id).all()


def status_summary():
    """Allocation counts and shares per status"""
    rows = db.session.query(
        ClubShareAllocation.allocation_status,
        func.count(ClubShareAllocation.id),
        func.coalesce(func.sum(ClubShareAllocation.allocated_shares), 0)
    ).group_by(ClubShareAllocation.allocation_status).all()

    by_status = {status.value: {'count': 0, 'shares': 0} for status in AllocationStatus}
    for status, count, shares in rows:
        by_status[status.value] = {'count': count, 'shares': int(shares)}

    return {
        'total_allocations': sum(v['count'] for v in by_status.values()),
        'total_shares': sum(v['shares'] for v in by_status.values()),
        'by_status': by_status,
    }
