"""
CONSENT COORDINATOR
===================

CRITICAL ORDERING:
The consent invitation is sent FIRST and the allocation only moves to
'pending_consent' after the dispatcher confirms delivery. A failed send
leaves the allocation exactly as it was.
"""

import logging
from datetime import timedelta

from flask import current_app
from sqlalchemy.exc import InvalidRequestError

from clubshares.errors import (
    ClubShareError, ConsentExpiredError, DependencyFailure, InvalidTransitionError,
    NotFoundError, SharesAlreadyReleasedError, ValidationError
)
from clubshares.extensions import db
from clubshares.models import AllocationStatus, ClubShareAllocation, utcnow
from clubshares.services.authorization_service import require_admin
from clubshares.services.ledger_service import get_allocation
from clubshares.services.notification_service import CONSENT_INVITATION, get_notifier
from clubshares.services.unit_of_work import run_batch

logger = logging.getLogger(__name__)


def consent_window():
    return timedelta(days=current_app.config.get('CONSENT_WINDOW_DAYS', 30))


def _invitation_payload(allocation, member):
    base_url = current_app.config.get('APP_BASE_URL', '').rstrip('/')
    return {
        'club_allocation_id': allocation.id,
        'member_name': member.member_name,
        'allocated_shares': allocation.allocated_shares,
        'debt_amount_settled': allocation.debt_amount_settled,
        'transfer_fee_paid': allocation.transfer_fee_paid,
        'cost_per_share': allocation.cost_per_share or 0,
        'total_cost': allocation.total_cost or 0,
        'consent_url': f"{base_url}/formal-consent/{allocation.id}",
    }


# ============================================================
# SEND INVITATION
# ============================================================

def send_invitation(allocation_id, actor_id, notifier=None):
    """
    Send the consent invitation for one allocation.

    On confirmed delivery: status -> pending_consent, deadline = now + window.

    Returns: ClubShareAllocation
    """
    notifier = notifier or get_notifier()

    try:
        require_admin(actor_id)

        allocation = get_allocation(allocation_id)
        member = allocation.member
        if member is None:
            raise NotFoundError(f"Club member for allocation {allocation_id} not found")
        if not member.email:
            raise NotFoundError(f"Club member {member.id} has no email address")

        if not allocation.allocation_status.can_transition_to(AllocationStatus.PENDING_CONSENT):
            raise InvalidTransitionError(
                f"Allocation {allocation_id} is {allocation.allocation_status.value}, "
                f"cannot send consent invitation"
            )

        try:
            sent = notifier.send(member.email, 'email', CONSENT_INVITATION,
                                 _invitation_payload(allocation, member))
        except Exception as e:
            raise DependencyFailure(f"Consent invitation to {member.email} failed: {e}") from e

        if not sent.success:
            raise DependencyFailure(
                f"Consent invitation to {member.email} failed: {sent.error or 'unknown error'}"
            )

        # Re-read: the allocation may have moved while the dispatcher ran
        try:
            db.session.refresh(allocation)
        except InvalidRequestError:
            raise NotFoundError(f"Allocation {allocation_id} was removed during dispatch")
        allocation.transition_to(AllocationStatus.PENDING_CONSENT)
        allocation.consent_deadline = utcnow() + consent_window()

        db.session.commit()
        logger.info("Consent invitation sent for allocation %s by %s", allocation_id, actor_id)
        return allocation

    except ClubShareError:
        db.session.rollback()
        raise
    except Exception as e:
        db.session.rollback()
        raise DependencyFailure(f"Failed to send invitation: {str(e)}") from e


def send_bulk_invitations(allocation_ids, actor_id, notifier=None):
    """
    Send invitations one by one, continuing past failures.

    Returns: BatchResult
    """
    require_admin(actor_id)
    notifier = notifier or get_notifier()

    return run_batch(
        'send_bulk_invitations', allocation_ids,
        lambda allocation_id: send_invitation(allocation_id, actor_id, notifier)
    )


# ============================================================
# RESET (admin override)
# ============================================================

def reset_allocation(allocation_id, actor_id):
    """
    Back to pending_invitation from any non-terminal status.

    Clears deadline, signature, rejection reason and any queued bulk
    tranche (the tranche holding stays on record, unsettled).

    Raises:
        InvalidTransitionError: allocation is released_fully
        SharesAlreadyReleasedError: shares already reached a tradable holding
    """
    try:
        require_admin(actor_id)

        allocation = get_allocation(allocation_id)
        if not allocation.allocation_status.is_resettable:
            raise InvalidTransitionError(
                f"Allocation {allocation_id} is {allocation.allocation_status.value} and cannot be reset"
            )

        delivered = allocation.shares_delivered()
        if delivered:
            raise SharesAlreadyReleasedError(
                f"Allocation {allocation_id} already released {delivered} shares to a tradable holding"
            )

        allocation.transition_to(AllocationStatus.PENDING_INVITATION)
        allocation.consent_deadline = None
        allocation.consent_signed_at = None
        allocation.rejection_reason = None
        allocation.queued_tranche_id = None

        db.session.commit()
        logger.info("Allocation %s reset to pending_invitation by %s", allocation_id, actor_id)
        return allocation

    except ClubShareError:
        db.session.rollback()
        raise
    except Exception as e:
        db.session.rollback()
        raise ClubShareError(f"Failed to reset allocation: {str(e)}") from e


# ============================================================
# CONSENT RESPONSE
# ============================================================

def record_consent_response(allocation_id, accepted, actor_id, reason=None, now=None):
    """
    Record the member's answer to a consent invitation.

    Acceptance after the deadline is refused; rejections are always taken.
    """
    now = now or utcnow()

    try:
        require_admin(actor_id)

        allocation = get_allocation(allocation_id)
        if allocation.allocation_status != AllocationStatus.PENDING_CONSENT:
            raise InvalidTransitionError(
                f"Allocation {allocation_id} is {allocation.allocation_status.value}, not awaiting consent"
            )

        if accepted:
            if allocation.consent_deadline and now > allocation.consent_deadline:
                raise ConsentExpiredError(
                    f"Consent deadline for allocation {allocation_id} passed on "
                    f"{allocation.consent_deadline:%Y-%m-%d}"
                )
            allocation.transition_to(AllocationStatus.ACCEPTED)
            allocation.consent_signed_at = now
        else:
            reason = (reason or '').strip()
            if not reason:
                raise ValidationError("A rejection reason is required")
            allocation.transition_to(AllocationStatus.REJECTED)
            allocation.rejection_reason = reason

        db.session.commit()
        logger.info("Allocation %s consent %s (recorded by %s)",
                    allocation_id, 'accepted' if accepted else 'rejected', actor_id)
        return allocation

    except ClubShareError:
        db.session.rollback()
        raise
    except Exception as e:
        db.session.rollback()
        raise ClubShareError(f"Failed to record consent: {str(e)}") from e


def list_overdue_consents(now=None):
    """Allocations still awaiting consent past their deadline"""
    now = now or utcnow()
    return ClubShareAllocation.query.filter(
        ClubShareAllocation.allocation_status == AllocationStatus.PENDING_CONSENT,
        ClubShareAllocation.consent_deadline.isnot(None),
        ClubShareAllocation.consent_deadline < now
    ).order_by(ClubShareAllocation.consent_deadline).all()
