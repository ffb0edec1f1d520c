"""
BATCH ROLLBACK MANAGER
======================

Reverses a whole import batch. The deletion order is a data structure
(build_deletion_plan), not incidental code order:

    1. release logs      soft  (failure logged, rollback continues)
    2. holding accounts  hard  (failure aborts the rollback)
    3. allocations       hard
    4. orphaned members  (only members with zero allocations left anywhere)
"""

import logging
from dataclasses import dataclass, field
from typing import Any, List

from sqlalchemy import func

from clubshares.errors import IntegrityError, NotFoundError, ValidationError
from clubshares.extensions import db
from clubshares.models import (
    ClubMember, ClubShareAllocation, ClubShareHoldingAccount, ClubShareReleaseLog
)
from clubshares.services.authorization_service import require_admin

logger = logging.getLogger(__name__)


def list_batches():
    """One summary row per import batch reference, newest first"""
    rows = db.session.query(
        ClubShareAllocation.import_batch_reference,
        func.count(ClubShareAllocation.id),
        func.sum(ClubShareAllocation.allocated_shares),
        func.min(ClubShareAllocation.created_at),
    ).filter(
        ClubShareAllocation.import_batch_reference.isnot(None)
    ).group_by(ClubShareAllocation.import_batch_reference).all()

    batches = [{
        'batch_reference': reference,
        'allocation_count': count,
        'total_shares': int(shares or 0),
        'created_at': created_at.isoformat() if created_at else None,
    } for reference, count, shares, created_at in rows]
    batches.sort(key=lambda b: b['created_at'] or '', reverse=True)
    return batches


# ============================================================
# DELETION PLAN
# ============================================================

@dataclass
class DeletionStep:
    name: str
    model: Any
    criterion: Any
    soft: bool = False

    def execute(self):
        return db.session.query(self.model).filter(self.criterion).delete(synchronize_session=False)


def build_deletion_plan(allocation_ids):
    """Ordered steps that remove everything hanging off `allocation_ids`"""
    return [
        DeletionStep('release_logs', ClubShareReleaseLog,
                     ClubShareReleaseLog.club_allocation_id.in_(allocation_ids), soft=True),
        DeletionStep('holding_accounts', ClubShareHoldingAccount,
                     ClubShareHoldingAccount.club_allocation_id.in_(allocation_ids)),
        DeletionStep('allocations', ClubShareAllocation,
                     ClubShareAllocation.id.in_(allocation_ids)),
    ]


@dataclass
class RollbackResult:
    batch_reference: str
    deleted: dict = field(default_factory=dict)
    deleted_members: List[int] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    def to_dict(self):
        return {
            'batch_reference': self.batch_reference,
            'deleted': self.deleted,
            'deleted_members': self.deleted_members,
            'warnings': self.warnings,
        }


# ============================================================
# DELETE BATCH
# ============================================================

def delete_batch(batch_reference, actor_id):
    """
    Remove every row created by one import batch.

    Raises:
        NotFoundError: no allocation carries this reference
        IntegrityError: a holding/allocation step failed; nothing structural
            was removed
    """
    require_admin(actor_id)

    reference = (batch_reference or '').strip()
    if not reference:
        raise ValidationError("Batch reference is required")

    rows = db.session.query(ClubShareAllocation.id, ClubShareAllocation.club_member_id).filter(
        ClubShareAllocation.import_batch_reference == reference
    ).all()
    if not rows:
        raise NotFoundError(f"No allocations found for batch {reference}")

    allocation_ids = [allocation_id for allocation_id, _ in rows]
    member_ids = sorted({member_id for _, member_id in rows})
    result = RollbackResult(batch_reference=reference)

    for step in build_deletion_plan(allocation_ids):
        if step.soft:
            _run_soft_step(step, result)
        else:
            result.deleted[step.name] = _run_hard_step(step, reference)

    db.session.commit()

    result.deleted_members = _delete_orphaned_members(member_ids, result)
    logger.info("Batch %s rolled back by %s: %s", reference, actor_id, result.deleted)
    return result


def _run_soft_step(step, result):
    # Committed on its own so a later hard failure cannot resurrect it
    try:
        result.deleted[step.name] = step.execute()
        db.session.commit()
    except Exception as e:
        db.session.rollback()
        result.deleted[step.name] = 0
        message = f"Could not delete {step.name}: {e}"
        result.warnings.append(message)
        logger.warning("Rollback %s: %s", result.batch_reference, message)


def _run_hard_step(step, reference):
    try:
        return step.execute()
    except Exception as e:
        db.session.rollback()
        logger.error("Rollback %s aborted at %s: %s", reference, step.name, e)
        raise IntegrityError(f"Rollback of {reference} failed deleting {step.name}: {e}") from e


def _delete_orphaned_members(member_ids, result):
    """Delete members left with zero allocations anywhere in the system"""
    try:
        still_used = {member_id for (member_id,) in db.session.query(
            ClubShareAllocation.club_member_id
        ).filter(ClubShareAllocation.club_member_id.in_(member_ids)).distinct()}

        orphans = [member_id for member_id in member_ids if member_id not in still_used]
        if orphans:
            ClubMember.query.filter(ClubMember.id.in_(orphans)).delete(synchronize_session=False)
        db.session.commit()
        return orphans

    except Exception as e:
        db.session.rollback()
        message = f"Could not delete orphaned members: {e}"
        result.warnings.append(message)
        logger.warning("Rollback %s: %s", result.batch_reference, message)
        return []
