"""
BATCH IMPORTER
==============

Turns a list of raw member/allocation records into Members, Allocations
and HoldingAccounts tagged with one batch reference.

RULES:
1. Every row is validated; errors accumulate per row, never abort the batch
2. Invalid rows are reported back but never committed
3. Each valid row commits on its own (row-level atomicity only)
4. Members are matched by email, then phone, then name before creating
5. Missing accounts are provisioned once per email; failures are logged
"""

import logging
import re
import uuid
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import List

from flask import current_app

from clubshares.errors import ValidationError
from clubshares.extensions import db
from clubshares.models import (
    AllocationStatus, ClubMember, ClubShareAllocation, ClubShareHoldingAccount,
    HoldingStatus, utcnow
)
from clubshares.services.authorization_service import require_admin
from clubshares.services.identity_service import get_identity, normalize_email
from clubshares.services.notification_service import ACCOUNT_ACTIVATION, get_notifier
from clubshares.services.unit_of_work import FAILED, BatchResult, UnitResult, run_unit

logger = logging.getLogger(__name__)

MONEY_FIELDS = ('transfer_fee_paid', 'debt_amount_settled', 'debt_rejected', 'total_cost', 'cost_per_share')
TEXT_FIELDS = ('member_name', 'email', 'phone')

ROW_VALID = 'valid'
ROW_WARNING = 'warning'
ROW_INVALID = 'invalid'

_EMAIL_RE = re.compile(r'^\S+@\S+\.\S+$')
_SEPARATORS_RE = re.compile(r'[,\s_]')


# ============================================================
# PARSING
# ============================================================

def parse_number(value, integer=False):
    """
    Parse a numeric cell, tolerating thousands separators.

    '1,250' -> 1250, ' 3 000.50 ' -> 3000.5, '' / None -> 0.
    Raises ValueError for anything else (including fractional integers).
    """
    if value is None:
        return 0
    if isinstance(value, bool):
        raise ValueError(f"{value!r} is not a number")
    if isinstance(value, (int, float, Decimal)):
        number = Decimal(str(value))
    else:
        cleaned = _SEPARATORS_RE.sub('', str(value))
        if cleaned == '':
            return 0
        try:
            number = Decimal(cleaned)
        except InvalidOperation:
            raise ValueError(f"{value!r} is not a number")

    if not number.is_finite():
        raise ValueError(f"{value!r} is not a number")

    if integer:
        if number != number.to_integral_value():
            raise ValueError(f"{value!r} is not a whole number")
        return int(number)
    return float(number)


def _label(field_name):
    return field_name.replace('_', ' ').capitalize()


# ============================================================
# VALIDATION / PREVIEW
# ============================================================

@dataclass
class ImportRow:
    row_number: int
    data: dict
    errors: List[str] = field(default_factory=list)
    has_account: bool = False
    warnings: List[str] = field(default_factory=list)

    @property
    def status(self):
        if self.errors:
            return ROW_INVALID
        if self.warnings:
            return ROW_WARNING
        return ROW_VALID

    @property
    def is_valid(self):
        return not self.errors

    def raise_for_errors(self):
        if self.errors:
            raise ValidationError(f"Row {self.row_number}: " + '; '.join(self.errors))

    def to_dict(self):
        return {
            'row': self.row_number,
            'status': self.status,
            'has_account': self.has_account,
            'errors': self.errors,
            'warnings': self.warnings,
            'data': self.data,
        }


@dataclass
class ImportPreview:
    rows: List[ImportRow]

    @property
    def valid_rows(self):
        return [row for row in self.rows if row.is_valid]

    @property
    def invalid_rows(self):
        return [row for row in self.rows if not row.is_valid]

    def to_dict(self):
        return {
            'total': len(self.rows),
            'valid': len(self.valid_rows),
            'invalid': len(self.invalid_rows),
            'rows': [row.to_dict() for row in self.rows],
        }


def validate_row(raw, row_number, identity=None):
    """Coerce and validate one raw record into an ImportRow."""
    record = {str(k).strip().lower(): v for k, v in (raw or {}).items()}
    data = {}
    errors = []

    for name in TEXT_FIELDS:
        text = record.get(name)
        data[name] = str(text).strip() if text is not None and str(text).strip() else None
    data['email'] = normalize_email(data['email'])

    try:
        data['allocated_shares'] = parse_number(record.get('allocated_shares'), integer=True)
    except ValueError as e:
        data['allocated_shares'] = None
        errors.append(f"Allocated shares: {e}")

    for name in MONEY_FIELDS:
        try:
            data[name] = parse_number(record.get(name))
        except ValueError as e:
            data[name] = None
            errors.append(f"{_label(name)}: {e}")

    if not data['member_name']:
        errors.append("Member name is required")
    if data['allocated_shares'] is not None and data['allocated_shares'] <= 0:
        errors.append("Allocated shares must be greater than 0")
    if data['email'] and not _EMAIL_RE.match(data['email']):
        errors.append("Email address is not valid")
    for name in MONEY_FIELDS:
        if data[name] is not None and data[name] < 0:
            errors.append(f"{_label(name)} cannot be negative")

    row = ImportRow(row_number=row_number, data=data, errors=errors)

    if row.is_valid and identity is not None:
        row.has_account = identity.find_account(data['email'], data['phone']) is not None
        if not row.has_account:
            if data['email']:
                row.warnings.append("User account will be created")
            else:
                row.warnings.append("No email: account cannot be provisioned")

    return row


def validate_rows(rows, identity=None):
    """Validate every row (1-based numbering) without writing anything."""
    identity = identity or get_identity()
    return ImportPreview(rows=[
        validate_row(raw, index, identity) for index, raw in enumerate(rows, start=1)
    ])


# ============================================================
# COMMIT
# ============================================================

@dataclass
class ImportResult:
    batch_reference: str
    preview: ImportPreview
    batch: BatchResult
    accounts_provisioned: int = 0

    @property
    def succeeded(self):
        return self.batch.succeeded

    @property
    def failed(self):
        return self.batch.failed

    def summary(self):
        return self.batch.summary()

    def to_dict(self):
        data = self.batch.to_dict()
        data.update({
            'batch_reference': self.batch_reference,
            'accounts_provisioned': self.accounts_provisioned,
            'rows': [row.to_dict() for row in self.preview.rows],
        })
        return data


def make_batch_reference(batch_label, now=None):
    """CLUB-<timestamp>-<label>, unique across repeated imports of one label"""
    label = (batch_label or '').strip()
    if not label:
        raise ValidationError("Batch reference label is required")
    now = now or utcnow()
    return f"CLUB-{now.strftime('%Y%m%d%H%M%S%f')}-{label}"


def import_allocations(rows, batch_label, actor_id, notifier=None, identity=None):
    """
    Validate and commit a batch of allocation records.

    Returns: ImportResult (counts, generated batch reference, per-row detail)
    """
    require_admin(actor_id)
    batch_reference = make_batch_reference(batch_label)
    notifier = notifier or get_notifier()
    identity = identity or get_identity()

    preview = validate_rows(rows, identity)
    result = ImportResult(
        batch_reference=batch_reference,
        preview=preview,
        batch=BatchResult(operation='import_allocations'),
    )
    provisioned_emails = set()

    for row in preview.rows:
        if not row.is_valid:
            logger.warning("Import %s row %d rejected: %s", batch_reference, row.row_number, row.errors)
            result.batch.record(UnitResult(key=row.row_number, outcome=FAILED, error='; '.join(row.errors)))
            continue

        email = row.data['email']
        if not row.has_account and email and email not in provisioned_emails:
            provisioned_emails.add(email)
            if _provision_account(row, identity, notifier):
                result.accounts_provisioned += 1

        result.batch.record(run_unit(
            'import_allocations', row.row_number,
            _commit_row, row, batch_reference, actor_id, identity
        ))

    logger.info("Import %s by %s: %s", batch_reference, actor_id, result.summary())
    return result


def _commit_row(row, batch_reference, actor_id, identity):
    data = row.data
    member = _find_or_create_member(data)
    _link_account(member, identity)

    allocation = ClubShareAllocation(
        club_member_id=member.id,
        allocated_shares=data['allocated_shares'],
        transfer_fee_paid=data['transfer_fee_paid'],
        debt_amount_settled=data['debt_amount_settled'],
        debt_rejected=data['debt_rejected'],
        total_cost=data['total_cost'],
        cost_per_share=data['cost_per_share'],
        allocation_status=AllocationStatus.PENDING_INVITATION,
        import_batch_reference=batch_reference,
        created_by=actor_id,
    )
    db.session.add(allocation)
    db.session.flush()

    holding = ClubShareHoldingAccount(
        club_allocation_id=allocation.id,
        club_member_id=member.id,
        shares_quantity=allocation.allocated_shares,
        shares_released=0,
        status=HoldingStatus.HOLDING,
    )
    db.session.add(holding)
    db.session.flush()

    return allocation.id


def _find_or_create_member(data):
    """Match an existing member by email, phone, then name; else create."""
    member = None
    if data['email']:
        member = ClubMember.query.filter(
            db.func.lower(ClubMember.email) == data['email']
        ).order_by(ClubMember.id).first()
    if member is None and data['phone']:
        member = ClubMember.query.filter_by(phone=data['phone']).order_by(ClubMember.id).first()
    if member is None:
        member = ClubMember.query.filter(
            db.func.lower(ClubMember.member_name) == data['member_name'].lower()
        ).order_by(ClubMember.id).first()

    if member is not None:
        return member

    member = ClubMember(
        member_name=data['member_name'],
        email=data['email'],
        phone=data['phone'],
        member_code=f"CM-{uuid.uuid4().hex[:12].upper()}",
    )
    db.session.add(member)
    db.session.flush()
    return member


def _link_account(member, identity):
    if member.user_id is not None:
        return
    account = identity.find_account(member.email, member.phone)
    if account is not None and account.is_activated:
        member.user_id = account.id


def _provision_account(row, identity, notifier):
    """
    Create a pending account and send the activation message.

    Side effect only: any failure is logged and the row still imports.
    """
    data = row.data
    try:
        account_id = identity.create_account(data['member_name'], data['email'], data['phone'])
        token = identity.generate_activation_token(account_id)
        db.session.commit()
    except Exception as e:
        db.session.rollback()
        logger.warning("Row %d: account provisioning for %s failed: %s", row.row_number, data['email'], e)
        return False

    base_url = current_app.config.get('APP_BASE_URL', '').rstrip('/')
    try:
        sent = notifier.send(data['email'], 'email', ACCOUNT_ACTIVATION, {
            'name': data['member_name'],
            'phone': data['phone'],
            'invitation_token': token,
            'activation_url': f"{base_url}/activate-account?token={token}",
        })
        if not sent.success:
            logger.warning("Row %d: activation notification to %s failed: %s",
                           row.row_number, data['email'], sent.error)
    except Exception as e:
        logger.warning("Row %d: activation notification to %s failed: %s", row.row_number, data['email'], e)

    return True
