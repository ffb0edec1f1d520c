"""
CLUB SHARE ADMIN ROUTES
=======================

JSON endpoints for the club share workflow:
- Import preview / commit
- Consent invitations, responses, resets
- Bulk, full and partial releases
- Batch listing and rollback

Every handler passes current_user.id to the service layer, which does the
admin check itself. Service errors are turned into JSON by the app-level
ClubShareError handler.
"""

from flask import Blueprint, jsonify, request
from flask_login import login_required, current_user

from clubshares.errors import ValidationError
from clubshares.services.authorization_service import require_admin
from clubshares.services import (
    batch_service, consent_service, import_service, ledger_service, release_service
)

club_admin_bp = Blueprint('club_admin', __name__, url_prefix='/admin/club')


def _json_body():
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data


def _id_list(data, key='allocation_ids'):
    ids = data.get(key)
    if not isinstance(ids, list) or not ids:
        raise ValidationError(f"'{key}' must be a non-empty list")
    try:
        return [int(i) for i in ids]
    except (TypeError, ValueError):
        raise ValidationError(f"'{key}' must contain integer ids")


# ============== LEDGER ==============
@club_admin_bp.route('/allocations')
@login_required
def list_allocations():
    require_admin(current_user.id)
    allocations = ledger_service.list_allocations(
        status=request.args.get('status'),
        batch_reference=request.args.get('batch'),
    )
    return jsonify([a.to_dict() for a in allocations])


@club_admin_bp.route('/allocations/<int:allocation_id>')
@login_required
def view_allocation(allocation_id):
    require_admin(current_user.id)
    allocation = ledger_service.get_allocation(allocation_id)
    data = allocation.to_dict()
    data['release_history'] = [
        log.to_dict() for log in ledger_service.get_release_history(allocation_id)
    ]
    return jsonify(data)


@club_admin_bp.route('/summary')
@login_required
def summary():
    require_admin(current_user.id)
    return jsonify(ledger_service.status_summary())


@club_admin_bp.route('/members/<int:member_id>', methods=['PATCH'])
@login_required
def edit_member(member_id):
    member = ledger_service.update_member(member_id, current_user.id, **_json_body())
    return jsonify({
        'id': member.id,
        'member_name': member.member_name,
        'email': member.email,
        'phone': member.phone,
    })


# ============== IMPORT ==============
@club_admin_bp.route('/import/preview', methods=['POST'])
@login_required
def import_preview():
    require_admin(current_user.id)
    data = _json_body()
    preview = import_service.validate_rows(data.get('rows') or [])
    return jsonify(preview.to_dict())


@club_admin_bp.route('/import', methods=['POST'])
@login_required
def import_commit():
    data = _json_body()
    result = import_service.import_allocations(
        data.get('rows') or [], data.get('batch_reference'), current_user.id
    )
    return jsonify(result.to_dict()), 201


# ============== CONSENT ==============
@club_admin_bp.route('/allocations/<int:allocation_id>/invite', methods=['POST'])
@login_required
def send_invitation(allocation_id):
    allocation = consent_service.send_invitation(allocation_id, current_user.id)
    return jsonify(allocation.to_dict())


@club_admin_bp.route('/invitations', methods=['POST'])
@login_required
def send_bulk_invitations():
    result = consent_service.send_bulk_invitations(_id_list(_json_body()), current_user.id)
    return jsonify(result.to_dict())


@club_admin_bp.route('/allocations/<int:allocation_id>/consent', methods=['POST'])
@login_required
def record_consent(allocation_id):
    data = _json_body()
    if not isinstance(data.get('accepted'), bool):
        raise ValidationError("'accepted' must be true or false")
    allocation = consent_service.record_consent_response(
        allocation_id, data['accepted'], current_user.id, reason=data.get('reason')
    )
    return jsonify(allocation.to_dict())


@club_admin_bp.route('/allocations/<int:allocation_id>/reset', methods=['POST'])
@login_required
def reset_allocation(allocation_id):
    allocation = consent_service.reset_allocation(allocation_id, current_user.id)
    return jsonify(allocation.to_dict())


@club_admin_bp.route('/consents/overdue')
@login_required
def overdue_consents():
    require_admin(current_user.id)
    return jsonify([a.to_dict() for a in consent_service.list_overdue_consents()])


# ============== RELEASE ==============
@club_admin_bp.route('/release/preview')
@login_required
def release_preview():
    require_admin(current_user.id)
    quantity = request.args.get('quantity', type=int)
    if quantity is None:
        raise ValidationError("'quantity' query parameter is required")
    return jsonify(release_service.preview_bulk_release(quantity).to_dict())


@club_admin_bp.route('/release/bulk', methods=['POST'])
@login_required
def bulk_release():
    data = _json_body()
    plan, result = release_service.bulk_release(
        data.get('quantity'), data.get('reason'), current_user.id
    )
    body = result.to_dict()
    body['plan'] = plan.to_dict()
    return jsonify(body)


@club_admin_bp.route('/release/full', methods=['POST'])
@login_required
def release_full():
    data = _json_body()
    result = release_service.release_full(
        _id_list(data), current_user.id, reason=data.get('reason') or 'Admin bulk release'
    )
    return jsonify(result.to_dict())


@club_admin_bp.route('/release/partial', methods=['POST'])
@login_required
def release_partial():
    data = _json_body()
    result = release_service.release_partial(
        _id_list(data), data.get('mode'), data.get('value'), current_user.id, data.get('reason')
    )
    return jsonify(result.to_dict())


# ============== BATCHES ==============
@club_admin_bp.route('/batches')
@login_required
def list_batches():
    require_admin(current_user.id)
    return jsonify(batch_service.list_batches())


@club_admin_bp.route('/batches/<path:batch_reference>', methods=['DELETE'])
@login_required
def delete_batch(batch_reference):
    result = batch_service.delete_batch(batch_reference, current_user.id)
    return jsonify(result.to_dict())
