"""
AUTHENTICATION ROUTES
=====================

JSON login/logout plus account activation for provisioned members.
"""

from flask import Blueprint, jsonify, request
from flask_login import login_user, logout_user, login_required, current_user

from clubshares.models import User
from clubshares.services.identity_service import get_identity, normalize_email

auth_bp = Blueprint('auth', __name__)


@auth_bp.route('/login', methods=['POST'])
def login():
    data = request.get_json(silent=True) or {}
    email = normalize_email(data.get('email'))
    password = data.get('password') or ''

    user = User.query.filter_by(email=email).first() if email else None

    if user and user.is_activated and user.check_password(password):
        login_user(user, remember=bool(data.get('remember', False)))
        return jsonify({'id': user.id, 'name': user.name, 'role': user.role.value})

    return jsonify({'error': 'Invalid email or password'}), 401


@auth_bp.route('/logout', methods=['POST'])
@login_required
def logout():
    logout_user()
    return jsonify({'status': 'logged_out'})


@auth_bp.route('/me')
@login_required
def me():
    return jsonify({
        'id': current_user.id,
        'name': current_user.name,
        'email': current_user.email,
        'role': current_user.role.value,
    })


@auth_bp.route('/activate-account', methods=['POST'])
def activate_account():
    data = request.get_json(silent=True) or {}
    # ValidationError / NotFoundError are mapped to JSON by the app error handler
    user = get_identity().activate_account(data.get('token') or '', data.get('password'))
    return jsonify({
        'id': user.id,
        'email': user.email,
        'linked_members': user.club_members.count(),
    })
