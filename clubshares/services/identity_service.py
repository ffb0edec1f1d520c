"""
IDENTITY / ACCOUNT PROVISIONING
===============================

Account side of the import flow:
- create_account(): pending (not activated) user for a club member
- generate_activation_token(): signed, time-limited token
- activate_account(): set password, activate, link matching club members
"""

import logging
import secrets

from flask import current_app
from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer
from sqlalchemy import or_

from clubshares.errors import NotFoundError, ValidationError
from clubshares.extensions import db
from clubshares.models import ClubMember, User, UserRole

logger = logging.getLogger(__name__)

_ACTIVATION_SALT = 'club-account-activation'


def normalize_email(email):
    return email.strip().lower() if email else None


class AccountProvisioner:
    """Identity collaborator backed by the local users table."""

    def __init__(self, secret_key, max_age=7 * 24 * 3600):
        self.serializer = URLSafeTimedSerializer(secret_key, salt=_ACTIVATION_SALT)
        self.max_age = max_age

    def find_account(self, email=None, phone=None):
        """Existing account matching email or phone, or None"""
        filters = []
        if email:
            filters.append(User.email == normalize_email(email))
        if phone:
            filters.append(User.phone == phone.strip())
        if not filters:
            return None
        return User.query.filter(or_(*filters)).order_by(User.id).first()

    def create_account(self, name, email, phone=None):
        """Create a pending account and return its id (caller commits)"""
        if not email:
            raise ValidationError("Email is required to create an account")

        user = User(
            name=name,
            email=normalize_email(email),
            phone=phone.strip() if phone else None,
            role=UserRole.USER,
            is_activated=False,
        )
        # Unusable until activation sets a real password
        user.set_password(secrets.token_urlsafe(32))
        db.session.add(user)
        db.session.flush()

        logger.info("Provisioned pending account %s for %s", user.id, user.email)
        return user.id

    def generate_activation_token(self, account_id):
        user = db.session.get(User, account_id)
        if not user:
            raise NotFoundError(f"Account {account_id} not found")

        token = self.serializer.dumps({'account_id': account_id})
        user.activation_token = token
        return token

    def activate_account(self, token, password):
        """
        Activate the account behind `token`.

        Club members with the same email and no linked account are linked
        here, which is what makes their shares releasable.

        Returns: User
        """
        try:
            try:
                payload = self.serializer.loads(token, max_age=self.max_age)
            except SignatureExpired:
                raise ValidationError("Activation link has expired")
            except BadSignature:
                raise ValidationError("Invalid activation token")

            if not password or len(password) < 6:
                raise ValidationError("Password must be at least 6 characters")

            user = db.session.get(User, payload.get('account_id'))
            if not user or user.activation_token != token:
                raise NotFoundError("Account for this activation token not found")

            user.set_password(password)
            user.is_activated = True
            user.activation_token = None

            linked = ClubMember.query.filter(
                ClubMember.user_id.is_(None),
                db.func.lower(ClubMember.email) == user.email
            ).all()
            for member in linked:
                member.user_id = user.id

            db.session.commit()
            logger.info("Activated account %s, linked %d club member(s)", user.id, len(linked))
            return user

        except (ValidationError, NotFoundError):
            db.session.rollback()
            raise


def get_identity():
    """Provisioner configured for the current app"""
    return AccountProvisioner(
        current_app.config['SECRET_KEY'],
        max_age=current_app.config.get('ACTIVATION_TOKEN_MAX_AGE', 7 * 24 * 3600),
    )
