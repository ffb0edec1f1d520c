"""
CENTRALIZED AUTHORIZATION SERVICE
==================================

Every mutating club share operation takes the caller's identity
(actor_id) explicitly and checks it here. There is no ambient
"current admin" inside the services.

NEVER bypass these checks!
"""

from clubshares.errors import AuthorizationError
from clubshares.extensions import db
from clubshares.models import User, UserRole


def get_actor(actor_id):
    """Load the calling user, or None"""
    if actor_id is None:
        return None
    return db.session.get(User, actor_id)


def is_admin(actor_id):
    """Check if the caller holds the admin role"""
    actor = get_actor(actor_id)
    return actor is not None and actor.role == UserRole.ADMIN


# ============================================================
# CLUB SHARE AUTHORIZATION
# ============================================================

def can_manage_allocations(actor_id):
    """
    Check if caller can import, invite, reset, release, or roll back.

    Requirements:
    - Caller must exist
    - Caller must be an admin
    """
    actor = get_actor(actor_id)
    if actor is None:
        return False, "Unknown caller"

    if actor.role != UserRole.ADMIN:
        return False, "Admin access required"

    return True, None


# ============================================================
# HELPER: Raise exception if not authorized
# ============================================================

def require_authorization(check_func, *args, error_class=AuthorizationError):
    """
    Wrapper to raise exception if authorization fails.

    Usage:
        require_authorization(can_manage_allocations, actor_id)
    """
    allowed, reason = check_func(*args)
    if not allowed:
        raise error_class(reason)
    return True


def require_admin(actor_id):
    """Raise AuthorizationError unless the caller is an admin"""
    return require_authorization(can_manage_allocations, actor_id)
