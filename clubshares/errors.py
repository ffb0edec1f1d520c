"""
ERROR KINDS
===========

Shared by every service. Batch operations catch these at the per-item
boundary and report them in a BatchResult; single-target operations let
them propagate to the caller.
"""


class ClubShareError(Exception):
    """Base exception for club share operations"""
    pass


class ValidationError(ClubShareError):
    """Raised when input fields are missing or malformed"""
    pass


class InvalidTransitionError(ValidationError):
    """Raised when an allocation status change is not allowed"""
    pass


class ConsentExpiredError(ValidationError):
    """Raised when consent is recorded after the deadline"""
    pass


class SharesAlreadyReleasedError(InvalidTransitionError):
    """Raised when resetting an allocation whose shares reached a tradable holding"""
    pass


class NotFoundError(ClubShareError):
    """Raised when an allocation, member, or holding account is missing"""
    pass


class DependencyFailure(ClubShareError):
    """Raised when the notification or identity collaborator fails"""
    pass


class IntegrityError(ClubShareError):
    """Raised when a structural rollback step fails"""
    pass


class AuthorizationError(ClubShareError):
    """Raised when the caller is not allowed to perform an operation"""
    pass
