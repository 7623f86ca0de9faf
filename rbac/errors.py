"""
Typed errors raised by the RBAC core.

The core never produces HTTP status codes. Callers map these:
  - NotFound          -> 404 (401 when the acting user itself is unknown)
  - PermissionDenied  -> 403
  - ValidationError   -> 400
  - Conflict          -> 409
AuditWriteFailure is only ever logged; it never leaves the audit writer.
"""

from typing import Optional


class RBACError(Exception):
    """Base class for RBAC core errors"""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NotFound(RBACError):
    """Referenced user, role or assignment does not exist"""

    def __init__(self, entity_type: str, entity_id: str):
        super().__init__(f"{entity_type.capitalize()} not found: {entity_id}")
        self.entity_type = entity_type
        self.entity_id = entity_id


class PermissionDenied(RBACError):
    """
    Actor lacks a required permission, or the authority to grant a role.

    Exactly one of ``permission`` or ``role_id`` is set, depending on
    which check failed.
    """

    def __init__(
        self,
        user_id: str,
        permission: Optional[str] = None,
        role_id: Optional[str] = None,
        role_name: Optional[str] = None,
        message: Optional[str] = None,
    ):
        if message is None:
            if role_id is not None:
                message = f"Cannot assign role: {role_name or role_id}. Insufficient permissions."
            else:
                message = f"Permission denied: {permission}"
        super().__init__(message)
        self.user_id = user_id
        self.permission = permission
        self.role_id = role_id
        self.role_name = role_name


class ValidationError(RBACError):
    """Malformed input, rejected before any datastore access"""


class Conflict(RBACError):
    """Request clashes with current state (duplicate code, role in use, protected role)"""


class AuditWriteFailure(RBACError):
    """Audit entry could not be persisted. Logged, never propagated."""
