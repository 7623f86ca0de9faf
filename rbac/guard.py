"""
Assignment authority checks.

An actor may only grant a role whose permissions are all part of the
actor's own effective permission set. The same rule applies when an actor
writes a role definition. Super-admins pass because the resolver gives
them the whole catalog; nothing here looks at the super-admin flag.
"""

from dataclasses import dataclass
from typing import Callable, Iterable, List, Sequence

from loguru import logger
from sqlalchemy.orm import Session

from rbac.errors import NotFound, PermissionDenied
from rbac.models import Role
from rbac.permissions import is_default_role, parse_permissions
from rbac.repository import RoleRepository
from rbac.resolver import PermissionResolver, as_permission


@dataclass(frozen=True)
class ChangeCheck:
    """Outcome of a role edit/delete check. escalation=True means the actor lacks authority."""

    allowed: bool
    reason: str = ""
    escalation: bool = False

    def __bool__(self) -> bool:
        return self.allowed


class AssignmentGuard:
    """Prevents privilege escalation through delegation"""

    def __init__(self, resolver: PermissionResolver, session_factory: Callable[[], Session]):
        self.resolver = resolver
        self.session_factory = session_factory

    def _is_grantable_by(self, actor_user_id: str, role: Role) -> bool:
        required = parse_permissions(role.permissions)
        if not required:
            return True
        return required <= self.resolver.get_user_permissions(actor_user_id)

    def can_assign_role(self, actor_user_id: str, role_id: str) -> bool:
        """
        True iff the role's permission set is a subset of the actor's.

        Raises NotFound for an unknown role (never PermissionDenied).
        """
        session = self.session_factory()
        try:
            role = RoleRepository.get_by_id(session, role_id)
        finally:
            session.close()

        if role is None:
            raise NotFound("role", role_id)
        return self._is_grantable_by(actor_user_id, role)

    def ensure_can_assign_roles(self, actor_user_id: str, role_ids: Sequence[str]) -> List[Role]:
        """
        Check every requested role before anything is written.

        Returns the roles in request order. Raises NotFound for the first
        missing role, PermissionDenied naming the first unassignable one.
        """
        session = self.session_factory()
        try:
            roles_by_id = RoleRepository.get_many(session, role_ids)
        finally:
            session.close()

        roles = []
        for role_id in role_ids:
            role = roles_by_id.get(role_id)
            if role is None:
                raise NotFound("role", role_id)
            roles.append(role)

        for role in roles:
            if not self._is_grantable_by(actor_user_id, role):
                logger.warning(
                    f"[GUARD] User {actor_user_id} cannot assign role {role.code} ({role.id})"
                )
                raise PermissionDenied(actor_user_id, role_id=role.id, role_name=role.name)
        return roles

    def can_grant_permissions(self, actor_user_id: str, permissions: Iterable) -> bool:
        """Subset rule for role create/update"""
        required = {as_permission(p) for p in permissions}
        return required <= self.resolver.get_user_permissions(actor_user_id)

    def can_modify_role(self, actor_user_id: str, role: Role) -> ChangeCheck:
        """Built-in roles are read-only; otherwise the actor must hold every permission"""
        if is_default_role(role.code):
            return ChangeCheck(False, "Default roles cannot be modified")
        if not self._is_grantable_by(actor_user_id, role):
            return ChangeCheck(False, f"Cannot modify role {role.name}: insufficient permissions", escalation=True)
        return ChangeCheck(True)

    def can_delete_role(self, actor_user_id: str, role_id: str) -> ChangeCheck:
        """Built-in roles and roles still assigned to users cannot be deleted"""
        session = self.session_factory()
        try:
            role = RoleRepository.get_by_id(session, role_id)
            if role is None:
                raise NotFound("role", role_id)
            assigned = RoleRepository.count_assignments(session, role_id)
        finally:
            session.close()

        if is_default_role(role.code):
            return ChangeCheck(False, "Default roles cannot be deleted")
        if not self._is_grantable_by(actor_user_id, role):
            return ChangeCheck(False, f"Cannot delete role {role.name}: insufficient permissions", escalation=True)
        if assigned:
            return ChangeCheck(False, f"Role is assigned to {assigned} user(s) and cannot be deleted")
        return ChangeCheck(True)
