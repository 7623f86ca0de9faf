"""
Wiring for the RBAC core.

Builds one resolver/guard/audit/service set around a database manager and
a permission cache. Pass a different PermissionCache to swap the backend.
"""

from typing import Optional

from loguru import logger

from rbac.audit import AuditLogger
from rbac.cache_manager import InMemoryPermissionCache, PermissionCache
from rbac.config import RBACConfig
from rbac.database import DatabaseManager
from rbac.guard import AssignmentGuard
from rbac.resolver import PermissionResolver
from rbac.service import RoleService


class RBACCore:
    """Everything a request handler needs, built once per process"""

    def __init__(
        self,
        config: Optional[RBACConfig] = None,
        db: Optional[DatabaseManager] = None,
        cache: Optional[PermissionCache] = None,
    ):
        self.config = config or RBACConfig()
        self.db = db or DatabaseManager(self.config)
        if self.db.session_factory is None:
            self.db.initialize()

        session_factory = self.db.session_factory
        self.cache = cache if cache is not None else InMemoryPermissionCache(
            default_ttl=self.config.permission_cache_ttl
        )
        self.resolver = PermissionResolver(
            session_factory, cache=self.cache, cache_ttl=self.config.permission_cache_ttl
        )
        self.guard = AssignmentGuard(self.resolver, session_factory)
        self.audit = AuditLogger(session_factory)
        self.service = RoleService(session_factory, self.resolver, self.guard, self.audit, self.config)
        logger.info("[RBAC] Core initialized")

    # Library surface used by route handlers

    def require_permission(self, user_id: str, permission, request_context=None) -> None:
        self.service.require(request_context, user_id, permission)

    def get_user_with_roles(self, user_id: str):
        return self.resolver.get_user_with_roles(user_id)

    def can_assign_role(self, actor_user_id: str, role_id: str) -> bool:
        return self.guard.can_assign_role(actor_user_id, role_id)

    def invalidate_user_permission_cache(self, user_id: str) -> None:
        self.resolver.invalidate_user_permission_cache(user_id)

    def create_audit_log(self, request_context, **entry) -> bool:
        return self.audit.create_audit_log(request_context, **entry)
