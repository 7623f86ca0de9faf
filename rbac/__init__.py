from rbac.audit import AuditAction, AuditLogger, EntityType, RequestContext
from rbac.cache_manager import CacheEntry, InMemoryPermissionCache, PermissionCache
from rbac.config import RBACConfig
from rbac.core import RBACCore
from rbac.database import DatabaseManager
from rbac.errors import (AuditWriteFailure, Conflict, NotFound, PermissionDenied,
                         RBACError, ValidationError,)
from rbac.guard import AssignmentGuard, ChangeCheck
from rbac.permissions import ALL_PERMISSIONS, DEFAULT_ROLES, Permission
from rbac.resolver import PermissionResolver, UserWithRoles
from rbac.service import RoleService

__all__ = ['ALL_PERMISSIONS', 'AssignmentGuard', 'AuditAction', 'AuditLogger',
           'AuditWriteFailure', 'CacheEntry', 'ChangeCheck', 'Conflict',
           'DEFAULT_ROLES', 'DatabaseManager', 'EntityType',
           'InMemoryPermissionCache', 'NotFound', 'Permission',
           'PermissionCache', 'PermissionDenied', 'PermissionResolver',
           'RBACConfig', 'RBACCore', 'RBACError', 'RequestContext',
           'RoleService', 'UserWithRoles', 'ValidationError']
