"""
Permission resolution for admin users.

The effective permission set of a user is the union of the permissions of
every role assigned to them. A super-admin's effective set is the whole
catalog; this is the only place the super-admin flag is consulted.
"""

from dataclasses import dataclass, field
from typing import Callable, FrozenSet, Iterable, List, Optional

from loguru import logger
from sqlalchemy.orm import Session

from rbac.cache_manager import InMemoryPermissionCache, PermissionCache
from rbac.errors import NotFound, PermissionDenied, ValidationError
from rbac.models import Role, User
from rbac.permissions import ALL_PERMISSIONS, Permission, parse_permissions
from rbac.repository import UserRepository


@dataclass
class UserWithRoles:
    id: str
    email: str
    full_name: Optional[str]
    is_super_admin: bool
    roles: List[Role] = field(default_factory=list)
    permissions: FrozenSet[Permission] = frozenset()

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "email": self.email,
            "full_name": self.full_name,
            "is_super_admin": self.is_super_admin,
            "roles": [role.to_dict() for role in self.roles],
            "permissions": sorted(p.value for p in self.permissions),
        }


def effective_permissions(user: User) -> FrozenSet[Permission]:
    """Union over assigned roles; whole catalog for super-admins"""
    if user.is_super_admin:
        return ALL_PERMISSIONS
    permissions = set()
    for role in user.roles:
        permissions |= parse_permissions(role.permissions)
    return frozenset(permissions)


def as_permission(value) -> Permission:
    try:
        return Permission(value)
    except ValueError:
        raise ValidationError(f"Unknown permission: {value!r}")


class PermissionResolver:
    """
    Answers "does user U hold permission P", reading through the cache.

    Cache failures are logged and degrade to a datastore read; the cache is
    never required for a correct answer.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        cache: Optional[PermissionCache] = None,
        cache_ttl: Optional[int] = None,
    ):
        self.session_factory = session_factory
        self.cache = cache if cache is not None else InMemoryPermissionCache()
        self.cache_ttl = cache_ttl

    # ==================== LOOKUPS ====================

    def get_user_with_roles(self, user_id: str) -> UserWithRoles:
        """Load user and assigned roles straight from the datastore"""
        session = self.session_factory()
        try:
            user = UserRepository.get_with_roles(session, user_id)
            if user is None:
                raise NotFound("user", user_id)

            roles = sorted(user.roles, key=lambda r: r.code)
            return UserWithRoles(
                id=user.id,
                email=user.email,
                full_name=user.full_name,
                is_super_admin=bool(user.is_super_admin),
                roles=roles,
                permissions=effective_permissions(user),
            )
        finally:
            session.close()

    def _load_permissions(self, user_id: str) -> FrozenSet[Permission]:
        session = self.session_factory()
        try:
            user = UserRepository.get_with_roles(session, user_id)
            if user is None:
                raise NotFound("user", user_id)
            return effective_permissions(user)
        finally:
            session.close()

    def get_user_permissions(self, user_id: str) -> FrozenSet[Permission]:
        """Effective permission set, cached for the configured TTL"""
        try:
            cached = self.cache.get(user_id)
        except Exception as e:
            logger.warning(f"[CACHE] Read failed for user {user_id}, using datastore: {e}")
            cached = None

        if cached is not None:
            logger.debug(f"[CACHE] Hit for user {user_id}")
            return cached

        logger.debug(f"[CACHE] Miss for user {user_id}")
        refill = True
        try:
            generation = self.cache.generation(user_id)
        except Exception as e:
            logger.warning(f"[CACHE] Generation lookup failed for user {user_id}: {e}")
            # No token, so a refill could overwrite a concurrent invalidation
            generation = None
            refill = False

        permissions = self._load_permissions(user_id)

        if refill:
            try:
                self.cache.put(user_id, permissions, ttl=self.cache_ttl, generation=generation)
            except Exception as e:
                logger.warning(f"[CACHE] Write failed for user {user_id}: {e}")
        return permissions

    # ==================== CHECKS ====================

    def has_permission(self, user_id: str, permission) -> bool:
        return as_permission(permission) in self.get_user_permissions(user_id)

    def has_any_permission(self, user_id: str, permissions: Iterable) -> bool:
        required = [as_permission(p) for p in permissions]
        held = self.get_user_permissions(user_id)
        return any(p in held for p in required)

    def has_all_permissions(self, user_id: str, permissions: Iterable) -> bool:
        required = [as_permission(p) for p in permissions]
        held = self.get_user_permissions(user_id)
        return all(p in held for p in required)

    def require_permission(self, user_id: str, permission) -> None:
        """Raise PermissionDenied unless the user holds the permission"""
        permission = as_permission(permission)
        if not self.has_permission(user_id, permission):
            logger.warning(f"[RBAC] User {user_id} denied permission: {permission.value}")
            raise PermissionDenied(user_id, permission=permission.value)

    def require_any_permission(self, user_id: str, permissions: Iterable) -> None:
        required = [as_permission(p) for p in permissions]
        if not self.has_any_permission(user_id, required):
            codes = [p.value for p in required]
            logger.warning(f"[RBAC] User {user_id} denied, requires one of {codes}")
            raise PermissionDenied(
                user_id,
                permission=codes[0] if codes else None,
                message=f"Permission denied: requires one of [{', '.join(codes)}]",
            )

    def require_all_permissions(self, user_id: str, permissions: Iterable) -> None:
        required = [as_permission(p) for p in permissions]
        held = self.get_user_permissions(user_id)
        missing = [p.value for p in required if p not in held]
        if missing:
            logger.warning(f"[RBAC] User {user_id} denied, missing {missing}")
            raise PermissionDenied(
                user_id,
                permission=missing[0],
                message=f"Permission denied: requires all of [{', '.join(p.value for p in required)}]",
            )

    # ==================== INVALIDATION ====================

    def invalidate_user_permission_cache(self, user_id: str) -> None:
        """Next check for this user re-reads the datastore"""
        self.cache.invalidate(user_id)

    def invalidate_all_permission_caches(self) -> None:
        """Used after role-definition edits"""
        self.cache.invalidate_all()
