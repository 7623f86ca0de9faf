"""
Role management operations.

Every mutation follows the same order:
  1. validate input (no datastore access)
  2. check the actor's permission (resolver) and authority (guard)
  3. write and commit
  4. invalidate the permission cache
  5. append an audit entry (best effort)
Nothing is written if any check in steps 1-2 fails.
"""

import re
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence

from loguru import logger
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from rbac.audit import AuditAction, AuditLogger, EntityType, RequestContext
from rbac.config import RBACConfig
from rbac.errors import Conflict, NotFound, PermissionDenied, ValidationError
from rbac.guard import AssignmentGuard
from rbac.permissions import Permission, validate_permissions
from rbac.repository import AssignmentRepository, AuditLogRepository, RoleRepository, UserRepository
from rbac.resolver import PermissionResolver, UserWithRoles

ROLE_CODE_PATTERN = re.compile(r"^[a-z0-9_]+$")

DEFAULT_AUDIT_PAGE_SIZE = 50
MAX_AUDIT_PAGE_SIZE = 100
DEFAULT_STATS_DAYS = 30


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Naive timestamps are taken as UTC"""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _role_ref(role) -> Dict[str, str]:
    return {"id": role.id, "code": role.code, "name": role.name}


def validate_role_ids(role_ids) -> List[str]:
    """roleIds must be an array of non-empty strings; duplicates collapse"""
    if not isinstance(role_ids, (list, tuple)):
        raise ValidationError("roleIds must be an array")
    result = []
    for role_id in role_ids:
        if not isinstance(role_id, str) or not role_id.strip():
            raise ValidationError("roleIds must contain non-empty strings")
        if role_id not in result:
            result.append(role_id)
    return result


class RoleService:
    """Role and assignment management on top of resolver, guard and audit log"""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        resolver: PermissionResolver,
        guard: AssignmentGuard,
        audit: AuditLogger,
        config: Optional[RBACConfig] = None,
    ):
        self.session_factory = session_factory
        self.resolver = resolver
        self.guard = guard
        self.audit = audit
        self.config = config or RBACConfig()

    # ==================== HELPERS ====================

    def require(self, ctx: Optional[RequestContext], actor_id: str, permission: Permission):
        """Permission check that records the denial when denied-attempt auditing is on"""
        try:
            self.resolver.require_permission(actor_id, permission)
        except PermissionDenied as denied:
            self._audit_denied(ctx, actor_id, denied)
            raise

    def _audit_denied(self, ctx: Optional[RequestContext], actor_id: str, denied: PermissionDenied):
        if not self.config.audit_denied_attempts:
            return
        self.audit.create_audit_log(
            ctx,
            user_id=actor_id,
            action=AuditAction.PERMISSION_DENIED,
            entity_type=EntityType.ROLE if denied.role_id else None,
            entity_id=denied.role_id,
            metadata={"permission": denied.permission, "reason": denied.message},
        )

    def _commit(self, session: Session, what: str):
        try:
            session.commit()
        except IntegrityError as e:
            session.rollback()
            logger.warning(f"[ROLE] Integrity error during {what}: {e}")
            raise Conflict(f"Conflicting change during {what}")
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"[ROLE] Error during {what}: {type(e).__name__}: {e}")
            raise

    # ==================== ASSIGNMENTS ====================

    def get_user_with_roles(self, actor_id: str, user_id: str) -> UserWithRoles:
        self.require(None, actor_id, Permission.VIEW_USERS)
        return self.resolver.get_user_with_roles(user_id)

    def assign_roles(
        self,
        ctx: Optional[RequestContext],
        actor_id: str,
        user_id: str,
        role_ids: Sequence[str],
    ) -> Dict[str, Any]:
        """
        Replace all of a user's roles with ``role_ids`` (all-or-nothing).

        Every role is checked against the actor's authority before any
        row is touched; the delete and insert then commit together.
        """
        role_ids = validate_role_ids(role_ids)
        self.require(ctx, actor_id, Permission.MANAGE_ROLES)

        session = self.session_factory()
        try:
            target = UserRepository.get_by_id(session, user_id)
            if target is None:
                raise NotFound("user", user_id)
            target_email = target.email
        finally:
            session.close()

        try:
            roles = self.guard.ensure_can_assign_roles(actor_id, role_ids)
        except PermissionDenied as denied:
            self._audit_denied(ctx, actor_id, denied)
            raise

        session = self.session_factory()
        try:
            previous = [_role_ref(a.role) for a in AssignmentRepository.list_for_user(session, user_id)]
            assignments = AssignmentRepository.replace_for_user(session, user_id, role_ids, actor_id)
            self._commit(session, "role assignment")
            assignment_dicts = [a.to_dict() for a in assignments]
        finally:
            session.close()

        self.resolver.invalidate_user_permission_cache(user_id)
        logger.info(f"[ROLE] {actor_id} set roles of {user_id} to {[r.code for r in roles]}")

        self.audit.create_audit_log(
            ctx,
            user_id=actor_id,
            action=AuditAction.ROLE_ASSIGN,
            entity_type=EntityType.USER,
            entity_id=user_id,
            metadata={
                "assignedRoles": [_role_ref(r) for r in roles],
                "previousRoles": previous,
                "targetUser": target_email,
            },
        )
        return {"assignments": assignment_dicts, "roles": [r.to_dict() for r in roles]}

    def unassign_role(
        self,
        ctx: Optional[RequestContext],
        actor_id: str,
        user_id: str,
        role_id: str,
    ) -> Dict[str, Any]:
        self.require(ctx, actor_id, Permission.MANAGE_ROLES)

        session = self.session_factory()
        try:
            target = UserRepository.get_by_id(session, user_id)
            if target is None:
                raise NotFound("user", user_id)
            role = RoleRepository.get_by_id(session, role_id)
            if role is None:
                raise NotFound("role", role_id)
            assignment = AssignmentRepository.get(session, user_id, role_id)
            if assignment is None:
                raise NotFound("role assignment", f"{user_id}/{role_id}")

            removed = _role_ref(role)
            target_email = target.email
            AssignmentRepository.delete(session, assignment)
            self._commit(session, "role unassignment")
        finally:
            session.close()

        self.resolver.invalidate_user_permission_cache(user_id)
        logger.info(f"[ROLE] {actor_id} removed role {removed['code']} from {user_id}")

        self.audit.create_audit_log(
            ctx,
            user_id=actor_id,
            action=AuditAction.ROLE_UNASSIGN,
            entity_type=EntityType.USER,
            entity_id=user_id,
            metadata={"removedRole": removed, "targetUser": target_email},
        )
        return {"removedRoleId": role_id}

    # ==================== ROLE DEFINITIONS ====================

    def list_roles(self, actor_id: str, include_user_counts: bool = False) -> List[Dict[str, Any]]:
        self.require(None, actor_id, Permission.MANAGE_ROLES)
        session = self.session_factory()
        try:
            roles = [role.to_dict() for role in RoleRepository.list_all(session)]
            if include_user_counts:
                counts = RoleRepository.assignment_counts(session)
                for role in roles:
                    role["user_count"] = counts.get(role["id"], 0)
            return roles
        finally:
            session.close()

    def get_role(self, actor_id: str, role_id: str) -> Dict[str, Any]:
        self.require(None, actor_id, Permission.MANAGE_ROLES)
        session = self.session_factory()
        try:
            role = RoleRepository.get_by_id(session, role_id)
            if role is None:
                raise NotFound("role", role_id)
            result = role.to_dict()
            result["user_count"] = RoleRepository.count_assignments(session, role_id)
            return result
        finally:
            session.close()

    def _ensure_grantable(self, ctx, actor_id: str, permissions: List[Permission]):
        if not self.guard.can_grant_permissions(actor_id, permissions):
            held = self.resolver.get_user_permissions(actor_id)
            missing = [p.value for p in permissions if p not in held]
            denied = PermissionDenied(
                actor_id,
                permission=missing[0],
                message=f"Cannot grant permissions you do not hold: {missing}",
            )
            self._audit_denied(ctx, actor_id, denied)
            raise denied

    def create_role(
        self,
        ctx: Optional[RequestContext],
        actor_id: str,
        code: str,
        name: str,
        permissions: Sequence[str],
        description: Optional[str] = None,
    ) -> Dict[str, Any]:
        if not code or not name or permissions is None:
            raise ValidationError("Missing required fields: code, name, permissions")
        if not isinstance(code, str) or not isinstance(name, str):
            raise ValidationError("code and name must be strings")
        if description is not None and not isinstance(description, str):
            raise ValidationError("description must be a string")
        if not ROLE_CODE_PATTERN.match(code):
            raise ValidationError(
                "Invalid code format: only lowercase letters, numbers, and underscores allowed"
            )
        permissions = validate_permissions(permissions)

        self.require(ctx, actor_id, Permission.MANAGE_ROLES)
        self._ensure_grantable(ctx, actor_id, permissions)

        session = self.session_factory()
        try:
            if RoleRepository.get_by_code(session, code) is not None:
                raise Conflict(f'Role with code "{code}" already exists')
            role = RoleRepository.create(
                session, code=code, name=name, description=description,
                permissions=[p.value for p in permissions],
            )
            self._commit(session, "role creation")
            result = role.to_dict()
        finally:
            session.close()

        self.resolver.invalidate_all_permission_caches()
        logger.info(f"[ROLE] {actor_id} created role {code}")

        self.audit.create_audit_log(
            ctx,
            user_id=actor_id,
            action=AuditAction.ROLE_CREATE,
            entity_type=EntityType.ROLE,
            entity_id=result["id"],
            metadata={"roleCode": code, "roleName": name, "permissions": result["permissions"]},
        )
        return result

    def update_role(
        self,
        ctx: Optional[RequestContext],
        actor_id: str,
        role_id: str,
        name: Optional[str] = None,
        description: Optional[str] = None,
        permissions: Optional[Sequence[str]] = None,
    ) -> Dict[str, Any]:
        updates: Dict[str, Any] = {}
        if name is not None:
            if not isinstance(name, str) or not name.strip():
                raise ValidationError("name must not be empty")
            updates["name"] = name
        if description is not None:
            if not isinstance(description, str):
                raise ValidationError("description must be a string")
            updates["description"] = description
        new_permissions = None
        if permissions is not None:
            new_permissions = validate_permissions(permissions)
            updates["permissions"] = [p.value for p in new_permissions]
        if not updates:
            raise ValidationError("Nothing to update")

        self.require(ctx, actor_id, Permission.MANAGE_ROLES)

        session = self.session_factory()
        try:
            role = RoleRepository.get_by_id(session, role_id)
            if role is None:
                raise NotFound("role", role_id)

            check = self.guard.can_modify_role(actor_id, role)
            if not check:
                if check.escalation:
                    denied = PermissionDenied(actor_id, role_id=role.id, role_name=role.name, message=check.reason)
                    self._audit_denied(ctx, actor_id, denied)
                    raise denied
                raise Conflict(check.reason)
            if new_permissions is not None:
                self._ensure_grantable(ctx, actor_id, new_permissions)

            before = role.to_dict()
            RoleRepository.update(session, role, **updates)
            after = role.to_dict()
            self._commit(session, "role update")
        finally:
            session.close()

        if before["permissions"] != after["permissions"]:
            # Every holder of the role is affected
            self.resolver.invalidate_all_permission_caches()
        logger.info(f"[ROLE] {actor_id} updated role {after['code']}")

        self.audit.create_audit_log(
            ctx,
            user_id=actor_id,
            action=AuditAction.ROLE_UPDATE,
            entity_type=EntityType.ROLE,
            entity_id=role_id,
            metadata={
                "before": {k: before[k] for k in ("name", "description", "permissions")},
                "after": {k: after[k] for k in ("name", "description", "permissions")},
            },
        )
        return after

    def delete_role(self, ctx: Optional[RequestContext], actor_id: str, role_id: str) -> Dict[str, Any]:
        self.require(ctx, actor_id, Permission.MANAGE_ROLES)

        check = self.guard.can_delete_role(actor_id, role_id)
        if not check:
            if check.escalation:
                denied = PermissionDenied(actor_id, role_id=role_id, message=check.reason)
                self._audit_denied(ctx, actor_id, denied)
                raise denied
            raise Conflict(check.reason)

        session = self.session_factory()
        try:
            role = RoleRepository.get_by_id(session, role_id)
            if role is None:
                raise NotFound("role", role_id)
            deleted = role.to_dict()
            RoleRepository.delete(session, role)
            self._commit(session, "role deletion")
        finally:
            session.close()

        self.resolver.invalidate_all_permission_caches()
        logger.info(f"[ROLE] {actor_id} deleted role {deleted['code']}")

        self.audit.create_audit_log(
            ctx,
            user_id=actor_id,
            action=AuditAction.ROLE_DELETE,
            entity_type=EntityType.ROLE,
            entity_id=role_id,
            metadata={"roleCode": deleted["code"], "roleName": deleted["name"], "permissions": deleted["permissions"]},
        )
        return {"deletedRoleId": role_id}

    # ==================== AUDIT TRAIL ====================

    def list_audit_entries(self, actor_id: str, entity_type, entity_id: str) -> List[Dict[str, Any]]:
        """Read-only view of the audit log for one entity"""
        self.require(None, actor_id, Permission.VIEW_AUDIT_LOGS)
        entity_type = getattr(entity_type, "value", entity_type)
        session = self.session_factory()
        try:
            return [e.to_dict() for e in AuditLogRepository.list_for_entity(session, entity_type, entity_id)]
        finally:
            session.close()

    def list_audit_logs(
        self,
        actor_id: str,
        actor_user_id: Optional[str] = None,
        action: Optional[str] = None,
        entity_type: Optional[str] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        search: Optional[str] = None,
        limit: int = DEFAULT_AUDIT_PAGE_SIZE,
        offset: int = 0,
    ) -> Dict[str, Any]:
        """
        Browse the audit log, newest first.

        ``limit`` is capped at MAX_AUDIT_PAGE_SIZE. Returns the page and
        pagination info (total, limit, offset, hasMore).
        """
        if isinstance(limit, bool) or not isinstance(limit, int) or limit < 1:
            raise ValidationError("limit must be a positive integer")
        if isinstance(offset, bool) or not isinstance(offset, int) or offset < 0:
            raise ValidationError("offset must be a non-negative integer")
        limit = min(limit, MAX_AUDIT_PAGE_SIZE)
        start, end = _as_utc(start_date), _as_utc(end_date)
        if start is not None and end is not None and start > end:
            raise ValidationError("startDate must not be after endDate")

        self.require(None, actor_id, Permission.VIEW_AUDIT_LOGS)

        session = self.session_factory()
        try:
            entries, total = AuditLogRepository.search(
                session,
                actor_user_id=actor_user_id,
                action=getattr(action, "value", action),
                entity_type=getattr(entity_type, "value", entity_type),
                start=start,
                end=end,
                search=search,
                limit=limit,
                offset=offset,
            )
            logs = [e.to_dict() for e in entries]
        finally:
            session.close()

        return {
            "logs": logs,
            "pagination": {
                "total": total,
                "limit": limit,
                "offset": offset,
                "hasMore": total > offset + limit,
            },
        }

    def audit_log_stats(
        self,
        actor_id: str,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        days: int = DEFAULT_STATS_DAYS,
    ) -> Dict[str, Any]:
        """Aggregate counts over a window (default: the last ``days`` days)"""
        if isinstance(days, bool) or not isinstance(days, int) or days < 1:
            raise ValidationError("days must be a positive integer")
        end = _as_utc(end_date) or datetime.now(timezone.utc)
        start = _as_utc(start_date) or end - timedelta(days=days)
        if start > end:
            raise ValidationError("startDate must not be after endDate")

        self.require(None, actor_id, Permission.VIEW_AUDIT_LOGS)

        session = self.session_factory()
        try:
            action_counts = AuditLogRepository.action_counts(session, start, end)
            actor_counts = AuditLogRepository.actor_counts(session, start, end)
            timestamps = [_as_utc(t) for t in AuditLogRepository.timestamps_between(session, start, end)]
        finally:
            session.close()

        daily: Dict[str, int] = {}
        hourly = [{"hour": hour, "count": 0} for hour in range(24)]
        for created_at in timestamps:
            day = created_at.date().isoformat()
            daily[day] = daily.get(day, 0) + 1
            hourly[created_at.hour]["count"] += 1

        categories: Dict[str, int] = {}
        for action, count in action_counts:
            category = action.split(".", 1)[0]
            categories[category] = categories.get(category, 0) + count

        return {
            "totalLogs": len(timestamps),
            "dateRange": {"startDate": start.isoformat(), "endDate": end.isoformat(), "days": days},
            "actionBreakdown": [{"action": a, "count": c} for a, c in action_counts[:20]],
            "userBreakdown": [
                {"userId": uid, "userName": full_name or email or "Unknown", "userEmail": email, "count": c}
                for uid, email, full_name, c in actor_counts
            ],
            "dailyActivity": [{"date": d, "count": daily[d]} for d in sorted(daily)],
            "hourlyActivity": hourly,
            "categoryBreakdown": sorted(
                ({"category": k, "count": v} for k, v in categories.items()),
                key=lambda item: (-item["count"], item["category"]),
            ),
        }
