"""
Admin RBAC API endpoints.

Exposed endpoints:
- GET    /api/admin/permissions                      - Permission catalog by category
- GET    /api/admin/roles                            - List roles
- POST   /api/admin/roles                            - Create role
- GET    /api/admin/roles/{role_id}                  - Role details
- PUT    /api/admin/roles/{role_id}                  - Update role
- DELETE /api/admin/roles/{role_id}                  - Delete role
- GET    /api/admin/users/{user_id}/roles            - User with roles and permissions
- POST   /api/admin/users/{user_id}/roles            - Replace all roles of a user
- DELETE /api/admin/users/{user_id}/roles/{role_id}  - Remove one role from a user
- GET    /api/admin/users/{user_id}/audit-logs       - Audit entries for a user
- GET    /api/admin/audit-logs                       - Search the audit log (filtered, paginated)
- GET    /api/admin/audit-logs/stats                 - Audit activity breakdowns
"""

from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Query

from rbac.audit import EntityType, RequestContext
from rbac.core import RBACCore
from rbac.permissions import Permission, get_permissions_by_category
from rbac.rbac_dependencies import get_rbac, get_request_context, require_permission
from rbac.schemas import (
    AuditEntryResponse,
    AuditLogPageResponse,
    AuditLogStatsResponse,
    CreateRoleRequest,
    PermissionCategoryResponse,
    RoleAssignmentRequest,
    RoleAssignmentResponse,
    RoleResponse,
    UpdateRoleRequest,
    UserWithRolesResponse,
)

router = APIRouter(prefix="/api/admin", tags=["admin-rbac"])


# ==================== CATALOG ====================

@router.get("/permissions", response_model=List[PermissionCategoryResponse])
async def list_permissions(actor_id: str = Depends(require_permission(Permission.MANAGE_ROLES))):
    """Permission catalog grouped by category (for the role editor)."""
    return get_permissions_by_category()


# ==================== ROLES ====================

@router.get("/roles", response_model=List[RoleResponse])
async def list_roles(
    include_users: bool = Query(False, alias="includeUsers"),
    actor_id: str = Depends(require_permission(Permission.MANAGE_ROLES)),
    rbac: RBACCore = Depends(get_rbac),
):
    return rbac.service.list_roles(actor_id, include_user_counts=include_users)


@router.post("/roles", response_model=RoleResponse, status_code=201)
async def create_role(
    data: CreateRoleRequest,
    actor_id: str = Depends(require_permission(Permission.MANAGE_ROLES)),
    ctx: RequestContext = Depends(get_request_context),
    rbac: RBACCore = Depends(get_rbac),
):
    return rbac.service.create_role(
        ctx, actor_id,
        code=data.code, name=data.name,
        permissions=data.permissions, description=data.description,
    )


@router.get("/roles/{role_id}", response_model=RoleResponse)
async def get_role(
    role_id: str,
    actor_id: str = Depends(require_permission(Permission.MANAGE_ROLES)),
    rbac: RBACCore = Depends(get_rbac),
):
    return rbac.service.get_role(actor_id, role_id)


@router.put("/roles/{role_id}", response_model=RoleResponse)
async def update_role(
    role_id: str,
    data: UpdateRoleRequest,
    actor_id: str = Depends(require_permission(Permission.MANAGE_ROLES)),
    ctx: RequestContext = Depends(get_request_context),
    rbac: RBACCore = Depends(get_rbac),
):
    return rbac.service.update_role(
        ctx, actor_id, role_id,
        name=data.name, description=data.description, permissions=data.permissions,
    )


@router.delete("/roles/{role_id}")
async def delete_role(
    role_id: str,
    actor_id: str = Depends(require_permission(Permission.MANAGE_ROLES)),
    ctx: RequestContext = Depends(get_request_context),
    rbac: RBACCore = Depends(get_rbac),
):
    result = rbac.service.delete_role(ctx, actor_id, role_id)
    return {"success": True, **result}


# ==================== USER ROLE ASSIGNMENTS ====================

@router.get("/users/{user_id}/roles", response_model=UserWithRolesResponse)
async def get_user_roles(
    user_id: str,
    actor_id: str = Depends(require_permission(Permission.VIEW_USERS)),
    rbac: RBACCore = Depends(get_rbac),
):
    return rbac.service.get_user_with_roles(actor_id, user_id).to_dict()


@router.post("/users/{user_id}/roles", response_model=RoleAssignmentResponse)
async def assign_user_roles(
    user_id: str,
    data: RoleAssignmentRequest,
    actor_id: str = Depends(require_permission(Permission.MANAGE_ROLES)),
    ctx: RequestContext = Depends(get_request_context),
    rbac: RBACCore = Depends(get_rbac),
):
    """
    Replace every role of the user with ``roleIds``.
    All-or-nothing: one unassignable role fails the whole request.
    """
    result = rbac.service.assign_roles(ctx, actor_id, user_id, data.role_ids)
    return {"success": True, **result}


@router.delete("/users/{user_id}/roles/{role_id}")
async def remove_user_role(
    user_id: str,
    role_id: str,
    actor_id: str = Depends(require_permission(Permission.MANAGE_ROLES)),
    ctx: RequestContext = Depends(get_request_context),
    rbac: RBACCore = Depends(get_rbac),
):
    result = rbac.service.unassign_role(ctx, actor_id, user_id, role_id)
    return {"success": True, **result}


@router.get("/users/{user_id}/audit-logs", response_model=List[AuditEntryResponse])
async def get_user_audit_logs(
    user_id: str,
    actor_id: str = Depends(require_permission(Permission.VIEW_AUDIT_LOGS)),
    rbac: RBACCore = Depends(get_rbac),
):
    return rbac.service.list_audit_entries(actor_id, EntityType.USER, user_id)


# ==================== AUDIT LOG ====================

@router.get("/audit-logs", response_model=AuditLogPageResponse)
async def search_audit_logs(
    user_id: Optional[str] = Query(None, alias="userId"),
    action: Optional[str] = None,
    entity_type: Optional[str] = Query(None, alias="entityType"),
    start_date: Optional[datetime] = Query(None, alias="startDate"),
    end_date: Optional[datetime] = Query(None, alias="endDate"),
    search: Optional[str] = None,
    limit: int = 50,
    offset: int = 0,
    actor_id: str = Depends(require_permission(Permission.VIEW_AUDIT_LOGS)),
    rbac: RBACCore = Depends(get_rbac),
):
    """
    Newest entries first. ``search`` matches the IP address or User-Agent;
    ``limit`` is capped at 100.
    """
    result = rbac.service.list_audit_logs(
        actor_id,
        actor_user_id=user_id,
        action=action,
        entity_type=entity_type,
        start_date=start_date,
        end_date=end_date,
        search=search,
        limit=limit,
        offset=offset,
    )
    return {"success": True, **result}


@router.get("/audit-logs/stats", response_model=AuditLogStatsResponse)
async def audit_log_stats(
    start_date: Optional[datetime] = Query(None, alias="startDate"),
    end_date: Optional[datetime] = Query(None, alias="endDate"),
    days: int = 30,
    actor_id: str = Depends(require_permission(Permission.VIEW_AUDIT_LOGS)),
    rbac: RBACCore = Depends(get_rbac),
):
    result = rbac.service.audit_log_stats(actor_id, start_date=start_date, end_date=end_date, days=days)
    return {"success": True, **result}
