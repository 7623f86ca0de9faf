"""
Pydantic schemas for the admin RBAC endpoints.

Request models accept the camelCase keys the admin console sends
(``roleIds``); response models mirror ``to_dict()`` of the ORM rows.
"""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


# ============ Request Schemas ============

class RoleAssignmentRequest(BaseModel):
    """
    Replace all roles of a user.

    Example:
        {"roleIds": ["9b1d...", "4c2e..."]}

    The list is validated by the service (ValidationError when it is not
    an array), so it is typed loosely here.
    """
    model_config = ConfigDict(populate_by_name=True)

    role_ids: Any = Field(..., alias="roleIds", description="IDs of the roles the user should hold")


class CreateRoleRequest(BaseModel):
    code: str = Field(..., max_length=50, description="Machine code, [a-z0-9_]+")
    name: str = Field(..., max_length=100)
    description: Optional[str] = None
    permissions: List[str] = Field(default_factory=list)


class UpdateRoleRequest(BaseModel):
    name: Optional[str] = Field(None, max_length=100)
    description: Optional[str] = None
    permissions: Optional[List[str]] = None


# ============ Response Schemas ============

class RoleResponse(BaseModel):
    id: str
    code: str
    name: str
    description: Optional[str] = None
    permissions: List[str]
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    user_count: Optional[int] = None


class UserWithRolesResponse(BaseModel):
    id: str
    email: str
    full_name: Optional[str] = None
    is_super_admin: bool
    roles: List[RoleResponse]
    permissions: List[str]


class AssignmentResponse(BaseModel):
    id: str
    user_id: str
    role_id: str
    assigned_by: Optional[str] = None
    assigned_at: Optional[str] = None


class RoleAssignmentResponse(BaseModel):
    success: bool = True
    assignments: List[AssignmentResponse]
    roles: List[RoleResponse]


class PermissionCategoryResponse(BaseModel):
    category: str
    name: str
    permissions: List[Dict[str, str]]


class AuditEntryResponse(BaseModel):
    id: str
    actor_user_id: Optional[str] = None
    action: str
    entity_type: Optional[str] = None
    entity_id: Optional[str] = None
    metadata: Dict[str, Any]
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: Optional[str] = None


class PaginationResponse(BaseModel):
    total: int
    limit: int
    offset: int
    hasMore: bool


class AuditLogPageResponse(BaseModel):
    success: bool = True
    logs: List[AuditEntryResponse]
    pagination: PaginationResponse


class AuditLogStatsResponse(BaseModel):
    success: bool = True
    totalLogs: int
    dateRange: Dict[str, Any]
    actionBreakdown: List[Dict[str, Any]]
    userBreakdown: List[Dict[str, Any]]
    dailyActivity: List[Dict[str, Any]]
    hourlyActivity: List[Dict[str, int]]
    categoryBreakdown: List[Dict[str, Any]]
