# permissions.py
"""
Permission catalog for the admin console.
Closed set of permission identifiers, grouped by resource domain,
plus the built-in roles seeded on first start.
"""

from enum import Enum
from typing import Iterable, List, FrozenSet
from loguru import logger

from rbac.errors import ValidationError


class Permission(str, Enum):
    """Admin permission identifiers (values are what gets persisted)"""

    # Companies
    MANAGE_COMPANIES = "manage_companies"
    VIEW_COMPANIES = "view_companies"

    # Users
    MANAGE_USERS = "manage_users"
    VIEW_USERS = "view_users"

    # Subscriptions / billing
    MANAGE_SUBSCRIPTIONS = "manage_subscriptions"
    VIEW_SUBSCRIPTIONS = "view_subscriptions"
    MANAGE_BILLING = "manage_billing"
    VIEW_BILLING = "view_billing"

    # Analytics
    VIEW_ANALYTICS = "view_analytics"
    EXPORT_DATA = "export_data"

    # Customer success
    MANAGE_SUPPORT = "manage_support"
    VIEW_HEALTH_SCORES = "view_health_scores"
    CALCULATE_HEALTH_SCORES = "calculate_health_scores"
    MANAGE_ONBOARDING = "manage_onboarding"

    # System
    MANAGE_SYSTEM_SETTINGS = "manage_system_settings"
    MANAGE_ROLES = "manage_roles"
    VIEW_AUDIT_LOGS = "view_audit_logs"

    # Compliance
    MANAGE_PRIVACY_REQUESTS = "manage_privacy_requests"

    # Communication
    MANAGE_ANNOUNCEMENTS = "manage_announcements"
    MANAGE_EMAIL_TEMPLATES = "manage_email_templates"
    VIEW_EMAIL_TEMPLATES = "view_email_templates"

    def __str__(self) -> str:
        return self.value


ALL_PERMISSIONS: FrozenSet[Permission] = frozenset(Permission)


PERMISSION_INFO = {
    Permission.MANAGE_COMPANIES: {"name": "Manage companies", "description": "Create, update and delete companies", "category": "companies"},
    Permission.VIEW_COMPANIES: {"name": "View companies", "description": "View company details", "category": "companies"},
    Permission.MANAGE_USERS: {"name": "Manage users", "description": "Create, update and delete users", "category": "users"},
    Permission.VIEW_USERS: {"name": "View users", "description": "View user details and role assignments", "category": "users"},
    Permission.MANAGE_SUBSCRIPTIONS: {"name": "Manage subscriptions", "description": "Create, change and cancel subscriptions", "category": "billing"},
    Permission.VIEW_SUBSCRIPTIONS: {"name": "View subscriptions", "description": "View subscription details", "category": "billing"},
    Permission.MANAGE_BILLING: {"name": "Manage billing", "description": "Manage payments and invoices", "category": "billing"},
    Permission.VIEW_BILLING: {"name": "View billing", "description": "View payment and invoice history", "category": "billing"},
    Permission.VIEW_ANALYTICS: {"name": "View analytics", "description": "View analytics data and reports", "category": "analytics"},
    Permission.EXPORT_DATA: {"name": "Export data", "description": "Export data as CSV/Excel", "category": "analytics"},
    Permission.MANAGE_SUPPORT: {"name": "Manage support", "description": "Handle customer support tickets", "category": "customer_success"},
    Permission.VIEW_HEALTH_SCORES: {"name": "View health scores", "description": "View customer health scores", "category": "customer_success"},
    Permission.CALCULATE_HEALTH_SCORES: {"name": "Calculate health scores", "description": "Recalculate customer health scores", "category": "customer_success"},
    Permission.MANAGE_ONBOARDING: {"name": "Manage onboarding", "description": "Manage customer onboarding", "category": "customer_success"},
    Permission.MANAGE_SYSTEM_SETTINGS: {"name": "Manage system settings", "description": "Change platform-wide settings", "category": "system"},
    Permission.MANAGE_ROLES: {"name": "Manage roles", "description": "Manage admin roles and assignments", "category": "system"},
    Permission.VIEW_AUDIT_LOGS: {"name": "View audit logs", "description": "View the system audit log", "category": "system"},
    Permission.MANAGE_PRIVACY_REQUESTS: {"name": "Manage privacy requests", "description": "Process GDPR/privacy requests", "category": "compliance"},
    Permission.MANAGE_ANNOUNCEMENTS: {"name": "Manage announcements", "description": "Write and publish announcements", "category": "communication"},
    Permission.MANAGE_EMAIL_TEMPLATES: {"name": "Manage email templates", "description": "Create and edit email templates", "category": "communication"},
    Permission.VIEW_EMAIL_TEMPLATES: {"name": "View email templates", "description": "View email templates", "category": "communication"},
}


PERMISSION_CATEGORIES = {
    "companies": "Companies",
    "users": "Users",
    "billing": "Subscriptions & billing",
    "analytics": "Analytics & reports",
    "customer_success": "Customer success",
    "system": "System settings",
    "compliance": "Security & compliance",
    "communication": "Communication",
}


# Built-in roles, seeded by DatabaseManager and protected from edit/delete
DEFAULT_ROLES = {
    "super_admin": {
        "name": "Super admin",
        "description": "Every permission in the catalog",
        "permissions": sorted(p.value for p in Permission),
    },
    "cs_manager": {
        "name": "Customer success manager",
        "description": "Support, onboarding and health scores",
        "permissions": [
            Permission.VIEW_COMPANIES.value,
            Permission.VIEW_USERS.value,
            Permission.MANAGE_SUPPORT.value,
            Permission.VIEW_HEALTH_SCORES.value,
            Permission.CALCULATE_HEALTH_SCORES.value,
            Permission.MANAGE_ONBOARDING.value,
        ],
    },
    "finance": {
        "name": "Finance",
        "description": "Subscriptions and billing",
        "permissions": [
            Permission.VIEW_COMPANIES.value,
            Permission.MANAGE_SUBSCRIPTIONS.value,
            Permission.VIEW_SUBSCRIPTIONS.value,
            Permission.MANAGE_BILLING.value,
            Permission.VIEW_BILLING.value,
        ],
    },
    "analyst": {
        "name": "Analyst",
        "description": "Read-only analytics",
        "permissions": [
            Permission.VIEW_COMPANIES.value,
            Permission.VIEW_ANALYTICS.value,
            Permission.EXPORT_DATA.value,
        ],
    },
}


def is_default_role(role_code: str) -> bool:
    """Built-in roles cannot be modified or deleted"""
    return role_code in DEFAULT_ROLES


def get_permission_info(permission: Permission) -> dict:
    """Get display info for a permission"""
    info = PERMISSION_INFO[permission]
    return {"code": permission.value, **info}


def get_permissions_by_category() -> List[dict]:
    """Catalog grouped by category, in declaration order"""
    groups = []
    for category, label in PERMISSION_CATEGORIES.items():
        permissions = [
            get_permission_info(p) for p in Permission
            if PERMISSION_INFO[p]["category"] == category
        ]
        groups.append({"category": category, "name": label, "permissions": permissions})
    return groups


def parse_permissions(values: Iterable[str]) -> FrozenSet[Permission]:
    """
    Convert persisted permission strings to catalog members.
    Unknown values are dropped (never granted) and logged.
    """
    parsed = set()
    for value in values or []:
        try:
            parsed.add(Permission(value))
        except ValueError:
            logger.warning(f"[RBAC] Ignoring unknown permission in role data: {value!r}")
    return frozenset(parsed)


def validate_permissions(values: Iterable[str]) -> List[Permission]:
    """
    Convert request input to catalog members.
    Raises ValidationError on any unknown value.
    """
    if isinstance(values, (str, bytes)) or not isinstance(values, (list, tuple, set, frozenset)):
        raise ValidationError("permissions must be an array")

    result = []
    unknown = []
    for value in values:
        try:
            permission = Permission(value)
        except ValueError:
            unknown.append(value)
            continue
        if permission not in result:
            result.append(permission)

    if unknown:
        raise ValidationError(f"Unknown permissions: {unknown}")
    return result
