from datetime import datetime, timedelta, timezone

import pytest

from rbac.audit import AuditLogger, RequestContext
from rbac.errors import Conflict, NotFound, PermissionDenied, ValidationError
from rbac.models import AuditLog
from rbac.permissions import Permission

CTX = RequestContext(ip_address="192.0.2.10", user_agent="pytest")


@pytest.fixture()
def roles(make_role):
    return {
        "viewer": make_role("viewer", ["view_users"], name="Viewer"),
        "manager": make_role("manager", ["view_users", "manage_users"], name="Manager"),
        "role_admin": make_role("role_admin", ["manage_roles", "view_users"], name="Role admin"),
    }


@pytest.fixture()
def super_admin(make_user):
    return make_user(email="root@example.com", is_super_admin=True)


# ==================== ASSIGNMENT ====================

def test_super_admin_assigns_several_roles(core, super_admin, make_user, roles, role_ids_of, audit_entries):
    target = make_user(email="target@example.com")
    assert not core.resolver.has_permission(target, Permission.MANAGE_USERS)

    result = core.service.assign_roles(CTX, super_admin, target, [roles["viewer"], roles["manager"]])

    assert len(result["assignments"]) == 2
    assert role_ids_of(target) == {roles["viewer"], roles["manager"]}

    # Cached empty set was invalidated by the assignment
    assert core.resolver.get_user_permissions(target) == frozenset(
        {Permission.VIEW_USERS, Permission.MANAGE_USERS}
    )

    [entry] = audit_entries()
    assert entry["action"] == "role.assign"
    assert entry["actor_user_id"] == super_admin
    assert entry["entity_type"] == "user"
    assert entry["entity_id"] == target
    assert [r["name"] for r in entry["metadata"]["assignedRoles"]] == ["Viewer", "Manager"]
    assert entry["metadata"]["targetUser"] == "target@example.com"
    assert entry["ip_address"] == "192.0.2.10"


def test_assignment_beyond_own_authority_changes_nothing(
    core, make_user, grant, roles, role_ids_of, audit_entries
):
    actor = make_user()
    grant(actor, roles["role_admin"])
    target = make_user()
    grant(target, roles["viewer"])

    with pytest.raises(PermissionDenied) as exc:
        core.service.assign_roles(CTX, actor, target, [roles["viewer"], roles["manager"]])

    assert exc.value.role_id == roles["manager"]
    assert exc.value.message == "Cannot assign role: Manager. Insufficient permissions."
    assert role_ids_of(target) == {roles["viewer"]}
    assert audit_entries() == []


def test_assignment_replaces_previous_roles(core, super_admin, make_user, grant, roles, role_ids_of, audit_entries):
    target = make_user()
    grant(target, roles["viewer"])
    grant(target, roles["role_admin"])

    core.service.assign_roles(CTX, super_admin, target, [roles["viewer"], roles["manager"]])

    assert role_ids_of(target) == {roles["viewer"], roles["manager"]}
    [entry] = audit_entries("role.assign")
    assert {r["code"] for r in entry["metadata"]["previousRoles"]} == {"viewer", "role_admin"}


def test_empty_list_removes_every_role(core, super_admin, make_user, grant, roles, role_ids_of):
    target = make_user()
    grant(target, roles["viewer"])
    assert core.resolver.has_permission(target, Permission.VIEW_USERS)

    result = core.service.assign_roles(CTX, super_admin, target, [])

    assert result["assignments"] == []
    assert role_ids_of(target) == set()
    assert not core.resolver.has_permission(target, Permission.VIEW_USERS)


def test_duplicate_role_ids_collapse(core, super_admin, make_user, roles, role_ids_of):
    target = make_user()
    result = core.service.assign_roles(CTX, super_admin, target, [roles["viewer"], roles["viewer"]])
    assert len(result["assignments"]) == 1
    assert role_ids_of(target) == {roles["viewer"]}


@pytest.mark.parametrize("bad", ["viewer", None, {"id": "x"}, [""], [3]])
def test_malformed_role_ids_rejected_before_any_lookup(core, bad):
    # Neither actor nor target exists: validation must come first
    with pytest.raises(ValidationError):
        core.service.assign_roles(CTX, "ghost", "nobody", bad)


def test_assignment_requires_manage_roles(core, make_user, grant, roles):
    actor = make_user()
    grant(actor, roles["manager"])
    with pytest.raises(PermissionDenied) as exc:
        core.service.assign_roles(CTX, actor, make_user(), [roles["viewer"]])
    assert exc.value.permission == "manage_roles"


def test_unknown_target_or_role_is_not_found(core, super_admin, make_user, grant, roles, role_ids_of):
    with pytest.raises(NotFound):
        core.service.assign_roles(CTX, super_admin, "nobody", [roles["viewer"]])

    target = make_user()
    grant(target, roles["viewer"])
    with pytest.raises(NotFound):
        core.service.assign_roles(CTX, super_admin, target, [roles["manager"], "no-such-role"])
    assert role_ids_of(target) == {roles["viewer"]}


def test_audit_failure_does_not_undo_assignment(core, super_admin, make_user, roles, role_ids_of):
    def broken_factory():
        raise RuntimeError("audit store offline")

    core.service.audit = AuditLogger(broken_factory)
    target = make_user()

    core.service.assign_roles(CTX, super_admin, target, [roles["viewer"]])

    assert role_ids_of(target) == {roles["viewer"]}


def test_unassign_role(core, super_admin, make_user, grant, roles, role_ids_of, audit_entries):
    target = make_user()
    grant(target, roles["viewer"])
    grant(target, roles["manager"])
    assert core.resolver.has_permission(target, Permission.MANAGE_USERS)

    result = core.service.unassign_role(CTX, super_admin, target, roles["manager"])

    assert result == {"removedRoleId": roles["manager"]}
    assert role_ids_of(target) == {roles["viewer"]}
    assert not core.resolver.has_permission(target, Permission.MANAGE_USERS)
    [entry] = audit_entries("role.unassign")
    assert entry["metadata"]["removedRole"]["code"] == "manager"

    with pytest.raises(NotFound):
        core.service.unassign_role(CTX, super_admin, target, roles["manager"])


def test_get_user_with_roles_requires_view_users(core, make_user, grant, roles):
    outsider = make_user()
    target = make_user()
    with pytest.raises(PermissionDenied):
        core.service.get_user_with_roles(outsider, target)

    reader = make_user()
    grant(reader, roles["viewer"])
    assert core.service.get_user_with_roles(reader, target).id == target


# ==================== ROLE DEFINITIONS ====================

def test_create_role(core, super_admin, audit_entries):
    role = core.service.create_role(
        CTX, super_admin, code="support_lead", name="Support lead",
        permissions=["manage_support", "view_users", "manage_support"],
    )

    assert role["code"] == "support_lead"
    assert role["permissions"] == ["manage_support", "view_users"]
    [entry] = audit_entries("role.create")
    assert entry["entity_id"] == role["id"]


@pytest.mark.parametrize(
    "code, name, permissions",
    [
        ("Support-Lead", "Support lead", []),
        ("", "Support lead", []),
        ("support_lead", "", []),
        ("support_lead", "Support lead", ["launch_rockets"]),
        ("support_lead", "Support lead", "manage_support"),
        (123, "Support lead", []),
        ("support_lead", ["Support lead"], []),
        (["support_lead"], "Support lead", []),
    ],
)
def test_create_role_validation(core, super_admin, code, name, permissions):
    with pytest.raises(ValidationError):
        core.service.create_role(CTX, super_admin, code=code, name=name, permissions=permissions)


def test_create_role_duplicate_code(core, super_admin, roles):
    with pytest.raises(Conflict):
        core.service.create_role(CTX, super_admin, code="viewer", name="Viewer 2", permissions=[])


def test_create_role_cannot_exceed_own_permissions(core, make_user, grant, roles, audit_entries):
    actor = make_user()
    grant(actor, roles["role_admin"])

    with pytest.raises(PermissionDenied) as exc:
        core.service.create_role(
            CTX, actor, code="billing", name="Billing", permissions=["view_users", "manage_billing"],
        )
    assert exc.value.permission == "manage_billing"
    assert audit_entries() == []


def test_role_edit_reaches_cached_holders(core, super_admin, make_user, grant, roles):
    holder = make_user()
    grant(holder, roles["viewer"])
    assert not core.resolver.has_permission(holder, Permission.EXPORT_DATA)

    updated = core.service.update_role(
        CTX, super_admin, roles["viewer"], permissions=["view_users", "export_data"],
    )

    assert updated["permissions"] == ["view_users", "export_data"]
    assert core.resolver.has_permission(holder, Permission.EXPORT_DATA)


def test_update_role_records_before_and_after(core, super_admin, roles, audit_entries):
    core.service.update_role(CTX, super_admin, roles["viewer"], name="Read-only")
    [entry] = audit_entries("role.update")
    assert entry["metadata"]["before"]["name"] == "Viewer"
    assert entry["metadata"]["after"]["name"] == "Read-only"


def test_update_role_rules(core, super_admin, make_user, make_role, grant, roles):
    with pytest.raises(ValidationError):
        core.service.update_role(CTX, super_admin, roles["viewer"])

    with pytest.raises(NotFound):
        core.service.update_role(CTX, super_admin, "no-such-role", name="x")

    finance = make_role("finance", ["view_billing"])
    with pytest.raises(Conflict):
        core.service.update_role(CTX, super_admin, finance, name="Money")

    actor = make_user()
    grant(actor, roles["role_admin"])
    with pytest.raises(PermissionDenied):
        core.service.update_role(CTX, actor, roles["manager"], name="Boss")
    with pytest.raises(PermissionDenied):
        core.service.update_role(CTX, actor, roles["viewer"], permissions=["view_users", "manage_billing"])


def test_delete_role(core, super_admin, make_user, make_role, grant, roles, audit_entries):
    unused = make_role("temp", ["view_users"])
    assert core.service.delete_role(CTX, super_admin, unused) == {"deletedRoleId": unused}
    with pytest.raises(NotFound):
        core.service.get_role(super_admin, unused)
    [entry] = audit_entries("role.delete")
    assert entry["metadata"]["roleCode"] == "temp"

    grant(make_user(), roles["viewer"])
    with pytest.raises(Conflict):
        core.service.delete_role(CTX, super_admin, roles["viewer"])

    analyst = make_role("analyst", ["view_analytics"])
    with pytest.raises(Conflict):
        core.service.delete_role(CTX, super_admin, analyst)

    with pytest.raises(NotFound):
        core.service.delete_role(CTX, super_admin, "no-such-role")


def test_list_roles_with_user_counts(core, super_admin, make_user, grant, roles):
    grant(make_user(), roles["viewer"])
    grant(make_user(), roles["viewer"])

    listed = {r["code"]: r for r in core.service.list_roles(super_admin, include_user_counts=True)}

    assert listed["viewer"]["user_count"] == 2
    assert listed["manager"]["user_count"] == 0
    assert "user_count" not in core.service.list_roles(super_admin)[0]
    assert core.service.get_role(super_admin, roles["viewer"])["user_count"] == 2


def test_list_audit_entries_requires_view_audit_logs(core, super_admin, make_user, grant, roles):
    target = make_user()
    core.service.assign_roles(CTX, super_admin, target, [roles["viewer"]])

    [entry] = core.service.list_audit_entries(super_admin, "user", target)
    assert entry["action"] == "role.assign"

    with pytest.raises(PermissionDenied):
        core.service.list_audit_entries(target, "user", target)


# ==================== DENIED-ATTEMPT AUDITING ====================

@pytest.mark.parametrize("config", [{"audit_denied_attempts": True}], indirect=True)
def test_denied_attempts_audited_when_enabled(core, make_user, grant, roles, audit_entries):
    actor = make_user()
    grant(actor, roles["role_admin"])

    with pytest.raises(PermissionDenied):
        core.service.assign_roles(CTX, actor, make_user(), [roles["manager"]])

    [entry] = audit_entries("permission.denied")
    assert entry["actor_user_id"] == actor
    assert entry["entity_type"] == "admin_role"
    assert entry["entity_id"] == roles["manager"]
    assert audit_entries("role.assign") == []


def test_denied_attempts_not_audited_by_default(core, make_user, roles, audit_entries):
    with pytest.raises(PermissionDenied):
        core.service.list_roles(make_user())
    assert audit_entries() == []


# ==================== AUDIT LOG BROWSING ====================

T0 = datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)


@pytest.fixture()
def add_entry(session):
    """Insert an audit row with a fixed timestamp"""

    def _add_entry(action, minutes=0, actor=None, entity_type="user", ip_address="192.0.2.10", user_agent="pytest"):
        entry = AuditLog(
            actor_user_id=actor,
            action=action,
            entity_type=entity_type,
            entity_id="e1",
            audit_metadata={},
            ip_address=ip_address,
            user_agent=user_agent,
            created_at=T0 + timedelta(minutes=minutes),
        )
        session.add(entry)
        session.commit()
        return entry.id

    return _add_entry


def test_list_audit_logs_newest_first_and_paginated(core, super_admin, add_entry):
    first = add_entry("role.assign", minutes=0)
    second = add_entry("role.unassign", minutes=1)
    third = add_entry("role.create", minutes=2)

    page = core.service.list_audit_logs(super_admin, limit=2)
    assert [e["id"] for e in page["logs"]] == [third, second]
    assert page["pagination"] == {"total": 3, "limit": 2, "offset": 0, "hasMore": True}

    page = core.service.list_audit_logs(super_admin, limit=2, offset=2)
    assert [e["id"] for e in page["logs"]] == [first]
    assert page["pagination"]["hasMore"] is False


def test_list_audit_logs_filters(core, super_admin, make_user, add_entry):
    actor = make_user()
    by_actor = add_entry("role.assign", minutes=0, actor=actor)
    add_entry("role.assign", minutes=1, actor=super_admin, user_agent="Mozilla/5.0")
    on_role = add_entry("role.delete", minutes=2, actor=super_admin, entity_type="admin_role", ip_address="10.1.2.3")

    def ids(**filters):
        return [e["id"] for e in core.service.list_audit_logs(super_admin, **filters)["logs"]]

    assert ids(actor_user_id=actor) == [by_actor]
    assert ids(action="role.delete") == [on_role]
    assert ids(entity_type="admin_role") == [on_role]
    assert ids(search="10.1.") == [on_role]
    assert len(ids(search="mozilla")) == 1
    assert ids(start_date=T0 + timedelta(minutes=2)) == [on_role]
    assert ids(end_date=T0) == [by_actor]
    # Naive datetimes are read as UTC
    assert ids(end_date=T0.replace(tzinfo=None)) == [by_actor]


def test_list_audit_logs_caps_page_size(core, super_admin, add_entry):
    add_entry("role.assign")
    page = core.service.list_audit_logs(super_admin, limit=500)
    assert page["pagination"]["limit"] == 100


@pytest.mark.parametrize(
    "filters",
    [
        {"limit": 0},
        {"offset": -1},
        {"start_date": T0 + timedelta(days=1), "end_date": T0},
    ],
)
def test_list_audit_logs_rejects_bad_paging(core, super_admin, filters):
    with pytest.raises(ValidationError):
        core.service.list_audit_logs(super_admin, **filters)


def test_audit_browsing_requires_view_audit_logs(core, make_user):
    outsider = make_user()
    with pytest.raises(PermissionDenied):
        core.service.list_audit_logs(outsider)
    with pytest.raises(PermissionDenied):
        core.service.audit_log_stats(outsider)


def test_audit_log_stats(core, super_admin, make_user, add_entry):
    actor = make_user(email="ops@example.com")
    add_entry("role.assign", minutes=0, actor=actor)
    add_entry("role.assign", minutes=1, actor=actor)
    add_entry("permission.denied", minutes=90, actor=super_admin)
    # Outside the window
    add_entry("role.delete", minutes=60 * 24 * 3, actor=actor)

    stats = core.service.audit_log_stats(super_admin, start_date=T0, end_date=T0 + timedelta(days=1))

    assert stats["totalLogs"] == 3
    assert stats["actionBreakdown"] == [
        {"action": "role.assign", "count": 2},
        {"action": "permission.denied", "count": 1},
    ]
    assert stats["userBreakdown"][0]["userId"] == actor
    assert stats["userBreakdown"][0]["userEmail"] == "ops@example.com"
    assert stats["userBreakdown"][0]["count"] == 2
    assert stats["dailyActivity"] == [{"date": "2024-03-01", "count": 3}]
    assert len(stats["hourlyActivity"]) == 24
    assert stats["hourlyActivity"][9]["count"] == 2
    assert stats["hourlyActivity"][10]["count"] == 1
    assert stats["categoryBreakdown"] == [
        {"category": "role", "count": 2},
        {"category": "permission", "count": 1},
    ]
