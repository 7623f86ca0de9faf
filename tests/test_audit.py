from types import SimpleNamespace

from sqlalchemy.exc import OperationalError

from rbac.audit import AuditAction, AuditLogger, EntityType, RequestContext


def _failing_session_factory():
    raise OperationalError("INSERT INTO audit_logs", {}, Exception("disk I/O error"))


def test_entry_is_written_with_request_context(core, audit_entries):
    ctx = RequestContext(ip_address="10.0.0.7", user_agent="pytest")

    written = core.audit.create_audit_log(
        ctx,
        user_id="actor-1",
        action=AuditAction.ROLE_CREATE,
        entity_type=EntityType.ROLE,
        entity_id="role-1",
        metadata={"roleCode": "viewer"},
    )

    assert written is True
    [entry] = audit_entries()
    assert entry["action"] == "role.create"
    assert entry["entity_type"] == "admin_role"
    assert entry["metadata"] == {"roleCode": "viewer"}
    assert entry["ip_address"] == "10.0.0.7"
    assert entry["user_agent"] == "pytest"


def test_missing_context_falls_back_to_unknown(core, audit_entries):
    core.audit.create_audit_log(None, user_id="actor-1", action="role.delete")
    [entry] = audit_entries()
    assert entry["ip_address"] == "unknown"
    assert entry["metadata"] == {}


def test_write_failure_is_swallowed():
    audit = AuditLogger(_failing_session_factory)
    assert audit.create_audit_log(None, user_id="actor-1", action=AuditAction.ROLE_ASSIGN) is False


def test_request_context_prefers_first_forwarded_hop():
    request = SimpleNamespace(
        headers={"x-forwarded-for": "203.0.113.9, 10.0.0.1", "user-agent": "console/2.1"},
        client=SimpleNamespace(host="10.0.0.1"),
    )
    ctx = RequestContext.from_request(request)
    assert ctx.ip_address == "203.0.113.9"
    assert ctx.user_agent == "console/2.1"


def test_request_context_without_proxy_headers():
    request = SimpleNamespace(headers={}, client=SimpleNamespace(host="127.0.0.1"))
    ctx = RequestContext.from_request(request)
    assert ctx == RequestContext(ip_address="127.0.0.1", user_agent="unknown")

    request = SimpleNamespace(headers={"x-real-ip": "198.51.100.4"}, client=None)
    assert RequestContext.from_request(request).ip_address == "198.51.100.4"
