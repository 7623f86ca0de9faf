"""Shared pytest fixtures for the RBAC core tests."""

from typing import List, Optional

import pytest

from rbac.config import RBACConfig
from rbac.core import RBACCore
from rbac.models import AuditLog, Role, RoleAssignment, User


def make_config(**overrides) -> RBACConfig:
    """In-memory SQLite config, isolated from whatever .env is around"""
    settings = dict(
        database_url="sqlite:///:memory:",
        permission_cache_ttl=300,
        audit_denied_attempts=False,
        seed_default_roles=False,
        trusted_user_header=None,
        echo=False,
    )
    settings.update(overrides)
    return RBACConfig(**settings)


@pytest.fixture()
def config(request) -> RBACConfig:
    """Override settings with @pytest.mark.parametrize("config", [{...}], indirect=True)"""
    return make_config(**getattr(request, "param", {}))


@pytest.fixture()
def core(config: RBACConfig):
    """Fresh RBAC core on its own in-memory database"""
    rbac = RBACCore(config)
    yield rbac
    rbac.db.drop_tables()
    rbac.db.dispose()


@pytest.fixture()
def session(core: RBACCore):
    db = core.db.session_factory()
    yield db
    db.close()


@pytest.fixture()
def make_user(core: RBACCore):
    counter = {"n": 0}

    def _make_user(email: Optional[str] = None, is_super_admin: bool = False) -> str:
        counter["n"] += 1
        db = core.db.session_factory()
        try:
            user = User(
                email=email or f"user{counter['n']}@example.com",
                full_name=f"User {counter['n']}",
                is_super_admin=is_super_admin,
            )
            db.add(user)
            db.commit()
            return user.id
        finally:
            db.close()

    return _make_user


@pytest.fixture()
def make_role(core: RBACCore):
    def _make_role(code: str, permissions: List[str], name: Optional[str] = None) -> str:
        db = core.db.session_factory()
        try:
            role = Role(code=code, name=name or code.replace("_", " ").title(), permissions=list(permissions))
            db.add(role)
            db.commit()
            return role.id
        finally:
            db.close()

    return _make_role


@pytest.fixture()
def grant(core: RBACCore):
    """Insert an assignment row directly, bypassing the service and the cache"""

    def _grant(user_id: str, role_id: str) -> None:
        db = core.db.session_factory()
        try:
            db.add(RoleAssignment(user_id=user_id, role_id=role_id))
            db.commit()
        finally:
            db.close()

    return _grant


@pytest.fixture()
def role_ids_of(core: RBACCore):
    def _role_ids_of(user_id: str) -> set:
        db = core.db.session_factory()
        try:
            rows = db.query(RoleAssignment.role_id).filter(RoleAssignment.user_id == user_id).all()
            return {role_id for (role_id,) in rows}
        finally:
            db.close()

    return _role_ids_of


@pytest.fixture()
def audit_entries(core: RBACCore):
    def _audit_entries(action: Optional[str] = None) -> List[dict]:
        db = core.db.session_factory()
        try:
            query = db.query(AuditLog)
            if action is not None:
                query = query.filter(AuditLog.action == action)
            return [entry.to_dict() for entry in query.order_by(AuditLog.created_at.asc()).all()]
        finally:
            db.close()

    return _audit_entries
