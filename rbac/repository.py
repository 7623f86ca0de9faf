"""
Data access layer for the Role Store.

Repository methods never commit; the caller owns the transaction so that
multi-row changes (bulk role replacement) commit or roll back together.

Repository methods:
- User: get_by_id, get_with_roles
- Role: get_by_id, get_by_code, get_many, list_all, create, update, delete, count_assignments
- RoleAssignment: list_for_user, get, replace_for_user, delete
- AuditLog: create, list_for_entity, search, action_counts, actor_counts, timestamps_between
"""

from datetime import datetime
from typing import Dict, List, Optional, Sequence, Tuple

from sqlalchemy import func, or_
from sqlalchemy.orm import Session, selectinload

from rbac.models import AuditLog, Role, RoleAssignment, User


class UserRepository:
    """Read-only access to the users table"""

    @staticmethod
    def get_by_id(db: Session, user_id: str) -> Optional[User]:
        return db.query(User).filter(User.id == user_id).first()

    @staticmethod
    def get_with_roles(db: Session, user_id: str) -> Optional[User]:
        """User with roles eagerly loaded"""
        return (
            db.query(User)
            .options(selectinload(User.roles))
            .filter(User.id == user_id)
            .first()
        )


class RoleRepository:
    """Role definitions"""

    @staticmethod
    def get_by_id(db: Session, role_id: str) -> Optional[Role]:
        return db.query(Role).filter(Role.id == role_id).first()

    @staticmethod
    def get_by_code(db: Session, code: str) -> Optional[Role]:
        return db.query(Role).filter(Role.code == code).first()

    @staticmethod
    def get_many(db: Session, role_ids: Sequence[str]) -> Dict[str, Role]:
        """Roles keyed by id; missing ids are simply absent"""
        if not role_ids:
            return {}
        roles = db.query(Role).filter(Role.id.in_(list(role_ids))).all()
        return {role.id: role for role in roles}

    @staticmethod
    def list_all(db: Session) -> List[Role]:
        return db.query(Role).order_by(Role.created_at.asc(), Role.code.asc()).all()

    @staticmethod
    def create(
        db: Session,
        code: str,
        name: str,
        permissions: List[str],
        description: Optional[str] = None,
    ) -> Role:
        role = Role(code=code, name=name, description=description, permissions=list(permissions))
        db.add(role)
        db.flush()
        return role

    @staticmethod
    def update(db: Session, role: Role, **updates) -> Role:
        """Update name/description/permissions; unknown fields are rejected"""
        for key, value in updates.items():
            if key not in ("name", "description", "permissions"):
                raise ValueError(f"Role field cannot be updated: {key}")
            setattr(role, key, list(value) if key == "permissions" else value)
        db.flush()
        return role

    @staticmethod
    def delete(db: Session, role: Role) -> None:
        db.delete(role)
        db.flush()

    @staticmethod
    def count_assignments(db: Session, role_id: str) -> int:
        return (
            db.query(func.count(RoleAssignment.id))
            .filter(RoleAssignment.role_id == role_id)
            .scalar()
        ) or 0

    @staticmethod
    def assignment_counts(db: Session) -> Dict[str, int]:
        rows = (
            db.query(RoleAssignment.role_id, func.count(RoleAssignment.id))
            .group_by(RoleAssignment.role_id)
            .all()
        )
        return {role_id: count for role_id, count in rows}


class AssignmentRepository:
    """user <-> role join rows"""

    @staticmethod
    def list_for_user(db: Session, user_id: str) -> List[RoleAssignment]:
        return (
            db.query(RoleAssignment)
            .options(selectinload(RoleAssignment.role))
            .filter(RoleAssignment.user_id == user_id)
            .all()
        )

    @staticmethod
    def get(db: Session, user_id: str, role_id: str) -> Optional[RoleAssignment]:
        return (
            db.query(RoleAssignment)
            .filter(RoleAssignment.user_id == user_id, RoleAssignment.role_id == role_id)
            .first()
        )

    @staticmethod
    def replace_for_user(
        db: Session,
        user_id: str,
        role_ids: Sequence[str],
        assigned_by: Optional[str],
    ) -> List[RoleAssignment]:
        """Delete every assignment of the user, then insert the given set"""
        db.query(RoleAssignment).filter(RoleAssignment.user_id == user_id).delete(
            synchronize_session=False
        )
        # Unique (user_id, role_id) must not see the old rows
        db.flush()

        assignments = [
            RoleAssignment(user_id=user_id, role_id=role_id, assigned_by=assigned_by)
            for role_id in role_ids
        ]
        db.add_all(assignments)
        db.flush()
        return assignments

    @staticmethod
    def delete(db: Session, assignment: RoleAssignment) -> None:
        db.delete(assignment)
        db.flush()


class AuditLogRepository:
    """Append-only audit rows. No update or delete."""

    @staticmethod
    def create(db: Session, **fields) -> AuditLog:
        metadata = fields.pop("metadata", None)
        entry = AuditLog(audit_metadata=metadata or {}, **fields)
        db.add(entry)
        db.flush()
        return entry

    @staticmethod
    def list_for_entity(db: Session, entity_type: str, entity_id: str) -> List[AuditLog]:
        return (
            db.query(AuditLog)
            .filter(AuditLog.entity_type == entity_type, AuditLog.entity_id == entity_id)
            .order_by(AuditLog.created_at.asc())
            .all()
        )

    @staticmethod
    def search(
        db: Session,
        actor_user_id: Optional[str] = None,
        action: Optional[str] = None,
        entity_type: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        search: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> Tuple[List[AuditLog], int]:
        """
        Filtered page of entries, newest first.

        ``search`` matches a substring of the IP address or User-Agent.
        Returns (entries, total matching rows).
        """
        query = db.query(AuditLog)
        if actor_user_id:
            query = query.filter(AuditLog.actor_user_id == actor_user_id)
        if action:
            query = query.filter(AuditLog.action == action)
        if entity_type:
            query = query.filter(AuditLog.entity_type == entity_type)
        if start is not None:
            query = query.filter(AuditLog.created_at >= start)
        if end is not None:
            query = query.filter(AuditLog.created_at <= end)
        if search:
            pattern = f"%{search}%"
            query = query.filter(
                or_(AuditLog.ip_address.ilike(pattern), AuditLog.user_agent.ilike(pattern))
            )

        total = query.count()
        entries = (
            query.order_by(AuditLog.created_at.desc(), AuditLog.id.desc())
            .offset(offset)
            .limit(limit)
            .all()
        )
        return entries, total

    @staticmethod
    def action_counts(db: Session, start: datetime, end: datetime) -> List[Tuple[str, int]]:
        """(action, count) within the window, most frequent first"""
        count = func.count(AuditLog.id)
        return (
            db.query(AuditLog.action, count)
            .filter(AuditLog.created_at >= start, AuditLog.created_at <= end)
            .group_by(AuditLog.action)
            .order_by(count.desc(), AuditLog.action.asc())
            .all()
        )

    @staticmethod
    def actor_counts(
        db: Session, start: datetime, end: datetime, limit: int = 10
    ) -> List[Tuple[str, Optional[str], Optional[str], int]]:
        """(actor id, email, full name, count) of the most active actors"""
        count = func.count(AuditLog.id)
        return (
            db.query(AuditLog.actor_user_id, User.email, User.full_name, count)
            .outerjoin(User, User.id == AuditLog.actor_user_id)
            .filter(
                AuditLog.created_at >= start,
                AuditLog.created_at <= end,
                AuditLog.actor_user_id.isnot(None),
            )
            .group_by(AuditLog.actor_user_id, User.email, User.full_name)
            .order_by(count.desc())
            .limit(limit)
            .all()
        )

    @staticmethod
    def timestamps_between(db: Session, start: datetime, end: datetime) -> List[datetime]:
        rows = (
            db.query(AuditLog.created_at)
            .filter(AuditLog.created_at >= start, AuditLog.created_at <= end)
            .all()
        )
        return [created_at for (created_at,) in rows]
