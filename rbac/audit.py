"""
Audit log writer.

Entries are written after the authoritative change has committed, in a
session of their own. A failed write is logged as a warning and never
propagates: the operation it describes has already happened.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Optional

from loguru import logger
from sqlalchemy.orm import Session

from rbac.errors import AuditWriteFailure
from rbac.repository import AuditLogRepository


class AuditAction(str, Enum):
    ROLE_ASSIGN = "role.assign"
    ROLE_UNASSIGN = "role.unassign"
    ROLE_CREATE = "role.create"
    ROLE_UPDATE = "role.update"
    ROLE_DELETE = "role.delete"
    PERMISSION_DENIED = "permission.denied"


class EntityType(str, Enum):
    USER = "user"
    ROLE = "admin_role"


@dataclass(frozen=True)
class RequestContext:
    """Request metadata captured on every audit entry"""

    ip_address: str = "unknown"
    user_agent: str = "unknown"

    @classmethod
    def from_request(cls, request) -> "RequestContext":
        """Extract client IP (proxy-aware) and User-Agent from a Starlette request"""
        headers = request.headers
        forwarded = headers.get("x-forwarded-for")
        if forwarded:
            ip_address = forwarded.split(",")[0].strip()
        elif headers.get("x-real-ip"):
            ip_address = headers.get("x-real-ip")
        elif request.client:
            ip_address = request.client.host
        else:
            ip_address = "unknown"
        return cls(ip_address=ip_address or "unknown", user_agent=headers.get("user-agent", "unknown"))


class AuditLogger:
    """Best-effort, append-only audit writer"""

    def __init__(self, session_factory: Callable[[], Session]):
        self.session_factory = session_factory

    def create_audit_log(
        self,
        request_context: Optional[RequestContext],
        *,
        user_id: Optional[str],
        action,
        entity_type=None,
        entity_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """Append one entry. Returns False (and logs) if it could not be written."""
        ctx = request_context or RequestContext()
        action = action.value if isinstance(action, Enum) else action
        entity_type = entity_type.value if isinstance(entity_type, Enum) else entity_type

        session = None
        try:
            session = self.session_factory()
            AuditLogRepository.create(
                session,
                actor_user_id=user_id,
                action=action,
                entity_type=entity_type,
                entity_id=entity_id,
                metadata=metadata or {},
                ip_address=ctx.ip_address,
                user_agent=ctx.user_agent[:500],
            )
            session.commit()
            logger.info(f"[AUDIT] {action} by {user_id} on {entity_type}:{entity_id}")
            return True
        except Exception as e:
            failure = AuditWriteFailure(f"{action} on {entity_type}:{entity_id}: {type(e).__name__}: {e}")
            logger.warning(f"[AUDIT] Failed to write audit entry: {failure}")
            if session is not None:
                try:
                    session.rollback()
                except Exception as rollback_error:
                    logger.warning(f"[AUDIT] Rollback failed: {rollback_error}")
            return False
        finally:
            if session is not None:
                session.close()
