"""
Role-Based Access Control (RBAC) dependencies for FastAPI.
Provides reusable dependency functions to protect routes with permission checks,
and the mapping from RBAC errors to HTTP responses.
"""

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from loguru import logger

from rbac.audit import RequestContext
from rbac.core import RBACCore
from rbac.errors import Conflict, NotFound, PermissionDenied, ValidationError

# ==================== DEPENDENCY FUNCTIONS ====================


def get_rbac(request: Request) -> RBACCore:
    """
    Dependency: the process-wide RBAC core, stored on app.state.
    """
    rbac = getattr(request.app.state, "rbac", None)
    if rbac is None:
        raise RuntimeError("RBAC core not configured: set app.state.rbac")
    return rbac


def get_current_user_id(request: Request) -> str:
    """
    Dependency: id of the already-authenticated caller.

    Authentication middleware upstream sets ``request.state.user_id``;
    this module never verifies credentials itself.
    """
    user_id = getattr(request.state, "user_id", None)
    if not user_id:
        raise HTTPException(status_code=401, detail="Unauthorized")
    return user_id


def get_request_context(request: Request) -> RequestContext:
    """
    Dependency: client IP / User-Agent for audit entries.
    """
    return RequestContext.from_request(request)


def require_permission(required_permission):
    """
    Dependency factory: Require specific permission.
    Returns the caller's user id when the check passes.
    """
    async def _require_permission(
        user_id: str = Depends(get_current_user_id),
        ctx: RequestContext = Depends(get_request_context),
        rbac: RBACCore = Depends(get_rbac),
    ) -> str:
        try:
            rbac.require_permission(user_id, required_permission, request_context=ctx)
        except NotFound:
            logger.warning(f"[RBAC] Unknown caller {user_id}")
            raise HTTPException(status_code=401, detail="Unauthorized")
        return user_id

    return _require_permission


# ==================== ERROR MAPPING ====================


def _error_response(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})


def register_exception_handlers(app: FastAPI) -> None:
    """Translate RBAC core errors to HTTP status codes"""

    @app.exception_handler(PermissionDenied)
    async def _permission_denied(request: Request, exc: PermissionDenied):
        return _error_response(403, exc.message)

    @app.exception_handler(NotFound)
    async def _not_found(request: Request, exc: NotFound):
        return _error_response(404, exc.message)

    @app.exception_handler(ValidationError)
    async def _validation_error(request: Request, exc: ValidationError):
        return _error_response(400, exc.message)

    @app.exception_handler(Conflict)
    async def _conflict(request: Request, exc: Conflict):
        return _error_response(409, exc.message)
