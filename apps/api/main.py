# FastAPI entrypoint for the admin RBAC API

from typing import Optional

import dotenv
from fastapi import FastAPI, Request
from loguru import logger
from starlette.middleware.base import BaseHTTPMiddleware

from rbac.core import RBACCore
from rbac.rbac_dependencies import register_exception_handlers
from rbac.role_routes import router as rbac_router

dotenv.load_dotenv()


# ==================== IDENTITY MIDDLEWARE ====================

class TrustedUserHeaderMiddleware(BaseHTTPMiddleware):
    """
    Copy the caller id set by an authenticating gateway into request.state.

    Only install this behind a gateway that strips the header from
    client traffic.
    """

    def __init__(self, app, header_name: str):
        super().__init__(app)
        self.header_name = header_name

    async def dispatch(self, request: Request, call_next):
        user_id = request.headers.get(self.header_name)
        if user_id:
            request.state.user_id = user_id.strip()
        return await call_next(request)


# ==================== APP FACTORY ====================

def create_app(core: Optional[RBACCore] = None) -> FastAPI:
    app = FastAPI(
        title="Admin RBAC API",
        description="Roles, permissions and assignment management for platform admins",
        version="0.1.0",
    )

    app.state.rbac = core or RBACCore()

    header = app.state.rbac.config.trusted_user_header
    if header:
        app.add_middleware(TrustedUserHeaderMiddleware, header_name=header)
        logger.info(f"[RBAC] Reading caller id from header {header}")

    register_exception_handlers(app)
    app.include_router(rbac_router)

    @app.get("/health")
    async def health_check(request: Request):
        healthy = request.app.state.rbac.db.health_check()
        return {"status": "healthy" if healthy else "unhealthy"}

    logger.info("[RBAC] Admin API ready")
    return app

