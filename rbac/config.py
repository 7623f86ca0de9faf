"""
Environment-driven configuration for the RBAC core.
"""

import os

import dotenv
from loguru import logger

dotenv.load_dotenv()


def _env_bool(name: str, default: str = "False") -> bool:
    return os.getenv(name, default).lower() in ("1", "true", "yes")


class RBACConfig:
    """Configuration for the RBAC core (database, cache, audit)"""

    def __init__(self, **overrides):
        self.database_url = os.getenv("RBAC_DATABASE_URL", "sqlite:///:memory:")

        # Connection pooling (ignored for SQLite)
        self.pool_size = int(os.getenv("DB_POOL_SIZE", "10"))
        self.max_overflow = int(os.getenv("DB_MAX_OVERFLOW", "20"))
        self.pool_recycle = int(os.getenv("DB_POOL_RECYCLE", "1500"))
        self.echo = _env_bool("DB_ECHO")

        # Staleness window for cached permission sets, in seconds
        self.permission_cache_ttl = int(os.getenv("RBAC_PERMISSION_CACHE_TTL", "300"))

        # Write an audit entry for denied permission checks / assignments
        self.audit_denied_attempts = _env_bool("RBAC_AUDIT_DENIED_ATTEMPTS")

        # Seed built-in roles on initialisation
        self.seed_default_roles = _env_bool("RBAC_SEED_DEFAULT_ROLES", "True")

        # Header carrying the caller id when a trusted gateway authenticates requests
        self.trusted_user_header = os.getenv("RBAC_TRUSTED_USER_HEADER") or None

        for key, value in overrides.items():
            if not hasattr(self, key):
                raise AttributeError(f"Unknown RBAC setting: {key}")
            setattr(self, key, value)

        if self.permission_cache_ttl <= 0:
            raise ValueError("RBAC_PERMISSION_CACHE_TTL must be positive")

        logger.debug(
            f"[RBAC] Config: cache_ttl={self.permission_cache_ttl}s, "
            f"audit_denied={self.audit_denied_attempts}"
        )
