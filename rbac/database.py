"""
Database setup and connection management for the RBAC core.

This module handles:
- SQLAlchemy engine creation
- Session factory / session lifecycle
- Idempotent table creation in dependency order
- Seeding of built-in roles
"""

from typing import Optional

from loguru import logger
from sqlalchemy import create_engine, inspect, pool, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from rbac.config import RBACConfig
from rbac.models import Base, Role
from rbac.permissions import DEFAULT_ROLES


class DatabaseManager:
    """
    Owns the engine and session factory for the RBAC tables.

    Usage:
        db = DatabaseManager(RBACConfig())
        db.initialize()
        session = db.session_factory()
    """

    # Dependencies first
    TABLE_CREATION_ORDER = [
        "users",             # No dependencies
        "roles",             # No dependencies
        "role_assignments",  # Depends on users, roles
        "audit_logs",        # No foreign keys
    ]

    def __init__(self, config: Optional[RBACConfig] = None):
        self.config = config or RBACConfig()
        self.engine = None
        self.session_factory = None

    def initialize(self):
        """Create engine, session factory and tables (IDEMPOTENT)"""
        if self.engine is not None:
            logger.warning("[DB] DatabaseManager already initialized")
            return

        self.engine = self._create_engine(self.config)
        self.session_factory = sessionmaker(
            autocommit=False,
            autoflush=False,
            bind=self.engine,
            expire_on_commit=False,
        )
        self.create_tables()
        if self.config.seed_default_roles:
            self.seed_default_roles()
        logger.info(f"[DB] RBAC database initialized ({self.engine.dialect.name})")

    @staticmethod
    def _create_engine(config: RBACConfig):
        """Create SQLAlchemy engine; SQLite in-memory shares one connection"""
        url = config.database_url
        if url.startswith("sqlite"):
            kwargs = {"connect_args": {"check_same_thread": False}}
            if ":memory:" in url or url in ("sqlite://", "sqlite:///"):
                kwargs["poolclass"] = pool.StaticPool
            return create_engine(url, echo=config.echo, **kwargs)

        return create_engine(
            url,
            echo=config.echo,
            pool_size=config.pool_size,
            max_overflow=config.max_overflow,
            pool_recycle=config.pool_recycle,
            pool_pre_ping=True,
        )

    def create_tables(self):
        """Create missing tables only"""
        if self.engine is None:
            raise RuntimeError("Database not initialized. Call initialize() first.")

        existing_tables = set(inspect(self.engine).get_table_names())
        for table_name in self.TABLE_CREATION_ORDER:
            if table_name in existing_tables:
                logger.debug(f"[DB] Table already exists: {table_name}")
                continue
            Base.metadata.tables[table_name].create(self.engine, checkfirst=True)
            logger.info(f"[DB] Created table: {table_name}")

    def seed_default_roles(self):
        """Create built-in roles that do not exist yet"""
        session = self.session_factory()
        try:
            existing_codes = {code for (code,) in session.query(Role.code).all()}

            created = []
            for code, role_data in DEFAULT_ROLES.items():
                if code not in existing_codes:
                    session.add(Role(code=code, **role_data))
                    created.append(code)

            if created:
                session.commit()
                logger.info(f"[DB] Created default roles: {created}")
        except SQLAlchemyError as e:
            logger.error(f"[DB] Error seeding default roles: {e}")
            session.rollback()
            raise
        finally:
            session.close()

    def drop_tables(self):
        """Drop all RBAC tables. USE WITH CAUTION (for testing only)."""
        if self.engine is None:
            raise RuntimeError("Database not initialized")

        logger.warning("[DB] DROPPING ALL RBAC TABLES - THIS IS DESTRUCTIVE")
        Base.metadata.drop_all(bind=self.engine)

    def health_check(self) -> bool:
        """Check if database is reachable"""
        if self.session_factory is None:
            return False
        session = self.session_factory()
        try:
            session.execute(text("SELECT 1"))
            return True
        except SQLAlchemyError as e:
            logger.error(f"[DB] Health check failed: {e}")
            return False
        finally:
            session.close()

    def dispose(self):
        """Release pooled connections"""
        if self.engine is not None:
            self.engine.dispose()
            self.engine = None
            self.session_factory = None
