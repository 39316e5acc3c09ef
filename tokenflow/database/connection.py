from typing import Optional, AsyncGenerator, Any
from sqlalchemy.ext.asyncio import (
    AsyncSession,
    create_async_engine,
    AsyncEngine,
    async_sessionmaker
)
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy import text
from contextlib import asynccontextmanager

from tokenflow.core.config import DatabaseConfig
from tokenflow.core.enums import IsolationLevel
from tokenflow.database.models import metadata
from tokenflow.utils.logger import LoggerSetup


class DatabaseConnection:
    """
    Database connection manager.
    Provides schema selection, transaction management and dialect-specific inserts.
    """
    def __init__(self, config: DatabaseConfig):
        self.config = config
        self.url = config.url
        self.schema = config.schema
        self.engine: Optional[AsyncEngine] = None
        self.session_factory: Optional[async_sessionmaker[AsyncSession]] = None

        self.logger = LoggerSetup.setup(__class__.__name__)

    @property
    def is_postgres(self) -> bool:
        return self.config.dialect == "postgresql"

    async def initialize(self) -> None:
        """Create the engine and session factory, then verify the connection"""
        if self.engine is None:
            self.engine = create_async_engine(self.url, **self.config.get_engine_options())

            self.session_factory = async_sessionmaker(
                bind=self.engine,
                class_=AsyncSession,
                expire_on_commit=False,
                autoflush=False
            )

            if self.is_postgres and self.schema != "public":
                async with self.engine.begin() as conn:
                    await conn.execute(text(f"CREATE SCHEMA IF NOT EXISTS {self.schema}"))

            self.logger.info(f"Database engine initialized ({self.config.dialect})")

    async def create_tables(self) -> None:
        """Create ingestion tables if they do not exist"""
        if self.engine is None:
            raise SQLAlchemyError("Database not initialized")

        async with self.engine.begin() as conn:
            if self.is_postgres:
                await conn.execute(text(f"SET search_path TO {self.schema}"))
            await conn.run_sync(metadata.create_all)

    async def close(self) -> None:
        """Close database connection and cleanup"""
        if self.engine:
            await self.engine.dispose()
            self.engine = None
            self.session_factory = None
            self.logger.info("Database connections closed")

    def insert(self, table: Any) -> Any:
        """
        Dialect-specific INSERT construct supporting ON CONFLICT clauses.

        Args:
            table: ORM model or Table to insert into
        """
        if self.is_postgres:
            return postgresql.insert(table)
        return sqlite.insert(table)

    @asynccontextmanager
    async def session(self, isolation_level: IsolationLevel = IsolationLevel.READ_COMMITTED) -> AsyncGenerator[AsyncSession, None]:
        """
        Get a database session with schema and isolation level set.

        Args:
            isolation_level: Optional transaction isolation level

        Raises:
            SQLAlchemyError: If database is not initialized
        """
        if not self.session_factory:
            raise SQLAlchemyError("Database not initialized")

        session = self.session_factory()
        try:
            if self.is_postgres:
                await session.execute(text(f"SET TRANSACTION ISOLATION LEVEL {isolation_level.value}"))
                await session.execute(text(f"SET LOCAL search_path TO {self.schema}"))

            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()

    async def check_health(self) -> dict[str, Any]:
        """
        Connectivity check used at startup and by the health endpoint.

        Returns:
            dict: Health check results including:
                - connection_ok: bool
                - server_time: str (on success)
                - schema: str
        """
        try:
            async with self.session() as session:
                if self.is_postgres:
                    result = await session.execute(text("SELECT NOW()"))
                else:
                    result = await session.execute(text("SELECT CURRENT_TIMESTAMP"))
                server_time = result.scalar()

                return {
                    "connection_ok": True,
                    "server_time": str(server_time),
                    "schema": self.schema
                }
        except Exception as e:
            self.logger.error(f"Database connection failed: {e}")
            return {
                "connection_ok": False,
                "error": str(e),
                "schema": self.schema
            }
