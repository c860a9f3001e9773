# propflow/core/store/database.py
from __future__ import annotations

import hashlib
from typing import Any

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from propflow.core.logging import get_logger
from propflow.core.models.agent_pg import Base
from propflow.core.models.database import DatabaseConfig
from propflow.core.utils.url import is_sqlite_url, mask_database_url


class Database:
    """
    Async engine and session factory shared by every store.

    PostgreSQL gets the configured connection pool; SQLite (used for local
    development and tests) only receives the options its dialect accepts.
    """

    def __init__(self, config: DatabaseConfig):
        self.config = config
        self.logger = get_logger('database')
        self.is_sqlite = is_sqlite_url(config.database_url)

        engine_cfg: dict[str, Any]
        if self.is_sqlite:
            engine_cfg = {
                'echo': config.echo,
                'pool_pre_ping': config.pool_pre_ping,
                'connect_args': {'timeout': 30},
            }
        else:
            engine_cfg = config.model_dump(exclude={'database_url'}, exclude_none=True)
        self.async_engine = create_async_engine(config.database_url, **engine_cfg)
        self.session_factory: async_sessionmaker[AsyncSession] = async_sessionmaker(
            self.async_engine, expire_on_commit=False
        )
        self._initialized = False

        self.logger.info(f'Database configured: {mask_database_url(config.database_url)}')

    def _schema_advisory_key(self) -> int:
        """Stable 64-bit advisory lock key derived from the database URL."""
        basis = self.config.database_url.encode('utf-8', errors='ignore')
        h = hashlib.sha256(b'propflow-schema:' + basis).digest()
        return int.from_bytes(h[:8], byteorder='big', signed=True)

    async def ensure_schema_initialized(self) -> None:
        """
        Create tables if they do not exist.

        Safe to call repeatedly and from several processes; on PostgreSQL
        DDL is serialized with a transaction-scoped advisory lock.
        """
        if self._initialized:
            return
        async with self.async_engine.begin() as conn:
            if not self.is_sqlite:
                await conn.execute(
                    text('SELECT pg_advisory_xact_lock(CAST(:key AS BIGINT))'),
                    {'key': self._schema_advisory_key()},
                )
            await conn.run_sync(Base.metadata.create_all)
        self._initialized = True

    async def close_async(self) -> None:
        await self.async_engine.dispose()
