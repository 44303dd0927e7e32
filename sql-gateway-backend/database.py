"""
QueryGuard - Database Access
============================

Bounded connection pool and read-only query execution for read_query.

POOL:
    QueuePool(pool_size=N, max_overflow=0). A caller that finds all N
    connections busy blocks for up to `pool_timeout` seconds; this is the
    gateway's only backpressure. A timeout surfaces as an infrastructure
    error, it is never retried here.

READ-ONLY:
    Every borrowed connection runs its request inside a transaction that is
    forced read-only (PostgreSQL `SET TRANSACTION READ ONLY`, SQLite
    `PRAGMA query_only`) and is rolled back and returned to the pool on
    every exit path.
"""

import logging
from typing import Any, Dict, List, Optional

from sqlalchemy import create_engine, inspect
from sqlalchemy.engine import Engine
from sqlalchemy.pool import QueuePool

logger = logging.getLogger(__name__)

# Validated SQL reaches the driver verbatim: no `:name` bind parsing, and
# `%` stays literal on format-style drivers such as psycopg2
DRIVER_SQL_OPTIONS = {"no_parameters": True}


class DatabaseManager:
    """Owns the engine/pool used for database-mode queries."""

    def __init__(self, engine: Engine):
        self.engine = engine
        logger.info(f"Database engine ready (dialect: {engine.dialect.name})")

    @classmethod
    def from_url(cls, database_url: str, pool_size: int = 10, pool_timeout: float = 30) -> "DatabaseManager":
        engine = create_engine(
            database_url,
            poolclass=QueuePool,
            pool_size=pool_size,
            max_overflow=0,
            pool_timeout=pool_timeout,
            pool_pre_ping=True,
        )
        return cls(engine)

    def _set_read_only(self, conn) -> None:
        dialect = self.engine.dialect.name
        if dialect == "postgresql":
            conn.exec_driver_sql("SET TRANSACTION READ ONLY")
        elif dialect == "sqlite":
            conn.exec_driver_sql("PRAGMA query_only = ON")
        elif dialect in ("mysql", "mariadb"):
            conn.exec_driver_sql("SET TRANSACTION READ ONLY")
        else:
            logger.warning(f"No read-only transaction mode known for dialect '{dialect}'")

    def execute_read_only(self, sql: str) -> List[Dict[str, Any]]:
        """
        Run an already validated SELECT on one pooled connection.

        Returns:
            Result rows as dicts (column -> value)
        """
        conn = self.engine.connect()
        try:
            conn.begin()
            self._set_read_only(conn)
            result = conn.exec_driver_sql(sql, execution_options=DRIVER_SQL_OPTIONS)
            rows = [dict(row._mapping) for row in result.fetchall()]
            logger.info(f"Query executed: {len(rows)} rows returned")
            return rows
        finally:
            try:
                conn.rollback()
                if self.engine.dialect.name == "sqlite":
                    conn.exec_driver_sql("PRAGMA query_only = OFF")
                    conn.commit()
            finally:
                conn.close()

    def get_live_columns(self, schema: Optional[str], table: str) -> List[Dict[str, Any]]:
        """Column names and types as reported by the database."""
        inspector = inspect(self.engine)
        return [
            {"name": col["name"], "type": str(col["type"])}
            for col in inspector.get_columns(table, schema=schema)
        ]

    def dispose(self) -> None:
        self.engine.dispose()
