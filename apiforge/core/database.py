"""
Async Database Connection Pool using asyncpg
SQL executor and typed table queries for generated APIs
"""
import asyncpg
from asyncpg import Pool, Connection
from typing import Optional, AsyncGenerator, Dict, Any, List
from contextlib import asynccontextmanager
from loguru import logger
import json
import re

from .config import Settings, settings as default_settings
from .exceptions import DatabaseError
from .query import QuerySpec, QueryResult, TableQuery, compile_query, quote_ident


SELECT_LIKE = re.compile(r"^\s*(select|with)\b", re.IGNORECASE)


def executor_remediation(function_name: str = "execute_sql", schema: str = "public") -> str:
    """SQL an operator runs once to install the executor function"""
    return f"""Run the following SQL in your database (SQL editor) as an administrator:

CREATE OR REPLACE FUNCTION {schema}.{function_name}(sql_query text)
RETURNS json
LANGUAGE plpgsql
SECURITY DEFINER
AS $$
DECLARE
  result json;
BEGIN
  IF lower(ltrim(sql_query)) LIKE 'select%' OR lower(ltrim(sql_query)) LIKE 'with%' THEN
    EXECUTE format('SELECT coalesce(json_agg(t), ''[]''::json) FROM (%s) t', sql_query) INTO result;
  ELSE
    EXECUTE sql_query;
    result := json_build_object('success', true);
  END IF;
  RETURN result;
END;
$$;

GRANT EXECUTE ON FUNCTION {schema}.{function_name}(text) TO service_role;
"""


def _json_encoder(value: Any) -> str:
    return json.dumps(value, default=str)


class DatabasePool:
    """Manages async PostgreSQL connection pool"""

    def __init__(self, config: Optional[Settings] = None):
        self.settings = config or default_settings
        self.pool: Optional[Pool] = None
        self.schema = self.settings.DATABASE_SCHEMA

    async def init_pool(self) -> None:
        """Initialize connection pool"""
        if self.pool:
            return

        try:
            self.pool = await asyncpg.create_pool(
                self.settings.get_asyncpg_dsn(),
                min_size=self.settings.DATABASE_POOL_MIN_SIZE,
                max_size=self.settings.DATABASE_POOL_SIZE,
                max_inactive_connection_lifetime=300,
                command_timeout=float(self.settings.DATABASE_COMMAND_TIMEOUT),
                init=self._register_type_handlers,
                server_settings={
                    'application_name': self.settings.APP_NAME,
                    'jit': 'off'
                }
            )
            logger.info(f"Database pool initialized with max {self.settings.DATABASE_POOL_SIZE} connections")

        except Exception as e:
            logger.error(f"Failed to initialize database pool: {e}")
            raise

    async def close_pool(self) -> None:
        """Close connection pool"""
        if self.pool:
            await self.pool.close()
            self.pool = None
            logger.info("Database pool closed")

    def get_pool_stats(self) -> Dict[str, Any]:
        """Get pool statistics safely"""
        if not self.pool:
            return {"status": "not_initialized"}

        return {
            "status": "active",
            "current_size": self.pool.get_size(),
            "idle_connections": self.pool.get_idle_size(),
            "max_size": self.pool.get_max_size(),
        }

    @asynccontextmanager
    async def acquire(self) -> AsyncGenerator[Connection, None]:
        """Acquire a connection from the pool"""
        if not self.pool:
            await self.init_pool()

        async with self.pool.acquire() as connection:
            yield connection

    async def execute(self, query: str, *args, timeout: Optional[float] = None) -> str:
        """Execute a query without returning results"""
        async with self.acquire() as conn:
            return await conn.execute(query, *args, timeout=timeout)

    async def fetch(self, query: str, *args, timeout: Optional[float] = None) -> List[asyncpg.Record]:
        """Fetch multiple rows"""
        async with self.acquire() as conn:
            return await conn.fetch(query, *args, timeout=timeout)

    async def fetchrow(self, query: str, *args, timeout: Optional[float] = None) -> Optional[asyncpg.Record]:
        """Fetch a single row"""
        async with self.acquire() as conn:
            return await conn.fetchrow(query, *args, timeout=timeout)

    async def fetchval(self, query: str, *args, timeout: Optional[float] = None) -> Any:
        """Fetch a single value"""
        async with self.acquire() as conn:
            return await conn.fetchval(query, *args, timeout=timeout)

    async def _register_type_handlers(self, conn: Connection) -> None:
        """Register JSON/JSONB codecs on every new connection"""
        for type_name in ('jsonb', 'json'):
            await conn.set_type_codec(
                type_name,
                encoder=_json_encoder,
                decoder=json.loads,
                schema='pg_catalog',
                format='text'
            )

    # ------------------------------------------------------------------
    # SQL executor
    # ------------------------------------------------------------------

    async def has_sql_executor(self) -> bool:
        """Check that the executor function exists (always true in direct mode)"""
        if self.settings.SQL_EXECUTOR_MODE == "direct":
            return True

        query = """
            SELECT EXISTS (
                SELECT 1 FROM pg_proc p
                JOIN pg_namespace n ON n.oid = p.pronamespace
                WHERE p.proname = $1 AND n.nspname = $2
            )
        """
        return bool(await self.fetchval(query, self.settings.SQL_EXECUTOR_FUNCTION, self.schema))

    def executor_remediation(self) -> str:
        return executor_remediation(self.settings.SQL_EXECUTOR_FUNCTION, self.schema)

    async def execute_sql(self, sql: str) -> Any:
        """
        Run a DDL script, DO block or probe through the SQL executor

        Args:
            sql: SQL text; SELECT/WITH statements return their rows

        Returns:
            List of row objects for queries, {"success": true} otherwise
        """
        statement = sql.strip()
        is_query = bool(SELECT_LIKE.match(statement))
        if is_query:
            statement = statement.rstrip(";").strip()

        try:
            if self.settings.SQL_EXECUTOR_MODE == "direct":
                async with self.acquire() as conn:
                    if is_query:
                        rows = await conn.fetch(statement)
                        return [dict(row) for row in rows]
                    await conn.execute(statement)
                    return {"success": True}

            function = f"{quote_ident(self.schema)}.{quote_ident(self.settings.SQL_EXECUTOR_FUNCTION)}"
            result = await self.fetchval(f"SELECT {function}($1::text)", statement)
            if isinstance(result, str):
                result = json.loads(result)
            return result

        except asyncpg.PostgresError as e:
            raise DatabaseError(str(e), sqlstate=getattr(e, "sqlstate", None)) from e

    # ------------------------------------------------------------------
    # Typed table queries
    # ------------------------------------------------------------------

    def table(self, name: str) -> TableQuery:
        """Start a query against one table in the configured schema"""
        return TableQuery(self, name, schema=self.schema)

    async def run_query(self, spec: QuerySpec) -> QueryResult:
        compiled = compile_query(spec)
        try:
            async with self.acquire() as conn:
                data: List[Dict[str, Any]] = []
                count = None
                if compiled.sql:
                    rows = await conn.fetch(compiled.sql, *compiled.args)
                    data = [dict(row) for row in rows]
                if compiled.count_sql:
                    count = await conn.fetchval(compiled.count_sql, *compiled.count_args)
                return QueryResult(data=data, count=count)

        except asyncpg.PostgresError as e:
            logger.error(f"Query on {spec.table} failed: {e}")
            raise DatabaseError(
                str(e),
                table=spec.table,
                sqlstate=getattr(e, "sqlstate", None),
                hint=getattr(e, "hint", None),
            ) from e
