"""
Typed query builder for generated tables
Mirrors the from(table).select().eq().order().range() style of hosted
PostgreSQL clients and compiles to parameterized SQL for asyncpg
"""
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple, Union


def quote_ident(name: str) -> str:
    """Quote PostgreSQL identifier"""
    return '"' + str(name).replace('"', '""') + '"'


def qualified(table: str, schema: Optional[str] = None) -> str:
    if schema:
        return f"{quote_ident(schema)}.{quote_ident(table)}"
    return quote_ident(table)


@dataclass
class QuerySpec:
    """Driver-independent description of one table operation"""

    table: str
    schema: Optional[str] = None
    action: str = "select"
    columns: Optional[List[str]] = None
    count: Optional[str] = None
    head: bool = False
    filters: List[Tuple[str, Any]] = field(default_factory=list)
    order_by: Optional[Tuple[str, bool]] = None
    offset: Optional[int] = None
    limit: Optional[int] = None
    values: Optional[Dict[str, Any]] = None


@dataclass
class QueryResult:
    data: List[Dict[str, Any]] = field(default_factory=list)
    count: Optional[int] = None


@dataclass
class CompiledQuery:
    sql: Optional[str]
    args: List[Any]
    count_sql: Optional[str] = None
    count_args: List[Any] = field(default_factory=list)


def _filter_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _where(spec: QuerySpec, args: List[Any], alias: Optional[str] = None) -> str:
    clauses = []
    prefix = f"{alias}." if alias else ""
    for column, value in spec.filters:
        if value is None:
            clauses.append(f"{prefix}{quote_ident(column)} IS NULL")
        else:
            args.append(_filter_value(value))
            clauses.append(f"{prefix}{quote_ident(column)}::text = ${len(args)}")
    return (" WHERE " + " AND ".join(clauses)) if clauses else ""


def compile_query(spec: QuerySpec) -> CompiledQuery:
    """
    Render a QuerySpec to SQL

    Equality filters compare on the text form of the column so string
    query parameters match uuid, integer and boolean columns alike.
    Insert and update values go through json_populate_record so the
    database coerces JSON values to the column types.
    """
    target = qualified(spec.table, spec.schema)

    if spec.action == "select":
        projection = ", ".join(quote_ident(c) for c in spec.columns) if spec.columns else "*"
        count_sql = None
        count_args: List[Any] = []
        if spec.count:
            count_sql = f"SELECT count(*) FROM {target}" + _where(spec, count_args)
        if spec.head:
            return CompiledQuery(sql=None, args=[], count_sql=count_sql, count_args=count_args)

        args: List[Any] = []
        sql = f"SELECT {projection} FROM {target}" + _where(spec, args)
        if spec.order_by:
            column, ascending = spec.order_by
            sql += f" ORDER BY {quote_ident(column)} {'ASC' if ascending else 'DESC'}"
        if spec.limit is not None:
            args.append(int(spec.limit))
            sql += f" LIMIT ${len(args)}"
        if spec.offset:
            args.append(int(spec.offset))
            sql += f" OFFSET ${len(args)}"
        return CompiledQuery(sql=sql, args=args, count_sql=count_sql, count_args=count_args)

    if spec.action == "insert":
        values = spec.values or {}
        if not values:
            return CompiledQuery(sql=f"INSERT INTO {target} DEFAULT VALUES RETURNING *", args=[])
        cols = ", ".join(quote_ident(c) for c in values)
        sql = (
            f"INSERT INTO {target} ({cols}) "
            f"SELECT {cols} FROM json_populate_record(NULL::{target}, $1::json) "
            f"RETURNING *"
        )
        return CompiledQuery(sql=sql, args=[values])

    if spec.action == "update":
        values = spec.values or {}
        if not values:
            raise ValueError("update requires at least one column")
        args = [values]
        assignments = ", ".join(f"{quote_ident(c)} = _r.{quote_ident(c)}" for c in values)
        sql = (
            f"UPDATE {target} AS _t SET {assignments} "
            f"FROM json_populate_record(NULL::{target}, $1::json) AS _r"
            + _where(spec, args, alias="_t")
            + " RETURNING _t.*"
        )
        return CompiledQuery(sql=sql, args=args)

    if spec.action == "delete":
        args = []
        sql = f"DELETE FROM {target}" + _where(spec, args) + " RETURNING *"
        return CompiledQuery(sql=sql, args=args)

    raise ValueError(f"Unsupported query action: {spec.action}")


class TableQuery:
    """Fluent builder bound to an executor exposing run_query(spec)"""

    def __init__(self, executor: Any, table: str, schema: Optional[str] = None):
        self._executor = executor
        self.spec = QuerySpec(table=table, schema=schema)

    def select(
        self,
        columns: Union[str, List[str], None] = "*",
        count: Optional[str] = None,
        head: bool = False,
    ) -> "TableQuery":
        self.spec.action = "select"
        if isinstance(columns, str):
            columns = [] if columns.strip() == "*" else [c.strip() for c in columns.split(",") if c.strip()]
        self.spec.columns = list(columns) if columns else None
        self.spec.count = count
        self.spec.head = head
        return self

    def eq(self, column: str, value: Any) -> "TableQuery":
        self.spec.filters.append((column, value))
        return self

    def order(self, column: str, desc: bool = False) -> "TableQuery":
        self.spec.order_by = (column, not desc)
        return self

    def range(self, start: int, end: int) -> "TableQuery":
        """Inclusive row window, zero-based"""
        self.spec.offset = start
        self.spec.limit = end - start + 1
        return self

    def limit(self, count: int) -> "TableQuery":
        self.spec.limit = count
        return self

    def insert(self, values: Dict[str, Any]) -> "TableQuery":
        self.spec.action = "insert"
        self.spec.values = dict(values)
        return self

    def update(self, values: Dict[str, Any]) -> "TableQuery":
        self.spec.action = "update"
        self.spec.values = dict(values)
        return self

    def delete(self) -> "TableQuery":
        self.spec.action = "delete"
        return self

    async def execute(self) -> QueryResult:
        return await self._executor.run_query(self.spec)
