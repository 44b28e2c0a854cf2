"""
tests/conftest.py
Shared fixtures for the apiforge test suite.

Collaborators are replaced by in-memory fakes: an LLM that returns
canned text, a database that interprets QuerySpecs and records every
executed script, and dict-backed registry and audit stores. No test
needs a network connection or a PostgreSQL server.
"""

from __future__ import annotations

import copy
import json
import re
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

import pytest
from fastapi.testclient import TestClient

from apiforge.core.config import settings
from apiforge.core.container import build_container
from apiforge.core.database import executor_remediation
from apiforge.core.exceptions import DatabaseError
from apiforge.core.query import QueryResult, QuerySpec, TableQuery
from apiforge.schemas.schema_models import SchemaGraph
from apiforge.services.schema_normalizer import SchemaNormalizer


# ---------------------------------------------------------------------------
# Canned AI output
# ---------------------------------------------------------------------------

BLOG_SCHEMA: Dict[str, Any] = {
    "tables": [
        {
            "name": "users",
            "columns": [
                {"name": "id", "type": "uuid", "constraints": ["primary key", "default uuid_generate_v4()"]},
                {"name": "name", "type": "varchar(255)", "constraints": ["not null"]},
                {"name": "email", "type": "varchar(255)", "constraints": ["unique"]},
            ],
        },
        {
            "name": "posts",
            "columns": [
                {"name": "id", "type": "uuid", "constraints": ["primary key", "default uuid_generate_v4()"]},
                {"name": "title", "type": "varchar(255)", "constraints": ["not null"]},
                {"name": "body", "type": "text"},
                {"name": "user_id", "type": "uuid", "constraints": ["not null"]},
            ],
            "relationships": [
                {"type": "many-to-one", "sourceColumn": "user_id", "targetTable": "users", "targetColumn": "id"},
            ],
        },
    ]
}


def blog_json(fenced: bool = False) -> str:
    text = json.dumps(BLOG_SCHEMA, indent=2)
    return f"```json\n{text}\n```" if fenced else text


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------


class FakeLLM:
    """Returns queued responses in order; the last one repeats."""

    def __init__(self, responses: Optional[List[str]] = None, error: Optional[Exception] = None) -> None:
        self.responses = list(responses or [blog_json()])
        self.error = error
        self.calls: List[Dict[str, str]] = []
        self.closed = False

    async def complete(self, system_prompt: str, user_prompt: str) -> str:
        self.calls.append({"system": system_prompt, "user": user_prompt})
        if self.error is not None:
            raise self.error
        if len(self.responses) > 1:
            return self.responses.pop(0)
        return self.responses[0]

    async def close(self) -> None:
        self.closed = True


DDL_STATEMENT = re.compile(
    r'(?P<drop>DROP TABLE IF EXISTS "(?P<dropped>[^"]+)")'
    r'|(?P<create>CREATE TABLE (?:IF NOT EXISTS )?"(?P<created>[^"]+)")'
)
HEAD_PROBE = re.compile(r'^SELECT 1 FROM "(?P<name>[^"]+)" LIMIT 1$')
CATALOG_PROBE = re.compile(r"lower\(table_name\) = lower\('(?P<name>[^']+)'\)")
FUZZY_PROBE = re.compile(r"table_name ILIKE '%(?P<name>[^%']+)%'")


def _text(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


class InMemoryDatabase:
    """
    Stand-in for DatabasePool

    execute_sql registers tables named by CREATE/DROP statements and
    answers the materializer's verification probes; table() queries run
    against lists of dicts.
    """

    def __init__(self) -> None:
        self.tables: Dict[str, List[Dict[str, Any]]] = {}
        self.scripts: List[str] = []
        self.statements: List[str] = []
        self.executor_available = True
        self.fail_when: List[Callable[[str], bool]] = []
        self.store_name: Callable[[str], str] = lambda name: name
        self.pool_open = False

    # -- pool lifecycle ----------------------------------------------------

    async def init_pool(self) -> None:
        self.pool_open = True

    async def close_pool(self) -> None:
        self.pool_open = False

    def get_pool_stats(self) -> Dict[str, Any]:
        return {"status": "active" if self.pool_open else "not_initialized"}

    async def execute(self, query: str, *args: Any) -> str:
        self.statements.append(query)
        return "OK"

    async def fetchval(self, query: str, *args: Any) -> Any:
        return 1

    # -- SQL executor ------------------------------------------------------

    async def has_sql_executor(self) -> bool:
        return self.executor_available

    def executor_remediation(self) -> str:
        return executor_remediation()

    async def execute_sql(self, sql: str) -> Any:
        statement = sql.strip()
        self.scripts.append(statement)
        for predicate in self.fail_when:
            if predicate(statement):
                raise DatabaseError("injected failure", sqlstate="XX000")

        head = HEAD_PROBE.match(statement)
        if head:
            if head.group("name") not in self.tables:
                raise DatabaseError(f'relation "{head.group("name")}" does not exist', sqlstate="42P01")
            return [{"?column?": 1}]

        catalog = CATALOG_PROBE.search(statement)
        if catalog:
            wanted = catalog.group("name").lower()
            return [{"table_name": name} for name in self.tables if name.lower() == wanted]

        fuzzy = FUZZY_PROBE.search(statement)
        if fuzzy:
            wanted = fuzzy.group("name").lower()
            return [{"table_name": name} for name in self.tables if wanted in name.lower()]

        for match in DDL_STATEMENT.finditer(statement):
            if match.group("drop"):
                self.tables.pop(self.store_name(match.group("dropped")), None)
            else:
                self.tables.setdefault(self.store_name(match.group("created")), [])
        return {"success": True}

    # -- typed queries -----------------------------------------------------

    def create_table(self, name: str, rows: Optional[List[Dict[str, Any]]] = None) -> None:
        self.tables[name] = [dict(r) for r in rows or []]

    def table(self, name: str) -> TableQuery:
        return TableQuery(self, name)

    def _matches(self, row: Dict[str, Any], spec: QuerySpec) -> bool:
        for column, value in spec.filters:
            if value is None:
                if row.get(column) is not None:
                    return False
            elif row.get(column) is None or _text(row.get(column)) != _text(value):
                return False
        return True

    async def run_query(self, spec: QuerySpec) -> QueryResult:
        if spec.table not in self.tables:
            raise DatabaseError(f'relation "{spec.table}" does not exist', table=spec.table, sqlstate="42P01")
        rows = self.tables[spec.table]
        matched = [row for row in rows if self._matches(row, spec)]

        if spec.action == "select":
            count = len(matched) if spec.count else None
            if spec.head:
                return QueryResult(data=[], count=count)
            if spec.order_by:
                column, ascending = spec.order_by
                matched = sorted(matched, key=lambda r: _text(r.get(column)), reverse=not ascending)
            start = spec.offset or 0
            end = start + spec.limit if spec.limit is not None else None
            data = [copy.deepcopy(row) for row in matched[start:end]]
            if spec.columns:
                data = [{c: row.get(c) for c in spec.columns} for row in data]
            return QueryResult(data=data, count=count)

        if spec.action == "insert":
            now = datetime.now(timezone.utc)
            row = {"id": str(uuid.uuid4()), "created_at": now, "updated_at": now}
            row.update({k: v for k, v in (spec.values or {}).items() if v is not None or k not in row})
            rows.append(row)
            return QueryResult(data=[copy.deepcopy(row)])

        if spec.action == "update":
            for row in matched:
                row.update(spec.values or {})
            return QueryResult(data=[copy.deepcopy(row) for row in matched])

        if spec.action == "delete":
            self.tables[spec.table] = [row for row in rows if row not in matched]
            return QueryResult(data=matched)

        raise ValueError(spec.action)


class InMemoryRegistryStore:
    def __init__(self) -> None:
        self.records: Dict[str, Dict[str, Any]] = {}

    async def get(self, api_id: str) -> Optional[Dict[str, Any]]:
        record = self.records.get(api_id)
        return copy.deepcopy(record) if record is not None else None

    async def upsert(self, metadata: Dict[str, Any]) -> None:
        self.records[metadata["apiId"]] = copy.deepcopy(metadata)

    async def delete(self, api_id: str) -> bool:
        return self.records.pop(api_id, None) is not None

    async def scan(self):
        for record in list(self.records.values()):
            yield copy.deepcopy(record)


class InMemoryAuditStore:
    def __init__(self) -> None:
        self.entries: List[Any] = []

    async def append(self, entry: Any) -> None:
        self.entries.append(entry)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def db() -> InMemoryDatabase:
    return InMemoryDatabase()


@pytest.fixture()
def llm() -> FakeLLM:
    return FakeLLM()


@pytest.fixture()
def registry_store() -> InMemoryRegistryStore:
    return InMemoryRegistryStore()


@pytest.fixture()
def audit_store() -> InMemoryAuditStore:
    return InMemoryAuditStore()


@pytest.fixture()
def normalizer() -> SchemaNormalizer:
    return SchemaNormalizer(settings.TENANT_COLUMN)


@pytest.fixture()
def blog_graph(normalizer: SchemaNormalizer) -> SchemaGraph:
    """The canned blog schema after normalization."""
    return normalizer.normalize(SchemaGraph.from_payload(copy.deepcopy(BLOG_SCHEMA)))


@pytest.fixture()
def container(db, llm, registry_store, audit_store):
    return build_container(
        settings,
        db=db,
        llm=llm,
        registry_store=registry_store,
        audit_store=audit_store,
    )


@pytest.fixture()
def client(container):
    """TestClient running the full lifespan against the fakes."""
    from apiforge.main import create_app

    with TestClient(create_app(container)) as test_client:
        yield test_client
