"""
Route Factory
Builds the per-API handler table (list/read/create/update/delete, docs
and OpenAPI) over a SchemaGraph. Every query carries the tenant predicate.
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Tuple
from loguru import logger

from fastapi.encoders import jsonable_encoder

from apiforge.core.config import settings
from apiforge.core.exceptions import ApiFactoryError, NotFoundError, ValidationError
from apiforge.core.naming import prefixed_name
from apiforge.schemas.schema_models import SchemaGraph, TableSpec
from apiforge.services.openapi_builder import build_openapi


ID_PLACEHOLDERS = ("uuid-generated-by-database", "string", "")
VALUE_PLACEHOLDERS = ("uuid-generated-by-database", "string", "")
RESERVED_QUERY_PARAMS = ("page", "limit", "sort", "order")
MAX_OFFSET = 2 ** 63 - 1


@dataclass
class RouteRequest:
    method: str
    path: str
    query: Dict[str, str] = field(default_factory=dict)
    body: Any = None
    tenant_id: Optional[str] = None


@dataclass
class RouteResponse:
    status_code: int
    body: Any = None


Handler = Callable[[RouteRequest, Dict[str, str]], Awaitable[RouteResponse]]


def _segments(path: str) -> List[str]:
    return [s for s in (path or "/").split("/") if s]


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass(frozen=True)
class GeneratedRouter:
    """
    In-memory handler table for one published API

    handlers maps (METHOD, pattern) to a coroutine; patterns use {id} for
    the record segment. The tenant id is fixed at build time.
    """

    tenant_id: str
    api_identifier: str
    graph: SchemaGraph
    handlers: Mapping[Tuple[str, str], Handler]

    def match(self, method: str, path: str) -> Tuple[Handler, Dict[str, str]]:
        segments = _segments(path)
        allowed = []
        for (handler_method, pattern), handler in self.handlers.items():
            params = self._match_pattern(_segments(pattern), segments)
            if params is None:
                continue
            if handler_method == method.upper():
                return handler, params
            allowed.append(handler_method)

        if allowed:
            raise MethodNotAllowed(method.upper(), path, sorted(set(allowed)))
        raise NotFoundError(f"Route {method.upper()} {path or '/'} not found")

    @staticmethod
    def _match_pattern(pattern: List[str], segments: List[str]) -> Optional[Dict[str, str]]:
        if len(pattern) != len(segments):
            return None
        params = {}
        for expected, actual in zip(pattern, segments):
            if expected.startswith("{") and expected.endswith("}"):
                params[expected[1:-1]] = actual
            elif expected != actual:
                return None
        return params

    async def dispatch(self, request: RouteRequest) -> RouteResponse:
        if request.tenant_id and request.tenant_id != self.tenant_id:
            logger.warning(
                f"Tenant {request.tenant_id} tried to reach API {self.api_identifier} owned by another tenant"
            )
            raise NotFoundError("API not found")
        handler, params = self.match(request.method, request.path)
        return await handler(request, params)

    @property
    def endpoints(self) -> List[Dict[str, str]]:
        return [{"method": method, "path": pattern} for method, pattern in self.handlers]


class MethodNotAllowed(ApiFactoryError):
    status_code = 405
    code = "METHOD_NOT_ALLOWED"

    def __init__(self, method: str, path: str, allowed: List[str]):
        super().__init__(f"Method {method} not allowed for {path}", {"allowed": allowed})


class TableRoutes:
    """CRUD handlers for one table, bound to one tenant"""

    def __init__(self, db, table: TableSpec, physical: str, tenant_id: str, tenant_column: str):
        self.db = db
        self.table = table
        self.physical = physical
        self.tenant_id = tenant_id
        self.tenant_column = tenant_column
        self.columns = set(table.column_names())

    def _query(self):
        return self.db.table(self.physical)

    @staticmethod
    def _positive_int(value: Optional[str], default: int, name: str) -> int:
        if value is None or value == "":
            return default
        try:
            number = int(value)
        except (TypeError, ValueError):
            raise ValidationError(f"Query parameter '{name}' must be an integer", {"field": name})
        return max(1, number)

    def _check_columns(self, keys, what: str) -> None:
        unknown = sorted(k for k in keys if k not in self.columns)
        if unknown:
            raise ValidationError(
                f"Unknown {what} for {self.table.original_name}: {', '.join(unknown)}",
                {"columns": unknown},
            )

    def _body(self, request: RouteRequest) -> Dict[str, Any]:
        if not isinstance(request.body, dict):
            raise ValidationError("Request body must be a JSON object")
        return dict(request.body)

    async def _find(self, record_id: str) -> Optional[Dict[str, Any]]:
        result = await (
            self._query()
            .select("*")
            .eq("id", record_id)
            .eq(self.tenant_column, self.tenant_id)
            .limit(1)
            .execute()
        )
        return result.data[0] if result.data else None

    async def list(self, request: RouteRequest, params: Dict[str, str]) -> RouteResponse:
        query = dict(request.query)
        page = self._positive_int(query.get("page"), 1, "page")
        limit = min(self._positive_int(query.get("limit"), settings.DEFAULT_PAGE_SIZE, "limit"), settings.MAX_PAGE_SIZE)
        sort = query.get("sort") or None
        order = (query.get("order") or "asc").lower()

        if order not in ("asc", "desc"):
            raise ValidationError("Query parameter 'order' must be 'asc' or 'desc'", {"field": "order"})
        if sort:
            self._check_columns([sort], "sort column")

        filters = {k: v for k, v in query.items() if k not in RESERVED_QUERY_PARAMS and k != self.tenant_column}
        self._check_columns(filters, "filter columns")

        q = self._query().select("*", count="exact").eq(self.tenant_column, self.tenant_id)
        for column, value in filters.items():
            q = q.eq(column, value)
        if sort:
            q = q.order(sort, desc=(order == "desc"))
        offset = (page - 1) * limit
        if offset + limit > MAX_OFFSET:
            raise ValidationError("Query parameter 'page' is out of range", {"field": "page"})
        result = await q.range(offset, offset + limit - 1).execute()

        return RouteResponse(200, {
            "data": jsonable_encoder(result.data),
            "pagination": {"page": page, "limit": limit, "total": result.count or 0},
        })

    async def read(self, request: RouteRequest, params: Dict[str, str]) -> RouteResponse:
        row = await self._find(params["id"])
        if row is None:
            raise NotFoundError(f"{self.table.original_name} record not found")
        return RouteResponse(200, jsonable_encoder(row))

    def scrub_create(self, body: Dict[str, Any]) -> Dict[str, Any]:
        """Drop placeholder ids, default timestamps, null FK placeholders, force the tenant"""
        values = dict(body)

        if "id" in values and (values["id"] is None or values["id"] in ID_PLACEHOLDERS):
            del values["id"]

        now = _now_iso()
        for name in ("created_at", "updated_at"):
            if name in self.columns and (values.get(name) is None or values.get(name) in VALUE_PLACEHOLDERS):
                values[name] = now

        for key, value in list(values.items()):
            if key.endswith("_id") and key != self.tenant_column and value in VALUE_PLACEHOLDERS:
                values[key] = None

        values[self.tenant_column] = self.tenant_id
        return values

    async def create(self, request: RouteRequest, params: Dict[str, str]) -> RouteResponse:
        body = self._body(request)
        self._check_columns(body, "columns")
        values = self.scrub_create(body)

        result = await self._query().insert(values).execute()
        if not result.data:
            raise ValidationError(f"{self.table.original_name} record was not created")
        logger.info(f"Created record in {self.physical}")
        return RouteResponse(201, jsonable_encoder(result.data[0]))

    async def update(self, request: RouteRequest, params: Dict[str, str]) -> RouteResponse:
        body = self._body(request)
        self._check_columns(body, "columns")
        for protected in ("id", "created_at", self.tenant_column):
            body.pop(protected, None)
        if not body:
            raise ValidationError("Request body contains no updatable columns")
        if "updated_at" in self.columns:
            body["updated_at"] = _now_iso()

        if await self._find(params["id"]) is None:
            raise NotFoundError(f"{self.table.original_name} record not found")

        result = await (
            self._query()
            .update(body)
            .eq("id", params["id"])
            .eq(self.tenant_column, self.tenant_id)
            .execute()
        )
        if not result.data:
            raise NotFoundError(f"{self.table.original_name} record not found")
        return RouteResponse(200, jsonable_encoder(result.data[0]))

    async def delete(self, request: RouteRequest, params: Dict[str, str]) -> RouteResponse:
        if await self._find(params["id"]) is None:
            raise NotFoundError(f"{self.table.original_name} record not found")

        await (
            self._query()
            .delete()
            .eq("id", params["id"])
            .eq(self.tenant_column, self.tenant_id)
            .execute()
        )
        return RouteResponse(204, None)


class RouteFactory:
    """Builds GeneratedRouters; db is any object exposing table(name)"""

    def __init__(self, db, tenant_column: Optional[str] = None):
        self.db = db
        self.tenant_column = tenant_column or settings.TENANT_COLUMN

    def build(self, graph: SchemaGraph, tenant_id: str, api_identifier: str) -> GeneratedRouter:
        handlers: Dict[Tuple[str, str], Handler] = {}
        frozen = graph.copy_deep()

        for table in frozen.tables:
            physical = table.prefixed_name or prefixed_name(tenant_id, api_identifier, table.original_name)
            routes = TableRoutes(self.db, table, physical, tenant_id, self.tenant_column)
            base = f"/{table.original_name}"
            handlers[("GET", base)] = routes.list
            handlers[("POST", base)] = routes.create
            handlers[("GET", f"{base}/{{id}}")] = routes.read
            handlers[("PUT", f"{base}/{{id}}")] = routes.update
            handlers[("DELETE", f"{base}/{{id}}")] = routes.delete

        async def docs(request: RouteRequest, params: Dict[str, str]) -> RouteResponse:
            return RouteResponse(200, describe_api(frozen, api_identifier))

        async def swagger(request: RouteRequest, params: Dict[str, str]) -> RouteResponse:
            return RouteResponse(200, build_openapi(frozen, tenant_column=self.tenant_column))

        handlers[("GET", "/")] = docs
        handlers[("GET", "/swagger.json")] = swagger

        logger.debug(f"Built router for {tenant_id}/{api_identifier} with {len(handlers)} routes")
        return GeneratedRouter(
            tenant_id=tenant_id,
            api_identifier=api_identifier,
            graph=frozen,
            handlers=MappingProxyType(handlers),
        )


def describe_api(graph: SchemaGraph, api_identifier: str) -> Dict[str, Any]:
    """Table and endpoint listing served at the router root"""
    tables = []
    for table in graph.tables:
        base = f"/{table.original_name}"
        tables.append({
            "name": table.original_name,
            "columns": [{"name": c.name, "type": c.type} for c in table.columns],
            "endpoints": [
                {"method": "GET", "path": base, "description": f"List {table.original_name}"},
                {"method": "GET", "path": f"{base}/:id", "description": "Get one record"},
                {"method": "POST", "path": base, "description": "Create a record"},
                {"method": "PUT", "path": f"{base}/:id", "description": "Update a record"},
                {"method": "DELETE", "path": f"{base}/:id", "description": "Delete a record"},
            ],
        })
    return {
        "apiIdentifier": api_identifier,
        "tables": tables,
        "swagger": "/swagger.json",
    }
