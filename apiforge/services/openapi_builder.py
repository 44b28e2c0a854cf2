"""
OpenAPI 3 document generation for generated APIs
"""
from typing import Any, Dict, List, Optional

from apiforge.core.config import settings
from apiforge.schemas.schema_models import ColumnSpec, SchemaGraph, TableSpec


INTEGER_TYPES = ("integer", "int", "bigint", "smallint", "serial", "bigserial", "smallserial")
NUMBER_TYPES = ("numeric", "decimal", "real", "double precision", "float", "money")
EXAMPLE_UUID = "3fa85f64-5717-4562-b3fc-2c963f66afa6"


def column_property(column: ColumnSpec) -> Dict[str, Any]:
    """OpenAPI property for one column"""
    col_type = column.type.lower()
    base_type = col_type.split("(")[0].strip()
    prop: Dict[str, Any]

    if base_type in INTEGER_TYPES:
        prop = {"type": "integer", "example": 1}
    elif base_type in NUMBER_TYPES:
        prop = {"type": "number", "example": 1.5}
    elif col_type == "boolean":
        prop = {"type": "boolean", "example": True}
    elif col_type.startswith(("timestamp", "date")):
        prop = {"type": "string", "format": "date-time"}
    elif col_type == "uuid":
        prop = {"type": "string", "format": "uuid"}
        if column.name != "id":
            prop["example"] = EXAMPLE_UUID
    else:
        prop = {"type": "string", "example": column.name}

    if column.description:
        prop["description"] = column.description
    return prop


def table_schema(table: TableSpec, tenant_column: str) -> Dict[str, Any]:
    properties = {c.name: column_property(c) for c in table.columns}
    required = [
        c.name for c in table.columns
        if "not null" in c.constraints and not c.has("default") and c.name not in ("id", tenant_column)
    ]
    schema: Dict[str, Any] = {"type": "object", "properties": properties}
    if required:
        schema["required"] = required
    if table.description:
        schema["description"] = table.description
    return schema


def _ref(name: str) -> Dict[str, str]:
    return {"$ref": f"#/components/schemas/{name}"}


def _list_parameters(table: TableSpec) -> List[Dict[str, Any]]:
    return [
        {"name": "page", "in": "query", "schema": {"type": "integer", "default": 1}, "description": "Page number"},
        {"name": "limit", "in": "query", "schema": {"type": "integer", "default": settings.DEFAULT_PAGE_SIZE}, "description": "Items per page"},
        {"name": "sort", "in": "query", "schema": {"type": "string", "enum": table.column_names()}, "description": "Column to sort by"},
        {"name": "order", "in": "query", "schema": {"type": "string", "enum": ["asc", "desc"], "default": "asc"}, "description": "Sort direction"},
    ]


def _id_parameter() -> Dict[str, Any]:
    return {"name": "id", "in": "path", "required": True, "schema": {"type": "string"}}


def table_paths(table: TableSpec) -> Dict[str, Any]:
    name = table.original_name
    not_found = {"description": f"{name} record not found"}
    bad_request = {"description": "Invalid input"}
    return {
        f"/{name}": {
            "get": {
                "tags": [name],
                "summary": f"List {name}",
                "parameters": _list_parameters(table),
                "responses": {
                    "200": {
                        "description": "Paginated records",
                        "content": {"application/json": {"schema": {
                            "type": "object",
                            "properties": {
                                "data": {"type": "array", "items": _ref(name)},
                                "pagination": {
                                    "type": "object",
                                    "properties": {
                                        "page": {"type": "integer"},
                                        "limit": {"type": "integer"},
                                        "total": {"type": "integer"},
                                    },
                                },
                            },
                        }}},
                    },
                    "400": bad_request,
                },
            },
            "post": {
                "tags": [name],
                "summary": f"Create {name} record",
                "requestBody": {"required": True, "content": {"application/json": {"schema": _ref(name)}}},
                "responses": {
                    "201": {"description": "Created", "content": {"application/json": {"schema": _ref(name)}}},
                    "400": bad_request,
                },
            },
        },
        f"/{name}/{{id}}": {
            "get": {
                "tags": [name],
                "summary": f"Get {name} record by id",
                "parameters": [_id_parameter()],
                "responses": {
                    "200": {"description": "Record", "content": {"application/json": {"schema": _ref(name)}}},
                    "404": not_found,
                },
            },
            "put": {
                "tags": [name],
                "summary": f"Update {name} record",
                "parameters": [_id_parameter()],
                "requestBody": {"required": True, "content": {"application/json": {"schema": _ref(name)}}},
                "responses": {
                    "200": {"description": "Updated", "content": {"application/json": {"schema": _ref(name)}}},
                    "400": bad_request,
                    "404": not_found,
                },
            },
            "delete": {
                "tags": [name],
                "summary": f"Delete {name} record",
                "parameters": [_id_parameter()],
                "responses": {"204": {"description": "Deleted"}, "404": not_found},
            },
        },
    }


def build_openapi(
    graph: SchemaGraph,
    title: Optional[str] = None,
    description: Optional[str] = None,
    server_url: str = "/",
    tenant_column: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Generate the OpenAPI 3 document for a generated API

    Args:
        graph: Tables the API serves
        server_url: Mount prefix; callers substitute /api/<apiId>

    Returns:
        OpenAPI document as a dict
    """
    tenant_column = tenant_column or settings.TENANT_COLUMN
    paths: Dict[str, Any] = {}
    schemas: Dict[str, Any] = {}
    for table in graph.tables:
        paths.update(table_paths(table))
        schemas[table.original_name] = table_schema(table, tenant_column)

    return {
        "openapi": "3.0.0",
        "info": {
            "title": title or "Generated API",
            "version": "1.0.0",
            "description": description or f"REST API for: {', '.join(graph.names())}",
        },
        "servers": [{"url": server_url}],
        "paths": paths,
        "components": {"schemas": schemas},
    }
