"""
Generated API Endpoints
Serves /api/<apiId>/... by delegating to the published router
"""
from fastapi import APIRouter, Depends, Request, Response
from fastapi.openapi.docs import get_swagger_ui_html
from fastapi.responses import JSONResponse
from typing import Any, Dict, Optional
import json

from apiforge.core.config import settings
from apiforge.core.container import get_factory, get_registry
from apiforge.core.exceptions import NotFoundError, ValidationError
from apiforge.services.api_factory import ApiFactory
from apiforge.services.api_registry import ApiRegistry
from apiforge.services.openapi_builder import build_openapi
from apiforge.services.route_factory import GeneratedRouter, RouteRequest

router = APIRouter()

DISPATCH_METHODS = ["GET", "POST", "PUT", "PATCH", "DELETE"]


def caller_tenant(request: Request) -> Optional[str]:
    """Tenant the caller named explicitly; None when it fell back to the owner or ADMIN"""
    if getattr(request.state, "explicit_tenant", False):
        return request.state.tenant_id
    return None


async def load_router(api_id: str, registry: ApiRegistry, tenant_id: Optional[str]) -> GeneratedRouter:
    published = await registry.get(api_id)
    if published is None or (tenant_id and published.tenant_id != tenant_id):
        raise NotFoundError("API not found", {"apiId": api_id})
    return published


async def read_json_body(request: Request) -> Any:
    raw = await request.body()
    if not raw:
        return None
    try:
        return json.loads(raw)
    except ValueError:
        raise ValidationError("Request body must be valid JSON")


@router.get("/api/{api_id}/docs", include_in_schema=False)
async def api_docs(
    api_id: str,
    request: Request,
    registry: ApiRegistry = Depends(get_registry),
):
    """
    Swagger UI for one generated API
    """
    await load_router(api_id, registry, caller_tenant(request))
    return get_swagger_ui_html(
        openapi_url=f"/api/{api_id}/swagger.json",
        title=f"{settings.APP_NAME} - API {api_id}",
    )


@router.get("/api/{api_id}/swagger.json", include_in_schema=False)
async def api_openapi(
    api_id: str,
    request: Request,
    factory: ApiFactory = Depends(get_factory),
    registry: ApiRegistry = Depends(get_registry),
) -> Dict[str, Any]:
    """
    OpenAPI document of one generated API, served relative to its mount point
    """
    tenant = caller_tenant(request)
    published = await load_router(api_id, registry, tenant)
    record = await factory.get_record(api_id, tenant)
    return build_openapi(
        published.graph,
        title=f"Generated API {published.api_identifier}",
        description=record.prompt,
        server_url=f"/api/{api_id}",
        tenant_column=settings.TENANT_COLUMN,
    )


@router.get("/api/{api_id}/sql", include_in_schema=False)
async def api_sql(
    api_id: str,
    request: Request,
    factory: ApiFactory = Depends(get_factory),
) -> Dict[str, str]:
    """
    DDL used to materialize the API
    """
    return {"sql": await factory.get_sql(api_id, caller_tenant(request))}


@router.api_route("/api/{api_id}", methods=DISPATCH_METHODS, include_in_schema=False)
@router.api_route("/api/{api_id}/{path:path}", methods=DISPATCH_METHODS, include_in_schema=False)
async def dispatch(
    api_id: str,
    request: Request,
    path: str = "",
    registry: ApiRegistry = Depends(get_registry),
):
    """
    Hand the request to the generated router of this API
    """
    tenant = caller_tenant(request)
    published = await load_router(api_id, registry, tenant)

    body = None
    if request.method in ("POST", "PUT", "PATCH"):
        body = await read_json_body(request)

    result = await published.dispatch(RouteRequest(
        method=request.method,
        path=f"/{path}",
        query=dict(request.query_params),
        body=body,
        tenant_id=tenant,
    ))

    if result.status_code == 204:
        return Response(status_code=204)
    return JSONResponse(status_code=result.status_code, content=result.body)
