"""
API Generation Endpoints
Prompt and schema driven creation of tenant APIs
"""
from fastapi import APIRouter, Depends, Query, Request, Response, status
from typing import Any, Dict, Optional
from loguru import logger

from apiforge.core.container import get_factory
from apiforge.core.exceptions import ValidationError
from apiforge.schemas.api_models import (
    CreateApiFromSchemaRequest,
    CreateApiResponse,
    GenerateApiRequest,
    GenerateApiResponse,
    GenerateSchemaRequest,
    ModifySchemaRequest,
    SchemaResponse,
    TenantApiListResponse,
    TenantApiSummary,
)
from apiforge.services.api_factory import ApiFactory, PublishResult

router = APIRouter()

FALLBACK_WARNING = "The AI response could not be parsed; a generic schema was generated instead"


def resolve_tenant(request: Request, body_tenant: Optional[str] = None) -> str:
    """Body tenantId wins; otherwise a tenant named by header or upstream middleware"""
    if body_tenant:
        return body_tenant
    if getattr(request.state, "explicit_tenant", False):
        return request.state.tenant_id
    raise ValidationError("tenantId is required", {"field": "tenantId"})


def _links(api_id: str) -> Dict[str, str]:
    return {
        "documentation": f"/api/{api_id}/docs",
        "swagger": f"/api/{api_id}/swagger.json",
    }


def _created(result: PublishResult) -> Dict[str, Any]:
    return dict(
        api_id=result.api_id,
        api_identifier=result.api_identifier,
        tables=result.graph.names(),
        endpoints=result.endpoints(),
        warnings=result.report.warnings,
        **_links(result.api_id),
    )


@router.post("/generate-api", response_model=GenerateApiResponse, status_code=status.HTTP_201_CREATED, response_model_exclude_none=True)
async def generate_api(
    body: GenerateApiRequest,
    request: Request,
    factory: ApiFactory = Depends(get_factory),
):
    """
    Generate, materialize and publish an API from a plain-language prompt
    """
    tenant_id = resolve_tenant(request, body.tenant_id)
    logger.info(f"Generating API for tenant {tenant_id}")

    result = await factory.generate_api(body.prompt, tenant_id)

    response = GenerateApiResponse(**_created(result))
    if result.fallback:
        response.warning = FALLBACK_WARNING
        response.fallback = True
    return response


@router.post("/generate-schema", response_model=SchemaResponse, response_model_exclude_none=True)
async def generate_schema(
    body: GenerateSchemaRequest,
    factory: ApiFactory = Depends(get_factory),
):
    """
    Analyze a prompt into a normalized schema without creating anything
    """
    analysis = await factory.generate_schema(body.prompt)
    response = SchemaResponse(tables=analysis.graph.to_payload())
    if analysis.used_fallback:
        response.warning = FALLBACK_WARNING
        response.fallback = True
    return response


@router.post("/modify-schema", response_model=SchemaResponse, response_model_exclude_none=True)
async def modify_schema(
    body: ModifySchemaRequest,
    factory: ApiFactory = Depends(get_factory),
):
    """
    Apply a plain-language change to an existing schema
    """
    graph = await factory.modify_schema(body.prompt, body.existing_tables)
    return SchemaResponse(tables=graph.to_payload())


@router.post("/create-api-from-schema", response_model=CreateApiResponse, status_code=status.HTTP_201_CREATED)
async def create_api_from_schema(
    body: CreateApiFromSchemaRequest,
    request: Request,
    factory: ApiFactory = Depends(get_factory),
):
    """
    Materialize and publish an API from client-supplied tables
    """
    tenant_id = resolve_tenant(request, body.tenant_id)
    logger.info(f"Creating API from {len(body.tables)} tables for tenant {tenant_id}")

    result = await factory.create_api_from_schema(body.tables, tenant_id, body.prompt)
    return CreateApiResponse(**_created(result))


@router.get("/my-apis", response_model=TenantApiListResponse)
async def list_my_apis(
    request: Request,
    tenant_id: Optional[str] = Query(None, alias="tenantId"),
    factory: ApiFactory = Depends(get_factory),
):
    """
    List the calling tenant's published APIs
    """
    tenant = resolve_tenant(request, tenant_id)
    records = factory.list_tenant_apis(tenant)

    apis = [
        TenantApiSummary(
            api_id=record.api_id,
            prompt=record.prompt,
            tables=[t.get("originalName") or t.get("name") for t in record.tables],
            created_at=record.created_at,
            documentation=_links(record.api_id)["documentation"],
        )
        for record in records
    ]
    return TenantApiListResponse(tenant_id=tenant, apis=apis, total=len(apis))


@router.delete("/apis/{api_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_api(
    api_id: str,
    request: Request,
    factory: ApiFactory = Depends(get_factory),
):
    """
    Unpublish one of the caller's APIs; its tables are left in place
    """
    tenant = resolve_tenant(request)
    await factory.delete_api(api_id, tenant)
    logger.info(f"Tenant {tenant} deleted API {api_id}")
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/setup-script/{api_id}")
async def setup_script(
    api_id: str,
    request: Request,
    factory: ApiFactory = Depends(get_factory),
):
    """
    Download the DDL of an API as a SQL file
    """
    tenant = request.state.tenant_id if getattr(request.state, "explicit_tenant", False) else None
    sql = await factory.get_sql(api_id, tenant)
    return Response(
        content=sql,
        media_type="application/sql",
        headers={"Content-Disposition": f'attachment; filename="apiforge-setup-{api_id}.sql"'},
    )
