"""
Request Logger & Tenant Resolver middleware
Stamps each request with a tenant id and records a redacted audit entry
"""
from typing import Any, Dict, Optional
from loguru import logger
import json
import re
import time

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

from apiforge.core.config import settings
from apiforge.services.audit_log import AuditEntry


TENANT_HEADERS = ("x-user-id", "xauthuserid", "x-auth-user-id", "x-tenant-id")
TENANT_BODY_FIELDS = ("XAuthUserId", "tenantId", "tenant_id")
# generated tables carry the tenant column as data, not identity
API_TENANT_BODY_FIELDS = ("XAuthUserId",)
SENSITIVE_FIELDS = ("password", "token", "secret", "auth", "credit_card", "cvv")
REDACTED = "***REDACTED***"
TRUNCATED_SUFFIX = "...[truncated]"
API_PATH = re.compile(r"^/api/([a-fA-F0-9-]{36})(?:/|$)")
EXCLUDED_PATHS = {"/", "/health", "/ready", "/my-apis", "/favicon.ico"}


def redact(value: Any) -> Any:
    """Replace values of sensitive keys, recursively"""
    if isinstance(value, dict):
        return {
            key: REDACTED if any(s in str(key).lower() for s in SENSITIVE_FIELDS) else redact(item)
            for key, item in value.items()
        }
    if isinstance(value, list):
        return [redact(item) for item in value]
    return value


def truncate(text: str, limit: Optional[int] = None) -> str:
    limit = limit or settings.AUDIT_BODY_LIMIT
    if len(text) <= limit:
        return text
    return text[:limit] + TRUNCATED_SUFFIX


def summarize_body(raw: bytes, limit: Optional[int] = None) -> Any:
    """Redacted JSON body, or a truncated text rendering when it is too long"""
    if not raw:
        return None
    text = raw.decode("utf-8", errors="replace")
    try:
        parsed = redact(json.loads(text))
    except ValueError:
        return {"body": truncate(text, limit)}
    rendered = json.dumps(parsed, default=str)
    if len(rendered) <= (limit or settings.AUDIT_BODY_LIMIT):
        return parsed
    return {"body": truncate(rendered, limit)}


def api_id_from_path(path: str) -> Optional[str]:
    match = API_PATH.match(path)
    return match.group(1).lower() if match else None


def tenant_from_request(request: Request, body: Any, body_fields=TENANT_BODY_FIELDS) -> Optional[str]:
    """request.state -> well-known headers -> body fields"""
    tenant = getattr(request.state, "tenant_id", None)
    if tenant:
        return str(tenant)
    for header in TENANT_HEADERS:
        value = request.headers.get(header)
        if value:
            return value
    if isinstance(body, dict):
        for name in body_fields:
            if body.get(name):
                return str(body[name])
    return None


class RequestLoggerMiddleware(BaseHTTPMiddleware):
    """
    Resolves the tenant, times the request and hands an audit entry to
    the container's AuditLogger without waiting for it to be stored
    """

    async def dispatch(self, request: Request, call_next) -> Response:
        start = time.perf_counter()
        path = request.url.path
        api_id = api_id_from_path(path)
        container = getattr(request.app.state, "container", None)

        raw_body = b""
        body: Any = None
        if request.method in ("POST", "PUT", "PATCH", "DELETE"):
            raw_body = await request.body()
            if raw_body and "json" in request.headers.get("content-type", "json"):
                try:
                    body = json.loads(raw_body)
                except ValueError:
                    body = None

        body_fields = API_TENANT_BODY_FIELDS if api_id else TENANT_BODY_FIELDS
        tenant = tenant_from_request(request, body, body_fields) or settings.ADMIN_TENANT
        explicit_tenant = tenant != settings.ADMIN_TENANT
        if api_id and not explicit_tenant and container is not None:
            try:
                record = await container.registry.get_record(api_id)
                if record is not None:
                    tenant = record.tenant_id
            except Exception as e:
                logger.warning(f"Could not resolve tenant for API {api_id}: {e}")

        request.state.tenant_id = tenant
        request.state.explicit_tenant = explicit_tenant
        request.state.api_id = api_id
        request.state.is_api_request = api_id is not None

        response = await call_next(request)

        chunks = [chunk async for chunk in response.body_iterator]
        response_body = b"".join(
            chunk if isinstance(chunk, bytes) else chunk.encode("utf-8") for chunk in chunks
        )
        elapsed_ms = (time.perf_counter() - start) * 1000

        logger.info(f"{tenant} - {request.method} {path} - {response.status_code} ({elapsed_ms:.0f}ms)")

        if path not in EXCLUDED_PATHS and container is not None:
            entry = AuditEntry(
                tenant_id=tenant,
                endpoint=path,
                method=request.method,
                status_code=response.status_code,
                response_time_ms=elapsed_ms,
                api_id=api_id,
                is_api_request=api_id is not None,
                request={
                    "query": redact(dict(request.query_params)),
                    "body": summarize_body(raw_body),
                },
                response={"body": summarize_body(response_body)},
            )
            container.audit_log.record(entry)

        return Response(
            content=response_body,
            status_code=response.status_code,
            headers=dict(response.headers),
            media_type=response.media_type,
        )
