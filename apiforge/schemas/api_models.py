"""
Pydantic models for API factory requests, responses and the persisted ApiRecord
"""
from pydantic import BaseModel, ConfigDict, Field, AliasChoices, field_validator
from pydantic.alias_generators import to_camel
from typing import List, Optional, Dict, Any
from datetime import datetime, timezone
import uuid


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ApiRecord(CamelModel):
    """Persisted definition of a published API; source of truth for reconstruction"""

    api_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    tenant_id: str = Field(
        validation_alias=AliasChoices("tenantId", "tenant_id", "XAuthUserId"),
        serialization_alias="tenantId",
    )
    api_identifier: Optional[str] = None
    tables: List[Dict[str, Any]] = Field(default_factory=list)
    prompt: Optional[str] = None
    sql: Optional[str] = None
    created_at: str = Field(default_factory=utc_now_iso)
    last_accessed: Optional[str] = None

    @field_validator("tables", mode="before")
    @classmethod
    def none_as_empty(cls, value: Any) -> Any:
        return [] if value is None else value

    def to_metadata(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True)


class TenantRequest(CamelModel):
    """Base for bodies that name the calling tenant"""

    tenant_id: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("tenantId", "tenant_id", "XAuthUserId"),
        serialization_alias="tenantId",
    )


class GenerateApiRequest(TenantRequest):
    prompt: str


class GenerateSchemaRequest(TenantRequest):
    prompt: str


class ModifySchemaRequest(TenantRequest):
    prompt: str
    existing_tables: List[Dict[str, Any]] = Field(
        validation_alias=AliasChoices("existingTables", "existing_tables", "existingSchema"),
    )


class CreateApiFromSchemaRequest(TenantRequest):
    tables: List[Dict[str, Any]]
    prompt: Optional[str] = None


class CreateApiResponse(CamelModel):
    api_id: str
    api_identifier: str
    documentation: str
    swagger: str
    tables: List[str]
    endpoints: List[Dict[str, str]]
    warnings: List[str] = Field(default_factory=list)


class GenerateApiResponse(CreateApiResponse):
    warning: Optional[str] = None
    fallback: Optional[bool] = None


class SchemaResponse(CamelModel):
    tables: List[Dict[str, Any]]
    warning: Optional[str] = None
    fallback: Optional[bool] = None


class TenantApiSummary(CamelModel):
    api_id: str
    prompt: Optional[str] = None
    tables: List[str]
    created_at: Optional[str] = None
    documentation: str


class TenantApiListResponse(CamelModel):
    tenant_id: str
    apis: List[TenantApiSummary]
    total: int
