"""
API Factory Service
Prompt -> schema -> tables -> router -> registry
"""
from dataclasses import dataclass
from typing import Any, Dict, List, Optional
from loguru import logger
import secrets
import string

from pydantic import ValidationError as ModelValidationError

from apiforge.core.config import Settings, settings as default_settings
from apiforge.core.exceptions import NotFoundError, ValidationError
from apiforge.core.naming import validate_tenant_id
from apiforge.schemas.api_models import ApiRecord, utc_now_iso
from apiforge.schemas.schema_models import SchemaGraph
from apiforge.services.api_registry import ApiRegistry
from apiforge.services.materializer import MaterializationReport, Materializer
from apiforge.services.route_factory import GeneratedRouter, RouteFactory
from apiforge.services.schema_analyzer import AnalysisResult, SchemaAnalyzer
from apiforge.services.schema_normalizer import SchemaNormalizer
from apiforge.services.sql_generator import emit


IDENTIFIER_ALPHABET = string.ascii_lowercase + string.digits


@dataclass
class PublishResult:
    api_id: str
    api_identifier: str
    graph: SchemaGraph
    sql: str
    report: MaterializationReport
    router: GeneratedRouter
    fallback: bool = False

    def endpoints(self) -> List[Dict[str, str]]:
        return [
            {"method": e["method"], "path": f"/api/{self.api_id}{e['path'] if e['path'] != '/' else ''}"}
            for e in self.router.endpoints
        ]


class ApiFactory:
    """Orchestrates the creation pipeline for one request"""

    def __init__(
        self,
        analyzer: SchemaAnalyzer,
        normalizer: SchemaNormalizer,
        materializer: Materializer,
        route_factory: RouteFactory,
        registry: ApiRegistry,
        config: Optional[Settings] = None,
    ):
        self.analyzer = analyzer
        self.normalizer = normalizer
        self.materializer = materializer
        self.route_factory = route_factory
        self.registry = registry
        self.settings = config or default_settings

    # ------------------------------------------------------------------
    # Schema only
    # ------------------------------------------------------------------

    async def generate_schema(self, prompt: str) -> AnalysisResult:
        if not prompt or not prompt.strip():
            raise ValidationError("prompt is required", {"field": "prompt"})
        return await self.analyzer.analyze(prompt)

    async def modify_schema(self, prompt: str, existing_tables: List[Dict[str, Any]]) -> SchemaGraph:
        if not prompt or not prompt.strip():
            raise ValidationError("prompt is required", {"field": "prompt"})
        existing = self.parse_tables(existing_tables, field="existingTables")
        return await self.analyzer.analyze_modification(prompt, existing)

    # ------------------------------------------------------------------
    # Publishing
    # ------------------------------------------------------------------

    async def generate_api(self, prompt: str, tenant_id: str) -> PublishResult:
        validate_tenant_id(tenant_id)
        analysis = await self.generate_schema(prompt)
        result = await self.publish_graph(analysis.graph, tenant_id, prompt)
        result.fallback = analysis.used_fallback
        return result

    async def create_api_from_schema(
        self,
        tables: List[Dict[str, Any]],
        tenant_id: str,
        prompt: Optional[str] = None,
    ) -> PublishResult:
        validate_tenant_id(tenant_id)
        graph = self.normalizer.normalize(self.parse_tables(tables, field="tables"))
        return await self.publish_graph(graph, tenant_id, prompt or "Created from schema")

    async def publish_graph(self, graph: SchemaGraph, tenant_id: str, prompt: Optional[str]) -> PublishResult:
        api_identifier = self.new_api_identifier(tenant_id)
        sql = emit(graph, tenant_id, api_identifier)

        report = await self.materializer.materialize(graph, tenant_id, api_identifier)
        router = self.route_factory.build(report.graph, tenant_id, api_identifier)

        record = ApiRecord(
            tenant_id=tenant_id,
            api_identifier=api_identifier,
            tables=report.graph.to_payload(),
            prompt=prompt,
            sql=sql,
            created_at=utc_now_iso(),
        )
        api_id = self.registry.publish(router, record)
        logger.info(f"API {api_id} ready with tables {report.existing_tables}")

        return PublishResult(
            api_id=api_id,
            api_identifier=api_identifier,
            graph=report.graph,
            sql=sql,
            report=report,
            router=router,
        )

    def new_api_identifier(self, tenant_id: str) -> str:
        taken = self.registry.identifiers_for_tenant(tenant_id)
        length = self.settings.API_IDENTIFIER_LENGTH
        while True:
            candidate = "".join(secrets.choice(IDENTIFIER_ALPHABET) for _ in range(length))
            if candidate not in taken:
                return candidate

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------

    async def get_record(self, api_id: str, tenant_id: Optional[str] = None) -> ApiRecord:
        record = await self.registry.get_record(api_id)
        if record is None or (tenant_id and record.tenant_id != tenant_id):
            raise NotFoundError("API not found", {"apiId": api_id})
        return record

    async def get_sql(self, api_id: str, tenant_id: Optional[str] = None) -> str:
        record = await self.get_record(api_id, tenant_id)
        return record.sql or ""

    def list_tenant_apis(self, tenant_id: str) -> List[ApiRecord]:
        return self.registry.list_for_tenant(tenant_id)

    async def delete_api(self, api_id: str, tenant_id: str) -> None:
        await self.get_record(api_id, tenant_id)
        await self.registry.unpublish(api_id)

    @staticmethod
    def parse_tables(tables: Any, field: str = "tables") -> SchemaGraph:
        if not isinstance(tables, list) or not tables:
            raise ValidationError(f"{field} must be a non-empty array of tables", {"field": field})
        try:
            return SchemaGraph.from_payload(tables)
        except ModelValidationError as e:
            raise ValidationError(
                f"{field} does not match the table schema",
                {"field": field, "errors": e.errors(include_url=False, include_context=False)},
            ) from e
