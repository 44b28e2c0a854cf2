"""
Service container
Builds the object graph once per application and hands it to handlers
through FastAPI dependencies
"""
from dataclasses import dataclass
from typing import Optional

from fastapi import Request

from apiforge.core.config import Settings, settings as default_settings
from apiforge.core.database import DatabasePool
from apiforge.core.llm import LLMClient
from apiforge.services.api_factory import ApiFactory
from apiforge.services.api_registry import ApiRegistry, ApiRegistryStore
from apiforge.services.audit_log import AuditLogger, AuditLogStore
from apiforge.services.materializer import Materializer
from apiforge.services.route_factory import RouteFactory
from apiforge.services.schema_analyzer import SchemaAnalyzer
from apiforge.services.schema_normalizer import SchemaNormalizer


@dataclass
class ServiceContainer:
    settings: Settings
    db: DatabasePool
    llm: LLMClient
    registry: ApiRegistry
    audit_log: AuditLogger
    factory: ApiFactory

    async def shutdown(self) -> None:
        await self.registry.flush()
        await self.audit_log.flush()
        await self.llm.close()
        await self.db.close_pool()


def build_container(config: Optional[Settings] = None, db=None, llm=None, registry_store=None, audit_store=None) -> ServiceContainer:
    """
    Wire the services

    Any collaborator may be supplied; the rest are built from settings.
    """
    config = config or default_settings
    db = db or DatabasePool(config)
    llm = llm or LLMClient(config)

    normalizer = SchemaNormalizer(config.TENANT_COLUMN)
    analyzer = SchemaAnalyzer(llm, normalizer)
    materializer = Materializer(db, config.TENANT_COLUMN)
    route_factory = RouteFactory(db, config.TENANT_COLUMN)
    registry = ApiRegistry(registry_store or ApiRegistryStore(db, config.REGISTRY_TABLE), route_factory)
    audit_log = AuditLogger(audit_store or AuditLogStore(db, config.AUDIT_TABLE))

    factory = ApiFactory(
        analyzer=analyzer,
        normalizer=normalizer,
        materializer=materializer,
        route_factory=route_factory,
        registry=registry,
        config=config,
    )

    return ServiceContainer(
        settings=config,
        db=db,
        llm=llm,
        registry=registry,
        audit_log=audit_log,
        factory=factory,
    )


# ----------------------------------------------------------------------
# FastAPI dependencies
# ----------------------------------------------------------------------

def get_container(request: Request) -> ServiceContainer:
    return request.app.state.container


def get_factory(request: Request) -> ApiFactory:
    return get_container(request).factory


def get_registry(request: Request) -> ApiRegistry:
    return get_container(request).registry
