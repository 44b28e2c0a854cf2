"""
API Registry
Publishes generated routers by apiId, persists their definitions and
rebuilds routers from the persisted snapshot after a restart
"""
import asyncio
import copy
import json
import uuid
from collections import defaultdict
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Dict, List, Optional, Set, Union
from loguru import logger

from apiforge.core.config import settings
from apiforge.core.naming import prefixed_name
from apiforge.core.query import quote_ident
from apiforge.schemas.api_models import ApiRecord
from apiforge.schemas.schema_models import SchemaGraph
from apiforge.services.route_factory import GeneratedRouter, RouteFactory


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _as_uuid(api_id: str) -> Optional[uuid.UUID]:
    try:
        return uuid.UUID(str(api_id))
    except (TypeError, ValueError):
        return None


def decode_metadata(value: Any) -> Optional[Dict[str, Any]]:
    """Metadata may arrive as an object or as JSON-encoded text (possibly twice)"""
    for _ in range(3):
        if not isinstance(value, (str, bytes)):
            break
        value = json.loads(value)
    return value if isinstance(value, dict) else None


class ApiRegistryStore:
    """Backing store: api_registry(api_id uuid pk, metadata jsonb, created_at, updated_at)"""

    def __init__(self, db, table: Optional[str] = None):
        self.db = db
        self.table = quote_ident(table or settings.REGISTRY_TABLE)

    async def get(self, api_id: str) -> Optional[Dict[str, Any]]:
        key = _as_uuid(api_id)
        if key is None:
            return None
        row = await self.db.fetchrow(f"SELECT metadata FROM {self.table} WHERE api_id = $1", key)
        return decode_metadata(row["metadata"]) if row else None

    async def upsert(self, metadata: Dict[str, Any]) -> None:
        await self.db.execute(
            f"""
            INSERT INTO {self.table} (api_id, metadata, created_at, updated_at)
            VALUES ($1, $2::jsonb, NOW(), NOW())
            ON CONFLICT (api_id) DO UPDATE
            SET metadata = EXCLUDED.metadata,
                updated_at = NOW()
            """,
            uuid.UUID(metadata["apiId"]),
            metadata,
        )

    async def delete(self, api_id: str) -> bool:
        key = _as_uuid(api_id)
        if key is None:
            return False
        status = await self.db.execute(f"DELETE FROM {self.table} WHERE api_id = $1", key)
        return status.endswith(" 1")

    async def scan(self) -> AsyncIterator[Dict[str, Any]]:
        """Stream every persisted record"""
        async with self.db.acquire() as conn:
            async with conn.transaction():
                async for row in conn.cursor(f"SELECT api_id, metadata FROM {self.table} ORDER BY created_at"):
                    metadata = decode_metadata(row["metadata"])
                    if metadata is None:
                        logger.warning(f"Skipping registry row {row['api_id']}: unreadable metadata")
                        continue
                    metadata.setdefault("apiId", str(row["api_id"]))
                    yield metadata


class ApiRegistry:
    """
    apiId -> router and apiId -> record maps backed by a persistent store

    The in-memory routers are a cache; the store's snapshot is the source
    of truth and is used to rebuild routers lazily or on startup.
    """

    def __init__(self, store, route_factory: RouteFactory):
        self.store = store
        self.route_factory = route_factory
        self._routers: Dict[str, GeneratedRouter] = {}
        self._records: Dict[str, ApiRecord] = {}
        self._tenant_index: Dict[str, Set[str]] = defaultdict(set)
        self._pending: Set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Publish / unpublish
    # ------------------------------------------------------------------

    def publish(
        self,
        router: GeneratedRouter,
        metadata: Union[ApiRecord, Dict[str, Any]],
        api_id: Optional[str] = None,
    ) -> str:
        """
        Install a router and schedule persistence of its record

        Args:
            router: Router built by the route factory
            metadata: ApiRecord fields (tables snapshot, prompt, sql, ...)
            api_id: Reuse this id instead of generating one

        Returns:
            The apiId
        """
        if isinstance(metadata, ApiRecord):
            data = metadata.model_dump(by_alias=True)
        else:
            data = copy.deepcopy(metadata)
        data["tenantId"] = router.tenant_id
        if not data.get("apiIdentifier"):
            data["apiIdentifier"] = router.api_identifier
        if api_id:
            data["apiId"] = api_id

        record = ApiRecord.model_validate(data)
        record.last_accessed = _now_iso()
        api_id = record.api_id

        self._install(api_id, router, record)
        self._schedule(self.store.upsert(record.to_metadata()), f"persist {api_id}")
        logger.info(f"Published API {api_id} for tenant {record.tenant_id}")
        return api_id

    async def unpublish(self, api_id: str) -> bool:
        """Forget the router and delete the record; physical tables are kept"""
        router = self._routers.pop(api_id, None)
        record = self._records.pop(api_id, None)
        if record is not None:
            self._tenant_index[record.tenant_id].discard(api_id)
        deleted = await self.store.delete(api_id)
        if router or deleted:
            logger.info(f"Unpublished API {api_id}")
        return bool(router or deleted)

    # ------------------------------------------------------------------
    # Lookup / reconstruction
    # ------------------------------------------------------------------

    async def get(self, api_id: str) -> Optional[GeneratedRouter]:
        router = self._routers.get(api_id)
        if router is not None:
            record = self._records.get(api_id)
            if record is not None:
                record.last_accessed = _now_iso()
                self._tenant_index[record.tenant_id].add(api_id)
            return router

        metadata = await self.store.get(api_id)
        if metadata is None:
            return None
        return self.restore(metadata, api_id)

    async def get_record(self, api_id: str) -> Optional[ApiRecord]:
        if api_id not in self._records:
            await self.get(api_id)
        return self._records.get(api_id)

    def restore(self, metadata: Dict[str, Any], api_id: Optional[str] = None) -> Optional[GeneratedRouter]:
        """
        Rebuild a router from a persisted record

        Physical names are re-derived from tenantId + apiIdentifier +
        originalName, overriding whatever prefixedName the snapshot holds.
        """
        data = copy.deepcopy(metadata)
        if api_id:
            data["apiId"] = api_id
        record = ApiRecord.model_validate(data)
        if not record.api_identifier:
            logger.warning(f"API {record.api_id} has no apiIdentifier; cannot rebuild")
            return None

        graph = SchemaGraph.from_payload(record.tables)
        for table in graph.tables:
            table.prefixed_name = prefixed_name(record.tenant_id, record.api_identifier, table.original_name)
        record.tables = graph.to_payload()
        record.last_accessed = _now_iso()

        router = self.route_factory.build(graph, record.tenant_id, record.api_identifier)
        self._install(record.api_id, router, record)
        logger.info(f"Rebuilt API {record.api_id} ({record.tenant_id}/{record.api_identifier})")
        return router

    async def load_all(self) -> int:
        """Rebuild every persisted API; per-record failures are logged and skipped"""
        loaded = 0
        async for metadata in self.store.scan():
            try:
                if self.restore(metadata) is not None:
                    loaded += 1
            except Exception as e:
                logger.error(f"Failed to rebuild API {metadata.get('apiId')}: {e}")
        logger.info(f"Loaded {loaded} APIs from registry")
        return loaded

    # ------------------------------------------------------------------
    # Tenant index
    # ------------------------------------------------------------------

    def list_for_tenant(self, tenant_id: str) -> List[ApiRecord]:
        records = [self._records[a] for a in self._tenant_index.get(tenant_id, ()) if a in self._records]
        return sorted(records, key=lambda r: r.created_at or "")

    def identifiers_for_tenant(self, tenant_id: str) -> Set[str]:
        return {r.api_identifier for r in self.list_for_tenant(tenant_id) if r.api_identifier}

    def __contains__(self, api_id: str) -> bool:
        return api_id in self._routers

    def __len__(self) -> int:
        return len(self._routers)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _install(self, api_id: str, router: GeneratedRouter, record: ApiRecord) -> None:
        self._routers[api_id] = router
        self._records[api_id] = record
        self._tenant_index[record.tenant_id].add(api_id)

    def _schedule(self, coro, label: str) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._pending.add(task)

        def _done(t: asyncio.Task) -> None:
            self._pending.discard(t)
            if not t.cancelled() and t.exception() is not None:
                logger.error(f"Registry task '{label}' failed: {t.exception()}")

        task.add_done_callback(_done)

    async def flush(self) -> None:
        """Wait for scheduled store writes"""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
