"""
tests/test_api_registry.py
Unit tests for apiforge.services.api_registry.

Tests cover:
- Publish installs the router and persists the record
- Lazy and eager reconstruction from persisted snapshots
- Physical names re-derived on restore
- Unpublish and the tenant index
- Metadata decoding of double-encoded rows
"""

from __future__ import annotations

import json

import pytest

from apiforge.schemas.api_models import ApiRecord
from apiforge.schemas.schema_models import SchemaGraph
from apiforge.services.api_registry import ApiRegistry, decode_metadata
from apiforge.services.route_factory import RouteFactory, RouteRequest
from apiforge.services.schema_normalizer import assign_physical_names

from tests.conftest import InMemoryDatabase, InMemoryRegistryStore

API_ID = "0b7f4a2e-6c1d-4d8e-9f00-123456789abc"
OTHER_ID = "5d1e9c3a-2b4f-4a6d-8e7f-abcdefabcdef"


@pytest.fixture()
def factory(db: InMemoryDatabase) -> RouteFactory:
    return RouteFactory(db, "tenant_id")


@pytest.fixture()
def registry(registry_store: InMemoryRegistryStore, factory: RouteFactory) -> ApiRegistry:
    return ApiRegistry(registry_store, factory)


def _record(graph: SchemaGraph, **overrides) -> ApiRecord:
    fields = {
        "api_id": API_ID,
        "tenant_id": "alice",
        "api_identifier": "xyz123",
        "tables": graph.to_payload(),
        "prompt": "blog",
        "sql": "-- ddl",
    }
    fields.update(overrides)
    return ApiRecord(**fields)


class TestPublish:

    @pytest.mark.asyncio
    async def test_publish_installs_and_persists(self, registry, registry_store, factory, blog_graph) -> None:
        graph = assign_physical_names(blog_graph, "alice", "xyz123")
        router = factory.build(graph, "alice", "xyz123")

        api_id = registry.publish(router, _record(graph))
        await registry.flush()

        assert api_id == API_ID
        assert api_id in registry
        assert len(registry) == 1
        assert await registry.get(api_id) is router
        stored = registry_store.records[API_ID]
        assert stored["tenantId"] == "alice"
        assert stored["apiIdentifier"] == "xyz123"
        assert stored["tables"][0]["prefixedName"] == "alice_xyz123_users"
        assert stored["lastAccessed"]

    @pytest.mark.asyncio
    async def test_router_tenant_wins_over_metadata(self, registry, factory, blog_graph) -> None:
        router = factory.build(blog_graph, "alice", "xyz123")
        registry.publish(router, {"apiId": API_ID, "tenantId": "mallory", "tables": []})
        await registry.flush()
        record = await registry.get_record(API_ID)
        assert record.tenant_id == "alice"

    @pytest.mark.asyncio
    async def test_missing_identifier_comes_from_router(self, registry, registry_store, factory, blog_graph) -> None:
        router = factory.build(blog_graph, "alice", "xyz123")
        registry.publish(router, _record(blog_graph, api_identifier=None))
        await registry.flush()

        assert registry_store.records[API_ID]["apiIdentifier"] == "xyz123"
        assert registry.restore(registry_store.records[API_ID]) is not None

    @pytest.mark.asyncio
    async def test_tenant_index(self, registry, factory, blog_graph) -> None:
        router = factory.build(blog_graph, "alice", "xyz123")
        registry.publish(router, _record(blog_graph))
        other = factory.build(blog_graph, "bob", "abc789")
        registry.publish(other, _record(blog_graph, api_id=OTHER_ID, tenant_id="bob", api_identifier="abc789"))
        await registry.flush()

        assert [r.api_id for r in registry.list_for_tenant("alice")] == [API_ID]
        assert registry.identifiers_for_tenant("bob") == {"abc789"}
        assert registry.list_for_tenant("nobody") == []


class TestRestore:

    @pytest.mark.asyncio
    async def test_lazy_rebuild_from_store(self, db, registry, registry_store, blog_graph) -> None:
        stale = assign_physical_names(blog_graph, "alice", "xyz123").to_payload()
        for table in stale:
            table["prefixedName"] = "legacy_" + table["originalName"]
        registry_store.records[API_ID] = _record(blog_graph, tables=stale).to_metadata()
        db.create_table("alice_xyz123_users", [{"id": "u1", "name": "Ann", "tenant_id": "alice"}])

        router = await registry.get(API_ID)

        assert router is not None
        assert router.tenant_id == "alice"
        assert [t.prefixed_name for t in router.graph.tables] == ["alice_xyz123_users", "alice_xyz123_posts"]
        response = await router.dispatch(RouteRequest("GET", "/users"))
        assert [row["id"] for row in response.body["data"]] == ["u1"]

    @pytest.mark.asyncio
    async def test_unknown_api_is_none(self, registry) -> None:
        assert await registry.get("not-a-uuid") is None
        assert await registry.get_record(API_ID) is None

    @pytest.mark.asyncio
    async def test_record_without_identifier_is_skipped(self, registry, blog_graph) -> None:
        metadata = _record(blog_graph, api_identifier=None).to_metadata()
        assert registry.restore(metadata) is None
        assert API_ID not in registry

    @pytest.mark.asyncio
    async def test_load_all_skips_broken_rows(self, registry, registry_store, blog_graph) -> None:
        registry_store.records[API_ID] = _record(blog_graph).to_metadata()
        registry_store.records["broken"] = {"apiId": "broken", "apiIdentifier": "zzz999"}

        loaded = await registry.load_all()

        assert loaded == 1
        assert API_ID in registry
        assert "broken" not in registry


class TestUnpublish:

    @pytest.mark.asyncio
    async def test_unpublish_forgets_router_and_record(self, registry, registry_store, factory, blog_graph) -> None:
        registry.publish(factory.build(blog_graph, "alice", "xyz123"), _record(blog_graph))
        await registry.flush()

        assert await registry.unpublish(API_ID) is True
        assert API_ID not in registry
        assert API_ID not in registry_store.records
        assert registry.list_for_tenant("alice") == []
        assert await registry.unpublish(API_ID) is False


class TestDecodeMetadata:

    def test_object_passes_through(self) -> None:
        assert decode_metadata({"apiId": "a"}) == {"apiId": "a"}

    def test_double_encoded_text(self) -> None:
        assert decode_metadata(json.dumps(json.dumps({"apiId": "a"}))) == {"apiId": "a"}

    def test_non_object_is_rejected(self) -> None:
        assert decode_metadata("[1, 2]") is None
