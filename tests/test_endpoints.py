"""
tests/test_endpoints.py
End-to-end tests through the FastAPI application with in-memory collaborators.

Tests cover:
- Prompt to published API, physical tables named per tenant and identifier
- CRUD through /api/<apiId>/... and tenant isolation
- Fallback schema warning and provider failures
- Request validation and modification failures
- Tenant listing, deletion, setup script, docs and swagger
- Router reconstruction after a restart
- Health and readiness
"""

from __future__ import annotations

import uuid
from typing import Any, Dict

from fastapi.testclient import TestClient

from apiforge.core.config import settings
from apiforge.core.container import build_container
from apiforge.core.exceptions import ProviderError, ProviderTimeout
from apiforge.main import create_app

from tests.conftest import BLOG_SCHEMA, FakeLLM

PROMPT = "A blog with users and posts"


def _generate(client: TestClient, tenant: str = "alice") -> Dict[str, Any]:
    response = client.post("/generate-api", json={"prompt": PROMPT, "tenantId": tenant})
    assert response.status_code == 201, response.text
    return response.json()


# ===========================================================================
# Generation
# ===========================================================================


class TestGenerateApi:

    def test_tables_are_created_in_tenant_namespace(self, client, db) -> None:
        body = _generate(client)

        identifier = body["apiIdentifier"]
        assert len(identifier) == settings.API_IDENTIFIER_LENGTH
        assert body["tables"] == ["users", "posts"]
        assert f"alice_{identifier}_users" in db.tables
        assert f"alice_{identifier}_posts" in db.tables
        assert body["documentation"] == f"/api/{body['apiId']}/docs"
        assert body["swagger"] == f"/api/{body['apiId']}/swagger.json"
        assert {"method": "POST", "path": f"/api/{body['apiId']}/users"} in body["endpoints"]
        assert "warning" not in body

    def test_identifiers_differ_per_api(self, client) -> None:
        first = _generate(client)
        second = _generate(client)
        assert first["apiId"] != second["apiId"]
        assert first["apiIdentifier"] != second["apiIdentifier"]

    def test_fallback_schema_is_flagged(self, client, llm) -> None:
        llm.responses = ["I am unable to produce JSON"]
        response = client.post("/generate-api", json={"prompt": "garden plants tracker", "tenantId": "alice"})

        assert response.status_code == 201
        body = response.json()
        assert body["fallback"] is True
        assert body["warning"]
        assert body["tables"] == ["garden", "plants", "tracker"]

    def test_tenant_is_required(self, client) -> None:
        response = client.post("/generate-api", json={"prompt": PROMPT})
        assert response.status_code == 400
        assert response.json()["code"] == "VALIDATION_ERROR"

    def test_tenant_from_header(self, client) -> None:
        response = client.post("/generate-api", json={"prompt": PROMPT}, headers={"x-user-id": "carol"})
        assert response.status_code == 201
        assert client.get("/my-apis", headers={"x-user-id": "carol"}).json()["total"] == 1

    def test_missing_prompt_is_400(self, client) -> None:
        response = client.post("/generate-api", json={"tenantId": "alice"})
        assert response.status_code == 400
        body = response.json()
        assert body["error"] == "Missing or invalid request fields"
        assert body["details"]

    def test_invalid_tenant_is_400(self, client) -> None:
        response = client.post("/generate-api", json={"prompt": PROMPT, "tenantId": "not a tenant!"})
        assert response.status_code == 400

    def test_provider_timeout_is_504(self, client, llm) -> None:
        llm.error = ProviderTimeout("AI provider timed out")
        response = client.post("/generate-api", json={"prompt": PROMPT, "tenantId": "alice"})
        assert response.status_code == 504
        assert response.json()["code"] == "PROVIDER_TIMEOUT"

    def test_provider_error(self, client, llm, db) -> None:
        llm.error = ProviderError("upstream rejected the request")
        response = client.post("/generate-api", json={"prompt": PROMPT, "tenantId": "alice"})
        assert response.status_code == ProviderError.status_code
        assert db.tables == {}

    def test_missing_executor_reports_remediation(self, client, db) -> None:
        db.executor_available = False
        response = client.post("/generate-api", json={"prompt": PROMPT, "tenantId": "alice"})

        assert response.status_code == 500
        body = response.json()
        assert body["code"] == "EXECUTOR_UNAVAILABLE"
        assert "CREATE OR REPLACE FUNCTION" in body["remediation"]

    def test_materialization_failure_lists_missing_tables(self, client, db) -> None:
        db.fail_when.append(lambda sql: "CREATE TABLE" in sql)
        response = client.post("/generate-api", json={"prompt": PROMPT, "tenantId": "alice"})

        assert response.status_code == 500
        body = response.json()
        assert body["code"] == "MATERIALIZATION_FAILED"
        assert len(body["missingTables"]) == 2


class TestSchemaEndpoints:

    def test_generate_schema_creates_nothing(self, client, db) -> None:
        response = client.post("/generate-schema", json={"prompt": PROMPT})

        assert response.status_code == 200
        tables = response.json()["tables"]
        assert [t["originalName"] for t in tables] == ["users", "posts"]
        assert db.tables == {}

    def test_modify_schema(self, client, llm) -> None:
        llm.responses = ['{"tables": [{"name": "tags", "columns": [{"name": "label", "type": "text"}]}]}']
        response = client.post("/modify-schema", json={
            "prompt": "add tags",
            "existingTables": BLOG_SCHEMA["tables"],
        })

        assert response.status_code == 200
        assert [t["originalName"] for t in response.json()["tables"]] == ["users", "posts", "tags"]

    def test_unparseable_modification_is_422(self, client, llm) -> None:
        llm.responses = ["nothing useful"]
        response = client.post("/modify-schema", json={
            "prompt": "add tags",
            "existingTables": BLOG_SCHEMA["tables"],
        })

        assert response.status_code == 422
        assert [t["originalName"] for t in response.json()["existingTables"]] == ["users", "posts"]

    def test_modify_requires_tables(self, client) -> None:
        response = client.post("/modify-schema", json={"prompt": "add tags", "existingTables": []})
        assert response.status_code == 400

    def test_create_api_from_schema(self, client, db, llm) -> None:
        response = client.post("/create-api-from-schema", json={
            "tenantId": "bob",
            "tables": [{"name": "Books", "columns": [{"name": "Title", "type": "string"}]}],
        })

        assert response.status_code == 201
        body = response.json()
        assert body["tables"] == ["books"]
        assert f"bob_{body['apiIdentifier']}_books" in db.tables
        assert llm.calls == []

    def test_create_api_from_malformed_schema(self, client) -> None:
        response = client.post("/create-api-from-schema", json={"tenantId": "bob", "tables": [{"columns": 3}]})
        assert response.status_code == 400


# ===========================================================================
# Generated API
# ===========================================================================


class TestGeneratedApi:

    def test_create_and_list_records(self, client) -> None:
        api_id = _generate(client)["apiId"]

        created = client.post(f"/api/{api_id}/users", json={"name": "Ann", "email": "ann@example.com"})
        assert created.status_code == 201
        assert created.json()["tenant_id"] == "alice"

        listing = client.get(f"/api/{api_id}/users", params={"limit": 5})
        assert listing.status_code == 200
        assert [row["name"] for row in listing.json()["data"]] == ["Ann"]
        assert listing.json()["pagination"] == {"page": 1, "limit": 5, "total": 1}

        record_id = created.json()["id"]
        assert client.get(f"/api/{api_id}/users/{record_id}").json()["email"] == "ann@example.com"
        updated = client.put(f"/api/{api_id}/users/{record_id}", json={"name": "Anne"})
        assert updated.json()["name"] == "Anne"
        assert client.delete(f"/api/{api_id}/users/{record_id}").status_code == 204
        assert client.get(f"/api/{api_id}/users/{record_id}").status_code == 404

    def test_other_tenant_cannot_see_api(self, client) -> None:
        api_id = _generate(client)["apiId"]

        assert client.get(f"/api/{api_id}/users", headers={"x-user-id": "bob"}).status_code == 404
        assert client.get(f"/api/{api_id}/users", headers={"x-user-id": "alice"}).status_code == 200
        assert client.get(f"/api/{api_id}/swagger.json", headers={"x-user-id": "bob"}).status_code == 404

    def test_body_tenant_column_is_forced_to_owner(self, client) -> None:
        api_id = _generate(client)["apiId"]

        created = client.post(f"/api/{api_id}/users", json={"name": "Bob", "tenant_id": "mallory"})

        assert created.status_code == 201
        assert created.json()["tenant_id"] == "alice"

    def test_unknown_api_is_404(self, client) -> None:
        response = client.get(f"/api/{uuid.uuid4()}/users")
        assert response.status_code == 404
        assert response.json()["code"] == "NOT_FOUND"

    def test_unknown_column_is_400(self, client) -> None:
        api_id = _generate(client)["apiId"]
        response = client.post(f"/api/{api_id}/users", json={"name": "Ann", "shoe_size": 44})
        assert response.status_code == 400
        assert response.json()["columns"] == ["shoe_size"]

    def test_invalid_json_body_is_400(self, client) -> None:
        api_id = _generate(client)["apiId"]
        response = client.post(
            f"/api/{api_id}/users", content=b"{not json", headers={"content-type": "application/json"}
        )
        assert response.status_code == 400

    def test_unsupported_method_is_405(self, client) -> None:
        api_id = _generate(client)["apiId"]
        assert client.patch(f"/api/{api_id}/users/1", json={"name": "x"}).status_code == 405

    def test_dropped_table_is_database_error(self, client, db) -> None:
        body = _generate(client)
        physical = f"alice_{body['apiIdentifier']}_users"
        db.tables.pop(physical)

        response = client.get(f"/api/{body['apiId']}/users")

        assert response.status_code == 500
        error = response.json()
        assert error["code"] == "DATABASE_ERROR"
        assert error["details"] == {"message": f'relation "{physical}" does not exist', "table": physical, "code": "42P01"}

    def test_router_root_describes_tables(self, client) -> None:
        body = _generate(client)
        response = client.get(f"/api/{body['apiId']}")
        assert response.status_code == 200
        assert response.json()["apiIdentifier"] == body["apiIdentifier"]

    def test_swagger_document(self, client) -> None:
        api_id = _generate(client)["apiId"]
        doc = client.get(f"/api/{api_id}/swagger.json").json()

        assert doc["servers"] == [{"url": f"/api/{api_id}"}]
        assert doc["info"]["description"] == PROMPT
        assert "/posts/{id}" in doc["paths"]

    def test_swagger_ui(self, client) -> None:
        api_id = _generate(client)["apiId"]
        response = client.get(f"/api/{api_id}/docs")
        assert response.status_code == 200
        assert "text/html" in response.headers["content-type"]
        assert f"/api/{api_id}/swagger.json" in response.text

    def test_sql(self, client) -> None:
        body = _generate(client)
        sql = client.get(f"/api/{body['apiId']}/sql").json()["sql"]
        assert f'CREATE TABLE "alice_{body["apiIdentifier"]}_users"' in sql


# ===========================================================================
# Tenant management
# ===========================================================================


class TestTenantApis:

    def test_my_apis(self, client) -> None:
        first = _generate(client)
        _generate(client, tenant="bob")

        body = client.get("/my-apis", params={"tenantId": "alice"}).json()
        assert body["tenantId"] == "alice"
        assert body["total"] == 1
        assert body["apis"][0]["apiId"] == first["apiId"]
        assert body["apis"][0]["tables"] == ["users", "posts"]
        assert body["apis"][0]["prompt"] == PROMPT

    def test_my_apis_requires_tenant(self, client) -> None:
        assert client.get("/my-apis").status_code == 400

    def test_delete_api(self, client, db) -> None:
        body = _generate(client)
        api_id = body["apiId"]

        assert client.delete(f"/apis/{api_id}").status_code == 400
        assert client.delete(f"/apis/{api_id}", headers={"x-user-id": "bob"}).status_code == 404
        assert client.delete(f"/apis/{api_id}", headers={"x-user-id": "alice"}).status_code == 204

        assert client.get(f"/api/{api_id}/users").status_code == 404
        assert f"alice_{body['apiIdentifier']}_users" in db.tables

    def test_setup_script_download(self, client) -> None:
        body = _generate(client)
        response = client.get(f"/setup-script/{body['apiId']}")

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("application/sql")
        assert response.headers["content-disposition"] == (
            f'attachment; filename="apiforge-setup-{body["apiId"]}.sql"'
        )
        assert "CREATE TABLE" in response.text


# ===========================================================================
# Restart
# ===========================================================================


class TestRestart:

    def test_routers_are_rebuilt_from_registry(self, db, registry_store, audit_store) -> None:
        first = build_container(settings, db=db, llm=FakeLLM(), registry_store=registry_store, audit_store=audit_store)
        with TestClient(create_app(first)) as client:
            api_id = _generate(client)["apiId"]
            client.post(f"/api/{api_id}/users", json={"name": "Ann"})

        second = build_container(settings, db=db, llm=FakeLLM(), registry_store=registry_store, audit_store=audit_store)
        with TestClient(create_app(second)) as client:
            assert api_id in second.registry
            response = client.get(f"/api/{api_id}/users")
            assert response.status_code == 200
            assert [row["name"] for row in response.json()["data"]] == ["Ann"]


# ===========================================================================
# Health
# ===========================================================================


class TestHealth:

    def test_health(self, client) -> None:
        _generate(client)
        body = client.get("/health").json()

        assert body["status"] == "healthy"
        assert body["checks"]["database"]["sql_executor"] is True
        assert body["checks"]["registry"]["published_apis"] == 1
        assert "memory" in body["metrics"]

    def test_health_degraded_without_executor(self, client, db) -> None:
        db.executor_available = False
        assert client.get("/health").json()["status"] == "degraded"

    def test_ready(self, client) -> None:
        assert client.get("/ready").json()["ready"] is True

    def test_root(self, client) -> None:
        assert client.get("/").json()["name"] == settings.APP_NAME
