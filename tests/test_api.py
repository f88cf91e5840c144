"""
Tests for the OAuth, token health, sync and mapping endpoints.
"""
from urllib.parse import parse_qs, urlparse

import httpx
import pytest
from httpx import AsyncClient

from statementdesk.main import app
from statementdesk.services.errors import AuthRevoked
from statementdesk.services.integrations import QuickBooksIntegration, get_adapter_factory


def redirect_params(response) -> dict:
    location = urlparse(response.headers["location"])
    assert location.path == "/settings"
    return {key: values[0] for key, values in parse_qs(location.query).items()}


@pytest.mark.asyncio
async def test_health_endpoint(client: AsyncClient):
    response = await client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "healthy"}


@pytest.mark.asyncio
async def test_connect_flow(client: AsyncClient, auth_headers, fake_adapter):
    response = await client.get("/api/v1/auth/quickbooks", headers=auth_headers)
    assert response.status_code == 200
    state = response.json()["state"]
    assert state in response.json()["auth_url"]

    callback = await client.get(
        "/api/v1/auth/quickbooks/callback",
        params={"code": "abc", "state": state, "realmId": "realm-1"},
    )
    assert callback.status_code == 302
    assert redirect_params(callback) == {"quickbooks_success": "connected"}

    # Replaying the same callback is refused
    replay = await client.get(
        "/api/v1/auth/quickbooks/callback",
        params={"code": "abc", "state": state, "realmId": "realm-1"},
    )
    assert redirect_params(replay) == {"quickbooks_error": "invalid_state"}
    assert fake_adapter.exchange_calls == 1

    connections = await client.get("/api/v1/auth/quickbooks/connections", headers=auth_headers)
    assert connections.status_code == 200
    data = connections.json()
    assert [c["tenant_id"] for c in data] == ["realm-1"]
    assert "access_token" not in data[0]
    assert "access_token_encrypted" not in data[0]


@pytest.mark.asyncio
async def test_callback_with_provider_error(client: AsyncClient):
    response = await client.get("/api/v1/auth/xero/callback", params={"error": "access_denied"})

    assert response.status_code == 302
    assert redirect_params(response) == {"xero_error": "access_denied"}


@pytest.mark.asyncio
async def test_callback_with_malformed_token_response(client: AsyncClient, auth_headers):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, text="<html>Service maintenance</html>")

    adapter = QuickBooksIntegration(transport=httpx.MockTransport(handler))
    app.dependency_overrides[get_adapter_factory] = lambda: (lambda provider: adapter)
    state = (await client.get("/api/v1/auth/quickbooks", headers=auth_headers)).json()["state"]

    response = await client.get(
        "/api/v1/auth/quickbooks/callback",
        params={"code": "abc", "state": state, "realmId": "realm-1"},
    )

    assert response.status_code == 302
    assert redirect_params(response) == {"quickbooks_error": "remote_rejected"}


@pytest.mark.asyncio
async def test_disconnect(client: AsyncClient, auth_headers, make_connection, fake_adapter):
    await make_connection()

    response = await client.delete("/api/v1/auth/quickbooks/connections", headers=auth_headers)

    assert response.status_code == 200
    assert response.json()["is_active"] is False
    assert fake_adapter.revoked == ["refresh-0"]

    missing = await client.delete("/api/v1/auth/quickbooks/connections", headers=auth_headers)
    assert missing.status_code == 404
    assert missing.json()["error"] == "connection_not_found"


@pytest.mark.asyncio
async def test_token_health_missing(client: AsyncClient, auth_headers):
    response = await client.get("/api/v1/auth/token-health", headers=auth_headers)

    assert response.status_code == 200
    data = response.json()
    assert data["provider"] == "google"
    assert data["status"] == "missing"
    assert data["recommendations"] == ["Connect your Google account to enable syncing"]


@pytest.mark.asyncio
async def test_token_health_and_force_refresh(client: AsyncClient, auth_headers, make_connection, fake_adapter):
    connection = await make_connection()

    health = await client.get(
        "/api/v1/auth/token-health",
        params={"provider": "quickbooks"},
        headers=auth_headers,
    )
    assert health.status_code == 200
    assert health.json()["status"] == "healthy"
    assert health.json()["has_refresh_token"] is True
    assert health.json()["connection_id"] == connection.id
    assert fake_adapter.refresh_calls == 0

    refresh = await client.post(
        "/api/v1/auth/token-health",
        json={"provider": "quickbooks"},
        headers=auth_headers,
    )
    assert refresh.status_code == 200
    assert refresh.json()["success"] is True
    assert fake_adapter.refresh_calls == 1


@pytest.mark.asyncio
async def test_force_refresh_revoked_grant(client: AsyncClient, auth_headers, make_connection, fake_adapter):
    await make_connection()
    fake_adapter.refresh_error = AuthRevoked("invalid_grant")

    response = await client.post(
        "/api/v1/auth/token-health",
        json={"provider": "quickbooks"},
        headers=auth_headers,
    )

    assert response.status_code == 401
    assert response.json()["error"] == "auth_revoked"


@pytest.mark.asyncio
async def test_bulk_import_requires_paid_plan(client: AsyncClient, db, test_user, auth_headers):
    test_user.subscription_tier = "free"
    await db.commit()

    response = await client.post(
        "/api/v1/sync/bulk-import",
        json={"connection_id": "c", "file_id": "f", "settings": {}},
        headers=auth_headers,
    )

    assert response.status_code == 403


@pytest.mark.asyncio
async def test_bulk_import_runs_in_background(
    client: AsyncClient, auth_headers, worker, make_connection, make_statement, map_category
):
    connection = await make_connection()
    await map_category(connection, "Meals")
    statement, _ = await make_statement([
        ("Meals", "Cafe", "-4.00"),
        ("Meals", "Bistro", "-18.20"),
        ("Unknown", "Kiosk", "-2.00"),
    ])

    response = await client.post(
        "/api/v1/sync/bulk-import",
        json={"connection_id": connection.id, "file_id": statement.id, "settings": {"bank_account_id": "35"}},
        headers=auth_headers,
    )
    assert response.status_code == 202
    job = response.json()["job"]
    assert job["total_transactions"] == 3

    await worker.join()

    status = await client.get("/api/v1/sync/bulk-import", params={"job_id": job["id"]}, headers=auth_headers)
    assert status.status_code == 200
    data = status.json()
    assert data["status"] == "failed"
    assert data["successful_imports"] == 2
    assert data["failed_imports"] == 1
    assert data["progress"] == 100
    assert data["errors"][0]["code"] == "mapping_error"

    history = await client.get("/api/v1/sync/jobs", headers=auth_headers)
    assert [j["id"] for j in history.json()] == [job["id"]]

    cancel = await client.post(f"/api/v1/sync/jobs/{job['id']}/cancel", headers=auth_headers)
    assert cancel.status_code == 409
    assert cancel.json()["error"] == "invalid_job_state"

    retry = await client.post(f"/api/v1/sync/jobs/{job['id']}/retry", headers=auth_headers)
    assert retry.status_code == 202
    assert retry.json()["job"]["retry_of_job_id"] == job["id"]
    assert retry.json()["job"]["total_transactions"] == 1
    await worker.join()


@pytest.mark.asyncio
async def test_bulk_import_bad_settings(client: AsyncClient, auth_headers, make_connection, make_statement):
    connection = await make_connection()
    statement, _ = await make_statement([("Meals", "Cafe", "-4.00")])

    response = await client.post(
        "/api/v1/sync/bulk-import",
        json={"connection_id": connection.id, "file_id": statement.id, "settings": {}},
        headers=auth_headers,
    )

    assert response.status_code == 422
    assert response.json()["error"] == "validation_error"


@pytest.mark.asyncio
async def test_unknown_job(client: AsyncClient, auth_headers):
    response = await client.get("/api/v1/sync/bulk-import", params={"job_id": "nope"}, headers=auth_headers)

    assert response.status_code == 404
    assert response.json() == {"error": "job_not_found", "detail": "Sync job not found"}


@pytest.mark.asyncio
async def test_mapping_endpoints(client: AsyncClient, auth_headers, make_connection):
    connection = await make_connection()

    invalid = await client.post(
        "/api/v1/mappings/validate",
        json={"connection_id": connection.id, "transactions": [{"category": "Meals"}]},
        headers=auth_headers,
    )
    assert invalid.status_code == 200
    assert invalid.json()["valid"] is False
    assert invalid.json()["unmapped_categories"] == ["Meals"]

    saved = await client.post(
        "/api/v1/mappings/categories",
        json={
            "connection_id": connection.id,
            "mappings": [{"category": "Meals", "remote_account_id": "60", "remote_account_name": "Meals"}],
        },
        headers=auth_headers,
    )
    assert saved.status_code == 200
    mapping_id = saved.json()[0]["id"]

    valid = await client.post(
        "/api/v1/mappings/validate",
        json={"connection_id": connection.id, "transactions": [{"category": "Meals"}]},
        headers=auth_headers,
    )
    assert valid.json()["valid"] is True

    stats = await client.get("/api/v1/mappings/stats", params={"connection_id": connection.id}, headers=auth_headers)
    assert stats.json()["total_category_mappings"] == 1

    deleted = await client.delete(f"/api/v1/mappings/categories/{mapping_id}", headers=auth_headers)
    assert deleted.status_code == 204
    missing = await client.delete(f"/api/v1/mappings/categories/{mapping_id}-x", headers=auth_headers)
    assert missing.status_code == 404


@pytest.mark.asyncio
async def test_validate_needs_a_source(client: AsyncClient, auth_headers):
    response = await client.post(
        "/api/v1/mappings/validate",
        json={"connection_id": "c"},
        headers=auth_headers,
    )

    assert response.status_code == 422


@pytest.mark.asyncio
async def test_auto_suggest_categories(client: AsyncClient, auth_headers, make_connection, make_statement):
    connection = await make_connection()
    statement, _ = await make_statement([("Office Supplies", "Staples", "-40.00"), ("Meals", "Cafe", "-4.00")])

    response = await client.post(
        "/api/v1/mappings/auto-suggest",
        json={"connection_id": connection.id, "type": "categories", "file_id": statement.id},
        headers=auth_headers,
    )

    assert response.status_code == 200
    suggestions = {s["category"]: s for s in response.json()["suggestions"]}
    assert suggestions["Office Supplies"]["remote_account_id"] == "61"
    assert suggestions["Meals"]["remote_account_id"] == "60"


@pytest.mark.asyncio
async def test_remote_accounts_for_manual_mapping(client: AsyncClient, auth_headers, make_connection):
    connection = await make_connection()

    accounts = await client.get(
        "/api/v1/mappings/remote-accounts",
        params={"connection_id": connection.id},
        headers=auth_headers,
    )
    assert accounts.status_code == 200
    data = accounts.json()
    assert data["type"] == "categories"
    assert [a["id"] for a in data["accounts"]] == ["60", "61", "40"]
    assert data["accounts"][0]["code"] == "6000"

    entities = await client.get(
        "/api/v1/mappings/remote-accounts",
        params={"connection_id": connection.id, "type": "merchants"},
        headers=auth_headers,
    )
    assert entities.json()["vendors"] == [{"id": "v1", "name": "Walmart", "type": "vendor"}]
    assert entities.json()["customers"][0]["id"] == "c1"

    missing = await client.get(
        "/api/v1/mappings/remote-accounts",
        params={"connection_id": "nope"},
        headers=auth_headers,
    )
    assert missing.status_code == 404
