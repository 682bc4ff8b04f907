"""Tests for the FastAPI app: /health, /config, breaker reset, runtime
routing updates and POST /forward/{action} against mock provider transports.
"""

from __future__ import annotations

import json

import httpx
import pytest
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient

from migration_gateway.core.config import Settings
from migration_gateway.main import build_gateway, create_app
from migration_gateway.resilience.circuit_breaker import CircuitState


class Provider:
    """Mock provider transport with a switchable response."""

    def __init__(self, body: dict) -> None:
        self.status = 200
        self.body = body
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return httpx.Response(self.status, json=self.body)

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self))


@pytest.fixture
def legacy() -> Provider:
    return Provider({"success": True, "dan": "EW0001"})


@pytest.fixture
def new() -> Provider:
    return Provider({"success": True, "dan": "EW0001"})


def _settings(**overrides) -> Settings:
    values = {
        "RATE_LIMIT_ENABLED": False,
        "RETRY_MAX_ATTEMPTS": 1,
        "LEGACY_BASE_URL": "https://legacy.test",
        "NEW_BASE_URL": "https://new.test",
        "NEW_AUTH_METHOD": "api-key",
        "NEW_API_KEY": "k3y",
        "NEW_CLIENT_SECRET": "top-secret",
    }
    return Settings(**{**values, **overrides})


def _app(legacy: Provider, new: Provider, **overrides) -> FastAPI:
    settings = _settings(**overrides)
    gateway = build_gateway(settings, legacy_client=legacy.client(), new_client=new.client())
    return create_app(settings, gateway=gateway)


@pytest.fixture
def app(legacy, new) -> FastAPI:
    return _app(legacy, new)


@pytest.fixture
async def client(app):
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://testserver") as ac:
        yield ac


class TestHealthEndpoint:
    async def test_healthy(self, client):
        response = await client.get("/health")
        assert response.status_code == 200
        body = response.json()
        assert body["service"] == "migration-gateway"
        assert body["status"] == "healthy"
        assert body["routing_mode"] == "single-legacy"
        assert body["circuit_breakers"] == {}
        assert body["uptime_seconds"] >= 0

    async def test_degraded_while_circuit_open(self, app, client):
        await app.state.gateway.registry.get_breaker("legacy", "org-1").force_state(CircuitState.OPEN)

        response = await client.get("/health")

        assert response.status_code == 503
        assert response.json()["status"] == "degraded"
        assert response.json()["circuit_breakers"]["org-1:legacy"]["state"] == "open"

    async def test_reset_restores_health(self, app, client):
        await app.state.gateway.registry.get_breaker("legacy", "org-1").force_state(CircuitState.OPEN)

        reset = await client.post("/circuit-breakers/reset")

        assert reset.status_code == 200
        assert reset.json()["circuit_breakers"]["org-1:legacy"]["state"] == "closed"
        assert (await client.get("/health")).status_code == 200

    async def test_token_cache_summary(self, client):
        body = (await client.get("/health")).json()
        assert body["token_cache"] == {
            "entries": 0,
            "valid_tokens": 0,
            "refreshing": 0,
            "refreshes": 0,
            "refresh_failures": 0,
            "last_error": None,
        }


class TestConfigEndpoint:
    async def test_effective_config(self, client):
        body = (await client.get("/config")).json()
        assert body["routing"]["mode"] == "single-legacy"
        assert body["retry"]["max_attempts"] == 1
        assert body["circuit_breaker"]["minimum_requests"] == 10

    async def test_no_secrets(self, client):
        text = (await client.get("/config")).text
        assert "top-secret" not in text
        assert "k3y" not in text


class TestRuntimeRouting:
    async def test_update_routing_mode(self, client, legacy, new):
        response = await client.put("/config/routing-mode", json={"mode": "single-new"})

        assert response.status_code == 200
        assert response.json()["routing"]["mode"] == "single-new"
        assert (await client.get("/health")).json()["routing_mode"] == "single-new"
        forwarded = await client.post("/forward/create", json={"payload": {}})
        assert forwarded.headers["X-Provider"] == "new"
        assert legacy.requests == []

    async def test_invalid_routing_mode_is_a_bad_request(self, client):
        response = await client.put("/config/routing-mode", json={"mode": "round-robin"})

        assert response.status_code == 400
        assert response.json()["code"] == "CONFIGURATION_ERROR"
        assert (await client.get("/config")).json()["routing"]["mode"] == "single-legacy"

    async def test_update_forwarding_percentage(self, client):
        response = await client.put("/config/forwarding-percentage", json={"percentage": 40})
        assert response.status_code == 200
        assert response.json()["routing"]["percentage"] == 40.0

    async def test_percentage_out_of_range_is_a_bad_request(self, client):
        response = await client.put("/config/forwarding-percentage", json={"percentage": 120})
        assert response.status_code == 400
        assert (await client.get("/config")).json()["routing"]["percentage"] == 0.0

    async def test_organization_preference(self, client, new):
        response = await client.put("/config/organizations/org-7", json={"provider_preference": "new"})

        assert response.status_code == 200
        assert response.json()["routing"]["organization_preferences"] == {"org-7": "new"}
        forwarded = await client.post("/forward/create", json={"payload": {}, "organization_id": "org-7"})
        assert forwarded.headers["X-Provider"] == "new"

    async def test_invalid_organization_preference_is_a_bad_request(self, client):
        response = await client.put("/config/organizations/org-7", json={"provider_preference": "salesforce"})
        assert response.status_code == 400
        assert response.json()["code"] == "CONFIGURATION_ERROR"

    async def test_missing_field_is_rejected(self, client):
        response = await client.put("/config/routing-mode", json={})
        assert response.status_code == 422


class TestRequestId:
    async def test_generated(self, client):
        response = await client.get("/health")
        assert response.headers["X-Request-ID"]

    async def test_client_request_id_preserved(self, client):
        response = await client.get("/health", headers={"X-Request-ID": "req-123"})
        assert response.headers["X-Request-ID"] == "req-123"


class TestForward:
    async def test_routes_to_legacy(self, client, legacy, new):
        response = await client.post(
            "/forward/create",
            json={"payload": {"amount": 950}, "organization_id": "org-1"},
            headers={"X-Request-ID": "req-9"},
        )

        assert response.status_code == 200
        assert response.headers["X-Provider"] == "legacy"
        body = response.json()
        assert body["success"] is True
        assert body["provider"] == "legacy"
        assert body["mode"] == "single-legacy"
        assert body["data"] == {"success": True, "dan": "EW0001"}
        assert body["request_id"] == "req-9"
        assert body["comparison"] is None

        sent = legacy.requests[0]
        assert sent.url.path == "/CreateDeposit"
        assert json.loads(sent.content) == {"amount": 950}
        assert sent.headers["x-request-id"] == "req-9"
        assert new.requests == []

    async def test_provider_failure_keeps_status(self, client, legacy):
        legacy.status = 400
        legacy.body = {"errors": ["tenancy missing"]}

        response = await client.post("/forward/create", json={"payload": {}})

        assert response.status_code == 400
        body = response.json()
        assert body["success"] is False
        assert body["error_kind"] == "permanent"
        assert body["retryable"] is False
        assert body["data"] == {"errors": ["tenancy missing"]}

    async def test_new_preference_sends_access_token(self, client, new):
        response = await client.post(
            "/forward/status",
            json={"payload": {"batch_id": 1}, "member_id": "M1", "branch_id": "B1", "provider_preference": "new"},
        )

        assert response.status_code == 200
        assert response.headers["X-Provider"] == "new"
        sent = new.requests[0]
        assert sent.url.path == "/services/apexrest/CreateDepositStatus"
        assert sent.headers["accesstoken"] == "England & Wales Custodial-Custodial-M1-B1-k3y"

    async def test_invalid_preference_rejected(self, client):
        response = await client.post("/forward/create", json={"payload": {}, "provider_preference": "salesforce"})
        assert response.status_code == 422

    async def test_organization_from_metadata(self, app, client):
        await client.post("/forward/create", json={"payload": {}, "metadata": {"agency_ref": "A1", "branch_id": "B2"}})
        assert "A1:B2:legacy" in app.state.gateway.router.get_stats()

    async def test_organization_header_wins(self, app, client):
        await client.post(
            "/forward/create",
            json={"payload": {}, "organization_id": "body-org"},
            headers={"X-Organization-ID": "header-org"},
        )
        assert list(app.state.gateway.router.get_stats()) == ["header-org:legacy"]

    async def test_dual_mode_attaches_comparison(self, legacy, new):
        new.body = {"success": True, "dan": "EW0002"}
        app = _app(legacy, new, ROUTING_MODE="dual", ENABLE_COMPARISON=True)

        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://testserver") as client:
            response = await client.post("/forward/create", json={"payload": {}})

        body = response.json()
        assert body["provider"] == "new"
        assert body["comparison"]["divergent"] is False
        assert body["comparison"]["data_match"] is False
        assert body["comparison"]["report"]["comparison"]["critical_differences"] == 1
