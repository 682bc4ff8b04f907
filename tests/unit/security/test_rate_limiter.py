"""Per-organization rate limiter tests.

Covers per-organization counting in Redis, per-organization overrides, the
X-RateLimit-* headers, 429 + Retry-After, and graceful Redis failure.

Uses fakeredis for Redis simulation.
"""

import logging
import time
from unittest.mock import patch

import fakeredis.aioredis
import pytest
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.testclient import TestClient

from migration_gateway.security.rate_limiter import ORGANIZATION_HEADER, RateLimitMiddleware

# ── Helpers ──────────────────────────────────────────────────────────────


def _make_app(rpm: int = 5, redis_client=None, overrides=None) -> FastAPI:
    """Build a minimal FastAPI app with RateLimitMiddleware."""
    app = FastAPI()
    app.add_middleware(RateLimitMiddleware, rpm=rpm, redis_client=redis_client, overrides=overrides)

    @app.post("/forward/create")
    async def _forward(request: Request):
        return JSONResponse({"ok": True})

    @app.get("/health")
    async def _health(request: Request):
        return JSONResponse({"status": "healthy"})

    return app


def _org(organization_id: str) -> dict[str, str]:
    return {ORGANIZATION_HEADER: organization_id}


@pytest.fixture()
def fake_redis():
    return fakeredis.aioredis.FakeRedis()


# ── Per-organization limits ─────────────────────────────────────────────


class TestPerOrganizationLimits:
    def test_requests_within_limit_succeed(self, fake_redis) -> None:
        client = TestClient(_make_app(rpm=3, redis_client=fake_redis))
        for _ in range(3):
            assert client.post("/forward/create", headers=_org("agency-1:B1")).status_code == 200

    def test_organizations_tracked_separately(self, fake_redis) -> None:
        client = TestClient(_make_app(rpm=2, redis_client=fake_redis))
        for _ in range(2):
            client.post("/forward/create", headers=_org("agency-1:B1"))

        assert client.post("/forward/create", headers=_org("agency-1:B1")).status_code == 429
        assert client.post("/forward/create", headers=_org("agency-2:B1")).status_code == 200

    def test_override_raises_one_organization_limit(self, fake_redis) -> None:
        client = TestClient(_make_app(rpm=1, redis_client=fake_redis, overrides={"vip:B1": 3}))
        for _ in range(3):
            resp = client.post("/forward/create", headers=_org("vip:B1"))
            assert resp.status_code == 200
        assert resp.headers["X-RateLimit-Limit"] == "3"
        assert client.post("/forward/create", headers=_org("vip:B1")).status_code == 429

    def test_limit_for(self) -> None:
        middleware = RateLimitMiddleware(FastAPI(), rpm=10, overrides={"org-1": 50})
        assert middleware.limit_for("org-1") == 50
        assert middleware.limit_for("org-2") == 10

    def test_anonymous_uses_ip_fallback(self, fake_redis) -> None:
        client = TestClient(_make_app(rpm=2, redis_client=fake_redis))
        for _ in range(2):
            assert client.post("/forward/create").status_code == 200
        assert client.post("/forward/create").status_code == 429


# ── Headers and 429 body ────────────────────────────────────────────────


class TestRateLimitResponses:
    def test_remaining_decrements(self, fake_redis) -> None:
        client = TestClient(_make_app(rpm=5, redis_client=fake_redis))
        first = client.post("/forward/create", headers=_org("o1"))
        second = client.post("/forward/create", headers=_org("o1"))
        assert first.headers["X-RateLimit-Limit"] == "5"
        assert first.headers["X-RateLimit-Remaining"] == "4"
        assert second.headers["X-RateLimit-Remaining"] == "3"
        assert int(first.headers["X-RateLimit-Reset"]) > int(time.time()) - 5

    def test_429_body_and_retry_after(self, fake_redis) -> None:
        client = TestClient(_make_app(rpm=1, redis_client=fake_redis))
        client.post("/forward/create", headers=_org("o1"))
        resp = client.post("/forward/create", headers=_org("o1"))

        assert resp.status_code == 429
        assert 1 <= int(resp.headers["Retry-After"]) <= 60
        assert resp.headers["X-RateLimit-Remaining"] == "0"
        body = resp.json()
        assert body["code"] == "RATE_LIMITED"
        assert body["organization_id"] == "o1"
        assert "rate limit" in body["error"].lower()

    def test_health_not_counted(self, fake_redis) -> None:
        client = TestClient(_make_app(rpm=1, redis_client=fake_redis))
        for _ in range(5):
            assert client.get("/health").status_code == 200
        assert client.post("/forward/create", headers=_org("o1")).status_code == 200


# ── Graceful Redis failure ──────────────────────────────────────────────


class TestRedisGracefulDegradation:
    def test_no_client_allows_traffic(self) -> None:
        client = TestClient(_make_app(rpm=1, redis_client=None))
        for _ in range(3):
            assert client.post("/forward/create", headers=_org("o1")).status_code == 200

    def test_redis_error_allows_and_logs(self, fake_redis, caplog) -> None:
        client = TestClient(_make_app(rpm=5, redis_client=fake_redis))
        with caplog.at_level(logging.WARNING, logger="migration_gateway.security"):
            with patch.object(fake_redis, "pipeline", side_effect=ConnectionError("gone")):
                resp = client.post("/forward/create", headers=_org("o1"))
        assert resp.status_code == 200
        assert any("redis" in r.message.lower() for r in caplog.records)
