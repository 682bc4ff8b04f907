"""FastAPI application entrypoint.

``create_app(settings)`` builds the gateway: request-ID middleware,
per-organization rate limiting, ``/health`` (breaker and token-cache stats),
``/config`` with its runtime ``PUT`` updates and ``POST /forward/{action}``.
All collaborators are built explicitly by ``build_gateway`` and stored on
``app.state``.

Run with ``uvicorn migration_gateway.main:app``.
"""

from __future__ import annotations

import logging
import random
import time
import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any

import httpx
from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse

from migration_gateway.auth.credential_cache import CredentialCache
from migration_gateway.auth.token_authority import (
    HttpTokenAuthority,
    OrganizationCredentials,
    StaticCredentialSource,
)
from migration_gateway.core.config import Settings, validate_settings
from migration_gateway.core.errors import (
    CircuitOpenError,
    ClassifiedError,
    ErrorKind,
    MigrationGatewayError,
    StructuredErrorResponse,
)
from migration_gateway.models.results import LEGACY, NEW
from migration_gateway.models.schemas import (
    ConfigResponse,
    ForwardRequestBody,
    ForwardResponse,
    HealthResponse,
    OrganizationPreferenceUpdate,
    PercentageUpdate,
    RoutingModeUpdate,
)
from migration_gateway.providers.http_executor import (
    HttpProviderExecutor,
    ProviderRequest,
    legacy_executor,
    new_executor,
    new_provider_auth,
)
from migration_gateway.resilience.circuit_breaker import CircuitBreakerRegistry, CircuitState
from migration_gateway.resilience.retry import RandomSource, RetryExecutor
from migration_gateway.router import Router, RouterConfig
from migration_gateway.security.rate_limiter import ORGANIZATION_HEADER, RateLimitMiddleware
from migration_gateway.telemetry import Telemetry

logger = logging.getLogger(__name__)


@dataclass
class Gateway:
    """Everything a running gateway needs, built once per app."""

    router: Router
    registry: CircuitBreakerRegistry
    credential_cache: CredentialCache
    telemetry: Telemetry
    executors: dict[str, HttpProviderExecutor]

    async def aclose(self) -> None:
        for executor in self.executors.values():
            await executor.aclose()


def build_gateway(
    settings: Settings,
    *,
    telemetry: Telemetry | None = None,
    legacy_client: httpx.AsyncClient | None = None,
    new_client: httpx.AsyncClient | None = None,
    rng: RandomSource | None = None,
) -> Gateway:
    """Wire breakers, retry engine, credential cache, executors and router."""
    telemetry = telemetry or Telemetry()
    rng = rng or random.Random()
    registry = CircuitBreakerRegistry(settings.breaker_config(), on_state_change=telemetry.circuit_state_change)
    retry = RetryExecutor(registry, settings.retry_policy(), rng=rng)

    source = StaticCredentialSource(
        default=OrganizationCredentials(
            member_id="",
            branch_id="",
            client_id=settings.NEW_CLIENT_ID,
            client_secret=settings.NEW_CLIENT_SECRET,
            api_key=settings.NEW_API_KEY or None,
            auth_method=settings.NEW_AUTH_METHOD,
            base_url=settings.NEW_BASE_URL,
            region=settings.NEW_REGION,
            scheme_type=settings.NEW_SCHEME_TYPE,
        )
    )
    authority = HttpTokenAuthority(settings.NEW_BASE_URL, timeout=settings.NEW_AUTH_TIMEOUT_SECONDS, client=new_client)
    cache = CredentialCache(
        authority,
        source,
        ttl=settings.TOKEN_TTL_SECONDS,
        refresh_buffer=settings.TOKEN_REFRESH_BUFFER_SECONDS,
    )

    executors = {
        LEGACY: legacy_executor(settings.LEGACY_BASE_URL, timeout=settings.LEGACY_TIMEOUT_SECONDS, client=legacy_client),
        NEW: new_executor(
            settings.NEW_BASE_URL,
            timeout=settings.NEW_TIMEOUT_SECONDS,
            auth=new_provider_auth(cache, source),
            credentials=source,
            client=new_client,
        ),
    }
    router = Router(executors, retry, RouterConfig.from_settings(settings), telemetry=telemetry, rng=rng)
    return Gateway(router=router, registry=registry, credential_cache=cache, telemetry=telemetry, executors=executors)


def build_router(settings: Settings, **kwargs: Any) -> Router:
    return build_gateway(settings, **kwargs).router


def _redis_client(settings: Settings) -> Any:
    try:
        import redis.asyncio as aioredis

        return aioredis.from_url(settings.REDIS_URL)
    except Exception:
        logger.warning("Redis client unavailable, rate limiting disabled", exc_info=True)
        return None


def create_app(
    settings: Settings | None = None,
    *,
    gateway: Gateway | None = None,
    redis_client: Any = None,
) -> FastAPI:
    """Build the FastAPI app.

    Args:
        settings:     Validated at startup (``Settings()`` if omitted).
        gateway:      Pre-built collaborators (tests inject mock transports).
        redis_client: Rate-limit backend; built from ``REDIS_URL`` when
                      omitted and rate limiting is enabled.
    """
    settings = validate_settings(settings or Settings())
    gateway = gateway or build_gateway(settings)
    start_time = time.monotonic()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        logger.info(
            "%s %s starting (routing=%s)",
            settings.SERVICE_NAME,
            settings.SERVICE_VERSION,
            settings.ROUTING_MODE,
        )
        yield
        await gateway.aclose()

    app = FastAPI(title=settings.SERVICE_NAME, version=settings.SERVICE_VERSION, lifespan=lifespan)
    app.state.settings = settings
    app.state.gateway = gateway

    # ── Middleware chain ────────────────────────────────────────────
    # Order: RequestID → RateLimit → [handler]
    # Starlette add_middleware prepends, so LAST added = OUTERMOST.

    if settings.RATE_LIMIT_ENABLED:
        app.add_middleware(
            RateLimitMiddleware,
            rpm=settings.RATE_LIMIT_RPM,
            redis_client=redis_client if redis_client is not None else _redis_client(settings),
            overrides=settings.RATE_LIMIT_OVERRIDES,
        )

    @app.middleware("http")
    async def request_id_middleware(request: Request, call_next) -> Response:
        """Assign or preserve a unique request ID on every request."""
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request.state.request_id = request_id
        response = await call_next(request)
        response.headers["X-Request-ID"] = request_id
        return response

    @app.exception_handler(MigrationGatewayError)
    async def gateway_error_handler(request: Request, exc: MigrationGatewayError) -> JSONResponse:
        request_id = getattr(request.state, "request_id", "")
        body = StructuredErrorResponse.from_exception(exc, request_id)
        if isinstance(exc, CircuitOpenError):
            status = 503
        elif isinstance(exc, ClassifiedError) and exc.kind == ErrorKind.CONFIGURATION:
            status = 400
        elif isinstance(exc, ClassifiedError) and exc.status_code:
            status = exc.status_code
        else:
            status = 502
        return JSONResponse(status_code=status, content=body.model_dump(mode="json"))

    # ── Routes ──────────────────────────────────────────────────────

    @app.get("/health", response_model=HealthResponse)
    async def health() -> JSONResponse:
        """Service health; ``degraded`` (503) while any circuit is open."""
        stats = gateway.router.get_stats()
        degraded = any(s["state"] == CircuitState.OPEN.value for s in stats.values())
        body = HealthResponse(
            service=settings.SERVICE_NAME,
            version=settings.SERVICE_VERSION,
            status="degraded" if degraded else "healthy",
            uptime_seconds=round(time.monotonic() - start_time, 2),
            routing_mode=gateway.router.config.mode.value,
            circuit_breakers=stats,
            token_cache=gateway.credential_cache.health(),
        )
        return JSONResponse(status_code=503 if degraded else 200, content=body.model_dump(mode="json"))

    @app.get("/config", response_model=ConfigResponse)
    async def config() -> ConfigResponse:
        """Effective routing, retry and breaker configuration (no secrets)."""
        policy = gateway.router.retry.policy
        breaker = gateway.registry.config
        return ConfigResponse(
            service=settings.SERVICE_NAME,
            version=settings.SERVICE_VERSION,
            routing=gateway.router.describe(),
            retry={
                "max_attempts": policy.max_attempts,
                "initial_delay": policy.initial_delay,
                "max_delay": policy.max_delay,
                "backoff_multiplier": policy.backoff_multiplier,
                "jitter_factor": policy.jitter_factor,
            },
            circuit_breaker={
                "failure_threshold": breaker.failure_threshold,
                "minimum_requests": breaker.minimum_requests,
                "window_size": breaker.window_size,
                "open_timeout": breaker.open_timeout,
                "max_open_timeout": breaker.max_open_timeout,
                "success_threshold": breaker.success_threshold,
                "backoff_multiplier": breaker.backoff_multiplier,
            },
        )

    @app.post("/circuit-breakers/reset")
    async def reset_circuit_breakers() -> dict[str, Any]:
        """Reset every breaker to CLOSED."""
        await gateway.registry.reset_all()
        logger.warning("All circuit breakers reset via admin endpoint")
        return {"reset": True, "circuit_breakers": gateway.router.get_stats()}

    # ── Runtime routing changes (in-memory, lost on restart) ────────

    @app.put("/config/routing-mode")
    async def update_routing_mode(body: RoutingModeUpdate) -> dict[str, Any]:
        gateway.router.update_mode(body.mode)
        return {"routing": gateway.router.describe()}

    @app.put("/config/forwarding-percentage")
    async def update_forwarding_percentage(body: PercentageUpdate) -> dict[str, Any]:
        gateway.router.update_percentage(body.percentage)
        return {"routing": gateway.router.describe()}

    @app.put("/config/organizations/{organization_id}")
    async def update_organization_preference(
        organization_id: str, body: OrganizationPreferenceUpdate
    ) -> dict[str, Any]:
        """Pin one organization to ``legacy``, ``new`` or ``dual`` (``auto`` unpins)."""
        gateway.router.set_organization_preference(organization_id, body.provider_preference)
        return {"routing": gateway.router.describe()}

    @app.post("/forward/{action}", response_model=ForwardResponse)
    async def forward(action: str, body: ForwardRequestBody, request: Request) -> JSONResponse:
        """Route one request to the legacy and/or new provider."""
        request_id = request.state.request_id
        provider_request = ProviderRequest(
            action=action,
            payload=body.payload,
            organization_id=body.resolved_organization_id(request.headers.get(ORGANIZATION_HEADER)),
            member_id=body.member_id,
            branch_id=body.branch_id,
            headers={"X-Request-ID": request_id},
        )
        routed = await gateway.router.execute(provider_request, provider_preference=body.provider_preference)
        result = routed.result
        payload = ForwardResponse(
            success=result.success,
            provider=routed.provider,
            mode=routed.mode,
            fallback=routed.fallback,
            status_code=result.status_code,
            data=routed.response,
            error=result.error,
            error_kind=result.error_kind,
            retryable=result.retryable,
            duration_ms=result.duration_ms,
            request_id=request_id,
            comparison=routed.comparison.to_dict() if routed.comparison is not None else None,
        )
        return JSONResponse(
            status_code=result.status_code if not result.success else 200,
            content=payload.model_dump(mode="json"),
            headers={"X-Provider": routed.provider},
        )

    return app


app = create_app()
