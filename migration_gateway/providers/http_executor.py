"""HTTP executors for the legacy and new providers.

Each executor maps a forwarded action (``create``, ``status``, ``health``)
to a provider path, applies the optional payload transformers, sends the
request with ``httpx`` and returns a ``ProviderResponse``.  Non-2xx answers
raise ``ProviderResponseError`` so the circuit breaker records a failure and
the error classifier can read the status code and payload.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field, replace
from typing import Any, Protocol

import httpx

from migration_gateway.auth.credential_cache import CredentialCache
from migration_gateway.auth.token_authority import CredentialSource, OrganizationCredentials
from migration_gateway.core.errors import ClassifiedError, ProviderResponseError
from migration_gateway.models.results import LEGACY, NEW

logger = logging.getLogger(__name__)

PayloadTransformer = Callable[[Any], Any]
HeaderProvider = Callable[["ProviderRequest"], Awaitable[dict[str, str]]]

# ── Endpoint maps ───────────────────────────────────────────────────────

ACTION_ENDPOINTS: dict[str, str] = {
    "create": "/CreateDeposit",
    "status": "/CreateDepositStatus",
    "health": "/health",
}
DEFAULT_ACTION = "create"

# Legacy path → new provider path
NEW_PROVIDER_ENDPOINTS: dict[str, str] = {
    "/CreateDeposit": "/services/apexrest/depositcreation",
    "/CreateDepositStatus": "/services/apexrest/CreateDepositStatus",
    "/health": "/services/apexrest/branches",
}


def map_action_to_endpoint(action: str | None) -> str:
    """Unknown or missing actions map to the create endpoint."""
    return ACTION_ENDPOINTS.get(action or DEFAULT_ACTION, ACTION_ENDPOINTS[DEFAULT_ACTION])


def map_endpoint_to_new(endpoint: str) -> str:
    return NEW_PROVIDER_ENDPOINTS.get(endpoint, endpoint)


# ── Data classes ────────────────────────────────────────────────────────


@dataclass
class ProviderRequest:
    """One logical request, as seen by a provider executor.

    Attributes:
        action:          Logical operation (``create``, ``status``, ``health``).
        payload:         JSON body in the legacy wire format.
        organization_id: Tenant key, ``"{agency_ref}:{branch_id}"`` or None.
        member_id:       New-provider member, for credentials.
        branch_id:       New-provider branch, for credentials.
        credentials:     Pre-resolved credentials (skips the lookup).
        headers:         Extra headers to pass through.
    """

    action: str = DEFAULT_ACTION
    payload: Any = None
    organization_id: str | None = None
    member_id: str | None = None
    branch_id: str | None = None
    credentials: OrganizationCredentials | None = None
    headers: dict[str, str] = field(default_factory=dict)

    @property
    def endpoint(self) -> str:
        return map_action_to_endpoint(self.action)


@dataclass
class ProviderResponse:
    """Structured response from a provider call.

    Attributes:
        status_code: HTTP status code.
        data:        Parsed (and transformed) body.
        duration_ms: Round-trip time in milliseconds.
        headers:     Response headers as a plain dict.
    """

    status_code: int
    data: Any
    duration_ms: float
    headers: dict[str, str] = field(default_factory=dict)


class ProviderExecutor(Protocol):
    """One provider call.

    Executors may also define ``async prepare(request)``; the router awaits it
    before the retry loop so failures there never reach the circuit breaker.
    """

    name: str

    async def __call__(self, request: ProviderRequest) -> ProviderResponse: ...


# ── Executor ────────────────────────────────────────────────────────────


class HttpProviderExecutor:
    """POSTs forwarded requests to one provider.

    Args:
        name:                 Provider name (``legacy`` or ``new``).
        base_url:             Provider origin.
        timeout:              Per-call timeout in seconds.
        endpoint_map:         Maps the legacy endpoint to this provider's path.
        request_transformer:  Optional legacy → provider payload mapping.
        response_transformer: Optional provider → legacy payload mapping.
        auth:                 Optional coroutine returning auth headers.
        credentials:          ``CredentialSource`` used by ``prepare`` to
                              resolve credentials for member/branch requests.
        client:               Shared ``httpx.AsyncClient`` (tests inject one
                              with a mock transport).
    """

    def __init__(
        self,
        name: str,
        base_url: str,
        *,
        timeout: float = 30.0,
        endpoint_map: Callable[[str], str] | None = None,
        request_transformer: PayloadTransformer | None = None,
        response_transformer: PayloadTransformer | None = None,
        auth: HeaderProvider | None = None,
        credentials: CredentialSource | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.name = name
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._endpoint_map = endpoint_map
        self.request_transformer = request_transformer
        self.response_transformer = response_transformer
        self._auth = auth
        self._credentials = credentials
        self._client = client

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient()
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def url_for(self, request: ProviderRequest) -> str:
        endpoint = request.endpoint
        if self._endpoint_map is not None:
            endpoint = self._endpoint_map(endpoint)
        return f"{self.base_url}{endpoint}"

    async def prepare(self, request: ProviderRequest) -> ProviderRequest:
        """Resolve member/branch credentials up front.

        Raises:
            ClassifiedError: CONFIGURATION kind when the organization has no
                credentials.
        """
        if request.credentials is not None or self._credentials is None:
            return request
        if not (request.member_id and request.branch_id):
            return request
        creds = await self._credentials.lookup(request.member_id, request.branch_id)
        return replace(request, credentials=creds)

    async def __call__(self, request: ProviderRequest) -> ProviderResponse:
        url = self.url_for(request)
        payload = self._transform(self.request_transformer, request.payload, "request")

        headers = {"Content-Type": "application/json", "Accept": "application/json", **request.headers}
        if self._auth is not None:
            headers.update(await self._auth(request))

        logger.debug("[%s] POST %s (org=%s)", self.name, url, request.organization_id)
        start = time.monotonic()
        response = await self._get_client().post(url, json=payload, headers=headers, timeout=self.timeout)
        duration_ms = round((time.monotonic() - start) * 1000, 2)

        data = _parse_body(response)
        if not response.is_success:
            raise ProviderResponseError(self.name, response.status_code, data, dict(response.headers))

        return ProviderResponse(
            status_code=response.status_code,
            data=self._transform(self.response_transformer, data, "response"),
            duration_ms=duration_ms,
            headers=dict(response.headers),
        )

    def _transform(self, transformer: PayloadTransformer | None, payload: Any, direction: str) -> Any:
        if transformer is None:
            return payload
        try:
            return transformer(payload)
        except ClassifiedError:
            raise
        except Exception as exc:
            raise ClassifiedError.transformation(
                f"Failed to transform {self.name} {direction} payload: {exc}",
                transformation_type=f"{self.name}_{direction}",
                provider=self.name,
                cause=exc,
            ) from exc


def _parse_body(response: httpx.Response) -> Any:
    if not response.content:
        return None
    try:
        return response.json()
    except ValueError:
        return response.text


# ── Factories ───────────────────────────────────────────────────────────


def new_provider_auth(cache: CredentialCache, credentials: CredentialSource | None = None) -> HeaderProvider:
    """Header provider resolving credentials per request and using *cache*.

    Requests carrying no member/branch go out without auth headers.
    """

    async def _headers(request: ProviderRequest) -> dict[str, str]:
        creds = request.credentials
        if creds is None:
            if not (request.member_id and request.branch_id) or credentials is None:
                return {}
            creds = await credentials.lookup(request.member_id, request.branch_id)
        return await cache.auth_headers(creds)

    return _headers


def legacy_executor(base_url: str, *, timeout: float = 30.0, **kwargs: Any) -> HttpProviderExecutor:
    return HttpProviderExecutor(LEGACY, base_url, timeout=timeout, **kwargs)


def new_executor(base_url: str, *, timeout: float = 45.0, **kwargs: Any) -> HttpProviderExecutor:
    return HttpProviderExecutor(NEW, base_url, timeout=timeout, endpoint_map=map_endpoint_to_new, **kwargs)
