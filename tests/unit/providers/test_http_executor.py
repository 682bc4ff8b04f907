"""Provider executor tests: endpoint mapping, non-2xx handling, payload
transformers, credential preparation and new-provider auth headers.
"""

from __future__ import annotations

import json

import httpx
import pytest

from migration_gateway.auth.credential_cache import CredentialCache
from migration_gateway.auth.token_authority import IssuedToken, OrganizationCredentials, StaticCredentialSource
from migration_gateway.core.errors import ClassifiedError, ErrorKind, ProviderResponseError
from migration_gateway.providers.http_executor import (
    ProviderRequest,
    legacy_executor,
    map_action_to_endpoint,
    map_endpoint_to_new,
    new_executor,
    new_provider_auth,
)


class Recorder:
    """MockTransport handler that records requests and replays one response."""

    def __init__(self, response: httpx.Response | None = None) -> None:
        self.response = response or httpx.Response(200, json={"success": True, "batch_id": 42})
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.response

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self))


class StaticAuthority:
    async def issue(self, credentials: OrganizationCredentials) -> IssuedToken:
        return IssuedToken(f"oauth-{credentials.member_id}-{credentials.branch_id}")


class TestEndpointMapping:
    @pytest.mark.parametrize(
        ("action", "endpoint"),
        [("create", "/CreateDeposit"), ("status", "/CreateDepositStatus"), ("health", "/health"), ("bogus", "/CreateDeposit"), (None, "/CreateDeposit")],
    )
    def test_actions(self, action, endpoint):
        assert map_action_to_endpoint(action) == endpoint

    def test_new_provider_paths(self):
        assert map_endpoint_to_new("/CreateDeposit") == "/services/apexrest/depositcreation"
        assert map_endpoint_to_new("/health") == "/services/apexrest/branches"
        assert map_endpoint_to_new("/Other") == "/Other"


class TestHttpProviderExecutor:
    async def test_legacy_post(self):
        recorder = Recorder()
        executor = legacy_executor("https://legacy.example.test/", client=recorder.client())

        response = await executor(ProviderRequest(action="create", payload={"amount": 950}, headers={"X-Trace": "t1"}))

        sent = recorder.requests[0]
        assert sent.method == "POST"
        assert str(sent.url) == "https://legacy.example.test/CreateDeposit"
        assert json.loads(sent.content) == {"amount": 950}
        assert sent.headers["x-trace"] == "t1"
        assert sent.headers["accept"] == "application/json"
        assert response.status_code == 200
        assert response.data == {"success": True, "batch_id": 42}
        assert response.duration_ms >= 0

    async def test_new_provider_path(self):
        recorder = Recorder()
        executor = new_executor("https://new.example.test", client=recorder.client())
        await executor(ProviderRequest(action="status", payload={}))
        assert recorder.requests[0].url.path == "/services/apexrest/CreateDepositStatus"

    async def test_non_2xx_raises_with_payload_and_headers(self):
        recorder = Recorder(httpx.Response(429, json={"error": "slow down"}, headers={"Retry-After": "3"}))
        executor = legacy_executor("https://legacy.example.test", client=recorder.client())

        with pytest.raises(ProviderResponseError) as exc_info:
            await executor(ProviderRequest(payload={}))

        assert exc_info.value.provider == "legacy"
        assert exc_info.value.status_code == 429
        assert exc_info.value.data == {"error": "slow down"}
        assert exc_info.value.headers["retry-after"] == "3"

    async def test_text_body(self):
        recorder = Recorder(httpx.Response(200, text="OK"))
        executor = legacy_executor("https://legacy.example.test", client=recorder.client())
        assert (await executor(ProviderRequest(payload={}))).data == "OK"

    async def test_transformers_applied(self):
        recorder = Recorder(httpx.Response(200, json={"DAN": "EW1"}))
        executor = new_executor(
            "https://new.example.test",
            client=recorder.client(),
            request_transformer=lambda payload: {"deposit": payload},
            response_transformer=lambda data: {"dan": data["DAN"]},
        )

        response = await executor(ProviderRequest(payload={"amount": 1}))

        assert json.loads(recorder.requests[0].content) == {"deposit": {"amount": 1}}
        assert response.data == {"dan": "EW1"}

    async def test_transformer_failure_is_transformation_error(self):
        recorder = Recorder(httpx.Response(200, json={}))
        executor = new_executor(
            "https://new.example.test",
            client=recorder.client(),
            response_transformer=lambda data: data["missing"],
        )

        with pytest.raises(ClassifiedError) as exc_info:
            await executor(ProviderRequest(payload={}))

        assert exc_info.value.kind == ErrorKind.TRANSFORMATION
        assert exc_info.value.details["transformation_type"] == "new_response"
        assert exc_info.value.is_retryable is False

    async def test_aclose_releases_client(self):
        executor = legacy_executor("https://legacy.example.test", client=Recorder().client())
        await executor.aclose()
        await executor.aclose()


class TestNewProviderAuth:
    @pytest.fixture
    def cache(self, clock) -> CredentialCache:
        return CredentialCache(StaticAuthority(), clock=clock)

    async def test_oauth_token_header(self, cache):
        source = StaticCredentialSource(default=OrganizationCredentials("", "", client_id="c", client_secret="s"))
        recorder = Recorder()
        executor = new_executor("https://new.example.test", client=recorder.client(), auth=new_provider_auth(cache, source))

        await executor(ProviderRequest(payload={}, member_id="M1", branch_id="B2"))

        assert recorder.requests[0].headers["accesstoken"] == "oauth-M1-B2"

    async def test_request_credentials_take_precedence(self, cache):
        creds = OrganizationCredentials("M5", "B5", api_key="k", auth_method="api-key", region="Scotland")
        recorder = Recorder()
        executor = new_executor("https://new.example.test", client=recorder.client(), auth=new_provider_auth(cache))

        await executor(ProviderRequest(payload={}, credentials=creds))

        assert recorder.requests[0].headers["accesstoken"] == "Scotland Custodial-Custodial-M5-B5-k"

    async def test_no_identity_means_no_auth_header(self, cache):
        recorder = Recorder()
        executor = new_executor("https://new.example.test", client=recorder.client(), auth=new_provider_auth(cache))

        await executor(ProviderRequest(payload={}))

        assert "accesstoken" not in recorder.requests[0].headers


class TestPrepare:
    async def test_resolves_member_branch_credentials(self):
        source = StaticCredentialSource(default=OrganizationCredentials("", "", client_id="c", client_secret="s"))
        executor = new_executor("https://new.example.test", credentials=source)
        request = ProviderRequest(payload={}, member_id="M1", branch_id="B2")

        prepared = await executor.prepare(request)

        assert prepared.credentials.member_id == "M1"
        assert prepared.credentials.branch_id == "B2"
        assert prepared.credentials.client_id == "c"
        assert request.credentials is None

    async def test_existing_credentials_are_kept(self):
        creds = OrganizationCredentials("M5", "B5", api_key="k", auth_method="api-key")
        executor = new_executor("https://new.example.test", credentials=StaticCredentialSource())
        request = ProviderRequest(payload={}, member_id="M1", branch_id="B1", credentials=creds)

        assert await executor.prepare(request) is request

    async def test_no_identity_is_left_alone(self):
        executor = new_executor("https://new.example.test", credentials=StaticCredentialSource())
        request = ProviderRequest(payload={})
        assert await executor.prepare(request) is request

    async def test_unknown_organization_is_a_configuration_error(self):
        executor = new_executor("https://new.example.test", credentials=StaticCredentialSource())

        with pytest.raises(ClassifiedError) as exc_info:
            await executor.prepare(ProviderRequest(payload={}, member_id="M9", branch_id="B9"))

        assert exc_info.value.kind == ErrorKind.CONFIGURATION
