"""Credentials and token issuance for the new provider.

The new provider accepts two authentication methods:

* ``api-key``: a static ``AccessToken`` header built from the organization's
  scheme, member, branch and API key.  No round trip, nothing cached.
* ``oauth2``: a short-lived token obtained from the provider's
  ``/services/apexrest/authorise`` endpoint with a custom ``auth_code``
  header, then cached per (member, branch) by ``CredentialCache``.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Protocol

import httpx

from migration_gateway.core.errors import ClassifiedError, ProviderResponseError

logger = logging.getLogger(__name__)

AUTH_METHOD_API_KEY = "api-key"
AUTH_METHOD_OAUTH2 = "oauth2"

ACCESS_TOKEN_HEADER = "AccessToken"

# Region → scheme name used in auth codes and static tokens
SCHEME_NAMES: dict[str, str] = {
    "EW": "England & Wales Custodial",
    "Scotland": "Scotland Custodial",
    "NI": "Northern Ireland Custodial",
}
_DEFAULT_SCHEME = SCHEME_NAMES["EW"]
_DEFAULT_SCHEME_TYPE = "Custodial"


def normalize_auth_method(method: str | None) -> str:
    """``api_key`` and ``API-KEY`` both mean ``api-key``; anything else is oauth2."""
    value = (method or AUTH_METHOD_OAUTH2).strip().lower().replace("_", "-")
    return AUTH_METHOD_API_KEY if value == AUTH_METHOD_API_KEY else AUTH_METHOD_OAUTH2


@dataclass(frozen=True)
class OrganizationCredentials:
    """Per-organization credentials for the new provider.

    ``repr`` masks the secret and API key so credentials can be logged.
    """

    member_id: str
    branch_id: str
    client_id: str = ""
    client_secret: str = ""
    api_key: str | None = None
    auth_method: str = AUTH_METHOD_OAUTH2
    base_url: str | None = None
    region: str = "EW"
    scheme_type: str = _DEFAULT_SCHEME_TYPE
    provider_preference: str = "auto"

    @property
    def scheme(self) -> str:
        return SCHEME_NAMES.get(self.region, _DEFAULT_SCHEME)

    @property
    def method(self) -> str:
        return normalize_auth_method(self.auth_method)

    def __repr__(self) -> str:
        return (
            f"OrganizationCredentials(member_id={self.member_id!r}, branch_id={self.branch_id!r}, "
            f"auth_method={self.method!r}, region={self.region!r}, has_api_key={bool(self.api_key)})"
        )


@dataclass(frozen=True)
class IssuedToken:
    token: str
    expires_in: float | None = None


class TokenAuthority(Protocol):
    async def issue(self, credentials: OrganizationCredentials) -> IssuedToken: ...


class CredentialSource(Protocol):
    async def lookup(self, member_id: str, branch_id: str) -> OrganizationCredentials: ...


class StaticCredentialSource:
    """Credentials from a fixed mapping, with an optional catch-all template.

    The template's secrets are reused for any (member, branch) pair that has
    no explicit entry.
    """

    def __init__(
        self,
        entries: dict[tuple[str, str], OrganizationCredentials] | None = None,
        *,
        default: OrganizationCredentials | None = None,
    ) -> None:
        self._entries = dict(entries or {})
        self._default = default

    async def lookup(self, member_id: str, branch_id: str) -> OrganizationCredentials:
        found = self._entries.get((member_id, branch_id))
        if found is not None:
            return found
        if self._default is None:
            raise ClassifiedError.configuration(
                f"No credentials configured for {member_id}:{branch_id}",
                config_key="credentials",
                actual_value=f"{member_id}:{branch_id}",
                expected="a configured organization",
            )
        return OrganizationCredentials(
            member_id=member_id,
            branch_id=branch_id,
            client_id=self._default.client_id,
            client_secret=self._default.client_secret,
            api_key=self._default.api_key,
            auth_method=self._default.auth_method,
            base_url=self._default.base_url,
            region=self._default.region,
            scheme_type=self._default.scheme_type,
            provider_preference=self._default.provider_preference,
        )


# ── Static API-key token ────────────────────────────────────────────────


def build_api_key_token(credentials: OrganizationCredentials) -> str:
    """``{scheme}-{type}-{member}-{branch}-{api_key}``."""
    if not (credentials.member_id and credentials.branch_id and credentials.api_key):
        raise ClassifiedError.configuration(
            "Organization credentials missing required fields: member_id, branch_id, api_key",
            config_key="api_key",
            expected="member_id, branch_id and api_key",
        )
    scheme_type = credentials.scheme_type or _DEFAULT_SCHEME_TYPE
    return f"{credentials.scheme}-{scheme_type}-{credentials.member_id}-{credentials.branch_id}-{credentials.api_key}"


# ── OAuth2 authority ────────────────────────────────────────────────────


def build_auth_code(credentials: OrganizationCredentials) -> str:
    """``{scheme}-{type}-{client_id}-{client_secret}-{member_id}`` for the authorise call."""
    scheme_type = credentials.scheme_type or _DEFAULT_SCHEME_TYPE
    member_id = credentials.member_id or "0"
    return f"{credentials.scheme}-{scheme_type}-{credentials.client_id}-{credentials.client_secret}-{member_id}"


def apply_branch(token: str, branch_id: str) -> str:
    """Replace the placeholder branch segment ``0`` (third part) with *branch_id*."""
    if not branch_id or branch_id == "0":
        return token
    parts = token.split("-")
    if len(parts) >= 3 and parts[2] == "0":
        parts[2] = branch_id
        return "-".join(parts)
    return token


def authorise_url(base_url: str) -> str:
    base = base_url.rstrip("/")
    if base.endswith("/services/apexrest"):
        base = base[: -len("/services/apexrest")]
    return f"{base}/services/apexrest/authorise"


class HttpTokenAuthority:
    """Obtains tokens from the new provider's authorise endpoint.

    Args:
        base_url: Default provider base URL (credentials may override it).
        timeout:  Seconds allowed for the authorise call.
        client:   Optional shared ``httpx.AsyncClient``; one is created per
                  call otherwise.
    """

    def __init__(self, base_url: str, *, timeout: float = 10.0, client: httpx.AsyncClient | None = None) -> None:
        self.base_url = base_url
        self.timeout = timeout
        self._client = client

    async def issue(self, credentials: OrganizationCredentials) -> IssuedToken:
        url = authorise_url(credentials.base_url or self.base_url)
        headers = {"auth_code": build_auth_code(credentials)}
        started = time.monotonic()

        if self._client is not None:
            response = await self._client.get(url, headers=headers, timeout=self.timeout)
        else:
            async with httpx.AsyncClient() as client:
                response = await client.get(url, headers=headers, timeout=self.timeout)

        payload = _json_or_none(response)
        if response.status_code >= 400:
            raise ProviderResponseError("new", response.status_code, payload, dict(response.headers))
        if not isinstance(payload, dict) or payload.get("success") not in (True, "true"):
            success = payload.get("success") if isinstance(payload, dict) else None
            raise ClassifiedError.permanent(
                f"Token request rejected: success={success}",
                provider="new",
                status_code=response.status_code,
                raw_response=payload,
            )
        token = payload.get("AccessToken")
        if not token:
            raise ClassifiedError.permanent(
                "No AccessToken in token response",
                provider="new",
                status_code=response.status_code,
            )

        logger.info(
            "Token issued for %s:%s in %.0fms",
            credentials.member_id,
            credentials.branch_id,
            (time.monotonic() - started) * 1000,
        )
        expires_in = payload.get("expires_in")
        return IssuedToken(
            token=apply_branch(str(token), credentials.branch_id),
            expires_in=float(expires_in) if isinstance(expires_in, (int, float)) else None,
        )


def _json_or_none(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return None
