"""Request/response Pydantic models for the HTTP surface."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field, field_validator

from migration_gateway.core.config import PROVIDER_PREFERENCES


class HealthResponse(BaseModel):
    """Response model for GET /health.

    ``status`` is ``degraded`` while any circuit breaker is open.
    """

    service: str
    version: str
    status: str
    uptime_seconds: float
    routing_mode: str
    circuit_breakers: dict[str, dict[str, Any]] = Field(default_factory=dict)
    token_cache: dict[str, Any] = Field(default_factory=dict)


class ConfigResponse(BaseModel):
    """Response model for GET /config."""

    service: str
    version: str
    routing: dict[str, Any]
    retry: dict[str, Any]
    circuit_breaker: dict[str, Any]


# Runtime routing updates; values are checked by ``Router`` (invalid → 400)


class RoutingModeUpdate(BaseModel):
    """Body of PUT /config/routing-mode."""

    mode: str


class PercentageUpdate(BaseModel):
    """Body of PUT /config/forwarding-percentage."""

    percentage: float


class OrganizationPreferenceUpdate(BaseModel):
    """Body of PUT /config/organizations/{organization_id}."""

    provider_preference: str


class ForwardRequestBody(BaseModel):
    """Body of POST /forward/{action}.

    ``organization_id`` may be omitted when ``metadata`` carries
    ``agency_ref`` and ``branch_id``; the id is then ``"{agency_ref}:{branch_id}"``.
    """

    payload: Any = None
    organization_id: str | None = Field(default=None, max_length=200)
    member_id: str | None = Field(default=None, max_length=100)
    branch_id: str | None = Field(default=None, max_length=100)
    provider_preference: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("provider_preference")
    @classmethod
    def check_preference(cls, v: str | None) -> str | None:
        if v is not None and v not in PROVIDER_PREFERENCES:
            raise ValueError(f"provider_preference must be one of {', '.join(PROVIDER_PREFERENCES)}")
        return v

    def resolved_organization_id(self, header_value: str | None = None) -> str | None:
        if header_value:
            return header_value
        if self.organization_id:
            return self.organization_id
        agency_ref = self.metadata.get("agency_ref")
        branch_id = self.metadata.get("branch_id")
        if agency_ref and branch_id:
            return f"{agency_ref}:{branch_id}"
        return None


class ForwardResponse(BaseModel):
    """Response model for POST /forward/{action}."""

    success: bool
    provider: str
    mode: str
    fallback: bool = False
    status_code: int
    data: Any = None
    error: str | None = None
    error_kind: str | None = None
    retryable: bool = False
    duration_ms: float
    request_id: str
    comparison: dict[str, Any] | None = None
