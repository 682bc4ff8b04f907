"""Settings for the migration gateway.

All settings are loaded from environment variables with the
``MIGRATION_GATEWAY_`` prefix.  Durations are in seconds.

``validate_settings`` is called once at startup; invalid routing, retry or
breaker settings are fatal there and never surface per request.  The
routing checks are shared with the runtime routing updates on ``Router``.
"""

from __future__ import annotations

from pydantic_settings import BaseSettings

from migration_gateway.core.errors import ClassifiedError
from migration_gateway.resilience.circuit_breaker import BreakerConfig
from migration_gateway.resilience.retry import RetryPolicy

ROUTING_MODES: tuple[str, ...] = ("single-legacy", "single-new", "percentage", "dual", "shadow")
PROVIDER_PREFERENCES: tuple[str, ...] = ("legacy", "new", "dual", "auto")


class Settings(BaseSettings):
    """Migration gateway configuration.

    All fields can be overridden by environment variables prefixed with
    ``MIGRATION_GATEWAY_``.  For example,
    ``MIGRATION_GATEWAY_ROUTING_MODE=shadow`` switches to shadow testing.
    """

    # ── Service identity ────────────────────────────────────────────
    SERVICE_NAME: str = "migration-gateway"
    SERVICE_VERSION: str = "0.1.0"
    HOST: str = "0.0.0.0"
    PORT: int = 8090

    # ── Routing ─────────────────────────────────────────────────────
    ROUTING_MODE: str = "single-legacy"  # safe default
    FORWARDING_PERCENTAGE: float = 0.0  # share of traffic sent to the new provider
    ENABLE_FALLBACK: bool = False
    ENABLE_COMPARISON: bool = False
    REQUEST_DEADLINE_SECONDS: float = 60.0  # overall budget per forwarded request
    # JSON object, e.g. {"agency-1:branch-7": "new"}; values legacy/new/dual/auto
    ORGANIZATION_PREFERENCES: dict[str, str] = {}

    # ── Providers ───────────────────────────────────────────────────
    LEGACY_BASE_URL: str = "http://localhost:9001"
    LEGACY_TIMEOUT_SECONDS: float = 30.0
    NEW_BASE_URL: str = "http://localhost:9002"
    NEW_TIMEOUT_SECONDS: float = 45.0
    NEW_AUTH_TIMEOUT_SECONDS: float = 10.0
    NEW_AUTH_METHOD: str = "oauth2"  # or api-key
    NEW_CLIENT_ID: str = ""
    NEW_CLIENT_SECRET: str = ""
    NEW_API_KEY: str = ""
    NEW_REGION: str = "EW"
    NEW_SCHEME_TYPE: str = "Custodial"

    # ── Retry ───────────────────────────────────────────────────────
    RETRY_MAX_ATTEMPTS: int = 3
    RETRY_INITIAL_DELAY: float = 1.0
    RETRY_MAX_DELAY: float = 8.0
    RETRY_BACKOFF_MULTIPLIER: float = 2.0
    RETRY_JITTER_FACTOR: float = 0.1

    # ── Circuit breaker ─────────────────────────────────────────────
    CIRCUIT_BREAKER_FAILURE_THRESHOLD: float = 50.0  # percent
    CIRCUIT_BREAKER_MINIMUM_REQUESTS: int = 10
    CIRCUIT_BREAKER_WINDOW_SECONDS: float = 60.0
    CIRCUIT_BREAKER_OPEN_TIMEOUT: float = 30.0
    CIRCUIT_BREAKER_MAX_OPEN_TIMEOUT: float = 300.0
    CIRCUIT_BREAKER_SUCCESS_THRESHOLD: int = 3
    CIRCUIT_BREAKER_BACKOFF_MULTIPLIER: float = 2.0

    # ── Token cache ─────────────────────────────────────────────────
    TOKEN_TTL_SECONDS: float = 300.0  # authority returns no lifetime
    TOKEN_REFRESH_BUFFER_SECONDS: float = 60.0

    # ── Rate limiting ───────────────────────────────────────────────
    RATE_LIMIT_ENABLED: bool = True
    REDIS_URL: str = "redis://localhost:6379"
    RATE_LIMIT_RPM: int = 100  # per organization
    RATE_LIMIT_OVERRIDES: dict[str, int] = {}  # organization id → rpm

    model_config = {
        "env_prefix": "MIGRATION_GATEWAY_",
    }

    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.RETRY_MAX_ATTEMPTS,
            initial_delay=self.RETRY_INITIAL_DELAY,
            max_delay=self.RETRY_MAX_DELAY,
            backoff_multiplier=self.RETRY_BACKOFF_MULTIPLIER,
            jitter_factor=self.RETRY_JITTER_FACTOR,
        )

    def breaker_config(self) -> BreakerConfig:
        return BreakerConfig(
            failure_threshold=self.CIRCUIT_BREAKER_FAILURE_THRESHOLD,
            minimum_requests=self.CIRCUIT_BREAKER_MINIMUM_REQUESTS,
            window_size=self.CIRCUIT_BREAKER_WINDOW_SECONDS,
            open_timeout=self.CIRCUIT_BREAKER_OPEN_TIMEOUT,
            max_open_timeout=self.CIRCUIT_BREAKER_MAX_OPEN_TIMEOUT,
            success_threshold=self.CIRCUIT_BREAKER_SUCCESS_THRESHOLD,
            backoff_multiplier=self.CIRCUIT_BREAKER_BACKOFF_MULTIPLIER,
        )


def _invalid(key: str, value: object, expected: str) -> ClassifiedError:
    return ClassifiedError.configuration(
        f"Invalid {key}: {value!r}. Expected {expected}",
        config_key=key,
        actual_value=value,
        expected=expected,
    )


def check_routing_mode(mode: str, key: str = "ROUTING_MODE") -> str:
    if mode not in ROUTING_MODES:
        raise _invalid(key, mode, f"one of {', '.join(ROUTING_MODES)}")
    return mode


def check_percentage(percentage: float, key: str = "FORWARDING_PERCENTAGE") -> float:
    if not 0 <= percentage <= 100:
        raise _invalid(key, percentage, "a value between 0 and 100")
    return percentage


def check_preference(organization_id: str, preference: str) -> str:
    if preference not in PROVIDER_PREFERENCES:
        raise _invalid(
            f"ORGANIZATION_PREFERENCES[{organization_id}]",
            preference,
            f"one of {', '.join(PROVIDER_PREFERENCES)}",
        )
    return preference


def validate_settings(settings: Settings) -> Settings:
    """Check routing, retry, breaker and token settings.

    Returns *settings* unchanged so it can be used inline.
    Raises ``ClassifiedError`` of kind ``CONFIGURATION`` on the first
    invalid value.
    """
    check_routing_mode(settings.ROUTING_MODE)
    check_percentage(settings.FORWARDING_PERCENTAGE)
    if settings.REQUEST_DEADLINE_SECONDS <= 0:
        raise _invalid("REQUEST_DEADLINE_SECONDS", settings.REQUEST_DEADLINE_SECONDS, "a positive number")
    for organization_id, preference in settings.ORGANIZATION_PREFERENCES.items():
        check_preference(organization_id, preference)
    if settings.NEW_AUTH_METHOD.lower().replace("_", "-") not in ("oauth2", "api-key"):
        raise _invalid("NEW_AUTH_METHOD", settings.NEW_AUTH_METHOD, "oauth2 or api-key")

    if settings.RETRY_MAX_ATTEMPTS < 1:
        raise _invalid("RETRY_MAX_ATTEMPTS", settings.RETRY_MAX_ATTEMPTS, "at least 1")
    if settings.RETRY_INITIAL_DELAY < 0 or settings.RETRY_MAX_DELAY < settings.RETRY_INITIAL_DELAY:
        raise _invalid("RETRY_MAX_DELAY", settings.RETRY_MAX_DELAY, ">= RETRY_INITIAL_DELAY >= 0")
    if settings.RETRY_BACKOFF_MULTIPLIER < 1:
        raise _invalid("RETRY_BACKOFF_MULTIPLIER", settings.RETRY_BACKOFF_MULTIPLIER, "at least 1")
    if not 0 <= settings.RETRY_JITTER_FACTOR < 1:
        raise _invalid("RETRY_JITTER_FACTOR", settings.RETRY_JITTER_FACTOR, "a value in [0, 1)")

    if not 0 < settings.CIRCUIT_BREAKER_FAILURE_THRESHOLD <= 100:
        raise _invalid(
            "CIRCUIT_BREAKER_FAILURE_THRESHOLD",
            settings.CIRCUIT_BREAKER_FAILURE_THRESHOLD,
            "a percentage in (0, 100]",
        )
    if settings.CIRCUIT_BREAKER_MINIMUM_REQUESTS < 1:
        raise _invalid("CIRCUIT_BREAKER_MINIMUM_REQUESTS", settings.CIRCUIT_BREAKER_MINIMUM_REQUESTS, "at least 1")
    if settings.CIRCUIT_BREAKER_WINDOW_SECONDS <= 0:
        raise _invalid("CIRCUIT_BREAKER_WINDOW_SECONDS", settings.CIRCUIT_BREAKER_WINDOW_SECONDS, "a positive number")
    if settings.CIRCUIT_BREAKER_OPEN_TIMEOUT <= 0:
        raise _invalid("CIRCUIT_BREAKER_OPEN_TIMEOUT", settings.CIRCUIT_BREAKER_OPEN_TIMEOUT, "a positive number")
    if settings.CIRCUIT_BREAKER_MAX_OPEN_TIMEOUT < settings.CIRCUIT_BREAKER_OPEN_TIMEOUT:
        raise _invalid(
            "CIRCUIT_BREAKER_MAX_OPEN_TIMEOUT",
            settings.CIRCUIT_BREAKER_MAX_OPEN_TIMEOUT,
            ">= CIRCUIT_BREAKER_OPEN_TIMEOUT",
        )
    if settings.CIRCUIT_BREAKER_SUCCESS_THRESHOLD < 1:
        raise _invalid("CIRCUIT_BREAKER_SUCCESS_THRESHOLD", settings.CIRCUIT_BREAKER_SUCCESS_THRESHOLD, "at least 1")
    if settings.CIRCUIT_BREAKER_BACKOFF_MULTIPLIER < 1:
        raise _invalid(
            "CIRCUIT_BREAKER_BACKOFF_MULTIPLIER",
            settings.CIRCUIT_BREAKER_BACKOFF_MULTIPLIER,
            "at least 1",
        )

    if settings.TOKEN_TTL_SECONDS <= 0:
        raise _invalid("TOKEN_TTL_SECONDS", settings.TOKEN_TTL_SECONDS, "a positive number")
    if not 0 <= settings.TOKEN_REFRESH_BUFFER_SECONDS < settings.TOKEN_TTL_SECONDS:
        raise _invalid(
            "TOKEN_REFRESH_BUFFER_SECONDS",
            settings.TOKEN_REFRESH_BUFFER_SECONDS,
            "a value in [0, TOKEN_TTL_SECONDS)",
        )
    return settings
