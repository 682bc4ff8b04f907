"""Typed errors for the migration gateway.

Every failure that leaves the resilience engine is one of two types:

* ``ClassifiedError``: a single error type tagged with an ``ErrorKind``
  (transient, permanent, provider, transformation, configuration) plus the
  retryability / severity fields callers branch on.
* ``CircuitOpenError``: a fast-fail rejection from an open circuit breaker.

``ProviderResponseError`` is the raw failure raised by provider executors
for non-2xx responses; the error classifier turns it into a
``ClassifiedError``.
"""

from __future__ import annotations

import enum
import time
from typing import Any

from pydantic import BaseModel


class ErrorKind(str, enum.Enum):
    """Discriminant for ``ClassifiedError``."""

    TRANSIENT = "transient"
    PERMANENT = "permanent"
    PROVIDER = "provider"
    TRANSFORMATION = "transformation"
    CONFIGURATION = "configuration"


class ErrorSeverity(str, enum.Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


_DEFAULT_RETRYABLE: dict[ErrorKind, bool] = {
    ErrorKind.TRANSIENT: True,
    ErrorKind.PERMANENT: False,
    ErrorKind.PROVIDER: True,
    ErrorKind.TRANSFORMATION: False,
    ErrorKind.CONFIGURATION: False,
}

_DEFAULT_SEVERITY: dict[ErrorKind, ErrorSeverity] = {
    ErrorKind.TRANSIENT: ErrorSeverity.MEDIUM,
    ErrorKind.PERMANENT: ErrorSeverity.HIGH,
    ErrorKind.PROVIDER: ErrorSeverity.HIGH,
    ErrorKind.TRANSFORMATION: ErrorSeverity.CRITICAL,
    ErrorKind.CONFIGURATION: ErrorSeverity.CRITICAL,
}


class MigrationGatewayError(Exception):
    """Base exception for all migration-gateway errors."""


class ClassifiedError(MigrationGatewayError):
    """A failure with a stable kind, retryability and severity.

    Only ``PROVIDER`` errors accept an explicit ``is_retryable`` override;
    every other kind has a fixed retryability.

    Attributes:
        kind:              The ``ErrorKind`` discriminant.
        is_retryable:      Whether the retry engine may try again.
        severity:          ``ErrorSeverity`` for alerting.
        retry_after:       Seconds requested by the provider (429), if any.
        provider:          Provider the failure came from, if known.
        status_code:       HTTP status code, if the failure had one.
        validation_errors: Validation detail list for 400/422 responses.
        provider_code:     Provider-specific error code.
        raw_response:      Raw provider payload for diagnostics.
        details:           Kind-specific extras (transformation type,
                           configuration key, ...).
    """

    def __init__(
        self,
        kind: ErrorKind,
        message: str,
        *,
        is_retryable: bool | None = None,
        severity: ErrorSeverity | None = None,
        retry_after: float | None = None,
        provider: str | None = None,
        status_code: int | None = None,
        validation_errors: list[Any] | None = None,
        provider_code: str | None = None,
        raw_response: Any = None,
        details: dict[str, Any] | None = None,
        cause: BaseException | None = None,
    ) -> None:
        self.kind = kind
        self.message = message
        if kind == ErrorKind.PROVIDER and is_retryable is not None:
            self.is_retryable = is_retryable
        else:
            self.is_retryable = _DEFAULT_RETRYABLE[kind]
        self.severity = severity or _DEFAULT_SEVERITY[kind]
        self.retry_after = retry_after
        self.provider = provider
        self.status_code = status_code
        self.validation_errors = list(validation_errors or [])
        self.provider_code = provider_code
        self.raw_response = raw_response
        self.details = dict(details or {})
        self.cause = cause
        super().__init__(message)
        if cause is not None:
            self.__cause__ = cause

    # ── Constructors per kind ────────────────────────────────────────

    @classmethod
    def transient(cls, message: str, **kwargs: Any) -> ClassifiedError:
        return cls(ErrorKind.TRANSIENT, message, **kwargs)

    @classmethod
    def permanent(cls, message: str, **kwargs: Any) -> ClassifiedError:
        return cls(ErrorKind.PERMANENT, message, **kwargs)

    @classmethod
    def provider_failure(cls, message: str, **kwargs: Any) -> ClassifiedError:
        return cls(ErrorKind.PROVIDER, message, **kwargs)

    @classmethod
    def transformation(
        cls,
        message: str,
        *,
        transformation_type: str,
        missing_fields: list[str] | None = None,
        **kwargs: Any,
    ) -> ClassifiedError:
        """Payload-mapping failure; detail is owned by the transformer."""
        details = {
            "transformation_type": transformation_type,
            "missing_fields": list(missing_fields or []),
        }
        return cls(ErrorKind.TRANSFORMATION, message, details=details, **kwargs)

    @classmethod
    def configuration(
        cls,
        message: str,
        *,
        config_key: str,
        actual_value: Any = None,
        expected: str = "",
    ) -> ClassifiedError:
        """Invalid setting or missing credentials; never retried."""
        details = {"config_key": config_key, "actual_value": actual_value, "expected": expected}
        return cls(ErrorKind.CONFIGURATION, message, details=details)

    def to_dict(self) -> dict[str, Any]:
        """JSON-friendly representation for logs and telemetry."""
        return {
            "kind": self.kind.value,
            "message": self.message,
            "is_retryable": self.is_retryable,
            "severity": self.severity.value,
            "retry_after": self.retry_after,
            "provider": self.provider,
            "status_code": self.status_code,
            "validation_errors": self.validation_errors,
            "provider_code": self.provider_code,
            "details": self.details,
            "cause": repr(self.cause) if self.cause is not None else None,
        }


class CircuitOpenError(MigrationGatewayError):
    """Raised when a circuit breaker is open and the call is rejected.

    A rejection is never recorded as a breaker failure and is never
    retried by the retry engine.

    Attributes:
        provider:          Breaker key (``"{org}:{provider}"`` or provider).
        next_attempt_time: Wall-clock epoch seconds when the breaker will
                           let a trial call through.
        retry_after:       Seconds until ``next_attempt_time`` (>= 0).
    """

    def __init__(self, provider: str, next_attempt_time: float, *, now: float | None = None) -> None:
        self.provider = provider
        self.next_attempt_time = next_attempt_time
        current = time.time() if now is None else now
        self.retry_after = max(0.0, next_attempt_time - current)
        super().__init__(f"Circuit open for '{provider}', retry after {self.retry_after:.1f}s")


class ProviderResponseError(MigrationGatewayError):
    """A provider answered with a non-success HTTP status.

    Raised by provider executors so that the breaker records a failure;
    the error classifier maps it to a ``ClassifiedError``.
    """

    def __init__(
        self,
        provider: str,
        status_code: int,
        data: Any = None,
        headers: dict[str, str] | None = None,
    ) -> None:
        self.provider = provider
        self.status_code = status_code
        self.data = data
        self.headers = {k.lower(): v for k, v in (headers or {}).items()}
        super().__init__(f"Provider '{provider}' returned HTTP {status_code}")


_KIND_CODES: dict[ErrorKind, str] = {
    ErrorKind.TRANSIENT: "TRANSIENT_ERROR",
    ErrorKind.PERMANENT: "PERMANENT_ERROR",
    ErrorKind.PROVIDER: "PROVIDER_ERROR",
    ErrorKind.TRANSFORMATION: "TRANSFORMATION_ERROR",
    ErrorKind.CONFIGURATION: "CONFIGURATION_ERROR",
}


class StructuredErrorResponse(BaseModel):
    """Structured error body ``{"error", "code", "request_id"}``, no stack traces."""

    error: str
    code: str
    request_id: str
    retryable: bool = False

    @classmethod
    def from_exception(cls, exc: Exception, request_id: str) -> StructuredErrorResponse:
        """Create from an exception, mapping to machine-readable codes.

        Never leaks internal details for unhandled exceptions.
        """
        if isinstance(exc, CircuitOpenError):
            return cls(error=str(exc), code="CIRCUIT_OPEN", request_id=request_id, retryable=True)
        if isinstance(exc, ClassifiedError):
            return cls(
                error=str(exc),
                code=_KIND_CODES[exc.kind],
                request_id=request_id,
                retryable=exc.is_retryable,
            )
        if isinstance(exc, MigrationGatewayError):
            return cls(error=str(exc), code="GATEWAY_ERROR", request_id=request_id)
        # Never expose internal details
        return cls(error="An internal error occurred", code="INTERNAL_ERROR", request_id=request_id)
