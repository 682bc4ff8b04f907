"""Error classifier: raw provider failures to ``ClassifiedError``.

Rules are applied in a fixed order so the same raw failure always gets the
same classification:

1. already classified          → unchanged
2. connection-level failure    → TRANSIENT, retryable
3. HTTP 429                    → TRANSIENT, retryable, ``retry_after``
4. HTTP 5xx                    → TRANSIENT, retryable
5. HTTP 401 / 403              → PERMANENT, severity critical
6. HTTP 400 / 422              → PERMANENT, carries validation errors
7. HTTP 404                    → PERMANENT
8. provider known              → PROVIDER, retryable
9. anything else               → TRANSIENT, retryable
"""

from __future__ import annotations

import time
from email.utils import parsedate_to_datetime
from typing import Any

import httpx

from migration_gateway.core.errors import ClassifiedError, ErrorSeverity, ProviderResponseError

_CONNECTION_ERRORS: tuple[type[BaseException], ...] = (
    httpx.TimeoutException,
    httpx.NetworkError,
    httpx.RemoteProtocolError,
    ConnectionError,
    TimeoutError,
)


def parse_retry_after(value: str | None, *, now: float | None = None) -> float | None:
    """Parse a ``Retry-After`` header (delta-seconds or HTTP-date)."""
    if value is None:
        return None
    value = value.strip()
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    current = time.time() if now is None else now
    return max(0.0, when.timestamp() - current)


def _http_details(error: BaseException) -> tuple[int | None, dict[str, str], Any]:
    """Extract ``(status_code, headers, payload)`` from a raw failure."""
    if isinstance(error, ProviderResponseError):
        return error.status_code, error.headers, error.data
    if isinstance(error, httpx.HTTPStatusError):
        response = error.response
        try:
            payload = response.json()
        except ValueError:
            payload = response.text or None
        headers = {k.lower(): v for k, v in response.headers.items()}
        return response.status_code, headers, payload
    status = getattr(error, "status_code", None)
    return (status if isinstance(status, int) else None), {}, None


def _validation_errors(payload: Any) -> list[Any]:
    if not isinstance(payload, dict):
        return []
    errors = payload.get("errors")
    if errors is None:
        return []
    if isinstance(errors, list):
        return errors
    return [errors]


def _provider_code(payload: Any) -> str | None:
    if not isinstance(payload, dict):
        return None
    code = payload.get("code") or payload.get("errorCode") or payload.get("error_code")
    return str(code) if code is not None else None


def classify(
    error: BaseException,
    provider: str | None = None,
    context: dict[str, Any] | None = None,
) -> ClassifiedError:
    """Turn *error* into a ``ClassifiedError``.

    Args:
        error:    The raw failure raised by a provider call.
        provider: Provider the call went to, if known.
        context:  Extra diagnostic fields (attempt number, endpoint, ...).
    """
    if isinstance(error, ClassifiedError):
        return error

    details = dict(context or {})
    message = str(error) or type(error).__name__

    if isinstance(error, _CONNECTION_ERRORS):
        details["error_type"] = type(error).__name__
        return ClassifiedError.transient(
            f"Network error: {message}",
            provider=provider,
            details=details,
            cause=error,
        )

    status, headers, payload = _http_details(error)

    if status is not None:
        if status == 429:
            return ClassifiedError.transient(
                "Rate limit exceeded",
                provider=provider,
                status_code=status,
                retry_after=parse_retry_after(headers.get("retry-after")),
                raw_response=payload,
                details=details,
                cause=error,
            )
        if 500 <= status < 600:
            return ClassifiedError.transient(
                f"Server error: {message}",
                provider=provider,
                status_code=status,
                raw_response=payload,
                details=details,
                cause=error,
            )
        if status in (401, 403):
            return ClassifiedError.permanent(
                f"Authentication failed: {message}",
                provider=provider,
                status_code=status,
                severity=ErrorSeverity.CRITICAL,
                raw_response=payload,
                details=details,
                cause=error,
            )
        if status in (400, 422):
            return ClassifiedError.permanent(
                f"Validation failed: {message}",
                provider=provider,
                status_code=status,
                validation_errors=_validation_errors(payload),
                raw_response=payload,
                details=details,
                cause=error,
            )
        if status == 404:
            return ClassifiedError.permanent(
                f"Resource not found: {message}",
                provider=provider,
                status_code=status,
                raw_response=payload,
                details=details,
                cause=error,
            )

    if provider:
        return ClassifiedError.provider_failure(
            message,
            provider=provider,
            status_code=status,
            provider_code=_provider_code(payload),
            raw_response=payload,
            details=details,
            cause=error,
        )

    # Unknown failures are retryable transients
    return ClassifiedError.transient(message, status_code=status, details=details, cause=error)
