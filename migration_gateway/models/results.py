"""Routing and execution result types shared by the router and comparator."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

LEGACY = "legacy"
NEW = "new"
PROVIDERS: tuple[str, ...] = (LEGACY, NEW)


def alternate(provider: str) -> str:
    """The other provider of the fixed legacy/new pair."""
    return NEW if provider == LEGACY else LEGACY


def utc_now_iso() -> str:
    return datetime.now(UTC).isoformat()


@dataclass(frozen=True)
class RoutingDecision:
    """Which providers to invoke, and whose response to return.

    ``return_from`` is only set in shadow mode, where the response source
    is fixed regardless of which providers ran.
    """

    targets: tuple[str, ...]
    return_from: str | None = None

    @property
    def is_multi_target(self) -> bool:
        return len(self.targets) > 1


@dataclass
class ExecutionResult:
    """Outcome of one provider call, retries included.

    Attributes:
        provider:    ``legacy`` or ``new``.
        success:     Whether the provider call succeeded.
        status_code: HTTP status (502 when the failure had none).
        data:        Response payload on success, raw provider payload (if
                     any) on failure.
        error:       Error message on failure.
        error_kind:  ``ErrorKind`` value or ``circuit_open``.
        retryable:   Carried from the classified error on failure.
        severity:    Carried from the classified error on failure.
        duration_ms: Wall time including retries and backoff.
        timestamp:   ISO-8601 completion time.
        fallback:    True when produced by a fallback invocation.
    """

    provider: str
    success: bool
    status_code: int
    data: Any = None
    error: str | None = None
    error_kind: str | None = None
    retryable: bool = False
    severity: str | None = None
    duration_ms: float = 0.0
    timestamp: str = field(default_factory=utc_now_iso)
    fallback: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "provider": self.provider,
            "success": self.success,
            "status_code": self.status_code,
            "error": self.error,
            "error_kind": self.error_kind,
            "retryable": self.retryable,
            "severity": self.severity,
            "duration_ms": self.duration_ms,
            "timestamp": self.timestamp,
            "fallback": self.fallback,
        }


@dataclass
class RoutingResult:
    """What ``Router.execute`` hands back to the HTTP layer."""

    mode: str
    provider: str
    response: Any
    result: ExecutionResult
    comparison: Any = None
    fallback: bool = False
    results: dict[str, ExecutionResult] = field(default_factory=dict)

    @property
    def success(self) -> bool:
        return self.result.success


def elapsed_ms(start: float) -> float:
    """Milliseconds since *start* on ``time.monotonic``."""
    return round((time.monotonic() - start) * 1000, 2)
