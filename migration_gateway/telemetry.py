"""Telemetry events for routing, fallback, comparison and breaker changes.

Events are emitted through a ``TelemetrySink``.  The default sink writes a
single-line JSON record per event to the ``migration_gateway.telemetry``
logger.  Emission is best effort: a failing sink is logged and ignored so
telemetry never changes request outcomes.
"""

from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass, field
from typing import Any, Protocol

from migration_gateway.models.results import ExecutionResult, utc_now_iso
from migration_gateway.resilience.circuit_breaker import StateChange

logger = logging.getLogger(__name__)
_telemetry_logger = logging.getLogger("migration_gateway.telemetry")

# ── Event names ─────────────────────────────────────────────────────────

PROVIDER_REQUEST = "Provider_Request"
FALLBACK_ACTIVATED = "Fallback_Activated"
DUAL_MODE_EXECUTION = "Dual_Mode_Execution"
RESPONSE_COMPARISON = "Response_Comparison"
CIRCUIT_BREAKER_STATE_CHANGE = "Circuit_Breaker_State_Change"
ROUTING_DECISION = "Routing_Decision"


class TelemetrySink(Protocol):
    def emit(self, event_name: str, properties: dict[str, Any]) -> None: ...


@dataclass
class TelemetryEvent:
    name: str
    properties: dict[str, Any] = field(default_factory=dict)
    timestamp: str = field(default_factory=utc_now_iso)

    def to_json(self) -> str:
        """Serialize to a single-line JSON string."""
        return json.dumps(asdict(self), separators=(",", ":"), default=str)


class LoggingTelemetrySink:
    """Writes each event as JSON to the telemetry channel logger."""

    def __init__(self, level: int = logging.INFO) -> None:
        self.level = level

    def emit(self, event_name: str, properties: dict[str, Any]) -> None:
        _telemetry_logger.log(self.level, TelemetryEvent(event_name, properties).to_json())


class RecordingTelemetrySink:
    """Keeps events in memory for inspection."""

    def __init__(self) -> None:
        self.events: list[TelemetryEvent] = []

    def emit(self, event_name: str, properties: dict[str, Any]) -> None:
        self.events.append(TelemetryEvent(event_name, dict(properties)))

    def names(self) -> list[str]:
        return [event.name for event in self.events]


class Telemetry:
    """Typed helpers over a ``TelemetrySink``.

    Args:
        sink:    Destination for events (``LoggingTelemetrySink`` if omitted).
        enabled: When False every helper is a no-op.
    """

    def __init__(self, sink: TelemetrySink | None = None, *, enabled: bool = True) -> None:
        self.sink = sink or LoggingTelemetrySink()
        self.enabled = enabled

    def track(self, event_name: str, properties: dict[str, Any]) -> None:
        if not self.enabled:
            return
        try:
            self.sink.emit(event_name, properties)
        except Exception:
            logger.warning("Telemetry sink failed for event %s", event_name, exc_info=True)

    def routing_decision(self, mode: str, targets: tuple[str, ...], organization_id: str | None) -> None:
        self.track(
            ROUTING_DECISION,
            {"mode": mode, "targets": list(targets), "organization_id": organization_id},
        )

    def provider_request(self, result: ExecutionResult, *, action: str, organization_id: str | None) -> None:
        self.track(
            PROVIDER_REQUEST,
            {
                "provider": result.provider,
                "action": action,
                "organization_id": organization_id,
                "success": result.success,
                "status_code": result.status_code,
                "duration_ms": result.duration_ms,
                "error_kind": result.error_kind,
                "fallback": result.fallback,
            },
        )

    def fallback_activated(self, primary: ExecutionResult, fallback: str, *, organization_id: str | None) -> None:
        self.track(
            FALLBACK_ACTIVATED,
            {
                "primary": primary.provider,
                "fallback": fallback,
                "organization_id": organization_id,
                "primary_error": primary.error,
                "primary_error_kind": primary.error_kind,
            },
        )

    def dual_mode_execution(self, mode: str, results: dict[str, ExecutionResult], returned: str) -> None:
        self.track(
            DUAL_MODE_EXECUTION,
            {
                "mode": mode,
                "returned": returned,
                "legacy_success": results["legacy"].success,
                "new_success": results["new"].success,
                "legacy_duration_ms": results["legacy"].duration_ms,
                "new_duration_ms": results["new"].duration_ms,
            },
        )

    def response_comparison(self, comparison: Any, *, organization_id: str | None) -> None:
        self.track(
            RESPONSE_COMPARISON,
            {
                "organization_id": organization_id,
                "divergent": comparison.divergent,
                "status_match": comparison.status_match,
                "data_match": comparison.data_match,
                "latency_delta_ms": comparison.latency_delta_ms,
            },
        )

    def circuit_state_change(self, change: StateChange) -> None:
        """Breaker observer; pass as ``on_state_change`` to the registry."""
        self.track(
            CIRCUIT_BREAKER_STATE_CHANGE,
            {
                "breaker": change.breaker,
                "provider": change.provider,
                "organization_id": change.organization_id,
                "from_state": change.from_state.value,
                "to_state": change.to_state.value,
                "failure_rate": change.snapshot.get("failure_rate"),
            },
        )
