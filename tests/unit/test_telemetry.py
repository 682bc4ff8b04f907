"""Telemetry tests: event payloads, the logging sink and best-effort emission."""

from __future__ import annotations

import json
import logging

from migration_gateway.models.results import ExecutionResult
from migration_gateway.resilience.circuit_breaker import CircuitBreakerRegistry, CircuitState
from migration_gateway.telemetry import (
    CIRCUIT_BREAKER_STATE_CHANGE,
    PROVIDER_REQUEST,
    LoggingTelemetrySink,
    RecordingTelemetrySink,
    Telemetry,
)


class BrokenSink:
    def emit(self, event_name, properties):
        raise RuntimeError("sink down")


def _failed(provider: str = "legacy") -> ExecutionResult:
    return ExecutionResult(provider=provider, success=False, status_code=503, error="boom", error_kind="transient")


class TestTelemetry:
    def test_provider_request_properties(self):
        sink = RecordingTelemetrySink()
        Telemetry(sink).provider_request(_failed(), action="create", organization_id="org-1")

        event = sink.events[0]
        assert event.name == PROVIDER_REQUEST
        assert event.properties["provider"] == "legacy"
        assert event.properties["success"] is False
        assert event.properties["error_kind"] == "transient"
        assert event.properties["organization_id"] == "org-1"

    def test_fallback_event(self):
        sink = RecordingTelemetrySink()
        Telemetry(sink).fallback_activated(_failed(), "new", organization_id=None)
        assert sink.events[0].properties == {
            "primary": "legacy",
            "fallback": "new",
            "organization_id": None,
            "primary_error": "boom",
            "primary_error_kind": "transient",
        }

    def test_disabled_is_a_no_op(self):
        sink = RecordingTelemetrySink()
        Telemetry(sink, enabled=False).routing_decision("dual", ("legacy", "new"), None)
        assert sink.events == []

    def test_failing_sink_is_logged_not_raised(self, caplog):
        with caplog.at_level(logging.WARNING, logger="migration_gateway.telemetry"):
            Telemetry(BrokenSink()).routing_decision("single-legacy", ("legacy",), "org-1")
        assert "Routing_Decision" in caplog.text

    def test_logging_sink_writes_json(self, caplog):
        with caplog.at_level(logging.INFO, logger="migration_gateway.telemetry"):
            Telemetry(LoggingTelemetrySink()).routing_decision("shadow", ("legacy", "new"), "org-1")

        record = json.loads(caplog.records[-1].getMessage())
        assert record["name"] == "Routing_Decision"
        assert record["properties"]["targets"] == ["legacy", "new"]
        assert "timestamp" in record

    async def test_breaker_transitions_are_tracked(self):
        sink = RecordingTelemetrySink()
        registry = CircuitBreakerRegistry(on_state_change=Telemetry(sink).circuit_state_change)

        await registry.get_breaker("new", "org-1").force_state(CircuitState.OPEN)

        assert sink.names() == [CIRCUIT_BREAKER_STATE_CHANGE]
        props = sink.events[0].properties
        assert props["breaker"] == "org-1:new"
        assert props["from_state"] == "closed"
        assert props["to_state"] == "open"
