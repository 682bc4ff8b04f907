"""Request router: chooses providers per request and aggregates results.

Routing modes:

* ``single-legacy`` / ``single-new``: one provider, optional fallback to the
  other one when it fails.
* ``percentage``: one provider chosen per request by a weighted draw.
* ``dual``: both providers run concurrently and are compared; the new
  provider's result is returned when it succeeded, legacy otherwise.
* ``shadow``: both providers run concurrently and are compared; legacy is
  always returned and divergence is logged.

Every provider call goes through ``RetryExecutor`` and therefore through the
tenant's circuit breaker.  Provider failures become failed
``ExecutionResult`` objects rather than exceptions, so a multi-target
request always waits for both providers.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import random
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any

from migration_gateway.comparison import Comparison, compare
from migration_gateway.core.config import Settings, check_percentage, check_preference, check_routing_mode
from migration_gateway.core.errors import CircuitOpenError, ClassifiedError, ErrorSeverity
from migration_gateway.models.results import (
    LEGACY,
    NEW,
    ExecutionResult,
    RoutingDecision,
    RoutingResult,
    alternate,
    elapsed_ms,
)
from migration_gateway.providers.http_executor import ProviderExecutor, ProviderRequest
from migration_gateway.resilience.error_classifier import classify
from migration_gateway.resilience.retry import RandomSource, RetryExecutor
from migration_gateway.telemetry import Telemetry

logger = logging.getLogger(__name__)


class RoutingMode(str, enum.Enum):
    SINGLE_LEGACY = "single-legacy"
    SINGLE_NEW = "single-new"
    PERCENTAGE = "percentage"
    DUAL = "dual"
    SHADOW = "shadow"


# Per-organization provider preference → forced mode ("auto" keeps the global mode)
PREFERENCE_MODES: dict[str, RoutingMode] = {
    "legacy": RoutingMode.SINGLE_LEGACY,
    "new": RoutingMode.SINGLE_NEW,
    "dual": RoutingMode.DUAL,
}


def determine_routing(
    mode: RoutingMode | str,
    percentage: float = 0.0,
    rng: RandomSource | None = None,
) -> RoutingDecision:
    """Decide which providers a request goes to.

    For ``percentage`` mode one value ``r`` is drawn uniformly from
    ``[0, 100)``; the request goes to the new provider iff
    ``r < percentage``.
    """
    mode = RoutingMode(mode)
    if mode == RoutingMode.SINGLE_LEGACY:
        return RoutingDecision(targets=(LEGACY,))
    if mode == RoutingMode.SINGLE_NEW:
        return RoutingDecision(targets=(NEW,))
    if mode == RoutingMode.PERCENTAGE:
        draw = (rng or random).random() * 100
        return RoutingDecision(targets=(NEW,) if draw < percentage else (LEGACY,))
    if mode == RoutingMode.DUAL:
        return RoutingDecision(targets=(LEGACY, NEW))
    return RoutingDecision(targets=(LEGACY, NEW), return_from=LEGACY)


@dataclass
class RouterConfig:
    """Routing behaviour.

    Attributes:
        mode:                     Global routing mode.
        percentage:               Share of traffic (0-100) sent to the new
                                  provider in percentage mode.
        enable_fallback:          Retry the other provider once when a
                                  single-target call fails.
        enable_comparison:        Attach the detailed comparison report in
                                  dual/shadow modes.
        deadline_seconds:         Overall budget per request; no backoff
                                  sleep may run past it.
        organization_preferences: Per-organization provider preference
                                  (``legacy``, ``new``, ``dual``, ``auto``).
    """

    mode: RoutingMode = RoutingMode.SINGLE_LEGACY
    percentage: float = 0.0
    enable_fallback: bool = False
    enable_comparison: bool = False
    deadline_seconds: float | None = 60.0
    organization_preferences: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_settings(cls, settings: Settings) -> RouterConfig:
        return cls(
            mode=RoutingMode(settings.ROUTING_MODE),
            percentage=settings.FORWARDING_PERCENTAGE,
            enable_fallback=settings.ENABLE_FALLBACK,
            enable_comparison=settings.ENABLE_COMPARISON,
            deadline_seconds=settings.REQUEST_DEADLINE_SECONDS,
            organization_preferences=dict(settings.ORGANIZATION_PREFERENCES),
        )


@dataclass
class RouterMetrics:
    """Simple counters for routing outcomes."""

    requests: int = 0
    legacy_calls: int = 0
    new_calls: int = 0
    fallbacks: int = 0
    divergences: int = 0

    def record_call(self, provider: str) -> None:
        if provider == LEGACY:
            self.legacy_calls += 1
        else:
            self.new_calls += 1


class Router:
    """Routes forwarded requests to the legacy and/or new provider.

    Args:
        executors: ``{"legacy": executor, "new": executor}``.
        retry:     ``RetryExecutor`` every provider call runs through.
        config:    ``RouterConfig`` (defaults if omitted).
        telemetry: ``Telemetry`` helper for routing events.
        rng:       Random source for percentage routing.
        clock:     Monotonic clock; must match the retry executor's clock
                   since request deadlines are absolute times on it.
    """

    def __init__(
        self,
        executors: Mapping[str, ProviderExecutor],
        retry: RetryExecutor,
        config: RouterConfig | None = None,
        *,
        telemetry: Telemetry | None = None,
        rng: RandomSource | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        missing = {LEGACY, NEW} - set(executors)
        if missing:
            raise ClassifiedError.configuration(
                f"Missing provider executors: {', '.join(sorted(missing))}",
                config_key="executors",
                actual_value=sorted(executors),
                expected="executors for legacy and new",
            )
        self.executors = dict(executors)
        self.retry = retry
        self.config = config or RouterConfig()
        self.telemetry = telemetry or Telemetry(enabled=False)
        self._rng = rng or random.Random()
        self._clock = clock
        self.metrics = RouterMetrics()

    # ── Routing ──────────────────────────────────────────────────────

    def resolve_mode(self, organization_id: str | None = None, preference: str | None = None) -> RoutingMode:
        """Global mode unless the organization prefers a specific provider."""
        if preference is None and organization_id is not None:
            preference = self.config.organization_preferences.get(organization_id)
        forced = PREFERENCE_MODES.get((preference or "auto").lower())
        return forced or self.config.mode

    async def execute(
        self,
        request: ProviderRequest,
        *,
        provider_preference: str | None = None,
        deadline: float | None = None,
    ) -> RoutingResult:
        """Route *request* and return the chosen provider's result.

        Args:
            request:             The request to forward.
            provider_preference: Overrides the organization's configured
                                 preference (``legacy``, ``new``, ``dual``,
                                 ``auto``).
            deadline:            Absolute time on ``clock``; defaults to now
                                 plus ``config.deadline_seconds``.
        """
        if provider_preference is None and request.credentials is not None:
            provider_preference = request.credentials.provider_preference
        mode = self.resolve_mode(request.organization_id, provider_preference)
        decision = determine_routing(mode, self.config.percentage, self._rng)
        if deadline is None and self.config.deadline_seconds is not None:
            deadline = self._clock() + self.config.deadline_seconds

        self.metrics.requests += 1
        logger.info(
            "Routing %s request (org=%s, mode=%s, targets=%s)",
            request.action,
            request.organization_id,
            mode.value,
            ",".join(decision.targets),
        )
        self.telemetry.routing_decision(mode.value, decision.targets, request.organization_id)

        if decision.is_multi_target:
            return await self._execute_multi(mode, decision, request, deadline)
        return await self._execute_single(mode, decision.targets[0], request, deadline)

    async def _execute_single(
        self,
        mode: RoutingMode,
        primary: str,
        request: ProviderRequest,
        deadline: float | None,
    ) -> RoutingResult:
        result = await self._invoke(primary, request, deadline)
        if result.success or not self.config.enable_fallback:
            return RoutingResult(
                mode=mode.value,
                provider=primary,
                response=result.data,
                result=result,
                results={primary: result},
            )

        secondary = alternate(primary)
        self.metrics.fallbacks += 1
        logger.warning(
            "Primary provider %s failed (%s), falling back to %s",
            primary,
            result.error,
            secondary,
        )
        self.telemetry.fallback_activated(result, secondary, organization_id=request.organization_id)
        fallback = await self._invoke(secondary, request, deadline, fallback=True)
        return RoutingResult(
            mode=mode.value,
            provider=secondary,
            response=fallback.data,
            result=fallback,
            fallback=True,
            results={primary: result, secondary: fallback},
        )

    async def _execute_multi(
        self,
        mode: RoutingMode,
        decision: RoutingDecision,
        request: ProviderRequest,
        deadline: float | None,
    ) -> RoutingResult:
        legacy, new = await asyncio.gather(
            self._invoke(LEGACY, request, deadline),
            self._invoke(NEW, request, deadline),
        )
        results = {LEGACY: legacy, NEW: new}
        comparison = compare(legacy, new, detailed=self.config.enable_comparison)
        self._log_comparison(mode, comparison, results, request.organization_id)

        if decision.return_from is not None:
            chosen = results[decision.return_from]
        else:
            chosen = new if new.success else legacy

        self.telemetry.dual_mode_execution(mode.value, results, chosen.provider)
        self.telemetry.response_comparison(comparison, organization_id=request.organization_id)
        return RoutingResult(
            mode=mode.value,
            provider=chosen.provider,
            response=chosen.data,
            result=chosen,
            comparison=comparison,
            results=results,
        )

    def _log_comparison(
        self,
        mode: RoutingMode,
        comparison: Comparison,
        results: dict[str, ExecutionResult],
        organization_id: str | None,
    ) -> None:
        if comparison.divergent:
            self.metrics.divergences += 1
            logger.warning(
                "Providers diverged in %s mode (org=%s): legacy_success=%s new_success=%s",
                mode.value,
                organization_id,
                results[LEGACY].success,
                results[NEW].success,
            )
        elif not comparison.data_match and comparison.both_succeeded:
            logger.warning(
                "Provider responses differ in %s mode (org=%s, status_match=%s, latency_delta=%.1fms)",
                mode.value,
                organization_id,
                comparison.status_match,
                comparison.latency_delta_ms,
            )
        else:
            logger.debug("Provider responses match in %s mode (org=%s)", mode.value, organization_id)

    # ── Provider invocation ──────────────────────────────────────────

    async def _invoke(
        self,
        provider: str,
        request: ProviderRequest,
        deadline: float | None,
        *,
        fallback: bool = False,
    ) -> ExecutionResult:
        """Call *provider* with retries; failures become a failed result.

        The executor's ``prepare`` step (credential lookup) runs before the
        retry loop, so its failures are not breaker samples.
        """
        executor = self.executors[provider]
        start = time.monotonic()
        self.metrics.record_call(provider)

        try:
            prepared = await self._prepare(executor, provider, request)
            response = await self.retry.execute_with_retry(
                lambda: executor(prepared),
                provider,
                request.organization_id,
                deadline=deadline,
            )
        except CircuitOpenError as exc:
            result = ExecutionResult(
                provider=provider,
                success=False,
                status_code=503,
                error=str(exc),
                error_kind="circuit_open",
                retryable=True,
                severity=ErrorSeverity.HIGH.value,
                duration_ms=elapsed_ms(start),
                fallback=fallback,
            )
        except ClassifiedError as exc:
            result = _failure_result(provider, exc, start, fallback)
        else:
            result = ExecutionResult(
                provider=provider,
                success=True,
                status_code=response.status_code,
                data=response.data,
                duration_ms=elapsed_ms(start),
                fallback=fallback,
            )

        self.telemetry.provider_request(result, action=request.action, organization_id=request.organization_id)
        return result

    @staticmethod
    async def _prepare(executor: ProviderExecutor, provider: str, request: ProviderRequest) -> ProviderRequest:
        prepare = getattr(executor, "prepare", None)
        if prepare is None:
            return request
        try:
            return await prepare(request)
        except Exception as exc:
            error = classify(exc, provider, {"stage": "prepare"})
            logger.warning(
                "Could not prepare %s request for %s (org=%s): %s (kind=%s)",
                request.action,
                provider,
                request.organization_id,
                error.message,
                error.kind.value,
            )
            if error is exc:
                raise
            raise error from exc

    # ── Runtime configuration ────────────────────────────────────────
    # In-memory only; a restart goes back to the settings.

    def update_mode(self, mode: RoutingMode | str) -> RoutingMode:
        """Switch the global routing mode.

        Raises:
            ClassifiedError: CONFIGURATION kind for an unknown mode.
        """
        value = mode.value if isinstance(mode, RoutingMode) else mode
        new_mode = RoutingMode(check_routing_mode(value))
        old_mode = self.config.mode
        self.config.mode = new_mode
        logger.warning("Routing mode changed from %s to %s", old_mode.value, new_mode.value)
        return new_mode

    def update_percentage(self, percentage: float) -> float:
        """Set the share of percentage-mode traffic sent to the new provider."""
        check_percentage(percentage)
        old_percentage = self.config.percentage
        self.config.percentage = float(percentage)
        logger.warning("Forwarding percentage changed from %.1f%% to %.1f%%", old_percentage, self.config.percentage)
        return self.config.percentage

    def set_organization_preference(self, organization_id: str, preference: str) -> None:
        """Pin *organization_id* to a provider; ``auto`` follows the global mode."""
        check_preference(organization_id, preference)
        self.config.organization_preferences[organization_id] = preference
        logger.info("Provider preference for %s set to %s", organization_id, preference)

    # ── Introspection ────────────────────────────────────────────────

    def get_stats(self) -> dict[str, dict[str, Any]]:
        """Breaker snapshots keyed by breaker key."""
        return self.retry.registry.get_stats()

    def describe(self) -> dict[str, Any]:
        """Routing configuration and counters for the ``/config`` endpoint."""
        return {
            "mode": self.config.mode.value,
            "percentage": self.config.percentage,
            "enable_fallback": self.config.enable_fallback,
            "enable_comparison": self.config.enable_comparison,
            "deadline_seconds": self.config.deadline_seconds,
            "organization_preferences": dict(self.config.organization_preferences),
            "metrics": {
                "requests": self.metrics.requests,
                "legacy_calls": self.metrics.legacy_calls,
                "new_calls": self.metrics.new_calls,
                "fallbacks": self.metrics.fallbacks,
                "divergences": self.metrics.divergences,
            },
        }


def _failure_result(provider: str, exc: ClassifiedError, start: float, fallback: bool) -> ExecutionResult:
    return ExecutionResult(
        provider=provider,
        success=False,
        status_code=exc.status_code or 502,
        data=exc.raw_response,
        error=exc.message,
        error_kind=exc.kind.value,
        retryable=exc.is_retryable,
        severity=exc.severity.value,
        duration_ms=elapsed_ms(start),
        fallback=fallback,
    )
