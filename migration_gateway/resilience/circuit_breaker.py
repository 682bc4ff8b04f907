"""Async circuit breaker with a rolling failure-rate window.

Implements the three-state circuit breaker:

    CLOSED    →  (failure rate ≥ threshold, enough samples)  →  OPEN
    OPEN      →  (next call after next_attempt_time)          →  HALF_OPEN
    HALF_OPEN →  (success_threshold consecutive successes)    →  CLOSED
    HALF_OPEN →  (any failure)                                →  OPEN

Every reopen multiplies the open timeout by ``backoff_multiplier`` (capped
at ``max_open_timeout``); a successful close resets it to ``open_timeout``.

Each ``(organization, provider)`` pair gets its own ``CircuitBreaker`` via
``CircuitBreakerRegistry`` so one tenant's outage never opens another
tenant's circuit.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import Any, TypeVar

from migration_gateway.core.errors import CircuitOpenError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CircuitState(str, Enum):
    """Circuit breaker states."""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass(frozen=True)
class BreakerConfig:
    """Tunable breaker settings.  Times are in seconds.

    Attributes:
        failure_threshold:  Failure rate (percent) that opens the circuit.
        minimum_requests:   Samples required in the window before the
                            failure rate is evaluated.
        window_size:        Length of the rolling window.
        open_timeout:       Base time the circuit stays OPEN.
        max_open_timeout:   Upper bound for the growing open timeout.
        success_threshold:  Consecutive HALF_OPEN successes needed to close.
        backoff_multiplier: Growth factor of the open timeout per reopen.
    """

    failure_threshold: float = 50.0
    minimum_requests: int = 10
    window_size: float = 60.0
    open_timeout: float = 30.0
    max_open_timeout: float = 300.0
    success_threshold: int = 3
    backoff_multiplier: float = 2.0


@dataclass(frozen=True)
class StateChange:
    """Notification pushed to the observer on every state transition."""

    breaker: str
    provider: str
    organization_id: str | None
    from_state: CircuitState
    to_state: CircuitState
    timestamp: float
    snapshot: dict[str, Any]


StateListener = Callable[[StateChange], None]


def _iso(ts: float | None) -> str | None:
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, UTC).isoformat()


class CircuitBreaker:
    """Async-safe circuit breaker for a single ``(organization, provider)`` key.

    Recording an outcome and any resulting transition happen under one
    ``asyncio.Lock``; the wrapped operation itself runs outside the lock.

    Args:
        name:            Breaker key, used in logs and ``CircuitOpenError``.
        config:          ``BreakerConfig`` (defaults if omitted).
        provider:        Provider name (defaults to *name*).
        organization_id: Tenant the breaker belongs to, if any.
        on_state_change: Observer called synchronously on each transition.
        clock:           Wall-clock source in epoch seconds.
    """

    def __init__(
        self,
        name: str,
        config: BreakerConfig | None = None,
        *,
        provider: str | None = None,
        organization_id: str | None = None,
        on_state_change: StateListener | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.name = name
        self.config = config or BreakerConfig()
        self.provider = provider or name
        self.organization_id = organization_id
        self._on_state_change = on_state_change
        self._clock = clock

        self._state = CircuitState.CLOSED
        self._successes: deque[float] = deque()
        self._failures: deque[float] = deque()
        self.consecutive_successes = 0
        self.consecutive_failures = 0

        self.current_timeout = self.config.open_timeout
        self.opened_at: float | None = None
        self.next_attempt_time: float | None = None
        self._lock = asyncio.Lock()

        # Metrics
        self.total_requests = 0
        self.total_successes = 0
        self.total_failures = 0
        self.total_rejections = 0
        self.circuit_opens = 0
        self.circuit_closes = 0
        self.last_failure: float | None = None
        self.last_success: float | None = None

    # ── Public properties ────────────────────────────────────────────

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def window_requests(self) -> int:
        return len(self._successes) + len(self._failures)

    @property
    def failure_rate(self) -> float:
        """Failure percentage over the current window (0 when empty)."""
        total = self.window_requests
        if total == 0:
            return 0.0
        return len(self._failures) / total * 100

    # ── Core call wrapper ────────────────────────────────────────────

    async def execute(self, operation: Callable[[], Awaitable[T]]) -> T:
        """Run *operation* through the breaker.

        Raises:
            CircuitOpenError: If the circuit is OPEN and its timeout has not
                elapsed.  Not counted as a failure.
        """
        await self.pre_check()
        try:
            result = await operation()
        except Exception as exc:
            await self.on_failure(exc)
            raise
        await self.on_success()
        return result

    async def pre_check(self) -> None:
        """Gate a call; move OPEN → HALF_OPEN once the timeout has elapsed."""
        async with self._lock:
            if self._state == CircuitState.OPEN:
                now = self._clock()
                if self.next_attempt_time is not None and now < self.next_attempt_time:
                    self.total_rejections += 1
                    logger.debug(
                        "Circuit %s is OPEN, failing fast (%.1fs remaining)",
                        self.name,
                        self.next_attempt_time - now,
                    )
                    raise CircuitOpenError(self.name, self.next_attempt_time, now=now)
                self._transition_to(CircuitState.HALF_OPEN)
            self.total_requests += 1

    async def on_success(self) -> None:
        """Record a successful call; close the circuit after enough probes."""
        async with self._lock:
            now = self._clock()
            self._successes.append(now)
            self._prune(now)
            self.consecutive_successes += 1
            self.consecutive_failures = 0
            self.total_successes += 1
            self.last_success = now

            if (
                self._state == CircuitState.HALF_OPEN
                and self.consecutive_successes >= self.config.success_threshold
            ):
                self._transition_to(CircuitState.CLOSED)

    async def on_failure(self, exc: BaseException | None = None) -> None:
        """Record a failed call; potentially open the circuit."""
        async with self._lock:
            now = self._clock()
            self._failures.append(now)
            self._prune(now)
            self.consecutive_failures += 1
            self.consecutive_successes = 0
            self.total_failures += 1
            self.last_failure = now

            logger.debug(
                "Circuit %s recorded failure (%s), consecutive=%d, state=%s",
                self.name,
                type(exc).__name__ if exc is not None else "unknown",
                self.consecutive_failures,
                self._state.value,
            )

            if self._state == CircuitState.HALF_OPEN:
                # Any trial failure reopens
                self._transition_to(CircuitState.OPEN)
            elif self._state == CircuitState.CLOSED and self.should_open():
                self._transition_to(CircuitState.OPEN)

    def should_open(self) -> bool:
        """True once the window holds enough samples and the rate is too high."""
        if self.window_requests < self.config.minimum_requests:
            return False
        return self.failure_rate >= self.config.failure_threshold

    def is_available(self) -> bool:
        """Whether a call made now would be let through."""
        if self._state != CircuitState.OPEN:
            return True
        return self.next_attempt_time is not None and self._clock() >= self.next_attempt_time

    # ── Admin ────────────────────────────────────────────────────────

    async def reset(self) -> None:
        """Force-reset the breaker to a fresh CLOSED state."""
        async with self._lock:
            self._state = CircuitState.CLOSED
            self._successes.clear()
            self._failures.clear()
            self.consecutive_successes = 0
            self.consecutive_failures = 0
            self.current_timeout = self.config.open_timeout
            self.opened_at = None
            self.next_attempt_time = None
            logger.info("Circuit %s reset", self.name)

    async def force_state(self, state: CircuitState) -> None:
        """Drive the breaker into *state* through the normal transition logic."""
        async with self._lock:
            self._transition_to(CircuitState(state))

    # ── Internals ────────────────────────────────────────────────────

    def _prune(self, now: float) -> None:
        cutoff = now - self.config.window_size
        for window in (self._successes, self._failures):
            while window and window[0] < cutoff:
                window.popleft()

    def _transition_to(self, new_state: CircuitState) -> None:
        old_state = self._state
        if old_state == new_state:
            return
        self._state = new_state
        now = self._clock()

        if new_state == CircuitState.OPEN:
            self.opened_at = now
            self.next_attempt_time = now + self.current_timeout
            self.circuit_opens += 1
            logger.warning(
                "Circuit %s OPENED for %.1fs (failure rate %.2f%% over %d requests)",
                self.name,
                self.current_timeout,
                self.failure_rate,
                self.window_requests,
            )
            self.current_timeout = min(
                self.current_timeout * self.config.backoff_multiplier,
                self.config.max_open_timeout,
            )
        elif new_state == CircuitState.HALF_OPEN:
            self.consecutive_successes = 0
            self.consecutive_failures = 0
            logger.info("Circuit %s HALF_OPEN, probing recovery", self.name)
        else:
            self.current_timeout = self.config.open_timeout
            self.opened_at = None
            self.next_attempt_time = None
            self.consecutive_failures = 0
            self.circuit_closes += 1
            logger.info("Circuit %s CLOSED, provider recovered", self.name)

        self._notify(old_state, new_state, now)

    def _notify(self, old_state: CircuitState, new_state: CircuitState, now: float) -> None:
        if self._on_state_change is None:
            return
        change = StateChange(
            breaker=self.name,
            provider=self.provider,
            organization_id=self.organization_id,
            from_state=old_state,
            to_state=new_state,
            timestamp=now,
            snapshot=self.snapshot(),
        )
        try:
            self._on_state_change(change)
        except Exception:
            logger.warning("State-change listener failed for circuit %s", self.name, exc_info=True)

    def snapshot(self) -> dict[str, Any]:
        """Return a JSON-serializable snapshot for health/metrics."""
        return {
            "name": self.name,
            "provider": self.provider,
            "organization_id": self.organization_id,
            "state": self._state.value,
            "window_requests": self.window_requests,
            "window_successes": len(self._successes),
            "window_failures": len(self._failures),
            "failure_rate": round(self.failure_rate, 2),
            "consecutive_successes": self.consecutive_successes,
            "consecutive_failures": self.consecutive_failures,
            "current_timeout": self.current_timeout,
            "next_attempt_time": _iso(self.next_attempt_time),
            "total_requests": self.total_requests,
            "total_successes": self.total_successes,
            "total_failures": self.total_failures,
            "total_rejections": self.total_rejections,
            "circuit_opens": self.circuit_opens,
            "circuit_closes": self.circuit_closes,
            "last_failure": _iso(self.last_failure),
            "last_success": _iso(self.last_success),
            "is_available": self.is_available(),
        }


class CircuitBreakerRegistry:
    """Manages per-tenant ``CircuitBreaker`` instances.

    Breakers are keyed ``"{organization_id}:{provider}"``, or by the bare
    provider name when no organization is given.

    Usage::

        registry = CircuitBreakerRegistry(BreakerConfig(minimum_requests=5))
        result = await registry.execute("new", "agency-1:branch-7", call)
    """

    def __init__(
        self,
        config: BreakerConfig | None = None,
        *,
        on_state_change: StateListener | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.config = config or BreakerConfig()
        self._on_state_change = on_state_change
        self._clock = clock
        self._breakers: dict[str, CircuitBreaker] = {}

    @staticmethod
    def key_for(provider: str, organization_id: str | None = None) -> str:
        return f"{organization_id}:{provider}" if organization_id else provider

    def get_breaker(self, provider: str, organization_id: str | None = None) -> CircuitBreaker:
        """Return (or create) the breaker for *provider* within *organization_id*."""
        key = self.key_for(provider, organization_id)
        breaker = self._breakers.get(key)
        if breaker is None:
            breaker = CircuitBreaker(
                name=key,
                config=self.config,
                provider=provider,
                organization_id=organization_id,
                on_state_change=self._on_state_change,
                clock=self._clock,
            )
            self._breakers[key] = breaker
        return breaker

    async def execute(
        self,
        provider: str,
        organization_id: str | None,
        operation: Callable[[], Awaitable[T]],
    ) -> T:
        """Run *operation* through the breaker for the tenant/provider pair."""
        return await self.get_breaker(provider, organization_id).execute(operation)

    def is_provider_available(self, provider: str, organization_id: str | None = None) -> bool:
        """Unknown keys count as available."""
        breaker = self._breakers.get(self.key_for(provider, organization_id))
        return breaker.is_available() if breaker else True

    def get_stats(self) -> dict[str, dict[str, Any]]:
        """Snapshots for every registered breaker, keyed by breaker key."""
        return {key: cb.snapshot() for key, cb in self._breakers.items()}

    async def reset_all(self) -> None:
        """Reset every circuit breaker to CLOSED."""
        for cb in self._breakers.values():
            await cb.reset()
