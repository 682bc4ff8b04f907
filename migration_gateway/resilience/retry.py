"""Retry engine: bounded retries with exponential backoff and jitter.

Every attempt goes through the tenant's circuit breaker.  Failures are
classified; only retryable ones are tried again.  An open circuit aborts
the loop at once without sleeping, and no sleep may run past the caller's
deadline.
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Protocol, TypeVar

from migration_gateway.core.errors import CircuitOpenError, ClassifiedError
from migration_gateway.resilience.circuit_breaker import CircuitBreakerRegistry
from migration_gateway.resilience.error_classifier import classify

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RandomSource(Protocol):
    def random(self) -> float: ...


@dataclass(frozen=True)
class RetryPolicy:
    """Retry settings.  Delays are in seconds.

    Attributes:
        max_attempts:       Total calls allowed, first attempt included.
        initial_delay:      Delay before the first retry.
        max_delay:          Cap applied before and after jitter.
        backoff_multiplier: Growth factor per attempt.
        jitter_factor:      Symmetric jitter band, e.g. ``0.1`` for ±10%.
    """

    max_attempts: int = 3
    initial_delay: float = 1.0
    max_delay: float = 8.0
    backoff_multiplier: float = 2.0
    jitter_factor: float = 0.1

    def base_delay(self, attempt: int) -> float:
        """Un-jittered delay after the 0-based *attempt*."""
        return min(self.initial_delay * self.backoff_multiplier**attempt, self.max_delay)

    def compute_delay(self, attempt: int, rng: RandomSource) -> float:
        """Jittered delay, uniform in ``base * (1 ± jitter_factor)``, capped at ``max_delay``."""
        base = self.base_delay(attempt)
        jitter = base * self.jitter_factor * (rng.random() * 2 - 1)
        return min(max(0.0, base + jitter), self.max_delay)


class RetryExecutor:
    """Wraps one provider call in a bounded, breaker-aware retry loop.

    Args:
        registry: ``CircuitBreakerRegistry`` every attempt runs through.
        policy:   ``RetryPolicy`` (defaults if omitted).
        rng:      Random source for jitter (``random.Random`` compatible).
        sleep:    Awaitable sleep, injectable for tests.
        clock:    Monotonic clock the deadline is measured against.
    """

    def __init__(
        self,
        registry: CircuitBreakerRegistry,
        policy: RetryPolicy | None = None,
        *,
        rng: RandomSource | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.registry = registry
        self.policy = policy or RetryPolicy()
        self._rng = rng or random.Random()
        self._sleep = sleep
        self._clock = clock

    async def execute_with_retry(
        self,
        operation: Callable[[], Awaitable[T]],
        provider: str,
        organization_id: str | None = None,
        *,
        max_attempts: int | None = None,
        deadline: float | None = None,
    ) -> T:
        """Call *operation* until it succeeds or retrying is pointless.

        Args:
            operation:       Zero-argument coroutine factory for one attempt.
            provider:        Provider name (breaker key and classification).
            organization_id: Tenant for breaker isolation.
            max_attempts:    Overrides ``policy.max_attempts``; must be >= 1.
            deadline:        Absolute time on ``clock`` after which no
                             further sleep or attempt is started.

        Raises:
            CircuitOpenError: The tenant's breaker is open.
            ClassifiedError:  Non-retryable failure, attempts exhausted, or
                              the next backoff would overrun *deadline*.
                              CONFIGURATION kind when *max_attempts* < 1.
        """
        attempts = self.policy.max_attempts if max_attempts is None else max_attempts
        if attempts < 1:
            raise ClassifiedError.configuration(
                f"max_attempts must be at least 1, got {attempts}",
                config_key="max_attempts",
                actual_value=attempts,
                expected=">= 1",
            )
        label = self.registry.key_for(provider, organization_id)

        for attempt in range(attempts):
            try:
                result = await self.registry.execute(provider, organization_id, operation)
            except CircuitOpenError:
                logger.warning("Circuit open for %s, failing immediately", label)
                raise
            except Exception as exc:
                error = classify(exc, provider, {"attempt": attempt + 1, "max_attempts": attempts})
                logger.warning(
                    "[%s] Request failed on attempt %d/%d: %s (kind=%s, retryable=%s)",
                    label,
                    attempt + 1,
                    attempts,
                    error.message,
                    error.kind.value,
                    error.is_retryable,
                )
                if not error.is_retryable:
                    raise error
                if attempt == attempts - 1:
                    logger.error("[%s] Max retry attempts (%d) exceeded", label, attempts)
                    raise error

                delay = self._delay_for(attempt, error)
                if deadline is not None and self._clock() + delay > deadline:
                    logger.warning(
                        "[%s] Retry in %.2fs would exceed the request deadline, giving up",
                        label,
                        delay,
                    )
                    raise error

                logger.info("[%s] Retrying in %.2fs (attempt %d/%d)", label, delay, attempt + 2, attempts)
                await self._sleep(delay)
                continue

            if attempt > 0:
                logger.info("[%s] Request succeeded on attempt %d/%d", label, attempt + 1, attempts)
            return result

        raise RuntimeError("unreachable: retry loop exited without result")

    def _delay_for(self, attempt: int, error: ClassifiedError) -> float:
        if error.retry_after is not None:
            return error.retry_after
        return self.policy.compute_delay(attempt, self._rng)
