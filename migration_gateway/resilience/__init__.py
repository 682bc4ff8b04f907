"""Resilience patterns: per-tenant circuit breakers, error classification
and retry with exponential backoff for provider calls.
"""

from migration_gateway.resilience.circuit_breaker import (
    BreakerConfig,
    CircuitBreaker,
    CircuitBreakerRegistry,
    CircuitState,
)
from migration_gateway.resilience.error_classifier import classify
from migration_gateway.resilience.retry import RetryExecutor, RetryPolicy

__all__ = [
    "BreakerConfig",
    "CircuitBreaker",
    "CircuitBreakerRegistry",
    "CircuitState",
    "RetryExecutor",
    "RetryPolicy",
    "classify",
]
