"""Resilience patterns for external collaborator calls."""

from ragcore.shared.resilience.circuit_breaker import CircuitBreaker, CircuitState

__all__ = ["CircuitBreaker", "CircuitState"]
