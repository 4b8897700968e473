"""Circuit breaker guarding calls to the notary."""
from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum

import structlog

logger = structlog.get_logger(__name__)


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass(frozen=True)
class CircuitBreakerConfig:
    failure_threshold: int = 5
    recovery_timeout_seconds: float = 30.0
    half_open_max_calls: int = 1
    success_threshold: int = 1


class CircuitBreaker:
    """Opens after ``failure_threshold`` consecutive failures.

    While open every call is refused until ``recovery_timeout_seconds`` have
    passed; then a limited number of trial calls are let through (half-open)
    and their outcome closes or re-opens the circuit.
    """

    def __init__(
        self,
        name: str,
        config: CircuitBreakerConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.name = name
        self.config = config or CircuitBreakerConfig()
        self._clock = clock
        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.success_count = 0
        self.half_open_calls = 0
        self.opened_at: float | None = None

    def allow(self) -> bool:
        if self.state == CircuitState.OPEN:
            if not self._can_attempt_reset():
                return False
            self.state = CircuitState.HALF_OPEN
            self.half_open_calls = 0
            self.success_count = 0
            logger.info("circuit_half_open", breaker=self.name)

        if self.state == CircuitState.HALF_OPEN:
            if self.half_open_calls >= self.config.half_open_max_calls:
                return False
            self.half_open_calls += 1
        return True

    def record_success(self) -> None:
        if self.state == CircuitState.HALF_OPEN:
            self.success_count += 1
            if self.success_count >= self.config.success_threshold:
                self._reset()
                logger.info("circuit_closed", breaker=self.name)
        else:
            self.failure_count = 0

    def record_failure(self) -> None:
        self.failure_count += 1
        if self.state == CircuitState.HALF_OPEN:
            self._open()
            logger.warning("circuit_reopened", breaker=self.name)
        elif self.state == CircuitState.CLOSED and self.failure_count >= self.config.failure_threshold:
            self._open()
            logger.warning("circuit_opened", breaker=self.name, failures=self.failure_count)

    def _open(self) -> None:
        self.state = CircuitState.OPEN
        self.opened_at = self._clock()

    def _can_attempt_reset(self) -> bool:
        if self.opened_at is None:
            return True
        return self._clock() - self.opened_at >= self.config.recovery_timeout_seconds

    def _reset(self) -> None:
        self.state = CircuitState.CLOSED
        self.failure_count = 0
        self.success_count = 0
        self.half_open_calls = 0
        self.opened_at = None


__all__ = ["CircuitBreaker", "CircuitBreakerConfig", "CircuitState"]
