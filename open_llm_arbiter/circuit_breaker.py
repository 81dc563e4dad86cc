from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, TypeVar

from open_llm_arbiter.errors import CircuitOpenError

T = TypeVar("T")


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass(slots=True)
class CircuitBreakerConfig:
    enabled: bool = True
    failure_threshold: int = 5
    recovery_timeout_seconds: float = 30.0
    half_open_max_requests: int = 1


@dataclass(slots=True)
class _Circuit:
    state: CircuitState = CircuitState.CLOSED
    failure_count: int = 0
    opened_at_epoch: float = 0.0
    half_open_in_flight: int = 0
    total_successes: int = 0
    total_failures: int = 0
    total_rejections: int = 0


class CircuitBreakerRegistry:
    """Per-provider breakers. Keys are provider names."""

    def __init__(
        self,
        config: CircuitBreakerConfig,
        logger: logging.Logger | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._config = config
        self._logger = logger
        self._clock = clock
        self._circuits: dict[str, _Circuit] = {}

    @property
    def config(self) -> CircuitBreakerConfig:
        return self._config

    async def execute(self, operation: Callable[[], Awaitable[T]], key: str) -> T:
        if not self.allow_request(key):
            raise CircuitOpenError(key)
        try:
            result = await operation()
        except Exception:
            self.on_failure(key)
            raise
        self.on_success(key)
        return result

    def allow_request(self, key: str) -> bool:
        if not self._config.enabled:
            return True

        circuit = self._circuits.setdefault(key, _Circuit())
        now = self._clock()

        if circuit.state == CircuitState.OPEN:
            if now - circuit.opened_at_epoch >= self._config.recovery_timeout_seconds:
                self._transition(key, circuit, CircuitState.HALF_OPEN)
                circuit.half_open_in_flight = 0
            else:
                circuit.total_rejections += 1
                return False

        if circuit.state == CircuitState.HALF_OPEN:
            if circuit.half_open_in_flight >= self._config.half_open_max_requests:
                circuit.total_rejections += 1
                return False
            circuit.half_open_in_flight += 1
            return True

        return True

    def on_success(self, key: str) -> None:
        if not self._config.enabled:
            return

        circuit = self._circuits.setdefault(key, _Circuit())
        circuit.total_successes += 1
        if circuit.state == CircuitState.HALF_OPEN:
            circuit.half_open_in_flight = max(0, circuit.half_open_in_flight - 1)
            self._transition(key, circuit, CircuitState.CLOSED)
            circuit.failure_count = 0
            circuit.opened_at_epoch = 0.0
            return

        circuit.failure_count = 0
        circuit.state = CircuitState.CLOSED

    def on_failure(self, key: str) -> None:
        if not self._config.enabled:
            return

        circuit = self._circuits.setdefault(key, _Circuit())
        circuit.total_failures += 1
        now = self._clock()
        if circuit.state == CircuitState.HALF_OPEN:
            circuit.half_open_in_flight = max(0, circuit.half_open_in_flight - 1)
            self._transition(key, circuit, CircuitState.OPEN)
            circuit.opened_at_epoch = now
            circuit.failure_count = self._config.failure_threshold
            return

        circuit.failure_count += 1
        if (
            circuit.state == CircuitState.CLOSED
            and circuit.failure_count >= self._config.failure_threshold
        ):
            self._transition(key, circuit, CircuitState.OPEN)
            circuit.opened_at_epoch = now

    def reset(self, key: str) -> None:
        self._circuits.pop(key, None)

    def snapshot(self, key: str) -> dict[str, int | float | str]:
        circuit = self._circuits.get(key) or _Circuit()
        return {
            "state": circuit.state.value,
            "failure_count": circuit.failure_count,
            "opened_at_epoch": round(circuit.opened_at_epoch, 3),
            "half_open_in_flight": circuit.half_open_in_flight,
            "total_successes": circuit.total_successes,
            "total_failures": circuit.total_failures,
            "total_rejections": circuit.total_rejections,
        }

    def snapshot_all(self) -> dict[str, dict[str, int | float | str]]:
        return {key: self.snapshot(key) for key in sorted(self._circuits)}

    def open_keys(self) -> list[str]:
        return sorted(
            key
            for key, circuit in self._circuits.items()
            if circuit.state == CircuitState.OPEN
        )

    def _transition(self, key: str, circuit: _Circuit, state: CircuitState) -> None:
        previous = circuit.state
        circuit.state = state
        if self._logger is not None and previous != state:
            self._logger.info(
                "circuit_state_changed key=%s from=%s to=%s failures=%d",
                key,
                previous.value,
                state.value,
                circuit.failure_count,
            )
