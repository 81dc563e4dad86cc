from __future__ import annotations

import asyncio

import pytest

from open_llm_arbiter.circuit_breaker import (
    CircuitBreakerConfig,
    CircuitBreakerRegistry,
)
from open_llm_arbiter.errors import CircuitOpenError


class _Clock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


def _registry(
    *,
    failure_threshold: int = 2,
    recovery_timeout_seconds: float = 0.0,
    clock: _Clock | None = None,
) -> CircuitBreakerRegistry:
    return CircuitBreakerRegistry(
        CircuitBreakerConfig(
            enabled=True,
            failure_threshold=failure_threshold,
            recovery_timeout_seconds=recovery_timeout_seconds,
            half_open_max_requests=1,
        ),
        clock=clock or _Clock(),
    )


def test_circuit_breaker_opens_after_threshold_and_recovers_to_half_open() -> None:
    breakers = _registry(failure_threshold=2)
    key = "openai"

    assert breakers.allow_request(key) is True
    breakers.on_failure(key)
    assert breakers.allow_request(key) is True
    breakers.on_failure(key)

    # Recovery timeout of 0.0 means the next call is a half-open trial request.
    assert breakers.allow_request(key) is True
    snapshot = breakers.snapshot(key)
    assert snapshot["state"] == "half_open"
    assert snapshot["half_open_in_flight"] == 1
    assert breakers.allow_request(key) is False


def test_circuit_breaker_half_open_success_closes_breaker() -> None:
    breakers = _registry(failure_threshold=1)
    key = "anthropic"

    breakers.on_failure(key)
    assert breakers.allow_request(key) is True
    breakers.on_success(key)

    snapshot = breakers.snapshot(key)
    assert snapshot["state"] == "closed"
    assert snapshot["failure_count"] == 0
    assert breakers.allow_request(key) is True


def test_circuit_breaker_half_open_failure_reopens_breaker() -> None:
    breakers = _registry(failure_threshold=1)
    key = "local"

    breakers.on_failure(key)
    assert breakers.allow_request(key) is True
    breakers.on_failure(key)

    assert breakers.snapshot(key)["state"] == "open"
    assert breakers.open_keys() == ["local"]


def test_open_circuit_rejects_until_recovery_timeout() -> None:
    clock = _Clock()
    breakers = _registry(failure_threshold=1, recovery_timeout_seconds=30.0, clock=clock)

    breakers.on_failure("alpha")
    assert breakers.allow_request("alpha") is False
    clock.now += 29.0
    assert breakers.allow_request("alpha") is False
    clock.now += 1.0
    assert breakers.allow_request("alpha") is True

    assert breakers.snapshot("alpha")["total_rejections"] == 2


def test_execute_records_outcomes_and_raises_when_open() -> None:
    clock = _Clock()
    breakers = _registry(failure_threshold=1, recovery_timeout_seconds=60.0, clock=clock)
    calls: list[str] = []

    async def ok() -> str:
        calls.append("ok")
        return "done"

    async def boom() -> str:
        calls.append("boom")
        raise RuntimeError("upstream down")

    async def _run() -> str:
        assert await breakers.execute(ok, "alpha") == "done"
        with pytest.raises(RuntimeError, match="upstream down"):
            await breakers.execute(boom, "alpha")
        with pytest.raises(CircuitOpenError) as error:
            await breakers.execute(ok, "alpha")
        return error.value.key

    assert asyncio.run(_run()) == "alpha"
    assert calls == ["ok", "boom"]
    snapshot = breakers.snapshot("alpha")
    assert (snapshot["total_successes"], snapshot["total_failures"]) == (1, 1)


def test_disabled_breaker_always_allows() -> None:
    breakers = CircuitBreakerRegistry(CircuitBreakerConfig(enabled=False, failure_threshold=1))

    for _ in range(5):
        breakers.on_failure("alpha")

    assert breakers.allow_request("alpha") is True
    assert breakers.snapshot_all() == {}


def test_reset_forgets_circuit_state() -> None:
    breakers = _registry(failure_threshold=1, recovery_timeout_seconds=60.0)

    breakers.on_failure("alpha")
    breakers.reset("alpha")

    assert breakers.allow_request("alpha") is True
    assert breakers.snapshot_all()["alpha"]["state"] == "closed"
