from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from open_llm_arbiter.catalog import InMemoryModelCatalog, InMemoryUserConstraints
from open_llm_arbiter.domain import HealthStatus, utc_now
from tests.arbiter_test_utils import load_test_config, make_model


def test_catalog_from_config_carries_provider_health() -> None:
    catalog = InMemoryModelCatalog.from_config(load_test_config())

    async def _run() -> tuple[HealthStatus, HealthStatus, HealthStatus]:
        return (
            await catalog.get_provider_health("alpha"),
            await catalog.get_provider_health("gamma"),
            await catalog.get_provider_health("unlisted"),
        )

    assert asyncio.run(_run()) == (
        HealthStatus.HEALTHY,
        HealthStatus.DOWN,
        HealthStatus.UNKNOWN,
    )
    assert catalog.provider_health_snapshot()["gamma"] == "down"


def test_inactive_models_are_not_listed() -> None:
    catalog = InMemoryModelCatalog([make_model("on"), make_model("off", is_active=False)])

    models = asyncio.run(catalog.get_active_models())

    assert [model.id for model in models] == ["on"]
    assert asyncio.run(catalog.get_model("off")) is not None


def test_performance_stats_aggregate_samples() -> None:
    catalog = InMemoryModelCatalog([make_model("m")])

    async def _run() -> object:
        await catalog.record_performance("m", 200.0, True, output_tokens=100)
        await catalog.record_performance("m", 600.0, True, output_tokens=300)
        await catalog.record_performance("m", 1000.0, False)
        return await catalog.get_performance_stats("m")

    stats = asyncio.run(_run())

    assert stats is not None
    assert stats.samples == 3
    assert stats.average_latency_ms == pytest.approx(600.0)
    assert stats.success_rate == pytest.approx(2 / 3)
    assert stats.tokens_per_second == pytest.approx(500.0)


def test_performance_stats_respect_since_and_history_limit() -> None:
    catalog = InMemoryModelCatalog([make_model("m")], history_limit=2)

    async def _run() -> tuple[object, object]:
        for latency in (100.0, 200.0, 300.0):
            await catalog.record_performance("m", latency, True)
        return (
            await catalog.get_performance_stats("m"),
            await catalog.get_performance_stats("m", since=utc_now() + timedelta(hours=1)),
        )

    recent, future = asyncio.run(_run())

    assert recent is not None
    assert recent.samples == 2
    assert recent.average_latency_ms == pytest.approx(250.0)
    assert future is None


def test_user_constraints_from_config() -> None:
    constraints = InMemoryUserConstraints.from_config(load_test_config())
    constraints.block_model("user-2", "beta-pro")

    async def _run() -> tuple[frozenset[str], frozenset[str], frozenset[str]]:
        return (
            (await constraints.get_user_constraints("restricted-user")).blocked_models,
            (await constraints.get_user_constraints("user-2")).blocked_models,
            (await constraints.get_user_constraints("nobody")).blocked_models,
        )

    assert asyncio.run(_run()) == (
        frozenset({"alpha-mini"}),
        frozenset({"beta-pro"}),
        frozenset(),
    )
