from __future__ import annotations

from collections import deque
from dataclasses import dataclass
from datetime import datetime

from open_llm_arbiter.config import ArbiterConfig
from open_llm_arbiter.domain import (
    ArbitrationDecision,
    FailureRecord,
    HealthStatus,
    Model,
    ModelPerformanceStats,
    UserConstraints,
    utc_now,
)


@dataclass(frozen=True, slots=True)
class _PerformanceSample:
    recorded_at: datetime
    latency_ms: float
    success: bool
    tokens_per_second: float | None


class InMemoryModelCatalog:
    def __init__(
        self,
        models: list[Model],
        provider_health: dict[str, HealthStatus] | None = None,
        history_limit: int = 1000,
        decision_limit: int = 10000,
    ) -> None:
        self._models = {model.id: model for model in models}
        self._provider_health = dict(provider_health or {})
        self._history_limit = max(1, history_limit)
        self._samples: dict[str, deque[_PerformanceSample]] = {}
        self._decisions: deque[ArbitrationDecision] = deque(maxlen=max(1, decision_limit))
        self._failures: deque[FailureRecord] = deque(maxlen=max(1, decision_limit))

    @classmethod
    def from_config(cls, config: ArbiterConfig) -> InMemoryModelCatalog:
        return cls(
            models=config.catalog_models(),
            provider_health={provider.name: provider.health for provider in config.providers},
        )

    @property
    def failures(self) -> list[FailureRecord]:
        return list(self._failures)

    async def get_active_models(self) -> list[Model]:
        return [model for model in self._models.values() if model.is_active]

    async def get_model(self, model_id: str) -> Model | None:
        return self._models.get(model_id)

    async def get_provider_health(self, provider: str) -> HealthStatus:
        return self._provider_health.get(provider, HealthStatus.UNKNOWN)

    def set_provider_health(self, provider: str, status: HealthStatus) -> None:
        self._provider_health[provider] = status

    def provider_health_snapshot(self) -> dict[str, str]:
        return {
            provider: status.value
            for provider, status in sorted(self._provider_health.items())
        }

    async def record_performance(
        self,
        model_id: str,
        latency_ms: float,
        success: bool,
        output_tokens: int = 0,
    ) -> None:
        tokens_per_second = None
        if success and latency_ms > 0 and output_tokens > 0:
            tokens_per_second = output_tokens / (latency_ms / 1000.0)
        samples = self._samples.setdefault(model_id, deque(maxlen=self._history_limit))
        samples.append(
            _PerformanceSample(
                recorded_at=utc_now(),
                latency_ms=max(0.0, float(latency_ms)),
                success=success,
                tokens_per_second=tokens_per_second,
            )
        )

    async def get_performance_stats(
        self, model_id: str, since: datetime | None = None
    ) -> ModelPerformanceStats | None:
        samples = [
            sample
            for sample in self._samples.get(model_id, ())
            if since is None or sample.recorded_at >= since
        ]
        if not samples:
            return None
        throughput = [
            sample.tokens_per_second
            for sample in samples
            if sample.tokens_per_second is not None
        ]
        return ModelPerformanceStats(
            model_id=model_id,
            samples=len(samples),
            average_latency_ms=sum(sample.latency_ms for sample in samples) / len(samples),
            success_rate=sum(1 for sample in samples if sample.success) / len(samples),
            tokens_per_second=sum(throughput) / len(throughput) if throughput else None,
        )

    async def record_decision(self, decision: ArbitrationDecision) -> None:
        self._decisions.append(decision)

    async def record_failure(self, failure: FailureRecord) -> None:
        self._failures.append(failure)

    async def get_decisions(
        self, tenant_id: str, since: datetime
    ) -> list[ArbitrationDecision]:
        return [
            decision
            for decision in self._decisions
            if decision.tenant_id == tenant_id and decision.timestamp >= since
        ]


class InMemoryUserConstraints:
    def __init__(self, blocked_models: dict[str, set[str]] | None = None) -> None:
        self._blocked_models = {
            user_id: set(models) for user_id, models in (blocked_models or {}).items()
        }

    @classmethod
    def from_config(cls, config: ArbiterConfig) -> InMemoryUserConstraints:
        return cls(
            {
                user_id: set(user.blocked_models)
                for user_id, user in config.users.items()
            }
        )

    def block_model(self, user_id: str, model_id: str) -> None:
        self._blocked_models.setdefault(user_id, set()).add(model_id)

    async def get_user_constraints(self, user_id: str) -> UserConstraints:
        return UserConstraints(
            user_id=user_id,
            blocked_models=frozenset(self._blocked_models.get(user_id, set())),
        )
