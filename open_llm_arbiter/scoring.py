from __future__ import annotations

import logging
from datetime import timedelta

from open_llm_arbiter.config import ScoringConfig, ScoringWeights
from open_llm_arbiter.domain import (
    ArbitrationContext,
    Candidate,
    CostEstimate,
    Model,
    ModelPerformanceStats,
    PerformancePrediction,
    utc_now,
)
from open_llm_arbiter.interfaces import ModelCatalog

LATENCY_SCORE_BUCKETS: tuple[tuple[float, float], ...] = (
    (100.0, 100.0),
    (500.0, 80.0),
    (1000.0, 60.0),
    (2000.0, 40.0),
    (5000.0, 20.0),
)
THROUGHPUT_SCORE_BUCKETS: tuple[tuple[float, float], ...] = (
    (1000.0, 100.0),
    (500.0, 80.0),
    (200.0, 60.0),
    (100.0, 40.0),
    (50.0, 20.0),
)
FLOOR_BUCKET_SCORE = 10.0


def latency_score(latency_ms: float) -> float:
    for ceiling, score in LATENCY_SCORE_BUCKETS:
        if latency_ms <= ceiling:
            return score
    return FLOOR_BUCKET_SCORE


def throughput_score(tokens_per_second: float | None) -> float:
    if tokens_per_second is None:
        return FLOOR_BUCKET_SCORE
    for floor, score in THROUGHPUT_SCORE_BUCKETS:
        if tokens_per_second >= floor:
            return score
    return FLOOR_BUCKET_SCORE


def expected_tokens(
    context: ArbitrationContext, config: ScoringConfig
) -> tuple[int, int]:
    average_input, average_output = config.tokens_for(context.task_type)
    input_tokens = (
        context.estimated_input_tokens
        if context.estimated_input_tokens is not None
        else average_input
    )
    output_tokens = (
        context.estimated_output_tokens
        if context.estimated_output_tokens is not None
        else average_output
    )
    return max(0, int(input_tokens)), max(0, int(output_tokens))


def token_cost(model: Model, input_tokens: int, output_tokens: int) -> float:
    return (input_tokens / 1_000_000) * model.input_cost_per_million + (
        output_tokens / 1_000_000
    ) * model.output_cost_per_million


def estimate_model_cost(
    model: Model, context: ArbitrationContext, config: ScoringConfig
) -> CostEstimate:
    input_tokens, output_tokens = expected_tokens(context, config)
    return CostEstimate(
        model_id=model.id,
        input_tokens=input_tokens,
        output_tokens=output_tokens,
        input_cost=(input_tokens / 1_000_000) * model.input_cost_per_million,
        output_cost=(output_tokens / 1_000_000) * model.output_cost_per_million,
    )


class HeuristicScoringService:
    """Scores models from catalog performance history and static pricing."""

    def __init__(
        self,
        catalog: ModelCatalog,
        config: ScoringConfig | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self._catalog = catalog
        self._config = config or ScoringConfig()
        self._logger = logger

    @property
    def config(self) -> ScoringConfig:
        return self._config

    async def _stats(
        self, model: Model, *, recent_only: bool = False
    ) -> ModelPerformanceStats | None:
        since = None
        if recent_only:
            since = utc_now() - timedelta(days=self._config.recent_window_days)
        stats = await self._catalog.get_performance_stats(model.id, since=since)
        if stats is None or stats.samples <= 0:
            return None
        return stats

    async def calculate_performance_score(
        self, model: Model, context: ArbitrationContext
    ) -> float:
        stats = await self._stats(model)
        if stats is None:
            if self._logger is not None:
                self._logger.debug(
                    "scoring_default_performance model=%s", model.id
                )
            return self._config.default_performance_score
        return (
            latency_score(stats.average_latency_ms) * 0.4
            + stats.success_rate * 100.0 * 0.4
            + throughput_score(stats.tokens_per_second) * 0.2
        )

    async def calculate_cost_score(
        self, model: Model, context: ArbitrationContext
    ) -> float:
        expected_cost = await self.calculate_expected_cost(model, context)
        if expected_cost <= 0:
            return 100.0
        normalized = min(expected_cost / self._config.max_expected_cost, 1.0)
        return 100.0 * (1.0 - normalized)

    async def calculate_compliance_score(
        self, model: Model, context: ArbitrationContext
    ) -> float:
        if not context.has_compliance_requirements:
            return 100.0
        score = 100.0
        region = (context.required_region or "").strip().lower()
        if context.require_data_residency and region not in model.supported_regions:
            score -= self._config.residency_penalty
        if context.require_encryption_at_rest and not model.supports_encryption_at_rest:
            score -= self._config.encryption_penalty
        return max(0.0, score)

    async def calculate_reliability_score(
        self, model: Model, context: ArbitrationContext
    ) -> float:
        stats = await self._stats(model, recent_only=True)
        if stats is None:
            stats = await self._stats(model)
        if stats is None:
            return self._config.default_reliability_score
        return stats.success_rate * 100.0

    async def estimate_latency(self, model: Model, context: ArbitrationContext) -> float:
        stats = await self._stats(model)
        if stats is None:
            return self._config.default_latency_ms
        return stats.average_latency_ms

    async def calculate_expected_cost(
        self, model: Model, context: ArbitrationContext
    ) -> float:
        return estimate_model_cost(model, context, self._config).total_cost

    def get_scoring_weights(self, context: ArbitrationContext) -> ScoringWeights:
        return self._config.weights_for(context.task_type)


class HeuristicPerformancePredictor:
    def __init__(
        self,
        catalog: ModelCatalog,
        config: ScoringConfig | None = None,
        top_n: int = 3,
    ) -> None:
        self._catalog = catalog
        self._config = config or ScoringConfig()
        self._top_n = max(1, top_n)

    async def predict(
        self, candidates: list[Candidate], context: ArbitrationContext
    ) -> PerformancePrediction | None:
        if not candidates:
            return None
        top = sorted(candidates, key=lambda item: item.final_score, reverse=True)[
            : self._top_n
        ]
        best = max(top, key=lambda item: item.reliability_score)
        stats = await self._catalog.get_performance_stats(best.model.id)
        samples = stats.samples if stats is not None else 0
        return PerformancePrediction(
            model_id=best.model.id,
            estimated_latency_ms=best.estimated_latency_ms,
            success_probability=min(1.0, max(0.0, best.reliability_score / 100.0)),
            confidence=min(1.0, 0.5 + samples / 200.0),
        )

    async def estimate_cost(
        self, model: Model, context: ArbitrationContext
    ) -> CostEstimate:
        return estimate_model_cost(model, context, self._config)
