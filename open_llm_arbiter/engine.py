from __future__ import annotations

import asyncio
import dataclasses
import logging
import time
import uuid
from typing import Any

from open_llm_arbiter.audit import DecisionAuditLog
from open_llm_arbiter.budget import InMemoryCostTracker
from open_llm_arbiter.cancellation import CancellationToken, raise_if_cancelled
from open_llm_arbiter.candidate_evaluator import CandidateEvaluator
from open_llm_arbiter.catalog import InMemoryModelCatalog, InMemoryUserConstraints
from open_llm_arbiter.circuit_breaker import CircuitBreakerConfig, CircuitBreakerRegistry
from open_llm_arbiter.compliance import PolicyComplianceChecker
from open_llm_arbiter.config import ArbiterConfig
from open_llm_arbiter.domain import (
    ArbitrationContext,
    ArbitrationDecision,
    ArbitrationResult,
    ArbitrationRule,
    BatchExecutionResult,
    ChatRequest,
    Model,
    ModelResponse,
    PerformancePrediction,
    SelectionStrategy,
    StreamingResponse,
)
from open_llm_arbiter.errors import (
    ArbitrationError,
    InsufficientBudgetError,
    InvalidArbitrationContextError,
    NoSuitableModelError,
)
from open_llm_arbiter.execution import ExecutionOrchestrator, StreamCompletionCallback
from open_llm_arbiter.interfaces import (
    ComplianceChecker,
    CostTracker,
    ModelCatalog,
    PerformancePredictor,
    ProviderAdapterFactory,
)
from open_llm_arbiter.metrics import EngineMetrics
from open_llm_arbiter.optimization import RuleOptimizer
from open_llm_arbiter.providers import DefaultProviderAdapterFactory
from open_llm_arbiter.ranker import Ranker
from open_llm_arbiter.rate_limiter import RateLimiter, RateLimitStore
from open_llm_arbiter.scoring import (
    HeuristicPerformancePredictor,
    HeuristicScoringService,
    expected_tokens,
    token_cost,
)

# Cost assumed for the admission budget check when the context carries no estimate.
DEFAULT_BUDGET_ESTIMATE = 0.1

COST_OPTIMIZED_MAX_COST = 0.10
PERFORMANCE_CRITICAL_MIN_INTELLIGENCE = 70.0
LATENCY_SENSITIVE_MAX_LATENCY_MS = 2000.0


def determine_selection_strategy(context: ArbitrationContext) -> str:
    if context.max_cost is not None and context.max_cost < COST_OPTIMIZED_MAX_COST:
        return SelectionStrategy.COST_OPTIMIZED.value
    if (
        context.min_intelligence_score is not None
        and context.min_intelligence_score > PERFORMANCE_CRITICAL_MIN_INTELLIGENCE
    ):
        return SelectionStrategy.PERFORMANCE_CRITICAL.value
    if (
        context.max_latency_ms is not None
        and context.max_latency_ms < LATENCY_SENSITIVE_MAX_LATENCY_MS
    ):
        return SelectionStrategy.LATENCY_SENSITIVE.value
    if context.required_capabilities:
        return SelectionStrategy.CAPABILITY_OPTIMIZED.value
    return SelectionStrategy.BALANCED.value


def validate_context(context: ArbitrationContext) -> None:
    if not context.tenant_id or not context.tenant_id.strip():
        raise InvalidArbitrationContextError("tenant_id is required.")
    if not context.user_id or not context.user_id.strip():
        raise InvalidArbitrationContextError(
            "user_id is required.", {"tenant_id": context.tenant_id}
        )
    if context.max_fallback_attempts < 0:
        raise InvalidArbitrationContextError(
            "max_fallback_attempts must not be negative.",
            {"max_fallback_attempts": context.max_fallback_attempts},
        )
    if context.max_cost is not None and context.max_cost < 0:
        raise InvalidArbitrationContextError(
            "max_cost must not be negative.", {"max_cost": context.max_cost}
        )
    if context.estimated_cost is not None and context.estimated_cost < 0:
        raise InvalidArbitrationContextError(
            "estimated_cost must not be negative.",
            {"estimated_cost": context.estimated_cost},
        )


class ArbitrationEngine:
    """Admission control, candidate evaluation, ranking and execution."""

    def __init__(
        self,
        *,
        config: ArbiterConfig,
        catalog: ModelCatalog,
        evaluator: CandidateEvaluator,
        ranker: Ranker,
        rate_limiter: RateLimiter,
        predictor: PerformancePredictor,
        compliance: ComplianceChecker,
        adapters: ProviderAdapterFactory,
        breaker: CircuitBreakerRegistry,
        cost_tracker: CostTracker | None = None,
        optimizer: RuleOptimizer | None = None,
        audit: DecisionAuditLog | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self._config = config
        self._catalog = catalog
        self._evaluator = evaluator
        self._ranker = ranker
        self._rate_limiter = rate_limiter
        self._predictor = predictor
        self._breaker = breaker
        self._cost_tracker = cost_tracker
        self._optimizer = optimizer or RuleOptimizer(catalog, config.optimization, logger)
        self._audit = audit
        self._logger = logger or logging.getLogger("uvicorn.error")
        self._metrics = EngineMetrics()
        self._orchestrator = ExecutionOrchestrator(
            selector=self,
            compliance=compliance,
            adapters=adapters,
            breaker=breaker,
            catalog=catalog,
            cost_tracker=cost_tracker,
            rate_limiter=rate_limiter,
            audit=audit,
            metrics=self._metrics,
            config=config.execution,
            logger=self._logger,
        )

    @property
    def rate_limiter(self) -> RateLimiter:
        return self._rate_limiter

    @property
    def catalog(self) -> ModelCatalog:
        return self._catalog

    @property
    def breaker(self) -> CircuitBreakerRegistry:
        return self._breaker

    @property
    def optimizer(self) -> RuleOptimizer:
        return self._optimizer

    @property
    def orchestrator(self) -> ExecutionOrchestrator:
        return self._orchestrator

    async def select_model(
        self,
        context: ArbitrationContext,
        cancellation: CancellationToken | None = None,
    ) -> ArbitrationResult:
        started = time.perf_counter()
        try:
            result = await self._select(context, cancellation, started)
        except ArbitrationError as exc:
            self._metrics.record_selection_failure(exc.code)
            self._logger.info(
                "arbitration_failed tenant=%s code=%s error=%s",
                context.tenant_id,
                exc.code,
                exc.message,
            )
            raise

        self._metrics.record_selection(
            result.selected.model.id, result.selection_strategy, result.selection_time_ms
        )
        if self._audit is not None:
            self._audit.record_decision(result, context)
        self._logger.info(
            "arbitration_selected tenant=%s decision_id=%s model=%s strategy=%s "
            "score=%.2f candidates=%d elapsed_ms=%.1f",
            context.tenant_id,
            result.decision_id,
            result.selected.model.id,
            result.selection_strategy,
            result.selected.final_score,
            len(result.candidates),
            result.selection_time_ms,
        )
        return result

    async def _select(
        self,
        context: ArbitrationContext,
        cancellation: CancellationToken | None,
        started: float,
    ) -> ArbitrationResult:
        validate_context(context)
        raise_if_cancelled(cancellation, "validation")
        if not context.selection_strategy:
            context = dataclasses.replace(
                context, selection_strategy=determine_selection_strategy(context)
            )

        admission = await self._rate_limiter.check_context(context)
        if not admission.allowed:
            raise admission.to_error()
        raise_if_cancelled(cancellation, "rate_limit")

        models = await self._catalog.get_active_models()
        await self._check_budget(context, models)
        raise_if_cancelled(cancellation, "budget")

        candidates = await self._evaluator.evaluate(models, context, cancellation)
        raise_if_cancelled(cancellation, "evaluation")
        if not candidates:
            raise NoSuitableModelError(
                details={"tenant_id": context.tenant_id, "models_considered": len(models)}
            )

        ranked = self._ranker.rank(candidates, context)
        prediction = await self._predictor.predict(ranked.ordered, context)
        cost_estimate = await self._predictor.estimate_cost(ranked.selected.model, context)
        raise_if_cancelled(cancellation, "ranking")

        decision_id = uuid.uuid4().hex
        await self._catalog.record_decision(
            ArbitrationDecision(
                decision_id=decision_id,
                tenant_id=context.tenant_id,
                user_id=context.user_id,
                project_id=context.project_id,
                task_type=context.task_type,
                selected_model_id=ranked.selected.model.id,
                selection_strategy=ranked.strategy,
                final_score=ranked.selected.final_score,
                estimated_cost=cost_estimate.total_cost,
                candidate_count=len(candidates),
            )
        )

        min_score = self._config.ranking.min_final_score
        return ArbitrationResult(
            decision_id=decision_id,
            selected=ranked.selected,
            fallbacks=tuple(ranked.fallbacks),
            candidates=tuple(ranked.ordered),
            cost_estimate=cost_estimate,
            performance_prediction=prediction,
            selection_strategy=ranked.strategy,
            decision_factors={
                "task_type": context.task_type,
                "strategy": ranked.strategy,
                "budget_constrained": context.max_cost is not None,
                "latency_constrained": context.max_latency_ms is not None,
                "compliance_requirements": context.has_compliance_requirements,
                "candidate_count": len(candidates),
                "final_score": round(ranked.selected.final_score, 4),
            },
            excluded_models=tuple(
                candidate.model.id
                for candidate in ranked.ordered
                if candidate.final_score < min_score
            ),
            constraints_relaxed=ranked.constraints_relaxed,
            selection_time_ms=(time.perf_counter() - started) * 1000.0,
        )

    def budget_estimate(self, context: ArbitrationContext, models: list[Model]) -> float:
        if context.estimated_cost is not None:
            return context.estimated_cost
        if not models or (
            context.estimated_input_tokens is None
            and context.estimated_output_tokens is None
        ):
            return DEFAULT_BUDGET_ESTIMATE
        input_tokens, output_tokens = expected_tokens(context, self._config.scoring)
        # Cheapest active model: the least any admitted request can cost.
        return min(token_cost(model, input_tokens, output_tokens) for model in models)

    async def _check_budget(
        self, context: ArbitrationContext, models: list[Model]
    ) -> None:
        if self._cost_tracker is None:
            return
        try:
            status = await self._cost_tracker.get_budget_status(
                context.tenant_id, context.project_id, context.user_id
            )
        except Exception as exc:
            self._logger.warning(
                "budget_check_failed tenant=%s error=%s fallback=allow",
                context.tenant_id,
                exc,
            )
            return
        estimate = self.budget_estimate(context, models)
        if not status.can_make_request(estimate):
            raise InsufficientBudgetError(context.tenant_id, estimate, status.remaining)

    async def select_models(
        self, contexts: list[ArbitrationContext]
    ) -> list[ArbitrationResult]:
        semaphore = asyncio.Semaphore(
            max(1, self._config.execution.selection_max_concurrency)
        )

        async def select_one(context: ArbitrationContext) -> ArbitrationResult:
            async with semaphore:
                return await self.select_model(context)

        return list(await asyncio.gather(*(select_one(context) for context in contexts)))

    def determine_selection_strategy(self, context: ArbitrationContext) -> str:
        return determine_selection_strategy(context)

    async def predict_performance(
        self, context: ArbitrationContext
    ) -> PerformancePrediction | None:
        validate_context(context)
        models = await self._catalog.get_active_models()
        candidates = await self._evaluator.evaluate(models, context)
        return await self._predictor.predict(candidates, context)

    async def execute(
        self,
        request: ChatRequest,
        context: ArbitrationContext,
        cancellation: CancellationToken | None = None,
    ) -> ModelResponse:
        return await self._orchestrator.execute(request, context, cancellation)

    async def execute_streaming(
        self,
        request: ChatRequest,
        context: ArbitrationContext,
        on_complete: StreamCompletionCallback | None = None,
        cancellation: CancellationToken | None = None,
    ) -> StreamingResponse:
        return await self._orchestrator.execute_streaming(
            request, context, on_complete, cancellation
        )

    async def execute_batch(
        self,
        requests: list[ChatRequest],
        context: ArbitrationContext,
        cancellation: CancellationToken | None = None,
    ) -> BatchExecutionResult:
        return await self._orchestrator.execute_batch(requests, context, cancellation)

    async def optimize_rules(self, tenant_id: str) -> list[ArbitrationRule]:
        return await self._optimizer.optimize(tenant_id)

    async def get_health_status(self) -> dict[str, Any]:
        components: dict[str, dict[str, Any]] = {}
        try:
            store_ok = await self._rate_limiter.store.ping()
            components["rate_limit_store"] = {"healthy": bool(store_ok)}
        except Exception as exc:
            components["rate_limit_store"] = {"healthy": False, "error": str(exc)}

        try:
            active = await self._catalog.get_active_models()
            components["catalog"] = {"healthy": bool(active), "active_models": len(active)}
        except Exception as exc:
            components["catalog"] = {"healthy": False, "error": str(exc)}

        open_circuits = self._breaker.open_keys()
        components["circuit_breakers"] = {
            "healthy": not open_circuits,
            "open": open_circuits,
        }
        return {
            "healthy": all(component["healthy"] for component in components.values()),
            "components": components,
        }

    def get_metrics(self) -> dict[str, Any]:
        payload = self._metrics.as_dict()
        payload["circuit_breakers"] = self._breaker.snapshot_all()
        return payload

    def get_configuration(self) -> dict[str, Any]:
        return {
            "scoring": self._config.scoring.model_dump(mode="json"),
            "ranking": self._config.ranking.model_dump(mode="json"),
            "rate_limits": self._config.rate_limits.model_dump(mode="json"),
            "execution": self._config.execution.model_dump(mode="json"),
            "optimization": self._config.optimization.model_dump(mode="json"),
            "providers": sorted(provider.name for provider in self._config.providers),
            "models": sorted(model.id for model in self._config.models),
            "circuit_breaker": dataclasses.asdict(self._breaker.config),
        }


def build_engine(
    config: ArbiterConfig,
    *,
    rate_limit_store: RateLimitStore,
    breaker_config: CircuitBreakerConfig | None = None,
    catalog: InMemoryModelCatalog | None = None,
    adapters: ProviderAdapterFactory | None = None,
    audit: DecisionAuditLog | None = None,
    logger: logging.Logger | None = None,
) -> ArbitrationEngine:
    catalog = catalog or InMemoryModelCatalog.from_config(config)
    compliance = PolicyComplianceChecker.from_config(config)
    scoring = HeuristicScoringService(catalog, config.scoring, logger)
    return ArbitrationEngine(
        config=config,
        catalog=catalog,
        evaluator=CandidateEvaluator(
            catalog=catalog,
            user_constraints=InMemoryUserConstraints.from_config(config),
            compliance=compliance,
            scoring=scoring,
            ranking=config.ranking,
            logger=logger,
        ),
        ranker=Ranker(config.ranking, logger),
        rate_limiter=RateLimiter(rate_limit_store, config.rate_limits, logger),
        predictor=HeuristicPerformancePredictor(catalog, config.scoring),
        compliance=compliance,
        adapters=adapters or DefaultProviderAdapterFactory(config.providers, logger=logger),
        breaker=CircuitBreakerRegistry(breaker_config or CircuitBreakerConfig(), logger),
        cost_tracker=InMemoryCostTracker.from_config(config),
        audit=audit,
        logger=logger,
    )
