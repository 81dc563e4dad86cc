from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING, Any, AsyncIterator, Awaitable, Callable, Protocol, TypeVar

if TYPE_CHECKING:
    from open_llm_arbiter.cancellation import CancellationToken
    from open_llm_arbiter.config import ScoringWeights
    from open_llm_arbiter.domain import (
        ArbitrationContext,
        ArbitrationDecision,
        ArbitrationResult,
        BudgetStatus,
        Candidate,
        ChatRequest,
        ComplianceResult,
        CostEstimate,
        FailureRecord,
        HealthStatus,
        Model,
        ModelPerformanceStats,
        ModelResponse,
        PerformancePrediction,
        StreamChunk,
        UsageRecord,
        UserConstraints,
    )

T = TypeVar("T")


class ModelSelector(Protocol):
    async def select_model(
        self,
        context: ArbitrationContext,
        cancellation: CancellationToken | None = None,
    ) -> ArbitrationResult: ...


class ModelCatalog(Protocol):
    async def get_active_models(self) -> list[Model]: ...

    async def get_model(self, model_id: str) -> Model | None: ...

    async def get_provider_health(self, provider: str) -> HealthStatus: ...

    async def get_performance_stats(
        self, model_id: str, since: datetime | None = None
    ) -> ModelPerformanceStats | None: ...

    async def record_performance(
        self,
        model_id: str,
        latency_ms: float,
        success: bool,
        output_tokens: int = 0,
    ) -> None: ...

    async def record_decision(self, decision: ArbitrationDecision) -> None: ...

    async def record_failure(self, failure: FailureRecord) -> None: ...

    async def get_decisions(
        self, tenant_id: str, since: datetime
    ) -> list[ArbitrationDecision]: ...


class UserConstraintsProvider(Protocol):
    async def get_user_constraints(self, user_id: str) -> UserConstraints: ...


class ComplianceChecker(Protocol):
    async def check_model_compliance(
        self, model: Model, context: ArbitrationContext
    ) -> ComplianceResult: ...

    async def check_request_compliance(
        self, request: ChatRequest, context: ArbitrationContext
    ) -> ComplianceResult: ...


class ScoringService(Protocol):
    async def calculate_performance_score(
        self, model: Model, context: ArbitrationContext
    ) -> float: ...

    async def calculate_cost_score(
        self, model: Model, context: ArbitrationContext
    ) -> float: ...

    async def calculate_compliance_score(
        self, model: Model, context: ArbitrationContext
    ) -> float: ...

    async def calculate_reliability_score(
        self, model: Model, context: ArbitrationContext
    ) -> float: ...

    async def estimate_latency(self, model: Model, context: ArbitrationContext) -> float: ...

    async def calculate_expected_cost(
        self, model: Model, context: ArbitrationContext
    ) -> float: ...

    def get_scoring_weights(self, context: ArbitrationContext) -> ScoringWeights: ...


class PerformancePredictor(Protocol):
    async def predict(
        self, candidates: list[Candidate], context: ArbitrationContext
    ) -> PerformancePrediction | None: ...

    async def estimate_cost(
        self, model: Model, context: ArbitrationContext
    ) -> CostEstimate: ...


class CircuitBreaker(Protocol):
    async def execute(self, operation: Callable[[], Awaitable[T]], key: str) -> T: ...

    def snapshot(self, key: str) -> dict[str, int | float | str]: ...


class ProviderAdapter(Protocol):
    provider: str

    async def send_completion(self, request: ChatRequest, model: Model) -> ModelResponse: ...

    def send_streaming_completion(
        self, request: ChatRequest, model: Model
    ) -> AsyncIterator[StreamChunk]: ...

    async def create_embedding(self, text: str, model: Model) -> list[float]: ...

    async def close(self) -> None: ...


class ProviderAdapterFactory(Protocol):
    def get_adapter(self, model: Model) -> ProviderAdapter: ...


class CostTracker(Protocol):
    async def record_usage(self, record: UsageRecord) -> None: ...

    async def get_budget_status(
        self,
        tenant_id: str,
        project_id: str | None = None,
        user_id: str | None = None,
    ) -> BudgetStatus: ...


class AuditSink(Protocol):
    def log(self, event: dict[str, Any]) -> None: ...
