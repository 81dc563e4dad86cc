from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, AsyncIterator


class Capability(str, Enum):
    CHAT = "chat"
    CODE_GENERATION = "code_generation"
    REASONING = "reasoning"
    SUMMARIZATION = "summarization"
    TRANSLATION = "translation"
    ANALYSIS = "analysis"
    VISION = "vision"
    FUNCTION_CALLING = "function_calling"
    STREAMING = "streaming"
    LONG_CONTEXT = "long_context"
    JSON_MODE = "json_mode"
    EMBEDDINGS = "embeddings"


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNSTABLE = "unstable"
    DOWN = "down"
    RATE_LIMITED = "rate_limited"
    MAINTENANCE = "maintenance"
    UNKNOWN = "unknown"


class TaskType(str, Enum):
    CHAT = "chat"
    SUMMARIZATION = "summarization"
    TRANSLATION = "translation"
    CODE_GENERATION = "code_generation"
    ANALYSIS = "analysis"


class SelectionStrategy(str, Enum):
    BALANCED = "balanced"
    COST_OPTIMIZED = "cost_optimized"
    PERFORMANCE_CRITICAL = "performance_critical"
    LATENCY_SENSITIVE = "latency_sensitive"
    RELIABILITY_FOCUSED = "reliability_focused"
    CAPABILITY_OPTIMIZED = "capability_optimized"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True, slots=True)
class CapabilityRequirement:
    capability: Capability
    min_score: float = 0.0


@dataclass(frozen=True, slots=True)
class ArbitrationContext:
    tenant_id: str
    user_id: str | None = None
    project_id: str | None = None
    request_id: str | None = None
    task_type: str | None = None
    min_intelligence_score: float | None = None
    min_context_length: int | None = None
    max_cost: float | None = None
    max_latency_ms: float | None = None
    allowed_models: frozenset[str] = frozenset()
    blocked_models: frozenset[str] = frozenset()
    allowed_providers: frozenset[str] = frozenset()
    blocked_providers: frozenset[str] = frozenset()
    required_capabilities: tuple[CapabilityRequirement, ...] = ()
    required_region: str | None = None
    require_data_residency: bool = False
    require_encryption_at_rest: bool = False
    enable_fallback: bool = True
    max_fallback_attempts: int = 3
    selection_strategy: str | None = None
    # Narrows eligibility to one model, on top of allowed_models.
    pinned_model: str | None = None
    estimated_input_tokens: int | None = None
    estimated_output_tokens: int | None = None
    estimated_cost: float | None = None

    @property
    def has_compliance_requirements(self) -> bool:
        return self.require_data_residency or self.require_encryption_at_rest


@dataclass(frozen=True, slots=True)
class Model:
    id: str
    provider: str
    name: str = ""
    provider_model_id: str = ""
    input_cost_per_million: float = 0.0
    output_cost_per_million: float = 0.0
    max_tokens: int = 0
    intelligence_score: float = 0.0
    capabilities: dict[Capability, float] = field(default_factory=dict)
    tier: str = "standard"
    supported_regions: frozenset[str] = frozenset()
    supports_encryption_at_rest: bool = False
    is_active: bool = True

    @property
    def upstream_model(self) -> str:
        return self.provider_model_id or self.id


@dataclass(slots=True)
class Candidate:
    model: Model
    performance_score: float
    cost_score: float
    compliance_score: float
    reliability_score: float
    final_score: float
    value_score: float
    estimated_latency_ms: float
    estimated_cost: float
    provider_health: HealthStatus = HealthStatus.UNKNOWN

    @property
    def model_id(self) -> str:
        return self.model.id

    def as_dict(self) -> dict[str, Any]:
        return {
            "model": self.model.id,
            "provider": self.model.provider,
            "performance_score": round(self.performance_score, 4),
            "cost_score": round(self.cost_score, 4),
            "compliance_score": round(self.compliance_score, 4),
            "reliability_score": round(self.reliability_score, 4),
            "final_score": round(self.final_score, 4),
            "value_score": round(self.value_score, 4),
            "estimated_latency_ms": round(self.estimated_latency_ms, 3),
            "estimated_cost": round(self.estimated_cost, 8),
            "provider_health": self.provider_health.value,
        }


@dataclass(frozen=True, slots=True)
class CostEstimate:
    model_id: str
    input_tokens: int
    output_tokens: int
    input_cost: float
    output_cost: float
    currency: str = "USD"

    @property
    def total_cost(self) -> float:
        return self.input_cost + self.output_cost


@dataclass(frozen=True, slots=True)
class PerformancePrediction:
    model_id: str
    estimated_latency_ms: float
    success_probability: float
    confidence: float


@dataclass(frozen=True, slots=True)
class ArbitrationResult:
    decision_id: str
    selected: Candidate
    fallbacks: tuple[Candidate, ...]
    candidates: tuple[Candidate, ...]
    cost_estimate: CostEstimate
    performance_prediction: PerformancePrediction | None
    selection_strategy: str
    decision_factors: dict[str, Any]
    excluded_models: tuple[str, ...] = ()
    constraints_relaxed: bool = False
    selection_time_ms: float = 0.0
    timestamp: datetime = field(default_factory=utc_now)

    @property
    def selected_model(self) -> Model:
        return self.selected.model

    def as_dict(self) -> dict[str, Any]:
        return {
            "decision_id": self.decision_id,
            "selected_model": self.selected.model.id,
            "provider": self.selected.model.provider,
            "selection_strategy": self.selection_strategy,
            "fallback_models": [item.model.id for item in self.fallbacks],
            "candidates": [item.as_dict() for item in self.candidates],
            "excluded_models": list(self.excluded_models),
            "constraints_relaxed": self.constraints_relaxed,
            "estimated_cost": round(self.cost_estimate.total_cost, 8),
            "estimated_latency_ms": (
                round(self.performance_prediction.estimated_latency_ms, 3)
                if self.performance_prediction is not None
                else None
            ),
            "decision_factors": dict(self.decision_factors),
            "selection_time_ms": round(self.selection_time_ms, 3),
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass(frozen=True, slots=True)
class ArbitrationDecision:
    decision_id: str
    tenant_id: str
    user_id: str | None
    project_id: str | None
    task_type: str | None
    selected_model_id: str
    selection_strategy: str
    final_score: float
    estimated_cost: float
    candidate_count: int
    success: bool = True
    timestamp: datetime = field(default_factory=utc_now)


@dataclass(frozen=True, slots=True)
class ArbitrationRule:
    tenant_id: str
    task_type: str
    preferred_model_id: str
    preference_weight: float
    success_rate: float
    sample_count: int
    created_at: datetime = field(default_factory=utc_now)


@dataclass(frozen=True, slots=True)
class ChatMessage:
    role: str
    content: str


@dataclass(frozen=True, slots=True)
class ChatRequest:
    id: str
    messages: tuple[ChatMessage, ...]
    max_tokens: int = 1024
    temperature: float | None = None
    stream: bool = False
    model_id: str | None = None
    extra: dict[str, Any] = field(default_factory=dict)

    def text(self) -> str:
        return " ".join(message.content for message in self.messages)


@dataclass(slots=True)
class ModelResponse:
    request_id: str
    model_id: str
    provider: str
    content: str
    input_tokens: int = 0
    output_tokens: int = 0
    cost: float = 0.0
    latency_ms: float = 0.0
    finish_reason: str | None = None
    decision_id: str | None = None
    fallback_used: bool = False
    attempted_models: list[str] = field(default_factory=list)

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


@dataclass(frozen=True, slots=True)
class StreamChunk:
    content: str
    finish_reason: str | None = None
    input_tokens: int | None = None
    output_tokens: int | None = None


@dataclass(frozen=True, slots=True)
class StreamCompletion:
    request_id: str
    model_id: str
    provider: str
    input_tokens: int
    output_tokens: int
    cost: float
    latency_ms: float
    completed: bool


@dataclass(slots=True)
class StreamingResponse:
    request_id: str
    model_id: str | None
    provider: str | None
    chunks: AsyncIterator[StreamChunk]
    decision_id: str | None = None
    error: str | None = None
    error_code: str | None = None

    @property
    def failed(self) -> bool:
        return self.error is not None


@dataclass(frozen=True, slots=True)
class FailedRequest:
    request_id: str
    request_index: int
    error: str
    error_type: str
    batch_id: str
    error_code: str = "BATCH_EXECUTION_ERROR"


@dataclass(slots=True)
class BatchExecutionResult:
    batch_id: str
    successful_responses: list[ModelResponse] = field(default_factory=list)
    failed_requests: list[FailedRequest] = field(default_factory=list)
    total_cost: float = 0.0
    total_processing_time_ms: float = 0.0
    model_usage: dict[str, int] = field(default_factory=dict)

    @property
    def total_requests(self) -> int:
        return len(self.successful_responses) + len(self.failed_requests)

    @property
    def success_rate(self) -> float:
        total = self.total_requests
        if total == 0:
            return 0.0
        return len(self.successful_responses) / total

    @property
    def average_cost(self) -> float:
        if not self.successful_responses:
            return 0.0
        return self.total_cost / len(self.successful_responses)


@dataclass(frozen=True, slots=True)
class ComplianceResult:
    is_compliant: bool
    violations: tuple[str, ...] = ()


@dataclass(frozen=True, slots=True)
class UserConstraints:
    user_id: str
    blocked_models: frozenset[str] = frozenset()


@dataclass(frozen=True, slots=True)
class BudgetStatus:
    tenant_id: str
    limit: float | None
    spent: float
    warning_threshold: float = 0.8

    @property
    def remaining(self) -> float | None:
        if self.limit is None:
            return None
        return max(0.0, self.limit - self.spent)

    @property
    def utilization(self) -> float:
        if not self.limit:
            return 0.0
        return self.spent / self.limit

    def can_make_request(self, estimated_cost: float) -> bool:
        if self.limit is None:
            return True
        return self.spent + max(0.0, estimated_cost) <= self.limit

    def is_near_limit(self) -> bool:
        return self.limit is not None and self.utilization >= self.warning_threshold


@dataclass(frozen=True, slots=True)
class UsageRecord:
    tenant_id: str
    user_id: str | None
    project_id: str | None
    model_id: str
    provider: str
    request_id: str
    input_tokens: int
    output_tokens: int
    cost: float
    timestamp: datetime = field(default_factory=utc_now)


@dataclass(frozen=True, slots=True)
class FailureRecord:
    request_id: str
    tenant_id: str
    model_id: str | None
    provider: str | None
    error_type: str
    error_message: str
    elapsed_ms: float
    timestamp: datetime = field(default_factory=utc_now)


@dataclass(frozen=True, slots=True)
class ModelPerformanceStats:
    model_id: str
    samples: int
    average_latency_ms: float
    success_rate: float
    tokens_per_second: float | None = None
