from __future__ import annotations

from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator, model_validator

from open_llm_arbiter.domain import Capability, HealthStatus, Model
from open_llm_arbiter.utils.yaml_utils import load_yaml_dict

DEFAULT_TASK_TYPE = "default"


class ScoringWeights(BaseModel):
    performance: float = 0.4
    cost: float = 0.3
    compliance: float = 0.2
    reliability: float = 0.1

    @model_validator(mode="after")
    def _check_sum(self) -> ScoringWeights:
        values = (self.performance, self.cost, self.compliance, self.reliability)
        if any(value < 0 for value in values):
            raise ValueError("Scoring weights must be non-negative.")
        if abs(sum(values) - 1.0) > 1e-6:
            raise ValueError(
                f"Scoring weights must sum to 1.0 (got {round(sum(values), 6)})."
            )
        return self

    def as_tuple(self) -> tuple[float, float, float, float]:
        return (self.performance, self.cost, self.compliance, self.reliability)


def _default_weight_profiles() -> dict[str, ScoringWeights]:
    return {
        DEFAULT_TASK_TYPE: ScoringWeights(),
        "cost_sensitive": ScoringWeights(
            performance=0.3, cost=0.5, compliance=0.1, reliability=0.1
        ),
        "performance_critical": ScoringWeights(
            performance=0.6, cost=0.2, compliance=0.1, reliability=0.1
        ),
        "latency_sensitive": ScoringWeights(
            performance=0.5, cost=0.2, compliance=0.1, reliability=0.2
        ),
        "reliability_focused": ScoringWeights(
            performance=0.2, cost=0.2, compliance=0.2, reliability=0.4
        ),
        "compliance_sensitive": ScoringWeights(
            performance=0.2, cost=0.2, compliance=0.5, reliability=0.1
        ),
    }


def _default_token_estimates() -> dict[str, tuple[int, int]]:
    return {
        "summarization": (1000, 200),
        "translation": (500, 500),
        "code_generation": (200, 1000),
        "analysis": (1500, 500),
        "chat": (300, 300),
        DEFAULT_TASK_TYPE: (500, 500),
    }


class ScoringConfig(BaseModel):
    weight_profiles: dict[str, ScoringWeights] = Field(
        default_factory=_default_weight_profiles
    )
    token_estimates: dict[str, tuple[int, int]] = Field(
        default_factory=_default_token_estimates
    )
    default_performance_score: float = 50.0
    default_reliability_score: float = 95.0
    default_latency_ms: float = 1000.0
    max_expected_cost: float = 10.0
    residency_penalty: float = 40.0
    encryption_penalty: float = 30.0
    recent_window_days: int = 7

    @field_validator("weight_profiles", mode="after")
    @classmethod
    def _require_default_profile(
        cls, value: dict[str, ScoringWeights]
    ) -> dict[str, ScoringWeights]:
        normalized = {key.strip().lower(): weights for key, weights in value.items()}
        normalized.setdefault(DEFAULT_TASK_TYPE, ScoringWeights())
        return normalized

    def weights_for(self, task_type: str | None) -> ScoringWeights:
        key = (task_type or "").strip().lower()
        return self.weight_profiles.get(key) or self.weight_profiles[DEFAULT_TASK_TYPE]

    def tokens_for(self, task_type: str | None) -> tuple[int, int]:
        key = (task_type or "").strip().lower()
        return self.token_estimates.get(key) or self.token_estimates.get(
            DEFAULT_TASK_TYPE, (500, 500)
        )


class RankingConfig(BaseModel):
    min_final_score: float = 50.0
    relaxed_top_n: int = 3
    max_fallbacks: int = 3
    value_cost_floor: float = 0.001


class RateLimitDefaults(BaseModel):
    requests_per_window: int = 100
    tokens_per_window: int = 1000
    window_seconds: int = 60
    state_ttl_grace_seconds: int = 300
    violation_history_limit: int = 1000
    violation_ttl_seconds: int = 30 * 24 * 3600
    index_cleanup_interval_seconds: float = 3600.0
    scan_page_size: int = 1000


class ExecutionConfig(BaseModel):
    batch_max_concurrency: int = 10
    selection_max_concurrency: int = 5
    chars_per_token: int = 4
    default_max_fallback_attempts: int = 3
    budget_warning_threshold: float = 0.8


class OptimizationConfig(BaseModel):
    enabled: bool = False
    lookback_days: int = 30
    min_samples: int = 5
    top_models_per_task: int = 3
    weight_step: float = 0.2
    interval_seconds: float = 86400.0
    tenants: list[str] = Field(default_factory=list)


class ProviderConfig(BaseModel):
    name: str
    kind: Literal["openai_compatible"] = "openai_compatible"
    base_url: str
    api_key: str | None = None
    api_key_env: str | None = None
    timeout_seconds: float = 60.0
    connect_timeout_seconds: float = 5.0
    health: HealthStatus = HealthStatus.HEALTHY
    supports_streaming: bool = True
    supports_embeddings: bool = False
    headers: dict[str, str] = Field(default_factory=dict)

    @field_validator("name")
    @classmethod
    def _normalize_name(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("Provider name must not be empty.")
        return normalized


class ModelConfig(BaseModel):
    id: str
    provider: str
    name: str = ""
    provider_model_id: str = ""
    input_cost_per_million: float = 0.0
    output_cost_per_million: float = 0.0
    max_tokens: int = 8192
    intelligence_score: float = Field(default=50.0, gt=0)
    capabilities: dict[Capability, float] = Field(default_factory=dict)
    tier: str = "standard"
    supported_regions: list[str] = Field(default_factory=list)
    supports_encryption_at_rest: bool = False
    is_active: bool = True

    @field_validator("capabilities", mode="before")
    @classmethod
    def _coerce_capabilities(cls, value: Any) -> Any:
        if value is None:
            return {}
        if isinstance(value, list):
            # A bare list declares full support for each capability.
            return {str(item).strip().lower(): 100.0 for item in value}
        if isinstance(value, dict):
            return {str(key).strip().lower(): score for key, score in value.items()}
        return value

    def to_model(self) -> Model:
        return Model(
            id=self.id,
            provider=self.provider,
            name=self.name or self.id,
            provider_model_id=self.provider_model_id or self.id,
            input_cost_per_million=self.input_cost_per_million,
            output_cost_per_million=self.output_cost_per_million,
            max_tokens=self.max_tokens,
            intelligence_score=self.intelligence_score,
            capabilities=dict(self.capabilities),
            tier=self.tier,
            supported_regions=frozenset(
                region.strip().lower() for region in self.supported_regions
            ),
            supports_encryption_at_rest=self.supports_encryption_at_rest,
            is_active=self.is_active,
        )


class CompliancePolicy(BaseModel):
    blocked_providers: list[str] = Field(default_factory=list)
    blocked_tiers: list[str] = Field(default_factory=list)
    enforce_data_residency: bool = True
    enforce_encryption_at_rest: bool = True
    sensitive_data_patterns: list[str] = Field(default_factory=list)


class BudgetConfig(BaseModel):
    limit: float | None = None
    warning_threshold: float = 0.8


class UserConstraintConfig(BaseModel):
    blocked_models: list[str] = Field(default_factory=list)


class ArbiterConfig(BaseModel):
    scoring: ScoringConfig = Field(default_factory=ScoringConfig)
    ranking: RankingConfig = Field(default_factory=RankingConfig)
    rate_limits: RateLimitDefaults = Field(default_factory=RateLimitDefaults)
    execution: ExecutionConfig = Field(default_factory=ExecutionConfig)
    optimization: OptimizationConfig = Field(default_factory=OptimizationConfig)
    providers: list[ProviderConfig] = Field(default_factory=list)
    models: list[ModelConfig] = Field(default_factory=list)
    compliance: dict[str, CompliancePolicy] = Field(default_factory=dict)
    budgets: dict[str, BudgetConfig] = Field(default_factory=dict)
    users: dict[str, UserConstraintConfig] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _check_references(self) -> ArbiterConfig:
        provider_names = {provider.name for provider in self.providers}
        seen: set[str] = set()
        for model in self.models:
            if model.id in seen:
                raise ValueError(f"Duplicate model id '{model.id}'.")
            seen.add(model.id)
            if provider_names and model.provider not in provider_names:
                raise ValueError(
                    f"Model '{model.id}' references unknown provider "
                    f"'{model.provider}'."
                )
        return self

    def provider(self, name: str) -> ProviderConfig | None:
        for provider in self.providers:
            if provider.name == name:
                return provider
        return None

    def catalog_models(self) -> list[Model]:
        return [model.to_model() for model in self.models]

    def compliance_policy(self, tenant_id: str) -> CompliancePolicy:
        return (
            self.compliance.get(tenant_id)
            or self.compliance.get("*")
            or CompliancePolicy()
        )


def load_arbiter_config(config_path: str | Path) -> ArbiterConfig:
    path = Path(config_path)
    if not path.exists():
        raise FileNotFoundError(
            f"Arbiter config not found at '{config_path}'. "
            "Create it or set ARBITER_CONFIG_PATH."
        )
    raw = load_yaml_dict(path)
    return ArbiterConfig.model_validate(raw)
