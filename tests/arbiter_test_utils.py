from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Any, AsyncIterator

from open_llm_arbiter.config import ArbiterConfig, load_arbiter_config
from open_llm_arbiter.domain import (
    ArbitrationContext,
    Candidate,
    Capability,
    ChatMessage,
    ChatRequest,
    HealthStatus,
    Model,
    ModelResponse,
    StreamChunk,
)
from open_llm_arbiter.engine import ArbitrationEngine, build_engine
from open_llm_arbiter.errors import ProviderRequestError
from open_llm_arbiter.rate_limiter import InMemoryRateLimitStore, RateLimitStore

TEST_ARBITER_CONFIG_PATH = (
    Path(__file__).resolve().parent / "fixtures" / "arbiter.profile.yaml"
)


def load_test_config() -> ArbiterConfig:
    return load_arbiter_config(TEST_ARBITER_CONFIG_PATH)


def make_model(
    model_id: str,
    *,
    provider: str = "alpha",
    intelligence: float = 80.0,
    input_cost: float = 1.0,
    output_cost: float = 2.0,
    max_tokens: int = 32000,
    capabilities: dict[Capability, float] | None = None,
    **overrides: Any,
) -> Model:
    return Model(
        id=model_id,
        provider=provider,
        name=model_id,
        provider_model_id=overrides.pop("provider_model_id", model_id),
        input_cost_per_million=input_cost,
        output_cost_per_million=output_cost,
        max_tokens=max_tokens,
        intelligence_score=intelligence,
        capabilities=capabilities
        if capabilities is not None
        else {Capability.CHAT: 100.0},
        **overrides,
    )


def make_context(**overrides: Any) -> ArbitrationContext:
    values: dict[str, Any] = {"tenant_id": "tenant-a", "user_id": "user-1"}
    values.update(overrides)
    return ArbitrationContext(**values)


def make_candidate(
    model_id: str,
    final: float,
    *,
    value: float = 1.0,
    cost: float = 0.01,
    latency: float = 500.0,
    performance: float = 50.0,
    reliability: float = 95.0,
) -> Candidate:
    return Candidate(
        model=make_model(model_id),
        performance_score=performance,
        cost_score=100.0,
        compliance_score=100.0,
        reliability_score=reliability,
        final_score=final,
        value_score=value,
        estimated_latency_ms=latency,
        estimated_cost=cost,
        provider_health=HealthStatus.HEALTHY,
    )


def make_request(
    request_id: str = "req-1",
    content: str = "Hello there",
    max_tokens: int = 64,
) -> ChatRequest:
    return ChatRequest(
        id=request_id,
        messages=(ChatMessage(role="user", content=content),),
        max_tokens=max_tokens,
    )


class ScriptedAdapter:
    """Adapter whose per-model outcomes are scripted by the test.

    An outcome is either response text or an exception instance to raise.
    Models without a script answer with ``"ok from <model>"``.
    """

    def __init__(
        self,
        provider: str,
        outcomes: dict[str, list[Any]] | None = None,
        stream_chunks: dict[str, list[Any]] | None = None,
        delay_seconds: float = 0.0,
    ) -> None:
        self.provider = provider
        self._outcomes = {key: list(value) for key, value in (outcomes or {}).items()}
        self._stream_chunks = dict(stream_chunks or {})
        self._delay_seconds = delay_seconds
        self.calls: list[str] = []
        self.in_flight = 0
        self.max_in_flight = 0
        self.closed = False

    async def send_completion(self, request: ChatRequest, model: Model) -> ModelResponse:
        self.calls.append(model.id)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self._delay_seconds:
                await asyncio.sleep(self._delay_seconds)
            script = self._outcomes.get(model.id)
            outcome: Any = script.pop(0) if script else f"ok from {model.id}"
            if isinstance(outcome, BaseException):
                raise outcome
            return ModelResponse(
                request_id=request.id,
                model_id=model.id,
                provider=self.provider,
                content=str(outcome),
                input_tokens=10,
                output_tokens=5,
                cost=0.001,
                latency_ms=12.0,
                finish_reason="stop",
            )
        finally:
            self.in_flight -= 1

    async def send_streaming_completion(
        self, request: ChatRequest, model: Model
    ) -> AsyncIterator[StreamChunk]:
        self.calls.append(model.id)
        for item in self._stream_chunks.get(model.id, ["Hel", "lo"]):
            if isinstance(item, BaseException):
                raise item
            if isinstance(item, StreamChunk):
                yield item
            else:
                yield StreamChunk(content=str(item))

    async def create_embedding(self, text: str, model: Model) -> list[float]:
        return [0.0]

    async def close(self) -> None:
        self.closed = True


class StaticAdapterFactory:
    def __init__(self, *adapters: ScriptedAdapter) -> None:
        self._adapters = {adapter.provider: adapter for adapter in adapters}

    def get_adapter(self, model: Model) -> ScriptedAdapter:
        return self._adapters[model.provider]


def provider_failure(provider: str = "alpha", status: int = 500) -> ProviderRequestError:
    return ProviderRequestError(provider, f"HTTP {status}", status=status)


def build_test_engine(
    *,
    config: ArbiterConfig | None = None,
    adapters: Any | None = None,
    store: RateLimitStore | None = None,
) -> ArbitrationEngine:
    return build_engine(
        config or load_test_config(),
        rate_limit_store=store or InMemoryRateLimitStore(),
        adapters=adapters
        or StaticAdapterFactory(ScriptedAdapter("alpha"), ScriptedAdapter("beta")),
    )
