from __future__ import annotations

import json
import logging
import time
from datetime import datetime, timezone
from typing import Any, AsyncIterator
from uuid import uuid4

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from open_llm_arbiter.audit import DecisionAuditLog
from open_llm_arbiter.circuit_breaker import CircuitBreakerConfig
from open_llm_arbiter.config import ArbiterConfig, load_arbiter_config
from open_llm_arbiter.domain import (
    ArbitrationContext,
    Capability,
    CapabilityRequirement,
    ChatMessage,
    ChatRequest,
    ModelResponse,
    StreamCompletion,
)
from open_llm_arbiter.engine import ArbitrationEngine, build_engine
from open_llm_arbiter.errors import (
    AllModelsFailedError,
    ArbitrationError,
    CircuitOpenError,
    ComplianceViolationError,
    InsufficientBudgetError,
    InvalidArbitrationContextError,
    InvalidRequestError,
    NoSuitableModelError,
    OperationCancelledError,
    ProviderRequestError,
    ProviderUnsupportedOperationError,
    RateLimitExceededError,
)
from open_llm_arbiter.optimization import RuleOptimizationScheduler
from open_llm_arbiter.providers import DefaultProviderAdapterFactory
from open_llm_arbiter.rate_limit_index import TenantIndexMaintainer
from open_llm_arbiter.rate_limiter import (
    RateLimiter,
    RateLimitQuota,
    RateLimitType,
    build_rate_limit_store,
)
from open_llm_arbiter.settings import Settings, get_settings

app = FastAPI(
    title="Open-LLM Arbiter",
    description="Model arbitration service with admission control and fallback.",
    version="0.1.0",
)

logger = logging.getLogger("uvicorn.error")

_STATUS_BY_CODE = {
    error.code: error.status_code
    for error in (
        InvalidArbitrationContextError,
        InvalidRequestError,
        NoSuitableModelError,
        ComplianceViolationError,
        RateLimitExceededError,
        InsufficientBudgetError,
        ProviderUnsupportedOperationError,
        ProviderRequestError,
        CircuitOpenError,
        AllModelsFailedError,
        OperationCancelledError,
    )
}


class CapabilityPayload(BaseModel):
    capability: Capability
    min_score: float = 0.0


class ContextPayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    tenant_id: str | None = None
    user_id: str | None = None
    project_id: str | None = None
    request_id: str | None = None
    task_type: str | None = None
    min_intelligence_score: float | None = None
    min_context_length: int | None = None
    max_cost: float | None = None
    max_latency_ms: float | None = None
    allowed_models: list[str] = Field(default_factory=list)
    blocked_models: list[str] = Field(default_factory=list)
    allowed_providers: list[str] = Field(default_factory=list)
    blocked_providers: list[str] = Field(default_factory=list)
    required_capabilities: list[CapabilityPayload] = Field(default_factory=list)
    required_region: str | None = None
    require_data_residency: bool = False
    require_encryption_at_rest: bool = False
    enable_fallback: bool = True
    max_fallback_attempts: int = 3
    selection_strategy: str | None = None
    estimated_input_tokens: int | None = None
    estimated_output_tokens: int | None = None
    estimated_cost: float | None = None

    @field_validator("required_capabilities", mode="before")
    @classmethod
    def _coerce_capabilities(cls, value: Any) -> Any:
        if not isinstance(value, list):
            return value
        return [{"capability": item} if isinstance(item, str) else item for item in value]

    def to_context(
        self,
        headers: Any,
        settings: Settings,
        pinned_model: str | None = None,
    ) -> ArbitrationContext:
        return ArbitrationContext(
            tenant_id=(self.tenant_id or headers.get(settings.default_tenant_header) or ""),
            user_id=self.user_id or headers.get(settings.default_user_header),
            project_id=self.project_id or headers.get(settings.default_project_header),
            request_id=self.request_id or headers.get("x-request-id"),
            task_type=self.task_type,
            min_intelligence_score=self.min_intelligence_score,
            min_context_length=self.min_context_length,
            max_cost=self.max_cost,
            max_latency_ms=self.max_latency_ms,
            allowed_models=frozenset(self.allowed_models),
            blocked_models=frozenset(self.blocked_models),
            allowed_providers=frozenset(self.allowed_providers),
            blocked_providers=frozenset(self.blocked_providers),
            required_capabilities=tuple(
                CapabilityRequirement(item.capability, item.min_score)
                for item in self.required_capabilities
            ),
            required_region=self.required_region,
            require_data_residency=self.require_data_residency,
            require_encryption_at_rest=self.require_encryption_at_rest,
            enable_fallback=self.enable_fallback,
            max_fallback_attempts=self.max_fallback_attempts,
            selection_strategy=self.selection_strategy,
            pinned_model=pinned_model,
            estimated_input_tokens=self.estimated_input_tokens,
            estimated_output_tokens=self.estimated_output_tokens,
            estimated_cost=self.estimated_cost,
        )


class MessagePayload(BaseModel):
    role: str
    content: str

    @field_validator("content", mode="before")
    @classmethod
    def _flatten_parts(cls, value: Any) -> Any:
        if isinstance(value, list):
            return " ".join(
                str(part.get("text", ""))
                for part in value
                if isinstance(part, dict) and part.get("type", "text") == "text"
            )
        return value


class ChatPayload(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str | None = None
    model: str | None = None
    messages: list[MessagePayload] = Field(default_factory=list)
    max_tokens: int = 1024
    temperature: float | None = None
    stream: bool = False
    arbitration: ContextPayload = Field(default_factory=ContextPayload)

    @property
    def pinned_model(self) -> str | None:
        if not self.model or self.model.strip().lower() == "auto":
            return None
        return self.model.strip()

    def to_request(self, request_id: str) -> ChatRequest:
        return ChatRequest(
            id=self.id or request_id,
            messages=tuple(
                ChatMessage(role=message.role, content=message.content)
                for message in self.messages
            ),
            max_tokens=self.max_tokens,
            temperature=self.temperature,
            stream=self.stream,
            model_id=self.pinned_model,
            extra=dict(self.model_extra or {}),
        )


class BatchPayload(BaseModel):
    requests: list[ChatPayload]
    arbitration: ContextPayload = Field(default_factory=ContextPayload)


class SelectPayload(BaseModel):
    contexts: list[ContextPayload] = Field(default_factory=list)


@app.on_event("startup")
async def startup() -> None:
    settings = get_settings()
    config: ArbiterConfig = load_arbiter_config(settings.arbiter_config_path)
    store = build_rate_limit_store(settings.redis_url, logger)
    audit_log = DecisionAuditLog(
        path=settings.arbiter_audit_log_path,
        enabled=settings.arbiter_audit_log_enabled,
    )
    adapters = DefaultProviderAdapterFactory(config.providers, logger=logger)
    engine = build_engine(
        config,
        rate_limit_store=store,
        breaker_config=CircuitBreakerConfig(
            enabled=settings.circuit_breaker_enabled,
            failure_threshold=max(1, settings.circuit_breaker_failure_threshold),
            recovery_timeout_seconds=max(
                1.0, settings.circuit_breaker_recovery_timeout_seconds
            ),
            half_open_max_requests=max(
                1, settings.circuit_breaker_half_open_max_requests
            ),
        ),
        adapters=adapters,
        audit=audit_log,
        logger=logger,
    )
    index_maintainer = TenantIndexMaintainer(
        store=store,
        logger=logger,
        enabled=settings.rate_limit_index_maintenance_enabled,
        interval_seconds=settings.rate_limit_index_interval_seconds,
        scan_page_size=config.rate_limits.scan_page_size,
    )
    await index_maintainer.start()
    rule_scheduler = RuleOptimizationScheduler(
        optimizer=engine.optimizer,
        tenants=settings.rule_optimization_tenants_list or config.optimization.tenants,
        logger=logger,
        enabled=settings.rule_optimization_enabled or config.optimization.enabled,
        interval_seconds=settings.rule_optimization_interval_seconds,
    )
    await rule_scheduler.start()

    app.state.settings = settings
    app.state.arbiter_config = config
    app.state.rate_limit_store = store
    app.state.audit_log = audit_log
    app.state.adapters = adapters
    app.state.engine = engine
    app.state.index_maintainer = index_maintainer
    app.state.rule_scheduler = rule_scheduler
    logger.info(
        (
            "startup complete config_path=%s providers=%d models=%d redis=%s "
            "audit_log_enabled=%s audit_log_path=%s"
        ),
        settings.arbiter_config_path,
        len(config.providers),
        len(config.models),
        bool(settings.redis_url),
        settings.arbiter_audit_log_enabled,
        settings.arbiter_audit_log_path,
    )


@app.on_event("shutdown")
async def shutdown() -> None:
    rule_scheduler: RuleOptimizationScheduler | None = getattr(
        app.state, "rule_scheduler", None
    )
    if rule_scheduler is not None:
        await rule_scheduler.stop()
    index_maintainer: TenantIndexMaintainer | None = getattr(
        app.state, "index_maintainer", None
    )
    if index_maintainer is not None:
        await index_maintainer.stop()
    adapters: DefaultProviderAdapterFactory | None = getattr(app.state, "adapters", None)
    if adapters is not None:
        await adapters.close()
    engine: ArbitrationEngine | None = getattr(app.state, "engine", None)
    if engine is not None:
        await engine.rate_limiter.store.close()
    audit_log: DecisionAuditLog | None = getattr(app.state, "audit_log", None)
    if audit_log is not None:
        audit_log.close()
    logger.info("shutdown complete")


def _engine() -> ArbitrationEngine:
    return app.state.engine


def _rate_limiter() -> RateLimiter:
    return _engine().rate_limiter


async def _json_body(request: Request) -> dict[str, Any]:
    try:
        payload = await request.json()
    except Exception as exc:
        raise HTTPException(
            status_code=400, detail=f"Expected JSON body: {exc}"
        ) from exc
    if not isinstance(payload, dict):
        raise HTTPException(
            status_code=400, detail="Expected a JSON object request body."
        )
    return payload


def _parse(model_type: type[BaseModel], payload: dict[str, Any]) -> Any:
    try:
        return model_type.model_validate(payload)
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


def _request_id(request: Request) -> str:
    return (
        request.headers.get("x-request-id")
        or request.headers.get("x-correlation-id")
        or uuid4().hex[:12]
    )


def _parse_time(value: str | None, name: str) -> datetime | None:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError as exc:
        raise HTTPException(
            status_code=400, detail=f"Invalid '{name}' timestamp: {value}"
        ) from exc
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _completion_body(response: ModelResponse) -> dict[str, Any]:
    return {
        "id": f"chatcmpl-{response.request_id}",
        "object": "chat.completion",
        "created": int(time.time()),
        "model": response.model_id,
        "choices": [
            {
                "index": 0,
                "message": {"role": "assistant", "content": response.content},
                "finish_reason": response.finish_reason or "stop",
            }
        ],
        "usage": {
            "prompt_tokens": response.input_tokens,
            "completion_tokens": response.output_tokens,
            "total_tokens": response.total_tokens,
        },
        "arbitration": {
            "decision_id": response.decision_id,
            "provider": response.provider,
            "cost": round(response.cost, 8),
            "latency_ms": round(response.latency_ms, 3),
            "fallback_used": response.fallback_used,
            "attempted_models": list(response.attempted_models),
        },
    }


@app.get("/health")
async def health() -> dict[str, str]:
    return {"status": "ok"}


@app.post("/v1/arbitration/select")
async def select_model(request: Request) -> dict[str, Any]:
    payload = await _json_body(request)
    settings: Settings = app.state.settings
    if "contexts" in payload:
        selection: SelectPayload = _parse(SelectPayload, payload)
        results = await _engine().select_models(
            [item.to_context(request.headers, settings) for item in selection.contexts]
        )
        return {"results": [result.as_dict() for result in results]}
    context_payload: ContextPayload = _parse(ContextPayload, payload)
    result = await _engine().select_model(
        context_payload.to_context(request.headers, settings)
    )
    return result.as_dict()


@app.post("/v1/chat/completions", response_model=None)
async def chat_completions(request: Request) -> dict[str, Any] | StreamingResponse | JSONResponse:
    payload = await _json_body(request)
    chat: ChatPayload = _parse(ChatPayload, payload)
    settings: Settings = app.state.settings
    chat_request = chat.to_request(_request_id(request))
    context = chat.arbitration.to_context(request.headers, settings, chat.pinned_model)

    if not chat.stream:
        response = await _engine().execute(chat_request, context)
        return _completion_body(response)

    async def on_complete(completion: StreamCompletion) -> None:
        logger.info(
            "stream_complete request_id=%s model=%s tokens=%d cost=%.6f completed=%s",
            completion.request_id,
            completion.model_id,
            completion.input_tokens + completion.output_tokens,
            completion.cost,
            completion.completed,
        )

    streaming = await _engine().execute_streaming(chat_request, context, on_complete)
    if streaming.failed:
        return JSONResponse(
            status_code=_STATUS_BY_CODE.get(streaming.error_code or "", 502),
            content={
                "error": {
                    "type": (streaming.error_code or "stream_error").lower(),
                    "code": streaming.error_code,
                    "message": streaming.error,
                    "details": {"model": streaming.model_id},
                }
            },
        )

    async def event_stream() -> AsyncIterator[str]:
        created = int(time.time())
        async for chunk in streaming.chunks:
            event = {
                "id": f"chatcmpl-{streaming.request_id}",
                "object": "chat.completion.chunk",
                "created": created,
                "model": streaming.model_id,
                "choices": [
                    {
                        "index": 0,
                        "delta": {"content": chunk.content},
                        "finish_reason": chunk.finish_reason,
                    }
                ],
            }
            yield f"data: {json.dumps(event, separators=(',', ':'))}\n\n"
        yield "data: [DONE]\n\n"

    return StreamingResponse(
        event_stream(),
        media_type="text/event-stream",
        headers={
            "X-Arbitration-Decision-Id": streaming.decision_id or "",
            "X-Arbitration-Model": streaming.model_id or "",
        },
    )


@app.post("/v1/chat/completions/batch")
async def chat_completions_batch(request: Request) -> dict[str, Any]:
    payload = await _json_body(request)
    batch_payload: BatchPayload = _parse(BatchPayload, payload)
    settings: Settings = app.state.settings
    base_id = _request_id(request)
    requests = [
        item.to_request(f"{base_id}-{index}")
        for index, item in enumerate(batch_payload.requests)
    ]
    context = batch_payload.arbitration.to_context(request.headers, settings)
    result = await _engine().execute_batch(requests, context)
    return {
        "batch_id": result.batch_id,
        "total_requests": result.total_requests,
        "success_rate": round(result.success_rate, 4),
        "total_cost": round(result.total_cost, 8),
        "average_cost": round(result.average_cost, 8),
        "total_processing_time_ms": round(result.total_processing_time_ms, 3),
        "model_usage": dict(result.model_usage),
        "responses": [_completion_body(item) for item in result.successful_responses],
        "failures": [
            {
                "request_id": item.request_id,
                "request_index": item.request_index,
                "error": item.error,
                "error_type": item.error_type,
                "error_code": item.error_code,
            }
            for item in result.failed_requests
        ],
    }


@app.get("/v1/arbitration/metrics")
async def arbitration_metrics() -> dict[str, Any]:
    return _engine().get_metrics()


@app.get("/v1/arbitration/health")
async def arbitration_health() -> JSONResponse:
    status = await _engine().get_health_status()
    return JSONResponse(status_code=200 if status["healthy"] else 503, content=status)


@app.get("/v1/arbitration/config")
async def arbitration_config() -> dict[str, Any]:
    return _engine().get_configuration()


@app.post("/v1/arbitration/rules/{tenant_id}/optimize")
async def optimize_rules(tenant_id: str) -> dict[str, Any]:
    rules = await _engine().optimize_rules(tenant_id)
    return {
        "tenant_id": tenant_id,
        "rules": [
            {
                "task_type": rule.task_type,
                "preferred_model_id": rule.preferred_model_id,
                "preference_weight": round(rule.preference_weight, 4),
                "success_rate": round(rule.success_rate, 4),
                "sample_count": rule.sample_count,
                "created_at": rule.created_at.isoformat(),
            }
            for rule in rules
        ],
    }


@app.get("/v1/rate-limits/{identifier}")
async def rate_limit_usage(identifier: str) -> dict[str, Any]:
    limiter = _rate_limiter()
    quota = await limiter.get_quota(identifier)
    return {
        "identifier": identifier,
        "usage": [
            (await limiter.get_usage(identifier, limit_type)).as_dict()
            for limit_type in RateLimitType
        ],
        "quota": quota.model_dump(mode="json"),
    }


@app.put("/v1/rate-limits/{identifier}/quota")
async def update_rate_limit_quota(identifier: str, request: Request) -> dict[str, Any]:
    payload = await _json_body(request)
    quota: RateLimitQuota = _parse(RateLimitQuota, {**payload, "identifier": identifier})
    limiter = _rate_limiter()
    await limiter.update_quota(identifier, quota)
    return (await limiter.get_quota(identifier)).model_dump(mode="json")


@app.delete("/v1/rate-limits/{identifier}")
async def reset_rate_limit(identifier: str, limit_type: str = "request") -> dict[str, Any]:
    try:
        parsed_type = RateLimitType(limit_type)
    except ValueError as exc:
        raise HTTPException(
            status_code=400, detail=f"Unknown limit type '{limit_type}'."
        ) from exc
    await _rate_limiter().reset(identifier, parsed_type)
    return {"identifier": identifier, "limit_type": parsed_type.value, "reset": True}


@app.get("/v1/tenants/{tenant_id}/rate-limits")
async def tenant_rate_limit_usage(tenant_id: str) -> dict[str, Any]:
    usages = await _rate_limiter().get_usages(tenant_id)
    return {"tenant_id": tenant_id, "usage": [usage.as_dict() for usage in usages]}


@app.get("/v1/tenants/{tenant_id}/rate-limit-violations")
async def rate_limit_violations(
    tenant_id: str, start: str | None = None, end: str | None = None
) -> dict[str, Any]:
    violations = await _rate_limiter().get_violations(
        tenant_id, _parse_time(start, "start"), _parse_time(end, "end")
    )
    return {
        "tenant_id": tenant_id,
        "violations": [item.model_dump(mode="json") for item in violations],
    }


@app.exception_handler(ArbitrationError)
async def arbitration_error_handler(_: Request, exc: ArbitrationError) -> JSONResponse:
    headers: dict[str, str] = {}
    if isinstance(exc, RateLimitExceededError):
        retry_after = max(0, int(exc.reset_at_epoch - time.time()) + 1)
        headers["Retry-After"] = str(retry_after)
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.as_dict()},
        headers=headers,
    )


@app.exception_handler(FileNotFoundError)
async def missing_file_handler(_: Request, exc: FileNotFoundError) -> JSONResponse:
    return JSONResponse(status_code=500, content={"error": str(exc)})


def run() -> None:
    import uvicorn

    uvicorn.run("open_llm_arbiter.main:app", host="0.0.0.0", port=8000, reload=False)
