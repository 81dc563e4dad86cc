from __future__ import annotations

import asyncio
import dataclasses
import logging
import math
import time
import uuid
from collections import Counter
from typing import AsyncIterator, Awaitable, Callable

from open_llm_arbiter.audit import DecisionAuditLog
from open_llm_arbiter.cancellation import CancellationToken, raise_if_cancelled
from open_llm_arbiter.config import ExecutionConfig
from open_llm_arbiter.domain import (
    ArbitrationContext,
    ArbitrationResult,
    BatchExecutionResult,
    ChatRequest,
    FailedRequest,
    FailureRecord,
    Model,
    ModelResponse,
    StreamChunk,
    StreamCompletion,
    StreamingResponse,
    TaskType,
    UsageRecord,
)
from open_llm_arbiter.errors import (
    NON_RECOVERABLE_ERRORS,
    AllModelsFailedError,
    ArbitrationError,
    ComplianceViolationError,
    InvalidRequestError,
)
from open_llm_arbiter.interfaces import (
    CircuitBreaker,
    ComplianceChecker,
    CostTracker,
    ModelCatalog,
    ModelSelector,
    ProviderAdapterFactory,
)
from open_llm_arbiter.metrics import EngineMetrics
from open_llm_arbiter.rate_limiter import RateLimiter, RateLimitType
from open_llm_arbiter.scoring import token_cost

StreamCompletionCallback = Callable[[StreamCompletion], Awaitable[None]]

# Checked in order; the first keyword found decides the task type.
TASK_KEYWORDS: tuple[tuple[tuple[str, ...], TaskType], ...] = (
    (("summarize", "summarise", "summary"), TaskType.SUMMARIZATION),
    (("translate", "translation"), TaskType.TRANSLATION),
    (("code", "program", "function"), TaskType.CODE_GENERATION),
    (("analyze", "analyse", "explain"), TaskType.ANALYSIS),
)


def infer_task_type(text: str) -> str:
    lowered = text.lower()
    for keywords, task_type in TASK_KEYWORDS:
        if any(keyword in lowered for keyword in keywords):
            return task_type.value
    return TaskType.CHAT.value


def validate_request(request: ChatRequest) -> None:
    if not request.id or not request.id.strip():
        raise InvalidRequestError("Request id is required.")
    if not request.messages:
        raise InvalidRequestError(
            "Request must contain at least one message.", {"request_id": request.id}
        )
    if request.max_tokens <= 0:
        raise InvalidRequestError(
            "max_tokens must be positive.",
            {"request_id": request.id, "max_tokens": request.max_tokens},
        )


def _error_code(exc: BaseException) -> str:
    if isinstance(exc, ArbitrationError):
        return exc.code
    return type(exc).__name__


async def _empty_stream() -> AsyncIterator[StreamChunk]:
    return
    yield  # pragma: no cover


class ExecutionOrchestrator:
    """Runs requests against the arbitrated model with fallback.

    Selection is delegated to ``selector`` (normally the engine) so that
    admission control and decision recording happen in one place.
    """

    def __init__(
        self,
        *,
        selector: ModelSelector,
        compliance: ComplianceChecker,
        adapters: ProviderAdapterFactory,
        breaker: CircuitBreaker,
        catalog: ModelCatalog,
        cost_tracker: CostTracker | None = None,
        rate_limiter: RateLimiter | None = None,
        audit: DecisionAuditLog | None = None,
        metrics: EngineMetrics | None = None,
        config: ExecutionConfig | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self._selector = selector
        self._compliance = compliance
        self._adapters = adapters
        self._breaker = breaker
        self._catalog = catalog
        self._cost_tracker = cost_tracker
        self._rate_limiter = rate_limiter
        self._audit = audit
        self._metrics = metrics
        self._config = config or ExecutionConfig()
        self._logger = logger or logging.getLogger("uvicorn.error")

    def enrich_context(
        self, request: ChatRequest, context: ArbitrationContext
    ) -> ArbitrationContext:
        text = request.text()
        changes: dict[str, object] = {"request_id": context.request_id or request.id}
        if context.estimated_input_tokens is None:
            changes["estimated_input_tokens"] = math.ceil(
                len(text) / max(1, self._config.chars_per_token)
            )
        if context.estimated_output_tokens is None:
            changes["estimated_output_tokens"] = request.max_tokens
        if not context.task_type:
            changes["task_type"] = infer_task_type(text)
        return dataclasses.replace(context, **changes)

    async def _prepare(
        self,
        request: ChatRequest,
        context: ArbitrationContext,
        cancellation: CancellationToken | None,
    ) -> tuple[ArbitrationContext, ArbitrationResult]:
        validate_request(request)
        raise_if_cancelled(cancellation, "validation")
        context = self.enrich_context(request, context)
        result = await self._selector.select_model(context, cancellation)
        raise_if_cancelled(cancellation, "selection")
        compliance = await self._compliance.check_request_compliance(request, context)
        if not compliance.is_compliant:
            self._logger.warning(
                "request_compliance_failed request_id=%s tenant=%s violations=%s",
                request.id,
                context.tenant_id,
                "; ".join(compliance.violations),
            )
            raise ComplianceViolationError(compliance.violations)
        raise_if_cancelled(cancellation, "compliance")
        return context, result

    async def execute(
        self,
        request: ChatRequest,
        context: ArbitrationContext,
        cancellation: CancellationToken | None = None,
    ) -> ModelResponse:
        context, result = await self._prepare(request, context, cancellation)
        primary = result.selected.model
        attempted = [primary.id]
        try:
            return await self._attempt(
                request, context, primary, result, attempted, cancellation
            )
        except NON_RECOVERABLE_ERRORS:
            raise
        except Exception as exc:
            original = exc

        fallbacks = list(result.fallbacks[: max(0, context.max_fallback_attempts)])
        if not context.enable_fallback or not fallbacks:
            if self._metrics is not None:
                self._metrics.record_execution_failure(_error_code(original))
            raise original

        fallback_errors: dict[str, str] = {}
        for candidate in fallbacks:
            raise_if_cancelled(cancellation, "fallback")
            attempted.append(candidate.model.id)
            self._logger.info(
                "execution_fallback request_id=%s from=%s to=%s",
                request.id,
                attempted[-2],
                candidate.model.id,
            )
            try:
                return await self._attempt(
                    request, context, candidate.model, result, attempted, cancellation
                )
            except NON_RECOVERABLE_ERRORS:
                raise
            except Exception as exc:
                fallback_errors[candidate.model.id] = str(exc)

        self._logger.error(
            "execution_all_models_failed request_id=%s attempted=%s",
            request.id,
            ",".join(attempted),
        )
        if self._metrics is not None:
            self._metrics.record_execution_failure(AllModelsFailedError.code)
        raise AllModelsFailedError(attempted, original, fallback_errors) from original

    async def _attempt(
        self,
        request: ChatRequest,
        context: ArbitrationContext,
        model: Model,
        result: ArbitrationResult,
        attempted: list[str],
        cancellation: CancellationToken | None,
    ) -> ModelResponse:
        adapter = self._adapters.get_adapter(model)
        started = time.perf_counter()
        try:
            response = await self._breaker.execute(
                lambda: adapter.send_completion(request, model), model.provider
            )
        except Exception as exc:
            elapsed_ms = (time.perf_counter() - started) * 1000.0
            await self._record_failure(request, context, model, exc, elapsed_ms)
            raise
        raise_if_cancelled(cancellation, "execution")

        response.decision_id = result.decision_id
        response.fallback_used = model.id != result.selected.model.id
        response.attempted_models = list(attempted)
        await self._record_success(response, context, model)
        return response

    async def _record_success(
        self, response: ModelResponse, context: ArbitrationContext, model: Model
    ) -> None:
        await self._catalog.record_performance(
            model.id, response.latency_ms, True, response.output_tokens
        )
        if self._cost_tracker is not None:
            await self._cost_tracker.record_usage(
                UsageRecord(
                    tenant_id=context.tenant_id,
                    user_id=context.user_id,
                    project_id=context.project_id,
                    model_id=model.id,
                    provider=model.provider,
                    request_id=response.request_id,
                    input_tokens=response.input_tokens,
                    output_tokens=response.output_tokens,
                    cost=response.cost,
                )
            )
            await self._warn_if_near_budget(context)
        if self._rate_limiter is not None and response.total_tokens > 0:
            await self._rate_limiter.record(
                self._rate_limiter.identifier_for(context),
                RateLimitType.TOKEN,
                response.total_tokens,
            )
        if self._audit is not None:
            self._audit.record_execution(response, context)
        if self._metrics is not None:
            self._metrics.record_execution(response.cost, response.fallback_used)
        self._logger.info(
            "execution_succeeded request_id=%s model=%s tokens=%d cost=%.6f latency_ms=%.1f",
            response.request_id,
            model.id,
            response.total_tokens,
            response.cost,
            response.latency_ms,
        )

    async def _record_failure(
        self,
        request: ChatRequest,
        context: ArbitrationContext,
        model: Model,
        exc: BaseException,
        elapsed_ms: float,
    ) -> None:
        failure = FailureRecord(
            request_id=request.id,
            tenant_id=context.tenant_id,
            model_id=model.id,
            provider=model.provider,
            error_type=_error_code(exc),
            error_message=str(exc),
            elapsed_ms=elapsed_ms,
        )
        await self._catalog.record_performance(model.id, elapsed_ms, False)
        await self._catalog.record_failure(failure)
        if self._audit is not None:
            self._audit.record_failure(failure)
        self._logger.warning(
            "execution_failed request_id=%s model=%s provider=%s error=%s",
            request.id,
            model.id,
            model.provider,
            exc,
        )

    async def _warn_if_near_budget(self, context: ArbitrationContext) -> None:
        if self._cost_tracker is None:
            return
        try:
            status = await self._cost_tracker.get_budget_status(
                context.tenant_id, context.project_id, context.user_id
            )
        except Exception as exc:
            self._logger.warning(
                "budget_status_unavailable tenant=%s error=%s", context.tenant_id, exc
            )
            return
        if status.is_near_limit():
            self._logger.warning(
                "budget_near_limit tenant=%s spent=%.6f limit=%.6f utilization=%.3f",
                context.tenant_id,
                status.spent,
                status.limit,
                status.utilization,
            )

    async def execute_streaming(
        self,
        request: ChatRequest,
        context: ArbitrationContext,
        on_complete: StreamCompletionCallback | None = None,
        cancellation: CancellationToken | None = None,
    ) -> StreamingResponse:
        validate_request(request)
        model: Model | None = None
        decision_id: str | None = None
        started = time.perf_counter()
        try:
            context, result = await self._prepare(request, context, cancellation)
            model = result.selected.model
            decision_id = result.decision_id
            adapter = self._adapters.get_adapter(model)
            stream = adapter.send_streaming_completion(request, model)
            started = time.perf_counter()
            try:
                first: StreamChunk | None = await stream.__anext__()
            except StopAsyncIteration:
                first = None
            raise_if_cancelled(cancellation, "streaming")
        except Exception as exc:
            if model is not None:
                elapsed_ms = (time.perf_counter() - started) * 1000.0
                await self._record_failure(request, context, model, exc, elapsed_ms)
            self._logger.warning(
                "streaming_failed request_id=%s model=%s error=%s",
                request.id,
                model.id if model is not None else None,
                exc,
            )
            return StreamingResponse(
                request_id=request.id,
                model_id=model.id if model is not None else None,
                provider=model.provider if model is not None else None,
                chunks=_empty_stream(),
                decision_id=decision_id,
                error=str(exc),
                error_code=_error_code(exc),
            )

        return StreamingResponse(
            request_id=request.id,
            model_id=model.id,
            provider=model.provider,
            chunks=self._relay(
                request, context, model, stream, first, started, on_complete, cancellation
            ),
            decision_id=decision_id,
        )

    async def _relay(
        self,
        request: ChatRequest,
        context: ArbitrationContext,
        model: Model,
        stream: AsyncIterator[StreamChunk],
        first: StreamChunk | None,
        started: float,
        on_complete: StreamCompletionCallback | None,
        cancellation: CancellationToken | None,
    ) -> AsyncIterator[StreamChunk]:
        reported_input: int | None = None
        reported_output: int | None = None
        streamed_chars = 0
        completed = False
        try:
            chunk = first
            while chunk is not None:
                if chunk.input_tokens is not None:
                    reported_input = chunk.input_tokens
                if chunk.output_tokens is not None:
                    reported_output = chunk.output_tokens
                streamed_chars += len(chunk.content)
                yield chunk
                raise_if_cancelled(cancellation, "streaming")
                try:
                    chunk = await stream.__anext__()
                except StopAsyncIteration:
                    chunk = None
            completed = True
        finally:
            latency_ms = (time.perf_counter() - started) * 1000.0
            input_tokens = (
                reported_input
                if reported_input is not None
                else context.estimated_input_tokens or 0
            )
            output_tokens = (
                reported_output
                if reported_output is not None
                else math.ceil(streamed_chars / max(1, self._config.chars_per_token))
            )
            completion = StreamCompletion(
                request_id=request.id,
                model_id=model.id,
                provider=model.provider,
                input_tokens=input_tokens,
                output_tokens=output_tokens,
                cost=token_cost(model, input_tokens, output_tokens),
                latency_ms=latency_ms,
                completed=completed,
            )
            await self._finish_stream(completion, context, model, on_complete)

    async def _finish_stream(
        self,
        completion: StreamCompletion,
        context: ArbitrationContext,
        model: Model,
        on_complete: StreamCompletionCallback | None,
    ) -> None:
        if completion.completed:
            response = ModelResponse(
                request_id=completion.request_id,
                model_id=completion.model_id,
                provider=completion.provider,
                content="",
                input_tokens=completion.input_tokens,
                output_tokens=completion.output_tokens,
                cost=completion.cost,
                latency_ms=completion.latency_ms,
                attempted_models=[model.id],
            )
            await self._record_success(response, context, model)
        else:
            self._logger.info(
                "streaming_interrupted request_id=%s model=%s",
                completion.request_id,
                model.id,
            )
        if on_complete is not None:
            await on_complete(completion)

    async def execute_batch(
        self,
        requests: list[ChatRequest],
        context: ArbitrationContext,
        cancellation: CancellationToken | None = None,
    ) -> BatchExecutionResult:
        batch_id = uuid.uuid4().hex
        semaphore = asyncio.Semaphore(max(1, self._config.batch_max_concurrency))
        started = time.perf_counter()

        async def run_one(
            index: int, request: ChatRequest
        ) -> ModelResponse | FailedRequest:
            async with semaphore:
                try:
                    return await self.execute(request, context, cancellation)
                except Exception as exc:
                    self._logger.warning(
                        "batch_item_failed batch_id=%s index=%d request_id=%s error=%s",
                        batch_id,
                        index,
                        request.id,
                        exc,
                    )
                    return FailedRequest(
                        request_id=request.id,
                        request_index=index,
                        error=str(exc),
                        error_type=_error_code(exc),
                        batch_id=batch_id,
                    )

        outcomes = await asyncio.gather(
            *(run_one(index, request) for index, request in enumerate(requests))
        )

        batch = BatchExecutionResult(batch_id=batch_id)
        usage: Counter[str] = Counter()
        for outcome in outcomes:
            if isinstance(outcome, FailedRequest):
                batch.failed_requests.append(outcome)
                continue
            batch.successful_responses.append(outcome)
            batch.total_cost += outcome.cost
            usage[outcome.model_id] += 1
        batch.model_usage = dict(usage)
        batch.total_processing_time_ms = (time.perf_counter() - started) * 1000.0
        self._logger.info(
            "batch_complete batch_id=%s total=%d succeeded=%d failed=%d cost=%.6f",
            batch_id,
            batch.total_requests,
            len(batch.successful_responses),
            len(batch.failed_requests),
            batch.total_cost,
        )
        return batch
