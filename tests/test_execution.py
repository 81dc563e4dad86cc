from __future__ import annotations

import asyncio
from typing import Any

import pytest

from open_llm_arbiter.cancellation import CancellationToken
from open_llm_arbiter.config import ExecutionConfig
from open_llm_arbiter.domain import ChatRequest, StreamChunk, StreamCompletion
from open_llm_arbiter.errors import (
    AllModelsFailedError,
    ComplianceViolationError,
    InvalidRequestError,
    OperationCancelledError,
    ProviderRequestError,
)
from open_llm_arbiter.execution import infer_task_type, validate_request
from open_llm_arbiter.rate_limiter import RateLimitType
from tests.arbiter_test_utils import (
    ScriptedAdapter,
    StaticAdapterFactory,
    build_test_engine,
    load_test_config,
    make_context,
    make_request,
    provider_failure,
)


def _engine_with(
    alpha: ScriptedAdapter | None = None,
    beta: ScriptedAdapter | None = None,
    **engine_kwargs: Any,
) -> Any:
    return build_test_engine(
        adapters=StaticAdapterFactory(
            alpha or ScriptedAdapter("alpha"), beta or ScriptedAdapter("beta")
        ),
        **engine_kwargs,
    )


@pytest.mark.parametrize(
    ("text", "expected"),
    [
        ("Please summarize this report", "summarization"),
        ("Translate to French", "translation"),
        ("Write a function that sorts", "code_generation"),
        ("Explain the results", "analysis"),
        ("Hi, how are you?", "chat"),
    ],
)
def test_infer_task_type_uses_keywords(text: str, expected: str) -> None:
    assert infer_task_type(text) == expected


def test_validate_request_rejects_malformed_requests() -> None:
    with pytest.raises(InvalidRequestError):
        validate_request(make_request(request_id=" "))
    with pytest.raises(InvalidRequestError):
        validate_request(ChatRequest(id="r", messages=()))
    with pytest.raises(InvalidRequestError):
        validate_request(make_request(max_tokens=0))


def test_enrich_context_fills_estimates_without_mutating_input() -> None:
    engine = _engine_with()
    context = make_context()
    request = make_request(content="Summarize: " + "x" * 29, max_tokens=200)

    enriched = engine.orchestrator.enrich_context(request, context)

    assert enriched is not context
    assert context.estimated_input_tokens is None
    assert enriched.estimated_input_tokens == 10
    assert enriched.estimated_output_tokens == 200
    assert enriched.task_type == "summarization"
    assert enriched.request_id == "req-1"


def test_enrich_context_keeps_caller_supplied_values() -> None:
    engine = _engine_with()
    context = make_context(
        task_type="analysis", estimated_input_tokens=5, estimated_output_tokens=7
    )

    enriched = engine.orchestrator.enrich_context(make_request(), context)

    assert (enriched.task_type, enriched.estimated_input_tokens) == ("analysis", 5)
    assert enriched.estimated_output_tokens == 7


def test_execute_uses_selected_model_and_records_usage() -> None:
    alpha = ScriptedAdapter("alpha")
    engine = _engine_with(alpha)

    async def _run() -> tuple[Any, int]:
        response = await engine.execute(make_request(), make_context())
        usage = await engine.rate_limiter.get_usage("tenant-a|user-1", RateLimitType.TOKEN)
        return response, usage.current_count

    response, tokens = asyncio.run(_run())

    assert response.model_id == "alpha-mini"
    assert response.content == "ok from alpha-mini"
    assert response.fallback_used is False
    assert response.attempted_models == ["alpha-mini"]
    assert response.decision_id
    assert alpha.calls == ["alpha-mini"]
    assert tokens == 15
    metrics = engine.get_metrics()
    assert metrics["total_executions"] == 1
    assert metrics["total_selections"] == 1


def test_execute_falls_back_after_primary_failure() -> None:
    alpha = ScriptedAdapter("alpha", outcomes={"alpha-mini": [provider_failure()]})
    beta = ScriptedAdapter("beta")
    engine = _engine_with(alpha, beta)

    response = asyncio.run(engine.execute(make_request(), make_context()))

    assert response.model_id == "beta-pro"
    assert response.fallback_used is True
    assert response.attempted_models == ["alpha-mini", "beta-pro"]
    assert engine.catalog.failures[0].model_id == "alpha-mini"
    assert engine.get_metrics()["fallback_executions"] == 1


def test_all_models_failing_raises_with_original_cause() -> None:
    original = provider_failure("alpha", 500)
    alpha = ScriptedAdapter(
        "alpha",
        outcomes={
            "alpha-mini": [original],
            "alpha-large": [provider_failure("alpha", 502)],
        },
    )
    beta = ScriptedAdapter("beta", outcomes={"beta-pro": [provider_failure("beta", 503)]})
    engine = _engine_with(alpha, beta)

    with pytest.raises(AllModelsFailedError) as error:
        asyncio.run(engine.execute(make_request(), make_context()))

    assert error.value.__cause__ is original
    assert error.value.original_error is original
    assert error.value.attempted_models == ["alpha-mini", "beta-pro", "alpha-large"]
    assert set(error.value.fallback_errors) == {"beta-pro", "alpha-large"}
    assert engine.get_metrics()["error_counts"] == {"ALL_MODELS_FAILED": 1}


def test_fallback_attempts_respect_context_limit() -> None:
    alpha = ScriptedAdapter("alpha", outcomes={"alpha-mini": [provider_failure()]})
    beta = ScriptedAdapter("beta", outcomes={"beta-pro": [provider_failure("beta")]})
    engine = _engine_with(alpha, beta)

    with pytest.raises(AllModelsFailedError) as error:
        asyncio.run(
            engine.execute(make_request(), make_context(max_fallback_attempts=1))
        )

    assert error.value.attempted_models == ["alpha-mini", "beta-pro"]
    assert "alpha-large" not in alpha.calls


def test_disabled_fallback_reraises_original_error() -> None:
    original = provider_failure()
    alpha = ScriptedAdapter("alpha", outcomes={"alpha-mini": [original]})
    beta = ScriptedAdapter("beta")
    engine = _engine_with(alpha, beta)

    with pytest.raises(ProviderRequestError) as error:
        asyncio.run(engine.execute(make_request(), make_context(enable_fallback=False)))

    assert error.value is original
    assert beta.calls == []


def test_non_recoverable_errors_never_fall_back() -> None:
    alpha = ScriptedAdapter(
        "alpha", outcomes={"alpha-mini": [ComplianceViolationError(["upstream refusal"])]}
    )
    beta = ScriptedAdapter("beta")
    engine = _engine_with(alpha, beta)

    with pytest.raises(ComplianceViolationError):
        asyncio.run(engine.execute(make_request(), make_context()))

    assert beta.calls == []


def test_request_compliance_violation_blocks_execution() -> None:
    alpha = ScriptedAdapter("alpha")
    engine = _engine_with(alpha)

    with pytest.raises(ComplianceViolationError, match="us_ssn"):
        asyncio.run(
            engine.execute(make_request(content="My SSN is 123-45-6789"), make_context())
        )

    assert alpha.calls == []


def test_invalid_request_is_rejected_before_selection() -> None:
    engine = _engine_with()

    with pytest.raises(InvalidRequestError):
        asyncio.run(engine.execute(make_request(max_tokens=0), make_context()))

    assert engine.get_metrics()["total_selections"] == 0


def test_cancelled_token_aborts_before_any_stage() -> None:
    alpha = ScriptedAdapter("alpha")
    engine = _engine_with(alpha)
    token = CancellationToken()
    token.cancel("client went away")

    with pytest.raises(OperationCancelledError) as error:
        asyncio.run(engine.execute(make_request(), make_context(), token))

    assert error.value.stage == "validation"
    assert alpha.calls == []


def test_cancellation_during_provider_call_discards_result() -> None:
    alpha = ScriptedAdapter("alpha", delay_seconds=0.05)
    beta = ScriptedAdapter("beta")
    engine = _engine_with(alpha, beta)
    token = CancellationToken()

    async def _run() -> None:
        async def cancel_once_in_flight() -> None:
            while alpha.in_flight == 0:
                await asyncio.sleep(0)
            token.cancel()

        canceller = asyncio.create_task(cancel_once_in_flight())
        try:
            await engine.execute(make_request(), make_context(), token)
        finally:
            await canceller

    with pytest.raises(OperationCancelledError) as error:
        asyncio.run(_run())

    assert error.value.stage == "execution"
    assert alpha.calls == ["alpha-mini"]
    assert beta.calls == []
    assert engine.get_metrics()["total_executions"] == 0


def test_streaming_relays_chunks_and_fires_callback_once() -> None:
    engine = _engine_with()
    completions: list[StreamCompletion] = []

    async def on_complete(completion: StreamCompletion) -> None:
        completions.append(completion)

    async def _run() -> tuple[Any, list[str]]:
        response = await engine.execute_streaming(
            make_request(), make_context(), on_complete=on_complete
        )
        contents = [chunk.content async for chunk in response.chunks]
        return response, contents

    response, contents = asyncio.run(_run())

    assert response.failed is False
    assert response.model_id == "alpha-mini"
    assert response.decision_id
    assert contents == ["Hel", "lo"]
    assert len(completions) == 1
    completion = completions[0]
    assert completion.completed is True
    # "Hello there" is 11 chars -> 3 input tokens; 5 streamed chars -> 2 output.
    assert (completion.input_tokens, completion.output_tokens) == (3, 2)
    assert engine.get_metrics()["total_executions"] == 1


def test_streaming_prefers_reported_usage() -> None:
    alpha = ScriptedAdapter(
        "alpha",
        stream_chunks={
            "alpha-mini": [
                StreamChunk(content="abc"),
                StreamChunk(content="", input_tokens=40, output_tokens=12),
            ]
        },
    )
    engine = _engine_with(alpha)
    completions: list[StreamCompletion] = []

    async def on_complete(completion: StreamCompletion) -> None:
        completions.append(completion)

    async def _run() -> None:
        response = await engine.execute_streaming(
            make_request(), make_context(), on_complete=on_complete
        )
        async for _ in response.chunks:
            pass

    asyncio.run(_run())

    assert (completions[0].input_tokens, completions[0].output_tokens) == (40, 12)


def test_abandoned_stream_reports_incomplete_once() -> None:
    alpha = ScriptedAdapter("alpha", stream_chunks={"alpha-mini": ["a", "b", "c"]})
    engine = _engine_with(alpha)
    completions: list[StreamCompletion] = []

    async def on_complete(completion: StreamCompletion) -> None:
        completions.append(completion)

    async def _run() -> None:
        response = await engine.execute_streaming(
            make_request(), make_context(), on_complete=on_complete
        )
        first = await response.chunks.__anext__()
        assert first.content == "a"
        await response.chunks.aclose()

    asyncio.run(_run())

    assert len(completions) == 1
    assert completions[0].completed is False
    assert engine.get_metrics()["total_executions"] == 0


def test_streaming_failure_before_first_chunk_returns_error() -> None:
    alpha = ScriptedAdapter("alpha", stream_chunks={"alpha-mini": [provider_failure()]})
    engine = _engine_with(alpha)
    completions: list[StreamCompletion] = []

    async def on_complete(completion: StreamCompletion) -> None:
        completions.append(completion)

    async def _run() -> tuple[Any, list[StreamChunk]]:
        response = await engine.execute_streaming(
            make_request(), make_context(), on_complete=on_complete
        )
        return response, [chunk async for chunk in response.chunks]

    response, chunks = asyncio.run(_run())

    assert response.failed is True
    assert response.error_code == "PROVIDER_ERROR"
    assert response.model_id == "alpha-mini"
    assert chunks == []
    assert completions == []
    assert engine.catalog.failures[0].error_type == "PROVIDER_ERROR"


def test_streaming_selection_failure_is_reported_not_raised() -> None:
    engine = _engine_with()

    async def _run() -> Any:
        return await engine.execute_streaming(
            make_request(), make_context(tenant_id="capped-tenant")
        )

    response = asyncio.run(_run())

    assert response.failed is True
    assert response.error_code == "INSUFFICIENT_BUDGET"
    assert response.model_id is None


def test_streaming_invalid_request_raises() -> None:
    engine = _engine_with()

    with pytest.raises(InvalidRequestError):
        asyncio.run(engine.execute_streaming(make_request(max_tokens=-1), make_context()))


def test_batch_isolates_failures_per_item() -> None:
    engine = _engine_with()
    requests = [
        make_request("ok-1"),
        make_request("bad", max_tokens=0),
        make_request("ok-2"),
    ]

    result = asyncio.run(engine.execute_batch(requests, make_context()))

    assert [item.request_id for item in result.successful_responses] == ["ok-1", "ok-2"]
    assert len(result.failed_requests) == 1
    failed = result.failed_requests[0]
    assert (failed.request_id, failed.request_index) == ("bad", 1)
    assert failed.error_type == "INVALID_REQUEST"
    assert failed.batch_id == result.batch_id
    assert result.model_usage == {"alpha-mini": 2}
    assert result.total_cost == pytest.approx(0.002)
    assert result.success_rate == pytest.approx(2 / 3)


def test_batch_concurrency_never_exceeds_ceiling() -> None:
    config = load_test_config()
    config = config.model_copy(
        update={"execution": ExecutionConfig(batch_max_concurrency=2)}
    )
    alpha = ScriptedAdapter("alpha", delay_seconds=0.01)
    engine = _engine_with(alpha, config=config)
    requests = [make_request(f"r{index}") for index in range(6)]

    result = asyncio.run(engine.execute_batch(requests, make_context()))

    assert len(result.successful_responses) == 6
    assert alpha.max_in_flight <= 2


def test_empty_batch_returns_empty_result() -> None:
    engine = _engine_with()

    result = asyncio.run(engine.execute_batch([], make_context()))

    assert result.total_requests == 0
    assert result.success_rate == 0.0
    assert result.model_usage == {}
