from __future__ import annotations

import asyncio
import json
from typing import Any, Callable

import httpx
import pytest

from open_llm_arbiter.config import ProviderConfig
from open_llm_arbiter.domain import StreamChunk
from open_llm_arbiter.errors import ProviderRequestError, ProviderUnsupportedOperationError
from open_llm_arbiter.providers import (
    DefaultProviderAdapterFactory,
    OpenAICompatibleAdapter,
)
from tests.arbiter_test_utils import ScriptedAdapter, make_model, make_request


def _adapter(
    handler: Callable[[httpx.Request], httpx.Response], **config: Any
) -> OpenAICompatibleAdapter:
    provider = ProviderConfig(
        name="alpha", base_url="http://upstream.example/v1/", **config
    )
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler), timeout=30.0)
    return OpenAICompatibleAdapter(provider, client=client)


def test_completion_maps_upstream_payload_and_usage() -> None:
    seen: dict[str, Any] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["auth"] = request.headers.get("authorization")
        seen["body"] = json.loads(request.content)
        return httpx.Response(
            200,
            json={
                "choices": [
                    {"message": {"content": "hi there"}, "finish_reason": "stop"}
                ],
                "usage": {"prompt_tokens": 1000, "completion_tokens": 500},
            },
        )

    adapter = _adapter(handler, api_key="secret")
    model = make_model(
        "alpha-large", provider_model_id="alpha-large-2025", input_cost=2.0, output_cost=8.0
    )

    response = asyncio.run(adapter.send_completion(make_request(), model))

    assert seen["url"] == "http://upstream.example/v1/chat/completions"
    assert seen["auth"] == "Bearer secret"
    assert seen["body"]["model"] == "alpha-large-2025"
    assert seen["body"]["stream"] is False
    assert seen["body"]["messages"] == [{"role": "user", "content": "Hello there"}]
    assert response.content == "hi there"
    assert response.model_id == "alpha-large"
    assert (response.input_tokens, response.output_tokens) == (1000, 500)
    assert response.cost == pytest.approx(0.002 + 0.004)
    assert response.finish_reason == "stop"


def test_api_key_env_is_read_at_request_time(monkeypatch: Any) -> None:
    monkeypatch.setenv("ALPHA_TEST_KEY", "from-env")
    seen: dict[str, Any] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["auth"] = request.headers.get("authorization")
        return httpx.Response(200, json={"choices": []})

    adapter = _adapter(handler, api_key_env="ALPHA_TEST_KEY")
    response = asyncio.run(adapter.send_completion(make_request(), make_model("m")))

    assert seen["auth"] == "Bearer from-env"
    assert response.content == ""


def test_completion_error_status_raises_provider_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(429, json={"error": {"message": "slow down"}})

    adapter = _adapter(handler)

    with pytest.raises(ProviderRequestError, match="slow down") as error:
        asyncio.run(adapter.send_completion(make_request(), make_model("m")))

    assert error.value.status == 429


def test_transport_failure_raises_provider_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    adapter = _adapter(handler)

    with pytest.raises(ProviderRequestError, match="refused"):
        asyncio.run(adapter.send_completion(make_request(), make_model("m")))


def test_streaming_parses_sse_chunks_and_usage() -> None:
    events = [
        {"choices": [{"delta": {"content": "Hel"}}]},
        {"choices": [{"delta": {"content": "lo"}, "finish_reason": "stop"}]},
        {"choices": [], "usage": {"prompt_tokens": 7, "completion_tokens": 2}},
    ]
    body = "".join(f"data: {json.dumps(event)}\n\n" for event in events)
    body += ": keep-alive\n\ndata: [DONE]\n\n"
    seen: dict[str, Any] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["body"] = json.loads(request.content)
        return httpx.Response(
            200,
            content=body.encode("utf-8"),
            headers={"content-type": "text/event-stream"},
        )

    adapter = _adapter(handler)

    async def _run() -> list[StreamChunk]:
        stream = adapter.send_streaming_completion(make_request(), make_model("m"))
        return [chunk async for chunk in stream]

    chunks = asyncio.run(_run())

    assert seen["body"]["stream"] is True
    assert seen["body"]["stream_options"] == {"include_usage": True}
    assert [chunk.content for chunk in chunks] == ["Hel", "lo", ""]
    assert chunks[1].finish_reason == "stop"
    assert (chunks[2].input_tokens, chunks[2].output_tokens) == (7, 2)


def test_streaming_error_status_raises_before_any_chunk() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(503, text="overloaded")

    adapter = _adapter(handler)

    async def _run() -> None:
        async for _ in adapter.send_streaming_completion(make_request(), make_model("m")):
            pass

    with pytest.raises(ProviderRequestError, match="overloaded"):
        asyncio.run(_run())


def test_streaming_disabled_provider_is_unsupported() -> None:
    adapter = _adapter(lambda request: httpx.Response(200), supports_streaming=False)

    async def _run() -> None:
        async for _ in adapter.send_streaming_completion(make_request(), make_model("m")):
            pass

    with pytest.raises(ProviderUnsupportedOperationError):
        asyncio.run(_run())


def test_embeddings_are_unsupported_by_default() -> None:
    adapter = _adapter(lambda request: httpx.Response(200))

    with pytest.raises(ProviderUnsupportedOperationError) as error:
        asyncio.run(adapter.create_embedding("hello", make_model("m")))

    assert error.value.operation == "embedding"


def test_embeddings_return_first_vector_when_enabled() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/v1/embeddings"
        return httpx.Response(200, json={"data": [{"embedding": [0.5, 1, 2]}]})

    adapter = _adapter(handler, supports_embeddings=True)

    assert asyncio.run(adapter.create_embedding("hi", make_model("m"))) == [0.5, 1.0, 2.0]


def test_factory_caches_adapters_per_provider() -> None:
    factory = DefaultProviderAdapterFactory(
        [ProviderConfig(name="alpha", base_url="http://a.example")]
    )

    first = factory.get_adapter(make_model("m1"))
    second = factory.get_adapter(make_model("m2"))

    assert first is second
    asyncio.run(factory.close())


def test_factory_rejects_unknown_provider() -> None:
    factory = DefaultProviderAdapterFactory([])

    with pytest.raises(ProviderUnsupportedOperationError):
        factory.get_adapter(make_model("m", provider="ghost"))


def test_factory_prefers_registered_adapters_and_closes_them() -> None:
    factory = DefaultProviderAdapterFactory([])
    scripted = ScriptedAdapter("alpha")
    factory.register("alpha", scripted)

    assert factory.get_adapter(make_model("m")) is scripted
    asyncio.run(factory.close())
    assert scripted.closed is True
