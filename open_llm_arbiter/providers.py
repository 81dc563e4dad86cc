from __future__ import annotations

import json
import logging
import os
import time
from typing import Any, AsyncIterator

import httpx

from open_llm_arbiter.config import ProviderConfig
from open_llm_arbiter.domain import ChatRequest, Model, ModelResponse, StreamChunk
from open_llm_arbiter.errors import (
    ProviderRequestError,
    ProviderUnsupportedOperationError,
)
from open_llm_arbiter.interfaces import ProviderAdapter
from open_llm_arbiter.scoring import token_cost


class BaseProviderAdapter:
    """Adapter defaults: every operation is unsupported until overridden."""

    def __init__(self, provider: str) -> None:
        self.provider = provider

    async def send_completion(self, request: ChatRequest, model: Model) -> ModelResponse:
        raise ProviderUnsupportedOperationError(self.provider, "completion")

    async def send_streaming_completion(
        self, request: ChatRequest, model: Model
    ) -> AsyncIterator[StreamChunk]:
        raise ProviderUnsupportedOperationError(self.provider, "streaming_completion")
        yield  # pragma: no cover

    async def create_embedding(self, text: str, model: Model) -> list[float]:
        raise ProviderUnsupportedOperationError(self.provider, "embedding")

    async def close(self) -> None:
        return None


class OpenAICompatibleAdapter(BaseProviderAdapter):
    def __init__(
        self,
        config: ProviderConfig,
        client: httpx.AsyncClient | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        super().__init__(config.name)
        self._config = config
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(
                timeout=config.timeout_seconds,
                connect=config.connect_timeout_seconds,
            ),
            limits=httpx.Limits(max_connections=256, max_keepalive_connections=64),
        )
        self._logger = logger or logging.getLogger("uvicorn.error")

    def _url(self, path: str) -> str:
        return self._config.base_url.rstrip("/") + path

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json", **self._config.headers}
        api_key = self._config.api_key
        if not api_key and self._config.api_key_env:
            api_key = os.getenv(self._config.api_key_env)
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        return headers

    def _payload(self, request: ChatRequest, model: Model, stream: bool) -> dict[str, Any]:
        payload: dict[str, Any] = {
            **request.extra,
            "model": model.upstream_model,
            "messages": [
                {"role": message.role, "content": message.content}
                for message in request.messages
            ],
            "max_tokens": request.max_tokens,
            "stream": stream,
        }
        if request.temperature is not None:
            payload["temperature"] = request.temperature
        if stream:
            payload["stream_options"] = {"include_usage": True}
        return payload

    async def send_completion(self, request: ChatRequest, model: Model) -> ModelResponse:
        started = time.perf_counter()
        try:
            upstream = await self._client.post(
                self._url("/chat/completions"),
                json=self._payload(request, model, stream=False),
                headers=self._headers(),
            )
        except httpx.RequestError as exc:
            raise ProviderRequestError(
                self.provider, f"Request to provider failed: {exc}"
            ) from exc

        latency_ms = (time.perf_counter() - started) * 1000.0
        if upstream.status_code >= 400:
            raise ProviderRequestError(
                self.provider,
                f"Provider returned HTTP {upstream.status_code}: "
                f"{_error_message(upstream.text)}",
                status=upstream.status_code,
            )
        try:
            body = upstream.json()
        except ValueError as exc:
            raise ProviderRequestError(
                self.provider, "Provider returned a non-JSON body."
            ) from exc

        choice = _first_choice(body)
        message = choice.get("message") if isinstance(choice, dict) else None
        content = message.get("content") if isinstance(message, dict) else None
        usage = body.get("usage") if isinstance(body, dict) else None
        input_tokens = _usage_value(usage, "prompt_tokens")
        output_tokens = _usage_value(usage, "completion_tokens")
        return ModelResponse(
            request_id=request.id,
            model_id=model.id,
            provider=self.provider,
            content=content if isinstance(content, str) else "",
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            cost=token_cost(model, input_tokens, output_tokens),
            latency_ms=latency_ms,
            finish_reason=choice.get("finish_reason") if isinstance(choice, dict) else None,
        )

    async def send_streaming_completion(
        self, request: ChatRequest, model: Model
    ) -> AsyncIterator[StreamChunk]:
        if not self._config.supports_streaming:
            raise ProviderUnsupportedOperationError(self.provider, "streaming_completion")
        try:
            async with self._client.stream(
                "POST",
                self._url("/chat/completions"),
                json=self._payload(request, model, stream=True),
                headers=self._headers(),
            ) as upstream:
                if upstream.status_code >= 400:
                    body = await upstream.aread()
                    raise ProviderRequestError(
                        self.provider,
                        f"Provider returned HTTP {upstream.status_code}: "
                        f"{_error_message(body.decode('utf-8', errors='replace'))}",
                        status=upstream.status_code,
                    )
                async for line in upstream.aiter_lines():
                    chunk = _parse_sse_line(line)
                    if chunk is not None:
                        yield chunk
        except httpx.RequestError as exc:
            self._logger.warning(
                "provider_stream_error provider=%s model=%s error=%s",
                self.provider,
                model.id,
                exc,
            )
            raise ProviderRequestError(
                self.provider, f"Streaming request to provider failed: {exc}"
            ) from exc

    async def create_embedding(self, text: str, model: Model) -> list[float]:
        if not self._config.supports_embeddings:
            raise ProviderUnsupportedOperationError(self.provider, "embedding")
        try:
            upstream = await self._client.post(
                self._url("/embeddings"),
                json={"model": model.upstream_model, "input": text},
                headers=self._headers(),
            )
        except httpx.RequestError as exc:
            raise ProviderRequestError(
                self.provider, f"Request to provider failed: {exc}"
            ) from exc
        if upstream.status_code >= 400:
            raise ProviderRequestError(
                self.provider,
                f"Provider returned HTTP {upstream.status_code}.",
                status=upstream.status_code,
            )
        data = upstream.json().get("data") or []
        if not data or not isinstance(data[0], dict):
            return []
        return [float(value) for value in data[0].get("embedding") or []]

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()


class DefaultProviderAdapterFactory:
    def __init__(
        self,
        providers: list[ProviderConfig],
        client: httpx.AsyncClient | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self._providers = {provider.name: provider for provider in providers}
        self._client = client
        self._logger = logger
        self._adapters: dict[str, ProviderAdapter] = {}

    def register(self, provider: str, adapter: ProviderAdapter) -> None:
        self._adapters[provider] = adapter

    def get_adapter(self, model: Model) -> ProviderAdapter:
        adapter = self._adapters.get(model.provider)
        if adapter is not None:
            return adapter
        config = self._providers.get(model.provider)
        if config is None:
            raise ProviderUnsupportedOperationError(model.provider, "completion")
        adapter = OpenAICompatibleAdapter(config, client=self._client, logger=self._logger)
        self._adapters[model.provider] = adapter
        return adapter

    async def close(self) -> None:
        for adapter in self._adapters.values():
            await adapter.close()
        self._adapters.clear()


def _first_choice(body: Any) -> dict[str, Any]:
    if not isinstance(body, dict):
        return {}
    choices = body.get("choices")
    if isinstance(choices, list) and choices and isinstance(choices[0], dict):
        return choices[0]
    return {}


def _usage_value(usage: Any, key: str) -> int:
    if not isinstance(usage, dict):
        return 0
    value = usage.get(key)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return 0
    return int(value)


def _parse_sse_line(line: str) -> StreamChunk | None:
    if not line or not line.startswith("data:"):
        return None
    payload = line[5:].strip()
    if not payload or payload == "[DONE]":
        return None
    try:
        parsed = json.loads(payload)
    except ValueError:
        return None
    if not isinstance(parsed, dict):
        return None
    choice = _first_choice(parsed)
    delta = choice.get("delta") if isinstance(choice.get("delta"), dict) else {}
    content = delta.get("content")
    usage = parsed.get("usage")
    return StreamChunk(
        content=content if isinstance(content, str) else "",
        finish_reason=choice.get("finish_reason"),
        input_tokens=_usage_value(usage, "prompt_tokens") if usage else None,
        output_tokens=_usage_value(usage, "completion_tokens") if usage else None,
    )


def _error_message(text: str) -> str:
    try:
        parsed = json.loads(text)
    except ValueError:
        return text[:200]
    if isinstance(parsed, dict):
        error = parsed.get("error")
        if isinstance(error, dict) and isinstance(error.get("message"), str):
            return error["message"]
        if isinstance(error, str):
            return error
    return text[:200]
