"""Tests for the AI gateway adapter.

The OpenAI SDK client is replaced with mocks; raw passthrough requests go
through httpx.MockTransport. No network access.
"""

import json
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import httpx
import openai
import pytest

from aiproxy.providers.base import (
    BinaryPayload,
    ChunkSource,
    Materialized,
    OperationKind,
    PassthroughResponse,
    TokenUsage,
)
from aiproxy.providers.config import GatewayConfig
from aiproxy.providers.errors import (
    AuthenticationError,
    ContextLengthError,
    ModelNotFoundError,
    ProviderError,
    RateLimitError,
    StreamSourceError,
    StructuredOutputError,
    TransientError,
)
from aiproxy.providers.gateway_adapter import (
    GatewayModelProvider,
    _build_messages,
    _classify_openai_error,
    _classify_status,
    _usage_from,
)
from aiproxy.services.schema_compiler import compile_schema

_MODEL = "openai/gpt-5"
_REQUEST = httpx.Request("POST", "https://gateway.test/v1/chat/completions")

# =============================================================================
# Helpers
# =============================================================================


def _completion(content: str, *, finish_reason: str = "stop") -> SimpleNamespace:
    return SimpleNamespace(
        id="gen-123",
        model=_MODEL,
        choices=[
            SimpleNamespace(
                message=SimpleNamespace(content=content),
                finish_reason=finish_reason,
            )
        ],
        usage=SimpleNamespace(prompt_tokens=12, completion_tokens=34),
    )


def _chunk(content: str | None, *, finish_reason: str | None = None, usage=None):
    choices = []
    if content is not None or finish_reason is not None:
        choices = [
            SimpleNamespace(
                delta=SimpleNamespace(content=content),
                finish_reason=finish_reason,
            )
        ]
    return SimpleNamespace(id="gen-stream", choices=choices, usage=usage)


class FakeStream:
    """Async iterator standing in for an SDK stream."""

    def __init__(self, chunks: list, error: Exception | None = None) -> None:
        self._chunks = list(chunks)
        self._error = error
        self.closed = False

    def __aiter__(self):
        return self

    async def __anext__(self):
        if self._chunks:
            return self._chunks.pop(0)
        if self._error is not None:
            raise self._error
        raise StopAsyncIteration

    async def close(self) -> None:
        self.closed = True


async def _drain(source: ChunkSource) -> list:
    return [item async for item in source.items]


@pytest.fixture
def provider() -> GatewayModelProvider:
    provider = GatewayModelProvider(
        GatewayConfig(api_key="test-key", base_url="https://gateway.test/v1")
    )
    provider.client = MagicMock()
    provider.client.chat.completions.create = AsyncMock()
    return provider


# =============================================================================
# Pure helpers
# =============================================================================


class TestBuildMessages:
    """Tests for _build_messages()."""

    def test_prompt_with_system(self):
        assert _build_messages({"prompt": "Hi", "system": "Be brief"}) == [
            {"role": "system", "content": "Be brief"},
            {"role": "user", "content": "Hi"},
        ]

    def test_messages_take_precedence_over_prompt(self):
        messages = [{"role": "user", "content": "from messages"}]
        assert _build_messages({"messages": messages, "prompt": "ignored"}) == messages

    def test_neither_prompt_nor_messages(self):
        with pytest.raises(ProviderError):
            _build_messages({"system": "only system"})


class TestErrorClassification:
    """Tests for _classify_status() and _classify_openai_error()."""

    @pytest.mark.parametrize(
        ("status", "expected"),
        [
            (429, RateLimitError),
            (401, AuthenticationError),
            (403, AuthenticationError),
            (404, ModelNotFoundError),
            (502, TransientError),
            (400, ProviderError),
        ],
    )
    def test_status_mapping(self, status, expected):
        assert type(_classify_status(status, "body")) is expected

    def test_rate_limit_carries_retry_after(self):
        response = httpx.Response(429, headers={"retry-after": "3"}, request=_REQUEST)
        error = openai.RateLimitError("slow down", response=response, body=None)

        classified = _classify_openai_error(error)

        assert isinstance(classified, RateLimitError)
        assert classified.retry_after_seconds == 3.0

    def test_context_length(self):
        response = httpx.Response(400, request=_REQUEST)
        error = openai.BadRequestError(
            "context_length_exceeded: too many tokens", response=response, body=None
        )
        assert isinstance(_classify_openai_error(error), ContextLengthError)

    def test_connection_error_is_transient(self):
        error = openai.APIConnectionError(request=_REQUEST)
        assert isinstance(_classify_openai_error(error), TransientError)


class TestUsageFrom:
    """Tests for _usage_from()."""

    def test_chat_usage(self):
        raw = SimpleNamespace(prompt_tokens=3, completion_tokens=4)
        assert _usage_from(raw) == TokenUsage(3, 4)

    def test_responses_style_usage(self):
        raw = SimpleNamespace(input_tokens=5, output_tokens=6)
        assert _usage_from(raw) == TokenUsage(5, 6)

    def test_missing(self):
        assert _usage_from(None) is None


# =============================================================================
# Text and structured generation
# =============================================================================


class TestGenerate:
    """generateText / generateObject through the SDK mock."""

    @pytest.mark.asyncio
    async def test_generate_text(self, provider: GatewayModelProvider):
        create = provider.client.chat.completions.create
        create.return_value = _completion("Hello there")

        output = await provider.resolve(_MODEL).invoke(
            OperationKind.GENERATE_TEXT,
            {"prompt": "Hi", "temperature": 0.5, "maxOutputTokens": 64, "model": _MODEL},
        )

        assert isinstance(output, Materialized)
        assert output.value["text"] == "Hello there"
        assert output.value["usage"] == {"inputTokens": 12, "outputTokens": 34, "totalTokens": 46}
        assert output.usage == TokenUsage(12, 34)
        assert output.response_id == "gen-123"
        kwargs = create.await_args.kwargs
        assert kwargs["model"] == _MODEL
        assert kwargs["temperature"] == 0.5
        assert kwargs["max_tokens"] == 64

    @pytest.mark.asyncio
    async def test_generate_object_validates(self, provider: GatewayModelProvider):
        provider.client.chat.completions.create.return_value = _completion(
            json.dumps({"title": "Soup", "servings": 2})
        )
        schema = compile_schema({"title": "string", "servings": "number"})

        output = await provider.resolve(_MODEL).invoke(
            OperationKind.GENERATE_OBJECT, {"prompt": "Recipe", "schema": schema}
        )

        assert output.value["object"] == {"title": "Soup", "servings": 2}
        response_format = provider.client.chat.completions.create.await_args.kwargs[
            "response_format"
        ]
        assert response_format["type"] == "json_schema"
        assert response_format["json_schema"]["schema"] == schema.to_json_schema()

    @pytest.mark.asyncio
    async def test_generate_object_schema_mismatch(self, provider: GatewayModelProvider):
        provider.client.chat.completions.create.return_value = _completion(
            json.dumps({"title": 5})
        )
        schema = compile_schema({"title": "string"})

        with pytest.raises(StructuredOutputError) as exc_info:
            await provider.resolve(_MODEL).invoke(
                OperationKind.GENERATE_OBJECT, {"prompt": "x", "schema": schema}
            )

        assert exc_info.value.issues

    @pytest.mark.asyncio
    async def test_generate_object_invalid_json(self, provider: GatewayModelProvider):
        provider.client.chat.completions.create.return_value = _completion("not json")

        with pytest.raises(StructuredOutputError):
            await provider.resolve(_MODEL).invoke(
                OperationKind.GENERATE_OBJECT,
                {"prompt": "x", "schema": compile_schema("any")},
            )

    @pytest.mark.asyncio
    async def test_sdk_error_is_classified(self, provider: GatewayModelProvider):
        provider.client.chat.completions.create.side_effect = openai.APIConnectionError(
            request=_REQUEST
        )

        with pytest.raises(TransientError):
            await provider.resolve(_MODEL).invoke(OperationKind.GENERATE_TEXT, {"prompt": "x"})


# =============================================================================
# Streaming
# =============================================================================


class TestStreaming:
    """streamText / streamObject chunk sources."""

    @pytest.mark.asyncio
    async def test_stream_text_records_metadata(self, provider: GatewayModelProvider):
        stream = FakeStream(
            [
                _chunk("Hel"),
                _chunk("lo"),
                _chunk(None, finish_reason="stop"),
                _chunk(None, usage=SimpleNamespace(prompt_tokens=7, completion_tokens=2)),
            ]
        )
        provider.client.chat.completions.create.return_value = stream

        output = await provider.resolve(_MODEL).invoke(
            OperationKind.STREAM_TEXT, {"prompt": "Hi"}
        )

        assert isinstance(output, ChunkSource)
        assert await _drain(output) == ["Hel", "lo"]
        assert output.metadata.response_id == "gen-stream"
        assert output.metadata.usage == TokenUsage(7, 2)
        assert output.metadata.finish_reason == "stop"
        assert stream.closed

    @pytest.mark.asyncio
    async def test_stream_error_after_start(self, provider: GatewayModelProvider):
        stream = FakeStream([_chunk("partial")], error=openai.APIConnectionError(request=_REQUEST))
        provider.client.chat.completions.create.return_value = stream

        output = await provider.resolve(_MODEL).invoke(
            OperationKind.STREAM_TEXT, {"prompt": "Hi"}
        )

        with pytest.raises(StreamSourceError):
            await _drain(output)
        assert stream.closed

    @pytest.mark.asyncio
    async def test_stream_object_yields_growing_partials(self, provider: GatewayModelProvider):
        provider.client.chat.completions.create.return_value = FakeStream(
            [_chunk('{"title": "So'), _chunk('up", "tags": ["a"'), _chunk("]}")]
        )
        schema = compile_schema({"title": "string", "tags": ["string"]})

        output = await provider.resolve(_MODEL).invoke(
            OperationKind.STREAM_OBJECT, {"prompt": "x", "schema": schema}
        )
        items = await _drain(output)

        assert items[-1] == {"title": "Soup", "tags": ["a"]}
        assert all(a != b for a, b in zip(items, items[1:], strict=False))

    @pytest.mark.asyncio
    async def test_stream_object_final_schema_failure(self, provider: GatewayModelProvider):
        provider.client.chat.completions.create.return_value = FakeStream(
            [_chunk('{"title": 1}')]
        )
        schema = compile_schema({"title": "string"})

        output = await provider.resolve(_MODEL).invoke(
            OperationKind.STREAM_OBJECT, {"prompt": "x", "schema": schema}
        )

        with pytest.raises(StreamSourceError, match="does not match"):
            await _drain(output)


# =============================================================================
# Passthrough
# =============================================================================


class TestPassthrough:
    """Raw upstream body forwarding."""

    @pytest.mark.asyncio
    async def test_forwards_body_and_headers(self, provider: GatewayModelProvider):
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(
                200,
                headers={"content-type": "text/event-stream", "content-length": "10"},
                stream=httpx.ByteStream(b"data: hi\n\n"),
            )

        provider.http = httpx.AsyncClient(transport=httpx.MockTransport(handler))

        output = await provider.resolve(_MODEL).invoke(
            OperationKind.STREAM_TEXT, {"prompt": "Hi", "passthrough": True}
        )

        assert isinstance(output, PassthroughResponse)
        assert output.headers["content-type"] == "text/event-stream"
        assert "content-length" not in output.headers
        assert b"".join([chunk async for chunk in output.body]) == b"data: hi\n\n"
        assert seen[0].headers["authorization"] == "Bearer test-key"
        assert json.loads(seen[0].content)["stream"] is True

    @pytest.mark.asyncio
    async def test_upstream_error_fails_at_invoke(self, provider: GatewayModelProvider):
        provider.http = httpx.AsyncClient(
            transport=httpx.MockTransport(lambda request: httpx.Response(401, text="bad key"))
        )

        with pytest.raises(AuthenticationError):
            await provider.resolve(_MODEL).invoke(
                OperationKind.STREAM_TEXT, {"prompt": "Hi", "passthrough": True}
            )


# =============================================================================
# Media
# =============================================================================


class TestMedia:
    """Image, speech and transcription."""

    @pytest.mark.asyncio
    async def test_generate_image_decodes_base64(self, provider: GatewayModelProvider):
        provider.client.images.generate = AsyncMock(
            return_value=SimpleNamespace(data=[SimpleNamespace(b64_json="iVBO")])
        )

        output = await provider.resolve("openai/dall-e-3").invoke(
            OperationKind.GENERATE_IMAGE, {"prompt": "a cat"}
        )

        assert output.value["image"] == BinaryPayload(b"\x89PN", "image/png")

    @pytest.mark.asyncio
    async def test_transcribe_requires_bytes(self, provider: GatewayModelProvider):
        with pytest.raises(ProviderError):
            await provider.resolve("openai/whisper-1").invoke(
                OperationKind.TRANSCRIBE, {"audio": "not-bytes"}
            )
