"""AI gateway adapter.

Talks to an OpenAI-compatible AI gateway (one base URL, provider-qualified
model ids such as ``anthropic/claude-3-5-sonnet-20250514``) through the
OpenAI SDK. Each handle maps one operation kind onto the matching SDK call
and wraps the result in a ProducedOutput variant.

Caller options use the camelCase names browser SDKs send (``prompt``,
``system``, ``messages``, ``maxOutputTokens``, ``temperature``, ``topP``,
``stopSequences``, ``seed``, ...). Unknown options are ignored.
"""

import base64
import contextlib
import json
import time
from collections.abc import AsyncIterator
from typing import Any

import httpx
import openai
import structlog
from openai import AsyncOpenAI

from aiproxy.providers.base import (
    BinaryPayload,
    ChunkSource,
    Materialized,
    ModelHandle,
    ModelProvider,
    OperationKind,
    PassthroughResponse,
    ProducedOutput,
    StreamMetadata,
    TokenUsage,
)
from aiproxy.providers.config import GatewayConfig
from aiproxy.providers.errors import (
    AuthenticationError,
    ContentFilterError,
    ContextLengthError,
    ModelNotFoundError,
    ProviderError,
    RateLimitError,
    StreamSourceError,
    StructuredOutputError,
    TransientError,
)
from aiproxy.providers.partial_json import parse_partial_json

logger = structlog.get_logger()

# Caller option name -> chat completions parameter
_CHAT_OPTION_MAP: dict[str, str] = {
    "temperature": "temperature",
    "topP": "top_p",
    "stopSequences": "stop",
    "seed": "seed",
    "presencePenalty": "presence_penalty",
    "frequencyPenalty": "frequency_penalty",
}

# Headers that describe the upstream connection, not the body
_HOP_BY_HOP_HEADERS = frozenset(
    {
        "connection",
        "content-length",
        "keep-alive",
        "transfer-encoding",
        "upgrade",
    }
)

_SPEECH_MEDIA_TYPES: dict[str, str] = {
    "mp3": "audio/mpeg",
    "opus": "audio/opus",
    "aac": "audio/aac",
    "flac": "audio/flac",
    "wav": "audio/wav",
    "pcm": "audio/pcm",
}


def _classify_openai_error(error: Exception) -> ProviderError:
    """Map OpenAI SDK exceptions to internal error taxonomy.

    Returns a ProviderError subclass instance (does not raise).
    The caller is responsible for raising via ``raise _classify_openai_error(e) from e``.
    """
    if isinstance(error, openai.RateLimitError):
        retry_after = None
        if error.response is not None:
            retry_header = error.response.headers.get("retry-after")
            if retry_header is not None:
                with contextlib.suppress(ValueError):
                    retry_after = float(retry_header)
        return RateLimitError(str(error), retry_after_seconds=retry_after)

    if isinstance(error, openai.AuthenticationError | openai.PermissionDeniedError):
        return AuthenticationError(str(error))

    if isinstance(error, openai.NotFoundError):
        return ModelNotFoundError(str(error))

    if isinstance(error, openai.BadRequestError):
        error_msg = str(error).lower()
        if "context_length" in error_msg:
            return ContextLengthError(str(error))
        if "content_policy" in error_msg:
            return ContentFilterError(str(error))
        return ProviderError(str(error))

    if isinstance(error, openai.APIConnectionError | openai.InternalServerError):
        return TransientError(str(error))

    return ProviderError(str(error))


def _classify_status(status_code: int, body: str) -> ProviderError:
    """Map a raw upstream HTTP status to the error taxonomy."""
    message = f"Upstream returned {status_code}: {body[:500]}"
    if status_code == 429:
        return RateLimitError(message)
    if status_code in (401, 403):
        return AuthenticationError(message)
    if status_code == 404:
        return ModelNotFoundError(message)
    if status_code >= 500:
        return TransientError(message)
    return ProviderError(message)


def _build_messages(params: dict[str, Any]) -> list[dict[str, Any]]:
    """Build the chat messages list from prompt/system/messages options.

    Raises:
        ProviderError: Neither ``prompt`` nor ``messages`` was given.
    """
    messages: list[dict[str, Any]] = []
    system = params.get("system")
    if system:
        messages.append({"role": "system", "content": system})
    if params.get("messages"):
        messages.extend(params["messages"])
    elif params.get("prompt"):
        messages.append({"role": "user", "content": params["prompt"]})
    else:
        raise ProviderError("Either 'prompt' or 'messages' is required")
    return messages


def _usage_from(raw_usage: Any) -> TokenUsage | None:
    """Read prompt/completion counts from an SDK usage object."""
    if raw_usage is None:
        return None
    return TokenUsage(
        input_tokens=getattr(raw_usage, "prompt_tokens", None)
        or getattr(raw_usage, "input_tokens", 0)
        or 0,
        output_tokens=getattr(raw_usage, "completion_tokens", None)
        or getattr(raw_usage, "output_tokens", 0)
        or 0,
    )


def _usage_to_wire(usage: TokenUsage | None) -> dict[str, int] | None:
    if usage is None:
        return None
    return {
        "inputTokens": usage.input_tokens,
        "outputTokens": usage.output_tokens,
        "totalTokens": usage.total_tokens,
    }


def _structured_response_format(params: dict[str, Any]) -> dict[str, Any]:
    schema = params.get("schema")
    if schema is None:
        raise ProviderError("Structured output requested without a schema")
    json_schema: dict[str, Any] = {
        "name": params.get("schemaName") or "response",
        "schema": schema.to_json_schema(),
        "strict": False,
    }
    if params.get("schemaDescription"):
        json_schema["description"] = params["schemaDescription"]
    return {"type": "json_schema", "json_schema": json_schema}


class GatewayModelProvider(ModelProvider):
    """Model provider backed by the AI gateway.

    One instance per gateway key. The httpx client is shared by the SDK
    and by the raw passthrough requests.
    """

    def __init__(self, config: GatewayConfig) -> None:
        """Initialize the gateway clients.

        Args:
            config: Gateway configuration with the project's key.
        """
        self.config = config
        self.http = httpx.AsyncClient(timeout=config.timeout_seconds)
        self.client = AsyncOpenAI(
            api_key=config.api_key,
            base_url=config.base_url,
            timeout=config.timeout_seconds,
            max_retries=config.max_retries,
            http_client=self.http,
        )

    @property
    def provider_name(self) -> str:
        """Return 'gateway'."""
        return "gateway"

    def resolve(self, model_id: str) -> "GatewayModelHandle":
        """Bind a handle for one gateway model id."""
        return GatewayModelHandle(model_id, self)

    async def aclose(self) -> None:
        """Close the underlying HTTP client."""
        await self.client.close()


class GatewayModelHandle(ModelHandle):
    """One model on the AI gateway."""

    def __init__(self, model_id: str, provider: GatewayModelProvider) -> None:
        super().__init__(model_id)
        self.provider = provider
        self.client = provider.client
        self.config = provider.config

    async def invoke(self, kind: OperationKind, params: dict[str, Any]) -> ProducedOutput:
        """Run one operation against the gateway.

        Args:
            kind: Operation to run.
            params: Caller options plus ``model`` and, for structured
                operations, ``schema``.

        Returns:
            ProducedOutput for the operation.

        Raises:
            ProviderError: On any gateway failure.
        """
        logger.info("model_request_start", model=self.model_id, method=kind.value)
        start_time = time.monotonic()
        try:
            match kind:
                case OperationKind.GENERATE_TEXT:
                    output = await self._generate_text(params)
                case OperationKind.GENERATE_OBJECT:
                    output = await self._generate_object(params)
                case OperationKind.STREAM_TEXT:
                    if params.get("passthrough"):
                        output = await self._passthrough_stream(params)
                    else:
                        output = await self._stream_text(params)
                case OperationKind.STREAM_OBJECT:
                    output = await self._stream_object(params)
                case OperationKind.GENERATE_IMAGE:
                    output = await self._generate_image(params)
                case OperationKind.GENERATE_SPEECH:
                    output = await self._generate_speech(params)
                case OperationKind.TRANSCRIBE:
                    output = await self._transcribe(params)
        except openai.OpenAIError as e:
            logger.error(
                "model_request_failed",
                model=self.model_id,
                method=kind.value,
                error=str(e),
                error_type=type(e).__name__,
            )
            raise _classify_openai_error(e) from e
        except httpx.TransportError as e:
            logger.error(
                "model_request_failed",
                model=self.model_id,
                method=kind.value,
                error=str(e),
                error_type=type(e).__name__,
            )
            raise TransientError(str(e)) from e

        logger.info(
            "model_request_complete",
            model=self.model_id,
            method=kind.value,
            latency_ms=(time.monotonic() - start_time) * 1000,
        )
        return output

    # -------------------------------------------------------------------------
    # Text and structured output
    # -------------------------------------------------------------------------

    def _chat_kwargs(self, params: dict[str, Any]) -> dict[str, Any]:
        kwargs: dict[str, Any] = {
            "model": self.model_id,
            "messages": _build_messages(params),
        }
        max_tokens = params.get("maxOutputTokens", params.get("maxTokens"))
        if max_tokens is None:
            max_tokens = self.config.default_max_tokens
        if max_tokens is not None:
            kwargs["max_tokens"] = max_tokens
        for option, parameter in _CHAT_OPTION_MAP.items():
            if params.get(option) is not None:
                kwargs[parameter] = params[option]
        return kwargs

    async def _generate_text(self, params: dict[str, Any]) -> Materialized:
        response = await self.client.chat.completions.create(**self._chat_kwargs(params))
        choice = response.choices[0]
        usage = _usage_from(response.usage)
        return Materialized(
            value={
                "text": choice.message.content or "",
                "finishReason": choice.finish_reason,
                "usage": _usage_to_wire(usage),
                "warnings": [],
                "response": {"id": response.id, "modelId": response.model},
            },
            usage=usage,
            response_id=response.id,
        )

    async def _generate_object(self, params: dict[str, Any]) -> Materialized:
        schema = params.get("schema")
        response = await self.client.chat.completions.create(
            **self._chat_kwargs(params),
            response_format=_structured_response_format(params),
        )
        choice = response.choices[0]
        try:
            parsed = json.loads(choice.message.content or "")
        except ValueError as e:
            raise StructuredOutputError(
                f"Model {self.model_id} returned invalid JSON: {e}"
            ) from e
        issues = schema.validate(parsed)
        if issues:
            raise StructuredOutputError(
                f"Model {self.model_id} output does not match the schema",
                issues=issues,
            )
        usage = _usage_from(response.usage)
        return Materialized(
            value={
                "object": parsed,
                "finishReason": choice.finish_reason,
                "usage": _usage_to_wire(usage),
                "warnings": [],
                "response": {"id": response.id, "modelId": response.model},
            },
            usage=usage,
            response_id=response.id,
        )

    # -------------------------------------------------------------------------
    # Streaming
    # -------------------------------------------------------------------------

    async def _stream_text(self, params: dict[str, Any]) -> ChunkSource:
        stream = await self.client.chat.completions.create(
            **self._chat_kwargs(params),
            stream=True,
            stream_options={"include_usage": True},
        )
        metadata = StreamMetadata()
        return ChunkSource(items=self._text_deltas(stream, metadata), metadata=metadata)

    async def _stream_object(self, params: dict[str, Any]) -> ChunkSource:
        stream = await self.client.chat.completions.create(
            **self._chat_kwargs(params),
            response_format=_structured_response_format(params),
            stream=True,
            stream_options={"include_usage": True},
        )
        metadata = StreamMetadata()
        return ChunkSource(
            items=self._partial_objects(stream, metadata, params["schema"]),
            metadata=metadata,
        )

    async def _text_deltas(
        self,
        stream: Any,
        metadata: StreamMetadata,
    ) -> AsyncIterator[str]:
        """Yield content deltas, recording id/usage/finish reason."""
        try:
            async for chunk in stream:
                if metadata.response_id is None:
                    metadata.response_id = chunk.id
                if chunk.usage is not None:
                    metadata.usage = _usage_from(chunk.usage)
                if not chunk.choices:
                    continue
                choice = chunk.choices[0]
                if choice.finish_reason:
                    metadata.finish_reason = choice.finish_reason
                if choice.delta.content:
                    yield choice.delta.content
        except openai.OpenAIError as e:
            raise StreamSourceError(str(e)) from e
        finally:
            await stream.close()

    async def _partial_objects(
        self,
        stream: Any,
        metadata: StreamMetadata,
        schema: Any,
    ) -> AsyncIterator[Any]:
        """Yield each new partial object, then validate the final one."""
        buffer = ""
        last_partial: Any = None
        async for delta in self._text_deltas(stream, metadata):
            buffer += delta
            partial = parse_partial_json(buffer)
            if partial is not None and partial != last_partial:
                last_partial = partial
                yield partial

        try:
            final = json.loads(buffer)
        except ValueError as e:
            raise StreamSourceError(
                f"Model {self.model_id} streamed invalid JSON: {e}"
            ) from e
        issues = schema.validate(final)
        if issues:
            raise StreamSourceError(
                f"Model {self.model_id} output does not match the schema: "
                + "; ".join(issues)
            )
        if final != last_partial:
            yield final

    async def _passthrough_stream(self, params: dict[str, Any]) -> PassthroughResponse:
        """Forward the gateway's own SSE body without re-framing."""
        body = {**self._chat_kwargs(params), "stream": True}
        request = self.provider.http.build_request(
            "POST",
            f"{self.config.base_url.rstrip('/')}/chat/completions",
            json=body,
            headers={"Authorization": f"Bearer {self.config.api_key}"},
        )
        response = await self.provider.http.send(request, stream=True)
        if response.status_code >= 400:
            detail = (await response.aread()).decode("utf-8", errors="replace")
            await response.aclose()
            raise _classify_status(response.status_code, detail)

        headers = {
            name: value
            for name, value in response.headers.items()
            if name.lower() not in _HOP_BY_HOP_HEADERS
        }
        return PassthroughResponse(
            body=_forward_raw(response),
            headers=headers,
            status_code=response.status_code,
        )

    # -------------------------------------------------------------------------
    # Media
    # -------------------------------------------------------------------------

    async def _generate_image(self, params: dict[str, Any]) -> Materialized:
        prompt = params.get("prompt")
        if not prompt:
            raise ProviderError("'prompt' is required for image generation")
        kwargs: dict[str, Any] = {
            "model": self.model_id,
            "prompt": prompt,
            "n": params.get("n", 1),
            "response_format": "b64_json",
        }
        if params.get("size"):
            kwargs["size"] = params["size"]
        result = await self.client.images.generate(**kwargs)
        images = [
            BinaryPayload(base64.b64decode(item.b64_json), "image/png")
            for item in result.data or []
            if item.b64_json
        ]
        if not images:
            raise ProviderError(f"Model {self.model_id} returned no images")
        usage = _usage_from(getattr(result, "usage", None))
        return Materialized(
            value={
                "image": images[0],
                "images": images,
                "warnings": [],
                "response": {"modelId": self.model_id},
            },
            usage=usage,
        )

    async def _generate_speech(self, params: dict[str, Any]) -> Materialized:
        text = params.get("text")
        if not text:
            raise ProviderError("'text' is required for speech generation")
        output_format = params.get("outputFormat", "mp3")
        kwargs: dict[str, Any] = {
            "model": self.model_id,
            "input": text,
            "voice": params.get("voice", "alloy"),
            "response_format": output_format,
        }
        if params.get("speed") is not None:
            kwargs["speed"] = params["speed"]
        if params.get("instructions"):
            kwargs["instructions"] = params["instructions"]
        response = await self.client.audio.speech.create(**kwargs)
        audio = await response.aread()
        return Materialized(
            value={
                "audio": BinaryPayload(
                    audio, _SPEECH_MEDIA_TYPES.get(output_format, "application/octet-stream")
                ),
                "warnings": [],
                "response": {"modelId": self.model_id},
            },
        )

    async def _transcribe(self, params: dict[str, Any]) -> Materialized:
        audio = params.get("audio")
        if not isinstance(audio, bytes | bytearray):
            raise ProviderError("'audio' must be decoded to bytes before transcription")
        media_type = params.get("mediaType") or "audio/mpeg"
        extension = media_type.split("/")[-1].split(";")[0] or "mp3"
        result = await self.client.audio.transcriptions.create(
            model=self.model_id,
            file=(f"audio.{extension}", bytes(audio), media_type),
        )
        segments = getattr(result, "segments", None) or []
        return Materialized(
            value={
                "text": result.text,
                "segments": [
                    {"text": s.text, "startSecond": s.start, "endSecond": s.end}
                    for s in segments
                ],
                "language": getattr(result, "language", None),
                "durationInSeconds": getattr(result, "duration", None),
                "warnings": [],
                "response": {"modelId": self.model_id},
            },
        )


async def _forward_raw(response: httpx.Response) -> AsyncIterator[bytes]:
    """Yield raw upstream bytes, closing the upstream response at the end."""
    try:
        async for chunk in response.aiter_raw():
            yield chunk
    except httpx.HTTPError as e:
        raise StreamSourceError(str(e)) from e
    finally:
        await response.aclose()
