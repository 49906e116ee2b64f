"""Model backend interface and produced-output types.

A backend is reached in two steps: ``ModelProvider.resolve(model_id)``
binds a handle for one model, and ``ModelHandle.invoke(kind, params)``
runs one operation on it. The dispatcher only ever sees these two calls,
so swapping the upstream client (or a mock) never touches fallback logic.

Every invocation returns exactly one ``ProducedOutput`` variant:

- ``PassthroughResponse``: upstream already produced an HTTP body; forward it
- ``ChunkSource``: incremental items (text deltas or partial objects)
- ``Materialized``: one complete value (text, object, image, audio, ...)

WHY A CLOSED UNION:
The normalizer matches on these three types exhaustively instead of
probing results for methods or fields.
"""

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class OperationKind(Enum):
    """The seven operations a caller can request.

    Values are the wire names used in the request body's ``method`` field.
    """

    GENERATE_TEXT = "generateText"
    GENERATE_OBJECT = "generateObject"
    STREAM_TEXT = "streamText"
    STREAM_OBJECT = "streamObject"
    GENERATE_IMAGE = "generateImage"
    GENERATE_SPEECH = "generateSpeech"
    TRANSCRIBE = "transcribe"

    @property
    def is_structured(self) -> bool:
        """True for operations that need a schema."""
        return self in (OperationKind.GENERATE_OBJECT, OperationKind.STREAM_OBJECT)


@dataclass(frozen=True)
class TokenUsage:
    """Token counts for one call.

    Attributes:
        input_tokens: Prompt tokens.
        output_tokens: Completion tokens.
    """

    input_tokens: int = 0
    output_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


@dataclass(frozen=True)
class BinaryPayload:
    """Generated file bytes (image, audio) with their media type."""

    data: bytes
    media_type: str | None = None


@dataclass
class StreamMetadata:
    """Facts about a stream that are only known while it is consumed.

    Filled in by the producing generator; read after the body is sent.

    Attributes:
        response_id: Backend generation id (first chunk carries it).
        usage: Final token usage, when the backend reports it inline.
        finish_reason: Why generation stopped.
    """

    response_id: str | None = None
    usage: TokenUsage | None = None
    finish_reason: str | None = None


@dataclass(frozen=True)
class PassthroughResponse:
    """An upstream HTTP body forwarded unchanged.

    Attributes:
        body: Raw upstream bytes.
        headers: Upstream response headers worth forwarding.
        status_code: Upstream status code.
        metadata: Stream facts, when the adapter can observe them.
    """

    body: AsyncIterator[bytes]
    headers: dict[str, str] = field(default_factory=dict)
    status_code: int = 200
    metadata: StreamMetadata = field(default_factory=StreamMetadata)


@dataclass(frozen=True)
class ChunkSource:
    """An incremental sequence of items pulled one at a time.

    Attributes:
        items: Text deltas (str) or partial structured values (dict/list).
        metadata: Filled in while ``items`` is consumed.
    """

    items: AsyncIterator[Any]
    metadata: StreamMetadata = field(default_factory=StreamMetadata)


@dataclass(frozen=True)
class Materialized:
    """A complete result.

    Attributes:
        value: JSON-ready result; ``bytes`` values are allowed anywhere and
            are encoded by the normalizer.
        usage: Token usage for metering, when the backend reports it.
        response_id: Backend generation id.
    """

    value: dict[str, Any]
    usage: TokenUsage | None = None
    response_id: str | None = None


ProducedOutput = PassthroughResponse | ChunkSource | Materialized


class ModelHandle(ABC):
    """A backend bound to one model id."""

    def __init__(self, model_id: str) -> None:
        self.model_id = model_id

    @abstractmethod
    async def invoke(self, kind: OperationKind, params: dict[str, Any]) -> ProducedOutput:
        """Run one operation.

        Streaming operations must fail here (not on first iteration) when
        the backend rejects the request, so the dispatcher can move on to
        the next candidate.

        Args:
            kind: Operation to run.
            params: Caller options plus ``model`` (this handle's id) and,
                for structured operations, ``schema`` (a compiled schema).

        Returns:
            One ProducedOutput variant.

        Raises:
            ProviderError: On any backend failure.
        """
        ...


class ModelProvider(ABC):
    """Factory of model handles.

    WHY ABSTRACT CLASS:
    - The dispatcher depends on resolve/invoke only
    - Tests swap in MockModelProvider without touching HTTP
    """

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Return the provider identifier (e.g., 'gateway', 'mock')."""
        ...

    @abstractmethod
    def resolve(self, model_id: str) -> ModelHandle:
        """Bind a handle for ``model_id``.

        Args:
            model_id: Provider-qualified model id (e.g., "openai/gpt-5").

        Returns:
            Handle for that model.
        """
        ...
