"""Mock model provider for testing.

MockModelProvider lets the dispatcher, gateway and normalizer be exercised
without hitting the AI gateway. Outputs and failures are scripted per
model id, and every invocation is recorded.
"""

from collections.abc import AsyncIterator, Callable, Iterable
from typing import Any

from aiproxy.providers.base import (
    BinaryPayload,
    ChunkSource,
    Materialized,
    ModelHandle,
    ModelProvider,
    OperationKind,
    ProducedOutput,
    StreamMetadata,
    TokenUsage,
)

OutputFactory = Callable[[OperationKind, dict[str, Any]], ProducedOutput]
ScriptedOutput = ProducedOutput | BaseException | OutputFactory


def mock_chunk_source(
    items: Iterable[Any],
    *,
    response_id: str | None = None,
    usage: TokenUsage | None = None,
    fail_after: int | None = None,
    error: BaseException | None = None,
) -> ChunkSource:
    """Build a ChunkSource over fixed items.

    Args:
        items: Items to yield in order.
        response_id: Recorded on the metadata when the first item is pulled.
        usage: Recorded on the metadata once the items are exhausted.
        fail_after: Raise ``error`` after yielding this many items.
        error: Exception raised when ``fail_after`` is reached.

    Returns:
        ChunkSource over the items.
    """
    metadata = StreamMetadata()
    materialized = list(items)

    async def generate() -> AsyncIterator[Any]:
        pulled = 0
        for item in materialized:
            if fail_after is not None and pulled >= fail_after:
                raise error or RuntimeError("mock stream failure")
            if metadata.response_id is None:
                metadata.response_id = response_id
            pulled += 1
            yield item
        if fail_after is not None and pulled >= fail_after:
            raise error or RuntimeError("mock stream failure")
        metadata.usage = usage
        metadata.finish_reason = "stop"

    return ChunkSource(items=generate(), metadata=metadata)


class MockModelProvider(ModelProvider):
    """Mock provider for testing.

    Attributes:
        outputs: Scripted result per model id. A value can be a
            ProducedOutput, an exception instance (raised), or a callable
            ``(kind, params) -> ProducedOutput`` for fresh streams per call.
        calls: Record of all invocations for test assertions.
    """

    @property
    def provider_name(self) -> str:
        """Return 'mock' for testing."""
        return "mock"

    def __init__(self, outputs: dict[str, ScriptedOutput] | None = None) -> None:
        self.outputs: dict[str, ScriptedOutput] = dict(outputs) if outputs else {}
        self.calls: list[dict[str, Any]] = []

    def set_output(self, model_id: str, output: ScriptedOutput) -> None:
        """Set or replace the scripted result for a model."""
        self.outputs[model_id] = output

    def set_failure(self, model_id: str, error: BaseException) -> None:
        """Make a model raise ``error`` on every invocation."""
        self.outputs[model_id] = error

    def resolve(self, model_id: str) -> "MockModelHandle":
        """Bind a mock handle."""
        return MockModelHandle(model_id, self)

    @property
    def attempted_models(self) -> list[str]:
        """Model ids in invocation order."""
        return [call["model"] for call in self.calls]


class MockModelHandle(ModelHandle):
    """Handle returned by MockModelProvider."""

    def __init__(self, model_id: str, provider: MockModelProvider) -> None:
        super().__init__(model_id)
        self.provider = provider

    async def invoke(self, kind: OperationKind, params: dict[str, Any]) -> ProducedOutput:
        """Record the call and return (or raise) the scripted result."""
        self.provider.calls.append({"model": self.model_id, "kind": kind, "params": params})

        scripted = self.provider.outputs.get(self.model_id)
        if scripted is None:
            return _default_output(self.model_id, kind)
        if isinstance(scripted, BaseException):
            raise scripted
        if callable(scripted):
            return scripted(kind, params)
        return scripted


def _default_output(model_id: str, kind: OperationKind) -> ProducedOutput:
    usage = TokenUsage(input_tokens=10, output_tokens=20)
    match kind:
        case OperationKind.STREAM_TEXT:
            return mock_chunk_source(
                ["Mock ", "response"], response_id=f"mock-{model_id}", usage=usage
            )
        case OperationKind.STREAM_OBJECT:
            return mock_chunk_source([{}], response_id=f"mock-{model_id}", usage=usage)
        case OperationKind.GENERATE_OBJECT:
            return Materialized(value={"object": {}, "warnings": []}, usage=usage)
        case OperationKind.GENERATE_IMAGE:
            image = BinaryPayload(b"\x89PNG", "image/png")
            return Materialized(value={"image": image, "images": [image], "warnings": []})
        case OperationKind.GENERATE_SPEECH:
            return Materialized(
                value={"audio": BinaryPayload(b"ID3", "audio/mpeg"), "warnings": []}
            )
        case OperationKind.TRANSCRIBE:
            return Materialized(value={"text": "Mock transcript", "warnings": []})
        case _:
            return Materialized(
                value={"text": f"Mock response from {model_id}", "warnings": []},
                usage=usage,
            )
