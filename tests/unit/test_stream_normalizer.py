"""Tests for the stream normalizer.

Responses are driven through a fake ASGI ``send`` so the exact sequence of
body messages is observable:
- Materialized values become one JSON document (binary dual-encoded)
- Chunk sources stream one item per message, pulled only after the
  previous message was accepted
- A source failure truncates the body (no terminating message)
- A client disconnect stops pulling and closes the source
"""

import asyncio
import json
from collections.abc import AsyncIterator
from typing import Any

import pytest

from aiproxy.providers.base import (
    BinaryPayload,
    ChunkSource,
    Materialized,
    PassthroughResponse,
)
from aiproxy.providers.errors import StreamSourceError
from aiproxy.providers.mock_adapter import mock_chunk_source
from aiproxy.services.stream_normalizer import (
    NDJSON_MEDIA_TYPE,
    TEXT_MEDIA_TYPE,
    ShapeHint,
    normalize,
    to_wire,
)

_HTTP_SCOPE = {"type": "http", "asgi": {"spec_version": "2.4"}}

# =============================================================================
# Helpers
# =============================================================================


class RecordingSend:
    """ASGI send that records messages and can fail on a given body message."""

    def __init__(self, fail_on_body: int | None = None) -> None:
        self.messages: list[dict[str, Any]] = []
        self._fail_on_body = fail_on_body

    async def __call__(self, message: dict[str, Any]) -> None:
        if message["type"] == "http.response.body" and self._fail_on_body is not None:
            if len(self.bodies) + 1 == self._fail_on_body:
                raise OSError("client went away")
        self.messages.append(message)

    @property
    def bodies(self) -> list[dict[str, Any]]:
        return [m for m in self.messages if m["type"] == "http.response.body"]

    @property
    def headers(self) -> dict[str, str]:
        start = self.messages[0]
        return {k.decode(): v.decode() for k, v in start["headers"]}


async def _never_receive() -> dict[str, Any]:
    await asyncio.Event().wait()
    return {"type": "http.disconnect"}


async def _serve(response, send: RecordingSend) -> None:
    await response(_HTTP_SCOPE, _never_receive, send)


def _closing_source(items: list[Any], events: list[str]) -> AsyncIterator[Any]:
    async def generate() -> AsyncIterator[Any]:
        try:
            for item in items:
                events.append(f"pull:{item}")
                yield item
        finally:
            events.append("closed")

    return generate()


# =============================================================================
# Materialized
# =============================================================================


class TestMaterialized:
    """Complete results become one JSON document."""

    def test_plain_value(self):
        response = normalize(Materialized(value={"text": "hi", "finishReason": "stop"}))

        assert response.status_code == 200
        assert json.loads(response.body) == {"text": "hi", "finishReason": "stop"}
        assert response.headers["content-type"] == "application/json"

    def test_bytes_are_dual_encoded(self):
        response = normalize(Materialized(value={"data": b"\x00\xff"}))

        assert json.loads(response.body) == {
            "data": {"base64": "AP8=", "uint8Array": [0, 255]}
        }

    def test_binary_payload_keeps_media_type(self):
        audio = BinaryPayload(b"ID3", "audio/mpeg")
        response = normalize(Materialized(value={"audio": audio, "nested": [{"raw": b"A"}]}))

        body = json.loads(response.body)
        assert body["audio"] == {
            "base64": "SUQz",
            "uint8Array": [73, 68, 51],
            "mediaType": "audio/mpeg",
        }
        assert body["nested"] == [{"raw": {"base64": "QQ==", "uint8Array": [65]}}]

    def test_to_wire_leaves_plain_data_alone(self):
        assert to_wire({"a": [1, "x", None]}) == {"a": [1, "x", None]}


# =============================================================================
# Chunk sources
# =============================================================================


class TestChunkSource:
    """Incremental bodies."""

    @pytest.mark.asyncio
    async def test_text_items_stream_in_order(self):
        send = RecordingSend()
        response = normalize(mock_chunk_source(["Hel", "lo", " world"]), ShapeHint.TEXT)

        await _serve(response, send)

        assert send.headers["content-type"] == TEXT_MEDIA_TYPE
        assert [m["body"] for m in send.bodies] == [b"Hel", b"lo", b" world", b""]
        assert send.bodies[-1]["more_body"] is False

    @pytest.mark.asyncio
    async def test_structured_items_are_ndjson(self):
        send = RecordingSend()
        items = [{"title": "A"}, {"title": "A", "tags": ["x"]}]
        response = normalize(mock_chunk_source(items), ShapeHint.STRUCTURED)

        await _serve(response, send)

        assert send.headers["content-type"] == NDJSON_MEDIA_TYPE
        lines = [m["body"] for m in send.bodies if m["body"]]
        assert all(line.endswith(b"\n") and line.count(b"\n") == 1 for line in lines)
        assert [json.loads(line) for line in lines] == items

    @pytest.mark.asyncio
    async def test_one_item_in_flight(self):
        """The next item is pulled only after the previous send returned."""
        events: list[str] = []

        class OrderedSend(RecordingSend):
            async def __call__(self, message):
                if message["type"] == "http.response.body" and message["body"]:
                    events.append(f"send:{message['body'].decode()}")
                await super().__call__(message)

        response = normalize(ChunkSource(items=_closing_source(["a", "b", "c"], events)))

        await _serve(response, OrderedSend())

        assert events == [
            "pull:a",
            "send:a",
            "pull:b",
            "send:b",
            "pull:c",
            "send:c",
            "closed",
        ]

    @pytest.mark.asyncio
    async def test_source_error_truncates_body(self):
        send = RecordingSend()
        source = mock_chunk_source(
            ["first", "second", "third"], fail_after=1, error=RuntimeError("upstream reset")
        )
        response = normalize(source)

        with pytest.raises(StreamSourceError, match="upstream reset"):
            await _serve(response, send)

        assert [m["body"] for m in send.bodies] == [b"first"]
        assert all(m["more_body"] for m in send.bodies)

    @pytest.mark.asyncio
    async def test_client_disconnect_stops_pulling(self):
        events: list[str] = []
        send = RecordingSend(fail_on_body=2)
        response = normalize(ChunkSource(items=_closing_source(["a", "b", "c"], events)))

        await response.stream_response(send)

        assert "pull:c" not in events
        assert events[-1] == "closed"
        assert [m["body"] for m in send.bodies] == [b"a"]

    @pytest.mark.asyncio
    async def test_background_skipped_on_client_disconnect(self):
        from starlette.background import BackgroundTask

        ran: list[bool] = []

        async def after() -> None:
            ran.append(True)

        events: list[str] = []
        response = normalize(
            ChunkSource(items=_closing_source(["a", "b", "c"], events)),
            background=BackgroundTask(after),
        )

        await _serve(response, RecordingSend(fail_on_body=2))

        assert ran == []
        assert events[-1] == "closed"

    @pytest.mark.asyncio
    async def test_background_runs_after_clean_close(self):
        from starlette.background import BackgroundTask

        ran: list[bool] = []

        async def after() -> None:
            ran.append(True)

        send = RecordingSend()
        response = normalize(
            mock_chunk_source(["x"]), background=BackgroundTask(after)
        )

        await _serve(response, send)

        assert ran == [True]

    @pytest.mark.asyncio
    async def test_background_skipped_on_source_error(self):
        from starlette.background import BackgroundTask

        ran: list[bool] = []

        async def after() -> None:
            ran.append(True)

        source = mock_chunk_source(["x", "y"], fail_after=1)
        response = normalize(source, background=BackgroundTask(after))

        with pytest.raises(StreamSourceError):
            await _serve(response, RecordingSend())

        assert ran == []


# =============================================================================
# Passthrough
# =============================================================================


class TestPassthrough:
    """Upstream bodies forwarded as-is."""

    @pytest.mark.asyncio
    async def test_upstream_body_and_headers_forwarded(self):
        async def upstream() -> AsyncIterator[bytes]:
            yield b"data: one\n\n"
            yield b"data: two\n\n"

        output = PassthroughResponse(
            body=upstream(),
            headers={"content-type": "text/event-stream", "x-upstream": "1"},
            status_code=200,
        )
        send = RecordingSend()

        await _serve(normalize(output), send)

        assert send.headers["content-type"] == "text/event-stream"
        assert send.headers["x-upstream"] == "1"
        assert send.headers["access-control-allow-origin"] == "*"
        assert b"".join(m["body"] for m in send.bodies) == b"data: one\n\ndata: two\n\n"


# =============================================================================
# Cross-origin headers
# =============================================================================


class TestCrossOriginHeaders:
    """Every variant carries the cross-origin header set."""

    @pytest.mark.parametrize(
        "output",
        [
            Materialized(value={"text": "x"}),
            mock_chunk_source(["x"]),
        ],
    )
    def test_headers_applied(self, output):
        response = normalize(output)

        assert response.headers["access-control-allow-origin"] == "*"
        assert response.headers["access-control-allow-methods"] == "GET, POST, PUT, DELETE, OPTIONS"
        assert response.headers["access-control-allow-headers"] == "Content-Type, Authorization"
        assert response.headers["access-control-max-age"] == "86400"
