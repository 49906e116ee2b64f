"""Stream normalizer.

Turns a ProducedOutput into the HTTP response sent to the caller:

- PassthroughResponse: upstream body forwarded as-is; cross-origin headers
  merged onto the upstream headers
- ChunkSource, text shape: chunked ``text/plain`` body, one chunk per item
- ChunkSource, structured shape: chunked NDJSON body, one JSON document
  per line
- Materialized: a single JSON document; bytes become
  ``{"base64": ..., "uint8Array": [...]}``

BACKPRESSURE:
ASGI ``send`` returns only once the server has accepted the message, and
the next item is pulled only after that. At most one chunk is in flight
and nothing is buffered ahead of the client.

FAILURE MODES:
- Client disconnect: ``send`` raises OSError; pulling stops, the source
  is closed and the background task is dropped. Nothing is re-raised.
- Source error after the headers went out: logged, the source is closed,
  and StreamSourceError is raised so the server drops the connection
  without writing the terminating chunk. The client sees a truncated body,
  never a trailing error payload.
"""

import base64
import json
import logging
from collections.abc import AsyncIterator, Callable
from enum import Enum
from typing import Any, assert_never

from fastapi.encoders import jsonable_encoder
from starlette.background import BackgroundTask
from starlette.responses import JSONResponse, Response, StreamingResponse
from starlette.types import Send

from aiproxy.core.cors import apply_cross_origin_headers
from aiproxy.providers.base import (
    BinaryPayload,
    ChunkSource,
    Materialized,
    PassthroughResponse,
    ProducedOutput,
)
from aiproxy.providers.errors import StreamSourceError

logger = logging.getLogger(__name__)

TEXT_MEDIA_TYPE = "text/plain; charset=utf-8"
NDJSON_MEDIA_TYPE = "application/x-ndjson"


class ShapeHint(Enum):
    """How chunk source items are framed."""

    TEXT = "text"
    STRUCTURED = "structured"


def _encode_bytes(data: bytes | bytearray) -> dict[str, Any]:
    return {
        "base64": base64.b64encode(bytes(data)).decode("ascii"),
        "uint8Array": list(data),
    }


def _encode_payload(payload: BinaryPayload) -> dict[str, Any]:
    encoded = _encode_bytes(payload.data)
    encoded["mediaType"] = payload.media_type
    return encoded


_WIRE_ENCODERS: dict[Any, Callable[[Any], Any]] = {
    bytes: _encode_bytes,
    bytearray: _encode_bytes,
    BinaryPayload: _encode_payload,
}


def to_wire(value: Any) -> Any:
    """Convert a result value into JSON-compatible data.

    Binary data appears twice: as a base64 string and as a byte array.
    """
    return jsonable_encoder(value, custom_encoder=_WIRE_ENCODERS)


def _encode_text(item: Any) -> bytes:
    if isinstance(item, bytes):
        return item
    return str(item).encode("utf-8")


def _encode_json_line(item: Any) -> bytes:
    return (json.dumps(to_wire(item), ensure_ascii=False) + "\n").encode("utf-8")


async def _close_iterator(iterator: AsyncIterator[Any]) -> None:
    aclose = getattr(iterator, "aclose", None)
    if aclose is not None:
        await aclose()


async def _encode_items(
    items: AsyncIterator[Any],
    encode: Callable[[Any], bytes],
) -> AsyncIterator[bytes]:
    """Pull one item, encode it, hand it over; repeat."""
    try:
        async for item in items:
            yield encode(item)
    except StreamSourceError:
        raise
    except Exception as e:
        raise StreamSourceError(str(e)) from e
    finally:
        await _close_iterator(items)


class ChunkStreamingResponse(StreamingResponse):
    """StreamingResponse that stops on disconnect and aborts on source errors."""

    async def stream_response(self, send: Send) -> None:
        await send(
            {
                "type": "http.response.start",
                "status": self.status_code,
                "headers": self.raw_headers,
            }
        )
        try:
            async for chunk in self.body_iterator:
                if not isinstance(chunk, bytes | memoryview):
                    chunk = chunk.encode(self.charset)
                try:
                    await send(
                        {"type": "http.response.body", "body": chunk, "more_body": True}
                    )
                except OSError:
                    logger.info("Client disconnected mid-stream, stopping")
                    # The body never fully left, so post-response work is void.
                    self.background = None
                    return
        except StreamSourceError as e:
            logger.warning("Stream source failed mid-response, truncating: %s", e)
            raise
        finally:
            await _close_iterator(self.body_iterator)

        await send({"type": "http.response.body", "body": b"", "more_body": False})


def normalize(
    output: ProducedOutput,
    shape: ShapeHint = ShapeHint.TEXT,
    *,
    background: BackgroundTask | None = None,
) -> Response:
    """Build the outbound response for a produced output.

    Args:
        output: What the backend produced.
        shape: Framing for ChunkSource items (ignored for other variants).
        background: Task run after the body has been fully sent.

    Returns:
        Response with cross-origin headers applied.
    """
    response: Response
    match output:
        case PassthroughResponse(body=body, headers=headers, status_code=status_code):
            response = ChunkStreamingResponse(
                body,
                status_code=status_code,
                headers=headers,
                background=background,
            )
        case ChunkSource(items=items):
            if shape is ShapeHint.STRUCTURED:
                body_iterator = _encode_items(items, _encode_json_line)
                media_type = NDJSON_MEDIA_TYPE
            else:
                body_iterator = _encode_items(items, _encode_text)
                media_type = TEXT_MEDIA_TYPE
            response = ChunkStreamingResponse(
                body_iterator,
                media_type=media_type,
                background=background,
            )
        case Materialized(value=value):
            response = JSONResponse(content=to_wire(value), background=background)
        case _:
            assert_never(output)

    apply_cross_origin_headers(response.headers)
    return response
