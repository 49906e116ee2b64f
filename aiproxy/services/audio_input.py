"""Transcription input decoding.

Callers send audio as one of:
- a data URL (``data:audio/wav;base64,...``)
- a bare base64 string
- a byte array (list of ints 0-255)
- the wire form this service emits (``{"base64": ..., "mediaType": ...}``)
- an http(s) URL on a public host, fetched without redirects and with a
  size cap

Everything is decoded to bytes before dispatch so every candidate model
receives the same payload.
"""

import asyncio
import base64
import binascii
import ipaddress
import logging
import socket
from typing import Any

import httpx

from aiproxy.core.config import Settings, settings
from aiproxy.core.errors import ValidationError

logger = logging.getLogger(__name__)

_DATA_URL_PREFIX = "data:"
_FETCH_TIMEOUT = 30.0


def _decode_base64(encoded: str) -> bytes:
    try:
        return base64.b64decode(encoded, validate=True)
    except (binascii.Error, ValueError) as e:
        raise ValidationError("audio is not valid base64") from e


def _decode_byte_array(values: list[Any]) -> bytes:
    try:
        return bytes(values)
    except (TypeError, ValueError) as e:
        raise ValidationError("audio byte array must contain integers 0-255") from e


def _decode_data_url(data_url: str) -> tuple[bytes, str | None]:
    header, sep, payload = data_url.partition(",")
    if not sep:
        raise ValidationError("audio data URL is malformed")
    meta = header[len(_DATA_URL_PREFIX) :]
    parts = meta.split(";")
    media_type = parts[0] or None
    if "base64" not in parts[1:]:
        raise ValidationError("audio data URL must be base64 encoded")
    return _decode_base64(payload), media_type


async def _resolve_host(host: str, port: int) -> list[str]:
    loop = asyncio.get_running_loop()
    infos = await loop.getaddrinfo(host, port, type=socket.SOCK_STREAM)
    return [info[4][0] for info in infos]


def _is_public_address(address: str) -> bool:
    ip = ipaddress.ip_address(address.split("%")[0])
    return ip.is_global and not ip.is_multicast


async def _require_public_host(url: httpx.URL) -> None:
    """Reject URLs whose host is, or resolves to, a non-public address.

    Loopback, private, link-local and reserved ranges are refused.
    """
    host = url.host
    if not host:
        raise ValidationError("audio URL has no host")
    try:
        addresses = [str(ipaddress.ip_address(host))]
    except ValueError:
        port = url.port or (443 if url.scheme == "https" else 80)
        try:
            addresses = await _resolve_host(host, port)
        except OSError as e:
            raise ValidationError("audio URL host could not be resolved") from e
    if not addresses or not all(_is_public_address(a) for a in addresses):
        logger.warning("Refused audio URL on non-public host %s", host)
        raise ValidationError("audio URL must point to a public host")


async def _fetch_audio(
    url: str,
    max_bytes: int,
    http: httpx.AsyncClient | None = None,
) -> tuple[bytes, str | None]:
    try:
        parsed = httpx.URL(url)
    except httpx.InvalidURL as e:
        raise ValidationError("audio URL is malformed") from e
    await _require_public_host(parsed)
    client = http or httpx.AsyncClient(timeout=_FETCH_TIMEOUT)
    try:
        async with client.stream("GET", url, follow_redirects=False) as response:
            if response.is_redirect:
                raise ValidationError("audio URL redirects are not followed")
            if not response.is_success:
                raise ValidationError(f"audio URL returned {response.status_code}")
            declared = response.headers.get("content-length")
            if declared is not None and declared.isdigit() and int(declared) > max_bytes:
                raise ValidationError(f"audio exceeds {max_bytes} bytes")
            chunks: list[bytes] = []
            received = 0
            async for chunk in response.aiter_bytes():
                received += len(chunk)
                if received > max_bytes:
                    raise ValidationError(f"audio exceeds {max_bytes} bytes")
                chunks.append(chunk)
            media_type = response.headers.get("content-type")
    except httpx.HTTPError as e:
        logger.warning("Failed to fetch audio from %s: %s", url, e)
        raise ValidationError("audio URL could not be fetched") from e
    finally:
        if http is None:
            await client.aclose()

    if media_type:
        media_type = media_type.split(";")[0].strip()
    return b"".join(chunks), media_type or None


async def decode_audio(
    audio: Any,
    *,
    app_settings: Settings | None = None,
    http: httpx.AsyncClient | None = None,
) -> tuple[bytes, str | None]:
    """Decode a transcription input into raw bytes.

    Args:
        audio: The caller's ``options.audio`` value.
        app_settings: Settings for the fetch size cap.
        http: HTTP client for URL inputs (a private one when omitted).

    Returns:
        (audio bytes, media type if known).

    Raises:
        ValidationError: Missing, malformed, oversized or unreachable audio.
    """
    source = app_settings or settings
    max_bytes = source.audio_fetch_max_bytes

    if audio is None:
        raise ValidationError("audio is required for transcribe")

    if isinstance(audio, dict):
        if isinstance(audio.get("base64"), str):
            data, media_type = _decode_base64(audio["base64"]), audio.get("mediaType")
        elif isinstance(audio.get("uint8Array"), list):
            data, media_type = _decode_byte_array(audio["uint8Array"]), audio.get("mediaType")
        else:
            raise ValidationError("audio object must carry 'base64' or 'uint8Array'")
    elif isinstance(audio, list):
        data, media_type = _decode_byte_array(audio), None
    elif not isinstance(audio, str) or not audio:
        raise ValidationError("audio must be a data URL, base64 string, byte array or URL")
    elif audio.startswith(_DATA_URL_PREFIX):
        data, media_type = _decode_data_url(audio)
    elif audio.startswith(("http://", "https://")):
        data, media_type = await _fetch_audio(audio, max_bytes, http)
    else:
        data, media_type = _decode_base64(audio), None

    if len(data) > max_bytes:
        raise ValidationError(f"audio exceeds {max_bytes} bytes")
    return data, media_type
