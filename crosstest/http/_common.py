# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Shared constants, envelope framing and error bodies for the HTTP binding."""

from __future__ import annotations

import json
import struct
from collections.abc import Iterable, Iterator
from typing import Any, Final

from crosstest.errors import Code, RpcError, code_from_http_status
from crosstest.metadata import Metadata, decode_binary_header, encode_binary_header, is_binary_key
from crosstest.utils import wire_debug_enabled, wire_log

PROTOCOL_VERSION_HEADER: Final = "connect-protocol-version"
PROTOCOL_VERSION: Final = "1"
TIMEOUT_HEADER: Final = "connect-timeout-ms"
TRAILER_PREFIX: Final = "trailer-"

_UNARY_CONTENT_PREFIX: Final = "application/"
_STREAM_CONTENT_PREFIX: Final = "application/connect+"
_ERROR_CONTENT_TYPE: Final = "application/json"

FLAG_END_STREAM: Final = 0x02
_ENVELOPE_HEADER = struct.Struct(">BI")
ENVELOPE_HEADER_SIZE: Final = _ENVELOPE_HEADER.size

# Headers owned by HTTP or the protocol itself, never surfaced as metadata.
_PROTOCOL_HEADERS: Final = frozenset(
    {
        "accept",
        "accept-encoding",
        "connect-accept-encoding",
        "connect-content-encoding",
        "connection",
        "content-encoding",
        "content-length",
        "content-type",
        "date",
        "host",
        "server",
        "te",
        "transfer-encoding",
        "user-agent",
        "via",
        PROTOCOL_VERSION_HEADER,
        TIMEOUT_HEADER,
    }
)


class _RpcHttpError(Exception):
    """Internal exception for requests rejected before dispatch."""

    __slots__ = ("error", "status_code")

    def __init__(self, error: RpcError, *, status_code: int | None = None) -> None:
        self.error = error
        self.status_code = status_code if status_code is not None else error.code.http_status


# ---------------------------------------------------------------------------
# Content types
# ---------------------------------------------------------------------------


def unary_content_type(codec_name: str) -> str:
    """Content type of a unary body, ``application/<codec>``."""
    return f"{_UNARY_CONTENT_PREFIX}{codec_name}"


def stream_content_type(codec_name: str) -> str:
    """Content type of a streaming body, ``application/connect+<codec>``."""
    return f"{_STREAM_CONTENT_PREFIX}{codec_name}"


def parse_content_type(content_type: str) -> tuple[bool, str]:
    """Split a content type into ``(is_stream, codec_name)``.

    Raises:
        ValueError: If the content type is not one this binding speaks.

    """
    media = content_type.split(";", 1)[0].strip().lower()
    if media.startswith(_STREAM_CONTENT_PREFIX):
        return True, media[len(_STREAM_CONTENT_PREFIX) :]
    if media.startswith(_UNARY_CONTENT_PREFIX):
        return False, media[len(_UNARY_CONTENT_PREFIX) :]
    raise ValueError(f"Unsupported content type {content_type!r}")


# ---------------------------------------------------------------------------
# Metadata <-> HTTP headers
# ---------------------------------------------------------------------------


def metadata_from_headers(headers: Iterable[tuple[str, str]]) -> tuple[Metadata, Metadata]:
    """Split HTTP headers into ``(headers, trailers)`` metadata.

    ``trailer-``-prefixed headers become trailers (unary responses);
    protocol headers are dropped.

    Raises:
        ValueError: If a ``-bin`` value is not valid base64.

    """
    md = Metadata()
    trailers = Metadata()
    for name, value in headers:
        key = name.lower()
        if key in _PROTOCOL_HEADERS:
            continue
        target = md
        if key.startswith(TRAILER_PREFIX):
            key = key[len(TRAILER_PREFIX) :]
            target = trailers
        for part in _split_values(key, value):
            target.add(key, decode_binary_header(part) if is_binary_key(key) else part)
    return md, trailers


def _split_values(key: str, value: str) -> list[str]:
    # WSGI servers fold repeated headers with commas; base64 never contains one.
    if is_binary_key(key):
        return [v.strip() for v in value.split(",")]
    return [value]


def headers_from_metadata(md: Metadata, *, prefix: str = "") -> list[tuple[str, str]]:
    """Render metadata as HTTP header pairs, optionally prefixing each key."""
    return [(f"{prefix}{key}", value) for key, value in md.to_text_pairs()]


def parse_timeout(value: str | None) -> float | None:
    """Parse ``connect-timeout-ms`` into seconds.

    Raises:
        ValueError: If the header is present but not a non-negative integer.

    """
    if value is None or value == "":
        return None
    millis = int(value)
    if millis < 0:
        raise ValueError(f"negative {TIMEOUT_HEADER}: {value}")
    return millis / 1000


def format_timeout(seconds: float) -> str:
    """Render a timeout for ``connect-timeout-ms``; at least 1ms."""
    return str(max(1, round(seconds * 1000)))


# ---------------------------------------------------------------------------
# Error bodies
# ---------------------------------------------------------------------------


def error_to_json(error: RpcError) -> dict[str, Any]:
    """Render *error* as a Connect error object."""
    obj: dict[str, Any] = {"code": error.code.wire_name}
    if error.message:
        obj["message"] = error.message
    return obj


def error_from_json(obj: Any, *, http_status: int | None = None) -> RpcError:
    """Parse a Connect error object, falling back to the HTTP status."""
    if isinstance(obj, dict) and isinstance(obj.get("code"), str):
        message = obj.get("message", "")
        return RpcError(Code.from_wire_name(obj["code"]), message if isinstance(message, str) else str(message))
    code = code_from_http_status(http_status) if http_status is not None else Code.UNKNOWN
    return RpcError(code, f"HTTP {http_status}" if http_status is not None else "malformed error")


def error_from_body(body: bytes, http_status: int) -> RpcError:
    """Parse the body of a non-200 response into an error."""
    try:
        obj = json.loads(body) if body else None
    except ValueError:
        obj = None
    return error_from_json(obj, http_status=http_status)


def end_stream_body(error: RpcError | None, trailers: Metadata) -> bytes:
    """Serialize the end-of-stream message: final status and trailers."""
    obj: dict[str, Any] = {}
    if error is not None:
        obj["error"] = error_to_json(error)
    if trailers:
        metadata: dict[str, list[str]] = {}
        for key, value in trailers.items():
            metadata.setdefault(key, []).append(encode_binary_header(value) if isinstance(value, bytes) else value)
        obj["metadata"] = metadata
    return json.dumps(obj).encode("utf-8")


def parse_end_stream(body: bytes) -> tuple[RpcError | None, Metadata]:
    """Parse an end-of-stream message into ``(error, trailers)``.

    Raises:
        RpcError: ``INTERNAL`` if the message is malformed.

    """
    try:
        obj = json.loads(body) if body else {}
        if not isinstance(obj, dict):
            raise TypeError("end-of-stream message is not an object")
        trailers = Metadata()
        for key, values in (obj.get("metadata") or {}).items():
            for value in values:
                trailers.add(key, decode_binary_header(value) if is_binary_key(key) else value)
    except (ValueError, TypeError, AttributeError) as e:
        raise RpcError(Code.INTERNAL, f"malformed end-of-stream message: {e}") from e
    error = error_from_json(obj["error"]) if obj.get("error") else None
    if error is not None:
        error.trailers = trailers.copy()
    return error, trailers


# ---------------------------------------------------------------------------
# Envelope framing
# ---------------------------------------------------------------------------


def encode_envelope(data: bytes, flags: int = 0) -> bytes:
    """Frame *data* as ``flags(1) | length(4, big-endian) | data``."""
    if wire_debug_enabled():
        wire_log().debug("envelope_write", flags=flags, nbytes=len(data))
    return _ENVELOPE_HEADER.pack(flags, len(data)) + data


class EnvelopeReader:
    """Incremental envelope parser fed with arbitrary byte chunks."""

    __slots__ = ("_buffer",)

    def __init__(self) -> None:
        """Initialize with an empty buffer."""
        self._buffer = bytearray()

    def feed(self, chunk: bytes) -> Iterator[tuple[int, bytes]]:
        """Add *chunk* and yield every complete ``(flags, data)`` envelope."""
        self._buffer.extend(chunk)
        while len(self._buffer) >= ENVELOPE_HEADER_SIZE:
            flags, length = _ENVELOPE_HEADER.unpack_from(self._buffer)
            end = ENVELOPE_HEADER_SIZE + length
            if len(self._buffer) < end:
                return
            data = bytes(self._buffer[ENVELOPE_HEADER_SIZE:end])
            del self._buffer[:end]
            if wire_debug_enabled():
                wire_log().debug("envelope_read", flags=flags, nbytes=length)
            yield flags, data

    @property
    def pending(self) -> int:
        """Bytes of an incomplete envelope still buffered."""
        return len(self._buffer)


def split_envelopes(body: bytes) -> list[tuple[int, bytes]]:
    """Split a complete body into envelopes.

    Raises:
        RpcError: ``INVALID_ARGUMENT`` if the body ends mid-envelope.

    """
    reader = EnvelopeReader()
    envelopes = list(reader.feed(body))
    if reader.pending:
        raise RpcError(Code.INVALID_ARGUMENT, f"request body ends inside an envelope ({reader.pending} bytes left)")
    return envelopes
