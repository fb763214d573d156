# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""HTTP binding client using httpx.

HTTP/1.1 bodies flow one way at a time: a request body is sent whole
before the response starts.  Client-stream, server-stream and half-duplex
calls therefore buffer their requests until ``close_send``;
interleaved full-duplex calls are reported as unsupported.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Iterator
from types import TracebackType
from typing import Any

import httpx

from crosstest.codec import ArrowCodec, Codec, decode_response
from crosstest.errors import Code, RpcError
from crosstest.http._common import (
    FLAG_END_STREAM,
    PROTOCOL_VERSION,
    PROTOCOL_VERSION_HEADER,
    TIMEOUT_HEADER,
    EnvelopeReader,
    encode_envelope,
    error_from_body,
    format_timeout,
    headers_from_metadata,
    metadata_from_headers,
    parse_end_stream,
    stream_content_type,
    unary_content_type,
)
from crosstest.metadata import Metadata
from crosstest.rpc._calls import UnaryResult
from crosstest.service._protocol import MethodSpec

__all__ = ["HttpChannel"]

_logger = logging.getLogger("crosstest.http")


def _transport_error(exc: httpx.HTTPError) -> RpcError:
    if isinstance(exc, httpx.TimeoutException):
        return RpcError(Code.DEADLINE_EXCEEDED, f"deadline exceeded: {exc}")
    return RpcError(Code.UNAVAILABLE, f"{type(exc).__name__}: {exc}")


def _response_metadata(response: httpx.Response) -> tuple[Metadata, Metadata]:
    try:
        return metadata_from_headers(response.headers.multi_items())
    except ValueError as e:
        raise RpcError(Code.INTERNAL, f"malformed response header: {e}") from e


class _HttpStream:
    """One streaming call: requests buffered, then a single POST."""

    def __init__(self, channel: HttpChannel, spec: MethodSpec, headers: Metadata, timeout: float | None) -> None:
        self._channel = channel
        self._spec = spec
        self._request_headers = headers.copy()
        self._deadline = time.monotonic() + timeout if timeout is not None else None
        self._outbound: list[bytes] = []
        self._response: httpx.Response | None = None
        self._chunks: Iterator[bytes] | None = None
        self._reader = EnvelopeReader()
        self._pending: list[tuple[int, bytes]] = []
        self._headers = Metadata()
        self._trailers = Metadata()
        self._ended = False

    def _remaining(self) -> float | None:
        if self._deadline is None:
            return None
        remaining = self._deadline - time.monotonic()
        if remaining <= 0:
            raise RpcError(Code.DEADLINE_EXCEEDED, "deadline exceeded")
        return remaining

    def send(self, message: Any) -> None:
        if self._response is not None:
            raise RpcError(Code.FAILED_PRECONDITION, "HTTP streams cannot send after the request body was sent")
        self._remaining()
        self._outbound.append(encode_envelope(self._channel.codec.encode(message)))

    def close_send(self) -> None:
        if self._response is not None:
            return
        remaining = self._remaining()
        body = b"".join(self._outbound)
        self._outbound.clear()
        self._response = self._channel._post(self._spec, body, self._request_headers, remaining, stream=True)
        if self._response.status_code != 200:
            content = self._response.read()
            self._response.close()
            self._ended = True
            error = error_from_body(content, self._response.status_code)
            error.headers, error.trailers = _response_metadata(self._response)
            raise error
        self._headers, _ = _response_metadata(self._response)
        self._chunks = self._response.iter_bytes()

    def _next_envelope(self) -> tuple[int, bytes] | None:
        while not self._pending:
            if self._chunks is None:
                raise RpcError(Code.FAILED_PRECONDITION, "response body is not open; close the request stream first")
            try:
                chunk = next(self._chunks)
            except StopIteration:
                return None
            except httpx.HTTPError as e:
                raise _transport_error(e) from e
            self._pending.extend(self._reader.feed(chunk))
        return self._pending.pop(0)

    def receive(self) -> Any | None:
        if self._ended:
            return None
        if self._response is None:
            raise RpcError(
                Code.FAILED_PRECONDITION, "HTTP streams deliver responses only after the request stream is closed"
            )
        envelope = self._next_envelope()
        if envelope is None:
            self._finish()
            if self._reader.pending:
                raise RpcError(Code.INTERNAL, "response body ends inside an envelope", headers=self._headers)
            raise RpcError(Code.INTERNAL, "response ended without an end-of-stream message", headers=self._headers)
        flags, data = envelope
        if flags & FLAG_END_STREAM:
            self._finish()
            error, self._trailers = parse_end_stream(data)
            if error is not None:
                error.headers = self._headers.copy()
                raise error
            return None
        return decode_response(self._channel.codec, data, self._spec.response_type)

    def _finish(self) -> None:
        self._ended = True
        if self._response is not None:
            self._response.close()

    def headers(self) -> Metadata:
        return self._headers.copy()

    def trailers(self) -> Metadata:
        return self._trailers.copy()

    def cancel(self) -> None:
        self._finish()


class HttpChannel:
    """Channel speaking the HTTP binding to ``base_url``.

    Args:
        base_url: Server root, e.g. ``http://127.0.0.1:8080``; a route
            prefix may be included.
        codec: Message codec; Arrow IPC by default.
        client: Optional pre-configured ``httpx.Client``.  When omitted
            the channel creates and owns one.

    """

    protocol = "http"

    def __init__(self, base_url: str, *, codec: Codec | None = None, client: httpx.Client | None = None) -> None:
        """Create the channel."""
        self.base_url = base_url.rstrip("/")
        self.codec = codec or ArrowCodec()
        self._owns_client = client is None
        self._client = client if client is not None else httpx.Client(timeout=None)

    def supports(self, method: MethodSpec) -> bool:
        """Everything except interleaved full-duplex streaming."""
        return not method.full_duplex

    def _post(
        self, spec: MethodSpec, body: bytes, headers: Metadata, timeout: float | None, *, stream: bool
    ) -> httpx.Response:
        content_type = stream_content_type(self.codec.name) if stream else unary_content_type(self.codec.name)
        request_headers = [
            ("content-type", content_type),
            (PROTOCOL_VERSION_HEADER, PROTOCOL_VERSION),
            *headers_from_metadata(headers),
        ]
        if timeout is not None:
            request_headers.append((TIMEOUT_HEADER, format_timeout(timeout)))
        request = self._client.build_request(
            "POST",
            f"{self.base_url}{spec.path}",
            content=body,
            headers=request_headers,
            timeout=httpx.Timeout(timeout) if timeout is not None else None,
        )
        _logger.debug("POST %s (%d bytes)", spec.path, len(body), extra={"method": spec.name, "timeout": timeout})
        try:
            return self._client.send(request, stream=stream)
        except httpx.HTTPError as e:
            raise _transport_error(e) from e

    def unary(
        self, method: MethodSpec, request: Any, *, headers: Metadata, timeout: float | None
    ) -> UnaryResult[Any]:
        """POST one message and decode the reply."""
        response = self._post(method, self.codec.encode(request), headers, timeout, stream=False)
        response_headers, trailers = _response_metadata(response)
        if response.status_code != 200:
            error = error_from_body(response.content, response.status_code)
            error.headers, error.trailers = response_headers, trailers
            raise error
        message = decode_response(self.codec, response.content, method.response_type)
        return UnaryResult(message, response_headers, trailers)

    def open_stream(self, method: MethodSpec, *, headers: Metadata, timeout: float | None) -> _HttpStream:
        """Open a buffered streaming call."""
        if not self.supports(method):
            raise RpcError(
                Code.UNIMPLEMENTED, f"{method.path} needs full-duplex streaming, which HTTP/1.1 cannot carry"
            )
        return _HttpStream(self, method, headers, timeout)

    def close(self) -> None:
        """Close the owned ``httpx.Client``."""
        if self._owns_client:
            self._client.close()

    def __enter__(self) -> HttpChannel:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        self.close()

    def __repr__(self) -> str:
        return f"HttpChannel({self.base_url!r}, codec={self.codec!r})"
