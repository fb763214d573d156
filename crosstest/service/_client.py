# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Typed Test Service client, written once for every binding."""

from __future__ import annotations

from types import TracebackType
from typing import Any, TypeAlias

from crosstest.errors import Code, RpcError
from crosstest.metadata import Metadata
from crosstest.rpc._calls import BidiStreamCall, Channel, ClientStreamCall, ServerStreamCall, UnaryResult
from crosstest.service._messages import (
    Empty,
    SimpleRequest,
    SimpleResponse,
    StreamingInputCallRequest,
    StreamingInputCallResponse,
    StreamingOutputCallRequest,
    StreamingOutputCallResponse,
)
from crosstest.service._protocol import (
    EMPTY_CALL,
    FAIL_UNARY_CALL,
    FULL_DUPLEX_CALL,
    HALF_DUPLEX_CALL,
    STREAMING_INPUT_CALL,
    STREAMING_OUTPUT_CALL,
    UNARY_CALL,
    UNIMPLEMENTED_CALL,
    UNIMPLEMENTED_SERVICE_CALL,
    MethodSpec,
)

__all__ = ["TestServiceClient"]

Headers: TypeAlias = Metadata | dict[str, str | bytes] | None


def _metadata(headers: Headers) -> Metadata:
    if headers is None:
        return Metadata()
    if isinstance(headers, Metadata):
        return headers.copy()
    return Metadata(headers)


class TestServiceClient:
    """Client for ``grpc.testing.TestService`` over any :class:`Channel`.

    Every method accepts ``headers=`` (request metadata) and ``timeout=``
    (seconds until the call's deadline).  Unary methods return a
    :class:`UnaryResult` with the response and its metadata; streaming
    methods return a call object the caller drives.

    Usage::

        with TestServiceClient(LocalChannel(ReferenceServer())) as client:
            result = client.unary_call(SimpleRequest(response_size=10))

    """

    __test__ = False

    def __init__(self, channel: Channel) -> None:
        """Wrap *channel*; the client takes ownership and closes it."""
        self.channel = channel

    @property
    def protocol(self) -> str:
        """Name of the channel's binding."""
        return self.channel.protocol

    def supports(self, method: MethodSpec) -> bool:
        """Whether the channel can carry calls to *method*."""
        return self.channel.supports(method)

    def _check_supported(self, method: MethodSpec) -> None:
        if not self.channel.supports(method):
            raise RpcError(Code.UNIMPLEMENTED, f"{method.path} cannot be carried by the {self.protocol} channel")

    def _unary(self, method: MethodSpec, request: object, headers: Headers, timeout: float | None) -> UnaryResult[Any]:
        self._check_supported(method)
        return self.channel.unary(method, request, headers=_metadata(headers), timeout=timeout)

    def empty_call(
        self, request: Empty | None = None, *, headers: Headers = None, timeout: float | None = None
    ) -> UnaryResult[Empty]:
        """Round-trip an empty message."""
        return self._unary(EMPTY_CALL, request or Empty(), headers, timeout)

    def unary_call(
        self, request: SimpleRequest, *, headers: Headers = None, timeout: float | None = None
    ) -> UnaryResult[SimpleResponse]:
        """Request a payload of ``request.response_size`` bytes."""
        return self._unary(UNARY_CALL, request, headers, timeout)

    def fail_unary_call(
        self, request: SimpleRequest | None = None, *, headers: Headers = None, timeout: float | None = None
    ) -> UnaryResult[SimpleResponse]:
        """Call the method that always fails."""
        return self._unary(FAIL_UNARY_CALL, request or SimpleRequest(), headers, timeout)

    def unimplemented_call(
        self, request: Empty | None = None, *, headers: Headers = None, timeout: float | None = None
    ) -> UnaryResult[Empty]:
        """Call the declared-but-unimplemented method."""
        return self._unary(UNIMPLEMENTED_CALL, request or Empty(), headers, timeout)

    def unimplemented_service_call(
        self, request: Empty | None = None, *, headers: Headers = None, timeout: float | None = None
    ) -> UnaryResult[Empty]:
        """Call a method of a service no server registers."""
        return self._unary(UNIMPLEMENTED_SERVICE_CALL, request or Empty(), headers, timeout)

    def streaming_output_call(
        self, request: StreamingOutputCallRequest, *, headers: Headers = None, timeout: float | None = None
    ) -> ServerStreamCall[StreamingOutputCallResponse]:
        """Start a server stream; iterate the result to read responses."""
        self._check_supported(STREAMING_OUTPUT_CALL)
        transport = self.channel.open_stream(STREAMING_OUTPUT_CALL, headers=_metadata(headers), timeout=timeout)
        call: ServerStreamCall[StreamingOutputCallResponse] = ServerStreamCall(transport)
        call._send(request)
        call._close_send()
        return call

    def streaming_input_call(
        self, *, headers: Headers = None, timeout: float | None = None
    ) -> ClientStreamCall[StreamingInputCallRequest, StreamingInputCallResponse]:
        """Start a client stream; finish it with ``close_and_receive``."""
        self._check_supported(STREAMING_INPUT_CALL)
        transport = self.channel.open_stream(STREAMING_INPUT_CALL, headers=_metadata(headers), timeout=timeout)
        return ClientStreamCall(transport)

    def full_duplex_call(
        self, *, headers: Headers = None, timeout: float | None = None
    ) -> BidiStreamCall[StreamingOutputCallRequest, StreamingOutputCallResponse]:
        """Start an interleaved bidi stream."""
        self._check_supported(FULL_DUPLEX_CALL)
        transport = self.channel.open_stream(FULL_DUPLEX_CALL, headers=_metadata(headers), timeout=timeout)
        return BidiStreamCall(transport)

    def half_duplex_call(
        self, *, headers: Headers = None, timeout: float | None = None
    ) -> BidiStreamCall[StreamingOutputCallRequest, StreamingOutputCallResponse]:
        """Start a buffered bidi stream; responses follow ``close_send``."""
        self._check_supported(HALF_DUPLEX_CALL)
        transport = self.channel.open_stream(HALF_DUPLEX_CALL, headers=_metadata(headers), timeout=timeout)
        return BidiStreamCall(transport)

    def close(self) -> None:
        """Close the underlying channel."""
        self.channel.close()

    def __enter__(self) -> TestServiceClient:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        self.close()
