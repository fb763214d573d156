# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Test Service contract: method table and handler Protocol.

Every transport binding routes calls through :data:`TEST_SERVICE_METHODS`,
so the method names, paths and shapes are declared exactly once.
"""

from __future__ import annotations

from collections.abc import Iterator
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Final, Protocol

from crosstest.errors import Code, RpcError
from crosstest.service._messages import (
    Empty,
    SimpleRequest,
    SimpleResponse,
    StreamingInputCallRequest,
    StreamingInputCallResponse,
    StreamingOutputCallRequest,
    StreamingOutputCallResponse,
)

if TYPE_CHECKING:
    from crosstest.rpc._context import CallContext

__all__ = [
    "EMPTY_CALL",
    "FAIL_UNARY_CALL",
    "FULL_DUPLEX_CALL",
    "HALF_DUPLEX_CALL",
    "STREAMING_INPUT_CALL",
    "STREAMING_OUTPUT_CALL",
    "TEST_SERVICE",
    "TEST_SERVICE_METHODS",
    "UNARY_CALL",
    "UNIMPLEMENTED_CALL",
    "UNIMPLEMENTED_SERVICE",
    "UNIMPLEMENTED_SERVICE_CALL",
    "MethodShape",
    "MethodSpec",
    "TestServiceHandler",
    "UnimplementedTestService",
    "find_method",
]

TEST_SERVICE: Final = "grpc.testing.TestService"
UNIMPLEMENTED_SERVICE: Final = "grpc.testing.UnimplementedService"


class MethodShape(Enum):
    """Cardinality of an RPC method."""

    UNARY = "unary"
    CLIENT_STREAM = "client_stream"
    SERVER_STREAM = "server_stream"
    BIDI_STREAM = "bidi_stream"

    @property
    def client_streams(self) -> bool:
        """Whether the client sends a stream of messages."""
        return self in (MethodShape.CLIENT_STREAM, MethodShape.BIDI_STREAM)

    @property
    def server_streams(self) -> bool:
        """Whether the server answers with a stream of messages."""
        return self in (MethodShape.SERVER_STREAM, MethodShape.BIDI_STREAM)


@dataclass(frozen=True)
class MethodSpec:
    """Static description of one RPC method.

    Attributes:
        service: Fully-qualified service name.
        name: Method name on the wire.
        attr: Handler attribute implementing the method.
        shape: Method cardinality.
        request_type: Request message class.
        response_type: Response message class.
        half_duplex: For bidi methods, whether every response follows the
            last request.  Transports without interleaved streaming can
            still carry half-duplex calls.

    """

    service: str
    name: str
    attr: str
    shape: MethodShape
    request_type: type
    response_type: type
    half_duplex: bool = False

    @property
    def path(self) -> str:
        """Route path, ``/<service>/<method>``."""
        return f"/{self.service}/{self.name}"

    @property
    def full_duplex(self) -> bool:
        """Whether the method needs interleaved reads and writes."""
        return self.shape is MethodShape.BIDI_STREAM and not self.half_duplex

    @property
    def method_type(self) -> str:
        """Shape name used in logs."""
        return self.shape.value


EMPTY_CALL = MethodSpec(TEST_SERVICE, "EmptyCall", "empty_call", MethodShape.UNARY, Empty, Empty)
UNARY_CALL = MethodSpec(TEST_SERVICE, "UnaryCall", "unary_call", MethodShape.UNARY, SimpleRequest, SimpleResponse)
FAIL_UNARY_CALL = MethodSpec(
    TEST_SERVICE, "FailUnaryCall", "fail_unary_call", MethodShape.UNARY, SimpleRequest, SimpleResponse
)
UNIMPLEMENTED_CALL = MethodSpec(
    TEST_SERVICE, "UnimplementedCall", "unimplemented_call", MethodShape.UNARY, Empty, Empty
)
STREAMING_OUTPUT_CALL = MethodSpec(
    TEST_SERVICE,
    "StreamingOutputCall",
    "streaming_output_call",
    MethodShape.SERVER_STREAM,
    StreamingOutputCallRequest,
    StreamingOutputCallResponse,
)
STREAMING_INPUT_CALL = MethodSpec(
    TEST_SERVICE,
    "StreamingInputCall",
    "streaming_input_call",
    MethodShape.CLIENT_STREAM,
    StreamingInputCallRequest,
    StreamingInputCallResponse,
)
FULL_DUPLEX_CALL = MethodSpec(
    TEST_SERVICE,
    "FullDuplexCall",
    "full_duplex_call",
    MethodShape.BIDI_STREAM,
    StreamingOutputCallRequest,
    StreamingOutputCallResponse,
)
HALF_DUPLEX_CALL = MethodSpec(
    TEST_SERVICE,
    "HalfDuplexCall",
    "half_duplex_call",
    MethodShape.BIDI_STREAM,
    StreamingOutputCallRequest,
    StreamingOutputCallResponse,
    half_duplex=True,
)

# Never registered by any server: calling it must yield UNIMPLEMENTED.
UNIMPLEMENTED_SERVICE_CALL = MethodSpec(
    UNIMPLEMENTED_SERVICE, "UnimplementedCall", "unimplemented_call", MethodShape.UNARY, Empty, Empty
)

TEST_SERVICE_METHODS: Final[tuple[MethodSpec, ...]] = (
    EMPTY_CALL,
    UNARY_CALL,
    FAIL_UNARY_CALL,
    UNIMPLEMENTED_CALL,
    STREAMING_OUTPUT_CALL,
    STREAMING_INPUT_CALL,
    FULL_DUPLEX_CALL,
    HALF_DUPLEX_CALL,
)

_BY_PATH: Final[dict[str, MethodSpec]] = {m.path: m for m in TEST_SERVICE_METHODS}


def find_method(path: str) -> MethodSpec | None:
    """Return the registered method for a ``/<service>/<method>`` path."""
    return _BY_PATH.get(path if path.startswith("/") else f"/{path}")


class TestServiceHandler(Protocol):
    """Server-side implementation of the Test Service.

    Unary and client-stream handlers return one response; server-stream and
    bidi handlers return an iterator of responses.  Client-stream and bidi
    handlers receive the inbound messages as an iterator that ends at the
    client's clean close and raises :class:`~crosstest.errors.RpcError` on
    cancellation, deadline or transport failure.  Failing a call means
    raising ``RpcError``.
    """

    __test__ = False

    def empty_call(self, request: Empty, ctx: CallContext) -> Empty:
        """Return an empty response."""
        ...

    def unary_call(self, request: SimpleRequest, ctx: CallContext) -> SimpleResponse:
        """Return a payload of the requested size."""
        ...

    def fail_unary_call(self, request: SimpleRequest, ctx: CallContext) -> SimpleResponse:
        """Always fail."""
        ...

    def unimplemented_call(self, request: Empty, ctx: CallContext) -> Empty:
        """Declared but not implemented by conforming servers."""
        ...

    def streaming_output_call(
        self, request: StreamingOutputCallRequest, ctx: CallContext
    ) -> Iterator[StreamingOutputCallResponse]:
        """Stream one payload per response parameter."""
        ...

    def streaming_input_call(
        self, requests: Iterator[StreamingInputCallRequest], ctx: CallContext
    ) -> StreamingInputCallResponse:
        """Aggregate the body sizes of a client stream."""
        ...

    def full_duplex_call(
        self, requests: Iterator[StreamingOutputCallRequest], ctx: CallContext
    ) -> Iterator[StreamingOutputCallResponse]:
        """Answer each request as it arrives."""
        ...

    def half_duplex_call(
        self, requests: Iterator[StreamingOutputCallRequest], ctx: CallContext
    ) -> Iterator[StreamingOutputCallResponse]:
        """Answer every request after the client stream has closed."""
        ...


def _unimplemented(spec: MethodSpec) -> RpcError:
    return RpcError(Code.UNIMPLEMENTED, f"{spec.path} is not implemented")


class UnimplementedTestService:
    """Base handler answering every method with ``UNIMPLEMENTED``.

    Subclasses override the methods they implement.
    """

    __test__ = False

    def empty_call(self, request: Empty, ctx: CallContext) -> Empty:
        """Not implemented."""
        raise _unimplemented(EMPTY_CALL)

    def unary_call(self, request: SimpleRequest, ctx: CallContext) -> SimpleResponse:
        """Not implemented."""
        raise _unimplemented(UNARY_CALL)

    def fail_unary_call(self, request: SimpleRequest, ctx: CallContext) -> SimpleResponse:
        """Not implemented."""
        raise _unimplemented(FAIL_UNARY_CALL)

    def unimplemented_call(self, request: Empty, ctx: CallContext) -> Empty:
        """Not implemented."""
        raise _unimplemented(UNIMPLEMENTED_CALL)

    def streaming_output_call(
        self, request: StreamingOutputCallRequest, ctx: CallContext
    ) -> Iterator[StreamingOutputCallResponse]:
        """Not implemented."""
        raise _unimplemented(STREAMING_OUTPUT_CALL)

    def streaming_input_call(
        self, requests: Iterator[StreamingInputCallRequest], ctx: CallContext
    ) -> StreamingInputCallResponse:
        """Not implemented."""
        raise _unimplemented(STREAMING_INPUT_CALL)

    def full_duplex_call(
        self, requests: Iterator[StreamingOutputCallRequest], ctx: CallContext
    ) -> Iterator[StreamingOutputCallResponse]:
        """Not implemented."""
        raise _unimplemented(FULL_DUPLEX_CALL)

    def half_duplex_call(
        self, requests: Iterator[StreamingOutputCallRequest], ctx: CallContext
    ) -> Iterator[StreamingOutputCallResponse]:
        """Not implemented."""
        raise _unimplemented(HALF_DUPLEX_CALL)
