# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Reference implementation of the Test Service.

Stateless: every call builds its own responses, so one instance can serve
any number of concurrent calls on any binding.
"""

from __future__ import annotations

from collections.abc import Iterable, Iterator
from enum import Enum
from typing import TYPE_CHECKING, Final

from crosstest.errors import Code, RpcError
from crosstest.metadata import INITIAL_METADATA_KEY, TRAILING_METADATA_KEY
from crosstest.payload import make_payload
from crosstest.service._messages import (
    EchoStatus,
    Empty,
    SimpleRequest,
    SimpleResponse,
    StreamingInputCallRequest,
    StreamingInputCallResponse,
    StreamingOutputCallRequest,
    StreamingOutputCallResponse,
)
from crosstest.service._protocol import UnimplementedTestService

if TYPE_CHECKING:
    from crosstest.rpc._context import CallContext

__all__ = [
    "NON_ASCII_ERROR_MESSAGE",
    "ReferenceServer",
    "StreamMode",
]

NON_ASCII_ERROR_MESSAGE: Final = "soirée 🎉"


class StreamMode(Enum):
    """How a bidi call orders reads and writes."""

    INTERLEAVED = "interleaved"
    BUFFERED = "buffered"


def _raise_injected_status(status: EchoStatus | None) -> None:
    """Fail the call with *status* when it carries a non-zero code."""
    if status is not None and status.code != 0:
        raise RpcError(Code.coerce(status.code), status.message)


def _echo_metadata(ctx: CallContext) -> None:
    """Copy the echo keys from the request into response headers and trailers."""
    initial = ctx.request_headers.get_all(INITIAL_METADATA_KEY)
    for value in initial:
        ctx.response_headers.add(INITIAL_METADATA_KEY, value)
    trailing = ctx.request_headers.get_all(TRAILING_METADATA_KEY)
    for value in trailing:
        ctx.response_trailers.add(TRAILING_METADATA_KEY, value)


def _expand(request: StreamingOutputCallRequest, ctx: CallContext) -> Iterator[StreamingOutputCallResponse]:
    """Yield one response per response parameter, honouring the intervals."""
    for params in request.response_parameters:
        if params.interval_us > 0:
            ctx.wait(params.interval_us / 1_000_000)
        else:
            ctx.check()
        yield StreamingOutputCallResponse(payload=make_payload(request.response_type, params.size))


class ReferenceServer(UnimplementedTestService):
    """Canonical Test Service handler every conforming server mirrors.

    ``unimplemented_call`` is deliberately left to the base class.
    """

    def empty_call(self, request: Empty, ctx: CallContext) -> Empty:
        """Return an empty response."""
        return Empty()

    def unary_call(self, request: SimpleRequest, ctx: CallContext) -> SimpleResponse:
        """Return a payload of ``response_size`` bytes, or the injected status."""
        _raise_injected_status(request.response_status)
        payload = make_payload(request.response_type, request.response_size)
        _echo_metadata(ctx)
        return SimpleResponse(payload=payload)

    def fail_unary_call(self, request: SimpleRequest, ctx: CallContext) -> SimpleResponse:
        """Always fail with ``RESOURCE_EXHAUSTED`` and a non-ASCII message."""
        raise RpcError(Code.RESOURCE_EXHAUSTED, NON_ASCII_ERROR_MESSAGE)

    def streaming_output_call(
        self, request: StreamingOutputCallRequest, ctx: CallContext
    ) -> Iterator[StreamingOutputCallResponse]:
        """Stream one payload per response parameter, in order."""
        _raise_injected_status(request.response_status)
        yield from _expand(request, ctx)

    def streaming_input_call(
        self, requests: Iterator[StreamingInputCallRequest], ctx: CallContext
    ) -> StreamingInputCallResponse:
        """Sum the body lengths of every inbound message."""
        total = 0
        for request in requests:
            if request.payload is not None:
                total += len(request.payload.body)
        return StreamingInputCallResponse(aggregated_payload_size=total)

    def full_duplex_call(
        self, requests: Iterator[StreamingOutputCallRequest], ctx: CallContext
    ) -> Iterator[StreamingOutputCallResponse]:
        """Answer each request before reading the next."""
        return self._duplex(requests, ctx, StreamMode.INTERLEAVED)

    def half_duplex_call(
        self, requests: Iterator[StreamingOutputCallRequest], ctx: CallContext
    ) -> Iterator[StreamingOutputCallResponse]:
        """Read the whole client stream, then answer every request in order."""
        return self._duplex(requests, ctx, StreamMode.BUFFERED)

    def _duplex(
        self,
        requests: Iterator[StreamingOutputCallRequest],
        ctx: CallContext,
        mode: StreamMode,
    ) -> Iterator[StreamingOutputCallResponse]:
        _echo_metadata(ctx)
        inbound: Iterable[StreamingOutputCallRequest] = requests
        if mode is StreamMode.BUFFERED:
            inbound = list(requests)
            ctx.logger.debug("Buffered %d requests", len(inbound))
        for request in inbound:
            ctx.check()
            _raise_injected_status(request.response_status)
            yield from _expand(request, ctx)
