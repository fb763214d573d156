# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Client-side call objects and the channel seam bindings implement.

A :class:`Channel` moves encoded messages for one binding.  The typed call
objects wrap a channel's :class:`StreamTransport` and give every binding
the same cancellation and error semantics: once a call is cancelled or has
failed, every later operation raises the same :class:`RpcError`.
"""

from __future__ import annotations

import threading
from collections.abc import Iterator
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Generic, Protocol, TypeVar

from crosstest.errors import Code, RpcError
from crosstest.metadata import Metadata

if TYPE_CHECKING:
    from crosstest.service._protocol import MethodSpec

__all__ = [
    "BidiStreamCall",
    "Channel",
    "ClientStreamCall",
    "ServerStreamCall",
    "StreamTransport",
    "UnaryResult",
]

RequestT = TypeVar("RequestT")
ResponseT = TypeVar("ResponseT")


@dataclass(frozen=True)
class UnaryResult(Generic[ResponseT]):
    """Outcome of a successful unary call."""

    message: ResponseT
    headers: Metadata = field(default_factory=Metadata)
    trailers: Metadata = field(default_factory=Metadata)


class StreamTransport(Protocol):
    """One open streaming call on a binding.

    ``receive`` returns ``None`` at a clean end of stream and raises
    :class:`RpcError` when the call ends with a non-OK status.
    """

    def send(self, message: Any) -> None:
        """Send one request message."""
        ...

    def close_send(self) -> None:
        """Half-close: no more request messages follow."""
        ...

    def receive(self) -> Any | None:
        """Block for the next response message."""
        ...

    def headers(self) -> Metadata:
        """Block until response headers are known and return them."""
        ...

    def trailers(self) -> Metadata:
        """Response trailers; complete once ``receive`` has returned ``None``."""
        ...

    def cancel(self) -> None:
        """Abort the call."""
        ...


class Channel(Protocol):
    """Client side of a transport binding."""

    protocol: str

    def supports(self, method: MethodSpec) -> bool:
        """Whether this channel can carry calls to *method*."""
        ...

    def unary(
        self, method: MethodSpec, request: Any, *, headers: Metadata, timeout: float | None
    ) -> UnaryResult[Any]:
        """Perform a unary call."""
        ...

    def open_stream(self, method: MethodSpec, *, headers: Metadata, timeout: float | None) -> StreamTransport:
        """Open a streaming call; the caller drives send and receive."""
        ...

    def close(self) -> None:
        """Release the channel's resources."""
        ...


class _StreamCall:
    """Shared state machine of the typed stream calls."""

    def __init__(self, transport: StreamTransport) -> None:
        self._transport = transport
        self._lock = threading.Lock()
        self._error: RpcError | None = None
        self._finished = False
        self._send_closed = False

    def _fail(self, error: RpcError) -> RpcError:
        with self._lock:
            if self._error is None:
                self._error = error
            return self._error

    def _raise_if_done(self) -> None:
        if self._error is not None:
            raise RpcError(
                self._error.code,
                self._error.message,
                headers=self._error.headers,
                trailers=self._error.trailers,
            )

    def cancel(self) -> None:
        """Cancel the call; later operations raise ``CANCELED``.

        Responses already buffered by the transport are discarded.
        """
        if self._finished or self._error is not None:
            return
        self._fail(RpcError(Code.CANCELED, "call canceled by client"))
        self._transport.cancel()

    @property
    def cancelled(self) -> bool:
        """Whether :meth:`cancel` ended the call."""
        return self._error is not None and self._error.code is Code.CANCELED

    def _send(self, message: Any) -> None:
        self._raise_if_done()
        if self._send_closed:
            raise RpcError(Code.FAILED_PRECONDITION, "send after close_send")
        try:
            self._transport.send(message)
        except RpcError as e:
            self._fail(e)
            self._raise_if_done()

    def _close_send(self) -> None:
        self._raise_if_done()
        if self._send_closed:
            return
        self._send_closed = True
        try:
            self._transport.close_send()
        except RpcError as e:
            self._fail(e)
            self._raise_if_done()

    def _receive(self) -> Any | None:
        self._raise_if_done()
        if self._finished:
            return None
        try:
            message = self._transport.receive()
        except RpcError as e:
            self._fail(e)
            message = None
        # A cancel racing a receive still wins.
        self._raise_if_done()
        if message is None:
            self._finished = True
        return message

    def headers(self) -> Metadata:
        """Response headers; blocks until the server sends them."""
        if self._error is not None and self._error.headers:
            return self._error.headers.copy()
        return self._transport.headers().copy()

    def trailers(self) -> Metadata:
        """Response trailers; complete once the stream has ended."""
        if self._error is not None:
            return self._error.trailers.copy()
        return self._transport.trailers().copy()


class ServerStreamCall(_StreamCall, Generic[ResponseT]):
    """A server-streaming call.  Iterate it to read responses."""

    def receive(self) -> ResponseT | None:
        """Return the next response, or ``None`` at a clean end of stream.

        Raises:
            RpcError: When the call failed, was cancelled or timed out.

        """
        return self._receive()  # type: ignore[no-any-return]

    def __iter__(self) -> Iterator[ResponseT]:
        while (message := self.receive()) is not None:
            yield message


class ClientStreamCall(_StreamCall, Generic[RequestT, ResponseT]):
    """A client-streaming call: many requests, one response."""

    def send(self, message: RequestT) -> None:
        """Send one request.

        Raises:
            RpcError: If the call already ended.

        """
        self._send(message)

    def close_and_receive(self) -> ResponseT:
        """Close the request stream and wait for the single response.

        Raises:
            RpcError: When the call failed, was cancelled or timed out.

        """
        self._close_send()
        message = self._receive()
        if message is None:
            raise self._fail(RpcError(Code.INTERNAL, "client-streaming call ended without a response"))
        # Drain the end of stream so trailers are complete.
        if self._receive() is not None:
            raise self._fail(RpcError(Code.INTERNAL, "client-streaming call returned more than one response"))
        return message  # type: ignore[no-any-return]


class BidiStreamCall(_StreamCall, Generic[RequestT, ResponseT]):
    """A bidirectional call; reads and writes may interleave."""

    def send(self, message: RequestT) -> None:
        """Send one request.

        Raises:
            RpcError: If the call already ended.

        """
        self._send(message)

    def close_send(self) -> None:
        """Half-close the request stream."""
        self._close_send()

    def receive(self) -> ResponseT | None:
        """Return the next response, or ``None`` at a clean end of stream.

        Raises:
            RpcError: When the call failed, was cancelled or timed out.

        """
        return self._receive()  # type: ignore[no-any-return]

    def __iter__(self) -> Iterator[ResponseT]:
        while (message := self.receive()) is not None:
            yield message
